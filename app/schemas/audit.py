"""
审计日志模式模块
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel


class AuditLogResponse(BaseModel):
    id: int
    action: str
    actor_user_id: Optional[int] = None
    target_user_id: Optional[int] = None
    target_role_id: Optional[int] = None
    permission_id: Optional[int] = None
    details: Optional[Dict[str, Any]] = None
    ip_address: Optional[str] = None
    created_at: datetime

    model_config = {
        "from_attributes": True
    }


class AuditLogListResponse(BaseModel):
    items: List[AuditLogResponse]
    total: int
