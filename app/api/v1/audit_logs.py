from typing import Any, Optional

from fastapi import APIRouter, Query

from app.core.audit import list_audit_logs
from app.core.permissions import permission_required
from app.schemas.audit import AuditLogListResponse, AuditLogResponse

router = APIRouter()


@router.get("", response_model=AuditLogListResponse)
@permission_required("audit.view")
async def list_logs(
        actor_user_id: Optional[int] = None,
        target_user_id: Optional[int] = None,
        target_role_id: Optional[int] = None,
        action: Optional[str] = None,
        skip: int = Query(0, ge=0),
        limit: int = Query(50, ge=1, le=500),
) -> Any:
    """
    获取权限审计日志，按时间倒序
    """
    items, total = await list_audit_logs(
        actor_user_id=actor_user_id,
        target_user_id=target_user_id,
        target_role_id=target_role_id,
        action=action,
        skip=skip,
        limit=limit,
    )
    return AuditLogListResponse(items=[AuditLogResponse.model_validate(item) for item in items], total=total)
