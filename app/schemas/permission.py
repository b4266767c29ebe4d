"""
权限模式模块

此模块定义了与权限系统相关的Pydantic模型，用于请求和响应的数据验证。
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from app.models.permission import PermissionCategory


class PermissionBase(BaseModel):
    """
    权限基础模型
    """
    code: str = Field(..., min_length=1, max_length=100)
    module: str = Field(..., min_length=1, max_length=50)
    category: PermissionCategory
    name_en: str
    name_ar: str
    description_en: Optional[str] = None
    description_ar: Optional[str] = None

    model_config = {
        "from_attributes": True
    }


class PermissionCreate(PermissionBase):
    """
    权限创建模型
    """
    is_active: bool = True


class PermissionUpdate(BaseModel):
    """
    权限更新模型

    代码不能修改。
    """
    module: Optional[str] = None
    category: Optional[PermissionCategory] = None
    name_en: Optional[str] = None
    name_ar: Optional[str] = None
    description_en: Optional[str] = None
    description_ar: Optional[str] = None
    is_active: Optional[bool] = None

    @field_validator("module", "category", "name_en", "name_ar", "is_active")
    @classmethod
    def reject_null(cls, v: Any) -> Any:
        if v is None:
            raise ValueError("不能为 null")
        return v


class PermissionResponse(PermissionBase):
    """
    权限响应模型
    """
    id: int
    is_system: bool = False
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class PermissionGroup(BaseModel):
    """按模块分组的权限"""
    module: str
    permissions: List[PermissionResponse]


class UserPermissionResponse(PermissionResponse):
    """
    用户有效权限响应模型

    source 表示权限来源：role 为角色授予，custom 为自定义授予。
    """
    source: Literal["role", "custom"]


class CustomPermissionResponse(BaseModel):
    """用户自定义权限（覆盖）响应模型"""
    permission: PermissionResponse
    is_granted: bool
    assigned_at: Optional[datetime] = None
    assigned_by_id: Optional[int] = None

    model_config = {
        "from_attributes": True
    }


class CustomPermissionAssign(BaseModel):
    """设置用户自定义权限的请求"""
    permission_id: int
    is_granted: bool = True


class PermissionCheckRequest(BaseModel):
    """
    权限检查请求

    permission 和 permissions 二选一。user_id 为空时检查当前用户。
    """
    user_id: Optional[int] = None
    permission: Optional[str] = None
    permissions: Optional[List[str]] = None
    mode: Literal["any", "all"] = "any"

    @model_validator(mode="after")
    def check_target(self):
        if not self.permission and not self.permissions:
            raise ValueError("permission 或 permissions 必须提供一个")
        return self


class PermissionCheckResponse(BaseModel):
    """权限检查结果"""
    has_permission: bool
    permissions: Optional[Dict[str, bool]] = None


class CatalogSyncResponse(BaseModel):
    """权限目录同步结果"""
    version: int
    skipped: bool
    created: int
    total: int


class RoleBase(BaseModel):
    """
    角色基础模型
    """
    code: str = Field(..., min_length=1, max_length=50)
    name_en: str
    name_ar: str
    description_en: Optional[str] = None
    description_ar: Optional[str] = None
    is_active: bool = True

    model_config = {
        "from_attributes": True
    }


class RoleCreate(RoleBase):
    """
    角色创建模型
    """
    permission_ids: Optional[List[int]] = None


class RoleUpdate(BaseModel):
    """
    角色更新模型
    """
    name_en: Optional[str] = None
    name_ar: Optional[str] = None
    description_en: Optional[str] = None
    description_ar: Optional[str] = None
    is_active: Optional[bool] = None

    @field_validator("name_en", "name_ar", "is_active")
    @classmethod
    def reject_null(cls, v: Any) -> Any:
        """名称和状态不可为空，描述可以传 null 清空"""
        if v is None:
            raise ValueError("不能为 null")
        return v


class RoleResponse(RoleBase):
    """
    角色响应模型
    """
    id: int
    is_system: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class RoleDetailResponse(RoleResponse):
    """
    角色详情响应模型
    """
    permissions: List[PermissionResponse] = []


class RolePermissionsUpdate(BaseModel):
    """全量替换角色权限的请求"""
    permission_ids: List[int]
