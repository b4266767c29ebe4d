"""
用户模式模块

此模块定义了与用户相关的Pydantic模型，用于请求和响应的数据验证。
这些模型用于用户管理API中的数据交换和验证。
"""

from datetime import datetime
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

from app.schemas.permission import RoleResponse


class UserBase(BaseModel):
    """
    用户基础模型

    包含用户的基本信息字段，作为其他用户相关模型的基类。
    """
    username: Optional[str] = None  # 用户名
    email: Optional[EmailStr] = None  # 邮箱
    full_name: Optional[str] = None
    full_name_ar: Optional[str] = None
    phone: Optional[str] = None  # 手机号
    preferred_language: Optional[Literal["en", "ar"]] = None
    is_active: Optional[bool] = True  # 是否激活

    model_config = {
        "from_attributes": True
    }


class UserCreate(UserBase):
    """
    用户创建模型

    用于创建新用户时的请求数据验证。
    """
    username: str = Field(..., min_length=3, max_length=50)  # 用户名（必填）
    email: EmailStr
    full_name: str
    password: str = Field(..., min_length=6)  # 密码（必填）
    preferred_language: Literal["en", "ar"] = "en"
    role_ids: Optional[List[int]] = None  # 角色ID列表（可选）


class UserUpdate(UserBase):
    """
    用户更新模型

    角色通过 /users/{id}/roles 修改。
    """
    username: Optional[str] = Field(None, min_length=3, max_length=50)
    is_active: Optional[bool] = None
    password: Optional[str] = Field(None, min_length=6)  # 密码（可选）

    @field_validator("username", "email", "full_name", "preferred_language", "is_active", "password")
    @classmethod
    def reject_null(cls, v: Any) -> Any:
        """这些列不可为空：不修改就不要传，不能显式传 null"""
        if v is None:
            raise ValueError("不能为 null")
        return v


class UserResponse(UserBase):
    """用户响应模型"""
    id: int
    username: str
    email: str
    full_name: str
    preferred_language: str
    is_active: bool
    is_system: bool = False
    created_at: Optional[datetime] = None
    last_login: Optional[datetime] = None


class UserDetailResponse(UserResponse):
    """用户详情，含角色"""
    roles: List[RoleResponse] = []


class UserListResponse(BaseModel):
    """
    用户列表响应模型

    用于返回用户列表的响应数据验证。
    """
    items: List[UserResponse]
    total: int


class UserRolesUpdate(BaseModel):
    """全量替换用户角色的请求"""
    role_ids: List[int]


class PasswordReset(BaseModel):
    """修改密码请求"""
    current_password: str
    new_password: str = Field(..., min_length=6)


class MePermissionsResponse(BaseModel):
    """当前用户的权限代码列表"""
    permissions: List[str]
    denied: List[str]
    has_wildcard: bool
