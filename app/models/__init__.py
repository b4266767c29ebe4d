from app.models.audit import PermissionAuditLog
from app.models.permission import (
    CatalogVersion,
    Permission,
    PermissionCategory,
    Role,
    RolePermission,
    UserCustomPermission,
    UserRole,
)
from app.models.user import User

__all__ = [
    "CatalogVersion",
    "Permission",
    "PermissionAuditLog",
    "PermissionCategory",
    "Role",
    "RolePermission",
    "User",
    "UserCustomPermission",
    "UserRole",
]
