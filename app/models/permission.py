"""
权限模型模块

此模块定义了与权限系统相关的数据模型，包括权限、角色、角色权限关联、
用户角色关联和用户自定义权限（覆盖）。
这些模型是实现基于角色的访问控制(RBAC)的基础。
"""

from enum import Enum

from tortoise import fields, models


class PermissionCategory(str, Enum):
    """权限类别"""
    PAGE = "page"
    API = "api"
    BUTTON = "button"
    MENU = "menu"
    FEATURE = "feature"


class Permission(models.Model):
    """
    权限模型

    全局的权限描述，通过唯一的 code 标识，例如 messages.send_broadcast。
    权限通过目录同步注册，正常运行中不会被删除。
    """
    id = fields.IntField(pk=True)
    code = fields.CharField(max_length=100, unique=True, description="权限代码")
    module = fields.CharField(max_length=50, description="所属模块")
    category = fields.CharEnumField(PermissionCategory, max_length=20, description="权限类别")
    name_en = fields.CharField(max_length=100, description="英文名称")
    name_ar = fields.CharField(max_length=100, description="阿拉伯文名称")
    description_en = fields.CharField(max_length=255, null=True, description="英文描述")
    description_ar = fields.CharField(max_length=255, null=True, description="阿拉伯文描述")
    is_system = fields.BooleanField(default=False, description="是否为系统内置权限")
    is_active = fields.BooleanField(default=True, description="是否启用")
    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "permissions"
        ordering = ["module", "category", "code"]

    def __str__(self):
        return self.code


class Role(models.Model):
    """
    角色模型

    一组权限的命名集合。角色只能授予权限，不能拒绝权限。
    系统角色不能被删除。
    """
    id = fields.IntField(pk=True)
    code = fields.CharField(max_length=50, unique=True, description="角色代码")
    name_en = fields.CharField(max_length=100, description="英文名称")
    name_ar = fields.CharField(max_length=100, description="阿拉伯文名称")
    description_en = fields.CharField(max_length=255, null=True, description="英文描述")
    description_ar = fields.CharField(max_length=255, null=True, description="阿拉伯文描述")
    is_system = fields.BooleanField(default=False, description="是否为系统角色")
    is_active = fields.BooleanField(default=True, description="是否启用")
    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "roles"

    def __str__(self):
        return self.code


class RolePermission(models.Model):
    """
    角色权限关联

    角色授予的一个权限，(role, permission) 唯一。
    """
    id = fields.IntField(pk=True)
    role = fields.ForeignKeyField("models.Role", related_name="role_permissions", on_delete=fields.CASCADE)
    permission = fields.ForeignKeyField(
        "models.Permission", related_name="role_permissions", on_delete=fields.CASCADE
    )
    granted_at = fields.DatetimeField(auto_now_add=True, description="授予时间")
    granted_by = fields.ForeignKeyField(
        "models.User", related_name=False, null=True, on_delete=fields.SET_NULL, description="授予人"
    )

    class Meta:
        table = "role_permissions"
        unique_together = (("role", "permission"),)


class UserRole(models.Model):
    """
    用户角色关联

    (user, role) 唯一，可选记录分配人和分配时间。
    """
    id = fields.IntField(pk=True)
    user = fields.ForeignKeyField("models.User", related_name="user_roles", on_delete=fields.CASCADE)
    role = fields.ForeignKeyField("models.Role", related_name="user_roles", on_delete=fields.CASCADE)
    assigned_at = fields.DatetimeField(auto_now_add=True, description="分配时间")
    assigned_by = fields.ForeignKeyField(
        "models.User", related_name=False, null=True, on_delete=fields.SET_NULL, description="分配人"
    )

    class Meta:
        table = "user_roles"
        unique_together = (("user", "role"),)


class UserCustomPermission(models.Model):
    """
    用户自定义权限（覆盖）

    is_granted 为 True 时无论角色如何都授予该权限；
    为 False 时即使角色授予了也拒绝该权限。
    (user, permission) 唯一，后写入的值覆盖之前的值。
    """
    id = fields.IntField(pk=True)
    user = fields.ForeignKeyField("models.User", related_name="custom_permissions", on_delete=fields.CASCADE)
    permission = fields.ForeignKeyField(
        "models.Permission", related_name="custom_assignments", on_delete=fields.CASCADE
    )
    is_granted = fields.BooleanField(default=True, description="授予(True)或拒绝(False)")
    assigned_at = fields.DatetimeField(auto_now=True, description="分配时间")
    assigned_by = fields.ForeignKeyField(
        "models.User", related_name=False, null=True, on_delete=fields.SET_NULL, description="分配人"
    )

    class Meta:
        table = "user_custom_permissions"
        unique_together = (("user", "permission"),)


class CatalogVersion(models.Model):
    """
    权限目录版本

    记录最后一次应用的权限目录版本，保证目录同步在每个版本只执行一次。
    """
    id = fields.IntField(pk=True)
    version = fields.IntField(description="已应用的目录版本")
    applied_at = fields.DatetimeField(auto_now=True, description="应用时间")

    class Meta:
        table = "permission_catalog_version"
