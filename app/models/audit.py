"""
审计日志模型模块

记录所有权限相关的变更，只追加不修改。
"""

from tortoise import fields, models


class PermissionAuditLog(models.Model):
    """
    权限审计日志模型
    """
    id = fields.IntField(pk=True)
    action = fields.CharField(max_length=50, description="操作类型")
    actor_user_id = fields.IntField(null=True, description="操作人ID")
    target_user_id = fields.IntField(null=True, description="目标用户ID")
    target_role_id = fields.IntField(null=True, description="目标角色ID")
    permission_id = fields.IntField(null=True, description="权限ID")
    details = fields.JSONField(null=True, description="详情")
    ip_address = fields.CharField(max_length=45, null=True, description="IP地址")
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "permission_audit_log"
        ordering = ["-created_at", "-id"]
