"""
用户模型模块

此模块定义了员工用户模型。
用户通过 UserRole 关联角色，通过 UserCustomPermission 持有个人权限覆盖。
"""

from tortoise import fields, models


class User(models.Model):
    """
    用户模型

    存储员工的身份信息、认证信息和状态信息。
    系统用户（is_system）不能被删除。
    """
    id = fields.IntField(pk=True)
    username = fields.CharField(max_length=50, unique=True, description="用户名")
    email = fields.CharField(max_length=100, unique=True, description="邮箱")
    full_name = fields.CharField(max_length=100, description="全名")
    full_name_ar = fields.CharField(max_length=100, null=True, description="阿拉伯文全名")
    phone = fields.CharField(max_length=20, null=True)  # 手机号
    preferred_language = fields.CharField(max_length=2, default="en", description="首选语言")
    hashed_password = fields.CharField(max_length=200, description="哈希密码")
    is_active = fields.BooleanField(default=True, description="是否激活")
    is_system = fields.BooleanField(default=False, description="是否为系统用户")
    created_at = fields.DatetimeField(auto_now_add=True, description="创建时间")
    updated_at = fields.DatetimeField(auto_now=True, description="更新时间")
    last_login = fields.DatetimeField(null=True)  # 最后登录时间

    class Meta:
        table = "users"
        ordering = ["full_name"]

    def __str__(self):
        return self.username
