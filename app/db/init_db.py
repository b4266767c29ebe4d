"""
数据库初始化模块

此模块负责初始化基础数据：同步权限目录和默认角色，创建超级管理员。
部署时执行 `python -m app.db.init_db`；应用启动时也会调用 seed_db()。
注意：表结构由Aerich管理，此模块只负责初始化基础数据。
"""

import asyncio

from loguru import logger
from tortoise import Tortoise

from app.core.catalog import SUPER_ADMIN_ROLE, sync_permission_catalog
from app.core.config import settings
from app.core.grants import assign_role_to_user
from app.core.security import get_password_hash
from app.db.config import TORTOISE_ORM
from app.models.permission import Role, UserRole
from app.models.user import User


async def seed_db() -> None:
    """
    初始化数据库基础数据

    权限目录按版本同步，已是最新版本时跳过；超级管理员已存在时跳过。
    """
    await sync_permission_catalog()
    await init_superuser()
    logger.info("数据库基础数据初始化完成")


async def init_superuser() -> None:
    """
    初始化超级管理员

    创建系统用户并分配 super_admin 角色。
    """
    super_admin_role = await Role.get_or_none(code=SUPER_ADMIN_ROLE)
    if super_admin_role is None:
        logger.warning("超级管理员角色不存在，无法创建超级管理员用户")
        return

    superuser = await User.get_or_none(username=settings.SUPERUSER_USERNAME)
    if superuser is None:
        superuser = await User.create(
            username=settings.SUPERUSER_USERNAME,
            email=settings.SUPERUSER_EMAIL,
            full_name="System Administrator",
            hashed_password=get_password_hash(settings.SUPERUSER_PASSWORD.get_secret_value()),
            is_active=True,
            is_system=True,
        )
        logger.info(f"已创建超级管理员: {superuser.username}")
    else:
        logger.info("超级管理员已存在，跳过创建")

    if not await UserRole.exists(user_id=superuser.id, role_id=super_admin_role.id):
        await assign_role_to_user(superuser.id, super_admin_role.id)
        logger.info("已为超级管理员分配 super_admin 角色")


async def init_db() -> None:
    """
    连接数据库并初始化基础数据

    注意：此函数不创建表结构，表结构应该通过Aerich命令创建。
    """
    await Tortoise.init(config=TORTOISE_ORM)
    try:
        await seed_db()
    finally:
        await Tortoise.close_connections()


if __name__ == "__main__":
    """
    直接运行此模块时，初始化数据库基础数据
    注意：在运行此脚本前，应确保已通过Aerich创建了表结构
    """
    asyncio.run(init_db())
