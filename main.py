"""
主应用模块

此模块是应用程序的入口点，负责创建FastAPI应用实例、配置中间件、
注册路由、设置数据库连接以及启动应用服务器。
"""

from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from tortoise.contrib.fastapi import register_tortoise

from app.api.v1 import api_router
from app.core.config import settings
from app.core.exceptions import setup_exception_handlers
from app.core.logger import logger, logger_config
from app.core.middleware import setup_middlewares
from app.core.redis import redis_client
from app.db.config import TORTOISE_ORM
from app.db.init_db import seed_db


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    应用生命周期管理

    处理应用启动和关闭时的资源初始化和清理工作。
    数据库连接由 register_tortoise 管理。

    Args:
        app: FastAPI应用实例
    """
    # 初始化 Redis 连接（用于刷新令牌注销）
    await redis_client.init()

    # 同步权限目录并确保超级管理员存在（不创建表结构，表结构由Aerich管理）
    if settings.SEED_ON_STARTUP:
        await seed_db()

    yield

    # 关闭 Redis 连接
    try:
        await redis_client.close()
    except Exception as e:
        logger.error(f"关闭Redis连接时出错: {e}")


def create_application(with_database: bool = True, file_logs: bool = True) -> FastAPI:
    """
    创建FastAPI应用实例

    配置应用设置、中间件、路由和数据库连接。

    Args:
        with_database: 是否注册Tortoise-ORM及生命周期；测试时由测试夹具自行管理数据库
        file_logs: 是否写日志文件

    Returns:
        FastAPI: 配置好的FastAPI应用实例
    """
    # 日志配置
    logger_config.setup(file_sinks=file_logs)

    # 创建应用
    application = FastAPI(
        title=settings.PROJECT_NAME,
        description="AmeenHub 员工权限管理：角色、用户自定义授予/拒绝与权限检查",
        version="1.0.0",
        lifespan=lifespan if with_database else None,
    )

    # 设置中间件
    setup_middlewares(application)

    # 设置异常处理器
    setup_exception_handlers(application)

    # 注册路由
    application.include_router(api_router)

    if with_database:
        # 注册Tortoise-ORM
        register_tortoise(
            application,
            config=TORTOISE_ORM,
            generate_schemas=False,  # 不自动生成表结构，使用Aerich管理迁移
            add_exception_handlers=False,
        )

    return application


if __name__ == "__main__":
    """
    应用入口点

    当直接运行此模块时，启动uvicorn服务器。
    """

    uvicorn.run(
        "main:create_application",
        host="0.0.0.0",
        port=8000,
        lifespan="on",
        factory=True,
    )
