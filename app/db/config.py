"""
Tortoise ORM 配置

TORTOISE_ORM 供应用和 aerich 迁移使用；get_tortoise_config 可以换成其他连接串，
例如初始化脚本指定库或测试使用的 sqlite。
"""

from typing import Any, Dict, Optional

from app.core.config import settings

MODELS_MODULES = ["app.models", "aerich.models"]


def get_tortoise_config(db_url: Optional[str] = None, with_aerich: bool = True) -> Dict[str, Any]:
    """
    生成 Tortoise ORM 配置

    Args:
        db_url: 数据库连接串，默认使用 settings.DATABASE_URI
        with_aerich: 是否包含 aerich 的迁移记录模型

    Returns:
        Dict[str, Any]: Tortoise.init / register_tortoise 接受的配置
    """
    models = MODELS_MODULES if with_aerich else [m for m in MODELS_MODULES if m != "aerich.models"]
    return {
        "connections": {"default": db_url or str(settings.DATABASE_URI)},
        "apps": {
            "models": {
                "models": models,
                "default_connection": "default",
            }
        },
        # 时间统一按本地时区存为naive时间
        "use_tz": False,
        "timezone": settings.TIMEZONE,
    }


TORTOISE_ORM = get_tortoise_config()
