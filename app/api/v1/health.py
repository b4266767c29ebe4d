from typing import Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from tortoise import connections

from app.core.logger import logger
from app.core.redis import redis_client

router = APIRouter()


@router.get("")
async def health_check() -> Any:
    """
    健康检查

    数据库不可用时返回503；Redis只影响刷新令牌注销，不可用时仍视为健康。
    """
    try:
        await connections.get("default").execute_query("SELECT 1")
        database = "ok"
    except Exception as e:
        logger.error(f"健康检查: 数据库不可用: {e}")
        database = "unavailable"

    body = {
        "status": "ok" if database == "ok" else "error",
        "database": database,
        "redis": "ok" if await redis_client.ping() else "unavailable",
    }
    return JSONResponse(status_code=200 if database == "ok" else 503, content=body)
