"""
Redis客户端模块

提供异步Redis操作的封装。目前用于保存已注销的刷新令牌（jti 黑名单）。
权限解析结果不会缓存到 Redis，授权随时可能变化，每次请求都从数据库重新计算。
"""

import pickle
from typing import Any, Optional

from redis.asyncio import Redis, from_url

from app.core.config import settings
from app.core.logger import logger


class AsyncRedisClient:
    """
    异步Redis客户端封装

    单例。连接失败时不抛出异常，后续操作降级为空操作并记录日志。
    """

    _instance = None
    _redis: Optional[Redis] = None

    def __new__(cls, *args, **kwargs):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    @staticmethod
    def _build_url() -> str:
        redis_url = "redis://"
        if settings.REDIS_PASSWORD:
            redis_url += f":{settings.REDIS_PASSWORD.get_secret_value()}@"
        return redis_url + f"{settings.REDIS_HOST}:{settings.REDIS_PORT}/{settings.REDIS_DB}"

    async def init(self) -> None:
        """
        初始化Redis连接
        """
        if self._redis is not None:
            logger.info("Redis客户端已初始化，跳过")
            return

        try:
            # 保持原始字节串，值使用pickle序列化
            self._redis = from_url(self._build_url(), encoding="utf-8", decode_responses=False)
            if await self._redis.ping():
                logger.info("Redis连接成功")
            else:
                logger.error("Redis连接失败: ping命令未返回预期结果")
        except Exception as e:
            logger.error(f"Redis连接失败: {e}")
            # 如果连接失败，设置为None以便后续重试
            self._redis = None

    async def close(self) -> None:
        """
        关闭Redis连接
        """
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            logger.info("Redis连接已关闭")

    @property
    def is_ready(self) -> bool:
        return self._redis is not None

    async def ping(self) -> bool:
        """
        检查Redis是否可用

        Returns:
            bool: 可用返回True
        """
        if not self._redis:
            return False
        try:
            return bool(await self._redis.ping())
        except Exception as e:
            logger.error(f"Redis ping失败: {e}")
            return False

    async def set(self, key: str, value: Any, expire: Optional[int] = None) -> bool:
        """
        设置缓存数据

        Args:
            key: 缓存键
            value: 要缓存的值
            expire: 过期时间（秒），默认为None（不过期）

        Returns:
            bool: 操作是否成功
        """
        if not self._redis:
            logger.warning(f"Redis客户端未初始化，忽略写入: {key}")
            return False
        try:
            data = pickle.dumps(value)
            if expire:
                await self._redis.setex(key, expire, data)
            else:
                await self._redis.set(key, data)
            return True
        except Exception as e:
            logger.error(f"Redis设置数据失败: {e}")
            return False

    async def exists(self, key: str) -> bool:
        """
        检查键是否存在

        Args:
            key: 缓存键

        Returns:
            bool: 键是否存在，Redis不可用时返回False
        """
        if not self._redis:
            return False
        try:
            return bool(await self._redis.exists(key))
        except Exception as e:
            logger.error(f"Redis检查键是否存在失败: {e}")
            return False


# 单例模式
redis_client = AsyncRedisClient()
