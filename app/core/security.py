"""
安全相关功能模块

此模块提供了与安全相关的功能，包括密码哈希、JWT访问/刷新令牌的生成和验证、
刷新令牌注销以及当前用户解析。
"""
import time
import uuid
from datetime import datetime, timedelta
from typing import Any, Optional, Union

import bcrypt
import pytz
from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt, ExpiredSignatureError
from pydantic import ValidationError

from app.core.config import settings
from app.core.exceptions import AuthenticationError, APIException
from app.core.logger import logger
from app.core.redis import redis_client
from app.models.user import User
from app.schemas.token import TokenPayload

# OAuth2密码Bearer，用于从请求中提取JWT令牌
oauth2_scheme = OAuth2PasswordBearer(tokenUrl=f"{settings.API_V1_STR}/auth/login")

ACCESS_TOKEN = "access"
REFRESH_TOKEN = "refresh"

# 已注销刷新令牌的键前缀
REVOKED_TOKEN_PREFIX = "revoked_refresh:"


def _create_token(
        subject: Union[str, Any], token_type: str, expires_delta: timedelta, username: Optional[str] = None
) -> str:
    expire = datetime.now(pytz.timezone(settings.TIMEZONE)) + expires_delta
    to_encode = {
        "exp": expire,
        "iat": datetime.now(pytz.timezone(settings.TIMEZONE)),
        "sub": str(subject),
        "iss": settings.JWT_ISSUER,
        "aud": settings.JWT_AUDIENCE,
        "type": token_type,
        "jti": uuid.uuid4().hex,
    }
    if username:
        to_encode["username"] = username
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def create_access_token(
        subject: Union[str, Any], expires_delta: Optional[timedelta] = None, username: Optional[str] = None
) -> str:
    """
    创建JWT访问令牌

    Args:
        subject: 令牌主题，通常是用户ID
        expires_delta: 过期时间增量，如果为None则使用配置中的默认值
        username: 写入载荷的用户名（可选）

    Returns:
        str: 编码后的JWT令牌
    """
    expires_delta = expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    return _create_token(subject, ACCESS_TOKEN, expires_delta, username)


def create_refresh_token(
        subject: Union[str, Any], expires_delta: Optional[timedelta] = None, username: Optional[str] = None
) -> str:
    """
    创建JWT刷新令牌

    Args:
        subject: 令牌主题，通常是用户ID
        expires_delta: 过期时间增量，如果为None则使用配置中的默认值
        username: 写入载荷的用户名（可选）

    Returns:
        str: 编码后的JWT令牌
    """
    expires_delta = expires_delta or timedelta(minutes=settings.REFRESH_TOKEN_EXPIRE_MINUTES)
    return _create_token(subject, REFRESH_TOKEN, expires_delta, username)


def decode_token(token: str, expected_type: str) -> TokenPayload:
    """
    解码并校验令牌

    校验签名、过期时间、签发者、受众和令牌类型。

    Args:
        token: JWT令牌
        expected_type: 期望的令牌类型（access 或 refresh）

    Returns:
        TokenPayload: 令牌载荷

    Raises:
        AuthenticationError: 令牌无效、过期或类型不符时抛出
    """
    try:
        payload = jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.ALGORITHM],
            audience=settings.JWT_AUDIENCE,
            issuer=settings.JWT_ISSUER,
            options={"require_exp": True},
        )
        token_data = TokenPayload(**payload)
    except ExpiredSignatureError:
        raise AuthenticationError("令牌已过期")
    except (JWTError, ValidationError):
        raise AuthenticationError("令牌无效")

    if token_data.type != expected_type or token_data.sub is None:
        raise AuthenticationError("令牌类型错误")
    return token_data


async def revoke_refresh_token(token_data: TokenPayload) -> bool:
    """
    注销刷新令牌

    将 jti 写入 Redis，保留到令牌原本的过期时间。

    Args:
        token_data: 已校验的刷新令牌载荷

    Returns:
        bool: 是否写入成功
    """
    if not token_data.jti:
        return False
    ttl = max(int(token_data.exp - time.time()), 1)
    return await redis_client.set(f"{REVOKED_TOKEN_PREFIX}{token_data.jti}", True, ttl)


async def is_refresh_token_revoked(token_data: TokenPayload) -> bool:
    """检查刷新令牌是否已注销"""
    if not token_data.jti:
        return True
    return await redis_client.exists(f"{REVOKED_TOKEN_PREFIX}{token_data.jti}")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """
    验证密码

    Args:
        plain_password: 明文密码
        hashed_password: 哈希后的密码

    Returns:
        bool: 密码是否匹配
    """
    return bcrypt.checkpw(plain_password.encode('utf-8'), hashed_password.encode('utf-8'))


def get_password_hash(password: str) -> str:
    """
    获取密码哈希

    Args:
        password: 明文密码

    Returns:
        str: 哈希后的密码
    """
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')


async def get_current_user(token: str = Depends(oauth2_scheme)) -> User:
    """
    获取当前用户

    从请求中提取访问令牌，验证并返回对应的用户对象。刷新令牌不能用于访问接口。

    Args:
        token: JWT令牌，由依赖项自动提取

    Returns:
        User: 当前用户对象

    Raises:
        AuthenticationError: 令牌无效或用户不存在
    """
    token_data = decode_token(token, ACCESS_TOKEN)

    user = await User.get_or_none(id=token_data.sub)
    if user is None:
        logger.warning(f"令牌对应的用户不存在: {token_data.sub}")
        raise AuthenticationError("用户不存在")

    return user


async def get_current_active_user(current_user: User = Depends(get_current_user)) -> User:
    """
    获取当前活跃用户

    Args:
        current_user: 当前用户对象，由依赖项自动提取

    Returns:
        User: 当前活跃用户对象

    Raises:
        APIException: 如果用户未激活
    """
    if not current_user.is_active:
        raise APIException(message="用户未激活")
    return current_user
