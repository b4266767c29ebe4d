"""
令牌模式模块

此模块定义了与JWT令牌相关的Pydantic模型，用于请求和响应的数据验证。
"""

from typing import Literal, Optional

from pydantic import BaseModel


class Token(BaseModel):
    """
    令牌响应模型

    登录和刷新时返回访问令牌与刷新令牌。
    """
    access_token: str  # 访问令牌
    refresh_token: str  # 刷新令牌
    token_type: str = "bearer"  # 令牌类型


class RefreshRequest(BaseModel):
    """刷新/注销请求"""
    refresh_token: str


class TokenPayload(BaseModel):
    """
    令牌载荷模型

    定义JWT令牌中包含的数据结构。
    """
    sub: Optional[int] = None  # 主题，用户ID
    exp: int  # 过期时间戳
    type: Literal["access", "refresh"] = "access"  # 令牌类型
    jti: Optional[str] = None  # 令牌唯一ID
    username: Optional[str] = None
