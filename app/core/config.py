"""
应用配置模块

所有配置项从环境变量和 .env 文件读取（区分大小写）。
数据库、Redis 连接参数没有默认值，缺失时启动失败。
"""

import os
import secrets
from typing import Any, List, Optional, Union

from dotenv import load_dotenv, set_key
from pydantic import AnyHttpUrl, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_FILE = ".env"


def _ensure_secret_key() -> None:
    """
    确保存在 SECRET_KEY

    环境变量和 .env 中都没有时生成一个并写入 .env，保证重启后已签发的令牌仍然有效。
    """
    load_dotenv(ENV_FILE)
    if os.getenv("SECRET_KEY"):
        return
    set_key(ENV_FILE, "SECRET_KEY", secrets.token_urlsafe(32))
    load_dotenv(ENV_FILE, override=True)


_ensure_secret_key()


class Settings(BaseSettings):
    """
    应用配置类
    """
    # 日志
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "logs"
    LOG_ROTATION: str = "10 MB"  # 单个日志文件大小上限
    LOG_RETENTION: str = "7 days"
    AUDIT_LOG_RETENTION: str = "180 days"  # 审计日志文件保留更久
    SLOW_REQUEST_SECONDS: float = 1.0  # 超过该时间的请求记为慢请求

    # API
    API_V1_STR: str = "/api/v1"
    PROJECT_NAME: str = "AmeenHub"
    SEED_ON_STARTUP: bool = True  # 启动时同步权限目录并确保超级管理员存在

    # 令牌
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15
    REFRESH_TOKEN_EXPIRE_MINUTES: int = 60 * 24 * 7  # 7天
    JWT_ISSUER: str = "ameenhub"
    JWT_AUDIENCE: str = "ameenhub-users"

    # CORS
    CORS_ALLOW_ORIGINS: Union[List[str], List[AnyHttpUrl]] = ["*"]
    CORS_ALLOW_CREDENTIALS: bool = True
    CORS_ALLOW_METHODS: list = ["*"]
    CORS_ALLOW_HEADERS: list = ["*"]

    @field_validator("CORS_ALLOW_ORIGINS", mode="before")
    def split_cors_origins(cls, v: Union[str, List[str]]) -> Union[List[str], str]:
        """
        逗号分隔的字符串拆成列表，JSON 数组字符串和列表原样交给 pydantic 解析
        """
        if isinstance(v, str) and not v.startswith("["):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        if isinstance(v, (list, str)):
            return v
        raise ValueError(v)

    # 数据库
    POSTGRES_SERVER: str
    POSTGRES_USER: str
    POSTGRES_PASSWORD: SecretStr
    POSTGRES_DB: str
    POSTGRES_PORT: str = "5432"
    DATABASE_URI: Optional[str] = Field(default=None, validate_default=True)
    TIMEZONE: str = "Asia/Riyadh"

    @field_validator("DATABASE_URI", mode="before")
    def assemble_db_connection(cls, v: Optional[str], info: Any) -> Any:
        """
        组装 Tortoise 使用的数据库连接 URI

        显式设置了 DATABASE_URI 时直接使用，否则由 POSTGRES_* 拼出 postgres:// 连接串。

        :param v: 传入的 DATABASE_URI 值
        :param info: 已校验的其他字段
        :return: 连接 URI
        """
        if isinstance(v, str) and v:
            return v

        data = info.data
        password = data.get("POSTGRES_PASSWORD")
        if isinstance(password, SecretStr):
            password = password.get_secret_value()

        return (
            f"postgres://{data.get('POSTGRES_USER')}:{password}@{data.get('POSTGRES_SERVER')}"
            f":{data.get('POSTGRES_PORT')}/{data.get('POSTGRES_DB')}"
        )

    # Redis（只用于刷新令牌注销）
    REDIS_HOST: str
    REDIS_PORT: int
    REDIS_DB: int = 0
    REDIS_PASSWORD: Optional[SecretStr] = None

    # 初始超级管理员
    SUPERUSER_USERNAME: str = "admin"
    SUPERUSER_EMAIL: str = "admin@ameenhub.com"
    SUPERUSER_PASSWORD: SecretStr = SecretStr("admin123")

    model_config = SettingsConfigDict(
        case_sensitive=True,
        env_file=ENV_FILE,
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()
