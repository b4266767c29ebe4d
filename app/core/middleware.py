"""
中间件模块

此模块提供了FastAPI应用的中间件，包括请求ID、访问日志和CORS。
"""

import time
import uuid
from typing import Callable

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.config import settings
from app.core.logger import logger

REQUEST_ID_HEADER = "X-Request-ID"


class RequestIdMiddleware(BaseHTTPMiddleware):
    """
    请求ID中间件

    沿用上游传入的 X-Request-ID，没有时生成一个，并写回响应头。
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    访问日志中间件

    每个请求记录一条访问日志（方法、路径、状态码、用时），写入 access 日志文件。
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.perf_counter()
        request_id = getattr(request.state, "request_id", "-")
        client_host = request.client.host if request.client else "unknown"
        access_logger = logger.bind(access_log=True, request_id=request_id)

        try:
            response = await call_next(request)
        except Exception:
            elapsed_ms = round((time.perf_counter() - start_time) * 1000, 2)
            access_logger.exception(
                "请求失败 [{}] {} {} {} - 用时: {}ms", request_id, client_host, request.method, request.url.path,
                elapsed_ms,
            )
            raise

        elapsed = time.perf_counter() - start_time
        elapsed_ms = round(elapsed * 1000, 2)
        response.headers["X-Process-Time"] = f"{elapsed_ms}ms"

        access_logger.info(
            "[{}] {} {} {} - 状态码: {} - 用时: {}ms",
            request_id, client_host, request.method, request.url.path, response.status_code, elapsed_ms,
        )
        if elapsed > settings.SLOW_REQUEST_SECONDS:
            logger.warning(f"慢请求警告 [{request_id}] {request.method} {request.url.path} - 用时: {elapsed_ms}ms")

        return response


def setup_middlewares(app: FastAPI) -> None:
    """
    设置中间件

    中间件的执行顺序与添加顺序正好相反：
    请求处理时：后添加的中间件先执行
    响应处理时：先添加的中间件先执行

    Args:
        app: FastAPI应用实例
    """
    # 添加CORS中间件
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[str(origin) for origin in settings.CORS_ALLOW_ORIGINS],
        allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
        allow_methods=settings.CORS_ALLOW_METHODS,
        allow_headers=settings.CORS_ALLOW_HEADERS,
        expose_headers=[REQUEST_ID_HEADER],
    )

    # 访问日志（依赖请求ID，必须先于请求ID中间件添加）
    app.add_middleware(RequestLoggingMiddleware)

    # 请求ID
    app.add_middleware(RequestIdMiddleware)

    logger.info("中间件已设置")
