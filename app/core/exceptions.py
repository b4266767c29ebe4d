"""
异常处理模块

此模块定义了应用程序的自定义异常类和全局异常处理器。

权限判断结果为“未授予”时返回布尔值，不是异常；
只有 HTTP 依赖项会把它转换为 PermissionDenied。
"""

from typing import Any, Optional, Union

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from tortoise.exceptions import DoesNotExist, IntegrityError, OperationalError

from app.core.logger import logger


class APIException(Exception):
    """
    API异常基类

    所有自定义API异常都应继承此类。

    Attributes:
        status_code: HTTP状态码
        code: 业务错误码
        message: 错误消息
        details: 错误详情
    """

    def __init__(
            self,
            status_code: int = status.HTTP_400_BAD_REQUEST,
            code: int = 400,
            message: str = "请求错误",
            details: Optional[Any] = None,
    ):
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details
        super().__init__(self.message)


class BadRequest(APIException):
    """请求参数错误"""

    def __init__(self, message: str = "请求参数错误", details: Optional[Any] = None):
        super().__init__(status.HTTP_400_BAD_REQUEST, 400, message, details)


class OperationNotAllowed(APIException):
    """
    操作不允许异常

    当试图删除或修改系统内置的角色、用户或权限时抛出。
    """

    def __init__(self, message: str = "不允许对系统内置数据执行此操作", details: Optional[Any] = None):
        super().__init__(status.HTTP_400_BAD_REQUEST, 400, message, details)


class AuthenticationError(APIException):
    """认证失败：凭据错误、令牌无效或已过期"""

    def __init__(self, message: str = "认证失败", details: Optional[Any] = None):
        super().__init__(status.HTTP_401_UNAUTHORIZED, 401, message, details)


class PermissionDenied(APIException):
    """
    权限拒绝异常

    当权限解析结果为未授予时由 HTTP 依赖项抛出。
    """

    def __init__(self, message: str = "权限不足", details: Optional[Any] = None):
        super().__init__(status.HTTP_403_FORBIDDEN, 403, message, details)


class NotFound(APIException):
    """
    资源不存在异常

    变更函数收到不存在的用户、角色或权限ID时抛出，
    与“权限未授予”区分开。
    """

    def __init__(self, message: str = "资源不存在", details: Optional[Any] = None):
        super().__init__(status.HTTP_404_NOT_FOUND, 404, message, details)


class DataIntegrityError(APIException):
    """
    数据完整性异常

    唯一约束冲突。正常通过授权变更函数写入时不应出现，
    出现说明有调用方绕过了这些函数。
    """

    def __init__(self, message: str = "数据完整性错误", details: Optional[Any] = None):
        super().__init__(status.HTTP_409_CONFLICT, 409, message, details)


class DatabaseError(APIException):
    """
    数据库错误异常

    存储不可用。调用方必须把它视为拒绝，永远不能视为允许。
    """

    def __init__(self, message: str = "数据库操作失败", details: Optional[Any] = None):
        super().__init__(status.HTTP_500_INTERNAL_SERVER_ERROR, 500, message, details)


async def api_exception_handler(request: Request, exc: APIException) -> JSONResponse:
    """
    API异常处理器

    处理所有继承自APIException的异常。4xx 记录为警告，5xx 记录为错误。

    Args:
        request: FastAPI请求对象
        exc: API异常对象

    Returns:
        JSONResponse: 包含错误信息的JSON响应
    """
    bound = logger.bind(
        status_code=exc.status_code,
        details=exc.details,
        path=request.url.path,
        method=request.method,
    )
    if exc.status_code >= 500:
        bound.error("API异常: {} - {}", exc.code, exc.message)
    else:
        bound.warning("API异常: {} - {}", exc.code, exc.message)

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "code": exc.code,
            "message": exc.message,
            "details": exc.details,
        },
    )


async def validation_exception_handler(
        request: Request, exc: Union[RequestValidationError, ValidationError]
) -> JSONResponse:
    """
    验证异常处理器

    处理请求参数验证错误。

    Args:
        request: FastAPI请求对象
        exc: 验证异常对象

    Returns:
        JSONResponse: 包含错误信息的JSON响应
    """
    errors = []
    for error in exc.errors():
        error_info = {
            "loc": list(error.get("loc", [])),
            "msg": error.get("msg", ""),
            "type": error.get("type", ""),
        }
        errors.append(error_info)

    logger.bind(path=request.url.path, method=request.method, errors=errors).warning("请求参数验证失败")

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "code": 422,
            "message": "请求参数验证失败",
            "details": errors,
        },
    )


async def tortoise_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Tortoise ORM异常处理器

    DoesNotExist 映射为 404，IntegrityError 映射为 409，其他数据库异常映射为 500。

    Args:
        request: FastAPI请求对象
        exc: 异常对象

    Returns:
        JSONResponse: 包含错误信息的JSON响应
    """
    bound = logger.bind(path=request.url.path, method=request.method, exception_type=type(exc).__name__)

    if isinstance(exc, DoesNotExist):
        bound.warning("资源不存在: {}", exc)
        status_code, code, message = status.HTTP_404_NOT_FOUND, 404, "资源不存在"
    elif isinstance(exc, IntegrityError):
        bound.error("数据完整性错误: {}", exc)
        status_code, code, message = status.HTTP_409_CONFLICT, 409, "数据完整性错误"
    else:
        bound.error("数据库错误: {}", exc)
        status_code, code, message = status.HTTP_500_INTERNAL_SERVER_ERROR, 500, "数据库操作失败"

    return JSONResponse(
        status_code=status_code,
        content={
            "code": code,
            "message": message,
            "details": str(exc),
        },
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    通用异常处理器

    处理所有未被其他处理器捕获的异常。

    Args:
        request: FastAPI请求对象
        exc: 异常对象

    Returns:
        JSONResponse: 包含错误信息的JSON响应
    """
    logger.bind(
        path=request.url.path,
        method=request.method,
        exception_type=type(exc).__name__,
    ).exception("未处理的异常: {}", exc)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "code": 500,
            "message": "服务器内部错误",
            "details": str(exc) if str(exc) else None,
        },
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """
    设置异常处理器

    为FastAPI应用添加全局异常处理器。

    Args:
        app: FastAPI应用实例
    """
    # API异常处理器
    app.add_exception_handler(APIException, api_exception_handler)

    # 验证异常处理器
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(ValidationError, validation_exception_handler)

    # Tortoise ORM异常处理器
    app.add_exception_handler(DoesNotExist, tortoise_exception_handler)
    app.add_exception_handler(IntegrityError, tortoise_exception_handler)
    app.add_exception_handler(OperationalError, tortoise_exception_handler)

    # 通用异常处理器
    app.add_exception_handler(Exception, general_exception_handler)

    logger.info("异常处理器已设置")
