"""
认证模块

此模块提供了用户认证相关的API，包括登录、刷新令牌、注销、当前用户信息和修改密码。
"""

from datetime import datetime
from typing import Any, List

from fastapi import APIRouter, Depends, status
from fastapi.security import OAuth2PasswordRequestForm

from app.core.exceptions import APIException, AuthenticationError
from app.core.logger import logger
from app.core.permissions import get_effective_permissions, get_user_permissions, get_user_roles
from app.core.security import (
    REFRESH_TOKEN,
    create_access_token,
    create_refresh_token,
    decode_token,
    get_current_active_user,
    get_password_hash,
    is_refresh_token_revoked,
    revoke_refresh_token,
    verify_password,
)
from app.models.user import User
from app.schemas.permission import PermissionResponse, RoleResponse, UserPermissionResponse
from app.schemas.token import RefreshRequest, Token
from app.schemas.user import MePermissionsResponse, PasswordReset, UserDetailResponse, UserResponse

router = APIRouter()


def _issue_tokens(user: User) -> dict:
    return {
        "access_token": create_access_token(subject=user.id, username=user.username),
        "refresh_token": create_refresh_token(subject=user.id, username=user.username),
        "token_type": "bearer",
    }


@router.post("/login", response_model=Token)
async def login_access_token(
        form_data: OAuth2PasswordRequestForm = Depends(),
) -> Any:
    """
    OAuth2 兼容的令牌登录，获取访问令牌和刷新令牌

    Args:
        form_data: OAuth2表单数据，包含username和password

    Returns:
        Token: 访问令牌、刷新令牌和令牌类型

    Raises:
        AuthenticationError: 用户名或密码错误
        APIException: 用户未激活
    """
    # 查找用户
    user = await User.get_or_none(username=form_data.username)

    # 用户不存在
    if user is None:
        logger.warning(f"登录失败: 用户 {form_data.username} 不存在")
        raise AuthenticationError(message="用户名或密码错误")

    # 密码错误
    if not verify_password(form_data.password, user.hashed_password):
        logger.warning(f"登录失败: 用户 {user.username} 密码错误")
        raise AuthenticationError(message="用户名或密码错误")

    # 用户未激活
    if not user.is_active:
        logger.warning(f"登录失败: 用户 {user.username} 未激活")
        raise APIException(message="用户未激活，请联系管理员")

    # 更新最后登录时间
    user.last_login = datetime.now()
    await user.save(update_fields=["last_login"])

    logger.info(f"登录成功: 用户 {user.username} (ID: {user.id})")
    return _issue_tokens(user)


@router.post("/refresh", response_model=Token)
async def refresh_access_token(body: RefreshRequest) -> Any:
    """
    使用刷新令牌换取新的令牌

    旧的刷新令牌会被注销，不能再次使用。

    Raises:
        AuthenticationError: 刷新令牌无效、已注销，或用户不存在/未激活
    """
    token_data = decode_token(body.refresh_token, REFRESH_TOKEN)
    if await is_refresh_token_revoked(token_data):
        logger.warning(f"刷新失败: 用户 {token_data.sub} 的刷新令牌已注销")
        raise AuthenticationError(message="刷新令牌已注销")

    user = await User.get_or_none(id=token_data.sub)
    if user is None or not user.is_active:
        raise AuthenticationError(message="用户不存在或未激活")

    await revoke_refresh_token(token_data)
    logger.info(f"令牌已刷新: 用户 {user.username} (ID: {user.id})")
    return _issue_tokens(user)


@router.post("/logout")
async def logout(body: RefreshRequest) -> dict:
    """
    注销：使刷新令牌失效

    访问令牌有效期较短，到期后自然失效。
    """
    token_data = decode_token(body.refresh_token, REFRESH_TOKEN)
    await revoke_refresh_token(token_data)
    logger.info(f"用户 {token_data.sub} 已注销")
    return {"message": "已注销"}


@router.get("/me", response_model=UserDetailResponse)
async def read_me(current_user: User = Depends(get_current_active_user)) -> Any:
    """
    获取当前用户信息及角色
    """
    roles = await get_user_roles(current_user.id)
    return UserDetailResponse(
        **UserResponse.model_validate(current_user).model_dump(),
        roles=[RoleResponse.model_validate(role) for role in roles],
    )


@router.get("/my-permissions", response_model=MePermissionsResponse)
async def get_my_permissions(current_user: User = Depends(get_current_active_user)) -> Any:
    """
    获取当前用户的有效权限代码

    前端用它决定显示哪些菜单和按钮。
    """
    effective = await get_effective_permissions(current_user.id)
    return MePermissionsResponse(
        permissions=sorted(effective.granted),
        denied=sorted(effective.denied),
        has_wildcard=effective.has_wildcard,
    )


@router.get("/my-permissions/details", response_model=List[UserPermissionResponse])
async def get_my_permission_details(current_user: User = Depends(get_current_active_user)) -> Any:
    """
    获取当前用户的有效权限（含名称、模块和来源）
    """
    rows = await get_user_permissions(current_user.id)
    return [
        UserPermissionResponse(**PermissionResponse.model_validate(row.permission).model_dump(), source=row.source)
        for row in rows
    ]


@router.post("/reset-password", status_code=status.HTTP_200_OK)
async def reset_password(
        body: PasswordReset,
        current_user: User = Depends(get_current_active_user),
) -> dict:
    """
    自己重置密码

    Raises:
        APIException: 原密码错误时抛出
    """
    # 原密码错误
    if not verify_password(body.current_password, current_user.hashed_password):
        logger.warning(f"重置密码失败: 用户 {current_user.username} 原密码错误")
        raise APIException(message="原密码错误")

    # 更新密码
    current_user.hashed_password = get_password_hash(body.new_password)
    await current_user.save(update_fields=["hashed_password", "updated_at"])

    logger.info(f"重置密码成功: 用户 {current_user.username} (ID: {current_user.id})")
    return {"message": "密码已重置"}
