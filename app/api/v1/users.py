from typing import Any, List, Optional

from fastapi import APIRouter, Request
from loguru import logger
from tortoise.expressions import Q

from app.core import grants
from app.core.audit import client_ip
from app.core.exceptions import APIException, NotFound, PermissionDenied
from app.core.permissions import PermissionChecker, get_user_permissions, get_user_roles, permission_required
from app.core.security import get_password_hash
from app.models.permission import Role, UserCustomPermission
from app.models.user import User
from app.schemas.permission import (
    CustomPermissionAssign,
    CustomPermissionResponse,
    PermissionResponse,
    RoleResponse,
    UserPermissionResponse,
)
from app.schemas.user import (
    UserCreate,
    UserDetailResponse,
    UserListResponse,
    UserResponse,
    UserRolesUpdate,
    UserUpdate,
)

router = APIRouter()


async def _user_detail(user: User) -> UserDetailResponse:
    roles = await get_user_roles(user.id)
    return UserDetailResponse(
        **UserResponse.model_validate(user).model_dump(),
        roles=[RoleResponse.model_validate(role) for role in roles],
    )


async def _get_user(user_id: int) -> User:
    user = await User.get_or_none(id=user_id)
    if user is None:
        raise NotFound(message="用户不存在")
    return user


@router.get("", response_model=UserListResponse, summary="获取用户列表")
@permission_required("users.view")
async def list_users(
        search: Optional[str] = None,
        is_active: Optional[bool] = None,
        role_id: Optional[int] = None,
        skip: int = 0,
        limit: int = 20,
        current_user: User = None,
) -> Any:
    """
    获取用户列表，支持按用户名/邮箱/姓名搜索、状态和角色筛选，以及分页

    需要users.view权限
    """
    query = User.all()

    # 构建查询条件
    filters = Q()
    if search:
        filters &= Q(username__icontains=search) | Q(email__icontains=search) | Q(full_name__icontains=search)
    if is_active is not None:
        filters &= Q(is_active=is_active)
    if role_id is not None:
        filters &= Q(user_roles__role_id=role_id)

    if filters:
        query = query.filter(filters)

    # 先计算总数 (在应用分页前)
    total = await query.count()
    users = await query.offset(skip).limit(limit)

    logger.info(f"用户 {current_user.id} 查看了用户列表 (skip={skip}, limit={limit})")
    return UserListResponse(items=[UserResponse.model_validate(user) for user in users], total=total)


@router.post("", response_model=UserDetailResponse, summary="创建用户")
@permission_required("users.create")
async def create_user(
        user_in: UserCreate,
        request: Request,
        current_user: User = None,
) -> Any:
    """
    创建用户, 密码使用bcrypt加密

    需要users.create权限；同时分配角色时还需要users.manage_roles权限
    """
    # 检查用户名是否已存在
    if await User.filter(username=user_in.username).exists():
        raise APIException(message="用户名已存在")

    # 检查邮箱是否已存在
    if await User.filter(email=user_in.email).exists():
        raise APIException(message="邮箱已存在")

    # 同时分配角色需要users.manage_roles权限
    if user_in.role_ids and not await PermissionChecker("users.manage_roles").check_permissions(current_user, request):
        raise PermissionDenied(message="权限不足", details={"required_permissions": ["users.manage_roles"]})
    if user_in.role_ids and await Role.filter(id__in=user_in.role_ids).count() != len(set(user_in.role_ids)):
        raise NotFound(message="角色不存在", details={"ids": user_in.role_ids})

    user_data = user_in.model_dump(exclude={"password", "role_ids"}, exclude_none=True)
    user_data["hashed_password"] = get_password_hash(user_in.password)
    user = await User.create(**user_data)

    if user_in.role_ids:
        await grants.set_user_roles(user.id, user_in.role_ids, current_user.id, client_ip(request))

    logger.info(f"用户 {current_user.id} 创建了用户 {user.username} (ID: {user.id})")
    return await _user_detail(user)


@router.get("/{user_id}", response_model=UserDetailResponse, summary="获取用户信息")
@permission_required("users.view")
async def read_user(user_id: int) -> Any:
    """
    获取用户信息及角色

    需要users.view权限
    """
    return await _user_detail(await _get_user(user_id))


@router.put("/{user_id}", response_model=UserDetailResponse, summary="更新用户信息")
@permission_required("users.edit")
async def update_user(
        user_id: int,
        user_in: UserUpdate,
        current_user: User = None,
) -> Any:
    """
    更新用户信息

    需要users.edit权限
    """
    user = await _get_user(user_id)

    if user.is_system and user_in.is_active is False:
        raise APIException(message="系统用户不能停用")

    user_data = user_in.model_dump(exclude={"password"}, exclude_unset=True)
    if user_in.password:
        user_data["hashed_password"] = get_password_hash(user_in.password)

    if "username" in user_data and user_data["username"] != user.username:
        if await User.filter(username=user_data["username"]).exclude(id=user_id).exists():
            raise APIException(message="用户名已存在")
    if "email" in user_data and user_data["email"] != user.email:
        if await User.filter(email=user_data["email"]).exclude(id=user_id).exists():
            raise APIException(message="邮箱已存在")

    user.update_from_dict(user_data)
    await user.save()

    logger.info(f"用户 {current_user.id} 更新了用户 {user_id} 的信息")
    return await _user_detail(user)


@router.delete("/{user_id}", summary="删除用户")
@permission_required("users.delete")
async def delete_user(user_id: int, request: Request, current_user: User = None) -> dict:
    """
    删除用户

    需要users.delete权限；系统用户和当前用户自己不能删除
    """
    if user_id == current_user.id:
        raise APIException(message="不能删除自己")

    await grants.delete_user(user_id, current_user.id, client_ip(request))
    return {"message": "用户已删除"}


@router.get("/{user_id}/roles", response_model=List[RoleResponse], summary="获取用户角色")
@permission_required("users.view")
async def read_user_roles(user_id: int) -> Any:
    """
    获取用户角色

    需要users.view权限
    """
    await _get_user(user_id)
    return await get_user_roles(user_id)


@router.put("/{user_id}/roles", response_model=List[RoleResponse], summary="替换用户角色")
@permission_required("users.manage_roles")
async def replace_user_roles(
        user_id: int,
        body: UserRolesUpdate,
        request: Request,
        current_user: User = None,
) -> Any:
    """
    全量替换用户角色

    需要users.manage_roles权限
    """
    await grants.set_user_roles(user_id, body.role_ids, current_user.id, client_ip(request))
    return await get_user_roles(user_id)


@router.post("/{user_id}/roles/{role_id}", summary="为用户分配角色")
@permission_required("users.manage_roles")
async def add_user_role(user_id: int, role_id: int, request: Request, current_user: User = None) -> dict:
    """
    为用户分配一个角色

    需要users.manage_roles权限
    """
    _, created = await grants.assign_role_to_user(user_id, role_id, current_user.id, client_ip(request))
    return {"message": "角色已分配" if created else "用户已拥有该角色", "created": created}


@router.delete("/{user_id}/roles/{role_id}", summary="移除用户角色")
@permission_required("users.manage_roles")
async def remove_user_role(user_id: int, role_id: int, request: Request, current_user: User = None) -> dict:
    """
    移除用户的一个角色

    需要users.manage_roles权限
    """
    removed = await grants.remove_role_from_user(user_id, role_id, current_user.id, client_ip(request))
    if not removed:
        raise NotFound(message="用户没有该角色")
    return {"message": "角色已移除"}


@router.get("/{user_id}/permissions", summary="获取用户权限")
@permission_required("users.view")
async def read_user_permissions(user_id: int, custom_only: bool = False) -> Any:
    """
    获取用户权限

    默认返回有效权限及来源；custom_only=true 时只返回自定义授予/拒绝记录。

    需要users.view权限
    """
    await _get_user(user_id)

    if custom_only:
        rows = await UserCustomPermission.filter(user_id=user_id).select_related("permission").order_by("permission_id")
        return [CustomPermissionResponse.model_validate(row) for row in rows]

    rows = await get_user_permissions(user_id)
    return [
        UserPermissionResponse(**PermissionResponse.model_validate(row.permission).model_dump(), source=row.source)
        for row in rows
    ]


@router.post("/{user_id}/permissions", response_model=CustomPermissionResponse, summary="设置用户自定义权限")
@permission_required("users.manage_permissions")
async def set_user_permission(
        user_id: int,
        body: CustomPermissionAssign,
        request: Request,
        current_user: User = None,
) -> Any:
    """
    授予或拒绝用户的一个权限，已有记录时覆盖

    需要users.manage_permissions权限
    """
    row = await grants.assign_custom_permission_to_user(
        user_id, body.permission_id, body.is_granted, current_user.id, client_ip(request)
    )
    await row.fetch_related("permission")
    return CustomPermissionResponse.model_validate(row)


@router.delete("/{user_id}/permissions/{permission_id}", summary="删除用户自定义权限")
@permission_required("users.manage_permissions")
async def remove_user_permission(
        user_id: int,
        permission_id: int,
        request: Request,
        current_user: User = None,
) -> dict:
    """
    删除用户的自定义权限，该权限回到由角色决定

    需要users.manage_permissions权限
    """
    removed = await grants.remove_custom_permission_from_user(
        user_id, permission_id, current_user.id, client_ip(request)
    )
    if not removed:
        raise NotFound(message="用户没有该自定义权限")
    return {"message": "自定义权限已删除"}
