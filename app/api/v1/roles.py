from typing import Any, List

from fastapi import APIRouter, Request
from loguru import logger

from app.core import grants
from app.core.audit import client_ip
from app.core.exceptions import APIException, NotFound, OperationNotAllowed
from app.core.permissions import permission_required
from app.models.permission import Permission, Role, RolePermission
from app.models.user import User
from app.schemas.permission import (
    PermissionResponse,
    RoleCreate,
    RoleDetailResponse,
    RolePermissionsUpdate,
    RoleResponse,
    RoleUpdate,
)

router = APIRouter()


async def _get_role(role_id: int) -> Role:
    role = await Role.get_or_none(id=role_id)
    if role is None:
        raise NotFound(message="角色不存在")
    return role


async def _role_permissions(role_id: int) -> List[Permission]:
    rows = await RolePermission.filter(role_id=role_id).select_related("permission").order_by("permission_id")
    return [row.permission for row in rows]


async def _role_detail(role: Role, include_permissions: bool = True) -> RoleDetailResponse:
    permissions = await _role_permissions(role.id) if include_permissions else []
    return RoleDetailResponse(
        **RoleResponse.model_validate(role).model_dump(),
        permissions=[PermissionResponse.model_validate(permission) for permission in permissions],
    )


@router.get("", response_model=List[RoleResponse])
@permission_required("roles.view")
async def list_roles(active_only: bool = False) -> Any:
    """
    获取角色列表
    """
    query = Role.all().order_by("id")
    if active_only:
        query = query.filter(is_active=True)
    return await query


@router.post("", response_model=RoleDetailResponse)
@permission_required("roles.create")
async def create_role(
        role_in: RoleCreate,
        request: Request,
        current_user: User = None,
) -> Any:
    """
    创建角色，可同时指定权限
    """
    if await Role.filter(code=role_in.code).exists():
        raise APIException(message="角色代码已存在")
    permission_ids = set(role_in.permission_ids or [])
    if permission_ids and await Permission.filter(id__in=list(permission_ids)).count() != len(permission_ids):
        raise NotFound(message="权限不存在", details={"ids": role_in.permission_ids})

    role = await Role.create(**role_in.model_dump(exclude={"permission_ids"}))

    # 如果提供了权限ID列表，则添加权限
    if role_in.permission_ids:
        await grants.set_role_permissions(role.id, role_in.permission_ids, current_user.id, client_ip(request))

    logger.info(f"用户 {current_user.id} 创建了角色 {role.code}")
    return await _role_detail(role)


@router.get("/{role_id}", response_model=RoleDetailResponse)
@permission_required("roles.view")
async def read_role(role_id: int, include_permissions: bool = True) -> Any:
    """
    获取角色详情
    """
    return await _role_detail(await _get_role(role_id), include_permissions)


@router.put("/{role_id}", response_model=RoleResponse)
@permission_required("roles.edit")
async def update_role(
        role_id: int,
        role_in: RoleUpdate,
        current_user: User = None,
) -> Any:
    """
    更新角色信息

    系统角色不能停用
    """
    role = await _get_role(role_id)

    if role.is_system and role_in.is_active is False:
        raise OperationNotAllowed(message="系统角色不能停用")

    role.update_from_dict(role_in.model_dump(exclude_unset=True))
    await role.save()

    logger.info(f"用户 {current_user.id} 更新了角色 {role.code}")
    return role


@router.delete("/{role_id}")
@permission_required("roles.delete")
async def delete_role(role_id: int, request: Request, current_user: User = None) -> Any:
    """
    删除角色

    系统角色不能删除
    """
    await grants.delete_role(role_id, current_user.id, client_ip(request))
    return {"message": "角色已删除"}


@router.get("/{role_id}/permissions", response_model=List[PermissionResponse])
@permission_required("roles.view")
async def read_role_permissions(role_id: int) -> Any:
    """
    获取角色的权限
    """
    await _get_role(role_id)
    return await _role_permissions(role_id)


@router.put("/{role_id}/permissions", response_model=List[PermissionResponse])
@permission_required("roles.manage_permissions")
async def replace_role_permissions(
        role_id: int,
        body: RolePermissionsUpdate,
        request: Request,
        current_user: User = None,
) -> Any:
    """
    全量替换角色的权限
    """
    await grants.set_role_permissions(role_id, body.permission_ids, current_user.id, client_ip(request))
    return await _role_permissions(role_id)


@router.post("/{role_id}/permissions/{permission_id}")
@permission_required("roles.manage_permissions")
async def add_role_permission(
        role_id: int,
        permission_id: int,
        request: Request,
        current_user: User = None,
) -> Any:
    """
    为角色授予一个权限
    """
    _, created = await grants.assign_permission_to_role(role_id, permission_id, current_user.id, client_ip(request))
    return {"message": "权限已授予" if created else "角色已拥有该权限", "created": created}


@router.delete("/{role_id}/permissions/{permission_id}")
@permission_required("roles.manage_permissions")
async def remove_role_permission(
        role_id: int,
        permission_id: int,
        request: Request,
        current_user: User = None,
) -> Any:
    """
    撤销角色的一个权限
    """
    removed = await grants.remove_permission_from_role(role_id, permission_id, current_user.id, client_ip(request))
    if not removed:
        raise NotFound(message="角色没有该权限")
    return {"message": "权限已撤销"}
