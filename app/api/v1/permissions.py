from collections import defaultdict
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, Request
from loguru import logger
from tortoise.transactions import in_transaction

from app.core import audit
from app.core.catalog import grant_to_super_admin, sync_permission_catalog
from app.core.exceptions import APIException, NotFound, OperationNotAllowed, PermissionDenied
from app.core.permissions import PermissionChecker, get_effective_permissions, permission_required
from app.core.security import get_current_active_user
from app.models.permission import Permission, PermissionCategory
from app.models.user import User
from app.schemas.permission import (
    CatalogSyncResponse,
    PermissionCheckRequest,
    PermissionCheckResponse,
    PermissionCreate,
    PermissionGroup,
    PermissionResponse,
    PermissionUpdate,
)

router = APIRouter()


async def _get_permission(permission_id: int) -> Permission:
    permission = await Permission.get_or_none(id=permission_id)
    if permission is None:
        raise NotFound(message="权限不存在")
    return permission


@router.get("", response_model=List[PermissionResponse])
@permission_required("permissions.view")
async def list_permissions(
        module: Optional[str] = None,
        category: Optional[PermissionCategory] = None,
        active_only: bool = False,
) -> Any:
    """
    获取权限列表，按模块、类别、代码排序
    """
    query = Permission.all()
    if module:
        query = query.filter(module=module)
    if category:
        query = query.filter(category=category)
    if active_only:
        query = query.filter(is_active=True)
    return await query


@router.get("/grouped", response_model=List[PermissionGroup])
@permission_required("permissions.view")
async def list_permissions_grouped(active_only: bool = True) -> Any:
    """
    按模块分组的权限列表，供角色编辑界面使用
    """
    query = Permission.all()
    if active_only:
        query = query.filter(is_active=True)

    groups = defaultdict(list)
    for permission in await query:
        groups[permission.module].append(PermissionResponse.model_validate(permission))
    return [PermissionGroup(module=module, permissions=items) for module, items in sorted(groups.items())]


@router.post("/check", response_model=PermissionCheckResponse)
async def check_permission(
        body: PermissionCheckRequest,
        request: Request,
        current_user: User = Depends(get_current_active_user),
) -> Any:
    """
    检查用户是否拥有权限

    user_id 为空时检查当前用户；检查其他用户需要permissions.view权限。
    传 permission 检查单个权限；传 permissions 按 mode（any 或 all）检查多个权限，
    并返回每个权限的结果。
    """
    user_id = body.user_id or current_user.id
    if user_id != current_user.id and not await PermissionChecker("permissions.view").check_permissions(
            current_user, request
    ):
        raise PermissionDenied(message="权限不足", details={"required_permissions": ["permissions.view"]})

    effective = await get_effective_permissions(user_id)

    if body.permission:
        return PermissionCheckResponse(has_permission=effective.allows(body.permission))

    results = {code: effective.allows(code) for code in body.permissions}
    if body.mode == "all":
        has_permission = all(results.values())
    else:
        has_permission = any(results.values())
    return PermissionCheckResponse(has_permission=has_permission, permissions=results)


@router.post("/sync", response_model=CatalogSyncResponse)
@permission_required("permissions.create")
async def sync_catalog(force: bool = False, current_user: User = None) -> Any:
    """
    同步权限目录和默认角色

    当前版本已应用时跳过，force=true 时强制重新同步。
    """
    result = await sync_permission_catalog(force=force, actor_user_id=current_user.id)
    logger.info(f"用户 {current_user.id} 触发了权限目录同步: {result}")
    return result


@router.post("", response_model=PermissionResponse)
@permission_required("permissions.create")
async def create_permission(
        permission_in: PermissionCreate,
        request: Request,
        current_user: User = None,
) -> Any:
    """
    创建权限，并自动授予超级管理员角色
    """
    if await Permission.filter(code=permission_in.code).exists():
        raise APIException(message="权限代码已存在")

    async with in_transaction() as conn:
        permission = await Permission.create(**permission_in.model_dump(), using_db=conn)
        entry = await audit.log_permission_change(
            audit.PERMISSION_CREATED,
            current_user.id,
            permission_id=permission.id,
            details={"code": permission.code},
            ip_address=audit.client_ip(request),
            using_db=conn,
        )

    audit.emit(entry)
    await grant_to_super_admin(permission, current_user.id)
    logger.info(f"用户 {current_user.id} 创建了权限 {permission.code}")
    return permission


@router.get("/{permission_id}", response_model=PermissionResponse)
@permission_required("permissions.view")
async def read_permission(permission_id: int) -> Any:
    """
    获取权限详情
    """
    return await _get_permission(permission_id)


@router.put("/{permission_id}", response_model=PermissionResponse)
@permission_required("permissions.edit")
async def update_permission(
        permission_id: int,
        permission_in: PermissionUpdate,
        current_user: User = None,
) -> Any:
    """
    更新权限

    权限代码不能修改；系统权限由权限目录维护，不能通过接口修改
    """
    permission = await _get_permission(permission_id)

    if permission.is_system:
        raise OperationNotAllowed(message="系统权限不能修改", details={"code": permission.code})

    permission.update_from_dict(permission_in.model_dump(exclude_unset=True))
    await permission.save()

    logger.info(f"用户 {current_user.id} 更新了权限 {permission.code}")
    return permission


@router.delete("/{permission_id}")
@permission_required("permissions.delete")
async def delete_permission(permission_id: int, request: Request, current_user: User = None) -> Any:
    """
    删除权限

    系统权限不能删除；关联的角色授权和用户自定义权限一并删除
    """
    permission = await _get_permission(permission_id)
    if permission.is_system:
        raise OperationNotAllowed(message="系统权限不能删除", details={"code": permission.code})

    async with in_transaction() as conn:
        entry = await audit.log_permission_change(
            audit.PERMISSION_DELETED,
            current_user.id,
            permission_id=permission.id,
            details={"code": permission.code},
            ip_address=audit.client_ip(request),
            using_db=conn,
        )
        await permission.delete(using_db=conn)

    audit.emit(entry)
    logger.info(f"用户 {current_user.id} 删除了权限 {permission.code}")
    return {"message": "权限已删除"}
