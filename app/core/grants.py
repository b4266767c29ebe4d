"""
授权变更模块

所有对角色权限、用户角色和用户自定义权限的写操作都在这里完成。
每个函数在一个事务中执行，先锁定所属的角色或用户行，
同一角色（或用户）上的并发变更因此串行化；审计日志在同一事务中写入。
"""

from functools import wraps
from typing import Iterable, List, Optional, Tuple, Type

from tortoise.backends.base.client import BaseDBAsyncClient
from tortoise.exceptions import IntegrityError
from tortoise.models import Model
from tortoise.transactions import in_transaction

from app.core import audit
from app.core.exceptions import DataIntegrityError, NotFound, OperationNotAllowed
from app.core.logger import logger
from app.models.permission import Permission, Role, RolePermission, UserCustomPermission, UserRole
from app.models.user import User


def _translate_integrity_errors(func):
    """唯一约束冲突转换为 DataIntegrityError"""

    @wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except IntegrityError as e:
            logger.error(f"{func.__name__} 数据完整性错误: {e}")
            raise DataIntegrityError(details=str(e))

    return wrapper


async def _lock(model: Type[Model], pk: int, conn: BaseDBAsyncClient, label: str):
    """
    在事务中锁定并返回一行

    后端不支持 SELECT ... FOR UPDATE 时（如SQLite）只做普通查询，
    SQLite 的写事务本身是串行的。

    Raises:
        NotFound: 记录不存在
    """
    query = model.filter(id=pk).using_db(conn)
    if conn.capabilities.support_for_update:
        query = query.select_for_update()
    obj = await query.first()
    if obj is None:
        raise NotFound(message=f"{label}不存在", details={"id": pk})
    return obj


async def _require_ids(model: Type[Model], ids: List[int], conn: BaseDBAsyncClient, label: str) -> None:
    if not ids:
        return
    found = set(await model.filter(id__in=ids).using_db(conn).values_list("id", flat=True))
    missing = [pk for pk in ids if pk not in found]
    if missing:
        raise NotFound(message=f"{label}不存在", details={"ids": missing})


async def _require_permission(permission_id: int, conn: BaseDBAsyncClient) -> Permission:
    permission = await Permission.filter(id=permission_id).using_db(conn).first()
    if permission is None:
        raise NotFound(message="权限不存在", details={"id": permission_id})
    return permission


# ---------------------------------------------------------------------------
# 角色权限
# ---------------------------------------------------------------------------

@_translate_integrity_errors
async def set_role_permissions(
        role_id: int,
        permission_ids: Iterable[int],
        granted_by: Optional[int] = None,
        ip_address: Optional[str] = None,
) -> List[int]:
    """
    全量替换角色的权限集合

    Args:
        role_id: 角色ID
        permission_ids: 新的权限ID集合
        granted_by: 操作人ID
        ip_address: 请求来源IP

    Returns:
        List[int]: 替换后的权限ID（升序）

    Raises:
        NotFound: 角色或任一权限不存在
    """
    target_ids = sorted(set(permission_ids))

    async with in_transaction() as conn:
        await _lock(Role, role_id, conn, "角色")
        await _require_ids(Permission, target_ids, conn, "权限")

        current_ids = set(
            await RolePermission.filter(role_id=role_id).using_db(conn).values_list("permission_id", flat=True)
        )
        to_remove = sorted(current_ids - set(target_ids))
        to_add = [pk for pk in target_ids if pk not in current_ids]

        if to_remove:
            await RolePermission.filter(role_id=role_id, permission_id__in=to_remove).using_db(conn).delete()
        if to_add:
            await RolePermission.bulk_create(
                [RolePermission(role_id=role_id, permission_id=pk, granted_by_id=granted_by) for pk in to_add],
                using_db=conn,
            )

        entry = await audit.log_permission_change(
            audit.ROLE_PERMISSIONS_SET,
            granted_by,
            target_role_id=role_id,
            details={"added": to_add, "removed": to_remove},
            ip_address=ip_address,
            using_db=conn,
        )

    audit.emit(entry)
    logger.info(f"角色 {role_id} 权限已替换: 新增 {len(to_add)} 个, 移除 {len(to_remove)} 个")
    return target_ids


@_translate_integrity_errors
async def assign_permission_to_role(
        role_id: int,
        permission_id: int,
        granted_by: Optional[int] = None,
        ip_address: Optional[str] = None,
) -> Tuple[RolePermission, bool]:
    """
    为角色授予一个权限

    重复授予不会新增记录。

    Returns:
        Tuple[RolePermission, bool]: 关联记录，以及是否新建
    """
    async with in_transaction() as conn:
        await _lock(Role, role_id, conn, "角色")
        await _require_permission(permission_id, conn)

        row = await RolePermission.filter(role_id=role_id, permission_id=permission_id).using_db(conn).first()
        created = row is None
        if created:
            row = await RolePermission.create(
                role_id=role_id, permission_id=permission_id, granted_by_id=granted_by, using_db=conn
            )

        entry = await audit.log_permission_change(
            audit.ROLE_PERMISSION_GRANTED,
            granted_by,
            target_role_id=role_id,
            permission_id=permission_id,
            details={"created": created},
            ip_address=ip_address,
            using_db=conn,
        )

    audit.emit(entry)
    if created:
        logger.info(f"角色 {role_id} 已授予权限 {permission_id}")
    return row, created


@_translate_integrity_errors
async def remove_permission_from_role(
        role_id: int,
        permission_id: int,
        removed_by: Optional[int] = None,
        ip_address: Optional[str] = None,
) -> bool:
    """
    撤销角色的一个权限

    Returns:
        bool: 是否存在并已撤销
    """
    async with in_transaction() as conn:
        await _lock(Role, role_id, conn, "角色")
        await _require_permission(permission_id, conn)

        deleted = await RolePermission.filter(role_id=role_id, permission_id=permission_id).using_db(conn).delete()
        entry = await audit.log_permission_change(
            audit.ROLE_PERMISSION_REVOKED,
            removed_by,
            target_role_id=role_id,
            permission_id=permission_id,
            details={"removed": bool(deleted)},
            ip_address=ip_address,
            using_db=conn,
        )

    audit.emit(entry)
    if deleted:
        logger.info(f"角色 {role_id} 已撤销权限 {permission_id}")
    return bool(deleted)


# ---------------------------------------------------------------------------
# 用户角色
# ---------------------------------------------------------------------------

@_translate_integrity_errors
async def set_user_roles(
        user_id: int,
        role_ids: Iterable[int],
        assigned_by: Optional[int] = None,
        ip_address: Optional[str] = None,
) -> List[int]:
    """
    全量替换用户的角色集合

    Args:
        user_id: 用户ID
        role_ids: 新的角色ID集合
        assigned_by: 操作人ID
        ip_address: 请求来源IP

    Returns:
        List[int]: 替换后的角色ID（升序）

    Raises:
        NotFound: 用户或任一角色不存在
    """
    target_ids = sorted(set(role_ids))

    async with in_transaction() as conn:
        await _lock(User, user_id, conn, "用户")
        await _require_ids(Role, target_ids, conn, "角色")

        current_ids = set(await UserRole.filter(user_id=user_id).using_db(conn).values_list("role_id", flat=True))
        to_remove = sorted(current_ids - set(target_ids))
        to_add = [pk for pk in target_ids if pk not in current_ids]

        if to_remove:
            await UserRole.filter(user_id=user_id, role_id__in=to_remove).using_db(conn).delete()
        if to_add:
            await UserRole.bulk_create(
                [UserRole(user_id=user_id, role_id=pk, assigned_by_id=assigned_by) for pk in to_add],
                using_db=conn,
            )

        entry = await audit.log_permission_change(
            audit.USER_ROLES_SET,
            assigned_by,
            target_user_id=user_id,
            details={"added": to_add, "removed": to_remove},
            ip_address=ip_address,
            using_db=conn,
        )

    audit.emit(entry)
    logger.info(f"用户 {user_id} 角色已替换: 新增 {len(to_add)} 个, 移除 {len(to_remove)} 个")
    return target_ids


@_translate_integrity_errors
async def assign_role_to_user(
        user_id: int,
        role_id: int,
        assigned_by: Optional[int] = None,
        ip_address: Optional[str] = None,
) -> Tuple[UserRole, bool]:
    """
    为用户分配一个角色

    Returns:
        Tuple[UserRole, bool]: 关联记录，以及是否新建
    """
    async with in_transaction() as conn:
        await _lock(User, user_id, conn, "用户")
        await _lock(Role, role_id, conn, "角色")

        row = await UserRole.filter(user_id=user_id, role_id=role_id).using_db(conn).first()
        created = row is None
        if created:
            row = await UserRole.create(user_id=user_id, role_id=role_id, assigned_by_id=assigned_by, using_db=conn)

        entry = await audit.log_permission_change(
            audit.USER_ROLE_ASSIGNED,
            assigned_by,
            target_user_id=user_id,
            target_role_id=role_id,
            details={"created": created},
            ip_address=ip_address,
            using_db=conn,
        )

    audit.emit(entry)
    if created:
        logger.info(f"用户 {user_id} 已分配角色 {role_id}")
    return row, created


@_translate_integrity_errors
async def remove_role_from_user(
        user_id: int,
        role_id: int,
        removed_by: Optional[int] = None,
        ip_address: Optional[str] = None,
) -> bool:
    """
    移除用户的一个角色

    Returns:
        bool: 是否存在并已移除
    """
    async with in_transaction() as conn:
        await _lock(User, user_id, conn, "用户")
        deleted = await UserRole.filter(user_id=user_id, role_id=role_id).using_db(conn).delete()
        entry = await audit.log_permission_change(
            audit.USER_ROLE_REMOVED,
            removed_by,
            target_user_id=user_id,
            target_role_id=role_id,
            details={"removed": bool(deleted)},
            ip_address=ip_address,
            using_db=conn,
        )

    audit.emit(entry)
    if deleted:
        logger.info(f"用户 {user_id} 已移除角色 {role_id}")
    return bool(deleted)


# ---------------------------------------------------------------------------
# 用户自定义权限
# ---------------------------------------------------------------------------

@_translate_integrity_errors
async def assign_custom_permission_to_user(
        user_id: int,
        permission_id: int,
        is_granted: bool,
        assigned_by: Optional[int] = None,
        ip_address: Optional[str] = None,
) -> UserCustomPermission:
    """
    设置用户的自定义权限（授予或拒绝）

    每个 (用户, 权限) 只保留一条记录，再次设置会覆盖之前的值。

    Args:
        user_id: 用户ID
        permission_id: 权限ID
        is_granted: True 授予，False 拒绝
        assigned_by: 操作人ID
        ip_address: 请求来源IP

    Returns:
        UserCustomPermission: 覆盖记录
    """
    async with in_transaction() as conn:
        await _lock(User, user_id, conn, "用户")
        permission = await _require_permission(permission_id, conn)

        row = await UserCustomPermission.filter(user_id=user_id, permission_id=permission_id).using_db(conn).first()
        if row is None:
            row = await UserCustomPermission.create(
                user_id=user_id,
                permission_id=permission_id,
                is_granted=is_granted,
                assigned_by_id=assigned_by,
                using_db=conn,
            )
            previous = None
        else:
            previous = row.is_granted
            row.is_granted = is_granted
            row.assigned_by_id = assigned_by
            await row.save(using_db=conn)

        entry = await audit.log_permission_change(
            audit.USER_PERMISSION_GRANTED if is_granted else audit.USER_PERMISSION_DENIED,
            assigned_by,
            target_user_id=user_id,
            permission_id=permission_id,
            details={"code": permission.code, "previous": previous},
            ip_address=ip_address,
            using_db=conn,
        )

    audit.emit(entry)
    logger.info(f"用户 {user_id} 自定义权限 {permission.code}: {'授予' if is_granted else '拒绝'}")
    return row


@_translate_integrity_errors
async def remove_custom_permission_from_user(
        user_id: int,
        permission_id: int,
        removed_by: Optional[int] = None,
        ip_address: Optional[str] = None,
) -> bool:
    """
    删除用户的自定义权限，该权限回到由角色决定

    Returns:
        bool: 是否存在并已删除
    """
    async with in_transaction() as conn:
        await _lock(User, user_id, conn, "用户")
        deleted = await UserCustomPermission.filter(
            user_id=user_id, permission_id=permission_id
        ).using_db(conn).delete()
        entry = await audit.log_permission_change(
            audit.USER_PERMISSION_REMOVED,
            removed_by,
            target_user_id=user_id,
            permission_id=permission_id,
            details={"removed": bool(deleted)},
            ip_address=ip_address,
            using_db=conn,
        )

    audit.emit(entry)
    if deleted:
        logger.info(f"用户 {user_id} 已删除自定义权限 {permission_id}")
    return bool(deleted)


# ---------------------------------------------------------------------------
# 删除
# ---------------------------------------------------------------------------

async def delete_role(role_id: int, deleted_by: Optional[int] = None, ip_address: Optional[str] = None) -> None:
    """
    删除角色，关联的角色权限和用户角色一并删除

    Raises:
        NotFound: 角色不存在
        OperationNotAllowed: 系统角色不能删除
    """
    async with in_transaction() as conn:
        role = await _lock(Role, role_id, conn, "角色")
        if role.is_system:
            raise OperationNotAllowed(message="系统角色不能删除", details={"role_id": role_id, "code": role.code})

        entry = await audit.log_permission_change(
            audit.ROLE_DELETED,
            deleted_by,
            target_role_id=role_id,
            details={"code": role.code},
            ip_address=ip_address,
            using_db=conn,
        )
        await role.delete(using_db=conn)

    audit.emit(entry)
    logger.info(f"角色已删除: {role.code}")


async def delete_user(user_id: int, deleted_by: Optional[int] = None, ip_address: Optional[str] = None) -> None:
    """
    删除用户，关联的用户角色和自定义权限一并删除

    Raises:
        NotFound: 用户不存在
        OperationNotAllowed: 系统用户不能删除
    """
    async with in_transaction() as conn:
        user = await _lock(User, user_id, conn, "用户")
        if user.is_system:
            raise OperationNotAllowed(message="系统用户不能删除", details={"user_id": user_id})

        entry = await audit.log_permission_change(
            audit.USER_DELETED,
            deleted_by,
            target_user_id=user_id,
            details={"username": user.username},
            ip_address=ip_address,
            using_db=conn,
        )
        await user.delete(using_db=conn)

    audit.emit(entry)
    logger.info(f"用户已删除: {user.username}")
