"""
权限审计模块

记录权限相关的变更。审计行与变更在同一个事务中写入；
事务提交后调用 emit 输出到 loguru 的 audit 日志文件，回滚的变更不会出现在文件里。
"""

from typing import Any, Dict, List, Optional, Tuple

from tortoise.backends.base.client import BaseDBAsyncClient

from app.core.logger import logger
from app.models.audit import PermissionAuditLog

# 审计操作类型
ROLE_PERMISSION_GRANTED = "role_permission_granted"
ROLE_PERMISSION_REVOKED = "role_permission_revoked"
ROLE_PERMISSIONS_SET = "role_permissions_set"
USER_ROLE_ASSIGNED = "user_role_assigned"
USER_ROLE_REMOVED = "user_role_removed"
USER_ROLES_SET = "user_roles_set"
USER_PERMISSION_GRANTED = "user_permission_granted"
USER_PERMISSION_DENIED = "user_permission_denied"
USER_PERMISSION_REMOVED = "user_permission_removed"
ROLE_DELETED = "role_deleted"
USER_DELETED = "user_deleted"
CATALOG_SYNCED = "catalog_synced"
PERMISSION_CREATED = "permission_created"
PERMISSION_DELETED = "permission_deleted"


async def log_permission_change(
        action: str,
        actor_user_id: Optional[int],
        *,
        target_user_id: Optional[int] = None,
        target_role_id: Optional[int] = None,
        permission_id: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        using_db: Optional[BaseDBAsyncClient] = None,
) -> PermissionAuditLog:
    """
    写入一条权限审计记录

    只写数据库；提交后由调用方交给 emit 写日志文件。

    Args:
        action: 操作类型
        actor_user_id: 操作人ID，系统操作为None
        target_user_id: 目标用户ID
        target_role_id: 目标角色ID
        permission_id: 权限ID
        details: 附加信息
        ip_address: 请求来源IP
        using_db: 所在事务的连接

    Returns:
        PermissionAuditLog: 审计日志记录
    """
    return await PermissionAuditLog.create(
        action=action,
        actor_user_id=actor_user_id,
        target_user_id=target_user_id,
        target_role_id=target_role_id,
        permission_id=permission_id,
        details=details,
        ip_address=ip_address,
        using_db=using_db,
    )


def emit(entry: PermissionAuditLog) -> None:
    """把已提交的审计记录写入 audit 日志文件"""
    logger.bind(
        audit=True,
        actor_user_id=entry.actor_user_id,
        target_user_id=entry.target_user_id,
        target_role_id=entry.target_role_id,
        permission_id=entry.permission_id,
    ).info("权限变更: {}", entry.action)


async def list_audit_logs(
        *,
        actor_user_id: Optional[int] = None,
        target_user_id: Optional[int] = None,
        target_role_id: Optional[int] = None,
        action: Optional[str] = None,
        skip: int = 0,
        limit: int = 100,
) -> Tuple[List[PermissionAuditLog], int]:
    """
    查询审计日志，按时间倒序

    Returns:
        Tuple[List[PermissionAuditLog], int]: 当前页记录和总数
    """
    query = PermissionAuditLog.all()
    if actor_user_id is not None:
        query = query.filter(actor_user_id=actor_user_id)
    if target_user_id is not None:
        query = query.filter(target_user_id=target_user_id)
    if target_role_id is not None:
        query = query.filter(target_role_id=target_role_id)
    if action:
        query = query.filter(action=action)

    total = await query.count()
    items = await query.offset(skip).limit(limit)
    return items, total


def client_ip(request) -> Optional[str]:
    """请求来源IP"""
    return request.client.host if request.client else None
