"""
权限模块

此模块负责权限解析和权限检查：

1. 计算用户的有效权限集合：角色授予的权限与用户自定义授予的权限之并集，
   减去用户自定义拒绝的权限。
2. 判断用户是否拥有某个权限代码。通配符 "*" 表示全部权限，
   但针对单个代码的自定义拒绝仍然优先。
3. 提供 FastAPI 依赖项和装饰器，在路由上声明所需权限。

解析结果不跨请求缓存；同一请求内可复用（保存在 request.state 上）。
任何存储层异常都向上抛出，绝不会被当作“允许”。
"""

import inspect
from functools import wraps
from typing import Callable, Dict, FrozenSet, Iterable, List, NamedTuple, Optional, Tuple

from fastapi import Depends, Request
from tortoise.exceptions import BaseORMException

from app.core.exceptions import DatabaseError, PermissionDenied
from app.core.logger import logger
from app.core.security import get_current_active_user
from app.models.permission import Permission, Role, RolePermission, UserCustomPermission, UserRole
from app.models.user import User

# 超级管理员通配符
WILDCARD_CODE = "*"

SOURCE_ROLE = "role"
SOURCE_CUSTOM = "custom"

# request.state 上保存解析结果的属性名
_REQUEST_STATE_KEY = "effective_permissions"

# 已装饰函数集合，避免重复装饰
_decorated_functions = set()


class EffectivePermissions:
    """
    用户的有效权限集合

    granted 是 (角色授予 ∪ 自定义授予) − 自定义拒绝 的结果，denied 是自定义拒绝的代码。
    通配符只在 allows() 中处理。

    Attributes:
        user_id: 用户ID
        granted: 有效权限代码集合
        denied: 自定义拒绝的权限代码集合
        sources: 每个有效代码的来源（role 或 custom）
    """

    __slots__ = ("user_id", "granted", "denied", "sources")

    def __init__(
            self,
            user_id: int,
            granted: FrozenSet[str] = frozenset(),
            denied: FrozenSet[str] = frozenset(),
            sources: Optional[Dict[str, str]] = None,
    ):
        self.user_id = user_id
        self.granted = granted
        self.denied = denied
        self.sources = sources or {}

    @classmethod
    def empty(cls, user_id: int) -> "EffectivePermissions":
        """无任何权限（用户不存在或未激活）"""
        return cls(user_id)

    @property
    def has_wildcard(self) -> bool:
        return WILDCARD_CODE in self.granted

    def allows(self, code: str, allow_wildcard: bool = True) -> bool:
        """
        判断是否授予某个权限代码

        Args:
            code: 权限代码，区分大小写
            allow_wildcard: 是否让通配符生效

        Returns:
            bool: 是否授予
        """
        if code in self.denied:
            return False
        if code in self.granted:
            return True
        return allow_wildcard and self.has_wildcard

    def allows_any(self, codes: Iterable[str], allow_wildcard: bool = True) -> bool:
        return any(self.allows(code, allow_wildcard) for code in codes)

    def allows_all(self, codes: Iterable[str], allow_wildcard: bool = True) -> bool:
        return all(self.allows(code, allow_wildcard) for code in codes)

    def __contains__(self, code: str) -> bool:
        return self.allows(code)

    def __repr__(self) -> str:
        return f"EffectivePermissions(user_id={self.user_id}, granted={sorted(self.granted)}, denied={sorted(self.denied)})"


class UserPermission(NamedTuple):
    """有效权限及其来源"""
    permission: Permission
    source: str


def resolve_permissions(
        user_id: int,
        role_granted: Iterable[str],
        custom_grants: Iterable[str],
        custom_denies: Iterable[str],
) -> EffectivePermissions:
    """
    根据三类输入计算有效权限集合

    有效集合 = (角色授予 ∪ 自定义授予) − 自定义拒绝。
    每个 (用户, 权限) 只有一条覆盖记录，因此同一代码不会同时出现在授予和拒绝中。

    Args:
        user_id: 用户ID
        role_granted: 启用的角色授予的权限代码
        custom_grants: 自定义授予的权限代码
        custom_denies: 自定义拒绝的权限代码

    Returns:
        EffectivePermissions: 有效权限集合
    """
    denied = frozenset(custom_denies)
    role_set = set(role_granted)
    grant_set = set(custom_grants)

    sources = {}
    for code in role_set:
        sources[code] = SOURCE_ROLE
    for code in grant_set:
        sources[code] = SOURCE_CUSTOM

    granted = frozenset((role_set | grant_set) - denied)
    return EffectivePermissions(
        user_id,
        granted=granted,
        denied=denied,
        sources={code: source for code, source in sources.items() if code in granted},
    )


async def get_effective_permissions(user_id: int) -> EffectivePermissions:
    """
    从数据库计算用户的有效权限集合

    用户不存在或未激活时返回空集合。只有启用的角色和启用的权限参与授予；
    自定义拒绝无论权限是否启用都生效。

    Args:
        user_id: 用户ID

    Returns:
        EffectivePermissions: 有效权限集合
    """
    user = await User.get_or_none(id=user_id)
    if user is None:
        logger.warning(f"获取权限失败: 用户 {user_id} 不存在")
        return EffectivePermissions.empty(user_id)

    if not user.is_active:
        logger.warning(f"获取权限失败: 用户 {user_id} 未激活")
        return EffectivePermissions.empty(user_id)

    # 1. 启用角色授予的权限
    role_ids = await UserRole.filter(user_id=user_id, role__is_active=True).values_list("role_id", flat=True)
    role_granted = []
    if role_ids:
        role_granted = await RolePermission.filter(
            role_id__in=list(role_ids), permission__is_active=True
        ).values_list("permission__code", flat=True)

    # 2/3. 自定义授予与自定义拒绝
    overrides = await UserCustomPermission.filter(user_id=user_id).values_list(
        "permission__code", "is_granted", "permission__is_active"
    )
    custom_grants = [code for code, is_granted, is_active in overrides if is_granted and is_active]
    custom_denies = [code for code, is_granted, _ in overrides if not is_granted]

    permissions = resolve_permissions(user_id, role_granted, custom_grants, custom_denies)
    logger.debug(
        f"用户 {user_id} 的有效权限: {len(permissions.granted)} 个, 拒绝: {len(permissions.denied)} 个"
    )
    return permissions


async def has_permission(user_id: int, permission_code: str) -> bool:
    """
    判断用户是否拥有某个权限

    Args:
        user_id: 用户ID
        permission_code: 权限代码

    Returns:
        bool: 是否拥有；用户不存在时返回False
    """
    permissions = await get_effective_permissions(user_id)
    return permissions.allows(permission_code)


async def has_any_permission(user_id: int, permission_codes: Iterable[str]) -> bool:
    """判断用户是否拥有任意一个权限"""
    permissions = await get_effective_permissions(user_id)
    return permissions.allows_any(permission_codes)


async def has_all_permissions(user_id: int, permission_codes: Iterable[str]) -> bool:
    """判断用户是否拥有全部权限"""
    permissions = await get_effective_permissions(user_id)
    return permissions.allows_all(permission_codes)


async def get_user_permissions(user_id: int) -> List[UserPermission]:
    """
    获取用户的全部有效权限（含完整元数据）

    用于构建导航菜单或权限审计视图。通配符本身也作为一条权限返回。

    Args:
        user_id: 用户ID

    Returns:
        List[UserPermission]: 有效权限及来源，按模块、类别、代码排序
    """
    permissions = await get_effective_permissions(user_id)
    if not permissions.granted:
        return []

    rows = await Permission.filter(code__in=list(permissions.granted)).order_by("module", "category", "code")
    return [UserPermission(row, permissions.sources.get(row.code, SOURCE_ROLE)) for row in rows]


async def get_request_permissions(request: Request, user_id: int) -> EffectivePermissions:
    """
    获取当前请求内的有效权限

    同一请求内多次检查只解析一次，结果不会带到下一个请求。

    Args:
        request: FastAPI请求对象
        user_id: 用户ID

    Returns:
        EffectivePermissions: 有效权限集合
    """
    cached = getattr(request.state, _REQUEST_STATE_KEY, None)
    if cached is not None and cached.user_id == user_id:
        return cached

    permissions = await get_effective_permissions(user_id)
    setattr(request.state, _REQUEST_STATE_KEY, permissions)
    return permissions


class PermissionChecker:
    """
    权限检查器类

    用于检查用户是否具有指定的权限代码。

    Attributes:
        permissions: 需要检查的权限代码
        require_all: True 表示需要全部权限，False 表示任意一个即可
        allow_wildcard: 是否让通配符 "*" 生效
    """

    def __init__(self, *permissions: str, require_all: bool = True, allow_wildcard: bool = True):
        """
        初始化权限检查器

        Args:
            *permissions: 权限代码，例如 "roles.view"
            require_all: 是否需要全部权限
            allow_wildcard: 是否让通配符 "*" 生效

        Raises:
            ValueError: 权限代码不是非空字符串时抛出
        """
        for permission in permissions:
            if not isinstance(permission, str) or not permission:
                raise ValueError("权限代码必须是非空字符串")

        self.permissions: Tuple[str, ...] = permissions
        self.require_all = require_all
        self.allow_wildcard = allow_wildcard

    def evaluate(self, effective: EffectivePermissions) -> bool:
        """
        用已解析的权限集合判断是否通过

        Args:
            effective: 有效权限集合

        Returns:
            bool: 是否通过
        """
        if not self.permissions:
            return True
        if self.require_all:
            return effective.allows_all(self.permissions, self.allow_wildcard)
        return effective.allows_any(self.permissions, self.allow_wildcard)

    async def check_permissions(self, user: User, request: Optional[Request] = None) -> bool:
        """
        检查用户是否有权限

        Args:
            user: 用户对象
            request: 当前请求，传入时复用请求内的解析结果

        Returns:
            bool: 是否有权限
        """
        logger.debug(f"检查用户 {user.id} 的权限: {list(self.permissions)}")

        if request is not None:
            effective = await get_request_permissions(request, user.id)
        else:
            effective = await get_effective_permissions(user.id)

        allowed = self.evaluate(effective)
        if not allowed:
            logger.bind(user_id=user.id, required_permissions=list(self.permissions)).warning(
                f"权限检查失败: 用户 {user.id} 缺少权限 {', '.join(self.permissions)}"
            )
        return allowed


class PermissionRequired:
    """
    权限检查依赖类

    用于FastAPI的依赖注入系统，检查当前用户是否具有指定权限。
    权限解析时存储层出错会返回 500，不会放行。
    """

    def __init__(self, *permissions: str, require_all: bool = True, allow_wildcard: bool = True):
        self.checker = PermissionChecker(*permissions, require_all=require_all, allow_wildcard=allow_wildcard)

    async def __call__(self, request: Request, current_user: User = Depends(get_current_active_user)) -> User:
        """
        检查用户是否有权限

        Args:
            request: 当前请求
            current_user: 当前用户，由FastAPI依赖注入

        Returns:
            User: 当前用户对象

        Raises:
            PermissionDenied: 权限不足时抛出
            DatabaseError: 权限解析失败时抛出
        """
        try:
            allowed = await self.checker.check_permissions(current_user, request)
        except (BaseORMException, OSError) as e:
            logger.error(f"权限解析失败，按拒绝处理: 用户 {current_user.id}, 错误: {e}")
            raise DatabaseError(message="权限解析失败")

        if not allowed:
            raise PermissionDenied(
                message="权限不足",
                details={
                    "required_permissions": list(self.checker.permissions),
                    "user_id": current_user.id,
                    "username": current_user.username,
                }
            )

        logger.debug(f"权限检查通过: 用户 {current_user.id}")
        return current_user


def require_permission(*permissions: str, require_all: bool = True, allow_wildcard: bool = True):
    """
    创建权限检查依赖

    在FastAPI路由参数中使用，例如：
    ```python
    @router.get("/audit-logs")
    async def list_logs(user: User = require_permission("audit.view")):
        ...
    ```

    Args:
        *permissions: 权限代码
        require_all: 是否需要全部权限
        allow_wildcard: 是否让通配符生效

    Returns:
        权限检查依赖项
    """
    return Depends(PermissionRequired(*permissions, require_all=require_all, allow_wildcard=allow_wildcard))


def permission_required(*permissions: str, require_all: bool = True, allow_wildcard: bool = True) -> Callable:
    """
    权限装饰器工厂函数

    用于创建检查用户权限的装饰器，可应用于API路由函数。
    被装饰的函数如果声明了 current_user 参数，会收到通过检查的用户对象。

    示例：
        @router.post("/{role_id}/permissions")
        @permission_required("roles.manage_permissions")
        async def set_permissions(role_id: int, current_user: User = None):
            ...

    Args:
        *permissions: 权限代码
        require_all: 是否需要全部权限，默认为True
        allow_wildcard: 是否让通配符生效，默认为True

    Returns:
        Callable: 装饰器函数
    """
    permission_dependency = require_permission(
        *permissions, require_all=require_all, allow_wildcard=allow_wildcard
    )

    def decorator(func: Callable) -> Callable:
        # 检查函数是否已被装饰过
        if id(func) in _decorated_functions:
            return func

        sig = inspect.signature(func)
        parameters = list(sig.parameters.values())
        has_current_user = any(p.name == 'current_user' for p in parameters)

        if has_current_user:
            # 替换已有 current_user 参数的默认值
            parameters = [
                p.replace(default=permission_dependency, annotation=User) if p.name == 'current_user' else p
                for p in parameters
            ]
        else:
            parameters.append(
                inspect.Parameter(
                    name='current_user',
                    kind=inspect.Parameter.KEYWORD_ONLY,
                    default=permission_dependency,
                    annotation=User
                )
            )

        @wraps(func)
        async def wrapper(*args, **kwargs):
            # 原函数没有 current_user 参数时，移除注入的用户对象
            if not has_current_user:
                kwargs.pop('current_user', None)
            return await func(*args, **kwargs)

        wrapper.__signature__ = sig.replace(parameters=parameters)
        _decorated_functions.add(id(wrapper))
        return wrapper

    return decorator


async def get_user_roles(user_id: int, active_only: bool = False) -> List[Role]:
    """
    获取用户的角色

    Args:
        user_id: 用户ID
        active_only: 是否只返回启用的角色

    Returns:
        List[Role]: 角色列表
    """
    query = UserRole.filter(user_id=user_id)
    if active_only:
        query = query.filter(role__is_active=True)
    return [user_role.role for user_role in await query.select_related("role").order_by("role_id")]
