"""
权限目录模块

定义系统已知的全部权限和默认角色，并负责把它们同步到数据库。

同步只在部署时（python -m app.db.init_db）或管理员调用 POST /permissions/sync 时执行，
每个 CATALOG_VERSION 只应用一次。权限解析过程从不写入目录。
新增权限时在 PERMISSION_CATALOG 中追加定义，并把 CATALOG_VERSION 加一。
"""

from typing import Any, Dict, List, Optional

from tortoise.transactions import in_transaction

from app.core import audit
from app.core.grants import assign_permission_to_role
from app.core.logger import logger
from app.models.permission import CatalogVersion, Permission, PermissionCategory, Role, RolePermission

CATALOG_VERSION = 3

SUPER_ADMIN_ROLE = "super_admin"
ADMIN_ROLE = "admin"
EMPLOYEE_ROLE = "employee"

PAGE = PermissionCategory.PAGE
API = PermissionCategory.API
BUTTON = PermissionCategory.BUTTON
MENU = PermissionCategory.MENU
FEATURE = PermissionCategory.FEATURE


def _definition(
        code: str, category: PermissionCategory, name_en: str, name_ar: str,
        description_en: Optional[str] = None, description_ar: Optional[str] = None,
) -> Dict[str, Any]:
    # 模块取代码的第一段，例如 insurance.companies.view -> insurance
    module = code.split(".", 1)[0] if code != "*" else "system"
    return {
        "code": code,
        "module": module,
        "category": category,
        "name_en": name_en,
        "name_ar": name_ar,
        "description_en": description_en,
        "description_ar": description_ar,
    }


PERMISSION_CATALOG: List[Dict[str, Any]] = [
    _definition("*", FEATURE, "All Permissions", "جميع الصلاحيات",
                "Grants every permission not individually denied",
                "يمنح جميع الصلاحيات ما لم يتم رفضها بشكل فردي"),

    # 用户管理
    _definition("users.view", PAGE, "View Users", "عرض المستخدمين"),
    _definition("users.create", BUTTON, "Create User", "إنشاء مستخدم"),
    _definition("users.edit", BUTTON, "Edit User", "تعديل مستخدم"),
    _definition("users.delete", BUTTON, "Delete User", "حذف مستخدم"),
    _definition("users.manage_roles", FEATURE, "Manage User Roles", "إدارة أدوار المستخدم"),
    _definition("users.manage_permissions", FEATURE, "Manage User Permissions", "إدارة صلاحيات المستخدم"),

    # 角色管理
    _definition("roles.view", PAGE, "View Roles", "عرض الأدوار"),
    _definition("roles.create", BUTTON, "Create Role", "إنشاء دور"),
    _definition("roles.edit", BUTTON, "Edit Role", "تعديل دور"),
    _definition("roles.delete", BUTTON, "Delete Role", "حذف دور"),
    _definition("roles.manage_permissions", FEATURE, "Manage Role Permissions", "إدارة صلاحيات الدور"),

    # 权限管理
    _definition("permissions.view", PAGE, "View Permissions", "عرض الصلاحيات"),
    _definition("permissions.create", BUTTON, "Create Permission", "إنشاء صلاحية"),
    _definition("permissions.edit", BUTTON, "Edit Permission", "تعديل صلاحية"),
    _definition("permissions.delete", BUTTON, "Delete Permission", "حذف صلاحية"),

    # 客户
    _definition("customers.view", PAGE, "View Customers", "عرض العملاء"),
    _definition("customers.create", BUTTON, "Create Customer", "إنشاء عميل"),
    _definition("customers.edit", BUTTON, "Edit Customer", "تعديل عميل"),
    _definition("customers.delete", BUTTON, "Delete Customer", "حذف عميل"),
    _definition("customers.export", FEATURE, "Export Customers", "تصدير العملاء"),
    _definition("customers.import", FEATURE, "Import Customers", "استيراد العملاء"),

    # 消息
    _definition("messages.view", PAGE, "View Messages", "عرض الرسائل",
                "Can view messages page and history", "يمكن عرض صفحة الرسائل والسجل"),
    _definition("messages.send", API, "Send Messages", "إرسال الرسائل",
                "Can send direct messages to users and customers", "يمكن إرسال رسائل مباشرة للمستخدمين والعملاء"),
    _definition("messages.send_to_users", API, "Send Messages to Users", "إرسال رسائل للمستخدمين"),
    _definition("messages.send_to_customers", API, "Send Messages to Customers", "إرسال رسائل للعملاء"),
    _definition("messages.send_broadcast", API, "Send Broadcast Messages", "إرسال رسائل جماعية",
                "Can send broadcast messages to multiple recipients", "يمكن إرسال رسائل جماعية لمستقبلين متعددين"),
    _definition("messages.view_history", API, "View Messages History", "عرض سجل الرسائل"),
    _definition("messages.delete", API, "Delete Messages", "حذف الرسائل"),

    # 保险
    _definition("insurance.companies.view", PAGE, "View Insurance Companies", "عرض شركات التأمين"),
    _definition("insurance.companies.create", BUTTON, "Create Insurance Company", "إنشاء شركة تأمين"),
    _definition("insurance.companies.edit", BUTTON, "Edit Insurance Company", "تعديل شركة تأمين"),
    _definition("insurance.companies.delete", BUTTON, "Delete Insurance Company", "حذف شركة تأمين"),
    _definition("insurance.products.view", PAGE, "View Insurance Products", "عرض منتجات التأمين"),
    _definition("insurance.products.create", BUTTON, "Create Insurance Product", "إنشاء منتج تأمين"),
    _definition("insurance.products.edit", BUTTON, "Edit Insurance Product", "تعديل منتج تأمين"),
    _definition("insurance.products.delete", BUTTON, "Delete Insurance Product", "حذف منتج تأمين"),

    # 导航菜单
    _definition("menu.dashboard", MENU, "Dashboard Menu", "قائمة لوحة التحكم"),
    _definition("menu.customers", MENU, "Customers Menu", "قائمة العملاء"),
    _definition("menu.orders", MENU, "Orders Menu", "قائمة الطلبات"),
    _definition("menu.reports", MENU, "Reports Menu", "قائمة التقارير"),
    _definition("menu.settings", MENU, "Settings Menu", "قائمة الإعدادات"),
    _definition("menu.users", MENU, "Users Menu", "قائمة المستخدمين"),
    _definition("menu.roles", MENU, "Roles Menu", "قائمة الأدوار"),
    _definition("menu.messages", MENU, "Messages Menu", "قائمة الرسائل"),

    # 仪表盘
    _definition("dashboard.view", PAGE, "View Dashboard", "عرض لوحة التحكم"),
    _definition("dashboard.widgets.sales", FEATURE, "Sales Widget", "أداة المبيعات"),
    _definition("dashboard.widgets.orders", FEATURE, "Orders Widget", "أداة الطلبات"),
    _definition("dashboard.widgets.customers", FEATURE, "Customers Widget", "أداة العملاء"),

    # 审计
    _definition("audit.view", PAGE, "View Audit Log", "عرض سجل التدقيق"),
]

_ALL_CODES = [definition["code"] for definition in PERMISSION_CATALOG]

DEFAULT_ROLES: List[Dict[str, Any]] = [
    {
        "code": SUPER_ADMIN_ROLE,
        "name_en": "Super Admin",
        "name_ar": "مدير النظام",
        "description_en": "Full access to the system",
        "description_ar": "صلاحيات كاملة على النظام",
        "permissions": ["*"],
    },
    {
        "code": ADMIN_ROLE,
        "name_en": "Admin",
        "name_ar": "مدير",
        "description_en": "Administrative access without catalog management",
        "description_ar": "صلاحيات إدارية بدون إدارة الصلاحيات",
        "permissions": [
            code for code in _ALL_CODES
            if code != "*" and code not in ("permissions.create", "permissions.edit", "permissions.delete")
        ],
    },
    {
        "code": EMPLOYEE_ROLE,
        "name_en": "Employee",
        "name_ar": "موظف",
        "description_en": "Day to day access",
        "description_ar": "صلاحيات العمل اليومي",
        "permissions": [
            "dashboard.view",
            "customers.view",
            "customers.create",
            "customers.edit",
            "messages.view",
            "messages.send",
            "insurance.companies.view",
            "insurance.products.view",
            "menu.dashboard",
            "menu.customers",
            "menu.messages",
        ],
    },
]


async def register_permission(definition: Dict[str, Any], using_db=None) -> Permission:
    """
    按代码注册一个权限

    代码已存在时更新名称、描述、模块和类别，并标记为系统权限（可能先由接口创建），不改变启用状态。

    Args:
        definition: 权限定义
        using_db: 所在事务的连接

    Returns:
        Permission: 权限记录
    """
    values = {key: value for key, value in definition.items() if key != "code"}
    query = Permission.filter(code=definition["code"])
    if using_db is not None:
        query = query.using_db(using_db)
    permission = await query.first()
    if permission is None:
        return await Permission.create(code=definition["code"], is_system=True, using_db=using_db, **values)

    permission.update_from_dict(values)
    permission.is_system = True
    await permission.save(using_db=using_db)
    return permission


async def _ensure_role(definition: Dict[str, Any], permissions: Dict[str, Permission], conn) -> Role:
    values = {key: value for key, value in definition.items() if key not in ("code", "permissions")}
    role = await Role.filter(code=definition["code"]).using_db(conn).first()
    if role is None:
        role = await Role.create(code=definition["code"], is_system=True, using_db=conn, **values)
        logger.info(f"已创建默认角色: {role.code}")

    # 只补充缺少的授权，不撤销管理员后来做的调整
    existing = set(
        await RolePermission.filter(role_id=role.id).using_db(conn).values_list("permission_id", flat=True)
    )
    missing = [
        RolePermission(role_id=role.id, permission_id=permissions[code].id)
        for code in definition["permissions"]
        if permissions[code].id not in existing
    ]
    if missing:
        await RolePermission.bulk_create(missing, using_db=conn)
    return role


async def get_catalog_version() -> int:
    """返回数据库中已应用的目录版本，未同步过时为0"""
    record = await CatalogVersion.all().order_by("-version").first()
    return record.version if record else 0


async def sync_permission_catalog(force: bool = False, actor_user_id: Optional[int] = None) -> Dict[str, Any]:
    """
    同步权限目录和默认角色

    Args:
        force: 即使版本已应用也重新同步
        actor_user_id: 操作人ID，部署时为None

    Returns:
        Dict[str, Any]: 同步结果，包括版本、是否跳过、新建权限数
    """
    applied = await get_catalog_version()
    if applied >= CATALOG_VERSION and not force:
        logger.info(f"权限目录版本 {applied} 已是最新，跳过同步")
        return {"version": applied, "skipped": True, "created": 0, "total": len(PERMISSION_CATALOG)}

    async with in_transaction() as conn:
        known = set(await Permission.all().using_db(conn).values_list("code", flat=True))
        permissions = {}
        for definition in PERMISSION_CATALOG:
            permissions[definition["code"]] = await register_permission(definition, using_db=conn)
        created = len([code for code in permissions if code not in known])

        for definition in DEFAULT_ROLES:
            await _ensure_role(definition, permissions, conn)

        record = await CatalogVersion.all().using_db(conn).first()
        if record is None:
            await CatalogVersion.create(version=CATALOG_VERSION, using_db=conn)
        else:
            record.version = CATALOG_VERSION
            await record.save(using_db=conn)

        entry = await audit.log_permission_change(
            audit.CATALOG_SYNCED,
            actor_user_id,
            details={"version": CATALOG_VERSION, "created": created, "forced": force},
            using_db=conn,
        )

    audit.emit(entry)
    logger.info(f"权限目录已同步到版本 {CATALOG_VERSION}: 新建 {created} 个权限")
    return {"version": CATALOG_VERSION, "skipped": False, "created": created, "total": len(PERMISSION_CATALOG)}


async def grant_to_super_admin(permission: Permission, granted_by: Optional[int] = None) -> bool:
    """
    把新建的权限授予超级管理员角色

    超级管理员已经通过通配符拥有全部权限，这里写入显式记录，
    即使通配符被撤销，新权限仍然可见。

    Returns:
        bool: 是否授予（超级管理员角色不存在时返回False）
    """
    role = await Role.get_or_none(code=SUPER_ADMIN_ROLE)
    if role is None:
        logger.warning("超级管理员角色不存在，跳过自动授予")
        return False

    _, created = await assign_permission_to_role(role.id, permission.id, granted_by)
    return created
