from app.core import audit, catalog
from app.core.permissions import has_permission
from app.db.init_db import seed_db
from app.core.config import settings
from app.models.audit import PermissionAuditLog
from app.models.permission import CatalogVersion, Permission, PermissionCategory, Role, RolePermission
from app.models.user import User


async def test_sync_registers_catalog_and_default_roles(db):
    result = await catalog.sync_permission_catalog()

    assert result["skipped"] is False
    assert result["created"] == len(catalog.PERMISSION_CATALOG)
    assert await Permission.all().count() == len(catalog.PERMISSION_CATALOG)
    assert set(await Role.all().values_list("code", flat=True)) == {"super_admin", "admin", "employee"}
    assert await Role.filter(is_system=True).count() == 3

    super_admin = await Role.get(code="super_admin")
    codes = await RolePermission.filter(role_id=super_admin.id).values_list("permission__code", flat=True)
    assert list(codes) == ["*"]

    version = await CatalogVersion.first()
    assert version.version == catalog.CATALOG_VERSION


async def test_sync_is_idempotent_and_versioned(db):
    await catalog.sync_permission_catalog()
    grants_before = await RolePermission.all().count()

    skipped = await catalog.sync_permission_catalog()
    forced = await catalog.sync_permission_catalog(force=True)

    assert skipped["skipped"] is True
    assert forced["skipped"] is False
    assert forced["created"] == 0
    assert await Permission.all().count() == len(catalog.PERMISSION_CATALOG)
    assert await RolePermission.all().count() == grants_before
    assert await CatalogVersion.all().count() == 1


async def test_register_permission_updates_names_but_keeps_state(db):
    definition = catalog.PERMISSION_CATALOG[1]
    permission = await catalog.register_permission(definition)
    permission.is_active = False
    await permission.save()

    updated = await catalog.register_permission(dict(definition, name_en="Browse Users"))

    assert updated.id == permission.id
    assert updated.name_en == "Browse Users"
    assert updated.is_active is False


async def test_admin_role_excludes_catalog_management(db):
    await catalog.sync_permission_catalog()
    admin = await Role.get(code="admin")
    codes = set(await RolePermission.filter(role_id=admin.id).values_list("permission__code", flat=True))

    assert "users.manage_permissions" in codes
    assert "permissions.create" not in codes
    assert "*" not in codes


async def test_seed_creates_superuser_with_wildcard(db):
    await seed_db()
    await seed_db()

    superuser = await User.get(username=settings.SUPERUSER_USERNAME)
    assert superuser.is_system is True
    assert await User.all().count() == 1
    assert await has_permission(superuser.id, "messages.send_broadcast") is True
    assert await has_permission(superuser.id, "not.registered.anywhere") is True


async def test_new_permission_is_granted_to_super_admin(db):
    await catalog.sync_permission_catalog()
    permission = await Permission.create(
        code="reports.export", module="reports", category=PermissionCategory.FEATURE, name_en="Export", name_ar="تصدير"
    )

    assert await catalog.grant_to_super_admin(permission) is True
    assert await catalog.grant_to_super_admin(permission) is False

    super_admin = await Role.get(code="super_admin")
    assert await RolePermission.filter(role_id=super_admin.id, permission_id=permission.id).exists()


async def test_repeated_seed_does_not_repeat_role_assignment(db):
    await seed_db()
    await seed_db()
    await seed_db()

    assert await PermissionAuditLog.filter(action=audit.USER_ROLE_ASSIGNED).count() == 1


async def test_catalog_code_created_by_hand_becomes_system(db):
    definition = catalog.PERMISSION_CATALOG[1]
    await Permission.create(
        code=definition["code"], module="users", category=PermissionCategory.PAGE, name_en="x", name_ar="x"
    )

    permission = await catalog.register_permission(definition)

    assert permission.is_system is True
    assert (await Permission.get(code=definition["code"])).is_system is True
