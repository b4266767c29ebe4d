import pytest
from loguru import logger
from tortoise.exceptions import IntegrityError, OperationalError

from app.core import audit, grants
from app.core.exceptions import DataIntegrityError, NotFound, OperationNotAllowed
from app.models.audit import PermissionAuditLog
from app.models.permission import Role, RolePermission, UserCustomPermission, UserRole
from app.models.user import User


async def _role_codes(role_id):
    return set(await RolePermission.filter(role_id=role_id).values_list("permission__code", flat=True))


async def test_set_role_permissions_is_full_replace(make_role, make_permission):
    role = await make_role("sales")
    a = await make_permission("orders.a")
    b = await make_permission("orders.b")
    c = await make_permission("orders.c")

    await grants.set_role_permissions(role.id, [a.id, b.id])
    assert await _role_codes(role.id) == {"orders.a", "orders.b"}

    result = await grants.set_role_permissions(role.id, [b.id, c.id])

    assert result == sorted([b.id, c.id])
    assert await _role_codes(role.id) == {"orders.b", "orders.c"}


async def test_set_role_permissions_rejects_unknown_ids(make_role, make_permission):
    role = await make_role("sales")
    a = await make_permission("orders.a")
    await grants.set_role_permissions(role.id, [a.id])

    with pytest.raises(NotFound):
        await grants.set_role_permissions(role.id, [a.id, 424242])

    # nothing changed
    assert await _role_codes(role.id) == {"orders.a"}

    with pytest.raises(NotFound):
        await grants.set_role_permissions(424242, [a.id])


async def test_assign_permission_to_role_twice(make_role, make_permission, make_user):
    actor = await make_user("boss")
    role = await make_role("sales")
    permission = await make_permission("orders.view")

    row, created = await grants.assign_permission_to_role(role.id, permission.id, actor.id)
    again, created_again = await grants.assign_permission_to_role(role.id, permission.id, actor.id)

    assert created is True
    assert created_again is False
    assert row.id == again.id
    assert await RolePermission.filter(role_id=role.id).count() == 1
    assert row.granted_by_id == actor.id


async def test_remove_permission_from_role(make_role):
    role = await make_role("sales", ["orders.view"])
    permission_id = (await RolePermission.get(role_id=role.id)).permission_id

    assert await grants.remove_permission_from_role(role.id, permission_id) is True
    assert await grants.remove_permission_from_role(role.id, permission_id) is False
    assert await _role_codes(role.id) == set()


async def test_set_user_roles_is_full_replace(make_user, make_role):
    user = await make_user()
    r1 = await make_role("r1")
    r2 = await make_role("r2")
    r3 = await make_role("r3")

    await grants.set_user_roles(user.id, [r1.id, r2.id])
    await grants.set_user_roles(user.id, [r2.id, r3.id])

    assert set(await UserRole.filter(user_id=user.id).values_list("role_id", flat=True)) == {r2.id, r3.id}

    await grants.set_user_roles(user.id, [])
    assert await UserRole.filter(user_id=user.id).count() == 0


async def test_assign_and_remove_role(make_user, make_role):
    user = await make_user()
    role = await make_role("sales")

    _, created = await grants.assign_role_to_user(user.id, role.id)
    _, created_again = await grants.assign_role_to_user(user.id, role.id)

    assert (created, created_again) == (True, False)
    assert await grants.remove_role_from_user(user.id, role.id) is True
    assert await grants.remove_role_from_user(user.id, role.id) is False


async def test_assign_role_to_unknown_user(make_role):
    role = await make_role("sales")

    with pytest.raises(NotFound):
        await grants.assign_role_to_user(424242, role.id)


async def test_custom_permission_requires_existing_permission(make_user):
    user = await make_user()

    with pytest.raises(NotFound):
        await grants.assign_custom_permission_to_user(user.id, 424242, True)

    assert await UserCustomPermission.filter(user_id=user.id).count() == 0


async def test_system_role_cannot_be_deleted(make_role):
    role = await make_role("super_admin", ["*", "users.view"], is_system=True)

    with pytest.raises(OperationNotAllowed):
        await grants.delete_role(role.id)

    assert await Role.filter(id=role.id).exists()
    assert await _role_codes(role.id) == {"*", "users.view"}


async def test_delete_role_removes_grants_and_assignments(make_role, make_user, assign_role):
    role = await make_role("temp", ["orders.view"])
    user = await make_user()
    await assign_role(user, role)

    await grants.delete_role(role.id)

    assert not await Role.filter(id=role.id).exists()
    assert await RolePermission.filter(role_id=role.id).count() == 0
    assert await UserRole.filter(user_id=user.id).count() == 0


async def test_system_user_cannot_be_deleted(make_user):
    user = await make_user("system", is_system=True)

    with pytest.raises(OperationNotAllowed):
        await grants.delete_user(user.id)

    assert await User.filter(id=user.id).exists()


async def test_delete_user(make_user):
    user = await make_user()

    await grants.delete_user(user.id)

    assert not await User.filter(id=user.id).exists()
    with pytest.raises(NotFound):
        await grants.delete_user(user.id)


async def test_mutations_write_audit_rows(make_user, make_role, make_permission):
    actor = await make_user("boss")
    user = await make_user()
    role = await make_role("sales")
    permission = await make_permission("orders.view")

    await grants.set_role_permissions(role.id, [permission.id], actor.id, "10.0.0.1")
    await grants.assign_role_to_user(user.id, role.id, actor.id)
    await grants.assign_custom_permission_to_user(user.id, permission.id, False, actor.id)
    await grants.remove_custom_permission_from_user(user.id, permission.id, actor.id)
    await grants.remove_role_from_user(user.id, role.id, actor.id)

    actions = await PermissionAuditLog.filter(actor_user_id=actor.id).order_by("id").values_list("action", flat=True)
    assert actions == [
        audit.ROLE_PERMISSIONS_SET,
        audit.USER_ROLE_ASSIGNED,
        audit.USER_PERMISSION_DENIED,
        audit.USER_PERMISSION_REMOVED,
        audit.USER_ROLE_REMOVED,
    ]

    first = await PermissionAuditLog.filter(action=audit.ROLE_PERMISSIONS_SET).first()
    assert first.target_role_id == role.id
    assert first.ip_address == "10.0.0.1"
    assert first.details == {"added": [permission.id], "removed": []}


async def test_failed_mutation_leaves_no_audit_row(make_role):
    role = await make_role("sales")

    with pytest.raises(NotFound):
        await grants.set_role_permissions(role.id, [424242])

    assert await PermissionAuditLog.all().count() == 0


async def test_uniqueness_violation_becomes_data_integrity_error(make_role, make_permission, monkeypatch):
    role = await make_role("sales")
    permission = await make_permission("orders.view")

    async def duplicate(*args, **kwargs):
        raise IntegrityError("UNIQUE constraint failed: role_permissions.role_id, role_permissions.permission_id")

    monkeypatch.setattr(RolePermission, "bulk_create", classmethod(duplicate))

    with pytest.raises(DataIntegrityError) as exc_info:
        await grants.set_role_permissions(role.id, [permission.id])

    assert exc_info.value.status_code == 409
    assert await RolePermission.filter(role_id=role.id).count() == 0
    assert await PermissionAuditLog.all().count() == 0


@pytest.fixture
def audit_lines():
    lines = []
    sink_id = logger.add(
        lambda message: lines.append(message.record),
        filter=lambda record: record["extra"].get("audit") is True,
    )
    yield lines
    logger.remove(sink_id)


async def test_audit_file_line_follows_commit(make_role, audit_lines):
    role = await make_role("temp")

    await grants.delete_role(role.id)

    assert [line["extra"]["target_role_id"] for line in audit_lines] == [role.id]


async def test_rolled_back_delete_leaves_no_audit_trace(make_role, audit_lines, monkeypatch):
    role = await make_role("temp")

    async def broken(self, using_db=None):
        raise OperationalError("connection reset")

    monkeypatch.setattr(Role, "delete", broken)

    with pytest.raises(OperationalError):
        await grants.delete_role(role.id)

    assert audit_lines == []
    assert await PermissionAuditLog.all().count() == 0
    assert await Role.filter(id=role.id).exists()
