import pytest
from tortoise.exceptions import IntegrityError, OperationalError

from app.core import permissions as engine
from app.core.catalog import sync_permission_catalog
from app.models.audit import PermissionAuditLog
from app.models.permission import Permission, Role, RolePermission, UserCustomPermission

API = "/api/v1"


@pytest.fixture
async def admin(make_user, assign_role):
    await sync_permission_catalog()
    user = await make_user("root")
    await assign_role(user, await Role.get(code="super_admin"))
    return user


async def test_anonymous_request_is_rejected(client):
    response = await client.get(f"{API}/roles")

    assert response.status_code == 401


async def test_role_listing_needs_roles_view(client, make_user, make_role, assign_role, auth_headers):
    user = await make_user()

    forbidden = await client.get(f"{API}/roles", headers=auth_headers(user))
    assert forbidden.status_code == 403
    assert forbidden.json()["code"] == 403
    assert forbidden.json()["details"]["required_permissions"] == ["roles.view"]

    await assign_role(user, await make_role("viewer", ["roles.view"]))
    allowed = await client.get(f"{API}/roles", headers=auth_headers(user))

    assert allowed.status_code == 200
    assert [role["code"] for role in allowed.json()] == ["viewer"]


async def test_specific_deny_beats_wildcard_over_http(client, admin, auth_headers):
    roles_view = await Permission.get(code="roles.view")
    await UserCustomPermission.create(user=admin, permission=roles_view, is_granted=False)

    assert (await client.get(f"{API}/roles", headers=auth_headers(admin))).status_code == 403
    assert (await client.get(f"{API}/users", headers=auth_headers(admin))).status_code == 200


async def test_store_failure_is_never_allowed(client, admin, auth_headers, monkeypatch):
    async def broken(user_id):
        raise OperationalError("connection refused")

    monkeypatch.setattr(engine, "get_effective_permissions", broken)

    response = await client.get(f"{API}/roles", headers=auth_headers(admin))

    assert response.status_code == 500
    assert response.json()["code"] == 500


async def test_check_endpoint(client, make_user, make_role, assign_role, auth_headers):
    user = await make_user()
    await assign_role(user, await make_role("sales", ["orders.view"]))
    headers = auth_headers(user)

    single = await client.post(f"{API}/permissions/check", json={"permission": "orders.view"}, headers=headers)
    any_mode = await client.post(
        f"{API}/permissions/check", json={"permissions": ["orders.view", "orders.edit"]}, headers=headers
    )
    all_mode = await client.post(
        f"{API}/permissions/check",
        json={"permissions": ["orders.view", "orders.edit"], "mode": "all"},
        headers=headers,
    )
    empty = await client.post(f"{API}/permissions/check", json={}, headers=headers)

    assert single.json() == {"has_permission": True, "permissions": None}
    assert any_mode.json() == {"has_permission": True, "permissions": {"orders.view": True, "orders.edit": False}}
    assert all_mode.json()["has_permission"] is False
    assert empty.status_code == 422


async def test_check_other_user_needs_permissions_view(client, make_user, admin, auth_headers):
    user = await make_user()
    body = {"user_id": admin.id, "permission": "users.view"}

    denied = await client.post(f"{API}/permissions/check", json=body, headers=auth_headers(user))
    allowed = await client.post(
        f"{API}/permissions/check", json={"user_id": user.id, "permission": "users.view"}, headers=auth_headers(admin)
    )

    assert denied.status_code == 403
    assert allowed.status_code == 200
    assert allowed.json()["has_permission"] is False


async def test_replace_role_permissions(client, admin, make_role, auth_headers):
    role = await make_role("sales", ["customers.view"])
    ids = list(await Permission.filter(code__in=["messages.view", "messages.send"]).values_list("id", flat=True))

    response = await client.put(
        f"{API}/roles/{role.id}/permissions", json={"permission_ids": ids}, headers=auth_headers(admin)
    )

    assert response.status_code == 200
    assert {item["code"] for item in response.json()} == {"messages.view", "messages.send"}
    codes = await RolePermission.filter(role_id=role.id).values_list("permission__code", flat=True)
    assert set(codes) == {"messages.view", "messages.send"}


async def test_system_role_delete_is_rejected(client, admin, auth_headers):
    super_admin = await Role.get(code="super_admin")

    response = await client.delete(f"{API}/roles/{super_admin.id}", headers=auth_headers(admin))

    assert response.status_code == 400
    assert await Role.filter(id=super_admin.id).exists()


async def test_user_override_endpoints(client, admin, make_user, auth_headers):
    user = await make_user()
    permission = await Permission.get(code="customers.export")
    headers = auth_headers(admin)

    granted = await client.post(
        f"{API}/users/{user.id}/permissions", json={"permission_id": permission.id, "is_granted": True}, headers=headers
    )
    flipped = await client.post(
        f"{API}/users/{user.id}/permissions", json={"permission_id": permission.id, "is_granted": False}, headers=headers
    )
    custom = await client.get(f"{API}/users/{user.id}/permissions?custom_only=true", headers=headers)

    assert granted.status_code == 200
    assert flipped.json()["is_granted"] is False
    assert len(custom.json()) == 1
    assert custom.json()[0]["permission"]["code"] == permission.code

    removed = await client.delete(f"{API}/users/{user.id}/permissions/{permission.id}", headers=headers)
    missing = await client.delete(f"{API}/users/{user.id}/permissions/{permission.id}", headers=headers)

    assert removed.status_code == 200
    assert missing.status_code == 404


async def test_unknown_user_is_404(client, admin, auth_headers):
    response = await client.put(f"{API}/users/424242/roles", json={"role_ids": []}, headers=auth_headers(admin))

    assert response.status_code == 404


async def test_create_permission_grants_super_admin(client, admin, auth_headers):
    response = await client.post(
        f"{API}/permissions",
        json={
            "code": "reports.export",
            "module": "reports",
            "category": "feature",
            "name_en": "Export Reports",
            "name_ar": "تصدير التقارير",
        },
        headers=auth_headers(admin),
    )

    assert response.status_code == 200
    permission_id = response.json()["id"]
    super_admin = await Role.get(code="super_admin")
    assert await RolePermission.filter(role_id=super_admin.id, permission_id=permission_id).exists()


async def test_system_permission_cannot_be_deleted(client, admin, auth_headers):
    permission = await Permission.get(code="users.view")

    response = await client.delete(f"{API}/permissions/{permission.id}", headers=auth_headers(admin))

    assert response.status_code == 400


async def test_grouped_permissions(client, admin, auth_headers):
    response = await client.get(f"{API}/permissions/grouped", headers=auth_headers(admin))

    modules = [group["module"] for group in response.json()]
    assert response.status_code == 200
    assert modules == sorted(modules)
    assert "messages" in modules


async def test_sync_endpoint_skips_current_version(client, admin, auth_headers):
    response = await client.post(f"{API}/permissions/sync", headers=auth_headers(admin))
    forced = await client.post(f"{API}/permissions/sync?force=true", headers=auth_headers(admin))

    assert response.json()["skipped"] is True
    assert forced.json()["skipped"] is False


async def test_audit_log_listing(client, admin, make_user, make_role, auth_headers):
    user = await make_user()
    role = await make_role("sales")
    headers = auth_headers(admin)
    await client.post(f"{API}/users/{user.id}/roles/{role.id}", headers=headers)

    response = await client.get(f"{API}/audit-logs?target_user_id={user.id}", headers=headers)

    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 1
    assert body["items"][0]["action"] == "user_role_assigned"
    assert body["items"][0]["actor_user_id"] == admin.id
    assert await PermissionAuditLog.filter(target_user_id=user.id).count() == 1


async def test_health(client, db):
    response = await client.get(f"{API}/health")

    assert response.status_code == 200
    assert response.json()["database"] == "ok"


async def test_only_custom_permissions_are_editable(client, admin, make_permission, auth_headers):
    custom = await make_permission("reports.view")
    system = await Permission.get(code="users.view")
    headers = auth_headers(admin)

    edited = await client.put(f"{API}/permissions/{custom.id}", json={"name_en": "Reports"}, headers=headers)
    rejected = await client.put(f"{API}/permissions/{system.id}", json={"name_en": "Users"}, headers=headers)

    assert edited.status_code == 200
    assert edited.json()["name_en"] == "Reports"
    assert rejected.status_code == 400


async def test_uniqueness_violation_is_409(client, admin, make_role, auth_headers, monkeypatch):
    role = await make_role("sales")
    permission = await Permission.get(code="messages.view")

    async def duplicate(*args, **kwargs):
        raise IntegrityError("duplicate key value violates unique constraint")

    monkeypatch.setattr(RolePermission, "bulk_create", classmethod(duplicate))

    response = await client.put(
        f"{API}/roles/{role.id}/permissions", json={"permission_ids": [permission.id]}, headers=auth_headers(admin)
    )

    assert response.status_code == 409
    assert response.json()["code"] == 409


@pytest.mark.parametrize("body", [{"full_name": None}, {"is_active": None}, {"username": ""}, {"email": None}])
async def test_user_update_rejects_null_and_blank_fields(client, admin, make_user, auth_headers, body):
    user = await make_user("carol")

    response = await client.put(f"{API}/users/{user.id}", json=body, headers=auth_headers(admin))

    assert response.status_code == 422
    await user.refresh_from_db()
    assert user.username == "carol"
    assert user.full_name == "Carol"
    assert user.is_active is True


async def test_user_update_partial(client, admin, make_user, auth_headers):
    user = await make_user("carol")

    response = await client.put(
        f"{API}/users/{user.id}", json={"full_name": "Carol Haddad", "phone": None}, headers=auth_headers(admin)
    )

    assert response.status_code == 200
    assert response.json()["full_name"] == "Carol Haddad"
    assert response.json()["username"] == "carol"


async def test_role_update_rejects_null_name(client, admin, make_role, auth_headers):
    role = await make_role("sales", description_en="Sales team")
    headers = auth_headers(admin)

    rejected = await client.put(f"{API}/roles/{role.id}", json={"name_en": None}, headers=headers)
    cleared = await client.put(f"{API}/roles/{role.id}", json={"description_en": None}, headers=headers)

    assert rejected.status_code == 422
    assert cleared.status_code == 200
    await role.refresh_from_db()
    assert role.name_en == "sales"
    assert role.description_en is None
