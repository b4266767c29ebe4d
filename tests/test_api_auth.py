import pytest

from app.core.redis import redis_client

API = "/api/v1"
TEST_PASSWORD = "secret123"


@pytest.fixture
def fake_redis(monkeypatch):
    store = {}

    async def fake_set(key, value, expire=None):
        store[key] = value
        return True

    async def fake_exists(key):
        return key in store

    monkeypatch.setattr(redis_client, "set", fake_set)
    monkeypatch.setattr(redis_client, "exists", fake_exists)
    return store


async def _login(client, username, password=TEST_PASSWORD):
    return await client.post(f"{API}/auth/login", data={"username": username, "password": password})


async def test_login_returns_token_pair(client, make_user):
    await make_user("alice")

    response = await _login(client, "alice")

    assert response.status_code == 200
    body = response.json()
    assert body["token_type"] == "bearer"
    assert body["access_token"] and body["refresh_token"]


async def test_login_with_wrong_password(client, make_user):
    await make_user("alice")

    response = await _login(client, "alice", "nope")

    assert response.status_code == 401
    assert response.json()["code"] == 401


async def test_inactive_user_cannot_login(client, make_user):
    await make_user("alice", is_active=False)

    response = await _login(client, "alice")

    assert response.status_code == 400


async def test_me_requires_access_token(client, make_user):
    await make_user("alice")
    tokens = (await _login(client, "alice")).json()

    ok = await client.get(f"{API}/auth/me", headers={"Authorization": f"Bearer {tokens['access_token']}"})
    wrong_type = await client.get(f"{API}/auth/me", headers={"Authorization": f"Bearer {tokens['refresh_token']}"})
    anonymous = await client.get(f"{API}/auth/me")

    assert ok.status_code == 200
    assert ok.json()["username"] == "alice"
    assert ok.json()["roles"] == []
    assert wrong_type.status_code == 401
    assert anonymous.status_code == 401


async def test_refresh_rotates_tokens(client, make_user, fake_redis):
    await make_user("alice")
    tokens = (await _login(client, "alice")).json()

    refreshed = await client.post(f"{API}/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    reused = await client.post(f"{API}/auth/refresh", json={"refresh_token": tokens["refresh_token"]})

    assert refreshed.status_code == 200
    assert refreshed.json()["refresh_token"] != tokens["refresh_token"]
    assert reused.status_code == 401


async def test_logout_revokes_refresh_token(client, make_user, fake_redis):
    await make_user("alice")
    tokens = (await _login(client, "alice")).json()

    response = await client.post(f"{API}/auth/logout", json={"refresh_token": tokens["refresh_token"]})
    after = await client.post(f"{API}/auth/refresh", json={"refresh_token": tokens["refresh_token"]})

    assert response.status_code == 200
    assert len(fake_redis) == 1
    assert after.status_code == 401


async def test_my_permissions(client, make_user, make_role, assign_role, auth_headers):
    user = await make_user("alice")
    await assign_role(user, await make_role("sales", ["orders.view", "orders.edit"]))

    response = await client.get(f"{API}/auth/my-permissions", headers=auth_headers(user))

    assert response.status_code == 200
    assert response.json() == {"permissions": ["orders.edit", "orders.view"], "denied": [], "has_wildcard": False}


async def test_reset_password(client, make_user, auth_headers):
    user = await make_user("alice")

    wrong = await client.post(
        f"{API}/auth/reset-password",
        json={"current_password": "bad", "new_password": "brand-new-pass"},
        headers=auth_headers(user),
    )
    ok = await client.post(
        f"{API}/auth/reset-password",
        json={"current_password": TEST_PASSWORD, "new_password": "brand-new-pass"},
        headers=auth_headers(user),
    )

    assert wrong.status_code == 400
    assert ok.status_code == 200
    assert (await _login(client, "alice", "brand-new-pass")).status_code == 200
