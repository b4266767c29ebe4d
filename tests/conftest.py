import os

# Settings are read at import time; the test environment must be in place first.
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-ameenhub")
os.environ.setdefault("POSTGRES_SERVER", "localhost")
os.environ.setdefault("POSTGRES_USER", "ameenhub")
os.environ.setdefault("POSTGRES_PASSWORD", "ameenhub")
os.environ.setdefault("POSTGRES_DB", "ameenhub_test")
os.environ.setdefault("POSTGRES_PORT", "5432")
os.environ.setdefault("REDIS_HOST", "localhost")
os.environ.setdefault("REDIS_PORT", "6379")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
from httpx import ASGITransport, AsyncClient
from tortoise import Tortoise, connections

from app.core.security import create_access_token, get_password_hash
from app.db.config import get_tortoise_config
from app.models.permission import Permission, PermissionCategory, Role, RolePermission, UserRole
from app.models.user import User

TEST_PASSWORD = "secret123"
TEST_PASSWORD_HASH = get_password_hash(TEST_PASSWORD)


@pytest.fixture
async def db():
    await Tortoise.init(config=get_tortoise_config("sqlite://:memory:", with_aerich=False))
    await Tortoise.generate_schemas()
    yield
    await connections.close_all(discard=True)


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    async def factory(username=None, **kwargs):
        counter["n"] += 1
        username = username or f"user{counter['n']}"
        defaults = {
            "email": f"{username}@ameenhub.com",
            "full_name": username.title(),
            "hashed_password": TEST_PASSWORD_HASH,
        }
        defaults.update(kwargs)
        return await User.create(username=username, **defaults)

    return factory


@pytest.fixture
def make_permission(db):
    async def factory(code, **kwargs):
        defaults = {
            "module": code.split(".", 1)[0],
            "category": PermissionCategory.API,
            "name_en": code,
            "name_ar": code,
        }
        defaults.update(kwargs)
        return await Permission.create(code=code, **defaults)

    return factory


@pytest.fixture
def make_role(db, make_permission):
    """Creates a role granting the given codes; missing permissions are created on the fly."""

    async def factory(code, permissions=(), **kwargs):
        defaults = {"name_en": code, "name_ar": code}
        defaults.update(kwargs)
        role = await Role.create(code=code, **defaults)
        for permission_code in permissions:
            permission = await Permission.get_or_none(code=permission_code)
            if permission is None:
                permission = await make_permission(permission_code)
            await RolePermission.create(role=role, permission=permission)
        return role

    return factory


@pytest.fixture
def assign_role(db):
    async def factory(user, role):
        return await UserRole.create(user=user, role=role)

    return factory


@pytest.fixture
def auth_headers():
    def build(user):
        return {"Authorization": f"Bearer {create_access_token(user.id, username=user.username)}"}

    return build


@pytest.fixture
def app(db):
    from main import create_application

    return create_application(with_database=False, file_logs=False)


@pytest.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
