from datetime import timedelta

import pytest

from app.core.exceptions import AuthenticationError
from app.core.security import (
    ACCESS_TOKEN,
    REFRESH_TOKEN,
    create_access_token,
    create_refresh_token,
    decode_token,
    get_password_hash,
    is_refresh_token_revoked,
    verify_password,
)
from app.schemas.token import TokenPayload


def test_password_hash_roundtrip():
    hashed = get_password_hash("s3cret-pass")

    assert hashed != "s3cret-pass"
    assert verify_password("s3cret-pass", hashed)
    assert not verify_password("wrong", hashed)


def test_access_token_carries_subject_and_type():
    token = create_access_token(42, username="alice")

    payload = decode_token(token, ACCESS_TOKEN)

    assert payload.sub == 42
    assert payload.type == "access"
    assert payload.username == "alice"
    assert payload.jti


def test_token_type_is_enforced():
    refresh = create_refresh_token(42)
    access = create_access_token(42)

    with pytest.raises(AuthenticationError):
        decode_token(refresh, ACCESS_TOKEN)
    with pytest.raises(AuthenticationError):
        decode_token(access, REFRESH_TOKEN)


def test_expired_token_is_rejected():
    token = create_access_token(42, expires_delta=timedelta(seconds=-10))

    with pytest.raises(AuthenticationError) as exc_info:
        decode_token(token, ACCESS_TOKEN)

    assert exc_info.value.status_code == 401


def test_garbage_token_is_rejected():
    with pytest.raises(AuthenticationError):
        decode_token("not-a-jwt", ACCESS_TOKEN)


async def test_refresh_token_without_jti_counts_as_revoked():
    payload = TokenPayload(sub=1, exp=0, type="refresh", jti=None)

    assert await is_refresh_token_revoked(payload) is True
