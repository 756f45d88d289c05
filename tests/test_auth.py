"""
Tests for bearer credential verification.
"""

from datetime import timedelta

import jwt
import pytest

from defense_gateway.auth.bearer import create_access_token, extract_bearer, verify_bearer
from defense_gateway.config import Settings
from defense_gateway.errors import AuthError

SECRET = "unit-test-secret-key-0123456789abcdef"


@pytest.fixture
def cfg():
    return Settings(jwt_secret=SECRET)


def test_round_trip(cfg):
    token = create_access_token("user-1", cfg, role="admin")
    user = verify_bearer(f"Bearer {token}", cfg)
    assert user.id == "user-1"
    assert user.is_admin("admin")


def test_scheme_is_case_insensitive(cfg):
    token = create_access_token("user-1", cfg)
    assert verify_bearer(f"bearer {token}", cfg).id == "user-1"


def test_missing_header(cfg):
    with pytest.raises(AuthError) as exc:
        verify_bearer(None, cfg)
    assert exc.value.status_code == 401


def test_wrong_scheme():
    with pytest.raises(AuthError):
        extract_bearer("Basic dXNlcjpwYXNz")
    with pytest.raises(AuthError):
        extract_bearer("Bearer ")


def test_expired_token(cfg):
    token = create_access_token("user-1", cfg, expires_in=timedelta(seconds=-10))
    with pytest.raises(AuthError) as exc:
        verify_bearer(f"Bearer {token}", cfg)
    assert exc.value.detail == "Token has expired"


def test_wrong_signature(cfg):
    token = create_access_token("user-1", Settings(jwt_secret="another-secret-key-0123456789abcdef"))
    with pytest.raises(AuthError):
        verify_bearer(f"Bearer {token}", cfg)


def test_token_without_subject(cfg):
    token = jwt.encode({"exp": 9_999_999_999}, SECRET, algorithm="HS256")
    with pytest.raises(AuthError):
        verify_bearer(f"Bearer {token}", cfg)
