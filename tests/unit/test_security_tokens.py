from datetime import datetime, timedelta, timezone

import jwt

from greencart.config import settings
from greencart.utils.security import ROLES, create_access_token, decode_token


def test_access_token_carries_role_and_subject() -> None:
    payload = decode_token(create_access_token("user-42", role="dispatcher"))

    assert payload is not None
    assert payload["sub"] == "user-42"
    assert payload["role"] == "dispatcher"
    assert payload["type"] == "access"
    assert payload["jti"]


def test_roles_are_fixed() -> None:
    assert ROLES == ("admin", "manager", "dispatcher")


def test_decode_rejects_garbage_and_foreign_signature() -> None:
    assert decode_token("not-a-jwt") is None

    forged = jwt.encode(
        {"sub": "user-1", "type": "access", "role": "admin", "exp": datetime.now(timezone.utc) + timedelta(minutes=5)},
        "some-other-secret-with-enough-length!!",
        algorithm=settings.JWT_ALGORITHM,
    )
    assert decode_token(forged) is None


def test_decode_rejects_expired_token() -> None:
    expired = jwt.encode(
        {"sub": "user-1", "type": "access", "role": "manager", "exp": datetime.now(timezone.utc) - timedelta(minutes=1)},
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )
    assert decode_token(expired) is None


def test_decode_checks_token_type() -> None:
    refresh = jwt.encode(
        {"sub": "user-1", "type": "refresh", "role": "manager", "exp": datetime.now(timezone.utc) + timedelta(minutes=5)},
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )
    assert decode_token(refresh) is None
    assert decode_token(refresh, expected_type="refresh") is not None


def test_decode_requires_subject() -> None:
    no_sub = jwt.encode(
        {"type": "access", "exp": datetime.now(timezone.utc) + timedelta(minutes=5)},
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )
    assert decode_token(no_sub) is None
