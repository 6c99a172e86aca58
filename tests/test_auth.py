from datetime import datetime, timedelta, timezone

import jwt

from repgraph.auth import (
    ANONYMOUS, JWT_ALGORITHM, Caller, create_access_token, decode_access_token,
)
from repgraph.config import Settings


def _settings(monkeypatch, operators: str = "") -> Settings:
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("OPERATOR_USER_IDS", operators)
    return Settings()


def test_round_trip_user_token(monkeypatch) -> None:
    settings = _settings(monkeypatch)

    caller = decode_access_token(create_access_token("alice", settings=settings), settings)

    assert caller == Caller(user_id="alice", is_operator=False)
    assert caller.owns("alice") and not caller.owns("bob")
    assert caller.can_act_for("alice") and not caller.can_act_for("bob")


def test_operator_from_role_or_allowlist(monkeypatch) -> None:
    settings = _settings(monkeypatch, operators="root, ops")

    assert decode_access_token(create_access_token("x", operator=True, settings=settings), settings).is_operator
    assert decode_access_token(create_access_token("ops", settings=settings), settings).is_operator
    assert decode_access_token(create_access_token("bob", settings=settings), settings).can_act_for("alice") is False


def test_bad_tokens_are_anonymous(monkeypatch) -> None:
    settings = _settings(monkeypatch)
    expired = jwt.encode(
        {"user_id": "alice", "exp": datetime.now(timezone.utc) - timedelta(minutes=1)},
        "test-secret", algorithm=JWT_ALGORITHM,
    )
    forged = jwt.encode({"user_id": "alice"}, "other-secret", algorithm=JWT_ALGORITHM)
    no_user = jwt.encode({"role": "operator"}, "test-secret", algorithm=JWT_ALGORITHM)

    for token in (expired, forged, no_user, "not-a-jwt"):
        assert decode_access_token(token, settings) == ANONYMOUS
    assert ANONYMOUS.is_anonymous
    assert not ANONYMOUS.owns(None)
