"""Unit tests for access/refresh token signing and verification."""

import base64
import json

import pytest

from tenantauth.config import get_settings
from tenantauth.service.errors import InvalidTokenError
from tenantauth.service.tokens import Principal, TokenCodec, merge_roles


def _decode_payload(token: str) -> dict:
    segment = token.split(".")[1]
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return json.loads(base64.urlsafe_b64decode(segment + padding))


def _forge(token: str, **changes) -> str:
    header, payload, signature = token.split(".")
    claims = _decode_payload(token)
    claims.update(changes)
    encoded = base64.urlsafe_b64encode(json.dumps(claims).encode()).decode().rstrip("=")
    return f"{header}.{encoded}.{signature}"


class _Clock:
    def __init__(self, now: float):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return _Clock(1_700_000_000.0)


@pytest.fixture
def codec(clock):
    return TokenCodec(get_settings(), clock=clock)


@pytest.fixture
def principal():
    return Principal(
        user_id="user-1", email="a@x.com", tenant_id="tenant-1", roles=["trainer"]
    )


def test_access_token_payload_shape(codec, principal, clock):
    token = codec.sign_access_token(principal)
    payload = _decode_payload(token)

    assert payload["sub"] == "user-1"
    assert payload["id"] == "user-1"
    assert payload["email"] == "a@x.com"
    assert payload["tenantId"] == "tenant-1"
    assert payload["roles"] == ["trainer"]
    assert payload["iat"] == int(clock.now)
    assert payload["exp"] == int(clock.now) + get_settings().access_token_ttl_seconds
    assert payload["token_type"] == "access"


def test_access_token_round_trips_principal(codec, principal):
    verified = codec.verify_access_token(codec.sign_access_token(principal))
    assert verified == principal


def test_access_token_with_null_tenant(codec):
    token = codec.sign_access_token(Principal(user_id="u", email="u@x.com"))
    verified = codec.verify_access_token(token)
    assert verified.tenant_id is None
    assert verified.roles == []


def test_refresh_token_carries_subject_only(codec):
    payload = _decode_payload(codec.sign_refresh_token("user-1"))
    assert payload["sub"] == "user-1"
    assert payload["token_type"] == "refresh"
    assert "email" not in payload
    assert "roles" not in payload


def test_refresh_tokens_minted_together_differ(codec):
    assert codec.sign_refresh_token("user-1") != codec.sign_refresh_token("user-1")


def test_access_and_refresh_secrets_are_not_interchangeable(codec, principal):
    access = codec.sign_access_token(principal)
    refresh = codec.sign_refresh_token("user-1")

    with pytest.raises(InvalidTokenError):
        codec.verify_refresh_token(access)
    with pytest.raises(InvalidTokenError):
        codec.verify_access_token(refresh)


def test_expired_token_rejected_after_leeway(codec, principal, clock):
    token = codec.sign_access_token(principal)
    settings = get_settings()

    clock.now += settings.access_token_ttl_seconds + settings.jwt_leeway_seconds - 1
    assert codec.verify_access_token(token).user_id == "user-1"

    clock.now += 2
    with pytest.raises(InvalidTokenError):
        codec.verify_access_token(token)


def test_tampered_payload_rejected(codec, principal):
    token = codec.sign_access_token(principal)
    forged = _forge(token, roles=["platform_admin"])
    with pytest.raises(InvalidTokenError):
        codec.verify_access_token(forged)


def test_alg_none_rejected(codec, principal):
    token = codec.sign_access_token(principal)
    _, payload, _ = token.split(".")
    header = base64.urlsafe_b64encode(b'{"alg":"none","typ":"JWT"}').decode().rstrip("=")
    with pytest.raises(InvalidTokenError):
        codec.verify_access_token(f"{header}.{payload}.")


@pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d", "ünïcode.tök.en"])
def test_malformed_tokens_fail_uniformly(codec, garbage):
    with pytest.raises(InvalidTokenError) as excinfo:
        codec.verify_access_token(garbage)
    assert excinfo.value.message == "invalid token"


def test_wrong_audience_rejected(principal, clock):
    settings = get_settings()
    other = TokenCodec(
        settings.model_copy(update={"jwt_audience": "someone-else"}), clock=clock
    )
    token = other.sign_access_token(principal)
    with pytest.raises(InvalidTokenError):
        TokenCodec(settings, clock=clock).verify_access_token(token)


def test_merge_roles_preserves_order_and_dedupes():
    assert merge_roles(["learner", "trainer"], ["trainer", "platform_admin"]) == [
        "learner",
        "trainer",
        "platform_admin",
    ]
    assert merge_roles([], None) == []
