import time

import pytest

from auth import (
    AuthenticationError,
    Identity,
    TokenExpired,
    TokenService,
    hash_password,
    verify_password,
)
from models import Role

ALICE = Identity(username="alice", email="alice@test.com", role=Role.regular)
BOB = Identity(username="bob", email="bob@test.com", role=Role.regular)


def make_tokens() -> TokenService:
    return TokenService("test-secret", access_ttl_secs=60, refresh_ttl_secs=600)


def expired(tokens: TokenService, identity: Identity) -> str:
    return tokens.issue(identity, -10)


def test_password_hash_roundtrip() -> None:
    hashed = hash_password("s3cret")

    assert hashed != "s3cret"
    assert verify_password("s3cret", hashed)
    assert not verify_password("wrong", hashed)


def test_valid_pair_resolves_identity() -> None:
    tokens = make_tokens()
    access, refresh = tokens.issue_pair(ALICE)

    resolution = tokens.resolve(access, refresh)

    assert resolution.identity == ALICE
    assert resolution.failure is None
    assert resolution.refreshed_access_token is None


def test_missing_cookie_is_unauthorized() -> None:
    tokens = make_tokens()
    access, refresh = tokens.issue_pair(ALICE)

    assert tokens.resolve(None, refresh).failure == "Unauthorized"
    assert tokens.resolve(access, "").failure == "Unauthorized"


def test_expired_access_is_refreshed_from_refresh_token() -> None:
    tokens = make_tokens()
    refresh = tokens.issue(ALICE, 600)

    resolution = tokens.resolve(expired(tokens, ALICE), refresh)

    assert resolution.identity == ALICE
    assert resolution.refreshed_access_token
    claims = tokens.decode(resolution.refreshed_access_token)
    assert claims["username"] == "alice"
    assert claims["exp"] > time.time()


def test_expired_refresh_requires_login() -> None:
    tokens = make_tokens()

    resolution = tokens.resolve(tokens.issue(ALICE, 60), expired(tokens, ALICE))

    assert resolution.identity is None
    assert resolution.failure == "Perform login again"


def test_mismatched_tokens_are_rejected() -> None:
    tokens = make_tokens()

    resolution = tokens.resolve(tokens.issue(ALICE, 60), tokens.issue(BOB, 600))

    assert resolution.failure == "Mismatched users"


def test_tampered_and_foreign_tokens_are_invalid() -> None:
    tokens = make_tokens()
    access, refresh = tokens.issue_pair(ALICE)
    foreign = TokenService("other-secret").issue(ALICE, 60)

    assert tokens.resolve(access[:-2] + "xx", refresh).failure == "Invalid token"
    assert tokens.resolve(foreign, refresh).failure == "Invalid token"


def test_incomplete_claims_are_reported() -> None:
    tokens = make_tokens()
    refresh = tokens.issue(ALICE, 600)
    no_email = tokens.sign(
        {"username": "alice", "role": "Regular", "exp": int(time.time()) + 60}
    )
    no_expiry = tokens.sign(
        {"username": "alice", "email": "alice@test.com", "role": "Regular"}
    )
    bad_role = tokens.sign(
        {
            "username": "alice",
            "email": "alice@test.com",
            "role": "Owner",
            "exp": int(time.time()) + 60,
        }
    )

    for token in (no_email, no_expiry, bad_role):
        assert tokens.resolve(token, refresh).failure == "Token is missing information"


def test_decode_raises_expired() -> None:
    tokens = make_tokens()

    with pytest.raises(TokenExpired):
        tokens.decode(expired(tokens, ALICE))
    with pytest.raises(AuthenticationError):
        tokens.decode("garbage")
