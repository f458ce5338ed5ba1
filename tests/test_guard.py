"""Tests for resolving callers from the Authorization header."""

import base64
from datetime import timedelta

import pytest

from tokenkeeper.service.errors import (
    ExpiredCredentialError,
    MalformedCredentialError,
    MissingCredentialError,
)


def _token(codec, minutes=15):
    return codec.issue({"sub": "acct-42", "email": "guard@example.com"}, timedelta(minutes=minutes))


class TestAuthenticate:
    def test_valid_bearer_returns_identity(self, guard, codec):
        identity = guard.authenticate(f"Bearer {_token(codec)}")
        assert identity.owner_id == "acct-42"
        assert identity.email == "guard@example.com"

    def test_guard_never_touches_store(self, guard, codec, store):
        # Tokens for owners the store has never heard of still resolve
        assert store.accounts == {}
        assert guard.authenticate(f"Bearer {_token(codec)}").owner_id == "acct-42"

    @pytest.mark.parametrize("header", [None, "", "   "])
    def test_absent_header_is_missing(self, guard, header):
        with pytest.raises(MissingCredentialError):
            guard.authenticate(header)

    def test_bearer_without_token_is_missing(self, guard):
        with pytest.raises(MissingCredentialError):
            guard.authenticate("Bearer ")

    @pytest.mark.parametrize(
        "header",
        ["Basic dXNlcjpwYXNz", "Token abc", "bearer abc", "BEARER abc", "Bearerabc"],
    )
    def test_other_schemes_are_malformed(self, guard, header):
        with pytest.raises(MalformedCredentialError):
            guard.authenticate(header)

    def test_token_with_inner_whitespace_is_malformed(self, guard, codec):
        with pytest.raises(MalformedCredentialError):
            guard.authenticate(f"Bearer {_token(codec)} extra")

    def test_garbage_token_is_malformed(self, guard):
        with pytest.raises(MalformedCredentialError):
            guard.authenticate("Bearer not-a-token")

    def test_expired_token_is_expired(self, guard, codec, clock):
        header = f"Bearer {_token(codec, minutes=1)}"
        clock.advance(minutes=2)
        with pytest.raises(ExpiredCredentialError):
            guard.authenticate(header)


class TestAuthenticateOptional:
    def test_returns_identity_when_valid(self, guard, codec):
        assert guard.authenticate_optional(f"Bearer {_token(codec)}").owner_id == "acct-42"

    @pytest.mark.parametrize("header", [None, "Basic abc", "Bearer junk"])
    def test_returns_none_when_rejected(self, guard, header):
        assert guard.authenticate_optional(header) is None


def _nested_header_token():
    header = base64.urlsafe_b64encode(b"[" * 5000).decode().rstrip("=")
    return f"{header}.e30.sig"


class TestHostileHeaders:
    def test_nested_header_is_malformed(self, guard):
        with pytest.raises(MalformedCredentialError):
            guard.authenticate(f"Bearer {_nested_header_token()}")

    def test_nested_header_optional_returns_none(self, guard):
        assert guard.authenticate_optional(f"Bearer {_nested_header_token()}") is None
