"""
tests/test_tokens.py -- Unit tests for auth/tokens.py.

Covers:
  - Password hashing: verify, wrong password, malformed hash, 72-byte limit
  - Opaque token hashing: salted, full-length binding past bcrypt's 72 bytes
  - JWT: claims, distinct jti per mint, wrong secret, expiry, tampering
  - Refresh cookie attributes
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.responses import JSONResponse

from auth.tokens import (
    REFRESH_COOKIE_PATH,
    clear_refresh_cookie,
    decode_token,
    generate_invite_token,
    hash_password,
    hash_token,
    password_too_long,
    sign_token,
    verify_password,
    verify_token,
)

ACCESS_SECRET = "x" * 40
REFRESH_SECRET = "y" * 40


class TestPasswordHashing:
    def test_round_trip(self) -> None:
        hashed = hash_password("s3cret-pass", rounds=4)
        assert hashed.startswith("$2")
        assert verify_password("s3cret-pass", hashed)

    def test_wrong_password_rejected(self) -> None:
        hashed = hash_password("s3cret-pass", rounds=4)
        assert not verify_password("s3cret-pasS", hashed)

    def test_malformed_hash_returns_false(self) -> None:
        """A corrupt stored hash must fail closed rather than raise."""
        assert verify_password("anything", "not-a-bcrypt-hash") is False

    def test_same_password_hashes_differently(self) -> None:
        assert hash_password("pw-12345", rounds=4) != hash_password("pw-12345", rounds=4)

    @pytest.mark.parametrize(
        ("plain", "too_long"),
        [
            ("a" * 72, False),
            ("a" * 73, True),
            ("é" * 36, False),  # 2 bytes each -> 72 bytes
            ("é" * 37, True),
        ],
    )
    def test_password_too_long_counts_utf8_bytes(self, plain: str, too_long: bool) -> None:
        assert password_too_long(plain) is too_long


class TestTokenHashing:
    def test_round_trip(self) -> None:
        token = generate_invite_token()
        hashed = hash_token(token, rounds=4)
        assert verify_token(token, hashed)
        assert not verify_token(generate_invite_token(), hashed)

    def test_hash_is_salted(self) -> None:
        token = generate_invite_token()
        assert hash_token(token, rounds=4) != hash_token(token, rounds=4)

    def test_tokens_sharing_long_prefix_are_distinguished(self) -> None:
        """Two tokens identical in their first 100 bytes must not verify against each other."""
        prefix = "p" * 100
        hashed = hash_token(prefix + "-one", rounds=4)
        assert verify_token(prefix + "-one", hashed)
        assert not verify_token(prefix + "-two", hashed)

    def test_malformed_hash_returns_false(self) -> None:
        assert verify_token("tok", "") is False

    def test_invite_token_shape(self) -> None:
        token = generate_invite_token()
        assert len(token) == 64
        int(token, 16)


class TestJwt:
    def test_claims(self) -> None:
        token = sign_token(7, "a@example.com", ACCESS_SECRET, 900)
        payload = decode_token(token, ACCESS_SECRET)
        assert payload is not None
        assert payload["sub"] == "7"
        assert payload["user_id"] == 7
        assert payload["email"] == "a@example.com"
        assert payload["exp"] - payload["iat"] == 900
        assert payload["jti"]

    def test_same_instant_tokens_differ(self) -> None:
        issued_at = datetime.now(timezone.utc).replace(microsecond=0)
        first = sign_token(1, "a@example.com", REFRESH_SECRET, 60, issued_at)
        second = sign_token(1, "a@example.com", REFRESH_SECRET, 60, issued_at)
        assert first != second

    def test_wrong_secret_rejected(self) -> None:
        """An access token must not verify with the refresh secret, and vice versa."""
        access = sign_token(1, "a@example.com", ACCESS_SECRET, 900)
        refresh = sign_token(1, "a@example.com", REFRESH_SECRET, 900)
        assert decode_token(access, REFRESH_SECRET) is None
        assert decode_token(refresh, ACCESS_SECRET) is None

    def test_expired_token_rejected(self) -> None:
        issued_at = datetime.now(timezone.utc) - timedelta(hours=1)
        token = sign_token(1, "a@example.com", ACCESS_SECRET, 60, issued_at)
        assert decode_token(token, ACCESS_SECRET) is None

    def test_tampered_token_rejected(self) -> None:
        token = sign_token(1, "a@example.com", ACCESS_SECRET, 900)
        head, body, sig = token.split(".")
        tampered = ".".join([head, body, ("B" if sig[0] == "A" else "A") + sig[1:]])
        assert decode_token(tampered, ACCESS_SECRET) is None

    def test_garbage_rejected(self) -> None:
        assert decode_token("not.a.jwt", ACCESS_SECRET) is None


class TestRefreshCookie:
    def test_clear_cookie_is_scoped_to_auth_path(self, settings) -> None:
        resp = JSONResponse(content={})
        clear_refresh_cookie(resp, settings)
        header = resp.headers["set-cookie"]
        assert header.startswith(f"{settings.refresh_cookie_name}=")
        assert f"Path={REFRESH_COOKIE_PATH}" in header
        assert "HttpOnly" in header
