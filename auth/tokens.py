"""
auth/tokens.py -- JWT signing, bcrypt hashing, and random token utilities.

Security design decisions:
  JWT: python-jose with HS256. Access and refresh tokens use different
       secrets (see core/config.py [S2]) and carry sub, user_id, email, iat,
       exp and a random jti. The jti keeps two tokens minted for the same user
       in the same second from being byte-identical -- rotation relies on the
       new refresh token never equalling the one it replaces. Verification
       returns None on any failure; managers turn that into Unauthorized.

  Passwords: bcrypt directly (no passlib wrapper). Cost factor comes from
       Settings.password_hash_rounds (12 in production). _dummy_hash() backs
       timing equalization in SessionManager.login() so response time does
       not reveal whether an email is registered.

  Opaque tokens (refresh tokens, invite tokens): bcrypt only reads the first
       72 bytes of its input, and JWTs for one subject share far more than 72
       bytes of header and payload. Tokens are reduced to their SHA-256 hex
       digest (64 bytes) before bcrypt so the full token is bound into the
       hash. bcrypt's random salt means stored hashes cannot be looked up by
       equality; callers scan a bounded candidate set with verify_token().

  Invite tokens: secrets.token_hex(32) gives 256 bits of entropy.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from functools import lru_cache

import bcrypt
from jose import JWTError, jwt

from core.config import Settings

_ALGORITHM = "HS256"

# bcrypt rejects (5.x) or truncates (4.x) input beyond this length.
MAX_PASSWORD_BYTES = 72

# The refresh cookie is only sent to the auth routes that consume it.
REFRESH_COOKIE_PATH = "/api/v1/auth"


# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def password_too_long(plain: str) -> bool:
    return len(plain.encode("utf-8")) > MAX_PASSWORD_BYTES


def hash_password(plain: str, rounds: int = 12) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Callers must reject passwords longer than MAX_PASSWORD_BYTES first
    (password_too_long); bcrypt raises ValueError for them.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Over-long input or a malformed stored hash -- never a match.
        return False


@lru_cache
def _dummy_hash(rounds: int) -> str:
    # One per cost factor, so the dummy check costs the same as a real one.
    return hash_password("tenantauth_timing_dummy", rounds)


def burn_password_check(plain: str, rounds: int) -> None:
    """Run a bcrypt check that always fails, for timing equalization."""
    verify_password(plain, _dummy_hash(rounds))


# ---------------------------------------------------------------------------
# Opaque token hashing
# ---------------------------------------------------------------------------


def _prehash(raw_token: str) -> bytes:
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest().encode("ascii")


def hash_token(raw_token: str, rounds: int = 10) -> str:
    """Return a salted one-way hash of a refresh or invite token for storage."""
    return bcrypt.hashpw(_prehash(raw_token), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_token(raw_token: str, hashed: str) -> bool:
    """Constant-work comparison of a presented token against a stored hash."""
    try:
        return bcrypt.checkpw(_prehash(raw_token), hashed.encode("utf-8"))
    except ValueError:
        return False


def generate_invite_token() -> str:
    """Return a new invite token: 32 random bytes as 64 hex characters."""
    return secrets.token_hex(32)


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def sign_token(
    user_id: int,
    email: str,
    secret: str,
    ttl_seconds: int,
    issued_at: datetime | None = None,
) -> str:
    """Encode a signed JWT carrying the subject identity.

    Args:
        user_id:     Numeric user ID; also stored as the string sub claim.
        email:       Account email.
        secret:      Access or refresh secret -- never the same for both.
        ttl_seconds: Lifetime. exp = issued_at + ttl_seconds.
        issued_at:   Defaults to now. SessionManager passes the same instant
                     it uses for the stored record's expires_at so the two
                     expiries agree.
    """
    now = issued_at or datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "user_id": user_id,
        "email": email,
        "iat": now,
        "exp": now + timedelta(seconds=ttl_seconds),
        "jti": uuid.uuid4().hex,
    }
    return jwt.encode(payload, secret, algorithm=_ALGORITHM)


def decode_token(token: str, secret: str) -> dict | None:
    """Decode and verify a JWT. Returns the payload dict or None on any failure.

    Signature and exp are checked by python-jose. A token signed with the
    other secret fails the signature check, which is what keeps access and
    refresh tokens from being interchangeable.
    """
    try:
        payload = jwt.decode(token, secret, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if not isinstance(payload.get("user_id"), int) or "email" not in payload:
        return None
    return payload


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_refresh_cookie(response, token: str, settings: Settings) -> None:
    """Write the refresh token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    path: scoped to the auth routes so the token is not sent on every request.
    max_age: matches the refresh JWT expiry so both expire together.
    """
    response.set_cookie(
        settings.refresh_cookie_name,
        value=token,
        httponly=True,
        samesite=settings.cookie_samesite,
        secure=settings.cookie_secure,
        domain=settings.cookie_domain or None,
        path=REFRESH_COOKIE_PATH,
        max_age=settings.jwt_refresh_ttl_seconds,
    )


def clear_refresh_cookie(response, settings: Settings) -> None:
    response.delete_cookie(
        settings.refresh_cookie_name,
        path=REFRESH_COOKIE_PATH,
        domain=settings.cookie_domain or None,
        secure=settings.cookie_secure,
        httponly=True,
        samesite=settings.cookie_samesite,
    )
