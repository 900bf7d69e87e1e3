"""
auth/sessions.py -- Session lifecycle: register, login, refresh, logout.

SessionManager holds no state between calls; every invariant is enforced by
CredentialStore transactions.

Token pair contract (register, login, refresh, create_session_for_user):
  - access token:  JWT signed with the access secret, jwt_access_ttl_seconds.
  - refresh token: JWT signed with the refresh secret, jwt_refresh_ttl_seconds.
  - one RefreshTokenRecord per refresh token, holding only its hash, with
    expires_at taken from the same instant as the JWT exp claim.
  Several active records per user are normal (one per device/session).

Rotation [R1]: a refresh token is single-use. refresh() revokes the matched
record and inserts the replacement in one transaction. Presenting the old
token again finds no active record and fails -- this is also how reuse of a
stolen token surfaces to the legitimate client.

Enumeration [E1]: login() raises the same Unauthorized message for an unknown
email and a wrong password, and runs one bcrypt check in both cases.
refresh() uses one message for every kind of revoked/unknown token.

bcrypt and JWT work is synchronous and CPU-bound. The HTTP layer calls these
methods from plain `def` route handlers, which FastAPI runs in its thread pool.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError

from auth.errors import BadRequest, Conflict, Unauthorized
from auth.models import AuthResult, RefreshTokenRecord, SessionTokens, User
from auth.store import CredentialStore, to_iso
from auth.tokens import (
    burn_password_check,
    decode_token,
    hash_password,
    hash_token,
    password_too_long,
    sign_token,
    verify_password,
    verify_token,
)
from core.config import Settings, get_settings

logger = logging.getLogger("tenantauth.sessions")

_BAD_CREDENTIALS = "Invalid credentials"
INVALID_REFRESH = "Invalid refresh token"
_REVOKED_REFRESH = "Refresh token revoked"
_BAD_ACCESS = "Invalid or expired access token"


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _issue_instant() -> datetime:
    # JWT exp has whole-second precision; truncating here keeps the stored
    # expires_at identical to the signed claim.
    return datetime.now(timezone.utc).replace(microsecond=0)


class SessionManager:
    """Issues, rotates and revokes token pairs against a CredentialStore."""

    def __init__(self, store: CredentialStore, settings: Settings | None = None) -> None:
        self.store = store
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def register(self, email: str, password: str) -> AuthResult:
        """Create an account and log it in.

        Raises:
            Conflict:   the email is already registered.
            BadRequest: the password is longer than bcrypt accepts.
        """
        email = normalize_email(email)
        if self.store.find_user_by_email(email) is not None:
            raise Conflict("Email already in use")
        if password_too_long(password):
            raise BadRequest("Password is too long")

        password_hash = hash_password(password, self.settings.password_hash_rounds)
        try:
            user = self.store.create_user(User(email=email, password_hash=password_hash))
        except IntegrityError as exc:
            # A concurrent registration won the unique index
            raise Conflict("Email already in use") from exc

        logger.info("User %s registered", user.id)
        tokens = self.create_session_for_user(user)
        return AuthResult(user=user, access_token=tokens.access_token, refresh_token=tokens.refresh_token)

    def login(self, email: str, password: str) -> AuthResult:
        """Authenticate with email and password and open a new session [E1]."""
        user = self.store.find_user_by_email(normalize_email(email))
        if user is None:
            # Equalize timing -- do NOT return before running bcrypt
            burn_password_check(password, self.settings.password_hash_rounds)
            raise Unauthorized(_BAD_CREDENTIALS)
        if not verify_password(password, user.password_hash):
            raise Unauthorized(_BAD_CREDENTIALS)

        tokens = self.create_session_for_user(user)
        return AuthResult(user=user, access_token=tokens.access_token, refresh_token=tokens.refresh_token)

    def refresh(self, refresh_token: str) -> SessionTokens:
        """Exchange a refresh token for a new pair, revoking the presented one [R1].

        Steps:
          1. Verify signature and exp with the refresh secret.
          2. Load the subject's active records, newest first, bounded by
             refresh_scan_limit.
          3. bcrypt-compare the token against each until one matches.
          4. Atomically revoke the match and store the replacement. If a
             racing request already revoked it, this call loses.
        """
        payload = decode_token(refresh_token, self.settings.jwt_refresh_secret)
        if payload is None:
            raise Unauthorized(INVALID_REFRESH)

        user_id = payload["user_id"]
        candidates = self.store.list_active_refresh_tokens_by_user(user_id, self.settings.refresh_scan_limit)
        match = next((r for r in candidates if verify_token(refresh_token, r.token_hash)), None)
        if match is None:
            logger.warning("Refresh token for user %s is revoked or unknown", user_id)
            raise Unauthorized(_REVOKED_REFRESH)

        issued_at = _issue_instant()
        access_token, new_refresh_token, replacement = self._mint(user_id, payload["email"], issued_at)
        stored = self.store.rotate_refresh_token(match.id, replacement)
        if stored is None:
            logger.warning("Refresh token %s for user %s was rotated concurrently", match.id, user_id)
            raise Unauthorized(_REVOKED_REFRESH)

        return SessionTokens(access_token=access_token, refresh_token=new_refresh_token)

    def logout(self, refresh_token: str) -> None:
        """Best-effort revocation of a refresh token. Always succeeds.

        Scans the newest logout_scan_limit active records across all users.
        Every candidate is compared even after a match, so neither timing nor
        the (absent) return value tells the caller whether anything matched.
        """
        candidates = self.store.list_all_active_refresh_tokens(self.settings.logout_scan_limit)
        match: RefreshTokenRecord | None = None
        for record in candidates:
            if verify_token(refresh_token, record.token_hash) and match is None:
                match = record
        if match is not None and self.store.revoke_refresh_token(match.id):
            logger.info("Refresh token %s revoked on logout", match.id)

    def create_session_for_user(self, user: User) -> SessionTokens:
        """Mint and persist a token pair without a password check.

        Entry point for flows that have already established the user's
        identity (registration, login, invitation acceptance).
        """
        access_token, refresh_token, record = self._mint(user.id, user.email, _issue_instant())
        self.store.create_refresh_token(record)
        return SessionTokens(access_token=access_token, refresh_token=refresh_token)

    def authenticate(self, access_token: str) -> User:
        """Resolve a bearer access token to its user.

        Raises Unauthorized if the token is invalid, expired, signed with the
        refresh secret, or names a user that no longer exists.
        """
        payload = decode_token(access_token, self.settings.jwt_access_secret)
        if payload is None:
            raise Unauthorized(_BAD_ACCESS)
        user = self.store.find_user_by_id(payload["user_id"])
        if user is None:
            raise Unauthorized(_BAD_ACCESS)
        return user

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _mint(self, user_id: int, email: str, issued_at: datetime) -> tuple[str, str, RefreshTokenRecord]:
        """Return (access_token, refresh_token, unsaved record for the refresh token)."""
        s = self.settings
        access_token = sign_token(user_id, email, s.jwt_access_secret, s.jwt_access_ttl_seconds, issued_at)
        refresh_token = sign_token(user_id, email, s.jwt_refresh_secret, s.jwt_refresh_ttl_seconds, issued_at)
        record = RefreshTokenRecord(
            user_id=user_id,
            token_hash=hash_token(refresh_token, s.token_hash_rounds),
            expires_at=to_iso(issued_at + timedelta(seconds=s.jwt_refresh_ttl_seconds)),
        )
        return access_token, refresh_token, record
