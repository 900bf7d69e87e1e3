"""
tests/test_sessions.py -- SessionManager: register, login, refresh, logout, authenticate.

The rotation scenario at the bottom walks one session through two refreshes
and a replay of the first token, which is the contract clients depend on.
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from auth.errors import BadRequest, Conflict, Unauthorized
from auth.models import AuthResult
from auth.sessions import SessionManager, normalize_email
from auth.store import CredentialStore
from auth.tokens import decode_token, sign_token
from core.config import Settings

TEST_PASSWORD = "correct-horse-battery"


def register_user(sessions: SessionManager, email: str) -> AuthResult:
    return sessions.register(email, TEST_PASSWORD)


class TestRegister:
    def test_register_returns_user_and_tokens(self, sessions: SessionManager, settings: Settings) -> None:
        result = register_user(sessions, "alice@example.com")
        assert result.user.id is not None
        assert result.user.is_verified is False
        assert result.user.password_hash != TEST_PASSWORD

        access = decode_token(result.access_token, settings.jwt_access_secret)
        refresh = decode_token(result.refresh_token, settings.jwt_refresh_secret)
        assert access["user_id"] == refresh["user_id"] == result.user.id
        assert access["email"] == "alice@example.com"

    def test_register_stores_one_active_refresh_record(
        self, sessions: SessionManager, store: CredentialStore, settings: Settings
    ) -> None:
        result = register_user(sessions, "alice@example.com")
        records = store.list_active_refresh_tokens_by_user(result.user.id, 10)
        assert len(records) == 1
        assert records[0].token_hash != result.refresh_token

    def test_refresh_record_expiry_matches_jwt_exp(
        self, sessions: SessionManager, store: CredentialStore, settings: Settings
    ) -> None:
        result = register_user(sessions, "alice@example.com")
        exp = decode_token(result.refresh_token, settings.jwt_refresh_secret)["exp"]
        record = store.list_active_refresh_tokens_by_user(result.user.id, 10)[0]
        assert datetime.fromisoformat(record.expires_at) == datetime.fromtimestamp(exp, tz=timezone.utc)

    def test_email_is_normalized(self, sessions: SessionManager) -> None:
        result = register_user(sessions, "  Alice@Example.COM ")
        assert result.user.email == "alice@example.com"

    def test_duplicate_email_conflicts_case_insensitively(self, sessions: SessionManager) -> None:
        register_user(sessions, "alice@example.com")
        with pytest.raises(Conflict):
            register_user(sessions, "ALICE@example.com")

    def test_password_over_72_bytes_rejected(self, sessions: SessionManager) -> None:
        with pytest.raises(BadRequest):
            sessions.register("alice@example.com", "x" * 73)


class TestLogin:
    def test_login_success(self, sessions: SessionManager, store: CredentialStore) -> None:
        registered = register_user(sessions, "alice@example.com")
        result = sessions.login("Alice@example.com", TEST_PASSWORD)
        assert result.user.id == registered.user.id
        assert result.refresh_token != registered.refresh_token
        assert len(store.list_active_refresh_tokens_by_user(registered.user.id, 10)) == 2

    def test_wrong_password_and_unknown_email_look_the_same(self, sessions: SessionManager) -> None:
        register_user(sessions, "alice@example.com")
        with pytest.raises(Unauthorized) as wrong_password:
            sessions.login("alice@example.com", "not-the-password")
        with pytest.raises(Unauthorized) as unknown_email:
            sessions.login("nobody@example.com", TEST_PASSWORD)
        assert wrong_password.value.message == unknown_email.value.message == "Invalid credentials"


class TestRefresh:
    def test_refresh_rotates(self, sessions: SessionManager, store: CredentialStore) -> None:
        registered = register_user(sessions, "alice@example.com")
        tokens = sessions.refresh(registered.refresh_token)
        assert tokens.refresh_token != registered.refresh_token
        assert len(store.list_active_refresh_tokens_by_user(registered.user.id, 10)) == 1

    def test_access_token_is_not_a_refresh_token(self, sessions: SessionManager) -> None:
        registered = register_user(sessions, "alice@example.com")
        with pytest.raises(Unauthorized, match="Invalid refresh token"):
            sessions.refresh(registered.access_token)

    def test_garbage_token_rejected(self, sessions: SessionManager) -> None:
        with pytest.raises(Unauthorized, match="Invalid refresh token"):
            sessions.refresh("garbage")

    def test_validly_signed_but_unstored_token_rejected(self, sessions: SessionManager, settings: Settings) -> None:
        registered = register_user(sessions, "alice@example.com")
        forged = sign_token(registered.user.id, "alice@example.com", settings.jwt_refresh_secret, 60)
        with pytest.raises(Unauthorized, match="Refresh token revoked"):
            sessions.refresh(forged)

    def test_losing_a_rotation_race_fails(
        self, sessions: SessionManager, store: CredentialStore, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """If the matched record is revoked between scan and rotate, refresh fails and writes nothing."""
        registered = register_user(sessions, "alice@example.com")
        record = store.list_active_refresh_tokens_by_user(registered.user.id, 10)[0]
        original = store.list_active_refresh_tokens_by_user

        def scan_then_race(user_id, limit, conn=None):
            candidates = original(user_id, limit, conn)
            store.revoke_refresh_token(record.id)
            return candidates

        monkeypatch.setattr(store, "list_active_refresh_tokens_by_user", scan_then_race)
        with pytest.raises(Unauthorized, match="Refresh token revoked"):
            sessions.refresh(registered.refresh_token)
        monkeypatch.undo()
        assert store.list_active_refresh_tokens_by_user(registered.user.id, 10) == []


class TestLogout:
    def test_logout_revokes_matching_token(self, sessions: SessionManager, store: CredentialStore) -> None:
        registered = register_user(sessions, "alice@example.com")
        sessions.logout(registered.refresh_token)
        assert store.list_active_refresh_tokens_by_user(registered.user.id, 10) == []
        with pytest.raises(Unauthorized):
            sessions.refresh(registered.refresh_token)

    def test_logout_leaves_other_sessions(self, sessions: SessionManager, store: CredentialStore) -> None:
        registered = register_user(sessions, "alice@example.com")
        other = sessions.login("alice@example.com", TEST_PASSWORD)
        sessions.logout(registered.refresh_token)
        assert sessions.refresh(other.refresh_token).refresh_token

    def test_logout_of_unknown_token_is_silent(self, sessions: SessionManager) -> None:
        register_user(sessions, "alice@example.com")
        assert sessions.logout("not-a-token") is None

    def test_logout_twice_mutates_once(self, sessions: SessionManager, store: CredentialStore) -> None:
        registered = register_user(sessions, "alice@example.com")
        record = store.list_active_refresh_tokens_by_user(registered.user.id, 10)[0]
        sessions.logout(registered.refresh_token)
        revoked_at = store.find_refresh_token(record.id).revoked_at
        assert revoked_at is not None
        sessions.logout(registered.refresh_token)
        assert store.find_refresh_token(record.id).revoked_at == revoked_at


class TestAuthenticate:
    def test_access_token_resolves_user(self, sessions: SessionManager) -> None:
        registered = register_user(sessions, "alice@example.com")
        assert sessions.authenticate(registered.access_token).id == registered.user.id

    def test_refresh_token_is_not_an_access_token(self, sessions: SessionManager) -> None:
        registered = register_user(sessions, "alice@example.com")
        with pytest.raises(Unauthorized):
            sessions.authenticate(registered.refresh_token)

    def test_token_for_missing_user_rejected(self, sessions: SessionManager, settings: Settings) -> None:
        token = sign_token(999, "ghost@example.com", settings.jwt_access_secret, 60)
        with pytest.raises(Unauthorized):
            sessions.authenticate(token)


def test_rotation_scenario(sessions: SessionManager, store: CredentialStore) -> None:
    """register; login -> R0; refresh(R0) -> R1; refresh(R0) fails; refresh(R1) -> R2."""
    registered = sessions.register("a@x.com", "pw1-long-enough")
    login = sessions.login("a@x.com", "pw1-long-enough")
    r0 = login.refresh_token
    r1 = sessions.refresh(r0).refresh_token

    with pytest.raises(Unauthorized, match="Refresh token revoked"):
        sessions.refresh(r0)

    tokens = sessions.refresh(r1)
    assert sessions.authenticate(tokens.access_token).id == registered.user.id
    assert len({r0, r1, tokens.refresh_token}) == 3
    # The registration session is untouched; the login session is now at R2.
    assert len(store.list_active_refresh_tokens_by_user(registered.user.id, 10)) == 2


def test_normalize_email() -> None:
    assert normalize_email("  MiXeD@Example.Com\t") == "mixed@example.com"
