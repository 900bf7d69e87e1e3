"""
auth/invites.py -- Single-use, time-bounded organization invitations.

State machine per invitation:

    PENDING --accept--> ACCEPTED        (terminal)
    PENDING --time passes--> expired    (status unchanged; excluded by expires_at)

There is no other transition. An invitation is never re-opened; a new one
must be created instead.

Token secrecy: the raw token is returned once by create_invite() and only its
hash is stored, the same model as refresh tokens. Because the hash is salted,
accept_invite() cannot look the token up by equality; it scans a bounded set
of PENDING, unexpired invitations (newest first) and bcrypt-compares each.
The scan always visits every candidate so its duration does not depend on
which one matched.

Accepting an invitation logs the invitee in: after the acceptance transaction
commits, SessionManager.create_session_for_user() mints a token pair.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError

from auth.errors import BadRequest
from auth.models import ADMIN_ROLES, CreatedInvite, Invitation, InviteAcceptance, Role
from auth.orgs import OrgAccessController, require_role
from auth.sessions import SessionManager, normalize_email
from auth.store import CredentialStore, to_iso
from auth.tokens import generate_invite_token, hash_password, hash_token, password_too_long, verify_token
from core.config import Settings, get_settings

logger = logging.getLogger("tenantauth.invites")

_INVALID_INVITE = "Invalid or expired invite"


class InvitationManager:
    def __init__(
        self,
        store: CredentialStore,
        sessions: SessionManager,
        orgs: OrgAccessController,
        settings: Settings | None = None,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.orgs = orgs
        self.settings = settings or get_settings()

    def create_invite(self, org_id: int, inviter_id: int, email: str, role: Role = Role.MEMBER) -> CreatedInvite:
        """Create a PENDING invitation and return it with its raw token.

        Raises:
            Forbidden:  the inviter is not an OWNER or ADMIN of org_id.
            BadRequest: the email already belongs to a member of org_id.
        """
        context = self.orgs.resolve_membership(inviter_id, org_id)
        require_role(context, ADMIN_ROLES)

        email = normalize_email(email)
        try:
            role = Role(role)
        except ValueError as exc:
            raise BadRequest(f"Unknown role: {role!r}") from exc
        existing_user = self.store.find_user_by_email(email)
        if existing_user is not None and self.store.find_membership(existing_user.id, org_id) is not None:
            raise BadRequest("User is already a member of this organization")

        token = generate_invite_token()
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=self.settings.invite_ttl_seconds)
        invite = self.store.create_invite(
            Invitation(
                org_id=org_id,
                email=email,
                role=role,
                token_hash=hash_token(token, self.settings.token_hash_rounds),
                expires_at=to_iso(expires_at),
            )
        )
        logger.info("Invite %s created for org %s by user %s (role=%s)", invite.id, org_id, inviter_id, role.value)
        return CreatedInvite(invite=invite, token=token)

    def accept_invite(self, token: str, password: str) -> InviteAcceptance:
        """Consume an invitation, grant its membership and open a session.

        `password` is only used when the invite email has no account yet.

        Raises:
            BadRequest: no PENDING, unexpired invitation matches the token
                        (including one consumed by a concurrent request).
            BadRequest: the invited email was registered concurrently; the
                        invite stays PENDING and a retry succeeds.
        """
        candidates = self.store.list_pending_unexpired_invites(self.settings.invite_scan_limit)
        matched: Invitation | None = None
        for invite in candidates:
            if verify_token(token, invite.token_hash) and matched is None:
                matched = invite
        if matched is None:
            raise BadRequest(_INVALID_INVITE)

        new_user_password_hash = None
        if self.store.find_user_by_email(matched.email) is None:
            if password_too_long(password):
                raise BadRequest("Password is too long")
            new_user_password_hash = hash_password(password, self.settings.password_hash_rounds)

        try:
            accepted = self.store.accept_invite(matched, new_user_password_hash)
        except IntegrityError as exc:
            # A concurrent registration won the unique index; the invite stays PENDING
            raise BadRequest("Invite could not be accepted, please retry") from exc
        if accepted is None:
            raise BadRequest(_INVALID_INVITE)
        user, membership = accepted
        logger.info(
            "Invite %s accepted by user %s for org %s (role=%s)",
            matched.id,
            user.id,
            matched.org_id,
            membership.role.value,
        )

        tokens = self.sessions.create_session_for_user(user)
        return InviteAcceptance(
            org_id=matched.org_id,
            user_id=user.id,
            email=user.email,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
        )
