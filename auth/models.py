"""
auth/models.py -- Domain dataclasses for authentication and tenancy entities.

Pattern: Data class (pure data container, almost zero logic). Stores and
managers do the work; these classes only own the domain shape.

Timestamps are fixed-width ISO 8601 UTC strings written by the store, so
string comparison orders them the same way as time.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Role(str, Enum):
    OWNER = "OWNER"
    ADMIN = "ADMIN"
    MEMBER = "MEMBER"


class InviteStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"


# Roles allowed to list members and issue invitations.
ADMIN_ROLES: frozenset[Role] = frozenset({Role.OWNER, Role.ADMIN})


@dataclass
class User:
    """An account identity.

    password_hash is set once at creation (register or invite acceptance).
    Users created by accepting an invitation are verified on creation since
    the invite token proves control of the address.
    """

    email: str
    password_hash: str
    id: int | None = None
    is_verified: bool = False
    created_at: str = ""


@dataclass
class Organization:
    name: str
    id: int | None = None
    created_at: str = ""


@dataclass
class Membership:
    """Join of a user to an organization, unique per (user_id, org_id)."""

    user_id: int
    org_id: int
    role: Role
    id: int | None = None
    created_at: str = ""


@dataclass
class RefreshTokenRecord:
    """One row per issued refresh token.

    Append-only audit trail: the only mutation ever applied is setting
    revoked_at (on rotation or logout). token_hash is a bcrypt digest of the
    SHA-256 of the raw token -- the raw token is never persisted.
    """

    user_id: int
    token_hash: str
    expires_at: str
    id: int | None = None
    created_at: str = ""
    revoked_at: str | None = None


@dataclass
class Invitation:
    """A single-use, time-bounded grant of membership.

    PENDING -> ACCEPTED is the only transition. An expired PENDING invite keeps
    its status but is excluded from candidate scans by the expires_at filter.
    Invitations are never deleted or re-opened.
    """

    org_id: int
    email: str
    role: Role
    token_hash: str
    expires_at: str
    status: InviteStatus = InviteStatus.PENDING
    id: int | None = None
    created_at: str = ""
    accepted_at: str | None = None


@dataclass(frozen=True)
class OrgContext:
    """Request-scoped result of membership resolution. Never persisted."""

    org_id: int
    role: Role


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SessionTokens:
    access_token: str
    refresh_token: str


@dataclass(frozen=True)
class AuthResult:
    user: User
    access_token: str
    refresh_token: str


@dataclass(frozen=True)
class CreatedInvite:
    """A stored invitation plus the raw token, returned exactly once."""

    invite: Invitation
    token: str


@dataclass(frozen=True)
class InviteAcceptance:
    org_id: int
    user_id: int
    email: str
    access_token: str
    refresh_token: str
    ok: bool = True


@dataclass(frozen=True)
class MemberOrganization:
    """An organization as seen by one of its members."""

    id: int
    name: str
    created_at: str
    my_role: Role


@dataclass(frozen=True)
class OrgMember:
    id: int
    email: str
    created_at: str
    role: Role
