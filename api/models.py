"""
API request and response models for tenantauth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Refresh tokens never appear in a response body -- they travel only in the
httpOnly refresh cookie (see auth/tokens.set_refresh_cookie).
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from auth.models import (
    Invitation,
    InviteStatus,
    MemberOrganization,
    Organization,
    OrgMember,
    Role,
    User,
)
from auth.tokens import MAX_PASSWORD_BYTES


def _check_password_bytes(value: str) -> str:
    if len(value.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValueError(f"password must be at most {MAX_PASSWORD_BYTES} bytes")
    return value


# ---------------------------------------------------------------------------
# Auth -- requests
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    password: str = Field(min_length=8, max_length=MAX_PASSWORD_BYTES)

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        """Reject passwords whose UTF-8 form exceeds bcrypt's 72-byte input."""
        return _check_password_bytes(value)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    No length policy beyond a sanity cap: a too-long password simply fails
    to verify, with the same error as any other bad credential.
    """

    email: str = Field(min_length=1, max_length=320)
    password: str = Field(min_length=1, max_length=255)


# ---------------------------------------------------------------------------
# Auth -- responses
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    is_verified: bool
    created_at: str

    @classmethod
    def from_user(cls, user: User) -> UserResponse:
        return cls(id=user.id, email=user.email, is_verified=user.is_verified, created_at=user.created_at)


class TokenResponse(BaseModel):
    """Response for POST /api/v1/auth/refresh."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int


class SessionResponse(BaseModel):
    """Response for register and login: the user plus a fresh access token."""

    model_config = ConfigDict(frozen=True)

    user: UserResponse
    access_token: str
    token_type: str = "bearer"
    expires_in: int


class OkResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    ok: bool = True


# ---------------------------------------------------------------------------
# Organizations
# ---------------------------------------------------------------------------


class OrgCreate(BaseModel):
    """Request body for POST /api/v1/orgs."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=200)


class OrgResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    created_at: str

    @classmethod
    def from_org(cls, org: Organization) -> OrgResponse:
        return cls(id=org.id, name=org.name, created_at=org.created_at)


class MemberOrgResponse(BaseModel):
    """An organization with the caller's role in it."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    created_at: str
    my_role: Role

    @classmethod
    def from_member_org(cls, org: MemberOrganization) -> MemberOrgResponse:
        return cls(id=org.id, name=org.name, created_at=org.created_at, my_role=org.my_role)


class MemberResponse(BaseModel):
    """One row in GET /api/v1/orgs/current/members."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    created_at: str
    role: Role

    @classmethod
    def from_member(cls, member: OrgMember) -> MemberResponse:
        return cls(id=member.id, email=member.email, created_at=member.created_at, role=member.role)


# ---------------------------------------------------------------------------
# Invitations
# ---------------------------------------------------------------------------


class InviteCreate(BaseModel):
    """Request body for POST /api/v1/orgs/current/invites."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    role: Role = Role.MEMBER


class InviteResponse(BaseModel):
    """An invitation as stored. The token hash is never exposed."""

    model_config = ConfigDict(frozen=True)

    id: int
    org_id: int
    email: str
    role: Role
    status: InviteStatus
    expires_at: str
    created_at: str
    accepted_at: str | None = None

    @classmethod
    def from_invite(cls, invite: Invitation) -> InviteResponse:
        return cls(
            id=invite.id,
            org_id=invite.org_id,
            email=invite.email,
            role=invite.role,
            status=invite.status,
            expires_at=invite.expires_at,
            created_at=invite.created_at,
            accepted_at=invite.accepted_at,
        )


class InviteCreatedResponse(BaseModel):
    """Response for invite creation. `token` is shown once and never again."""

    model_config = ConfigDict(frozen=True)

    invite: InviteResponse
    token: str


class InviteAccept(BaseModel):
    """Request body for POST /api/v1/invites/accept.

    password is used only when the invited email has no account yet.
    """

    token: str = Field(min_length=1, max_length=256)
    password: str = Field(min_length=8, max_length=MAX_PASSWORD_BYTES)

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        return _check_password_bytes(value)


class InviteAcceptedResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    ok: bool = True
    org_id: int
    user_id: int
    email: str
    access_token: str
    token_type: str = "bearer"
    expires_in: int


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: str | None = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
