"""
api/routes/v1/orgs.py -- Organization and invitation REST endpoints.

Routes:
  POST /api/v1/orgs                   -- create org; caller becomes OWNER
  GET  /api/v1/orgs/mine              -- orgs the caller belongs to, with their role
  GET  /api/v1/orgs/current/members   -- members of the X-Org-Id org (OWNER/ADMIN)
  POST /api/v1/orgs/current/invites   -- invite an email to the X-Org-Id org (OWNER/ADMIN)
  GET  /api/v1/orgs/{org_id}          -- one org the caller belongs to
  POST /api/v1/invites/accept         -- consume an invite token; sets refresh cookie

The /orgs/current/* routes resolve the tenant from the X-Org-Id header via
auth.dependencies.require_org_role(). Path order matters: /orgs/mine is
declared before /orgs/{org_id} so "mine" is never parsed as an id.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import credential_rate_limit, limiter
from api.models import (
    InviteAccept,
    InviteAcceptedResponse,
    InviteCreate,
    InviteCreatedResponse,
    InviteResponse,
    MemberOrgResponse,
    MemberResponse,
    OrgCreate,
    OrgResponse,
)
from auth.dependencies import get_current_user, require_org_role
from auth.invites import InvitationManager
from auth.models import OrgContext, Role, User
from auth.orgs import OrgAccessController
from auth.tokens import set_refresh_cookie
from core.config import Settings

# Auth policy:
# - POST /api/v1/orgs:                   requires auth (get_current_user)
# - GET  /api/v1/orgs/mine:              requires auth (get_current_user)
# - GET  /api/v1/orgs/current/members:   requires OWNER or ADMIN of X-Org-Id
# - POST /api/v1/orgs/current/invites:   requires OWNER or ADMIN of X-Org-Id
# - GET  /api/v1/orgs/{org_id}:          requires membership in org_id
# - POST /api/v1/invites/accept:         public -- the invite token is the credential
router = APIRouter()

_require_org_admin = require_org_role(Role.OWNER, Role.ADMIN)


# ---------------------------------------------------------------------------
# Organizations
# ---------------------------------------------------------------------------


@router.post("/orgs", response_model=OrgResponse, status_code=201)
def create_org(
    request: Request,
    body: OrgCreate,
    current_user: User = Depends(get_current_user),
) -> OrgResponse:
    """Create an organization with the caller as its OWNER."""
    orgs: OrgAccessController = request.app.state.orgs
    org = orgs.create_organization(current_user.id, body.name)
    return OrgResponse.from_org(org)


@router.get("/orgs/mine", response_model=list[MemberOrgResponse])
def list_my_orgs(
    request: Request,
    current_user: User = Depends(get_current_user),
) -> list[MemberOrgResponse]:
    """List the caller's organizations, newest membership first."""
    orgs: OrgAccessController = request.app.state.orgs
    return [MemberOrgResponse.from_member_org(o) for o in orgs.list_my_organizations(current_user.id)]


@router.get("/orgs/current/members", response_model=list[MemberResponse])
def list_members(
    request: Request,
    context: OrgContext = Depends(_require_org_admin),
) -> list[MemberResponse]:
    orgs: OrgAccessController = request.app.state.orgs
    return [MemberResponse.from_member(m) for m in orgs.list_members(context)]


@router.get("/orgs/{org_id}", response_model=MemberOrgResponse)
def get_org(
    org_id: int,
    request: Request,
    current_user: User = Depends(get_current_user),
) -> MemberOrgResponse:
    """Return one organization. 403 for non-members, whether or not it exists."""
    orgs: OrgAccessController = request.app.state.orgs
    return MemberOrgResponse.from_member_org(orgs.get_organization_for_member(org_id, current_user.id))


# ---------------------------------------------------------------------------
# Invitations
# ---------------------------------------------------------------------------


@router.post("/orgs/current/invites", response_model=InviteCreatedResponse, status_code=201)
def create_invite(
    request: Request,
    body: InviteCreate,
    current_user: User = Depends(get_current_user),
    context: OrgContext = Depends(_require_org_admin),
) -> InviteCreatedResponse:
    """Invite an email address into the current organization.

    The raw token is returned ONCE. Only its hash is stored, so a lost token
    means creating a new invitation.
    """
    invites: InvitationManager = request.app.state.invites
    created = invites.create_invite(context.org_id, current_user.id, body.email, body.role)
    return InviteCreatedResponse(invite=InviteResponse.from_invite(created.invite), token=created.token)


@limiter.limit(credential_rate_limit)  # token guessing -- must be ABOVE @router
@router.post("/invites/accept", response_model=InviteAcceptedResponse)
def accept_invite(request: Request, body: InviteAccept) -> JSONResponse:
    """Consume an invitation and log the invitee in.

    Creates the account when the invited email has none, using body.password.
    An unknown, expired or already-used token is a 400.
    """
    settings: Settings = request.app.state.settings
    invites: InvitationManager = request.app.state.invites
    acceptance = invites.accept_invite(body.token, body.password)

    resp = JSONResponse(
        content=InviteAcceptedResponse(
            ok=acceptance.ok,
            org_id=acceptance.org_id,
            user_id=acceptance.user_id,
            email=acceptance.email,
            access_token=acceptance.access_token,
            expires_in=settings.jwt_access_ttl_seconds,
        ).model_dump(),
    )
    set_refresh_cookie(resp, acceptance.refresh_token, settings)
    resp.headers["Cache-Control"] = "no-store"
    return resp
