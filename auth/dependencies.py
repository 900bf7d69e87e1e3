"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and org scope.

get_current_user()   Authorization: Bearer <access token> -> User.
get_org_context()    X-Org-Id header -> OrgContext for the current user, also
                     stored on request.state.org for downstream consumers.
require_org_role()   factory returning a dependency that gates a route on a
                     role set, evaluated against the resolved OrgContext.

Failures are raised as auth.errors types; api/main.py maps them to 400/401/403.

Layer rule: this module may import from fastapi because it is part of the
FastAPI dependency injection system. It does not import from api/.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Depends, Request

from auth.errors import BadRequest, Unauthorized
from auth.models import OrgContext, Role, User
from auth.orgs import OrgAccessController, require_role
from auth.sessions import SessionManager

ORG_HEADER = "X-Org-Id"


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def get_current_user(request: Request) -> User:
    """Require a valid access token. Raises Unauthorized otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: User = Depends(get_current_user)): ...
    """
    token = _bearer_token(request)
    if token is None:
        raise Unauthorized("Authentication required")
    sessions: SessionManager = request.app.state.sessions
    return sessions.authenticate(token)


def get_org_context(request: Request, user: User = Depends(get_current_user)) -> OrgContext:
    """Resolve the caller's membership in the organization named by X-Org-Id.

    Raises BadRequest for a missing or non-integer header and Forbidden if
    the caller is not a member.
    """
    raw_org_id = request.headers.get(ORG_HEADER)
    if not raw_org_id:
        raise BadRequest(f"Missing {ORG_HEADER} header")
    try:
        org_id = int(raw_org_id)
    except ValueError as exc:
        raise BadRequest(f"Invalid {ORG_HEADER} header") from exc

    orgs: OrgAccessController = request.app.state.orgs
    context = orgs.resolve_membership(user.id, org_id)
    request.state.org = context
    return context


def require_org_role(*roles: Role) -> Callable[..., OrgContext]:
    """Return a dependency that passes only for members holding one of `roles`.

    Use as a FastAPI dependency:
        @router.get("/orgs/current/members")
        def route(ctx: OrgContext = Depends(require_org_role(Role.OWNER, Role.ADMIN))): ...
    """
    allowed = frozenset(roles)

    def dependency(context: OrgContext = Depends(get_org_context)) -> OrgContext:
        require_role(context, allowed)
        return context

    return dependency
