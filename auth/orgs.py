"""
auth/orgs.py -- Organization membership resolution and role gating.

OrgAccessController turns (user, organization) into an OrgContext and checks
that context against the role set an operation requires. The context is a
plain value: the HTTP layer resolves it once per request (from the X-Org-Id
header) and passes it explicitly to whatever needs "the current org".

Invariant: every organization has at least one OWNER. Organizations are only
created through create_organization(), which writes the OWNER membership in
the same transaction.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from auth.errors import BadRequest, Forbidden, NotFound
from auth.models import ADMIN_ROLES, MemberOrganization, OrgContext, OrgMember, Organization, Role
from auth.store import CredentialStore

logger = logging.getLogger("tenantauth.orgs")

_NOT_A_MEMBER = "Not a member of this organization"


def require_role(context: OrgContext | None, allowed_roles: Iterable[Role]) -> None:
    """Pass iff the context carries one of `allowed_roles`.

    Raises:
        Forbidden("Missing org context"):   no context was resolved.
        Forbidden("Insufficient org role"): the role is not in the set.
    """
    if context is None:
        raise Forbidden("Missing org context")
    if context.role not in frozenset(allowed_roles):
        raise Forbidden("Insufficient org role")


class OrgAccessController:
    """Membership lookups, org creation and member/org read paths."""

    def __init__(self, store: CredentialStore) -> None:
        self.store = store

    def resolve_membership(self, user_id: int, org_id: int) -> OrgContext:
        """Return the user's OrgContext for org_id, or raise Forbidden."""
        membership = self.store.find_membership(user_id, org_id)
        if membership is None:
            raise Forbidden(_NOT_A_MEMBER)
        return OrgContext(org_id=org_id, role=membership.role)

    def create_organization(self, user_id: int, name: str) -> Organization:
        """Create an organization with `user_id` as its OWNER, atomically."""
        name = name.strip()
        if not name:
            raise BadRequest("Organization name is required")
        org = self.store.create_organization_with_owner(name, user_id)
        logger.info("Organization %s created by user %s", org.id, user_id)
        return org

    def list_members(self, context: OrgContext | None) -> list[OrgMember]:
        """List the members of the context's organization. Requires OWNER or ADMIN."""
        require_role(context, ADMIN_ROLES)
        return self.store.list_memberships_by_org(context.org_id)

    def list_my_organizations(self, user_id: int) -> list[MemberOrganization]:
        return self.store.list_memberships_by_user(user_id)

    def get_organization_for_member(self, org_id: int, user_id: int) -> MemberOrganization:
        """Return an organization with the caller's role.

        The membership check runs first, so a non-member gets Forbidden
        whether or not the organization exists.
        """
        context = self.resolve_membership(user_id, org_id)
        org = self.store.find_organization(org_id)
        if org is None:
            raise NotFound("Organization not found")
        return MemberOrganization(id=org.id, name=org.name, created_at=org.created_at, my_role=context.role)
