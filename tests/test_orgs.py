"""
tests/test_orgs.py -- OrgAccessController and the require_role gate.
"""

from __future__ import annotations

import pytest

from auth.errors import BadRequest, Forbidden, NotFound
from auth.models import ADMIN_ROLES, Membership, OrgContext, Role, User
from auth.orgs import OrgAccessController, require_role
from auth.store import CredentialStore


def _user(store: CredentialStore, email: str) -> User:
    return store.create_user(User(email=email, password_hash="x"))


@pytest.mark.parametrize(
    ("role", "allowed"),
    [
        (Role.OWNER, True),
        (Role.ADMIN, True),
        (Role.MEMBER, False),
    ],
)
def test_admin_role_matrix(role: Role, allowed: bool) -> None:
    context = OrgContext(org_id=1, role=role)
    if allowed:
        require_role(context, ADMIN_ROLES)
    else:
        with pytest.raises(Forbidden, match="Insufficient org role"):
            require_role(context, ADMIN_ROLES)


def test_require_role_without_context() -> None:
    with pytest.raises(Forbidden, match="Missing org context"):
        require_role(None, ADMIN_ROLES)


def test_owner_only_gate_rejects_admin() -> None:
    with pytest.raises(Forbidden):
        require_role(OrgContext(org_id=1, role=Role.ADMIN), [Role.OWNER])


class TestOrgAccessController:
    def test_create_makes_caller_owner(self, orgs: OrgAccessController, store: CredentialStore) -> None:
        user = _user(store, "owner@example.com")
        org = orgs.create_organization(user.id, "  Acme  ")
        assert org.name == "Acme"
        assert orgs.resolve_membership(user.id, org.id) == OrgContext(org_id=org.id, role=Role.OWNER)

    def test_create_requires_name(self, orgs: OrgAccessController, store: CredentialStore) -> None:
        user = _user(store, "owner@example.com")
        with pytest.raises(BadRequest):
            orgs.create_organization(user.id, "   ")

    def test_non_member_is_forbidden(self, orgs: OrgAccessController, store: CredentialStore) -> None:
        owner = _user(store, "owner@example.com")
        outsider = _user(store, "outsider@example.com")
        org = orgs.create_organization(owner.id, "Acme")
        with pytest.raises(Forbidden, match="Not a member"):
            orgs.resolve_membership(outsider.id, org.id)

    def test_list_members_requires_admin_role(self, orgs: OrgAccessController, store: CredentialStore) -> None:
        owner = _user(store, "owner@example.com")
        member = _user(store, "member@example.com")
        org = orgs.create_organization(owner.id, "Acme")
        store.create_membership(Membership(user_id=member.id, org_id=org.id, role=Role.MEMBER))

        members = orgs.list_members(orgs.resolve_membership(owner.id, org.id))
        assert {m.email for m in members} == {"owner@example.com", "member@example.com"}
        with pytest.raises(Forbidden):
            orgs.list_members(orgs.resolve_membership(member.id, org.id))

    def test_list_my_organizations(self, orgs: OrgAccessController, store: CredentialStore) -> None:
        user = _user(store, "owner@example.com")
        other = _user(store, "other@example.com")
        mine = orgs.create_organization(user.id, "Mine")
        orgs.create_organization(other.id, "Theirs")
        listed = orgs.list_my_organizations(user.id)
        assert [(o.id, o.my_role) for o in listed] == [(mine.id, Role.OWNER)]

    def test_get_organization_for_member(self, orgs: OrgAccessController, store: CredentialStore) -> None:
        user = _user(store, "owner@example.com")
        org = orgs.create_organization(user.id, "Acme")
        found = orgs.get_organization_for_member(org.id, user.id)
        assert (found.id, found.name, found.my_role) == (org.id, "Acme", Role.OWNER)

    def test_get_organization_hides_existence_from_non_members(
        self, orgs: OrgAccessController, store: CredentialStore
    ) -> None:
        owner = _user(store, "owner@example.com")
        outsider = _user(store, "outsider@example.com")
        org = orgs.create_organization(owner.id, "Acme")
        with pytest.raises(Forbidden):
            orgs.get_organization_for_member(org.id, outsider.id)
        with pytest.raises(Forbidden):
            orgs.get_organization_for_member(9999, outsider.id)

    def test_get_organization_missing_row(
        self, orgs: OrgAccessController, store: CredentialStore, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        user = _user(store, "owner@example.com")
        org = orgs.create_organization(user.id, "Acme")
        monkeypatch.setattr(store, "find_organization", lambda org_id, conn=None: None)
        with pytest.raises(NotFound):
            orgs.get_organization_for_member(org.id, user.id)
