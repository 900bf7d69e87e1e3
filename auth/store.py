"""
auth/store.py -- SQLAlchemy Core persistence layer for auth and tenancy entities.

Pattern: Repository + Data Mapper. CredentialStore is the repository; the
_row_to_* functions are the mappers. Manager code never touches SQL directly.

Transactions:
  Every public method accepts an optional `conn`. Without one, the method
  runs in its own short transaction (engine.begin()). With one, it joins the
  caller's transaction -- this is how the atomic units below compose several
  writes into a single commit-or-rollback:

    create_organization_with_owner  org row + OWNER membership
    rotate_refresh_token             revoke old record + insert replacement
    accept_invite                    mark ACCEPTED + find-or-create user + upsert membership

  revoke_refresh_token() and update_invite_accepted() are conditional
  UPDATEs (only unrevoked / only PENDING rows) and report whether a row
  changed. Two requests racing on the same token or invite therefore see
  exactly one rowcount of 1; the loser gets False and its unit writes nothing.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Only hashes of refresh and invite tokens are stored.

Timestamps: fixed-width ISO 8601 UTC strings (microsecond precision), so
`expires_at > now` and ORDER BY created_at work as plain string comparisons.

DB path: auth/tenantauth.db unless DATABASE_URL is set.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    Column,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Connection, Engine

from auth.models import (
    Invitation,
    InviteStatus,
    MemberOrganization,
    Membership,
    Organization,
    OrgMember,
    RefreshTokenRecord,
    Role,
    User,
)

logger = logging.getLogger("tenantauth.store")

DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'tenantauth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(320), nullable=False, unique=True),
    Column("password_hash", Text, nullable=False),
    Column("is_verified", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)

_organizations = Table(
    "organizations",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(200), nullable=False),
    Column("created_at", String(32), nullable=False),
)

_memberships = Table(
    "memberships",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("org_id", Integer, ForeignKey("organizations.id"), nullable=False),
    Column("role", String(10), nullable=False),  # OWNER | ADMIN | MEMBER
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("user_id", "org_id", name="uq_memberships_user_org"),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("token_hash", Text, nullable=False),  # bcrypt(sha256(raw))
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("revoked_at", String(32)),  # NULL = not revoked
    Index("ix_refresh_tokens_user_active", "user_id", "revoked_at", "expires_at"),
)

_invitations = Table(
    "invitations",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("org_id", Integer, ForeignKey("organizations.id"), nullable=False),
    Column("email", String(320), nullable=False),
    Column("role", String(10), nullable=False),
    Column("token_hash", Text, nullable=False),  # bcrypt(sha256(raw))
    Column("status", String(10), nullable=False, server_default="PENDING"),
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("accepted_at", String(32)),
    Index("ix_invitations_pending", "status", "expires_at"),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers are not blocked during writes.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def to_iso(moment: datetime) -> str:
    """Format a datetime as the fixed-width UTC string used in every column."""
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def now_iso() -> str:
    return to_iso(datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for users, organizations, memberships, refresh tokens and invites.

    Usage:
        store = CredentialStore("sqlite:///:memory:")
        user = store.create_user(User(email="a@x.com", password_hash=hash_password("pw")))
        org = store.create_organization_with_owner("Acme", user.id)
        store.close()
    """

    def __init__(self, db_url: str = DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Yield a connection inside one transaction; commit on exit, roll back on error."""
        with self.engine.begin() as conn:
            yield conn

    @contextmanager
    def _connect(self, conn: Connection | None) -> Iterator[Connection]:
        if conn is not None:
            yield conn
            return
        with self.engine.begin() as own:
            yield own

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            return conn.execute(select(1)).scalar() == 1

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def find_user_by_email(self, email: str, conn: Connection | None = None) -> User | None:
        """Look up a user by exact (already normalised) email."""
        with self._connect(conn) as c:
            row = c.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_user_by_id(self, user_id: int, conn: Connection | None = None) -> User | None:
        with self._connect(conn) as c:
            row = c.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def create_user(self, user: User, conn: Connection | None = None) -> User:
        """Insert a new user and return it with id and created_at filled in.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        SessionManager.register() turns that into Conflict, which covers the
        race where two registrations pass the existence check together.
        """
        created_at = now_iso()
        with self._connect(conn) as c:
            result = c.execute(
                _users.insert().values(
                    email=user.email,
                    password_hash=user.password_hash,
                    is_verified=1 if user.is_verified else 0,
                    created_at=created_at,
                )
            )
        return replace(user, id=result.inserted_primary_key[0], created_at=created_at)

    # ------------------------------------------------------------------
    # Organizations and memberships
    # ------------------------------------------------------------------

    def create_organization(self, org: Organization, conn: Connection | None = None) -> Organization:
        """Insert an organization row on its own.

        Outside this module, use create_organization_with_owner() -- an
        organization must never exist without an OWNER membership.
        """
        created_at = now_iso()
        with self._connect(conn) as c:
            result = c.execute(_organizations.insert().values(name=org.name, created_at=created_at))
        return replace(org, id=result.inserted_primary_key[0], created_at=created_at)

    def find_organization(self, org_id: int, conn: Connection | None = None) -> Organization | None:
        with self._connect(conn) as c:
            row = c.execute(_organizations.select().where(_organizations.c.id == org_id)).fetchone()
        return _row_to_organization(row) if row is not None else None

    def create_organization_with_owner(self, name: str, user_id: int) -> Organization:
        """Atomic unit: organization row + OWNER membership for its creator.

        If either insert fails the transaction rolls back and neither row persists.
        """
        with self.transaction() as conn:
            org = self.create_organization(Organization(name=name), conn)
            self.create_membership(Membership(user_id=user_id, org_id=org.id, role=Role.OWNER), conn)
        return org

    def find_membership(self, user_id: int, org_id: int, conn: Connection | None = None) -> Membership | None:
        with self._connect(conn) as c:
            row = c.execute(
                _memberships.select().where((_memberships.c.user_id == user_id) & (_memberships.c.org_id == org_id))
            ).fetchone()
        return _row_to_membership(row) if row is not None else None

    def create_membership(self, membership: Membership, conn: Connection | None = None) -> Membership:
        """Insert a membership. Raises IntegrityError if (user_id, org_id) already exists."""
        created_at = now_iso()
        with self._connect(conn) as c:
            result = c.execute(
                _memberships.insert().values(
                    user_id=membership.user_id,
                    org_id=membership.org_id,
                    role=Role(membership.role).value,
                    created_at=created_at,
                )
            )
        return replace(membership, id=result.inserted_primary_key[0], created_at=created_at)

    def upsert_membership(self, user_id: int, org_id: int, role: Role, conn: Connection | None = None) -> Membership:
        """Create the membership, or overwrite the role of the existing one."""
        with self._connect(conn) as c:
            existing = self.find_membership(user_id, org_id, c)
            if existing is None:
                return self.create_membership(Membership(user_id=user_id, org_id=org_id, role=role), c)
            c.execute(_memberships.update().where(_memberships.c.id == existing.id).values(role=Role(role).value))
        return replace(existing, role=Role(role))

    def count_owners(self, org_id: int, conn: Connection | None = None) -> int:
        with self._connect(conn) as c:
            result = c.execute(
                select(func.count())
                .select_from(_memberships)
                .where((_memberships.c.org_id == org_id) & (_memberships.c.role == Role.OWNER.value))
            ).scalar()
        return result or 0

    def list_memberships_by_user(self, user_id: int, conn: Connection | None = None) -> list[MemberOrganization]:
        """Return every organization the user belongs to with their role (newest membership first)."""
        query = (
            select(
                _organizations.c.id,
                _organizations.c.name,
                _organizations.c.created_at,
                _memberships.c.role,
            )
            .select_from(_memberships.join(_organizations, _memberships.c.org_id == _organizations.c.id))
            .where(_memberships.c.user_id == user_id)
            .order_by(_memberships.c.created_at.desc(), _memberships.c.id.desc())
        )
        with self._connect(conn) as c:
            rows = c.execute(query).fetchall()
        return [MemberOrganization(id=r.id, name=r.name, created_at=r.created_at, my_role=Role(r.role)) for r in rows]

    def list_memberships_by_org(self, org_id: int, conn: Connection | None = None) -> list[OrgMember]:
        """Return every member of an organization with their role (oldest membership first)."""
        query = (
            select(
                _users.c.id,
                _users.c.email,
                _users.c.created_at,
                _memberships.c.role,
            )
            .select_from(_memberships.join(_users, _memberships.c.user_id == _users.c.id))
            .where(_memberships.c.org_id == org_id)
            .order_by(_memberships.c.created_at.asc(), _memberships.c.id.asc())
        )
        with self._connect(conn) as c:
            rows = c.execute(query).fetchall()
        return [OrgMember(id=r.id, email=r.email, created_at=r.created_at, role=Role(r.role)) for r in rows]

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def create_refresh_token(self, record: RefreshTokenRecord, conn: Connection | None = None) -> RefreshTokenRecord:
        created_at = now_iso()
        with self._connect(conn) as c:
            result = c.execute(
                _refresh_tokens.insert().values(
                    user_id=record.user_id,
                    token_hash=record.token_hash,
                    created_at=created_at,
                    expires_at=record.expires_at,
                    revoked_at=None,
                )
            )
        return replace(record, id=result.inserted_primary_key[0], created_at=created_at, revoked_at=None)

    def list_active_refresh_tokens_by_user(
        self, user_id: int, limit: int, conn: Connection | None = None
    ) -> list[RefreshTokenRecord]:
        """Return up to `limit` unrevoked, unexpired records for one user (newest first)."""
        query = (
            _refresh_tokens.select()
            .where(
                (_refresh_tokens.c.user_id == user_id)
                & _refresh_tokens.c.revoked_at.is_(None)
                & (_refresh_tokens.c.expires_at > now_iso())
            )
            .order_by(_refresh_tokens.c.created_at.desc(), _refresh_tokens.c.id.desc())
            .limit(limit)
        )
        with self._connect(conn) as c:
            rows = c.execute(query).fetchall()
        return [_row_to_refresh_token(r) for r in rows]

    def list_all_active_refresh_tokens(self, limit: int, conn: Connection | None = None) -> list[RefreshTokenRecord]:
        """Return up to `limit` unrevoked, unexpired records across all users (newest first)."""
        query = (
            _refresh_tokens.select()
            .where(_refresh_tokens.c.revoked_at.is_(None) & (_refresh_tokens.c.expires_at > now_iso()))
            .order_by(_refresh_tokens.c.created_at.desc(), _refresh_tokens.c.id.desc())
            .limit(limit)
        )
        with self._connect(conn) as c:
            rows = c.execute(query).fetchall()
        return [_row_to_refresh_token(r) for r in rows]

    def find_refresh_token(self, token_id: int, conn: Connection | None = None) -> RefreshTokenRecord | None:
        with self._connect(conn) as c:
            row = c.execute(_refresh_tokens.select().where(_refresh_tokens.c.id == token_id)).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def revoke_refresh_token(self, token_id: int, conn: Connection | None = None) -> bool:
        """Stamp revoked_at on a record that is not yet revoked.

        Returns True if this call revoked it, False if it was already revoked
        (or does not exist). revoked_at is written at most once per record.
        """
        with self._connect(conn) as c:
            result = c.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.id == token_id) & _refresh_tokens.c.revoked_at.is_(None))
                .values(revoked_at=now_iso())
            )
        return result.rowcount > 0

    def rotate_refresh_token(self, old_id: int, replacement: RefreshTokenRecord) -> RefreshTokenRecord | None:
        """Atomic unit: revoke `old_id` and insert `replacement`.

        Returns the stored replacement, or None if `old_id` had already been
        revoked -- in that case nothing is written.
        """
        with self.transaction() as conn:
            if not self.revoke_refresh_token(old_id, conn):
                return None
            return self.create_refresh_token(replacement, conn)

    # ------------------------------------------------------------------
    # Invitations
    # ------------------------------------------------------------------

    def create_invite(self, invite: Invitation, conn: Connection | None = None) -> Invitation:
        created_at = now_iso()
        with self._connect(conn) as c:
            result = c.execute(
                _invitations.insert().values(
                    org_id=invite.org_id,
                    email=invite.email,
                    role=Role(invite.role).value,
                    token_hash=invite.token_hash,
                    status=InviteStatus.PENDING.value,
                    expires_at=invite.expires_at,
                    created_at=created_at,
                )
            )
        return replace(
            invite,
            id=result.inserted_primary_key[0],
            status=InviteStatus.PENDING,
            created_at=created_at,
            accepted_at=None,
        )

    def find_invite(self, invite_id: int, conn: Connection | None = None) -> Invitation | None:
        with self._connect(conn) as c:
            row = c.execute(_invitations.select().where(_invitations.c.id == invite_id)).fetchone()
        return _row_to_invite(row) if row is not None else None

    def list_pending_unexpired_invites(self, limit: int, conn: Connection | None = None) -> list[Invitation]:
        """Return up to `limit` PENDING invitations that have not expired (newest first)."""
        query = (
            _invitations.select()
            .where((_invitations.c.status == InviteStatus.PENDING.value) & (_invitations.c.expires_at > now_iso()))
            .order_by(_invitations.c.created_at.desc(), _invitations.c.id.desc())
            .limit(limit)
        )
        with self._connect(conn) as c:
            rows = c.execute(query).fetchall()
        return [_row_to_invite(r) for r in rows]

    def update_invite_accepted(self, invite_id: int, conn: Connection | None = None) -> bool:
        """Move a PENDING, unexpired invitation to ACCEPTED.

        Returns False when the invitation is no longer PENDING (already
        consumed by a concurrent request) or has expired.
        """
        now = now_iso()
        with self._connect(conn) as c:
            result = c.execute(
                _invitations.update()
                .where(
                    (_invitations.c.id == invite_id)
                    & (_invitations.c.status == InviteStatus.PENDING.value)
                    & (_invitations.c.expires_at > now)
                )
                .values(status=InviteStatus.ACCEPTED.value, accepted_at=now)
            )
        return result.rowcount > 0

    def accept_invite(self, invite: Invitation, new_user_password_hash: str | None) -> tuple[User, Membership] | None:
        """Atomic unit: consume an invitation and grant its membership.

        Steps, in one transaction:
          1. PENDING -> ACCEPTED (conditional). If another request got there
             first, return None and write nothing.
          2. Find the user by the invite email, or create a verified user with
             `new_user_password_hash`.
          3. Upsert the membership with the invited role. An existing role is
             overwritten, except that the organization's last OWNER is never
             demoted -- every organization keeps at least one OWNER.

        Raises ValueError (rolling back) if a user must be created but no
        password hash was supplied.
        """
        with self.transaction() as conn:
            if not self.update_invite_accepted(invite.id, conn):
                return None

            user = self.find_user_by_email(invite.email, conn)
            if user is None:
                if new_user_password_hash is None:
                    raise ValueError("A password hash is required to create the invited user.")
                user = self.create_user(
                    User(email=invite.email, password_hash=new_user_password_hash, is_verified=True),
                    conn,
                )

            role = Role(invite.role)
            existing = self.find_membership(user.id, invite.org_id, conn)
            if (
                existing is not None
                and existing.role == Role.OWNER
                and role != Role.OWNER
                and self.count_owners(invite.org_id, conn) <= 1
            ):
                logger.warning(
                    "Invite %s would demote the last owner of org %s; keeping OWNER",
                    invite.id,
                    invite.org_id,
                )
                role = Role.OWNER
            membership = self.upsert_membership(user.id, invite.org_id, role, conn)
        return user, membership

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        is_verified=bool(row.is_verified),
        created_at=row.created_at,
    )


def _row_to_organization(row) -> Organization:
    return Organization(id=row.id, name=row.name, created_at=row.created_at)


def _row_to_membership(row) -> Membership:
    return Membership(
        id=row.id,
        user_id=row.user_id,
        org_id=row.org_id,
        role=Role(row.role),
        created_at=row.created_at,
    )


def _row_to_refresh_token(row) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        created_at=row.created_at,
        expires_at=row.expires_at,
        revoked_at=row.revoked_at,
    )


def _row_to_invite(row) -> Invitation:
    return Invitation(
        id=row.id,
        org_id=row.org_id,
        email=row.email,
        role=Role(row.role),
        token_hash=row.token_hash,
        status=InviteStatus(row.status),
        expires_at=row.expires_at,
        created_at=row.created_at,
        accepted_at=row.accepted_at,
    )
