"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. AccountStore is the repository; the
_row_to_* functions are the mappers. Services and routes never touch SQL
directly.

Tables:
  accounts               -- identity records (local password and/or federation)
  password_reset_tokens  -- one-time reset capabilities
  federation_policy      -- single-row SSO admission policy (id = 1)
  auth_audit_log         -- append-only authentication trail
  sessions               -- server-side session rows (cookie carries the sid)
  crm_profiles           -- role-bearing CRM user record, 1:1 with accounts

Security:
  All queries use bound parameters. No f-strings in SQL.

  Reset token consumption is a single conditional UPDATE (used_at IS NULL
  AND expires_at > now). Two concurrent redemptions of the same token race
  on the row, not on process memory, so exactly one wins even when the
  requests are served by different processes.

Emails are stored lower-case; every lookup lower-cases its argument, which
makes the UNIQUE constraint on accounts.email case-insensitive in effect.

Timestamps are stored as fixed-width ISO 8601 UTC text (microsecond
precision) so lexical comparison in SQL matches chronological order.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.models import (
    ORIGIN_LOCAL,
    Account,
    AuditEvent,
    CrmProfile,
    FederationPolicy,
    PasswordResetToken,
    SessionRecord,
)
from core.config import get_settings

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(320), nullable=False, unique=True),  # lower-case
    Column("first_name", String(255)),
    Column("last_name", String(255)),
    Column("password_hash", Text),  # NULL for federation-only accounts
    Column("origin", String(16), nullable=False, server_default=ORIGIN_LOCAL),
    Column("federated_subject", String(255)),
    Column("federated_tenant", String(255)),
    Column("disabled", Boolean, nullable=False, server_default="0"),
    Column("email_verified", Boolean, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("last_login_at", String(32)),
)

_reset_tokens = Table(
    "password_reset_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, nullable=False),
    Column("token", String(64), nullable=False, unique=True),
    Column("expires_at", String(32), nullable=False),
    Column("used_at", String(32)),
    Column("created_at", String(32), nullable=False),
)

_policy = Table(
    "federation_policy",
    _metadata,
    Column("id", Integer, primary_key=True),
    Column("allowed_tenant_ids", JSON, nullable=False),
    Column("allowed_email_domains", JSON, nullable=False),
    Column("default_role_for_sso", String(30), nullable=False),
    Column("auto_provision_users", Boolean, nullable=False),
    Column("sso_only", Boolean, nullable=False),
    Column("updated_at", String(32), nullable=False),
    CheckConstraint("id = 1", name="federation_policy_single_row"),
)

_audit = Table(
    "auth_audit_log",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer),
    Column("email", String(320)),
    Column("action", String(50), nullable=False),
    Column("provider", String(20)),
    Column("success", Boolean, nullable=False),
    Column("failure_reason", Text),
    Column("metadata", JSON),
    Column("ip_address", String(64)),
    Column("user_agent", Text),
    Column("created_at", String(32), nullable=False),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("sid", String(64), primary_key=True),
    Column("account_id", Integer, nullable=False, index=True),
    Column("email", String(320), nullable=False),
    Column("display_name", String(512), nullable=False),
    Column("origin", String(16), nullable=False),
    Column("disabled", Boolean, nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False, index=True),
)

_crm_profiles = Table(
    "crm_profiles",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, nullable=False, unique=True),
    Column("role", String(30), nullable=False, server_default="sales"),
    Column("first_name", String(255)),
    Column("last_name", String(255)),
    Column("email", String(320)),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers proceed while a login writes.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for every auth table.

    Usage:
        store = AccountStore()
        account_id = store.create_account(Account(email="a@b.com", password_hash=hash_password("secret123")))
        account = store.get_account_by_email("A@B.com")
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def create_account(self, account: Account) -> int:
        """Insert a new account and return its assigned ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        Callers treat that as DuplicateEmail: a concurrent registration won.
        """
        now = _iso(utcnow())
        with self.engine.begin() as conn:
            result = conn.execute(
                _accounts.insert().values(
                    email=normalize_email(account.email),
                    first_name=account.first_name,
                    last_name=account.last_name,
                    password_hash=account.password_hash,
                    origin=account.origin,
                    federated_subject=account.federated_subject,
                    federated_tenant=account.federated_tenant,
                    disabled=account.disabled,
                    email_verified=account.email_verified,
                    created_at=now,
                    updated_at=now,
                    last_login_at=_iso(account.last_login_at),
                )
            )
            return result.inserted_primary_key[0]

    def get_account(self, account_id: int) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_account_by_email(self, email: str) -> Account | None:
        """Case-insensitive lookup. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _accounts.select().where(func.lower(_accounts.c.email) == normalize_email(email))
            ).fetchone()
        return _row_to_account(row) if row is not None else None

    def list_accounts(self) -> list[Account]:
        """Return all accounts ordered by email. Admin-only operation."""
        with self.engine.connect() as conn:
            rows = conn.execute(_accounts.select().order_by(_accounts.c.email)).fetchall()
        return [_row_to_account(r) for r in rows]

    def update_account(self, account_id: int, **fields) -> bool:
        """Update mutable account fields and stamp updated_at.

        Accepted fields: first_name, last_name, password_hash, origin,
        federated_subject, federated_tenant, disabled, email_verified,
        last_login_at (datetime).

        Returns True if a row was updated, False if account_id was not found.
        """
        if "last_login_at" in fields:
            fields["last_login_at"] = _iso(fields["last_login_at"])
        fields["updated_at"] = _iso(utcnow())
        with self.engine.begin() as conn:
            result = conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(**fields))
        return result.rowcount > 0

    def update_last_login(self, account_id: int) -> None:
        """Stamp the current UTC time as last_login_at."""
        with self.engine.begin() as conn:
            conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(last_login_at=_iso(utcnow())))

    # ------------------------------------------------------------------
    # Password reset tokens
    # ------------------------------------------------------------------

    def create_reset_token(self, token: PasswordResetToken) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                _reset_tokens.insert().values(
                    account_id=token.account_id,
                    token=token.token,
                    expires_at=_iso(token.expires_at),
                    created_at=_iso(utcnow()),
                )
            )
            return result.inserted_primary_key[0]

    def get_reset_token(self, token: str) -> PasswordResetToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(_reset_tokens.select().where(_reset_tokens.c.token == token)).fetchone()
        return _row_to_reset_token(row) if row is not None else None

    def redeem_reset_token(self, token: str, password_hash: str) -> int | None:
        """Atomically consume a reset token and store the new password hash.

        The check-and-set on used_at is one UPDATE statement, so only one of
        several concurrent redemptions can match the row. The password write
        happens in the same transaction as the consumption.

        Returns the owning account id on success, None if the token is
        missing, expired, or already used (callers re-read to tell which).
        """
        now = _iso(utcnow())
        with self.engine.begin() as conn:
            result = conn.execute(
                _reset_tokens.update()
                .where(
                    (_reset_tokens.c.token == token)
                    & (_reset_tokens.c.used_at.is_(None))
                    & (_reset_tokens.c.expires_at > now)
                )
                .values(used_at=now)
            )
            if result.rowcount != 1:
                return None
            account_id = conn.execute(
                select(_reset_tokens.c.account_id).where(_reset_tokens.c.token == token)
            ).scalar_one()
            conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(password_hash=password_hash, updated_at=now)
            )
        return account_id

    # ------------------------------------------------------------------
    # Federation policy (single row)
    # ------------------------------------------------------------------

    def get_federation_policy(self) -> FederationPolicy:
        """Return the saved policy, or the permissive default if none is saved."""
        with self.engine.connect() as conn:
            row = conn.execute(_policy.select().where(_policy.c.id == 1)).fetchone()
        if row is None:
            return FederationPolicy()
        return FederationPolicy(
            allowed_tenant_ids=list(row.allowed_tenant_ids or []),
            allowed_email_domains=list(row.allowed_email_domains or []),
            default_role_for_sso=row.default_role_for_sso,
            auto_provision_users=bool(row.auto_provision_users),
            sso_only=bool(row.sso_only),
            updated_at=_dt(row.updated_at),
        )

    def save_federation_policy(self, policy: FederationPolicy) -> FederationPolicy:
        """Upsert the single policy row and return the stored value."""
        values = {
            "allowed_tenant_ids": list(policy.allowed_tenant_ids),
            "allowed_email_domains": list(policy.allowed_email_domains),
            "default_role_for_sso": policy.default_role_for_sso,
            "auto_provision_users": policy.auto_provision_users,
            "sso_only": policy.sso_only,
            "updated_at": _iso(utcnow()),
        }
        with self.engine.begin() as conn:
            result = conn.execute(_policy.update().where(_policy.c.id == 1).values(**values))
            if result.rowcount == 0:
                conn.execute(_policy.insert().values(id=1, **values))
        return self.get_federation_policy()

    # ------------------------------------------------------------------
    # Audit log (append-only)
    # ------------------------------------------------------------------

    def insert_audit_event(self, audit_event: AuditEvent) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                _audit.insert().values(
                    account_id=audit_event.account_id,
                    email=audit_event.email,
                    action=audit_event.action,
                    provider=audit_event.provider,
                    success=audit_event.success,
                    failure_reason=audit_event.failure_reason,
                    metadata=audit_event.metadata,
                    ip_address=audit_event.ip_address,
                    user_agent=audit_event.user_agent,
                    created_at=_iso(utcnow()),
                )
            )
            return result.inserted_primary_key[0]

    def list_audit_events(self, limit: int = 100, account_id: int | None = None) -> list[AuditEvent]:
        """Return audit events newest first."""
        query = _audit.select().order_by(_audit.c.id.desc()).limit(limit)
        if account_id is not None:
            query = query.where(_audit.c.account_id == account_id)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_audit_event(r) for r in rows]

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, record: SessionRecord) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                _sessions.insert().values(
                    sid=record.sid,
                    account_id=record.account_id,
                    email=record.email,
                    display_name=record.display_name,
                    origin=record.origin,
                    disabled=record.disabled,
                    created_at=_iso(record.created_at or utcnow()),
                    expires_at=_iso(record.expires_at),
                )
            )

    def get_session(self, sid: str) -> SessionRecord | None:
        """Return the session if it exists and has not expired."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _sessions.select().where((_sessions.c.sid == sid) & (_sessions.c.expires_at > _iso(utcnow())))
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    def delete_session(self, sid: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.sid == sid))
        return result.rowcount > 0

    def delete_sessions_for_account(self, account_id: int) -> int:
        """Remove every live session for an account. Returns rows removed."""
        with self.engine.begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.account_id == account_id))
        return result.rowcount

    def purge_expired_sessions(self) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.expires_at <= _iso(utcnow())))
        return result.rowcount

    # ------------------------------------------------------------------
    # CRM profiles
    # ------------------------------------------------------------------

    def get_crm_profile(self, account_id: int) -> CrmProfile | None:
        with self.engine.connect() as conn:
            row = conn.execute(_crm_profiles.select().where(_crm_profiles.c.account_id == account_id)).fetchone()
        return _row_to_crm_profile(row) if row is not None else None

    def create_crm_profile(self, profile: CrmProfile) -> CrmProfile:
        """Insert a profile; if a concurrent request already did, return theirs."""
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    _crm_profiles.insert().values(
                        account_id=profile.account_id,
                        role=profile.role,
                        first_name=profile.first_name,
                        last_name=profile.last_name,
                        email=profile.email,
                        created_at=_iso(utcnow()),
                    )
                )
        except IntegrityError:
            pass
        return self.get_crm_profile(profile.account_id)

    def set_role(self, account_id: int, role: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                _crm_profiles.update().where(_crm_profiles.c.account_id == account_id).values(role=role)
            )
        return result.rowcount > 0

    def get_roles(self) -> dict[int, str]:
        """Return {account_id: role} for every CRM profile."""
        with self.engine.connect() as conn:
            rows = conn.execute(select(_crm_profiles.c.account_id, _crm_profiles.c.role)).fetchall()
        return {r.account_id: r.role for r in rows}

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        first_name=row.first_name,
        last_name=row.last_name,
        password_hash=row.password_hash,
        origin=row.origin,
        federated_subject=row.federated_subject,
        federated_tenant=row.federated_tenant,
        disabled=bool(row.disabled),
        email_verified=bool(row.email_verified),
        created_at=_dt(row.created_at),
        updated_at=_dt(row.updated_at),
        last_login_at=_dt(row.last_login_at),
    )


def _row_to_reset_token(row) -> PasswordResetToken:
    return PasswordResetToken(
        id=row.id,
        account_id=row.account_id,
        token=row.token,
        expires_at=_dt(row.expires_at),
        used_at=_dt(row.used_at),
        created_at=_dt(row.created_at),
    )


def _row_to_audit_event(row) -> AuditEvent:
    return AuditEvent(
        id=row.id,
        account_id=row.account_id,
        email=row.email,
        action=row.action,
        provider=row.provider,
        success=bool(row.success),
        failure_reason=row.failure_reason,
        metadata=row._mapping["metadata"],
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        created_at=_dt(row.created_at),
    )


def _row_to_session(row) -> SessionRecord:
    return SessionRecord(
        sid=row.sid,
        account_id=row.account_id,
        email=row.email,
        display_name=row.display_name,
        origin=row.origin,
        disabled=bool(row.disabled),
        created_at=_dt(row.created_at),
        expires_at=_dt(row.expires_at),
    )


def _row_to_crm_profile(row) -> CrmProfile:
    return CrmProfile(
        id=row.id,
        account_id=row.account_id,
        role=row.role,
        first_name=row.first_name,
        last_name=row.last_name,
        email=row.email,
        created_at=_dt(row.created_at),
    )
