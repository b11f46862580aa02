"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and services
do the work; these own the domain shape.

Timestamps are timezone-aware UTC datetimes. The store converts to and from
ISO 8601 text so SQLite and Postgres behave the same.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

ORIGIN_LOCAL = "local"
ORIGIN_FEDERATED = "federated"

PROVIDER_LOCAL = "local"
PROVIDER_MICROSOFT = "microsoft"

ROLE_ADMIN = "admin"
ROLE_MANAGER = "manager"
ROLE_SALES = "sales"
ROLES = (ROLE_ADMIN, ROLE_MANAGER, ROLE_SALES)  # highest privilege first


@dataclass
class Account:
    """The single identity record backing both login methods.

    password_hash is None for federation-only accounts. origin flips to
    "federated" only when the account has no password at all; an account
    with a password keeps origin "local" even after federation is linked.
    """

    email: str  # always stored lower-case
    origin: str = ORIGIN_LOCAL
    id: int | None = None
    first_name: str | None = None
    last_name: str | None = None
    password_hash: str | None = None
    federated_subject: str | None = None
    federated_tenant: str | None = None
    disabled: bool = False
    email_verified: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_login_at: datetime | None = None

    @property
    def display_name(self) -> str:
        name = " ".join(part for part in (self.first_name, self.last_name) if part)
        return name or self.email

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)


@dataclass
class PasswordResetToken:
    """One-time capability to set a new password. Usable once, before expiry."""

    account_id: int
    token: str
    expires_at: datetime
    id: int | None = None
    used_at: datetime | None = None
    created_at: datetime | None = None


@dataclass
class FederationPolicy:
    """Admin-configurable admission rules for federated login.

    An empty allow-list means "allow all". The default instance is the
    permissive policy used when no row has been saved yet.
    """

    allowed_tenant_ids: list[str] = field(default_factory=list)
    allowed_email_domains: list[str] = field(default_factory=list)
    default_role_for_sso: str = ROLE_SALES
    auto_provision_users: bool = True
    sso_only: bool = False
    updated_at: datetime | None = None


@dataclass
class AuditEvent:
    """Append-only record of an authentication-relevant action."""

    action: str  # "login", "failed_login", "sso_login", "failed_sso_login", ...
    success: bool = True
    account_id: int | None = None
    email: str | None = None
    provider: str | None = None
    failure_reason: str | None = None
    metadata: dict | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    id: int | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class PendingFederationState:
    """Anti-CSRF handshake token held in memory for the redirect round trip."""

    value: str
    created_at: float  # time.monotonic()
    redirect_to: str | None = None


@dataclass(frozen=True)
class SessionRecord:
    """Immutable snapshot of a server-side session row.

    Never mutated in place: disabling an account deletes the row and the next
    lookup observes that.
    """

    sid: str
    account_id: int
    email: str
    display_name: str
    origin: str
    disabled: bool
    expires_at: datetime
    created_at: datetime | None = None


@dataclass
class CrmProfile:
    """Role-bearing CRM user record, keyed 1:1 by account id."""

    account_id: int
    role: str = ROLE_SALES
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    id: int | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class CurrentUser:
    """What the rest of the CRM sees for an authenticated request."""

    account_id: int
    email: str
    name: str
    role: str
    disabled: bool
    origin: str = ORIGIN_LOCAL
    sid: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


@dataclass(frozen=True)
class ClientInfo:
    """Request metadata recorded on audit events."""

    ip_address: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class FederatedProfile:
    """Microsoft Graph /me profile, reduced to the fields the binder uses."""

    subject_id: str
    mail: str | None = None
    user_principal_name: str | None = None
    given_name: str | None = None
    surname: str | None = None
    display_name: str | None = None
