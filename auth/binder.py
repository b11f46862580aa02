"""
auth/binder.py -- Identity resolver / account binder and admin lifecycle.

bind_federated_identity() decides whether a verified Microsoft identity may
enter and which Account it becomes. Checks run in order and stop at the
first failure:

  1. email from profile (mail, then userPrincipalName)    -> NoEmailInProfile
  2. load policy (no row = permissive defaults)
  3. tenant allow-list (non-empty and tenant not listed)  -> TenantNotAllowed
  4. domain allow-list (non-empty and domain not listed)  -> DomainNotAllowed
  5. existing account by email (case-insensitive)
       disabled                                           -> AccountDisabled
       enabled: refresh linkage, names, last login
     no account
       auto-provisioning off                              -> AutoProvisioningDisabled
       else create federated account, email_verified = True

Origin rule: an account is "federated" only while it has no password.
Binding Microsoft to an account that has a password keeps it "local".

The admin operations (link, unlink, disable, enable) live here too because
they maintain the same invariant: every account keeps at least one usable
login path.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError

from auth import audit
from auth.errors import (
    AccountDisabled,
    AccountNotFound,
    AutoProvisioningDisabled,
    CannotUnlinkWithoutPassword,
    DomainNotAllowed,
    NoEmailInProfile,
    TenantNotAllowed,
)
from auth.models import (
    ORIGIN_FEDERATED,
    ORIGIN_LOCAL,
    PROVIDER_LOCAL,
    PROVIDER_MICROSOFT,
    Account,
    ClientInfo,
    FederatedProfile,
)
from auth.store import normalize_email, utcnow

if TYPE_CHECKING:
    from auth.store import AccountStore

logger = logging.getLogger("dealflow.auth")


def profile_email(profile: FederatedProfile) -> str | None:
    email = profile.mail or profile.user_principal_name
    return normalize_email(email) if email and email.strip() else None


def email_domain(email: str) -> str:
    return email.rsplit("@", 1)[-1].lower() if "@" in email else ""


def bind_federated_identity(
    store: AccountStore,
    profile: FederatedProfile,
    tenant_id: str,
    client: ClientInfo | None = None,
) -> Account:
    """Admit a verified federated identity and return the bound Account."""
    email = profile_email(profile)
    if not email:
        audit.record_event(
            store,
            audit.FAILED_SSO_LOGIN,
            success=False,
            provider=PROVIDER_MICROSOFT,
            failure_reason="No email address in Microsoft profile",
            metadata={"tenantId": tenant_id, "microsoftUserId": profile.subject_id},
            client=client,
        )
        raise NoEmailInProfile()

    def _reject(reason: str, error: Exception, account: Account | None = None) -> None:
        audit.record_event(
            store,
            audit.FAILED_SSO_LOGIN,
            success=False,
            account_id=account.id if account else None,
            email=email,
            provider=PROVIDER_MICROSOFT,
            failure_reason=reason,
            metadata={"tenantId": tenant_id},
            client=client,
        )
        raise error

    policy = store.get_federation_policy()

    if policy.allowed_tenant_ids and tenant_id not in policy.allowed_tenant_ids:
        _reject(f"Tenant {tenant_id} not in allowed list", TenantNotAllowed())

    domain = email_domain(email)
    if policy.allowed_email_domains and domain not in policy.allowed_email_domains:
        _reject(f"Email domain {domain} not in allowed list", DomainNotAllowed())

    account = store.get_account_by_email(email)
    if account is not None:
        if account.disabled:
            store.delete_sessions_for_account(account.id)
            _reject("Account disabled", AccountDisabled(), account)

        store.update_account(
            account.id,
            federated_subject=profile.subject_id,
            federated_tenant=tenant_id,
            origin=ORIGIN_LOCAL if account.has_password else ORIGIN_FEDERATED,
            first_name=profile.given_name or account.first_name,
            last_name=profile.surname or account.last_name,
            last_login_at=utcnow(),
        )
        account_id = account.id
    else:
        if not policy.auto_provision_users:
            _reject("Auto-provisioning disabled and user does not exist", AutoProvisioningDisabled())
        try:
            account_id = store.create_account(
                Account(
                    email=email,
                    first_name=profile.given_name or None,
                    last_name=profile.surname or None,
                    origin=ORIGIN_FEDERATED,
                    federated_subject=profile.subject_id,
                    federated_tenant=tenant_id,
                    email_verified=True,
                    last_login_at=utcnow(),
                )
            )
        except IntegrityError:
            # Two first-time callbacks for the same email raced; bind to the winner.
            existing = store.get_account_by_email(email)
            if existing is None:
                raise
            return bind_federated_identity(store, profile, tenant_id, client)
        logger.info("Auto-provisioned federated account %s (tenant %s)", account_id, tenant_id)

    audit.record_event(
        store,
        audit.SSO_LOGIN,
        account_id=account_id,
        email=email,
        provider=PROVIDER_MICROSOFT,
        metadata={"tenantId": tenant_id, "microsoftUserId": profile.subject_id},
        client=client,
    )
    return store.get_account(account_id)


# ---------------------------------------------------------------------------
# Admin lifecycle operations
# ---------------------------------------------------------------------------


def _load(store: AccountStore, account_id: int) -> Account:
    account = store.get_account(account_id)
    if account is None:
        raise AccountNotFound()
    return account


def link_federation(
    store: AccountStore,
    account_id: int,
    subject_id: str,
    tenant_id: str,
    client: ClientInfo | None = None,
) -> Account:
    """Attach a Microsoft identity to an existing account (manual remediation)."""
    account = _load(store, account_id)
    store.update_account(account_id, federated_subject=subject_id, federated_tenant=tenant_id)
    audit.record_event(
        store,
        audit.FEDERATION_LINKED,
        account_id=account_id,
        email=account.email,
        provider=PROVIDER_MICROSOFT,
        metadata={"tenantId": tenant_id, "microsoftUserId": subject_id},
        client=client,
    )
    return _load(store, account_id)


def unlink_federation(store: AccountStore, account_id: int, client: ClientInfo | None = None) -> Account:
    """Detach the Microsoft identity. Refused if it would leave no login path."""
    account = _load(store, account_id)
    if account.origin == ORIGIN_FEDERATED and not account.has_password:
        raise CannotUnlinkWithoutPassword()
    store.update_account(account_id, federated_subject=None, federated_tenant=None, origin=ORIGIN_LOCAL)
    audit.record_event(
        store,
        audit.FEDERATION_UNLINKED,
        account_id=account_id,
        email=account.email,
        provider=PROVIDER_LOCAL,
        client=client,
    )
    return _load(store, account_id)


def disable_account(store: AccountStore, account_id: int, client: ClientInfo | None = None) -> Account:
    """Set disabled and end every live session for the account.

    Requests that passed the gate before this call complete normally; the
    next request re-reads the account and is rejected.
    """
    account = _load(store, account_id)
    store.update_account(account_id, disabled=True)
    ended = store.delete_sessions_for_account(account_id)
    audit.record_event(
        store,
        audit.ACCOUNT_DISABLED,
        account_id=account_id,
        email=account.email,
        metadata={"sessionsEnded": ended},
        client=client,
    )
    return _load(store, account_id)


def enable_account(store: AccountStore, account_id: int, client: ClientInfo | None = None) -> Account:
    account = _load(store, account_id)
    store.update_account(account_id, disabled=False)
    audit.record_event(store, audit.ACCOUNT_ENABLED, account_id=account_id, email=account.email, client=client)
    return _load(store, account_id)
