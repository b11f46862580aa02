"""
auth/provisioning.py -- CRM profile bootstrap.

The role-bearing CRM profile belongs to the surrounding CRM, not to the
auth core. The auth core only guarantees that an authenticated account has
one: the first time an account is seen without a profile, one is created
with role "sales" for local accounts or the federation policy's default
role for federated accounts. Existing profiles are never modified here.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from auth.models import ORIGIN_FEDERATED, ROLE_SALES, Account, CrmProfile

if TYPE_CHECKING:
    from auth.store import AccountStore


def default_role_for(store: AccountStore, account: Account) -> str:
    if account.origin == ORIGIN_FEDERATED:
        return store.get_federation_policy().default_role_for_sso or ROLE_SALES
    return ROLE_SALES


def ensure_crm_profile(store: AccountStore, account: Account) -> CrmProfile:
    """Return the account's CRM profile, creating it on first use."""
    profile = store.get_crm_profile(account.id)
    if profile is not None:
        return profile
    return store.create_crm_profile(
        CrmProfile(
            account_id=account.id,
            role=default_role_for(store, account),
            first_name=account.first_name,
            last_name=account.last_name,
            email=account.email,
        )
    )
