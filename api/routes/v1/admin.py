"""
api/routes/v1/admin.py -- Account lifecycle, SSO policy and audit log for admins.

Routes:
  GET   /admin/users                                -- accounts with auth metadata + role
  POST  /admin/users/{account_id}/disable           -- disable and end all sessions
  POST  /admin/users/{account_id}/enable            -- re-enable
  POST  /admin/users/{account_id}/link-microsoft    -- attach a Microsoft identity
  POST  /admin/users/{account_id}/unlink-microsoft  -- detach it (needs a password)
  GET   /admin/sso-settings                         -- current federation policy
  PATCH /admin/sso-settings                         -- partial policy update
  GET   /admin/audit-log                            -- newest audit events first

Every route requires role "admin" via the router-level require_admin
dependency. The acting admin is also injected per route where the handler
needs it (self-disable guard, policy audit entry).
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from api.models import (
    AccountResponse,
    AdminUserRow,
    AuditEventResponse,
    ErrorDetail,
    LinkFederationRequest,
    PolicyPatch,
    PolicyResponse,
)
from api.routes.v1.auth import client_info
from auth import audit
from auth.binder import disable_account, enable_account, link_federation, unlink_federation
from auth.dependencies import require_admin
from auth.models import CurrentUser
from auth.store import AccountStore

logger = logging.getLogger("dealflow.api.admin")

router = APIRouter(dependencies=[Depends(require_admin)])


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


@router.get("/admin/users", response_model=list[AdminUserRow])
def list_users(request: Request) -> list[AdminUserRow]:
    """Return every account with origin, linkage, disabled flag, last login and role."""
    store: AccountStore = request.app.state.account_store
    roles = store.get_roles()
    return [
        AdminUserRow(**AccountResponse.from_account(a).model_dump(), role=roles.get(a.id))
        for a in store.list_accounts()
    ]


@router.post("/admin/users/{account_id}/disable", response_model=AccountResponse)
def disable_user(
    request: Request,
    account_id: int,
    admin: CurrentUser = Depends(require_admin),
) -> AccountResponse:
    if account_id == admin.account_id:
        raise HTTPException(
            status_code=400,
            detail=ErrorDetail(code="self_disable", message="You cannot disable your own account.").model_dump(),
        )
    store: AccountStore = request.app.state.account_store
    account = disable_account(store, account_id, client=client_info(request))
    logger.info("Account %s disabled by admin %s", account_id, admin.account_id)
    return AccountResponse.from_account(account)


@router.post("/admin/users/{account_id}/enable", response_model=AccountResponse)
def enable_user(request: Request, account_id: int) -> AccountResponse:
    store: AccountStore = request.app.state.account_store
    return AccountResponse.from_account(enable_account(store, account_id, client=client_info(request)))


@router.post("/admin/users/{account_id}/link-microsoft", response_model=AccountResponse)
def link_microsoft(request: Request, account_id: int, body: LinkFederationRequest) -> AccountResponse:
    """Attach a Microsoft identity by object id and tenant (manual remediation)."""
    store: AccountStore = request.app.state.account_store
    account = link_federation(
        store, account_id, body.microsoft_user_id, body.tenant_id, client=client_info(request)
    )
    return AccountResponse.from_account(account)


@router.post("/admin/users/{account_id}/unlink-microsoft", response_model=AccountResponse)
def unlink_microsoft(request: Request, account_id: int) -> AccountResponse:
    """Detach the Microsoft identity. 400 when the account would be left without a password."""
    store: AccountStore = request.app.state.account_store
    return AccountResponse.from_account(unlink_federation(store, account_id, client=client_info(request)))


# ---------------------------------------------------------------------------
# Federation policy
# ---------------------------------------------------------------------------


@router.get("/admin/sso-settings", response_model=PolicyResponse)
def get_sso_settings(request: Request) -> PolicyResponse:
    store: AccountStore = request.app.state.account_store
    return PolicyResponse.from_policy(store.get_federation_policy())


@router.patch("/admin/sso-settings", response_model=PolicyResponse)
def update_sso_settings(
    request: Request,
    body: PolicyPatch,
    admin: CurrentUser = Depends(require_admin),
) -> PolicyResponse:
    """Merge the supplied fields into the saved policy. Omitted fields keep their value."""
    store: AccountStore = request.app.state.account_store
    changes = body.model_dump(exclude_none=True)
    if "default_role_for_sso" in changes:
        changes["default_role_for_sso"] = body.default_role_for_sso.value
    saved = store.save_federation_policy(replace(store.get_federation_policy(), **changes))
    audit.record_event(
        store,
        audit.POLICY_UPDATED,
        account_id=admin.account_id,
        email=admin.email,
        metadata={"fields": sorted(changes)},
        client=client_info(request),
    )
    return PolicyResponse.from_policy(saved)


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------


@router.get("/admin/audit-log", response_model=list[AuditEventResponse])
def audit_log(
    request: Request,
    limit: int = Query(default=100, ge=1, le=1000),
    account_id: Optional[int] = None,
) -> list[AuditEventResponse]:
    """Newest first. Optionally filtered to one account."""
    store: AccountStore = request.app.state.account_store
    return [AuditEventResponse.from_event(e) for e in store.list_audit_events(limit=limit, account_id=account_id)]
