"""
auth/dependencies.py -- Authorization gate and FastAPI Depends() helpers.

The session handle is read from, in priority order:
  1. the "session" cookie -- set by the web UI login and SSO callback
  2. an Authorization: Bearer <token> header -- API clients holding the
     same signed handle

authorize_session() is the gate itself and has no FastAPI dependency, so the
rest of the CRM (and tests) can call it with just a store and a token:

  - no token, bad signature, expired or deleted session  -> Unauthenticated
  - account missing                                       -> session deleted, Unauthenticated
  - account disabled in the store                         -> session deleted, AccountDisabled
  - session flag disagrees with the store (stale snapshot) -> session deleted, Unauthenticated

On success it bootstraps the CRM profile if missing and returns an immutable
CurrentUser carrying the role.

get_current_user() / require_admin() wrap it for route signatures.
try_get_current_user() is the soft variant used by public status routes.

Layer rule: auth/dependencies.py may import from fastapi (Request) because
this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import Request

from auth.errors import AccountDisabled, AuthError, Forbidden, Unauthenticated
from auth.models import ROLE_ADMIN, CurrentUser
from auth.provisioning import ensure_crm_profile
from auth.sessions import SESSION_COOKIE, resolve_session

if TYPE_CHECKING:
    from auth.store import AccountStore


def session_token_from(request: Request) -> str | None:
    token: str | None = request.cookies.get(SESSION_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
    return token or None


def authorize_session(store: AccountStore, token: str | None) -> CurrentUser:
    """Resolve a session handle to the current user or raise."""
    record = resolve_session(store, token)
    if record is None:
        raise Unauthenticated()

    account = store.get_account(record.account_id)
    if account is None:
        store.delete_session(record.sid)
        raise Unauthenticated()
    if account.disabled:
        store.delete_session(record.sid)
        raise AccountDisabled()
    if record.disabled:
        # Stale snapshot; the stored account is enabled.
        store.delete_session(record.sid)
        raise Unauthenticated()

    profile = ensure_crm_profile(store, account)
    return CurrentUser(
        account_id=account.id,
        email=account.email,
        name=account.display_name,
        role=profile.role,
        disabled=account.disabled,
        origin=account.origin,
        sid=record.sid,
    )


def try_get_current_user(request: Request) -> CurrentUser | None:
    """Return the authenticated user, or None. Never raises AuthError."""
    try:
        return get_current_user(request)
    except AuthError:
        return None


def get_current_user(request: Request) -> CurrentUser:
    """Require a live session for an enabled account.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: CurrentUser = Depends(get_current_user)): ...
    """
    return authorize_session(request.app.state.account_store, session_token_from(request))


def require_admin(request: Request) -> CurrentUser:
    """Require role "admin". 401 if unauthenticated, 403 if disabled or not admin."""
    user = get_current_user(request)
    if user.role != ROLE_ADMIN:
        raise Forbidden()
    return user
