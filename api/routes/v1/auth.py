"""
api/routes/v1/auth.py -- Local and Microsoft sign-in, sessions, password reset.

Routes:
  POST /api/v1/auth/register                -- create local account; signs in
  POST /api/v1/auth/login                   -- password login; sets session cookie
  POST /api/v1/auth/logout                  -- ends the server-side session
  GET  /api/v1/auth/status                  -- public: signed-in? SSO available?
  GET  /api/v1/auth/user                    -- current account (requires auth)
  GET  /api/v1/auth/me                      -- current user incl. role (requires auth)
  POST /api/v1/auth/forgot-password         -- issue reset token
  POST /api/v1/auth/reset-password          -- consume reset token
  GET  /api/v1/auth/microsoft               -- redirect to Microsoft sign-in
  GET  /api/v1/auth/microsoft/callback      -- finish Microsoft sign-in; always redirects

Security:
  [H2] register, login, forgot-password and the Microsoft redirect are
       rate-limited per IP.
  [C1] login goes through authenticate() -> login_local(), which equalizes
       timing. Never inline the account lookup + bcrypt check here.
  [C2] Post-login redirect targets are relative paths only (_safe_next).
  [M3] The callback redirects with an error *code*, never a message or
       exception text.
  [M5] Cache-Control: no-store on every response that sets a session.
  [R1] The raw reset token is only returned when EXPOSE_RESET_TOKEN is on,
       which Settings forces off outside DEBUG.
"""

from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse

from api.limiter import limiter
from api.models import (
    AccountResponse,
    AuthStatusResponse,
    ForgotPasswordRequest,
    ForgotPasswordResponse,
    LoginRequest,
    MeResponse,
    MessageResponse,
    RegisterRequest,
    ResetPasswordRequest,
    SessionUserResponse,
)
from auth import audit
from auth.authenticate import AuthMethod, FederatedCredentials, LocalCredentials, authenticate
from auth.dependencies import get_current_user, session_token_from, try_get_current_user
from auth.errors import AuthError, Unauthenticated
from auth.federation import MicrosoftFederation
from auth.models import ORIGIN_FEDERATED, PROVIDER_LOCAL, PROVIDER_MICROSOFT, Account, ClientInfo, CurrentUser
from auth.passwords import register_local_account
from auth.provisioning import ensure_crm_profile
from auth.reset import request_reset, reset_password
from auth.sessions import clear_session_cookie, create_session, end_session, set_session_cookie
from auth.store import AccountStore
from core.config import get_settings

logger = logging.getLogger("dealflow.api.auth")

_settings = get_settings()

# Auth policy:
# - POST /auth/register, /auth/login, /auth/forgot-password: public, rate limited
# - POST /auth/logout, /auth/reset-password:                 public
# - GET  /auth/status, /auth/microsoft, /auth/microsoft/callback: public
# - GET  /auth/user, /auth/me:                                requires auth (get_current_user)
router = APIRouter()

_FORGOT_MESSAGE = "If an account exists with this email, a password reset link has been sent."


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def client_info(request: Request) -> ClientInfo:
    return ClientInfo(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


def _safe_next(next_url: Optional[str]) -> str:
    """Validate a post-login redirect target. Only accept relative paths. [C2]"""
    if next_url and next_url.startswith("/") and not next_url.startswith("//") and "\\" not in next_url:
        return next_url
    return "/"


def _signed_in_response(store: AccountStore, account: Account, status_code: int = 200) -> JSONResponse:
    ensure_crm_profile(store, account)
    token, _ = create_session(store, account)
    resp = JSONResponse(
        status_code=status_code,
        content=SessionUserResponse(user=AccountResponse.from_account(account)).model_dump(mode="json"),
    )
    set_session_cookie(resp, token)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _login_error_redirect(code: str) -> RedirectResponse:
    return RedirectResponse(f"/login?{urlencode({'error': code})}", status_code=302)  # [M3]


# ---------------------------------------------------------------------------
# Local credentials
# ---------------------------------------------------------------------------


@limiter.limit(_settings.login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/register", response_model=SessionUserResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create a local account and sign it in immediately."""
    store: AccountStore = request.app.state.account_store
    account = register_local_account(
        store,
        body.email,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        client=client_info(request),
    )
    return _signed_in_response(store, account, status_code=201)


@limiter.limit(_settings.login_rate_limit)  # [H2]
@router.post("/auth/login", response_model=SessionUserResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; set the session cookie.

    Unknown email and wrong password produce the same invalid_credentials
    error. Disabled and SSO-only accounts get their own codes.
    """
    store: AccountStore = request.app.state.account_store
    outcome = authenticate(
        AuthMethod.LOCAL,
        LocalCredentials(email=body.email, password=body.password),
        store=store,
        client=client_info(request),
    )
    return _signed_in_response(store, outcome.account)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request) -> JSONResponse:
    """End the server-side session and clear the cookie. Idempotent."""
    store: AccountStore = request.app.state.account_store
    ended = end_session(store, session_token_from(request))
    if ended is not None:
        audit.record_event(
            store,
            audit.LOGOUT,
            account_id=ended.account_id,
            email=ended.email,
            provider=PROVIDER_MICROSOFT if ended.origin == ORIGIN_FEDERATED else PROVIDER_LOCAL,
            client=client_info(request),
        )
    resp = JSONResponse(content={"message": "Logged out."})
    clear_session_cookie(resp)
    return resp


@router.get("/auth/status", response_model=AuthStatusResponse)
def status(request: Request) -> AuthStatusResponse:
    """Public probe used by the login page."""
    user = try_get_current_user(request)
    federation: MicrosoftFederation = request.app.state.federation
    return AuthStatusResponse(
        authenticated=user is not None,
        user=MeResponse.from_current(user) if user else None,
        microsoft_sso_enabled=federation.is_configured(),
    )


@router.get("/auth/user", response_model=AccountResponse)
def current_account(request: Request, current_user: CurrentUser = Depends(get_current_user)) -> AccountResponse:
    """Return the signed-in account. The password hash is never included."""
    store: AccountStore = request.app.state.account_store
    account = store.get_account(current_user.account_id)
    if account is None:
        raise Unauthenticated()
    return AccountResponse.from_account(account)


@router.get("/auth/me", response_model=MeResponse)
def me(current_user: CurrentUser = Depends(get_current_user)) -> MeResponse:
    return MeResponse.from_current(current_user)


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@limiter.limit(_settings.login_rate_limit)  # [H2]
@router.post("/auth/forgot-password", response_model=ForgotPasswordResponse)
def forgot_password(request: Request, body: ForgotPasswordRequest) -> ForgotPasswordResponse:
    """Issue a reset token. Same response whether or not the email exists.

    Delivery of the token by email is handled outside the auth core.
    """
    store: AccountStore = request.app.state.account_store
    result = request_reset(store, body.email, client=client_info(request))
    token = result.token if get_settings().expose_reset_token else None  # [R1]
    return ForgotPasswordResponse(message=_FORGOT_MESSAGE, token=token)


@router.post("/auth/reset-password", response_model=MessageResponse)
def complete_reset(request: Request, body: ResetPasswordRequest) -> MessageResponse:
    store: AccountStore = request.app.state.account_store
    reset_password(store, body.token, body.password, client=client_info(request))
    return MessageResponse(message="Password has been reset successfully.")


# ---------------------------------------------------------------------------
# Microsoft federation
# ---------------------------------------------------------------------------


@limiter.limit(_settings.login_rate_limit)  # [H2] bounds pending-state churn
@router.get("/auth/microsoft")
def microsoft_redirect(request: Request, next: Optional[str] = None) -> RedirectResponse:
    """Send the browser to Microsoft. 503 JSON when SSO is not configured."""
    federation: MicrosoftFederation = request.app.state.federation
    url = federation.authorization_url(redirect_to=_safe_next(next))
    return RedirectResponse(url, status_code=302)


@router.get("/auth/microsoft/callback", name="microsoft_callback")
def microsoft_callback(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    error_description: Optional[str] = None,
) -> Response:
    """Finish Microsoft sign-in and redirect back into the app.

    This terminates a browser navigation, so every outcome is a redirect:
    success goes to the post-login target, failures go to /login?error=<code>.
    """
    store: AccountStore = request.app.state.account_store
    federation: MicrosoftFederation = request.app.state.federation

    if error:
        logger.warning("Microsoft returned an error on callback: %s", error)
        if state:
            federation.consume_state(state)
        return _login_error_redirect("sso_failed")
    if not code or not state:
        return _login_error_redirect("invalid_callback")

    try:
        outcome = authenticate(
            AuthMethod.FEDERATED,
            FederatedCredentials(code=code, state=state),
            store=store,
            federation=federation,
            client=client_info(request),
        )
    except AuthError as exc:
        return _login_error_redirect(exc.code)
    except Exception:
        logger.exception("Unexpected failure during Microsoft callback")
        return _login_error_redirect("sso_failed")

    ensure_crm_profile(store, outcome.account)
    token, _ = create_session(store, outcome.account)
    resp = RedirectResponse(_safe_next(outcome.redirect_to), status_code=302)  # [C2]
    set_session_cookie(resp, token)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp
