"""
auth/errors.py -- Error taxonomy for the authentication core.

Every failure a caller can observe is an AuthError subclass carrying:
  code        -- stable machine-readable identifier (API clients switch on it)
  message     -- short, actionable, user-facing text
  status_code -- HTTP status the API layer renders

Messages are calibrated against account enumeration: InvalidCredentials is
used for both "no such email" and "wrong password", while disabled and
SSO-only accounts get specific messages. The audit trail always records the
precise internal reason regardless of how generic the message is.

The three federation failure types that describe infrastructure or token
problems share one generic message so no infrastructure detail leaks.

Layer rule: no imports from api/. No FastAPI types here -- api/main.py maps
AuthError to the JSON error envelope.
"""

from __future__ import annotations

_FEDERATION_FAILED = "Microsoft sign-in failed. Please try again."


class AuthError(Exception):
    code = "auth_error"
    message = "Authentication failed."
    status_code = 400

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)

    def to_detail(self) -> dict:
        return {"code": self.code, "message": self.message}


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------


class MissingFields(AuthError):
    code = "missing_fields"
    message = "Required fields are missing."


class WeakPassword(AuthError):
    code = "weak_password"
    message = "Password must be at least 8 characters."


class DuplicateEmail(AuthError):
    code = "duplicate_email"
    message = "Email already registered."
    status_code = 409


# ---------------------------------------------------------------------------
# Authentication failures
# ---------------------------------------------------------------------------


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    message = "Invalid email or password."
    status_code = 401


class AccountDisabled(AuthError):
    code = "account_disabled"
    message = "Account is disabled. Contact your administrator."
    status_code = 403


class NoPasswordSet(AuthError):
    code = "no_password_set"
    message = "This account uses Microsoft SSO. Please sign in with Microsoft."
    status_code = 401


class SsoOnlyAccount(AuthError):
    code = "sso_only_account"
    message = "This account uses SSO. Password sign-in and reset are not available."


class InvalidOrExpiredToken(AuthError):
    code = "invalid_or_expired_token"
    message = "Invalid or expired reset token."


class TokenAlreadyUsed(AuthError):
    code = "token_already_used"
    message = "This reset token has already been used."


class InvalidState(AuthError):
    code = "invalid_state"
    message = "Sign-in session expired or was tampered with. Please try again."


# ---------------------------------------------------------------------------
# Federation (external dependency / token integrity)
# ---------------------------------------------------------------------------


class FederationNotConfigured(AuthError):
    code = "federation_not_configured"
    message = "Microsoft SSO is not configured."
    status_code = 503


class FederationUnavailable(AuthError):
    code = "federation_unavailable"
    message = _FEDERATION_FAILED
    status_code = 502


class InvalidIdToken(AuthError):
    code = "invalid_id_token"
    message = _FEDERATION_FAILED
    status_code = 401


class ClaimProfileMismatch(AuthError):
    code = "claim_profile_mismatch"
    message = _FEDERATION_FAILED
    status_code = 401


class NoEmailInProfile(AuthError):
    code = "no_email_in_profile"
    message = "No email address found in your Microsoft profile."
    status_code = 401


# ---------------------------------------------------------------------------
# Policy rejections
# ---------------------------------------------------------------------------


class TenantNotAllowed(AuthError):
    code = "tenant_not_allowed"
    message = "Your organization is not authorized for SSO."
    status_code = 403


class DomainNotAllowed(AuthError):
    code = "domain_not_allowed"
    message = "Your email domain is not authorized for access."
    status_code = 403


class AutoProvisioningDisabled(AuthError):
    code = "auto_provisioning_disabled"
    message = "Account does not exist. Contact your administrator for access."
    status_code = 403


# ---------------------------------------------------------------------------
# Admin lifecycle
# ---------------------------------------------------------------------------


class AccountNotFound(AuthError):
    code = "account_not_found"
    message = "User not found."
    status_code = 404


class CannotUnlinkWithoutPassword(AuthError):
    code = "cannot_unlink_without_password"
    message = "Cannot unlink Microsoft account without setting a password first."


# ---------------------------------------------------------------------------
# Authorization gate
# ---------------------------------------------------------------------------


class Unauthenticated(AuthError):
    code = "unauthorized"
    message = "Authentication required."
    status_code = 401


class Forbidden(AuthError):
    code = "forbidden"
    message = "Admin access required."
    status_code = 403
