"""
auth/audit.py -- Fire-and-forget authentication audit trail.

record_event() is the only way services write to auth_audit_log. A failed
write is logged for operators and swallowed: whether the audit row was
durably written never changes the outcome of the login, reset, or admin
action that triggered it.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from auth.models import AuditEvent, ClientInfo

if TYPE_CHECKING:
    from auth.store import AccountStore

logger = logging.getLogger("dealflow.auth.audit")

# Action names recorded in auth_audit_log.action
REGISTER = "register"
LOGIN = "login"
FAILED_LOGIN = "failed_login"
LOGOUT = "logout"
SSO_LOGIN = "sso_login"
FAILED_SSO_LOGIN = "failed_sso_login"
PASSWORD_RESET_REQUEST = "password_reset_request"
PASSWORD_RESET_COMPLETE = "password_reset_complete"
FEDERATION_LINKED = "microsoft_account_linked"
FEDERATION_UNLINKED = "microsoft_account_unlinked"
ACCOUNT_DISABLED = "user_disabled"
ACCOUNT_ENABLED = "user_enabled"
POLICY_UPDATED = "sso_settings_updated"


def record_event(
    store: AccountStore,
    action: str,
    *,
    success: bool = True,
    account_id: int | None = None,
    email: str | None = None,
    provider: str | None = None,
    failure_reason: str | None = None,
    metadata: dict | None = None,
    client: ClientInfo | None = None,
) -> None:
    """Append one audit event. Never raises."""
    client = client or ClientInfo()
    try:
        store.insert_audit_event(
            AuditEvent(
                action=action,
                success=success,
                account_id=account_id,
                email=email,
                provider=provider,
                failure_reason=failure_reason,
                metadata=metadata,
                ip_address=client.ip_address,
                user_agent=client.user_agent,
            )
        )
    except Exception:
        logger.exception("Failed to write audit event %s for %s", action, email or account_id)
