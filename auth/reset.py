"""
auth/reset.py -- Password reset token lifecycle.

request_reset() issues a 256-bit token (secrets.token_hex(32)) with a
24-hour expiry. Unknown emails get the same outward result as known ones
(no token, no error) so the endpoint cannot be used to enumerate accounts.

reset_password() hands consumption to AccountStore.redeem_reset_token(),
which is a single conditional UPDATE -- the atomicity lives in the database,
not in process memory, so concurrent redemptions from different workers
still produce exactly one success.

Token delivery (email) is outside this module. The raw token is returned to
the caller; the API layer only puts it on the wire when
Settings.expose_reset_token is on, which requires DEBUG [R1].

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING

from auth import audit
from auth.errors import InvalidOrExpiredToken, MissingFields, SsoOnlyAccount, TokenAlreadyUsed
from auth.models import ORIGIN_LOCAL, PROVIDER_LOCAL, ClientInfo, PasswordResetToken
from auth.passwords import check_password_strength, hash_password
from auth.store import utcnow
from core.config import get_settings

if TYPE_CHECKING:
    from auth.store import AccountStore

logger = logging.getLogger("dealflow.auth")


@dataclass(frozen=True)
class ResetRequestResult:
    token: str | None = None  # None when no account matched


def generate_reset_token() -> str:
    """32 random bytes as 64 hex characters -- 256 bits of entropy."""
    return secrets.token_hex(32)


def request_reset(store: AccountStore, email: str, client: ClientInfo | None = None) -> ResetRequestResult:
    """Issue a reset token for a local-origin account.

    Raises:
        MissingFields:  email empty.
        SsoOnlyAccount: the account is federation-only.
    """
    if not email or not email.strip():
        raise MissingFields("Email is required.")

    account = store.get_account_by_email(email)
    if account is None:
        return ResetRequestResult()

    if account.origin != ORIGIN_LOCAL:
        raise SsoOnlyAccount("This account uses SSO. Password reset is not available.")

    token = generate_reset_token()
    expires_at = utcnow() + timedelta(hours=get_settings().reset_token_expire_hours)
    store.create_reset_token(PasswordResetToken(account_id=account.id, token=token, expires_at=expires_at))

    audit.record_event(
        store,
        audit.PASSWORD_RESET_REQUEST,
        account_id=account.id,
        email=account.email,
        provider=PROVIDER_LOCAL,
        client=client,
    )
    return ResetRequestResult(token=token)


def reset_password(store: AccountStore, token: str, new_password: str, client: ClientInfo | None = None) -> int:
    """Consume a reset token and set a new password. Returns the account id.

    Raises:
        InvalidOrExpiredToken: token unknown or past expiry.
        TokenAlreadyUsed:      token already consumed (including by a
                               concurrent request that won the race).
        WeakPassword:          new password shorter than 8 characters.
    """
    if not token or not new_password:
        raise MissingFields("Token and password are required.")

    existing = store.get_reset_token(token)
    if existing is None:
        raise InvalidOrExpiredToken()
    if existing.used_at is not None:
        raise TokenAlreadyUsed()
    if utcnow() > existing.expires_at:
        raise InvalidOrExpiredToken("This reset token has expired.")
    check_password_strength(new_password)

    account_id = store.redeem_reset_token(token, hash_password(new_password))
    if account_id is None:
        # Lost the race between the read above and the conditional update.
        latest = store.get_reset_token(token)
        if latest is not None and latest.used_at is not None:
            raise TokenAlreadyUsed()
        raise InvalidOrExpiredToken()

    audit.record_event(
        store,
        audit.PASSWORD_RESET_COMPLETE,
        account_id=account_id,
        provider=PROVIDER_LOCAL,
        client=client,
    )
    logger.info("Password reset completed for account %s", account_id)
    return account_id
