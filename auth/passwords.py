"""
auth/passwords.py -- Password Authenticator: hashing, registration, local login.

Security design decisions:
  Passwords: bcrypt with a fixed work factor of 12. Bcrypt is the right
       choice for low-entropy secrets because its cost factor makes
       brute-force expensive, and 12 stays compatible with hashes produced
       by the previous Node deployment.

  Timing equalization [C1]: login always runs one bcrypt check, against
       _DUMMY_HASH when the email is unknown or the account has no password,
       so response time does not reveal whether an email is registered.

  Enumeration: unknown email and wrong password both raise
       InvalidCredentials. Disabled and SSO-only accounts get specific errors
       because the caller already asserted the account exists. Every branch
       writes its own audit event with the precise reason.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import bcrypt
from sqlalchemy.exc import IntegrityError

from auth import audit
from auth.errors import (
    AccountDisabled,
    DuplicateEmail,
    InvalidCredentials,
    MissingFields,
    NoPasswordSet,
    SsoOnlyAccount,
    WeakPassword,
)
from auth.models import ORIGIN_LOCAL, PROVIDER_LOCAL, Account, ClientInfo
from auth.store import normalize_email

if TYPE_CHECKING:
    from auth.store import AccountStore

logger = logging.getLogger("dealflow.auth")

BCRYPT_ROUNDS = 12
MIN_PASSWORD_LENGTH = 8

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are silently truncated by bcrypt. The API
    layer caps password fields at 128 characters.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    bcrypt.checkpw does its own constant-time comparison. A malformed hash
    is a mismatch, not an error.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


def check_password_strength(password: str) -> None:
    """Raise WeakPassword if the password is shorter than MIN_PASSWORD_LENGTH."""
    if len(password) < MIN_PASSWORD_LENGTH:
        raise WeakPassword()


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones [C1].
_DUMMY_HASH: str = hash_password("dealflow_timing_dummy")


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def register_local_account(
    store: AccountStore,
    email: str,
    password: str,
    first_name: str | None = None,
    last_name: str | None = None,
    client: ClientInfo | None = None,
) -> Account:
    """Create a local-origin account with email_verified = False.

    Raises:
        MissingFields:  email or password empty.
        DuplicateEmail: an account with this email exists (any case).
        WeakPassword:   password shorter than 8 characters.
    """
    if not email or not email.strip() or not password:
        raise MissingFields("Email and password are required.")
    email = normalize_email(email)

    if store.get_account_by_email(email) is not None:
        raise DuplicateEmail()
    check_password_strength(password)

    account = Account(
        email=email,
        password_hash=hash_password(password),
        first_name=first_name or None,
        last_name=last_name or None,
        origin=ORIGIN_LOCAL,
        email_verified=False,
    )
    try:
        account.id = store.create_account(account)
    except IntegrityError as exc:
        # A concurrent registration for the same email won the insert.
        raise DuplicateEmail() from exc

    audit.record_event(
        store, audit.REGISTER, account_id=account.id, email=email, provider=PROVIDER_LOCAL, client=client
    )
    logger.info("Registered local account %s", account.id)
    return store.get_account(account.id) or account


# ---------------------------------------------------------------------------
# Local login
# ---------------------------------------------------------------------------


def login_local(
    store: AccountStore,
    email: str,
    password: str,
    client: ClientInfo | None = None,
) -> Account:
    """Authenticate an email/password pair. Returns the Account on success.

    Failure order: unknown email, disabled, SSO-only policy, no password,
    wrong password. A disabled account also loses every live session.
    """
    if not email or not password:
        raise MissingFields("Email and password are required.")
    email = normalize_email(email)

    def _fail(reason: str, account: Account | None, error: Exception) -> None:
        audit.record_event(
            store,
            audit.FAILED_LOGIN,
            success=False,
            account_id=account.id if account else None,
            email=email,
            provider=PROVIDER_LOCAL,
            failure_reason=reason,
            client=client,
        )
        raise error

    account = store.get_account_by_email(email)
    if account is None:
        verify_password(password, _DUMMY_HASH)  # [C1]
        _fail("User not found", None, InvalidCredentials())

    if account.disabled:
        store.delete_sessions_for_account(account.id)
        _fail("Account disabled", account, AccountDisabled())

    policy = store.get_federation_policy()
    domain = email.rsplit("@", 1)[-1]
    if policy.sso_only and domain in policy.allowed_email_domains:
        _fail("Password login blocked by SSO-only policy", account, SsoOnlyAccount())

    if not account.has_password:
        verify_password(password, _DUMMY_HASH)  # [C1]
        _fail("No password set (SSO account)", account, NoPasswordSet())

    if not verify_password(password, account.password_hash):
        _fail("Invalid password", account, InvalidCredentials())

    store.update_last_login(account.id)
    audit.record_event(
        store, audit.LOGIN, account_id=account.id, email=account.email, provider=PROVIDER_LOCAL, client=client
    )
    return store.get_account(account.id) or account
