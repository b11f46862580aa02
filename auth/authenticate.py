"""
auth/authenticate.py -- One entry point for both login methods.

    account = authenticate(AuthMethod.LOCAL, LocalCredentials(email, pw), store=store)
    account = authenticate(AuthMethod.FEDERATED, FederatedCredentials(code, state),
                           store=store, federation=federation)

Local credentials go to the password authenticator. Federated credentials go
through the federation validator and then the account binder. Both return an
Account or raise AuthError; the caller issues the session.

Federation validation failures (bad state, token, network) happen before any
account is known, so they are audited here with the failure code as reason.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import TYPE_CHECKING

from auth import audit
from auth.binder import bind_federated_identity
from auth.errors import AuthError, MissingFields
from auth.models import PROVIDER_MICROSOFT, Account, ClientInfo
from auth.passwords import login_local

if TYPE_CHECKING:
    from auth.federation import MicrosoftFederation
    from auth.store import AccountStore


class AuthMethod(enum.Enum):
    LOCAL = "local"
    FEDERATED = "federated"


@dataclass(frozen=True)
class LocalCredentials:
    email: str
    password: str


@dataclass(frozen=True)
class FederatedCredentials:
    code: str
    state: str


@dataclass(frozen=True)
class AuthOutcome:
    account: Account
    redirect_to: str | None = None


def authenticate(
    method: AuthMethod,
    credentials: LocalCredentials | FederatedCredentials,
    *,
    store: AccountStore,
    federation: MicrosoftFederation | None = None,
    client: ClientInfo | None = None,
) -> AuthOutcome:
    if method is AuthMethod.LOCAL:
        if not isinstance(credentials, LocalCredentials):
            raise TypeError("LOCAL authentication requires LocalCredentials")
        return AuthOutcome(account=login_local(store, credentials.email, credentials.password, client))

    if method is AuthMethod.FEDERATED:
        if not isinstance(credentials, FederatedCredentials):
            raise TypeError("FEDERATED authentication requires FederatedCredentials")
        if federation is None:
            raise TypeError("FEDERATED authentication requires a federation validator")
        if not credentials.code or not credentials.state:
            raise MissingFields("Invalid callback parameters.")
        try:
            result = federation.complete_login(credentials.code, credentials.state)
        except AuthError as exc:
            audit.record_event(
                store,
                audit.FAILED_SSO_LOGIN,
                success=False,
                provider=PROVIDER_MICROSOFT,
                failure_reason=exc.code,
                client=client,
            )
            raise
        account = bind_federated_identity(store, result.profile, result.tenant_id, client)
        return AuthOutcome(account=account, redirect_to=result.redirect_to)

    raise ValueError(f"Unknown authentication method: {method!r}")
