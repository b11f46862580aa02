"""
tests/conftest.py -- Shared test fixtures for the DealFlow auth core.

This module provides:
  - store: an isolated in-memory AccountStore per test
  - make_account() / session_headers(): seed accounts and live sessions
  - rsa_signer: throwaway RSA key that mints real RS256 id_tokens
  - fake_microsoft(): a requests.Session stand-in serving JWKS and Graph JSON
  - federation: MicrosoftFederation wired to the fake, with test credentials
  - api_client: TestClient with a patched lifespan and follow_redirects=False

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The DEBUG env var must be set before any auth module import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
import time
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from typing import Optional
from unittest.mock import MagicMock

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("EXPOSE_RESET_TOKEN", "true")

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi.testclient import TestClient
from jose import jwk, jwt

from api.limiter import limiter
from api.main import app
from auth.federation import GRAPH_API, MicrosoftFederation
from auth.models import ORIGIN_LOCAL, Account
from auth.passwords import hash_password
from auth.provisioning import ensure_crm_profile
from auth.sessions import create_session
from auth.store import AccountStore
from core.config import Settings

# Rate limits are exercised manually; the shared in-memory counters would
# otherwise leak between tests that log in repeatedly from 127.0.0.1.
limiter.enabled = False

CLIENT_ID = "00000000-aaaa-bbbb-cccc-000000000001"
TENANT_A = "11111111-1111-1111-1111-111111111111"
TENANT_B = "22222222-2222-2222-2222-222222222222"
KID = "test-key-1"
DEFAULT_PASSWORD = "correct-horse-1"


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _memory_url() -> str:
    return f"sqlite:///file:test_auth_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


@pytest.fixture
def store() -> Generator[AccountStore, None, None]:
    s = AccountStore(db_url=_memory_url())
    yield s
    s.close()


def make_account(
    store: AccountStore,
    email: str,
    password: Optional[str] = DEFAULT_PASSWORD,
    role: Optional[str] = None,
    **fields,
) -> Account:
    """Insert an account directly (bypassing registration) and optionally pin its role."""
    fields.setdefault("origin", ORIGIN_LOCAL)
    account_id = store.create_account(
        Account(email=email, password_hash=hash_password(password) if password else None, **fields)
    )
    account = store.get_account(account_id)
    if role is not None:
        ensure_crm_profile(store, account)
        store.set_role(account_id, role)
    return account


def session_headers(store: AccountStore, account: Account) -> dict[str, str]:
    token, _ = create_session(store, account)
    return {"Authorization": f"Bearer {token}"}


# ---------------------------------------------------------------------------
# Microsoft identity platform fakes
# ---------------------------------------------------------------------------


class RsaSigner:
    """Mints RS256 id_tokens and exposes the matching public JWK."""

    def __init__(self) -> None:
        key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        self.private_pem = key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ).decode()
        public_pem = key.public_key().public_bytes(
            serialization.Encoding.PEM,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode()
        self.jwk = {**jwk.construct(public_pem, "RS256").to_dict(), "kid": KID, "use": "sig"}

    def claims(self, email: str, oid: str, tenant_id: str = TENANT_A, **overrides) -> dict:
        now = int(time.time())
        claims = {
            "aud": CLIENT_ID,
            "iss": f"https://login.microsoftonline.com/{tenant_id}/v2.0",
            "iat": now,
            "nbf": now,
            "exp": now + 3600,
            "tid": tenant_id,
            "oid": oid,
            "sub": f"pairwise-{oid}",
            "preferred_username": email,
            "name": "Test User",
        }
        claims.update(overrides)
        return {k: v for k, v in claims.items() if v is not None}

    def sign(self, claims: dict, kid: str = KID) -> str:
        return jwt.encode(claims, self.private_pem, algorithm="RS256", headers={"kid": kid})


@pytest.fixture(scope="session")
def rsa_signer() -> RsaSigner:
    return RsaSigner()


def _json_response(data: dict) -> MagicMock:
    resp = MagicMock()
    resp.json.return_value = data
    resp.raise_for_status.return_value = None
    return resp


def fake_microsoft(signer: RsaSigner, profile: Optional[dict] = None, organization: Optional[dict] = None) -> MagicMock:
    """Return a requests.Session stand-in that routes GETs by URL.

    .profile and .organization can be reassigned between calls.
    """
    http = MagicMock()
    http.profile = profile
    http.organization = organization if organization is not None else {"value": []}

    def get(url, headers=None, timeout=None):
        if url.endswith("/discovery/v2.0/keys"):
            return _json_response({"keys": [signer.jwk]})
        if url == f"{GRAPH_API}/me":
            return _json_response(http.profile)
        if url == f"{GRAPH_API}/organization":
            return _json_response(http.organization)
        raise AssertionError(f"unexpected GET {url}")

    http.get.side_effect = get
    return http


def graph_profile(email: str, oid: str, given: str = "Test", surname: str = "User") -> dict:
    return {
        "id": oid,
        "mail": email,
        "userPrincipalName": email,
        "givenName": given,
        "surname": surname,
        "displayName": f"{given} {surname}",
    }


def federation_settings(**overrides) -> Settings:
    values = {
        "debug": True,
        "microsoft_client_id": CLIENT_ID,
        "microsoft_client_secret": "test-secret",
        "microsoft_tenant_id": "common",
        "app_url": "http://testserver",
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def federation(rsa_signer: RsaSigner) -> MicrosoftFederation:
    return MicrosoftFederation(settings=federation_settings(), http=fake_microsoft(rsa_signer))


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


def _patch_lifespan(store: AccountStore, federation: MicrosoftFederation):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.account_store = store
        app.state.federation = federation
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture
def api_client(
    store: AccountStore, federation: MicrosoftFederation
) -> Generator[tuple[TestClient, AccountStore, MicrosoftFederation], None, None]:
    """Yield (client, store, federation) against the real app with isolated state.

    follow_redirects=False so the Microsoft routes can assert on Location.
    """
    app.router.lifespan_context = _patch_lifespan(store, federation)
    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield client, store, federation
