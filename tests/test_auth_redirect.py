"""
tests/test_auth_redirect.py -- Microsoft sign-in redirect and callback routes.

The callback terminates a browser navigation, so every outcome is asserted
on the 302 Location header (follow_redirects=False in the api_client fixture).

Covers:
  - GET /auth/microsoft: 302 to Microsoft with a fresh state; next is kept
    only when it is a relative path
  - GET /auth/microsoft: 503 JSON when SSO is not configured; rate-limited per IP
  - Callback: provider error, missing params, forged state, domain policy,
    disabled account -> /login?error=<code>
  - Callback success: session cookie, redirect to the stored target, /me works
  - _safe_next open-redirect guard
"""

from __future__ import annotations

from unittest.mock import patch
from urllib.parse import parse_qs, urlparse

import pytest

from api.limiter import limiter
from api.routes.v1.auth import _safe_next
from auth import audit
from auth.federation import MicrosoftFederation
from auth.models import ROLE_MANAGER, FederationPolicy
from core.config import get_settings
from tests.conftest import federation_settings, graph_profile, make_account

OID = "aaaaaaaa-0000-0000-0000-000000000001"


def _state_from(location: str) -> str:
    return parse_qs(urlparse(location).query)["state"][0]


def _login_error(resp) -> str:
    assert resp.status_code == 302, f"Expected 302, got {resp.status_code}: {resp.text}"
    location = urlparse(resp.headers["location"])
    assert location.path == "/login"
    return parse_qs(location.query)["error"][0]


def _callback(client, federation, signer, email: str, state: str, oid: str = OID):
    federation._http.profile = graph_profile(email, oid)
    id_token = signer.sign(signer.claims(email, oid))
    with patch.object(federation, "exchange_code", return_value={"access_token": "at", "id_token": id_token}):
        return client.get(f"/api/v1/auth/microsoft/callback?code=auth-code&state={state}")


class TestSafeNext:
    @pytest.mark.parametrize(
        "target,expected",
        [
            ("/deals/42", "/deals/42"),
            ("/", "/"),
            (None, "/"),
            ("", "/"),
            ("//evil.example", "/"),
            ("https://evil.example/", "/"),
            ("/\\evil.example", "/"),
            ("deals", "/"),
        ],
    )
    def test_only_relative_paths(self, target, expected) -> None:
        assert _safe_next(target) == expected


class TestMicrosoftRedirect:
    def test_redirects_to_microsoft_with_state(self, api_client) -> None:
        client, _, federation = api_client
        resp = client.get("/api/v1/auth/microsoft?next=/pipeline")
        assert resp.status_code == 302
        location = resp.headers["location"]
        assert location.startswith("https://login.microsoftonline.com/common/oauth2/v2.0/authorize?")
        assert federation.consume_state(_state_from(location)).redirect_to == "/pipeline"

    def test_absolute_next_is_dropped(self, api_client) -> None:
        client, _, federation = api_client
        resp = client.get("/api/v1/auth/microsoft?next=https://evil.example/")
        assert federation.consume_state(_state_from(resp.headers["location"])).redirect_to == "/"

    def test_not_configured_returns_503(self, api_client) -> None:
        client, _, _ = api_client
        client.app.state.federation = MicrosoftFederation(
            settings=federation_settings(microsoft_client_id="", microsoft_client_secret="")
        )
        resp = client.get("/api/v1/auth/microsoft")
        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "federation_not_configured"
        assert client.get("/api/v1/auth/status").json()["microsoft_sso_enabled"] is False

    def test_redirect_is_rate_limited(self, api_client) -> None:
        client, _, _ = api_client
        allowed = int(get_settings().login_rate_limit.split("/")[0])
        limiter.reset()
        limiter.enabled = True
        try:
            codes = [client.get("/api/v1/auth/microsoft").status_code for _ in range(allowed + 1)]
        finally:
            limiter.enabled = False
            limiter.reset()
        assert codes[:allowed] == [302] * allowed
        assert codes[-1] == 429


class TestMicrosoftCallback:
    def test_success_signs_in_and_redirects(self, api_client, rsa_signer) -> None:
        client, store, federation = api_client
        store.save_federation_policy(FederationPolicy(default_role_for_sso=ROLE_MANAGER))
        state = _state_from(client.get("/api/v1/auth/microsoft?next=/deals").headers["location"])

        resp = _callback(client, federation, rsa_signer, "pat@contoso.example", state)
        assert resp.status_code == 302, resp.text
        assert resp.headers["location"] == "/deals"
        assert "session" in resp.cookies
        assert resp.headers["cache-control"] == "no-store"

        me = client.get("/api/v1/auth/me").json()
        assert me["email"] == "pat@contoso.example"
        assert me["origin"] == "federated"
        assert me["role"] == ROLE_MANAGER

    def test_provider_error(self, api_client) -> None:
        client, _, federation = api_client
        state = federation.generate_state()
        resp = client.get(f"/api/v1/auth/microsoft/callback?error=access_denied&state={state}")
        assert _login_error(resp) == "sso_failed"
        assert federation.consume_state(state) is None, "state must be spent on provider error"

    def test_missing_parameters(self, api_client) -> None:
        client, _, _ = api_client
        assert _login_error(client.get("/api/v1/auth/microsoft/callback?code=abc")) == "invalid_callback"

    def test_forged_state(self, api_client, rsa_signer) -> None:
        client, store, federation = api_client
        resp = _callback(client, federation, rsa_signer, "pat@contoso.example", "forged-state")
        assert _login_error(resp) == "invalid_state"
        assert "session" not in resp.cookies
        event = store.list_audit_events(limit=1)[0]
        assert event.action == audit.FAILED_SSO_LOGIN
        assert event.failure_reason == "invalid_state"

    def test_domain_not_allowed(self, api_client, rsa_signer) -> None:
        client, store, federation = api_client
        store.save_federation_policy(FederationPolicy(allowed_email_domains=["contoso.example"]))
        resp = _callback(client, federation, rsa_signer, "eve@fabrikam.example", federation.generate_state())
        assert _login_error(resp) == "domain_not_allowed"
        assert store.get_account_by_email("eve@fabrikam.example") is None

    def test_disabled_account(self, api_client, rsa_signer) -> None:
        client, store, federation = api_client
        make_account(store, "pat@contoso.example", disabled=True)
        resp = _callback(client, federation, rsa_signer, "pat@contoso.example", federation.generate_state())
        assert _login_error(resp) == "account_disabled"

    def test_state_is_single_use(self, api_client, rsa_signer) -> None:
        client, _, federation = api_client
        state = federation.generate_state()
        assert _callback(client, federation, rsa_signer, "pat@contoso.example", state).headers["location"] == "/"
        client.cookies.clear()
        assert _login_error(_callback(client, federation, rsa_signer, "pat@contoso.example", state)) == "invalid_state"
