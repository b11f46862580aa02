"""
auth/federation.py -- Microsoft Entra ID federation validator.

Flow (authorization code, response_mode=query):
  1. authorization_url() stores a random state in the pending-state map and
     builds the authorize URL (authlib OAuth2Session).
  2. The browser comes back to /auth/microsoft/callback with code + state.
  3. complete_login():
       a. consume the state (single-use, 10 minute TTL)
       b. exchange the code for tokens (authlib, finite timeout)
       c. verify the id_token signature and claims (python-jose, RS256 only)
       d. fetch the Graph /me profile with the access token
       e. cross-check token email against profile email
       f. resolve the tenant id used for policy evaluation

Security notes:
  [F1] Only RS256 is accepted. The header algorithm is checked before any
       key fetch, and jose.jwt.decode() is called with algorithms=["RS256"],
       so "none" and HMAC-signed tokens are rejected.
  [F2] The id_token is verified BEFORE the profile fetch. A token with a bad
       signature never causes a Graph call.
  [F3] Issuer must be the v2 or legacy STS form for the token's own tid.
       Audience must equal our client id. 300 s clock skew tolerance.
  [F4] Token email / preferred_username must match the Graph profile email
       (case-insensitive). A mismatch is a hard failure: it means the access
       token and the id_token describe different identities.
  [F5] Every outbound call has a timeout. Network failures, non-2xx
       responses and malformed bodies become FederationUnavailable and are
       never retried inside the same login attempt.

Signing keys are cached per tenant for 24h (auth/cache.py). A kid that is
not in the cached set triggers one refetch to pick up key rotation.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import re
import secrets
import time
from dataclasses import dataclass

import requests
from authlib.common.errors import AuthlibBaseError
from authlib.integrations.requests_client import OAuth2Session
from jose import JWTError, jwt

from auth.cache import ExpiringMap
from auth.errors import (
    ClaimProfileMismatch,
    FederationNotConfigured,
    FederationUnavailable,
    InvalidIdToken,
    InvalidState,
)
from auth.models import FederatedProfile, PendingFederationState
from core.config import Settings, get_settings

logger = logging.getLogger("dealflow.auth.federation")

AUTHORITY_BASE = "https://login.microsoftonline.com"
GRAPH_API = "https://graph.microsoft.com/v1.0"
SCOPES = "openid profile email User.Read"

ALLOWED_ALGORITHM = "RS256"
CLOCK_SKEW_SECONDS = 300
UNKNOWN_TENANT = "unknown"

# Tenant ids come from unverified token claims before the JWKS fetch; only
# GUIDs and domain-like names may reach a URL path.
_TENANT_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9.\-]{0,99}$")


@dataclass(frozen=True)
class FederationResult:
    """A verified identity ready for the account binder."""

    profile: FederatedProfile
    tenant_id: str
    claims: dict
    redirect_to: str | None = None


def accepted_issuers(tenant_id: str) -> list[str]:
    return [
        f"https://login.microsoftonline.com/{tenant_id}/v2.0",
        f"https://sts.windows.net/{tenant_id}/",
    ]


def claim_email(claims: dict) -> str | None:
    return claims.get("email") or claims.get("preferred_username")


class MicrosoftFederation:
    """Validator and HTTP client for the Microsoft identity platform.

    One instance lives on app.state for the process lifetime; it owns the
    JWKS cache and the pending-state map, both safe for concurrent handlers.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        http: requests.Session | None = None,
        jwks_cache: ExpiringMap | None = None,
        states: ExpiringMap | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        if http is None:
            http = requests.Session()
            http.max_redirects = 3
        self._http = http
        self._timeout = self.settings.federation_http_timeout
        # Injected maps start empty, so test for None rather than truthiness.
        if jwks_cache is None:
            jwks_cache = ExpiringMap(maxsize=256, ttl=self.settings.jwks_cache_ttl_seconds)
        if states is None:
            states = ExpiringMap(maxsize=10_000, ttl=self.settings.state_ttl_seconds)
        self._jwks = jwks_cache
        self._states = states

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def is_configured(self) -> bool:
        return self.settings.federation_configured

    def _require_configured(self) -> None:
        if not self.is_configured():
            raise FederationNotConfigured()

    def _oauth_session(self, state: str | None = None) -> OAuth2Session:
        return OAuth2Session(
            client_id=self.settings.microsoft_client_id,
            client_secret=self.settings.microsoft_client_secret,
            scope=SCOPES,
            redirect_uri=self.settings.federation_redirect_uri,
            state=state,
        )

    # ------------------------------------------------------------------
    # Anti-CSRF state
    # ------------------------------------------------------------------

    def generate_state(self, redirect_to: str | None = None) -> str:
        value = secrets.token_hex(32)
        self._states.set(value, PendingFederationState(value=value, created_at=time.monotonic(), redirect_to=redirect_to))
        self._states.purge_expired()
        return value

    def consume_state(self, value: str) -> PendingFederationState | None:
        """Remove the state unconditionally; return it only if still fresh."""
        if not value:
            return None
        pending = self._states.pop(value)
        if pending is None:
            return None
        if time.monotonic() - pending.created_at > self.settings.state_ttl_seconds:
            return None
        return pending

    def validate_state(self, value: str) -> bool:
        return self.consume_state(value) is not None

    def purge_expired_states(self) -> None:
        self._states.purge_expired()

    # ------------------------------------------------------------------
    # Authorization redirect + code exchange
    # ------------------------------------------------------------------

    def authorization_url(self, redirect_to: str | None = None) -> str:
        self._require_configured()
        state = self.generate_state(redirect_to)
        url, _ = self._oauth_session(state).create_authorization_url(
            f"{AUTHORITY_BASE}/{self.settings.microsoft_tenant_id}/oauth2/v2.0/authorize",
            state=state,
            response_mode="query",
            prompt="select_account",
        )
        return url

    def exchange_code(self, code: str) -> dict:
        """Trade the authorization code for access + id tokens."""
        self._require_configured()
        try:
            token = self._oauth_session().fetch_token(
                f"{AUTHORITY_BASE}/{self.settings.microsoft_tenant_id}/oauth2/v2.0/token",
                code=code,
                grant_type="authorization_code",
                timeout=self._timeout,
            )
        except (AuthlibBaseError, requests.RequestException, ValueError) as exc:
            logger.warning("Microsoft token exchange failed: %s", exc)
            raise FederationUnavailable() from exc
        return dict(token)

    # ------------------------------------------------------------------
    # Signing keys
    # ------------------------------------------------------------------

    def _fetch_jwks(self, tenant_id: str) -> dict[str, dict]:
        data = self._get_json(f"{AUTHORITY_BASE}/{tenant_id}/discovery/v2.0/keys")
        keys = {k["kid"]: k for k in data.get("keys", []) if isinstance(k, dict) and k.get("kid")}
        self._jwks.set(tenant_id, keys)
        return keys

    def get_signing_key(self, tenant_id: str, kid: str) -> dict:
        keys = self._jwks.get(tenant_id)
        if keys is None or kid not in keys:
            keys = self._fetch_jwks(tenant_id)
        key = keys.get(kid)
        if key is None:
            raise InvalidIdToken()
        return key

    # ------------------------------------------------------------------
    # ID token verification
    # ------------------------------------------------------------------

    def verify_id_token(self, id_token: str) -> dict:
        """Verify signature and claims. Returns the verified claims.

        Raises InvalidIdToken for any structural, signature or claim failure;
        FederationUnavailable if the key set cannot be fetched.
        """
        self._require_configured()
        try:
            header = jwt.get_unverified_header(id_token)
            unverified = jwt.get_unverified_claims(id_token)
        except JWTError as exc:
            logger.warning("Malformed ID token: %s", exc)
            raise InvalidIdToken() from exc

        if header.get("alg") != ALLOWED_ALGORITHM or not header.get("kid"):
            logger.warning("Rejected ID token with alg=%r kid present=%s", header.get("alg"), bool(header.get("kid")))
            raise InvalidIdToken()

        tid = unverified.get("tid") or self.settings.microsoft_tenant_id
        if not _TENANT_RE.match(str(tid)):
            raise InvalidIdToken()
        jwks_tenant = self.settings.microsoft_tenant_id if tid == "common" else tid

        key = self.get_signing_key(jwks_tenant, header["kid"])
        try:
            claims = jwt.decode(
                id_token,
                key,
                algorithms=[ALLOWED_ALGORITHM],
                audience=self.settings.microsoft_client_id,
                issuer=accepted_issuers(tid),
                options={"leeway": CLOCK_SKEW_SECONDS, "verify_at_hash": False},
            )
        except JWTError as exc:
            logger.warning("ID token verification failed: %s", exc)
            raise InvalidIdToken() from exc
        return claims

    # ------------------------------------------------------------------
    # Graph API
    # ------------------------------------------------------------------

    def _get_json(self, url: str, access_token: str | None = None) -> dict:
        headers = {"Authorization": f"Bearer {access_token}"} if access_token else {}
        try:
            resp = self._http.get(url, headers=headers, timeout=self._timeout)
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Microsoft request to %s failed: %s", url.split("?")[0], exc)
            raise FederationUnavailable() from exc
        if not isinstance(data, dict):
            raise FederationUnavailable()
        return data

    def fetch_profile(self, access_token: str) -> FederatedProfile:
        data = self._get_json(f"{GRAPH_API}/me", access_token)
        if not data.get("id"):
            logger.warning("Graph /me response had no id")
            raise FederationUnavailable()
        return FederatedProfile(
            subject_id=str(data["id"]),
            mail=data.get("mail"),
            user_principal_name=data.get("userPrincipalName"),
            given_name=data.get("givenName"),
            surname=data.get("surname"),
            display_name=data.get("displayName"),
        )

    def fetch_organization_tenant(self, access_token: str) -> str | None:
        """Best-effort tenant lookup via Graph /organization. None on failure."""
        try:
            data = self._get_json(f"{GRAPH_API}/organization", access_token)
        except FederationUnavailable:
            return None
        orgs = data.get("value") or []
        if orgs and isinstance(orgs[0], dict) and orgs[0].get("id"):
            return str(orgs[0]["id"])
        return None

    # ------------------------------------------------------------------
    # Cross-checks
    # ------------------------------------------------------------------

    @staticmethod
    def check_claims_match_profile(claims: dict, profile: FederatedProfile) -> None:
        """[F4] Hard failure if token and profile describe different people."""
        profile_email = profile.mail or profile.user_principal_name
        if not profile_email:
            return  # the binder reports NoEmailInProfile
        token_email = claim_email(claims)
        if not token_email or token_email.strip().lower() != profile_email.strip().lower():
            logger.error("Email mismatch between ID token and Graph profile")
            raise ClaimProfileMismatch()
        oid = claims.get("oid")
        if oid and str(oid).lower() != profile.subject_id.lower():
            logger.error("Object id mismatch between ID token and Graph profile")
            raise ClaimProfileMismatch()

    def resolve_tenant(self, claims: dict, access_token: str) -> str:
        """tid claim, then Graph organization, then configured tenant, then "unknown"."""
        return (
            claims.get("tid")
            or self.fetch_organization_tenant(access_token)
            or self.settings.microsoft_tenant_id
            or UNKNOWN_TENANT
        )

    # ------------------------------------------------------------------
    # Callback
    # ------------------------------------------------------------------

    def complete_login(self, code: str, state: str) -> FederationResult:
        self._require_configured()
        pending = self.consume_state(state)
        if pending is None:
            raise InvalidState()

        token = self.exchange_code(code)
        access_token = token.get("access_token")
        id_token = token.get("id_token")
        if not access_token:
            raise FederationUnavailable()
        if not id_token:
            logger.warning("Token response carried no id_token")
            raise InvalidIdToken()

        claims = self.verify_id_token(id_token)  # [F2] before any Graph call
        profile = self.fetch_profile(access_token)
        self.check_claims_match_profile(claims, profile)
        tenant_id = self.resolve_tenant(claims, access_token)
        return FederationResult(profile=profile, tenant_id=tenant_id, claims=claims, redirect_to=pending.redirect_to)
