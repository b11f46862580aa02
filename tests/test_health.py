"""
tests/test_health.py -- Integration tests for GET /api/v1/health and the app shell.

Covers:
  - 200 response with status and version, no authentication required
  - Unknown Host header rejected by TrustedHostMiddleware
  - /docs is auth-protected
"""

from __future__ import annotations


def test_health_returns_200(api_client):
    """Health endpoint returns 200 with status and version."""
    client, _, _ = api_client
    resp = client.get("/api/v1/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert data["version"]


def test_untrusted_host_rejected(api_client):
    client, _, _ = api_client
    resp = client.get("/api/v1/health", headers={"host": "evil.example"})
    assert resp.status_code == 400


def test_docs_require_authentication(api_client):
    client, _, _ = api_client
    resp = client.get("/docs")
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "unauthorized"
