"""
tests/test_reset.py -- Password reset token lifecycle.

Covers:
  - Token shape: 64 hex characters, 24-hour expiry
  - Unknown email: no token, no error
  - Federated-only account: SsoOnlyAccount
  - Redemption: new password works, old one does not, token marked used
  - Second redemption: TokenAlreadyUsed
  - Expired token: InvalidOrExpiredToken, password unchanged
  - Weak new password: WeakPassword, token stays unused
  - Concurrency: two threads redeem the same token, exactly one succeeds

The concurrency test uses a file-backed SQLite database so the two writers
go through real database locking (WAL + busy timeout) rather than the
shared-cache table locks of the in-memory test stores.
"""

from __future__ import annotations

import re
import threading
from datetime import timedelta

import pytest

from auth import audit
from auth.errors import InvalidOrExpiredToken, SsoOnlyAccount, TokenAlreadyUsed, WeakPassword
from auth.models import ORIGIN_FEDERATED, PasswordResetToken
from auth.passwords import login_local, verify_password
from auth.reset import request_reset, reset_password
from auth.store import AccountStore, utcnow
from tests.conftest import DEFAULT_PASSWORD, make_account


class TestRequestReset:
    def test_token_is_256_bit_hex_with_24h_expiry(self, store) -> None:
        account = make_account(store, "alice@example.com")
        result = request_reset(store, "Alice@Example.com")

        assert result.token is not None
        assert re.fullmatch(r"[0-9a-f]{64}", result.token)
        stored = store.get_reset_token(result.token)
        assert stored.account_id == account.id
        assert stored.used_at is None
        remaining = stored.expires_at - utcnow()
        assert timedelta(hours=23, minutes=59) < remaining <= timedelta(hours=24)
        assert store.list_audit_events(limit=1)[0].action == audit.PASSWORD_RESET_REQUEST

    def test_unknown_email_returns_no_token(self, store) -> None:
        assert request_reset(store, "ghost@example.com").token is None
        assert store.list_audit_events() == []

    def test_federated_account_cannot_reset(self, store) -> None:
        make_account(store, "sso@example.com", password=None, origin=ORIGIN_FEDERATED)
        with pytest.raises(SsoOnlyAccount):
            request_reset(store, "sso@example.com")


class TestResetPassword:
    def test_redeem_sets_new_password(self, store) -> None:
        account = make_account(store, "bob@example.com")
        token = request_reset(store, "bob@example.com").token

        assert reset_password(store, token, "brand-new-pass") == account.id
        updated = store.get_account(account.id)
        assert verify_password("brand-new-pass", updated.password_hash)
        assert not verify_password(DEFAULT_PASSWORD, updated.password_hash)
        assert store.get_reset_token(token).used_at is not None
        assert login_local(store, "bob@example.com", "brand-new-pass").id == account.id

    def test_second_redemption_is_rejected(self, store) -> None:
        make_account(store, "carol@example.com")
        token = request_reset(store, "carol@example.com").token
        reset_password(store, token, "first-new-pass")
        with pytest.raises(TokenAlreadyUsed):
            reset_password(store, token, "second-new-pass")

    def test_unknown_token(self, store) -> None:
        with pytest.raises(InvalidOrExpiredToken):
            reset_password(store, "0" * 64, "whatever-pass")

    def test_expired_token_leaves_password_unchanged(self, store) -> None:
        account = make_account(store, "dan@example.com")
        store.create_reset_token(
            PasswordResetToken(account_id=account.id, token="e" * 64, expires_at=utcnow() - timedelta(seconds=1))
        )
        with pytest.raises(InvalidOrExpiredToken):
            reset_password(store, "e" * 64, "brand-new-pass")
        assert verify_password(DEFAULT_PASSWORD, store.get_account(account.id).password_hash)

    def test_weak_password_does_not_consume_token(self, store) -> None:
        make_account(store, "erin@example.com")
        token = request_reset(store, "erin@example.com").token
        with pytest.raises(WeakPassword):
            reset_password(store, token, "short")
        assert store.get_reset_token(token).used_at is None


class TestConcurrentRedemption:
    def test_two_threads_one_success(self, tmp_path) -> None:
        store = AccountStore(db_url=f"sqlite:///{tmp_path / 'race.db'}")
        try:
            make_account(store, "race@example.com")
            token = request_reset(store, "race@example.com").token

            barrier = threading.Barrier(2)
            outcomes: list[object] = []
            lock = threading.Lock()

            def redeem(password: str) -> None:
                barrier.wait()
                try:
                    result: object = reset_password(store, token, password)
                except (TokenAlreadyUsed, InvalidOrExpiredToken) as exc:
                    result = exc
                with lock:
                    outcomes.append(result)

            threads = [threading.Thread(target=redeem, args=(p,)) for p in ("winner-pass-1", "winner-pass-2")]
            for t in threads:
                t.start()
            for t in threads:
                t.join(timeout=30)

            successes = [o for o in outcomes if isinstance(o, int)]
            failures = [o for o in outcomes if isinstance(o, TokenAlreadyUsed)]
            assert len(outcomes) == 2
            assert len(successes) == 1, f"expected exactly one success, got {outcomes!r}"
            assert len(failures) == 1
            completions = [
                e for e in store.list_audit_events() if e.action == audit.PASSWORD_RESET_COMPLETE
            ]
            assert len(completions) == 1
        finally:
            store.close()
