"""
tests/test_cache.py -- ExpiringMap and pending federation state.

Covers:
  - TTL expiry with an injected clock (no sleeping)
  - pop() consumes: second pop returns the default
  - Bounded size evicts the oldest entries
  - States are single-use, expire after the configured TTL, and carry the
    post-login redirect target
  - Concurrent consumption of one state: exactly one winner
"""

from __future__ import annotations

import threading

from auth.cache import ExpiringMap
from auth.federation import MicrosoftFederation
from tests.conftest import federation_settings


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestExpiringMap:
    def test_entries_expire_after_ttl(self) -> None:
        clock = FakeClock()
        cache = ExpiringMap(maxsize=10, ttl=60, timer=clock)
        cache.set("k", "v")
        assert cache.get("k") == "v"
        clock.now += 59
        assert "k" in cache
        clock.now += 2
        assert cache.get("k") is None
        assert "k" not in cache

    def test_pop_consumes(self) -> None:
        cache = ExpiringMap(maxsize=10, ttl=60)
        cache.set("k", "v")
        assert cache.pop("k") == "v"
        assert cache.pop("k", "gone") == "gone"

    def test_bounded_size(self) -> None:
        cache = ExpiringMap(maxsize=2, ttl=60)
        for i in range(3):
            cache.set(i, i)
        assert len(cache) == 2
        assert 0 not in cache

    def test_purge_expired(self) -> None:
        clock = FakeClock()
        cache = ExpiringMap(maxsize=10, ttl=5, timer=clock)
        cache.set("a", 1)
        clock.now += 10
        cache.purge_expired()
        assert len(cache) == 0


class TestPendingState:
    def _federation(self, clock: FakeClock | None = None) -> MicrosoftFederation:
        settings = federation_settings()
        states = ExpiringMap(maxsize=100, ttl=settings.state_ttl_seconds, timer=clock or FakeClock())
        return MicrosoftFederation(settings=settings, states=states)

    def test_state_is_single_use(self) -> None:
        fed = self._federation()
        state = fed.generate_state()
        assert len(state) == 64
        assert fed.validate_state(state) is True
        assert fed.validate_state(state) is False

    def test_unknown_and_empty_state(self) -> None:
        fed = self._federation()
        assert fed.validate_state("never-issued") is False
        assert fed.validate_state("") is False

    def test_state_expires_after_ten_minutes(self) -> None:
        clock = FakeClock()
        fed = self._federation(clock)
        state = fed.generate_state()
        clock.now += 601
        assert fed.consume_state(state) is None

    def test_injected_empty_maps_are_used(self) -> None:
        states = ExpiringMap(maxsize=10, ttl=600)
        jwks = ExpiringMap(maxsize=10, ttl=600)
        fed = MicrosoftFederation(settings=federation_settings(), states=states, jwks_cache=jwks)
        assert fed._states is states
        assert fed._jwks is jwks
        fed.generate_state()
        assert len(states) == 1

    def test_state_carries_redirect_target(self) -> None:
        fed = self._federation()
        state = fed.generate_state(redirect_to="/deals/42")
        assert fed.consume_state(state).redirect_to == "/deals/42"

    def test_concurrent_consumption_has_one_winner(self) -> None:
        fed = self._federation()
        state = fed.generate_state()
        barrier = threading.Barrier(8)
        results: list[bool] = []
        lock = threading.Lock()

        def consume() -> None:
            barrier.wait()
            ok = fed.validate_state(state)
            with lock:
                results.append(ok)

        threads = [threading.Thread(target=consume) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)
        assert results.count(True) == 1
        assert results.count(False) == 7
