from certverify.kv_backends import InMemoryKeyValueStore
from certverify.rate_limit import FixedWindowRateLimiter


class BrokenStore(InMemoryKeyValueStore):
    def get(self, key):
        raise ConnectionError("store down")


def test_requests_beyond_limit_are_refused(kv_store, clock):
    limiter = FixedWindowRateLimiter(kv_store, limit=2, window_seconds=60, clock=clock)

    first = limiter.check("ip:1.2.3.4", "verify")
    second = limiter.check("ip:1.2.3.4", "verify")
    third = limiter.check("ip:1.2.3.4", "verify")

    assert (first.allowed, first.remaining) == (True, 1)
    assert (second.allowed, second.remaining) == (True, 0)
    assert third.allowed is False
    assert third.remaining == 0
    assert 0 < third.retry_after <= 60


def test_window_rollover_resets_count(kv_store, clock):
    limiter = FixedWindowRateLimiter(kv_store, limit=1, window_seconds=60, clock=clock)
    assert limiter.allow("ip:1.2.3.4", "verify")
    assert not limiter.allow("ip:1.2.3.4", "verify")

    clock.advance(60)

    assert limiter.allow("ip:1.2.3.4", "verify")


def test_clients_and_endpoints_are_counted_separately(kv_store, clock):
    limiter = FixedWindowRateLimiter(kv_store, limit=1, clock=clock)

    assert limiter.allow("ip:1.2.3.4", "verify")
    assert limiter.allow("ip:5.6.7.8", "verify")
    assert limiter.allow("ip:1.2.3.4", "logs")


def test_store_failure_fails_open(clock):
    limiter = FixedWindowRateLimiter(BrokenStore(clock=clock), limit=1, clock=clock)

    assert limiter.allow("ip:1.2.3.4", "verify")
    assert limiter.allow("ip:1.2.3.4", "verify")
