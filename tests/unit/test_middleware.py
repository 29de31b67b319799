"""
Unit tests for the rate limiter's token bucket.
"""

from unittest.mock import Mock

from hlsgate.middleware.rate_limit import RateLimitMiddleware


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def limiter(rate=1.0, burst=3):
    clock = FakeClock()
    return RateLimitMiddleware(Mock(), requests_per_second=rate, burst=burst, clock=clock), clock


class TestTokenBucket:
    def test_burst_then_refuse(self):
        middleware, _ = limiter(burst=3)
        results = [middleware._check_rate_limit("10.0.0.1") for _ in range(4)]
        assert results == [True, True, True, False]

    def test_refills_over_time(self):
        middleware, clock = limiter(rate=2.0, burst=1)
        assert middleware._check_rate_limit("10.0.0.1")
        assert not middleware._check_rate_limit("10.0.0.1")

        clock.now += 0.5
        assert middleware._check_rate_limit("10.0.0.1")

    def test_clients_are_independent(self):
        middleware, _ = limiter(burst=1)
        assert middleware._check_rate_limit("10.0.0.1")
        assert middleware._check_rate_limit("10.0.0.2")

    def test_prune_drops_refilled_buckets(self):
        middleware, clock = limiter(rate=1.0, burst=2)
        middleware._check_rate_limit("10.0.0.1")
        clock.now += 10
        middleware._check_rate_limit("10.0.0.2")

        middleware._prune(clock.now)

        assert set(middleware.buckets) == {"10.0.0.2"}

    def test_retry_after(self):
        middleware, _ = limiter(rate=0.25)
        response = middleware._rate_limit_response()
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "4"
