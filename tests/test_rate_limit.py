"""Tests for sliding-window rate limiting."""

import pytest

from vidqueue.errors import RateLimited
from vidqueue.security.rate_limit import RateLimiter


@pytest.fixture
def limiter(clock):
    return RateLimiter(window_s=60, max_requests=3, exempt_paths=["/health"], clock=clock)


def test_admits_exactly_max_per_window(limiter):
    assert [limiter.allow("a") for _ in range(4)] == [True, True, True, False]
    assert limiter.remaining("a") == 0


def test_keys_are_independent(limiter):
    for _ in range(3):
        limiter.allow("a")
    assert limiter.allow("b") is True
    assert limiter.remaining("b") == 2


def test_window_slides(limiter, clock):
    limiter.allow("a")
    clock.advance(30)
    limiter.allow("a")
    limiter.allow("a")
    assert limiter.allow("a") is False

    # First request leaves the window once it is older than now - window
    clock.advance(31)
    assert limiter.allow("a") is True
    assert limiter.allow("a") is False


def test_rejections_are_not_counted(limiter, clock):
    for _ in range(10):
        limiter.allow("a")
    clock.advance(61)
    assert limiter.remaining("a") == 3


def test_retry_after_points_at_oldest_request(limiter, clock):
    limiter.allow("a")
    clock.advance(20)
    limiter.allow("a")
    limiter.allow("a")

    assert limiter.retry_after("a") == 40
    assert limiter.retry_after("unknown") == 0


def test_check_raises_with_retry_after(limiter):
    for _ in range(3):
        limiter.check("10.0.0.1", "/api/process-video")

    with pytest.raises(RateLimited) as exc:
        limiter.check("10.0.0.1", "/api/queue-status")

    assert exc.value.status_code == 429
    assert exc.value.retry_after == 60
    assert exc.value.to_dict()["retryAfter"] == 60
    assert exc.value.message == "Too many requests, please try again later."


def test_exempt_paths_skip_counting(limiter):
    for _ in range(10):
        limiter.check("10.0.0.1", "/health")
    assert limiter.remaining("10.0.0.1") == 3


def test_per_endpoint_keys(clock):
    limiter = RateLimiter.for_endpoint(60, 1, clock=clock)
    limiter.check("10.0.0.1", "/api/process-video")
    limiter.check("10.0.0.1", "/api/queue-status")

    with pytest.raises(RateLimited) as exc:
        limiter.check("10.0.0.1", "/api/process-video")
    assert exc.value.message == "Too many requests for this endpoint"
    assert limiter.key_for("10.0.0.1", "/x") == "10.0.0.1_/x"


def test_purge_drops_idle_keys(limiter, clock):
    limiter.allow("a")
    clock.advance(30)
    limiter.allow("b")
    clock.advance(31)

    assert limiter.purge() == 1
    assert len(limiter) == 1
    assert limiter.remaining("b") == 2


def test_request_at_window_edge_still_counts(clock):
    limiter = RateLimiter(window_s=10, max_requests=2, clock=clock)
    limiter.allow("a")
    limiter.allow("a")

    # Stamps exactly window_s old are not older than the cutoff
    clock.advance(10)
    assert limiter.allow("a") is False
    assert limiter.retry_after("a") == 1

    clock.advance(0.001)
    assert limiter.allow("a") is True
