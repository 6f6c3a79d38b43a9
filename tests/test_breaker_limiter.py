"""Test circuit breaker transitions and fixed-window rate limits."""
import pytest

from core.connectors import CircuitBreaker, CircuitState, FixedWindowRateLimiter
from core.errors import CircuitOpenError, RateLimitExceeded
from patterns.domain_config import BreakerConfig, RateLimitConfig


@pytest.fixture
def breaker(clock):
    config = BreakerConfig(failure_threshold=3, cooldown_seconds=10, max_cooldown_seconds=40, backoff_multiplier=2)
    return CircuitBreaker("crm", config, clock=clock)


def trip(breaker, times=3):
    for _ in range(times):
        breaker.acquire()
        breaker.record_failure("HTTP 500")


def test_opens_after_threshold(breaker):
    trip(breaker, 2)
    assert breaker.state == CircuitState.CLOSED
    trip(breaker, 1)
    assert breaker.state == CircuitState.OPEN
    with pytest.raises(CircuitOpenError) as exc:
        breaker.acquire()
    assert exc.value.retry_after == pytest.approx(10)


def test_success_resets_consecutive_failures(breaker):
    trip(breaker, 2)
    breaker.record_success()
    trip(breaker, 2)
    assert breaker.state == CircuitState.CLOSED
    assert breaker.consecutive_failures == 2


def test_half_open_admits_one_trial_call(breaker, clock):
    trip(breaker)
    clock.advance(10)
    assert breaker.state == CircuitState.HALF_OPEN
    breaker.acquire()
    with pytest.raises(CircuitOpenError):
        breaker.acquire()


def test_half_open_failure_keeps_second_caller_out(breaker, clock):
    trip(breaker)
    clock.advance(10)
    breaker.acquire()
    with pytest.raises(CircuitOpenError):
        breaker.acquire()

    breaker.record_failure("still down")

    assert breaker.state == CircuitState.OPEN
    with pytest.raises(CircuitOpenError) as exc:
        breaker.acquire()
    assert exc.value.retry_after == pytest.approx(20)


def test_trial_success_closes_and_resets_cooldown(breaker, clock):
    trip(breaker)
    clock.advance(10)
    breaker.acquire()
    breaker.record_failure("still down")
    assert breaker.state == CircuitState.OPEN
    assert breaker.cooldown_seconds == 20

    clock.advance(20)
    breaker.acquire()
    breaker.record_success()
    assert breaker.state == CircuitState.CLOSED
    assert breaker.cooldown_seconds == 10


def test_cooldown_is_capped(breaker, clock):
    trip(breaker)
    for _ in range(5):
        clock.advance(breaker.cooldown_seconds)
        breaker.acquire()
        breaker.record_failure("down")
    assert breaker.cooldown_seconds == 40


def test_release_returns_trial_slot(breaker, clock):
    trip(breaker)
    clock.advance(10)
    breaker.acquire()
    breaker.release()
    breaker.acquire()
    assert breaker.state == CircuitState.HALF_OPEN


def test_reset_closes(breaker):
    trip(breaker)
    breaker.reset()
    assert breaker.state == CircuitState.CLOSED
    breaker.acquire()
    assert breaker.snapshot()["consecutive_failures"] == 0


def test_rate_limit_window(clock):
    # clock starts 40s into a minute
    limiter = FixedWindowRateLimiter("crm", RateLimitConfig(per_minute=2), clock=clock)
    limiter.acquire()
    limiter.acquire()
    with pytest.raises(RateLimitExceeded) as exc:
        limiter.acquire()
    assert exc.value.window == "minute"
    assert exc.value.retry_after == pytest.approx(20)
    assert limiter.rejected == 1

    clock.advance(20)
    limiter.acquire()
    assert limiter.remaining()["minute"] == 1


def test_rejection_charges_no_window(clock):
    limiter = FixedWindowRateLimiter("crm", RateLimitConfig(per_minute=5, per_hour=2), clock=clock)
    limiter.acquire()
    limiter.acquire()
    with pytest.raises(RateLimitExceeded) as exc:
        limiter.acquire()
    assert exc.value.window == "hour"
    assert limiter.remaining() == {"minute": 3, "hour": 0, "day": None}


def test_unlimited_by_default(clock):
    limiter = FixedWindowRateLimiter("crm", clock=clock)
    for _ in range(1000):
        limiter.acquire()
    assert limiter.snapshot()["rejected"] == 0
