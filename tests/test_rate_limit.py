import pytest

from narration_service.errors import RateLimited
from narration_service.services.rate_limit import RateLimiter, RateLimitPolicy, RateLimits

from conftest import FakeClock


def test_fixed_window_allows_max_then_denies_without_counting():
    clock = FakeClock()
    limiter = RateLimiter(clock=clock)
    policy = RateLimitPolicy("TEST", 3, 10_000)

    results = [limiter.check("alice", policy) for _ in range(3)]
    assert [result.allowed for result in results] == [True, True, True]
    assert [result.remaining for result in results] == [2, 1, 0]
    assert len({result.reset_time for result in results}) == 1

    denied = [limiter.check("alice", policy) for _ in range(5)]
    assert not any(result.allowed for result in denied)
    assert all(result.reset_time == results[0].reset_time for result in denied)

    clock.advance(10_000)
    fresh = limiter.check("alice", policy)
    assert fresh.allowed
    assert fresh.remaining == 2
    assert fresh.reset_time == clock.now + 10_000


def test_reset_happens_exactly_at_window_boundary():
    clock = FakeClock()
    limiter = RateLimiter(clock=clock)
    policy = RateLimitPolicy("TEST", 1, 1_000)

    assert limiter.check("bob", policy).allowed
    clock.advance(999)
    assert not limiter.check("bob", policy).allowed
    clock.advance(1)
    assert limiter.check("bob", policy).allowed


def test_policies_and_identities_are_independent():
    limiter = RateLimiter(clock=FakeClock())
    for _ in range(RateLimits.IMAGE_GENERATION.max_requests):
        assert limiter.check("carol", RateLimits.IMAGE_GENERATION).allowed
    assert not limiter.check("carol", RateLimits.IMAGE_GENERATION).allowed
    assert limiter.check("carol", RateLimits.AUDIO_GENERATION).allowed
    assert limiter.check("dave", RateLimits.IMAGE_GENERATION).allowed


def test_enforce_raises_with_retry_after_seconds():
    clock = FakeClock()
    limiter = RateLimiter(clock=clock)
    policy = RateLimitPolicy("TEST", 1, 60_000)
    limiter.enforce("erin", policy)
    clock.advance(15_500)

    with pytest.raises(RateLimited) as excinfo:
        limiter.enforce("erin", policy)
    assert excinfo.value.retry_after == 45
    assert excinfo.value.reset_time == clock.now - 15_500 + 60_000


def test_reset_and_purge_expired():
    clock = FakeClock()
    limiter = RateLimiter(clock=clock)
    short = RateLimitPolicy("SHORT", 1, 1_000)
    long = RateLimitPolicy("LONG", 1, 100_000)
    limiter.check("frank", short)
    limiter.check("frank", long)

    limiter.reset("frank", short)
    assert limiter.check("frank", short).allowed

    clock.advance(5_000)
    assert limiter.purge_expired() == 1
    assert not limiter.check("frank", long).allowed

    limiter.reset("frank")
    assert limiter.check("frank", long).allowed


def test_preset_budgets():
    assert (RateLimits.API_GENERAL.max_requests, RateLimits.API_GENERAL.window_ms) == (60, 60_000)
    assert (RateLimits.VIDEO_GENERATION.max_requests, RateLimits.VIDEO_GENERATION.window_ms) == (5, 300_000)
    assert (RateLimits.AUDIO_GENERATION.max_requests, RateLimits.AUDIO_GENERATION.window_ms) == (5, 60_000)
    assert (RateLimits.AUTH.max_requests, RateLimits.AUTH.window_ms) == (10, 300_000)


def test_many_identities_share_a_fixed_lock_pool():
    clock = FakeClock()
    limiter = RateLimiter(clock=clock, lock_stripes=8)
    policy = RateLimitPolicy("SHORT", 1, 1_000)
    for index in range(100):
        limiter.check(f"user-{index}", policy)

    clock.advance(1_000)

    assert limiter.purge_expired() == 100
    assert limiter._windows == {}
    assert len(limiter._locks) == 8
