import itertools
from concurrent.futures import ThreadPoolExecutor

import pytest

from quotaflow.core.exceptions import AllCredentialsExhaustedError
from quotaflow.domain.models.calls import ErrorKind
from quotaflow.domain.models.credentials import FailureThreshold
from quotaflow.infrastructure.resilience.key_pool import KeyPool

KEYS = ["key-aaaaaaaaaaaa", "key-bbbbbbbbbbbb", "key-cccccccccccc"]


@pytest.fixture
def pool(fake_clock):
    return KeyPool("media", KEYS, block_timeout_s=60.0, clock=fake_clock)


def test_fresh_pool_selects_lowest_index_then_spreads_by_recency(pool):
    assert pool.select_best().index == 0
    assert pool.select_best().index == 1
    assert pool.select_best().index == 2
    assert pool.total_requests == 3


def test_lease_carries_credential_but_hides_it_in_repr(pool):
    lease = pool.select_best()
    assert lease.credential == KEYS[0]
    assert KEYS[0] not in repr(lease)


def test_error_rate_outweighs_recent_use(pool):
    pool.mark_used(1)  # Recently used: penalty of 30
    pool.mark_error(0)  # Error rate 1.0: penalty of 100
    pool.mark_used(2)
    pool.mark_error(2)

    assert pool.select_best().index == 1


def test_quota_error_blocks_immediately_and_is_skipped(pool):
    assert pool.mark_error(0, ErrorKind.QUOTA_EXCEEDED) is True
    assert pool.is_blocked(0)
    assert pool.available_count() == 2

    picks = {pool.select_best().index for _ in range(4)}
    assert 0 not in picks


def test_rate_limit_error_blocks_immediately(pool):
    assert pool.mark_error(1, ErrorKind.RATE_LIMITED) is True
    assert pool.is_blocked(1)


def test_block_expires_after_timeout(pool, fake_clock):
    pool.mark_error(0, ErrorKind.QUOTA_EXCEEDED)
    fake_clock.advance(59)
    assert pool.is_blocked(0)
    fake_clock.advance(1)
    assert not pool.is_blocked(0)
    assert pool.health(0).blocked_at == 0.0


def test_repeated_errors_do_not_extend_an_active_block(pool, fake_clock):
    pool.mark_error(0, ErrorKind.QUOTA_EXCEEDED)
    fake_clock.advance(30)
    assert pool.mark_error(0, ErrorKind.QUOTA_EXCEEDED) is False
    fake_clock.advance(30)
    assert not pool.is_blocked(0)


def test_sustained_transient_failures_block(pool):
    assert pool.mark_error(0) is False
    assert pool.mark_error(0) is False
    assert pool.mark_error(0) is True  # 3 errors > 0 successes + 2
    assert pool.is_blocked(0)


def test_successes_raise_the_sustained_failure_bar(pool):
    pool.mark_success(0)
    for _ in range(3):
        pool.mark_error(0)
    assert not pool.is_blocked(0)  # 3 errors is not > 1 success + 2
    pool.mark_error(0)
    assert pool.is_blocked(0)


def test_custom_failure_threshold(fake_clock):
    pool = KeyPool("text", KEYS[:2], failure_threshold=FailureThreshold(min_errors=1, margin=0), clock=fake_clock)
    assert pool.mark_error(0) is True


def test_success_clears_block(pool):
    pool.mark_error(2, ErrorKind.QUOTA_EXCEEDED)
    pool.mark_success(2)
    assert not pool.is_blocked(2)
    assert pool.health(2).success_count == 1


def test_all_blocked_raises_for_multi_credential_pool(pool):
    for i in range(3):
        pool.mark_error(i, ErrorKind.QUOTA_EXCEEDED)
    assert pool.all_blocked()
    with pytest.raises(AllCredentialsExhaustedError):
        pool.select_best()


def test_single_credential_is_returned_even_when_blocked(fake_clock):
    pool = KeyPool("text", KEYS[:1], clock=fake_clock)
    pool.mark_error(0, ErrorKind.QUOTA_EXCEEDED)
    assert pool.select_best().index == 0


def test_exclude_is_a_preference_not_a_filter(pool):
    lease = pool.select_best(exclude={0, 1})
    assert lease.index == 2

    pool.mark_error(2, ErrorKind.QUOTA_EXCEEDED)
    # Only excluded credentials remain unblocked: one of them is still returned
    assert pool.select_best(exclude={0, 1}).index in (0, 1)


def test_empty_pool_raises(fake_clock):
    pool = KeyPool("media", [], clock=fake_clock)
    with pytest.raises(AllCredentialsExhaustedError):
        pool.select_best()
    with pytest.raises(AllCredentialsExhaustedError):
        pool.select_for_shard(1)


def test_shard_selection_spreads_over_unblocked(pool):
    assert pool.select_for_shard(0).index == 0
    assert pool.select_for_shard(4).index == 1

    pool.mark_error(1, ErrorKind.QUOTA_EXCEEDED)
    # Unblocked are [0, 2]; shard 3 -> 3 % 2 == 1 -> credential 2
    assert pool.select_for_shard(3).index == 2


def test_shard_selection_degrades_to_first_credential_when_all_blocked(pool):
    for i in range(3):
        pool.mark_error(i, ErrorKind.RATE_LIMITED)
    assert pool.select_for_shard(7).index == 0


def test_blocked_credential_usage_does_not_touch_last_used(pool, fake_clock):
    pool.mark_error(0, ErrorKind.QUOTA_EXCEEDED)
    pool.mark_used(0)
    assert pool.health(0).last_used_at == 0.0
    assert pool.total_requests == 1


def test_stats_snapshot(pool, fake_clock):
    pool.select_best()
    pool.mark_success(0)
    pool.mark_error(1, ErrorKind.QUOTA_EXCEEDED)
    fake_clock.advance(20)

    stats = pool.stats()

    assert stats["service"] == "media"
    assert stats["total_keys"] == 3
    assert stats["available_keys"] == 2
    assert stats["total_requests"] == 1
    key0, key1, key2 = stats["keys"]
    assert key0["success_count"] == 1
    assert key0["last_used_at"] is not None
    assert key1["blocked"] is True
    assert key1["block_remaining_s"] == pytest.approx(40.0)
    assert key1["error_rate"] == 1.0
    assert key2["last_used_at"] is None


def test_concurrent_updates_from_threads_are_not_lost():
    ticks = itertools.count()
    pool = KeyPool("media", KEYS[:2], block_timeout_s=3600.0, clock=lambda: 1000.0 + next(ticks) * 0.001)
    rounds = 500

    def hammer(_):
        transitions = 0
        for _ in range(rounds):
            if pool.mark_error(0, ErrorKind.RATE_LIMITED):
                transitions += 1
            pool.mark_success(1)
            pool.mark_used(1)
        return transitions

    with ThreadPoolExecutor(max_workers=8) as executor:
        transitions = sum(executor.map(hammer, range(8)))

    assert transitions == 1
    assert pool.health(0).error_count == 8 * rounds
    assert pool.health(0).blocked
    assert pool.health(1).success_count == 8 * rounds
    assert pool.total_requests == 8 * rounds
