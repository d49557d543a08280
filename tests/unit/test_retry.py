from datetime import datetime, timedelta, timezone

from opsflow.config import RetryPolicy
from opsflow.utils import compute_backoff, next_retry_at

NOW = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


def test_backoff_grows_and_is_capped():
    policy = RetryPolicy(base_delay=30, multiplier=2, max_delay=3600, jitter=0)
    delays = [compute_backoff(attempt, policy) for attempt in range(1, 9)]
    assert delays[:4] == [30, 60, 120, 240]
    assert delays[-1] == 3600
    assert delays == sorted(delays)


def test_backoff_jitter_stays_in_bounds():
    policy = RetryPolicy(base_delay=10, multiplier=2, max_delay=100, jitter=5)
    for attempt in range(1, 6):
        base = min(10 * 2 ** (attempt - 1), 100)
        delay = compute_backoff(attempt, policy)
        assert base <= delay <= base + 5


def test_retry_after_wins_when_longer():
    policy = RetryPolicy(base_delay=30, jitter=0)
    assert next_retry_at(1, policy, now=NOW) == NOW + timedelta(seconds=30)
    assert next_retry_at(1, policy, now=NOW, retry_after=300) == NOW + timedelta(
        seconds=300
    )
    assert next_retry_at(1, policy, now=NOW, retry_after=5) == NOW + timedelta(seconds=30)
