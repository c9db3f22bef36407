"""
Unit tests for fixed-window export rate limiting.
"""

from datetime import datetime

from governance_core.services.rate_limiter import (
    DatabaseRateCounter, RateLimitResult, RedisRateCounter, build_rate_counter, check_rate_limit,
    consumption_result, seconds_until_next_window, window_start,
)


def test_check_rate_limit():
    assert check_rate_limit(0, 10).allowed
    assert check_rate_limit(9, 10).remaining == 1
    result = check_rate_limit(10, 10)
    assert not result.allowed
    assert result.remaining == 0
    assert check_rate_limit(12, 10).remaining == 0


def test_consumption_result_reports_slots_left_after_the_request():
    now = datetime(2026, 1, 5, 9, 45)
    assert consumption_result(0, 3, now) == RateLimitResult(allowed=True, remaining=2)
    assert consumption_result(2, 3, now) == RateLimitResult(allowed=True, remaining=0)
    assert consumption_result(3, 3, now) == RateLimitResult(allowed=False, remaining=0, retry_after=15 * 60)


def test_window_math():
    now = datetime(2026, 1, 5, 9, 59, 30, 500)
    assert window_start(now) == datetime(2026, 1, 5, 9, 0)
    assert seconds_until_next_window(now) == 29
    assert seconds_until_next_window(datetime(2026, 1, 5, 9, 0)) == 3600


def test_database_counter(db):
    counter = DatabaseRateCounter()
    now = datetime(2026, 1, 5, 9, 10)

    first = counter.consume(db, "alice", 2, now)
    second = counter.consume(db, "alice", 2, now)
    third = counter.consume(db, "alice", 2, now)

    assert (first.allowed, first.remaining) == (True, 1)
    assert (second.allowed, second.remaining) == (True, 0)
    assert (third.allowed, third.remaining) == (False, 0)
    assert third.retry_after == 50 * 60
    assert counter.consume(db, "alice", 2, datetime(2026, 1, 5, 10, 0)).allowed


class _FakePipeline:
    def __init__(self, store):
        self.store = store
        self.ops = []

    def incr(self, key):
        self.ops.append(("incr", key))

    def expire(self, key, seconds):
        self.ops.append(("expire", key, seconds))

    def execute(self):
        results = []
        for op in self.ops:
            if op[0] == "incr":
                self.store[op[1]] = self.store.get(op[1], 0) + 1
                results.append(self.store[op[1]])
            else:
                results.append(True)
        return results


class _FakeRedis:
    def __init__(self):
        self.store = {}

    def pipeline(self):
        return _FakePipeline(self.store)


def test_redis_counter_uses_hourly_keys():
    client = _FakeRedis()
    counter = RedisRateCounter(client)
    now = datetime(2026, 1, 5, 9, 10)

    first = counter.consume(None, "alice", 1, now)
    assert (first.allowed, first.remaining) == (True, 0)
    blocked = counter.consume(None, "alice", 1, now)
    assert (blocked.allowed, blocked.remaining) == (False, 0)
    assert blocked.retry_after == 50 * 60
    assert client.store == {"export_rate:alice:2026010509": 2}


def test_build_rate_counter_defaults_to_database(settings):
    assert isinstance(build_rate_counter(settings), DatabaseRateCounter)
    odd = settings.model_copy(update={"EXPORT_RATE_LIMIT_BACKEND": "memcached"})
    assert isinstance(build_rate_counter(odd), DatabaseRateCounter)
