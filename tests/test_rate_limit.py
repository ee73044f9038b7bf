import unittest
from datetime import UTC, datetime

from session_engine.errors import FreeUsageLimitError
from session_engine.memory.store import MemoryStore
from session_engine.rate_limit import (
    RateLimitConfig,
    RateLimiter,
    day_interval,
    get_retry_after_day,
    get_retry_after_hour,
    hour_interval,
)

# 2024-01-01 10:30:00 UTC
_NOW = datetime(2024, 1, 1, 10, 30, tzinfo=UTC).timestamp()
_NOW_MS = int(_NOW * 1000)


class RetryAfterTests(unittest.TestCase):
    def test_day_counts_to_next_utc_midnight(self) -> None:
        self.assertEqual(13 * 3600 + 1800, get_retry_after_day(_NOW_MS))

    def test_day_at_midnight_and_noon(self) -> None:
        midnight = int(datetime(2024, 1, 2, tzinfo=UTC).timestamp() * 1000)
        self.assertEqual(86_400, get_retry_after_day(midnight))
        self.assertEqual(43_200, get_retry_after_day(midnight + 43_200_000))

    def test_day_rounds_up(self) -> None:
        self.assertEqual(86_400, get_retry_after_day(86_400_000 * 3))
        self.assertEqual(86_400, get_retry_after_day(86_400_000 * 3 + 1))

    def test_hour_drops_oldest_bucket_first(self) -> None:
        intervals = ["h0", "h1", "h2"]
        rows = [("h0", 1), ("h1", 2), ("h2", 5)]
        self.assertEqual(1800, get_retry_after_hour(rows, intervals, 5, _NOW_MS))

    def test_hour_waits_for_two_buckets(self) -> None:
        intervals = ["h0", "h1", "h2"]
        rows = {"h0": 1, "h1": 5, "h2": 1}
        self.assertEqual(5400, get_retry_after_hour(rows, intervals, 3, _NOW_MS))

    def test_interval_keys(self) -> None:
        self.assertEqual("20240101", day_interval(_NOW_MS))
        self.assertEqual("2024010110", hour_interval(_NOW_MS))


class RateLimiterTests(unittest.TestCase):
    def setUp(self) -> None:
        self._store = MemoryStore(":memory:")

    def tearDown(self) -> None:
        self._store.close()

    def _limiter(self, config: RateLimitConfig, *, key: str = "anthropic:KEY", now: float = _NOW, headers=None) -> RateLimiter:
        return RateLimiter(self._store, config, key, headers=headers, clock=lambda: now)

    def test_day_limit(self) -> None:
        config = RateLimitConfig(value=2)
        for _ in range(2):
            limiter = self._limiter(config)
            limiter.check()
            limiter.track()

        with self.assertRaises(FreeUsageLimitError) as ctx:
            self._limiter(config).check()
        self.assertEqual(13 * 3600 + 1800, ctx.exception.retry_after)
        self.assertEqual("FreeUsageLimitError", ctx.exception.to_object()["name"])

    def test_keys_are_counted_separately(self) -> None:
        config = RateLimitConfig(value=1)
        self._limiter(config, key="a").track()
        self._limiter(config, key="b").check()

    def test_hour_window_spans_three_buckets(self) -> None:
        config = RateLimitConfig(value=2, period="hour")
        self._limiter(config, now=_NOW - 2 * 3600).track()
        self._limiter(config, now=_NOW - 3600).track()
        limiter = self._limiter(config)
        self.assertEqual(["2024010110", "2024010109", "2024010108"], limiter.intervals)
        with self.assertRaises(FreeUsageLimitError) as ctx:
            limiter.check()
        self.assertEqual(1800, ctx.exception.retry_after)

    def test_buckets_outside_window_are_ignored(self) -> None:
        config = RateLimitConfig(value=1, period="hour")
        self._limiter(config, now=_NOW - 3 * 3600).track()
        self._limiter(config).check()

    def test_missing_check_header_uses_fallback(self) -> None:
        config = RateLimitConfig(value=5, check_header="x-account", fallback_value=1)
        self._limiter(config).track()
        with self.assertRaises(FreeUsageLimitError):
            self._limiter(config).check()
        self._limiter(config, headers={"x-account": "acct_1"}).check()


if __name__ == "__main__":
    unittest.main()
