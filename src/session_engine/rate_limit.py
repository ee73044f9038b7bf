from __future__ import annotations

import math
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Callable, Literal, Mapping

from loguru import logger

from session_engine.errors import FreeUsageLimitError
from session_engine.memory.store import MemoryStore

_DAY_MS = 86_400_000
_HOUR_MS = 3_600_000


@dataclass(frozen=True)
class RateLimitConfig:
    value: int
    period: Literal["day", "hour"] = "day"
    check_header: str | None = None
    fallback_value: int | None = None


def get_retry_after_day(now_ms: int) -> int:
    """Seconds until the next UTC midnight, rounded up."""
    return math.ceil((_DAY_MS - now_ms % _DAY_MS) / 1000)


def get_retry_after_hour(
    rows: list[tuple[str, int]] | Mapping[str, int],
    intervals: list[str],
    limit: int,
    now_ms: int,
) -> int:
    """Seconds until enough hourly buckets leave the window for usage to drop under ``limit``.

    ``intervals`` is ordered newest to oldest. Buckets are dropped oldest first
    until the remaining total is under the limit; the bucket at index ``i``
    leaves the window ``len(intervals) - i`` hours after the current hour began.
    """
    counts = dict(rows.items() if isinstance(rows, Mapping) else rows)
    running = sum(counts.get(interval, 0) for interval in intervals)
    for i in range(len(intervals) - 1, -1, -1):
        running -= counts.get(intervals[i], 0)
        if running < limit:
            hours = len(intervals) - i
            return math.ceil((hours * _HOUR_MS - now_ms % _HOUR_MS) / 1000)
    return math.ceil((_HOUR_MS - now_ms % _HOUR_MS) / 1000)


def day_interval(now_ms: int) -> str:
    return datetime.fromtimestamp(now_ms / 1000, UTC).strftime("%Y%m%d")


def hour_interval(now_ms: int) -> str:
    return datetime.fromtimestamp(now_ms / 1000, UTC).strftime("%Y%m%d%H")


class RateLimiter:
    """Counts requests per key in UTC day or hour buckets stored in the memory store.

    Hourly limits use a sliding window of the current hour and the two before it.
    """

    def __init__(
        self,
        store: MemoryStore,
        config: RateLimitConfig,
        key: str,
        *,
        headers: Mapping[str, str] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._config = config
        self._key = key or "unknown"
        self._now_ms = int(clock() * 1000)
        if config.check_header and not (headers or {}).get(config.check_header):
            self._limit = config.fallback_value if config.fallback_value is not None else config.value
        else:
            self._limit = config.value
        if config.period == "day":
            self._intervals = [day_interval(self._now_ms)]
        else:
            self._intervals = [
                hour_interval(self._now_ms),
                hour_interval(self._now_ms - _HOUR_MS),
                hour_interval(self._now_ms - 2 * _HOUR_MS),
            ]

    @property
    def intervals(self) -> list[str]:
        return list(self._intervals)

    def track(self) -> None:
        self._store.execute(
            """
            INSERT INTO rate_limits (key, interval, count) VALUES (?, ?, 1)
            ON CONFLICT(key, interval) DO UPDATE SET count = count + 1
            """,
            (self._key, self._intervals[0]),
        )
        self._store.commit()

    def check(self) -> None:
        placeholders = ", ".join("?" for _ in self._intervals)
        rows = self._store.execute(
            f"SELECT interval, count FROM rate_limits WHERE key = ? AND interval IN ({placeholders})",
            (self._key, *self._intervals),
        ).fetchall()
        pairs = [(row["interval"], int(row["count"])) for row in rows]
        total = sum(count for _, count in pairs)
        logger.debug(f"Rate limit total for {self._key}: {total}/{self._limit}")
        if total >= self._limit:
            if self._config.period == "day":
                retry_after = get_retry_after_day(self._now_ms)
            else:
                retry_after = get_retry_after_hour(pairs, self._intervals, self._limit, self._now_ms)
            raise FreeUsageLimitError("Rate limit exceeded. Please try again later.", retry_after)
