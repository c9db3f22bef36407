"""Fixed-window per-user rate limiting for exports.

Two counters share one contract: ``consume`` atomically increments the
caller's counter for the current clock hour only while it is below the
limit, so concurrent requests cannot both take the last slot.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import redis
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from governance_core.core.config import Settings
from governance_core.models.export_job import ExportRateWindow

logger = logging.getLogger("governance_core")

WINDOW = timedelta(hours=1)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    retry_after: Optional[int] = None


def check_rate_limit(current_count: int, max_per_hour: int) -> RateLimitResult:
    remaining = max(0, max_per_hour - current_count)
    return RateLimitResult(allowed=remaining > 0, remaining=remaining)


def consumption_result(used_before: int, limit: int, now: datetime) -> RateLimitResult:
    """Outcome for one request that found ``used_before`` slots already taken."""
    if not check_rate_limit(used_before, limit).allowed:
        return RateLimitResult(allowed=False, remaining=0, retry_after=seconds_until_next_window(now))
    return RateLimitResult(allowed=True, remaining=check_rate_limit(used_before + 1, limit).remaining)


def window_start(now: datetime) -> datetime:
    return now.replace(minute=0, second=0, microsecond=0)


def seconds_until_next_window(now: datetime) -> int:
    return max(1, int((window_start(now) + WINDOW - now).total_seconds()))


class DatabaseRateCounter:
    """Counter rows in ``governance_export_rate_windows``, one per user and hour."""

    def consume(self, db: Session, user_id: str, limit: int, now: datetime) -> RateLimitResult:
        start = window_start(now)
        self._ensure_window(db, user_id, start)
        result = db.execute(
            update(ExportRateWindow)
            .where(
                ExportRateWindow.user_id == user_id,
                ExportRateWindow.window_start == start,
                ExportRateWindow.count < limit,
            )
            .values(count=ExportRateWindow.count + 1)
            .execution_options(synchronize_session=False)
        )
        count = (
            db.query(ExportRateWindow.count)
            .filter(ExportRateWindow.user_id == user_id, ExportRateWindow.window_start == start)
            .scalar()
        ) or 0
        # a refused increment leaves the count untouched
        used_before = count - 1 if result.rowcount == 1 else count
        return consumption_result(used_before, limit, now)

    @staticmethod
    def _ensure_window(db: Session, user_id: str, start: datetime) -> None:
        exists = (
            db.query(ExportRateWindow.id)
            .filter(ExportRateWindow.user_id == user_id, ExportRateWindow.window_start == start)
            .first()
        )
        if exists:
            return
        db.add(ExportRateWindow(user_id=user_id, window_start=start, count=0))
        try:
            db.commit()
        except IntegrityError:
            # a concurrent request created the window first
            db.rollback()


class RedisRateCounter:
    """INCR on an hourly key; the key expires with its window."""

    def __init__(self, client: redis.Redis):
        self.client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "RedisRateCounter":
        return cls(redis.from_url(settings.REDIS_URL, decode_responses=True, max_connections=100))

    def consume(self, db: Session, user_id: str, limit: int, now: datetime) -> RateLimitResult:
        start = window_start(now)
        key = f"export_rate:{user_id}:{start:%Y%m%d%H}"
        pipe = self.client.pipeline()
        pipe.incr(key)
        pipe.expire(key, int(WINDOW.total_seconds()))
        count, _ = pipe.execute()
        return consumption_result(count - 1, limit, now)


def build_rate_counter(settings: Settings):
    if settings.EXPORT_RATE_LIMIT_BACKEND == "redis":
        return RedisRateCounter.from_settings(settings)
    if settings.EXPORT_RATE_LIMIT_BACKEND != "database":
        logger.warning(
            "Unknown EXPORT_RATE_LIMIT_BACKEND %r, using database", settings.EXPORT_RATE_LIMIT_BACKEND,
        )
    return DatabaseRateCounter()
