"""
Redis-based rate limiting.

Fixed hourly and daily windows per (subject, endpoint).
"""

import logging
from datetime import datetime, timedelta
from typing import Any

import redis

from inboxcore.settings import get_settings

logger = logging.getLogger(__name__)


class RateLimiter:
    """Hourly and daily request counters stored in Redis."""

    def __init__(
        self,
        redis_client: redis.Redis,
        hourly_limit: int | None = None,
        daily_limit: int | None = None,
    ):
        settings = get_settings()
        self.redis = redis_client
        self.hourly_limit = hourly_limit or settings.RATE_LIMIT_PER_HOUR
        self.daily_limit = daily_limit or settings.RATE_LIMIT_PER_DAY

    @staticmethod
    def _keys(subject: str, endpoint: str, now: datetime) -> tuple[str, str]:
        hour_key = f"ratelimit:hour:{subject}:{endpoint}:{now.strftime('%Y%m%d%H')}"
        day_key = f"ratelimit:day:{subject}:{endpoint}:{now.strftime('%Y%m%d')}"
        return hour_key, day_key

    def check_rate_limit(
        self,
        subject: str,
        endpoint: str,
        now: datetime | None = None,
    ) -> tuple[bool, int | None]:
        """
        Count a request and decide on the counts Redis returns.

        Both windows are incremented in one pipeline so concurrent requests
        cannot all pass a read taken before any of them counted. Rejected
        requests still count toward the window.

        Returns:
            (is_allowed, retry_after_seconds)
        """
        now = now or datetime.utcnow()
        hour_key, day_key = self._keys(subject, endpoint, now)

        pipe = self.redis.pipeline()
        pipe.incr(hour_key)
        pipe.expire(hour_key, 3600)
        pipe.incr(day_key)
        pipe.expire(day_key, 86400)
        hour_count, _, day_count, _ = pipe.execute()

        if int(hour_count) > self.hourly_limit:
            next_hour = (now + timedelta(hours=1)).replace(minute=0, second=0, microsecond=0)
            logger.warning(
                f"Hourly rate limit reached for {subject}",
                extra={"endpoint": endpoint, "limit": self.hourly_limit},
            )
            return False, int((next_hour - now).total_seconds())

        if int(day_count) > self.daily_limit:
            next_day = (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
            logger.warning(
                f"Daily rate limit reached for {subject}",
                extra={"endpoint": endpoint, "limit": self.daily_limit},
            )
            return False, int((next_day - now).total_seconds())

        return True, None

    def get_usage(self, subject: str, endpoint: str, now: datetime | None = None) -> dict[str, Any]:
        """Current usage for a subject."""
        now = now or datetime.utcnow()
        hour_key, day_key = self._keys(subject, endpoint, now)

        hour_count = int(self.redis.get(hour_key) or 0)
        day_count = int(self.redis.get(day_key) or 0)

        return {
            "hourly": {
                "used": hour_count,
                "limit": self.hourly_limit,
                "remaining": max(0, self.hourly_limit - hour_count),
            },
            "daily": {
                "used": day_count,
                "limit": self.daily_limit,
                "remaining": max(0, self.daily_limit - day_count),
            },
        }
