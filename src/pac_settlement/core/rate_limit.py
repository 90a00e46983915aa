"""
Sliding-window rate limiter backed by the rate_limits table.

Keys are "{prefix}:{user_id}". The limiter fails open: if the store cannot
be read or written, the request is allowed and a warning is logged.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

import structlog

from ..persistence.database import Database, get_database

logger = structlog.get_logger()


@dataclass
class RateLimitResult:
    """Outcome of a rate limit check."""
    allowed: bool
    remaining: int
    reset_at: datetime
    limit: int

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(self.reset_at.timestamp())),
        }

    def retry_after_seconds(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.now(timezone.utc)
        return max(0, int((self.reset_at - now).total_seconds() + 0.999))


class SlidingWindowRateLimiter:
    """
    Count requests per key over the trailing window.

    Usage:
        limiter = SlidingWindowRateLimiter("week-status", max_requests=30, window_seconds=60)
        result = limiter.check(user_id)
        if not result.allowed:
            ...  # respond 429 with result.headers()
    """

    def __init__(
        self,
        key_prefix: str,
        max_requests: int = 30,
        window_seconds: int = 60,
        db: Optional[Database] = None,
    ):
        self.key_prefix = key_prefix
        self.max_requests = max_requests
        self.window = timedelta(seconds=window_seconds)
        self._db = db

    @property
    def db(self) -> Database:
        if self._db is None:
            self._db = get_database()
        return self._db

    def _key(self, user_id: str) -> str:
        return f"{self.key_prefix}:{user_id}"

    def check(self, user_id: str, now: Optional[datetime] = None) -> RateLimitResult:
        now = now or datetime.now(timezone.utc)
        key = self._key(user_id)
        reset_at = now + self.window

        try:
            # Entries older than two windows can never count again
            self.db.execute(
                "DELETE FROM rate_limits WHERE timestamp < ?",
                ((now - 2 * self.window).isoformat(),)
            )
            results = self.db.execute(
                "SELECT COUNT(*) AS cnt FROM rate_limits WHERE key = ? AND timestamp >= ?",
                (key, (now - self.window).isoformat())
            )
            current = results[0]["cnt"] if results else 0
            allowed = current < self.max_requests

            if allowed:
                self.db.execute(
                    "INSERT INTO rate_limits (key, user_id, timestamp) VALUES (?, ?, ?)",
                    (key, user_id, now.isoformat())
                )
                current += 1
        except Exception as e:
            logger.warning("rate_limit_check_failed", key=key, error=str(e))
            return RateLimitResult(
                allowed=True,
                remaining=self.max_requests,
                reset_at=reset_at,
                limit=self.max_requests,
            )

        if not allowed:
            logger.warning("rate_limit_exceeded", key=key, limit=self.max_requests)

        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, self.max_requests - current),
            reset_at=reset_at,
            limit=self.max_requests,
        )
