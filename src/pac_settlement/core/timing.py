"""
Weekly Deadline Timing

A week is identified by its deadline date (YYYY-MM-DD in the configured
timezone). The deadline itself is a fixed weekday/hour, and the grace period
runs for a fixed number of hours after it.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from ..config import SettlementConfig


@dataclass(frozen=True)
class WeekTarget:
    """A resolved weekly cycle."""
    week_end_date: str
    deadline_at: datetime
    grace_expires_at: datetime


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp stored in the database; naive values are UTC."""
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_week(week_end_date: str) -> date:
    """Validate and parse a week identifier."""
    return date.fromisoformat(week_end_date)


class WeekCalendar:
    """Computes deadlines for the configured weekly cadence."""

    def __init__(self, config: Optional[SettlementConfig] = None):
        self.config = config or SettlementConfig.from_env()
        self.tz = ZoneInfo(self.config.timezone)

    def deadline_for(self, week_end_date: str) -> datetime:
        """Deadline instant (UTC) for a week identifier."""
        day = parse_week(week_end_date)
        local = datetime.combine(day, time(self.config.deadline_hour), tzinfo=self.tz)
        return local.astimezone(timezone.utc)

    def grace_deadline(self, deadline_at: datetime) -> datetime:
        return deadline_at + timedelta(hours=self.config.grace_hours)

    def target(self, week_end_date: str) -> WeekTarget:
        deadline_at = self.deadline_for(week_end_date)
        return WeekTarget(
            week_end_date=week_end_date,
            deadline_at=deadline_at,
            grace_expires_at=self.grace_deadline(deadline_at),
        )

    def _deadline_on_or_before(self, now: datetime) -> date:
        local_now = now.astimezone(self.tz)
        days_since = (local_now.weekday() - self.config.deadline_weekday) % 7
        candidate = local_now.date() - timedelta(days=days_since)
        candidate_at = datetime.combine(candidate, time(self.config.deadline_hour), tzinfo=self.tz)
        if candidate_at > local_now:
            candidate -= timedelta(days=7)
        return candidate

    def resolve_week_target(
        self,
        now: Optional[datetime] = None,
        override: Optional[str] = None,
    ) -> WeekTarget:
        """
        Resolve the week that just ended.

        The most recent deadline that is not in the future, or the explicit
        override when one is given.
        """
        if override:
            return self.target(override)

        now = now or utc_now()
        return self.target(self._deadline_on_or_before(now).isoformat())

    def next_deadline(self, now: Optional[datetime] = None) -> WeekTarget:
        """The next deadline strictly after now; used when a commitment is locked in."""
        now = now or utc_now()
        last = self._deadline_on_or_before(now)
        return self.target((last + timedelta(days=7)).isoformat())
