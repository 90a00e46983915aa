"""
PAC Settlement - Core Module

Status model, weekly deadline timing, structured logging and rate limiting
shared by every other layer.
"""

from .states import (
    MonitoringStatus,
    CommitmentStatus,
    PenaltyStatus,
    SettlementStatus,
    PaymentStatus,
    IntentStatus,
    ChargeType,
    map_intent_status,
    is_charged,
)
from .timing import WeekCalendar, WeekTarget, utc_now
from .logging import configure_logging
from .rate_limit import SlidingWindowRateLimiter, RateLimitResult

__all__ = [
    "MonitoringStatus",
    "CommitmentStatus",
    "PenaltyStatus",
    "SettlementStatus",
    "PaymentStatus",
    "IntentStatus",
    "ChargeType",
    "map_intent_status",
    "is_charged",
    "WeekCalendar",
    "WeekTarget",
    "utc_now",
    "configure_logging",
    "SlidingWindowRateLimiter",
    "RateLimitResult",
]
