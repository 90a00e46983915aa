"""
Penalty arithmetic.

A day's penalty is a pure function of the minutes used, the limit copied from
the commitment, and the per-minute rate.
"""

from dataclasses import dataclass

# Synthetic usage for revoked monitoring is this many times the limit
WORST_CASE_USAGE_MULTIPLIER = 2


@dataclass(frozen=True)
class DailyPenalty:
    used_minutes: int
    limit_minutes: int
    exceeded_minutes: int
    penalty_cents: int


def compute_daily_penalty(
    used_minutes: int,
    limit_minutes: int,
    penalty_per_minute_cents: int,
) -> DailyPenalty:
    """exceeded = max(0, used - limit); penalty = exceeded * rate."""
    if used_minutes < 0 or limit_minutes < 0 or penalty_per_minute_cents < 0:
        raise ValueError("minutes and rate must be non-negative")

    exceeded = max(0, used_minutes - limit_minutes)
    return DailyPenalty(
        used_minutes=used_minutes,
        limit_minutes=limit_minutes,
        exceeded_minutes=exceeded,
        penalty_cents=exceeded * penalty_per_minute_cents,
    )


def worst_case_penalty(
    limit_minutes: int,
    penalty_per_minute_cents: int,
    multiplier: int = WORST_CASE_USAGE_MULTIPLIER,
) -> DailyPenalty:
    """Penalty for a day with no data while monitoring was revoked."""
    if multiplier < 1:
        raise ValueError("worst-case multiplier must be at least 1")
    return compute_daily_penalty(limit_minutes * multiplier, limit_minutes, penalty_per_minute_cents)
