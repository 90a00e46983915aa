"""
Estimation Backfiller

When a user revokes screen-time monitoring, the days from the revocation up
to the week's deadline have no trustworthy data. Each such day without a row
gets a worst-case estimate so that revoking is never cheaper than reporting.
"""

from dataclasses import dataclass, field
from datetime import date, timedelta, timezone
from typing import List, Optional

import structlog

from ..billing.penalty import WORST_CASE_USAGE_MULTIPLIER, worst_case_penalty
from ..core.states import MonitoringStatus
from ..core.timing import parse_timestamp, parse_week
from ..persistence.database import StoreUnavailableError
from ..persistence.models import CommitmentRecord, DailyUsageRecord
from ..persistence.repository import DailyUsageRepository

logger = structlog.get_logger()


class BackfillError(Exception):
    """Backfill for one commitment was aborted before writing anything."""

    def __init__(self, commitment_id: str, message: str):
        super().__init__(f"Backfill failed for commitment {commitment_id}: {message}")
        self.commitment_id = commitment_id


@dataclass
class BackfillResult:
    commitment_id: str
    user_id: str
    created_dates: List[str] = field(default_factory=list)
    existing_dates: List[str] = field(default_factory=list)

    @property
    def created(self) -> int:
        return len(self.created_dates)


def revoked_days(revoked_at: str, week_end_date: str) -> List[date]:
    """UTC calendar days from revocation up to, not including, the week's end."""
    start = parse_timestamp(revoked_at).astimezone(timezone.utc).date()
    end = parse_week(week_end_date)
    return [start + timedelta(days=i) for i in range((end - start).days)]


class EstimationBackfiller:
    """
    Synthesize worst-case DailyUsage rows for revoked commitments.

    All existence checks for a commitment run before any write, and the
    writes go out in one transaction, so a failure leaves no partial week.
    """

    def __init__(
        self,
        usage: Optional[DailyUsageRepository] = None,
        multiplier: int = WORST_CASE_USAGE_MULTIPLIER,
    ):
        self.usage = usage or DailyUsageRepository()
        self.multiplier = multiplier

    def backfill(self, commitment: CommitmentRecord) -> BackfillResult:
        result = BackfillResult(commitment_id=commitment.id, user_id=commitment.user_id)

        if commitment.monitoring_status is not MonitoringStatus.REVOKED:
            return result
        if not commitment.monitoring_revoked_at:
            logger.warning("revoked_commitment_without_timestamp", commitment_id=commitment.id)
            return result

        days = revoked_days(commitment.monitoring_revoked_at, commitment.week_end_date)
        missing: List[str] = []

        for day in days:
            day_str = day.isoformat()
            try:
                existing = self.usage.get(commitment.user_id, commitment.id, day_str)
            except StoreUnavailableError:
                raise
            except Exception as e:
                logger.error(
                    "backfill_existence_check_failed",
                    commitment_id=commitment.id,
                    date=day_str,
                    error=str(e),
                )
                raise BackfillError(commitment.id, f"existence check for {day_str} failed: {e}") from e

            if existing is None:
                missing.append(day_str)
            else:
                result.existing_dates.append(day_str)

        if not missing:
            return result

        penalty = worst_case_penalty(
            commitment.limit_minutes,
            commitment.penalty_per_minute_cents,
            self.multiplier,
        )
        records = [
            DailyUsageRecord(
                user_id=commitment.user_id,
                commitment_id=commitment.id,
                date=day_str,
                used_minutes=penalty.used_minutes,
                limit_minutes=penalty.limit_minutes,
                exceeded_minutes=penalty.exceeded_minutes,
                penalty_cents=penalty.penalty_cents,
                is_estimated=True,
            )
            for day_str in missing
        ]

        try:
            self.usage.insert_all(records)
        except StoreUnavailableError:
            raise
        except Exception as e:
            logger.error("backfill_insert_failed", commitment_id=commitment.id, error=str(e))
            raise BackfillError(commitment.id, f"insert failed: {e}") from e

        result.created_dates = missing
        logger.info(
            "estimated_usage_backfilled",
            commitment_id=commitment.id,
            user_id=commitment.user_id,
            days=len(missing),
            penalty_cents_per_day=penalty.penalty_cents,
        )
        return result
