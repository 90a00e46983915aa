"""
Settlement Triggers

Two independent entry points into the same BatchRunner:

- WeeklyCloser: once per week boundary, settles the week that just ended and
  closes its pool.
- ExpiryChecker: runs often, settles users whose grace period has already
  elapsed. It never closes a pool.

Within a trigger the steps are sequential (backfill, then aggregate, then
charge). Across triggers nothing is ordered; the settlement gate alone keeps
them from charging a week twice.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog

from ..core.states import MonitoringStatus
from ..core.timing import WeekCalendar, utc_now
from ..persistence.models import CommitmentRecord
from ..persistence.repository import CommitmentRepository, PenaltyRepository
from .aggregator import PenaltyAggregator
from .backfill import BackfillError, EstimationBackfiller
from .batch import BatchRunner, SettlementSummary

logger = structlog.get_logger()


def _backfill_all(
    backfiller: EstimationBackfiller,
    commitments: List[CommitmentRecord],
) -> Dict[str, str]:
    """Backfill each commitment; returns {user_id: error} for the ones that failed."""
    failures: Dict[str, str] = {}
    for commitment in commitments:
        try:
            backfiller.backfill(commitment)
        except BackfillError as e:
            failures[commitment.user_id] = str(e)
    return failures


class WeeklyCloser:
    """Scheduled close of the week that just ended."""

    def __init__(
        self,
        calendar: WeekCalendar,
        backfiller: EstimationBackfiller,
        aggregator: PenaltyAggregator,
        batch: BatchRunner,
        commitments: Optional[CommitmentRepository] = None,
    ):
        self.calendar = calendar
        self.backfiller = backfiller
        self.aggregator = aggregator
        self.batch = batch
        self.commitments = commitments or CommitmentRepository()

    def run(
        self,
        week_end_date: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> SettlementSummary:
        target = self.calendar.resolve_week_target(now=now, override=week_end_date)
        week = target.week_end_date
        logger.info("weekly_close_started", week_end_date=week)

        failures = _backfill_all(self.backfiller, self.commitments.list_revoked_for_week(week))
        self.aggregator.aggregate_week(week)
        summary = self.batch.run(week, close_pool=True, blocked=failures)

        logger.info("weekly_close_complete", **{k: v for k, v in summary.to_dict().items() if k != "results"})
        return summary


@dataclass
class ExpiryCheckResult:
    """Summaries for every week that had grace-expired commitments."""
    checked_at: str
    expired_commitments: int = 0
    weeks: List[SettlementSummary] = field(default_factory=list)
    zero_balance_settled: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checked_at": self.checked_at,
            "expired_commitments": self.expired_commitments,
            "zero_balance_settled": self.zero_balance_settled,
            "weeks": [s.to_dict() for s in self.weeks],
        }


class ExpiryChecker:
    """Early settlement for users whose grace period has elapsed."""

    def __init__(
        self,
        backfiller: EstimationBackfiller,
        aggregator: PenaltyAggregator,
        batch: BatchRunner,
        commitments: Optional[CommitmentRepository] = None,
        penalties: Optional[PenaltyRepository] = None,
    ):
        self.backfiller = backfiller
        self.aggregator = aggregator
        self.batch = batch
        self.commitments = commitments or CommitmentRepository()
        self.penalties = penalties or PenaltyRepository()

    def run(self, now: Optional[datetime] = None) -> ExpiryCheckResult:
        now = now or utc_now()
        expired = self.commitments.list_grace_expired(now.isoformat())
        result = ExpiryCheckResult(checked_at=now.isoformat(), expired_commitments=len(expired))

        if not expired:
            logger.info("expiry_check_nothing_expired")
            return result

        by_week: Dict[str, List[CommitmentRecord]] = defaultdict(list)
        for commitment in expired:
            by_week[commitment.week_end_date].append(commitment)

        for week, commitments in sorted(by_week.items()):
            user_ids = sorted({c.user_id for c in commitments})

            revoked = [c for c in commitments if c.monitoring_status is MonitoringStatus.REVOKED]
            failures = _backfill_all(self.backfiller, revoked)
            self.aggregator.aggregate_week(week)
            summary = self.batch.run(week, user_ids=user_ids, close_pool=False, blocked=failures)
            result.weeks.append(summary)

            # Grace is over, so a zero balance is final; a failed backfill leaves the total incomplete
            for user_id in user_ids:
                if user_id in failures:
                    continue
                penalty = self.penalties.get(user_id, week)
                if penalty is None or penalty.total_penalty_cents == 0:
                    result.zero_balance_settled += self.commitments.mark_settled(user_id, week)

        logger.info(
            "expiry_check_complete",
            expired_commitments=result.expired_commitments,
            weeks=len(result.weeks),
            zero_balance_settled=result.zero_balance_settled,
        )
        return result
