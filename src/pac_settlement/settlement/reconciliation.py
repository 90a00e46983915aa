"""
Reconciliation Tracker

After a week has been charged, a recomputed total can still move (a late
report, a dispute resolved, monitoring restored). The tracker records the
difference against what was actually charged; it never charges or refunds.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

import structlog

from ..core.states import is_charged
from ..persistence.models import UserWeekPenaltyRecord
from ..persistence.repository import PenaltyRepository

logger = structlog.get_logger()


class ReconciliationError(Exception):
    """The week has nothing outstanding to reconcile."""
    pass


@dataclass
class ReconciliationResult:
    user_id: str
    week_end_date: str
    charged_amount_cents: int
    recomputed_total_cents: int
    delta_cents: int

    @property
    def needs_reconciliation(self) -> bool:
        return self.delta_cents != 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "week_end_date": self.week_end_date,
            "charged_amount_cents": self.charged_amount_cents,
            "recomputed_total_cents": self.recomputed_total_cents,
            "delta_cents": self.delta_cents,
            "needs_reconciliation": self.needs_reconciliation,
        }


class ReconciliationTracker:
    """Compare a charged week's recomputed total with the amount charged."""

    def __init__(self, penalties: Optional[PenaltyRepository] = None):
        self.penalties = penalties or PenaltyRepository()

    def check(
        self,
        user_id: str,
        week_end_date: str,
        reason: str = "recomputed_total_differs",
    ) -> Optional[ReconciliationResult]:
        """
        Record a delta if the week is charged and the totals disagree.

        Returns None for weeks that have not been charged. A positive delta
        means more is owed; negative means a refund is owed.
        """
        penalty = self.penalties.get(user_id, week_end_date)
        if penalty is None or not is_charged(penalty.settlement_status):
            return None

        result = ReconciliationResult(
            user_id=user_id,
            week_end_date=week_end_date,
            charged_amount_cents=penalty.charged_amount_cents,
            recomputed_total_cents=penalty.total_penalty_cents,
            delta_cents=penalty.total_penalty_cents - penalty.charged_amount_cents,
        )

        if result.needs_reconciliation:
            if not penalty.needs_reconciliation or penalty.reconciliation_delta_cents != result.delta_cents:
                self.penalties.flag_reconciliation(user_id, week_end_date, result.delta_cents, reason)
                logger.warning(
                    "reconciliation_needed",
                    user_id=user_id,
                    week_end_date=week_end_date,
                    delta_cents=result.delta_cents,
                    reason=reason,
                )
        elif penalty.needs_reconciliation:
            self.penalties.clear_reconciliation_flag(user_id, week_end_date)
            logger.info("reconciliation_flag_cleared", user_id=user_id, week_end_date=week_end_date)

        return result

    def mark_reconciled(self, user_id: str, week_end_date: str) -> UserWeekPenaltyRecord:
        """
        Acknowledge that the outstanding delta was settled out of band.

        The delta is folded into charged_amount_cents and the week becomes
        charged_actual_adjusted.
        """
        penalty = self.penalties.require(user_id, week_end_date)
        if not penalty.needs_reconciliation:
            raise ReconciliationError(
                f"User {user_id} week {week_end_date} has no outstanding reconciliation"
            )

        if not self.penalties.mark_reconciled(user_id, week_end_date):
            raise ReconciliationError(
                f"User {user_id} week {week_end_date} was reconciled concurrently"
            )

        logger.info(
            "reconciliation_resolved",
            user_id=user_id,
            week_end_date=week_end_date,
            delta_cents=penalty.reconciliation_delta_cents,
        )
        return self.penalties.require(user_id, week_end_date)
