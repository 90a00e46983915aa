"""
Penalty Aggregator

Recomputes every user's weekly total from DailyUsage and the pool total from
those. Totals are always full recomputations, so re-running is harmless.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

import structlog

from ..core.states import is_charged
from ..persistence.repository import (
    CommitmentRepository,
    DailyUsageRepository,
    PenaltyRepository,
    WeeklyPoolRepository,
)
from .reconciliation import ReconciliationResult, ReconciliationTracker

logger = structlog.get_logger()


@dataclass
class AggregationResult:
    week_end_date: str
    user_totals: Dict[str, int] = field(default_factory=dict)
    pool_total_cents: int = 0
    reconciliations: List[ReconciliationResult] = field(default_factory=list)


class PenaltyAggregator:
    """Sum per-day penalties into per-user weekly rows and the weekly pool."""

    def __init__(
        self,
        commitments: Optional[CommitmentRepository] = None,
        usage: Optional[DailyUsageRepository] = None,
        penalties: Optional[PenaltyRepository] = None,
        pools: Optional[WeeklyPoolRepository] = None,
        reconciliation: Optional[ReconciliationTracker] = None,
    ):
        self.commitments = commitments or CommitmentRepository()
        self.usage = usage or DailyUsageRepository()
        self.penalties = penalties or PenaltyRepository()
        self.pools = pools or WeeklyPoolRepository()
        self.reconciliation = reconciliation or ReconciliationTracker(self.penalties)

    def aggregate_week(self, week_end_date: str) -> AggregationResult:
        commitments = self.commitments.list_for_week(week_end_date)
        owner_by_commitment = {c.id: c.user_id for c in commitments}

        # Only this week's commitments count; a user's older weeks must not leak in
        totals: Dict[str, int] = {c.user_id: 0 for c in commitments}
        for row in self.usage.list_for_commitments(list(owner_by_commitment)):
            if owner_by_commitment.get(row.commitment_id) == row.user_id:
                totals[row.user_id] += row.penalty_cents

        result = AggregationResult(week_end_date=week_end_date, user_totals=dict(totals))

        for user_id, total in sorted(totals.items()):
            self.penalties.upsert_total(user_id, week_end_date, total)

        result.pool_total_cents = sum(totals.values())
        self.pools.set_total(week_end_date, result.pool_total_cents)

        for penalty in self.penalties.list_for_week(week_end_date):
            if penalty.user_id in totals and is_charged(penalty.settlement_status):
                reconciliation = self.reconciliation.check(penalty.user_id, week_end_date)
                if reconciliation is not None and reconciliation.needs_reconciliation:
                    result.reconciliations.append(reconciliation)

        logger.info(
            "week_aggregated",
            week_end_date=week_end_date,
            users=len(totals),
            pool_total_cents=result.pool_total_cents,
            reconciliations=len(result.reconciliations),
        )
        return result
