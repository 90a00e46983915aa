"""
Tests for the Penalty Aggregator.
"""

import pytest

from conftest import WEEK
from pac_settlement.core.states import PenaltyStatus, SettlementStatus
from pac_settlement.settlement.aggregator import PenaltyAggregator
from pac_settlement.settlement.reconciliation import ReconciliationTracker


@pytest.fixture
def aggregator(repos):
    return PenaltyAggregator(
        repos.commitments,
        repos.usage,
        repos.penalties,
        repos.pools,
        ReconciliationTracker(repos.penalties),
    )


class TestPenaltyAggregator:
    """Test weekly totals and the pool."""

    def test_single_day_total(self, aggregator, repos, seed):
        """One 90 minute day at limit 60 and 10 cents totals 300."""
        commitment = seed.commitment("u1")
        seed.usage_row(commitment, "2025-01-10", 90)

        result = aggregator.aggregate_week(WEEK)

        assert result.user_totals == {"u1": 300}
        assert repos.penalties.get("u1", WEEK).total_penalty_cents == 300

    def test_pool_total_and_zero_user(self, aggregator, repos, seed):
        """Two users at 300 and 0 give a pool of 300; both rows exist."""
        c1 = seed.commitment("u1")
        c2 = seed.commitment("u2")
        seed.usage_row(c1, "2025-01-10", 90)
        seed.usage_row(c2, "2025-01-10", 30)

        result = aggregator.aggregate_week(WEEK)

        assert result.pool_total_cents == 300
        assert repos.pools.get(WEEK).total_penalty_cents == 300
        assert repos.penalties.get("u2", WEEK).total_penalty_cents == 0
        assert repos.penalties.list_attemptable(WEEK) == [repos.penalties.get("u1", WEEK)]

    def test_idempotent(self, aggregator, repos, seed):
        """Re-running with unchanged usage gives identical totals."""
        commitment = seed.commitment("u1")
        seed.usage_row(commitment, "2025-01-09", 75)
        seed.usage_row(commitment, "2025-01-10", 90)

        first = aggregator.aggregate_week(WEEK)
        second = aggregator.aggregate_week(WEEK)

        assert first.user_totals == second.user_totals == {"u1": 450}
        assert repos.penalties.get("u1", WEEK).total_penalty_cents == 450

    def test_other_weeks_excluded(self, aggregator, repos, seed):
        """Usage from the user's other weeks does not leak into this one."""
        this_week = seed.commitment("u1")
        next_week = seed.commitment("u1", week="2025-01-20", grace_expires_at="2025-01-21T12:00:00+00:00")
        seed.usage_row(this_week, "2025-01-10", 90)
        seed.usage_row(next_week, "2025-01-15", 160)

        result = aggregator.aggregate_week(WEEK)

        assert result.user_totals == {"u1": 300}

    def test_charge_state_preserved(self, aggregator, repos, seed):
        """Re-aggregation never resets status or settlement status."""
        commitment = seed.commitment("u1")
        seed.usage_row(commitment, "2025-01-10", 90)
        aggregator.aggregate_week(WEEK)
        repos.penalties.mark_paid("u1", WEEK, SettlementStatus.CHARGED_ACTUAL, 300, "pi_1")

        aggregator.aggregate_week(WEEK)

        penalty = repos.penalties.get("u1", WEEK)
        assert penalty.status is PenaltyStatus.PAID
        assert penalty.settlement_status is SettlementStatus.CHARGED_ACTUAL
        assert penalty.charged_amount_cents == 300

    def test_late_data_flags_reconciliation(self, aggregator, repos, seed):
        """A changed total on a charged week is recorded as a delta."""
        commitment = seed.commitment("u1")
        seed.usage_row(commitment, "2025-01-10", 90)
        aggregator.aggregate_week(WEEK)
        repos.penalties.mark_paid("u1", WEEK, SettlementStatus.CHARGED_ACTUAL, 300, "pi_1")

        seed.usage_row(commitment, "2025-01-11", 70)
        result = aggregator.aggregate_week(WEEK)

        assert len(result.reconciliations) == 1
        assert result.reconciliations[0].delta_cents == 100
        penalty = repos.penalties.get("u1", WEEK)
        assert penalty.needs_reconciliation
        assert penalty.reconciliation_delta_cents == 100
        assert penalty.charged_amount_cents == 300
