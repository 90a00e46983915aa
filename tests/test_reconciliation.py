"""
Tests for the Reconciliation Tracker.
"""

import pytest

from conftest import WEEK
from pac_settlement.core.states import SettlementStatus
from pac_settlement.settlement.reconciliation import ReconciliationError, ReconciliationTracker


@pytest.fixture
def tracker(repos):
    return ReconciliationTracker(repos.penalties)


def _charged(repos, total, charged):
    repos.penalties.upsert_total("u1", WEEK, charged)
    repos.penalties.mark_paid("u1", WEEK, SettlementStatus.CHARGED_ACTUAL, charged, "pi_1")
    repos.penalties.upsert_total("u1", WEEK, total)


class TestReconciliationTracker:
    """Test delta tracking on charged weeks."""

    def test_uncharged_week_ignored(self, tracker, repos):
        """Weeks that were never charged have nothing to reconcile."""
        repos.penalties.upsert_total("u1", WEEK, 300)

        assert tracker.check("u1", WEEK) is None
        assert not repos.penalties.get("u1", WEEK).needs_reconciliation

    def test_matching_total_not_flagged(self, tracker, repos):
        """No delta, no flag."""
        _charged(repos, total=300, charged=300)

        result = tracker.check("u1", WEEK)

        assert result.delta_cents == 0
        assert not result.needs_reconciliation
        assert not repos.penalties.get("u1", WEEK).needs_reconciliation

    def test_positive_delta(self, tracker, repos):
        """A higher recomputed total means more is owed."""
        _charged(repos, total=500, charged=300)

        result = tracker.check("u1", WEEK, reason="late_usage_report")

        assert result.delta_cents == 200
        penalty = repos.penalties.get("u1", WEEK)
        assert penalty.needs_reconciliation
        assert penalty.reconciliation_reason == "late_usage_report"

    def test_negative_delta(self, tracker, repos):
        """A lower recomputed total means a refund is owed."""
        _charged(repos, total=100, charged=300)

        result = tracker.check("u1", WEEK)

        assert result.delta_cents == -200
        assert repos.penalties.get("u1", WEEK).reconciliation_delta_cents == -200

    def test_flag_cleared_when_delta_returns_to_zero(self, tracker, repos):
        """A stale flag is dropped once the totals agree again."""
        _charged(repos, total=500, charged=300)
        tracker.check("u1", WEEK)

        repos.penalties.upsert_total("u1", WEEK, 300)
        tracker.check("u1", WEEK)

        penalty = repos.penalties.get("u1", WEEK)
        assert not penalty.needs_reconciliation
        assert penalty.reconciliation_delta_cents == 0

    def test_mark_reconciled(self, tracker, repos):
        """Resolving folds the delta into the charged amount."""
        _charged(repos, total=500, charged=300)
        tracker.check("u1", WEEK)

        penalty = tracker.mark_reconciled("u1", WEEK)

        assert penalty.settlement_status is SettlementStatus.CHARGED_ACTUAL_ADJUSTED
        assert penalty.charged_amount_cents == 500
        assert not penalty.needs_reconciliation
        assert tracker.check("u1", WEEK).delta_cents == 0

    def test_mark_reconciled_without_delta(self, tracker, repos):
        """Nothing outstanding is a conflict."""
        _charged(repos, total=300, charged=300)

        with pytest.raises(ReconciliationError):
            tracker.mark_reconciled("u1", WEEK)
