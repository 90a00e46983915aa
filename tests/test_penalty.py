"""
Tests for daily penalty arithmetic.
"""

import pytest

from pac_settlement.billing.penalty import (
    WORST_CASE_USAGE_MULTIPLIER,
    compute_daily_penalty,
    worst_case_penalty,
)


class TestComputeDailyPenalty:
    """Test the per-day penalty formula."""

    def test_over_limit(self):
        """90 minutes against a 60 minute limit at 10 cents is 300 cents."""
        penalty = compute_daily_penalty(90, 60, 10)

        assert penalty.exceeded_minutes == 30
        assert penalty.penalty_cents == 300

    def test_under_limit_is_free(self):
        """Usage at or under the limit costs nothing."""
        assert compute_daily_penalty(60, 60, 10).penalty_cents == 0
        assert compute_daily_penalty(5, 60, 10).exceeded_minutes == 0

    def test_negative_input_rejected(self):
        """Negative minutes or rates are invalid."""
        with pytest.raises(ValueError):
            compute_daily_penalty(-1, 60, 10)
        with pytest.raises(ValueError):
            compute_daily_penalty(10, 60, -5)


class TestWorstCasePenalty:
    """Test the synthetic penalty for revoked days."""

    def test_default_multiplier_exceeds_by_limit(self):
        """With the default multiplier the exceeded minutes equal the limit."""
        assert WORST_CASE_USAGE_MULTIPLIER == 2
        penalty = worst_case_penalty(60, 10)

        assert penalty.used_minutes == 120
        assert penalty.exceeded_minutes == 60
        assert penalty.penalty_cents == 600

    def test_custom_multiplier(self):
        """A larger multiplier scales the synthetic usage."""
        penalty = worst_case_penalty(60, 10, multiplier=3)

        assert penalty.exceeded_minutes == 120
        assert penalty.penalty_cents == 1200

    def test_multiplier_below_one_rejected(self):
        """A multiplier under 1 would make revoking cheaper than reporting."""
        with pytest.raises(ValueError):
            worst_case_penalty(60, 10, multiplier=0)
