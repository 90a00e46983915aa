"""
Settlement Gate

The one place that decides whether a (user, week) may start a charge attempt.
Both triggers call try_claim(); the claim is a conditional UPDATE on the
penalty row, so two concurrent callers can never both proceed.

States of a penalty row:
    pending -> charge_initiated -> paid
                               -> pending (requires_payment_method)
                               -> failed
    pending and failed may be claimed again; paid is terminal.
"""

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

import structlog

from ..core.states import (
    ATTEMPTABLE_PENALTY_STATUSES,
    TERMINAL_COMMITMENT_STATUSES,
    PenaltyStatus,
    is_charged,
)
from ..persistence.models import UserWeekPenaltyRecord
from ..persistence.repository import CommitmentRepository, DataIntegrityError, PenaltyRepository

logger = structlog.get_logger()


class GateDecision(Enum):
    """Gate decision outcomes."""
    PROCEED = "proceed"
    ALREADY_SETTLED = "already_settled"
    NO_BALANCE = "no_balance"
    IN_FLIGHT = "in_flight"  # another attempt holds the row
    COMMITMENT_TERMINAL = "commitment_terminal"
    LOST_RACE = "lost_race"


@dataclass
class GateResult:
    """
    Result of a gate check.

    On PROCEED, penalty is the freshly claimed row (status charge_initiated,
    new idempotency key) and prior_status is what it was claimed from.
    """
    decision: GateDecision
    penalty: Optional[UserWeekPenaltyRecord] = None
    prior_status: Optional[PenaltyStatus] = None

    @property
    def allowed(self) -> bool:
        return self.decision == GateDecision.PROCEED


class SettlementGate:
    """Idempotency guard shared by the weekly closer and the expiry checker."""

    def __init__(
        self,
        penalties: Optional[PenaltyRepository] = None,
        commitments: Optional[CommitmentRepository] = None,
    ):
        self.penalties = penalties or PenaltyRepository()
        self.commitments = commitments or CommitmentRepository()

        # Metrics
        self._lock = threading.Lock()
        self._total_checks = 0
        self._claimed_count = 0
        self._already_settled_count = 0
        self._lost_race_count = 0

    def evaluate(self, penalty: UserWeekPenaltyRecord) -> GateDecision:
        """Entry condition without side effects."""
        if is_charged(penalty.settlement_status) or penalty.status is PenaltyStatus.PAID:
            return GateDecision.ALREADY_SETTLED
        if penalty.total_penalty_cents <= 0:
            return GateDecision.NO_BALANCE
        if penalty.status not in ATTEMPTABLE_PENALTY_STATUSES:
            return GateDecision.IN_FLIGHT

        commitments = self.commitments.get_for_user_week(penalty.user_id, penalty.week_end_date)
        if not commitments:
            raise DataIntegrityError(
                f"No commitment for user {penalty.user_id} week {penalty.week_end_date}"
            )
        if any(c.status in TERMINAL_COMMITMENT_STATUSES for c in commitments):
            return GateDecision.COMMITMENT_TERMINAL

        return GateDecision.PROCEED

    def try_claim(self, user_id: str, week_end_date: str) -> GateResult:
        """
        Check the entry condition and, if it holds, move the row to
        charge_initiated in the same conditional update.
        """
        with self._lock:
            self._total_checks += 1

        penalty = self.penalties.require(user_id, week_end_date)
        decision = self.evaluate(penalty)

        if decision != GateDecision.PROCEED:
            if decision == GateDecision.ALREADY_SETTLED:
                with self._lock:
                    self._already_settled_count += 1
                logger.info("skipped_already_settled", user_id=user_id, week_end_date=week_end_date)
            else:
                logger.info(
                    "settlement_gate_refused",
                    user_id=user_id,
                    week_end_date=week_end_date,
                    decision=decision.value,
                )
            return GateResult(decision=decision, penalty=penalty)

        claimed = self.penalties.claim(penalty)
        if claimed is None:
            with self._lock:
                self._lost_race_count += 1
            logger.info("settlement_claim_lost", user_id=user_id, week_end_date=week_end_date)
            return GateResult(decision=GateDecision.LOST_RACE, penalty=penalty)

        with self._lock:
            self._claimed_count += 1
        logger.info(
            "settlement_claimed",
            user_id=user_id,
            week_end_date=week_end_date,
            attempt=claimed.charge_attempts,
            amount_cents=claimed.total_penalty_cents,
        )
        return GateResult(decision=GateDecision.PROCEED, penalty=claimed, prior_status=penalty.status)

    def get_metrics(self) -> Dict[str, Any]:
        """Get gate metrics."""
        with self._lock:
            return {
                "total_checks": self._total_checks,
                "claimed": self._claimed_count,
                "already_settled": self._already_settled_count,
                "lost_race": self._lost_race_count,
            }
