"""
Batch Runner

Settles every user with an open balance for one week. Each user runs as an
independent unit of work on a bounded thread pool; one user's failure is
captured in that user's result and never stops the batch. Only an unreachable
data store propagates.
"""

import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import structlog

from ..config import SettlementConfig
from ..persistence.database import StoreUnavailableError
from ..persistence.repository import DataIntegrityError, PenaltyRepository, WeeklyPoolRepository
from .gate import GateDecision, SettlementGate
from .orchestrator import ChargeOrchestrator, ChargeOutcome, ChargeResult

logger = structlog.get_logger()


class SettlementOutcome(Enum):
    SUCCEEDED = "succeeded"
    REQUIRES_ACTION = "requires_action"
    IN_PROGRESS = "in_progress"
    FAILED = "failed"
    SKIPPED = "skipped"


_SETTLEMENT_OUTCOME = {
    ChargeOutcome.SUCCEEDED: SettlementOutcome.SUCCEEDED,
    ChargeOutcome.REQUIRES_ACTION: SettlementOutcome.REQUIRES_ACTION,
    ChargeOutcome.PROCESSING: SettlementOutcome.IN_PROGRESS,
    ChargeOutcome.UNKNOWN: SettlementOutcome.IN_PROGRESS,
    ChargeOutcome.REQUIRES_PAYMENT_METHOD: SettlementOutcome.FAILED,
    ChargeOutcome.FAILED: SettlementOutcome.FAILED,
    ChargeOutcome.SKIPPED: SettlementOutcome.SKIPPED,
}


@dataclass
class UserSettlementResult:
    """Per-user entry in a settlement summary."""
    user_id: str
    week_end_date: str
    outcome: SettlementOutcome
    success: bool
    amount_cents: int = 0
    intent_id: Optional[str] = None
    status: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def from_charge(cls, charge: ChargeResult) -> "UserSettlementResult":
        outcome = _SETTLEMENT_OUTCOME[charge.outcome]
        return cls(
            user_id=charge.user_id,
            week_end_date=charge.week_end_date,
            outcome=outcome,
            success=outcome in (SettlementOutcome.SUCCEEDED, SettlementOutcome.REQUIRES_ACTION,
                                SettlementOutcome.IN_PROGRESS),
            amount_cents=charge.amount_cents,
            intent_id=charge.intent_id,
            status=charge.outcome.value,
            error=charge.error,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "week_end_date": self.week_end_date,
            "outcome": self.outcome.value,
            "success": self.success,
            "amount_cents": self.amount_cents,
            "intent_id": self.intent_id,
            "status": self.status,
            "error": self.error,
        }


@dataclass
class SettlementSummary:
    """Operational summary of one run for one week."""
    week_end_date: str
    pool_total_cents: int = 0
    pool_closed: bool = False
    results: List[UserSettlementResult] = field(default_factory=list)
    duration_ms: float = 0.0

    def _count(self, outcome: SettlementOutcome) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    @property
    def attempted(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> int:
        return self._count(SettlementOutcome.SUCCEEDED)

    @property
    def requires_action(self) -> int:
        return self._count(SettlementOutcome.REQUIRES_ACTION)

    @property
    def in_progress(self) -> int:
        return self._count(SettlementOutcome.IN_PROGRESS)

    @property
    def failed(self) -> int:
        return self._count(SettlementOutcome.FAILED)

    @property
    def skipped(self) -> int:
        return self._count(SettlementOutcome.SKIPPED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "week_end_date": self.week_end_date,
            "pool_total_cents": self.pool_total_cents,
            "pool_closed": self.pool_closed,
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "requires_action": self.requires_action,
            "in_progress": self.in_progress,
            "failed": self.failed,
            "skipped": self.skipped,
            "results": [r.to_dict() for r in sorted(self.results, key=lambda r: r.user_id)],
            "duration_ms": round(self.duration_ms, 2),
        }


class BatchRunner:
    """Run gate + orchestrator for every eligible user of a week."""

    def __init__(
        self,
        gate: SettlementGate,
        orchestrator: ChargeOrchestrator,
        config: Optional[SettlementConfig] = None,
        penalties: Optional[PenaltyRepository] = None,
        pools: Optional[WeeklyPoolRepository] = None,
    ):
        self.gate = gate
        self.orchestrator = orchestrator
        self.config = config or SettlementConfig.from_env()
        self.penalties = penalties or PenaltyRepository()
        self.pools = pools or WeeklyPoolRepository()

    def attempt_settlement(self, user_id: str, week_end_date: str) -> UserSettlementResult:
        """
        The single settlement operation both triggers share.

        An already-settled week is a successful no-op.
        """
        gate_result = self.gate.try_claim(user_id, week_end_date)

        if not gate_result.allowed:
            penalty = gate_result.penalty
            return UserSettlementResult(
                user_id=user_id,
                week_end_date=week_end_date,
                outcome=SettlementOutcome.SKIPPED,
                success=gate_result.decision == GateDecision.ALREADY_SETTLED,
                amount_cents=penalty.total_penalty_cents if penalty else 0,
                status=gate_result.decision.value,
                error=None if gate_result.decision == GateDecision.ALREADY_SETTLED
                else f"skipped: {gate_result.decision.value}",
            )

        charge = self.orchestrator.charge(gate_result.penalty, gate_result.prior_status)
        return UserSettlementResult.from_charge(charge)

    def _resume(self, user_id: str, week_end_date: str) -> Optional[UserSettlementResult]:
        penalty = self.penalties.get(user_id, week_end_date)
        if penalty is None:
            return None
        charge = self.orchestrator.resume(penalty)
        if charge is None:
            return UserSettlementResult(
                user_id=user_id,
                week_end_date=week_end_date,
                outcome=SettlementOutcome.IN_PROGRESS,
                success=True,
                amount_cents=penalty.total_penalty_cents,
                intent_id=penalty.charge_payment_intent_id,
                status="in_flight",
            )
        return UserSettlementResult.from_charge(charge)

    def _guarded(
        self,
        work: Callable[[str, str], Optional[UserSettlementResult]],
        user_id: str,
        week_end_date: str,
    ) -> Optional[UserSettlementResult]:
        try:
            return work(user_id, week_end_date)
        except StoreUnavailableError:
            raise
        except DataIntegrityError as e:
            logger.error("settlement_data_integrity", user_id=user_id, week_end_date=week_end_date, error=str(e))
            return UserSettlementResult(
                user_id=user_id,
                week_end_date=week_end_date,
                outcome=SettlementOutcome.SKIPPED,
                success=False,
                error=str(e),
            )
        except Exception as e:
            logger.error(
                "settlement_user_failed",
                user_id=user_id,
                week_end_date=week_end_date,
                error=str(e),
                exc_info=True,
            )
            return UserSettlementResult(
                user_id=user_id,
                week_end_date=week_end_date,
                outcome=SettlementOutcome.FAILED,
                success=False,
                error=str(e),
            )

    def _run_all(
        self,
        work: Callable[[str, str], Optional[UserSettlementResult]],
        user_ids: List[str],
        week_end_date: str,
    ) -> List[UserSettlementResult]:
        results: List[UserSettlementResult] = []
        if not user_ids:
            return results

        with ThreadPoolExecutor(max_workers=max(1, self.config.max_workers)) as executor:
            futures = {
                executor.submit(self._guarded, work, user_id, week_end_date): user_id
                for user_id in user_ids
            }
            for future in as_completed(futures):
                result = future.result()
                if result is not None:
                    results.append(result)
        return results

    def run(
        self,
        week_end_date: str,
        user_ids: Optional[List[str]] = None,
        close_pool: bool = True,
        blocked: Optional[Dict[str, str]] = None,
    ) -> SettlementSummary:
        """
        Settle one week.

        Args:
            week_end_date: Week identifier
            user_ids: Restrict the run to these users (expiry checker)
            close_pool: Close the weekly pool once every user has been attempted
            blocked: Users that must not be charged this run, with the reason
                (e.g. their backfill failed); they are reported as failed
        """
        start = time.perf_counter()
        blocked = blocked or {}
        summary = SettlementSummary(week_end_date=week_end_date)

        for user_id, reason in sorted(blocked.items()):
            summary.results.append(UserSettlementResult(
                user_id=user_id,
                week_end_date=week_end_date,
                outcome=SettlementOutcome.FAILED,
                success=False,
                error=reason,
            ))

        in_flight = [
            p.user_id for p in self.penalties.list_in_flight(week_end_date, user_ids)
            if p.user_id not in blocked
        ]
        summary.results.extend(self._run_all(self._resume, in_flight, week_end_date))

        handled = set(in_flight) | set(blocked)
        pending = [
            p.user_id for p in self.penalties.list_attemptable(week_end_date, user_ids)
            if p.user_id not in handled
        ]
        summary.results.extend(self._run_all(self.attempt_settlement, pending, week_end_date))

        pool = self.pools.get(week_end_date)
        summary.pool_total_cents = pool.total_penalty_cents if pool else 0
        if close_pool:
            self.pools.close(week_end_date)
            summary.pool_closed = True
        else:
            summary.pool_closed = bool(pool and pool.status == "closed")

        summary.duration_ms = (time.perf_counter() - start) * 1000
        logger.info(
            "settlement_batch_complete",
            week_end_date=week_end_date,
            attempted=summary.attempted,
            succeeded=summary.succeeded,
            requires_action=summary.requires_action,
            in_progress=summary.in_progress,
            failed=summary.failed,
            skipped=summary.skipped,
            pool_total_cents=summary.pool_total_cents,
        )
        return summary
