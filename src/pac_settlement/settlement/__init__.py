"""
PAC Settlement - Settlement Module

Backfill, aggregation, gating, charging and the two triggers that drive them.
"""

from .backfill import EstimationBackfiller, BackfillError, BackfillResult
from .aggregator import PenaltyAggregator, AggregationResult
from .reconciliation import ReconciliationTracker, ReconciliationResult, ReconciliationError
from .gate import SettlementGate, GateDecision, GateResult
from .orchestrator import ChargeOrchestrator, ChargeOutcome, ChargeResult
from .batch import BatchRunner, SettlementOutcome, SettlementSummary, UserSettlementResult
from .triggers import WeeklyCloser, ExpiryChecker, ExpiryCheckResult
from .service import SettlementService, WeekStatus

__all__ = [
    "EstimationBackfiller",
    "BackfillError",
    "BackfillResult",
    "PenaltyAggregator",
    "AggregationResult",
    "ReconciliationTracker",
    "ReconciliationResult",
    "ReconciliationError",
    "SettlementGate",
    "GateDecision",
    "GateResult",
    "ChargeOrchestrator",
    "ChargeOutcome",
    "ChargeResult",
    "BatchRunner",
    "SettlementOutcome",
    "SettlementSummary",
    "UserSettlementResult",
    "WeeklyCloser",
    "ExpiryChecker",
    "ExpiryCheckResult",
    "SettlementService",
    "WeekStatus",
]
