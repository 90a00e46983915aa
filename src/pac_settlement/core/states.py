"""
Settlement State Model

Closed sets of statuses for every row the orchestrator touches, plus the one
mapping table from provider intent status to internal statuses. Nothing else
in the codebase compares raw provider status strings.
"""

from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet


class MonitoringStatus(Enum):
    """Screen-time monitoring permission reported by the client."""
    OK = "ok"
    REVOKED = "revoked"
    NOT_GRANTED = "not_granted"


class CommitmentStatus(Enum):
    ACTIVE = "active"
    SETTLED = "settled"
    FAILED = "failed"


class PenaltyStatus(Enum):
    """Charge lifecycle of a UserWeekPenalty row."""
    PENDING = "pending"
    CHARGE_INITIATED = "charge_initiated"
    PAID = "paid"
    FAILED = "failed"


class SettlementStatus(Enum):
    """What was charged for the week. Monotonic once a charged_* value is set."""
    NONE = "none"
    CHARGED_WORST_CASE = "charged_worst_case"
    CHARGED_ACTUAL = "charged_actual"
    CHARGED_ACTUAL_ADJUSTED = "charged_actual_adjusted"


class PaymentStatus(Enum):
    """Status of one Payment (charge attempt) row."""
    SUCCEEDED = "succeeded"
    PROCESSING = "processing"
    REQUIRES_ACTION = "requires_action"
    REQUIRES_PAYMENT_METHOD = "requires_payment_method"
    CHARGE_INITIATED = "charge_initiated"
    FAILED = "failed"


class IntentStatus(Enum):
    """Provider charge-intent statuses the orchestrator distinguishes."""
    SUCCEEDED = "succeeded"
    PROCESSING = "processing"
    REQUIRES_ACTION = "requires_action"
    REQUIRES_PAYMENT_METHOD = "requires_payment_method"
    REQUIRES_CONFIRMATION = "requires_confirmation"
    REQUIRES_CAPTURE = "requires_capture"
    CANCELED = "canceled"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, raw: str) -> "IntentStatus":
        try:
            return cls(raw)
        except ValueError:
            return cls.UNKNOWN


class ChargeType(Enum):
    ACTUAL = "actual"
    WORST_CASE = "worst_case"


CHARGED_SETTLEMENT_STATUSES: FrozenSet[SettlementStatus] = frozenset({
    SettlementStatus.CHARGED_WORST_CASE,
    SettlementStatus.CHARGED_ACTUAL,
    SettlementStatus.CHARGED_ACTUAL_ADJUSTED,
})

# Penalty statuses from which the gate may claim a new charge attempt
ATTEMPTABLE_PENALTY_STATUSES: FrozenSet[PenaltyStatus] = frozenset({
    PenaltyStatus.PENDING,
    PenaltyStatus.FAILED,
})

TERMINAL_COMMITMENT_STATUSES: FrozenSet[CommitmentStatus] = frozenset({
    CommitmentStatus.SETTLED,
    CommitmentStatus.FAILED,
})

# Intents that are still open at the provider and must be reused, never re-created
OPEN_INTENT_STATUSES: FrozenSet[IntentStatus] = frozenset({
    IntentStatus.PROCESSING,
    IntentStatus.REQUIRES_ACTION,
})


@dataclass(frozen=True)
class StatusMapping:
    payment_status: PaymentStatus
    penalty_status: PenaltyStatus


INTENT_STATUS_MAP = {
    IntentStatus.SUCCEEDED: StatusMapping(PaymentStatus.SUCCEEDED, PenaltyStatus.PAID),
    IntentStatus.REQUIRES_ACTION: StatusMapping(PaymentStatus.REQUIRES_ACTION, PenaltyStatus.CHARGE_INITIATED),
    IntentStatus.REQUIRES_PAYMENT_METHOD: StatusMapping(
        PaymentStatus.REQUIRES_PAYMENT_METHOD, PenaltyStatus.PENDING
    ),
    IntentStatus.CANCELED: StatusMapping(PaymentStatus.REQUIRES_PAYMENT_METHOD, PenaltyStatus.PENDING),
    IntentStatus.PROCESSING: StatusMapping(PaymentStatus.PROCESSING, PenaltyStatus.CHARGE_INITIATED),
}

_FALLBACK_MAPPING = StatusMapping(PaymentStatus.CHARGE_INITIATED, PenaltyStatus.CHARGE_INITIATED)


def map_intent_status(status: IntentStatus) -> StatusMapping:
    """Map a provider intent status onto (payment status, penalty status)."""
    return INTENT_STATUS_MAP.get(status, _FALLBACK_MAPPING)


def is_charged(settlement_status: SettlementStatus) -> bool:
    return settlement_status in CHARGED_SETTLEMENT_STATUSES
