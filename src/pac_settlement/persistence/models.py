"""
Data Models for Persistence Layer

Row-shaped records for every settlement table. Status columns are decoded
into the closed enums from core.states at the boundary.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from ..core.states import (
    ChargeType,
    CommitmentStatus,
    MonitoringStatus,
    PaymentStatus,
    PenaltyStatus,
    SettlementStatus,
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class UserRecord:
    """Account row supplied by the identity collaborator."""
    id: str
    email: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    has_active_payment_method: bool = False
    created_at: str = field(default_factory=_now)

    def to_db_tuple(self) -> tuple:
        return (
            self.id,
            self.email,
            self.stripe_customer_id,
            bool(self.has_active_payment_method),
            self.created_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "UserRecord":
        return cls(
            id=row["id"],
            email=row.get("email"),
            stripe_customer_id=row.get("stripe_customer_id"),
            has_active_payment_method=bool(row.get("has_active_payment_method", 0)),
            created_at=str(row["created_at"]),
        )


@dataclass
class CommitmentRecord:
    """One user's pledge for one week."""
    id: str
    user_id: str
    week_end_date: str
    limit_minutes: int
    penalty_per_minute_cents: int
    week_grace_expires_at: str
    monitoring_status: MonitoringStatus = MonitoringStatus.OK
    monitoring_revoked_at: Optional[str] = None
    status: CommitmentStatus = CommitmentStatus.ACTIVE
    created_at: str = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "week_end_date": self.week_end_date,
            "limit_minutes": self.limit_minutes,
            "penalty_per_minute_cents": self.penalty_per_minute_cents,
            "monitoring_status": self.monitoring_status.value,
            "monitoring_revoked_at": self.monitoring_revoked_at,
            "week_grace_expires_at": self.week_grace_expires_at,
            "status": self.status.value,
            "created_at": self.created_at,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.id,
            self.user_id,
            self.week_end_date,
            self.limit_minutes,
            self.penalty_per_minute_cents,
            self.monitoring_status.value,
            self.monitoring_revoked_at,
            self.week_grace_expires_at,
            self.status.value,
            self.created_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "CommitmentRecord":
        revoked_at = row.get("monitoring_revoked_at")
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            week_end_date=row["week_end_date"],
            limit_minutes=row["limit_minutes"],
            penalty_per_minute_cents=row["penalty_per_minute_cents"],
            monitoring_status=MonitoringStatus(row.get("monitoring_status", "ok")),
            monitoring_revoked_at=str(revoked_at) if revoked_at else None,
            week_grace_expires_at=str(row["week_grace_expires_at"]),
            status=CommitmentStatus(row.get("status", "active")),
            created_at=str(row["created_at"]),
        )


@dataclass
class DailyUsageRecord:
    """One (user, commitment, day) usage row, real or estimated."""
    user_id: str
    commitment_id: str
    date: str
    used_minutes: int
    limit_minutes: int
    exceeded_minutes: int
    penalty_cents: int
    is_estimated: bool = False
    reported_at: str = field(default_factory=_now)
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "commitment_id": self.commitment_id,
            "date": self.date,
            "used_minutes": self.used_minutes,
            "limit_minutes": self.limit_minutes,
            "exceeded_minutes": self.exceeded_minutes,
            "penalty_cents": self.penalty_cents,
            "is_estimated": self.is_estimated,
            "reported_at": self.reported_at,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.user_id,
            self.commitment_id,
            self.date,
            self.used_minutes,
            self.limit_minutes,
            self.exceeded_minutes,
            self.penalty_cents,
            bool(self.is_estimated),
            self.reported_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "DailyUsageRecord":
        return cls(
            id=row.get("id"),
            user_id=row["user_id"],
            commitment_id=row["commitment_id"],
            date=row["date"],
            used_minutes=row["used_minutes"],
            limit_minutes=row["limit_minutes"],
            exceeded_minutes=row["exceeded_minutes"],
            penalty_cents=row["penalty_cents"],
            is_estimated=bool(row.get("is_estimated", 0)),
            reported_at=str(row["reported_at"]),
        )


@dataclass
class UserWeekPenaltyRecord:
    """Per-user weekly total and its settlement lifecycle."""
    user_id: str
    week_end_date: str
    total_penalty_cents: int = 0
    status: PenaltyStatus = PenaltyStatus.PENDING
    settlement_status: SettlementStatus = SettlementStatus.NONE
    charged_amount_cents: int = 0
    charge_payment_intent_id: Optional[str] = None
    charge_idempotency_key: Optional[str] = None
    charge_attempts: int = 0
    charge_initiated_at: Optional[str] = None
    charged_at: Optional[str] = None
    needs_reconciliation: bool = False
    reconciliation_delta_cents: int = 0
    reconciliation_reason: Optional[str] = None
    reconciliation_detected_at: Optional[str] = None
    last_updated: str = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "week_end_date": self.week_end_date,
            "total_penalty_cents": self.total_penalty_cents,
            "status": self.status.value,
            "settlement_status": self.settlement_status.value,
            "charged_amount_cents": self.charged_amount_cents,
            "charge_payment_intent_id": self.charge_payment_intent_id,
            "charge_attempts": self.charge_attempts,
            "charged_at": self.charged_at,
            "needs_reconciliation": self.needs_reconciliation,
            "reconciliation_delta_cents": self.reconciliation_delta_cents,
            "reconciliation_reason": self.reconciliation_reason,
            "last_updated": self.last_updated,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "UserWeekPenaltyRecord":
        def _opt(key: str) -> Optional[str]:
            value = row.get(key)
            return str(value) if value is not None else None

        return cls(
            user_id=row["user_id"],
            week_end_date=row["week_end_date"],
            total_penalty_cents=row.get("total_penalty_cents", 0) or 0,
            status=PenaltyStatus(row.get("status", "pending")),
            settlement_status=SettlementStatus(row.get("settlement_status") or "none"),
            charged_amount_cents=row.get("charged_amount_cents", 0) or 0,
            charge_payment_intent_id=row.get("charge_payment_intent_id"),
            charge_idempotency_key=row.get("charge_idempotency_key"),
            charge_attempts=row.get("charge_attempts", 0) or 0,
            charge_initiated_at=_opt("charge_initiated_at"),
            charged_at=_opt("charged_at"),
            needs_reconciliation=bool(row.get("needs_reconciliation", 0)),
            reconciliation_delta_cents=row.get("reconciliation_delta_cents", 0) or 0,
            reconciliation_reason=row.get("reconciliation_reason"),
            reconciliation_detected_at=_opt("reconciliation_detected_at"),
            last_updated=str(row["last_updated"]),
        )


@dataclass
class WeeklyPoolRecord:
    """Cross-user weekly total."""
    week_end_date: str
    total_penalty_cents: int = 0
    status: str = "open"
    created_at: str = field(default_factory=_now)
    closed_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "week_end_date": self.week_end_date,
            "total_penalty_cents": self.total_penalty_cents,
            "status": self.status,
            "created_at": self.created_at,
            "closed_at": self.closed_at,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "WeeklyPoolRecord":
        closed_at = row.get("closed_at")
        return cls(
            week_end_date=row["week_end_date"],
            total_penalty_cents=row.get("total_penalty_cents", 0) or 0,
            status=row.get("status", "open"),
            created_at=str(row["created_at"]),
            closed_at=str(closed_at) if closed_at else None,
        )


@dataclass
class PaymentRecord:
    """One charge attempt (append-only audit row)."""
    user_id: str
    week_end_date: str
    amount_cents: int
    currency: str
    status: PaymentStatus
    provider_intent_id: Optional[str] = None
    provider_charge_id: Optional[str] = None
    provider_error: Optional[str] = None
    idempotency_key: Optional[str] = None
    charge_type: ChargeType = ChargeType.ACTUAL
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "week_end_date": self.week_end_date,
            "amount_cents": self.amount_cents,
            "currency": self.currency,
            "status": self.status.value,
            "provider_intent_id": self.provider_intent_id,
            "provider_charge_id": self.provider_charge_id,
            "provider_error": self.provider_error,
            "charge_type": self.charge_type.value,
            "created_at": self.created_at,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.user_id,
            self.week_end_date,
            self.amount_cents,
            self.currency,
            self.provider_intent_id,
            self.provider_charge_id,
            self.status.value,
            self.provider_error,
            self.idempotency_key,
            self.charge_type.value,
            self.created_at,
            self.updated_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PaymentRecord":
        return cls(
            id=row.get("id"),
            user_id=row["user_id"],
            week_end_date=row["week_end_date"],
            amount_cents=row["amount_cents"],
            currency=row["currency"],
            status=PaymentStatus(row["status"]),
            provider_intent_id=row.get("provider_intent_id"),
            provider_charge_id=row.get("provider_charge_id"),
            provider_error=row.get("provider_error"),
            idempotency_key=row.get("idempotency_key"),
            charge_type=ChargeType(row.get("charge_type") or "actual"),
            created_at=str(row["created_at"]),
            updated_at=str(row["updated_at"]),
        )
