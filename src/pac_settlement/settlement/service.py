"""
Settlement Service

One object per process that wires configuration, storage, the payment
provider and every settlement component together, and exposes the
operations the HTTP API and the CLI call.
"""

import uuid
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, Optional

import structlog

from ..billing.penalty import compute_daily_penalty
from ..billing.stripe_integration import PaymentProvider, StripePaymentProvider
from ..config import SettlementConfig
from ..core.rate_limit import SlidingWindowRateLimiter
from ..core.states import (
    MonitoringStatus,
    PenaltyStatus,
    SettlementStatus,
    is_charged,
    map_intent_status,
)
from ..core.timing import WeekCalendar, parse_week
from ..persistence.database import Database, get_database
from ..persistence.models import CommitmentRecord, DailyUsageRecord, UserWeekPenaltyRecord
from ..persistence.repository import (
    CommitmentRepository,
    DailyUsageRepository,
    DataIntegrityError,
    PaymentRepository,
    PenaltyRepository,
    UserRepository,
    WeeklyPoolRepository,
)
from .aggregator import PenaltyAggregator
from .backfill import EstimationBackfiller
from .batch import BatchRunner, SettlementSummary
from .gate import SettlementGate
from .orchestrator import ChargeOrchestrator
from .reconciliation import ReconciliationResult, ReconciliationTracker
from .triggers import ExpiryChecker, ExpiryCheckResult, WeeklyCloser

logger = structlog.get_logger()

KEEP_ESTIMATE = "keep_estimate"
REPLACE_WITH_REPORT = "replace_with_report"
ESTIMATE_CONFLICT_POLICIES = (KEEP_ESTIMATE, REPLACE_WITH_REPORT)

PAYMENT_METHOD_ATTACHED = "payment_method.attached"

HANDLED_WEBHOOK_EVENTS = frozenset({
    "payment_intent.succeeded",
    "payment_intent.payment_failed",
    "payment_intent.requires_action",
    "payment_intent.processing",
    "payment_intent.canceled",
})


@dataclass
class WeekStatus:
    """Read-only projection of a user's week for client display."""
    user_id: str
    week_end_date: str
    limit_minutes: int
    penalty_per_minute_cents: int
    total_penalty_cents: int
    settlement_status: SettlementStatus
    penalty_status: PenaltyStatus
    grace_expires_at: str
    charged_amount_cents: int = 0
    needs_reconciliation: bool = False
    reconciliation_delta_cents: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "week_end_date": self.week_end_date,
            "limit_minutes": self.limit_minutes,
            "penalty_per_minute_cents": self.penalty_per_minute_cents,
            "total_penalty_cents": self.total_penalty_cents,
            "settlement_status": self.settlement_status.value,
            "penalty_status": self.penalty_status.value,
            "grace_expires_at": self.grace_expires_at,
            "charged_amount_cents": self.charged_amount_cents,
            "needs_reconciliation": self.needs_reconciliation,
            "reconciliation_delta_cents": self.reconciliation_delta_cents,
        }


class SettlementService:
    """
    Facade over the settlement subsystem.

    Usage:
        service = SettlementService()
        summary = service.run_weekly_close()
        status = service.get_week_status(user_id, "2025-01-13")
    """

    def __init__(
        self,
        config: Optional[SettlementConfig] = None,
        db: Optional[Database] = None,
        provider: Optional[PaymentProvider] = None,
    ):
        self.config = config or SettlementConfig.from_env()
        if self.config.estimate_conflict_policy not in ESTIMATE_CONFLICT_POLICIES:
            raise ValueError(f"Unknown estimate conflict policy: {self.config.estimate_conflict_policy}")

        self.db = db or get_database(self.config.database_url)
        self.db.initialize()
        self.provider = provider or StripePaymentProvider(
            api_key=self.config.stripe_secret_key,
            webhook_secret=self.config.stripe_webhook_secret,
            timeout_seconds=self.config.provider_timeout_seconds,
        )

        self.users = UserRepository(self.db)
        self.commitments = CommitmentRepository(self.db)
        self.usage = DailyUsageRepository(self.db)
        self.penalties = PenaltyRepository(self.db)
        self.pools = WeeklyPoolRepository(self.db)
        self.payments = PaymentRepository(self.db)

        self.calendar = WeekCalendar(self.config)
        self.reconciliation = ReconciliationTracker(self.penalties)
        self.backfiller = EstimationBackfiller(self.usage, multiplier=self.config.worst_case_usage_multiplier)
        self.aggregator = PenaltyAggregator(
            self.commitments, self.usage, self.penalties, self.pools, self.reconciliation
        )
        self.gate = SettlementGate(self.penalties, self.commitments)
        self.orchestrator = ChargeOrchestrator(
            self.provider,
            self.config,
            users=self.users,
            commitments=self.commitments,
            usage=self.usage,
            penalties=self.penalties,
            payments=self.payments,
        )
        self.batch = BatchRunner(self.gate, self.orchestrator, self.config, self.penalties, self.pools)
        self.weekly_closer = WeeklyCloser(
            self.calendar, self.backfiller, self.aggregator, self.batch, self.commitments
        )
        self.expiry_checker = ExpiryChecker(
            self.backfiller, self.aggregator, self.batch, self.commitments, self.penalties
        )
        self.status_rate_limiter = SlidingWindowRateLimiter(
            "week-status",
            max_requests=self.config.rate_limit_max_requests,
            window_seconds=self.config.rate_limit_window_seconds,
            db=self.db,
        )

    # Triggers

    def run_weekly_close(
        self,
        week_end_date: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> SettlementSummary:
        return self.weekly_closer.run(week_end_date=week_end_date, now=now)

    def run_expiry_check(self, now: Optional[datetime] = None) -> ExpiryCheckResult:
        return self.expiry_checker.run(now=now)

    # Client-facing operations

    def create_commitment(
        self,
        user_id: str,
        limit_minutes: int,
        penalty_per_minute_cents: int,
        now: Optional[datetime] = None,
    ) -> CommitmentRecord:
        """Lock in a pledge for the next weekly deadline and open that week's pool."""
        if limit_minutes < 0 or penalty_per_minute_cents < 0:
            raise ValueError("limit_minutes and penalty_per_minute_cents must be non-negative")
        self.users.require(user_id)

        target = self.calendar.next_deadline(now)
        commitment = CommitmentRecord(
            id=str(uuid.uuid4()),
            user_id=user_id,
            week_end_date=target.week_end_date,
            limit_minutes=limit_minutes,
            penalty_per_minute_cents=penalty_per_minute_cents,
            week_grace_expires_at=target.grace_expires_at.isoformat(),
        )
        self.commitments.create(commitment)
        self.pools.ensure_open(target.week_end_date)
        return commitment

    def report_daily_usage(
        self,
        user_id: str,
        commitment_id: str,
        date_str: str,
        used_minutes: int,
    ) -> DailyUsageRecord:
        """
        Upsert a real usage reading for one day.

        If the day already holds a worst-case estimate, the configured
        estimate conflict policy decides whether the report replaces it.
        """
        commitment = self.commitments.require(commitment_id)
        if commitment.user_id != user_id:
            raise DataIntegrityError(f"Commitment {commitment_id} not found for user {user_id}")
        day = date.fromisoformat(date_str)
        if day >= parse_week(commitment.week_end_date):
            raise ValueError(f"{date_str} is not before the week's deadline {commitment.week_end_date}")

        penalty = compute_daily_penalty(
            used_minutes, commitment.limit_minutes, commitment.penalty_per_minute_cents
        )
        record = DailyUsageRecord(
            user_id=user_id,
            commitment_id=commitment_id,
            date=day.isoformat(),
            used_minutes=penalty.used_minutes,
            limit_minutes=penalty.limit_minutes,
            exceeded_minutes=penalty.exceeded_minutes,
            penalty_cents=penalty.penalty_cents,
            is_estimated=False,
        )

        if not self.usage.insert(record):
            existing = self.usage.get(user_id, commitment_id, record.date)
            if existing is not None and existing.is_estimated:
                if self.config.estimate_conflict_policy == KEEP_ESTIMATE:
                    logger.warning(
                        "estimated_row_conflict",
                        user_id=user_id,
                        commitment_id=commitment_id,
                        date=record.date,
                        estimated_penalty_cents=existing.penalty_cents,
                        reported_penalty_cents=record.penalty_cents,
                    )
                    return existing
                logger.info("estimated_row_replaced", user_id=user_id, commitment_id=commitment_id, date=record.date)
            self.usage.replace(record)

        logger.info(
            "daily_usage_reported",
            user_id=user_id,
            commitment_id=commitment_id,
            date=record.date,
            used_minutes=used_minutes,
            penalty_cents=record.penalty_cents,
        )

        # Late data for an already charged week goes through reconciliation
        penalty_row = self.penalties.get(user_id, commitment.week_end_date)
        if penalty_row is not None and is_charged(penalty_row.settlement_status):
            self.aggregator.aggregate_week(commitment.week_end_date)

        return record

    def update_monitoring_status(
        self,
        commitment_id: str,
        status: MonitoringStatus,
        user_id: Optional[str] = None,
    ) -> CommitmentRecord:
        commitment = self.commitments.require(commitment_id)
        if user_id is not None and commitment.user_id != user_id:
            raise DataIntegrityError(f"Commitment {commitment_id} not found for user {user_id}")
        return self.commitments.update_monitoring_status(commitment_id, status)

    def get_week_status(self, user_id: str, week_end_date: str) -> WeekStatus:
        parse_week(week_end_date)
        commitments = self.commitments.get_for_user_week(user_id, week_end_date)
        if not commitments:
            raise DataIntegrityError(f"No commitment for user {user_id} week {week_end_date}")
        commitment = commitments[0]

        penalty = self.penalties.get(user_id, week_end_date)
        if penalty is None:
            # Not aggregated yet; show the running total
            running = sum(r.penalty_cents for r in self.usage.list_for_commitments([c.id for c in commitments]))
            penalty = UserWeekPenaltyRecord(user_id=user_id, week_end_date=week_end_date, total_penalty_cents=running)

        return WeekStatus(
            user_id=user_id,
            week_end_date=week_end_date,
            limit_minutes=commitment.limit_minutes,
            penalty_per_minute_cents=commitment.penalty_per_minute_cents,
            total_penalty_cents=penalty.total_penalty_cents,
            settlement_status=penalty.settlement_status,
            penalty_status=penalty.status,
            grace_expires_at=commitment.week_grace_expires_at,
            charged_amount_cents=penalty.charged_amount_cents,
            needs_reconciliation=penalty.needs_reconciliation,
            reconciliation_delta_cents=penalty.reconciliation_delta_cents,
        )

    # Reconciliation

    def check_reconciliation(self, user_id: str, week_end_date: str) -> Optional[ReconciliationResult]:
        return self.reconciliation.check(user_id, week_end_date)

    def mark_reconciled(self, user_id: str, week_end_date: str) -> UserWeekPenaltyRecord:
        return self.reconciliation.mark_reconciled(user_id, week_end_date)

    # Provider events

    def handle_webhook(self, payload: bytes, signature: str) -> Dict[str, Any]:
        """
        Apply an asynchronous provider update.

        payment_intent.* events use the same status mapping as a synchronous
        charge, and only ever touch the attempt that created the intent.
        payment_method.attached re-enables charging for a customer whose
        saved method was declined. Events for unknown intents and unhandled
        event types are acknowledged.
        """
        event = self.provider.parse_webhook(payload, signature)

        if event.event_type == PAYMENT_METHOD_ATTACHED and event.customer_id:
            updated = self.users.activate_payment_method_for_customer(event.customer_id)
            return {"event_type": event.event_type, "processed": bool(updated)}

        if event.event_type not in HANDLED_WEBHOOK_EVENTS or event.intent is None:
            logger.info("stripe_webhook_ignored", event_type=event.event_type, event_id=event.event_id)
            return {"event_type": event.event_type, "processed": False}

        intent = event.intent
        attempt_key = intent.metadata.get("idempotency_key")
        penalty = self.penalties.get_by_intent(intent.intent_id)
        if penalty is None and attempt_key and intent.metadata.get("user_id") and intent.metadata.get("week_end_date"):
            # Create succeeded but its outcome was never recorded
            candidate = self.penalties.get(intent.metadata["user_id"], intent.metadata["week_end_date"])
            if (
                candidate is not None
                and candidate.charge_payment_intent_id is None
                and candidate.charge_idempotency_key == attempt_key
            ):
                penalty = candidate

        if penalty is None:
            logger.warning("webhook_intent_unknown", intent_id=intent.intent_id, event_type=event.event_type)
            return {"event_type": event.event_type, "intent_id": intent.intent_id, "processed": False}

        self.orchestrator.record_payment_update(penalty, intent)
        mapping = map_intent_status(intent.status)

        if mapping.penalty_status is PenaltyStatus.PAID or penalty.status is PenaltyStatus.CHARGE_INITIATED:
            self.orchestrator.apply_intent(penalty, intent, idempotency_key=attempt_key)
            penalty_status = self.penalties.require(penalty.user_id, penalty.week_end_date).status.value
        else:
            penalty_status = penalty.status.value

        logger.info(
            "stripe_webhook_applied",
            event_type=event.event_type,
            intent_id=intent.intent_id,
            user_id=penalty.user_id,
            week_end_date=penalty.week_end_date,
            penalty_status=penalty_status,
        )
        return {
            "event_type": event.event_type,
            "intent_id": intent.intent_id,
            "processed": True,
            "user_id": penalty.user_id,
            "week_end_date": penalty.week_end_date,
            "penalty_status": penalty_status,
        }
