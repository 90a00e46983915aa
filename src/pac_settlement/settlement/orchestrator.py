"""
Charge Orchestrator

Drives one charge attempt for a claimed penalty row against the provider's
intent lifecycle and maps the provider outcome onto internal statuses.

The provider call always happens before the internal write. If the process
dies in between, the row is left in charge_initiated with its idempotency
key, and resume() recovers it by retrieving the intent (or by re-issuing the
create under the same key, which the provider deduplicates).
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

import structlog

from ..config import SettlementConfig
from ..core.states import (
    OPEN_INTENT_STATUSES,
    ChargeType,
    IntentStatus,
    PaymentStatus,
    PenaltyStatus,
    SettlementStatus,
    map_intent_status,
)
from ..core.timing import parse_timestamp, utc_now
from ..billing.stripe_integration import (
    IntentResult,
    PaymentProvider,
    PaymentProviderError,
    TerminalProviderError,
    TransientProviderError,
)
from ..persistence.models import PaymentRecord, UserWeekPenaltyRecord
from ..persistence.repository import (
    CommitmentRepository,
    DailyUsageRepository,
    DataIntegrityError,
    PaymentRepository,
    PenaltyRepository,
    UserRepository,
)

logger = structlog.get_logger()


class ChargeOutcome(Enum):
    """What a single attempt achieved, from the batch's point of view."""
    SUCCEEDED = "succeeded"
    REQUIRES_ACTION = "requires_action"
    PROCESSING = "processing"
    REQUIRES_PAYMENT_METHOD = "requires_payment_method"
    FAILED = "failed"
    UNKNOWN = "unknown"  # transient provider error; the intent may exist
    SKIPPED = "skipped"


_OUTCOME_BY_PAYMENT_STATUS = {
    PaymentStatus.SUCCEEDED: ChargeOutcome.SUCCEEDED,
    PaymentStatus.REQUIRES_ACTION: ChargeOutcome.REQUIRES_ACTION,
    PaymentStatus.PROCESSING: ChargeOutcome.PROCESSING,
    PaymentStatus.REQUIRES_PAYMENT_METHOD: ChargeOutcome.REQUIRES_PAYMENT_METHOD,
    PaymentStatus.CHARGE_INITIATED: ChargeOutcome.PROCESSING,
    PaymentStatus.FAILED: ChargeOutcome.FAILED,
}


@dataclass
class ChargeResult:
    """Outcome of one charge attempt or recovery."""
    user_id: str
    week_end_date: str
    outcome: ChargeOutcome
    amount_cents: int = 0
    intent_id: Optional[str] = None
    payment_status: Optional[PaymentStatus] = None
    penalty_status: Optional[PenaltyStatus] = None
    charge_type: Optional[ChargeType] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "week_end_date": self.week_end_date,
            "outcome": self.outcome.value,
            "amount_cents": self.amount_cents,
            "intent_id": self.intent_id,
            "payment_status": self.payment_status.value if self.payment_status else None,
            "penalty_status": self.penalty_status.value if self.penalty_status else None,
            "charge_type": self.charge_type.value if self.charge_type else None,
            "error": self.error,
        }


class ChargeOrchestrator:
    """Create, confirm and record a weekly penalty charge."""

    def __init__(
        self,
        provider: PaymentProvider,
        config: Optional[SettlementConfig] = None,
        users: Optional[UserRepository] = None,
        commitments: Optional[CommitmentRepository] = None,
        usage: Optional[DailyUsageRepository] = None,
        penalties: Optional[PenaltyRepository] = None,
        payments: Optional[PaymentRepository] = None,
    ):
        self.provider = provider
        self.config = config or SettlementConfig.from_env()
        self.users = users or UserRepository()
        self.commitments = commitments or CommitmentRepository()
        self.usage = usage or DailyUsageRepository()
        self.penalties = penalties or PenaltyRepository()
        self.payments = payments or PaymentRepository()

    def charge_type_for(self, user_id: str, week_end_date: str) -> ChargeType:
        """worst_case if any day of the week was estimated."""
        commitment_ids = [c.id for c in self.commitments.get_for_user_week(user_id, week_end_date)]
        return ChargeType.WORST_CASE if self.usage.has_estimated(commitment_ids) else ChargeType.ACTUAL

    def _release(self, penalty: UserWeekPenaltyRecord, status: PenaltyStatus) -> None:
        self.penalties.release_claim(
            penalty.user_id, penalty.week_end_date, penalty.charge_idempotency_key, status
        )

    def _skip(
        self,
        penalty: UserWeekPenaltyRecord,
        prior_status: PenaltyStatus,
        reason: str,
        release: bool = True,
    ) -> ChargeResult:
        if release:
            self._release(penalty, prior_status)
        logger.warning(
            "charge_skipped",
            user_id=penalty.user_id,
            week_end_date=penalty.week_end_date,
            reason=reason,
        )
        return ChargeResult(
            user_id=penalty.user_id,
            week_end_date=penalty.week_end_date,
            outcome=ChargeOutcome.SKIPPED,
            amount_cents=penalty.total_penalty_cents,
            penalty_status=prior_status,
            error=reason,
        )

    def charge(
        self,
        penalty: UserWeekPenaltyRecord,
        prior_status: PenaltyStatus = PenaltyStatus.PENDING,
    ) -> ChargeResult:
        """
        Charge a row the gate has just claimed.

        A user without a usable saved payment method is skipped and the claim
        released, leaving the row as it was.
        """
        if penalty.status is not PenaltyStatus.CHARGE_INITIATED or not penalty.charge_idempotency_key:
            raise ValueError("charge() requires a row claimed by the settlement gate")

        user = self.users.get(penalty.user_id)
        if user is None:
            self._release(penalty, prior_status)
            raise DataIntegrityError(f"User {penalty.user_id} not found")

        if not user.stripe_customer_id or not user.has_active_payment_method:
            return self._skip(penalty, prior_status, "No provider customer or active payment method")

        try:
            payment_method_id = self.provider.get_default_payment_method(user.stripe_customer_id)
        except PaymentProviderError as e:
            # Nothing was charged yet, so the row can go straight back
            self._release(penalty, prior_status)
            return ChargeResult(
                user_id=penalty.user_id,
                week_end_date=penalty.week_end_date,
                outcome=ChargeOutcome.FAILED,
                amount_cents=penalty.total_penalty_cents,
                penalty_status=prior_status,
                error=str(e),
            )

        if not payment_method_id:
            return self._skip(penalty, prior_status, "No saved payment method")

        return self._create_and_apply(penalty, user.stripe_customer_id, payment_method_id)

    def _create_and_apply(
        self,
        penalty: UserWeekPenaltyRecord,
        customer_id: str,
        payment_method_id: str,
    ) -> ChargeResult:
        user_id, week_end_date = penalty.user_id, penalty.week_end_date
        key = penalty.charge_idempotency_key
        amount = penalty.total_penalty_cents
        charge_type = self.charge_type_for(user_id, week_end_date)

        def failed_payment(status: PaymentStatus, error: str, intent_id: Optional[str] = None) -> None:
            self.payments.create(PaymentRecord(
                user_id=user_id,
                week_end_date=week_end_date,
                amount_cents=amount,
                currency=self.config.currency,
                status=status,
                provider_intent_id=intent_id,
                provider_error=error,
                idempotency_key=key,
                charge_type=charge_type,
            ))

        try:
            intent = self.provider.create_charge_intent(
                customer_id=customer_id,
                payment_method_id=payment_method_id,
                amount_cents=amount,
                currency=self.config.currency,
                idempotency_key=key,
                metadata={
                    "user_id": user_id,
                    "week_end_date": week_end_date,
                    "charge_type": charge_type.value,
                    "idempotency_key": key,
                },
                description=f"PAC penalty for week ending {week_end_date}",
            )
        except TransientProviderError as e:
            # Outcome unknown: leave the row in charge_initiated for resume()
            failed_payment(PaymentStatus.CHARGE_INITIATED, str(e))
            logger.error(
                "charge_outcome_unknown",
                user_id=user_id,
                week_end_date=week_end_date,
                idempotency_key=key,
                error=str(e),
            )
            return ChargeResult(
                user_id=user_id,
                week_end_date=week_end_date,
                outcome=ChargeOutcome.UNKNOWN,
                amount_cents=amount,
                payment_status=PaymentStatus.CHARGE_INITIATED,
                penalty_status=PenaltyStatus.CHARGE_INITIATED,
                charge_type=charge_type,
                error=str(e),
            )
        except TerminalProviderError as e:
            failed_payment(PaymentStatus.REQUIRES_PAYMENT_METHOD, str(e), e.intent_id)
            self.penalties.record_outcome(user_id, week_end_date, key, PenaltyStatus.PENDING, e.intent_id)
            self.users.deactivate_payment_method(user_id)
            return ChargeResult(
                user_id=user_id,
                week_end_date=week_end_date,
                outcome=ChargeOutcome.REQUIRES_PAYMENT_METHOD,
                amount_cents=amount,
                intent_id=e.intent_id,
                payment_status=PaymentStatus.REQUIRES_PAYMENT_METHOD,
                penalty_status=PenaltyStatus.PENDING,
                charge_type=charge_type,
                error=str(e),
            )
        except PaymentProviderError as e:
            failed_payment(PaymentStatus.FAILED, str(e))
            self.penalties.record_outcome(user_id, week_end_date, key, PenaltyStatus.FAILED)
            logger.error("charge_failed", user_id=user_id, week_end_date=week_end_date, error=str(e))
            return ChargeResult(
                user_id=user_id,
                week_end_date=week_end_date,
                outcome=ChargeOutcome.FAILED,
                amount_cents=amount,
                payment_status=PaymentStatus.FAILED,
                penalty_status=PenaltyStatus.FAILED,
                charge_type=charge_type,
                error=str(e),
            )

        mapping = map_intent_status(intent.status)
        self.payments.create(PaymentRecord(
            user_id=user_id,
            week_end_date=week_end_date,
            amount_cents=amount,
            currency=self.config.currency,
            status=mapping.payment_status,
            provider_intent_id=intent.intent_id,
            provider_charge_id=intent.charge_id,
            provider_error=intent.last_error,
            idempotency_key=key,
            charge_type=charge_type,
        ))
        return self.apply_intent(penalty, intent, charge_type)

    def record_payment_update(self, penalty: UserWeekPenaltyRecord, intent: IntentResult) -> None:
        """Bring the payment row for an intent up to date, creating it if the write was lost."""
        mapping = map_intent_status(intent.status)
        updated = self.payments.update_status_by_intent(
            intent.intent_id, mapping.payment_status, intent.last_error, intent.charge_id
        )
        if not updated:
            self.payments.create(PaymentRecord(
                user_id=penalty.user_id,
                week_end_date=penalty.week_end_date,
                amount_cents=intent.amount_cents or penalty.total_penalty_cents,
                currency=self.config.currency,
                status=mapping.payment_status,
                provider_intent_id=intent.intent_id,
                provider_charge_id=intent.charge_id,
                provider_error=intent.last_error,
                idempotency_key=penalty.charge_idempotency_key,
                charge_type=self.charge_type_for(penalty.user_id, penalty.week_end_date),
            ))

    def apply_intent(
        self,
        penalty: UserWeekPenaltyRecord,
        intent: IntentResult,
        charge_type: Optional[ChargeType] = None,
        idempotency_key: Optional[str] = None,
    ) -> ChargeResult:
        """
        Move the penalty row to whatever the intent's status maps to.

        A non-paid outcome only applies to the attempt that created the
        intent: idempotency_key names that attempt and defaults to the row's
        current one.
        """
        user_id, week_end_date = penalty.user_id, penalty.week_end_date
        idempotency_key = idempotency_key or penalty.charge_idempotency_key
        charge_type = charge_type or self.charge_type_for(user_id, week_end_date)
        mapping = map_intent_status(intent.status)

        if mapping.penalty_status is PenaltyStatus.PAID:
            settlement_status = (
                SettlementStatus.CHARGED_WORST_CASE
                if charge_type is ChargeType.WORST_CASE
                else SettlementStatus.CHARGED_ACTUAL
            )
            amount = intent.amount_cents or penalty.total_penalty_cents
            if self.penalties.mark_paid(user_id, week_end_date, settlement_status, amount, intent.intent_id):
                self.commitments.mark_settled(user_id, week_end_date)
                logger.info(
                    "charge_succeeded",
                    user_id=user_id,
                    week_end_date=week_end_date,
                    intent_id=intent.intent_id,
                    amount_cents=amount,
                    settlement_status=settlement_status.value,
                )
            else:
                logger.info("charge_already_recorded", user_id=user_id, intent_id=intent.intent_id)
        else:
            applied = self.penalties.record_outcome(
                user_id,
                week_end_date,
                idempotency_key,
                mapping.penalty_status,
                intent.intent_id,
            )
            if applied and intent.status is IntentStatus.REQUIRES_PAYMENT_METHOD:
                self.users.deactivate_payment_method(user_id)
            logger.info(
                "charge_intent_status",
                user_id=user_id,
                week_end_date=week_end_date,
                intent_id=intent.intent_id,
                intent_status=intent.raw_status,
                penalty_status=mapping.penalty_status.value,
                applied=bool(applied),
            )

        return ChargeResult(
            user_id=user_id,
            week_end_date=week_end_date,
            outcome=_OUTCOME_BY_PAYMENT_STATUS[mapping.payment_status],
            amount_cents=intent.amount_cents or penalty.total_penalty_cents,
            intent_id=intent.intent_id,
            payment_status=mapping.payment_status,
            penalty_status=mapping.penalty_status,
            charge_type=charge_type,
            error=intent.last_error,
        )

    def resume(
        self,
        penalty: UserWeekPenaltyRecord,
        now: Optional[datetime] = None,
    ) -> Optional[ChargeResult]:
        """
        Recover a row left in charge_initiated by an earlier run.

        With a recorded intent the intent is retrieved and re-mapped, never
        re-created. Without one, the create is re-issued under the stored
        idempotency key once the claim is older than the stale threshold.
        Returns None when the row is still fresh and presumably owned by a
        running attempt.
        """
        if penalty.status is not PenaltyStatus.CHARGE_INITIATED:
            return None

        user_id, week_end_date = penalty.user_id, penalty.week_end_date

        if penalty.charge_payment_intent_id:
            try:
                intent = self.provider.retrieve_intent(penalty.charge_payment_intent_id)
            except PaymentProviderError as e:
                return ChargeResult(
                    user_id=user_id,
                    week_end_date=week_end_date,
                    outcome=ChargeOutcome.UNKNOWN,
                    amount_cents=penalty.total_penalty_cents,
                    intent_id=penalty.charge_payment_intent_id,
                    penalty_status=PenaltyStatus.CHARGE_INITIATED,
                    error=str(e),
                )

            mapping = map_intent_status(intent.status)
            stored = self.payments.get_by_intent(intent.intent_id)
            if stored is None or stored.status is not mapping.payment_status:
                self.record_payment_update(penalty, intent)
            if intent.status in OPEN_INTENT_STATUSES:
                logger.info(
                    "charge_still_open",
                    user_id=user_id,
                    intent_id=intent.intent_id,
                    intent_status=intent.raw_status,
                )
            return self.apply_intent(penalty, intent)

        initiated_at = parse_timestamp(penalty.charge_initiated_at)
        now = now or utc_now()
        stale_after = timedelta(seconds=self.config.stale_initiation_seconds)
        if initiated_at is not None and now - initiated_at < stale_after:
            return None

        logger.warning(
            "charge_resumed_without_intent",
            user_id=user_id,
            week_end_date=week_end_date,
            idempotency_key=penalty.charge_idempotency_key,
        )

        user = self.users.get(user_id)
        if user is None:
            raise DataIntegrityError(f"User {user_id} not found")
        if not user.stripe_customer_id or not user.has_active_payment_method:
            # An earlier create may have gone through, so the row stays claimed
            return self._skip(
                penalty,
                PenaltyStatus.CHARGE_INITIATED,
                "No provider customer or active payment method",
                release=False,
            )

        try:
            payment_method_id = self.provider.get_default_payment_method(user.stripe_customer_id)
        except PaymentProviderError as e:
            return ChargeResult(
                user_id=user_id,
                week_end_date=week_end_date,
                outcome=ChargeOutcome.UNKNOWN,
                amount_cents=penalty.total_penalty_cents,
                penalty_status=PenaltyStatus.CHARGE_INITIATED,
                error=str(e),
            )
        if not payment_method_id:
            return self._skip(penalty, PenaltyStatus.CHARGE_INITIATED, "No saved payment method", release=False)

        return self._create_and_apply(penalty, user.stripe_customer_id, payment_method_id)
