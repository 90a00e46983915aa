"""
Repository Layer for PAC Settlement

Provides queries and conditional updates for all persisted entities. Every
status transition that two triggers could race on is a compare-and-set: the
UPDATE names the status it expects, and the caller checks the row count.
"""

from typing import Any, Iterable, List, Optional
from datetime import datetime, timezone
import structlog

from .database import Database, get_database
from .models import (
    CommitmentRecord,
    DailyUsageRecord,
    PaymentRecord,
    UserRecord,
    UserWeekPenaltyRecord,
    WeeklyPoolRecord,
)
from ..core.states import (
    ATTEMPTABLE_PENALTY_STATUSES,
    CommitmentStatus,
    MonitoringStatus,
    PaymentStatus,
    PenaltyStatus,
    SettlementStatus,
)

logger = structlog.get_logger()


class DataIntegrityError(Exception):
    """A row the settlement flow depends on is missing or inconsistent."""
    pass


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _placeholders(values: Iterable[Any]) -> str:
    return ", ".join("?" for _ in values)


def build_idempotency_key(user_id: str, week_end_date: str, attempt: int) -> str:
    """Provider idempotency key for one charge attempt."""
    return f"pac-{user_id}-{week_end_date}-{attempt}"


class UserRepository:
    """Repository for user account rows."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def upsert(self, user: UserRecord) -> UserRecord:
        self.db.execute(
            """INSERT INTO users (id, email, stripe_customer_id, has_active_payment_method, created_at)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT (id) DO UPDATE SET
                   email = excluded.email,
                   stripe_customer_id = excluded.stripe_customer_id,
                   has_active_payment_method = excluded.has_active_payment_method""",
            user.to_db_tuple()
        )
        return user

    def get(self, user_id: str) -> Optional[UserRecord]:
        results = self.db.execute("SELECT * FROM users WHERE id = ?", (user_id,))
        return UserRecord.from_row(results[0]) if results else None

    def require(self, user_id: str) -> UserRecord:
        """Get a user or raise DataIntegrityError."""
        user = self.get(user_id)
        if user is None:
            raise DataIntegrityError(f"User {user_id} not found")
        return user

    def deactivate_payment_method(self, user_id: str) -> int:
        """The saved method was declined; the user must add a new one before the next charge."""
        updated = self.db.execute_update(
            "UPDATE users SET has_active_payment_method = ? WHERE id = ? AND has_active_payment_method = ?",
            (False, user_id, True)
        )
        if updated:
            logger.warning("payment_method_deactivated", user_id=user_id)
        return updated

    def activate_payment_method_for_customer(self, stripe_customer_id: str) -> int:
        updated = self.db.execute_update(
            "UPDATE users SET has_active_payment_method = ? WHERE stripe_customer_id = ?",
            (True, stripe_customer_id)
        )
        logger.info("payment_method_activated", stripe_customer_id=stripe_customer_id, users=updated)
        return updated


class CommitmentRepository:
    """Repository for weekly commitments."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def create(self, commitment: CommitmentRecord) -> CommitmentRecord:
        """Insert a commitment; one per (user, week)."""
        inserted = self.db.execute_update(
            """INSERT INTO commitments
               (id, user_id, week_end_date, limit_minutes, penalty_per_minute_cents,
                monitoring_status, monitoring_revoked_at, week_grace_expires_at, status, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT (user_id, week_end_date) DO NOTHING""",
            commitment.to_db_tuple()
        )
        if not inserted:
            raise DataIntegrityError(
                f"User {commitment.user_id} already has a commitment for week {commitment.week_end_date}"
            )
        logger.info(
            "commitment_created",
            commitment_id=commitment.id,
            user_id=commitment.user_id,
            week_end_date=commitment.week_end_date,
        )
        return commitment

    def get(self, commitment_id: str) -> Optional[CommitmentRecord]:
        results = self.db.execute("SELECT * FROM commitments WHERE id = ?", (commitment_id,))
        return CommitmentRecord.from_row(results[0]) if results else None

    def require(self, commitment_id: str) -> CommitmentRecord:
        commitment = self.get(commitment_id)
        if commitment is None:
            raise DataIntegrityError(f"Commitment {commitment_id} not found")
        return commitment

    def get_for_user_week(self, user_id: str, week_end_date: str) -> List[CommitmentRecord]:
        results = self.db.execute(
            "SELECT * FROM commitments WHERE user_id = ? AND week_end_date = ?",
            (user_id, week_end_date)
        )
        return [CommitmentRecord.from_row(r) for r in results]

    def list_for_week(self, week_end_date: str) -> List[CommitmentRecord]:
        results = self.db.execute(
            "SELECT * FROM commitments WHERE week_end_date = ? ORDER BY user_id",
            (week_end_date,)
        )
        return [CommitmentRecord.from_row(r) for r in results]

    def list_revoked_for_week(self, week_end_date: str) -> List[CommitmentRecord]:
        results = self.db.execute(
            "SELECT * FROM commitments WHERE week_end_date = ? AND monitoring_status = ?",
            (week_end_date, MonitoringStatus.REVOKED.value)
        )
        return [CommitmentRecord.from_row(r) for r in results]

    def list_grace_expired(self, now: str) -> List[CommitmentRecord]:
        """Active commitments whose grace period ended at or before now."""
        results = self.db.execute(
            """SELECT * FROM commitments
               WHERE status = ? AND week_grace_expires_at <= ?
               ORDER BY week_end_date, user_id""",
            (CommitmentStatus.ACTIVE.value, now)
        )
        return [CommitmentRecord.from_row(r) for r in results]

    def update_monitoring_status(
        self,
        commitment_id: str,
        status: MonitoringStatus,
        revoked_at: Optional[str] = None,
    ) -> CommitmentRecord:
        """
        Set monitoring status. Entering 'revoked' stamps monitoring_revoked_at;
        a commitment that is already revoked keeps its original timestamp.
        """
        commitment = self.require(commitment_id)

        if status is MonitoringStatus.REVOKED:
            if commitment.monitoring_status is not MonitoringStatus.REVOKED:
                self.db.execute(
                    """UPDATE commitments SET monitoring_status = ?, monitoring_revoked_at = ?
                       WHERE id = ?""",
                    (status.value, revoked_at or _now(), commitment_id)
                )
        else:
            self.db.execute(
                "UPDATE commitments SET monitoring_status = ? WHERE id = ?",
                (status.value, commitment_id)
            )

        logger.info(
            "monitoring_status_updated",
            commitment_id=commitment_id,
            old=commitment.monitoring_status.value,
            new=status.value,
        )
        return self.require(commitment_id)

    def mark_settled(self, user_id: str, week_end_date: str) -> int:
        """Move the user's active commitments for the week to 'settled'."""
        return self.db.execute_update(
            """UPDATE commitments SET status = ?
               WHERE user_id = ? AND week_end_date = ? AND status = ?""",
            (CommitmentStatus.SETTLED.value, user_id, week_end_date, CommitmentStatus.ACTIVE.value)
        )


class DailyUsageRepository:
    """Repository for per-day usage rows."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def get(self, user_id: str, commitment_id: str, date: str) -> Optional[DailyUsageRecord]:
        results = self.db.execute(
            "SELECT * FROM daily_usage WHERE user_id = ? AND commitment_id = ? AND date = ?",
            (user_id, commitment_id, date)
        )
        return DailyUsageRecord.from_row(results[0]) if results else None

    def insert(self, record: DailyUsageRecord) -> bool:
        """Insert a row unless one already exists for the day. Returns True if written."""
        inserted = self.db.execute_update(
            """INSERT INTO daily_usage
               (user_id, commitment_id, date, used_minutes, limit_minutes,
                exceeded_minutes, penalty_cents, is_estimated, reported_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT (user_id, commitment_id, date) DO NOTHING""",
            record.to_db_tuple()
        )
        return inserted > 0

    def insert_all(self, records: List[DailyUsageRecord]) -> int:
        """Insert several rows in one transaction; existing days are left untouched."""
        if not records:
            return 0
        written = 0
        with self.db.transaction() as tx:
            for record in records:
                written += tx.execute_update(
                    """INSERT INTO daily_usage
                       (user_id, commitment_id, date, used_minutes, limit_minutes,
                        exceeded_minutes, penalty_cents, is_estimated, reported_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                       ON CONFLICT (user_id, commitment_id, date) DO NOTHING""",
                    record.to_db_tuple()
                )
        return written

    def replace(self, record: DailyUsageRecord) -> int:
        """Overwrite an existing day's row with a new reading."""
        return self.db.execute_update(
            """UPDATE daily_usage SET
                   used_minutes = ?, limit_minutes = ?, exceeded_minutes = ?,
                   penalty_cents = ?, is_estimated = ?, reported_at = ?
               WHERE user_id = ? AND commitment_id = ? AND date = ?""",
            (
                record.used_minutes,
                record.limit_minutes,
                record.exceeded_minutes,
                record.penalty_cents,
                record.is_estimated,
                record.reported_at,
                record.user_id,
                record.commitment_id,
                record.date,
            )
        )

    def list_for_commitments(self, commitment_ids: List[str]) -> List[DailyUsageRecord]:
        if not commitment_ids:
            return []
        results = self.db.execute(
            f"SELECT * FROM daily_usage WHERE commitment_id IN ({_placeholders(commitment_ids)}) ORDER BY date",
            tuple(commitment_ids)
        )
        return [DailyUsageRecord.from_row(r) for r in results]

    def has_estimated(self, commitment_ids: List[str]) -> bool:
        if not commitment_ids:
            return False
        results = self.db.execute(
            f"""SELECT COUNT(*) AS cnt FROM daily_usage
                WHERE commitment_id IN ({_placeholders(commitment_ids)}) AND is_estimated = ?""",
            tuple(commitment_ids) + (True,)
        )
        return bool(results and results[0]["cnt"])


class PenaltyRepository:
    """Repository for per-user weekly penalty rows."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def get(self, user_id: str, week_end_date: str) -> Optional[UserWeekPenaltyRecord]:
        results = self.db.execute(
            "SELECT * FROM user_week_penalties WHERE user_id = ? AND week_end_date = ?",
            (user_id, week_end_date)
        )
        return UserWeekPenaltyRecord.from_row(results[0]) if results else None

    def require(self, user_id: str, week_end_date: str) -> UserWeekPenaltyRecord:
        penalty = self.get(user_id, week_end_date)
        if penalty is None:
            raise DataIntegrityError(f"No penalty row for user {user_id} week {week_end_date}")
        return penalty

    def upsert_total(self, user_id: str, week_end_date: str, total_penalty_cents: int) -> None:
        """
        Write the recomputed weekly total.

        Only the total and last_updated change on conflict; status and
        settlement_status are owned by the charge path and never reset here.
        """
        now = _now()
        self.db.execute(
            """INSERT INTO user_week_penalties
               (user_id, week_end_date, total_penalty_cents, status, settlement_status, last_updated)
               VALUES (?, ?, ?, ?, ?, ?)
               ON CONFLICT (user_id, week_end_date) DO UPDATE SET
                   total_penalty_cents = excluded.total_penalty_cents,
                   last_updated = excluded.last_updated""",
            (
                user_id,
                week_end_date,
                total_penalty_cents,
                PenaltyStatus.PENDING.value,
                SettlementStatus.NONE.value,
                now,
            )
        )

    def list_for_week(self, week_end_date: str) -> List[UserWeekPenaltyRecord]:
        results = self.db.execute(
            "SELECT * FROM user_week_penalties WHERE week_end_date = ? ORDER BY user_id",
            (week_end_date,)
        )
        return [UserWeekPenaltyRecord.from_row(r) for r in results]

    def _list_by_status(
        self,
        week_end_date: str,
        statuses: Iterable[PenaltyStatus],
        user_ids: Optional[List[str]] = None,
    ) -> List[UserWeekPenaltyRecord]:
        status_values = [s.value for s in statuses]
        query = (
            f"""SELECT * FROM user_week_penalties
                WHERE week_end_date = ? AND status IN ({_placeholders(status_values)})
                  AND total_penalty_cents > 0 AND settlement_status = ?"""
        )
        params: tuple = (week_end_date, *status_values, SettlementStatus.NONE.value)
        if user_ids is not None:
            if not user_ids:
                return []
            query += f" AND user_id IN ({_placeholders(user_ids)})"
            params += tuple(user_ids)
        query += " ORDER BY user_id"
        return [UserWeekPenaltyRecord.from_row(r) for r in self.db.execute(query, params)]

    def list_attemptable(
        self, week_end_date: str, user_ids: Optional[List[str]] = None
    ) -> List[UserWeekPenaltyRecord]:
        """Uncharged rows with a balance whose status allows a new attempt."""
        return self._list_by_status(
            week_end_date,
            sorted(ATTEMPTABLE_PENALTY_STATUSES, key=lambda s: s.value),
            user_ids,
        )

    def list_in_flight(
        self, week_end_date: str, user_ids: Optional[List[str]] = None
    ) -> List[UserWeekPenaltyRecord]:
        """Uncharged rows left in charge_initiated by an earlier run."""
        return self._list_by_status(week_end_date, [PenaltyStatus.CHARGE_INITIATED], user_ids)

    def claim(
        self, penalty: UserWeekPenaltyRecord, now: Optional[str] = None
    ) -> Optional[UserWeekPenaltyRecord]:
        """
        Atomically move a row into charge_initiated.

        The UPDATE matches only if the row is still in the status and attempt
        count the caller read, so of two concurrent claimers exactly one wins.
        Returns the claimed row, or None if someone else got there first.
        """
        attempt = penalty.charge_attempts + 1
        key = build_idempotency_key(penalty.user_id, penalty.week_end_date, attempt)
        now = now or _now()
        status_values = [s.value for s in sorted(ATTEMPTABLE_PENALTY_STATUSES, key=lambda s: s.value)]

        updated = self.db.execute_update(
            f"""UPDATE user_week_penalties SET
                    status = ?, charge_attempts = ?, charge_idempotency_key = ?,
                    charge_initiated_at = ?, charge_payment_intent_id = NULL, last_updated = ?
                WHERE user_id = ? AND week_end_date = ?
                  AND status IN ({_placeholders(status_values)})
                  AND charge_attempts = ?
                  AND settlement_status = ?
                  AND total_penalty_cents > 0""",
            (
                PenaltyStatus.CHARGE_INITIATED.value,
                attempt,
                key,
                now,
                now,
                penalty.user_id,
                penalty.week_end_date,
                *status_values,
                penalty.charge_attempts,
                SettlementStatus.NONE.value,
            )
        )
        if not updated:
            return None
        return self.get(penalty.user_id, penalty.week_end_date)

    def release_claim(
        self,
        user_id: str,
        week_end_date: str,
        idempotency_key: str,
        status: PenaltyStatus,
    ) -> int:
        """Hand a claimed row back (no provider call was made)."""
        return self.db.execute_update(
            """UPDATE user_week_penalties SET status = ?, last_updated = ?
               WHERE user_id = ? AND week_end_date = ?
                 AND status = ? AND charge_idempotency_key = ?""",
            (
                status.value,
                _now(),
                user_id,
                week_end_date,
                PenaltyStatus.CHARGE_INITIATED.value,
                idempotency_key,
            )
        )

    def record_outcome(
        self,
        user_id: str,
        week_end_date: str,
        idempotency_key: str,
        status: PenaltyStatus,
        intent_id: Optional[str] = None,
    ) -> int:
        """Apply a non-paid outcome to the attempt identified by its idempotency key."""
        return self.db.execute_update(
            """UPDATE user_week_penalties SET
                   status = ?,
                   charge_payment_intent_id = COALESCE(?, charge_payment_intent_id),
                   last_updated = ?
               WHERE user_id = ? AND week_end_date = ?
                 AND status = ? AND charge_idempotency_key = ?""",
            (
                status.value,
                intent_id,
                _now(),
                user_id,
                week_end_date,
                PenaltyStatus.CHARGE_INITIATED.value,
                idempotency_key,
            )
        )

    def mark_paid(
        self,
        user_id: str,
        week_end_date: str,
        settlement_status: SettlementStatus,
        amount_cents: int,
        intent_id: Optional[str],
        charged_at: Optional[str] = None,
    ) -> int:
        """Record a successful charge. Matches only while the row is still uncharged."""
        now = _now()
        return self.db.execute_update(
            """UPDATE user_week_penalties SET
                   status = ?, settlement_status = ?, charged_amount_cents = ?,
                   charge_payment_intent_id = COALESCE(?, charge_payment_intent_id),
                   charged_at = ?, last_updated = ?
               WHERE user_id = ? AND week_end_date = ? AND settlement_status = ?""",
            (
                PenaltyStatus.PAID.value,
                settlement_status.value,
                amount_cents,
                intent_id,
                charged_at or now,
                now,
                user_id,
                week_end_date,
                SettlementStatus.NONE.value,
            )
        )

    def get_by_intent(self, intent_id: str) -> Optional[UserWeekPenaltyRecord]:
        results = self.db.execute(
            "SELECT * FROM user_week_penalties WHERE charge_payment_intent_id = ?",
            (intent_id,)
        )
        return UserWeekPenaltyRecord.from_row(results[0]) if results else None

    def flag_reconciliation(
        self,
        user_id: str,
        week_end_date: str,
        delta_cents: int,
        reason: str,
    ) -> int:
        now = _now()
        return self.db.execute_update(
            """UPDATE user_week_penalties SET
                   needs_reconciliation = ?, reconciliation_delta_cents = ?,
                   reconciliation_reason = ?, reconciliation_detected_at = ?, last_updated = ?
               WHERE user_id = ? AND week_end_date = ?""",
            (True, delta_cents, reason, now, now, user_id, week_end_date)
        )

    def clear_reconciliation_flag(self, user_id: str, week_end_date: str) -> int:
        """Drop a stale flag once the recomputed total matches the charge again."""
        return self.db.execute_update(
            """UPDATE user_week_penalties SET
                   needs_reconciliation = ?, reconciliation_delta_cents = 0,
                   reconciliation_reason = NULL, last_updated = ?
               WHERE user_id = ? AND week_end_date = ? AND needs_reconciliation = ?""",
            (False, _now(), user_id, week_end_date, True)
        )

    def mark_reconciled(self, user_id: str, week_end_date: str) -> int:
        """Fold the outstanding delta into the charged amount and clear the flag."""
        return self.db.execute_update(
            """UPDATE user_week_penalties SET
                   settlement_status = ?,
                   charged_amount_cents = charged_amount_cents + reconciliation_delta_cents,
                   needs_reconciliation = ?, reconciliation_delta_cents = 0,
                   reconciliation_reason = NULL, last_updated = ?
               WHERE user_id = ? AND week_end_date = ? AND needs_reconciliation = ?""",
            (
                SettlementStatus.CHARGED_ACTUAL_ADJUSTED.value,
                False,
                _now(),
                user_id,
                week_end_date,
                True,
            )
        )


class WeeklyPoolRepository:
    """Repository for the cross-user weekly pool."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def get(self, week_end_date: str) -> Optional[WeeklyPoolRecord]:
        results = self.db.execute(
            "SELECT * FROM weekly_pools WHERE week_end_date = ?",
            (week_end_date,)
        )
        return WeeklyPoolRecord.from_row(results[0]) if results else None

    def ensure_open(self, week_end_date: str) -> None:
        self.db.execute(
            """INSERT INTO weekly_pools (week_end_date, total_penalty_cents, status, created_at)
               VALUES (?, 0, 'open', ?)
               ON CONFLICT (week_end_date) DO NOTHING""",
            (week_end_date, _now())
        )

    def set_total(self, week_end_date: str, total_penalty_cents: int) -> None:
        """Write the recomputed pool total without touching its status."""
        self.db.execute(
            """INSERT INTO weekly_pools (week_end_date, total_penalty_cents, status, created_at)
               VALUES (?, ?, 'open', ?)
               ON CONFLICT (week_end_date) DO UPDATE SET
                   total_penalty_cents = excluded.total_penalty_cents""",
            (week_end_date, total_penalty_cents, _now())
        )

    def close(self, week_end_date: str) -> bool:
        """Close the pool. Returns True only for the call that actually closed it."""
        closed = self.db.execute_update(
            """UPDATE weekly_pools SET status = 'closed', closed_at = ?
               WHERE week_end_date = ? AND status = 'open'""",
            (_now(), week_end_date)
        )
        if closed:
            logger.info("weekly_pool_closed", week_end_date=week_end_date)
        return closed > 0


class PaymentRepository:
    """Repository for the append-only payment attempt log."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def create(self, payment: PaymentRecord) -> PaymentRecord:
        self.db.execute(
            """INSERT INTO payments
               (user_id, week_end_date, amount_cents, currency, provider_intent_id,
                provider_charge_id, status, provider_error, idempotency_key, charge_type,
                created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            payment.to_db_tuple()
        )
        logger.info(
            "payment_recorded",
            user_id=payment.user_id,
            week_end_date=payment.week_end_date,
            status=payment.status.value,
            intent_id=payment.provider_intent_id,
            amount_cents=payment.amount_cents,
        )
        return payment

    def list_for_user_week(self, user_id: str, week_end_date: str) -> List[PaymentRecord]:
        results = self.db.execute(
            """SELECT * FROM payments WHERE user_id = ? AND week_end_date = ?
               ORDER BY id""",
            (user_id, week_end_date)
        )
        return [PaymentRecord.from_row(r) for r in results]

    def get_by_intent(self, intent_id: str) -> Optional[PaymentRecord]:
        results = self.db.execute(
            "SELECT * FROM payments WHERE provider_intent_id = ? ORDER BY id DESC LIMIT 1",
            (intent_id,)
        )
        return PaymentRecord.from_row(results[0]) if results else None

    def update_status_by_intent(
        self,
        intent_id: str,
        status: PaymentStatus,
        provider_error: Optional[str] = None,
        provider_charge_id: Optional[str] = None,
    ) -> int:
        return self.db.execute_update(
            """UPDATE payments SET
                   status = ?,
                   provider_error = COALESCE(?, provider_error),
                   provider_charge_id = COALESCE(?, provider_charge_id),
                   updated_at = ?
               WHERE provider_intent_id = ?""",
            (status.value, provider_error, provider_charge_id, _now(), intent_id)
        )
