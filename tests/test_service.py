"""
Tests for the SettlementService facade: commitments, usage reports,
week status, reconciliation and webhooks.
"""

from datetime import datetime, timezone

import pytest

from conftest import VALID_SIGNATURE, WEEK, make_webhook_payload
from pac_settlement.billing.stripe_integration import TerminalProviderError, WebhookVerificationError
from pac_settlement.config import SettlementConfig
from pac_settlement.core.states import (
    IntentStatus,
    MonitoringStatus,
    PaymentStatus,
    PenaltyStatus,
    SettlementStatus,
)
from pac_settlement.persistence.repository import DataIntegrityError
from pac_settlement.settlement.reconciliation import ReconciliationError
from pac_settlement.settlement.service import SettlementService

AFTER_DEADLINE = datetime(2025, 1, 13, 13, 0, tzinfo=timezone.utc)


class TestCreateCommitment:
    """Test locking in a weekly pledge."""

    def test_targets_next_deadline(self, service, seed):
        """A commitment made mid-week belongs to the coming deadline."""
        seed.user("u1")

        commitment = service.create_commitment("u1", 60, 10, now=datetime(2025, 1, 8, tzinfo=timezone.utc))

        assert commitment.week_end_date == WEEK
        assert commitment.week_grace_expires_at == "2025-01-14T12:00:00+00:00"
        assert service.pools.get(WEEK).status == "open"

    def test_one_per_week(self, service, seed):
        """A second commitment for the same week is rejected."""
        seed.user("u1")
        now = datetime(2025, 1, 8, tzinfo=timezone.utc)
        service.create_commitment("u1", 60, 10, now=now)

        with pytest.raises(DataIntegrityError):
            service.create_commitment("u1", 30, 5, now=now)

    def test_unknown_user(self, service):
        """Only known users may commit."""
        with pytest.raises(DataIntegrityError):
            service.create_commitment("nobody", 60, 10)


class TestReportDailyUsage:
    """Test usage reporting and the estimate conflict policy."""

    def test_report_computes_penalty(self, service, seed):
        """A report stores the computed daily penalty."""
        commitment = seed.commitment("u1")

        record = service.report_daily_usage("u1", commitment.id, "2025-01-10", 90)

        assert record.penalty_cents == 300
        stored = service.usage.get("u1", commitment.id, "2025-01-10")
        assert stored.exceeded_minutes == 30
        assert not stored.is_estimated

    def test_second_report_replaces_first(self, service, seed):
        """The latest real reading for a day wins."""
        commitment = seed.commitment("u1")
        service.report_daily_usage("u1", commitment.id, "2025-01-10", 90)

        service.report_daily_usage("u1", commitment.id, "2025-01-10", 70)

        assert service.usage.get("u1", commitment.id, "2025-01-10").penalty_cents == 100

    def test_keep_estimate_policy(self, service, seed):
        """By default an estimated day keeps its estimate."""
        commitment = seed.commitment("u1")
        seed.usage_row(commitment, "2025-01-12", 120, estimated=True)

        kept = service.report_daily_usage("u1", commitment.id, "2025-01-12", 30)

        assert kept.is_estimated
        row = service.usage.get("u1", commitment.id, "2025-01-12")
        assert row.is_estimated
        assert row.penalty_cents == 600

    def test_replace_with_report_policy(self, temp_db, config, fake_provider, seed):
        """With replace_with_report the real reading supersedes the estimate."""
        config.estimate_conflict_policy = "replace_with_report"
        service = SettlementService(config=config, db=temp_db, provider=fake_provider)
        commitment = seed.commitment("u1")
        seed.usage_row(commitment, "2025-01-12", 120, estimated=True)

        service.report_daily_usage("u1", commitment.id, "2025-01-12", 30)

        row = service.usage.get("u1", commitment.id, "2025-01-12")
        assert not row.is_estimated
        assert row.penalty_cents == 0

    def test_unknown_policy_rejected(self, temp_db, fake_provider):
        """A misspelled policy fails fast."""
        config = SettlementConfig(database_url=temp_db.database_url, estimate_conflict_policy="newest")

        with pytest.raises(ValueError):
            SettlementService(config=config, db=temp_db, provider=fake_provider)

    def test_other_users_commitment(self, service, seed):
        """Users can only report against their own commitments."""
        commitment = seed.commitment("u1")
        seed.user("u2")

        with pytest.raises(DataIntegrityError):
            service.report_daily_usage("u2", commitment.id, "2025-01-10", 90)

    def test_day_after_week_end_rejected(self, service, seed):
        """Days on or after the deadline date belong to another week."""
        commitment = seed.commitment("u1")

        with pytest.raises(ValueError):
            service.report_daily_usage("u1", commitment.id, WEEK, 90)

    def test_late_report_on_charged_week(self, service, seed):
        """A late report on a charged week flags a reconciliation delta."""
        commitment = seed.commitment("u1")
        service.report_daily_usage("u1", commitment.id, "2025-01-10", 90)
        service.run_weekly_close(now=AFTER_DEADLINE)

        service.report_daily_usage("u1", commitment.id, "2025-01-11", 80)

        status = service.get_week_status("u1", WEEK)
        assert status.total_penalty_cents == 500
        assert status.charged_amount_cents == 300
        assert status.needs_reconciliation
        assert status.reconciliation_delta_cents == 200

        penalty = service.mark_reconciled("u1", WEEK)
        assert penalty.settlement_status is SettlementStatus.CHARGED_ACTUAL_ADJUSTED
        assert penalty.charged_amount_cents == 500
        with pytest.raises(ReconciliationError):
            service.mark_reconciled("u1", WEEK)


class TestMonitoringStatus:
    """Test monitoring permission changes."""

    def test_revoke_stamps_once(self, service, seed):
        """The first revocation timestamp is kept."""
        commitment = seed.commitment("u1")

        first = service.update_monitoring_status(commitment.id, MonitoringStatus.REVOKED)
        second = service.update_monitoring_status(commitment.id, MonitoringStatus.REVOKED)

        assert first.monitoring_status is MonitoringStatus.REVOKED
        assert first.monitoring_revoked_at is not None
        assert second.monitoring_revoked_at == first.monitoring_revoked_at

    def test_other_users_commitment(self, service, seed):
        """A user cannot change someone else's commitment."""
        commitment = seed.commitment("u1")

        with pytest.raises(DataIntegrityError):
            service.update_monitoring_status(commitment.id, MonitoringStatus.REVOKED, user_id="u2")


class TestWeekStatus:
    """Test the read-only projection."""

    def test_running_total_before_aggregation(self, service, seed):
        """Before the week is aggregated the running total is shown."""
        commitment = seed.commitment("u1")
        service.report_daily_usage("u1", commitment.id, "2025-01-10", 90)

        status = service.get_week_status("u1", WEEK)

        assert status.limit_minutes == 60
        assert status.penalty_per_minute_cents == 10
        assert status.total_penalty_cents == 300
        assert status.settlement_status is SettlementStatus.NONE
        assert status.penalty_status is PenaltyStatus.PENDING

    def test_after_charge(self, service, seed):
        """A charged week reports its settlement status."""
        commitment = seed.commitment("u1")
        service.report_daily_usage("u1", commitment.id, "2025-01-10", 90)
        service.run_weekly_close(now=AFTER_DEADLINE)

        data = service.get_week_status("u1", WEEK).to_dict()

        assert data["settlement_status"] == "charged_actual"
        assert data["penalty_status"] == "paid"
        assert data["charged_amount_cents"] == 300

    def test_unknown_week(self, service, seed):
        """A week without a commitment is a data integrity error."""
        seed.user("u1")

        with pytest.raises(DataIntegrityError):
            service.get_week_status("u1", WEEK)


class TestWebhooks:
    """Test asynchronous intent updates."""

    def _charge_requires_action(self, service, seed, fake_provider):
        commitment = seed.commitment("u1")
        service.report_daily_usage("u1", commitment.id, "2025-01-10", 90)
        fake_provider.script.append(IntentStatus.REQUIRES_ACTION)
        service.run_weekly_close(now=AFTER_DEADLINE)
        return service.penalties.get("u1", WEEK).charge_payment_intent_id

    def test_succeeded_event_settles_week(self, service, seed, fake_provider):
        """payment_intent.succeeded marks the waiting week paid."""
        intent_id = self._charge_requires_action(service, seed, fake_provider)
        payload = make_webhook_payload("payment_intent.succeeded", intent_id, "succeeded", amount=300)

        result = service.handle_webhook(payload, VALID_SIGNATURE)

        assert result["processed"]
        assert result["penalty_status"] == "paid"
        penalty = service.penalties.get("u1", WEEK)
        assert penalty.settlement_status is SettlementStatus.CHARGED_ACTUAL
        assert service.payments.get_by_intent(intent_id).status is PaymentStatus.SUCCEEDED

    def test_duplicate_succeeded_event(self, service, seed, fake_provider):
        """A redelivered event changes nothing."""
        intent_id = self._charge_requires_action(service, seed, fake_provider)
        payload = make_webhook_payload("payment_intent.succeeded", intent_id, "succeeded", amount=300)

        service.handle_webhook(payload, VALID_SIGNATURE)
        service.handle_webhook(payload, VALID_SIGNATURE)

        penalty = service.penalties.get("u1", WEEK)
        assert penalty.charged_amount_cents == 300
        assert len(fake_provider.create_calls) == 1

    def test_payment_failed_event(self, service, seed, fake_provider):
        """A failed payment returns the week to pending."""
        intent_id = self._charge_requires_action(service, seed, fake_provider)
        payload = make_webhook_payload(
            "payment_intent.payment_failed", intent_id, "requires_payment_method"
        )

        service.handle_webhook(payload, VALID_SIGNATURE)

        assert service.penalties.get("u1", WEEK).status is PenaltyStatus.PENDING
        assert service.payments.get_by_intent(intent_id).status is PaymentStatus.REQUIRES_PAYMENT_METHOD
        assert not service.users.get("u1").has_active_payment_method

    def test_intent_found_by_metadata(self, service, seed, fake_provider):
        """An intent whose id was never recorded is matched by its metadata."""
        commitment = seed.commitment("u1")
        service.report_daily_usage("u1", commitment.id, "2025-01-10", 90)
        fake_provider.script_lost_response(IntentStatus.SUCCEEDED)
        service.run_weekly_close(now=AFTER_DEADLINE)
        intent_id = next(iter(fake_provider.intents))
        payload = make_webhook_payload(
            "payment_intent.succeeded",
            intent_id,
            "succeeded",
            amount=300,
            metadata=fake_provider.intents[intent_id].metadata,
        )

        result = service.handle_webhook(payload, VALID_SIGNATURE)

        assert result["processed"]
        penalty = service.penalties.get("u1", WEEK)
        assert penalty.status is PenaltyStatus.PAID
        assert penalty.charge_payment_intent_id == intent_id

    def test_previous_attempt_event_ignored(self, service, seed, fake_provider):
        """A late event for an earlier attempt never releases the current claim."""
        commitment = seed.commitment("u1")
        service.report_daily_usage("u1", commitment.id, "2025-01-10", 90)
        fake_provider.script.append(TerminalProviderError("card_declined", intent_id="pi_old"))
        service.run_weekly_close(now=AFTER_DEADLINE)
        seed.user("u1")
        assert service.gate.try_claim("u1", WEEK).allowed
        payload = make_webhook_payload(
            "payment_intent.payment_failed",
            "pi_old",
            "requires_payment_method",
            metadata={"user_id": "u1", "week_end_date": WEEK, "idempotency_key": f"pac-u1-{WEEK}-1"},
        )

        result = service.handle_webhook(payload, VALID_SIGNATURE)

        assert result["processed"] is False
        penalty = service.penalties.get("u1", WEEK)
        assert penalty.status is PenaltyStatus.CHARGE_INITIATED
        assert penalty.charge_idempotency_key == f"pac-u1-{WEEK}-2"
        assert service.users.get("u1").has_active_payment_method

    def test_unknown_intent_acknowledged(self, service):
        """Events for intents this service never created are ignored."""
        payload = make_webhook_payload("payment_intent.succeeded", "pi_other", "succeeded")

        assert service.handle_webhook(payload, VALID_SIGNATURE)["processed"] is False

    def test_unhandled_event_type(self, service):
        """Other event types are acknowledged without action."""
        payload = make_webhook_payload("customer.created", "cus_1", "active")

        result = service.handle_webhook(payload, VALID_SIGNATURE)

        assert result == {"event_type": "customer.created", "processed": False}

    def test_bad_signature(self, service):
        """Unverifiable payloads are rejected."""
        payload = make_webhook_payload("payment_intent.succeeded", "pi_1", "succeeded")

        with pytest.raises(WebhookVerificationError):
            service.handle_webhook(payload, "forged")
