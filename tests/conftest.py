"""
Pytest Configuration and Fixtures
"""

import itertools
import json
import os
import sys
import tempfile
import threading
from types import SimpleNamespace
import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), 'src'))

# Set test environment
os.environ["API_KEY"] = "test-key-12345"
os.environ.pop("STRIPE_SECRET_KEY", None)
os.environ.pop("STRIPE_SECRET_KEY_TEST", None)

from pac_settlement.billing.stripe_integration import (
    IntentResult,
    PaymentProvider,
    TransientProviderError,
    WebhookEvent,
    WebhookVerificationError,
)
from pac_settlement.config import SettlementConfig
from pac_settlement.core.states import IntentStatus, MonitoringStatus
from pac_settlement.persistence.database import Database
from pac_settlement.persistence.models import CommitmentRecord, DailyUsageRecord, UserRecord
from pac_settlement.persistence.repository import (
    CommitmentRepository,
    DailyUsageRepository,
    PaymentRepository,
    PenaltyRepository,
    UserRepository,
    WeeklyPoolRepository,
)
from pac_settlement.billing.penalty import compute_daily_penalty

# A Monday; with the test calendar the deadline is 12:00 UTC that day
WEEK = "2025-01-13"
GRACE_EXPIRES_AT = "2025-01-14T12:00:00+00:00"
VALID_SIGNATURE = "t=1,v1=valid"


class _LostResponse:
    """Script entry: the intent is created, but the caller sees a transient error."""

    def __init__(self, status: IntentStatus):
        self.status = status


class FakePaymentProvider(PaymentProvider):
    """
    Scripted in-memory provider.

    Each create call consumes the next script entry (an IntentStatus or an
    exception); when the script is empty, default_status is used. Creates
    are deduplicated by idempotency key, like the real provider.
    """

    def __init__(self):
        self.default_status = IntentStatus.SUCCEEDED
        self.script = []
        self.intents = {}
        self.intents_by_key = {}
        self.create_calls = []
        self.retrieve_calls = []
        self.customers_without_method = set()
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def script_lost_response(self, status: IntentStatus) -> None:
        self.script.append(_LostResponse(status))

    def set_status(self, intent_id: str, status: IntentStatus) -> None:
        intent = self.intents[intent_id]
        intent.status = status
        intent.raw_status = status.value

    def get_default_payment_method(self, customer_id):
        if customer_id in self.customers_without_method:
            return None
        return f"pm_{customer_id}"

    def _new_intent(self, status, amount_cents, metadata):
        intent_id = f"pi_{next(self._ids)}"
        intent = IntentResult(
            intent_id=intent_id,
            status=status,
            amount_cents=amount_cents,
            charge_id=f"ch_{intent_id}" if status is IntentStatus.SUCCEEDED else None,
            raw_status=status.value,
            metadata=dict(metadata or {}),
        )
        self.intents[intent_id] = intent
        return intent

    def create_charge_intent(
        self,
        customer_id,
        payment_method_id,
        amount_cents,
        currency,
        idempotency_key,
        metadata=None,
        description=None,
    ):
        with self._lock:
            self.create_calls.append({
                "customer_id": customer_id,
                "payment_method_id": payment_method_id,
                "amount_cents": amount_cents,
                "currency": currency,
                "idempotency_key": idempotency_key,
                "metadata": dict(metadata or {}),
            })
            if idempotency_key in self.intents_by_key:
                return self.intents[self.intents_by_key[idempotency_key]]

            entry = self.script.pop(0) if self.script else self.default_status
            if isinstance(entry, Exception):
                raise entry
            if isinstance(entry, _LostResponse):
                intent = self._new_intent(entry.status, amount_cents, metadata)
                self.intents_by_key[idempotency_key] = intent.intent_id
                raise TransientProviderError("create_charge_intent outcome unknown: read timed out")

            intent = self._new_intent(entry, amount_cents, metadata)
            self.intents_by_key[idempotency_key] = intent.intent_id
            return intent

    def retrieve_intent(self, intent_id):
        self.retrieve_calls.append(intent_id)
        return self.intents[intent_id]

    def parse_webhook(self, payload, signature):
        if signature != VALID_SIGNATURE:
            raise WebhookVerificationError("Invalid webhook signature")
        event = json.loads(payload)
        obj = event["data"]["object"]
        intent = None
        customer_id = None
        if event["type"].startswith("payment_method."):
            customer_id = obj.get("customer")
        elif event["type"].startswith("payment_intent."):
            intent = IntentResult(
                intent_id=obj["id"],
                status=IntentStatus.parse(obj["status"]),
                amount_cents=obj.get("amount", 0),
                raw_status=obj["status"],
                metadata=obj.get("metadata", {}),
            )
        return WebhookEvent(
            event_id=event["id"], event_type=event["type"], intent=intent, customer_id=customer_id
        )


def make_webhook_payload(event_type, object_id, status, amount=0, metadata=None, customer_id=None) -> bytes:
    obj = {
        "id": object_id,
        "status": status,
        "amount": amount,
        "metadata": metadata or {},
    }
    if customer_id is not None:
        obj["customer"] = customer_id
    return json.dumps({
        "id": f"evt_{object_id}_{status}",
        "type": event_type,
        "data": {"object": obj},
    }).encode()


class Seeder:
    """Insert users, commitments and usage rows directly through the repositories."""

    def __init__(self, db: Database):
        self.users = UserRepository(db)
        self.commitments = CommitmentRepository(db)
        self.usage = DailyUsageRepository(db)

    def user(self, user_id, has_payment_method=True, customer_id=None) -> UserRecord:
        return self.users.upsert(UserRecord(
            id=user_id,
            email=f"{user_id}@example.com",
            stripe_customer_id=customer_id if customer_id is not None else f"cus_{user_id}",
            has_active_payment_method=has_payment_method,
        ))

    def commitment(
        self,
        user_id,
        week=WEEK,
        limit_minutes=60,
        rate_cents=10,
        revoked_at=None,
        grace_expires_at=GRACE_EXPIRES_AT,
    ) -> CommitmentRecord:
        if self.users.get(user_id) is None:
            self.user(user_id)
        return self.commitments.create(CommitmentRecord(
            id=f"c-{user_id}-{week}",
            user_id=user_id,
            week_end_date=week,
            limit_minutes=limit_minutes,
            penalty_per_minute_cents=rate_cents,
            week_grace_expires_at=grace_expires_at,
            monitoring_status=MonitoringStatus.REVOKED if revoked_at else MonitoringStatus.OK,
            monitoring_revoked_at=revoked_at,
        ))

    def usage_row(self, commitment: CommitmentRecord, date, used_minutes, estimated=False) -> DailyUsageRecord:
        penalty = compute_daily_penalty(
            used_minutes, commitment.limit_minutes, commitment.penalty_per_minute_cents
        )
        record = DailyUsageRecord(
            user_id=commitment.user_id,
            commitment_id=commitment.id,
            date=date,
            used_minutes=penalty.used_minutes,
            limit_minutes=penalty.limit_minutes,
            exceeded_minutes=penalty.exceeded_minutes,
            penalty_cents=penalty.penalty_cents,
            is_estimated=estimated,
        )
        self.usage.insert(record)
        return record


@pytest.fixture
def temp_db():
    """Create a temporary file-backed database for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    Database.reset_instance()
    db = Database(f"sqlite:///{db_path}")
    db.initialize()

    yield db

    db.close()
    Database.reset_instance()
    for suffix in ("", "-wal", "-shm"):
        try:
            os.unlink(db_path + suffix)
        except OSError:
            pass


@pytest.fixture
def config(temp_db):
    """Settlement config with a UTC Monday-noon deadline."""
    return SettlementConfig(
        database_url=temp_db.database_url,
        timezone="UTC",
        deadline_weekday=0,
        deadline_hour=12,
        grace_hours=24,
        max_workers=4,
        stale_initiation_seconds=300,
        api_key="test-key-12345",
    )


@pytest.fixture
def fake_provider():
    return FakePaymentProvider()


@pytest.fixture
def seed(temp_db):
    return Seeder(temp_db)


@pytest.fixture
def repos(temp_db):
    """All repositories bound to the temp database."""
    return SimpleNamespace(
        users=UserRepository(temp_db),
        commitments=CommitmentRepository(temp_db),
        usage=DailyUsageRepository(temp_db),
        penalties=PenaltyRepository(temp_db),
        pools=WeeklyPoolRepository(temp_db),
        payments=PaymentRepository(temp_db),
    )


@pytest.fixture
def service(temp_db, config, fake_provider):
    from pac_settlement.settlement.service import SettlementService

    return SettlementService(config=config, db=temp_db, provider=fake_provider)
