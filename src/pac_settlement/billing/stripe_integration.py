"""
Stripe Integration for PAC Settlement

Drives the provider side of a weekly charge:
- Resolve a customer's saved default payment method
- Create and confirm an off-session PaymentIntent under an idempotency key
- Retrieve an existing PaymentIntent to recover an unknown outcome
- Verify and decode payment_intent.* webhook events

Stripe exceptions are translated into three classes the settlement flow
understands: transient (outcome unknown), terminal (declined, needs a new
payment method) and everything else.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import stripe
import structlog

from ..core.states import IntentStatus

logger = structlog.get_logger()

# Metadata attached to every intent so events can be traced back to a penalty row
METADATA_KEYS = ("user_id", "week_end_date", "charge_type", "idempotency_key")


class PaymentProviderError(Exception):
    """Raised when the payment provider call fails."""
    pass


class TransientProviderError(PaymentProviderError):
    """Network, timeout, rate limit or provider-side failure. The charge may or may not exist."""
    pass


class TerminalProviderError(PaymentProviderError):
    """Explicit decline or unusable payment method."""

    def __init__(self, message: str, intent_id: Optional[str] = None, decline_code: Optional[str] = None):
        super().__init__(message)
        self.intent_id = intent_id
        self.decline_code = decline_code


class WebhookVerificationError(PaymentProviderError):
    """Webhook payload or signature is invalid."""
    pass


@dataclass
class IntentResult:
    """Provider-agnostic view of a charge intent."""
    intent_id: str
    status: IntentStatus
    amount_cents: int
    charge_id: Optional[str] = None
    raw_status: str = ""
    last_error: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "intent_id": self.intent_id,
            "status": self.status.value,
            "amount_cents": self.amount_cents,
            "charge_id": self.charge_id,
            "raw_status": self.raw_status,
            "last_error": self.last_error,
        }


@dataclass
class WebhookEvent:
    """A verified provider event concerning a charge intent."""
    event_id: str
    event_type: str
    intent: Optional[IntentResult] = None
    customer_id: Optional[str] = None  # payment_method.* events


class PaymentProvider(ABC):
    """The operations settlement needs from a payment provider."""

    @abstractmethod
    def get_default_payment_method(self, customer_id: str) -> Optional[str]:
        """Saved payment method to charge off-session, or None."""

    @abstractmethod
    def create_charge_intent(
        self,
        customer_id: str,
        payment_method_id: str,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
        description: Optional[str] = None,
    ) -> IntentResult:
        """Create and confirm a charge intent."""

    @abstractmethod
    def retrieve_intent(self, intent_id: str) -> IntentResult:
        """Current state of an existing charge intent."""

    @abstractmethod
    def parse_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        """Verify a webhook signature and decode the event."""


def _field(obj: Any, key: str) -> Any:
    """Read an optional key from a Stripe object or plain dict."""
    try:
        return obj[key]
    except (KeyError, TypeError):
        return None


def _intent_from_stripe(intent: Any) -> IntentResult:
    raw_status = _field(intent, "status") or ""
    last_error = _field(intent, "last_payment_error")
    metadata = _field(intent, "metadata")
    return IntentResult(
        intent_id=intent["id"],
        status=IntentStatus.parse(raw_status),
        amount_cents=_field(intent, "amount") or 0,
        charge_id=_field(intent, "latest_charge"),
        raw_status=raw_status,
        last_error=_field(last_error, "message") if last_error else None,
        metadata={k: _field(metadata, k) for k in METADATA_KEYS if _field(metadata, k)},
    )


def _error_intent_id(e: Any) -> Optional[str]:
    error = getattr(e, "error", None)
    intent = getattr(error, "payment_intent", None) if error is not None else None
    if not intent:
        return None
    return _field(intent, "id")


class StripePaymentProvider(PaymentProvider):
    """
    PaymentProvider backed by the Stripe API.

    Usage:
        provider = StripePaymentProvider(api_key="sk_test_...")
        pm = provider.get_default_payment_method("cus_123")
        intent = provider.create_charge_intent("cus_123", pm, 300, "usd", "pac-u1-2025-01-13-1")
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        timeout_seconds: int = 30,
        max_network_retries: int = 2,
    ):
        """
        Initialize Stripe integration.

        Args:
            api_key: Stripe secret key
            webhook_secret: Stripe webhook signing secret
            timeout_seconds: Per-request timeout; a timeout is an unknown outcome
            max_network_retries: SDK-level retries (safe because every create is keyed)
        """
        self.api_key = api_key
        self.webhook_secret = webhook_secret

        if self.api_key:
            stripe.api_key = self.api_key
            logger.info("stripe_integration_initialized")
        else:
            logger.warning("stripe_not_configured", api_key_set=False)

        stripe.max_network_retries = max_network_retries
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout_seconds)

    @property
    def is_available(self) -> bool:
        return bool(self.api_key)

    def _translate(self, e: Exception, operation: str, **context: Any) -> PaymentProviderError:
        if isinstance(e, stripe.CardError):
            intent_id = _error_intent_id(e)
            logger.warning(
                "stripe_card_declined",
                operation=operation,
                intent_id=intent_id,
                decline_code=getattr(e, "code", None),
                error=str(e),
                **context,
            )
            return TerminalProviderError(str(e), intent_id=intent_id, decline_code=getattr(e, "code", None))

        if isinstance(e, (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)):
            logger.error("stripe_transient_error", operation=operation, error=str(e), **context)
            return TransientProviderError(f"{operation} outcome unknown: {e}")

        if isinstance(e, stripe.StripeError) and (e.http_status or 0) >= 500:
            logger.error("stripe_transient_error", operation=operation, error=str(e), **context)
            return TransientProviderError(f"{operation} outcome unknown: {e}")

        logger.error("stripe_request_failed", operation=operation, error=str(e), **context)
        return PaymentProviderError(f"{operation} failed: {e}")

    def get_default_payment_method(self, customer_id: str) -> Optional[str]:
        """
        The customer's invoice default, else a legacy default source, else the
        first saved card.
        """
        try:
            customer = stripe.Customer.retrieve(customer_id)
            if _field(customer, "deleted"):
                return None

            invoice_settings = _field(customer, "invoice_settings")
            default_pm = _field(invoice_settings, "default_payment_method") or _field(customer, "default_source")
            if default_pm:
                # Expanded objects carry the id inside
                return default_pm if isinstance(default_pm, str) else _field(default_pm, "id")

            methods = stripe.PaymentMethod.list(customer=customer_id, type="card", limit=1)
            data = _field(methods, "data") or []
            return data[0]["id"] if data else None

        except stripe.StripeError as e:
            raise self._translate(e, "get_default_payment_method", customer_id=customer_id)

    def create_charge_intent(
        self,
        customer_id: str,
        payment_method_id: str,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
        description: Optional[str] = None,
    ) -> IntentResult:
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=currency,
                customer=customer_id,
                payment_method=payment_method_id,
                confirm=True,
                off_session=True,
                description=description,
                metadata=metadata or {},
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            raise self._translate(e, "create_charge_intent", customer_id=customer_id, idempotency_key=idempotency_key)

        result = _intent_from_stripe(intent)
        logger.info(
            "stripe_payment_intent_created",
            intent_id=result.intent_id,
            status=result.raw_status,
            amount_cents=amount_cents,
            idempotency_key=idempotency_key,
        )
        return result

    def retrieve_intent(self, intent_id: str) -> IntentResult:
        try:
            intent = stripe.PaymentIntent.retrieve(intent_id)
        except stripe.StripeError as e:
            raise self._translate(e, "retrieve_intent", intent_id=intent_id)
        return _intent_from_stripe(intent)

    def parse_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        if not self.webhook_secret:
            logger.warning("stripe_webhook_not_configured")
            raise WebhookVerificationError("Webhook secret not configured")

        try:
            event = stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError:
            logger.error("stripe_webhook_signature_invalid")
            raise WebhookVerificationError("Invalid webhook signature")
        except ValueError as e:
            logger.error("stripe_webhook_payload_invalid", error=str(e))
            raise WebhookVerificationError(f"Invalid webhook payload: {e}")

        event_type = event["type"]
        logger.info("stripe_webhook_received", event_type=event_type, event_id=event["id"])

        obj = event["data"]["object"]
        intent = None
        customer_id = None
        if event_type.startswith("payment_intent."):
            intent = _intent_from_stripe(obj)
        elif event_type.startswith("payment_method."):
            customer_id = _field(obj, "customer")
        return WebhookEvent(event_id=event["id"], event_type=event_type, intent=intent, customer_id=customer_id)
