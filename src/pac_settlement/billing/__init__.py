"""
PAC Settlement - Billing Module

- Daily penalty arithmetic (real and worst-case)
- Stripe charge-intent integration for weekly settlement
"""

from .penalty import DailyPenalty, compute_daily_penalty, worst_case_penalty
from .stripe_integration import (
    PaymentProvider,
    StripePaymentProvider,
    IntentResult,
    WebhookEvent,
    PaymentProviderError,
    TransientProviderError,
    TerminalProviderError,
    WebhookVerificationError,
)

__all__ = [
    "DailyPenalty",
    "compute_daily_penalty",
    "worst_case_penalty",
    "PaymentProvider",
    "StripePaymentProvider",
    "IntentResult",
    "WebhookEvent",
    "PaymentProviderError",
    "TransientProviderError",
    "TerminalProviderError",
    "WebhookVerificationError",
]
