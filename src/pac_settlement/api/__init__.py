"""
PAC Settlement - API Module

FastAPI server exposing:
- Commitment and daily usage reporting
- Week status for the client
- Operator-triggered weekly close and expiry check
- Reconciliation resolution
- Stripe webhooks
"""

from .server import app, create_app

__all__ = ["app", "create_app"]
