"""
PAC Settlement - Weekly Screen-Time Penalty Settlement

Settles weekly screen-time commitments:
- Worst-case backfill for revoked monitoring
- Idempotent per-user/per-week penalty aggregation
- Exactly-once charge gating shared by two triggers
- Stripe charge-intent orchestration with at-least-once recovery
- Post-charge reconciliation tracking
"""

__version__ = "1.0.0"
