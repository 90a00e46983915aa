"""
Settlement Configuration

All knobs are read from the environment once, through SettlementConfig.from_env().
Components accept an explicit config so tests can override any value.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return int(raw)


@dataclass
class SettlementConfig:
    """Configuration for the settlement orchestrator."""
    database_url: str = "sqlite:///pac_settlement.db"
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    currency: str = "usd"

    # Weekly cadence: deadline is <weekday> <hour>:00 in <timezone>
    timezone: str = "America/New_York"
    deadline_weekday: int = 0  # Monday
    deadline_hour: int = 12
    grace_hours: int = 24

    worst_case_usage_multiplier: int = 2
    estimate_conflict_policy: str = "keep_estimate"

    max_workers: int = 4
    provider_timeout_seconds: int = 30
    stale_initiation_seconds: int = 300

    api_key: str = "dev-key-change-in-production"
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    rate_limit_max_requests: int = 30
    rate_limit_window_seconds: int = 60

    @classmethod
    def from_env(cls) -> "SettlementConfig":
        # Test key takes priority over the live key when both are present
        stripe_key = os.environ.get("STRIPE_SECRET_KEY_TEST") or os.environ.get("STRIPE_SECRET_KEY")

        return cls(
            database_url=os.environ.get("DATABASE_URL", cls.database_url),
            stripe_secret_key=stripe_key,
            stripe_webhook_secret=os.environ.get("STRIPE_WEBHOOK_SECRET"),
            currency=os.environ.get("SETTLEMENT_CURRENCY", cls.currency),
            timezone=os.environ.get("SETTLEMENT_TIMEZONE", cls.timezone),
            deadline_weekday=_env_int("SETTLEMENT_DEADLINE_WEEKDAY", cls.deadline_weekday),
            deadline_hour=_env_int("SETTLEMENT_DEADLINE_HOUR", cls.deadline_hour),
            grace_hours=_env_int("SETTLEMENT_GRACE_HOURS", cls.grace_hours),
            worst_case_usage_multiplier=_env_int(
                "WORST_CASE_USAGE_MULTIPLIER", cls.worst_case_usage_multiplier
            ),
            estimate_conflict_policy=os.environ.get(
                "ESTIMATE_CONFLICT_POLICY", cls.estimate_conflict_policy
            ),
            max_workers=_env_int("SETTLEMENT_MAX_WORKERS", cls.max_workers),
            provider_timeout_seconds=_env_int("PROVIDER_TIMEOUT_SECONDS", cls.provider_timeout_seconds),
            stale_initiation_seconds=_env_int("STALE_INITIATION_SECONDS", cls.stale_initiation_seconds),
            api_key=os.environ.get("API_KEY", cls.api_key),
            cors_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
            rate_limit_max_requests=_env_int("RATE_LIMIT_MAX_REQUESTS", cls.rate_limit_max_requests),
            rate_limit_window_seconds=_env_int("RATE_LIMIT_WINDOW_SECONDS", cls.rate_limit_window_seconds),
        )
