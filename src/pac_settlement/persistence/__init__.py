"""
Persistence Layer for PAC Settlement

Supports SQLite (dev) and PostgreSQL (production).
"""

from .database import Database, StoreUnavailableError, get_database
from .models import (
    UserRecord,
    CommitmentRecord,
    DailyUsageRecord,
    UserWeekPenaltyRecord,
    WeeklyPoolRecord,
    PaymentRecord,
)
from .repository import (
    DataIntegrityError,
    UserRepository,
    CommitmentRepository,
    DailyUsageRepository,
    PenaltyRepository,
    WeeklyPoolRepository,
    PaymentRepository,
)

__all__ = [
    "Database",
    "StoreUnavailableError",
    "get_database",
    "UserRecord",
    "CommitmentRecord",
    "DailyUsageRecord",
    "UserWeekPenaltyRecord",
    "WeeklyPoolRecord",
    "PaymentRecord",
    "DataIntegrityError",
    "UserRepository",
    "CommitmentRepository",
    "DailyUsageRepository",
    "PenaltyRepository",
    "WeeklyPoolRepository",
    "PaymentRepository",
]
