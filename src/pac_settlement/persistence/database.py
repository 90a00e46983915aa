"""
Database Connection Layer

Supports SQLite (dev) and PostgreSQL (production) with automatic schema migration.
"""

import os
import sqlite3
from contextlib import contextmanager
from typing import Optional, Generator, Any, Dict, List
from datetime import datetime, timezone
import threading
import structlog

logger = structlog.get_logger()

# Schema version for migrations
SCHEMA_VERSION = 1

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    email TEXT,
    stripe_customer_id TEXT,
    has_active_payment_method INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

-- One pledge per (user, week); week_end_date is the deadline date
CREATE TABLE IF NOT EXISTS commitments (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    week_end_date TEXT NOT NULL,
    limit_minutes INTEGER NOT NULL,
    penalty_per_minute_cents INTEGER NOT NULL,
    monitoring_status TEXT NOT NULL DEFAULT 'ok',
    monitoring_revoked_at TEXT,
    week_grace_expires_at TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'active',
    created_at TEXT NOT NULL,
    UNIQUE (user_id, week_end_date),
    FOREIGN KEY (user_id) REFERENCES users(id)
);

CREATE TABLE IF NOT EXISTS daily_usage (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    commitment_id TEXT NOT NULL,
    date TEXT NOT NULL,
    used_minutes INTEGER NOT NULL,
    limit_minutes INTEGER NOT NULL,
    exceeded_minutes INTEGER NOT NULL,
    penalty_cents INTEGER NOT NULL,
    is_estimated INTEGER NOT NULL DEFAULT 0,
    reported_at TEXT NOT NULL,
    UNIQUE (user_id, commitment_id, date),
    FOREIGN KEY (commitment_id) REFERENCES commitments(id)
);

CREATE TABLE IF NOT EXISTS user_week_penalties (
    user_id TEXT NOT NULL,
    week_end_date TEXT NOT NULL,
    total_penalty_cents INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'pending',
    settlement_status TEXT NOT NULL DEFAULT 'none',
    charged_amount_cents INTEGER NOT NULL DEFAULT 0,
    charge_payment_intent_id TEXT,
    charge_idempotency_key TEXT,
    charge_attempts INTEGER NOT NULL DEFAULT 0,
    charge_initiated_at TEXT,
    charged_at TEXT,
    needs_reconciliation INTEGER NOT NULL DEFAULT 0,
    reconciliation_delta_cents INTEGER NOT NULL DEFAULT 0,
    reconciliation_reason TEXT,
    reconciliation_detected_at TEXT,
    last_updated TEXT NOT NULL,
    PRIMARY KEY (user_id, week_end_date)
);

CREATE TABLE IF NOT EXISTS weekly_pools (
    week_end_date TEXT PRIMARY KEY,
    total_penalty_cents INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'open',
    created_at TEXT NOT NULL,
    closed_at TEXT
);

-- Append-only audit log of charge attempts
CREATE TABLE IF NOT EXISTS payments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    week_end_date TEXT NOT NULL,
    amount_cents INTEGER NOT NULL,
    currency TEXT NOT NULL,
    provider_intent_id TEXT,
    provider_charge_id TEXT,
    status TEXT NOT NULL,
    provider_error TEXT,
    idempotency_key TEXT,
    charge_type TEXT NOT NULL DEFAULT 'actual',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS rate_limits (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    key TEXT NOT NULL,
    user_id TEXT NOT NULL,
    timestamp TEXT NOT NULL
);

-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

-- Indexes for performance
CREATE INDEX IF NOT EXISTS idx_commitments_week ON commitments(week_end_date);
CREATE INDEX IF NOT EXISTS idx_commitments_status ON commitments(status);
CREATE INDEX IF NOT EXISTS idx_daily_usage_commitment ON daily_usage(commitment_id);
CREATE INDEX IF NOT EXISTS idx_penalties_week_status ON user_week_penalties(week_end_date, status);
CREATE INDEX IF NOT EXISTS idx_payments_intent ON payments(provider_intent_id);
CREATE INDEX IF NOT EXISTS idx_payments_user_week ON payments(user_id, week_end_date);
CREATE INDEX IF NOT EXISTS idx_rate_limits_key ON rate_limits(key, timestamp);
"""

POSTGRES_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    email TEXT,
    stripe_customer_id TEXT,
    has_active_payment_method BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS commitments (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users(id),
    week_end_date TEXT NOT NULL,
    limit_minutes INTEGER NOT NULL,
    penalty_per_minute_cents INTEGER NOT NULL,
    monitoring_status TEXT NOT NULL DEFAULT 'ok',
    monitoring_revoked_at TIMESTAMPTZ,
    week_grace_expires_at TIMESTAMPTZ NOT NULL,
    status TEXT NOT NULL DEFAULT 'active',
    created_at TIMESTAMPTZ NOT NULL,
    UNIQUE (user_id, week_end_date)
);

CREATE TABLE IF NOT EXISTS daily_usage (
    id SERIAL PRIMARY KEY,
    user_id TEXT NOT NULL,
    commitment_id TEXT NOT NULL REFERENCES commitments(id),
    date TEXT NOT NULL,
    used_minutes INTEGER NOT NULL,
    limit_minutes INTEGER NOT NULL,
    exceeded_minutes INTEGER NOT NULL,
    penalty_cents INTEGER NOT NULL,
    is_estimated BOOLEAN NOT NULL DEFAULT FALSE,
    reported_at TIMESTAMPTZ NOT NULL,
    UNIQUE (user_id, commitment_id, date)
);

CREATE TABLE IF NOT EXISTS user_week_penalties (
    user_id TEXT NOT NULL,
    week_end_date TEXT NOT NULL,
    total_penalty_cents INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'pending',
    settlement_status TEXT NOT NULL DEFAULT 'none',
    charged_amount_cents INTEGER NOT NULL DEFAULT 0,
    charge_payment_intent_id TEXT,
    charge_idempotency_key TEXT,
    charge_attempts INTEGER NOT NULL DEFAULT 0,
    charge_initiated_at TIMESTAMPTZ,
    charged_at TIMESTAMPTZ,
    needs_reconciliation BOOLEAN NOT NULL DEFAULT FALSE,
    reconciliation_delta_cents INTEGER NOT NULL DEFAULT 0,
    reconciliation_reason TEXT,
    reconciliation_detected_at TIMESTAMPTZ,
    last_updated TIMESTAMPTZ NOT NULL,
    PRIMARY KEY (user_id, week_end_date)
);

CREATE TABLE IF NOT EXISTS weekly_pools (
    week_end_date TEXT PRIMARY KEY,
    total_penalty_cents INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'open',
    created_at TIMESTAMPTZ NOT NULL,
    closed_at TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS payments (
    id SERIAL PRIMARY KEY,
    user_id TEXT NOT NULL,
    week_end_date TEXT NOT NULL,
    amount_cents INTEGER NOT NULL,
    currency TEXT NOT NULL,
    provider_intent_id TEXT,
    provider_charge_id TEXT,
    status TEXT NOT NULL,
    provider_error TEXT,
    idempotency_key TEXT,
    charge_type TEXT NOT NULL DEFAULT 'actual',
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS rate_limits (
    id SERIAL PRIMARY KEY,
    key TEXT NOT NULL,
    user_id TEXT NOT NULL,
    timestamp TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TIMESTAMPTZ NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_commitments_week ON commitments(week_end_date);
CREATE INDEX IF NOT EXISTS idx_commitments_status ON commitments(status);
CREATE INDEX IF NOT EXISTS idx_daily_usage_commitment ON daily_usage(commitment_id);
CREATE INDEX IF NOT EXISTS idx_penalties_week_status ON user_week_penalties(week_end_date, status);
CREATE INDEX IF NOT EXISTS idx_payments_intent ON payments(provider_intent_id);
CREATE INDEX IF NOT EXISTS idx_payments_user_week ON payments(user_id, week_end_date);
CREATE INDEX IF NOT EXISTS idx_rate_limits_key ON rate_limits(key, timestamp);
"""


class StoreUnavailableError(Exception):
    """Raised when the data store cannot be reached at all."""
    pass


class Transaction:
    """A single connection held open for several statements that commit together."""

    def __init__(self, db: "Database", conn: Any):
        self._db = db
        self._conn = conn

    def execute(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        cursor = self._db._run(self._conn, query, params)
        if cursor.description:
            return [dict(row) for row in cursor.fetchall()]
        return []

    def execute_update(self, query: str, params: tuple = ()) -> int:
        return self._db._run(self._conn, query, params).rowcount

    def execute_many(self, query: str, params_list: List[tuple]) -> int:
        return self._db._run_many(self._conn, query, params_list)


class Database:
    """
    Database connection manager with SQLite and PostgreSQL support.

    Usage:
        db = Database()  # Uses DATABASE_URL env or defaults to SQLite
        with db.connection() as conn:
            conn.execute("SELECT * FROM commitments")

    Queries are written with '?' placeholders; they are translated for
    PostgreSQL at execution time.
    """

    _instance: Optional["Database"] = None
    _lock = threading.Lock()

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or os.environ.get(
            "DATABASE_URL",
            "sqlite:///pac_settlement.db"
        )
        self.is_postgres = self.database_url.startswith("postgres")
        self._local = threading.local()
        self._initialized = False

    @classmethod
    def get_instance(cls, database_url: Optional[str] = None) -> "Database":
        """Get singleton database instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls(database_url)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Drop the singleton (tests and CLI re-configuration)."""
        with cls._lock:
            if cls._instance is not None:
                cls._instance.close()
            cls._instance = None

    def _get_sqlite_path(self) -> str:
        """Extract SQLite file path from URL."""
        if self.database_url.startswith("sqlite:///"):
            return self.database_url[10:]
        return "pac_settlement.db"

    @contextmanager
    def connection(self) -> Generator[Any, None, None]:
        """Get a database connection (thread-safe)."""
        if self.is_postgres:
            yield from self._postgres_connection()
        else:
            yield from self._sqlite_connection()

    def _sqlite_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """SQLite connection with WAL mode for concurrency."""
        if not hasattr(self._local, 'conn') or self._local.conn is None:
            db_path = self._get_sqlite_path()
            try:
                self._local.conn = sqlite3.connect(
                    db_path,
                    check_same_thread=False,
                    timeout=30.0,
                )
            except sqlite3.Error as e:
                raise StoreUnavailableError(f"Cannot open SQLite database {db_path}: {e}") from e
            self._local.conn.row_factory = sqlite3.Row
            # Enable WAL mode for better concurrency
            self._local.conn.execute("PRAGMA journal_mode=WAL")
            self._local.conn.execute("PRAGMA synchronous=NORMAL")
            self._local.conn.execute("PRAGMA foreign_keys=ON")

        try:
            yield self._local.conn
            self._local.conn.commit()
        except Exception:
            self._local.conn.rollback()
            raise

    def _postgres_connection(self) -> Generator[Any, None, None]:
        """PostgreSQL connection, one per unit of work."""
        try:
            import psycopg2
            from psycopg2.extras import RealDictCursor
        except ImportError:
            raise ImportError("psycopg2 required for PostgreSQL. Install with: pip install pac-settlement[postgres]")

        try:
            conn = psycopg2.connect(self.database_url, cursor_factory=RealDictCursor)
        except psycopg2.OperationalError as e:
            raise StoreUnavailableError(f"Cannot connect to PostgreSQL: {e}") from e
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _translate(self, query: str) -> str:
        if self.is_postgres:
            return query.replace("?", "%s")
        return query

    def _run(self, conn: Any, query: str, params: tuple) -> Any:
        if self.is_postgres:
            cursor = conn.cursor()
            cursor.execute(self._translate(query), params)
            return cursor
        return conn.execute(query, params)

    def _run_many(self, conn: Any, query: str, params_list: List[tuple]) -> int:
        if self.is_postgres:
            cursor = conn.cursor()
            cursor.executemany(self._translate(query), params_list)
            return cursor.rowcount
        return conn.executemany(query, params_list).rowcount

    def initialize(self) -> None:
        """Initialize database schema."""
        if self._initialized:
            return

        with self._lock:
            if self._initialized:
                return

            schema = POSTGRES_SCHEMA_SQL if self.is_postgres else SCHEMA_SQL

            with self.connection() as conn:
                if self.is_postgres:
                    cursor = conn.cursor()
                    cursor.execute(schema)
                else:
                    conn.executescript(schema)

                # Record schema version
                now = datetime.now(timezone.utc).isoformat()
                if self.is_postgres:
                    cursor.execute(
                        "INSERT INTO schema_version (version, applied_at) VALUES (%s, %s) ON CONFLICT (version) DO NOTHING",
                        (SCHEMA_VERSION, now)
                    )
                else:
                    conn.execute(
                        "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
                        (SCHEMA_VERSION, now)
                    )

            self._initialized = True
            logger.info("database_initialized", url=self.database_url[:20] + "...", is_postgres=self.is_postgres)

    def execute(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        """Execute a query and return results as list of dicts."""
        with self.connection() as conn:
            cursor = self._run(conn, query, params)
            if cursor.description:
                return [dict(row) for row in cursor.fetchall()]
            return []

    def execute_update(self, query: str, params: tuple = ()) -> int:
        """Execute a write and return the number of affected rows (compare-and-set)."""
        with self.connection() as conn:
            return self._run(conn, query, params).rowcount

    def execute_many(self, query: str, params_list: List[tuple]) -> int:
        """Execute a query with multiple parameter sets."""
        with self.connection() as conn:
            return self._run_many(conn, query, params_list)

    @contextmanager
    def transaction(self) -> Generator[Transaction, None, None]:
        """Run several statements on one connection; all commit or none do."""
        with self.connection() as conn:
            yield Transaction(self, conn)

    def close(self) -> None:
        """Close database connections."""
        if hasattr(self._local, 'conn') and self._local.conn:
            self._local.conn.close()
            self._local.conn = None


def get_database(database_url: Optional[str] = None) -> Database:
    """Get the database singleton instance."""
    db = Database.get_instance(database_url)
    db.initialize()
    return db
