"""
Database connection management.

Provides SQLite connections, transactions and schema for the metering ledgers.
"""

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Iterator, Optional

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = "quota_guard.db"

# Fixed width so lexicographic order of stored text equals time order
_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

SCHEMA = """
CREATE TABLE IF NOT EXISTS usage_tracker (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    scope TEXT NOT NULL CHECK (scope IN ('AGENCY', 'SUBACCOUNT')),
    agency_id TEXT NOT NULL,
    sub_account_id TEXT NOT NULL DEFAULT '',
    feature_key TEXT NOT NULL,
    period_start TEXT NOT NULL,
    period_end TEXT,
    current_usage TEXT NOT NULL DEFAULT '0',
    last_event_at TEXT,
    created_at TEXT NOT NULL,
    UNIQUE (scope, agency_id, sub_account_id, feature_key, period_start)
);

CREATE TABLE IF NOT EXISTS usage_event (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    idempotency_key TEXT NOT NULL UNIQUE,
    scope TEXT NOT NULL CHECK (scope IN ('AGENCY', 'SUBACCOUNT')),
    agency_id TEXT NOT NULL,
    sub_account_id TEXT NOT NULL DEFAULT '',
    feature_key TEXT NOT NULL,
    quantity TEXT NOT NULL,
    action_key TEXT,
    period_start TEXT NOT NULL,
    period_end TEXT,
    usage_before TEXT NOT NULL,
    max_allowed TEXT,
    overage_policy TEXT NOT NULL,
    credits_available TEXT,
    credits_consumed TEXT NOT NULL DEFAULT '0',
    occurred_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS ix_usage_event_scope_time
    ON usage_event (scope, agency_id, sub_account_id, feature_key, occurred_at);

CREATE TABLE IF NOT EXISTS credit_balance (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    scope TEXT NOT NULL CHECK (scope IN ('AGENCY', 'SUBACCOUNT')),
    agency_id TEXT NOT NULL,
    sub_account_id TEXT NOT NULL DEFAULT '',
    feature_key TEXT NOT NULL,
    balance TEXT NOT NULL DEFAULT '0',
    expires_at TEXT,
    updated_at TEXT NOT NULL,
    UNIQUE (scope, agency_id, sub_account_id, feature_key)
);

CREATE TABLE IF NOT EXISTS credit_ledger (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    idempotency_key TEXT NOT NULL UNIQUE,
    scope TEXT NOT NULL CHECK (scope IN ('AGENCY', 'SUBACCOUNT')),
    agency_id TEXT NOT NULL,
    sub_account_id TEXT NOT NULL DEFAULT '',
    feature_key TEXT NOT NULL,
    entry_type TEXT NOT NULL CHECK (entry_type IN ('GRANT', 'TOPUP', 'CONSUME', 'EXPIRE')),
    delta TEXT NOT NULL,
    reason TEXT,
    period_start TEXT,
    period_end TEXT,
    occurred_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS ix_credit_ledger_scope
    ON credit_ledger (scope, agency_id, sub_account_id, feature_key);
"""


def get_connection(db_path: str = DEFAULT_DB_PATH, timeout: float = 30.0) -> sqlite3.Connection:
    """Create and return a SQLite connection with explicit transaction control.

    The connection runs in autocommit mode (``isolation_level=None``) so that
    callers decide where transactions begin. WAL journaling lets readers
    proceed while a writer holds the lock.

    Args:
        db_path: Path to SQLite database file
        timeout: Seconds to wait on a locked database before failing

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=timeout, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute(f"PRAGMA busy_timeout = {int(timeout * 1000)}")
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


class LedgerStore:
    """Storage handle passed into every engine operation.

    Holds only the database location; every operation opens its own short
    lived connection, so one handle can be shared by threads and the same
    file can be used by several processes at once.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH, timeout: float = 30.0):
        self.db_path = db_path
        self.timeout = timeout

    def __repr__(self) -> str:
        return f"LedgerStore(db_path={self.db_path!r})"

    def initialize(self) -> None:
        """Create all ledger tables if they don't exist."""
        initialize_schema(self.db_path)

    @contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection for lock-free reads (no write transaction)."""
        conn = get_connection(self.db_path, self.timeout)
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection inside a ``BEGIN IMMEDIATE`` transaction.

        The write lock is taken before the first read so read-modify-write
        sequences are serialized across threads and processes. Commits on
        normal exit; rolls back and re-raises on any exception.
        """
        conn = get_connection(self.db_path, self.timeout)
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the tracker, event, balance and ledger tables if missing.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript(SCHEMA)
    finally:
        conn.close()
    logger.debug("Schema initialized at %s", db_path)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_utc(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_ts(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return to_utc(value).strftime(_TIMESTAMP_FORMAT)


def parse_ts(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.strptime(value, _TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def format_decimal(value: Optional[Decimal]) -> Optional[str]:
    """Render a Decimal as plain positional text (no exponent)."""
    if value is None:
        return None
    return format(value, "f")


def parse_decimal(value: Optional[str]) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(value)
