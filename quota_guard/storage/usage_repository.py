"""
Usage tracker and usage event ledger persistence.

All functions take an open connection so they can be composed inside one
transaction by the decision engine. Trackers are keyed on
``(scope, agency_id, sub_account_id, feature_key, period_start)``; events on
their idempotency key.
"""

import logging
import sqlite3
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple, Union

from quota_guard.core.entitlements import OveragePolicy
from quota_guard.core.period import UsageWindow
from quota_guard.core.scope import Scope, ScopeKey
from .db import format_decimal, format_ts, parse_decimal, parse_ts
from .models import UsageEvent, UsageTracker

logger = logging.getLogger(__name__)

_KEY_FILTER = "scope = ? AND agency_id = ? AND sub_account_id = ? AND feature_key = ?"
_SCOPE_FILTER = "scope = ? AND agency_id = ? AND sub_account_id = ?"

_EVENT_COLUMNS = """
    idempotency_key, scope, agency_id, sub_account_id, feature_key, quantity,
    action_key, period_start, period_end, usage_before, max_allowed,
    overage_policy, credits_available, credits_consumed, occurred_at
"""


def _row_to_tracker(row: sqlite3.Row) -> UsageTracker:
    return UsageTracker(
        id=row["id"],
        key=ScopeKey.from_row(row),
        period_start=parse_ts(row["period_start"]),
        period_end=parse_ts(row["period_end"]),
        current_usage=Decimal(row["current_usage"]),
        last_event_at=parse_ts(row["last_event_at"]),
    )


def _row_to_event(row: sqlite3.Row) -> UsageEvent:
    return UsageEvent(
        idempotency_key=row["idempotency_key"],
        key=ScopeKey.from_row(row),
        quantity=Decimal(row["quantity"]),
        action_key=row["action_key"],
        period_start=parse_ts(row["period_start"]),
        period_end=parse_ts(row["period_end"]),
        usage_before=Decimal(row["usage_before"]),
        max_allowed=parse_decimal(row["max_allowed"]),
        overage_policy=OveragePolicy(row["overage_policy"]),
        credits_available=parse_decimal(row["credits_available"]),
        credits_consumed=Decimal(row["credits_consumed"]),
        occurred_at=parse_ts(row["occurred_at"]),
    )


# ---------------------------------------------------------------------------
# Usage tracker
# ---------------------------------------------------------------------------

def get_tracker(
    conn: sqlite3.Connection,
    key: ScopeKey,
    period_start: datetime
) -> Optional[UsageTracker]:
    """Return the tracker for a key and period, or ``None`` if never consumed."""
    row = conn.execute(
        f"SELECT * FROM usage_tracker WHERE {_KEY_FILTER} AND period_start = ?",
        key.storage_columns + (format_ts(period_start),)
    ).fetchone()
    return _row_to_tracker(row) if row else None


def get_or_create_tracker(
    conn: sqlite3.Connection,
    key: ScopeKey,
    window: UsageWindow,
    now: datetime
) -> UsageTracker:
    """Return the tracker for a key and window, creating it at zero if absent.

    The insert tolerates a concurrent creator: whichever insert lands first
    wins and everyone re-reads the single surviving row.
    """
    conn.execute(
        """
        INSERT INTO usage_tracker
        (scope, agency_id, sub_account_id, feature_key, period_start,
         period_end, current_usage, created_at)
        VALUES (?, ?, ?, ?, ?, ?, '0', ?)
        ON CONFLICT (scope, agency_id, sub_account_id, feature_key, period_start)
        DO NOTHING
        """,
        key.storage_columns + (
            format_ts(window.period_start),
            format_ts(window.period_end),
            format_ts(now),
        )
    )
    tracker = get_tracker(conn, key, window.period_start)
    if tracker is None:
        raise sqlite3.IntegrityError(f"usage tracker for {key} vanished after insert")
    return tracker


def add_usage(
    conn: sqlite3.Connection,
    tracker: UsageTracker,
    quantity: Decimal,
    now: datetime
) -> UsageTracker:
    """Increment a tracker and stamp its last event time.

    Must run inside the transaction that records the matching usage event.
    """
    new_usage = tracker.current_usage + quantity
    conn.execute(
        "UPDATE usage_tracker SET current_usage = ?, last_event_at = ? WHERE id = ?",
        (format_decimal(new_usage), format_ts(now), tracker.id)
    )
    return UsageTracker(
        id=tracker.id,
        key=tracker.key,
        period_start=tracker.period_start,
        period_end=tracker.period_end,
        current_usage=new_usage,
        last_event_at=now,
    )


def list_trackers(conn: sqlite3.Connection, key: ScopeKey) -> List[UsageTracker]:
    """All period trackers for a key, newest period first."""
    rows = conn.execute(
        f"SELECT * FROM usage_tracker WHERE {_KEY_FILTER} ORDER BY period_start DESC",
        key.storage_columns
    ).fetchall()
    return [_row_to_tracker(row) for row in rows]


def list_window_trackers(
    conn: sqlite3.Connection,
    scope: Scope,
    window: UsageWindow,
    feature_key: Optional[str] = None
) -> List[UsageTracker]:
    """Trackers of a scope for exactly one window, ordered by feature key.

    Matching on both boundaries keeps a daily tracker that starts on the
    first of the month out of the monthly window.
    """
    query = (
        f"SELECT * FROM usage_tracker WHERE {_SCOPE_FILTER} "
        "AND period_start = ? AND period_end IS ?"
    )
    params: list = list(scope.storage_columns) + [
        format_ts(window.period_start),
        format_ts(window.period_end),
    ]
    if feature_key:
        query += " AND feature_key = ?"
        params.append(feature_key)
    query += " ORDER BY feature_key"

    return [_row_to_tracker(row) for row in conn.execute(query, params).fetchall()]


# ---------------------------------------------------------------------------
# Usage event ledger
# ---------------------------------------------------------------------------

def get_event(conn: sqlite3.Connection, idempotency_key: str) -> Optional[UsageEvent]:
    row = conn.execute(
        f"SELECT {_EVENT_COLUMNS} FROM usage_event WHERE idempotency_key = ?",
        (idempotency_key,)
    ).fetchone()
    return _row_to_event(row) if row else None


def record_event_if_absent(
    conn: sqlite3.Connection,
    event: UsageEvent
) -> Tuple[UsageEvent, bool]:
    """Append an event unless its idempotency key is already recorded.

    This is an append-only ledger: an existing row is returned unchanged and
    never updated.

    Returns:
        The stored event and whether this call created it
    """
    cursor = conn.execute(
        f"""
        INSERT INTO usage_event ({_EVENT_COLUMNS})
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT (idempotency_key) DO NOTHING
        """,
        (event.idempotency_key,) + event.key.storage_columns + (
            format_decimal(event.quantity),
            event.action_key,
            format_ts(event.period_start),
            format_ts(event.period_end),
            format_decimal(event.usage_before),
            format_decimal(event.max_allowed),
            event.overage_policy.value,
            format_decimal(event.credits_available),
            format_decimal(event.credits_consumed),
            format_ts(event.occurred_at),
        )
    )
    if cursor.rowcount == 1:
        return event, True

    logger.debug("Usage event %s already recorded", event.idempotency_key)
    return get_event(conn, event.idempotency_key), False


def list_events(
    conn: sqlite3.Connection,
    target: Union[Scope, ScopeKey],
    window: UsageWindow,
    limit: int = 250
) -> List[UsageEvent]:
    """Events that occurred in ``[period_start, period_end)``, newest first.

    Args:
        conn: Open connection
        target: A ScopeKey for one feature, or a Scope for all its features
        window: Half-open time window to list
        limit: Maximum number of events to return
    """
    if isinstance(target, ScopeKey):
        query = f"SELECT {_EVENT_COLUMNS} FROM usage_event WHERE {_KEY_FILTER}"
    else:
        query = f"SELECT {_EVENT_COLUMNS} FROM usage_event WHERE {_SCOPE_FILTER}"
    params: list = list(target.storage_columns)

    query += " AND occurred_at >= ?"
    params.append(format_ts(window.period_start))
    if window.period_end is not None:
        query += " AND occurred_at < ?"
        params.append(format_ts(window.period_end))

    query += " ORDER BY occurred_at DESC, id DESC LIMIT ?"
    params.append(limit)

    return [_row_to_event(row) for row in conn.execute(query, params).fetchall()]


def sum_event_quantities(
    conn: sqlite3.Connection,
    key: ScopeKey,
    period_start: datetime
) -> Decimal:
    """Total quantity of events counted toward one tracker period."""
    rows = conn.execute(
        f"SELECT quantity FROM usage_event WHERE {_KEY_FILTER} AND period_start = ?",
        key.storage_columns + (format_ts(period_start),)
    ).fetchall()
    return sum((Decimal(row["quantity"]) for row in rows), Decimal("0"))
