"""
Credit balance and credit ledger persistence.

The ledger is the ground truth; the balance row is a cache maintained in the
same transaction as every ledger append, so ``balance == sum(delta)`` for
each scope and feature at all times.
"""

import logging
import sqlite3
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from quota_guard.core.period import UsageWindow
from quota_guard.core.scope import Scope, ScopeKey
from .db import format_decimal, format_ts, parse_ts
from .models import CreditBalance, CreditEntryType, CreditLedgerEntry

logger = logging.getLogger(__name__)

_KEY_FILTER = "scope = ? AND agency_id = ? AND sub_account_id = ? AND feature_key = ?"


def _row_to_balance(row: sqlite3.Row) -> CreditBalance:
    return CreditBalance(
        id=row["id"],
        key=ScopeKey.from_row(row),
        balance=Decimal(row["balance"]),
        expires_at=parse_ts(row["expires_at"]),
        updated_at=parse_ts(row["updated_at"]),
    )


def _row_to_entry(row: sqlite3.Row) -> CreditLedgerEntry:
    return CreditLedgerEntry(
        idempotency_key=row["idempotency_key"],
        key=ScopeKey.from_row(row),
        entry_type=CreditEntryType(row["entry_type"]),
        delta=Decimal(row["delta"]),
        reason=row["reason"],
        period_start=parse_ts(row["period_start"]),
        period_end=parse_ts(row["period_end"]),
        occurred_at=parse_ts(row["occurred_at"]),
    )


# ---------------------------------------------------------------------------
# Balance
# ---------------------------------------------------------------------------

def get_balance(conn: sqlite3.Connection, key: ScopeKey) -> Optional[CreditBalance]:
    row = conn.execute(
        f"SELECT * FROM credit_balance WHERE {_KEY_FILTER}",
        key.storage_columns
    ).fetchone()
    return _row_to_balance(row) if row else None


def get_or_create_balance(
    conn: sqlite3.Connection,
    key: ScopeKey,
    now: datetime
) -> CreditBalance:
    """Return the wallet for a key, creating an empty one if absent."""
    conn.execute(
        """
        INSERT INTO credit_balance
        (scope, agency_id, sub_account_id, feature_key, balance, updated_at)
        VALUES (?, ?, ?, ?, '0', ?)
        ON CONFLICT (scope, agency_id, sub_account_id, feature_key) DO NOTHING
        """,
        key.storage_columns + (format_ts(now),)
    )
    balance = get_balance(conn, key)
    if balance is None:
        raise sqlite3.IntegrityError(f"credit balance for {key} vanished after insert")
    return balance


def available_credits(conn: sqlite3.Connection, key: ScopeKey, now: datetime) -> Decimal:
    """Spendable credits for a key; missing or expired wallets count as zero."""
    balance = get_balance(conn, key)
    if balance is None:
        return Decimal("0")
    return balance.available(now)


def list_balances(
    conn: sqlite3.Connection,
    scope: Scope,
    now: datetime,
    feature_key: Optional[str] = None
) -> List[CreditBalance]:
    """Non-expired wallets of a scope, ordered by feature key."""
    query = "SELECT * FROM credit_balance WHERE scope = ? AND agency_id = ? AND sub_account_id = ?"
    params: list = list(scope.storage_columns)
    if feature_key:
        query += " AND feature_key = ?"
        params.append(feature_key)
    query += " ORDER BY feature_key"

    balances = [_row_to_balance(row) for row in conn.execute(query, params).fetchall()]
    return [b for b in balances if not b.is_expired(now)]


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

def get_entry(conn: sqlite3.Connection, idempotency_key: str) -> Optional[CreditLedgerEntry]:
    row = conn.execute(
        "SELECT * FROM credit_ledger WHERE idempotency_key = ?",
        (idempotency_key,)
    ).fetchone()
    return _row_to_entry(row) if row else None


def list_entries(
    conn: sqlite3.Connection,
    key: ScopeKey,
    limit: int = 100
) -> List[CreditLedgerEntry]:
    """Ledger entries for a key, newest first."""
    rows = conn.execute(
        f"SELECT * FROM credit_ledger WHERE {_KEY_FILTER} ORDER BY id DESC LIMIT ?",
        key.storage_columns + (limit,)
    ).fetchall()
    return [_row_to_entry(row) for row in rows]


def ledger_total(conn: sqlite3.Connection, key: ScopeKey) -> Decimal:
    """Sum of all ledger deltas for a key, computed in Decimal."""
    rows = conn.execute(
        f"SELECT delta FROM credit_ledger WHERE {_KEY_FILTER}",
        key.storage_columns
    ).fetchall()
    return sum((Decimal(row["delta"]) for row in rows), Decimal("0"))


def _validate_delta(entry_type: CreditEntryType, delta: Decimal) -> None:
    if entry_type.is_credit and delta <= 0:
        raise ValueError(f"{entry_type.value} delta must be positive, got {delta}")
    if not entry_type.is_credit and delta >= 0:
        raise ValueError(f"{entry_type.value} delta must be negative, got {delta}")


def _insert_entry(conn: sqlite3.Connection, entry: CreditLedgerEntry) -> bool:
    cursor = conn.execute(
        """
        INSERT INTO credit_ledger
        (idempotency_key, scope, agency_id, sub_account_id, feature_key,
         entry_type, delta, reason, period_start, period_end, occurred_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT (idempotency_key) DO NOTHING
        """,
        (entry.idempotency_key,) + entry.key.storage_columns + (
            entry.entry_type.value,
            format_decimal(entry.delta),
            entry.reason,
            format_ts(entry.period_start),
            format_ts(entry.period_end),
            format_ts(entry.occurred_at),
        )
    )
    return cursor.rowcount == 1


def _set_balance(
    conn: sqlite3.Connection,
    balance: CreditBalance,
    amount: Decimal,
    expires_at: Optional[datetime],
    now: datetime
) -> CreditBalance:
    conn.execute(
        "UPDATE credit_balance SET balance = ?, expires_at = ?, updated_at = ? WHERE id = ?",
        (format_decimal(amount), format_ts(expires_at), format_ts(now), balance.id)
    )
    return CreditBalance(
        id=balance.id,
        key=balance.key,
        balance=amount,
        expires_at=expires_at,
        updated_at=now,
    )


def _expire_stale_balance(
    conn: sqlite3.Connection,
    balance: CreditBalance,
    now: datetime
) -> CreditBalance:
    """Write off a lapsed balance so a new credit cannot revive it."""
    if not balance.is_expired(now) or balance.balance <= 0:
        return balance

    entry = CreditLedgerEntry(
        idempotency_key=f"expire:{balance.key}:{format_ts(balance.expires_at)}",
        key=balance.key,
        entry_type=CreditEntryType.EXPIRE,
        delta=-balance.balance,
        reason="Credits expired",
        occurred_at=now,
    )
    if not _insert_entry(conn, entry):
        return balance

    logger.info("Expired %s credits for %s", balance.balance, balance.key)
    return _set_balance(conn, balance, Decimal("0"), balance.expires_at, now)


def apply_delta(
    conn: sqlite3.Connection,
    key: ScopeKey,
    entry_type: CreditEntryType,
    delta: Decimal,
    idempotency_key: str,
    now: datetime,
    reason: Optional[str] = None,
    window: Optional[UsageWindow] = None,
    expires_at: Optional[datetime] = None
) -> Optional[CreditLedgerEntry]:
    """Append a ledger entry and move the balance by the same delta.

    Must be called inside a write transaction. An already recorded
    idempotency key makes the call a no-op.

    Args:
        conn: Connection inside an open transaction
        key: Scope and feature of the wallet
        entry_type: GRANT/TOPUP (positive delta) or CONSUME/EXPIRE (negative)
        delta: Signed amount
        idempotency_key: Unique key for this operation
        now: Effective time of the operation
        reason: Human readable reason stored on the entry
        window: Optional period the entry relates to
        expires_at: New expiry for the wallet; ``None`` keeps the current one

    Returns:
        The new ledger entry, or ``None`` if the key was already applied

    Raises:
        ValueError: If the delta sign does not match the entry type
    """
    _validate_delta(entry_type, delta)

    if get_entry(conn, idempotency_key) is not None:
        logger.debug("Credit entry %s already applied", idempotency_key)
        return None

    balance = get_or_create_balance(conn, key, now)
    new_expiry = expires_at if expires_at is not None else balance.expires_at
    if entry_type.is_credit and balance.is_expired(now):
        balance = _expire_stale_balance(conn, balance, now)
        # a lapsed expiry must not apply to credits added after it
        new_expiry = expires_at

    entry = CreditLedgerEntry(
        idempotency_key=idempotency_key,
        key=key,
        entry_type=entry_type,
        delta=delta,
        reason=reason,
        period_start=window.period_start if window else None,
        period_end=window.period_end if window else None,
        occurred_at=now,
    )
    if not _insert_entry(conn, entry):
        return None

    _set_balance(conn, balance, balance.balance + delta, new_expiry, now)
    logger.info("Applied %s %s to %s (%s)", entry_type.value, delta, key, idempotency_key)
    return entry
