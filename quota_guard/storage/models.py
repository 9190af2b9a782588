"""
Data models for storage layer.

Defines the persisted ledger records. Events and ledger entries are
append-only; trackers and balances are mutable aggregates maintained inside
the same transactions that append to the ledgers.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from quota_guard.core.entitlements import OveragePolicy
from quota_guard.core.scope import ScopeKey


class CreditEntryType(Enum):
    """Kinds of balance-affecting operations."""
    GRANT = "GRANT"
    TOPUP = "TOPUP"
    CONSUME = "CONSUME"
    EXPIRE = "EXPIRE"

    @property
    def is_credit(self) -> bool:
        """True for entries that add to the balance."""
        return self in (CreditEntryType.GRANT, CreditEntryType.TOPUP)


@dataclass(frozen=True)
class UsageTracker:
    """Cumulative usage of one feature at one scope within one period."""
    id: int
    key: ScopeKey
    period_start: datetime
    period_end: Optional[datetime]
    current_usage: Decimal
    last_event_at: Optional[datetime]


@dataclass(frozen=True)
class UsageEvent:
    """Immutable record of one accepted consumption.

    Besides the consumed quantity it keeps the decision context
    (usage before, limit, credits) so a retried call with the same
    idempotency key can be answered with the original outcome.
    """
    idempotency_key: str
    key: ScopeKey
    quantity: Decimal
    period_start: datetime
    period_end: Optional[datetime]
    usage_before: Decimal
    overage_policy: OveragePolicy
    occurred_at: datetime
    max_allowed: Optional[Decimal] = None
    credits_available: Optional[Decimal] = None
    credits_consumed: Decimal = Decimal("0")
    action_key: Optional[str] = None

    @property
    def usage_after(self) -> Decimal:
        return self.usage_before + self.quantity


@dataclass(frozen=True)
class CreditBalance:
    """Prepaid wallet for one feature at one scope.

    A materialized cache of the credit ledger; ``balance`` always equals the
    sum of the ledger deltas for the same key.
    """
    id: int
    key: ScopeKey
    balance: Decimal
    expires_at: Optional[datetime]
    updated_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def available(self, now: datetime) -> Decimal:
        """Spendable credits; an expired wallet is worth nothing."""
        if self.is_expired(now):
            return Decimal("0")
        return self.balance


@dataclass(frozen=True)
class CreditLedgerEntry:
    """Immutable balance-affecting operation."""
    idempotency_key: str
    key: ScopeKey
    entry_type: CreditEntryType
    delta: Decimal
    occurred_at: datetime
    reason: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
