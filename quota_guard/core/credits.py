"""
Credit wallet operations exposed to schedulers and payment integrations.

Every operation is keyed: recurring grants by scope, feature and period
start; checkout top-ups by the payment session; manual top-ups and
consumptions by a caller-supplied key. Re-invoking with the same key adds
nothing.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from .amounts import Amount, ZERO, to_decimal
from .decision import DenialReason
from .entitlements import FeatureEntitlement, PlanCatalog
from .period import UsagePeriod, UsageWindow, get_window
from .scope import Scope, ScopeKind, ScopeKey
from quota_guard.storage import credit_repository
from quota_guard.storage.db import LedgerStore, format_ts, to_utc, utc_now
from quota_guard.storage.models import CreditEntryType, CreditLedgerEntry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CreditOperation:
    """Outcome of a credit wallet operation.

    ``applied`` is False both for rejections (``reason`` set) and for
    idempotent repeats (``reason`` is None, ``entry`` is None).
    """
    applied: bool
    key: ScopeKey
    amount: Decimal
    balance: Decimal
    entry: Optional[CreditLedgerEntry] = None
    reason: Optional[DenialReason] = None
    message: str = ""


def _grant_window(feature: Optional[FeatureEntitlement], now: datetime) -> UsageWindow:
    # standing quotas still receive credits on a monthly cadence
    period = feature.period if feature and feature.period else UsagePeriod.MONTHLY
    return get_window(period, now)


def _positive(amount: Amount, what: str) -> Decimal:
    value = to_decimal(amount)
    if value <= 0:
        raise ValueError(f"{what} must be > 0, got {value}")
    return value


def _require_valid(key: ScopeKey) -> None:
    error = key.validation_error()
    if error:
        raise ValueError(f"Invalid scope: {error}")


def recurring_grant_key(key: ScopeKey, period_start: datetime) -> str:
    scope = key.scope
    return (
        f"grant:{scope.kind.value}:{scope.agency_id}:{scope.sub_account_id or 'null'}:"
        f"{key.feature_key}:{format_ts(period_start)}"
    )


def grant_recurring_credits_for_agency(
    store: LedgerStore,
    catalog: PlanCatalog,
    agency_id: str,
    plan_id: str,
    now: Optional[datetime] = None
) -> int:
    """Top up every credit-enabled feature of a plan, once per billing period.

    Agency-metered features are granted to the agency; sub-account-metered
    features to each of the agency's sub-accounts. All grants for one call
    commit together.

    Args:
        store: Storage handle
        catalog: Plan configuration
        agency_id: Agency whose wallets receive the grant
        plan_id: Plan whose recurring grants apply
        now: Reference time selecting the billing period

    Returns:
        Number of new ledger entries (0 when the period was already granted)
    """
    now = to_utc(now) if now else utc_now()
    features = [
        f for f in catalog.plan_features(plan_id).values()
        if f.is_enabled and f.credit_enabled and f.recurring_credit_grant > 0
    ]
    if not features:
        logger.debug("Plan %s has no recurring credit grants", plan_id)
        return 0

    sub_accounts = catalog.sub_account_ids(agency_id)
    granted = 0
    with store.transaction() as conn:
        for feature in features:
            window = _grant_window(feature, now)
            expires_at = window.period_end if feature.credit_expires else None

            if feature.metering_scope is ScopeKind.SUBACCOUNT:
                targets: List[Scope] = [Scope.sub_account(agency_id, s) for s in sub_accounts]
            else:
                targets = [Scope.agency(agency_id)]

            for scope in targets:
                key = scope.key(feature.feature_key)
                entry = credit_repository.apply_delta(
                    conn,
                    key,
                    CreditEntryType.GRANT,
                    feature.recurring_credit_grant,
                    recurring_grant_key(key, window.period_start),
                    now,
                    reason="Recurring credit grant",
                    window=window,
                    expires_at=expires_at,
                )
                if entry is not None:
                    granted += 1

    logger.info("Granted recurring credits to %d wallet(s) of agency %s", granted, agency_id)
    return granted


def _top_up(
    store: LedgerStore,
    catalog: PlanCatalog,
    key: ScopeKey,
    credits: Decimal,
    idempotency_key: str,
    reason: str,
    now: datetime
) -> CreditOperation:
    feature = catalog.feature(key.feature_key)
    window = _grant_window(feature, now)
    expires_at = window.period_end if feature and feature.credit_expires else None

    with store.transaction() as conn:
        entry = credit_repository.apply_delta(
            conn,
            key,
            CreditEntryType.TOPUP,
            credits,
            idempotency_key,
            now,
            reason=reason,
            window=window,
            expires_at=expires_at,
        )
        balance = credit_repository.available_credits(conn, key, now)

    return CreditOperation(
        applied=entry is not None,
        key=key,
        amount=credits,
        balance=balance,
        entry=entry,
    )


def apply_top_up_credits_from_checkout(
    store: LedgerStore,
    catalog: PlanCatalog,
    scope: Scope,
    feature_key: str,
    credits: Amount,
    payment_session_id: str,
    now: Optional[datetime] = None
) -> CreditOperation:
    """Credit a wallet for a completed payment.

    Invoked once per completed checkout; the payment session id is the
    idempotency key, so duplicate webhook deliveries add nothing.

    Raises:
        ValueError: If the scope is malformed, credits are not positive, or
            the payment session id is blank
    """
    if not payment_session_id or not payment_session_id.strip():
        raise ValueError("payment_session_id is required and cannot be empty")
    key = scope.key(feature_key)
    _require_valid(key)
    amount = _positive(credits, "credits")
    now = to_utc(now) if now else utc_now()
    return _top_up(
        store, catalog, key, amount, f"topup:{payment_session_id}", "Credit top-up", now
    )


def topup_credits(
    store: LedgerStore,
    catalog: PlanCatalog,
    scope: Scope,
    feature_key: str,
    credits: Amount,
    idempotency_key: str,
    reason: Optional[str] = None,
    now: Optional[datetime] = None
) -> CreditOperation:
    """Manual top-up for internal and admin flows."""
    if not idempotency_key or not idempotency_key.strip():
        raise ValueError("idempotency_key is required and cannot be empty")
    key = scope.key(feature_key)
    _require_valid(key)
    amount = _positive(credits, "credits")
    now = to_utc(now) if now else utc_now()
    return _top_up(
        store, catalog, key, amount, idempotency_key, reason or "Manual credit top-up", now
    )


def consume_credits(
    store: LedgerStore,
    scope: Scope,
    feature_key: str,
    amount: Amount,
    idempotency_key: str,
    reason: Optional[str] = None,
    now: Optional[datetime] = None
) -> CreditOperation:
    """Spend credits directly, all-or-nothing.

    Reads the spendable balance (expired wallets count as zero) inside the
    write transaction; a short balance is rejected with no mutation.
    """
    if not idempotency_key or not idempotency_key.strip():
        raise ValueError("idempotency_key is required and cannot be empty")
    key = scope.key(feature_key)
    _require_valid(key)
    value = _positive(amount, "amount")
    now = to_utc(now) if now else utc_now()

    with store.transaction() as conn:
        if credit_repository.get_entry(conn, idempotency_key) is not None:
            balance = credit_repository.available_credits(conn, key, now)
            return CreditOperation(applied=False, key=key, amount=value, balance=balance)

        available = credit_repository.available_credits(conn, key, now)
        if available < value:
            return CreditOperation(
                applied=False,
                key=key,
                amount=value,
                balance=available,
                reason=DenialReason.INSUFFICIENT_CREDITS,
                message=f"Need {value} credits, only {available} available",
            )

        entry = credit_repository.apply_delta(
            conn,
            key,
            CreditEntryType.CONSUME,
            -value,
            idempotency_key,
            now,
            reason=reason or f"Credit consumption for {feature_key}",
        )
        balance = credit_repository.available_credits(conn, key, now)

    return CreditOperation(applied=True, key=key, amount=value, balance=balance, entry=entry)


def ledger_in_balance(store: LedgerStore, scope: Scope, feature_key: str) -> bool:
    """Whether the stored balance equals the sum of its ledger deltas."""
    key = scope.key(feature_key)
    with store.read() as conn:
        balance = credit_repository.get_balance(conn, key)
        total = credit_repository.ledger_total(conn, key)
    stored = balance.balance if balance else ZERO
    return stored == total
