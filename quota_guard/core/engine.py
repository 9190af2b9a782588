"""
Usage check and consumption.

``check_usage`` is a read-only projection safe to call as a pre-flight.
``consume_usage`` makes the same decision and, only when allowed, commits the
usage event, the tracker increment and any credit consumption in a single
write transaction. The caller's idempotency key makes retries safe: a key
that is already recorded returns the original outcome with no new effect.
``usage_summary`` reports recorded usage per feature for a window next to the
scope's current limits.
"""

import dataclasses
import logging
import sqlite3
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple

from .amounts import Amount, ZERO, to_decimal
from .decision import DenialReason, UsageDecision, deny, evaluate
from .entitlements import EntitlementResolver, FeatureEntitlement
from .period import UsagePeriod, UsageWindow, get_window, get_window_with_offset
from .scope import Scope, ScopeKey
from quota_guard.storage import credit_repository, usage_repository
from quota_guard.storage.db import LedgerStore, to_utc, utc_now
from quota_guard.storage.models import CreditEntryType, UsageEvent

logger = logging.getLogger(__name__)

CONSUME_KEY_PREFIX = "consume:"


def credit_consumption_key(idempotency_key: str) -> str:
    """Ledger key of the credit consumption funding a usage event's overage."""
    return f"{CONSUME_KEY_PREFIX}{idempotency_key}"


def _validate_request(
    key: ScopeKey,
    quantity: Amount
) -> Tuple[Optional[Decimal], Optional[UsageDecision]]:
    error = key.validation_error()
    if error:
        return None, deny(DenialReason.INVALID_SCOPE, ZERO, f"Invalid scope: {error}")
    try:
        amount = to_decimal(quantity)
    except ValueError as e:
        return None, deny(DenialReason.INVALID_QUANTITY, ZERO, str(e))
    if amount <= 0:
        return None, deny(
            DenialReason.INVALID_QUANTITY, amount, f"Quantity must be > 0, got {amount}"
        )
    return amount, None


def _resolve_entitlement(
    resolver: EntitlementResolver,
    key: ScopeKey,
    quantity: Decimal,
    now: datetime
) -> Tuple[Optional[FeatureEntitlement], Optional[UsageDecision]]:
    entitlements = resolver.resolve(key.scope, now)
    if entitlements is None:
        return None, deny(
            DenialReason.NO_SUBSCRIPTION, quantity, f"No active plan for {key.scope}"
        )
    entitlement = entitlements.get(key.feature_key)
    if entitlement is None or not entitlement.is_enabled:
        return None, deny(
            DenialReason.FEATURE_DISABLED,
            quantity,
            f"Feature {key.feature_key} is not enabled on plan {entitlements.plan_id}",
        )
    return entitlement, None


def _replay(event: UsageEvent, key: ScopeKey, quantity: Decimal) -> UsageDecision:
    """Rebuild the decision an already recorded event was admitted with."""
    if event.key != key or event.quantity != quantity:
        logger.warning(
            "Idempotency key %s reused with different arguments "
            "(recorded %s x%s, requested %s x%s); returning recorded outcome",
            event.idempotency_key, event.key, event.quantity, key, quantity,
        )
    funded = event.credits_consumed > 0
    return UsageDecision(
        allowed=True,
        quantity=event.quantity,
        current_usage=event.usage_before,
        next_usage=event.usage_after,
        max_allowed=event.max_allowed,
        overage_policy=event.overage_policy,
        period_start=event.period_start,
        period_end=event.period_end,
        credits_available=event.credits_available,
        credits_required=event.credits_consumed if funded else None,
        credits_consumed=event.credits_consumed,
        replayed=True,
    )


def check_usage(
    store: LedgerStore,
    resolver: EntitlementResolver,
    scope: Scope,
    feature_key: str,
    quantity: Amount,
    now: Optional[datetime] = None
) -> UsageDecision:
    """Decide whether usage would be admitted, without recording anything.

    Never creates a tracker, never writes a ledger and never takes the write
    lock used by ``consume_usage``.

    Args:
        store: Storage handle
        resolver: Source of the scope's entitlements
        scope: Consuming agency or sub-account
        feature_key: Billable feature
        quantity: Requested usage
        now: Reference time (defaults to current UTC time)

    Returns:
        UsageDecision describing the outcome a consumption would have now
    """
    now = to_utc(now) if now else utc_now()
    key = scope.key(feature_key)

    amount, denial = _validate_request(key, quantity)
    if denial:
        return denial

    entitlement, denial = _resolve_entitlement(resolver, key, amount, now)
    if denial:
        return denial

    window = get_window(entitlement.period, now)
    with store.read() as conn:
        tracker = usage_repository.get_tracker(conn, key, window.period_start)
        current = tracker.current_usage if tracker else ZERO
        return evaluate(
            entitlement,
            window,
            current,
            amount,
            lambda: credit_repository.available_credits(conn, key, now),
        )


def consume_usage(
    store: LedgerStore,
    resolver: EntitlementResolver,
    scope: Scope,
    feature_key: str,
    quantity: Amount,
    idempotency_key: str,
    action_key: Optional[str] = None,
    now: Optional[datetime] = None
) -> UsageDecision:
    """Admit and record usage exactly once per idempotency key.

    The entitlement is resolved before the transaction opens. Inside one
    ``BEGIN IMMEDIATE`` transaction the tracker is read, the decision is made
    and, when allowed, the event, the tracker increment and the credit
    consumption for any overage are written together. Rejections write
    nothing.

    Args:
        store: Storage handle
        resolver: Source of the scope's entitlements
        scope: Consuming agency or sub-account
        feature_key: Billable feature
        quantity: Usage to record
        idempotency_key: Caller-supplied key, stable across retries
        action_key: Optional label of the action that consumed usage
        now: Effective time (defaults to current UTC time)

    Returns:
        UsageDecision; ``replayed`` is set when the key was already recorded

    Raises:
        ValueError: If idempotency_key is blank
        sqlite3.Error: On storage failure; retrying with the same key is safe
    """
    if not idempotency_key or not idempotency_key.strip():
        raise ValueError("idempotency_key is required and cannot be empty")

    now = to_utc(now) if now else utc_now()
    key = scope.key(feature_key)

    amount, denial = _validate_request(key, quantity)
    if denial:
        return denial

    with store.read() as conn:
        existing = usage_repository.get_event(conn, idempotency_key)
    if existing:
        return _replay(existing, key, amount)

    entitlement, denial = _resolve_entitlement(resolver, key, amount, now)
    if denial:
        return denial

    window = get_window(entitlement.period, now)
    with store.transaction() as conn:
        # another caller may have committed the same key since the read above
        existing = usage_repository.get_event(conn, idempotency_key)
        if existing:
            return _replay(existing, key, amount)

        tracker = usage_repository.get_tracker(conn, key, window.period_start)
        current = tracker.current_usage if tracker else ZERO
        decision = evaluate(
            entitlement,
            window,
            current,
            amount,
            lambda: credit_repository.available_credits(conn, key, now),
        )
        if not decision.allowed:
            logger.info(
                "Rejected %s x%s for %s: %s", feature_key, amount, scope, decision.reason.value
            )
            return decision

        credits_consumed = decision.credits_required or ZERO
        event = UsageEvent(
            idempotency_key=idempotency_key,
            key=key,
            quantity=amount,
            action_key=action_key,
            period_start=window.period_start,
            period_end=window.period_end,
            usage_before=current,
            max_allowed=decision.max_allowed,
            overage_policy=entitlement.overage_policy,
            credits_available=decision.credits_available,
            credits_consumed=credits_consumed,
            occurred_at=now,
        )
        stored, created = usage_repository.record_event_if_absent(conn, event)
        if not created:
            return _replay(stored, key, amount)

        tracker = usage_repository.get_or_create_tracker(conn, key, window, now)
        usage_repository.add_usage(conn, tracker, amount, now)

        if credits_consumed > 0:
            entry = credit_repository.apply_delta(
                conn,
                key,
                CreditEntryType.CONSUME,
                -credits_consumed,
                credit_consumption_key(idempotency_key),
                now,
                reason=f"Usage overage for {feature_key}",
                window=window,
            )
            if entry is None:
                # rolls back the event and tracker written above
                raise sqlite3.IntegrityError(
                    f"credit entry {credit_consumption_key(idempotency_key)} exists "
                    f"without its usage event"
                )

    logger.info(
        "Recorded %s x%s for %s (usage %s -> %s, credits %s)",
        feature_key, amount, scope, current, decision.next_usage, credits_consumed,
    )
    return dataclasses.replace(decision, credits_consumed=credits_consumed)


@dataclasses.dataclass(frozen=True)
class FeatureUsage:
    """Recorded usage of one feature in a window, next to its current limit."""
    feature_key: str
    current_usage: Decimal
    is_unlimited: bool
    max_allowed: Optional[Decimal]


@dataclasses.dataclass(frozen=True)
class UsageSummary:
    scope: Scope
    period: Optional[UsagePeriod]
    periods_back: int
    window: UsageWindow
    features: List[FeatureUsage]


def usage_summary(
    store: LedgerStore,
    resolver: EntitlementResolver,
    scope: Scope,
    period: Optional[UsagePeriod] = UsagePeriod.MONTHLY,
    periods_back: int = 0,
    feature_key: Optional[str] = None,
    now: Optional[datetime] = None
) -> UsageSummary:
    """Per-feature usage of a scope for the current or an earlier period.

    Only features with a tracker in the window are listed. Limits come from
    the scope's current entitlements; a feature the plan no longer carries
    is reported without a limit.

    Args:
        store: Storage handle
        resolver: Source of the scope's entitlements
        scope: Agency or sub-account to summarise
        period: Window granularity, ``None`` for standing limits
        periods_back: Whole periods before the current one (0 = current)
        feature_key: Restrict the summary to one feature
        now: Reference time (defaults to current UTC time)

    Raises:
        ValueError: If the scope is malformed
    """
    error = scope.validation_error()
    if error:
        raise ValueError(f"Invalid scope: {error}")

    now = to_utc(now) if now else utc_now()
    back = max(0, int(periods_back or 0))
    window = get_window_with_offset(period, back, now)
    entitlements = resolver.resolve(scope, now)

    with store.read() as conn:
        trackers = usage_repository.list_window_trackers(conn, scope, window, feature_key)

    features = []
    for tracker in trackers:
        entitlement = entitlements.get(tracker.key.feature_key) if entitlements else None
        features.append(FeatureUsage(
            feature_key=tracker.key.feature_key,
            current_usage=tracker.current_usage,
            is_unlimited=bool(entitlement and entitlement.is_unlimited),
            max_allowed=entitlement.limit if entitlement else None,
        ))

    return UsageSummary(
        scope=scope,
        period=period,
        periods_back=back,
        window=window,
        features=features,
    )
