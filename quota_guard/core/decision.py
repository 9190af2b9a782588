"""
Usage decisions.

Business outcomes are values, never exceptions: every check or consumption
produces a UsageDecision the caller inspects.

Evaluation Order:
1. Scope and quantity validation
2. Entitlement (active plan, feature enabled)
3. Limit for the active window
4. Credit funding of the overage, all-or-nothing
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Callable, Optional

from .entitlements import FeatureEntitlement, OveragePolicy
from .period import UsageWindow


class DenialReason(Enum):
    """Why a usage request was not admitted."""
    NO_SUBSCRIPTION = "NO_SUBSCRIPTION"
    FEATURE_DISABLED = "FEATURE_DISABLED"
    LIMIT_EXCEEDED = "LIMIT_EXCEEDED"
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
    INVALID_SCOPE = "INVALID_SCOPE"
    INVALID_QUANTITY = "INVALID_QUANTITY"


@dataclass(frozen=True)
class UsageDecision:
    """Outcome of a usage check or consumption.

    ``credits_required`` is the overage beyond the limit; on an allowed
    consumption it equals ``credits_consumed``. ``replayed`` marks an answer
    served from a previously recorded event and is ignored by equality.
    """
    allowed: bool
    quantity: Decimal
    current_usage: Decimal
    next_usage: Decimal
    reason: Optional[DenialReason] = None
    max_allowed: Optional[Decimal] = None
    overage_policy: Optional[OveragePolicy] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    credits_available: Optional[Decimal] = None
    credits_required: Optional[Decimal] = None
    credits_consumed: Decimal = Decimal("0")
    message: str = ""
    replayed: bool = field(default=False, compare=False)

    @property
    def uses_credits(self) -> bool:
        return self.allowed and bool(self.credits_required)


def deny(
    reason: DenialReason,
    quantity: Decimal,
    message: str,
    current_usage: Decimal = Decimal("0")
) -> UsageDecision:
    """Rejection decided before any usage could be read."""
    return UsageDecision(
        allowed=False,
        reason=reason,
        quantity=quantity,
        current_usage=current_usage,
        next_usage=current_usage + quantity,
        message=message,
    )


def evaluate(
    entitlement: FeatureEntitlement,
    window: UsageWindow,
    current_usage: Decimal,
    quantity: Decimal,
    read_credits: Callable[[], Decimal]
) -> UsageDecision:
    """Decide whether ``quantity`` more usage fits the entitlement.

    Pure apart from ``read_credits``, which is only invoked when the request
    exceeds the limit and the overage may be funded by credits.

    Args:
        entitlement: Enabled entitlement for the feature
        window: Active usage window
        current_usage: Usage already recorded in the window
        quantity: Requested additional usage
        read_credits: Returns the spendable credit balance

    Returns:
        UsageDecision; an allowed decision with ``credits_required`` set means
        that many credits must be consumed on commit
    """
    next_usage = current_usage + quantity
    limit = entitlement.limit
    common = dict(
        quantity=quantity,
        current_usage=current_usage,
        next_usage=next_usage,
        max_allowed=limit,
        overage_policy=entitlement.overage_policy,
        period_start=window.period_start,
        period_end=window.period_end,
    )

    if limit is None or next_usage <= limit:
        return UsageDecision(allowed=True, **common)

    exceed_by = next_usage - limit
    if not entitlement.funds_overage_with_credits:
        return UsageDecision(
            allowed=False,
            reason=DenialReason.LIMIT_EXCEEDED,
            message=(
                f"Usage {next_usage} would exceed the limit of {limit} "
                f"for {entitlement.feature_key}"
            ),
            **common
        )

    available = read_credits()
    if available < exceed_by:
        return UsageDecision(
            allowed=False,
            reason=DenialReason.INSUFFICIENT_CREDITS,
            credits_available=available,
            credits_required=exceed_by,
            message=(
                f"Overage of {exceed_by} for {entitlement.feature_key} needs credits, "
                f"only {available} available"
            ),
            **common
        )

    return UsageDecision(
        allowed=True,
        credits_available=available,
        credits_required=exceed_by,
        **common
    )
