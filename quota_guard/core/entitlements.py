"""
Entitlement types and the collaborator interfaces the engine consumes.

Entitlements are resolved outside this package (from a subscription plan);
the engine treats whatever the resolver returns as a snapshot valid at call
time.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Protocol

from .amounts import ZERO
from .period import UsagePeriod
from .scope import Scope, ScopeKind


class OveragePolicy(Enum):
    """What happens to usage requested beyond the entitled limit."""
    REJECT = "REJECT"
    FUND_WITH_CREDITS = "FUND_WITH_CREDITS"


@dataclass(frozen=True)
class FeatureEntitlement:
    """Plan-derived rules for one feature at one scope."""
    feature_key: str
    is_enabled: bool = True
    is_unlimited: bool = False
    max_allowed: Optional[Decimal] = None
    period: Optional[UsagePeriod] = UsagePeriod.MONTHLY
    overage_policy: OveragePolicy = OveragePolicy.REJECT
    credit_enabled: bool = False
    credit_expires: bool = False
    recurring_credit_grant: Decimal = ZERO
    metering_scope: ScopeKind = ScopeKind.AGENCY

    @property
    def limit(self) -> Optional[Decimal]:
        """Effective cap, ``None`` when usage is not capped."""
        if self.is_unlimited:
            return None
        return self.max_allowed

    @property
    def funds_overage_with_credits(self) -> bool:
        return self.overage_policy is OveragePolicy.FUND_WITH_CREDITS


@dataclass(frozen=True)
class EntitlementSet:
    """Everything an active plan grants a scope, keyed by feature."""
    plan_id: str
    features: Dict[str, FeatureEntitlement] = field(default_factory=dict)

    def get(self, feature_key: str) -> Optional[FeatureEntitlement]:
        return self.features.get(feature_key)


class EntitlementResolver(Protocol):
    """Resolves what a scope's active plan entitles it to."""

    def resolve(self, scope: Scope, now: datetime) -> Optional[EntitlementSet]:
        """Return the entitlements, or ``None`` when there is no active plan."""
        ...


class PlanCatalog(Protocol):
    """Plan configuration needed to grant and top up credits."""

    def plan_features(self, plan_id: str) -> Dict[str, FeatureEntitlement]:
        """Features configured on a plan; unknown plans yield an empty dict."""
        ...

    def feature(self, feature_key: str) -> Optional[FeatureEntitlement]:
        """Catalog-level definition of a feature across all plans."""
        ...

    def sub_account_ids(self, agency_id: str) -> List[str]:
        """Sub-accounts belonging to an agency."""
        ...
