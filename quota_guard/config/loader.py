"""
Plan catalog loading.

Reads plans, their feature entitlements and agency subscriptions from YAML.
The loaded catalog serves both as the entitlement resolver for usage
decisions and as the plan source for credit grants.
"""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from quota_guard.core.amounts import ZERO, to_decimal
from quota_guard.core.entitlements import EntitlementSet, FeatureEntitlement, OveragePolicy
from quota_guard.core.period import UsagePeriod
from quota_guard.core.scope import Scope, ScopeKind

_OVERAGE_NAMES = {
    "reject": OveragePolicy.REJECT,
    "fund_with_credits": OveragePolicy.FUND_WITH_CREDITS,
}

_SCOPE_NAMES = {
    "agency": ScopeKind.AGENCY,
    "subaccount": ScopeKind.SUBACCOUNT,
}


@dataclass(frozen=True)
class AgencyConfig:
    """Subscription state of one agency."""
    agency_id: str
    plan_id: Optional[str] = None
    sub_accounts: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class PlanCatalogConfig:
    """Complete plan catalog."""
    plans: Dict[str, Dict[str, FeatureEntitlement]]
    agencies: Dict[str, AgencyConfig]

    def resolve(self, scope: Scope, now: datetime) -> Optional[EntitlementSet]:
        """Entitlements of the agency's plan; ``None`` without a subscription.

        A sub-account scope resolves only when the sub-account belongs to the
        agency.
        """
        agency = self.agencies.get(scope.agency_id)
        if agency is None or agency.plan_id is None:
            return None
        if scope.kind is ScopeKind.SUBACCOUNT and scope.sub_account_id not in agency.sub_accounts:
            return None
        return EntitlementSet(plan_id=agency.plan_id, features=dict(self.plans[agency.plan_id]))

    def plan_features(self, plan_id: str) -> Dict[str, FeatureEntitlement]:
        return dict(self.plans.get(plan_id, {}))

    def feature(self, feature_key: str) -> Optional[FeatureEntitlement]:
        for plan_id in sorted(self.plans):
            if feature_key in self.plans[plan_id]:
                return self.plans[plan_id][feature_key]
        return None

    def sub_account_ids(self, agency_id: str) -> List[str]:
        agency = self.agencies.get(agency_id)
        return list(agency.sub_accounts) if agency else []

    def plan_for(self, agency_id: str) -> Optional[str]:
        agency = self.agencies.get(agency_id)
        return agency.plan_id if agency else None


def load_plan_catalog(path: str) -> PlanCatalogConfig:
    """Load and validate a plan catalog from a YAML file.

    Strict validation ensures no silent misconfiguration that would let usage
    through unmetered or bill a tenant against the wrong limit.

    Args:
        path: Path to YAML catalog file

    Returns:
        Validated PlanCatalogConfig

    Raises:
        FileNotFoundError: If the file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If the catalog is invalid
    """
    catalog_path = Path(path)
    if not catalog_path.exists():
        raise FileNotFoundError(f"Plan catalog file not found: {path}")

    with open(catalog_path, 'r', encoding='utf-8') as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in catalog file {path}: {e}")

    if not raw:
        raise ValueError("Catalog file is empty")
    return parse_plan_catalog(raw)


def parse_plan_catalog(raw: Any) -> PlanCatalogConfig:
    """Validate an already-parsed catalog mapping."""
    if not isinstance(raw, dict):
        raise ValueError("Catalog must be a dictionary")

    unknown_keys = set(raw.keys()) - {'plans', 'agencies'}
    if unknown_keys:
        raise ValueError(f"Unknown catalog keys: {unknown_keys}")

    if 'plans' not in raw:
        raise ValueError("Missing required 'plans' section")
    plans_data = raw['plans']
    if not isinstance(plans_data, dict):
        raise ValueError("'plans' must be a dictionary")

    plans: Dict[str, Dict[str, FeatureEntitlement]] = {}
    for plan_id, plan_data in plans_data.items():
        plans[str(plan_id)] = _parse_plan(plan_data, f"plans.{plan_id}")

    agencies_data = raw.get('agencies') or {}
    if not isinstance(agencies_data, dict):
        raise ValueError("'agencies' must be a dictionary")

    agencies = {}
    for agency_id, agency_data in agencies_data.items():
        agency = _parse_agency(str(agency_id), agency_data, f"agencies.{agency_id}")
        if agency.plan_id is not None and agency.plan_id not in plans:
            raise ValueError(f"agencies.{agency_id} references unknown plan '{agency.plan_id}'")
        agencies[agency.agency_id] = agency

    return PlanCatalogConfig(plans=plans, agencies=agencies)


def _parse_plan(data: Any, path: str) -> Dict[str, FeatureEntitlement]:
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    unknown_keys = set(data.keys()) - {'features'}
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    features_data = data.get('features') or {}
    if not isinstance(features_data, dict):
        raise ValueError(f"'{path}.features' must be a dictionary")

    return {
        str(key): _parse_feature(str(key), feature_data, f"{path}.features.{key}")
        for key, feature_data in features_data.items()
    }


def _parse_feature(feature_key: str, data: Any, path: str) -> FeatureEntitlement:
    """Parse and validate one feature entitlement.

    Raises:
        ValueError: If the feature configuration is invalid
    """
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")

    allowed_keys = {
        'enabled', 'unlimited', 'max', 'period', 'overage', 'credit_enabled',
        'credit_expires', 'recurring_credit_grant', 'scope',
    }
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    for flag in ('enabled', 'unlimited', 'credit_enabled', 'credit_expires'):
        if flag in data and not isinstance(data[flag], bool):
            raise ValueError(f"'{flag}' in {path} must be true or false")

    unlimited = data.get('unlimited', False)
    max_allowed = None
    if 'max' in data and data['max'] is not None:
        max_allowed = _parse_amount(data['max'], 'max', path)
    elif not unlimited:
        raise ValueError(f"Missing required 'max' in {path} (or set unlimited: true)")

    try:
        period = UsagePeriod.parse(data.get('period', 'monthly'))
    except ValueError as e:
        raise ValueError(f"'period' in {path}: {e}")

    overage = _parse_choice(data.get('overage', 'reject'), _OVERAGE_NAMES, 'overage', path)
    metering_scope = _parse_choice(data.get('scope', 'agency'), _SCOPE_NAMES, 'scope', path)

    grant = ZERO
    if data.get('recurring_credit_grant') is not None:
        grant = _parse_amount(data['recurring_credit_grant'], 'recurring_credit_grant', path)

    credit_enabled = data.get('credit_enabled', False)
    if overage is OveragePolicy.FUND_WITH_CREDITS and not credit_enabled:
        raise ValueError(f"'overage: fund_with_credits' in {path} requires credit_enabled: true")

    return FeatureEntitlement(
        feature_key=feature_key,
        is_enabled=data.get('enabled', True),
        is_unlimited=unlimited,
        max_allowed=max_allowed,
        period=period,
        overage_policy=overage,
        credit_enabled=credit_enabled,
        credit_expires=data.get('credit_expires', False),
        recurring_credit_grant=grant,
        metering_scope=metering_scope,
    )


def _parse_agency(agency_id: str, data: Any, path: str) -> AgencyConfig:
    if data is None:
        return AgencyConfig(agency_id=agency_id)
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")

    unknown_keys = set(data.keys()) - {'plan', 'sub_accounts'}
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    plan_id = data.get('plan')
    if plan_id is not None and not isinstance(plan_id, str):
        raise ValueError(f"'plan' in {path} must be a string")

    sub_accounts = data.get('sub_accounts') or []
    if not isinstance(sub_accounts, list) or not all(isinstance(s, str) for s in sub_accounts):
        raise ValueError(f"'sub_accounts' in {path} must be a list of strings")

    return AgencyConfig(agency_id=agency_id, plan_id=plan_id, sub_accounts=list(sub_accounts))


def _parse_amount(value: Any, name: str, path: str):
    if isinstance(value, bool):
        raise ValueError(f"'{name}' in {path} must be a number >= 0")
    try:
        amount = to_decimal(value)
    except ValueError:
        raise ValueError(f"'{name}' in {path} must be a number >= 0")
    if amount < 0:
        raise ValueError(f"'{name}' in {path} must be a number >= 0")
    return amount


def _parse_choice(value: Any, choices: Dict[str, Any], name: str, path: str):
    if not isinstance(value, str) or value.lower() not in choices:
        raise ValueError(f"'{name}' in {path} must be one of: {sorted(choices)}")
    return choices[value.lower()]
