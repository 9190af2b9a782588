"""
Unit tests for plan catalog loading and validation.

Tests strict validation and error handling for plan catalogs.
"""

import os
import tempfile
from datetime import datetime, timezone
from decimal import Decimal

import pytest
import yaml

from quota_guard.config.loader import load_plan_catalog
from quota_guard.core.entitlements import OveragePolicy
from quota_guard.core.period import UsagePeriod
from quota_guard.core.scope import Scope, ScopeKind

NOW = datetime(2026, 3, 15, tzinfo=timezone.utc)


class TestCatalogLoading:
    """Test catalog loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_catalog(self, catalog_data: dict, filename: str = "plans.yaml") -> str:
        """Write catalog data to temporary file."""
        catalog_path = os.path.join(self.temp_dir, filename)
        with open(catalog_path, 'w', encoding='utf-8') as f:
            yaml.dump(catalog_data, f)
        return catalog_path

    def _valid_data(self) -> dict:
        return {
            "plans": {
                "pro": {
                    "features": {
                        "ai.tokens": {
                            "max": 100,
                            "period": "monthly",
                            "overage": "fund_with_credits",
                            "credit_enabled": True,
                            "credit_expires": True,
                            "recurring_credit_grant": 50,
                        },
                        "subaccounts": {"max": 3, "period": None},
                        "storage": {"unlimited": True, "scope": "subaccount"},
                    }
                }
            },
            "agencies": {
                "ag_1": {"plan": "pro", "sub_accounts": ["sa_1"]},
                "ag_2": None,
            },
        }

    def test_valid_catalog_loads_correctly(self):
        """Test that a valid catalog loads correctly."""
        catalog = load_plan_catalog(self._write_catalog(self._valid_data()))

        tokens = catalog.plans["pro"]["ai.tokens"]
        assert tokens.max_allowed == Decimal("100")
        assert tokens.period is UsagePeriod.MONTHLY
        assert tokens.overage_policy is OveragePolicy.FUND_WITH_CREDITS
        assert tokens.credit_expires
        assert tokens.recurring_credit_grant == Decimal("50")
        assert tokens.metering_scope is ScopeKind.AGENCY

        assert catalog.plans["pro"]["subaccounts"].period is None
        storage = catalog.plans["pro"]["storage"]
        assert storage.limit is None
        assert storage.metering_scope is ScopeKind.SUBACCOUNT

    def test_defaults_applied(self):
        data = {"plans": {"basic": {"features": {"exports": {"max": 5}}}}}
        feature = load_plan_catalog(self._write_catalog(data)).plans["basic"]["exports"]
        assert feature.is_enabled
        assert feature.period is UsagePeriod.MONTHLY
        assert feature.overage_policy is OveragePolicy.REJECT
        assert not feature.credit_enabled

    def test_resolve_entitlements(self):
        """The catalog resolves a scope to its agency's plan."""
        catalog = load_plan_catalog(self._write_catalog(self._valid_data()))

        entitlements = catalog.resolve(Scope.sub_account("ag_1", "sa_1"), NOW)
        assert entitlements.plan_id == "pro"
        assert entitlements.get("ai.tokens") is not None
        assert catalog.resolve(Scope.agency("ag_2"), NOW) is None
        assert catalog.resolve(Scope.agency("missing"), NOW) is None

    def test_unknown_sub_account_has_no_entitlements(self):
        """A sub-account outside the agency's list does not inherit its plan."""
        catalog = load_plan_catalog(self._write_catalog(self._valid_data()))

        assert catalog.resolve(Scope.sub_account("ag_1", "sa_9"), NOW) is None
        assert catalog.resolve(Scope.sub_account("ag_2", "sa_1"), NOW) is None

    def test_catalog_lookups(self):
        catalog = load_plan_catalog(self._write_catalog(self._valid_data()))
        assert catalog.sub_account_ids("ag_1") == ["sa_1"]
        assert catalog.sub_account_ids("missing") == []
        assert catalog.plan_for("ag_1") == "pro"
        assert catalog.feature("ai.tokens").max_allowed == Decimal("100")
        assert catalog.feature("nope") is None
        assert catalog.plan_features("gold") == {}

    def test_missing_file_raises_error(self):
        """Test that missing catalog file raises error."""
        with pytest.raises(FileNotFoundError, match="Plan catalog file not found"):
            load_plan_catalog("nonexistent.yaml")

    def test_empty_catalog_raises_error(self):
        """Test that empty catalog file raises error."""
        with pytest.raises(ValueError, match="Catalog file is empty"):
            load_plan_catalog(self._write_catalog({}))

    def test_invalid_yaml_raises_error(self):
        """Test that invalid YAML raises error."""
        catalog_path = os.path.join(self.temp_dir, "invalid.yaml")
        with open(catalog_path, 'w') as f:
            f.write("invalid: yaml: content: [")

        with pytest.raises(yaml.YAMLError):
            load_plan_catalog(catalog_path)

    def test_unknown_top_level_key_raises_error(self):
        data = self._valid_data()
        data["budgets"] = {}
        with pytest.raises(ValueError, match="Unknown catalog keys"):
            load_plan_catalog(self._write_catalog(data))

    def test_missing_plans_raises_error(self):
        with pytest.raises(ValueError, match="Missing required 'plans' section"):
            load_plan_catalog(self._write_catalog({"agencies": {}}))

    def test_unknown_feature_key_raises_error(self):
        data = self._valid_data()
        data["plans"]["pro"]["features"]["ai.tokens"]["limit"] = 5
        with pytest.raises(ValueError, match="Unknown keys in plans.pro.features.ai.tokens"):
            load_plan_catalog(self._write_catalog(data))

    def test_missing_max_raises_error(self):
        data = {"plans": {"pro": {"features": {"exports": {"period": "daily"}}}}}
        with pytest.raises(ValueError, match="Missing required 'max'"):
            load_plan_catalog(self._write_catalog(data))

    def test_negative_max_raises_error(self):
        data = {"plans": {"pro": {"features": {"exports": {"max": -1}}}}}
        with pytest.raises(ValueError, match="'max' in plans.pro.features.exports must be a number"):
            load_plan_catalog(self._write_catalog(data))

    def test_invalid_period_raises_error(self):
        data = {"plans": {"pro": {"features": {"exports": {"max": 1, "period": "hourly"}}}}}
        with pytest.raises(ValueError, match="Unknown usage period"):
            load_plan_catalog(self._write_catalog(data))

    def test_invalid_overage_raises_error(self):
        data = {"plans": {"pro": {"features": {"exports": {"max": 1, "overage": "charge"}}}}}
        with pytest.raises(ValueError, match="'overage' in plans.pro.features.exports must be one of"):
            load_plan_catalog(self._write_catalog(data))

    def test_credit_funding_requires_credit_enabled(self):
        data = {"plans": {"pro": {"features": {"exports": {"max": 1, "overage": "fund_with_credits"}}}}}
        with pytest.raises(ValueError, match="requires credit_enabled"):
            load_plan_catalog(self._write_catalog(data))

    def test_non_boolean_flag_raises_error(self):
        data = {"plans": {"pro": {"features": {"exports": {"max": 1, "enabled": "yes"}}}}}
        with pytest.raises(ValueError, match="'enabled' in plans.pro.features.exports must be true or false"):
            load_plan_catalog(self._write_catalog(data))

    def test_agency_with_unknown_plan_raises_error(self):
        data = self._valid_data()
        data["agencies"]["ag_3"] = {"plan": "gold"}
        with pytest.raises(ValueError, match="references unknown plan 'gold'"):
            load_plan_catalog(self._write_catalog(data))

    def test_sub_accounts_must_be_strings(self):
        data = self._valid_data()
        data["agencies"]["ag_1"]["sub_accounts"] = [1, 2]
        with pytest.raises(ValueError, match="must be a list of strings"):
            load_plan_catalog(self._write_catalog(data))
