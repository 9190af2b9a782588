"""
Shared fixtures for ledger tests.
"""

import os
import tempfile
from datetime import datetime, timezone

import pytest

from quota_guard.config.loader import PlanCatalogConfig, parse_plan_catalog
from quota_guard.storage.db import LedgerStore

# Mid-month instant used as "now" across the suite
NOW = datetime(2026, 3, 15, 10, 0, 0, tzinfo=timezone.utc)


def make_catalog(features: dict, plan: str = "pro", agencies: dict = None) -> PlanCatalogConfig:
    """Build a catalog with one plan and, by default, agency ``ag_1`` on it."""
    if agencies is None:
        agencies = {"ag_1": {"plan": plan, "sub_accounts": ["sa_1", "sa_2"]}}
    return parse_plan_catalog({
        "plans": {plan: {"features": features}},
        "agencies": agencies,
    })


@pytest.fixture
def store():
    """Fresh, initialized ledger database in a temporary directory."""
    with tempfile.TemporaryDirectory() as temp_dir:
        ledger_store = LedgerStore(os.path.join(temp_dir, "test.db"))
        ledger_store.initialize()
        yield ledger_store
