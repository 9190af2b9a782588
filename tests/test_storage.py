"""
Unit tests for storage layer.

Tests schema creation, tracker and event persistence, and the credit
balance/ledger pair.
"""

import sqlite3
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from quota_guard.core.entitlements import OveragePolicy
from quota_guard.core.period import UsagePeriod, get_window
from quota_guard.core.scope import Scope
from quota_guard.storage import credit_repository, usage_repository
from quota_guard.storage.db import format_ts, get_connection, parse_ts
from quota_guard.storage.models import CreditEntryType, UsageEvent

from conftest import NOW

AGENCY = Scope.agency("ag_1")
SUB = Scope.sub_account("ag_1", "sa_1")


def make_event(key, idempotency_key="evt_1", quantity="5", occurred_at=NOW, window=None):
    window = window or get_window(UsagePeriod.MONTHLY, occurred_at)
    return UsageEvent(
        idempotency_key=idempotency_key,
        key=key,
        quantity=Decimal(quantity),
        period_start=window.period_start,
        period_end=window.period_end,
        usage_before=Decimal("0"),
        overage_policy=OveragePolicy.REJECT,
        occurred_at=occurred_at,
    )


class TestStorageSchema:
    """Test database schema creation and structure."""

    def test_schema_creation(self, store):
        """Verify all ledger tables are created."""
        conn = get_connection(store.db_path)
        try:
            cursor = conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
            tables = {row[0] for row in cursor.fetchall()}
            assert {"usage_tracker", "usage_event", "credit_balance", "credit_ledger"} <= tables
        finally:
            conn.close()

    def test_schema_creation_is_idempotent(self, store):
        """Initializing twice keeps existing data."""
        key = AGENCY.key("ai.tokens")
        with store.transaction() as conn:
            usage_repository.record_event_if_absent(conn, make_event(key))
        store.initialize()
        with store.read() as conn:
            assert usage_repository.get_event(conn, "evt_1") is not None

    def test_timestamps_round_trip_as_utc(self):
        """Stored timestamps sort lexicographically and parse back to UTC."""
        earlier = datetime(2026, 3, 1, tzinfo=timezone.utc)
        later = datetime(2026, 3, 1, 0, 0, 0, 1, tzinfo=timezone.utc)
        assert format_ts(earlier) < format_ts(later)
        assert parse_ts(format_ts(later)) == later


class TestTransactions:
    """Test transaction commit and rollback."""

    def test_rollback_on_error(self, store):
        """An exception inside a transaction discards its writes."""
        key = AGENCY.key("ai.tokens")
        with pytest.raises(RuntimeError):
            with store.transaction() as conn:
                usage_repository.record_event_if_absent(conn, make_event(key))
                raise RuntimeError("boom")

        with store.read() as conn:
            assert usage_repository.get_event(conn, "evt_1") is None

    def test_persistence_across_connections(self, store):
        key = AGENCY.key("ai.tokens")
        with store.transaction() as conn:
            usage_repository.record_event_if_absent(conn, make_event(key))
        with store.read() as conn:
            event = usage_repository.get_event(conn, "evt_1")
        assert event.quantity == Decimal("5")
        assert event.key == key


class TestUsageTracker:
    """Test per-period usage trackers."""

    def test_get_missing_tracker_returns_none(self, store):
        with store.read() as conn:
            assert usage_repository.get_tracker(conn, AGENCY.key("ai.tokens"), NOW) is None

    def test_get_or_create_keeps_single_row(self, store):
        """Repeated creation for the same key and period yields one row."""
        key = AGENCY.key("ai.tokens")
        window = get_window(UsagePeriod.MONTHLY, NOW)
        with store.transaction() as conn:
            first = usage_repository.get_or_create_tracker(conn, key, window, NOW)
            usage_repository.add_usage(conn, first, Decimal("7"), NOW)
            second = usage_repository.get_or_create_tracker(conn, key, window, NOW)

        assert first.id == second.id
        assert second.current_usage == Decimal("7")
        with store.read() as conn:
            assert len(usage_repository.list_trackers(conn, key)) == 1

    def test_add_usage_stamps_last_event(self, store):
        key = AGENCY.key("ai.tokens")
        window = get_window(UsagePeriod.MONTHLY, NOW)
        with store.transaction() as conn:
            tracker = usage_repository.get_or_create_tracker(conn, key, window, NOW)
            updated = usage_repository.add_usage(conn, tracker, Decimal("2.5"), NOW)

        assert updated.current_usage == Decimal("2.5")
        with store.read() as conn:
            stored = usage_repository.get_tracker(conn, key, window.period_start)
        assert stored.current_usage == Decimal("2.5")
        assert stored.last_event_at == NOW

    def test_agency_and_sub_account_rows_are_separate(self, store):
        """An agency-wide tracker never collides with a sub-account one."""
        window = get_window(UsagePeriod.MONTHLY, NOW)
        with store.transaction() as conn:
            agency = usage_repository.get_or_create_tracker(conn, AGENCY.key("ai.tokens"), window, NOW)
            usage_repository.add_usage(conn, agency, Decimal("3"), NOW)
            sub = usage_repository.get_or_create_tracker(conn, SUB.key("ai.tokens"), window, NOW)

        assert agency.id != sub.id
        assert sub.current_usage == Decimal("0")

    def test_standing_window_tracker(self, store):
        """Standing windows persist with no end."""
        key = AGENCY.key("subaccounts")
        window = get_window(None, NOW)
        with store.transaction() as conn:
            tracker = usage_repository.get_or_create_tracker(conn, key, window, NOW)
        assert tracker.period_end is None

    def test_list_window_trackers_matches_both_boundaries(self, store):
        march_first = datetime(2026, 3, 1, tzinfo=timezone.utc)
        monthly = get_window(UsagePeriod.MONTHLY, NOW)
        daily = get_window(UsagePeriod.DAILY, march_first)
        standing = get_window(None, NOW)
        with store.transaction() as conn:
            usage_repository.get_or_create_tracker(conn, AGENCY.key("ai.tokens"), monthly, NOW)
            usage_repository.get_or_create_tracker(conn, AGENCY.key("exports"), daily, march_first)
            usage_repository.get_or_create_tracker(conn, AGENCY.key("seats"), standing, NOW)
            usage_repository.get_or_create_tracker(conn, SUB.key("ai.tokens"), monthly, NOW)

        with store.read() as conn:
            monthly_rows = usage_repository.list_window_trackers(conn, AGENCY, monthly)
            standing_rows = usage_repository.list_window_trackers(conn, AGENCY, standing)
            filtered = usage_repository.list_window_trackers(
                conn, AGENCY, daily, feature_key="ai.tokens"
            )

        assert [t.key.feature_key for t in monthly_rows] == ["ai.tokens"]
        assert [t.key.feature_key for t in standing_rows] == ["seats"]
        assert filtered == []


class TestUsageEventLedger:
    """Test the idempotency-keyed event ledger."""

    def test_record_if_absent_creates_once(self, store):
        key = AGENCY.key("ai.tokens")
        with store.transaction() as conn:
            _, created = usage_repository.record_event_if_absent(conn, make_event(key))
            stored, created_again = usage_repository.record_event_if_absent(
                conn, make_event(key, quantity="99")
            )

        assert created is True
        assert created_again is False
        assert stored.quantity == Decimal("5")

    def test_list_events_respects_window(self, store):
        """Events are listed only for the half-open window they fall in."""
        key = AGENCY.key("ai.tokens")
        april_first = datetime(2026, 4, 1, tzinfo=timezone.utc)
        with store.transaction() as conn:
            usage_repository.record_event_if_absent(conn, make_event(key, "march", occurred_at=NOW))
            usage_repository.record_event_if_absent(
                conn, make_event(key, "april", occurred_at=april_first)
            )
            usage_repository.record_event_if_absent(
                conn, make_event(key, "last", occurred_at=april_first - timedelta(microseconds=1))
            )

        with store.read() as conn:
            march = usage_repository.list_events(conn, key, get_window(UsagePeriod.MONTHLY, NOW))
            april = usage_repository.list_events(conn, key, get_window(UsagePeriod.MONTHLY, april_first))

        assert [e.idempotency_key for e in march] == ["last", "march"]
        assert [e.idempotency_key for e in april] == ["april"]

    def test_list_events_for_whole_scope(self, store):
        with store.transaction() as conn:
            usage_repository.record_event_if_absent(conn, make_event(AGENCY.key("a"), "e1"))
            usage_repository.record_event_if_absent(conn, make_event(AGENCY.key("b"), "e2"))
            usage_repository.record_event_if_absent(conn, make_event(SUB.key("a"), "e3"))

        with store.read() as conn:
            events = usage_repository.list_events(conn, AGENCY, get_window(UsagePeriod.MONTHLY, NOW))
        assert {e.idempotency_key for e in events} == {"e1", "e2"}


class TestCreditLedger:
    """Test balance maintenance through ledger deltas."""

    def test_apply_delta_creates_wallet(self, store):
        key = AGENCY.key("ai.tokens")
        with store.transaction() as conn:
            entry = credit_repository.apply_delta(
                conn, key, CreditEntryType.GRANT, Decimal("10"), "g1", NOW
            )
        assert entry is not None
        with store.read() as conn:
            assert credit_repository.get_balance(conn, key).balance == Decimal("10")
            assert credit_repository.ledger_total(conn, key) == Decimal("10")

    def test_duplicate_key_is_noop(self, store):
        key = AGENCY.key("ai.tokens")
        with store.transaction() as conn:
            credit_repository.apply_delta(conn, key, CreditEntryType.TOPUP, Decimal("10"), "t1", NOW)
            again = credit_repository.apply_delta(
                conn, key, CreditEntryType.TOPUP, Decimal("10"), "t1", NOW
            )
        assert again is None
        with store.read() as conn:
            assert credit_repository.get_balance(conn, key).balance == Decimal("10")
            assert len(credit_repository.list_entries(conn, key)) == 1

    def test_delta_sign_validated(self, store):
        key = AGENCY.key("ai.tokens")
        with store.transaction() as conn:
            with pytest.raises(ValueError, match="must be positive"):
                credit_repository.apply_delta(conn, key, CreditEntryType.GRANT, Decimal("-1"), "x", NOW)
            with pytest.raises(ValueError, match="must be negative"):
                credit_repository.apply_delta(conn, key, CreditEntryType.CONSUME, Decimal("1"), "y", NOW)

    def test_expired_balance_reads_as_zero(self, store):
        key = AGENCY.key("ai.tokens")
        with store.transaction() as conn:
            credit_repository.apply_delta(
                conn, key, CreditEntryType.GRANT, Decimal("10"), "g1", NOW,
                expires_at=NOW + timedelta(days=1),
            )
        with store.read() as conn:
            assert credit_repository.available_credits(conn, key, NOW) == Decimal("10")
            later = NOW + timedelta(days=1)
            assert credit_repository.available_credits(conn, key, later) == Decimal("0")
            assert credit_repository.list_balances(conn, AGENCY, later) == []

    def test_grant_after_expiry_writes_off_stale_credits(self, store):
        """Expired credits are written off, never revived by a new grant."""
        key = AGENCY.key("ai.tokens")
        later = NOW + timedelta(days=40)
        with store.transaction() as conn:
            credit_repository.apply_delta(
                conn, key, CreditEntryType.GRANT, Decimal("10"), "g1", NOW,
                expires_at=NOW + timedelta(days=1),
            )
        with store.transaction() as conn:
            credit_repository.apply_delta(conn, key, CreditEntryType.TOPUP, Decimal("4"), "t1", later)

        with store.read() as conn:
            balance = credit_repository.get_balance(conn, key)
            entries = credit_repository.list_entries(conn, key)
            assert balance.balance == Decimal("4")
            assert balance.expires_at is None
            assert credit_repository.available_credits(conn, key, later) == Decimal("4")
            assert credit_repository.ledger_total(conn, key) == balance.balance
        assert [e.entry_type for e in entries] == [
            CreditEntryType.TOPUP, CreditEntryType.EXPIRE, CreditEntryType.GRANT
        ]
        assert entries[1].delta == Decimal("-10")

    def test_duplicate_ledger_key_rejected_by_constraint(self, store):
        """The ledger's idempotency key is enforced by the schema itself."""
        conn = get_connection(store.db_path)
        try:
            insert = (
                "INSERT INTO credit_ledger (idempotency_key, scope, agency_id, sub_account_id, "
                "feature_key, entry_type, delta, occurred_at) "
                "VALUES ('k', 'AGENCY', 'ag_1', '', 'f', 'GRANT', '1', 'now')"
            )
            conn.execute(insert)
            with pytest.raises(sqlite3.IntegrityError):
                conn.execute(insert)
        finally:
            conn.close()
