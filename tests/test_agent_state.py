# tests/test_agent_state.py
"""
Unit tests for agent spending state and its stores.
"""
import json
from datetime import date
from decimal import Decimal
from unittest.mock import patch

import pytest

from app.agent.state import (
    PAID_ENTRY_TTL_SECONDS,
    JsonFileStateStore,
    MemoryStateStore,
    WalletPolicyState,
)

ADDRESS = "0x" + "AB" * 20


class TestWalletPolicyState:
    """Test the daily roll-over and paid set."""

    def test_new_day_resets_spend(self):
        """Spend resets when the date changes."""
        state = WalletPolicyState(spent_today=Decimal("3"), last_reset_date="2026-01-01")

        assert state.roll_over(today=date(2026, 1, 2), now=0) is True
        assert state.spent_today == Decimal(0)
        assert state.last_reset_date == "2026-01-02"

    def test_same_day_keeps_spend(self):
        """No reset within the same day."""
        state = WalletPolicyState(spent_today=Decimal("3"), last_reset_date="2026-01-01")

        assert state.roll_over(today=date(2026, 1, 1), now=0) is False
        assert state.spent_today == Decimal("3")

    def test_prunes_old_paid_entries(self):
        """Paid keys older than 24 hours are dropped."""
        state = WalletPolicyState(last_reset_date="2026-01-01", paid={"old": 0.0, "new": 1000.0})

        state.roll_over(today=date(2026, 1, 1), now=PAID_ENTRY_TTL_SECONDS + 500)

        assert state.has_paid("new")
        assert not state.has_paid("old")

    def test_record_payment(self):
        """Recording adds to spend and the paid set."""
        state = WalletPolicyState()
        state.record_payment("k1", Decimal("1.5"), now=10.0)

        assert state.spent_today == Decimal("1.5")
        assert state.paid == {"k1": 10.0}

    def test_dict_round_trip(self):
        """State survives to_dict/from_dict with camelCase keys."""
        state = WalletPolicyState(spent_today=Decimal("0.1"), last_reset_date="2026-01-01", paid={"k": 1.0})
        data = state.to_dict()

        assert data == {"spentToday": "0.1", "lastResetDate": "2026-01-01", "paid": {"k": 1.0}}
        assert WalletPolicyState.from_dict(data) == state


class TestMemoryStateStore:
    """Test the in-process store."""

    def test_unknown_address_is_fresh(self):
        assert MemoryStateStore().load(ADDRESS).spent_today == Decimal(0)

    def test_save_is_a_snapshot(self):
        """Mutating state after save does not change the stored copy."""
        store = MemoryStateStore()
        state = WalletPolicyState(spent_today=Decimal("1"))
        store.save(ADDRESS, state)
        state.spent_today = Decimal("9")

        assert store.load(ADDRESS.lower()).spent_today == Decimal("1")


class TestJsonFileStateStore:
    """Test durable per-address files."""

    def test_save_and_load(self, tmp_path):
        store = JsonFileStateStore(str(tmp_path / "state"))
        state = WalletPolicyState(spent_today=Decimal("2.5"), paid={"k": 5.0})

        store.save(ADDRESS, state)

        loaded = JsonFileStateStore(str(tmp_path / "state")).load(ADDRESS)
        assert loaded.spent_today == Decimal("2.5")
        assert loaded.has_paid("k")

    def test_file_per_lowercase_address(self, tmp_path):
        store = JsonFileStateStore(str(tmp_path))
        store.save(ADDRESS, WalletPolicyState())

        path = tmp_path / f"{ADDRESS.lower()}.json"
        assert path.exists()
        assert json.loads(path.read_text())["spentToday"] == "0"

    def test_missing_file_is_fresh(self, tmp_path):
        assert JsonFileStateStore(str(tmp_path)).load(ADDRESS).paid == {}

    def test_failed_write_keeps_old_file(self, tmp_path):
        """A failing replace leaves the previous document and no temp files."""
        store = JsonFileStateStore(str(tmp_path))
        store.save(ADDRESS, WalletPolicyState(spent_today=Decimal("1")))

        with patch("app.agent.state.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(OSError):
                store.save(ADDRESS, WalletPolicyState(spent_today=Decimal("2")))

        assert store.load(ADDRESS).spent_today == Decimal("1")
        assert [p.name for p in tmp_path.iterdir()] == [f"{ADDRESS.lower()}.json"]
