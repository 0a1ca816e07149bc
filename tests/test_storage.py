"""
payoutwatch/tests/test_storage.py

Tests for durable payout state and subscriptions.
"""

import json
import pytest
from pathlib import Path

from payoutwatch.errors import PersistenceFailure
from payoutwatch.protocol.alerts import Payout, AlertOutcome, DeliveryRecord
from payoutwatch.protocol.storage import (
    DurableStateStore,
    SubscriptionStore,
    atomic_write_json,
    read_json,
    LAST_PAYOUT_FILE,
    PAYOUT_LOG_FILE,
    CONFIRMATIONS_FILE,
)


def make_payout(**overrides) -> Payout:
    data = dict(
        minted=12000.0,
        fees=50.0,
        total=12050.0,
        duration="21:03",
        observed_at=1_700_000_000.0,
        per_tier_reward={"t1": 158.1, "t2": 316.3, "t3": 791.3, "t4": 2373.9},
        tier_counts={"t1": 10.0, "t2": 8.0, "t3": 4.0, "t4": 2.0},
    )
    data.update(overrides)
    return Payout(**data)


class TestJsonFiles:
    """Tests for atomic_write_json and read_json."""

    def test_write_and_read(self, tmp_path):
        """Written data reads back."""
        path = tmp_path / "state.json"
        atomic_write_json(path, {"a": 1})
        assert read_json(path, None) == {"a": 1}

    def test_no_temp_files_left(self, tmp_path):
        """Only the target file remains after a write."""
        atomic_write_json(tmp_path / "state.json", [1, 2, 3])
        assert [p.name for p in tmp_path.iterdir()] == ["state.json"]

    def test_unserializable_data(self, tmp_path):
        """Unserializable data raises and leaves the old file intact."""
        path = tmp_path / "state.json"
        atomic_write_json(path, {"a": 1})

        with pytest.raises(PersistenceFailure):
            atomic_write_json(path, {"a": object()})
        assert read_json(path, None) == {"a": 1}
        assert len(list(tmp_path.iterdir())) == 1

    def test_missing_and_empty(self, tmp_path):
        """Missing or empty files give the default."""
        assert read_json(tmp_path / "missing.json", []) == []
        (tmp_path / "empty.json").write_text("")
        assert read_json(tmp_path / "empty.json", {}) == {}

    def test_corrupt_file(self, tmp_path):
        """Corrupt JSON raises PersistenceFailure."""
        path = tmp_path / "bad.json"
        path.write_text("{not json")
        with pytest.raises(PersistenceFailure):
            read_json(path, None)


class TestDurableStateStore:
    """Tests for DurableStateStore."""

    def test_empty_store(self, tmp_path):
        """A fresh store has no last payout and no processed confirmations."""
        store = DurableStateStore(tmp_path)
        assert store.load_last_payout() is None
        assert store.load_payout_log() == []
        assert not store.is_processed("0xabc")

    def test_last_payout_survives_restart(self, tmp_path):
        """Last payout, alert outcome included, is read back on open."""
        payout = make_payout()
        payout.alert_outcome = AlertOutcome.from_deliveries([
            DeliveryRecord("111", True, message_ref="m1"),
            DeliveryRecord("222", False, error_text="Missing Access"),
        ])
        DurableStateStore(tmp_path).save_last_payout(payout)

        loaded = DurableStateStore(tmp_path).load_last_payout()
        assert loaded == payout
        assert loaded.alert_outcome.deliveries[0].message_ref == "m1"
        assert loaded.alert_outcome.fail_count == 1

    def test_corrupt_last_payout_ignored(self, tmp_path):
        """A corrupt last-payout file starts the store without one."""
        (tmp_path / LAST_PAYOUT_FILE).write_text("[oops")
        assert DurableStateStore(tmp_path).load_last_payout() is None

    def test_payout_log_appends(self, tmp_path):
        """The payout log keeps every appended payout in order."""
        store = DurableStateStore(tmp_path)
        store.append_to_payout_log(make_payout(minted=12000.0))
        store.append_to_payout_log(make_payout(minted=13000.0))

        log = store.load_payout_log()
        assert [p.minted for p in log] == [12000.0, 13000.0]
        assert [p.minted for p in store.load_payout_log(limit=1)] == [13000.0]
        assert store.load_payout_log(limit=0) == []

    def test_corrupt_log_not_overwritten(self, tmp_path):
        """An unreadable payout log raises and is left untouched."""
        path = tmp_path / PAYOUT_LOG_FILE
        path.write_text("{broken")
        store = DurableStateStore(tmp_path)

        with pytest.raises(PersistenceFailure):
            store.append_to_payout_log(make_payout())
        assert path.read_text() == "{broken"

    def test_non_array_log_refused(self, tmp_path):
        """A payout log that is not an array is refused."""
        (tmp_path / PAYOUT_LOG_FILE).write_text('{"a": 1}')
        with pytest.raises(PersistenceFailure):
            DurableStateStore(tmp_path).append_to_payout_log(make_payout())

    def test_mark_processed_survives_restart(self, tmp_path):
        """Processed confirmations are remembered across restarts."""
        DurableStateStore(tmp_path).mark_processed("0xabc", block_reference=123)

        store = DurableStateStore(tmp_path)
        assert store.is_processed("0xabc")
        data = json.loads((tmp_path / CONFIRMATIONS_FILE).read_text())
        assert data["processed"]["0xabc"]["block_reference"] == 123

    def test_corrupt_confirmations_refused(self, tmp_path):
        """An unreadable confirmation file prevents opening the store."""
        (tmp_path / CONFIRMATIONS_FILE).write_text("nope")
        with pytest.raises(PersistenceFailure):
            DurableStateStore(tmp_path)


class TestSubscriptionStore:
    """Tests for SubscriptionStore."""

    def test_subscribe_and_persist(self, tmp_path):
        """Targets are persisted with their labels."""
        SubscriptionStore(tmp_path).subscribe("111", "Guild / payouts")

        store = SubscriptionStore(tmp_path)
        assert store.targets() == {"111": "Guild / payouts"}
        assert store.is_subscribed("111")

    def test_unsubscribe(self, tmp_path):
        """Unsubscribing removes the target."""
        store = SubscriptionStore(tmp_path)
        store.subscribe("111", "a")
        store.subscribe("222", "b")

        assert store.unsubscribe("111") is True
        assert store.unsubscribe("111") is False
        assert SubscriptionStore(tmp_path).targets() == {"222": "b"}

    def test_targets_is_a_copy(self, tmp_path):
        """Mutating the returned map does not change the store."""
        store = SubscriptionStore(tmp_path)
        store.subscribe("111", "a")
        store.targets()["999"] = "x"
        assert not store.is_subscribed("999")
