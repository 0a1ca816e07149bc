"""
Tests for payoutwatch/protocol/confirmations.py
"""

import json
import pytest
from datetime import datetime, timezone

from payoutwatch.errors import PersistenceFailure
from payoutwatch.protocol.confirmations import FileConfirmationFeed, parse_timestamp
from payoutwatch.protocol.storage import DurableStateStore


class TestParseTimestamp:
    """Tests for parse_timestamp."""

    def test_unix_number(self):
        """Numbers are unix seconds."""
        assert parse_timestamp(1_700_000_000) == 1_700_000_000.0
        assert parse_timestamp(1.5) == 1.5

    def test_rfc3339_utc(self):
        """Z-suffixed timestamps are UTC."""
        assert parse_timestamp("2023-11-14T22:13:20Z") == 1_700_000_000.0

    def test_nanoseconds_truncated(self):
        """Fractions beyond microseconds are dropped."""
        expected = datetime(2024, 1, 2, 3, 4, 5, 123456, tzinfo=timezone.utc).timestamp()
        assert parse_timestamp("2024-01-02T03:04:05.123456789Z") == expected

    def test_offset(self):
        """Explicit offsets are honoured."""
        assert parse_timestamp("2023-11-15T00:13:20+02:00") == 1_700_000_000.0

    def test_invalid(self):
        """Missing or malformed values raise ValueError."""
        with pytest.raises(ValueError):
            parse_timestamp(None)
        with pytest.raises(ValueError):
            parse_timestamp("")
        with pytest.raises(ValueError):
            parse_timestamp("yesterday")


class TestFileConfirmationFeed:
    """Tests for FileConfirmationFeed."""

    def write(self, path, records):
        path.write_text(json.dumps(records))

    def test_missing_file(self, tmp_path):
        """No file means no confirmation."""
        feed = FileConfirmationFeed(tmp_path / "payout_tx.json", DurableStateStore(tmp_path))
        assert feed.get_latest() is None

    def test_latest_record(self, tmp_path):
        """Only the last record is returned."""
        path = tmp_path / "payout_tx.json"
        self.write(path, [
            {"hash": "0x1", "blockNumber": 100, "ts": 1_699_000_000, "processed": True},
            {"hash": "0x2", "blockNumber": 200, "ts": "2023-11-14T22:13:20Z", "processed": False},
        ])
        latest = FileConfirmationFeed(path, DurableStateStore(tmp_path)).get_latest()

        assert latest.confirmation_id == "0x2"
        assert latest.block_reference == 200
        assert latest.observed_at == 1_700_000_000.0
        assert latest.already_processed is False

    def test_processed_flag_in_record(self, tmp_path):
        """A record marked processed by the receiver is processed."""
        path = tmp_path / "payout_tx.json"
        self.write(path, [{"hash": "0x1", "blockNumber": 100, "ts": 1, "processed": True}])

        assert FileConfirmationFeed(path, DurableStateStore(tmp_path)).get_latest().already_processed

    def test_processed_in_store(self, tmp_path):
        """A record marked in the durable store is processed."""
        path = tmp_path / "payout_tx.json"
        self.write(path, [{"hash": "0x1", "blockNumber": 100, "ts": 1}])
        store = DurableStateStore(tmp_path)
        store.mark_processed("0x1")

        assert FileConfirmationFeed(path, store).get_latest().already_processed

    def test_bad_records_ignored(self, tmp_path):
        """Records without hash or with a bad timestamp are ignored."""
        path = tmp_path / "payout_tx.json"
        store = DurableStateStore(tmp_path)

        self.write(path, [{"blockNumber": 100, "ts": 1}])
        assert FileConfirmationFeed(path, store).get_latest() is None

        self.write(path, [{"hash": "0x1", "blockNumber": 100, "ts": "soon"}])
        assert FileConfirmationFeed(path, store).get_latest() is None

    def test_corrupt_file(self, tmp_path):
        """A corrupt feed file raises PersistenceFailure."""
        path = tmp_path / "payout_tx.json"
        path.write_text("[{")
        with pytest.raises(PersistenceFailure):
            FileConfirmationFeed(path, DurableStateStore(tmp_path)).get_latest()
