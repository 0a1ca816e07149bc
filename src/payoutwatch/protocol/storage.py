"""
payoutwatch/protocol/storage.py

Durable state for payout detection and alerting.

Files (all JSON, under one data directory):
1. last_payout.json   - the most recent Payout with its AlertOutcome
2. payout_log.json    - append-only array of every dispatched Payout
3. confirmations.json - settlement confirmations already consumed
4. subscriptions.json - alert targets {destination_id: label}

Every write replaces the whole file atomically (temp file + rename).
All state is read when the store is opened.
"""

import os
import json
import time
import logging
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..config import DEFAULT_DATA_DIR
from ..errors import PersistenceFailure
from .alerts import Payout

logger = logging.getLogger("payoutwatch.protocol.storage")


# ============================================================================
# CONSTANTS
# ============================================================================

LAST_PAYOUT_FILE = "last_payout.json"
PAYOUT_LOG_FILE = "payout_log.json"
CONFIRMATIONS_FILE = "confirmations.json"
SUBSCRIPTIONS_FILE = "subscriptions.json"


# ============================================================================
# FILE HELPERS
# ============================================================================

def atomic_write_json(path: Path, data: Any) -> None:
    """
    Write JSON to path via a temp file in the same directory and a rename.

    Raises:
        PersistenceFailure: If the data cannot be serialized or written
    """
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=4)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
    except (OSError, TypeError, ValueError) as e:
        raise PersistenceFailure(f"Failed to write {path}: {e}")


def read_json(path: Path, default: Any) -> Any:
    """
    Read a JSON file, returning default if it does not exist or is empty.

    Raises:
        PersistenceFailure: If the file exists but cannot be read or parsed
    """
    path = Path(path)
    if not path.exists():
        return default
    try:
        text = path.read_text()
    except OSError as e:
        raise PersistenceFailure(f"Failed to read {path}: {e}")
    if not text.strip():
        return default
    try:
        return json.loads(text)
    except ValueError as e:
        raise PersistenceFailure(f"Corrupt JSON in {path}: {e}")


# ============================================================================
# DURABLE STATE STORE
# ============================================================================

class DurableStateStore:
    """
    Single writer for last-payout, payout-log and confirmation state.

    Methods are synchronous and serialized by a lock, so the timer path
    and manual triggers can both call them.

    Usage:
        store = DurableStateStore(Path("~/.payoutwatch").expanduser())
        last = store.load_last_payout()
        store.save_last_payout(payout)
        store.append_to_payout_log(payout)

        if not store.is_processed(tx_hash):
            ...
            store.mark_processed(tx_hash)
    """

    def __init__(self, data_dir: Path = None):
        """
        Open the store and load persisted state.

        Raises:
            PersistenceFailure: If the confirmation state file is unreadable.
                Starting without it could re-alert consumed cycles.
        """
        self.data_dir = Path(data_dir or DEFAULT_DATA_DIR)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.last_payout_path = self.data_dir / LAST_PAYOUT_FILE
        self.payout_log_path = self.data_dir / PAYOUT_LOG_FILE
        self.confirmations_path = self.data_dir / CONFIRMATIONS_FILE

        self._lock = threading.Lock()
        self._last_payout: Optional[Payout] = None
        self._processed: Dict[str, dict] = {}

        self._load()

    def _load(self) -> None:
        try:
            data = read_json(self.last_payout_path, None)
            self._last_payout = Payout.from_dict(data) if data else None
        except (PersistenceFailure, KeyError, TypeError, ValueError) as e:
            logger.error(f"Failed to load last payout, starting without one: {e}")
            self._last_payout = None

        confirmations = read_json(self.confirmations_path, {})
        self._processed = dict(confirmations.get("processed", {}))

        logger.info(
            f"Loaded state from {self.data_dir}: "
            f"last payout={'yes' if self._last_payout else 'none'}, "
            f"{len(self._processed)} processed confirmations"
        )

    # ========================================================================
    # LAST PAYOUT
    # ========================================================================

    def load_last_payout(self) -> Optional[Payout]:
        """Last persisted payout, or None."""
        with self._lock:
            return self._last_payout

    def save_last_payout(self, payout: Payout) -> None:
        """
        Replace the last-payout record.

        Raises:
            PersistenceFailure: On write failure (in-memory copy is unchanged)
        """
        with self._lock:
            atomic_write_json(self.last_payout_path, payout.to_dict())
            self._last_payout = payout

    # ========================================================================
    # PAYOUT LOG
    # ========================================================================

    def append_to_payout_log(self, payout: Payout) -> None:
        """
        Append a payout to the history log.

        Raises:
            PersistenceFailure: If the log is unreadable or cannot be written.
                An unreadable log is never overwritten.
        """
        with self._lock:
            entries = read_json(self.payout_log_path, [])
            if not isinstance(entries, list):
                raise PersistenceFailure(f"{self.payout_log_path} is not a JSON array")
            entries.append(payout.to_dict())
            atomic_write_json(self.payout_log_path, entries)

    def load_payout_log(self, limit: Optional[int] = None) -> List[Payout]:
        """Payouts from the history log, oldest first (last `limit` if given)."""
        with self._lock:
            entries = read_json(self.payout_log_path, [])
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return [Payout.from_dict(e) for e in entries]

    # ========================================================================
    # CONFIRMATIONS
    # ========================================================================

    def is_processed(self, confirmation_id: str) -> bool:
        with self._lock:
            return confirmation_id in self._processed

    def mark_processed(self, confirmation_id: str, block_reference: Optional[int] = None) -> None:
        """
        Record a confirmation as consumed.

        Raises:
            PersistenceFailure: On write failure (the ID stays unprocessed)
        """
        with self._lock:
            processed = dict(self._processed)
            processed[confirmation_id] = {
                "processed_at": time.time(),
                "block_reference": block_reference,
            }
            atomic_write_json(self.confirmations_path, {"processed": processed})
            self._processed = processed
        logger.info(f"Confirmation {confirmation_id} marked processed")


# ============================================================================
# SUBSCRIPTIONS
# ============================================================================

class SubscriptionStore:
    """
    Persistent payout alert targets.

    Maps destination ID (chat channel) to a free-form label recorded when
    the subscription was made.
    """

    def __init__(self, data_dir: Path = None):
        self.path = Path(data_dir or DEFAULT_DATA_DIR) / SUBSCRIPTIONS_FILE
        self._lock = threading.Lock()
        self._targets: Dict[str, str] = dict(read_json(self.path, {}))

    def targets(self) -> Dict[str, str]:
        """Snapshot of current targets."""
        with self._lock:
            return dict(self._targets)

    def is_subscribed(self, destination_id: str) -> bool:
        with self._lock:
            return destination_id in self._targets

    def subscribe(self, destination_id: str, label: str = "") -> None:
        with self._lock:
            targets = dict(self._targets)
            targets[destination_id] = label
            atomic_write_json(self.path, targets)
            self._targets = targets
        logger.info(f"Payout alerts enabled for {destination_id}")

    def unsubscribe(self, destination_id: str) -> bool:
        """Remove a target. Returns False if it was not subscribed."""
        with self._lock:
            if destination_id not in self._targets:
                return False
            targets = dict(self._targets)
            del targets[destination_id]
            atomic_write_json(self.path, targets)
            self._targets = targets
        logger.info(f"Payout alerts disabled for {destination_id}")
        return True
