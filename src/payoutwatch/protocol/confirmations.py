"""
payoutwatch/protocol/confirmations.py

Settlement confirmations for payout cycles.

An external receiver records payout transactions as they land on chain.
When available, the latest one supplies the authoritative block number
and time for a Payout and is the unit that gets marked processed after
its alert is dispatched.
"""

import re
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, TYPE_CHECKING

from .storage import read_json

if TYPE_CHECKING:
    from .storage import DurableStateStore

logger = logging.getLogger("payoutwatch.protocol.confirmations")

# Go-style RFC3339 timestamps may carry nanoseconds; datetime takes 6 digits
_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


@dataclass
class Confirmation:
    """Latest observed settlement transaction."""
    confirmation_id: str
    block_reference: int
    observed_at: float
    already_processed: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


def parse_timestamp(value: Any) -> float:
    """Parse a unix timestamp or an ISO-8601/RFC3339 string into unix seconds."""
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str) or not value:
        raise ValueError(f"Invalid timestamp: {value!r}")
    text = _FRACTION_RE.sub(r"\1", value.strip())
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


class ConfirmationFeed(ABC):
    """Source of settlement confirmations."""

    @abstractmethod
    def get_latest(self) -> Optional[Confirmation]:
        """Most recent confirmation, or None if there is none."""
        pass


class FileConfirmationFeed(ConfirmationFeed):
    """
    Reads the JSON array of payout transactions written by a receiver.

    Records look like {"hash": "0x..", "blockNumber": 123, "ts": "...",
    "processed": false}. Only the last record matters. It counts as
    processed if the record says so or the durable store has it marked.
    """

    def __init__(self, path: Path, store: "DurableStateStore"):
        self.path = Path(path)
        self._store = store

    def get_latest(self) -> Optional[Confirmation]:
        """
        Raises:
            PersistenceFailure: If the feed file is unreadable
        """
        records = read_json(self.path, [])
        if not records:
            return None

        latest = records[-1]
        confirmation_id = str(latest.get("hash", ""))
        if not confirmation_id:
            logger.warning(f"Latest record in {self.path} has no hash, ignoring")
            return None

        try:
            observed_at = parse_timestamp(latest.get("ts"))
        except ValueError as e:
            logger.warning(f"Confirmation {confirmation_id} has a bad timestamp: {e}")
            return None

        return Confirmation(
            confirmation_id=confirmation_id,
            block_reference=int(latest.get("blockNumber", 0)),
            observed_at=observed_at,
            already_processed=bool(latest.get("processed")) or self._store.is_processed(confirmation_id),
        )
