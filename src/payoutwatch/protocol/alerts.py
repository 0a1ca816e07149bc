"""
Payout alert dispatch for payoutwatch.

Sends a formatted payout notification to every subscribed destination:
- A failure at one destination is recorded and never stops the batch
- Every destination gets a DeliveryRecord, delivered or not
- The outcome is written with the Payout to the last-payout file and
  appended to the payout log

Previously sent alerts can be corrected in place with update().
"""

import time
import logging
from datetime import datetime, timezone
from dataclasses import dataclass, field, asdict
from typing import Optional, List, Dict, Any, Callable, TYPE_CHECKING

import trio

from ..config import TIER_IDS
from ..errors import PersistenceFailure

if TYPE_CHECKING:
    from ..messaging.sender import MessageSender
    from ..metrics import MetricsCollector
    from .storage import DurableStateStore

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

DASH_LINE = "-" * 47 + "\n"

ALERT_HEADLINE = "Delicious payout is served!"

DISCLAIMER = (
    "Disclaimer: Actual amount received may vary from the amounts displayed "
    "due to the tier distribution returned by API includes ineligible node statuses."
)

NO_PREVIOUS_MESSAGE = "No previous message to edit"


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class DeliveryRecord:
    """Result of delivering one alert to one destination."""
    destination_id: str
    delivered: bool
    error_text: Optional[str] = None
    message_ref: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> 'DeliveryRecord':
        return cls(**data)


@dataclass
class AlertOutcome:
    """Summary of one dispatch or update pass."""
    total_targets: int = 0
    success_count: int = 0
    fail_count: int = 0
    deliveries: List[DeliveryRecord] = field(default_factory=list)

    @property
    def alert_sent(self) -> bool:
        return self.success_count > 0

    @classmethod
    def from_deliveries(cls, deliveries: List[DeliveryRecord]) -> 'AlertOutcome':
        success = sum(1 for d in deliveries if d.delivered)
        return cls(
            total_targets=len(deliveries),
            success_count=success,
            fail_count=len(deliveries) - success,
            deliveries=list(deliveries),
        )

    def summary(self, action: str = "sent") -> str:
        return (
            f"Payout alert {action}. \n"
            f"Total channels: {self.total_targets}\n"
            f"Success: {self.success_count}\n"
            f"Failed: {self.fail_count}"
        )

    def to_dict(self) -> dict:
        return {
            'total_targets': self.total_targets,
            'success_count': self.success_count,
            'fail_count': self.fail_count,
            'deliveries': [d.to_dict() for d in self.deliveries],
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'AlertOutcome':
        return cls(
            total_targets=data.get('total_targets', 0),
            success_count=data.get('success_count', 0),
            fail_count=data.get('fail_count', 0),
            deliveries=[DeliveryRecord.from_dict(d) for d in data.get('deliveries', [])],
        )


@dataclass
class Payout:
    """
    One completed minting cycle.

    Reward fields are fixed when the payout is built; only alert_outcome
    is filled in later, by the dispatcher.
    """
    minted: float
    fees: float
    total: float
    duration: str                      # "HH:MM"
    observed_at: float                 # unix timestamp
    per_tier_reward: Dict[str, float]  # reward per node, t1..t4
    tier_counts: Dict[str, float] = field(default_factory=dict)
    block_reference: Optional[int] = None
    hosting_fee_usd: float = 0.0
    hosting_fee_coin: float = 0.0
    price_usd: float = 0.0
    alert_outcome: AlertOutcome = field(default_factory=AlertOutcome)

    def to_dict(self) -> dict:
        data = asdict(self)
        data['alert_outcome'] = self.alert_outcome.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> 'Payout':
        data = dict(data)
        outcome = data.pop('alert_outcome', None) or {}
        payout = cls(**data)
        payout.alert_outcome = AlertOutcome.from_dict(outcome)
        return payout

    def same_cycle(self, other: Optional['Payout']) -> bool:
        """True if other describes the same distributed balances and time."""
        return (
            other is not None
            and other.minted == self.minted
            and other.fees == self.fees
            and other.observed_at == self.observed_at
        )


# =============================================================================
# FORMATTING
# =============================================================================

def format_num(num: float, dp: int = 0) -> str:
    """Number with thousands separators."""
    return f"{num:,.{dp}f}"


def fill_or_limit(value: Any, width: int, filler: str = " ") -> str:
    """Pad to width with filler, or truncate to width."""
    text = str(value)
    if len(text) > width:
        return text[:width]
    return text + filler * (width - len(text))


def format_payout(payout: Payout) -> str:
    """Payout summary block."""
    ts = datetime.fromtimestamp(payout.observed_at, tz=timezone.utc).strftime("%Y-%m-%d %H:%M")
    text = (
        f"Time   : {ts} UTC (approx.)\n" + DASH_LINE +
        f"Minted : {fill_or_limit(format_num(payout.minted), 10)} | "
        f"Fees     : {fill_or_limit(format_num(payout.fees), 10)}\n" + DASH_LINE +
        f"Total  : {fill_or_limit(format_num(payout.total), 10)} | "
        f"Duration : {payout.duration}\n"
    )
    if payout.price_usd > 0:
        text += DASH_LINE + (
            f"Hosting Fee/MN: ${format_num(payout.hosting_fee_usd, 4)} "
            f"({format_num(payout.hosting_fee_coin)}H) @ ${payout.price_usd}/H\n"
        )
    return text


def format_alert(payout: Payout, explorer_url: str = "") -> str:
    """Full payout alert: summary, tier table, block link, disclaimer."""
    rewards = " | ".join(
        fill_or_limit(format_num(payout.per_tier_reward.get(t, 0.0) - payout.hosting_fee_coin), 7)
        for t in TIER_IDS
    )
    nodes = " | ".join(
        fill_or_limit(format_num(payout.tier_counts.get(t, 0.0)), 7)
        for t in TIER_IDS
    )
    text = (
        f"{ALERT_HEADLINE}```js\n{format_payout(payout)}" + DASH_LINE +
        "         Tier 1  | Tier 2  | Tier 3  | Tier 4\n" + DASH_LINE +
        f"Rewards: {rewards}\n" + DASH_LINE +
        f"Nodes  : {nodes}\n```"
    )
    if payout.block_reference and explorer_url:
        text += f"{explorer_url.rstrip('/')}/block/{payout.block_reference}\n"
    text += f"```fix\n{DISCLAIMER}```"
    return text


# =============================================================================
# ALERT DISPATCHER
# =============================================================================

class AlertDispatcher:
    """
    Fans a payout alert out to subscribed destinations.

    Dispatches are serialized, so the detector loop and manual triggers
    can share one dispatcher. Within a pass, sends run one after another
    in target order, each bounded by send_timeout.

    Usage:
        dispatcher = AlertDispatcher(sender, store, explorer_url=url)
        outcome = await dispatcher.dispatch(payout, subscriptions.targets())

        # Later correction of the same alert
        outcome = await dispatcher.update(corrected, payout.alert_outcome.deliveries)
    """

    def __init__(
        self,
        sender: "MessageSender",
        store: "DurableStateStore",
        explorer_url: str = "",
        send_timeout: float = 15.0,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self._sender = sender
        self._store = store
        self._explorer_url = explorer_url
        self._send_timeout = send_timeout
        self._metrics = metrics
        self._lock = trio.Lock()

    async def dispatch(self, payout: Payout, targets: Dict[str, str]) -> AlertOutcome:
        """
        Send a new alert to every target and persist the result.

        Args:
            payout: Payout to announce; its alert_outcome is replaced
            targets: {destination_id: label}

        Returns:
            AlertOutcome with one DeliveryRecord per target
        """
        text = format_alert(payout, self._explorer_url)
        async with self._lock:
            deliveries = []
            for destination_id, label in targets.items():
                record = await self._deliver(
                    destination_id,
                    lambda: self._sender.send(destination_id, text),
                )
                if not record.delivered:
                    logger.warning(
                        f"Payout alert failed! Destination: {destination_id}, "
                        f"Name: {label}, Error: {record.error_text}"
                    )
                deliveries.append(record)

            return self._finish(payout, deliveries)

    async def update(self, payout: Payout, existing: List[DeliveryRecord]) -> AlertOutcome:
        """
        Edit previously sent alerts in place.

        Destinations whose earlier delivery has no message reference are
        recorded as failures.
        """
        text = format_alert(payout, self._explorer_url)
        async with self._lock:
            deliveries = []
            for previous in existing:
                destination_id = previous.destination_id
                message_ref = previous.message_ref
                if not message_ref:
                    deliveries.append(DeliveryRecord(
                        destination_id=destination_id,
                        delivered=False,
                        error_text=NO_PREVIOUS_MESSAGE,
                    ))
                    continue

                record = await self._deliver(
                    destination_id,
                    lambda: self._sender.edit(destination_id, message_ref, text),
                )
                if not record.delivered:
                    logger.warning(
                        f"Payout alert update failed! Destination: {destination_id}, "
                        f"Error: {record.error_text}"
                    )
                deliveries.append(record)

            return self._finish(payout, deliveries)

    async def _deliver(self, destination_id: str, attempt: Callable) -> DeliveryRecord:
        """Run one send/edit with a timeout; never raises for delivery errors."""
        try:
            with trio.fail_after(self._send_timeout):
                message_ref = await attempt()
        except trio.TooSlowError:
            return DeliveryRecord(
                destination_id=destination_id,
                delivered=False,
                error_text=f"Timed out after {self._send_timeout}s",
            )
        except Exception as e:
            return DeliveryRecord(
                destination_id=destination_id,
                delivered=False,
                error_text=str(e) or type(e).__name__,
            )
        return DeliveryRecord(
            destination_id=destination_id,
            delivered=True,
            message_ref=message_ref,
        )

    def _finish(self, payout: Payout, deliveries: List[DeliveryRecord]) -> AlertOutcome:
        outcome = AlertOutcome.from_deliveries(deliveries)
        payout.alert_outcome = outcome
        logger.info(
            f"Payout alert summary: Total channels: {outcome.total_targets} | "
            f"Success: {outcome.success_count} | Failure: {outcome.fail_count}"
        )
        if self._metrics:
            self._metrics.record_deliveries(outcome.success_count, outcome.fail_count)

        self.persist(payout)
        return outcome

    def persist(self, payout: Payout) -> bool:
        """
        Write the payout as last payout and append it to the log.

        Each write is tried twice. A second failure is logged and reported
        by the return value; it never raises.
        """
        saved = _write_with_retry("save last payout", self._store.save_last_payout, payout)
        logged = _write_with_retry("append payout log", self._store.append_to_payout_log, payout)
        return saved and logged


def _write_with_retry(what: str, write: Callable[[Payout], None], payout: Payout) -> bool:
    for attempt in (1, 2):
        try:
            write(payout)
            return True
        except PersistenceFailure as e:
            if attempt == 1:
                logger.warning(f"Failed to {what}, retrying: {e}")
            else:
                logger.error(
                    f"Failed to {what} after retry, payout of {payout.total:.0f} "
                    f"at {time.strftime('%Y-%m-%d %H:%M:%S', time.gmtime(payout.observed_at))} not persisted: {e}"
                )
    return False
