"""
payoutwatch/protocol/detector.py

Payout detection from polled reward pool balances.

The ledger never announces a payout. The detector polls the minted pool
and fee balances on a fixed interval and infers that a cycle closed when
a well-filled pool suddenly reads (near) empty:

1. Poll (minted, fees). Oracle failure: skip the tick.
2. Validity gate: the minting time implied by the balance must agree with
   the elapsed time to within one minting cycle, otherwise the reading is
   an API glitch and is dropped.
3. Closure: previous minted > min payout, new minted smaller and within
   a couple of block rewards. The payout is built from the PREVIOUS
   snapshot, which holds the balances that were actually distributed.
4. Tier counts -> RewardCalculator -> Payout -> AlertDispatcher.

Manual entry points let an operator supply minted/fees directly; they
share the calculator, dispatcher and the detector's state lock.
"""

import time
import logging
from dataclasses import dataclass, replace
from enum import Enum
from functools import partial
from typing import Awaitable, Callable, Dict, Optional, Tuple, TYPE_CHECKING

import trio

from ..config import AlertConfig, TIER_IDS
from ..errors import OracleUnavailable, PersistenceFailure, PayoutConstructionError
from .alerts import Payout, AlertDispatcher
from .rewards import RewardCalculator, estimate_hosting_fee

if TYPE_CHECKING:
    from ..oracle.client import BalanceOracleClient
    from ..metrics import MetricsCollector
    from .confirmations import Confirmation, ConfirmationFeed
    from .storage import DurableStateStore

logger = logging.getLogger("payoutwatch.protocol.detector")


# ============================================================================
# CONSTANTS
# ============================================================================

# Upper bound for one blocking oracle operation (all tiers included)
DEFAULT_CALL_TIMEOUT = 120.0  # seconds


# ============================================================================
# DATA STRUCTURES
# ============================================================================

class DetectorPhase(Enum):
    """Where the detector is in the payout cycle."""
    IDLE = "idle"                  # No snapshot yet
    TRACKING = "tracking"          # Pool accumulating
    CYCLE_CLOSED = "cycle_closed"  # Reset seen, payout not yet dispatched


class PollOutcome(Enum):
    """Result of one detector tick."""
    SKIPPED = "skipped"                        # Previous tick still running
    ORACLE_UNAVAILABLE = "oracle_unavailable"  # Balances could not be read
    INVALID_READING = "invalid_reading"        # Rejected by the validity gate
    TRACKING = "tracking"                      # Baseline updated
    CYCLE_CLOSED = "cycle_closed"              # Payout built and dispatched
    PENDING = "pending"                        # Closure seen, dispatch deferred
    DUPLICATE = "duplicate"                    # Cycle already handled


@dataclass
class RewardPoolSnapshot:
    """One poll of the reward pool."""
    minted: float
    fees: float
    observed_at: float


class DetectorState:
    """
    Mutable detector state, owned by one PayoutDetector.

    Only read or changed while the detector's lock is held.
    """

    def __init__(self, last_payout: Optional[Payout] = None):
        self.last_snapshot: Optional[RewardPoolSnapshot] = None
        self.last_payout: Optional[Payout] = last_payout
        self.pending: Optional[RewardPoolSnapshot] = None
        self.pending_ticks = 0
        self.consecutive_rejections = 0

    @property
    def phase(self) -> DetectorPhase:
        if self.pending is not None:
            return DetectorPhase.CYCLE_CLOSED
        if self.last_snapshot is None:
            return DetectorPhase.IDLE
        return DetectorPhase.TRACKING

    def accept(self, snapshot: RewardPoolSnapshot) -> None:
        self.last_snapshot = snapshot
        self.consecutive_rejections = 0

    def reject(self) -> int:
        self.consecutive_rejections += 1
        return self.consecutive_rejections

    @property
    def cycle_started_at(self) -> Optional[float]:
        """Reference time for the validity gate: when the current cycle began."""
        if self.pending is not None:
            return self.pending.observed_at
        if self.last_payout is not None:
            return self.last_payout.observed_at
        return None

    def close_cycle(self, previous: RewardPoolSnapshot, reading: RewardPoolSnapshot) -> None:
        self.pending = previous
        self.pending_ticks = 0
        self.accept(reading)

    def drop_pending(self) -> Optional[RewardPoolSnapshot]:
        dropped, self.pending = self.pending, None
        self.pending_ticks = 0
        return dropped

    def payout_done(self, payout: Payout) -> None:
        self.last_payout = payout
        self.drop_pending()

    def to_dict(self) -> dict:
        return {
            'phase': self.phase.value,
            'last_snapshot': vars(self.last_snapshot) if self.last_snapshot else None,
            'pending': vars(self.pending) if self.pending else None,
            'pending_ticks': self.pending_ticks,
            'last_payout_at': self.last_payout.observed_at if self.last_payout else None,
            'consecutive_rejections': self.consecutive_rejections,
        }


# ============================================================================
# PAYOUT DETECTOR
# ============================================================================

class PayoutDetector:
    """
    Infers completed payout cycles from polled pool balances.

    Ticks never overlap: a tick that starts while another (or a manual
    trigger) holds the lock is skipped. Manual triggers wait for the lock.

    Usage:
        detector = PayoutDetector(oracle, dispatcher, calculator, store,
                                  targets=subscriptions.targets)
        async with trio.open_nursery() as nursery:
            nursery.start_soon(detector.run, 120)

        # From an operator command
        summary = await detector.trigger_manual(minted=12000, fees=50)
    """

    def __init__(
        self,
        oracle: "BalanceOracleClient",
        dispatcher: AlertDispatcher,
        calculator: RewardCalculator,
        store: "DurableStateStore",
        targets: Callable[[], Dict[str, str]],
        config: Optional[AlertConfig] = None,
        confirmations: Optional["ConfirmationFeed"] = None,
        price_getter: Optional[Callable[[], float]] = None,
        operator_notify: Optional[Callable[[str], Awaitable[None]]] = None,
        metrics: Optional["MetricsCollector"] = None,
        clock: Callable[[], float] = time.time,
        call_timeout: float = DEFAULT_CALL_TIMEOUT,
    ):
        """
        Initialize PayoutDetector.

        Args:
            oracle: Balance oracle client (blocking; run on worker threads)
            dispatcher: Alert dispatcher shared with manual triggers
            calculator: Reward calculator
            store: Durable state store (last payout, processed confirmations)
            targets: Returns the current {destination_id: label} map
            config: Detector thresholds
            confirmations: Optional settlement confirmation feed
            price_getter: Optional blocking callable returning coin price in USD
            operator_notify: Optional coroutine for failure notices to an operator
            metrics: Optional metrics collector
            clock: Time source (unix seconds)
            call_timeout: Bound for one blocking oracle operation
        """
        self.oracle = oracle
        self.dispatcher = dispatcher
        self.calculator = calculator
        self.store = store
        self.config = config or AlertConfig()
        self._targets = targets
        self._confirmations = confirmations
        self._price_getter = price_getter
        self._operator_notify = operator_notify
        self._metrics = metrics
        self._clock = clock
        self._call_timeout = call_timeout

        self.state = DetectorState(last_payout=store.load_last_payout())
        self._lock = trio.Lock()
        self._running = False

    # ========================================================================
    # THRESHOLDS
    # ========================================================================

    @property
    def minting(self):
        return self.calculator.minting

    @property
    def min_payout(self) -> float:
        return self.minting.min_payout

    @property
    def reset_ceiling(self) -> float:
        return self.minting.block_reward * self.config.reset_ceiling_cycles

    def is_reset(self, previous: RewardPoolSnapshot, reading: RewardPoolSnapshot) -> bool:
        """Closure heuristic: a well-filled pool now reads (near) empty."""
        return (
            previous.minted > 0
            and previous.minted > self.min_payout
            and reading.minted < previous.minted
            and reading.minted <= self.reset_ceiling
        )

    def is_consistent(self, reading: RewardPoolSnapshot, since: float) -> bool:
        """
        Validity gate: implied minting time vs elapsed time since `since`,
        within one minting cycle.
        """
        expected = self.calculator.expected_minutes(reading.minted)
        actual = (reading.observed_at - since) / 60
        return abs(actual - expected) <= self.minting.block_cycle_minutes

    def _reset_consistent(self, previous: RewardPoolSnapshot, reading: RewardPoolSnapshot) -> bool:
        # The new cycle began after the previous poll; it cannot be older
        # than the time since then plus one cycle.
        expected = self.calculator.expected_minutes(reading.minted)
        elapsed = (reading.observed_at - previous.observed_at) / 60
        return expected <= elapsed + self.minting.block_cycle_minutes

    def _in_cooldown(self, now: float) -> bool:
        last = self.state.last_payout
        if last is None:
            return False
        return (now - last.observed_at) / 60 < self.config.payout_cooldown_minutes

    # ========================================================================
    # TIMER LOOP
    # ========================================================================

    async def run(self, interval: Optional[float] = None) -> None:
        """
        Start a tick every `interval` seconds, the first one immediately.

        Ticks run as separate tasks, so a slow tick causes the next
        ones to be skipped, never to queue up.
        """
        interval = interval or self.config.interval_seconds
        self._running = True
        logger.info(f"Payout detector started, polling every {interval}s")
        async with trio.open_nursery() as nursery:
            while self._running:
                nursery.start_soon(self._guarded_poll)
                await trio.sleep(interval)
            nursery.cancel_scope.cancel()
        logger.info("Payout detector stopped")

    def stop(self) -> None:
        self._running = False

    async def _guarded_poll(self) -> None:
        try:
            await self.poll()
        except Exception as e:
            logger.error(f"Payout check failed: {type(e).__name__}: {e}")

    async def poll(self) -> PollOutcome:
        """Run one tick, unless one is already in progress."""
        if self._lock.locked():
            logger.warning("Previous payout check still running, skipping tick")
            outcome = PollOutcome.SKIPPED
        else:
            async with self._lock:
                outcome = await self._tick()
        if self._metrics:
            self._metrics.record_poll(outcome.value)
        return outcome

    async def _tick(self) -> PollOutcome:
        state = self.state

        if state.pending is not None:
            await self._retry_pending()

        now = self._clock()
        try:
            minted, fees = await self._run_sync(self.oracle.get_pool_balances)
        except OracleUnavailable as e:
            logger.warning(f"Failed to read pool balances, skipping tick: {e}")
            return PollOutcome.ORACLE_UNAVAILABLE

        reading = RewardPoolSnapshot(minted=minted, fees=fees, observed_at=now)
        logger.info(
            f"Total: {minted + fees:.0f} | Minted: {minted:.0f} | Fees: {fees:.0f} | "
            f"Time: {_format_ts(now)}"
        )

        previous = state.last_snapshot
        if previous is not None and self.is_reset(previous, reading):
            if not self._reset_consistent(previous, reading):
                return self._invalid(reading, "reset implies more minting than elapsed time")
            if self._in_cooldown(now):
                return self._invalid(reading, "reset within payout cooldown")
            logger.info(
                f"Payout cycle closed: minted {previous.minted:.0f} -> {reading.minted:.0f}"
            )
            if state.pending is not None:
                await self._drop_pending("superseded by a newer closed cycle")
            state.close_cycle(previous, reading)
            return await self._complete_cycle(previous)

        since = state.cycle_started_at
        if since is not None and not self.is_consistent(reading, since):
            return self._invalid(reading, "implied duration does not match time since cycle start")

        state.accept(reading)
        if state.pending is not None:
            return PollOutcome.PENDING
        return PollOutcome.TRACKING

    async def _retry_pending(self) -> None:
        state = self.state
        logger.info("Retrying deferred payout")
        if await self._complete_cycle(state.pending) != PollOutcome.PENDING:
            return
        state.pending_ticks += 1
        if state.pending_ticks >= self.config.pending_max_ticks:
            await self._drop_pending(f"not dispatched after {state.pending_ticks} polls")

    async def _drop_pending(self, reason: str) -> None:
        dropped = self.state.drop_pending()
        text = (
            f"Payout of cycle closed at {_format_ts(dropped.observed_at)} "
            f"(minted {dropped.minted:.0f}) dropped, {reason}"
        )
        logger.error(text)
        await self._notify_operator(text)

    def _invalid(self, reading: RewardPoolSnapshot, reason: str) -> PollOutcome:
        rejections = self.state.reject()
        if rejections >= self.config.gate_resync_after:
            logger.warning(
                f"{rejections} readings rejected in a row, accepting minted "
                f"{reading.minted:.0f} as new baseline"
            )
            self.state.accept(reading)
            return PollOutcome.TRACKING
        logger.warning(f"Invalid reading ignored (minted {reading.minted:.0f}): {reason}")
        return PollOutcome.INVALID_READING

    # ========================================================================
    # CYCLE COMPLETION
    # ========================================================================

    async def _complete_cycle(self, snapshot: RewardPoolSnapshot) -> PollOutcome:
        """Build and dispatch the payout for a closed cycle, or defer it."""
        # A settlement for this cycle lands after its last pre-reset poll,
        # give or take one minting cycle.
        not_before = snapshot.observed_at - self.minting.block_cycle_minutes * 60
        confirmation = self._latest_confirmation()
        if (
            confirmation is not None
            and confirmation.already_processed
            and confirmation.observed_at >= not_before
        ):
            logger.info(
                f"Cycle already handled by confirmation {confirmation.confirmation_id}, not re-alerting"
            )
            self.state.drop_pending()
            return PollOutcome.DUPLICATE

        fresh = self._cycle_confirmation(confirmation, not_before)
        if fresh is None and self.config.require_confirmation:
            logger.info("Payout cycle closed, waiting for settlement confirmation")
            return PollOutcome.PENDING

        try:
            tier_counts = await self._fetch_tier_counts()
        except PayoutConstructionError as e:
            logger.error(f"Cannot build payout, deferring to next tick: {e}")
            await self._notify_operator(f"Payout detected but not alerted: {e}")
            return PollOutcome.PENDING

        payout = await self.build_payout(snapshot.minted, snapshot.fees, snapshot.observed_at, tier_counts, fresh)
        if payout.same_cycle(self.state.last_payout):
            logger.info("Payout matches last payout, not re-alerting")
            self.state.drop_pending()
            return PollOutcome.DUPLICATE

        await self._dispatch(payout, fresh)
        if self._metrics:
            self._metrics.record_payout(payout.observed_at)
        return PollOutcome.CYCLE_CLOSED

    def _cycle_confirmation(
        self,
        confirmation: Optional["Confirmation"],
        not_before: float,
    ) -> Optional["Confirmation"]:
        """
        The confirmation if it settles the cycle being paid, else None.

        An unprocessed confirmation older than not_before, or not newer
        than the last payout, belongs to an earlier cycle. It is marked
        processed so it is never attached to a later payout.
        """
        if confirmation is None or confirmation.already_processed:
            return None
        last = self.state.last_payout
        if confirmation.observed_at < not_before or (
            last is not None and confirmation.observed_at <= last.observed_at
        ):
            logger.warning(
                f"Confirmation {confirmation.confirmation_id} from "
                f"{_format_ts(confirmation.observed_at)} predates this cycle, marking processed"
            )
            self._mark_processed(confirmation)
            return None
        return confirmation

    async def _dispatch(self, payout: Payout, confirmation: Optional["Confirmation"]) -> None:
        outcome = await self.dispatcher.dispatch(payout, self._targets())
        self.state.payout_done(payout)
        if confirmation is not None:
            self._mark_processed(confirmation)
        if outcome.fail_count:
            await self._notify_operator(
                f"Payout alert delivery failures: {outcome.fail_count} of {outcome.total_targets}"
            )

    def _mark_processed(self, confirmation: "Confirmation") -> bool:
        for attempt in (1, 2):
            try:
                self.store.mark_processed(confirmation.confirmation_id, confirmation.block_reference)
                return True
            except PersistenceFailure as e:
                if attempt == 1:
                    logger.warning(f"Failed to mark {confirmation.confirmation_id} processed, retrying: {e}")
                else:
                    logger.error(f"Failed to mark {confirmation.confirmation_id} processed: {e}")
        return False

    def _latest_confirmation(self) -> Optional["Confirmation"]:
        if self._confirmations is None:
            return None
        try:
            return self._confirmations.get_latest()
        except PersistenceFailure as e:
            logger.warning(f"Confirmation feed unreadable: {e}")
            return None

    async def _fetch_tier_counts(self) -> Dict[str, float]:
        """
        Tier counts, retried once if unavailable or degenerate (< 1).

        Raises:
            PayoutConstructionError: If no counts could be read at all
        """
        counts = await self._try_tier_counts()
        if counts is None or _degenerate(counts):
            logger.warning(f"Tier distribution unavailable or degenerate ({counts}), retrying")
            retry = await self._try_tier_counts()
            if retry is not None:
                counts = retry
        if counts is None:
            raise PayoutConstructionError("tier distribution unavailable after retry")
        return counts

    async def _try_tier_counts(self) -> Optional[Dict[str, float]]:
        try:
            return await self._run_sync(self.oracle.get_tier_counts)
        except OracleUnavailable as e:
            logger.warning(f"Failed to retrieve tier distribution: {e}")
            return None

    async def build_payout(
        self,
        minted: float,
        fees: float,
        observed_at: float,
        tier_counts: Dict[str, float],
        confirmation: Optional["Confirmation"] = None,
    ) -> Payout:
        """Compute rewards and hosting fees for a cycle's balances."""
        rewards, duration = self.calculator.calculate(minted, fees, tier_counts)
        price = await self._price()
        fee_coin, fee_usd = estimate_hosting_fee(duration, self.minting.hosting_fee_usd, price)

        payout = Payout(
            minted=minted,
            fees=fees,
            total=minted + fees,
            duration=duration,
            observed_at=observed_at,
            per_tier_reward=rewards,
            tier_counts=dict(tier_counts),
            hosting_fee_usd=fee_usd,
            hosting_fee_coin=fee_coin,
            price_usd=price or 0.0,
        )
        if confirmation is not None:
            payout.block_reference = confirmation.block_reference
            payout.observed_at = confirmation.observed_at

        logger.info(
            f"Payout: Total: {payout.total:.0f} | Minted: {minted:.0f} | Fees: {fees:.0f} | "
            f"Time: {_format_ts(payout.observed_at)} | HostingFee: {fee_coin:.0f} (${fee_usd:.0f}) | "
            "Distribution=> " + ", ".join(f"{t.upper()}: {tier_counts.get(t, 0):.0f}" for t in TIER_IDS)
        )
        return payout

    async def _price(self) -> Optional[float]:
        if self._price_getter is None:
            return None
        try:
            return await self._run_sync(self._price_getter)
        except Exception as e:
            logger.warning(f"Price lookup failed, hosting fee omitted: {e}")
            return None

    async def _run_sync(self, fn: Callable, *args):
        """Run a blocking call on a worker thread with a bounded timeout."""
        try:
            with trio.fail_after(self._call_timeout):
                return await trio.to_thread.run_sync(partial(fn, *args), abandon_on_cancel=True)
        except trio.TooSlowError:
            raise OracleUnavailable(f"Timed out after {self._call_timeout}s")

    async def _notify_operator(self, text: str) -> None:
        if self._operator_notify is None:
            return
        try:
            await self._operator_notify(text)
        except Exception as e:
            logger.warning(f"Operator notification failed: {e}")

    # ========================================================================
    # MANUAL ENTRY POINTS
    # ========================================================================

    async def trigger_manual(self, minted: float, fees: float) -> str:
        """
        Build and dispatch a payout from operator-supplied balances.

        Bypasses the closure heuristic. Returns a summary string.
        """
        if minted <= 0 or minted < self.min_payout:
            return f"Minted total required and must greater than or equal to {self.min_payout:.0f}"

        async with self._lock:
            counts, error = await self._manual_tier_counts()
            if error:
                return error

            now = self._clock()
            # The reported cycle began accumulating `minted` this long ago
            not_before = now - self.calculator.expected_minutes(minted) * 60
            fresh = self._cycle_confirmation(self._latest_confirmation(), not_before)
            payout = await self.build_payout(minted, fees, now, counts, fresh)
            await self._dispatch(payout, fresh)
            return payout.alert_outcome.summary("sent")

    async def update_manual(self, minted: float, fees: float) -> str:
        """
        Correct the last payout's balances and edit its alerts in place.

        Returns a summary string.
        """
        async with self._lock:
            last = self.state.last_payout
            if last is None:
                return "No previous payout to update."

            counts, error = await self._manual_tier_counts()
            if error:
                return error

            rewards, duration = self.calculator.calculate(minted, fees, counts)
            price = await self._price()
            fee_coin, fee_usd = estimate_hosting_fee(duration, self.minting.hosting_fee_usd, price)
            corrected = replace(
                last,
                minted=minted,
                fees=fees,
                total=minted + fees,
                duration=duration,
                per_tier_reward=rewards,
                tier_counts=dict(counts),
                hosting_fee_usd=fee_usd,
                hosting_fee_coin=fee_coin,
                price_usd=price or 0.0,
            )
            outcome = await self.dispatcher.update(corrected, last.alert_outcome.deliveries)
            self.state.last_payout = corrected
            return outcome.summary("updated")

    async def resend_last(self) -> str:
        """Send the last payout's alert again to all current targets."""
        async with self._lock:
            last = self.state.last_payout
            if last is None:
                return "No previous payout to send."
            outcome = await self.dispatcher.dispatch(last, self._targets())
            return outcome.summary("sent")

    async def _manual_tier_counts(self) -> Tuple[Optional[Dict[str, float]], Optional[str]]:
        try:
            counts = await self._run_sync(self.oracle.get_tier_counts)
        except OracleUnavailable as e:
            logger.warning(f"Manual trigger: tier distribution unavailable: {e}")
            return None, "Failed to retrieve tier distribution. Try again."
        if _degenerate(counts):
            lines = "\n".join(f"Tier {i}: {counts.get(t, 0):.0f}" for i, t in enumerate(TIER_IDS, start=1))
            return None, f"Invalid tier distribution received.\n{lines}"
        return counts, None

    def get_status(self) -> dict:
        status = self.state.to_dict()
        status['min_payout'] = self.min_payout
        status['running'] = self._running
        return status


def _degenerate(counts: Dict[str, float]) -> bool:
    return any(counts.get(t, 0.0) < 1 for t in TIER_IDS)


def _format_ts(ts: float) -> str:
    return time.strftime("%Y-%m-%d %H:%M:%S", time.gmtime(ts))
