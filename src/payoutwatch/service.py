"""
payoutwatch/service.py

Wiring for a running payoutwatch process.

PayoutWatchService builds the oracle client, stores, sender, dispatcher
and detector from one PayoutWatchConfig, runs the detector timer in a
trio nursery and exposes the operator entry points (manual trigger,
update, resend, pool and last-payout views).

Usage:
    config = PayoutWatchConfig.from_env()
    service = PayoutWatchService(config)

    async with trio.open_nursery() as nursery:
        nursery.start_soon(service.run_detector_loop)
        ...
        summary = await service.trigger_manual(12000, 50)
"""

import logging
from functools import partial
from typing import Any, Callable, Dict, Optional

import trio

from .api import StatusAPI
from .config import PayoutWatchConfig
from .errors import OracleUnavailable
from .metrics import MetricsCollector
from .messaging.sender import MessageSender, DiscordSender, LoggingSender
from .oracle.client import BalanceOracleClient
from .oracle.pricing import TickerPriceProvider
from .protocol.alerts import AlertDispatcher
from .protocol.confirmations import FileConfirmationFeed
from .protocol.detector import PayoutDetector
from .protocol.rewards import RewardCalculator, estimate_roi
from .protocol.storage import DurableStateStore, SubscriptionStore

logger = logging.getLogger("payoutwatch.service")


class PayoutWatchService:
    """
    One payoutwatch process: detector timer plus operator commands.

    Collaborators can be injected for testing; anything not given is
    built from the config.
    """

    def __init__(
        self,
        config: Optional[PayoutWatchConfig] = None,
        oracle: Optional[BalanceOracleClient] = None,
        sender: Optional[MessageSender] = None,
        price_getter: Optional[Callable[[], float]] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.config = config or PayoutWatchConfig()
        storage = self.config.storage

        self.metrics = MetricsCollector()
        self.store = DurableStateStore(storage.data_dir)
        self.subscriptions = SubscriptionStore(storage.data_dir)
        self.oracle = oracle or BalanceOracleClient(self.config.oracle)
        self.calculator = RewardCalculator(self.config.minting)

        if price_getter is None and self.config.oracle.price_url:
            price_getter = TickerPriceProvider(self.config.oracle.price_url).get_price

        if sender is None:
            if self.config.alerts.bot_token:
                sender = DiscordSender(self.config.alerts.bot_token, timeout=self.config.alerts.send_timeout)
            else:
                logger.warning("No bot token configured, alerts will only be logged")
                sender = LoggingSender()
        self.sender = sender

        self.confirmations = None
        if storage.confirmations_file is not None:
            self.confirmations = FileConfirmationFeed(storage.confirmations_file, self.store)

        self.dispatcher = AlertDispatcher(
            self.sender,
            self.store,
            explorer_url=self.config.alerts.explorer_url,
            send_timeout=self.config.alerts.send_timeout,
            metrics=self.metrics,
        )

        detector_kwargs: Dict[str, Any] = {}
        if clock is not None:
            detector_kwargs['clock'] = clock
        self.detector = PayoutDetector(
            oracle=self.oracle,
            dispatcher=self.dispatcher,
            calculator=self.calculator,
            store=self.store,
            targets=self.subscriptions.targets,
            config=self.config.alerts,
            confirmations=self.confirmations,
            price_getter=price_getter,
            operator_notify=self.notify_operator,
            metrics=self.metrics,
            **detector_kwargs,
        )
        self.api = StatusAPI(self, host=self.config.api.host, port=self.config.api.port)

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    async def run_detector_loop(self) -> None:
        """Run the detector timer until stop() is called or cancelled."""
        if not self.config.alerts.check_payout:
            logger.info("Payout check disabled in config, detector not started")
            return
        await self.detector.run(self.config.alerts.interval_seconds)

    async def run(self) -> None:
        """
        Run the detector loop, and the status API when a port is set.

        Returns once the detector loop ends.
        """
        logger.info(
            f"payoutwatch starting: min payout {self.calculator.minting.min_payout:.0f}, "
            f"{len(self.subscriptions.targets())} alert targets"
        )
        try:
            async with trio.open_nursery() as nursery:
                if self.config.api.port:
                    nursery.start_soon(self.api.start)
                await self.run_detector_loop()
                nursery.cancel_scope.cancel()
        finally:
            self.close()

    def stop(self) -> None:
        self.detector.stop()

    def close(self) -> None:
        self.oracle.close()

    # ========================================================================
    # OPERATOR ENTRY POINTS
    # ========================================================================

    async def trigger_manual(self, minted: float, fees: float) -> str:
        return await self.detector.trigger_manual(minted, fees)

    async def update_manual(self, minted: float, fees: float) -> str:
        return await self.detector.update_manual(minted, fees)

    async def resend_last(self) -> str:
        return await self.detector.resend_last()

    async def pool_summary(self) -> Dict[str, Any]:
        """
        Current pool balances and accumulation time.

        Raises:
            OracleUnavailable: If balances cannot be read
        """
        try:
            with trio.fail_after(self.config.oracle.timeout * 2):
                return await trio.to_thread.run_sync(
                    partial(self.oracle.get_pool_summary, self.config.minting),
                    abandon_on_cancel=True,
                )
        except trio.TooSlowError:
            raise OracleUnavailable("Timed out reading pool balances")

    def last_payout_report(self) -> Optional[Dict[str, Any]]:
        """Last payout with per-tier ROI projections, or None."""
        payout = self.detector.state.last_payout
        if payout is None:
            return None
        roi = estimate_roi(
            payout.per_tier_reward,
            payout.minted,
            payout.hosting_fee_coin,
            self.config.minting,
        )
        return {
            'payout': payout.to_dict(),
            'roi': {tier: r.to_dict() for tier, r in roi.items()},
        }

    async def notify_operator(self, text: str) -> None:
        """Send a failure notice to the operator channel, if configured."""
        channel = self.config.alerts.debug_channel_id
        if not channel:
            logger.info(f"Operator notice: {text}")
            return
        with trio.fail_after(self.config.alerts.send_timeout):
            await self.sender.send(channel, text)

    def get_status(self) -> Dict[str, Any]:
        return {
            'detector': self.detector.get_status(),
            'targets': len(self.subscriptions.targets()),
            'metrics': self.metrics.get_stats(),
        }
