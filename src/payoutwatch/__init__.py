"""
payoutwatch - Reward pool payout detection and alert distribution

Polls a ledger's reward pool and tier distribution, infers when a
payout cycle has closed, computes per-node rewards for each tier and
fans the alert out to subscribed chat channels:
- Balance oracle over JSON-RPC with a TTL tier-count cache
- Validity-gated closure detection on a fixed-interval trio timer
- Per-destination failure isolation and durable alert history
- Manual trigger, update and resend for operators
- Prometheus metrics and a status endpoint

Usage:
    from payoutwatch import PayoutWatchConfig, PayoutWatchService

    service = PayoutWatchService(PayoutWatchConfig.from_env())
    trio.run(service.run)

Reward Usage:
    from payoutwatch import RewardCalculator

    rewards, duration = RewardCalculator().calculate(
        11400, 200, {"t1": 10, "t2": 8, "t3": 4, "t4": 2}
    )
"""

__version__ = "0.1.0"

from .config import (
    PayoutWatchConfig,
    MintingConfig,
    OracleConfig,
    AlertConfig,
    StorageConfig,
    ApiConfig,
    TierShare,
    TIER_IDS,
)
from .errors import (
    PayoutWatchError,
    OracleUnavailable,
    PersistenceFailure,
    DeliveryFailure,
    PayoutConstructionError,
)
from .oracle import BalanceOracleClient, RPCConnection
from .protocol import (
    RewardCalculator,
    calc_reward,
    PayoutDetector,
    DetectorPhase,
    PollOutcome,
    Payout,
    AlertOutcome,
    DeliveryRecord,
    AlertDispatcher,
    DurableStateStore,
    SubscriptionStore,
    FileConfirmationFeed,
)
from .messaging import MessageSender, DiscordSender, LoggingSender
from .metrics import MetricsCollector
from .api import StatusAPI
from .service import PayoutWatchService

__all__ = [
    "__version__",
    # Config
    "PayoutWatchConfig",
    "MintingConfig",
    "OracleConfig",
    "AlertConfig",
    "StorageConfig",
    "ApiConfig",
    "TierShare",
    "TIER_IDS",
    # Errors
    "PayoutWatchError",
    "OracleUnavailable",
    "PersistenceFailure",
    "DeliveryFailure",
    "PayoutConstructionError",
    # Core
    "BalanceOracleClient",
    "RPCConnection",
    "RewardCalculator",
    "calc_reward",
    "PayoutDetector",
    "DetectorPhase",
    "PollOutcome",
    "Payout",
    "AlertOutcome",
    "DeliveryRecord",
    "AlertDispatcher",
    "DurableStateStore",
    "SubscriptionStore",
    "FileConfirmationFeed",
    "MessageSender",
    "DiscordSender",
    "LoggingSender",
    "MetricsCollector",
    "StatusAPI",
    "PayoutWatchService",
]
