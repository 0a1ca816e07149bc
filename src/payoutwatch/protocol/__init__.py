"""
payoutwatch/protocol/

Payout detection, reward calculation, alert dispatch and durable state.
"""

from .rewards import (
    RewardCalculator,
    TierROI,
    calc_reward,
    estimate_hosting_fee,
    estimate_roi,
    format_duration,
)
from .alerts import (
    Payout,
    AlertOutcome,
    DeliveryRecord,
    AlertDispatcher,
    format_alert,
)
from .storage import DurableStateStore, SubscriptionStore
from .confirmations import Confirmation, ConfirmationFeed, FileConfirmationFeed
from .detector import (
    PayoutDetector,
    DetectorState,
    DetectorPhase,
    PollOutcome,
    RewardPoolSnapshot,
)

__all__ = [
    "RewardCalculator",
    "TierROI",
    "calc_reward",
    "estimate_hosting_fee",
    "estimate_roi",
    "format_duration",
    "Payout",
    "AlertOutcome",
    "DeliveryRecord",
    "AlertDispatcher",
    "format_alert",
    "DurableStateStore",
    "SubscriptionStore",
    "Confirmation",
    "ConfirmationFeed",
    "FileConfirmationFeed",
    "PayoutDetector",
    "DetectorState",
    "DetectorPhase",
    "PollOutcome",
    "RewardPoolSnapshot",
]
