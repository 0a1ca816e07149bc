"""
payoutwatch/protocol/rewards.py

Per-tier reward calculation for a completed minting cycle.

Reward per node in a tier:
    minted * tier_minted_share / block_reward / tier_count
  + fees * tier_fees_percent / tier_count

An empty tier (count 0) earns 0. Everything here is pure: no I/O, no state.
"""

import math
from dataclasses import dataclass, asdict
from typing import Dict, Optional, Tuple

from ..config import MintingConfig, TIER_IDS


# ============================================================================
# DURATION HELPERS
# ============================================================================

def cycle_minutes(minted: float, minting: MintingConfig) -> float:
    """Minutes of minting implied by a minted pool balance."""
    if minting.block_reward <= 0:
        return 0.0
    return minted / minting.block_reward * minting.block_cycle_minutes


def format_duration(minutes: float) -> str:
    """Format minutes as HH:MM, floored to whole minutes."""
    total = int(max(minutes, 0))
    return f"{total // 60:02d}:{total % 60:02d}"


def parse_duration(label: str) -> float:
    """Convert an HH:MM label to hours. Malformed labels count as zero."""
    parts = label.split(":") if label else []
    if len(parts) < 2:
        return 0.0
    try:
        return int(parts[0]) + int(parts[1]) / 60
    except ValueError:
        return 0.0


# ============================================================================
# REWARD CALCULATION
# ============================================================================

def calc_reward(
    minted: float,
    fees: float,
    tier_counts: Dict[str, float],
    minting: MintingConfig,
) -> Tuple[Dict[str, float], str]:
    """
    Calculate reward per node for each tier and the cycle duration label.

    Args:
        minted: Coins minted during the cycle
        fees: Service fees accumulated during the cycle
        tier_counts: Active nodes per tier, keyed t1..t4
        minting: Block reward, cycle length and tier shares

    Returns:
        ({tier: reward per node}, "HH:MM")
    """
    rewards: Dict[str, float] = {}
    for tier in TIER_IDS:
        count = tier_counts.get(tier, 0.0)
        share = minting.tier_shares.get(tier)
        if share is None or count <= 0 or minting.block_reward <= 0:
            rewards[tier] = 0.0
            continue
        rewards[tier] = (
            minted * share.minted / minting.block_reward / count
            + fees * share.fees_percent / count
        )

    return rewards, format_duration(cycle_minutes(minted, minting))


class RewardCalculator:
    """
    Calculate tier rewards for a fixed minting configuration.

    Stateless; safe to share between the detector loop and manual triggers.
    """

    def __init__(self, minting: Optional[MintingConfig] = None):
        self.minting = minting or MintingConfig()

    def calculate(
        self,
        minted: float,
        fees: float,
        tier_counts: Dict[str, float],
    ) -> Tuple[Dict[str, float], str]:
        return calc_reward(minted, fees, tier_counts, self.minting)

    def expected_minutes(self, minted: float) -> float:
        return cycle_minutes(minted, self.minting)

    def distributed_total(self, minted: float, fees: float) -> float:
        """Coins paid out to all tiers combined for a cycle."""
        return minted * self.minting.total_mint_share + fees * self.minting.total_fee_share


# ============================================================================
# HOSTING FEES & ROI
# ============================================================================

def estimate_hosting_fee(
    duration_label: str,
    monthly_fee_usd: float,
    price_usd: Optional[float],
) -> Tuple[float, float]:
    """
    Estimate the per-node hosting fee accrued over a cycle.

    Hours are rounded up; the fee is charged per started hour.

    Returns:
        (fee in coins, fee in USD). Coins are 0 when no price is known.
    """
    hours = parse_duration(duration_label)
    fee_usd = math.ceil(hours) * monthly_fee_usd / 30 / 24
    if not price_usd or price_usd <= 0:
        return 0.0, fee_usd
    return fee_usd / price_usd, fee_usd


@dataclass
class TierROI:
    """Return on collateral for one tier, after hosting fees."""
    net_reward: float
    coins_per_hour: float
    daily_percent: float
    days_to_100: float

    @property
    def weekly_percent(self) -> float:
        return self.daily_percent * 7

    @property
    def monthly_percent(self) -> float:
        return self.daily_percent * 30

    @property
    def yearly_percent(self) -> float:
        return self.daily_percent * 365

    def to_dict(self) -> dict:
        return asdict(self)


def estimate_roi(
    per_tier_reward: Dict[str, float],
    minted: float,
    hosting_fee_coin: float,
    minting: MintingConfig,
) -> Dict[str, TierROI]:
    """
    Project a cycle's per-node rewards onto hourly and daily returns.

    Tiers with no collateral or a zero-length cycle report zeros.
    """
    minutes = cycle_minutes(minted, minting)
    roi: Dict[str, TierROI] = {}
    for tier in TIER_IDS:
        net = per_tier_reward.get(tier, 0.0) - hosting_fee_coin
        collateral = minting.collateral.get(tier, 0.0)
        if minutes <= 0 or collateral <= 0:
            roi[tier] = TierROI(net_reward=net, coins_per_hour=0.0, daily_percent=0.0, days_to_100=0.0)
            continue

        hourly = net / minutes * 60
        daily_percent = (net / minutes * 1440) / collateral * 100
        days = 100 / daily_percent if daily_percent > 0 else 0.0
        roi[tier] = TierROI(
            net_reward=net,
            coins_per_hour=hourly,
            daily_percent=daily_percent,
            days_to_100=days,
        )
    return roi
