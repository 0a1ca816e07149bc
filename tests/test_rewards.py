"""
payoutwatch/tests/test_rewards.py

Tests for tier reward calculation, duration labels, hosting fees and ROI.
"""

import pytest

from payoutwatch.config import MintingConfig, TierShare, TIER_IDS
from payoutwatch.protocol.rewards import (
    RewardCalculator,
    calc_reward,
    cycle_minutes,
    format_duration,
    parse_duration,
    estimate_hosting_fee,
    estimate_roi,
)


COUNTS = {"t1": 10.0, "t2": 8.0, "t3": 4.0, "t4": 2.0}


class TestDuration:
    """Tests for duration helpers."""

    def test_cycle_minutes(self):
        """Minted balance maps to minutes of minting."""
        assert cycle_minutes(11400, MintingConfig()) == pytest.approx(1200.0)

    def test_format_duration(self):
        """Minutes are floored and shown as HH:MM."""
        assert format_duration(1200) == "20:00"
        assert format_duration(1263.9) == "21:03"
        assert format_duration(0) == "00:00"
        assert format_duration(-5) == "00:00"

    def test_parse_duration(self):
        """HH:MM labels convert to hours."""
        assert parse_duration("20:30") == 20.5
        assert parse_duration("00:00") == 0.0

    def test_parse_malformed_duration(self):
        """Malformed labels count as zero hours."""
        assert parse_duration("") == 0.0
        assert parse_duration("20") == 0.0
        assert parse_duration("ab:cd") == 0.0


class TestCalcReward:
    """Tests for calc_reward."""

    def test_tier_rewards(self):
        """Rewards split minted and fees by tier share and node count."""
        rewards, duration = calc_reward(11400, 200, COUNTS, MintingConfig())

        assert rewards["t1"] == pytest.approx(151.0)
        assert rewards["t2"] == pytest.approx(302.5)
        assert rewards["t3"] == pytest.approx(757.5)
        assert rewards["t4"] == pytest.approx(2270.0)
        assert duration == "20:00"

    def test_empty_tier_earns_zero(self):
        """A tier with zero nodes earns 0 instead of dividing by zero."""
        counts = dict(COUNTS, t4=0.0)
        rewards, _ = calc_reward(11400, 200, counts, MintingConfig())

        assert rewards["t4"] == 0.0
        assert rewards["t1"] == pytest.approx(151.0)

    def test_missing_tier_earns_zero(self):
        """A tier missing from the counts earns 0."""
        rewards, _ = calc_reward(11400, 200, {"t1": 10.0}, MintingConfig())

        assert rewards["t1"] == pytest.approx(151.0)
        assert rewards["t2"] == rewards["t3"] == rewards["t4"] == 0.0

    def test_all_tiers_present(self):
        """Result always has every tier."""
        rewards, _ = calc_reward(0, 0, {}, MintingConfig())
        assert set(rewards) == set(TIER_IDS)

    def test_custom_tier_shares(self):
        """Tier shares come from the minting config."""
        minting = MintingConfig(
            block_reward=10.0,
            tier_shares={t: TierShare(minted=2.5, fees_percent=0.25) for t in TIER_IDS},
        )
        rewards, _ = calc_reward(1000, 100, {t: 5.0 for t in TIER_IDS}, minting)

        for tier in TIER_IDS:
            assert rewards[tier] == pytest.approx(1000 * 2.5 / 10 / 5 + 100 * 0.25 / 5)


class TestRewardCalculator:
    """Tests for RewardCalculator."""

    def test_distributed_total_matches_rewards(self):
        """Sum of reward x count over tiers equals the distributed total."""
        calculator = RewardCalculator()
        rewards, _ = calculator.calculate(11400, 200, COUNTS)

        paid = sum(rewards[t] * COUNTS[t] for t in TIER_IDS)
        assert paid == pytest.approx(calculator.distributed_total(11400, 200))
        assert paid == pytest.approx(11500.0)

    def test_expected_minutes(self):
        """Expected minutes use the configured cycle length."""
        calculator = RewardCalculator(MintingConfig(block_cycle_minutes=2.0))
        assert calculator.expected_minutes(380) == pytest.approx(20.0)

    def test_min_payout(self):
        """Minimum payout is eight hours of minting."""
        assert RewardCalculator().minting.min_payout == pytest.approx(4560.0)


class TestHostingFee:
    """Tests for estimate_hosting_fee."""

    def test_hours_rounded_up(self):
        """Fee is charged per started hour."""
        fee_coin, fee_usd = estimate_hosting_fee("20:30", 72.0, 0.5)

        assert fee_usd == pytest.approx(21 * 72.0 / 30 / 24)
        assert fee_coin == pytest.approx(fee_usd / 0.5)

    def test_no_price(self):
        """Without a price the coin fee is zero."""
        fee_coin, fee_usd = estimate_hosting_fee("20:00", 72.0, None)

        assert fee_coin == 0.0
        assert fee_usd == pytest.approx(2.0)

    def test_non_positive_price(self):
        """A zero or negative price yields no coin fee."""
        assert estimate_hosting_fee("20:00", 72.0, 0.0)[0] == 0.0
        assert estimate_hosting_fee("20:00", 72.0, -1.0)[0] == 0.0


class TestROI:
    """Tests for estimate_roi."""

    def test_roi_projection(self):
        """Net reward is projected onto hourly and daily returns."""
        roi = estimate_roi({"t1": 151.0}, 11400, 1.0, MintingConfig())
        t1 = roi["t1"]

        assert t1.net_reward == pytest.approx(150.0)
        assert t1.coins_per_hour == pytest.approx(7.5)
        assert t1.daily_percent == pytest.approx(0.045)
        assert t1.days_to_100 == pytest.approx(100 / 0.045)
        assert t1.yearly_percent == pytest.approx(0.045 * 365)

    def test_zero_duration(self):
        """A cycle with no minting reports zeros."""
        roi = estimate_roi({"t1": 151.0}, 0, 0.0, MintingConfig())
        assert roi["t1"].daily_percent == 0.0
        assert roi["t1"].days_to_100 == 0.0

    def test_zero_collateral(self):
        """A tier with no collateral reports zeros."""
        minting = MintingConfig(collateral={"t1": 0.0})
        roi = estimate_roi({"t1": 151.0}, 11400, 0.0, minting)
        assert roi["t1"].coins_per_hour == 0.0
        assert roi["t2"].daily_percent == 0.0
