"""
Tests for payoutwatch/config.py
"""

import json
import pytest
from pathlib import Path

from payoutwatch.config import (
    PayoutWatchConfig,
    MintingConfig,
    TierShare,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_TIER_CACHE_TTL,
)


class TestMintingConfig:
    """Tests for MintingConfig defaults."""

    def test_defaults(self):
        """Defaults match the deployed reward pool."""
        minting = MintingConfig()
        assert minting.block_reward == 38.0
        assert minting.block_cycle_minutes == 4.0
        assert minting.tier_shares["t4"] == TierShare(minted=15.0, fees_percent=0.20)
        assert minting.collateral["t3"] == 2_000_000.0

    def test_min_payout(self):
        """Minimum payout scales with block reward and cycle length."""
        assert MintingConfig().min_payout == pytest.approx(4560.0)
        assert MintingConfig(block_cycle_minutes=8.0).min_payout == pytest.approx(2280.0)

    def test_total_shares(self):
        """Default tiers receive the whole block reward and half the fees."""
        minting = MintingConfig()
        assert minting.total_mint_share == pytest.approx(1.0)
        assert minting.total_fee_share == pytest.approx(0.5)


class TestPayoutWatchConfig:
    """Tests for loading configuration."""

    def test_defaults(self):
        """Sections default when not given."""
        config = PayoutWatchConfig()
        assert config.alerts.interval_seconds == DEFAULT_POLL_INTERVAL
        assert config.oracle.tier_cache_ttl == DEFAULT_TIER_CACHE_TTL
        assert config.storage.confirmations_file is None
        assert config.api.port == 0
        assert config.alerts.pending_max_ticks == 30

    def test_from_dict_partial(self):
        """Only given keys override defaults."""
        config = PayoutWatchConfig.from_dict({
            "minting": {"block_reward": 40.0, "tier_shares": {"t1": {"minted": 6.0, "fees_percent": 0.1}}},
            "alerts": {"interval_seconds": 60, "require_confirmation": True},
            "storage": {"data_dir": "/tmp/pw", "confirmations_file": "/tmp/pw/tx.json"},
            "api": {"port": 9120},
        })

        assert config.minting.block_reward == 40.0
        assert config.minting.tier_shares == {"t1": TierShare(minted=6.0, fees_percent=0.1)}
        assert config.alerts.interval_seconds == 60
        assert config.alerts.require_confirmation is True
        assert config.alerts.send_timeout == 15.0
        assert config.storage.data_dir == Path("/tmp/pw")
        assert config.storage.confirmations_file == Path("/tmp/pw/tx.json")
        assert config.api.port == 9120
        assert config.api.host == "127.0.0.1"

    def test_from_file(self, tmp_path):
        """Configuration loads from a JSON file."""
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"oracle": {"rpc_url": "http://rpc.test", "timeout": 5}}))

        config = PayoutWatchConfig.from_file(path)
        assert config.oracle.rpc_url == "http://rpc.test"
        assert config.oracle.timeout == 5

    def test_env_overrides(self, monkeypatch, tmp_path):
        """PAYOUTWATCH_* variables override the config."""
        monkeypatch.setenv("PAYOUTWATCH_INTERVAL", "30")
        monkeypatch.setenv("PAYOUTWATCH_DATA_DIR", str(tmp_path))
        monkeypatch.setenv("PAYOUTWATCH_BOT_TOKEN", "secret")
        monkeypatch.setenv("PAYOUTWATCH_DEBUG_CHANNEL", "999")
        monkeypatch.setenv("PAYOUTWATCH_REWARD_POOL_CONTRACT", "0xpool")
        monkeypatch.setenv("PAYOUTWATCH_API_PORT", "9121")

        config = PayoutWatchConfig.from_env()
        assert config.alerts.interval_seconds == 30
        assert config.storage.data_dir == tmp_path
        assert config.alerts.bot_token == "secret"
        assert config.alerts.debug_channel_id == "999"
        assert config.oracle.reward_pool_contract == "0xpool"
        assert config.api.port == 9121

    def test_invalid_env_ignored(self, monkeypatch):
        """Invalid values are ignored."""
        monkeypatch.setenv("PAYOUTWATCH_INTERVAL", "soon")
        assert PayoutWatchConfig.from_env().alerts.interval_seconds == DEFAULT_POLL_INTERVAL
