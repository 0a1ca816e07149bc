"""
payoutwatch/config.py

Configuration constants and data classes for payoutwatch.
"""

import os
import json
import logging
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Dict, Optional, Any

logger = logging.getLogger("payoutwatch.config")


# Coins minted into the reward pool on each minting cycle
DEFAULT_BLOCK_REWARD = 38.0

# Minutes per minting cycle. NOT the block time of the chain.
DEFAULT_BLOCK_CYCLE_MINUTES = 4.0

# Minimum accumulation (in hours) before a drained pool counts as a payout
MIN_PAYOUT_HOURS = 8

# Detector polling
DEFAULT_POLL_INTERVAL = 120          # seconds
DEFAULT_RESET_CEILING_CYCLES = 2.0   # minted <= block_reward * this after a reset
DEFAULT_PAYOUT_COOLDOWN_MINUTES = 60.0
DEFAULT_GATE_RESYNC_AFTER = 15       # consecutive rejected polls
DEFAULT_PENDING_MAX_TICKS = 30       # polls a closed cycle may wait for dispatch

# Oracle settings
DEFAULT_TIER_CACHE_TTL = 15 * 60     # seconds
DEFAULT_REQUEST_TIMEOUT = 30.0       # seconds
DEFAULT_RPC_URL = "https://mainnet-rpc.halo.land"

# Chat platform
DISCORD_MESSAGE_LIMIT = 2000
DEFAULT_SEND_TIMEOUT = 15.0          # seconds

# Status API
DEFAULT_API_HOST = "127.0.0.1"

# Default storage paths
DEFAULT_DATA_DIR = Path.home() / ".payoutwatch"

TIER_IDS = ("t1", "t2", "t3", "t4")


@dataclass
class TierShare:
    """Share of each minting cycle and of service fees paid to one tier."""
    minted: float       # coins out of each block reward
    fees_percent: float  # fraction of fees, ex: 0.05 for 5%

    def to_dict(self) -> dict:
        return asdict(self)


def _default_tier_shares() -> Dict[str, TierShare]:
    return {
        "t1": TierShare(minted=5.0, fees_percent=0.05),
        "t2": TierShare(minted=8.0, fees_percent=0.10),
        "t3": TierShare(minted=10.0, fees_percent=0.15),
        "t4": TierShare(minted=15.0, fees_percent=0.20),
    }


def _default_collateral() -> Dict[str, float]:
    return {
        "t1": 400_000.0,
        "t2": 800_000.0,
        "t3": 2_000_000.0,
        "t4": 6_000_000.0,
    }


@dataclass
class MintingConfig:
    """Reward pool economics."""
    block_reward: float = DEFAULT_BLOCK_REWARD
    block_cycle_minutes: float = DEFAULT_BLOCK_CYCLE_MINUTES
    tier_shares: Dict[str, TierShare] = field(default_factory=_default_tier_shares)
    collateral: Dict[str, float] = field(default_factory=_default_collateral)
    hosting_fee_usd: float = 0.0  # per node, per month

    @property
    def min_payout(self) -> float:
        """Minted balance accumulated over MIN_PAYOUT_HOURS of minting."""
        cycles = MIN_PAYOUT_HOURS * 60 / self.block_cycle_minutes
        return self.block_reward * cycles

    @property
    def total_mint_share(self) -> float:
        return sum(s.minted for s in self.tier_shares.values()) / self.block_reward

    @property
    def total_fee_share(self) -> float:
        return sum(s.fees_percent for s in self.tier_shares.values())


@dataclass
class OracleConfig:
    """Ledger RPC endpoint and contract addresses."""
    rpc_url: str = DEFAULT_RPC_URL
    reward_pool_contract: str = ""
    tier_dist_contract: str = ""
    timeout: float = DEFAULT_REQUEST_TIMEOUT
    tier_cache_ttl: float = DEFAULT_TIER_CACHE_TTL
    price_url: str = ""  # exchange ticker; empty disables hosting fee estimates


@dataclass
class AlertConfig:
    """Detector and notification settings."""
    check_payout: bool = True
    interval_seconds: int = DEFAULT_POLL_INTERVAL
    reset_ceiling_cycles: float = DEFAULT_RESET_CEILING_CYCLES
    payout_cooldown_minutes: float = DEFAULT_PAYOUT_COOLDOWN_MINUTES
    gate_resync_after: int = DEFAULT_GATE_RESYNC_AFTER
    pending_max_ticks: int = DEFAULT_PENDING_MAX_TICKS
    require_confirmation: bool = False
    send_timeout: float = DEFAULT_SEND_TIMEOUT
    explorer_url: str = "https://explorer.halo.land"
    bot_token: str = ""
    debug_channel_id: str = ""


@dataclass
class StorageConfig:
    """On-disk locations."""
    data_dir: Path = DEFAULT_DATA_DIR
    confirmations_file: Optional[Path] = None  # receiver-written settlement TX list
    log_file: Optional[Path] = None

    def __post_init__(self):
        self.data_dir = Path(self.data_dir)
        if self.confirmations_file is not None:
            self.confirmations_file = Path(self.confirmations_file)
        if self.log_file is not None:
            self.log_file = Path(self.log_file)


@dataclass
class ApiConfig:
    """Status endpoint. Port 0 disables it."""
    host: str = DEFAULT_API_HOST
    port: int = 0


@dataclass
class PayoutWatchConfig:
    """
    Complete configuration for a payoutwatch process.

    Usage:
        config = PayoutWatchConfig.from_file("config.json")
        config.apply_env()
    """
    minting: MintingConfig = field(default_factory=MintingConfig)
    oracle: OracleConfig = field(default_factory=OracleConfig)
    alerts: AlertConfig = field(default_factory=AlertConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    api: ApiConfig = field(default_factory=ApiConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PayoutWatchConfig":
        """Build config from a parsed JSON document, keeping defaults for missing keys."""
        minting_data = dict(data.get("minting", {}))
        shares = minting_data.pop("tier_shares", None)
        minting = MintingConfig(**minting_data)
        if shares:
            minting.tier_shares = {
                tier: TierShare(**share) for tier, share in shares.items()
            }

        return cls(
            minting=minting,
            oracle=OracleConfig(**data.get("oracle", {})),
            alerts=AlertConfig(**data.get("alerts", {})),
            storage=StorageConfig(**data.get("storage", {})),
            api=ApiConfig(**data.get("api", {})),
        )

    @classmethod
    def from_file(cls, path) -> "PayoutWatchConfig":
        """Load config from a JSON file."""
        with open(path, "r") as f:
            data = json.load(f)
        logger.info(f"Loaded configuration from {path}")
        return cls.from_dict(data)

    @classmethod
    def from_env(cls) -> "PayoutWatchConfig":
        """Default config with PAYOUTWATCH_* environment overrides."""
        config = cls()
        config.apply_env()
        return config

    def apply_env(self) -> None:
        """
        Apply environment variable overrides.

        Supported variables:
            PAYOUTWATCH_INTERVAL, PAYOUTWATCH_DATA_DIR, PAYOUTWATCH_RPC_URL,
            PAYOUTWATCH_REWARD_POOL_CONTRACT, PAYOUTWATCH_TIER_DIST_CONTRACT,
            PAYOUTWATCH_PRICE_URL, PAYOUTWATCH_BOT_TOKEN, PAYOUTWATCH_DEBUG_CHANNEL,
            PAYOUTWATCH_CONFIRMATIONS_FILE, PAYOUTWATCH_API_PORT
        """
        env = os.environ

        interval = env.get("PAYOUTWATCH_INTERVAL")
        if interval:
            try:
                self.alerts.interval_seconds = int(interval)
            except ValueError:
                logger.warning(f"Invalid PAYOUTWATCH_INTERVAL: {interval}")

        api_port = env.get("PAYOUTWATCH_API_PORT")
        if api_port:
            try:
                self.api.port = int(api_port)
            except ValueError:
                logger.warning(f"Invalid PAYOUTWATCH_API_PORT: {api_port}")

        if env.get("PAYOUTWATCH_DATA_DIR"):
            self.storage.data_dir = Path(env["PAYOUTWATCH_DATA_DIR"])
        if env.get("PAYOUTWATCH_CONFIRMATIONS_FILE"):
            self.storage.confirmations_file = Path(env["PAYOUTWATCH_CONFIRMATIONS_FILE"])
        if env.get("PAYOUTWATCH_RPC_URL"):
            self.oracle.rpc_url = env["PAYOUTWATCH_RPC_URL"]
        if env.get("PAYOUTWATCH_REWARD_POOL_CONTRACT"):
            self.oracle.reward_pool_contract = env["PAYOUTWATCH_REWARD_POOL_CONTRACT"]
        if env.get("PAYOUTWATCH_TIER_DIST_CONTRACT"):
            self.oracle.tier_dist_contract = env["PAYOUTWATCH_TIER_DIST_CONTRACT"]
        if env.get("PAYOUTWATCH_PRICE_URL"):
            self.oracle.price_url = env["PAYOUTWATCH_PRICE_URL"]
        if env.get("PAYOUTWATCH_BOT_TOKEN"):
            self.alerts.bot_token = env["PAYOUTWATCH_BOT_TOKEN"]
        if env.get("PAYOUTWATCH_DEBUG_CHANNEL"):
            self.alerts.debug_channel_id = env["PAYOUTWATCH_DEBUG_CHANNEL"]
