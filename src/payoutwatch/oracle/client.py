"""
payoutwatch/oracle/client.py

Balance oracle client for the reward pool and tier distribution contracts.

Provides methods for:
- Minted pool and service fee balances (no caching, no retry)
- Active node counts per tier, behind a TTL cache with stale fallback
- A pool summary for operator queries
"""

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional, Tuple, Any

from ..config import OracleConfig, MintingConfig, TIER_IDS
from ..errors import OracleUnavailable
from ..protocol.rewards import cycle_minutes, format_duration
from .connection import RPCConnection

logger = logging.getLogger("payoutwatch.oracle.client")


# ============================================================================
# CONTRACT SELECTORS
# ============================================================================

# Reward pool contract
MINTED_BALANCE_SELECTOR = "0x405187f4"
SERVICE_FEES_SELECTOR = "0xbc3cde60"

# Tier distribution contract; tier number appended as a 32-byte word
TIER_DISTRIBUTION_SELECTOR = "0x993ed2a5"

WEI_PER_COIN = 1e18


# ============================================================================
# UTILITY FUNCTIONS
# ============================================================================

def hex_to_int(value: str) -> int:
    """Decode a 0x-prefixed hex quantity returned by eth_call."""
    if not isinstance(value, str):
        raise OracleUnavailable(f"Unexpected result type: {type(value).__name__}")
    text = value[2:] if value.startswith(("0x", "0X")) else value
    if not text:
        return 0
    try:
        return int(text, 16)
    except ValueError:
        raise OracleUnavailable(f"Invalid hex result: {value}")


def wei_to_balance(value: str) -> float:
    """Convert a hex wei amount to a coin balance."""
    return hex_to_int(value) / WEI_PER_COIN


def tier_call_data(tier_no: int) -> str:
    """Build eth_call data for a tier distribution lookup."""
    return TIER_DISTRIBUTION_SELECTOR + format(tier_no, "064x")


# ============================================================================
# TIER COUNT CACHE
# ============================================================================

class CacheLookup(Enum):
    """Result of a tier cache lookup."""
    FRESH = "fresh"    # younger than TTL, serve without querying
    STALE = "stale"    # past TTL, serve only if a fresh query fails
    MISS = "miss"      # nothing usable cached


@dataclass
class CachedTierCount:
    """Cached active node count for one tier."""
    value: float
    last_updated: float

    def age(self, now: float) -> float:
        return now - self.last_updated


class TierCountCache:
    """
    Per-tier TTL cache.

    Only positive counts are usable: a zero or missing entry is a miss.
    Guarded by a lock since lookups may run on worker threads.
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.time):
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[int, CachedTierCount] = {}
        self._lock = threading.Lock()

    def lookup(self, tier_no: int) -> Tuple[CacheLookup, Optional[CachedTierCount]]:
        with self._lock:
            entry = self._entries.get(tier_no)
            if entry is None or entry.value <= 0:
                return CacheLookup.MISS, None
            if entry.age(self._clock()) < self.ttl:
                return CacheLookup.FRESH, entry
            return CacheLookup.STALE, entry

    def store(self, tier_no: int, value: float) -> None:
        with self._lock:
            self._entries[tier_no] = CachedTierCount(value=value, last_updated=self._clock())

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


# ============================================================================
# ORACLE CLIENT
# ============================================================================

class BalanceOracleClient:
    """
    Reads reward pool balances and tier distribution from the ledger.

    All methods block; async callers run them on a worker thread.

    Example:
        client = BalanceOracleClient(config.oracle)
        minted, fees = client.get_pool_balances()
        counts = client.get_tier_counts()   # {"t1": 10.0, ...}
    """

    def __init__(
        self,
        config: OracleConfig,
        connection: Optional[RPCConnection] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the client.

        Args:
            config: RPC URL, contract addresses, timeout and cache TTL
            connection: Optional transport (created from config if None)
            clock: Time source for the tier cache
        """
        self.config = config
        self._connection = connection or RPCConnection(config.rpc_url, timeout=config.timeout)
        self._clock = clock
        self._request_id = 0
        self._id_lock = threading.Lock()
        self.tier_cache = TierCountCache(config.tier_cache_ttl, clock=clock)

    def _next_id(self) -> int:
        with self._id_lock:
            self._request_id += 1
            return self._request_id

    def _call(self, method: str, *params) -> Any:
        """
        Make a JSON-RPC call.

        Raises:
            OracleUnavailable: On transport, status or server error
        """
        request = {
            "jsonrpc": "2.0",
            "id": self._next_id(),
            "method": method,
            "params": list(params),
        }

        response = self._connection.post(request)
        if response is None:
            raise OracleUnavailable(self._connection.last_error or "No response from server")

        if response.get("error"):
            error = response["error"]
            msg = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            raise OracleUnavailable(f"Server error: {msg}")

        if "result" not in response:
            raise OracleUnavailable("Response has no result")
        return response["result"]

    def eth_call(self, contract: str, data: str) -> str:
        """Invoke a read-only contract method and return the raw hex result."""
        return self._call("eth_call", {"to": contract, "data": data}, "latest")

    # ========================================================================
    # POOL BALANCES
    # ========================================================================

    def get_minted_balance(self) -> float:
        """Minted pool balance for the on-going cycle."""
        return wei_to_balance(self.eth_call(self.config.reward_pool_contract, MINTED_BALANCE_SELECTOR))

    def get_service_fees_balance(self) -> float:
        """Service fees collected during the on-going cycle."""
        return wei_to_balance(self.eth_call(self.config.reward_pool_contract, SERVICE_FEES_SELECTOR))

    def get_pool_balances(self) -> Tuple[float, float]:
        """
        Get (minted, fees) for the on-going cycle.

        Raises:
            OracleUnavailable: If either balance cannot be read
        """
        minted = self.get_minted_balance()
        fees = self.get_service_fees_balance()
        return minted, fees

    def get_pool_summary(self, minting: MintingConfig) -> Dict[str, Any]:
        """Pool balances plus how long the pool has been accumulating."""
        minted, fees = self.get_pool_balances()
        return {
            "minted": minted,
            "fees": fees,
            "total": minted + fees,
            "duration": format_duration(cycle_minutes(minted, minting)),
        }

    # ========================================================================
    # TIER DISTRIBUTION
    # ========================================================================

    def get_tier_count(self, tier_no: int) -> float:
        """
        Query the active node count for one tier, bypassing the cache.

        Raises:
            ValueError: If tier_no is not 1..4
            OracleUnavailable: On query failure
        """
        if tier_no < 1 or tier_no > len(TIER_IDS):
            raise ValueError(f"Invalid tier: {tier_no}")
        return float(hex_to_int(self.eth_call(self.config.tier_dist_contract, tier_call_data(tier_no))))

    def get_tier_counts(self) -> Dict[str, float]:
        """
        Active node counts for all tiers, keyed t1..t4.

        Fresh cache entries are served directly. Otherwise the tier is
        queried; on failure a stale entry is served and the failure logged.

        Raises:
            OracleUnavailable: If a tier fails with nothing cached
        """
        counts: Dict[str, float] = {}
        for tier_no, tier_id in enumerate(TIER_IDS, start=1):
            state, entry = self.tier_cache.lookup(tier_no)
            if state == CacheLookup.FRESH:
                logger.debug(f"Tier {tier_no} served from cache: {entry.value:.0f}")
                counts[tier_id] = entry.value
                continue

            try:
                value = self.get_tier_count(tier_no)
            except OracleUnavailable as e:
                if state == CacheLookup.STALE:
                    logger.warning(
                        f"Tier {tier_no} query failed, serving stale count "
                        f"{entry.value:.0f}: {e}"
                    )
                    counts[tier_id] = entry.value
                    continue
                logger.warning(f"Tier {tier_no} query failed with no cached count: {e}")
                raise

            self.tier_cache.store(tier_no, value)
            counts[tier_id] = value
        return counts

    def close(self) -> None:
        self._connection.close()
