"""
payoutwatch/oracle - Reward pool and tier distribution reads over JSON-RPC.
"""

from .client import BalanceOracleClient, TierCountCache, CacheLookup
from .connection import RPCConnection
from .pricing import TickerPriceProvider, PriceQuote

__all__ = [
    "BalanceOracleClient",
    "TierCountCache",
    "CacheLookup",
    "RPCConnection",
    "TickerPriceProvider",
    "PriceQuote",
]
