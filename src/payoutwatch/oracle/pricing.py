"""
payoutwatch/oracle/pricing.py

Coin price for hosting fee estimates.

Reads the last traded price from an exchange ticker endpoint returning
JSON with a "last_price" field, ex:
    {"ticker_id": "halousdt", "last_price": "0.00123", ...}

There is no fallback price: when the ticker cannot be read the caller
gets None and hosting fees are left out of the alert.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

import requests

logger = logging.getLogger("payoutwatch.oracle.pricing")


# ============================================================================
# CONSTANTS
# ============================================================================

# Cache duration in seconds
PRICE_CACHE_TTL = 60

# Request timeout in seconds
REQUEST_TIMEOUT = 10


@dataclass
class PriceQuote:
    """Last price with fetch time."""
    price_usd: float
    timestamp: float
    source: str  # "ticker" or "cache"


class TickerPriceProvider:
    """
    Fetches the coin's USD price from an exchange ticker.

    get_price() blocks; the detector runs it on a worker thread.

    Usage:
        provider = TickerPriceProvider("https://exchange/api/v2/tickers/halousdt")
        service = PayoutWatchService(config, price_getter=provider.get_price)
    """

    def __init__(
        self,
        url: str,
        cache_ttl: float = PRICE_CACHE_TTL,
        timeout: float = REQUEST_TIMEOUT,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.url = url
        self._cache_ttl = cache_ttl
        self._timeout = timeout
        self._session = session or requests.Session()
        self._clock = clock
        self._cached: Optional[PriceQuote] = None
        self._lock = threading.Lock()

    def get_quote(self) -> Optional[PriceQuote]:
        """Cached quote if younger than the TTL, else a fresh one (None on failure)."""
        now = self._clock()
        with self._lock:
            cached = self._cached
        if cached and (now - cached.timestamp) < self._cache_ttl:
            return PriceQuote(cached.price_usd, cached.timestamp, "cache")

        price = self._fetch()
        if price is None:
            return None

        quote = PriceQuote(price_usd=price, timestamp=now, source="ticker")
        with self._lock:
            self._cached = quote
        logger.debug(f"Price update: ${price:.6f}")
        return quote

    def get_price(self) -> Optional[float]:
        quote = self.get_quote()
        return quote.price_usd if quote else None

    def _fetch(self) -> Optional[float]:
        try:
            response = self._session.get(self.url, timeout=self._timeout)
        except requests.RequestException as e:
            logger.warning(f"Price ticker error: {e}")
            return None

        if response.status_code != 200:
            logger.warning(f"Price ticker returned {response.status_code}")
            return None

        try:
            price = float(response.json().get("last_price", 0))
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning(f"Failed to parse ticker data: {e}")
            return None

        if price <= 0:
            logger.warning(f"Price ticker returned non-positive price {price}")
            return None
        return price
