"""
DexScreener price feed adapter.

Price for a mint is the ``priceUsd`` of its highest-liquidity pair. Results
are cached for a short TTL so the three scheduler loops asking for the same
mint within a few seconds share one HTTP call.
"""

import logging
import threading
import time
from typing import Any, Dict, Iterable, List, Optional, Tuple

import requests

from core.exceptions import ExternalFailure
from core.interfaces import PriceFeed

logger = logging.getLogger(__name__)

DEXSCREENER_API = "https://api.dexscreener.com/latest/dex/tokens"
MAX_TOKENS_PER_REQUEST = 30


def best_pair_price(pairs: List[Dict[str, Any]], mint: Optional[str] = None) -> Optional[float]:
    """USD price of the most liquid pair (optionally only pairs whose base token is ``mint``)."""
    candidates = pairs or []
    if mint:
        based = [p for p in candidates if (p.get("baseToken") or {}).get("address") == mint]
        candidates = based or candidates
    best: Optional[Tuple[float, float]] = None
    for pair in candidates:
        try:
            price = float(pair.get("priceUsd"))
        except (TypeError, ValueError):
            continue
        if price <= 0:
            continue
        try:
            liquidity = float((pair.get("liquidity") or {}).get("usd") or 0)
        except (TypeError, ValueError):
            liquidity = 0.0
        if best is None or liquidity > best[0]:
            best = (liquidity, price)
    return best[1] if best else None


class DexScreenerPriceFeed(PriceFeed):
    """PriceFeed backed by the public DexScreener token endpoint."""

    def __init__(
        self,
        base_url: str = DEXSCREENER_API,
        timeout: float = 10.0,
        cache_ttl_seconds: float = 3.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.cache_ttl_seconds = cache_ttl_seconds
        self._session = session or requests.Session()
        self._cache: Dict[str, Tuple[float, Optional[float]]] = {}
        self._lock = threading.Lock()

    def get_price(self, mint: str) -> Optional[float]:
        return self.get_prices([mint]).get(mint)

    def get_prices(self, mints: Iterable[str]) -> Dict[str, float]:
        """
        Fetch prices for many mints, batching up to 30 per request.

        Raises:
            ExternalFailure: On network or HTTP errors
        """
        wanted = list(dict.fromkeys(m for m in mints if m))
        prices: Dict[str, float] = {}
        missing: List[str] = []
        now = time.monotonic()
        with self._lock:
            for mint in wanted:
                cached = self._cache.get(mint)
                if cached and now - cached[0] < self.cache_ttl_seconds:
                    if cached[1] is not None:
                        prices[mint] = cached[1]
                else:
                    missing.append(mint)

        for start in range(0, len(missing), MAX_TOKENS_PER_REQUEST):
            chunk = missing[start:start + MAX_TOKENS_PER_REQUEST]
            pairs = self._fetch_pairs(chunk)
            fetched_at = time.monotonic()
            for mint in chunk:
                price = best_pair_price(
                    [p for p in pairs if (p.get("baseToken") or {}).get("address") == mint]
                    or (pairs if len(chunk) == 1 else []),
                    mint,
                )
                with self._lock:
                    self._cache[mint] = (fetched_at, price)
                if price is not None:
                    prices[mint] = price
                else:
                    logger.debug(f"No DexScreener price for {mint[:8]}...")
        return prices

    def _fetch_pairs(self, mints: List[str]) -> List[Dict[str, Any]]:
        url = f"{self.base_url}/{','.join(mints)}"
        try:
            response = self._session.get(url, timeout=self.timeout)
            response.raise_for_status()
            data = response.json() or {}
        except requests.exceptions.RequestException as e:
            logger.warning(f"DexScreener request failed for {len(mints)} mint(s): {e}")
            raise ExternalFailure("dexscreener", e) from e
        except ValueError as e:
            raise ExternalFailure("dexscreener: invalid JSON", e) from e
        return data.get("pairs") or []
