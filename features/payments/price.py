"""
Price oracle — SOL/USD rate with a short-TTL cache.

The oracle never raises: on a feed failure it answers with the last good
rate, or the configured fallback when nothing was ever fetched.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

import httpx

import config

log = logging.getLogger(__name__)


@dataclass
class PriceCache:
    value: float | None = None
    fetched_at: float = 0.0  # monotonic seconds


class PriceOracle:
    def __init__(
        self,
        feed_url: str | None = None,
        ttl_sec: float | None = None,
        fallback: float | None = None,
        cache: PriceCache | None = None,
        http: httpx.Client | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.feed_url = feed_url or config.PRICE_FEED_URL
        self.ttl_sec = config.PRICE_CACHE_TTL_SEC if ttl_sec is None else ttl_sec
        self.fallback = fallback or config.SOL_PRICE_FALLBACK_USD
        self.cache = cache if cache is not None else PriceCache()
        self._http = http
        self._clock = clock

    def _client(self) -> httpx.Client:
        if self._http is None:
            self._http = httpx.Client(timeout=config.HTTP_TIMEOUT_SEC)
        return self._http

    def _is_fresh(self) -> bool:
        return self.cache.value is not None and self._clock() - self.cache.fetched_at < self.ttl_sec

    def get_rate(self) -> float:
        """Current SOL price in USD."""
        if self._is_fresh():
            return self.cache.value  # type: ignore[return-value]

        try:
            resp = self._client().get(self.feed_url)
            resp.raise_for_status()
            price = _parse_price(resp.json())
        except Exception as e:
            log.warning("SOL price fetch failed: %s", e)
            price = None

        if price is None:
            stale = self.cache.value
            if stale is not None:
                log.info("Using cached SOL price %.4f", stale)
                return stale
            log.warning("No cached SOL price, using fallback %.2f", self.fallback)
            return self.fallback

        self.cache.value = price
        self.cache.fetched_at = self._clock()
        return price

    def usd_to_sol(self, usd: float) -> float:
        return usd / self.get_rate()


def _parse_price(data) -> float | None:
    """Pull ``solana.usd`` out of the feed payload; None when malformed."""
    try:
        value = data["solana"]["usd"]
    except (KeyError, TypeError):
        log.warning("Unexpected SOL price response: %s", str(data)[:200])
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        log.warning("Non-positive or non-numeric SOL price: %r", value)
        return None
    return float(value)
