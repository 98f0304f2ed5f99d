"""SOL/USD valuation used for market-cap thresholds and USD P&L."""

from __future__ import annotations

import asyncio
import threading
from typing import Optional

import requests
from cachetools import TTLCache
from tenacity import RetryError, retry, stop_after_attempt, wait_exponential

from ..config.settings import SolPriceConfig, get_app_config
from ..monitoring.logger import get_logger

DEFAULT_HEADERS = {"User-Agent": "pump-recovery-bot/0.1"}
_CACHE_KEY = "sol_usd"


class SolPriceUnavailable(RuntimeError):
    """No SOL price has been observed and no fallback is configured."""


class SolPriceOracle:
    """Cached SOL/USD price with a static override and a last-known fallback.

    Lookups on the event path never perform I/O: :meth:`refresh` runs from a
    background task and :attr:`price` only reads the cache or the last value.
    """

    def __init__(
        self,
        config: Optional[SolPriceConfig] = None,
        *,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._config = config or get_app_config().sol_price
        self._session = session or requests.Session()
        self._cache: TTLCache[str, float] = TTLCache(maxsize=4, ttl=self._config.refresh_interval_seconds)
        self._last_price: Optional[float] = self._config.static_price_usd
        self._lock = threading.Lock()
        self._logger = get_logger(__name__)

    @property
    def is_static(self) -> bool:
        return self._config.static_price_usd is not None

    @property
    def price(self) -> float:
        if self._config.static_price_usd is not None:
            return self._config.static_price_usd
        with self._lock:
            cached = self._cache.get(_CACHE_KEY)
            if cached is not None:
                return cached
            if self._last_price is not None:
                return self._last_price
        if self._config.fallback_price_usd is not None:
            return self._config.fallback_price_usd
        raise SolPriceUnavailable("SOL/USD price unknown and no fallback configured")

    def sol_to_usd(self, amount_sol: float) -> float:
        return amount_sol * self.price

    def usd_to_sol(self, amount_usd: float) -> float:
        return amount_usd / self.price

    @retry(wait=wait_exponential(multiplier=1, min=1, max=10), stop=stop_after_attempt(3))
    def _fetch(self) -> float:
        response = self._session.get(
            str(self._config.price_url),
            headers=DEFAULT_HEADERS,
            timeout=self._config.http_timeout,
        )
        response.raise_for_status()
        payload = response.json()
        value = float(payload["solana"]["usd"])
        if value <= 0:
            raise ValueError(f"non-positive SOL price {value}")
        return value

    def refresh(self) -> Optional[float]:
        """Fetch a fresh price; keeps the previous one on failure."""

        if self.is_static:
            return self._config.static_price_usd
        with self._lock:
            cached = self._cache.get(_CACHE_KEY)
        if cached is not None:
            return cached
        try:
            value = self._fetch()
        except (RetryError, requests.RequestException, KeyError, TypeError, ValueError) as exc:
            self._logger.warning("SOL price refresh failed, keeping %s: %s", self._last_price, exc)
            return self._last_price
        with self._lock:
            self._cache[_CACHE_KEY] = value
            self._last_price = value
        self._logger.debug("SOL price refreshed: %.4f USD", value)
        return value

    async def run(self, stop: asyncio.Event) -> None:
        """Refresh periodically until ``stop`` is set."""

        if self.is_static:
            return
        while not stop.is_set():
            await asyncio.to_thread(self.refresh)
            try:
                await asyncio.wait_for(stop.wait(), timeout=self._config.refresh_interval_seconds)
            except asyncio.TimeoutError:
                continue


__all__ = ["SolPriceOracle", "SolPriceUnavailable"]
