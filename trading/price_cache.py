"""Token and base-currency price lookups with a short-lived cache."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from utils.addressing import normalize_address
from utils.errors import TransportError, ValidationError
from utils.http_client import ResilientHttpClient

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass
class CachedPrice:
    value: float
    fetched_at: float
    stale: bool = False


class PriceCache:
    """TTL cache that absorbs transient fetch failures with the last known value."""

    def __init__(self, ttl_seconds: float, clock: Clock = time.time) -> None:
        self.ttl_seconds = max(0.0, float(ttl_seconds))
        self._clock = clock
        self._entries: dict[str, CachedPrice] = {}

    async def get(self, key: str, fetcher: Callable[[], Awaitable[float]]) -> CachedPrice:
        now = self._clock()
        cached = self._entries.get(key)
        if cached is not None and not cached.stale and now - cached.fetched_at < self.ttl_seconds:
            return cached
        try:
            value = await fetcher()
        except (TransportError, ValidationError) as exc:
            if cached is None:
                raise
            logger.debug("PRICE_STALE key=%s age=%.1fs error=%s", key, now - cached.fetched_at, exc)
            cached.stale = True
            return cached
        entry = CachedPrice(value=float(value), fetched_at=now)
        self._entries[key] = entry
        return entry

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)


class DexScreenerPriceSource:
    def __init__(self, http: ResilientHttpClient, api_base: str, chain_id: str) -> None:
        self._http = http
        self._api_base = api_base.rstrip("/")
        self._chain_id = chain_id.lower()

    async def fetch_price_usd(self, asset_address: str) -> float:
        asset_address = normalize_address(asset_address)
        result = await self._http.get_json(f"{self._api_base}/tokens/{asset_address}", source="dex_price")
        result.raise_for_transport("dex_price")
        if not isinstance(result.data, dict):
            raise ValidationError(f"Unexpected DexScreener token payload for {asset_address}")

        best_liq = -1.0
        best_price = 0.0
        pairs = result.data.get("pairs")
        for pair in pairs if isinstance(pairs, list) else []:
            if not isinstance(pair, dict):
                continue
            if str(pair.get("chainId", "")).lower() != self._chain_id:
                continue
            liquidity = pair.get("liquidity")
            try:
                liq = float((liquidity.get("usd") if isinstance(liquidity, dict) else 0) or 0)
                price = float(pair.get("priceUsd") or 0)
            except (TypeError, ValueError):
                continue
            if price <= 0:
                continue
            if liq > best_liq:
                best_liq = liq
                best_price = price
        if best_price <= 0:
            raise ValidationError(f"No priced pair for {asset_address}")
        return best_price


def _parse_base_price(payload: Any, base_mint: str) -> float:
    if not isinstance(payload, dict):
        return 0.0
    # CoinGecko simple price: {"solana": {"usd": 150.1}}
    solana = payload.get("solana")
    if isinstance(solana, dict):
        return float(solana.get("usd") or 0)
    # Jupiter price: {"data": {"<mint>": {"price": "150.1"}}}
    data = payload.get("data")
    if isinstance(data, dict):
        row = data.get(base_mint)
        if isinstance(row, dict):
            return float(row.get("price") or 0)
    return 0.0


class BaseCurrencyPriceSource:
    """SOL/USD conversion rate. Endpoints are tried in order; the result is cached separately."""

    def __init__(
        self,
        http: ResilientHttpClient,
        urls: tuple[str, ...],
        base_mint: str,
        *,
        ttl_seconds: float,
        fallback_usd: float,
        clock: Clock = time.time,
    ) -> None:
        self._http = http
        self._urls = tuple(urls)
        self._base_mint = base_mint
        self._fallback_usd = float(fallback_usd)
        self._cache = PriceCache(ttl_seconds, clock=clock)

    async def fetch_base_usd(self) -> float:
        last_error = ""
        for url in self._urls:
            result = await self._http.get_json(url, source="base_price")
            if not result.ok:
                last_error = result.error
                continue
            try:
                price = _parse_base_price(result.data, self._base_mint)
            except (TypeError, ValueError):
                price = 0.0
            if price > 0:
                return price
            last_error = f"unparseable payload from {url}"
        raise TransportError(f"base price unavailable: {last_error}", source="base_price")

    async def base_usd(self) -> float:
        try:
            return (await self._cache.get("base", self.fetch_base_usd)).value
        except TransportError as exc:
            logger.warning("BASE_PRICE_FALLBACK usd=%.2f error=%s", self._fallback_usd, exc)
            return self._fallback_usd


class MarketPrices:
    """Token prices in USD through a PriceCache plus the base conversion rate."""

    def __init__(
        self,
        token_source: DexScreenerPriceSource,
        base_source: BaseCurrencyPriceSource,
        cache: PriceCache,
    ) -> None:
        self._token_source = token_source
        self._base_source = base_source
        self.cache = cache

    async def token_price(self, asset_address: str) -> CachedPrice:
        return await self.cache.get(asset_address, lambda: self._token_source.fetch_price_usd(asset_address))

    async def base_usd(self) -> float:
        return await self._base_source.base_usd()

    def forget(self, asset_address: str) -> None:
        self.cache.invalidate(asset_address)
