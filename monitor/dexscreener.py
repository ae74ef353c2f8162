"""New pool discovery with DexScreener primary source and GeckoTerminal fallback."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Protocol, Sequence

from config import ApiSettings, MonitoringSettings
from trading.models import Pool
from utils.addressing import normalize_address
from utils.errors import DiscoveryError, TransportError, ValidationError
from utils.http_client import ResilientHttpClient

logger = logging.getLogger(__name__)

BaseUsdProvider = Callable[[], Awaitable[float]]


class PoolSource(Protocol):
    label: str

    async def fetch_pools(self) -> list[Pool]:
        ...


def _parse_rfc3339(value: str) -> datetime | None:
    try:
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        dt = datetime.fromisoformat(value)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
    except ValueError:
        return None


def _to_float(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


class _FilteredSource:
    """Shared age/count filters and USD to base liquidity conversion."""

    label = "base"

    def __init__(
        self,
        http: ResilientHttpClient,
        apis: ApiSettings,
        monitoring: MonitoringSettings,
        base_mint: str,
        base_usd: BaseUsdProvider,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._http = http
        self._apis = apis
        self._token_age_max = int(monitoring.token_age_max_seconds)
        self._max_per_scan = max(1, int(monitoring.max_new_pools_per_scan))
        self._base_mint = base_mint
        self._base_usd = base_usd
        self._clock = clock

    def _is_fresh(self, created_ts: float, now: float) -> bool:
        return now - created_ts <= self._token_age_max

    async def _liquidity_in_base(self, native_base: float, liquidity_usd: float) -> float:
        if native_base > 0:
            return native_base
        if liquidity_usd <= 0:
            return 0.0
        base_usd = await self._base_usd()
        if base_usd <= 0:
            return 0.0
        return liquidity_usd / base_usd


class DexScreenerPoolSource(_FilteredSource):
    label = "dexscreener"

    async def fetch_pools(self) -> list[Pool]:
        queries = self._apis.dex_search_queries or ("SOL",)
        failures = 0
        out: list[Pool] = []
        for query in queries:
            url = f"{self._apis.dexscreener_api}/search"
            result = await self._http.get_json(url, source="dexscreener", params={"q": query})
            if not result.ok:
                failures += 1
                logger.warning("Dex query failed query=%s error=%s", query, result.error)
                continue
            if not isinstance(result.data, dict):
                failures += 1
                logger.warning("Dex query returned unexpected payload query=%s", query)
                continue
            pairs = result.data.get("pairs")
            out.extend(await self._filter_dex_pairs(pairs if isinstance(pairs, list) else []))
            if len(out) >= self._max_per_scan:
                break
        if failures and failures == len(queries):
            raise TransportError("all DexScreener queries failed", source=self.label)
        return out[: self._max_per_scan]

    async def _filter_dex_pairs(self, pairs: Sequence[dict[str, Any]]) -> list[Pool]:
        now = self._clock()
        filtered: list[Pool] = []
        for pair in pairs:
            if not isinstance(pair, dict):
                continue
            if str(pair.get("chainId", "")).lower() != self._apis.chain_id:
                continue
            pair_address = normalize_address(pair.get("pairAddress"))
            created_ms = pair.get("pairCreatedAt")
            if not pair_address or not created_ms:
                continue
            if not self._is_fresh(_to_float(created_ms) / 1000.0, now):
                continue

            base_token = _as_dict(pair.get("baseToken"))
            quote_token = _as_dict(pair.get("quoteToken"))
            liquidity = _as_dict(pair.get("liquidity"))
            base_addr = normalize_address(base_token.get("address"))
            quote_addr = normalize_address(quote_token.get("address"))
            # The candidate asset is whichever side is not the base currency.
            if quote_addr == self._base_mint and base_addr and base_addr != self._base_mint:
                asset, symbol, native_base = base_addr, base_token.get("symbol", ""), _to_float(liquidity.get("quote"))
            elif base_addr == self._base_mint and quote_addr and quote_addr != self._base_mint:
                asset, symbol, native_base = quote_addr, quote_token.get("symbol", ""), _to_float(liquidity.get("base"))
            else:
                continue

            filtered.append(
                Pool(
                    pool_id=f"{self.label}:{pair_address}",
                    asset_address=asset,
                    quote_asset_address=self._base_mint,
                    liquidity_base=await self._liquidity_in_base(native_base, _to_float(liquidity.get("usd"))),
                    discovered_at=now,
                    source_label=self.label,
                    symbol=str(symbol or ""),
                    dex_id=str(pair.get("dexId") or "").lower(),
                    pair_url=str(pair.get("url") or ""),
                )
            )
        return filtered


class GeckoTerminalPoolSource(_FilteredSource):
    label = "geckoterminal"

    async def fetch_pools(self) -> list[Pool]:
        url = f"{self._apis.gecko_api}/networks/{self._apis.gecko_network}/new_pools"
        result = await self._http.get_json(
            url,
            source="geckoterminal",
            params={"page": 1, "include": "base_token,quote_token"},
        )
        result.raise_for_transport(self.label)
        if not isinstance(result.data, dict):
            raise ValidationError("GeckoTerminal returned unexpected payload")
        pools = await self._filter_gecko_pools(result.data.get("data") or [], result.data.get("included") or [])
        return pools[: self._max_per_scan]

    @staticmethod
    def _build_gecko_token_map(included: Sequence[dict[str, Any]]) -> dict[str, dict[str, Any]]:
        out: dict[str, dict[str, Any]] = {}
        for item in included:
            if isinstance(item, dict) and item.get("type") == "token":
                out[item.get("id", "")] = _as_dict(item.get("attributes"))
        return out

    async def _filter_gecko_pools(
        self, pools: Sequence[dict[str, Any]], included: Sequence[dict[str, Any]]
    ) -> list[Pool]:
        now = self._clock()
        token_map = self._build_gecko_token_map(included)
        filtered: list[Pool] = []
        for pool in pools:
            if not isinstance(pool, dict):
                continue
            attrs = _as_dict(pool.get("attributes"))
            rel = _as_dict(pool.get("relationships"))
            base_id = _as_dict(_as_dict(rel.get("base_token")).get("data")).get("id", "")
            quote_id = _as_dict(_as_dict(rel.get("quote_token")).get("data")).get("id", "")
            base_token = token_map.get(base_id, {})
            quote_token = token_map.get(quote_id, {})
            base_addr = normalize_address(base_token.get("address"))
            quote_addr = normalize_address(quote_token.get("address"))
            if quote_addr == self._base_mint and base_addr and base_addr != self._base_mint:
                asset, symbol = base_addr, base_token.get("symbol", "")
            elif base_addr == self._base_mint and quote_addr and quote_addr != self._base_mint:
                asset, symbol = quote_addr, quote_token.get("symbol", "")
            else:
                continue

            created_at = _parse_rfc3339(str(attrs.get("pool_created_at") or ""))
            if created_at is None or not self._is_fresh(created_at.timestamp(), now):
                continue
            pair_address = normalize_address(attrs.get("address") or pool.get("id"))
            if not pair_address:
                continue

            filtered.append(
                Pool(
                    pool_id=f"{self.label}:{pair_address}",
                    asset_address=asset,
                    quote_asset_address=self._base_mint,
                    liquidity_base=await self._liquidity_in_base(0.0, _to_float(attrs.get("reserve_in_usd"))),
                    discovered_at=now,
                    source_label=self.label,
                    symbol=str(symbol or ""),
                    dex_id=str(_as_dict(_as_dict(rel.get("dex")).get("data")).get("id") or ""),
                    pair_url=f"https://www.geckoterminal.com/{self._apis.gecko_network}/pools/{pair_address}",
                )
            )
        return filtered


class PoolDiscoveryFeed:
    """Polls sources in priority order and hands out each pool id exactly once."""

    def __init__(self, sources: Sequence[PoolSource], http: ResilientHttpClient | None = None) -> None:
        if not sources:
            raise ValueError("PoolDiscoveryFeed needs at least one source")
        self._sources = list(sources)
        self._http = http
        self.seen_pool_ids: set[str] = set()
        self._polls = 0
        self._source_failures: dict[str, int] = {}
        self._duplicates_skipped = 0

    async def poll(self) -> list[Pool]:
        self._polls += 1
        pools: list[Pool] = []
        failed = 0
        for source in self._sources:
            try:
                pools = await source.fetch_pools()
            except (TransportError, ValidationError) as exc:
                failed += 1
                self._source_failures[source.label] = self._source_failures.get(source.label, 0) + 1
                logger.warning("Discovery source failed source=%s error=%s", source.label, exc)
                continue
            except Exception:
                failed += 1
                self._source_failures[source.label] = self._source_failures.get(source.label, 0) + 1
                logger.exception("Discovery source crashed source=%s", source.label)
                continue
            if pools:
                break
        if failed == len(self._sources):
            raise DiscoveryError("every discovery source failed")

        fresh: list[Pool] = []
        for pool in pools:
            if pool.pool_id in self.seen_pool_ids:
                self._duplicates_skipped += 1
                continue
            self.seen_pool_ids.add(pool.pool_id)
            fresh.append(pool)
            logger.info(
                "POOL_DISCOVERED pool=%s asset=%s symbol=%s liquidity=%.3f source=%s",
                pool.pool_id,
                pool.asset_address,
                pool.symbol,
                pool.liquidity_base,
                pool.source_label,
            )
        return fresh

    def runtime_stats(self, reset: bool = False) -> dict[str, Any]:
        stats: dict[str, Any] = self._http.snapshot_stats(reset=reset) if self._http is not None else {}
        stats["discovery"] = {
            "polls": self._polls,
            "seen_pool_ids": len(self.seen_pool_ids),
            "duplicates_skipped": self._duplicates_skipped,
            "source_failures": dict(self._source_failures),
        }
        return stats

    async def close(self) -> None:
        if self._http is not None:
            await self._http.close()
