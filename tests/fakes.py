"""Scripted collaborators for engine and component tests."""

from __future__ import annotations

from dataclasses import replace
from typing import Any

from config import Settings
from trading.models import Pool, SecurityReport, TradeFill
from trading.price_cache import CachedPrice
from utils.errors import TransportError
from utils.http_client import HttpResult

BASE_MINT = "So11111111111111111111111111111111111111112"


def make_settings(**sections: dict[str, Any]) -> Settings:
    """Default settings with per-section overrides, e.g. make_settings(trading={"max_open_positions": 1})."""
    settings = Settings()
    changes = {}
    for name, overrides in sections.items():
        changes[name] = replace(getattr(settings, name), **overrides)
    return replace(settings, **changes)


def make_pool(n: int = 1, *, liquidity: float = 50.0, source: str = "fake", asset: str | None = None) -> Pool:
    return Pool(
        pool_id=f"{source}:pair{n}",
        asset_address=asset or f"Mint{n:040d}",
        quote_asset_address=BASE_MINT,
        liquidity_base=liquidity,
        discovered_at=0.0,
        source_label=source,
        symbol=f"TK{n}",
    )


class FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class ScriptedPoolSource:
    """Returns queued batches in order; an Exception instance in the queue is raised."""

    def __init__(self, label: str, batches: list[Any] | None = None) -> None:
        self.label = label
        self.batches = list(batches or [])
        self.calls = 0

    async def fetch_pools(self) -> list[Pool]:
        self.calls += 1
        if not self.batches:
            return []
        batch = self.batches.pop(0)
        if isinstance(batch, Exception):
            raise batch
        return list(batch)


class FakeSecurityCheck:
    def __init__(self, default: SecurityReport | None = None) -> None:
        self.default = default or SecurityReport(score=90, findings=(), source="fake")
        self.reports: dict[str, SecurityReport] = {}
        self.errors: dict[str, Exception] = {}
        self.calls: list[str] = []

    async def check_token(self, address: str) -> SecurityReport:
        self.calls.append(address)
        if address in self.errors:
            raise self.errors[address]
        return self.reports.get(address, self.default)

    def runtime_stats(self, reset: bool = False) -> dict[str, Any]:
        return {"checks_total": len(self.calls)}


class FakeExecutor:
    """Buys fill `units_per_base` units per base unit; sells return the queued outcome per asset."""

    def __init__(self, units_per_base: float = 1000.0) -> None:
        self.units_per_base = units_per_base
        self.buy_errors: dict[str, Exception] = {}
        self.sell_outcomes: dict[str, list[Any]] = {}
        self.buys: list[tuple[str, float]] = []
        self.sells: list[tuple[str, float]] = []
        self.sell_price_base = 0.0

    async def buy(self, asset_address: str, base_amount: float) -> TradeFill:
        self.buys.append((asset_address, base_amount))
        if asset_address in self.buy_errors:
            raise self.buy_errors[asset_address]
        return TradeFill(base_amount=base_amount, units=base_amount * self.units_per_base, execution_ref=None)

    async def sell(self, asset_address: str, units: float) -> TradeFill:
        self.sells.append((asset_address, units))
        queued = self.sell_outcomes.get(asset_address) or []
        if queued:
            outcome = queued.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return TradeFill(base_amount=units * self.sell_price_base, units=units, execution_ref=None)


class RecordingNotifier:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.messages: list[str] = []

    async def notify(self, text: str) -> None:
        if self.fail:
            raise ConnectionError("telegram unreachable")
        self.messages.append(text)


class FakePriceSource:
    """USD token prices keyed by asset with a fixed base rate."""

    def __init__(self, base_usd: float = 1.0) -> None:
        self.base = base_usd
        self.prices: dict[str, float] = {}
        self.failing: set[str] = set()
        self.stale: set[str] = set()
        self.broken: dict[str, Exception] = {}
        self.calls: list[str] = []
        self.forgotten: list[str] = []

    async def token_price(self, asset_address: str) -> CachedPrice:
        self.calls.append(asset_address)
        if asset_address in self.broken:
            raise self.broken[asset_address]
        if asset_address in self.failing:
            raise TransportError(f"price unavailable for {asset_address}", source="fake")
        if asset_address not in self.prices:
            raise TransportError(f"no price for {asset_address}", source="fake")
        return CachedPrice(value=self.prices[asset_address], fetched_at=0.0, stale=asset_address in self.stale)

    async def base_usd(self) -> float:
        return self.base

    def forget(self, asset_address: str) -> None:
        self.forgotten.append(asset_address)


class StubHttp:
    """Answers get_json/post_json from a queue of HttpResult per URL prefix."""

    def __init__(self) -> None:
        self.responses: list[tuple[str, HttpResult]] = []
        self.calls: list[dict[str, Any]] = []

    def add(self, url_prefix: str, result: HttpResult) -> None:
        self.responses.append((url_prefix, result))

    def _next(self, url: str) -> HttpResult:
        for index, (prefix, result) in enumerate(self.responses):
            if url.startswith(prefix):
                del self.responses[index]
                return result
        return HttpResult(ok=False, status=0, data=None, error="no stubbed response")

    async def get_json(self, url: str, **kwargs: Any) -> HttpResult:
        self.calls.append({"method": "GET", "url": url, **kwargs})
        return self._next(url)

    async def post_json(self, url: str, payload: Any, **kwargs: Any) -> HttpResult:
        self.calls.append({"method": "POST", "url": url, "payload": payload, **kwargs})
        return self._next(url)

    def snapshot_stats(self, reset: bool = False) -> dict[str, dict[str, int | float]]:
        return {}

    async def close(self) -> None:
        return None
