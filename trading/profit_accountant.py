"""Live valuations and portfolio-level P&L for open positions."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Iterable, Protocol

from trading.models import Position, Valuation
from trading.price_cache import CachedPrice
from utils.errors import TransportError, ValidationError

logger = logging.getLogger(__name__)


class PriceSource(Protocol):
    async def token_price(self, asset_address: str) -> CachedPrice:
        ...

    async def base_usd(self) -> float:
        ...

    def forget(self, asset_address: str) -> None:
        ...


@dataclass(frozen=True)
class PortfolioSummary:
    total_invested: float
    total_value: float
    total_pnl: float
    total_pnl_percent: float
    active: int
    winning: int
    losing: int
    best_asset: str = ""
    best_pnl_percent: float = 0.0
    worst_asset: str = ""
    worst_pnl_percent: float = 0.0


class ProfitAccountant:
    def __init__(self, stale_after_seconds: float) -> None:
        self._valuations: dict[str, Valuation] = {}
        self._stale_after = float(stale_after_seconds)
        self.refresh_failures = 0

    def open_position(self, position: Position) -> Valuation:
        valuation = Valuation.at_entry(position)
        self._valuations[position.asset_address] = valuation
        return valuation

    def close_position(self, asset_address: str) -> None:
        self._valuations.pop(asset_address, None)

    def valuation(self, asset_address: str) -> Valuation | None:
        return self._valuations.get(asset_address)

    def is_stale(self, asset_address: str, now: float) -> bool:
        valuation = self._valuations.get(asset_address)
        if valuation is None or valuation.last_refreshed_at is None:
            return True
        return now - valuation.last_refreshed_at > self._stale_after

    def rebase_after_partial(self, before: Position, after: Position) -> None:
        """Scale the valuation to the reduced holding and restart the high-water mark there."""
        valuation = self._valuations.get(after.asset_address)
        if valuation is None or before.units_held <= 0:
            return
        ratio = after.units_held / before.units_held
        value = valuation.current_value_base * ratio
        self._valuations[after.asset_address] = replace(
            valuation,
            current_value_base=value,
            pnl_base=valuation.pnl_base * ratio,
            high_water_value=value,
            low_water_value=min(valuation.low_water_value * ratio, value),
        )

    async def refresh_all(
        self, positions: Iterable[Position], price_source: PriceSource, now: float
    ) -> dict[str, Valuation]:
        positions = list(positions)
        if not positions:
            return {}
        try:
            base_usd = await price_source.base_usd()
        except (TransportError, ValidationError) as exc:
            logger.warning("Base price refresh failed: %s", exc)
            self.refresh_failures += len(positions)
            return dict(self._valuations)

        results = await asyncio.gather(
            *[price_source.token_price(p.asset_address) for p in positions],
            return_exceptions=True,
        )
        for position, fetched in zip(positions, results):
            if isinstance(fetched, BaseException):
                self.refresh_failures += 1
                if isinstance(fetched, (TransportError, ValidationError)):
                    logger.debug("Price refresh failed asset=%s error=%s", position.asset_address, fetched)
                else:
                    logger.warning(
                        "Price refresh crashed asset=%s error=%s: %s",
                        position.asset_address,
                        type(fetched).__name__,
                        fetched,
                    )
                continue
            if fetched.stale:
                self.refresh_failures += 1
                continue
            self._apply_price(position, fetched.value, base_usd, now)
        return dict(self._valuations)

    def _apply_price(self, position: Position, price_usd: float, base_usd: float, now: float) -> None:
        if base_usd <= 0 or price_usd <= 0:
            return
        previous = self._valuations.get(position.asset_address) or self.open_position(position)
        price_base = price_usd / base_usd
        value = position.units_held * price_base
        invested = position.base_amount_invested
        pnl = value - invested
        pnl_percent = (pnl / invested * 100.0) if invested > 0 else 0.0
        self._valuations[position.asset_address] = Valuation(
            current_price_per_unit=price_base,
            current_value_base=value,
            pnl_base=pnl,
            pnl_percent=pnl_percent,
            high_water_value=max(previous.high_water_value, value),
            low_water_value=min(previous.low_water_value, value),
            last_refreshed_at=now,
        )

    def portfolio_summary(self, positions: Iterable[Position]) -> PortfolioSummary:
        invested = 0.0
        value = 0.0
        winning = 0
        losing = 0
        best: tuple[str, float] | None = None
        worst: tuple[str, float] | None = None
        active = 0
        for position in positions:
            valuation = self._valuations.get(position.asset_address)
            if valuation is None:
                continue
            active += 1
            invested += position.base_amount_invested
            value += valuation.current_value_base
            if valuation.pnl_base > 0:
                winning += 1
            elif valuation.pnl_base < 0:
                losing += 1
            label = position.symbol or position.asset_address
            if best is None or valuation.pnl_percent > best[1]:
                best = (label, valuation.pnl_percent)
            if worst is None or valuation.pnl_percent < worst[1]:
                worst = (label, valuation.pnl_percent)
        pnl = value - invested
        return PortfolioSummary(
            total_invested=invested,
            total_value=value,
            total_pnl=pnl,
            total_pnl_percent=(pnl / invested * 100.0) if invested > 0 else 0.0,
            active=active,
            winning=winning,
            losing=losing,
            best_asset=best[0] if best else "",
            best_pnl_percent=best[1] if best else 0.0,
            worst_asset=worst[0] if worst else "",
            worst_pnl_percent=worst[1] if worst else 0.0,
        )
