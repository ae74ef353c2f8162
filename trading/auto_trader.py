"""Scan loop: discovery, gated entry, valuation refresh and exits on one task."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Iterable

from config import Settings
from database.db import TradeJournal
from monitor.alerter import (
    AlertDispatcher,
    format_buy,
    format_force_closed,
    format_portfolio,
    format_rejection,
    format_sell,
    format_startup,
)
from monitor.dexscreener import PoolDiscoveryFeed
from trading.entry_gate import EntryGate
from trading.exit_evaluator import ExitEvaluator
from trading.live_executor import Executor
from trading.models import Alert, AlertKind, CycleResult, ExitDecision, Pool, Position, TradeFill
from trading.position_store import PositionStore
from trading.profit_accountant import PriceSource, ProfitAccountant
from trading.wallet import Wallet
from utils.errors import DiscoveryError, ExecutionRejected, SniperError, ValidationError

logger = logging.getLogger(__name__)


class SniperEngine:
    def __init__(
        self,
        *,
        settings: Settings,
        feed: PoolDiscoveryFeed,
        gate: EntryGate,
        executor: Executor,
        store: PositionStore,
        evaluator: ExitEvaluator,
        accountant: ProfitAccountant,
        prices: PriceSource,
        dispatcher: AlertDispatcher,
        journal: TradeJournal | None = None,
        wallet: Wallet | None = None,
        closers: Iterable[Any] = (),
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.feed = feed
        self.gate = gate
        self.executor = executor
        self.store = store
        self.evaluator = evaluator
        self.accountant = accountant
        self.prices = prices
        self.dispatcher = dispatcher
        self.journal = journal
        self.wallet = wallet
        self._closers = list(closers)
        self._clock = clock
        self._stop = asyncio.Event()

        self.started_at = clock()
        self.scans = 0
        self.pools_processed = 0
        self.total_bought = 0
        self.total_closed = 0
        self.total_force_closed = 0
        self.total_partial_sells = 0
        self.realized_pnl_base = 0.0
        self._last_refresh_at: float | None = None
        self._last_summary_at = self.started_at

    @property
    def paper(self) -> bool:
        return self.settings.trading.paper_mode

    def stop(self) -> None:
        self._stop.set()

    def next_interval(self, result: CycleResult) -> float:
        m = self.settings.monitoring
        if result.pools_found > 0:
            return float(m.fast_scan_interval_seconds)
        return float(m.scan_interval_seconds)

    async def run_cycle(self, now: float) -> CycleResult:
        result = CycleResult()
        self.scans += 1

        pools: list[Pool] = []
        try:
            pools = await self.feed.poll()
        except DiscoveryError as exc:
            result.errors += 1
            logger.warning("Discovery failed: %s", exc)
        except Exception:
            result.errors += 1
            logger.exception("Discovery crashed")
        result.pools_found = len(pools)

        for pool in pools:
            try:
                await self._process_pool(pool, now, result)
            except SniperError as exc:
                result.errors += 1
                logger.warning("Pool processing failed pool=%s error=%s", pool.pool_id, exc)
            except Exception:
                result.errors += 1
                logger.exception("Pool processing crashed pool=%s", pool.pool_id)

        try:
            await self._refresh_valuations(now, result)
        except SniperError as exc:
            result.errors += 1
            logger.warning("Valuation refresh failed: %s", exc)
        except Exception:
            result.errors += 1
            logger.exception("Valuation refresh crashed")

        for position in self.store.get_all():
            try:
                await self._process_exit(position, now, result)
            except SniperError as exc:
                result.errors += 1
                self.evaluator.mark_open(position.asset_address)
                logger.warning("Exit processing failed asset=%s error=%s", position.asset_address, exc)
            except Exception:
                result.errors += 1
                self.evaluator.mark_open(position.asset_address)
                logger.exception("Exit processing crashed asset=%s", position.asset_address)

        await self._maybe_portfolio_summary(now)

        logger.info(
            "SCAN_CYCLE scan=%s pools=%s accepted=%s rejected=%s bought=%s closed=%s partial=%s errors=%s open=%s",
            self.scans,
            result.pools_found,
            result.accepted,
            result.rejected,
            result.bought,
            result.positions_closed,
            result.partial_sells,
            result.errors,
            len(self.store),
        )
        return result

    async def _process_pool(self, pool: Pool, now: float, result: CycleResult) -> None:
        self.pools_processed += 1
        decision = await self.gate.evaluate(pool)
        if not decision.accepted:
            result.rejected += 1
            score = decision.report.score if decision.report and decision.report.score is not None else 0
            await self.dispatcher.emit(
                Alert(pool.asset_address, AlertKind.REJECTED, float(score), now, format_rejection(pool, decision.reason))
            )
            return

        result.accepted += 1
        refusal = await self._buy_refusal(pool)
        if refusal:
            logger.info("BUY_SKIPPED pool=%s asset=%s reason=%s", pool.pool_id, pool.asset_address, refusal)
            return

        size = self.settings.trading.position_size_base
        try:
            fill = await self.executor.buy(pool.asset_address, size)
            if fill.units <= 0:
                raise ValidationError(f"buy filled zero units for {pool.asset_address}")
        except SniperError as exc:
            result.errors += 1
            logger.warning("AUTO_BUY_FAILED pool=%s asset=%s error=%s", pool.pool_id, pool.asset_address, exc)
            await self.dispatcher.emit(
                Alert(pool.asset_address, AlertKind.REJECTED, 0.0, now, format_rejection(pool, f"buy failed: {exc}"))
            )
            return

        position = Position.open(
            pool.asset_address,
            now,
            fill.base_amount,
            fill.units,
            fill.execution_ref,
            symbol=pool.symbol,
            pool_id=pool.pool_id,
            source_label=pool.source_label,
        )
        self.store.insert(position)
        self.accountant.open_position(position)
        self.evaluator.mark_open(position.asset_address)
        self.total_bought += 1
        result.bought += 1
        logger.info(
            "AUTO_BUY asset=%s symbol=%s spent=%.6f units=%.6f entry=%.12f ref=%s paper=%s",
            position.asset_address,
            position.symbol,
            position.base_amount_invested,
            position.units_held,
            position.entry_price_per_unit,
            position.execution_ref,
            self.paper,
        )
        if self.journal is not None:
            self.journal.record_trade(
                asset_address=position.asset_address,
                symbol=position.symbol,
                side="buy",
                reason=pool.source_label,
                base_amount=position.base_amount_invested,
                units=position.units_held,
                price_per_unit=position.entry_price_per_unit,
                tx_ref=position.execution_ref,
                paper=self.paper,
            )
        await self.dispatcher.emit(
            Alert(position.asset_address, AlertKind.BOUGHT, fill.base_amount, now, format_buy(pool, position, self.paper))
        )

    async def _buy_refusal(self, pool: Pool) -> str:
        t = self.settings.trading
        if self.store.exists(pool.asset_address):
            return "position already open"
        if len(self.store) >= t.max_open_positions:
            return f"max open positions {t.max_open_positions} reached"
        if self.wallet is not None:
            balance = await self.wallet.get_balance()
            required = t.position_size_base + t.min_wallet_reserve_base
            if balance < required:
                return f"insufficient balance {balance:.4f} < {required:.4f}"
        return ""

    async def _refresh_valuations(self, now: float, result: CycleResult) -> None:
        interval = float(self.settings.monitoring.price_refresh_seconds)
        if self._last_refresh_at is not None and now - self._last_refresh_at < interval:
            return
        positions = self.store.get_all()
        await self.accountant.refresh_all(positions, self.prices, now)
        self._last_refresh_at = now
        result.refreshed = True
        for position in positions:
            await self.dispatcher.observe(position, self.accountant.valuation(position.asset_address), now)

    async def _process_exit(self, position: Position, now: float, result: CycleResult) -> None:
        asset = position.asset_address
        decision = self.evaluator.evaluate(position, self.accountant.valuation(asset), now)
        if decision is None:
            return

        units = self.evaluator.units_to_sell(position, decision)
        self.evaluator.mark_closing(asset)
        try:
            fill = await self.executor.sell(asset, units)
        except ExecutionRejected as exc:
            result.errors += 1
            result.positions_closed += 1
            await self._force_close(position, decision, str(exc), now)
            return
        except SniperError as exc:
            result.errors += 1
            self.evaluator.mark_open(asset)
            logger.warning(
                "AUTO_SELL_RETRY asset=%s reason=%s error=%s", asset, decision.reason.value, exc
            )
            return

        if decision.is_full_exit:
            result.positions_closed += 1
            await self._close_full(position, decision, fill, now)
        else:
            result.partial_sells += 1
            await self._close_partial(position, decision, fill, units, now)

    async def _close_full(self, position: Position, decision: ExitDecision, fill: TradeFill, now: float) -> None:
        asset = position.asset_address
        pnl = fill.base_amount - position.base_amount_invested
        pnl_percent = (pnl / position.base_amount_invested * 100.0) if position.base_amount_invested > 0 else 0.0
        self._remove_position(asset)
        self.realized_pnl_base += pnl
        self.total_closed += 1
        logger.info(
            "AUTO_SELL asset=%s reason=%s units=%.6f received=%.6f pnl=%.6f pnl_pct=%.2f ref=%s",
            asset,
            decision.reason.value,
            fill.units,
            fill.base_amount,
            pnl,
            pnl_percent,
            fill.execution_ref,
        )
        self._journal_sell(position, "sell", decision.reason.value, fill, pnl, pnl_percent)
        await self._emit_sold(position, decision, fill, pnl, pnl_percent, partial=False, now=now)

    async def _close_partial(
        self, position: Position, decision: ExitDecision, fill: TradeFill, units: float, now: float
    ) -> None:
        cost = position.base_amount_invested * (units / position.units_held)
        pnl = fill.base_amount - cost
        pnl_percent = (pnl / cost * 100.0) if cost > 0 else 0.0
        reduced = position.reduce_holdings(units, fill.base_amount)
        self.store.replace(reduced)
        self.accountant.rebase_after_partial(position, reduced)
        self.evaluator.mark_open(position.asset_address)
        self.realized_pnl_base += pnl
        self.total_partial_sells += 1
        logger.info(
            "AUTO_SELL_PARTIAL asset=%s reason=%s units=%.6f remaining=%.6f received=%.6f pnl=%.6f ref=%s",
            position.asset_address,
            decision.reason.value,
            units,
            reduced.units_held,
            fill.base_amount,
            pnl,
            fill.execution_ref,
        )
        self._journal_sell(position, "partial_sell", decision.reason.value, fill, pnl, pnl_percent)
        await self._emit_sold(position, decision, fill, pnl, pnl_percent, partial=True, now=now)

    async def _force_close(self, position: Position, decision: ExitDecision, error: str, now: float) -> None:
        asset = position.asset_address
        pnl = -position.base_amount_invested
        self._remove_position(asset)
        self.realized_pnl_base += pnl
        self.total_force_closed += 1
        logger.error("FORCE_CLOSE asset=%s reason=%s error=%s written_off=%.6f", asset, decision.reason.value, error, -pnl)
        if self.journal is not None:
            self.journal.record_trade(
                asset_address=asset,
                symbol=position.symbol,
                side="force_close",
                reason=f"{decision.reason.value}: {error}"[:250],
                base_amount=0.0,
                units=position.units_held,
                pnl_base=pnl,
                pnl_percent=-100.0,
                paper=self.paper,
            )
        await self.dispatcher.emit(
            Alert(asset, AlertKind.FORCE_CLOSED, pnl, now, format_force_closed(position, error))
        )

    def _remove_position(self, asset: str) -> None:
        self.store.remove(asset)
        self.accountant.close_position(asset)
        self.prices.forget(asset)
        self.dispatcher.forget(asset)
        self.evaluator.forget(asset)

    def _journal_sell(
        self, position: Position, side: str, reason: str, fill: TradeFill, pnl: float, pnl_percent: float
    ) -> None:
        if self.journal is None:
            return
        self.journal.record_trade(
            asset_address=position.asset_address,
            symbol=position.symbol,
            side=side,
            reason=reason,
            base_amount=fill.base_amount,
            units=fill.units,
            price_per_unit=(fill.base_amount / fill.units) if fill.units > 0 else None,
            pnl_base=pnl,
            pnl_percent=pnl_percent,
            tx_ref=fill.execution_ref,
            paper=self.paper,
        )

    async def _emit_sold(
        self,
        position: Position,
        decision: ExitDecision,
        fill: TradeFill,
        pnl: float,
        pnl_percent: float,
        *,
        partial: bool,
        now: float,
    ) -> None:
        await self.dispatcher.emit(
            Alert(
                position.asset_address,
                AlertKind.SOLD,
                pnl_percent,
                now,
                format_sell(position, fill, decision.reason.value, pnl, pnl_percent, partial),
            )
        )

    async def _maybe_portfolio_summary(self, now: float, force: bool = False) -> None:
        interval = int(self.settings.monitoring.portfolio_summary_seconds)
        if interval <= 0:
            return
        if not force and now - self._last_summary_at < interval:
            return
        self._last_summary_at = now
        positions = self.store.get_all()
        summary = self.accountant.portfolio_summary(positions)
        stale = sum(1 for p in positions if self.accountant.is_stale(p.asset_address, now))
        logger.info(
            "PORTFOLIO_SUMMARY window=%ss active=%s stale=%s invested=%.4f value=%.4f pnl=%.4f pnl_pct=%.2f realized=%.4f",
            interval,
            summary.active,
            stale,
            summary.total_invested,
            summary.total_value,
            summary.total_pnl,
            summary.total_pnl_percent,
            self.realized_pnl_base,
        )
        logger.info(
            "RUNTIME_STATS discovery=%s gate=%s alerts=%s price_failures=%s",
            self.feed.runtime_stats(reset=True),
            self.gate.runtime_stats(reset=True),
            self.dispatcher.runtime_stats(),
            self.accountant.refresh_failures,
        )
        if summary.active > 0:
            await self.dispatcher.emit(
                Alert("portfolio", AlertKind.PORTFOLIO, summary.total_pnl, now, format_portfolio(summary, self.realized_pnl_base))
            )

    async def run(self, max_cycles: int | None = None) -> None:
        await self.dispatcher.announce(format_startup(self.settings.summary_lines()))
        cycles = 0
        while not self._stop.is_set():
            started = time.monotonic()
            try:
                result = await self.run_cycle(self._clock())
            except Exception:
                logger.exception("Scan cycle error")
                result = CycleResult(errors=1)
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            elapsed = time.monotonic() - started
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=max(0.0, self.next_interval(result) - elapsed))
            except asyncio.TimeoutError:
                continue

    def get_stats(self) -> dict[str, float]:
        stats = {
            "scans": self.scans,
            "pools_processed": self.pools_processed,
            "open_positions": len(self.store),
            "bought": self.total_bought,
            "closed": self.total_closed,
            "partial_sells": self.total_partial_sells,
            "force_closed": self.total_force_closed,
            "realized_pnl_base": round(self.realized_pnl_base, 6),
            "uptime_seconds": round(self._clock() - self.started_at, 1),
        }
        if self.journal is not None:
            stats["journal_realized_pnl_base"] = round(self.journal.realized_pnl(), 6)
        return stats

    async def shutdown(self, reason: str = "shutdown") -> None:
        logger.info(
            "ENGINE_SHUTDOWN reason=%s open=%s closed=%s realized=%.4f",
            reason,
            len(self.store),
            self.total_closed + self.total_force_closed,
            self.realized_pnl_base,
        )
        self.stop()
        for closer in self._closers:
            await closer.close()
