"""Alert delivery: hysteresis, rate limiting and Telegram formatting."""

from __future__ import annotations

import logging
import time
from html import escape
from typing import Any, Callable, Protocol

from telegram import Bot

from config import TelegramSettings, TradingSettings
from trading.models import LEVEL_ALERT_KINDS, Alert, AlertKind, Pool, Position, TradeFill, Valuation

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def notify(self, text: str) -> None:
        ...


class TelegramNotifier:
    def __init__(self, bot: Bot, chat_id: str) -> None:
        self._bot = bot
        self._chat_id = chat_id

    @classmethod
    def from_settings(cls, settings: TelegramSettings) -> "TelegramNotifier":
        return cls(Bot(token=settings.bot_token), settings.chat_id)

    async def notify(self, text: str) -> None:
        await self._bot.send_message(
            chat_id=self._chat_id,
            text=text,
            parse_mode="HTML",
            disable_web_page_preview=True,
        )


class LogNotifier:
    async def notify(self, text: str) -> None:
        logger.info("ALERT %s", text.replace("\n", " | "))


class AlertDispatcher:
    def __init__(
        self,
        notifier: Notifier,
        telegram: TelegramSettings,
        trading: TradingSettings,
        clock: Callable[[], float] = time.time,
        journal: Any = None,
    ) -> None:
        self._notifier = notifier
        self._telegram = telegram
        self._trading = trading
        self._clock = clock
        self._journal = journal
        # (asset, kind) -> armed; missing means armed.
        self._armed: dict[tuple[str, AlertKind], bool] = {}
        self._time_boundary: dict[str, int] = {}
        self._last_sent_at: dict[tuple[str, AlertKind], float] = {}
        self.sent = 0
        self.failed = 0
        self.suppressed = 0

    def _enabled_for(self, kind: AlertKind) -> bool:
        t = self._telegram
        if not t.notifications_enabled:
            return False
        if kind is AlertKind.BOUGHT:
            return t.send_buy_alerts
        if kind in (AlertKind.SOLD, AlertKind.FORCE_CLOSED):
            return t.send_sell_alerts
        if kind is AlertKind.REJECTED:
            return t.send_rejection_alerts
        if kind is AlertKind.PORTFOLIO:
            return t.send_profit_summaries
        return True

    async def emit(self, alert: Alert) -> bool:
        logger.info(
            "ALERT_EVENT asset=%s kind=%s trigger=%.4f",
            alert.asset_address,
            alert.kind.value,
            alert.trigger_value,
        )
        if not self._enabled_for(alert.kind):
            return False

        key = (alert.asset_address, alert.kind)
        now = self._clock()
        last = self._last_sent_at.get(key)
        # Level kinds are already deduplicated by hysteresis and time boundaries.
        limited = alert.kind not in LEVEL_ALERT_KINDS
        if limited and last is not None and now - last < self._telegram.alert_min_interval_seconds:
            self.suppressed += 1
            logger.debug("Alert rate limited asset=%s kind=%s", alert.asset_address, alert.kind.value)
            return False

        try:
            await self._notifier.notify(alert.message)
        except Exception as exc:
            self.failed += 1
            logger.warning("Alert send failed asset=%s kind=%s: %s", alert.asset_address, alert.kind.value, exc)
            return False

        self._last_sent_at[key] = now
        self.sent += 1
        logger.info("ALERT_SENT asset=%s kind=%s", alert.asset_address, alert.kind.value)
        if self._journal is not None:
            self._journal.record_alert(alert)
        return True

    async def announce(self, text: str) -> bool:
        """One-off operator message outside the per-asset alert flow."""
        if not self._telegram.notifications_enabled:
            logger.info("ANNOUNCE %s", text.replace("\n", " | "))
            return False
        try:
            await self._notifier.notify(text)
        except Exception as exc:
            self.failed += 1
            logger.warning("Announcement send failed: %s", exc)
            return False
        self.sent += 1
        return True

    def _cross(self, asset: str, kind: AlertKind, triggered: bool) -> bool:
        """Return True once per crossing; re-arm when the condition clears."""
        key = (asset, kind)
        armed = self._armed.get(key, True)
        if triggered and armed:
            self._armed[key] = False
            return True
        if not triggered and not armed:
            self._armed[key] = True
        return False

    async def observe(self, position: Position, valuation: Valuation | None, now: float) -> list[Alert]:
        asset = position.asset_address
        label = position.symbol or asset
        fired: list[Alert] = []

        interval = max(1, int(self._telegram.time_alert_interval_seconds))
        held = max(0.0, now - position.entry_timestamp)
        boundary = int(held // interval)
        if boundary >= 1 and boundary > self._time_boundary.get(asset, 0):
            self._time_boundary[asset] = boundary
            fired.append(
                Alert(asset, AlertKind.TIME_ELAPSED, held, now, format_time_elapsed(label, asset, held, valuation))
            )

        if valuation is not None and valuation.last_refreshed_at is not None:
            t = self._trading
            pnl = valuation.pnl_percent
            if self._cross(asset, AlertKind.PROFIT_TARGET, pnl >= t.profit_threshold_percent):
                fired.append(
                    Alert(asset, AlertKind.PROFIT_TARGET, pnl, now, format_threshold(label, asset, AlertKind.PROFIT_TARGET, valuation))
                )
            if self._cross(asset, AlertKind.STOP_LOSS, pnl <= -t.stop_loss_percent):
                fired.append(
                    Alert(asset, AlertKind.STOP_LOSS, pnl, now, format_threshold(label, asset, AlertKind.STOP_LOSS, valuation))
                )
            drawdown = valuation.drawdown_percent
            if t.trailing_stop_enabled and drawdown is not None:
                if self._cross(asset, AlertKind.TRAILING_STOP, drawdown >= t.trailing_stop_percent):
                    fired.append(
                        Alert(
                            asset,
                            AlertKind.TRAILING_STOP,
                            drawdown,
                            now,
                            format_threshold(label, asset, AlertKind.TRAILING_STOP, valuation),
                        )
                    )

        for alert in fired:
            await self.emit(alert)
        return fired

    def forget(self, asset_address: str) -> None:
        for kind in LEVEL_ALERT_KINDS:
            self._armed.pop((asset_address, kind), None)
        self._time_boundary.pop(asset_address, None)
        for key in [k for k in self._last_sent_at if k[0] == asset_address]:
            self._last_sent_at.pop(key, None)

    def runtime_stats(self) -> dict[str, int]:
        return {"sent": self.sent, "failed": self.failed, "suppressed": self.suppressed}


def _short(address: str) -> str:
    if len(address) <= 12:
        return address
    return f"{address[:4]}...{address[-4:]}"


def _fmt_duration(seconds: float) -> str:
    seconds = int(max(0, seconds))
    hours, rem = divmod(seconds, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def format_buy(pool: Pool, position: Position, paper: bool) -> str:
    mode = "PAPER " if paper else ""
    ref = f"\nTx: <code>{escape(position.execution_ref)}</code>" if position.execution_ref else ""
    return (
        f"\U0001F7E2 {mode}BUY {escape(pool.symbol or _short(pool.asset_address))}\n\n"
        f"Address: <code>{escape(pool.asset_address)}</code>\n"
        f"Spent: {position.base_amount_invested:.4f} SOL\n"
        f"Units: {position.units_held:,.2f}\n"
        f"Entry: {position.entry_price_per_unit:.10f} SOL/unit\n"
        f"Liquidity: {pool.liquidity_base:,.2f} SOL ({escape(pool.source_label)})"
        f"{ref}"
    )


def format_sell(position: Position, fill: TradeFill, reason: str, pnl_base: float, pnl_percent: float, partial: bool) -> str:
    icon = "\U0001F4B0" if pnl_base >= 0 else "\U0001F534"
    kind = "PARTIAL SELL" if partial else "SELL"
    ref = f"\nTx: <code>{escape(fill.execution_ref)}</code>" if fill.execution_ref else ""
    return (
        f"{icon} {kind} {escape(position.symbol or _short(position.asset_address))}\n\n"
        f"Reason: {escape(reason)}\n"
        f"Units sold: {fill.units:,.2f}\n"
        f"Received: {fill.base_amount:.4f} SOL\n"
        f"PnL: {pnl_base:+.4f} SOL ({pnl_percent:+.1f}%)"
        f"{ref}"
    )


def format_force_closed(position: Position, error: str) -> str:
    return (
        f"⛔ FORCE CLOSED {escape(position.symbol or _short(position.asset_address))}\n\n"
        f"Sell rejected: {escape(error)}\n"
        f"Written off: {position.base_amount_invested:.4f} SOL"
    )


def format_rejection(pool: Pool, reason: str) -> str:
    return (
        f"⚠️ SKIPPED {escape(pool.symbol or _short(pool.asset_address))}\n"
        f"Address: <code>{escape(pool.asset_address)}</code>\n"
        f"Reason: {escape(reason)}"
    )


def format_threshold(label: str, asset: str, kind: AlertKind, valuation: Valuation) -> str:
    titles = {
        AlertKind.PROFIT_TARGET: "\U0001F3AF PROFIT TARGET",
        AlertKind.STOP_LOSS: "\U0001F6D1 STOP LOSS",
        AlertKind.TRAILING_STOP: "\U0001F4C9 TRAILING STOP",
    }
    drawdown = valuation.drawdown_percent or 0.0
    return (
        f"{titles.get(kind, kind.value.upper())} {escape(label)}\n"
        f"Address: <code>{escape(asset)}</code>\n"
        f"Value: {valuation.current_value_base:.4f} SOL\n"
        f"PnL: {valuation.pnl_base:+.4f} SOL ({valuation.pnl_percent:+.1f}%)\n"
        f"Drawdown from high: {drawdown:.1f}%"
    )


def format_time_elapsed(label: str, asset: str, held_seconds: float, valuation: Valuation | None) -> str:
    pnl = f"\nPnL: {valuation.pnl_percent:+.1f}%" if valuation is not None else ""
    return (
        f"⏰ HELD {_fmt_duration(held_seconds)} {escape(label)}\n"
        f"Address: <code>{escape(asset)}</code>"
        f"{pnl}"
    )


def format_portfolio(summary: Any, realized_pnl: float) -> str:
    lines = [
        "\U0001F4CA PORTFOLIO",
        f"Active: {summary.active} (win {summary.winning} / loss {summary.losing})",
        f"Invested: {summary.total_invested:.4f} SOL",
        f"Value: {summary.total_value:.4f} SOL",
        f"Unrealized: {summary.total_pnl:+.4f} SOL ({summary.total_pnl_percent:+.1f}%)",
        f"Realized: {realized_pnl:+.4f} SOL",
    ]
    if summary.best_asset:
        lines.append(f"Best: {escape(summary.best_asset)} {summary.best_pnl_percent:+.1f}%")
    if summary.worst_asset:
        lines.append(f"Worst: {escape(summary.worst_asset)} {summary.worst_pnl_percent:+.1f}%")
    return "\n".join(lines)


def format_startup(summary_lines: list[str]) -> str:
    return "\U0001F680 Sniper started\n" + "\n".join(escape(line) for line in summary_lines)
