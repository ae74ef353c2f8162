"""Exit rules for open positions: timeout, stop-loss, trailing-stop, take-profit."""

from __future__ import annotations

import logging
from enum import Enum

from config import TradingSettings
from trading.models import ExitDecision, ExitReason, Position, Valuation

logger = logging.getLogger(__name__)


class PositionState(str, Enum):
    OPEN = "open"
    CLOSING = "closing"


class ExitEvaluator:
    """Evaluates rules in priority order; first match wins.

    Take-profit fires once per position. After the partial sell the remainder
    is left to the timeout, stop-loss and trailing-stop rules.
    """

    def __init__(self, settings: TradingSettings) -> None:
        self._settings = settings
        self._closing: set[str] = set()
        self.anomalies = 0

    def state(self, asset_address: str) -> PositionState:
        return PositionState.CLOSING if asset_address in self._closing else PositionState.OPEN

    def mark_closing(self, asset_address: str) -> None:
        self._closing.add(asset_address)

    def mark_open(self, asset_address: str) -> None:
        self._closing.discard(asset_address)

    def forget(self, asset_address: str) -> None:
        self._closing.discard(asset_address)

    def evaluate(self, position: Position, valuation: Valuation | None, now: float) -> ExitDecision | None:
        if self.state(position.asset_address) is PositionState.CLOSING:
            return None
        s = self._settings

        held_seconds = now - position.entry_timestamp
        if held_seconds >= s.max_hold_seconds:
            return ExitDecision(ExitReason.TIMEOUT, 1.0, held_seconds)

        if valuation is None or valuation.last_refreshed_at is None:
            return None

        if position.base_amount_invested <= 0:
            self._anomaly(position, "zero base_amount_invested")
        else:
            if valuation.pnl_percent <= -s.stop_loss_percent:
                return ExitDecision(ExitReason.STOP_LOSS, 1.0, valuation.pnl_percent)

        if s.trailing_stop_enabled:
            drawdown = valuation.drawdown_percent
            if drawdown is None:
                self._anomaly(position, "zero high_water_value")
            elif drawdown >= s.trailing_stop_percent:
                return ExitDecision(ExitReason.TRAILING_STOP, 1.0, drawdown)

        if (
            position.base_amount_invested > 0
            and position.partial_exits == 0
            and valuation.pnl_percent >= s.profit_threshold_percent
        ):
            return ExitDecision(ExitReason.TAKE_PROFIT, self._take_profit_fraction(position), valuation.pnl_percent)

        return None

    def _take_profit_fraction(self, position: Position) -> float:
        fraction = max(0.0, min(1.0, self._settings.sell_percentage / 100.0))
        remaining = position.units_held * (1.0 - fraction)
        original = position.original_units or position.units_held
        if remaining < original * self._settings.min_remaining_units_fraction:
            return 1.0
        return fraction

    def _anomaly(self, position: Position, detail: str) -> None:
        self.anomalies += 1
        logger.warning("DATA_ANOMALY asset=%s detail=%s", position.asset_address, detail)

    @staticmethod
    def units_to_sell(position: Position, decision: ExitDecision) -> float:
        if decision.is_full_exit:
            return position.units_held
        return position.units_held * decision.sell_fraction
