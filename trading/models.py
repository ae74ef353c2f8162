"""Records shared by discovery, gating, execution and the position lifecycle."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any


@dataclass(frozen=True)
class Pool:
    pool_id: str
    asset_address: str
    quote_asset_address: str
    liquidity_base: float
    discovered_at: float
    source_label: str
    symbol: str = ""
    dex_id: str = ""
    pair_url: str = ""


@dataclass(frozen=True)
class Position:
    asset_address: str
    entry_timestamp: float
    base_amount_invested: float
    units_held: float
    entry_price_per_unit: float
    execution_ref: str | None = None
    symbol: str = ""
    pool_id: str = ""
    source_label: str = ""
    original_units: float = 0.0
    realized_base: float = 0.0
    partial_exits: int = 0

    @classmethod
    def open(
        cls,
        asset_address: str,
        entry_timestamp: float,
        base_amount_invested: float,
        units_held: float,
        execution_ref: str | None = None,
        *,
        symbol: str = "",
        pool_id: str = "",
        source_label: str = "",
    ) -> "Position":
        if units_held <= 0:
            raise ValueError(f"units_held must be positive for {asset_address}")
        return cls(
            asset_address=asset_address,
            entry_timestamp=entry_timestamp,
            base_amount_invested=base_amount_invested,
            units_held=units_held,
            entry_price_per_unit=base_amount_invested / units_held,
            execution_ref=execution_ref,
            symbol=symbol,
            pool_id=pool_id,
            source_label=source_label,
            original_units=units_held,
        )

    def reduce_holdings(self, units_sold: float, base_recovered: float) -> "Position":
        if units_sold <= 0 or units_sold >= self.units_held:
            raise ValueError(
                f"partial sell of {units_sold} must be within (0, {self.units_held}) for {self.asset_address}"
            )
        remaining = self.units_held - units_sold
        return replace(
            self,
            units_held=remaining,
            base_amount_invested=self.base_amount_invested * (remaining / self.units_held),
            realized_base=self.realized_base + base_recovered,
            partial_exits=self.partial_exits + 1,
        )


@dataclass
class Valuation:
    current_price_per_unit: float
    current_value_base: float
    pnl_base: float
    pnl_percent: float
    high_water_value: float
    low_water_value: float
    last_refreshed_at: float | None = None

    @classmethod
    def at_entry(cls, position: Position) -> "Valuation":
        invested = position.base_amount_invested
        return cls(
            current_price_per_unit=position.entry_price_per_unit,
            current_value_base=invested,
            pnl_base=0.0,
            pnl_percent=0.0,
            high_water_value=invested,
            low_water_value=invested,
            last_refreshed_at=None,
        )

    @property
    def drawdown_percent(self) -> float | None:
        if self.high_water_value <= 0:
            return None
        return (self.high_water_value - self.current_value_base) / self.high_water_value * 100.0


class AlertKind(str, Enum):
    PROFIT_TARGET = "profit_target"
    STOP_LOSS = "stop_loss"
    TRAILING_STOP = "trailing_stop"
    TIME_ELAPSED = "time_elapsed"
    REJECTED = "rejected"
    BOUGHT = "bought"
    SOLD = "sold"
    FORCE_CLOSED = "force_closed"
    PORTFOLIO = "portfolio"


LEVEL_ALERT_KINDS = frozenset(
    {AlertKind.PROFIT_TARGET, AlertKind.STOP_LOSS, AlertKind.TRAILING_STOP, AlertKind.TIME_ELAPSED}
)


@dataclass(frozen=True)
class Alert:
    asset_address: str
    kind: AlertKind
    trigger_value: float
    emitted_at: float
    message: str


@dataclass(frozen=True)
class Quote:
    input_mint: str
    output_mint: str
    in_amount_raw: int
    out_amount_raw: int
    slippage_bps: int
    price_impact_pct: float = 0.0
    route_labels: tuple[str, ...] = ()
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class SwapResult:
    signature: str | None
    in_amount_raw: int
    out_amount_raw: int


@dataclass(frozen=True)
class TradeFill:
    """Outcome of a buy or sell in display units (base currency and whole tokens)."""

    base_amount: float
    units: float
    execution_ref: str | None


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class SecurityFinding:
    name: str
    severity: Severity
    description: str = ""


@dataclass(frozen=True)
class SecurityReport:
    score: int | None
    findings: tuple[SecurityFinding, ...] = ()
    source: str = ""
    degraded: bool = False

    def critical_findings(self) -> tuple[SecurityFinding, ...]:
        return tuple(f for f in self.findings if f.severity == Severity.CRITICAL)


@dataclass(frozen=True)
class GateDecision:
    accepted: bool
    reason: str = ""
    report: SecurityReport | None = None

    @classmethod
    def accept(cls, report: SecurityReport | None) -> "GateDecision":
        return cls(accepted=True, reason="", report=report)

    @classmethod
    def reject(cls, reason: str, report: SecurityReport | None = None) -> "GateDecision":
        return cls(accepted=False, reason=reason, report=report)


class ExitReason(str, Enum):
    TIMEOUT = "timeout"
    STOP_LOSS = "stop_loss"
    TRAILING_STOP = "trailing_stop"
    TAKE_PROFIT = "take_profit"


@dataclass(frozen=True)
class ExitDecision:
    reason: ExitReason
    sell_fraction: float
    trigger_value: float

    @property
    def is_full_exit(self) -> bool:
        return self.sell_fraction >= 1.0


@dataclass
class CycleResult:
    pools_found: int = 0
    accepted: int = 0
    rejected: int = 0
    bought: int = 0
    positions_closed: int = 0
    partial_sells: int = 0
    errors: int = 0
    refreshed: bool = False
