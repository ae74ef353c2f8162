"""In-memory open position registry keyed by asset address."""

from __future__ import annotations

from trading.models import Position
from utils.errors import PositionExistsError, PositionNotFoundError


class PositionStore:
    """Holds at most one open position per asset. Owned by the scan loop task."""

    def __init__(self) -> None:
        self._positions: dict[str, Position] = {}

    def __len__(self) -> int:
        return len(self._positions)

    def insert(self, position: Position) -> None:
        if position.asset_address in self._positions:
            raise PositionExistsError(f"Position already open for {position.asset_address}")
        self._positions[position.asset_address] = position

    def exists(self, asset_address: str) -> bool:
        return asset_address in self._positions

    def get(self, asset_address: str) -> Position | None:
        return self._positions.get(asset_address)

    def replace(self, position: Position) -> None:
        if position.asset_address not in self._positions:
            raise PositionNotFoundError(f"No open position for {position.asset_address}")
        self._positions[position.asset_address] = position

    def remove(self, asset_address: str) -> Position:
        try:
            return self._positions.pop(asset_address)
        except KeyError:
            raise PositionNotFoundError(f"No open position for {asset_address}") from None

    def get_all(self) -> tuple[Position, ...]:
        return tuple(self._positions.values())
