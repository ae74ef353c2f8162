"""Trade journal persistence."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import create_engine, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from database.models import AlertRecord, Base, TradeRecord
from trading.models import Alert

logger = logging.getLogger(__name__)

SELL_SIDES = ("partial_sell", "sell", "force_close")


class TradeJournal:
    """History of trades and alerts. Write failures are logged and never raised."""

    def __init__(self, database_url: str) -> None:
        self.engine = create_engine(database_url, future=True)
        self._session_factory = sessionmaker(bind=self.engine, autoflush=False, autocommit=False, future=True)
        self.write_failures = 0

    def init(self) -> None:
        Base.metadata.create_all(bind=self.engine)

    def get_db(self) -> Session:
        return self._session_factory()

    def _add(self, row: TradeRecord | AlertRecord) -> bool:
        db = self.get_db()
        try:
            db.add(row)
            db.commit()
            return True
        except SQLAlchemyError as exc:
            db.rollback()
            self.write_failures += 1
            logger.warning("Journal write failed table=%s: %s", row.__tablename__, exc)
            return False
        finally:
            db.close()

    def record_trade(
        self,
        *,
        asset_address: str,
        side: str,
        base_amount: float,
        units: float,
        symbol: str = "",
        reason: str = "",
        price_per_unit: Optional[float] = None,
        pnl_base: Optional[float] = None,
        pnl_percent: Optional[float] = None,
        tx_ref: Optional[str] = None,
        paper: bool = True,
    ) -> bool:
        return self._add(
            TradeRecord(
                asset_address=asset_address,
                symbol=symbol or None,
                side=side,
                reason=reason or None,
                base_amount=float(base_amount),
                units=float(units),
                price_per_unit=price_per_unit,
                pnl_base=pnl_base,
                pnl_percent=pnl_percent,
                tx_ref=tx_ref,
                paper=1 if paper else 0,
            )
        )

    def record_alert(self, alert: Alert) -> bool:
        return self._add(
            AlertRecord(
                asset_address=alert.asset_address,
                kind=alert.kind.value,
                trigger_value=float(alert.trigger_value),
                message=alert.message,
                emitted_at=datetime.fromtimestamp(alert.emitted_at, tz=timezone.utc).replace(tzinfo=None),
            )
        )

    def recent_trades(self, limit: int = 20) -> list[TradeRecord]:
        db = self.get_db()
        try:
            return db.query(TradeRecord).order_by(TradeRecord.id.desc()).limit(limit).all()
        finally:
            db.close()

    def realized_pnl(self) -> float:
        db = self.get_db()
        try:
            total = (
                db.query(func.coalesce(func.sum(TradeRecord.pnl_base), 0.0))
                .filter(TradeRecord.side.in_(SELL_SIDES))
                .scalar()
            )
            return float(total or 0.0)
        finally:
            db.close()
