"""SQLAlchemy models for the trade journal."""

from datetime import datetime

from sqlalchemy import Column, DateTime, Float, Integer, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class TradeRecord(Base):
    __tablename__ = "trades"

    id = Column(Integer, primary_key=True)
    asset_address = Column(String, nullable=False, index=True)
    symbol = Column(String, nullable=True)
    side = Column(String, nullable=False)  # buy/partial_sell/sell/force_close
    reason = Column(String, nullable=True)
    base_amount = Column(Float, nullable=False, default=0.0)
    units = Column(Float, nullable=False, default=0.0)
    price_per_unit = Column(Float, nullable=True)
    pnl_base = Column(Float, nullable=True)
    pnl_percent = Column(Float, nullable=True)
    tx_ref = Column(String, nullable=True)
    paper = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)


class AlertRecord(Base):
    __tablename__ = "alerts"

    id = Column(Integer, primary_key=True)
    asset_address = Column(String, nullable=False, index=True)
    kind = Column(String, nullable=False)
    trigger_value = Column(Float, nullable=True)
    message = Column(Text, nullable=True)
    emitted_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
