"""SQLAlchemy models backing the persistence hooks."""
from __future__ import annotations
from typing import Optional

from sqlalchemy import JSON, BigInteger, Float, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class TradeRow(Base):
    __tablename__ = "trades"
    # columns named after engine.models.Trade fields
    id: Mapped[str] = mapped_column(String, primary_key=True)
    pair: Mapped[str] = mapped_column(String, index=True)
    strategy_id: Mapped[str] = mapped_column(String)
    timeframe: Mapped[str] = mapped_column(String)
    mode: Mapped[str] = mapped_column(String, index=True)
    session_id: Mapped[str] = mapped_column(String, index=True)
    direction: Mapped[str] = mapped_column(String)
    entry_price: Mapped[float] = mapped_column(Float)
    stop_loss: Mapped[float] = mapped_column(Float)
    take_profit: Mapped[float] = mapped_column(Float)
    position_size: Mapped[float] = mapped_column(Float)
    open_time: Mapped[int] = mapped_column(BigInteger)
    status: Mapped[str] = mapped_column(String, index=True, default="open")
    trailing_stop_price: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    highest_price_so_far: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    lowest_price_so_far: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    close_time: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    exit_price: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    exit_reason: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    pnl: Mapped[float] = mapped_column(Float, default=0.0)
    pnl_amount: Mapped[float] = mapped_column(Float, default=0.0)
    realized_rr: Mapped[float] = mapped_column(Float, default=0.0)
    duration_ms: Mapped[int] = mapped_column(BigInteger, default=0)


class SessionRow(Base):
    __tablename__ = "sessions"
    id: Mapped[str] = mapped_column(String, primary_key=True)
    mode: Mapped[str] = mapped_column(String, index=True)
    strategy_id: Mapped[str] = mapped_column(String)
    start_time: Mapped[int] = mapped_column(BigInteger)
    end_time: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    stats: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)


class BacktestRow(Base):
    __tablename__ = "backtests"
    id: Mapped[str] = mapped_column(String, primary_key=True)
    created_at: Mapped[int] = mapped_column(BigInteger)
    pair: Mapped[str] = mapped_column(String, index=True)
    timeframe: Mapped[str] = mapped_column(String)
    strategy_id: Mapped[str] = mapped_column(String)
    settings: Mapped[dict] = mapped_column(JSON)
    stats: Mapped[dict] = mapped_column(JSON)
    trade_count: Mapped[int] = mapped_column(Integer, default=0)
    starting_capital: Mapped[float] = mapped_column(Float)
    candle_count: Mapped[int] = mapped_column(Integer, default=0)
