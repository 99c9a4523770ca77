"""Synchronous SQLAlchemy store implementing the engine persistence hooks."""
from __future__ import annotations
import logging
from dataclasses import asdict, fields
from typing import List, Optional

from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from core.config import Settings
from engine.analytics import stats_to_dict
from engine.models import BacktestSession, Session, Trade
from state.models import BacktestRow, Base, SessionRow, TradeRow

logger = logging.getLogger("Persistence")

_TRADE_FIELDS = [f.name for f in fields(Trade)]


def _trade_row(trade: Trade) -> TradeRow:
    return TradeRow(**asdict(trade))


def _to_trade(row: TradeRow) -> Trade:
    return Trade(**{name: getattr(row, name) for name in _TRADE_FIELDS})


class SqlTradeStore:
    """Trades, sessions and backtest records in any SQLAlchemy database (SQLite by default)."""

    def __init__(self, db_url: str = "sqlite:///:memory:"):
        kwargs = {}
        if db_url.startswith("sqlite") and ":memory:" in db_url:
            # one shared connection so every thread sees the same in-memory DB
            kwargs = {"connect_args": {"check_same_thread": False}, "poolclass": StaticPool}
        self.engine = create_engine(db_url, **kwargs)
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(self.engine, expire_on_commit=False)
        logger.info(f"💾 Trade store ready ({self.engine.url.drivername})")

    @classmethod
    def from_settings(cls, settings: Settings) -> "SqlTradeStore":
        return cls(settings.DB_URL or "sqlite:///:memory:")

    # -------------------- Hooks -------------------- #
    def save_trade(self, trade: Trade) -> None:
        with self.SessionLocal.begin() as s:
            s.merge(_trade_row(trade))

    def update_trade(self, trade: Trade) -> None:
        self.save_trade(trade)

    def close_trade(self, trade: Trade) -> None:
        self.save_trade(trade)

    def save_session(self, session: Session) -> None:
        with self.SessionLocal.begin() as s:
            s.merge(SessionRow(
                id=session.id,
                mode=session.mode,
                strategy_id=session.strategy_id,
                start_time=session.start_time,
                end_time=session.end_time,
                stats=stats_to_dict(session.stats) if session.stats is not None else None,
            ))

    def save_backtest(self, record: BacktestSession) -> None:
        with self.SessionLocal.begin() as s:
            s.merge(BacktestRow(
                id=record.id,
                created_at=record.created_at,
                pair=record.pair,
                timeframe=record.timeframe,
                strategy_id=record.strategy_id,
                settings=dict(record.settings),
                stats=stats_to_dict(record.stats),
                trade_count=len(record.trades),
                starting_capital=record.starting_capital,
                candle_count=record.candle_count,
            ))

    def load_open_trades(self, mode: str) -> List[Trade]:
        with self.SessionLocal() as s:
            rows = s.scalars(select(TradeRow).where(TradeRow.mode == mode, TradeRow.status == "open"))
            return [_to_trade(r) for r in rows]

    # -------------------- Queries -------------------- #
    def list_trades(self, mode: Optional[str] = None, session_id: Optional[str] = None) -> List[Trade]:
        stmt = select(TradeRow).order_by(TradeRow.open_time)
        if mode:
            stmt = stmt.where(TradeRow.mode == mode)
        if session_id:
            stmt = stmt.where(TradeRow.session_id == session_id)
        with self.SessionLocal() as s:
            return [_to_trade(r) for r in s.scalars(stmt)]

    def list_sessions(self, mode: Optional[str] = None) -> List[SessionRow]:
        stmt = select(SessionRow).order_by(SessionRow.start_time)
        if mode:
            stmt = stmt.where(SessionRow.mode == mode)
        with self.SessionLocal() as s:
            return list(s.scalars(stmt))

    def list_backtests(self) -> List[BacktestRow]:
        with self.SessionLocal() as s:
            return list(s.scalars(select(BacktestRow).order_by(BacktestRow.created_at)))

    def close(self) -> None:
        self.engine.dispose()
