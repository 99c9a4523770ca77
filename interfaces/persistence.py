from __future__ import annotations
from typing import List, Protocol, TYPE_CHECKING

if TYPE_CHECKING:
    from engine.models import BacktestSession, Session, Trade


class PersistenceHooks(Protocol):
    """Save-points the engine calls; storage itself lives outside the engine."""

    def save_trade(self, trade: Trade) -> None: ...
    def update_trade(self, trade: Trade) -> None: ...
    def close_trade(self, trade: Trade) -> None: ...
    def save_session(self, session: Session) -> None: ...
    def save_backtest(self, record: BacktestSession) -> None: ...
    def load_open_trades(self, mode: str) -> List[Trade]: ...


class NullPersistence:
    def save_trade(self, trade: Trade) -> None:
        pass

    def update_trade(self, trade: Trade) -> None:
        pass

    def close_trade(self, trade: Trade) -> None:
        pass

    def save_session(self, session: Session) -> None:
        pass

    def save_backtest(self, record: BacktestSession) -> None:
        pass

    def load_open_trades(self, mode: str) -> List[Trade]:
        return []
