import logging
import time
from dataclasses import asdict, dataclass
from typing import Callable, Dict, List, Optional, Tuple

from core.errors import ConfigError, InvariantViolation, NoMarketPrice, TradeNotFound
from engine.analytics import compute_stats
from engine.config import RiskSettings
from engine.events import EventBus
from engine.models import TRADING_MODES, BacktestStats, Candle, ExitReason, Session, Signal, Trade, TradingMode
from engine.risk_management import (
    MAX_SIZE_MULTIPLIER,
    MIN_SIZE_MULTIPLIER,
    PositionSizer,
    RejectReason,
    apply_slippage,
    evaluate_exit,
    finalize_trade,
    update_trailing_stop,
)
from interfaces.persistence import NullPersistence, PersistenceHooks

logger = logging.getLogger("TradeManager")


@dataclass(frozen=True)
class OpenResult:
    trade: Optional[Trade] = None
    reason: Optional[RejectReason] = None

    @property
    def opened(self) -> bool:
        return self.trade is not None


@dataclass(frozen=True)
class PendingTrade:
    pair: str
    mode: TradingMode
    signal: Signal
    strategy_id: str
    timeframe: str


def _now_ms() -> int:
    return int(time.time() * 1000)


class TradeManager:
    """
    Trade lifecycle per trading mode.
    - One open trade per (pair, mode).
    - Equity = total capital + realized P&L of the mode.
    - Trailing stop, TP/SL exits on each candle, manual close at the last price.
    - Sessions group trades; stats are recomputed from the session's trades.
    Storage goes through the persistence hooks, notifications through the event bus.
    """

    def __init__(
        self,
        risk: RiskSettings,
        events: Optional[EventBus] = None,
        persistence: Optional[PersistenceHooks] = None,
        strict: bool = False,
        clock: Callable[[], int] = _now_ms,
    ):
        self.risk = risk
        self.events = events or EventBus()
        self.persistence = persistence or NullPersistence()
        self.strict = strict
        self.clock = clock
        self.open_trades: Dict[str, Dict[str, Trade]] = {m: {} for m in TRADING_MODES}
        self.closed_trades: Dict[str, List[Trade]] = {m: [] for m in TRADING_MODES}
        self.realized_pnl: Dict[str, float] = {m: 0.0 for m in TRADING_MODES}
        self.sessions: Dict[str, Session] = {}
        self.session_history: List[Session] = []
        self.pending: Dict[Tuple[str, str], PendingTrade] = {}
        self.last_prices: Dict[str, float] = {}

    # -------------------- Capital -------------------- #
    def equity(self, mode: TradingMode) -> float:
        return self.risk.total_capital + self.realized_pnl[mode]

    def capital_in_use(self, mode: TradingMode) -> float:
        return sum(t.position_size for t in self.open_trades[mode].values())

    def available_capital(self, mode: TradingMode) -> float:
        return self.equity(mode) - self.capital_in_use(mode)

    def open_risk(self, mode: TradingMode) -> float:
        return sum(t.risk_amount for t in self.open_trades[mode].values())

    def open_trade_for(self, pair: str, mode: TradingMode) -> Optional[Trade]:
        return self.open_trades[mode].get(pair)

    def update_price(self, pair: str, price: float) -> None:
        self.last_prices[pair] = price

    # -------------------- Opening -------------------- #
    def propose(self, pair: str, signal: Signal, mode: TradingMode, strategy_id: str,
                timeframe: str) -> Optional[OpenResult]:
        """Opens right away, or parks the signal when trades need confirmation."""
        self._emit("signal", {"pair": pair, "mode": mode, "signal": asdict(signal)})
        if self.risk.confirm_trades and mode != "Backtest":
            pending = PendingTrade(pair=pair, mode=mode, signal=signal, strategy_id=strategy_id, timeframe=timeframe)
            self.pending[(mode, pair)] = pending
            logger.info(f"⏳ Trade pending confirmation: {pair} {signal.side} @ {signal.entry_price}")
            self._emit("trade_pending", {"pair": pair, "mode": mode, "signal": asdict(signal)})
            return None
        return self.open_trade(pair, signal, mode, strategy_id, timeframe)

    def confirm_pending(self, pair: str, mode: TradingMode, size_multiplier: float = 1.0) -> OpenResult:
        if not MIN_SIZE_MULTIPLIER <= size_multiplier <= MAX_SIZE_MULTIPLIER:
            raise ConfigError(
                f"size_multiplier must be in [{MIN_SIZE_MULTIPLIER}, {MAX_SIZE_MULTIPLIER}] (got {size_multiplier})"
            )
        pending = self.pending.pop((mode, pair), None)
        if pending is None:
            raise TradeNotFound(f"pending:{mode}:{pair}")
        return self.open_trade(pair, pending.signal, mode, pending.strategy_id, pending.timeframe,
                               size_multiplier=size_multiplier)

    def reject_pending(self, pair: str, mode: TradingMode) -> bool:
        pending = self.pending.pop((mode, pair), None)
        if pending is not None:
            logger.info(f"🚫 Pending trade discarded: {pair} ({mode})")
        return pending is not None

    def open_trade(
        self,
        pair: str,
        signal: Signal,
        mode: TradingMode,
        strategy_id: str,
        timeframe: str,
        apply_fill_slippage: bool = False,
        size_multiplier: float = 1.0,
    ) -> OpenResult:
        if not signal.is_entry:
            raise ValueError(f"Not an entry signal: {signal}")
        if pair in self.open_trades[mode]:
            self._violation(f"second open trade for {pair} in {mode}")
            return OpenResult()

        direction = signal.side
        entry, stop_loss, take_profit = signal.entry_price, signal.stop_loss, signal.take_profit
        if apply_fill_slippage and self.risk.slippage_percent > 0:
            entry, stop_loss, take_profit = apply_slippage(
                direction, entry, stop_loss, take_profit, self.risk.slippage_percent
            )

        decision = PositionSizer.calculate_position_size(
            equity=self.equity(mode),
            available_capital=self.available_capital(mode),
            entry_price=entry,
            stop_loss=stop_loss,
            settings=self.risk,
            open_positions=len(self.open_trades[mode]),
            open_risk=self.open_risk(mode),
            size_multiplier=size_multiplier,
        )
        size, reason = decision.size, decision.reason
        if reason is not None or size <= 0:
            reason = reason or RejectReason.INVALID_RISK
            logger.warning(f"⛔ Signal ignored for {pair} ({mode}): {reason.value}")
            self._emit("trade_rejected", {"pair": pair, "mode": mode, "reason": reason.value})
            return OpenResult(reason=reason)

        session = self.sessions.get(mode)
        trade = Trade(
            id=f"{signal.time}-{pair}",
            pair=pair,
            strategy_id=strategy_id,
            timeframe=timeframe,
            mode=mode,
            session_id=session.id if session else "",
            direction=direction,
            entry_price=entry,
            stop_loss=stop_loss,
            take_profit=take_profit,
            position_size=size,
            open_time=signal.time,
            highest_price_so_far=entry,
            lowest_price_so_far=entry,
        )
        self.open_trades[mode][pair] = trade
        self.last_prices.setdefault(pair, entry)
        logger.info(f"💰 OPEN {direction} {pair} ({mode}) size={size:.2f} @ {entry:.6g} SL={stop_loss:.6g} TP={take_profit:.6g}")
        self._persist("save_trade", trade)
        self._emit("trade_opened", {"trade": asdict(trade)})
        return OpenResult(trade=trade)

    # -------------------- Price action -------------------- #
    def on_candle(self, pair: str, candle: Candle, mode: TradingMode) -> Optional[Trade]:
        """
        Trailing stop then exit check for the pair's open trade.
        Safe to call again with the same candle. Returns the trade if it closed.
        """
        self.update_price(pair, candle.close)
        trade = self.open_trades[mode].get(pair)
        # the entry candle and anything older never trigger exits
        if trade is None or candle.time <= trade.open_time:
            return None
        if update_trailing_stop(trade, candle, self.risk.trailing_stop_percent):
            logger.info(f"🪜 Trailing stop {pair} -> {trade.trailing_stop_price:.6g}")
            self._persist("update_trade", trade)
            self._emit("trade_updated", {"trade": asdict(trade)})
        decision = evaluate_exit(trade, candle, self.risk.exit_priority)
        if decision is None:
            return None
        return self.close_trade(trade, decision.price, decision.reason, candle.time)

    def close_trade(self, trade: Trade, price: float, reason: ExitReason, exit_time: int) -> Optional[Trade]:
        if not trade.is_open or self.open_trades[trade.mode].get(trade.pair) is not trade:
            self._violation(f"close requested for trade {trade.id} which is not open")
            return None
        finalize_trade(trade, price, reason, exit_time, self.risk)
        del self.open_trades[trade.mode][trade.pair]
        self.closed_trades[trade.mode].append(trade)
        self.realized_pnl[trade.mode] += trade.pnl_amount
        icon = "✅" if trade.pnl_amount > 0 else "❌"
        logger.info(
            f"{icon} CLOSE {trade.direction} {trade.pair} ({trade.mode}) {reason} @ {price:.6g} "
            f"PnL={trade.pnl_amount:+.2f} ({trade.pnl:+.2f}%) RR={trade.realized_rr:.2f}"
        )
        self._persist("close_trade", trade)
        self._emit("trade_closed", {"trade": asdict(trade)})
        return trade

    def find_trade(self, trade_id: str) -> Optional[Trade]:
        for trades in self.open_trades.values():
            for trade in trades.values():
                if trade.id == trade_id:
                    return trade
        for trades in self.closed_trades.values():
            for trade in trades:
                if trade.id == trade_id:
                    return trade
        return None

    def manual_close(self, trade_id: str, exit_time: Optional[int] = None) -> Optional[Trade]:
        trade = self.find_trade(trade_id)
        if trade is None:
            raise TradeNotFound(trade_id)
        if not trade.is_open:
            self._violation(f"trade {trade_id} is already closed")
            return None
        price = self.last_prices.get(trade.pair)
        if price is None:
            raise NoMarketPrice(trade.pair)
        return self.close_trade(trade, price, "ManualClose", exit_time if exit_time is not None else self.clock())

    def close_all(self, mode: TradingMode, exit_time: Optional[int] = None) -> List[Trade]:
        """Closes every open trade of the mode at its last known price."""
        closed = []
        for trade in list(self.open_trades[mode].values()):
            try:
                result = self.manual_close(trade.id, exit_time)
            except NoMarketPrice as e:
                logger.warning(f"⚠️ {e}, trade {trade.id} left open")
                continue
            if result is not None:
                closed.append(result)
        return closed

    # -------------------- Sessions -------------------- #
    def start_session(self, mode: TradingMode, strategy_id: str, start_time: Optional[int] = None,
                      migrate_open: bool = False) -> Session:
        if mode in self.sessions:
            self.stop_session(mode)
        start = start_time if start_time is not None else self.clock()
        session = Session(id=f"{mode}-{start}", start_time=start, strategy_id=strategy_id, mode=mode)
        self.sessions[mode] = session
        if migrate_open:
            for trade in self.open_trades[mode].values():
                trade.session_id = session.id
                self._persist("update_trade", trade)
        logger.info(f"▶️ Session {session.id} started ({strategy_id})")
        self._persist("save_session", session)
        self._emit("session_started", {"session": asdict(session)})
        return session

    def stop_session(self, mode: TradingMode, end_time: Optional[int] = None) -> Optional[Session]:
        session = self.sessions.pop(mode, None)
        if session is None:
            return None
        session.end_time = end_time if end_time is not None else self.clock()
        session.stats = self.session_stats(session.id, mode)
        self.session_history.append(session)
        logger.info(
            f"⏹️ Session {session.id} stopped: {session.stats.total_trades} trades, "
            f"net={session.stats.net_profit:+.2f}"
        )
        self._persist("save_session", session)
        self._emit("session_stopped", {"session_id": session.id, "mode": mode})
        return session

    def session_stats(self, session_id: str, mode: TradingMode) -> BacktestStats:
        trades = [t for t in self.closed_trades[mode] if t.session_id == session_id]
        return compute_stats(trades, self.risk.total_capital)

    def stats(self, mode: TradingMode) -> BacktestStats:
        return compute_stats(self.closed_trades[mode], self.risk.total_capital)

    def rehydrate(self, mode: TradingMode) -> int:
        """Reloads the mode's open trades from persistence at start-up."""
        restored = 0
        for trade in self.persistence.load_open_trades(mode):
            if not trade.is_open or trade.pair in self.open_trades[mode]:
                continue
            self.open_trades[mode][trade.pair] = trade
            self.last_prices.setdefault(trade.pair, trade.entry_price)
            restored += 1
        if restored:
            logger.info(f"♻️ {restored} open trades restored for {mode}")
        return restored

    # -------------------- Internals -------------------- #
    def _violation(self, message: str) -> None:
        if self.strict:
            raise InvariantViolation(message)
        logger.error(f"🚨 Ignored invalid operation: {message}")

    def _persist(self, hook: str, obj) -> None:
        try:
            getattr(self.persistence, hook)(obj)
        except Exception as e:
            # logged, never raised
            logger.warning(f"⚠️ Persistence hook {hook} failed: {e}")

    def _emit(self, event_type: str, data: dict) -> None:
        self.events.emit(event_type, data)
