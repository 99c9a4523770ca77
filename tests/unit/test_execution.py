import pytest

from core.errors import ConfigError, InvariantViolation, NoMarketPrice, TradeNotFound
from engine.config import RiskSettings
from engine.events import EventBus, EventRecorder
from engine.execution import TradeManager
from engine.models import Candle, Signal, Trade
from engine.risk_management import RejectReason
from interfaces.persistence import NullPersistence

RISK = RiskSettings(commission_percent=0.0, slippage_percent=0.0)
PAIR = "BTC/USDT"


def long_signal(t=0, entry=100.0, sl=95.0, tp=110.0):
    return Signal(type="entry", time=t, direction="LONG", entry_price=entry, stop_loss=sl, take_profit=tp)


def candle(t, o, h, l, c):
    return Candle(time=t, open=o, high=h, low=l, close=c)


class RecordingStore(NullPersistence):
    def __init__(self, open_trades=()):
        self.calls = []
        self._open = list(open_trades)

    def save_trade(self, trade):
        self.calls.append(("save_trade", trade.id))

    def update_trade(self, trade):
        self.calls.append(("update_trade", trade.id))

    def close_trade(self, trade):
        self.calls.append(("close_trade", trade.id))

    def save_session(self, session):
        self.calls.append(("save_session", session.id))

    def load_open_trades(self, mode):
        return [t for t in self._open if t.mode == mode]


class BrokenStore(NullPersistence):
    def save_trade(self, trade):
        raise RuntimeError("disk full")


def make_manager(risk=RISK, **kw):
    bus = EventBus()
    recorder = EventRecorder()
    bus.subscribe(recorder)
    return TradeManager(risk, events=bus, clock=lambda: 5_000, **kw), recorder


def test_one_open_trade_per_pair_and_mode():
    manager, _ = make_manager()
    assert manager.open_trade(PAIR, long_signal(), "Paper", "s", "1h").opened
    assert manager.open_trade(PAIR, long_signal(), "Live", "s", "1h").opened
    second = manager.open_trade(PAIR, long_signal(t=1), "Paper", "s", "1h")
    assert not second.opened
    assert len(manager.open_trades["Paper"]) == 1

    strict, _ = make_manager(strict=True)
    strict.open_trade(PAIR, long_signal(), "Paper", "s", "1h")
    with pytest.raises(InvariantViolation):
        strict.open_trade(PAIR, long_signal(t=1), "Paper", "s", "1h")


def test_capital_accounting():
    manager, _ = make_manager()
    trade = manager.open_trade(PAIR, long_signal(), "Paper", "s", "1h").trade
    assert manager.capital_in_use("Paper") == pytest.approx(2000)
    assert manager.available_capital("Paper") == pytest.approx(8000)
    assert manager.open_risk("Paper") == pytest.approx(100)
    manager.on_candle(PAIR, candle(1, 100, 111, 99, 110), "Paper")
    assert not trade.is_open
    assert manager.equity("Paper") == pytest.approx(10_200)
    assert manager.available_capital("Paper") == pytest.approx(10_200)
    assert manager.equity("Live") == 10_000


def test_rejection_is_reported_not_raised():
    manager, events = make_manager(RISK.with_updates(risk_per_trade_percent=10.0))
    # 1000 risk / 1 per unit * 100 = 100k > 10k available
    result = manager.open_trade(PAIR, long_signal(sl=99.0), "Paper", "s", "1h")
    assert not result.opened
    assert result.reason == RejectReason.INSUFFICIENT_CAPITAL
    assert events.of_type("trade_rejected")[0]["reason"] == "insufficient-capital"


def test_exit_evaluation_is_idempotent():
    manager, events = make_manager()
    manager.open_trade(PAIR, long_signal(), "Paper", "s", "1h")
    bar = candle(1, 100, 101, 94, 96)
    closed = manager.on_candle(PAIR, bar, "Paper")
    assert closed.exit_reason == "SL"
    assert manager.on_candle(PAIR, bar, "Paper") is None
    assert len(manager.closed_trades["Paper"]) == 1
    assert manager.realized_pnl["Paper"] == pytest.approx(-100)
    assert len(events.of_type("trade_closed")) == 1


def test_entry_candle_never_triggers_exit():
    manager, _ = make_manager()
    manager.open_trade(PAIR, long_signal(t=10), "Paper", "s", "1h")
    assert manager.on_candle(PAIR, candle(10, 100, 120, 80, 100), "Paper") is None
    assert manager.on_candle(PAIR, candle(9, 100, 120, 80, 100), "Paper") is None
    assert manager.open_trade_for(PAIR, "Paper") is not None


def test_closing_a_closed_trade():
    manager, _ = make_manager()
    trade = manager.open_trade(PAIR, long_signal(), "Paper", "s", "1h").trade
    manager.close_trade(trade, 101.0, "ManualClose", 1)
    assert manager.close_trade(trade, 101.0, "ManualClose", 2) is None
    assert manager.realized_pnl["Paper"] == pytest.approx(20)

    strict, _ = make_manager(strict=True)
    trade = strict.open_trade(PAIR, long_signal(), "Paper", "s", "1h").trade
    strict.close_trade(trade, 101.0, "ManualClose", 1)
    with pytest.raises(InvariantViolation):
        strict.close_trade(trade, 101.0, "ManualClose", 2)


def test_manual_close_at_last_price():
    manager, _ = make_manager()
    trade = manager.open_trade(PAIR, long_signal(), "Paper", "s", "1h").trade
    manager.update_price(PAIR, 103.0)
    closed = manager.manual_close(trade.id)
    assert (closed.exit_price, closed.exit_reason, closed.close_time) == (103.0, "ManualClose", 5_000)
    assert closed.pnl_amount == pytest.approx(60)
    assert manager.find_trade(trade.id) is closed
    with pytest.raises(TradeNotFound):
        manager.manual_close("nope")


def test_manual_close_without_price():
    manager, _ = make_manager()
    trade = manager.open_trade(PAIR, long_signal(), "Paper", "s", "1h").trade
    manager.last_prices.pop(PAIR)
    with pytest.raises(NoMarketPrice):
        manager.manual_close(trade.id)
    assert trade.is_open


def test_close_all():
    manager, _ = make_manager()
    manager.open_trade(PAIR, long_signal(), "Paper", "s", "1h")
    manager.open_trade("ETH/USDT", long_signal(entry=50, sl=49, tp=52), "Paper", "s", "1h")
    manager.open_trade(PAIR, long_signal(), "Live", "s", "1h")
    closed = manager.close_all("Paper")
    assert {t.pair for t in closed} == {PAIR, "ETH/USDT"}
    assert manager.open_trades["Paper"] == {}
    assert PAIR in manager.open_trades["Live"]


def test_pending_confirmation():
    manager, events = make_manager(RISK.with_updates(confirm_trades=True))
    assert manager.propose(PAIR, long_signal(), "Paper", "s", "1h") is None
    assert ("Paper", PAIR) in manager.pending
    assert events.of_type("trade_pending")

    result = manager.confirm_pending(PAIR, "Paper", size_multiplier=0.5)
    assert result.trade.position_size == pytest.approx(1000)
    assert manager.pending == {}
    with pytest.raises(TradeNotFound):
        manager.confirm_pending(PAIR, "Paper")

    manager.propose("ETH/USDT", long_signal(), "Paper", "s", "1h")
    assert manager.reject_pending("ETH/USDT", "Paper")
    assert not manager.reject_pending("ETH/USDT", "Paper")

    # backtests never wait for a confirmation
    assert manager.propose(PAIR, long_signal(), "Backtest", "s", "1h").opened


def test_confirmation_multiplier_stays_inside_risk_limits():
    risk = RISK.with_updates(risk_per_trade_percent=1.0, max_concurrent_risk_percent=1.0, confirm_trades=True)
    manager, events = make_manager(risk)
    manager.propose(PAIR, long_signal(), "Paper", "s", "1h")
    result = manager.confirm_pending(PAIR, "Paper", size_multiplier=1.25)
    assert not result.opened
    assert result.reason == RejectReason.RISK_LIMIT_EXCEEDED
    assert manager.open_risk("Paper") == 0.0
    assert events.of_type("trade_rejected")[-1]["reason"] == "risk-limit-exceeded"

    manager.propose(PAIR, long_signal(t=1), "Paper", "s", "1h")
    with pytest.raises(ConfigError):
        manager.confirm_pending(PAIR, "Paper", size_multiplier=4.0)
    # an out-of-range multiplier leaves the trade waiting
    assert ("Paper", PAIR) in manager.pending
    trade = manager.confirm_pending(PAIR, "Paper", size_multiplier=1.0).trade
    assert trade.risk_amount == pytest.approx(100)
    assert manager.open_risk("Paper") / manager.equity("Paper") * 100 <= 1.0 + 1e-9


def test_sessions_group_trades():
    store = RecordingStore()
    manager, events = make_manager(persistence=store)
    first = manager.start_session("Paper", "bullish-candle", start_time=0)
    trade = manager.open_trade(PAIR, long_signal(), "Paper", "s", "1h").trade
    assert trade.session_id == first.id
    manager.on_candle(PAIR, candle(1, 100, 111, 99, 110), "Paper")
    manager.open_trade(PAIR, long_signal(t=2), "Paper", "s", "1h")

    second = manager.start_session("Paper", "bullish-candle", start_time=3, migrate_open=True)
    assert first.end_time == 5_000
    assert first.stats.total_trades == 1
    assert manager.open_trade_for(PAIR, "Paper").session_id == second.id

    stopped = manager.stop_session("Paper", end_time=10)
    assert stopped is second
    assert stopped.stats.total_trades == 0
    assert [s.id for s in manager.session_history] == [first.id, second.id]
    assert manager.stop_session("Paper") is None
    assert ("save_session", second.id) in store.calls
    assert ("update_trade", f"2-{PAIR}") in store.calls
    assert events.of_type("session_stopped")[-1]["session_id"] == second.id


def test_persistence_hooks_called():
    store = RecordingStore()
    manager, _ = make_manager(RISK.with_updates(trailing_stop_percent=1.0), persistence=store)
    manager.open_trade(PAIR, long_signal(), "Paper", "s", "1h")
    manager.on_candle(PAIR, candle(1, 100, 105, 104, 104.5), "Paper")
    manager.on_candle(PAIR, candle(2, 104, 104, 103, 103.5), "Paper")
    assert [c[0] for c in store.calls] == ["save_trade", "update_trade", "close_trade"]


def test_persistence_failure_does_not_block_trading():
    manager, _ = make_manager(persistence=BrokenStore())
    assert manager.open_trade(PAIR, long_signal(), "Paper", "s", "1h").opened


def test_rehydrate_open_trades():
    saved = Trade(
        id=f"7-{PAIR}", pair=PAIR, strategy_id="s", timeframe="1h", mode="Live", session_id="Live-1",
        direction="LONG", entry_price=100, stop_loss=95, take_profit=110, position_size=2000, open_time=7,
    )
    manager, _ = make_manager(persistence=RecordingStore([saved]))
    assert manager.rehydrate("Live") == 1
    assert manager.rehydrate("Live") == 0
    assert manager.open_trade_for(PAIR, "Live") is saved
    assert manager.last_prices[PAIR] == 100
    assert manager.rehydrate("Paper") == 0
