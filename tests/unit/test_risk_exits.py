import pytest

from engine.config import RiskSettings
from engine.execution import TradeManager
from engine.models import Candle, Signal, Trade
from engine.risk_management import (
    apply_slippage,
    compute_trade_pnl,
    evaluate_exit,
    finalize_trade,
    update_trailing_stop,
)

NO_FEES = RiskSettings(commission_percent=0.0, slippage_percent=0.0)


def make_trade(direction="LONG", entry=100.0, sl=95.0, tp=110.0, size=2000.0, open_time=0):
    return Trade(
        id="t1", pair="BTC/USDT", strategy_id="test", timeframe="1h", mode="Backtest", session_id="",
        direction=direction, entry_price=entry, stop_loss=sl, take_profit=tp, position_size=size,
        open_time=open_time, highest_price_so_far=entry, lowest_price_so_far=entry,
    )


def candle(t, o, h, l, c):
    return Candle(time=t, open=o, high=h, low=l, close=c)


def test_tp_scenario():
    manager = TradeManager(NO_FEES)
    signal = Signal(type="entry", time=0, direction="LONG", entry_price=100, stop_loss=95, take_profit=110)
    trade = manager.open_trade("BTC/USDT", signal, "Backtest", "test", "1h").trade
    assert trade.position_size == pytest.approx(2000.0)

    assert manager.on_candle("BTC/USDT", candle(1, 100, 104, 99, 103), "Backtest") is None
    closed = manager.on_candle("BTC/USDT", candle(2, 103, 112, 101, 111), "Backtest")

    assert closed is trade
    assert trade.exit_price == 110
    assert trade.exit_reason == "TP"
    assert trade.realized_rr == pytest.approx(2.0)
    assert trade.pnl_amount == pytest.approx(200.0)
    assert trade.pnl == pytest.approx(10.0)
    assert trade.duration_ms == 2


def test_stop_first_when_candle_spans_both():
    trade = make_trade()
    wide = candle(1, 100, 111, 94, 100)
    assert evaluate_exit(trade, wide, "stop-first").reason == "SL"
    assert evaluate_exit(trade, wide, "stop-first").price == 95
    assert evaluate_exit(trade, wide, "target-first").reason == "TP"


def test_short_exits():
    trade = make_trade("SHORT", entry=100, sl=105, tp=90, size=1000)
    assert evaluate_exit(trade, candle(1, 100, 104, 96, 101)) is None
    stop = evaluate_exit(trade, candle(1, 100, 106, 96, 105))
    assert (stop.reason, stop.price) == ("SL", 105)
    target = evaluate_exit(trade, candle(1, 100, 101, 89, 90))
    assert (target.reason, target.price) == ("TP", 90)


def test_trailing_stop_never_loosens():
    trade = make_trade()
    stops = []
    for i, high in enumerate([102, 105, 103, 108, 104, 107], start=1):
        update_trailing_stop(trade, candle(i, high - 1, high, high - 1.5, high - 0.5), 2.0)
        stops.append(trade.trailing_stop_price)
    assert stops[0] == pytest.approx(99.96)
    assert stops[-1] == pytest.approx(108 * 0.98)
    assert all(b >= a for a, b in zip(stops, stops[1:]))
    assert trade.highest_price_so_far == 108


def test_trailing_stop_short_and_reason():
    trade = make_trade("SHORT", entry=100, sl=105, tp=80, size=1000)
    assert update_trailing_stop(trade, candle(1, 99, 99.5, 95, 96), 2.0)
    assert trade.trailing_stop_price == pytest.approx(96.9)
    assert not update_trailing_stop(trade, candle(2, 96, 97, 95.5, 96), 2.0)
    exit_ = evaluate_exit(trade, candle(3, 96, 97.5, 96, 97))
    assert (exit_.reason, exit_.price) == ("TrailingStop", pytest.approx(96.9))


def test_trailing_disabled():
    trade = make_trade()
    assert not update_trailing_stop(trade, candle(1, 100, 150, 99, 140), 0.0)
    assert trade.trailing_stop_price is None


def test_pnl_with_discounted_commission():
    risk = RiskSettings(commission_percent=0.1, use_fee_discount=True)
    pnl = compute_trade_pnl(make_trade(), 110.0, risk)
    # (2000 + 2200) * 0.075%
    assert pnl.pnl_amount == pytest.approx(200 - 3.15)
    assert pnl.pnl == pytest.approx((200 - 3.15) / 2000 * 100)
    assert pnl.realized_rr == pytest.approx(2.0)


def test_short_pnl():
    pnl = compute_trade_pnl(make_trade("SHORT", entry=100, sl=105, tp=90, size=1000), 90.0, NO_FEES)
    assert pnl.pnl_amount == pytest.approx(100.0)
    assert pnl.realized_rr == pytest.approx(2.0)


def test_finalize_keeps_exit_after_open():
    trade = finalize_trade(make_trade(open_time=50), 97.0, "ManualClose", 10, NO_FEES)
    assert trade.status == "closed"
    assert trade.close_time == 50
    assert trade.duration_ms == 0
    assert trade.exit_reason == "ManualClose"


def test_adverse_slippage_keeps_distances():
    entry, sl, tp = apply_slippage("LONG", 100, 95, 110, 0.1)
    assert entry == pytest.approx(100.1)
    assert (entry - sl, tp - entry) == (pytest.approx(5.0), pytest.approx(10.0))
    entry, sl, tp = apply_slippage("SHORT", 100, 105, 90, 0.1)
    assert entry == pytest.approx(99.9)
    assert (sl, tp) == (pytest.approx(104.9), pytest.approx(89.9))
