import asyncio
import random

import pytest

from core.errors import BacktestError, InvalidTransition
from engine.backtest import Backtester, PlaybackState, normalize_candles, run_backtest, run_portfolio_backtest
from engine.config import RiskSettings
from engine.events import EventBus, EventRecorder
from engine.models import Candle
from engine.strategies.bullish_candle import BullishCandleStrategy
from interfaces.persistence import NullPersistence

HOUR = 3_600_000
NO_FEES = RiskSettings(commission_percent=0.0, slippage_percent=0.0)
SETTINGS = {"stop_loss_percent": 2}


def candle(i, o, h, l, c):
    return Candle(time=i * HOUR, open=o, high=h, low=l, close=c)


# bullish entry -> TP, bearish pause, bullish entry -> SL
SCENARIO = [
    candle(0, 100, 101, 99, 100),
    candle(1, 100, 101, 99.5, 101),
    candle(2, 101, 104.5, 100, 104),
    candle(3, 104, 104.2, 103, 103.5),
    candle(4, 103.5, 104, 103, 104),
    candle(5, 104, 104.5, 101, 101.5),
]


def random_walk(n=300, seed=7):
    rng = random.Random(seed)
    price, candles = 100.0, []
    for i in range(n):
        o = price
        c = max(1.0, o * (1 + rng.uniform(-0.02, 0.02)))
        h = max(o, c) * (1 + rng.uniform(0, 0.01))
        l = min(o, c) * (1 - rng.uniform(0, 0.01))
        candles.append(candle(i, o, h, l, c))
        price = c
    return candles


class CapturingStore(NullPersistence):
    def __init__(self):
        self.backtests = []

    def save_backtest(self, record):
        self.backtests.append(record)


class FakeSource:
    def __init__(self, candles):
        self.candles = candles
        self.calls = []

    async def fetch_candles(self, pair, timeframe, limit=1000, end_time=None):
        return self.candles[-limit:]

    async def fetch_all_candles(self, pair, timeframe, period="3m", on_progress=None):
        self.calls.append((pair, timeframe, period))
        if on_progress:
            on_progress(len(self.candles), self.candles[0].time if self.candles else 0)
        return list(reversed(self.candles))


def test_replay_scenario():
    record = run_backtest(BullishCandleStrategy(), SCENARIO, NO_FEES, SETTINGS)
    trades = record.trades
    assert [t.exit_reason for t in trades] == ["TP", "SL"]

    first, second = trades
    assert (first.entry_price, first.open_time, first.close_time) == (101, HOUR, 2 * HOUR)
    assert first.stop_loss == pytest.approx(98.98)
    assert first.exit_price == pytest.approx(104.03)
    assert first.position_size == pytest.approx(5000)
    assert first.pnl_amount == pytest.approx(150)
    assert first.realized_rr == pytest.approx(1.5)

    assert second.entry_price == 104
    assert second.position_size == pytest.approx(5075)
    assert second.exit_price == pytest.approx(101.92)
    assert second.pnl_amount == pytest.approx(-101.5)

    stats = record.stats
    assert stats.total_trades == 2
    assert stats.net_profit == pytest.approx(48.5)
    assert stats.final_equity == pytest.approx(10_048.5)
    assert stats.equity_curve[0].time == HOUR - 1
    assert record.candle_count == 6
    assert record.settings["stop_loss_percent"] == 2


def test_trade_open_at_the_end_is_left_out():
    tail = SCENARIO + [candle(6, 101.5, 103, 101, 102.5)]
    backtester = Backtester(BullishCandleStrategy(), NO_FEES, SETTINGS)
    backtester.load(tail)
    record = backtester.run_to_completion()
    assert record.stats.total_trades == 2
    assert backtester.manager.open_trade_for("BTC/USDT", "Backtest") is not None


def test_entry_slippage():
    risk = NO_FEES.with_updates(slippage_percent=0.1)
    backtester = Backtester(BullishCandleStrategy(), risk, SETTINGS)
    backtester.load(SCENARIO)
    backtester.step()
    opened = backtester.manager.open_trade_for("BTC/USDT", "Backtest")
    assert opened.entry_price == pytest.approx(101 * 1.001)
    assert opened.entry_price - opened.stop_loss == pytest.approx(101 - 98.98)


def test_deterministic_and_capital_conserved():
    candles = random_walk()
    risk = RiskSettings()
    a = run_backtest(BullishCandleStrategy(), candles, risk, SETTINGS)
    b = run_backtest(BullishCandleStrategy(), candles, risk, SETTINGS)
    assert a.stats == b.stats
    assert [t.id for t in a.trades] == [t.id for t in b.trades]
    assert a.stats.total_trades > 0
    assert a.stats.final_equity == pytest.approx(risk.total_capital + sum(t.pnl_amount for t in a.trades))
    for trade in a.trades:
        assert trade.close_time > trade.open_time


def test_state_machine():
    backtester = Backtester(BullishCandleStrategy(), NO_FEES, SETTINGS)
    assert backtester.state == PlaybackState.IDLE
    with pytest.raises(InvalidTransition):
        backtester.play()

    backtester.load(SCENARIO)
    assert backtester.state == PlaybackState.READY
    assert backtester.index == 0

    backtester.step()
    assert backtester.state == PlaybackState.PAUSED
    assert backtester.index == 1
    with pytest.raises(InvalidTransition):
        backtester.pause()

    backtester.play()
    assert backtester.state == PlaybackState.PLAYING
    backtester.pause()
    backtester.resume()
    record = backtester.run_to_completion()
    assert backtester.state == PlaybackState.FINISHED
    assert backtester.progress == 1.0
    assert record.stats.total_trades == 2
    with pytest.raises(InvalidTransition):
        backtester.step()
    with pytest.raises(InvalidTransition):
        backtester.play()

    backtester.reset()
    assert backtester.state == PlaybackState.IDLE
    assert backtester.closed_trades == []


def test_seek_replays_from_start():
    backtester = Backtester(BullishCandleStrategy(), NO_FEES, SETTINGS)
    backtester.load(SCENARIO)
    backtester.run_to_completion()
    full = backtester.result.stats

    backtester.seek(3)
    assert backtester.state == PlaybackState.PAUSED
    assert backtester.index == 3
    assert len(backtester.closed_trades) == 1
    assert backtester.equity == pytest.approx(10_150)

    backtester.seek(1)
    assert len(backtester.closed_trades) == 0
    assert backtester.run_to_completion().stats == full


def test_too_few_candles():
    backtester = Backtester(BullishCandleStrategy(), NO_FEES)
    with pytest.raises(BacktestError):
        backtester.load(SCENARIO[:1])
    assert backtester.state == PlaybackState.IDLE
    assert backtester.error


def test_normalize_sorts_and_dedupes():
    shuffled = [SCENARIO[2], SCENARIO[0], SCENARIO[1], candle(1, 1, 1, 1, 1)]
    data = normalize_candles(shuffled)
    assert [c.time for c in data] == [0, HOUR, 2 * HOUR]
    assert data[1].close == 1


def test_finish_emits_and_persists():
    bus = EventBus()
    recorder = EventRecorder()
    bus.subscribe(recorder)
    store = CapturingStore()
    backtester = Backtester(BullishCandleStrategy(), NO_FEES, SETTINGS, events=bus, persistence=store,
                            clock=lambda: 42)
    backtester.load(SCENARIO)
    record = backtester.run_to_completion()
    assert store.backtests == [record]
    assert record.id == "B-42"
    finished = recorder.of_type("backtest_finished")
    assert len(finished) == 1
    assert finished[0]["net_profit"] == pytest.approx(48.5)
    assert len(recorder.of_type("trade_closed")) == 2


def test_load_from_source():
    source = FakeSource(SCENARIO)
    progress = []
    backtester = Backtester(BullishCandleStrategy(), NO_FEES, SETTINGS, pair="ETH/USDT", timeframe="1h")
    asyncio.run(backtester.load_from(source, "1m", on_progress=lambda n, oldest: progress.append(n)))
    assert source.calls == [("ETH/USDT", "1h", "1m")]
    assert progress == [6]
    assert backtester.state == PlaybackState.READY
    assert [c.time for c in backtester.candles] == [c.time for c in SCENARIO]


def test_portfolio_skips_pairs_without_data():
    portfolio, sessions = run_portfolio_backtest(
        BullishCandleStrategy(), {"BTC/USDT": SCENARIO, "ETH/USDT": SCENARIO, "XRP/USDT": []}, NO_FEES, SETTINGS
    )
    assert set(sessions) == {"BTC/USDT", "ETH/USDT"}
    assert portfolio.global_stats.total_trades == 4
    assert portfolio.global_stats.net_profit == pytest.approx(97)
    assert portfolio.by_pair["ETH/USDT"].total_trades == 2
