import logging
import math
import time
from enum import Enum
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from pydantic import BaseModel

from core.errors import BacktestError, InvalidTransition
from engine.analytics import compute_portfolio_stats, compute_stats
from engine.config import RiskSettings
from engine.events import EventBus
from engine.execution import TradeManager
from engine.models import BacktestSession, Candle, PortfolioStats, StrategyState
from engine.strategy import SettingsInput, Strategy, run_strategy
from interfaces.exchange import MarketDataSource, ProgressCallback
from interfaces.persistence import NullPersistence, PersistenceHooks

logger = logging.getLogger("Backtest")

MODE = "Backtest"


class PlaybackState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    PLAYING = "playing"
    PAUSED = "paused"
    FINISHED = "finished"


def normalize_candles(candles: Sequence[Candle]) -> List[Candle]:
    """Ascending by time, one candle per timestamp (last one wins)."""
    by_time = {c.time: c for c in candles}
    return [by_time[t] for t in sorted(by_time)]


class Backtester:
    """
    Candle-by-candle replay of one strategy over one pair.

    Idle -> Loading -> Ready (paused) -> Playing <-> Paused -> Finished.
    The caller drives it: a playback clock calls `step()` while playing,
    or `run_to_completion()` replays everything at once. Same candles,
    settings and strategy always give the same trades and stats.
    """

    def __init__(
        self,
        strategy: Strategy,
        risk: RiskSettings,
        settings: SettingsInput = None,
        pair: str = "BTC/USDT",
        timeframe: str = "1h",
        warmup_index: int = 1,
        events: Optional[EventBus] = None,
        persistence: Optional[PersistenceHooks] = None,
        strict: bool = False,
        clock: Optional[Callable[[], int]] = None,
    ):
        if warmup_index < 1:
            raise ValueError("warmup_index must be >= 1")
        self.strategy = strategy
        self.risk = risk
        self.settings: BaseModel = strategy.validate_settings(settings)
        self.pair = pair
        self.timeframe = timeframe
        self.warmup_index = warmup_index
        self.events = events or EventBus()
        self.persistence = persistence or NullPersistence()
        self.strict = strict
        self.clock = clock or (lambda: int(time.time() * 1000))
        self.state = PlaybackState.IDLE
        self.candles: Tuple[Candle, ...] = ()
        self.index = 0
        self.error: Optional[str] = None
        self.result: Optional[BacktestSession] = None
        self.strategy_state: Optional[StrategyState] = None
        self.manager = self._new_manager()

    def _new_manager(self) -> TradeManager:
        return TradeManager(self.risk, events=self.events, persistence=self.persistence,
                            strict=self.strict, clock=self.clock)

    # -------------------- Loading -------------------- #
    def load(self, candles: Sequence[Candle]) -> None:
        self._require("load", PlaybackState.IDLE, PlaybackState.READY, PlaybackState.PAUSED, PlaybackState.FINISHED)
        self.state = PlaybackState.LOADING
        self._finish_loading(candles)

    async def load_from(self, source: MarketDataSource, period: str = "3m",
                        on_progress: Optional[ProgressCallback] = None) -> None:
        self._require("load", PlaybackState.IDLE, PlaybackState.READY, PlaybackState.PAUSED, PlaybackState.FINISHED)
        self.state = PlaybackState.LOADING
        logger.info(f"📥 Loading {self.pair} {self.timeframe} ({period})...")
        candles = await source.fetch_all_candles(self.pair, self.timeframe, period, on_progress)
        self._finish_loading(candles)

    def _finish_loading(self, candles: Sequence[Candle]) -> None:
        data = normalize_candles(candles)
        if len(data) <= self.warmup_index:
            self.state = PlaybackState.IDLE
            self.candles = ()
            self.error = f"Not enough candles to replay {self.pair} {self.timeframe} (got {len(data)})"
            logger.warning(f"⚠️ {self.error}")
            raise BacktestError(self.error)
        self.candles = tuple(data)
        self.error = None
        self._rewind()
        self.state = PlaybackState.READY
        logger.info(f"✅ {len(self.candles)} candles ready for {self.strategy.id} on {self.pair}")

    def _rewind(self) -> None:
        self.manager = self._new_manager()
        self.manager.start_session(MODE, self.strategy.id, start_time=self.candles[0].time)
        self.index = self.warmup_index - 1
        self.strategy_state = None
        self.result = None

    # -------------------- Commands -------------------- #
    def play(self) -> None:
        self._require("play", PlaybackState.READY, PlaybackState.PAUSED)
        self.state = PlaybackState.PLAYING

    def pause(self) -> None:
        self._require("pause", PlaybackState.PLAYING)
        self.state = PlaybackState.PAUSED

    def resume(self) -> None:
        self._require("resume", PlaybackState.PAUSED)
        self.state = PlaybackState.PLAYING

    def step(self) -> Optional[BacktestSession]:
        """Processes the next candle. Returns the record once finished."""
        self._require("step", PlaybackState.READY, PlaybackState.PAUSED, PlaybackState.PLAYING)
        if self.state == PlaybackState.READY:
            self.state = PlaybackState.PAUSED
        self._advance()
        return self.result

    def seek(self, index: int) -> None:
        """Replays from the first candle up to `index` (paused)."""
        self._require("seek", PlaybackState.READY, PlaybackState.PAUSED, PlaybackState.FINISHED)
        last = len(self.candles) - 1
        target = min(max(index, self.warmup_index - 1), last)
        self._rewind()
        self.state = PlaybackState.PAUSED
        while self.index < target:
            self._advance()

    def run_to_completion(self) -> BacktestSession:
        self._require("run", PlaybackState.READY, PlaybackState.PAUSED, PlaybackState.PLAYING)
        self.state = PlaybackState.PLAYING
        while self.state != PlaybackState.FINISHED:
            self._advance()
        return self.result

    def reset(self) -> None:
        self._require("reset", PlaybackState.READY, PlaybackState.PLAYING, PlaybackState.PAUSED,
                      PlaybackState.FINISHED, PlaybackState.IDLE)
        self.state = PlaybackState.IDLE
        self.candles = ()
        self.index = 0
        self.result = None
        self.strategy_state = None
        self.manager = self._new_manager()

    @property
    def progress(self) -> float:
        if len(self.candles) < 2:
            return 0.0
        return self.index / (len(self.candles) - 1)

    @property
    def closed_trades(self):
        return list(self.manager.closed_trades[MODE])

    @property
    def equity(self) -> float:
        return self.manager.equity(MODE)

    # -------------------- Replay -------------------- #
    def _advance(self) -> None:
        last = len(self.candles) - 1
        if self.index < last:
            self.index += 1
            self._process(self.index)
        if self.index >= last:
            self._finalize()

    def _process(self, i: int) -> None:
        candle = self.candles[i]
        if self.manager.open_trade_for(self.pair, MODE) is not None:
            self.manager.on_candle(self.pair, candle, MODE)
            return

        self.manager.update_price(self.pair, candle.close)
        self.strategy_state = run_strategy(self.strategy, self.candles[: i + 1], self.settings, self.strategy_state)
        signal = self.strategy_state.signal
        if signal is not None and signal.is_entry:
            self.manager.open_trade(self.pair, signal, MODE, self.strategy.id, self.timeframe,
                                    apply_fill_slippage=True)

    def _finalize(self) -> None:
        if self.state == PlaybackState.FINISHED:
            return
        trades = tuple(self.manager.closed_trades[MODE])
        stats = compute_stats(trades, self.risk.total_capital, seed_time=self.candles[0].time)
        self.manager.stop_session(MODE, end_time=self.candles[-1].time)
        created = self.clock()
        self.result = BacktestSession(
            id=f"B-{created}",
            created_at=created,
            pair=self.pair,
            timeframe=self.timeframe,
            strategy_id=self.strategy.id,
            settings=self.settings.model_dump(),
            stats=stats,
            trades=trades,
            starting_capital=self.risk.total_capital,
            candle_count=len(self.candles),
        )
        self.state = PlaybackState.FINISHED
        pf = "inf" if math.isinf(stats.profit_factor) else f"{stats.profit_factor:.2f}"
        logger.info(
            f"🏁 Backtest {self.strategy.id} {self.pair}: {stats.total_trades} trades, "
            f"net={stats.net_profit:+.2f}, PF={pf}, maxDD={stats.max_drawdown_percent:.2f}%"
        )
        try:
            self.persistence.save_backtest(self.result)
        except Exception as e:
            logger.warning(f"⚠️ Backtest record not saved: {e}")
        self.events.emit("backtest_finished", {"id": self.result.id, "pair": self.pair,
                                               "total_trades": stats.total_trades, "net_profit": stats.net_profit})

    def _require(self, command: str, *allowed: PlaybackState) -> None:
        if self.state not in allowed:
            raise InvalidTransition(self.state.value, command)


def run_backtest(strategy: Strategy, candles: Sequence[Candle], risk: RiskSettings,
                 settings: SettingsInput = None, pair: str = "BTC/USDT", timeframe: str = "1h",
                 warmup_index: int = 1) -> BacktestSession:
    """Headless replay: load + run to completion."""
    backtester = Backtester(strategy, risk, settings, pair=pair, timeframe=timeframe, warmup_index=warmup_index)
    backtester.load(candles)
    return backtester.run_to_completion()


def run_portfolio_backtest(strategy: Strategy, candles_by_pair: Mapping[str, Sequence[Candle]],
                           risk: RiskSettings, settings: SettingsInput = None, timeframe: str = "1h",
                           warmup_index: int = 1) -> Tuple[PortfolioStats, Dict[str, BacktestSession]]:
    """Each pair replayed on its own full capital, then aggregated."""
    sessions: Dict[str, BacktestSession] = {}
    for pair, candles in candles_by_pair.items():
        try:
            sessions[pair] = run_backtest(strategy, candles, risk, settings, pair, timeframe, warmup_index)
        except BacktestError as e:
            logger.warning(f"⚠️ {pair} skipped: {e}")
    trades = [t for record in sessions.values() for t in record.trades]
    return compute_portfolio_stats(trades, risk.total_capital), sessions


def print_report(record: BacktestSession) -> None:
    stats = record.stats
    pf = "∞" if math.isinf(stats.profit_factor) else f"{stats.profit_factor:.2f}"
    print("\n" + "=" * 40)
    print(f"📊 BACKTEST REPORT {record.strategy_id} {record.pair} {record.timeframe}")
    print("=" * 40)
    print(f"Candles         : {record.candle_count}")
    print(f"Starting capital: {record.starting_capital:.2f} $")
    print(f"Final equity    : {stats.final_equity:.2f} $")
    print(f"Net profit      : {stats.net_profit:+.2f} $")
    print(f"Trades          : {stats.total_trades} (win rate {stats.win_rate:.1f}%)")
    print(f"Profit factor   : {pf}")
    print(f"Max drawdown    : {stats.max_drawdown_percent:.2f} %")
    print(f"Avg RR (wins)   : {stats.average_rr:.2f}")
    print(f"Avg duration    : {stats.average_duration}")
    print(f"Streaks         : {stats.longest_win_streak}W / {stats.longest_loss_streak}L")
    print("=" * 40 + "\n")
