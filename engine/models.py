from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Optional, Tuple

Direction = Literal["LONG", "SHORT"]
TradingMode = Literal["Live", "Paper", "Backtest"]
StepStatus = Literal["pending", "waiting", "met", "unmet"]
SignalType = Literal["entry", "short-entry", "grab", "tp", "sl"]
ExitReason = Literal["TP", "SL", "TrailingStop", "ManualClose"]
TradeStatus = Literal["open", "closed"]

TRADING_MODES: Tuple[str, ...] = ("Live", "Paper", "Backtest")


@dataclass(frozen=True)
class Candle:
    """OHLCV bar; `time` is the period open in ms."""
    time: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


@dataclass(frozen=True)
class StrategyStep:
    name: str
    status: StepStatus = "pending"
    detail: str = ""


@dataclass(frozen=True)
class Signal:
    """Optional output of a strategy evaluation."""
    type: SignalType
    time: int
    direction: Optional[Direction] = None
    entry_price: Optional[float] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None

    @property
    def is_entry(self) -> bool:
        return (
            self.type in ("entry", "short-entry")
            and self.entry_price is not None
            and self.stop_loss is not None
            and self.take_profit is not None
        )

    @property
    def side(self) -> Direction:
        if self.direction is not None:
            return self.direction
        return "SHORT" if self.type == "short-entry" else "LONG"


@dataclass(frozen=True)
class StrategyState:
    steps: Tuple[StrategyStep, ...] = ()
    signal: Optional[Signal] = None
    # Strategy-owned scratch data handed back as `prior` on the next call.
    memo: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Trade:
    id: str
    pair: str
    strategy_id: str
    timeframe: str
    mode: TradingMode
    session_id: str
    direction: Direction
    entry_price: float
    stop_loss: float
    take_profit: float
    position_size: float
    open_time: int
    status: TradeStatus = "open"
    trailing_stop_price: Optional[float] = None
    highest_price_so_far: Optional[float] = None
    lowest_price_so_far: Optional[float] = None
    close_time: Optional[int] = None
    exit_price: Optional[float] = None
    exit_reason: Optional[ExitReason] = None
    pnl: float = 0.0
    pnl_amount: float = 0.0
    realized_rr: float = 0.0
    duration_ms: int = 0

    @property
    def is_open(self) -> bool:
        return self.status == "open"

    @property
    def units(self) -> float:
        return self.position_size / self.entry_price

    @property
    def effective_stop(self) -> float:
        return self.trailing_stop_price if self.trailing_stop_price is not None else self.stop_loss

    @property
    def risk_amount(self) -> float:
        """Quote amount lost if the original stop is hit (fees excluded)."""
        return abs(self.entry_price - self.stop_loss) * self.units


@dataclass
class Session:
    id: str
    start_time: int
    strategy_id: str
    mode: TradingMode
    end_time: Optional[int] = None
    stats: Optional["BacktestStats"] = None


@dataclass(frozen=True)
class EquityPoint:
    time: int
    value: float


@dataclass(frozen=True)
class PnlBucket:
    bucket: str
    count: int


@dataclass(frozen=True)
class BacktestStats:
    net_profit: float
    profit_factor: float
    total_trades: int
    winning_trades: int
    losing_trades: int
    win_rate: float
    average_gain: float
    average_loss: float
    max_drawdown_percent: float
    best_trade_pnl: float
    worst_trade_pnl: float
    equity_curve: Tuple[EquityPoint, ...]
    pnl_distribution: Tuple[PnlBucket, ...]
    average_duration: str
    average_win_duration: str
    average_loss_duration: str
    longest_win_streak: int
    longest_loss_streak: int
    average_rr: float
    final_equity: float


@dataclass(frozen=True)
class PairPerformance:
    net_profit: float
    total_trades: int
    win_rate: float
    profit_factor: float


@dataclass(frozen=True)
class PortfolioStats:
    global_stats: BacktestStats
    by_pair: Dict[str, PairPerformance]


@dataclass(frozen=True)
class BacktestSession:
    """Immutable record emitted when a replay reaches its final candle."""
    id: str
    created_at: int
    pair: str
    timeframe: str
    strategy_id: str
    settings: Dict[str, Any]
    stats: BacktestStats
    trades: Tuple[Trade, ...]
    starting_capital: float
    candle_count: int = 0
