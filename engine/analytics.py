import math
from collections import Counter
from typing import Dict, Iterable, List, Sequence

import numpy as np
import pandas as pd

from engine.models import (
    BacktestStats,
    EquityPoint,
    PairPerformance,
    PnlBucket,
    PortfolioStats,
    Trade,
)

BUCKET_SIZE = 0.5


def format_duration(ms: float) -> str:
    """3723000 -> '1h 2m 3s'."""
    if ms <= 0:
        return "0s"
    total = int(ms // 1000)
    hours, minutes, seconds = total // 3600, (total % 3600) // 60, total % 60
    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if seconds or not parts:
        parts.append(f"{seconds}s")
    return " ".join(parts)


def pnl_distribution(trades: Sequence[Trade], bucket_size: float = BUCKET_SIZE) -> List[PnlBucket]:
    """Counts per fixed-width bin of realized % P&L, lowest bin first."""
    if not trades:
        return []
    floors = np.floor(np.array([t.pnl for t in trades], dtype=float) / bucket_size) * bucket_size
    counts = Counter(float(f) + 0.0 for f in floors)  # + 0.0 folds -0.0 into 0.0
    return [
        PnlBucket(bucket=f"{low:.1f}% to {low + bucket_size:.1f}%", count=counts[low])
        for low in sorted(counts)
    ]


def _mean(total: float, count: int) -> float:
    return total / count if count else 0.0


def compute_stats(trades: Iterable[Trade], starting_capital: float, seed_time: int = 0) -> BacktestStats:
    """
    Aggregates closed trades into performance statistics. Pure.

    Trades are walked in exit-time order. The equity curve starts with a
    point at `starting_capital` one millisecond before the first trade
    (`seed_time` when there is none).
    """
    closed = sorted((t for t in trades if t.status == "closed"), key=lambda t: t.close_time or 0)
    if not closed:
        return BacktestStats(
            net_profit=0.0, profit_factor=0.0, total_trades=0, winning_trades=0, losing_trades=0,
            win_rate=0.0, average_gain=0.0, average_loss=0.0, max_drawdown_percent=0.0,
            best_trade_pnl=0.0, worst_trade_pnl=0.0,
            equity_curve=(EquityPoint(time=seed_time, value=starting_capital),),
            pnl_distribution=(), average_duration="0s", average_win_duration="0s",
            average_loss_duration="0s", longest_win_streak=0, longest_loss_streak=0,
            average_rr=0.0, final_equity=starting_capital,
        )

    amounts = pd.Series([t.pnl_amount for t in closed], dtype=float)
    values = pd.concat([pd.Series([starting_capital], dtype=float), starting_capital + amounts.cumsum()],
                       ignore_index=True)
    peak = values.cummax()
    drawdown = ((peak - values) / peak * 100).where(peak > 0, 0.0)
    times = [closed[0].open_time - 1] + [t.close_time for t in closed]
    curve = tuple(EquityPoint(time=int(ts), value=float(v)) for ts, v in zip(times, values))

    wins = [t for t in closed if t.pnl_amount > 0]
    losses = [t for t in closed if t.pnl_amount <= 0]
    gross_profit = sum(t.pnl_amount for t in wins)
    gross_loss = abs(sum(t.pnl_amount for t in losses))
    if gross_loss > 0:
        profit_factor = gross_profit / gross_loss
    else:
        profit_factor = math.inf if gross_profit > 0 else 0.0

    longest_win = longest_loss = current_win = current_loss = 0
    for trade in closed:
        if trade.pnl_amount > 0:
            current_win += 1
            current_loss = 0
        else:
            current_loss += 1
            current_win = 0
        longest_win = max(longest_win, current_win)
        longest_loss = max(longest_loss, current_loss)

    rr_wins = [t.realized_rr for t in wins if t.realized_rr]
    return BacktestStats(
        net_profit=gross_profit - gross_loss,
        profit_factor=profit_factor,
        total_trades=len(closed),
        winning_trades=len(wins),
        losing_trades=len(losses),
        win_rate=len(wins) / len(closed) * 100,
        average_gain=_mean(gross_profit, len(wins)),
        average_loss=_mean(gross_loss, len(losses)),
        max_drawdown_percent=float(drawdown.max()),
        best_trade_pnl=float(amounts.max()),
        worst_trade_pnl=float(amounts.min()),
        equity_curve=curve,
        pnl_distribution=tuple(pnl_distribution(closed)),
        average_duration=format_duration(_mean(sum(t.duration_ms for t in closed), len(closed))),
        average_win_duration=format_duration(_mean(sum(t.duration_ms for t in wins), len(wins))),
        average_loss_duration=format_duration(_mean(sum(t.duration_ms for t in losses), len(losses))),
        longest_win_streak=longest_win,
        longest_loss_streak=longest_loss,
        average_rr=_mean(sum(rr_wins), len(rr_wins)),
        final_equity=float(values.iloc[-1]),
    )


def compute_portfolio_stats(trades: Iterable[Trade], starting_capital: float,
                            seed_time: int = 0) -> PortfolioStats:
    trades = list(trades)
    by_pair: Dict[str, List[Trade]] = {}
    for trade in trades:
        by_pair.setdefault(trade.pair, []).append(trade)

    performance = {}
    for pair, pair_trades in by_pair.items():
        stats = compute_stats(pair_trades, starting_capital)
        if stats.total_trades:
            performance[pair] = PairPerformance(
                net_profit=stats.net_profit,
                total_trades=stats.total_trades,
                win_rate=stats.win_rate,
                profit_factor=stats.profit_factor,
            )
    return PortfolioStats(global_stats=compute_stats(trades, starting_capital, seed_time), by_pair=performance)


def stats_to_dict(stats: BacktestStats) -> Dict:
    """JSON-friendly view (infinite profit factor becomes None)."""
    pf = stats.profit_factor
    return {
        "net_profit": stats.net_profit,
        "profit_factor": None if math.isinf(pf) else pf,
        "total_trades": stats.total_trades,
        "winning_trades": stats.winning_trades,
        "losing_trades": stats.losing_trades,
        "win_rate": stats.win_rate,
        "average_gain": stats.average_gain,
        "average_loss": stats.average_loss,
        "max_drawdown_percent": stats.max_drawdown_percent,
        "best_trade_pnl": stats.best_trade_pnl,
        "worst_trade_pnl": stats.worst_trade_pnl,
        "equity_curve": [{"time": p.time, "value": p.value} for p in stats.equity_curve],
        "pnl_distribution": [{"bucket": b.bucket, "count": b.count} for b in stats.pnl_distribution],
        "average_duration": stats.average_duration,
        "average_win_duration": stats.average_win_duration,
        "average_loss_duration": stats.average_loss_duration,
        "longest_win_streak": stats.longest_win_streak,
        "longest_loss_streak": stats.longest_loss_streak,
        "average_rr": stats.average_rr,
        "final_equity": stats.final_equity,
    }
