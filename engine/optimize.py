import itertools
import logging
import math
import threading
import time
from dataclasses import dataclass
from multiprocessing import Pool, cpu_count
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import pandas as pd
from pydantic import BaseModel
from tabulate import tabulate

from core.errors import ConfigError, OptimizationCancelled
from engine.backtest import normalize_candles, run_backtest
from engine.config import RiskSettings
from engine.models import BacktestStats, Candle
from engine.strategy import SettingsInput, Strategy

logger = logging.getLogger("Optimizer")

ProgressHook = Callable[[int, int], None]


@dataclass(frozen=True)
class ParameterRange:
    """Inclusive sweep of one numeric setting."""
    id: str
    start: float
    end: float
    step: float

    def values(self) -> List[float]:
        if self.step <= 0:
            raise ConfigError(f"{self.id}: step must be > 0")
        if self.end < self.start:
            raise ConfigError(f"{self.id}: end must be >= start")
        count = int(math.floor((self.end - self.start) / self.step + 1e-9)) + 1
        return [round(self.start + k * self.step, 10) for k in range(count)]


@dataclass(frozen=True)
class OptimizationResult:
    settings: Dict[str, Any]
    stats: BacktestStats


def expand_grid(strategy: Strategy, base_settings: SettingsInput,
                ranges: Sequence[ParameterRange]) -> List[BaseModel]:
    """Cartesian product of the ranges over the base settings; invalid combinations are dropped."""
    base = strategy.validate_settings(base_settings).model_dump()
    unknown = [r.id for r in ranges if r.id not in base]
    if unknown:
        raise ConfigError(f"Unknown settings for {strategy.id}: {', '.join(unknown)}")

    ids = [r.id for r in ranges]
    combos, skipped = [], 0
    for values in itertools.product(*(r.values() for r in ranges)):
        try:
            combos.append(strategy.validate_settings({**base, **dict(zip(ids, values))}))
        except ConfigError:
            skipped += 1
    if skipped:
        logger.info(f"🧹 {skipped} invalid combinations skipped")
    return combos


# Per-process replay context, set once by the pool initializer.
_WORKER: Dict[str, Any] = {}


def _init_worker(strategy: Strategy, candles: Tuple[Candle, ...], risk: RiskSettings,
                 pair: str, timeframe: str, warmup_index: int) -> None:
    _WORKER.update(strategy=strategy, candles=candles, risk=risk, pair=pair,
                   timeframe=timeframe, warmup_index=warmup_index)


def _run_combination(settings: Dict[str, Any]) -> Tuple[Dict[str, Any], BacktestStats]:
    record = run_backtest(_WORKER["strategy"], _WORKER["candles"], _WORKER["risk"], settings,
                          _WORKER["pair"], _WORKER["timeframe"], _WORKER["warmup_index"])
    return settings, record.stats


class GridOptimizer:
    """
    Runs the replay driver once per settings combination, capital reset each time.
    Combinations are independent and spread over a process pool bounded by
    the CPU count. `cancel()` stops the sweep between two combinations; the
    partial results of a cancelled sweep are dropped.
    """

    def __init__(
        self,
        strategy: Strategy,
        candles: Sequence[Candle],
        risk: RiskSettings,
        pair: str = "BTC/USDT",
        timeframe: str = "1h",
        warmup_index: int = 1,
        workers: Optional[int] = None,
    ):
        self.strategy = strategy
        self.candles = tuple(normalize_candles(candles))
        self.risk = risk
        self.pair = pair
        self.timeframe = timeframe
        self.warmup_index = warmup_index
        self.workers = max(1, min(workers or cpu_count(), cpu_count()))
        self.results: List[OptimizationResult] = []
        self.progress: Tuple[int, int] = (0, 0)
        self._cancel = threading.Event()

    def cancel(self) -> None:
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def run(self, ranges: Sequence[ParameterRange], base_settings: SettingsInput = None,
            on_progress: Optional[ProgressHook] = None) -> List[OptimizationResult]:
        self._cancel.clear()
        combos = [c.model_dump() for c in expand_grid(self.strategy, base_settings, ranges)]
        total = len(combos)
        self.progress = (0, total)
        if not total:
            logger.warning("⚠️ No valid combination to test.")
            self.results = []
            return []

        logger.info(f"🚀 Grid search: {total} combinations on {self.workers} workers...")
        started = time.time()
        results: List[OptimizationResult] = []
        if self.workers == 1:
            for settings in combos:
                self._check_cancel(len(results), total)
                record = run_backtest(self.strategy, self.candles, self.risk, settings,
                                      self.pair, self.timeframe, self.warmup_index)
                self._collect(results, settings, record.stats, total, on_progress)
        else:
            initargs = (self.strategy, self.candles, self.risk, self.pair, self.timeframe, self.warmup_index)
            # leaving the block terminates the pool, pending combinations included
            with Pool(processes=self.workers, initializer=_init_worker, initargs=initargs) as pool:
                for settings, stats in pool.imap(_run_combination, combos):
                    self._check_cancel(len(results), total)
                    self._collect(results, settings, stats, total, on_progress)

        self._check_cancel(len(results), total)
        self.results = results
        logger.info(f"✅ {total} combinations tested in {time.time() - started:.2f}s")
        return results

    def _collect(self, results: List[OptimizationResult], settings: Dict[str, Any], stats: BacktestStats,
                 total: int, on_progress: Optional[ProgressHook]) -> None:
        results.append(OptimizationResult(settings=settings, stats=stats))
        self.progress = (len(results), total)
        if on_progress is not None:
            on_progress(len(results), total)

    def _check_cancel(self, done: int, total: int) -> None:
        if self._cancel.is_set():
            logger.warning(f"🛑 Optimization cancelled after {done}/{total} combinations, results discarded")
            raise OptimizationCancelled(f"cancelled after {done}/{total} combinations")


def rank_results(results: Sequence[OptimizationResult], by: str = "net_profit",
                 descending: bool = True) -> List[OptimizationResult]:
    if results and not hasattr(results[0].stats, by):
        raise ConfigError(f"Unknown ranking metric: {by}")
    return sorted(results, key=lambda r: getattr(r.stats, by), reverse=descending)


def results_frame(results: Sequence[OptimizationResult]) -> pd.DataFrame:
    rows = []
    for r in results:
        rows.append({
            **r.settings,
            "Net profit": r.stats.net_profit,
            "PF": r.stats.profit_factor,
            "Win %": r.stats.win_rate,
            "Max DD %": r.stats.max_drawdown_percent,
            "Trades": r.stats.total_trades,
        })
    return pd.DataFrame(rows)


def format_results(results: Sequence[OptimizationResult], top: int = 10) -> str:
    df = results_frame(results).head(top)
    if df.empty:
        return "No results."
    return tabulate(df, headers="keys", tablefmt="pretty", showindex=False, floatfmt=".2f")
