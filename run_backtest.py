import argparse
import asyncio
import json
import logging
from typing import Dict, List

from tqdm import tqdm

from core.config import Settings
from core.errors import EngineError
from core.http import BinanceClient
from core.logger import setup_logging
from engine.backtest import print_report, run_backtest, run_portfolio_backtest
from engine.config import RiskSettings
from engine.models import Candle
from engine.strategy import default_registry

logger = logging.getLogger("Backtest")


async def load_history(settings: Settings, pairs: List[str], timeframe: str, period: str) -> Dict[str, List[Candle]]:
    history = {}
    async with BinanceClient.from_settings(settings) as client:
        for pair in pairs:
            pbar = tqdm(desc=f"📥 {pair} {timeframe}", unit="candles")

            def on_progress(count: int, oldest: int) -> None:
                pbar.update(count - pbar.n)

            history[pair] = await client.fetch_all_candles(pair, timeframe, period, on_progress)
            pbar.close()
    return history


def main() -> None:
    settings = Settings()
    parser = argparse.ArgumentParser(description="Replays a strategy over Binance history.")
    parser.add_argument("--pairs", nargs="+", default=settings.SYMBOLS[:1])
    parser.add_argument("--timeframe", default=settings.TIMEFRAME)
    parser.add_argument("--period", choices=["3m", "1y", "2y", "all"], default="3m")
    parser.add_argument("--strategy", default=settings.STRATEGY_ID)
    parser.add_argument("--settings", default=None, help='strategy settings as JSON, e.g. \'{"risk_reward_ratio": 2}\'')
    args = parser.parse_args()

    setup_logging(settings.LOG_LEVEL)
    risk = RiskSettings.from_settings(settings)
    strategy = default_registry().get(args.strategy)
    strategy_settings = strategy.validate_settings(json.loads(args.settings) if args.settings else None)

    print(f"🧪 Backtest {strategy.id} on {', '.join(args.pairs)} ({args.timeframe}, {args.period})...")
    history = asyncio.run(load_history(settings, args.pairs, args.timeframe, args.period))

    if len(history) == 1:
        pair, candles = next(iter(history.items()))
        record = run_backtest(strategy, candles, risk, strategy_settings, pair, args.timeframe)
        print_report(record)
        return

    portfolio, sessions = run_portfolio_backtest(strategy, history, risk, strategy_settings, args.timeframe)
    for record in sessions.values():
        print_report(record)
    g = portfolio.global_stats
    print(f"🌍 Portfolio: {g.total_trades} trades, net={g.net_profit:+.2f} $, win rate {g.win_rate:.1f}%, "
          f"max DD {g.max_drawdown_percent:.2f}%")
    for pair, perf in portfolio.by_pair.items():
        print(f"   {pair:<12} {perf.total_trades:>4} trades  net={perf.net_profit:+.2f} $  win {perf.win_rate:.1f}%")


if __name__ == "__main__":
    try:
        main()
    except EngineError as e:
        logger.error(f"❌ Backtest failed: {e}")
    except KeyboardInterrupt:
        pass
