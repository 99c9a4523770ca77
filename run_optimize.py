import argparse
import asyncio
import logging
import time

from tqdm import tqdm

from core.config import Settings
from core.errors import EngineError
from core.http import BinanceClient
from core.logger import setup_logging
from engine.config import RiskSettings
from engine.optimize import GridOptimizer, ParameterRange, format_results, rank_results
from engine.strategy import default_registry

logger = logging.getLogger("Optimizer")


def parse_range(text: str) -> ParameterRange:
    """'risk_reward_ratio:1:3:0.5' -> ParameterRange."""
    parts = text.split(":")
    if len(parts) != 4:
        raise argparse.ArgumentTypeError(f"expected id:start:end:step, got {text!r}")
    try:
        return ParameterRange(parts[0], float(parts[1]), float(parts[2]), float(parts[3]))
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


async def load_candles(settings: Settings, pair: str, timeframe: str, period: str):
    async with BinanceClient.from_settings(settings) as client:
        return await client.fetch_all_candles(pair, timeframe, period)


def main() -> None:
    settings = Settings()
    parser = argparse.ArgumentParser(description="Grid search over strategy settings.")
    parser.add_argument("--strategy", default=settings.STRATEGY_ID)
    parser.add_argument("--pair", default=settings.SYMBOLS[0])
    parser.add_argument("--timeframe", default=settings.TIMEFRAME)
    parser.add_argument("--period", choices=["3m", "1y", "2y", "all"], default="3m")
    parser.add_argument("--range", dest="ranges", type=parse_range, action="append", required=True,
                        help="id:start:end:step, repeatable")
    parser.add_argument("--workers", type=int, default=None)
    parser.add_argument("--by", default="net_profit", help="ranking metric")
    parser.add_argument("--top", type=int, default=10)
    args = parser.parse_args()

    setup_logging("WARNING")
    strategy = default_registry().get(args.strategy)

    print("\n" + "=" * 60)
    print(f"🔬 GRID SEARCH {strategy.id} {args.pair} {args.timeframe}")
    print("=" * 60 + "\n")

    candles = asyncio.run(load_candles(settings, args.pair, args.timeframe, args.period))
    if not candles:
        print("❌ No candles loaded.")
        return
    print(f"✅ {len(candles)} candles loaded.")

    optimizer = GridOptimizer(strategy, candles, RiskSettings.from_settings(settings), pair=args.pair,
                              timeframe=args.timeframe, workers=args.workers)
    pbar = tqdm(desc="🚀 Combinations", unit="run")

    def on_progress(done: int, total: int) -> None:
        pbar.total = total
        pbar.update(done - pbar.n)

    started = time.time()
    try:
        results = optimizer.run(args.ranges, on_progress=on_progress)
    except KeyboardInterrupt:
        optimizer.cancel()
        print("\n🛑 Cancelled.")
        return
    finally:
        pbar.close()

    print(f"\n✅ Done in {time.time() - started:.2f}s\n")
    print(f"🏆 TOP {args.top} by {args.by}:")
    print(format_results(rank_results(results, by=args.by), top=args.top))


if __name__ == "__main__":
    try:
        main()
    except EngineError as e:
        logger.error(f"❌ Optimization failed: {e}")
