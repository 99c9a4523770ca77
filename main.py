import asyncio
import logging
import sys

import uvloop

from core.config import Settings
from core.http import BinanceClient
from core.logger import setup_logging
from engine.config import RiskSettings
from engine.events import EventBus
from engine.execution import TradeManager
from engine.live import LiveRunner
from engine.strategy import default_registry
from state.repo import SqlTradeStore

logger = logging.getLogger("TradingEngine")


async def main():
    """Live/paper loop: Binance kline stream -> strategy -> trade manager."""
    settings = Settings()
    setup_logging(settings.LOG_LEVEL)
    logger.info("🚀 Starting the trading engine...")

    risk = RiskSettings.from_settings(settings)
    if risk.confirm_trades:
        # nothing here can confirm a pending trade; the API process (/sessions/start) can
        logger.warning("⚠️ CONFIRM_TRADES is ignored by the headless runner, signals open directly")
        risk = risk.with_updates(confirm_trades=False)
    strategy = default_registry().get(settings.STRATEGY_ID)
    store = SqlTradeStore.from_settings(settings)
    manager = TradeManager(risk, events=EventBus(), persistence=store)
    logger.info(
        f"✅ {strategy.id} on {', '.join(settings.SYMBOLS)} ({settings.TIMEFRAME}, {settings.TRADING_MODE}), "
        f"capital {risk.total_capital:.2f} $"
    )

    async with BinanceClient.from_settings(settings) as client:
        runner = LiveRunner(
            client,
            strategy,
            manager,
            settings.SYMBOLS,
            timeframe=settings.TIMEFRAME,
            mode=settings.TRADING_MODE,
            history_limit=settings.HISTORY_LIMIT,
            ws_url=settings.BINANCE_WS_URL,
        )
        try:
            await runner.run()
        except asyncio.CancelledError:
            logger.info("🛑 Stop requested...")
        finally:
            runner.stop()
            stats = manager.stats(settings.TRADING_MODE)
            logger.info(f"💰 {stats.total_trades} trades closed, net={stats.net_profit:+.2f} $")
            store.close()
            logger.info("👋 Clean shutdown.")


if __name__ == "__main__":
    if sys.platform != "win32":
        uvloop.install()
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
