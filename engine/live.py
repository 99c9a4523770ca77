import logging
from typing import Any, Callable, Dict, List, Optional, Sequence

from tenacity import retry, retry_if_result, stop_after_attempt, wait_exponential

from core.ws import CandleCallback, KlineStream
from engine.backtest import normalize_candles
from engine.execution import TradeManager
from engine.models import Candle, Session, StrategyState, TradingMode
from engine.strategy import SettingsInput, Strategy, run_strategy
from interfaces.exchange import MarketDataSource

logger = logging.getLogger("LiveRunner")

StreamFactory = Callable[[List[str], str, CandleCallback], Any]


def _empty(candles: List[Candle]) -> bool:
    return not candles


class LiveRunner:
    """
    Paper/live loop: the kline stream feeds the trade manager on every update
    (intrabar exits) and the strategy on every closed candle.
    """

    def __init__(
        self,
        source: MarketDataSource,
        strategy: Strategy,
        manager: TradeManager,
        pairs: Sequence[str],
        timeframe: str = "1h",
        settings: SettingsInput = None,
        mode: TradingMode = "Paper",
        history_limit: int = 500,
        stream: Optional[KlineStream] = None,
        ws_url: str = "wss://stream.binance.com:9443/stream",
        stream_factory: Optional[StreamFactory] = None,
    ):
        self.source = source
        self.strategy = strategy
        self.settings = strategy.validate_settings(settings)
        self.manager = manager
        self.pairs = list(pairs)
        self.timeframe = timeframe
        self.mode = mode
        self.history_limit = history_limit
        self.buffers: Dict[str, List[Candle]] = {pair: [] for pair in self.pairs}
        self.states: Dict[str, StrategyState] = {}
        if stream is None:
            factory = stream_factory or (lambda pairs, tf, cb: KlineStream(pairs, tf, cb, base_url=ws_url))
            stream = factory(self.pairs, timeframe, self.on_candle)
        self.stream = stream

    # -------------------- Warm-up -------------------- #
    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=0.5),
           retry=retry_if_result(_empty), retry_error_callback=lambda state: state.outcome.result())
    async def _fetch_history(self, pair: str) -> List[Candle]:
        return await self.source.fetch_candles(pair, self.timeframe, self.history_limit)

    async def warmup(self) -> int:
        logger.info(f"🔥 Warm-up {len(self.pairs)} pairs ({self.timeframe})...")
        total = 0
        for pair in self.pairs:
            candles = await self._fetch_history(pair)
            if not candles:
                logger.warning(f"⚠️ No history for {pair}, strategy stays pending until enough candles stream in")
                continue
            # the last REST candle is still forming, the stream will replace it
            self.buffers[pair] = normalize_candles(candles)[-self.history_limit:]
            self.manager.update_price(pair, self.buffers[pair][-1].close)
            total += len(self.buffers[pair])
        logger.info(f"✅ Warm-up done: {total} candles")
        return total

    # -------------------- Stream -------------------- #
    def on_candle(self, pair: str, candle: Candle, closed: bool) -> None:
        if not self._upsert(pair, candle):
            return
        self.manager.on_candle(pair, candle, self.mode)
        if closed:
            self.evaluate(pair)

    def _upsert(self, pair: str, candle: Candle) -> bool:
        buffer = self.buffers.setdefault(pair, [])
        if buffer and candle.time < buffer[-1].time:
            return False
        if buffer and buffer[-1].time == candle.time:
            buffer[-1] = candle
        else:
            buffer.append(candle)
            if len(buffer) > self.history_limit:
                del buffer[: len(buffer) - self.history_limit]
        return True

    def evaluate(self, pair: str) -> StrategyState:
        has_open = self.manager.open_trade_for(pair, self.mode) is not None
        state = run_strategy(self.strategy, self.buffers.get(pair, []), self.settings,
                             self.states.get(pair), has_open_trade=has_open)
        self.states[pair] = state
        signal = state.signal
        if signal is not None and signal.is_entry and not has_open and (self.mode, pair) not in self.manager.pending:
            logger.info(f"⚡ SIGNAL {signal.side} {pair} @ {signal.entry_price}")
            self.manager.propose(pair, signal, self.mode, self.strategy.id, self.timeframe)
        return state

    # -------------------- Lifecycle -------------------- #
    async def start(self, migrate_open: bool = True) -> Session:
        """Warm-up, reload open trades and open the session. The stream is not started."""
        await self.warmup()
        self.manager.rehydrate(self.mode)
        return self.manager.start_session(self.mode, self.strategy.id, migrate_open=migrate_open)

    async def run(self) -> None:
        await self.start()
        try:
            await self.stream.run()
        finally:
            self.manager.stop_session(self.mode)

    def stop(self) -> None:
        self.stream.stop()
