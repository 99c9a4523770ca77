from __future__ import annotations
import asyncio
import inspect
import logging
import time
from typing import Awaitable, Callable, List, Optional, Tuple, Union

import orjson
import websockets
from pydantic import ValidationError

from core.http import map_timeframe, to_pair, to_symbol
from engine.models import Candle
from interfaces.exchange import KlineEvent

logger = logging.getLogger("KlineStream")

CandleCallback = Callable[[str, Candle, bool], Union[None, Awaitable[None]]]


def parse_kline_message(raw: Union[str, bytes]) -> Optional[Tuple[str, Candle, bool]]:
    """(pair, candle, closed) from a kline stream frame, or None if it is not one."""
    payload = orjson.loads(raw)
    # Combined streams wrap the event: {"stream": "...", "data": {...}}
    data = payload.get("data", payload) if isinstance(payload, dict) else None
    if not isinstance(data, dict) or "k" not in data:
        return None
    event = KlineEvent.model_validate(data)
    k = event.k
    candle = Candle(time=k.t, open=k.o, high=k.h, low=k.l, close=k.c, volume=k.v)
    return to_pair(event.s), candle, k.x


class KlineStream:
    """
    Live kline feed for several pairs over one combined Binance stream.
    Partial and final (closed) updates are pushed to `on_candle`.
    Includes a watchdog that resets a silent connection.
    """

    def __init__(
        self,
        pairs: List[str],
        timeframe: str,
        on_candle: CandleCallback,
        base_url: str = "wss://stream.binance.com:9443/stream",
        watchdog_timeout: float = 90.0,
    ):
        self.pairs = pairs
        self.timeframe = map_timeframe(timeframe)
        self.on_candle = on_candle
        self.base_url = base_url
        self.watchdog_timeout = watchdog_timeout
        self.running = False
        self.last_message_time = 0.0

    def build_url(self) -> str:
        # btcusdt@kline_1m/ethusdt@kline_1m
        streams = "/".join(f"{to_symbol(p).lower()}@kline_{self.timeframe}" for p in self.pairs)
        return f"{self.base_url}?streams={streams}"

    async def run(self) -> None:
        self.running = True
        url = self.build_url()
        logger.info(f"📡 Kline stream for {len(self.pairs)} pairs ({self.timeframe})...")
        backoff = 1

        while self.running:
            try:
                async with websockets.connect(url) as ws:
                    logger.info("✅ WebSocket connected.")
                    self.last_message_time = time.time()
                    backoff = 1
                    watchdog_task = asyncio.create_task(self._watchdog(ws))
                    try:
                        async for message in ws:
                            if not self.running:
                                break
                            self.last_message_time = time.time()
                            await self._process_message(message)
                    except websockets.ConnectionClosed:
                        logger.warning("⚠️ WebSocket closed. Reconnecting...")
                    finally:
                        watchdog_task.cancel()
            except (websockets.WebSocketException, asyncio.TimeoutError, OSError) as e:
                if not self.running:
                    break
                logger.warning(f"⚠️ WebSocket down ({e}). Retrying in {backoff}s...")
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, 30)
            except asyncio.CancelledError:
                logger.info("🛑 Kline stream cancelled.")
                break

        self.running = False
        logger.info("🛑 Kline stream stopped.")

    def stop(self) -> None:
        self.running = False

    async def _watchdog(self, ws) -> None:
        while self.running:
            await asyncio.sleep(1)
            silence = time.time() - self.last_message_time
            if silence > self.watchdog_timeout:
                logger.error(f"🚨 WATCHDOG: no data for {silence:.1f}s, resetting connection.")
                await ws.close()
                return

    async def _process_message(self, raw: Union[str, bytes]) -> None:
        try:
            parsed = parse_kline_message(raw)
        except orjson.JSONDecodeError:
            logger.error("❌ Unparseable WebSocket frame")
            return
        except ValidationError as e:
            logger.error(f"❌ Malformed kline event: {e}")
            return
        if parsed is None:
            return
        pair, candle, closed = parsed
        try:
            result = self.on_candle(pair, candle, closed)
            if inspect.isawaitable(result):
                await result
        except Exception:
            # logged, the feed keeps running
            logger.exception(f"❌ Candle handler failed for {pair}")
