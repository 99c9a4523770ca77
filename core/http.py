from __future__ import annotations
import asyncio, logging, time, httpx
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Optional, Set

from pydantic import ValidationError

from core.config import Settings
from core.errors import MarketDataError
from core.ratelimit import WeightBudget
from engine.models import Candle
from interfaces.exchange import ProgressCallback, Ticker24h

logger = logging.getLogger("MarketData")

DEFAULT_ENDPOINTS = [
    "https://api.binance.com",
    "https://api1.binance.com",
    "https://api2.binance.com",
    "https://api3.binance.com",
]
WEIGHT_HEADER = "x-mbx-used-weight-1m"
KLINES_WEIGHT = 1
TICKER_24H_WEIGHT = 40
PAGE_LIMIT = 1000
POLL_INTERVAL_S = 0.05

DAY_MS = 24 * 60 * 60 * 1000
PERIOD_DAYS = {"3m": 90, "1y": 365, "2y": 730}
ALL_HISTORY_START_MS = 1_609_459_200_000  # 2021-01-01T00:00:00Z
QUOTES = ("USDT", "USDC")
LEVERAGED_SUFFIXES = ("UP", "DOWN", "BULL", "BEAR", "3L", "3S", "5L", "5S")


def map_timeframe(timeframe: str) -> str:
    """'1H' -> '1h'. Anything unrecognised falls back to '1h'."""
    tf = (timeframe or "").strip()
    value, unit = tf[:-1], tf[-1:].lower()
    if value.isdigit() and unit in ("m", "h", "d", "w"):
        return f"{value}{unit}"
    return "1h"


def to_symbol(pair: str) -> str:
    return pair.replace("/", "").upper()


def to_pair(symbol: str) -> str:
    symbol = symbol.upper()
    for quote in QUOTES:
        if symbol.endswith(quote) and len(symbol) > len(quote):
            return f"{symbol[:-len(quote)]}/{quote}"
    return symbol


def period_start_ms(period: str, now_ms: int) -> int:
    if period == "all":
        return ALL_HISTORY_START_MS
    try:
        return now_ms - PERIOD_DAYS[period] * DAY_MS
    except KeyError:
        raise ValueError(f"Unknown history period: {period}") from None


def parse_kline_row(row: list) -> Candle:
    return Candle(
        time=int(row[0]),
        open=float(row[1]),
        high=float(row[2]),
        low=float(row[3]),
        close=float(row[4]),
        volume=float(row[5]),
    )


def is_tradable(symbol: str, quote: str) -> bool:
    if not symbol.endswith(quote) or len(symbol) <= len(quote):
        return False
    base = symbol[:-len(quote)]
    return not base.endswith(LEVERAGED_SUFFIXES)


@dataclass
class _Pending:
    path: str
    params: dict
    weight: int
    future: asyncio.Future = field(repr=False)


class BinanceClient:
    """
    Single gateway to the Binance REST surface.

    Every caller shares one FIFO queue. A single drain task admits requests
    from the head only while the rolling weight budget allows it, then fans
    each admitted request over the endpoint list until one answers.
    """

    def __init__(
        self,
        endpoints: Optional[list[str]] = None,
        weight_limit: int = 1200,
        window_s: float = 60.0,
        timeout: float = 8.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.endpoints = [e.rstrip("/") for e in (endpoints or DEFAULT_ENDPOINTS)]
        self.timeout = timeout
        self.budget = WeightBudget(limit=weight_limit, window_s=window_s, clock=clock)
        self.client = httpx.AsyncClient(timeout=timeout, transport=transport)
        self.peak_used = 0
        self._queue: Deque[_Pending] = deque()
        self._lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._drainer: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings: Settings, **kw) -> "BinanceClient":
        return cls(
            endpoints=settings.BINANCE_ENDPOINTS,
            weight_limit=settings.WEIGHT_LIMIT,
            window_s=settings.WEIGHT_WINDOW_S,
            timeout=settings.REQUEST_TIMEOUT_S,
            **kw,
        )

    async def __aenter__(self) -> "BinanceClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # -------------------- Shared queue -------------------- #
    async def request(self, path: str, params: Optional[dict] = None, weight: int = 1) -> Any:
        """Queues a weighted GET and waits for its JSON payload. Raises MarketDataError."""
        if weight > self.budget.limit:
            raise ValueError(f"weight {weight} exceeds the budget limit {self.budget.limit}")
        pending = _Pending(path=path, params=dict(params or {}), weight=weight,
                           future=asyncio.get_running_loop().create_future())
        async with self._lock:
            self._queue.append(pending)
            if self._drainer is None or self._drainer.done():
                self._drainer = asyncio.create_task(self._drain(), name="binance-drain")
            self._wake.set()
        return await pending.future

    async def _drain(self) -> None:
        while True:
            async with self._lock:
                while self._queue:
                    head = self._queue[0]
                    if head.future.done():
                        # caller cancelled before admission: no weight spent
                        self._queue.popleft()
                        continue
                    if not self.budget.fits(head.weight):
                        break
                    self._queue.popleft()
                    self.budget.consume(head.weight)
                    self.peak_used = max(self.peak_used, self.budget.used)
                    task = asyncio.create_task(self._execute(head))
                    self._inflight.add(task)
                    task.add_done_callback(self._inflight.discard)
                if not self._queue:
                    self._drainer = None
                    return
                delay = max(self.budget.seconds_until_reset(), POLL_INTERVAL_S)
                self._wake.clear()
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

    async def _execute(self, req: _Pending) -> None:
        last_error: Optional[str] = None
        for base in self.endpoints:
            if req.future.done():
                break
            try:
                resp = await self.client.get(f"{base}{req.path}", params=req.params, timeout=self.timeout)
            except httpx.HTTPError as e:
                last_error = str(e) or e.__class__.__name__
                logger.warning(f"⚠️ {base} unreachable for {req.path} ({last_error}), failing over")
                continue
            await self._observe(resp)
            if resp.is_success:
                try:
                    payload = resp.json()
                except ValueError as e:
                    last_error = f"invalid JSON: {e}"
                    continue
                if not req.future.done():
                    req.future.set_result(payload)
                return
            last_error = f"HTTP {resp.status_code}"
            logger.warning(f"⚠️ {base}{req.path} answered {resp.status_code}, failing over")

        async with self._lock:
            self.budget.refund(req.weight)
            self._wake.set()
        if not req.future.done():
            logger.error(f"❌ All endpoints failed for {req.path}: {last_error}")
            req.future.set_exception(MarketDataError(req.path, last_error))

    async def _observe(self, resp: httpx.Response) -> None:
        raw = resp.headers.get(WEIGHT_HEADER)
        if raw is None:
            return
        try:
            used = int(raw)
        except ValueError:
            return
        async with self._lock:
            self.budget.observe(used)
            self._wake.set()

    # -------------------- Endpoints -------------------- #
    async def _klines(self, pair: str, timeframe: str, limit: int, end_time: Optional[int]) -> list[Candle]:
        params = {"symbol": to_symbol(pair), "interval": map_timeframe(timeframe), "limit": limit}
        if end_time is not None:
            params["endTime"] = end_time
        payload = await self.request("/api/v3/klines", params, weight=KLINES_WEIGHT)
        if not isinstance(payload, list):
            # e.g. {"code": -1121, "msg": "Invalid symbol."}
            logger.warning(f"⚠️ Unexpected klines payload for {pair}: {payload}")
            return []
        candles = []
        for row in payload:
            try:
                candles.append(parse_kline_row(row))
            except (TypeError, ValueError, IndexError):
                logger.warning(f"⚠️ Malformed kline row ignored for {pair}: {row}")
        return candles

    async def fetch_candles(self, pair: str, timeframe: str, limit: int = PAGE_LIMIT,
                            end_time: Optional[int] = None) -> list[Candle]:
        """One page of candles, oldest first. Empty on any failure."""
        try:
            return await self._klines(pair, timeframe, limit, end_time)
        except MarketDataError as e:
            logger.error(f"❌ Klines {pair} {timeframe}: {e}")
            return []

    async def fetch_all_candles(self, pair: str, timeframe: str, period: str = "3m",
                                on_progress: Optional[ProgressCallback] = None,
                                now_ms: Optional[int] = None) -> list[Candle]:
        """Pages backward from now until `period` is covered. Empty on any failure."""
        now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
        start_ms = period_start_ms(period, now_ms)
        by_time: dict[int, Candle] = {}
        end_time: Optional[int] = None
        try:
            while True:
                page = await self._klines(pair, timeframe, PAGE_LIMIT, end_time)
                if not page:
                    break
                for candle in page:
                    if candle.time >= start_ms:
                        by_time[candle.time] = candle
                oldest = page[0].time
                if on_progress is not None:
                    on_progress(len(by_time), oldest)
                if oldest <= start_ms or len(page) < PAGE_LIMIT:
                    break
                end_time = oldest - 1
        except MarketDataError as e:
            logger.error(f"❌ History fetch aborted for {pair} {timeframe}: {e}")
            return []
        candles = sorted(by_time.values(), key=lambda c: c.time)
        logger.info(f"✅ {len(candles)} candles loaded for {pair} {timeframe} ({period})")
        return candles

    async def fetch_24h_tickers(self) -> list[Ticker24h]:
        try:
            payload = await self.request("/api/v3/ticker/24hr", weight=TICKER_24H_WEIGHT)
        except MarketDataError as e:
            logger.error(f"❌ 24h ticker snapshot: {e}")
            return []
        if not isinstance(payload, list):
            return []
        tickers = []
        for row in payload:
            try:
                tickers.append(Ticker24h.model_validate(row))
            except ValidationError:
                continue
        return tickers

    async def scan_pairs(self, quote: str = "USDT", min_volume: float = 0.0) -> list[Ticker24h]:
        """Spot pairs quoted in `quote`, leveraged tokens excluded, by volume desc."""
        tickers = await self.fetch_24h_tickers()
        selected = [t for t in tickers if is_tradable(t.symbol, quote) and t.quote_volume > min_volume]
        return sorted(selected, key=lambda t: t.quote_volume, reverse=True)

    async def close(self) -> None:
        if self._drainer is not None:
            self._drainer.cancel()
        for task in list(self._inflight):
            task.cancel()
        await self.client.aclose()
