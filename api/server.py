import asyncio
import logging
import threading
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any, Dict, List, Literal, Optional

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from api.errors import ApiError, Conflict, Unprocessable, from_engine_error
from core.config import Settings
from core.errors import EngineError, OptimizationCancelled
from core.http import BinanceClient
from core.logger import EventBroadcaster
from engine.analytics import stats_to_dict
from engine.backtest import Backtester, PlaybackState
from engine.config import RiskSettings
from engine.events import EventBus, EventRecorder
from engine.execution import TradeManager
from engine.live import LiveRunner, StreamFactory
from engine.models import BacktestSession, Candle, Signal, Trade, TradingMode
from engine.optimize import GridOptimizer, ParameterRange, rank_results
from engine.risk_management import MAX_SIZE_MULTIPLIER, MIN_SIZE_MULTIPLIER
from engine.strategy import SettingsBook, StrategyRegistry, default_registry
from interfaces.exchange import MarketDataSource
from interfaces.persistence import NullPersistence, PersistenceHooks

logger = logging.getLogger("API")

Mode = Literal["Live", "Paper", "Backtest"]


# -------------------- Requests -------------------- #
class CandleIn(BaseModel):
    time: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


class BacktestLoadRequest(BaseModel):
    strategy_id: str
    pair: str = "BTC/USDT"
    timeframe: str = "1h"
    settings: Optional[Dict[str, Any]] = None
    candles: Optional[List[CandleIn]] = None
    period: Literal["3m", "1y", "2y", "all"] = "3m"
    warmup_index: int = Field(1, ge=1)
    risk: Optional[Dict[str, Any]] = None


class PlayRequest(BaseModel):
    interval_ms: int = Field(250, ge=0)


class SeekRequest(BaseModel):
    index: int = Field(..., ge=0)


class RangeIn(BaseModel):
    id: str
    start: float
    end: float
    step: float


class OptimizeRequest(BaseModel):
    strategy_id: str
    pair: str = "BTC/USDT"
    timeframe: str = "1h"
    candles: List[CandleIn]
    ranges: List[RangeIn]
    settings: Optional[Dict[str, Any]] = None
    warmup_index: int = Field(1, ge=1)
    workers: Optional[int] = Field(None, ge=1)


class OpenTradeRequest(BaseModel):
    pair: str
    mode: Mode = "Paper"
    direction: Literal["LONG", "SHORT"] = "LONG"
    entry_price: float = Field(..., gt=0)
    stop_loss: float = Field(..., gt=0)
    take_profit: float = Field(..., gt=0)
    time: Optional[int] = None
    strategy_id: str = "manual"
    timeframe: str = "1h"


class CloseTradeRequest(BaseModel):
    price: Optional[float] = Field(None, gt=0)


class PendingRequest(BaseModel):
    pair: str
    mode: Mode = "Paper"
    size_multiplier: float = Field(1.0, ge=MIN_SIZE_MULTIPLIER, le=MAX_SIZE_MULTIPLIER)


class SessionStartRequest(BaseModel):
    mode: Mode = "Paper"
    strategy_id: str
    migrate_open: bool = False
    # Paper/Live: stream these pairs into the shared trade manager
    stream: bool = True
    pairs: Optional[List[str]] = None
    timeframe: Optional[str] = None
    settings: Optional[Dict[str, Any]] = None


class SessionStopRequest(BaseModel):
    mode: Mode = "Paper"


# -------------------- Engine holder -------------------- #
class EngineState:
    """Everything the command surface drives, one instance per app."""

    def __init__(self, settings: Settings, registry: StrategyRegistry,
                 persistence: Optional[PersistenceHooks] = None,
                 market_data: Optional[MarketDataSource] = None,
                 stream_factory: Optional[StreamFactory] = None):
        self.settings = settings
        self.registry = registry
        self.book = SettingsBook(registry)
        self.risk = RiskSettings.from_settings(settings)
        self.persistence = persistence or NullPersistence()
        self.events = EventBus()
        self.recorder = EventRecorder()
        self.broadcaster = EventBroadcaster()
        self.events.subscribe(self.recorder)
        self.events.subscribe(self.broadcaster.publish)
        self.manager = TradeManager(self.risk, events=self.events, persistence=self.persistence)
        self.backtester: Optional[Backtester] = None
        self.playback_task: Optional[asyncio.Task] = None
        self.optimizer: Optional[GridOptimizer] = None
        self.optimize_thread: Optional[threading.Thread] = None
        self.optimization: Dict[str, Any] = {"status": "idle", "error": None}
        self.market_data = market_data
        self.stream_factory = stream_factory
        self.client: Optional[BinanceClient] = None
        self.runners: Dict[TradingMode, LiveRunner] = {}
        self.runner_tasks: Dict[TradingMode, asyncio.Task] = {}

    def market_source(self) -> MarketDataSource:
        if self.market_data is None:
            self.client = BinanceClient.from_settings(self.settings)
            self.market_data = self.client
        return self.market_data

    async def stop_runner(self, mode: TradingMode) -> None:
        runner = self.runners.pop(mode, None)
        task = self.runner_tasks.pop(mode, None)
        if runner is None:
            return
        runner.stop()
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        logger.info(f"🛑 {mode} runner stopped")

    async def shutdown(self) -> None:
        for mode in list(self.runners):
            await self.stop_runner(mode)
        if self.playback_task is not None:
            self.playback_task.cancel()
        if self.client is not None:
            await self.client.close()


def trade_view(trade: Trade) -> Dict[str, Any]:
    return asdict(trade)


def record_view(record: BacktestSession) -> Dict[str, Any]:
    return {
        "id": record.id,
        "created_at": record.created_at,
        "pair": record.pair,
        "timeframe": record.timeframe,
        "strategy_id": record.strategy_id,
        "settings": record.settings,
        "starting_capital": record.starting_capital,
        "candle_count": record.candle_count,
        "stats": stats_to_dict(record.stats),
        "trades": [trade_view(t) for t in record.trades],
    }


def backtest_view(bt: Optional[Backtester]) -> Dict[str, Any]:
    if bt is None:
        return {"state": PlaybackState.IDLE.value, "loaded": False}
    open_trade = bt.manager.open_trade_for(bt.pair, "Backtest")
    steps = bt.strategy_state.steps if bt.strategy_state is not None else bt.strategy.initial_steps()
    return {
        "state": bt.state.value,
        "loaded": bool(bt.candles),
        "strategy_id": bt.strategy.id,
        "pair": bt.pair,
        "timeframe": bt.timeframe,
        "index": bt.index,
        "total": len(bt.candles),
        "progress": bt.progress,
        "equity": bt.equity,
        "error": bt.error,
        "steps": [asdict(s) for s in steps],
        "open_trade": trade_view(open_trade) if open_trade else None,
        "closed_trades": [trade_view(t) for t in bt.closed_trades],
        "result": record_view(bt.result) if bt.result is not None else None,
    }


def _candles(rows: List[CandleIn]) -> List[Candle]:
    return [Candle(**row.model_dump()) for row in rows]


async def _playback(bt: Backtester, interval_s: float) -> None:
    """Playback clock: one candle per tick while playing."""
    try:
        while bt.state == PlaybackState.PLAYING:
            bt.step()
            await asyncio.sleep(interval_s)
    except EngineError as e:
        logger.error(f"❌ Playback stopped: {e}")


async def _live(runner: LiveRunner) -> None:
    """Feeds the shared trade manager until the runner's stream stops."""
    try:
        await runner.stream.run()
    except EngineError as e:
        logger.error(f"❌ {runner.mode} stream stopped: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await app.state.engine.shutdown()


def create_app(settings: Optional[Settings] = None, registry: Optional[StrategyRegistry] = None,
               persistence: Optional[PersistenceHooks] = None,
               market_data: Optional[MarketDataSource] = None,
               stream_factory: Optional[StreamFactory] = None) -> FastAPI:
    app = FastAPI(title="Trade Simulation & Risk Engine", version="0.1.0", lifespan=lifespan)
    app.state.engine = EngineState(settings or Settings(), registry or default_registry(), persistence,
                                   market_data=market_data, stream_factory=stream_factory)

    def engine() -> EngineState:
        return app.state.engine

    def backtester() -> Backtester:
        bt = engine().backtester
        if bt is None:
            raise Conflict("No backtest loaded", "InvalidTransition")
        return bt

    # -------------------- Errors -------------------- #
    @app.exception_handler(ApiError)
    async def api_error_handler(request: Request, exc: ApiError):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

    @app.exception_handler(EngineError)
    async def engine_error_handler(request: Request, exc: EngineError):
        err = from_engine_error(exc)
        logger.warning(f"⚠️ {request.method} {request.url.path}: {err.message}")
        return JSONResponse(status_code=err.status_code, content={"error": err.detail})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = [{"loc": list(e.get("loc", ())), "msg": e.get("msg", "")} for e in exc.errors()]
        err = Unprocessable("Invalid request", "ValidationError", {"errors": errors})
        return JSONResponse(status_code=err.status_code, content={"error": err.detail})

    # -------------------- Meta -------------------- #
    @app.get("/health")
    def health() -> dict:
        return {"status": "ok", "strategies": len(engine().registry)}

    @app.get("/strategies")
    def list_strategies() -> List[dict]:
        return [s.describe() for s in engine().registry.list()]

    @app.put("/strategies/{strategy_id}/settings")
    def update_strategy_settings(strategy_id: str, values: Dict[str, Any], timeframe: str = "1h") -> dict:
        settings = engine().book.set(strategy_id, timeframe, values)
        return {"strategy_id": strategy_id, "timeframe": timeframe, "settings": settings.model_dump()}

    # -------------------- Backtest -------------------- #
    @app.post("/backtest/load")
    async def backtest_load(req: BacktestLoadRequest) -> dict:
        eng = engine()
        strategy = eng.registry.get(req.strategy_id)
        if eng.playback_task is not None:
            eng.playback_task.cancel()
        try:
            risk = eng.risk.with_updates(**req.risk) if req.risk else eng.risk
        except TypeError as e:
            raise Unprocessable(f"Unknown risk setting: {e}", "ConfigError") from e
        settings = req.settings if req.settings is not None else eng.book.get(req.strategy_id, req.timeframe)
        bt = Backtester(strategy, risk, settings, pair=req.pair, timeframe=req.timeframe,
                        warmup_index=req.warmup_index, events=eng.events, persistence=eng.persistence)
        eng.backtester = bt
        if req.candles is not None:
            bt.load(_candles(req.candles))
        else:
            async with BinanceClient.from_settings(eng.settings) as client:
                await bt.load_from(client, req.period)
        return backtest_view(bt)

    @app.post("/backtest/play")
    async def backtest_play(req: Optional[PlayRequest] = None) -> dict:
        eng = engine()
        bt = backtester()
        bt.play()
        if eng.playback_task is not None:
            eng.playback_task.cancel()
        interval = (req or PlayRequest()).interval_ms / 1000
        eng.playback_task = asyncio.create_task(_playback(bt, interval))
        return backtest_view(bt)

    # Replay commands run on the event loop, the same thread as the playback clock.
    def stop_playback() -> None:
        eng = engine()
        if eng.playback_task is not None:
            eng.playback_task.cancel()
            eng.playback_task = None

    @app.post("/backtest/pause")
    async def backtest_pause() -> dict:
        bt = backtester()
        bt.pause()
        stop_playback()
        return backtest_view(bt)

    @app.post("/backtest/step")
    async def backtest_step() -> dict:
        bt = backtester()
        bt.step()
        return backtest_view(bt)

    @app.post("/backtest/seek")
    async def backtest_seek(req: SeekRequest) -> dict:
        bt = backtester()
        bt.seek(req.index)
        return backtest_view(bt)

    @app.post("/backtest/run")
    async def backtest_run() -> dict:
        bt = backtester()
        stop_playback()
        bt.run_to_completion()
        return backtest_view(bt)

    @app.get("/backtest/state")
    def backtest_state() -> dict:
        return backtest_view(engine().backtester)

    # -------------------- Optimization -------------------- #
    @app.post("/optimize/start")
    def optimize_start(req: OptimizeRequest) -> dict:
        eng = engine()
        if eng.optimize_thread is not None and eng.optimize_thread.is_alive():
            raise Conflict("An optimization is already running", "InvalidTransition")
        strategy = eng.registry.get(req.strategy_id)
        ranges = [ParameterRange(**r.model_dump()) for r in req.ranges]
        optimizer = GridOptimizer(strategy, _candles(req.candles), eng.risk, pair=req.pair,
                                  timeframe=req.timeframe, warmup_index=req.warmup_index, workers=req.workers)
        # fail fast on bad ranges, before the worker thread starts
        for r in ranges:
            r.values()
        eng.optimizer = optimizer
        eng.optimization = {"status": "running", "error": None}

        def work():
            try:
                optimizer.run(ranges, req.settings)
                eng.optimization["status"] = "done"
            except OptimizationCancelled:
                eng.optimization["status"] = "cancelled"
            except EngineError as e:
                logger.error(f"❌ Optimization failed: {e}")
                eng.optimization.update(status="failed", error=str(e))

        eng.optimize_thread = threading.Thread(target=work, name="grid-optimizer", daemon=True)
        eng.optimize_thread.start()
        return {"status": "running"}

    @app.post("/optimize/stop")
    def optimize_stop() -> dict:
        eng = engine()
        if eng.optimizer is None or eng.optimize_thread is None or not eng.optimize_thread.is_alive():
            raise Conflict("No optimization running", "InvalidTransition")
        eng.optimizer.cancel()
        return {"status": "cancelling"}

    @app.get("/optimize/results")
    def optimize_results(by: str = "net_profit", top: int = 20) -> dict:
        eng = engine()
        optimizer = eng.optimizer
        done, total = optimizer.progress if optimizer is not None else (0, 0)
        results = []
        if optimizer is not None and eng.optimization["status"] == "done":
            results = [
                {"settings": r.settings, "stats": stats_to_dict(r.stats)}
                for r in rank_results(optimizer.results, by=by)[:top]
            ]
        return {**eng.optimization, "progress": {"done": done, "total": total}, "results": results}

    # -------------------- Trades -------------------- #
    @app.get("/trades")
    def list_trades(mode: Mode = "Paper") -> dict:
        manager = engine().manager
        return {
            "open": [trade_view(t) for t in manager.open_trades[mode].values()],
            "closed": [trade_view(t) for t in manager.closed_trades[mode]],
            "pending": [{"pair": p.pair, "signal": asdict(p.signal)} for p in manager.pending.values() if p.mode == mode],
        }

    # Trade commands share the event loop with the live streams feeding the manager.
    @app.post("/trades/open")
    async def open_trade(req: OpenTradeRequest) -> dict:
        manager = engine().manager
        signal = Signal(
            type="entry" if req.direction == "LONG" else "short-entry",
            time=req.time if req.time is not None else manager.clock(),
            direction=req.direction,
            entry_price=req.entry_price,
            stop_loss=req.stop_loss,
            take_profit=req.take_profit,
        )
        # the client price only seeds a pair with no market price yet
        result = manager.open_trade(req.pair, signal, req.mode, req.strategy_id, req.timeframe)
        return {
            "opened": result.opened,
            "reason": result.reason.value if result.reason else None,
            "trade": trade_view(result.trade) if result.trade else None,
        }

    @app.post("/trades/{trade_id:path}/close")
    async def close_trade(trade_id: str, req: Optional[CloseTradeRequest] = None) -> dict:
        manager = engine().manager
        trade = manager.find_trade(trade_id)
        if trade is not None and req is not None and req.price is not None:
            manager.update_price(trade.pair, req.price)
        closed = manager.manual_close(trade_id)
        if closed is None:
            raise Conflict(f"Trade {trade_id} is already closed", "InvariantViolation")
        return trade_view(closed)

    @app.post("/trades/confirm")
    async def confirm_trade(req: PendingRequest) -> dict:
        result = engine().manager.confirm_pending(req.pair, req.mode, size_multiplier=req.size_multiplier)
        return {
            "opened": result.opened,
            "reason": result.reason.value if result.reason else None,
            "trade": trade_view(result.trade) if result.trade else None,
        }

    @app.post("/trades/reject")
    async def reject_trade(req: PendingRequest) -> dict:
        return {"rejected": engine().manager.reject_pending(req.pair, req.mode)}

    # -------------------- Sessions & stats -------------------- #
    @app.post("/sessions/start")
    async def start_session(req: SessionStartRequest) -> dict:
        eng = engine()
        strategy = eng.registry.get(req.strategy_id)
        if req.mode == "Backtest" or not req.stream:
            session = eng.manager.start_session(req.mode, req.strategy_id, migrate_open=req.migrate_open)
        else:
            if req.mode in eng.runners:
                raise Conflict(f"A {req.mode} stream is already running", "InvalidTransition")
            timeframe = req.timeframe or eng.settings.TIMEFRAME
            settings = req.settings if req.settings is not None else eng.book.get(req.strategy_id, timeframe)
            runner = LiveRunner(
                eng.market_source(),
                strategy,
                eng.manager,
                req.pairs or eng.settings.SYMBOLS,
                timeframe=timeframe,
                settings=settings,
                mode=req.mode,
                history_limit=eng.settings.HISTORY_LIMIT,
                ws_url=eng.settings.BINANCE_WS_URL,
                stream_factory=eng.stream_factory,
            )
            session = await runner.start(migrate_open=req.migrate_open)
            eng.runners[req.mode] = runner
            eng.runner_tasks[req.mode] = asyncio.create_task(_live(runner))
            logger.info(f"📡 {req.mode} stream started: {strategy.id} on {', '.join(runner.pairs)} ({timeframe})")
        return {"id": session.id, "mode": session.mode, "strategy_id": session.strategy_id,
                "start_time": session.start_time}

    @app.post("/sessions/stop")
    async def stop_session(req: SessionStopRequest) -> dict:
        eng = engine()
        await eng.stop_runner(req.mode)
        session = eng.manager.stop_session(req.mode)
        if session is None:
            raise Conflict(f"No active {req.mode} session", "InvalidTransition")
        return {"id": session.id, "mode": session.mode, "start_time": session.start_time,
                "end_time": session.end_time, "stats": stats_to_dict(session.stats)}

    @app.get("/stats")
    def stats(mode: Mode = "Paper") -> dict:
        manager = engine().manager
        return {
            "mode": mode,
            "equity": manager.equity(mode),
            "available_capital": manager.available_capital(mode),
            "open_trades": len(manager.open_trades[mode]),
            "stats": stats_to_dict(manager.stats(mode)),
        }

    # -------------------- Events -------------------- #
    @app.websocket("/ws/events")
    async def events_ws(websocket: WebSocket):
        broadcaster = engine().broadcaster
        await broadcaster.connect(websocket)
        try:
            while True:
                # clients only ping
                await websocket.receive_text()
        except WebSocketDisconnect:
            broadcaster.disconnect(websocket)

    return app


app = create_app()
