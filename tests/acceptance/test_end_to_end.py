import asyncio
import time

import pytest
from fastapi.testclient import TestClient

from api.server import create_app
from core.config import Settings
from engine.models import Candle
from state.repo import SqlTradeStore

HOUR = 3_600_000

SCENARIO = [
    {"time": 0, "open": 100, "high": 101, "low": 99, "close": 100},
    {"time": HOUR, "open": 100, "high": 101, "low": 99.5, "close": 101},
    {"time": 2 * HOUR, "open": 101, "high": 104.5, "low": 100, "close": 104},
    {"time": 3 * HOUR, "open": 104, "high": 104.2, "low": 103, "close": 103.5},
    {"time": 4 * HOUR, "open": 103.5, "high": 104, "low": 103, "close": 104},
    {"time": 5 * HOUR, "open": 104, "high": 104.5, "low": 101, "close": 101.5},
]
LOAD = {"strategy_id": "bullish-candle", "settings": {"stop_loss_percent": 2}, "candles": SCENARIO}


class FakeSource:
    """Warm-up history: one flat candle per pair."""

    async def fetch_candles(self, pair, timeframe, limit=1000, end_time=None):
        return [Candle(time=0, open=100, high=101, low=99, close=100)]

    async def fetch_all_candles(self, pair, timeframe, period="3m", on_progress=None):
        return []


class FakeStream:
    """Delivers queued (pair, candle, closed) updates until stopped."""

    def __init__(self, pairs, timeframe, on_candle):
        self.pairs = pairs
        self.on_candle = on_candle
        self.inbox = []
        self.running = False

    async def run(self):
        self.running = True
        while self.running:
            while self.inbox:
                self.on_candle(*self.inbox.pop(0))
            await asyncio.sleep(0.01)

    def stop(self):
        self.running = False


@pytest.fixture
def store():
    s = SqlTradeStore()
    yield s
    s.close()


@pytest.fixture
def streams():
    return []


def build_app(store, streams, **overrides):
    settings = Settings(COMMISSION_PCT=0.0, SLIPPAGE_PCT=0.0, DB_URL=None, **overrides)

    def stream_factory(pairs, timeframe, on_candle):
        stream = FakeStream(pairs, timeframe, on_candle)
        streams.append(stream)
        return stream

    return create_app(settings, persistence=store, market_data=FakeSource(), stream_factory=stream_factory)


@pytest.fixture
def client(store, streams):
    with TestClient(build_app(store, streams)) as c:
        yield c


def wait_for(client, url, predicate, timeout=10.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        body = client.get(url).json()
        if predicate(body):
            return body
        time.sleep(0.05)
    raise AssertionError(f"{url} never reached the expected state")


def test_health_and_strategies(client):
    assert client.get("/health").json() == {"status": "ok", "strategies": 2}
    ids = {s["id"] for s in client.get("/strategies").json()}
    assert ids == {"bullish-candle", "ema-cross"}


def test_strategy_settings(client):
    r = client.put("/strategies/bullish-candle/settings", json={"risk_reward_ratio": 2})
    assert r.status_code == 200
    assert r.json()["settings"]["risk_reward_ratio"] == 2

    r = client.put("/strategies/bullish-candle/settings", json={"stop_loss_percent": 99})
    assert r.status_code == 422
    assert r.json()["error"]["type"] == "ConfigError"

    r = client.put("/strategies/martingale/settings", json={})
    assert r.status_code == 404
    assert r.json()["error"] == {"type": "StrategyNotFound", "message": "Unknown strategy: martingale",
                                 "details": {"strategy_id": "martingale"}}


def test_backtest_commands(client, store):
    assert client.get("/backtest/state").json()["state"] == "idle"
    r = client.post("/backtest/step")
    assert r.status_code == 409

    state = client.post("/backtest/load", json=LOAD).json()
    assert (state["state"], state["index"], state["total"]) == ("ready", 0, 6)
    assert state["steps"][0]["status"] == "pending"

    state = client.post("/backtest/step").json()
    assert (state["state"], state["index"]) == ("paused", 1)
    assert state["open_trade"]["entry_price"] == 101

    state = client.post("/backtest/seek", json={"index": 3}).json()
    assert state["index"] == 3
    assert len(state["closed_trades"]) == 1

    state = client.post("/backtest/run").json()
    assert state["state"] == "finished"
    result = state["result"]
    assert [t["exit_reason"] for t in result["trades"]] == ["TP", "SL"]
    assert result["stats"]["net_profit"] == pytest.approx(48.5)
    assert store.list_backtests()[0].id == result["id"]

    r = client.post("/backtest/pause")
    assert r.status_code == 409
    assert r.json()["error"]["type"] == "InvalidTransition"
    assert r.json()["error"]["details"] == {"state": "finished", "command": "pause"}


def test_backtest_playback(client):
    client.post("/backtest/load", json=LOAD)
    state = client.post("/backtest/play", json={"interval_ms": 1000}).json()
    assert state["state"] == "playing"
    state = client.post("/backtest/pause").json()
    assert state["state"] == "paused"

    client.post("/backtest/play", json={"interval_ms": 0})
    state = wait_for(client, "/backtest/state", lambda s: s["state"] == "finished")
    assert state["result"]["stats"]["total_trades"] == 2
    assert state["progress"] == 1.0


def test_run_takes_over_from_the_playback_clock(client):
    client.post("/backtest/load", json=LOAD)
    assert client.post("/backtest/play", json={"interval_ms": 1000}).json()["state"] == "playing"
    state = client.post("/backtest/run").json()
    assert state["state"] == "finished"
    assert state["result"]["stats"]["net_profit"] == pytest.approx(48.5)
    assert client.app.state.engine.playback_task is None


def test_backtest_load_errors(client):
    r = client.post("/backtest/load", json={**LOAD, "candles": SCENARIO[:1]})
    assert r.status_code == 422
    assert r.json()["error"]["type"] == "BacktestError"
    assert client.get("/backtest/state").json()["state"] == "idle"

    r = client.post("/backtest/load", json={**LOAD, "risk": {"leverage": 10}})
    assert r.status_code == 422

    r = client.post("/backtest/load", json={"strategy_id": "bullish-candle", "candles": [{"time": 0}]})
    assert r.status_code == 422
    assert r.json()["error"]["type"] == "ValidationError"


def test_optimization(client):
    r = client.post("/optimize/start", json={
        "strategy_id": "bullish-candle",
        "candles": SCENARIO,
        "ranges": [{"id": "stop_loss_percent", "start": 1, "end": 3, "step": 1}],
        "workers": 1,
    })
    assert r.status_code == 200
    body = wait_for(client, "/optimize/results", lambda b: b["status"] in ("done", "failed"))
    assert body["status"] == "done"
    client.app.state.engine.optimize_thread.join(5)
    assert body["progress"] == {"done": 3, "total": 3}
    profits = [row["stats"]["net_profit"] for row in body["results"]]
    assert profits == sorted(profits, reverse=True)

    assert client.post("/optimize/stop").status_code == 409

    r = client.post("/optimize/start", json={
        "strategy_id": "bullish-candle",
        "candles": SCENARIO,
        "ranges": [{"id": "stop_loss_percent", "start": 3, "end": 1, "step": 1}],
    })
    assert r.status_code == 422


def test_manual_trades_and_stats(client, store):
    r = client.post("/trades/open", json={"pair": "BTC/USDT", "entry_price": 100, "stop_loss": 95,
                                          "take_profit": 110, "time": 0})
    body = r.json()
    assert body["opened"]
    trade = body["trade"]
    assert trade["position_size"] == pytest.approx(2000)
    assert store.load_open_trades("Paper")[0].id == trade["id"]

    again = client.post("/trades/open", json={"pair": "BTC/USDT", "entry_price": 100, "stop_loss": 95,
                                              "take_profit": 110, "time": 1}).json()
    assert not again["opened"]

    closed = client.post(f"/trades/{trade['id']}/close", json={"price": 104}).json()
    assert (closed["status"], closed["exit_reason"], closed["exit_price"]) == ("closed", "ManualClose", 104)
    assert closed["pnl_amount"] == pytest.approx(80)

    r = client.post(f"/trades/{trade['id']}/close")
    assert r.status_code == 409
    assert client.post("/trades/nope/close").status_code == 404

    stats = client.get("/stats", params={"mode": "Paper"}).json()
    assert stats["equity"] == pytest.approx(10_080)
    assert stats["stats"]["total_trades"] == 1
    listed = client.get("/trades", params={"mode": "Paper"}).json()
    assert listed["open"] == [] and len(listed["closed"]) == 1

    r = client.post("/trades/open", json={"pair": "BTC/USDT", "entry_price": 100, "stop_loss": 95,
                                          "take_profit": 110, "mode": "Demo"})
    assert r.status_code == 422


def test_manual_open_keeps_the_market_price(client):
    first = client.post("/trades/open", json={"pair": "BTC/USDT", "entry_price": 100, "stop_loss": 95,
                                              "take_profit": 110, "time": 0}).json()["trade"]
    client.post(f"/trades/{first['id']}/close", json={"price": 104})

    second = client.post("/trades/open", json={"pair": "BTC/USDT", "entry_price": 120, "stop_loss": 115,
                                               "take_profit": 130, "time": 1}).json()
    assert second["opened"]
    closed = client.post(f"/trades/{second['trade']['id']}/close").json()
    assert closed["exit_price"] == 104


def test_pending_confirmation(client):
    r = client.post("/trades/confirm", json={"pair": "BTC/USDT"})
    assert r.status_code == 404
    assert client.post("/trades/reject", json={"pair": "BTC/USDT"}).json() == {"rejected": False}


def test_streamed_signal_waits_for_confirmation(store, streams):
    with TestClient(build_app(store, streams, CONFIRM_TRADES=True)) as client:
        r = client.post("/sessions/start", json={"mode": "Paper", "strategy_id": "bullish-candle",
                                                 "pairs": ["BTC/USDT"], "settings": {"stop_loss_percent": 2}})
        assert r.status_code == 200
        session_id = r.json()["id"]
        [stream] = streams
        assert stream.pairs == ["BTC/USDT"]

        stream.inbox.append(("BTC/USDT", Candle(**SCENARIO[1]), True))
        listed = wait_for(client, "/trades", lambda b: b["pending"])
        assert listed["pending"][0]["signal"]["entry_price"] == 101
        assert listed["open"] == []

        r = client.post("/trades/confirm", json={"pair": "BTC/USDT", "size_multiplier": 4})
        assert r.status_code == 422
        body = client.post("/trades/confirm", json={"pair": "BTC/USDT", "size_multiplier": 0.5}).json()
        assert body["opened"]
        assert body["trade"]["session_id"] == session_id
        assert body["trade"]["position_size"] == pytest.approx(2500)

        # later stream updates drive the confirmed trade's exits
        stream.inbox.append(("BTC/USDT", Candle(**SCENARIO[2]), False))
        listed = wait_for(client, "/trades", lambda b: b["closed"])
        assert listed["closed"][0]["exit_reason"] == "TP"

        stopped = client.post("/sessions/stop", json={"mode": "Paper"}).json()
        assert stopped["stats"]["total_trades"] == 1
        assert not stream.running
        assert client.app.state.engine.runners == {}


def test_sessions(client, streams):
    r = client.post("/sessions/start", json={"mode": "Paper", "strategy_id": "ema-cross"})
    session_id = r.json()["id"]
    client.post("/trades/open", json={"pair": "ETH/USDT", "entry_price": 50, "stop_loss": 49,
                                      "take_profit": 53, "time": 0})
    client.post("/trades/0-ETH/USDT/close", json={"price": 52})
    stopped = client.post("/sessions/stop", json={"mode": "Paper"}).json()
    assert stopped["id"] == session_id
    assert stopped["stats"]["total_trades"] == 1
    assert len(streams) == 1 and not streams[0].running
    assert client.post("/sessions/stop", json={"mode": "Paper"}).status_code == 409
    assert client.post("/sessions/start", json={"strategy_id": "martingale"}).status_code == 404


def test_event_stream(client):
    with client.websocket_connect("/ws/events") as ws:
        client.post("/trades/open", json={"pair": "SOL/USDT", "entry_price": 20, "stop_loss": 19,
                                          "take_profit": 22, "time": 0})
        for _ in range(10):
            event = ws.receive_json()
            if event["type"] == "trade_opened":
                break
        assert event["type"] == "trade_opened"
        assert event["trade"]["pair"] == "SOL/USDT"
