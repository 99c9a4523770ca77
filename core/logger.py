import asyncio
import logging
import sys
from typing import Any, Dict, List, Optional

import orjson

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(level: str = "INFO", broadcaster: Optional["EventBroadcaster"] = None) -> None:
    """Root logging to stdout, optionally mirrored to the websocket clients."""
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if broadcaster is not None:
        handlers.append(BroadcastLogHandler(broadcaster))
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT,
                        handlers=handlers, force=True)
    # HTTP client noise
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)


class EventBroadcaster:
    """
    Pushes engine events to the connected websocket clients as JSON text.
    `publish` is a plain EventBus listener and may be called from any thread;
    the sends are scheduled on the loop that accepted the connections.
    """

    def __init__(self):
        self.active_connections: List[Any] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    async def connect(self, websocket: Any) -> None:
        await websocket.accept()
        self._loop = asyncio.get_running_loop()
        self.active_connections.append(websocket)

    def disconnect(self, websocket: Any) -> None:
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)

    async def broadcast(self, message: str) -> None:
        for connection in list(self.active_connections):
            try:
                await connection.send_text(message)
            except Exception as e:
                logging.getLogger("Broadcast").debug(f"client dropped: {e}")
                self.disconnect(connection)

    async def broadcast_event(self, event_type: str, data: Dict[str, Any]) -> None:
        payload = {"type": event_type, **data}
        await self.broadcast(orjson.dumps(payload, default=str).decode())

    def publish(self, event_type: str, data: Dict[str, Any]) -> None:
        loop = self._loop
        if not self.active_connections or loop is None or loop.is_closed():
            return
        coro = self.broadcast_event(event_type, data)
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            loop.create_task(coro)
        else:
            asyncio.run_coroutine_threadsafe(coro, loop)


class BroadcastLogHandler(logging.Handler):
    """Log records forwarded as `log` events."""

    def __init__(self, broadcaster: EventBroadcaster):
        super().__init__()
        self.broadcaster = broadcaster

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.broadcaster.publish("log", {"level": record.levelname, "message": self.format(record)})
        except Exception:
            self.handleError(record)
