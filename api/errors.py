from __future__ import annotations
from fastapi import HTTPException

from core.errors import (
    BacktestError,
    ConfigError,
    EngineError,
    InvalidTransition,
    InvariantViolation,
    MarketDataError,
    NoMarketPrice,
    OptimizationCancelled,
    StrategyNotFound,
    TradeNotFound,
)


class ApiError(HTTPException):
    def __init__(self, status_code: int, message: str, type_: str | None = None, details: dict | None = None):
        self.type = type_ or self.__class__.__name__
        self.message = message
        self.details = details or {}
        super().__init__(status_code=status_code, detail={"type": self.type, "message": self.message, "details": self.details})


class NotFound(ApiError):
    def __init__(self, message: str, type_: str | None = None, details: dict | None = None):
        super().__init__(404, message, type_, details)


class Conflict(ApiError):
    def __init__(self, message: str, type_: str | None = None, details: dict | None = None):
        super().__init__(409, message, type_, details)


class Unprocessable(ApiError):
    def __init__(self, message: str, type_: str | None = None, details: dict | None = None):
        super().__init__(422, message, type_, details)


class UpstreamUnavailable(ApiError):
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(502, message, details=details)


def from_engine_error(exc: EngineError) -> ApiError:
    """Engine exception -> HTTP error carrying the engine exception name as type."""
    name = type(exc).__name__
    message = str(exc)
    if isinstance(exc, StrategyNotFound):
        return NotFound(message, name, {"strategy_id": exc.strategy_id})
    if isinstance(exc, TradeNotFound):
        return NotFound(message, name, {"trade_id": exc.trade_id})
    if isinstance(exc, InvalidTransition):
        return Conflict(message, name, {"state": exc.state, "command": exc.command})
    if isinstance(exc, (InvariantViolation, OptimizationCancelled)):
        return Conflict(message, name)
    if isinstance(exc, NoMarketPrice):
        return Unprocessable(message, name, {"pair": exc.pair})
    if isinstance(exc, (ConfigError, BacktestError)):
        return Unprocessable(message, name)
    if isinstance(exc, MarketDataError):
        return UpstreamUnavailable(message, {"path": exc.path})
    return ApiError(500, message, name)
