"""Exception hierarchy shared by the engine.

Risk rejections are not exceptions: sizing returns a reason code instead.
"""
from __future__ import annotations


class EngineError(Exception):
    """Base class of every error raised by the engine."""


class ConfigError(EngineError):
    pass


class MarketDataError(EngineError):
    """Every configured endpoint failed for a request."""

    def __init__(self, path: str, cause: str | None = None):
        self.path = path
        self.cause = cause
        super().__init__(f"fetch failed for {path}" + (f": {cause}" if cause else ""))


class StrategyNotFound(EngineError):
    def __init__(self, strategy_id: str):
        self.strategy_id = strategy_id
        super().__init__(f"Unknown strategy: {strategy_id}")


class TradeNotFound(EngineError):
    def __init__(self, trade_id: str):
        self.trade_id = trade_id
        super().__init__(f"No open trade with id {trade_id}")


class NoMarketPrice(EngineError):
    def __init__(self, pair: str):
        self.pair = pair
        super().__init__(f"No market price known for {pair}")


class InvalidTransition(EngineError):
    def __init__(self, state: str, command: str):
        self.state = state
        self.command = command
        super().__init__(f"Cannot {command} while {state}")


class BacktestError(EngineError):
    pass


class OptimizationCancelled(EngineError):
    pass


class InvariantViolation(EngineError):
    """Programming error: raised only when the caller runs in strict mode."""
