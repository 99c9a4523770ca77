import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Type, Union

from pydantic import BaseModel, ValidationError

from core.errors import ConfigError, StrategyNotFound
from engine.models import Candle, StrategyState, StrategyStep

logger = logging.getLogger("Strategy")

SettingsInput = Union[BaseModel, Mapping[str, Any], None]


class Strategy(ABC):
    """
    Plugin contract: data (id, name, settings schema, indicators, steps)
    plus a pure evaluation over the full candle prefix.

    `evaluate` must only depend on its arguments. Anything a strategy wants
    to remember between calls goes into `StrategyState.memo` and comes back
    as `prior`.
    """

    id: str = ""
    name: str = ""
    description: str = ""
    settings_model: Type[BaseModel]
    indicators: Tuple[str, ...] = ()
    step_names: Tuple[str, ...] = ()

    def min_lookback(self, settings: BaseModel) -> int:
        return 1

    def initial_steps(self) -> Tuple[StrategyStep, ...]:
        return tuple(StrategyStep(name, "pending", "Waiting for data...") for name in self.step_names)

    @abstractmethod
    def evaluate(self, candles: Sequence[Candle], settings: BaseModel,
                 prior: Optional[StrategyState]) -> StrategyState:
        ...

    def default_settings(self) -> BaseModel:
        return self.settings_model()

    def validate_settings(self, values: SettingsInput = None) -> BaseModel:
        if isinstance(values, self.settings_model):
            return values
        data = values.model_dump() if isinstance(values, BaseModel) else dict(values or {})
        try:
            return self.settings_model.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid settings for {self.id}: {e}") from e

    def settings_schema(self) -> List[Dict[str, Any]]:
        """id/type/min/max/step/default of each setting, for UIs and sweeps."""
        schema = []
        for field_id, info in self.settings_model.model_fields.items():
            entry: Dict[str, Any] = {
                "id": field_id,
                "type": "toggle" if info.annotation is bool else "number",
                "default": info.default,
            }
            for meta in info.metadata:
                for attr, key in (("ge", "min"), ("gt", "min"), ("le", "max"), ("lt", "max")):
                    if getattr(meta, attr, None) is not None:
                        entry[key] = getattr(meta, attr)
            extra = info.json_schema_extra
            if isinstance(extra, dict) and "step" in extra:
                entry["step"] = extra["step"]
            schema.append(entry)
        return schema

    def describe(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "indicators": list(self.indicators),
            "steps": list(self.step_names),
            "default_settings": self.default_settings().model_dump(),
            "settings_schema": self.settings_schema(),
        }


def run_strategy(
    strategy: Strategy,
    candles: Sequence[Candle],
    settings: BaseModel,
    prior: Optional[StrategyState] = None,
    has_open_trade: bool = False,
) -> StrategyState:
    """Calls `strategy.evaluate` under the engine rules (open trade, warm-up)."""
    memo = dict(prior.memo) if prior is not None else {}
    if has_open_trade:
        # one trade per pair: report everything as done, no new signal
        steps = tuple(StrategyStep(s.name, "met", "Position open") for s in strategy.initial_steps())
        return StrategyState(steps=steps, signal=None, memo=memo)
    if len(candles) < strategy.min_lookback(settings):
        return StrategyState(steps=strategy.initial_steps(), signal=None, memo=memo)
    return strategy.evaluate(candles, settings, prior)


class StrategyRegistry:
    """Strategies by id. Lookup, listing and selection without code changes."""

    def __init__(self, strategies: Sequence[Strategy] = ()):
        self._strategies: Dict[str, Strategy] = {}
        for strategy in strategies:
            self.register(strategy)

    def register(self, strategy: Strategy) -> None:
        if not strategy.id:
            raise ValueError("Strategy id is required")
        if strategy.id in self._strategies:
            raise ValueError(f"Strategy already registered: {strategy.id}")
        self._strategies[strategy.id] = strategy
        logger.debug(f"🧩 Strategy registered: {strategy.id}")

    def get(self, strategy_id: str) -> Strategy:
        try:
            return self._strategies[strategy_id]
        except KeyError:
            raise StrategyNotFound(strategy_id) from None

    def select(self, strategy_id: str, settings: SettingsInput = None) -> Tuple[Strategy, BaseModel]:
        strategy = self.get(strategy_id)
        return strategy, strategy.validate_settings(settings)

    def list(self) -> List[Strategy]:
        return list(self._strategies.values())

    def ids(self) -> List[str]:
        return list(self._strategies)

    def __contains__(self, strategy_id: str) -> bool:
        return strategy_id in self._strategies

    def __len__(self) -> int:
        return len(self._strategies)


class SettingsBook:
    """Active settings per (strategy, timeframe); defaults until changed."""

    def __init__(self, registry: StrategyRegistry):
        self.registry = registry
        self._active: Dict[Tuple[str, str], BaseModel] = {}

    def get(self, strategy_id: str, timeframe: str) -> BaseModel:
        key = (strategy_id, timeframe)
        if key not in self._active:
            return self.registry.get(strategy_id).default_settings()
        return self._active[key]

    def set(self, strategy_id: str, timeframe: str, values: SettingsInput) -> BaseModel:
        settings = self.registry.get(strategy_id).validate_settings(values)
        self._active[(strategy_id, timeframe)] = settings
        return settings


def default_registry() -> StrategyRegistry:
    from engine.strategies.bullish_candle import BullishCandleStrategy
    from engine.strategies.ema_cross import EmaCrossStrategy

    return StrategyRegistry([BullishCandleStrategy(), EmaCrossStrategy()])
