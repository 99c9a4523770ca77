from typing import Optional, Sequence

import pandas as pd
from pydantic import BaseModel, ConfigDict, Field, model_validator

from engine.models import Candle, Signal, StrategyState, StrategyStep
from engine.strategy import Strategy


class EmaCrossSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    fast_period: int = Field(9, ge=2, le=100, json_schema_extra={"step": 1})
    slow_period: int = Field(21, ge=3, le=300, json_schema_extra={"step": 1})
    swing_lookback: int = Field(10, ge=2, le=100, json_schema_extra={"step": 1})
    risk_reward_ratio: float = Field(2.0, ge=0.5, le=10.0, json_schema_extra={"step": 0.1})
    allow_shorts: bool = True

    @model_validator(mode="after")
    def _fast_below_slow(self):
        if self.fast_period >= self.slow_period:
            raise ValueError("fast_period must be lower than slow_period")
        return self


class EmaCrossStrategy(Strategy):
    """
    Trend pullback on two EMAs.
    - Trend: fast EMA above (below) slow EMA.
    - Pullback: previous candle traded back to the fast EMA.
    - Confirmation: candle closes back beyond the fast EMA in trend direction.
    SL at the swing extreme of the last `swing_lookback` candles, TP in R.
    """

    id = "ema-cross"
    name = "EMA Cross Pullback"
    description = "Trend pullback entries on a fast/slow EMA pair."
    settings_model = EmaCrossSettings
    indicators = ("ema_fast", "ema_slow")
    step_names = ("Trend", "Pullback", "Confirmation")

    def min_lookback(self, settings: EmaCrossSettings) -> int:
        return max(settings.slow_period, settings.swing_lookback) + 2

    def _frame(self, candles: Sequence[Candle], settings: EmaCrossSettings) -> pd.DataFrame:
        # EMAs only need a few slow periods of warm-up
        window = candles[-settings.slow_period * 4:]
        df = pd.DataFrame(
            [(c.time, c.open, c.high, c.low, c.close) for c in window],
            columns=["time", "open", "high", "low", "close"],
        )
        df["ema_fast"] = df["close"].ewm(span=settings.fast_period, adjust=False).mean()
        df["ema_slow"] = df["close"].ewm(span=settings.slow_period, adjust=False).mean()
        return df

    def evaluate(self, candles: Sequence[Candle], settings: EmaCrossSettings,
                 prior: Optional[StrategyState]) -> StrategyState:
        memo = dict(prior.memo) if prior is not None else {}
        df = self._frame(candles, settings)
        last, prev = df.iloc[-1], df.iloc[-2]
        trend, pullback, confirm = self.step_names

        if last["ema_fast"] > last["ema_slow"]:
            direction = "LONG"
        elif last["ema_fast"] < last["ema_slow"] and settings.allow_shorts:
            direction = "SHORT"
        else:
            steps = (
                StrategyStep(trend, "waiting", "No tradable EMA trend"),
                StrategyStep(pullback, "pending"),
                StrategyStep(confirm, "pending"),
            )
            return StrategyState(steps=steps, memo=memo)

        long_side = direction == "LONG"
        trend_step = StrategyStep(trend, "met", f"{direction} trend (fast {last['ema_fast']:.4f})")
        touched = prev["low"] <= prev["ema_fast"] if long_side else prev["high"] >= prev["ema_fast"]
        if not touched:
            steps = (trend_step, StrategyStep(pullback, "waiting", "Waiting for a pullback to the fast EMA"),
                     StrategyStep(confirm, "pending"))
            return StrategyState(steps=steps, memo=memo)

        pullback_step = StrategyStep(pullback, "met", "Pullback to the fast EMA")
        if long_side:
            confirmed = last["close"] > last["ema_fast"] and last["close"] > last["open"]
        else:
            confirmed = last["close"] < last["ema_fast"] and last["close"] < last["open"]
        if not confirmed:
            steps = (trend_step, pullback_step, StrategyStep(confirm, "waiting", "Waiting for a confirmation close"))
            return StrategyState(steps=steps, memo=memo)

        swing = df.iloc[-settings.swing_lookback:]
        entry = float(last["close"])
        stop_loss = float(swing["low"].min()) if long_side else float(swing["high"].max())
        risk = entry - stop_loss if long_side else stop_loss - entry
        if risk <= 0:
            steps = (trend_step, pullback_step, StrategyStep(confirm, "unmet", "No room for a protective stop"))
            return StrategyState(steps=steps, memo=memo)

        steps = (trend_step, pullback_step, StrategyStep(confirm, "met", f"Confirmed at {entry}"))
        time = int(last["time"])
        if memo.get("signal_time") == time:
            return StrategyState(steps=steps, memo=memo)
        take_profit = entry + risk * settings.risk_reward_ratio if long_side else entry - risk * settings.risk_reward_ratio
        signal = Signal(
            type="entry" if long_side else "short-entry",
            time=time,
            direction=direction,
            entry_price=entry,
            stop_loss=stop_loss,
            take_profit=take_profit,
        )
        memo["signal_time"] = time
        return StrategyState(steps=steps, signal=signal, memo=memo)
