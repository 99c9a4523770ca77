from typing import Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

from engine.models import Candle, Signal, StrategyState, StrategyStep
from engine.strategy import Strategy


class BullishCandleSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    enabled: bool = True
    stop_loss_percent: float = Field(1.0, ge=0.1, le=20.0, json_schema_extra={"step": 0.1})
    risk_reward_ratio: float = Field(1.5, ge=0.1, le=10.0, json_schema_extra={"step": 0.1})


class BullishCandleStrategy(Strategy):
    """
    Goes long on any candle that closes above its open.
    SL at a fixed percentage under the close, TP at `risk_reward_ratio` R.
    Mostly useful to exercise the execution path end to end.
    """

    id = "bullish-candle"
    name = "Bullish Candle"
    description = "Enters on any bullish candle. Useful for testing trade execution."
    settings_model = BullishCandleSettings
    step_names = ("Bullish candle",)

    def evaluate(self, candles: Sequence[Candle], settings: BullishCandleSettings,
                 prior: Optional[StrategyState]) -> StrategyState:
        memo = dict(prior.memo) if prior is not None else {}
        if not settings.enabled:
            return StrategyState(steps=(StrategyStep(self.step_names[0], "pending", "Strategy disabled"),), memo=memo)

        last = candles[-1]
        if last.close <= last.open:
            step = StrategyStep(self.step_names[0], "waiting", "Waiting for a close above the open.")
            return StrategyState(steps=(step,), memo=memo)

        step = StrategyStep(self.step_names[0], "met", f"Bullish close at {last.close}")
        # a partial candle can be re-evaluated many times, fire once per candle
        if memo.get("signal_time") == last.time:
            return StrategyState(steps=(step,), memo=memo)

        entry = last.close
        stop_loss = entry * (1 - settings.stop_loss_percent / 100)
        take_profit = entry + (entry - stop_loss) * settings.risk_reward_ratio
        signal = Signal(
            type="entry",
            time=last.time,
            direction="LONG",
            entry_price=entry,
            stop_loss=stop_loss,
            take_profit=take_profit,
        )
        memo["signal_time"] = last.time
        return StrategyState(steps=(step,), signal=signal, memo=memo)
