from dataclasses import dataclass, replace
from typing import Literal

from core.config import Settings
from core.errors import ConfigError

SizingMode = Literal["percentRisk", "fixedAmount"]
ExitPriority = Literal["stop-first", "target-first"]


@dataclass(frozen=True)
class RiskSettings:
    """Process-wide risk configuration, injected into every sizing decision."""
    total_capital: float = 10_000.0
    risk_per_trade_percent: float = 1.0
    max_concurrent_risk_percent: float = 5.0
    max_open_positions: int = 5
    commission_percent: float = 0.1
    slippage_percent: float = 0.05
    use_fee_discount: bool = True
    fee_discount_factor: float = 0.75
    sizing_mode: SizingMode = "percentRisk"
    fixed_amount: float = 100.0
    trailing_stop_percent: float = 0.0
    exit_priority: ExitPriority = "stop-first"
    confirm_trades: bool = False

    def __post_init__(self):
        if self.total_capital <= 0:
            raise ConfigError(f"total_capital must be > 0 (got {self.total_capital})")
        if self.sizing_mode not in ("percentRisk", "fixedAmount"):
            raise ConfigError(f"Unknown sizing mode: {self.sizing_mode}")
        if self.exit_priority not in ("stop-first", "target-first"):
            raise ConfigError(f"Unknown exit priority: {self.exit_priority}")
        for name in ("commission_percent", "slippage_percent", "trailing_stop_percent", "fixed_amount"):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must be >= 0")
        if not 0 < self.fee_discount_factor <= 1:
            raise ConfigError("fee_discount_factor must be in (0, 1]")
        if self.max_open_positions < 1:
            raise ConfigError("max_open_positions must be >= 1")

    @property
    def fee_percent(self) -> float:
        if self.use_fee_discount:
            return self.commission_percent * self.fee_discount_factor
        return self.commission_percent

    def with_updates(self, **changes) -> "RiskSettings":
        return replace(self, **changes)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RiskSettings":
        return cls(
            total_capital=settings.TOTAL_CAPITAL,
            risk_per_trade_percent=settings.RISK_PER_TRADE_PCT,
            max_concurrent_risk_percent=settings.MAX_CONCURRENT_RISK_PCT,
            max_open_positions=settings.MAX_OPEN_POSITIONS,
            commission_percent=settings.COMMISSION_PCT,
            slippage_percent=settings.SLIPPAGE_PCT,
            use_fee_discount=settings.USE_FEE_DISCOUNT,
            sizing_mode=settings.SIZING_MODE,
            fixed_amount=settings.FIXED_AMOUNT,
            trailing_stop_percent=settings.TRAILING_STOP_PCT,
            exit_priority=settings.EXIT_PRIORITY,
            confirm_trades=settings.CONFIRM_TRADES,
        )
