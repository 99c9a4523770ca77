import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from engine.config import RiskSettings
from engine.models import Candle, Direction, ExitReason, Trade

logger = logging.getLogger("RiskManager")

# confirmation slider bounds
MIN_SIZE_MULTIPLIER = 0.1
MAX_SIZE_MULTIPLIER = 1.25


class RejectReason(str, Enum):
    INSUFFICIENT_CAPITAL = "insufficient-capital"
    RISK_LIMIT_EXCEEDED = "risk-limit-exceeded"
    MAX_POSITIONS_REACHED = "max-positions-reached"
    INVALID_RISK = "invalid-risk-zero-or-negative"


@dataclass(frozen=True)
class SizingDecision:
    size: float
    reason: Optional[RejectReason] = None

    @property
    def accepted(self) -> bool:
        return self.size > 0 and self.reason is None


@dataclass(frozen=True)
class ExitDecision:
    price: float
    reason: ExitReason


@dataclass(frozen=True)
class TradePnl:
    pnl: float
    pnl_amount: float
    realized_rr: float


class PositionSizer:
    """
    Position size in quote currency, fully funded by cash (spot, no leverage).
    - percentRisk: loss at the stop == risk_per_trade_percent of equity.
    - fixedAmount: configured notional, capped to available capital.
    `size_multiplier` scales the size before the capital and risk checks, so
    the limits hold for the size that actually opens.
    A rejected signal returns size 0 with a reason code.
    """

    @staticmethod
    def calculate_position_size(
        equity: float,
        available_capital: float,
        entry_price: float,
        stop_loss: float,
        settings: RiskSettings,
        open_positions: int = 0,
        open_risk: float = 0.0,
        size_multiplier: float = 1.0,
    ) -> SizingDecision:
        if entry_price <= 0 or stop_loss <= 0 or equity <= 0:
            return PositionSizer._reject(RejectReason.INVALID_RISK, "non-positive price or equity")

        risk_per_unit = abs(entry_price - stop_loss)
        if risk_per_unit <= 0:
            return PositionSizer._reject(RejectReason.INVALID_RISK, "stop loss equals entry")

        if settings.sizing_mode == "fixedAmount":
            size = min(settings.fixed_amount * size_multiplier, available_capital)
            if size <= 0:
                return PositionSizer._reject(RejectReason.INSUFFICIENT_CAPITAL, f"available={available_capital:.2f}")
        else:
            risk_amount = equity * settings.risk_per_trade_percent / 100
            if risk_amount <= 0:
                return PositionSizer._reject(RejectReason.INVALID_RISK, "risk per trade is zero")
            units = risk_amount / risk_per_unit
            size = units * entry_price * size_multiplier
            if size > available_capital:
                # rejected, never clipped
                return PositionSizer._reject(
                    RejectReason.INSUFFICIENT_CAPITAL, f"size={size:.2f} > available={available_capital:.2f}"
                )

        if open_positions >= settings.max_open_positions:
            return PositionSizer._reject(RejectReason.MAX_POSITIONS_REACHED, f"{open_positions} open")

        new_risk = size / entry_price * risk_per_unit
        total_risk_pct = (open_risk + new_risk) / equity * 100
        if total_risk_pct > settings.max_concurrent_risk_percent + 1e-9:
            return PositionSizer._reject(
                RejectReason.RISK_LIMIT_EXCEEDED,
                f"open risk {total_risk_pct:.2f}% > {settings.max_concurrent_risk_percent}%",
            )

        logger.info(
            f"⚖️ Sizing: equity={equity:.2f} available={available_capital:.2f} "
            f"risk/unit={risk_per_unit:.4f} -> size={size:.2f}"
        )
        return SizingDecision(size=size)

    @staticmethod
    def _reject(reason: RejectReason, detail: str) -> SizingDecision:
        logger.info(f"⛔ Sizing rejected ({reason.value}): {detail}")
        return SizingDecision(size=0.0, reason=reason)


def apply_slippage(direction: Direction, entry: float, stop_loss: float, take_profit: float,
                   slippage_percent: float) -> Tuple[float, float, float]:
    """Adverse fill on entry; SL/TP keep their distance to the slipped entry."""
    if direction == "LONG":
        filled = entry * (1 + slippage_percent / 100)
    else:
        filled = entry * (1 - slippage_percent / 100)
    return filled, filled + (stop_loss - entry), filled + (take_profit - entry)


def update_trailing_stop(trade: Trade, candle: Candle, trailing_stop_percent: float) -> bool:
    """Tightens the trailing stop on a new extreme. True when it moved."""
    if trailing_stop_percent <= 0 or not trade.is_open:
        return False
    if trade.direction == "LONG":
        anchor = trade.highest_price_so_far if trade.highest_price_so_far is not None else trade.entry_price
        if candle.high > anchor:
            trade.highest_price_so_far = candle.high
            candidate = candle.high * (1 - trailing_stop_percent / 100)
            if candidate > trade.effective_stop:
                trade.trailing_stop_price = candidate
                return True
    else:
        anchor = trade.lowest_price_so_far if trade.lowest_price_so_far is not None else trade.entry_price
        if candle.low < anchor:
            trade.lowest_price_so_far = candle.low
            candidate = candle.low * (1 + trailing_stop_percent / 100)
            if candidate < trade.effective_stop:
                trade.trailing_stop_price = candidate
                return True
    return False


def evaluate_exit(trade: Trade, candle: Candle, exit_priority: str = "stop-first") -> Optional[ExitDecision]:
    """
    At most one exit per candle. When a candle spans both the stop and the
    target, `exit_priority` decides which one filled first.
    """
    stop = trade.effective_stop
    stop_reason: ExitReason = "TrailingStop" if trade.trailing_stop_price is not None else "SL"
    if trade.direction == "LONG":
        stop_hit = candle.low <= stop
        target_hit = candle.high >= trade.take_profit
    else:
        stop_hit = candle.high >= stop
        target_hit = candle.low <= trade.take_profit

    if stop_hit and (not target_hit or exit_priority == "stop-first"):
        return ExitDecision(price=stop, reason=stop_reason)
    if target_hit:
        return ExitDecision(price=trade.take_profit, reason="TP")
    return None


def compute_trade_pnl(trade: Trade, exit_price: float, settings: RiskSettings) -> TradePnl:
    size, entry = trade.position_size, trade.entry_price
    sign = 1 if trade.direction == "LONG" else -1
    raw = (exit_price - entry) * (size / entry) * sign
    commission = (size + size * exit_price / entry) * settings.fee_percent / 100
    amount = raw - commission
    risk = abs(entry - trade.stop_loss)
    return TradePnl(
        pnl=amount / size * 100 if size > 0 else 0.0,
        pnl_amount=amount,
        realized_rr=abs(exit_price - entry) / risk if risk > 0 else 0.0,
    )


def finalize_trade(trade: Trade, exit_price: float, reason: ExitReason, exit_time: int,
                   settings: RiskSettings) -> Trade:
    """Moves an open trade to closed in place."""
    result = compute_trade_pnl(trade, exit_price, settings)
    trade.status = "closed"
    trade.exit_price = exit_price
    trade.exit_reason = reason
    trade.close_time = max(exit_time, trade.open_time)
    trade.duration_ms = trade.close_time - trade.open_time
    trade.pnl = result.pnl
    trade.pnl_amount = result.pnl_amount
    trade.realized_rr = result.realized_rr
    return trade
