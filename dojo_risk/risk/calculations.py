"""Trade arithmetic - position sizing, P&L and R-multiples.

Every function here is pure and fails fast with a ValidationError naming the
offending field. Outputs are rounded ROUND_HALF_UP to fixed places, since
financial reporting depends on them being reproducible:

    currency (USD amounts, P&L)   2 places
    percentages                   2 places
    ratios and R-multiples        2 places
    quantity                      6 places

Rounding is applied once, on the final value; intermediate values keep full
Decimal precision.
"""
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, List, Optional, Union

import structlog

from dojo_risk.core.errors import ValidationError
from dojo_risk.core.models import (
    Direction, PnLResult, PositionCalculation, RiskLimitCheck
)

logger = structlog.get_logger(__name__)

Number = Union[Decimal, int, float, str]

CURRENCY_PLACES = 2
PERCENT_PLACES = 2
RATIO_PLACES = 2
QUANTITY_PLACES = 6


def quantize(value: Decimal, places: int) -> Decimal:
    """Round half-up to a fixed number of decimal places."""
    return value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)


def to_decimal(field: str, value: Any) -> Decimal:
    """Convert a numeric input to a finite Decimal.

    Floats go through str() so 0.1 becomes Decimal("0.1"), not its binary
    expansion. Booleans are rejected even though they are ints.
    """
    if isinstance(value, bool) or value is None:
        raise ValidationError(field, value, f"{field} must be a number")
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError) as exc:
        raise ValidationError(field, value, f"{field} must be a number") from exc
    if not result.is_finite():
        raise ValidationError(field, value, f"{field} must be finite")
    return result


def _positive(field: str, value: Any) -> Decimal:
    result = to_decimal(field, value)
    if result <= 0:
        raise ValidationError(field, value, f"{field} must be positive")
    return result


def _non_negative(field: str, value: Any) -> Decimal:
    result = to_decimal(field, value)
    if result < 0:
        raise ValidationError(field, value, f"{field} cannot be negative")
    return result


def calculate_position_size(
    entry_price: Number,
    stop_loss: Number,
    risk_amount: Number,
    account_balance: Number,
    target_price: Optional[Number] = None,
) -> PositionCalculation:
    """
    Size a position so that hitting the stop loses exactly `risk_amount`.

    Args:
        entry_price: Planned entry price
        stop_loss: Stop loss price (below entry for longs, above for shorts)
        risk_amount: Maximum loss in account currency
        account_balance: Current account balance
        target_price: Optional target, used for the reward:risk ratio

    Returns:
        PositionCalculation with quantity, notional, risk and R:R

    Raises:
        ValidationError: on non-positive inputs or entry == stop
    """
    entry = _positive("entry_price", entry_price)
    stop = _positive("stop_loss", stop_loss)
    risk = _positive("risk_amount", risk_amount)
    balance = _positive("account_balance", account_balance)
    if entry == stop:
        raise ValidationError("stop_loss", stop_loss, "Entry price cannot equal stop loss")

    risk_per_unit = abs(entry - stop)
    quantity = risk / risk_per_unit
    position_size_usd = quantity * entry
    risk_percent = risk / balance * 100

    risk_reward_ratio: Optional[Decimal] = None
    if target_price is not None:
        target = to_decimal("target_price", target_price)
        if target > 0:
            risk_reward_ratio = quantize(abs(target - entry) / risk_per_unit, RATIO_PLACES)

    return PositionCalculation(
        quantity=quantize(quantity, QUANTITY_PLACES),
        position_size_usd=quantize(position_size_usd, CURRENCY_PLACES),
        risk_amount=quantize(risk, CURRENCY_PLACES),
        risk_percent=quantize(risk_percent, PERCENT_PLACES),
        risk_reward_ratio=risk_reward_ratio,
    )


def calculate_pnl(
    entry_price: Number,
    exit_price: Number,
    quantity: Number,
    direction: Union[Direction, str],
    commission: Number = 0,
) -> PnLResult:
    """
    Profit or loss of a closed trade after commission.

    pnl_percent is measured against the entry notional (entry * quantity).
    """
    entry = _positive("entry_price", entry_price)
    exit_ = _positive("exit_price", exit_price)
    qty = _positive("quantity", quantity)
    fees = _non_negative("commission", commission)
    try:
        side = Direction(direction)
    except ValueError as exc:
        raise ValidationError("direction", direction, "direction must be 'long' or 'short'") from exc

    if side == Direction.LONG:
        pnl_amount = (exit_ - entry) * qty - fees
    else:
        pnl_amount = (entry - exit_) * qty - fees

    pnl_percent = pnl_amount / (entry * qty) * 100

    return PnLResult(
        pnl_amount=quantize(pnl_amount, CURRENCY_PLACES),
        pnl_percent=quantize(pnl_percent, PERCENT_PLACES),
    )


def calculate_r_multiple(pnl_amount: Number, initial_risk: Number) -> Decimal:
    """P&L expressed in units of the initial risk, 2 places."""
    pnl = to_decimal("pnl_amount", pnl_amount)
    risk = _positive("initial_risk", initial_risk)
    return quantize(pnl / risk, RATIO_PLACES)


def validate_risk_limits(
    risk_percent: Number,
    daily_risk_used: Number,
    weekly_risk_used: Number,
    max_risk_per_trade: Number,
    max_daily_risk: Number,
    max_weekly_risk: Number,
) -> RiskLimitCheck:
    """
    Check a trade's risk against per-trade, daily and weekly budgets.

    All three checks always run so the caller sees every violation at once.
    """
    risk = to_decimal("risk_percent", risk_percent)
    daily_used = to_decimal("daily_risk_used", daily_risk_used)
    weekly_used = to_decimal("weekly_risk_used", weekly_risk_used)
    max_trade = to_decimal("max_risk_per_trade", max_risk_per_trade)
    max_daily = to_decimal("max_daily_risk", max_daily_risk)
    max_weekly = to_decimal("max_weekly_risk", max_weekly_risk)

    violations: List[str] = []

    if risk > max_trade:
        violations.append(
            f"Risk per trade ({risk}%) exceeds limit ({max_trade}%)"
        )

    daily_total = daily_used + risk
    if daily_total > max_daily:
        violations.append(
            f"Daily risk would exceed limit ({daily_total}% > {max_daily}%)"
        )

    weekly_total = weekly_used + risk
    if weekly_total > max_weekly:
        violations.append(
            f"Weekly risk would exceed limit ({weekly_total}% > {max_weekly}%)"
        )

    if violations:
        logger.debug("calculations.risk_limits_violated", violations=violations)

    return RiskLimitCheck(is_valid=not violations, violations=violations)


__all__ = [
    "CURRENCY_PLACES",
    "PERCENT_PLACES",
    "RATIO_PLACES",
    "QUANTITY_PLACES",
    "quantize",
    "to_decimal",
    "calculate_position_size",
    "calculate_pnl",
    "calculate_r_multiple",
    "validate_risk_limits",
]
