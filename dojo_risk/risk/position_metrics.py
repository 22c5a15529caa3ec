"""Rebuild a position's derived fields from its execution history.

The opening side is BUY for long positions and SELL for short ones. Opening
fills accumulate cost, closing fills accumulate proceeds (both gross of fees);
realized P&L is the proceeds minus the average cost of the units closed:

    realized = closing_value - opening_value * closing_qty / opening_qty

with the sign flipped for shorts. net_pnl subtracts every fee paid, once. The
position is closed once its net quantity returns to zero.
"""
from decimal import Decimal
from typing import Iterable, Optional

import structlog

from dojo_risk.core.errors import ValidationError
from dojo_risk.core.models import (
    Direction, Execution, ExecutionSide, Position, PositionStatus
)
from dojo_risk.risk.calculations import calculate_r_multiple

logger = structlog.get_logger(__name__)

ZERO = Decimal("0")


def opening_side(direction: Direction) -> ExecutionSide:
    return ExecutionSide.BUY if direction == Direction.LONG else ExecutionSide.SELL


def replay_executions(position: Position, executions: Iterable[Execution]) -> Position:
    """
    Return a copy of `position` with quantity, prices, fees and P&L rebuilt.

    Args:
        position: Position whose fields are recomputed
        executions: Every execution recorded against the position

    Raises:
        ValidationError: if an execution belongs to another position or a
            fill would close more than is open
    """
    fills = sorted(executions, key=lambda e: e.executed_at)
    opens_with = opening_side(position.direction)

    open_qty = ZERO
    open_value = ZERO
    close_qty = ZERO
    close_value = ZERO
    total_fees = ZERO
    net_qty = ZERO
    last_fill_at = None

    for fill in fills:
        if fill.position_id != position.id:
            raise ValidationError(
                "position_id", fill.position_id,
                f"Execution {fill.id} belongs to position {fill.position_id}, not {position.id}",
            )
        total_fees += fill.total_fees
        last_fill_at = fill.executed_at

        if fill.side == opens_with:
            open_qty += fill.quantity
            open_value += fill.gross_value
            net_qty += fill.quantity
        else:
            if fill.quantity > net_qty:
                raise ValidationError(
                    "quantity", fill.quantity,
                    f"Execution {fill.id} closes {fill.quantity} but only {net_qty} is open",
                )
            close_qty += fill.quantity
            close_value += fill.gross_value
            net_qty -= fill.quantity

    updated = position.model_copy(deep=True)
    if not fills:
        return updated

    avg_entry = open_value / open_qty if open_qty > 0 else ZERO
    avg_exit: Optional[Decimal] = close_value / close_qty if close_qty > 0 else None

    cost_of_closed = open_value * close_qty / open_qty if open_qty > 0 else ZERO
    if position.direction == Direction.LONG:
        realized = close_value - cost_of_closed
    else:
        realized = cost_of_closed - close_value

    updated.quantity = net_qty
    updated.avg_entry_price = avg_entry
    updated.avg_exit_price = avg_exit
    updated.total_fees = total_fees
    updated.realized_pnl = realized
    updated.net_pnl = realized - total_fees

    if position.initial_risk is not None and position.initial_risk > 0:
        updated.r_multiple = calculate_r_multiple(updated.net_pnl, position.initial_risk)

    if net_qty == 0 and close_qty > 0:
        updated.status = PositionStatus.CLOSED
        updated.closed_at = last_fill_at
        updated.unrealized_pnl = ZERO
    else:
        updated.status = PositionStatus.OPEN
        updated.closed_at = None

    logger.debug(
        "position_metrics.replayed",
        position_id=position.id,
        fills=len(fills),
        quantity=str(net_qty),
        realized_pnl=str(realized),
        status=updated.status.value,
    )
    return updated


__all__ = ["opening_side", "replay_executions"]
