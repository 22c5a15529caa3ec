"""Circuit breaker events and the derived portfolio account status.

The account status is a view, never an input. It is re-derived whenever the
balance changes or a breaker event is raised or cleared, with this
precedence:

    1. an active portfolio-level breaker standing for "locked"   -> LOCKED
    2. drawdown tier "locked"                                    -> LOCKED
    3. previously RECOVERY and recovery rules configured:
           drawdown above exit_percent                           -> ACTIVE
           otherwise                                             -> RECOVERY
    4. recovery exited and drawdown still above exit_percent     -> ACTIVE
    5. tier "defensive", or drawdown <= trigger_percent          -> RECOVERY
    6. tier "reduce" / "warning"                                 -> WARNING
    7. no tier                                                   -> ACTIVE

Rules 3 and 4 are the hysteresis: once in recovery the portfolio stays there
until drawdown clears exit_percent, then goes straight back to ACTIVE and
stays there while a shallower tier applies. The exit is remembered on the
portfolio (recovery_exited_at) until drawdown falls back to exit_percent or
no tier applies any more.

Breaker events are append-only. Clearing stamps cleared_at.
"""
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional

import structlog

from dojo_risk.core.errors import PreconditionError, ValidationError
from dojo_risk.core.models import (
    AccountStatus, BreakerLevel, CircuitBreakerEvent, DrawdownActions,
    DrawdownTier, Portfolio, TierAction
)
from dojo_risk.risk.calculations import Number, to_decimal
from dojo_risk.risk.tiers import account_status_for_tier, get_action_for_drawdown

logger = structlog.get_logger(__name__)


def active_breakers(
    events: Iterable[CircuitBreakerEvent],
    now: Optional[datetime] = None,
    level: Optional[BreakerLevel] = None,
) -> List[CircuitBreakerEvent]:
    """Events neither cleared nor expired at `now`, optionally for one level."""
    now = now or datetime.utcnow()
    return [
        event for event in events
        if event.is_active(now) and (level is None or event.level == level)
    ]


def has_portfolio_lock(
    events: Iterable[CircuitBreakerEvent],
    now: Optional[datetime] = None,
) -> bool:
    return any(
        event.action == TierAction.LOCKED
        for event in active_breakers(events, now, BreakerLevel.PORTFOLIO)
    )


def derive_account_status(
    drawdown: Number,
    events: Iterable[CircuitBreakerEvent],
    drawdown_actions: DrawdownActions,
    previous_status: Optional[AccountStatus] = None,
    now: Optional[datetime] = None,
    recovery_exited: bool = False,
) -> AccountStatus:
    """
    Derive the account status from drawdown, breaker events and the previous
    status (for recovery hysteresis). See the module docstring for the rules.

    recovery_exited marks an account that left recovery and has not fallen
    back to exit_percent since; it stays active through shallower tiers.
    """
    value = to_decimal("drawdown", drawdown)
    if value > 0:
        raise ValidationError("drawdown", drawdown, "drawdown must be <= 0")

    if has_portfolio_lock(events, now):
        return AccountStatus.LOCKED

    tier = get_action_for_drawdown(value, drawdown_actions)
    if tier is not None and tier.action == TierAction.LOCKED:
        return AccountStatus.LOCKED

    rules = drawdown_actions.recovery_rules
    if rules is not None and previous_status == AccountStatus.RECOVERY:
        if value > rules.exit_percent:
            return AccountStatus.ACTIVE
        return AccountStatus.RECOVERY
    if rules is not None and recovery_exited and value > rules.exit_percent:
        return AccountStatus.ACTIVE

    status = account_status_for_tier(tier)
    if rules is not None and value <= rules.trigger_percent:
        status = AccountStatus.RECOVERY
    return status


def refresh_account_status(
    portfolio: Portfolio,
    drawdown_actions: DrawdownActions,
    now: Optional[datetime] = None,
) -> AccountStatus:
    """Re-derive and store portfolio.account_status. Returns the new status."""
    now = now or datetime.utcnow()
    previous = portfolio.account_status
    drawdown = portfolio.current_drawdown_pct
    status = derive_account_status(
        drawdown,
        portfolio.breaker_events,
        drawdown_actions,
        previous_status=previous,
        now=now,
        recovery_exited=portfolio.recovery_exited_at is not None,
    )

    rules = drawdown_actions.recovery_rules
    if rules is not None and previous == AccountStatus.RECOVERY and status == AccountStatus.ACTIVE:
        portfolio.recovery_exited_at = now
        portfolio.updated_at = now
    elif portfolio.recovery_exited_at is not None and (
        rules is None
        or drawdown <= rules.exit_percent
        or get_action_for_drawdown(drawdown, drawdown_actions) is None
    ):
        portfolio.recovery_exited_at = None
        portfolio.updated_at = now

    if status != previous:
        portfolio.account_status = status
        portfolio.updated_at = now
        logger.info(
            "circuit_breaker.status_changed",
            portfolio_id=portfolio.id,
            previous=previous.value,
            status=status.value,
            drawdown=str(portfolio.current_drawdown_pct),
        )
    return status


def update_balance(
    portfolio: Portfolio,
    new_balance: Number,
    drawdown_actions: DrawdownActions,
    now: Optional[datetime] = None,
) -> AccountStatus:
    """Record a new balance, move the peak up if needed, re-derive status."""
    balance = to_decimal("current_balance", new_balance)
    if balance < 0:
        raise ValidationError("current_balance", new_balance, "current_balance cannot be negative")

    now = now or datetime.utcnow()
    portfolio.current_balance = balance
    if balance > portfolio.peak_balance:
        portfolio.peak_balance = balance
        logger.info("circuit_breaker.new_peak", portfolio_id=portfolio.id, peak=str(balance))
    portfolio.updated_at = now
    return refresh_account_status(portfolio, drawdown_actions, now)


def raise_breaker(
    portfolio: Portfolio,
    level: BreakerLevel,
    triggered_by: str,
    reason: str,
    drawdown_actions: DrawdownActions,
    action: Optional[TierAction] = None,
    expires_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> CircuitBreakerEvent:
    """Append a breaker event to the portfolio and re-derive its status."""
    now = now or datetime.utcnow()
    if expires_at is not None and expires_at <= now:
        raise ValidationError("expires_at", expires_at, "expires_at must be in the future")

    event = CircuitBreakerEvent(
        level=level,
        triggered_by=triggered_by,
        reason=reason,
        action=action,
        triggered_at=now,
        expires_at=expires_at,
    )
    portfolio.breaker_events.append(event)

    logger.warning(
        "circuit_breaker.raised",
        portfolio_id=portfolio.id,
        event_id=event.id,
        level=level.value,
        action=action.value if action else None,
        triggered_by=triggered_by,
        reason=reason,
    )
    refresh_account_status(portfolio, drawdown_actions, now)
    return event


def clear_breaker(
    portfolio: Portfolio,
    event_id: str,
    drawdown_actions: DrawdownActions,
    now: Optional[datetime] = None,
) -> CircuitBreakerEvent:
    """
    Clear a breaker event by id and re-derive the status.

    Clearing an already cleared event keeps the original cleared_at.

    Raises:
        PreconditionError: if the portfolio has no event with that id
    """
    now = now or datetime.utcnow()
    event = next((e for e in portfolio.breaker_events if e.id == event_id), None)
    if event is None:
        raise PreconditionError(
            f"Circuit breaker event {event_id} not found",
            {"portfolio_id": portfolio.id, "event_id": event_id},
        )

    if event.cleared_at is None:
        event.cleared_at = now
        logger.info("circuit_breaker.cleared", portfolio_id=portfolio.id, event_id=event_id)

    refresh_account_status(portfolio, drawdown_actions, now)
    return event


def drawdown_breaker(
    drawdown: Decimal,
    tier: DrawdownTier,
    now: Optional[datetime] = None,
) -> CircuitBreakerEvent:
    """Portfolio-level event recording that a drawdown tier was entered."""
    return CircuitBreakerEvent(
        level=BreakerLevel.PORTFOLIO,
        triggered_by="drawdown",
        reason=f"Drawdown of {drawdown:.2f}% triggered {tier.action.value} action (threshold {tier.threshold}%)",
        action=tier.action,
        triggered_at=now or datetime.utcnow(),
    )


__all__ = [
    "active_breakers",
    "has_portfolio_lock",
    "derive_account_status",
    "refresh_account_status",
    "update_balance",
    "raise_breaker",
    "clear_breaker",
    "drawdown_breaker",
]
