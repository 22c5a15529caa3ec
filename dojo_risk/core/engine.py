"""
Risk Engine - Entry point the execution subsystem talks to.

Ties the pure risk functions to stored state. Evaluating a trade follows:

    can_open_positions -> calculate_position_size -> tier / recovery
    adjustment -> per-trade, daily and weekly limits

Portfolio health checks derive the account status, record breaker events
on the way into warning, recovery or locked, and block the portfolio's
active strategies when trading has to stop.
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple

import structlog

from dojo_risk.core.config import RiskProfile, RiskProfileLoader, risk_limits_config, risk_profile_config
from dojo_risk.core.errors import PreconditionError
from dojo_risk.core.models import (
    AccountStatus, BreakerLevel, CircuitBreakerEvent, EmergencyStopResult,
    Execution, Portfolio, Position, Strategy, StrategyStatus, SystemMetrics,
    TierAction, TradeDecision, TradeRequest
)
from dojo_risk.risk.calculations import (
    CURRENCY_PLACES, PERCENT_PLACES, QUANTITY_PLACES, calculate_position_size, quantize,
    validate_risk_limits
)
from dojo_risk.risk.circuit_breaker import (
    active_breakers, clear_breaker, drawdown_breaker, raise_breaker,
    refresh_account_status, update_balance
)
from dojo_risk.risk.position_metrics import opening_side, replay_executions
from dojo_risk.risk.tiers import (
    calculate_adjusted_position_size, get_action_for_drawdown,
    get_asset_class_limit, should_block_new_positions
)
from dojo_risk.storage.database import Database, StoreSession
from dojo_risk.strategies.lifecycle import StrategyLifecycleManager, apply_block, apply_unblock

logger = structlog.get_logger(__name__)

# Strategies blocked with a reason containing this are released on recovery exit
RECOVERY_MODE_MARKER = "recovery mode"

EMERGENCY_STOP_PREFIX = "EMERGENCY STOP: "

ALERT_STATUSES = frozenset({AccountStatus.WARNING, AccountStatus.RECOVERY, AccountStatus.LOCKED})
HALT_STATUSES = frozenset({AccountStatus.RECOVERY, AccountStatus.LOCKED})


class RiskEngine:
    """
    Trade evaluation and portfolio risk state over the store.

    Example:
        engine = RiskEngine(database)
        decision = await engine.evaluate_trade(TradeRequest(
            strategy_id=strategy.id, symbol="AAPL", direction=Direction.LONG,
            entry_price=Decimal("100"), stop_loss=Decimal("95"),
            risk_amount=Decimal("500"),
        ))
    """

    def __init__(
        self,
        database: Database,
        profile_loader: Optional[RiskProfileLoader] = None,
        lifecycle: Optional[StrategyLifecycleManager] = None,
    ):
        self.database = database
        self.profile_loader = profile_loader or RiskProfileLoader.from_config(
            risk_profile_config, risk_limits_config
        )
        self.lifecycle = lifecycle or StrategyLifecycleManager(database)

        logger.info("risk_engine.initialized")

    # =========================================================================
    # Trade evaluation
    # =========================================================================

    async def evaluate_trade(self, request: TradeRequest) -> TradeDecision:
        """
        Decide whether a trade may be opened and at what size.

        Raises:
            ValidationError: invalid prices, risk amount or balance
        """
        async with self.database.transaction() as store:
            _, decision = await self._evaluate(store, request)

        logger.info(
            "risk_engine.trade_evaluated",
            strategy_id=request.strategy_id,
            symbol=request.symbol,
            allowed=decision.allowed,
            reason=decision.reason,
            adjusted_quantity=str(decision.adjusted_quantity) if decision.adjusted_quantity is not None else None,
        )
        return decision

    async def open_position(self, request: TradeRequest) -> Position:
        """
        Evaluate and, if allowed, insert the position in the same transaction.

        The position starts with the adjusted quantity and the initial risk
        scaled by the same multiplier. Its opening execution is recorded
        separately through record_execution.

        Raises:
            PreconditionError: the trade is not allowed (details carry reason)
        """
        now = datetime.utcnow()
        async with self.database.transaction() as store:
            strategy, decision = await self._evaluate(store, request)
            if not decision.allowed:
                raise PreconditionError(
                    decision.reason or "Trade not allowed",
                    {"strategy_id": request.strategy_id, "violations": decision.violations},
                )

            # Writing the strategy row bumps its version; a concurrent open, clone
            # or archive that read the same snapshot then fails as stale
            strategy.updated_at = now
            await store.save_strategy(strategy)

            position = Position(
                strategy_id=request.strategy_id,
                symbol=request.symbol,
                direction=request.direction,
                quantity=decision.adjusted_quantity,
                avg_entry_price=request.entry_price,
                stop_loss=request.stop_loss,
                take_profit=request.target_price if request.target_price and request.target_price > 0 else None,
                initial_risk=quantize(decision.sizing.risk_amount * decision.multiplier, CURRENCY_PLACES),
                opened_at=now,
            )
            await store.add_position(position)

        logger.info(
            "risk_engine.position_opened",
            position_id=position.id,
            strategy_id=position.strategy_id,
            symbol=position.symbol,
            direction=position.direction.value,
            quantity=str(position.quantity),
        )
        return position

    async def record_execution(self, execution: Execution) -> Position:
        """
        Store a fill and rebuild its position from the full execution history.

        Raises:
            PreconditionError: unknown position
            ValidationError: the fill would close more than is open
        """
        async with self.database.transaction() as store:
            position = await store.get_position(execution.position_id)
            if position is None:
                raise PreconditionError(
                    f"Position {execution.position_id} not found",
                    {"position_id": execution.position_id},
                )

            history = await store.get_executions(position.id)
            if not history and execution.side != opening_side(position.direction):
                raise PreconditionError(
                    "First execution of a position must open it",
                    {"position_id": position.id, "side": execution.side.value},
                )

            updated = replay_executions(position, history + [execution])
            await store.add_execution(execution)
            await store.save_position(updated)

        logger.info(
            "risk_engine.execution_recorded",
            position_id=updated.id,
            execution_id=execution.id,
            side=execution.side.value,
            quantity=str(execution.quantity),
            status=updated.status.value,
        )
        return updated

    async def _evaluate(
        self,
        store: StoreSession,
        request: TradeRequest,
    ) -> Tuple[Optional[Strategy], TradeDecision]:
        strategy, portfolio, permission = await self.lifecycle.check_permission(store, request.strategy_id)
        if not permission.allowed:
            return strategy, TradeDecision(
                allowed=False,
                reason=permission.reason,
                account_status=portfolio.account_status if portfolio else None,
            )
        if portfolio is None:
            return strategy, TradeDecision(allowed=False, reason="Portfolio not found")

        profile = self.profile_loader.get_profile(portfolio.id)
        actions = profile.drawdown_actions
        drawdown = portfolio.current_drawdown_pct
        status = portfolio.account_status

        if should_block_new_positions(status, drawdown, actions):
            tier = get_action_for_drawdown(drawdown, actions)
            return strategy, TradeDecision(
                allowed=False,
                reason=f"New positions blocked at {drawdown:.2f}% drawdown ({tier.action.value if tier else status.value})",
                account_status=status,
            )

        sizing = calculate_position_size(
            entry_price=request.entry_price,
            stop_loss=request.stop_loss,
            risk_amount=request.risk_amount,
            account_balance=portfolio.current_balance,
            target_price=request.target_price,
        )

        # Scaling a unit size yields the combined tier and recovery multiplier
        multiplier = calculate_adjusted_position_size(Decimal("1"), drawdown, status, actions)
        adjusted_quantity = quantize(sizing.quantity * multiplier, QUANTITY_PLACES)
        effective_risk_percent = quantize(sizing.risk_percent * multiplier, PERCENT_PLACES)

        violations = self._limit_violations(request, profile, effective_risk_percent)
        if strategy.allocated_capital > 0:
            strategy_risk = quantize(
                sizing.risk_amount * multiplier / strategy.allocated_capital * 100, PERCENT_PLACES
            )
            if strategy_risk > strategy.max_risk_percent:
                violations.append(
                    f"Risk per trade ({strategy_risk}% of allocated capital) exceeds "
                    f"strategy limit ({strategy.max_risk_percent}%)"
                )

        asset_limit = None
        if request.asset_class is not None:
            asset_limit = get_asset_class_limit(request.asset_class, profile.asset_class_limits)

        return strategy, TradeDecision(
            allowed=not violations,
            reason="; ".join(violations) if violations else None,
            sizing=sizing,
            adjusted_quantity=adjusted_quantity,
            multiplier=multiplier,
            account_status=status,
            asset_class_limit=asset_limit,
            violations=violations,
            metadata={"drawdown": str(quantize(drawdown, PERCENT_PLACES))},
        )

    def _limit_violations(
        self,
        request: TradeRequest,
        profile: RiskProfile,
        risk_percent: Decimal,
    ) -> List[str]:
        limits = profile.risk_limits
        check = validate_risk_limits(
            risk_percent=risk_percent,
            daily_risk_used=request.daily_risk_used,
            weekly_risk_used=request.weekly_risk_used,
            max_risk_per_trade=limits.max_risk_per_trade,
            max_daily_risk=limits.max_daily_risk,
            max_weekly_risk=limits.max_weekly_risk,
        )
        return list(check.violations)

    # =========================================================================
    # Portfolio health
    # =========================================================================

    async def check_portfolio_health(
        self,
        portfolio_id: str,
        current_balance: Optional[Decimal] = None,
    ) -> SystemMetrics:
        """
        Re-derive the account status, optionally after a new balance.

        Entering warning, recovery or locked appends a portfolio breaker
        event. Entering recovery or locked blocks every active strategy;
        leaving recovery for active releases strategies blocked for it.

        Raises:
            PreconditionError: unknown portfolio
        """
        now = datetime.utcnow()
        async with self.database.transaction() as store:
            portfolio = await self._get_portfolio_for_update(store, portfolio_id)
            actions = self.profile_loader.get_profile(portfolio_id).drawdown_actions
            previous = portfolio.account_status

            if current_balance is not None:
                update_balance(portfolio, current_balance, actions, now)
            else:
                refresh_account_status(portfolio, actions, now)

            status = portfolio.account_status
            drawdown = portfolio.current_drawdown_pct

            if status != previous and status in ALERT_STATUSES:
                tier = get_action_for_drawdown(drawdown, actions)
                if tier is not None:
                    event = drawdown_breaker(drawdown, tier, now)
                else:
                    event = CircuitBreakerEvent(
                        level=BreakerLevel.PORTFOLIO,
                        triggered_by="drawdown",
                        reason=f"Drawdown of {drawdown:.2f}% entered {status.value} mode",
                        triggered_at=now,
                    )
                portfolio.breaker_events.append(event)
                logger.warning(
                    "risk_engine.breaker_recorded",
                    portfolio_id=portfolio_id,
                    event_id=event.id,
                    status=status.value,
                    drawdown=str(quantize(drawdown, PERCENT_PLACES)),
                )

            if status != previous and status in HALT_STATUSES:
                await self._block_active_strategies(
                    store,
                    portfolio_id,
                    f"Portfolio entered {status.value} mode at {drawdown:.2f}% drawdown",
                    now,
                )
            elif previous == AccountStatus.RECOVERY and status == AccountStatus.ACTIVE:
                await self._release_recovery_blocks(store, portfolio_id, now)

            await store.save_portfolio(portfolio)
            open_positions = await store.count_portfolio_open_positions(portfolio_id)

        return SystemMetrics(
            portfolio_id=portfolio_id,
            current_drawdown=quantize(drawdown, PERCENT_PLACES),
            peak_balance=portfolio.peak_balance,
            current_balance=portfolio.current_balance,
            open_positions=open_positions,
            account_status=status,
            previous_status=previous,
            active_breakers=active_breakers(portfolio.breaker_events, now),
            last_updated=now,
        )

    async def check_recovery_conditions(self, portfolio_id: str) -> bool:
        """
        Leave recovery mode once drawdown is back above the exit threshold.

        Returns True if the portfolio left recovery.
        """
        now = datetime.utcnow()
        async with self.database.transaction() as store:
            portfolio = await self._get_portfolio_for_update(store, portfolio_id)
            if portfolio.account_status != AccountStatus.RECOVERY:
                return False

            actions = self.profile_loader.get_profile(portfolio_id).drawdown_actions
            if actions.recovery_rules is None:
                return False

            refresh_account_status(portfolio, actions, now)
            if portfolio.account_status != AccountStatus.ACTIVE:
                return False

            released = await self._release_recovery_blocks(store, portfolio_id, now)
            await store.save_portfolio(portfolio)

        logger.info("risk_engine.recovery_exited", portfolio_id=portfolio_id, strategies_released=released)
        return True

    async def raise_breaker(
        self,
        portfolio_id: str,
        level: BreakerLevel,
        triggered_by: str,
        reason: str,
        action: Optional[TierAction] = None,
        expires_at: Optional[datetime] = None,
    ) -> CircuitBreakerEvent:
        """Persist a new breaker event and the status it implies."""
        async with self.database.transaction() as store:
            portfolio = await self._get_portfolio_for_update(store, portfolio_id)
            actions = self.profile_loader.get_profile(portfolio_id).drawdown_actions
            event = raise_breaker(
                portfolio, level, triggered_by, reason, actions,
                action=action, expires_at=expires_at,
            )
            await store.save_portfolio(portfolio)
        return event

    async def clear_breaker(self, portfolio_id: str, event_id: str) -> Portfolio:
        """Clear a breaker event and persist the re-derived status."""
        async with self.database.transaction() as store:
            portfolio = await self._get_portfolio_for_update(store, portfolio_id)
            actions = self.profile_loader.get_profile(portfolio_id).drawdown_actions
            clear_breaker(portfolio, event_id, actions)
            await store.save_portfolio(portfolio)
        return portfolio

    async def emergency_stop(self, portfolio_id: str, reason: str) -> EmergencyStopResult:
        """
        Lock the portfolio and block every strategy that is not closed.

        Positions are left to the execution subsystem to unwind.
        """
        stop_reason = f"{EMERGENCY_STOP_PREFIX}{reason}"
        now = datetime.utcnow()
        async with self.database.transaction() as store:
            portfolio = await self._get_portfolio_for_update(store, portfolio_id)
            actions = self.profile_loader.get_profile(portfolio_id).drawdown_actions
            raise_breaker(
                portfolio, BreakerLevel.PORTFOLIO, "emergency_stop", stop_reason, actions,
                action=TierAction.LOCKED, now=now,
            )
            await store.save_portfolio(portfolio)

            strategies = await store.list_strategies(
                portfolio_id,
                [s for s in StrategyStatus if s != StrategyStatus.CLOSED],
                for_update=True,
            )
            for strategy in strategies:
                apply_block(strategy, stop_reason, now)
                await store.save_strategy(strategy)

            open_positions = await store.count_portfolio_open_positions(portfolio_id)

        logger.critical(
            "risk_engine.emergency_stop",
            portfolio_id=portfolio_id,
            reason=reason,
            strategies_blocked=len(strategies),
            open_positions=open_positions,
        )
        return EmergencyStopResult(
            portfolio_id=portfolio_id,
            portfolio_locked=portfolio.account_status == AccountStatus.LOCKED,
            strategies_blocked=len(strategies),
            open_positions=open_positions,
            reason=stop_reason,
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _get_portfolio_for_update(self, store: StoreSession, portfolio_id: str) -> Portfolio:
        portfolio = await store.get_portfolio(portfolio_id, for_update=True)
        if portfolio is None:
            raise PreconditionError(f"Portfolio {portfolio_id} not found", {"portfolio_id": portfolio_id})
        return portfolio

    async def _block_active_strategies(
        self,
        store: StoreSession,
        portfolio_id: str,
        reason: str,
        now: datetime,
    ) -> int:
        strategies = await store.list_strategies(portfolio_id, [StrategyStatus.ACTIVE], for_update=True)
        for strategy in strategies:
            apply_block(strategy, reason, now)
            await store.save_strategy(strategy)

        if strategies:
            logger.warning(
                "risk_engine.strategies_blocked",
                portfolio_id=portfolio_id,
                count=len(strategies),
                reason=reason,
            )
        return len(strategies)

    async def _release_recovery_blocks(self, store: StoreSession, portfolio_id: str, now: datetime) -> int:
        strategies = await store.list_strategies(portfolio_id, [StrategyStatus.BLOCKED], for_update=True)
        released = 0
        for strategy in strategies:
            if strategy.blocked_reason and RECOVERY_MODE_MARKER in strategy.blocked_reason:
                apply_unblock(strategy, now)
                await store.save_strategy(strategy)
                released += 1
        return released


__all__ = ["RiskEngine", "RECOVERY_MODE_MARKER", "EMERGENCY_STOP_PREFIX"]
