"""Database storage for portfolios, strategies, positions and breaker events.

Every mutable row carries a version counter (SQLAlchemy version_id_col): an
UPDATE issued from a stale read matches no row, SQLAlchemy raises
StaleDataError and the transaction is rolled back as a
ConcurrentModificationError. Rows read for mutation are selected FOR UPDATE
where the backend supports it.
"""
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import AsyncIterator, Iterable, List, Optional, Tuple

import structlog
from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Integer, JSON, Numeric, String,
    func, select
)
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.pool import StaticPool

from dojo_risk.core.config import database_config
from dojo_risk.core.errors import ConcurrentModificationError, PreconditionError
from dojo_risk.core.models import (
    AccountStatus, BreakerLevel, CircuitBreakerEvent, Direction, Execution,
    ExecutionSide, Portfolio, Position, PositionStatus, Strategy,
    StrategyStatus, TierAction
)

logger = structlog.get_logger(__name__)

Base = declarative_base()


class PortfolioModel(Base):
    """SQLAlchemy model for portfolios."""
    __tablename__ = 'portfolios'

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False, default="")
    current_balance = Column(Numeric(36, 18), nullable=False)
    peak_balance = Column(Numeric(36, 18), nullable=False)
    account_status = Column(String, nullable=False, default=AccountStatus.ACTIVE.value)
    recovery_exited_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=True)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class StrategyModel(Base):
    """SQLAlchemy model for strategies."""
    __tablename__ = 'strategies'

    id = Column(String, primary_key=True)
    portfolio_id = Column(String, ForeignKey('portfolios.id'), nullable=False, index=True)
    # Plain column: lineage integrity is checked by the lifecycle walk
    parent_strategy_id = Column(String, nullable=True, index=True)
    name = Column(String, nullable=False)
    description = Column(String, nullable=True)
    status = Column(String, nullable=False)
    blocked_reason = Column(String, nullable=True)
    entry_rules = Column(JSON, nullable=True)
    exit_rules = Column(JSON, nullable=True)
    position_sizing_rules = Column(JSON, nullable=True)
    max_positions = Column(Integer, nullable=False)
    max_risk_percent = Column(Numeric(36, 18), nullable=False)
    max_drawdown = Column(Numeric(36, 18), nullable=False)
    allocated_capital = Column(Numeric(36, 18), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=True)
    closed_at = Column(DateTime, nullable=True)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class PositionModel(Base):
    """SQLAlchemy model for positions."""
    __tablename__ = 'positions'

    id = Column(String, primary_key=True)
    strategy_id = Column(String, ForeignKey('strategies.id'), nullable=False, index=True)
    symbol = Column(String, nullable=False)
    direction = Column(String, nullable=False)
    quantity = Column(Numeric(36, 18), nullable=False, default=0)
    avg_entry_price = Column(Numeric(36, 18), nullable=False, default=0)
    avg_exit_price = Column(Numeric(36, 18), nullable=True)
    stop_loss = Column(Numeric(36, 18), nullable=True)
    take_profit = Column(Numeric(36, 18), nullable=True)
    initial_risk = Column(Numeric(36, 18), nullable=True)
    realized_pnl = Column(Numeric(36, 18), default=0)
    unrealized_pnl = Column(Numeric(36, 18), default=0)
    net_pnl = Column(Numeric(36, 18), default=0)
    total_fees = Column(Numeric(36, 18), default=0)
    r_multiple = Column(Numeric(36, 18), nullable=True)
    status = Column(String, nullable=False, index=True)
    opened_at = Column(DateTime, default=datetime.utcnow)
    closed_at = Column(DateTime, nullable=True)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class ExecutionModel(Base):
    """SQLAlchemy model for executions (immutable once written)."""
    __tablename__ = 'executions'

    id = Column(String, primary_key=True)
    position_id = Column(String, ForeignKey('positions.id'), nullable=False, index=True)
    side = Column(String, nullable=False)
    quantity = Column(Numeric(36, 18), nullable=False)
    price = Column(Numeric(36, 18), nullable=False)
    commission = Column(Numeric(36, 18), default=0)
    exchange_fees = Column(Numeric(36, 18), default=0)
    sec_fees = Column(Numeric(36, 18), default=0)
    taf_fees = Column(Numeric(36, 18), default=0)
    clearing_fees = Column(Numeric(36, 18), default=0)
    other_fees = Column(Numeric(36, 18), default=0)
    executed_at = Column(DateTime, nullable=False)


class CircuitBreakerEventModel(Base):
    """SQLAlchemy model for circuit breaker events (append-only)."""
    __tablename__ = 'circuit_breaker_events'

    id = Column(String, primary_key=True)
    portfolio_id = Column(String, ForeignKey('portfolios.id'), nullable=False, index=True)
    level = Column(String, nullable=False)
    triggered_by = Column(String, nullable=False)
    reason = Column(String, nullable=False)
    action = Column(String, nullable=True)
    triggered_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=True)
    cleared_at = Column(DateTime, nullable=True)
    notified = Column(Boolean, default=False)


class StoreSession:
    """
    Repository bound to one database transaction.

    Obtained from Database.transaction(); everything done through one
    StoreSession commits or rolls back together.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    # Portfolio operations
    async def add_portfolio(self, portfolio: Portfolio) -> None:
        self.session.add(PortfolioModel(
            id=portfolio.id,
            name=portfolio.name,
            current_balance=portfolio.current_balance,
            peak_balance=portfolio.peak_balance,
            account_status=portfolio.account_status.value,
            recovery_exited_at=portfolio.recovery_exited_at,
            created_at=portfolio.created_at,
            updated_at=portfolio.updated_at,
        ))
        await self.session.flush()
        await self._sync_breaker_events(portfolio)

    async def get_portfolio(self, portfolio_id: str, for_update: bool = False) -> Optional[Portfolio]:
        """Get a portfolio with its breaker events (oldest first)."""
        query = select(PortfolioModel).where(PortfolioModel.id == portfolio_id)
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query)
        db_portfolio = result.scalar_one_or_none()

        if db_portfolio is None:
            return None

        events = await self.session.execute(
            select(CircuitBreakerEventModel)
            .where(CircuitBreakerEventModel.portfolio_id == portfolio_id)
            .order_by(CircuitBreakerEventModel.triggered_at)
        )
        return self._portfolio_from_model(db_portfolio, events.scalars().all())

    async def save_portfolio(self, portfolio: Portfolio) -> None:
        """Update balances and status; append new breaker events, stamp cleared ones."""
        db_portfolio = await self.session.get(PortfolioModel, portfolio.id)
        if db_portfolio is None:
            raise PreconditionError(f"Portfolio {portfolio.id} not found", {"portfolio_id": portfolio.id})

        db_portfolio.current_balance = portfolio.current_balance
        db_portfolio.peak_balance = portfolio.peak_balance
        db_portfolio.account_status = portfolio.account_status.value
        db_portfolio.recovery_exited_at = portfolio.recovery_exited_at
        db_portfolio.updated_at = portfolio.updated_at or datetime.utcnow()
        await self._sync_breaker_events(portfolio)
        await self.session.flush()

    async def _sync_breaker_events(self, portfolio: Portfolio) -> None:
        for event in portfolio.breaker_events:
            db_event = await self.session.get(CircuitBreakerEventModel, event.id)
            if db_event is None:
                self.session.add(CircuitBreakerEventModel(
                    id=event.id,
                    portfolio_id=portfolio.id,
                    level=event.level.value,
                    triggered_by=event.triggered_by,
                    reason=event.reason,
                    action=event.action.value if event.action else None,
                    triggered_at=event.triggered_at,
                    expires_at=event.expires_at,
                    cleared_at=event.cleared_at,
                ))
            elif db_event.cleared_at is None and event.cleared_at is not None:
                db_event.cleared_at = event.cleared_at
        await self.session.flush()

    # Strategy operations
    async def add_strategy(self, strategy: Strategy) -> None:
        self.session.add(StrategyModel(
            id=strategy.id,
            portfolio_id=strategy.portfolio_id,
            parent_strategy_id=strategy.parent_strategy_id,
            name=strategy.name,
            description=strategy.description,
            status=strategy.status.value,
            blocked_reason=strategy.blocked_reason,
            entry_rules=self._dump_rules(strategy.entry_rules),
            exit_rules=self._dump_rules(strategy.exit_rules),
            position_sizing_rules=self._dump_rules(strategy.position_sizing_rules),
            max_positions=strategy.max_positions,
            max_risk_percent=strategy.max_risk_percent,
            max_drawdown=strategy.max_drawdown,
            allocated_capital=strategy.allocated_capital,
            created_at=strategy.created_at,
            updated_at=strategy.updated_at,
            closed_at=strategy.closed_at,
        ))
        await self.session.flush()

    async def get_strategy(self, strategy_id: str, for_update: bool = False) -> Optional[Strategy]:
        query = select(StrategyModel).where(StrategyModel.id == strategy_id)
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query)
        db_strategy = result.scalar_one_or_none()
        if db_strategy is None:
            return None
        return self._strategy_from_model(db_strategy)

    async def save_strategy(self, strategy: Strategy) -> None:
        """Write status, reason, rules and limits of an existing strategy."""
        db_strategy = await self.session.get(StrategyModel, strategy.id)
        if db_strategy is None:
            raise PreconditionError(f"Strategy {strategy.id} not found", {"strategy_id": strategy.id})

        db_strategy.name = strategy.name
        db_strategy.description = strategy.description
        db_strategy.status = strategy.status.value
        db_strategy.blocked_reason = strategy.blocked_reason
        db_strategy.entry_rules = self._dump_rules(strategy.entry_rules)
        db_strategy.exit_rules = self._dump_rules(strategy.exit_rules)
        db_strategy.position_sizing_rules = self._dump_rules(strategy.position_sizing_rules)
        db_strategy.max_positions = strategy.max_positions
        db_strategy.max_risk_percent = strategy.max_risk_percent
        db_strategy.max_drawdown = strategy.max_drawdown
        db_strategy.allocated_capital = strategy.allocated_capital
        db_strategy.updated_at = strategy.updated_at or datetime.utcnow()
        db_strategy.closed_at = strategy.closed_at
        await self.session.flush()

    async def list_strategies(
        self,
        portfolio_id: str,
        statuses: Optional[Iterable[StrategyStatus]] = None,
        for_update: bool = False,
    ) -> List[Strategy]:
        """Strategies of a portfolio, oldest first, optionally filtered by status."""
        query = (
            select(StrategyModel)
            .where(StrategyModel.portfolio_id == portfolio_id)
            .order_by(StrategyModel.created_at)
        )
        if statuses is not None:
            query = query.where(StrategyModel.status.in_([s.value for s in statuses]))
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query)
        return [self._strategy_from_model(s) for s in result.scalars().all()]

    # Position operations
    async def add_position(self, position: Position) -> None:
        self.session.add(PositionModel(
            id=position.id,
            strategy_id=position.strategy_id,
            symbol=position.symbol,
            direction=position.direction.value,
            quantity=position.quantity,
            avg_entry_price=position.avg_entry_price,
            avg_exit_price=position.avg_exit_price,
            stop_loss=position.stop_loss,
            take_profit=position.take_profit,
            initial_risk=position.initial_risk,
            realized_pnl=position.realized_pnl,
            unrealized_pnl=position.unrealized_pnl,
            net_pnl=position.net_pnl,
            total_fees=position.total_fees,
            r_multiple=position.r_multiple,
            status=position.status.value,
            opened_at=position.opened_at,
            closed_at=position.closed_at,
        ))
        await self.session.flush()

    async def get_position(self, position_id: str) -> Optional[Position]:
        db_position = await self.session.get(PositionModel, position_id)
        if db_position is None:
            return None
        return self._position_from_model(db_position)

    async def save_position(self, position: Position) -> None:
        """Write the fields rebuilt from executions."""
        db_position = await self.session.get(PositionModel, position.id)
        if db_position is None:
            raise PreconditionError(f"Position {position.id} not found", {"position_id": position.id})

        db_position.quantity = position.quantity
        db_position.avg_entry_price = position.avg_entry_price
        db_position.avg_exit_price = position.avg_exit_price
        db_position.stop_loss = position.stop_loss
        db_position.take_profit = position.take_profit
        db_position.realized_pnl = position.realized_pnl
        db_position.unrealized_pnl = position.unrealized_pnl
        db_position.net_pnl = position.net_pnl
        db_position.total_fees = position.total_fees
        db_position.r_multiple = position.r_multiple
        db_position.status = position.status.value
        db_position.closed_at = position.closed_at
        await self.session.flush()

    async def get_open_positions(self, strategy_id: str) -> List[Position]:
        result = await self.session.execute(
            select(PositionModel).where(
                PositionModel.strategy_id == strategy_id,
                PositionModel.status == PositionStatus.OPEN.value,
            ).order_by(PositionModel.opened_at)
        )
        return [self._position_from_model(p) for p in result.scalars().all()]

    async def count_open_positions(self, strategy_id: str) -> int:
        result = await self.session.execute(
            select(func.count(PositionModel.id)).where(
                PositionModel.strategy_id == strategy_id,
                PositionModel.status == PositionStatus.OPEN.value,
            )
        )
        return int(result.scalar_one())

    async def count_portfolio_open_positions(self, portfolio_id: str) -> int:
        result = await self.session.execute(
            select(func.count(PositionModel.id))
            .join(StrategyModel, StrategyModel.id == PositionModel.strategy_id)
            .where(
                StrategyModel.portfolio_id == portfolio_id,
                PositionModel.status == PositionStatus.OPEN.value,
            )
        )
        return int(result.scalar_one())

    async def position_summary(self, strategy_id: str) -> Tuple[int, int, Decimal]:
        """(open count, closed count, summed net P&L) for a strategy."""
        result = await self.session.execute(
            select(PositionModel.status, PositionModel.net_pnl)
            .where(PositionModel.strategy_id == strategy_id)
        )
        open_count = 0
        closed_count = 0
        net_pnl = Decimal("0")
        for status, pnl in result.all():
            if status == PositionStatus.OPEN.value:
                open_count += 1
            else:
                closed_count += 1
            net_pnl += Decimal(pnl or 0)
        return open_count, closed_count, net_pnl

    # Execution operations
    async def add_execution(self, execution: Execution) -> None:
        self.session.add(ExecutionModel(
            id=execution.id,
            position_id=execution.position_id,
            side=execution.side.value,
            quantity=execution.quantity,
            price=execution.price,
            commission=execution.commission,
            exchange_fees=execution.exchange_fees,
            sec_fees=execution.sec_fees,
            taf_fees=execution.taf_fees,
            clearing_fees=execution.clearing_fees,
            other_fees=execution.other_fees,
            executed_at=execution.executed_at,
        ))
        await self.session.flush()

    async def get_executions(self, position_id: str) -> List[Execution]:
        result = await self.session.execute(
            select(ExecutionModel)
            .where(ExecutionModel.position_id == position_id)
            .order_by(ExecutionModel.executed_at)
        )
        return [self._execution_from_model(e) for e in result.scalars().all()]

    # Helpers
    @staticmethod
    def _dump_rules(rules) -> Optional[dict]:
        return rules.model_dump(mode="json") if rules is not None else None

    def _portfolio_from_model(
        self,
        model: PortfolioModel,
        events: Iterable[CircuitBreakerEventModel],
    ) -> Portfolio:
        """Convert DB model to Portfolio object."""
        return Portfolio(
            id=model.id,
            name=model.name,
            current_balance=model.current_balance,
            peak_balance=model.peak_balance,
            account_status=AccountStatus(model.account_status),
            breaker_events=[self._event_from_model(e) for e in events],
            recovery_exited_at=model.recovery_exited_at,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    def _event_from_model(self, model: CircuitBreakerEventModel) -> CircuitBreakerEvent:
        return CircuitBreakerEvent(
            id=model.id,
            level=BreakerLevel(model.level),
            triggered_by=model.triggered_by,
            reason=model.reason,
            action=TierAction(model.action) if model.action else None,
            triggered_at=model.triggered_at,
            expires_at=model.expires_at,
            cleared_at=model.cleared_at,
        )

    def _strategy_from_model(self, model: StrategyModel) -> Strategy:
        """Convert DB model to Strategy object."""
        return Strategy(
            id=model.id,
            portfolio_id=model.portfolio_id,
            parent_strategy_id=model.parent_strategy_id,
            name=model.name,
            description=model.description,
            status=StrategyStatus(model.status),
            blocked_reason=model.blocked_reason,
            entry_rules=model.entry_rules,
            exit_rules=model.exit_rules,
            position_sizing_rules=model.position_sizing_rules,
            max_positions=model.max_positions,
            max_risk_percent=model.max_risk_percent,
            max_drawdown=model.max_drawdown,
            allocated_capital=model.allocated_capital,
            created_at=model.created_at,
            updated_at=model.updated_at,
            closed_at=model.closed_at,
        )

    def _position_from_model(self, model: PositionModel) -> Position:
        """Convert DB model to Position object."""
        return Position(
            id=model.id,
            strategy_id=model.strategy_id,
            symbol=model.symbol,
            direction=Direction(model.direction),
            quantity=model.quantity,
            avg_entry_price=model.avg_entry_price,
            avg_exit_price=model.avg_exit_price,
            stop_loss=model.stop_loss,
            take_profit=model.take_profit,
            initial_risk=model.initial_risk,
            realized_pnl=model.realized_pnl or Decimal("0"),
            unrealized_pnl=model.unrealized_pnl or Decimal("0"),
            net_pnl=model.net_pnl or Decimal("0"),
            total_fees=model.total_fees or Decimal("0"),
            r_multiple=model.r_multiple,
            status=PositionStatus(model.status),
            opened_at=model.opened_at,
            closed_at=model.closed_at,
        )

    def _execution_from_model(self, model: ExecutionModel) -> Execution:
        return Execution(
            id=model.id,
            position_id=model.position_id,
            side=ExecutionSide(model.side),
            quantity=model.quantity,
            price=model.price,
            commission=model.commission or Decimal("0"),
            exchange_fees=model.exchange_fees or Decimal("0"),
            sec_fees=model.sec_fees or Decimal("0"),
            taf_fees=model.taf_fees or Decimal("0"),
            clearing_fees=model.clearing_fees or Decimal("0"),
            other_fees=model.other_fees or Decimal("0"),
            executed_at=model.executed_at,
        )


class Database:
    """Async database interface."""

    def __init__(self, db_url: Optional[str] = None, echo: Optional[bool] = None):
        # Convert SQLite URL to async version if needed
        db_url = db_url or database_config.database_url
        if db_url.startswith('sqlite:///') and not db_url.startswith('sqlite+aiosqlite:///'):
            db_url = db_url.replace('sqlite:///', 'sqlite+aiosqlite:///')
        self.db_url = db_url

        engine_kwargs = {"echo": database_config.database_echo if echo is None else echo}
        if db_url.startswith('sqlite') and ':memory:' in db_url:
            # One shared connection, otherwise every session sees an empty database
            engine_kwargs["poolclass"] = StaticPool

        self.engine: AsyncEngine = create_async_engine(db_url, **engine_kwargs)
        self.session_maker = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def initialize(self):
        """Create tables (and the SQLite file's directory)."""
        url = make_url(self.db_url)
        if url.get_backend_name() == 'sqlite' and url.database and url.database != ':memory:':
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database.initialized", url=url.render_as_string(hide_password=True))

    async def close(self):
        """Close database connection."""
        await self.engine.dispose()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[StoreSession]:
        """
        Run a unit of work atomically.

        Commits when the block exits normally, rolls back on any exception.
        Lost updates surface as ConcurrentModificationError.
        """
        async with self.session_maker() as session:
            try:
                async with session.begin():
                    yield StoreSession(session)
            except StaleDataError as exc:
                logger.warning("database.concurrent_modification", error=str(exc))
                raise ConcurrentModificationError(
                    "Record was modified by a concurrent transaction",
                    {"error": str(exc)},
                ) from exc

    # One-shot reads
    async def get_portfolio(self, portfolio_id: str) -> Optional[Portfolio]:
        async with self.transaction() as store:
            return await store.get_portfolio(portfolio_id)

    async def get_strategy(self, strategy_id: str) -> Optional[Strategy]:
        async with self.transaction() as store:
            return await store.get_strategy(strategy_id)

    async def get_position(self, position_id: str) -> Optional[Position]:
        async with self.transaction() as store:
            return await store.get_position(position_id)

    async def get_open_positions(self, strategy_id: str) -> List[Position]:
        async with self.transaction() as store:
            return await store.get_open_positions(strategy_id)

    async def list_strategies(
        self,
        portfolio_id: str,
        statuses: Optional[Iterable[StrategyStatus]] = None,
    ) -> List[Strategy]:
        async with self.transaction() as store:
            return await store.list_strategies(portfolio_id, statuses)

    # One-shot writes
    async def add_portfolio(self, portfolio: Portfolio) -> None:
        async with self.transaction() as store:
            await store.add_portfolio(portfolio)

    async def save_portfolio(self, portfolio: Portfolio) -> None:
        async with self.transaction() as store:
            await store.save_portfolio(portfolio)

    async def add_position(self, position: Position) -> None:
        async with self.transaction() as store:
            await store.add_position(position)
