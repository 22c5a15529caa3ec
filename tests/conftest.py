"""Pytest fixtures and utilities for the Dojo risk core test suite."""
import pytest
import pytest_asyncio
from datetime import datetime, timedelta
from decimal import Decimal

from dojo_risk.core.config import RiskProfileLoader
from dojo_risk.core.engine import RiskEngine
from dojo_risk.core.models import (
    Direction, DrawdownActions, DrawdownTier, Portfolio, Position,
    RecoveryRules, Strategy, StrategyStatus, TierAction
)
from dojo_risk.storage.database import Database
from dojo_risk.strategies.lifecycle import StrategyLifecycleManager


# =============================================================================
# Risk Configuration Fixtures
# =============================================================================

@pytest.fixture
def reference_tiers():
    """The reference tier list: -5 warning, -10 reduce, -15 defensive, -20 locked."""
    return [
        DrawdownTier(threshold=Decimal("-5"), action=TierAction.WARNING),
        DrawdownTier(
            threshold=Decimal("-10"), action=TierAction.REDUCE,
            position_size_multiplier=Decimal("0.5"),
        ),
        DrawdownTier(
            threshold=Decimal("-15"), action=TierAction.DEFENSIVE,
            position_size_multiplier=Decimal("0.25"),
        ),
        DrawdownTier(threshold=Decimal("-20"), action=TierAction.LOCKED),
    ]


@pytest.fixture
def drawdown_actions(reference_tiers):
    """Reference tiers without recovery rules."""
    return DrawdownActions(tiers=reference_tiers)


@pytest.fixture
def recovery_actions(reference_tiers):
    """Reference tiers with recovery: enter at -10, leave above -5, half size."""
    return DrawdownActions(
        tiers=reference_tiers,
        recovery_rules=RecoveryRules(
            trigger_percent=Decimal("-10"),
            exit_percent=Decimal("-5"),
            max_position_size=Decimal("0.5"),
        ),
    )


@pytest.fixture
def profile_loader():
    """Loader with built-in defaults (reference tiers plus recovery rules)."""
    return RiskProfileLoader()


# =============================================================================
# Model Fixtures
# =============================================================================

@pytest.fixture
def portfolio():
    """A portfolio at its peak of 10000."""
    return Portfolio(
        id="portfolio-1",
        name="Main",
        current_balance=Decimal("10000"),
        peak_balance=Decimal("10000"),
    )


def _make_strategy(portfolio_id="portfolio-1", **overrides):
    fields = dict(
        portfolio_id=portfolio_id,
        name="Breakout",
        status=StrategyStatus.ACTIVE,
        max_positions=3,
    )
    fields.update(overrides)
    return Strategy(**fields)


def _make_position(strategy_id, symbol="AAPL", **overrides):
    fields = dict(
        strategy_id=strategy_id,
        symbol=symbol,
        direction=Direction.LONG,
        quantity=Decimal("10"),
        avg_entry_price=Decimal("100"),
        stop_loss=Decimal("95"),
        initial_risk=Decimal("50"),
    )
    fields.update(overrides)
    return Position(**fields)


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest_asyncio.fixture
async def database():
    """Create an in-memory test database."""
    db = Database("sqlite+aiosqlite:///:memory:")
    await db.initialize()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def file_database(tmp_path):
    """A file-backed database, so separate sessions use separate connections."""
    db = Database(f"sqlite:///{tmp_path / 'risk.db'}")
    await db.initialize()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def stored_portfolio(database, portfolio):
    """The portfolio fixture persisted to the test database."""
    await database.add_portfolio(portfolio)
    return portfolio


@pytest_asyncio.fixture
async def stored_strategy(database, stored_portfolio):
    """An active strategy (max 3 positions) in the stored portfolio."""
    strategy = _make_strategy(
        stored_portfolio.id,
        created_at=datetime.utcnow() - timedelta(days=30),
    )
    async with database.transaction() as store:
        await store.add_strategy(strategy)
    return strategy


@pytest.fixture
def lifecycle(database):
    """Lifecycle manager over the test database."""
    return StrategyLifecycleManager(database, max_lineage_depth=50)


@pytest.fixture
def risk_engine(database, profile_loader, lifecycle):
    """Risk engine over the test database with default risk profiles."""
    return RiskEngine(database, profile_loader=profile_loader, lifecycle=lifecycle)


async def _add_open_positions(database, strategy_id, count):
    positions = []
    async with database.transaction() as store:
        for i in range(count):
            position = _make_position(strategy_id, symbol=f"SYM{i}")
            await store.add_position(position)
            positions.append(position)
    return positions


@pytest.fixture
def make_strategy():
    """Factory for strategy models with sensible defaults."""
    return _make_strategy


@pytest.fixture
def make_position():
    """Factory for open long position models."""
    return _make_position


@pytest.fixture
def add_open_positions(database):
    """Persist `count` open positions for a strategy: await add_open_positions(id, count)."""
    async def _add(strategy_id, count):
        return await _add_open_positions(database, strategy_id, count)
    return _add
