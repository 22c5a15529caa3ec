"""Unit tests for the strategy lifecycle manager."""
import pytest
from decimal import Decimal
from datetime import datetime, timedelta

from dojo_risk.core.errors import (
    CyclicLineageError, InvariantViolation, PreconditionError, ValidationError
)
from dojo_risk.core.models import AccountStatus, PositionStatus, StrategyStatus
from dojo_risk.strategies.lifecycle import (
    SUPERSEDED_REASON, apply_block, apply_unblock, build_lineage,
    evaluate_open_permission, find_root
)


T0 = datetime(2024, 1, 1, 9, 0)


# =============================================================================
# Permission Tests (pure)
# =============================================================================

class TestEvaluateOpenPermission:
    """Test the ordered permission checks."""

    def test_missing_strategy(self):
        permission = evaluate_open_permission(None, AccountStatus.ACTIVE, 0)
        assert not permission.allowed
        assert permission.reason == "Strategy not found"

    def test_active_strategy_allowed(self, make_strategy):
        assert evaluate_open_permission(make_strategy(), AccountStatus.WARNING, 2).allowed

    def test_blocked_reports_reason(self, make_strategy):
        strategy = make_strategy(status=StrategyStatus.BLOCKED, blocked_reason="Risk limit")
        assert evaluate_open_permission(strategy, AccountStatus.ACTIVE, 0).reason == "Risk limit"

    @pytest.mark.parametrize("status,reason", [
        (StrategyStatus.CLOSED, "Strategy is closed"),
        (StrategyStatus.PAUSED, "Strategy is paused"),
    ])
    def test_inactive_statuses(self, make_strategy, status, reason):
        permission = evaluate_open_permission(make_strategy(status=status), AccountStatus.ACTIVE, 0)
        assert not permission.allowed
        assert permission.reason == reason

    def test_locked_portfolio(self, make_strategy):
        permission = evaluate_open_permission(make_strategy(), AccountStatus.LOCKED, 0)
        assert permission.reason == "Portfolio is locked due to risk limits"

    def test_position_cap(self, make_strategy):
        permission = evaluate_open_permission(make_strategy(max_positions=3), AccountStatus.ACTIVE, 3)
        assert permission.reason == "Maximum positions (3) reached"

    def test_zero_cap_never_allows(self, make_strategy):
        assert not evaluate_open_permission(make_strategy(max_positions=0), AccountStatus.ACTIVE, 0).allowed

    def test_strategy_state_checked_before_portfolio(self, make_strategy):
        strategy = make_strategy(status=StrategyStatus.PAUSED)
        assert evaluate_open_permission(strategy, AccountStatus.LOCKED, 0).reason == "Strategy is paused"


# =============================================================================
# Lineage Tests (pure)
# =============================================================================

class TestLineageWalk:
    """Test root lookup and breadth-first lineage ordering."""

    def test_find_root_counts_hops(self, make_strategy):
        root = make_strategy(id="a")
        child = make_strategy(id="b", parent_strategy_id="a")
        grandchild = make_strategy(id="c", parent_strategy_id="b")
        by_id = {s.id: s for s in (root, child, grandchild)}

        assert find_root(grandchild, by_id, 10) == (root, 2)
        assert find_root(root, by_id, 10) == (root, 0)

    def test_find_root_detects_cycle(self, make_strategy):
        a = make_strategy(id="a", parent_strategy_id="b")
        b = make_strategy(id="b", parent_strategy_id="a")

        with pytest.raises(CyclicLineageError):
            find_root(a, {"a": a, "b": b}, 10)

    def test_find_root_depth_limit(self, make_strategy):
        chain = [make_strategy(id="s0")]
        for i in range(1, 5):
            chain.append(make_strategy(id=f"s{i}", parent_strategy_id=f"s{i - 1}"))
        by_id = {s.id: s for s in chain}

        with pytest.raises(InvariantViolation):
            find_root(chain[-1], by_id, 3)

    def test_dangling_parent_ends_walk(self, make_strategy):
        orphan = make_strategy(id="x", parent_strategy_id="gone")
        assert find_root(orphan, {"x": orphan}, 10) == (orphan, 0)

    def test_build_lineage_breadth_first_siblings_by_time(self, make_strategy):
        root = make_strategy(id="root", created_at=T0)
        late = make_strategy(id="late", parent_strategy_id="root", created_at=T0 + timedelta(days=2))
        early = make_strategy(id="early", parent_strategy_id="root", created_at=T0 + timedelta(days=1))
        grandchild = make_strategy(id="gc", parent_strategy_id="early", created_at=T0 + timedelta(days=3))
        unrelated = make_strategy(id="other", created_at=T0)

        found_root, ordered = build_lineage("gc", [grandchild, late, unrelated, root, early], 10)

        assert found_root.id == "root"
        assert [s.id for s in ordered] == ["root", "early", "late", "gc"]

    def test_build_lineage_unknown_strategy(self, make_strategy):
        with pytest.raises(PreconditionError):
            build_lineage("missing", [make_strategy()], 10)


class TestBlockTransitions:
    def test_block_overwrites_reason(self, make_strategy):
        strategy = make_strategy(status=StrategyStatus.BLOCKED, blocked_reason="First")
        apply_block(strategy, "Second", T0)

        assert strategy.blocked_reason == "Second"
        assert strategy.updated_at == T0

    def test_block_closed_rejected(self, make_strategy):
        with pytest.raises(PreconditionError):
            apply_block(make_strategy(status=StrategyStatus.CLOSED), "Risk")

    def test_empty_reason_rejected(self, make_strategy):
        with pytest.raises(ValidationError) as exc_info:
            apply_block(make_strategy(), "   ")
        assert exc_info.value.field == "reason"

    def test_unblock_requires_blocked(self, make_strategy):
        with pytest.raises(PreconditionError):
            apply_unblock(make_strategy())

    def test_unblock_clears_reason(self, make_strategy):
        strategy = make_strategy(status=StrategyStatus.BLOCKED, blocked_reason="Risk")
        apply_unblock(strategy, T0)

        assert strategy.status == StrategyStatus.ACTIVE
        assert strategy.blocked_reason is None


# =============================================================================
# Create Tests
# =============================================================================

class TestCreateStrategy:
    """Test strategy creation."""

    @pytest.mark.asyncio
    async def test_create_active(self, lifecycle, database, stored_portfolio):
        strategy = await lifecycle.create_strategy(
            stored_portfolio.id,
            "Momentum",
            exit_rules={"stop_loss": {"type": "atr", "value": 2.0}},
            max_positions=4,
        )

        loaded = await database.get_strategy(strategy.id)
        assert loaded.name == "Momentum"
        assert loaded.status == StrategyStatus.ACTIVE
        assert loaded.parent_strategy_id is None
        assert loaded.max_positions == 4
        assert loaded.exit_rules.stop_loss.type == "atr"

    @pytest.mark.asyncio
    async def test_create_testing(self, lifecycle, stored_portfolio):
        strategy = await lifecycle.create_strategy(stored_portfolio.id, "Paper", status=StrategyStatus.TESTING)
        assert strategy.status == StrategyStatus.TESTING

    @pytest.mark.parametrize("status", [StrategyStatus.PAUSED, StrategyStatus.BLOCKED, StrategyStatus.CLOSED])
    @pytest.mark.asyncio
    async def test_invalid_initial_status(self, lifecycle, stored_portfolio, status):
        with pytest.raises(ValidationError) as exc_info:
            await lifecycle.create_strategy(stored_portfolio.id, "X", status=status)
        assert exc_info.value.field == "status"

    @pytest.mark.asyncio
    async def test_unknown_status_string(self, lifecycle, database, stored_portfolio):
        with pytest.raises(ValidationError) as exc_info:
            await lifecycle.create_strategy(stored_portfolio.id, "X", status="retired")

        assert exc_info.value.field == "status"
        assert exc_info.value.details["value"] == "retired"
        assert await database.list_strategies(stored_portfolio.id) == []

    @pytest.mark.asyncio
    async def test_status_string_accepted(self, lifecycle, stored_portfolio):
        strategy = await lifecycle.create_strategy(stored_portfolio.id, "Paper", status="testing")
        assert strategy.status == StrategyStatus.TESTING

    @pytest.mark.asyncio
    async def test_invalid_rules(self, lifecycle, stored_portfolio):
        with pytest.raises(ValidationError):
            await lifecycle.create_strategy(
                stored_portfolio.id, "X", position_sizing_rules={"method": "martingale"}
            )

    @pytest.mark.asyncio
    async def test_unknown_portfolio(self, lifecycle, database):
        with pytest.raises(PreconditionError):
            await lifecycle.create_strategy("no-such-portfolio", "X")


# =============================================================================
# Clone Tests
# =============================================================================

class TestCloneStrategy:
    """Test versioning by clone."""

    @pytest.mark.asyncio
    async def test_clone_with_open_positions_blocks_source(
        self, lifecycle, database, stored_strategy, add_open_positions
    ):
        positions = await add_open_positions(stored_strategy.id, 1)

        result = await lifecycle.clone_strategy(stored_strategy.id)

        assert result.original_id == stored_strategy.id
        assert result.original_status == StrategyStatus.BLOCKED

        source = await database.get_strategy(stored_strategy.id)
        assert source.status == StrategyStatus.BLOCKED
        assert source.blocked_reason == SUPERSEDED_REASON

        open_positions = await database.get_open_positions(stored_strategy.id)
        assert [p.id for p in open_positions] == [positions[0].id]

        cloned = await database.get_strategy(result.cloned.id)
        assert cloned.parent_strategy_id == stored_strategy.id
        assert cloned.status == StrategyStatus.ACTIVE
        assert cloned.name == "Breakout v2"
        assert cloned.max_positions == stored_strategy.max_positions
        assert await database.get_open_positions(cloned.id) == []

    @pytest.mark.asyncio
    async def test_clone_without_positions_closes_source(self, lifecycle, database, stored_strategy):
        result = await lifecycle.clone_strategy(stored_strategy.id, {"name": "Breakout tuned"})

        source = await database.get_strategy(stored_strategy.id)
        assert result.original_status == StrategyStatus.CLOSED
        assert source.status == StrategyStatus.CLOSED
        assert source.closed_at is not None
        assert source.blocked_reason is None
        assert result.cloned.name == "Breakout tuned"

    @pytest.mark.asyncio
    async def test_clone_applies_rule_updates(self, lifecycle, database, stored_strategy):
        result = await lifecycle.clone_strategy(stored_strategy.id, {
            "description": "Wider stops",
            "exit_rules": {"stop_loss": {"type": "percentage", "value": 3.0}},
        })

        cloned = await database.get_strategy(result.cloned.id)
        assert cloned.description == "Wider stops"
        assert cloned.exit_rules.stop_loss.value == 3.0

    @pytest.mark.asyncio
    async def test_clone_of_clone_numbers_from_root(self, lifecycle, stored_strategy):
        first = await lifecycle.clone_strategy(stored_strategy.id)
        second = await lifecycle.clone_strategy(first.cloned.id)

        assert second.cloned.name == "Breakout v3"

    @pytest.mark.asyncio
    async def test_clone_closed_rejected(self, lifecycle, stored_strategy):
        await lifecycle.clone_strategy(stored_strategy.id)

        with pytest.raises(PreconditionError):
            await lifecycle.clone_strategy(stored_strategy.id)

    @pytest.mark.asyncio
    async def test_clone_missing_rejected(self, lifecycle, database):
        with pytest.raises(PreconditionError):
            await lifecycle.clone_strategy("missing")

    @pytest.mark.asyncio
    async def test_clone_unknown_update_field(self, lifecycle, stored_strategy):
        with pytest.raises(ValidationError):
            await lifecycle.clone_strategy(stored_strategy.id, {"max_positions": 10})

    @pytest.mark.asyncio
    async def test_failed_clone_rolls_back(self, lifecycle, database, stored_strategy):
        with pytest.raises(ValidationError):
            await lifecycle.clone_strategy(stored_strategy.id, {
                "position_sizing_rules": {"method": "martingale"},
            })

        source = await database.get_strategy(stored_strategy.id)
        assert source.status == StrategyStatus.ACTIVE
        assert len(await database.list_strategies(stored_strategy.portfolio_id)) == 1


# =============================================================================
# Status Transition Tests
# =============================================================================

class TestStatusTransitions:
    """Test block, pause, resume and archive."""

    @pytest.mark.asyncio
    async def test_block_and_unblock(self, lifecycle, database, stored_strategy):
        await lifecycle.block_strategy(stored_strategy.id, "Manual review")
        blocked = await lifecycle.block_strategy(stored_strategy.id, "Still reviewing")

        assert blocked.blocked_reason == "Still reviewing"
        assert (await database.get_strategy(stored_strategy.id)).blocked_reason == "Still reviewing"

        unblocked = await lifecycle.unblock_strategy(stored_strategy.id)
        assert unblocked.status == StrategyStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_block_empty_reason(self, lifecycle, stored_strategy):
        with pytest.raises(ValidationError):
            await lifecycle.block_strategy(stored_strategy.id, "")

    @pytest.mark.asyncio
    async def test_block_closed_rejected(self, lifecycle, stored_strategy):
        await lifecycle.archive_strategy(stored_strategy.id)

        with pytest.raises(PreconditionError):
            await lifecycle.block_strategy(stored_strategy.id, "Risk")

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, lifecycle, stored_strategy):
        paused = await lifecycle.pause_strategy(stored_strategy.id)
        assert paused.status == StrategyStatus.PAUSED

        with pytest.raises(PreconditionError):
            await lifecycle.pause_strategy(stored_strategy.id)

        resumed = await lifecycle.resume_strategy(stored_strategy.id)
        assert resumed.status == StrategyStatus.ACTIVE

        with pytest.raises(PreconditionError):
            await lifecycle.resume_strategy(stored_strategy.id)

    @pytest.mark.asyncio
    async def test_archive_with_open_position_rejected(
        self, lifecycle, database, stored_strategy, add_open_positions
    ):
        await add_open_positions(stored_strategy.id, 1)

        with pytest.raises(PreconditionError) as exc_info:
            await lifecycle.archive_strategy(stored_strategy.id)

        assert exc_info.value.details["open_positions"] == 1
        assert (await database.get_strategy(stored_strategy.id)).status == StrategyStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_archive_without_positions(self, lifecycle, database, stored_strategy):
        archived = await lifecycle.archive_strategy(stored_strategy.id)

        assert archived.status == StrategyStatus.CLOSED
        assert archived.closed_at is not None

        again = await lifecycle.archive_strategy(stored_strategy.id)
        assert again.closed_at == archived.closed_at

    @pytest.mark.asyncio
    async def test_archive_blocked_strategy_clears_reason(self, lifecycle, stored_strategy):
        await lifecycle.block_strategy(stored_strategy.id, "Risk")
        archived = await lifecycle.archive_strategy(stored_strategy.id)

        assert archived.status == StrategyStatus.CLOSED
        assert archived.blocked_reason is None


# =============================================================================
# Lineage And Permission Tests (stored)
# =============================================================================

class TestStoredLineage:
    """Test lineage reads over the database."""

    @pytest.mark.asyncio
    async def test_lineage_from_any_version(
        self, lifecycle, database, stored_strategy, add_open_positions, make_position
    ):
        await add_open_positions(stored_strategy.id, 1)
        async with database.transaction() as store:
            await store.add_position(make_position(
                stored_strategy.id, symbol="MSFT", status=PositionStatus.CLOSED, net_pnl=Decimal("40"),
            ))

        first = await lifecycle.clone_strategy(stored_strategy.id)
        second = await lifecycle.clone_strategy(first.cloned.id)

        lineage = await lifecycle.get_strategy_lineage(second.cloned.id)

        assert lineage.root.id == stored_strategy.id
        assert lineage.total_versions == 3
        assert [v.strategy.id for v in lineage.versions] == [
            stored_strategy.id, first.cloned.id, second.cloned.id,
        ]
        root_version = lineage.versions[0]
        assert (root_version.open_positions, root_version.closed_positions) == (1, 1)
        assert root_version.net_pnl == Decimal("40")

    @pytest.mark.asyncio
    async def test_lineage_missing_strategy(self, lifecycle, database):
        with pytest.raises(PreconditionError):
            await lifecycle.get_strategy_lineage("missing")

    @pytest.mark.asyncio
    async def test_cyclic_lineage_detected(self, lifecycle, database, stored_portfolio, make_strategy):
        a = make_strategy(stored_portfolio.id, id="cycle-a", parent_strategy_id="cycle-b")
        b = make_strategy(stored_portfolio.id, id="cycle-b", parent_strategy_id="cycle-a")
        async with database.transaction() as store:
            await store.add_strategy(a)
            await store.add_strategy(b)

        with pytest.raises(CyclicLineageError):
            await lifecycle.get_strategy_lineage("cycle-a")


class TestCanOpenPositions:
    """Test stored permission checks."""

    @pytest.mark.asyncio
    async def test_allowed(self, lifecycle, stored_strategy):
        permission = await lifecycle.can_open_positions(stored_strategy.id)
        assert permission.allowed
        assert permission.reason is None

    @pytest.mark.asyncio
    async def test_missing_strategy(self, lifecycle, database):
        permission = await lifecycle.can_open_positions("missing")
        assert permission.reason == "Strategy not found"

    @pytest.mark.asyncio
    async def test_blocked_strategy(self, lifecycle, stored_strategy):
        await lifecycle.block_strategy(stored_strategy.id, "Manual review")

        permission = await lifecycle.can_open_positions(stored_strategy.id)

        assert not permission.allowed
        assert permission.reason == "Manual review"

    @pytest.mark.asyncio
    async def test_max_positions_reached(self, lifecycle, stored_strategy, add_open_positions):
        await add_open_positions(stored_strategy.id, 3)

        permission = await lifecycle.can_open_positions(stored_strategy.id)

        assert permission.reason == "Maximum positions (3) reached"

    @pytest.mark.asyncio
    async def test_locked_portfolio(self, lifecycle, database, stored_portfolio, stored_strategy):
        stored_portfolio.account_status = AccountStatus.LOCKED
        await database.save_portfolio(stored_portfolio)

        permission = await lifecycle.can_open_positions(stored_strategy.id)

        assert permission.reason == "Portfolio is locked due to risk limits"
