"""
Strategy Lifecycle Manager.

Owns the strategy status machine and version lineage:

    testing ─┐
             ├─> active <──> paused
             │     │
             │     ├─> blocked ──(unblock)──> active
             │     │
             └─────┴─> closed        (terminal: archive, or clone without positions)

Blocked and closed strategies keep their positions but never gain new ones.
Every mutating operation runs in a single database transaction, so a failure
half way (including a failed post-condition) leaves nothing behind.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog
from pydantic import ValidationError as PydanticValidationError

from dojo_risk.core.config import risk_profile_config
from dojo_risk.core.errors import (
    CyclicLineageError, InvariantViolation, PreconditionError, ValidationError
)
from dojo_risk.core.models import (
    AccountStatus, CloneResult, Portfolio, PositionPermission, Strategy,
    StrategyLineage, StrategyStatus, StrategyVersion
)
from dojo_risk.storage.database import Database, StoreSession

logger = structlog.get_logger(__name__)

SUPERSEDED_REASON = "Superseded by updated strategy version"

INITIAL_STATUSES = frozenset({StrategyStatus.ACTIVE, StrategyStatus.TESTING})

# Fields a clone may override; everything else is copied from the source
CLONE_UPDATABLE_FIELDS = frozenset({
    "name", "description", "entry_rules", "exit_rules", "position_sizing_rules",
})


# =============================================================================
# Pure helpers
# =============================================================================

def evaluate_open_permission(
    strategy: Optional[Strategy],
    account_status: AccountStatus,
    open_positions: int,
) -> PositionPermission:
    """
    Decide whether a strategy may open another position.

    Checks run in order and the first failing one is the answer: missing
    strategy, blocked, closed, paused, locked portfolio, position cap.
    """
    if strategy is None:
        return PositionPermission.deny("Strategy not found")

    if strategy.status == StrategyStatus.BLOCKED:
        return PositionPermission.deny(strategy.blocked_reason or "Strategy is blocked")

    if strategy.status == StrategyStatus.CLOSED:
        return PositionPermission.deny("Strategy is closed")

    if strategy.status == StrategyStatus.PAUSED:
        return PositionPermission.deny("Strategy is paused")

    if account_status == AccountStatus.LOCKED:
        return PositionPermission.deny("Portfolio is locked due to risk limits")

    if open_positions >= strategy.max_positions:
        return PositionPermission.deny(f"Maximum positions ({strategy.max_positions}) reached")

    return PositionPermission.allow()


def find_root(
    strategy: Strategy,
    strategies_by_id: Dict[str, Strategy],
    max_depth: int,
) -> Tuple[Strategy, int]:
    """
    Follow parent links up to the root version.

    Returns the root and the number of parent hops taken. A parent id that
    is not in `strategies_by_id` ends the walk at the current strategy.

    Raises:
        CyclicLineageError: if a strategy is visited twice
        InvariantViolation: if the chain is longer than max_depth
    """
    visited = {strategy.id}
    current = strategy
    hops = 0

    while current.parent_strategy_id is not None:
        parent_id = current.parent_strategy_id
        if parent_id in visited:
            raise CyclicLineageError(
                f"Strategy lineage contains a cycle through {parent_id}",
                {"strategy_id": strategy.id, "repeated_id": parent_id},
            )
        parent = strategies_by_id.get(parent_id)
        if parent is None:
            logger.warning("lifecycle.dangling_parent", strategy_id=current.id, parent_id=parent_id)
            break

        hops += 1
        if hops > max_depth:
            raise InvariantViolation(
                f"Strategy lineage deeper than {max_depth}",
                {"strategy_id": strategy.id, "max_depth": max_depth},
            )
        visited.add(parent_id)
        current = parent

    return current, hops


def build_lineage(
    strategy_id: str,
    strategies: Iterable[Strategy],
    max_depth: int,
) -> Tuple[Strategy, List[Strategy]]:
    """
    Root and every version below it, breadth first, siblings by created_at.

    Raises:
        PreconditionError: if strategy_id is not among `strategies`
        CyclicLineageError / InvariantViolation: see find_root
    """
    strategies_by_id = {s.id: s for s in strategies}
    start = strategies_by_id.get(strategy_id)
    if start is None:
        raise PreconditionError(f"Strategy {strategy_id} not found", {"strategy_id": strategy_id})

    root, _ = find_root(start, strategies_by_id, max_depth)

    children: Dict[str, List[Strategy]] = {}
    for strategy in strategies_by_id.values():
        if strategy.parent_strategy_id is not None:
            children.setdefault(strategy.parent_strategy_id, []).append(strategy)
    for siblings in children.values():
        siblings.sort(key=lambda s: s.created_at)

    ordered = [root]
    seen = {root.id}
    frontier = [root]
    depth = 0
    while frontier:
        depth += 1
        if depth > max_depth + 1:
            raise InvariantViolation(
                f"Strategy lineage deeper than {max_depth}",
                {"strategy_id": strategy_id, "max_depth": max_depth},
            )
        next_frontier = []
        for parent in frontier:
            for child in children.get(parent.id, []):
                if child.id in seen:
                    raise CyclicLineageError(
                        f"Strategy lineage contains a cycle through {child.id}",
                        {"strategy_id": strategy_id, "repeated_id": child.id},
                    )
                seen.add(child.id)
                ordered.append(child)
                next_frontier.append(child)
        frontier = next_frontier

    return root, ordered


def apply_block(strategy: Strategy, reason: str, now: Optional[datetime] = None) -> Strategy:
    """Move a non-closed strategy to blocked, overwriting any previous reason."""
    if not reason or not reason.strip():
        raise ValidationError("reason", reason, "reason must not be empty")
    if strategy.status == StrategyStatus.CLOSED:
        raise PreconditionError(
            f"Strategy {strategy.id} is closed and cannot be blocked",
            {"strategy_id": strategy.id, "status": strategy.status.value},
        )
    strategy.status = StrategyStatus.BLOCKED
    strategy.blocked_reason = reason.strip()
    strategy.updated_at = now or datetime.utcnow()
    return strategy


def apply_unblock(strategy: Strategy, now: Optional[datetime] = None) -> Strategy:
    if strategy.status != StrategyStatus.BLOCKED:
        raise PreconditionError(
            f"Strategy {strategy.id} is not blocked",
            {"strategy_id": strategy.id, "status": strategy.status.value},
        )
    strategy.status = StrategyStatus.ACTIVE
    strategy.blocked_reason = None
    strategy.updated_at = now or datetime.utcnow()
    return strategy


def _strategy_or_validation_error(**fields: Any) -> Strategy:
    try:
        return Strategy(**fields)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ())) or "strategy"
        raise ValidationError(field, first.get("input"), f"Invalid strategy {field}: {first.get('msg')}") from exc


# =============================================================================
# Lifecycle manager
# =============================================================================

class StrategyLifecycleManager:
    """
    Strategy status transitions, cloning and lineage over the store.

    Example:
        manager = StrategyLifecycleManager(database)
        result = await manager.clone_strategy(strategy_id, {"name": "Breakout v2"})
        permission = await manager.can_open_positions(result.cloned.id)
    """

    def __init__(self, database: Database, max_lineage_depth: Optional[int] = None):
        self.database = database
        self.max_lineage_depth = max_lineage_depth or risk_profile_config.max_lineage_depth

        logger.info("lifecycle.initialized", max_lineage_depth=self.max_lineage_depth)

    async def create_strategy(
        self,
        portfolio_id: str,
        name: str,
        description: Optional[str] = None,
        status: StrategyStatus = StrategyStatus.ACTIVE,
        entry_rules: Optional[Any] = None,
        exit_rules: Optional[Any] = None,
        position_sizing_rules: Optional[Any] = None,
        max_positions: int = 5,
        max_risk_percent: Decimal = Decimal("2"),
        max_drawdown: Decimal = Decimal("-20"),
        allocated_capital: Decimal = Decimal("0"),
    ) -> Strategy:
        """
        Create a root strategy (no parent).

        Rules may be given as models or plain dicts; dicts are validated.

        Raises:
            ValidationError: initial status other than active/testing, or
                invalid fields
            PreconditionError: unknown portfolio
        """
        try:
            status = StrategyStatus(status)
        except ValueError as exc:
            raise ValidationError("status", status, f"Unknown strategy status: {status}") from exc
        if status not in INITIAL_STATUSES:
            raise ValidationError("status", status.value, "New strategies must start as active or testing")

        strategy = _strategy_or_validation_error(
            portfolio_id=portfolio_id,
            name=name,
            description=description,
            status=status,
            entry_rules=entry_rules,
            exit_rules=exit_rules,
            position_sizing_rules=position_sizing_rules,
            max_positions=max_positions,
            max_risk_percent=max_risk_percent,
            max_drawdown=max_drawdown,
            allocated_capital=allocated_capital,
        )

        async with self.database.transaction() as store:
            if await store.get_portfolio(portfolio_id) is None:
                raise PreconditionError(f"Portfolio {portfolio_id} not found", {"portfolio_id": portfolio_id})
            await store.add_strategy(strategy)

        logger.info(
            "lifecycle.strategy_created",
            strategy_id=strategy.id,
            portfolio_id=portfolio_id,
            name=strategy.name,
            status=strategy.status.value,
        )
        return strategy

    async def clone_strategy(
        self,
        strategy_id: str,
        updates: Optional[Dict[str, Any]] = None,
    ) -> CloneResult:
        """
        Create a new version of a strategy and retire the source.

        The source becomes blocked (it still has open positions, which stay
        with it) or closed (no open positions). The clone starts active with
        no positions, rules from `updates` or copied from the source, and
        limits and capital copied.

        Raises:
            ValidationError: unknown update keys or invalid rule data
            PreconditionError: source missing or closed
            InvariantViolation: clone post-conditions do not hold
        """
        updates = dict(updates or {})
        unknown = set(updates) - CLONE_UPDATABLE_FIELDS
        if unknown:
            raise ValidationError("updates", sorted(unknown), f"Cannot update fields on clone: {sorted(unknown)}")

        now = datetime.utcnow()
        async with self.database.transaction() as store:
            source = await store.get_strategy(strategy_id, for_update=True)
            if source is None:
                raise PreconditionError(f"Strategy {strategy_id} not found", {"strategy_id": strategy_id})
            if source.status == StrategyStatus.CLOSED:
                raise PreconditionError(
                    f"Strategy {strategy_id} is closed and cannot be cloned",
                    {"strategy_id": strategy_id},
                )

            open_count = await store.count_open_positions(source.id)

            siblings = await store.list_strategies(source.portfolio_id)
            root, hops = find_root(source, {s.id: s for s in siblings}, self.max_lineage_depth)
            # root is v1, so the clone of a strategy `hops` below it is v(hops + 2)
            default_name = f"{root.name} v{hops + 2}"

            if open_count > 0:
                source.status = StrategyStatus.BLOCKED
                source.blocked_reason = SUPERSEDED_REASON
            else:
                source.status = StrategyStatus.CLOSED
                source.blocked_reason = None
                source.closed_at = now
            source.updated_at = now
            await store.save_strategy(source)

            cloned = _strategy_or_validation_error(
                portfolio_id=source.portfolio_id,
                parent_strategy_id=source.id,
                name=updates.get("name") or default_name,
                description=updates.get("description", source.description),
                status=StrategyStatus.ACTIVE,
                entry_rules=updates.get("entry_rules", source.entry_rules),
                exit_rules=updates.get("exit_rules", source.exit_rules),
                position_sizing_rules=updates.get("position_sizing_rules", source.position_sizing_rules),
                max_positions=source.max_positions,
                max_risk_percent=source.max_risk_percent,
                max_drawdown=source.max_drawdown,
                allocated_capital=source.allocated_capital,
                created_at=now,
            )
            await store.add_strategy(cloned)

            if await store.count_open_positions(source.id) != open_count:
                raise InvariantViolation(
                    "Source positions changed while cloning",
                    {"strategy_id": source.id, "expected_open_positions": open_count},
                )
            if await store.count_open_positions(cloned.id) != 0:
                raise InvariantViolation(
                    "Cloned strategy must start without positions",
                    {"strategy_id": cloned.id},
                )

        logger.info(
            "lifecycle.strategy_cloned",
            original_id=source.id,
            original_status=source.status.value,
            cloned_id=cloned.id,
            name=cloned.name,
            open_positions_kept=open_count,
        )
        return CloneResult(original_id=source.id, original_status=source.status, cloned=cloned)

    async def block_strategy(self, strategy_id: str, reason: str) -> Strategy:
        """
        Block a strategy; it keeps its positions but opens nothing new.

        Blocking an already blocked strategy replaces its reason.

        Raises:
            ValidationError: empty reason
            PreconditionError: strategy missing or closed
        """
        if not reason or not reason.strip():
            raise ValidationError("reason", reason, "reason must not be empty")

        async with self.database.transaction() as store:
            strategy = await self._get_for_update(store, strategy_id)
            apply_block(strategy, reason)
            await store.save_strategy(strategy)

        logger.info("lifecycle.strategy_blocked", strategy_id=strategy_id, reason=strategy.blocked_reason)
        return strategy

    async def unblock_strategy(self, strategy_id: str) -> Strategy:
        """Return a blocked strategy to active."""
        async with self.database.transaction() as store:
            strategy = await self._get_for_update(store, strategy_id)
            apply_unblock(strategy)
            await store.save_strategy(strategy)

        logger.info("lifecycle.strategy_unblocked", strategy_id=strategy_id)
        return strategy

    async def pause_strategy(self, strategy_id: str) -> Strategy:
        async with self.database.transaction() as store:
            strategy = await self._get_for_update(store, strategy_id)
            if strategy.status not in (StrategyStatus.ACTIVE, StrategyStatus.TESTING):
                raise PreconditionError(
                    f"Cannot pause a {strategy.status.value} strategy",
                    {"strategy_id": strategy_id, "status": strategy.status.value},
                )
            strategy.status = StrategyStatus.PAUSED
            strategy.updated_at = datetime.utcnow()
            await store.save_strategy(strategy)

        logger.info("lifecycle.strategy_paused", strategy_id=strategy_id)
        return strategy

    async def resume_strategy(self, strategy_id: str) -> Strategy:
        async with self.database.transaction() as store:
            strategy = await self._get_for_update(store, strategy_id)
            if strategy.status != StrategyStatus.PAUSED:
                raise PreconditionError(
                    f"Cannot resume a {strategy.status.value} strategy",
                    {"strategy_id": strategy_id, "status": strategy.status.value},
                )
            strategy.status = StrategyStatus.ACTIVE
            strategy.updated_at = datetime.utcnow()
            await store.save_strategy(strategy)

        logger.info("lifecycle.strategy_resumed", strategy_id=strategy_id)
        return strategy

    async def archive_strategy(self, strategy_id: str) -> Strategy:
        """
        Close a strategy for good. Archiving a closed strategy is a no-op.

        Raises:
            PreconditionError: strategy missing or still holding open positions
                (details carry open_positions)
        """
        async with self.database.transaction() as store:
            strategy = await self._get_for_update(store, strategy_id)
            if strategy.status == StrategyStatus.CLOSED:
                return strategy

            open_count = await store.count_open_positions(strategy_id)
            if open_count > 0:
                raise PreconditionError(
                    f"Cannot archive strategy with {open_count} open positions",
                    {"strategy_id": strategy_id, "open_positions": open_count},
                )

            now = datetime.utcnow()
            strategy.status = StrategyStatus.CLOSED
            strategy.blocked_reason = None
            strategy.closed_at = now
            strategy.updated_at = now
            await store.save_strategy(strategy)

        logger.info("lifecycle.strategy_archived", strategy_id=strategy_id)
        return strategy

    async def get_strategy_lineage(self, strategy_id: str) -> StrategyLineage:
        """
        All versions sharing a root with `strategy_id`, with position counts.

        Raises:
            PreconditionError: strategy missing
            CyclicLineageError: parent links loop
        """
        async with self.database.transaction() as store:
            start = await store.get_strategy(strategy_id)
            if start is None:
                raise PreconditionError(f"Strategy {strategy_id} not found", {"strategy_id": strategy_id})

            strategies = await store.list_strategies(start.portfolio_id)
            root, ordered = build_lineage(strategy_id, strategies, self.max_lineage_depth)

            versions = []
            for strategy in ordered:
                open_count, closed_count, net_pnl = await store.position_summary(strategy.id)
                versions.append(StrategyVersion(
                    strategy=strategy,
                    open_positions=open_count,
                    closed_positions=closed_count,
                    net_pnl=net_pnl,
                ))

        return StrategyLineage(root=root, versions=versions)

    async def can_open_positions(self, strategy_id: str) -> PositionPermission:
        async with self.database.transaction() as store:
            _, _, permission = await self.check_permission(store, strategy_id)
        return permission

    async def check_permission(
        self,
        store: StoreSession,
        strategy_id: str,
    ) -> Tuple[Optional[Strategy], Optional[Portfolio], PositionPermission]:
        """
        Permission check inside a caller's transaction.

        Returns the strategy and portfolio it read so the caller can act on
        the same snapshot.
        """
        strategy = await store.get_strategy(strategy_id, for_update=True)
        if strategy is None:
            return None, None, evaluate_open_permission(None, AccountStatus.ACTIVE, 0)

        portfolio = await store.get_portfolio(strategy.portfolio_id)
        account_status = portfolio.account_status if portfolio else AccountStatus.ACTIVE
        open_count = await store.count_open_positions(strategy_id)

        permission = evaluate_open_permission(strategy, account_status, open_count)
        logger.debug(
            "lifecycle.permission_checked",
            strategy_id=strategy_id,
            allowed=permission.allowed,
            reason=permission.reason,
        )
        return strategy, portfolio, permission

    async def _get_for_update(self, store: StoreSession, strategy_id: str) -> Strategy:
        strategy = await store.get_strategy(strategy_id, for_update=True)
        if strategy is None:
            raise PreconditionError(f"Strategy {strategy_id} not found", {"strategy_id": strategy_id})
        return strategy


__all__ = [
    "SUPERSEDED_REASON",
    "StrategyLifecycleManager",
    "evaluate_open_permission",
    "find_root",
    "build_lineage",
    "apply_block",
    "apply_unblock",
]
