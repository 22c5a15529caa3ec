"""Strategy lifecycle management for the Dojo risk core."""

from dojo_risk.strategies.lifecycle import (
    StrategyLifecycleManager,
    build_lineage,
    evaluate_open_permission,
)

__all__ = [
    "StrategyLifecycleManager",
    "build_lineage",
    "evaluate_open_permission",
]
