"""Risk module for the Dojo risk core.

This module provides the pure risk decision functions:
- Position sizing, P&L and R-multiple arithmetic with risk limit checks
- Drawdown tier lookup and position size adjustment
- Circuit breaker events and the derived account status
- Position metrics rebuilt from executions
"""

from dojo_risk.risk.calculations import (
    calculate_pnl,
    calculate_position_size,
    calculate_r_multiple,
    validate_risk_limits,
)
from dojo_risk.risk.circuit_breaker import (
    clear_breaker,
    derive_account_status,
    raise_breaker,
    refresh_account_status,
    update_balance,
)
from dojo_risk.risk.position_metrics import replay_executions
from dojo_risk.risk.tiers import (
    calculate_adjusted_position_size,
    calculate_position_size_adjustment,
    get_action_for_drawdown,
    get_asset_class_limit,
    should_block_new_positions,
)

__all__ = [
    'calculate_position_size',
    'calculate_pnl',
    'calculate_r_multiple',
    'validate_risk_limits',
    'get_action_for_drawdown',
    'calculate_position_size_adjustment',
    'calculate_adjusted_position_size',
    'should_block_new_positions',
    'get_asset_class_limit',
    'derive_account_status',
    'refresh_account_status',
    'update_balance',
    'raise_breaker',
    'clear_breaker',
    'replay_executions',
]
