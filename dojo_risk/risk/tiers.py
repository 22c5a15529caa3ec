"""Risk tier engine - maps portfolio drawdown to a risk action.

Tiers are scanned most severe first and the first one the drawdown has
reached wins, so no "current tier" is ever stored: the tier is a pure
function of current vs. peak balance and the configured DrawdownActions.

Example with tiers [-20 locked, -15 defensive, -10 reduce, -5 warning]:

    drawdown  -22  -> locked
    drawdown  -12  -> reduce
    drawdown   -3  -> no action
"""
from decimal import Decimal
from typing import Optional, Union

import structlog

from dojo_risk.core.models import (
    AccountStatus, AssetClass, AssetClassLimit, AssetClassLimits,
    DrawdownActions, DrawdownTier, TierAction
)
from dojo_risk.risk.calculations import Number, to_decimal

logger = structlog.get_logger(__name__)

# Tier actions that forbid opening new positions
BLOCKING_ACTIONS = frozenset({TierAction.DEFENSIVE, TierAction.LOCKED})

TIER_ACCOUNT_STATUS = {
    TierAction.LOCKED: AccountStatus.LOCKED,
    TierAction.DEFENSIVE: AccountStatus.RECOVERY,
    TierAction.REDUCE: AccountStatus.WARNING,
    TierAction.WARNING: AccountStatus.WARNING,
}


def get_action_for_drawdown(
    drawdown: Number,
    drawdown_actions: DrawdownActions,
) -> Optional[DrawdownTier]:
    """
    Return the most severe tier the drawdown has reached, or None.

    Args:
        drawdown: Current drawdown percentage (<= 0)
        drawdown_actions: Configured tiers for the portfolio
    """
    value = to_decimal("drawdown", drawdown)
    for tier in drawdown_actions.sorted_tiers:
        if value <= tier.threshold:
            return tier
    return None


def account_status_for_tier(tier: Optional[DrawdownTier]) -> AccountStatus:
    """Account status implied by a tier alone, without breaker events."""
    if tier is None:
        return AccountStatus.ACTIVE
    return TIER_ACCOUNT_STATUS[tier.action]


def calculate_position_size_adjustment(
    base_size: Number,
    current_drawdown: Number,
    drawdown_actions: DrawdownActions,
) -> Decimal:
    """Scale base_size by the active tier's multiplier (1 when unset)."""
    size = to_decimal("base_size", base_size)
    tier = get_action_for_drawdown(current_drawdown, drawdown_actions)
    if tier is None:
        return size
    multiplier = tier.position_size_multiplier if tier.position_size_multiplier is not None else Decimal("1")
    return size * multiplier


def calculate_adjusted_position_size(
    base_size: Number,
    current_drawdown: Number,
    account_status: AccountStatus,
    drawdown_actions: DrawdownActions,
) -> Decimal:
    """
    Tier adjustment plus the recovery-mode cap.

    While the account is in recovery and recovery rules exist, the result
    never exceeds base_size * recovery_rules.max_position_size.
    """
    size = to_decimal("base_size", base_size)
    adjusted = calculate_position_size_adjustment(size, current_drawdown, drawdown_actions)

    rules = drawdown_actions.recovery_rules
    if account_status == AccountStatus.RECOVERY and rules is not None:
        adjusted = min(adjusted, size * rules.max_position_size)

    return adjusted


def should_block_new_positions(
    account_status: AccountStatus,
    current_drawdown: Number,
    drawdown_actions: DrawdownActions,
) -> bool:
    """True if the account is locked or the active tier is defensive/locked."""
    if account_status == AccountStatus.LOCKED:
        return True
    tier = get_action_for_drawdown(current_drawdown, drawdown_actions)
    return tier is not None and tier.action in BLOCKING_ACTIONS


def get_asset_class_limit(
    asset_class: Union[AssetClass, str],
    limits: AssetClassLimits,
) -> Optional[AssetClassLimit]:
    """
    Keyed lookup of an asset-class override.

    None means the caller falls back to portfolio-level limits; unknown
    asset class names also return None.
    """
    try:
        key = AssetClass(asset_class)
    except ValueError:
        logger.debug("tiers.unknown_asset_class", asset_class=str(asset_class))
        return None
    return getattr(limits, key.value)


__all__ = [
    "BLOCKING_ACTIONS",
    "get_action_for_drawdown",
    "account_status_for_tier",
    "calculate_position_size_adjustment",
    "calculate_adjusted_position_size",
    "should_block_new_positions",
    "get_asset_class_limit",
]
