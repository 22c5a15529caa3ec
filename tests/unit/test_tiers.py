"""Unit tests for the risk tier engine."""
import pytest
from decimal import Decimal

from dojo_risk.core.config import DEFAULT_ASSET_CLASS_LIMITS
from dojo_risk.core.errors import ValidationError
from dojo_risk.core.models import (
    AccountStatus, AssetClass, AssetClassLimits, DrawdownActions,
    DrawdownTier, TierAction
)
from dojo_risk.risk.tiers import (
    account_status_for_tier, calculate_adjusted_position_size,
    calculate_position_size_adjustment, get_action_for_drawdown,
    get_asset_class_limit, should_block_new_positions
)


# =============================================================================
# Tier Lookup Tests
# =============================================================================

class TestGetActionForDrawdown:
    """Test drawdown -> tier mapping."""

    @pytest.mark.parametrize("drawdown,expected", [
        ("-22", TierAction.LOCKED),
        ("-20", TierAction.LOCKED),
        ("-16", TierAction.DEFENSIVE),
        ("-12", TierAction.REDUCE),
        ("-10", TierAction.REDUCE),
        ("-5", TierAction.WARNING),
    ])
    def test_reference_tiers(self, drawdown_actions, drawdown, expected):
        tier = get_action_for_drawdown(Decimal(drawdown), drawdown_actions)
        assert tier.action == expected

    @pytest.mark.parametrize("drawdown", ["-3", "-4.99", "0"])
    def test_shallow_drawdown_has_no_tier(self, drawdown_actions, drawdown):
        assert get_action_for_drawdown(Decimal(drawdown), drawdown_actions) is None

    def test_tier_order_in_config_does_not_matter(self, reference_tiers):
        """Tiers are sorted before matching."""
        shuffled = DrawdownActions(tiers=[reference_tiers[2], reference_tiers[0], reference_tiers[3], reference_tiers[1]])

        assert get_action_for_drawdown(Decimal("-22"), shuffled).action == TierAction.LOCKED
        assert get_action_for_drawdown(Decimal("-12"), shuffled).action == TierAction.REDUCE

    def test_empty_tiers(self):
        assert get_action_for_drawdown(Decimal("-50"), DrawdownActions()) is None

    def test_non_numeric_drawdown_rejected(self, drawdown_actions):
        with pytest.raises(ValidationError):
            get_action_for_drawdown("lots", drawdown_actions)

    def test_account_status_for_tier(self, drawdown_actions):
        assert account_status_for_tier(None) == AccountStatus.ACTIVE
        for drawdown, status in [
            ("-6", AccountStatus.WARNING),
            ("-12", AccountStatus.WARNING),
            ("-16", AccountStatus.RECOVERY),
            ("-21", AccountStatus.LOCKED),
        ]:
            tier = get_action_for_drawdown(Decimal(drawdown), drawdown_actions)
            assert account_status_for_tier(tier) == status


# =============================================================================
# Position Size Adjustment Tests
# =============================================================================

class TestPositionSizeAdjustment:
    """Test tier multipliers and the recovery cap."""

    def test_no_tier_keeps_size(self, drawdown_actions):
        assert calculate_position_size_adjustment(Decimal("100"), Decimal("-3"), drawdown_actions) == Decimal("100")

    def test_reduce_tier_halves_size(self, drawdown_actions):
        assert calculate_position_size_adjustment(Decimal("100"), Decimal("-12"), drawdown_actions) == Decimal("50")

    def test_defensive_tier_quarters_size(self, drawdown_actions):
        assert calculate_position_size_adjustment(Decimal("100"), Decimal("-16"), drawdown_actions) == Decimal("25")

    def test_tier_without_multiplier_keeps_size(self, drawdown_actions):
        """Warning and locked tiers carry no multiplier."""
        assert calculate_position_size_adjustment(Decimal("100"), Decimal("-6"), drawdown_actions) == Decimal("100")
        assert calculate_position_size_adjustment(Decimal("100"), Decimal("-25"), drawdown_actions) == Decimal("100")

    def test_recovery_cap_applies_in_recovery(self, recovery_actions):
        """A warning tier alone keeps full size, the recovery cap halves it."""
        adjusted = calculate_adjusted_position_size(
            Decimal("100"), Decimal("-7"), AccountStatus.RECOVERY, recovery_actions
        )
        assert adjusted == Decimal("50")

    def test_recovery_cap_keeps_smaller_tier_size(self, recovery_actions):
        adjusted = calculate_adjusted_position_size(
            Decimal("100"), Decimal("-16"), AccountStatus.RECOVERY, recovery_actions
        )
        assert adjusted == Decimal("25")

    def test_recovery_cap_ignored_outside_recovery(self, recovery_actions):
        adjusted = calculate_adjusted_position_size(
            Decimal("100"), Decimal("-7"), AccountStatus.WARNING, recovery_actions
        )
        assert adjusted == Decimal("100")

    def test_recovery_status_without_rules(self, drawdown_actions):
        adjusted = calculate_adjusted_position_size(
            Decimal("100"), Decimal("-7"), AccountStatus.RECOVERY, drawdown_actions
        )
        assert adjusted == Decimal("100")


# =============================================================================
# Blocking Tests
# =============================================================================

class TestShouldBlockNewPositions:
    """Test the new-position block decision."""

    def test_locked_account_blocks(self, drawdown_actions):
        assert should_block_new_positions(AccountStatus.LOCKED, Decimal("0"), drawdown_actions)

    def test_defensive_tier_blocks(self, drawdown_actions):
        assert should_block_new_positions(AccountStatus.ACTIVE, Decimal("-16"), drawdown_actions)

    def test_locked_tier_blocks(self, drawdown_actions):
        assert should_block_new_positions(AccountStatus.WARNING, Decimal("-22"), drawdown_actions)

    def test_reduce_tier_does_not_block(self, drawdown_actions):
        assert not should_block_new_positions(AccountStatus.WARNING, Decimal("-12"), drawdown_actions)

    def test_no_tier_does_not_block(self, drawdown_actions):
        assert not should_block_new_positions(AccountStatus.ACTIVE, Decimal("-1"), drawdown_actions)


# =============================================================================
# Asset Class Limit Tests
# =============================================================================

class TestAssetClassLimits:
    """Test asset-class overrides."""

    def test_configured_class(self):
        limit = get_asset_class_limit(AssetClass.CRYPTO, DEFAULT_ASSET_CLASS_LIMITS)

        assert limit.max_drawdown_percent == Decimal("40")
        assert limit.cooling_off_period_hours == 48

    def test_lookup_by_name(self):
        limit = get_asset_class_limit("forex", DEFAULT_ASSET_CLASS_LIMITS)
        assert limit.max_leverage == Decimal("10")

    def test_unconfigured_class_falls_back(self):
        assert get_asset_class_limit(AssetClass.EQUITIES, AssetClassLimits()) is None

    def test_unknown_class(self):
        assert get_asset_class_limit("bonds", DEFAULT_ASSET_CLASS_LIMITS) is None


class TestTierModelValidation:
    """Test tier constraints enforced at load time."""

    def test_positive_threshold_rejected(self):
        with pytest.raises(ValueError):
            DrawdownTier(threshold=Decimal("5"), action=TierAction.WARNING)

    def test_multiplier_out_of_range_rejected(self):
        with pytest.raises(ValueError):
            DrawdownTier(threshold=Decimal("-5"), action=TierAction.REDUCE, position_size_multiplier=Decimal("1.5"))
        with pytest.raises(ValueError):
            DrawdownTier(threshold=Decimal("-5"), action=TierAction.REDUCE, position_size_multiplier=Decimal("0"))
