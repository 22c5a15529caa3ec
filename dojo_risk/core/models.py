"""Data models for the Dojo risk core.

This module defines the entities shared by the four risk components:
- Trade arithmetic results (position sizing, P&L, risk limit checks)
- Drawdown tier configuration and asset-class limits
- Circuit breaker events and the portfolio account status
- Strategies, positions and executions tracked by the lifecycle manager

All monetary values use Decimal for precision.
All timestamps are naive UTC datetime objects.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# =============================================================================
# Enums
# =============================================================================

class Direction(str, Enum):
    """Position direction."""
    LONG = "long"
    SHORT = "short"


class PositionStatus(str, Enum):
    """Position lifecycle status."""
    OPEN = "open"
    CLOSED = "closed"


class ExecutionSide(str, Enum):
    """Side of a recorded execution."""
    BUY = "buy"
    SELL = "sell"


class StrategyStatus(str, Enum):
    """Strategy permission state."""
    ACTIVE = "active"
    PAUSED = "paused"
    BLOCKED = "blocked"             # Keeps positions, opens nothing new
    CLOSED = "closed"               # Terminal
    TESTING = "testing"


class AccountStatus(str, Enum):
    """Coarse portfolio status derived from drawdown and breaker events."""
    ACTIVE = "active"
    WARNING = "warning"
    RECOVERY = "recovery"
    LOCKED = "locked"


class TierAction(str, Enum):
    """Risk action attached to a drawdown tier."""
    WARNING = "warning"
    REDUCE = "reduce"
    DEFENSIVE = "defensive"
    LOCKED = "locked"


class BreakerLevel(str, Enum):
    """Scope a circuit breaker event applies to."""
    PORTFOLIO = "portfolio"
    STRATEGY = "strategy"
    POSITION = "position"


class AssetClass(str, Enum):
    """Asset classes with their own drawdown limits."""
    CRYPTO = "crypto"
    EQUITIES = "equities"
    FOREX = "forex"
    COMMODITIES = "commodities"


# =============================================================================
# Risk Configuration Models
# =============================================================================

class DrawdownTier(BaseModel):
    """A drawdown threshold paired with a risk action.

    Attributes:
        threshold: Negative drawdown percentage (e.g. -5 for 5% below peak)
        action: Action to take once drawdown reaches the threshold
        position_size_multiplier: Scale applied to new position sizes
        notification: Whether reaching the tier should notify the user
    """
    model_config = ConfigDict(frozen=True)

    threshold: Decimal = Field(..., le=0, description="Drawdown % (<= 0)")
    action: TierAction = Field(..., description="Risk action")
    position_size_multiplier: Optional[Decimal] = Field(
        default=None, gt=0, le=1, description="Size multiplier in (0, 1]"
    )
    notification: bool = Field(default=False, description="Notify on entry")


class RecoveryRules(BaseModel):
    """Entry/exit thresholds for recovery mode.

    Attributes:
        trigger_percent: Drawdown at or below which recovery mode starts
        exit_percent: Drawdown above which recovery mode ends
        max_position_size: Cap on new sizes while recovering (fraction of base)
    """
    model_config = ConfigDict(frozen=True)

    trigger_percent: Decimal = Field(..., le=0, description="Recovery entry %")
    exit_percent: Decimal = Field(..., le=0, description="Recovery exit %")
    max_position_size: Decimal = Field(..., gt=0, le=1, description="Size cap")

    @model_validator(mode="after")
    def exit_not_deeper_than_trigger(self) -> "RecoveryRules":
        """Exit must sit at or above the trigger, otherwise recovery never ends."""
        if self.exit_percent < self.trigger_percent:
            raise ValueError("exit_percent must be >= trigger_percent")
        return self


class DrawdownActions(BaseModel):
    """Tier list plus optional recovery rules for one portfolio."""
    model_config = ConfigDict(frozen=True)

    tiers: List[DrawdownTier] = Field(default_factory=list)
    recovery_rules: Optional[RecoveryRules] = Field(default=None)

    @property
    def sorted_tiers(self) -> List[DrawdownTier]:
        """Tiers ordered most severe (most negative threshold) first."""
        return sorted(self.tiers, key=lambda tier: tier.threshold)


class AssetClassLimit(BaseModel):
    """Risk limits specific to one asset class."""
    model_config = ConfigDict(frozen=True)

    max_drawdown_percent: Decimal = Field(..., gt=0, description="e.g. 40 for crypto")
    max_volatility_multiplier: Decimal = Field(..., gt=0)
    cooling_off_period_hours: int = Field(..., ge=0)
    max_leverage: Optional[Decimal] = Field(default=None, gt=0)


class AssetClassLimits(BaseModel):
    """Optional limit per asset class."""
    model_config = ConfigDict(frozen=True)

    crypto: Optional[AssetClassLimit] = None
    equities: Optional[AssetClassLimit] = None
    forex: Optional[AssetClassLimit] = None
    commodities: Optional[AssetClassLimit] = None


# =============================================================================
# Strategy Rule Models
# =============================================================================

class BlackoutPeriods(BaseModel):
    model_config = ConfigDict(extra="allow")

    news_minutes_before: Optional[int] = Field(default=None, ge=0)
    news_minutes_after: Optional[int] = Field(default=None, ge=0)
    earnings_blackout: bool = False


class EntryRules(BaseModel):
    """Entry conditions. Consumed by signal collaborators, copied on clone."""
    model_config = ConfigDict(extra="allow")

    signals: List[str] = Field(default_factory=list)
    required_confirmations: int = Field(default=1, ge=0)
    signal_validity_minutes: int = Field(default=60, ge=0)
    correlation_limit: Optional[float] = Field(default=None, ge=0, le=1)
    blackout_periods: Optional[BlackoutPeriods] = None


class StopLossRule(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Literal["fixed", "atr", "percentage"]
    value: float = Field(..., gt=0)
    trailing_enabled: bool = False
    trailing_activation: Optional[float] = None


class TakeProfitTarget(BaseModel):
    percentage: float = Field(..., gt=0, le=100, description="Share of position to exit")
    profit_percent: float = Field(..., description="Exit at this profit level")


class TakeProfitRule(BaseModel):
    model_config = ConfigDict(extra="allow")

    targets: List[TakeProfitTarget] = Field(default_factory=list)
    trailing_enabled: bool = False


class TimeBasedExit(BaseModel):
    max_holding_days: Optional[int] = Field(default=None, gt=0)
    weekend_exit: bool = False


class ExitRules(BaseModel):
    """Exit conditions. Consumed by execution collaborators, copied on clone."""
    model_config = ConfigDict(extra="allow")

    stop_loss: StopLossRule
    take_profit: TakeProfitRule = Field(default_factory=TakeProfitRule)
    time_based_exit: Optional[TimeBasedExit] = None


class FixedSizing(BaseModel):
    model_config = ConfigDict(extra="allow")

    method: Literal["fixed"] = "fixed"
    base_size: float = Field(..., gt=0)
    max_risk_percent: Optional[float] = Field(default=None, gt=0)


class KellySizing(BaseModel):
    model_config = ConfigDict(extra="allow")

    method: Literal["kelly"] = "kelly"
    kelly_fraction: float = Field(default=0.25, gt=0, le=1)
    max_risk_percent: Optional[float] = Field(default=None, gt=0)


class VolatilitySizing(BaseModel):
    model_config = ConfigDict(extra="allow")

    method: Literal["volatility"] = "volatility"
    volatility_lookback: int = Field(default=20, gt=0)
    max_risk_percent: Optional[float] = Field(default=None, gt=0)


class RiskParitySizing(BaseModel):
    model_config = ConfigDict(extra="allow")

    method: Literal["risk_parity"] = "risk_parity"
    volatility_lookback: int = Field(default=60, gt=0)
    max_risk_percent: Optional[float] = Field(default=None, gt=0)


# One variant per sizing method, selected by the "method" tag
PositionSizingRules = Annotated[
    Union[FixedSizing, KellySizing, VolatilitySizing, RiskParitySizing],
    Field(discriminator="method"),
]


# =============================================================================
# Circuit Breaker & Portfolio Models
# =============================================================================

class CircuitBreakerEvent(BaseModel):
    """A recorded suspension of some scope of trading.

    Events are append-only: clearing sets cleared_at instead of deleting.

    Attributes:
        level: Portfolio, strategy or position scope
        triggered_by: What raised the event (e.g. "drawdown", "manual")
        reason: Explanation carrying the triggering numbers
        action: Tier action the event stands for, if any
        triggered_at: When the event was raised
        expires_at: Automatic expiry (None = until cleared)
        cleared_at: When the event was cleared explicitly
    """
    id: str = Field(default_factory=lambda: str(uuid4()))
    level: BreakerLevel
    triggered_by: str
    reason: str
    action: Optional[TierAction] = None
    triggered_at: datetime = Field(default_factory=datetime.utcnow)
    expires_at: Optional[datetime] = None
    cleared_at: Optional[datetime] = None

    def is_active(self, now: Optional[datetime] = None) -> bool:
        """True if neither cleared nor expired at `now`."""
        if self.cleared_at is not None:
            return False
        if self.expires_at is not None:
            return (now or datetime.utcnow()) < self.expires_at
        return True


class Portfolio(BaseModel):
    """Aggregate financial state of one portfolio.

    account_status is assigned only by the derivation in
    dojo_risk.risk.circuit_breaker; never set it by hand.
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    id: str = Field(default_factory=lambda: str(uuid4()))
    name: str = Field(default="")
    current_balance: Decimal = Field(..., ge=0)
    peak_balance: Decimal = Field(default=Decimal("0"), ge=0)
    account_status: AccountStatus = Field(default=AccountStatus.ACTIVE)
    breaker_events: List[CircuitBreakerEvent] = Field(default_factory=list)
    # Set when recovery is left; holds the account active until drawdown
    # falls back to the recovery exit threshold
    recovery_exited_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None

    @model_validator(mode="after")
    def peak_at_least_current(self) -> "Portfolio":
        if self.peak_balance < self.current_balance:
            self.peak_balance = self.current_balance
        return self

    @property
    def current_drawdown_pct(self) -> Decimal:
        """(current - peak) / peak * 100; always <= 0."""
        if self.peak_balance == 0:
            return Decimal("0")
        return (self.current_balance - self.peak_balance) / self.peak_balance * 100


# =============================================================================
# Strategy, Position & Execution Models
# =============================================================================

class Strategy(BaseModel):
    """A named, versioned trading ruleset.

    Attributes:
        portfolio_id: Owning portfolio
        parent_strategy_id: Strategy this one was cloned from
        status: Permission state (see StrategyStatus)
        blocked_reason: Present iff status is blocked
        max_positions: Maximum concurrent open positions
        max_risk_percent: Maximum risk per trade (% of allocated capital)
        max_drawdown: Strategy drawdown limit (%, <= 0)
        allocated_capital: Capital assigned from the portfolio
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    id: str = Field(default_factory=lambda: str(uuid4()))
    portfolio_id: str
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    parent_strategy_id: Optional[str] = None
    status: StrategyStatus = Field(default=StrategyStatus.ACTIVE)
    blocked_reason: Optional[str] = None

    entry_rules: Optional[EntryRules] = None
    exit_rules: Optional[ExitRules] = None
    position_sizing_rules: Optional[PositionSizingRules] = None

    max_positions: int = Field(default=5, ge=0)
    max_risk_percent: Decimal = Field(default=Decimal("2"), gt=0)
    max_drawdown: Decimal = Field(default=Decimal("-20"), le=0)
    allocated_capital: Decimal = Field(default=Decimal("0"), ge=0)

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None

    @model_validator(mode="after")
    def blocked_reason_iff_blocked(self) -> "Strategy":
        if self.status == StrategyStatus.BLOCKED and not self.blocked_reason:
            raise ValueError("blocked strategy requires blocked_reason")
        if self.status != StrategyStatus.BLOCKED and self.blocked_reason:
            raise ValueError("blocked_reason is only allowed on blocked strategies")
        return self


class Position(BaseModel):
    """One open or closed exposure owned by a strategy."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    id: str = Field(default_factory=lambda: str(uuid4()))
    strategy_id: str
    symbol: str = Field(..., min_length=1)
    direction: Direction

    quantity: Decimal = Field(default=Decimal("0"), ge=0)
    avg_entry_price: Decimal = Field(default=Decimal("0"), ge=0)
    avg_exit_price: Optional[Decimal] = None

    stop_loss: Optional[Decimal] = Field(default=None, gt=0)
    take_profit: Optional[Decimal] = Field(default=None, gt=0)
    initial_risk: Optional[Decimal] = Field(default=None, ge=0)

    realized_pnl: Decimal = Field(default=Decimal("0"))
    unrealized_pnl: Decimal = Field(default=Decimal("0"))
    net_pnl: Decimal = Field(default=Decimal("0"))
    total_fees: Decimal = Field(default=Decimal("0"), ge=0)
    r_multiple: Optional[Decimal] = None

    status: PositionStatus = Field(default=PositionStatus.OPEN)
    opened_at: datetime = Field(default_factory=datetime.utcnow)
    closed_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status == PositionStatus.OPEN


class Execution(BaseModel):
    """A fill recorded against a position."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    position_id: str
    side: ExecutionSide
    quantity: Decimal = Field(..., gt=0)
    price: Decimal = Field(..., gt=0)

    commission: Decimal = Field(default=Decimal("0"), ge=0)
    exchange_fees: Decimal = Field(default=Decimal("0"), ge=0)
    sec_fees: Decimal = Field(default=Decimal("0"), ge=0)
    taf_fees: Decimal = Field(default=Decimal("0"), ge=0)
    clearing_fees: Decimal = Field(default=Decimal("0"), ge=0)
    other_fees: Decimal = Field(default=Decimal("0"), ge=0)

    executed_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def total_fees(self) -> Decimal:
        return (
            self.commission + self.exchange_fees + self.sec_fees
            + self.taf_fees + self.clearing_fees + self.other_fees
        )

    @property
    def gross_value(self) -> Decimal:
        return self.quantity * self.price

    @property
    def net_value(self) -> Decimal:
        """Cash paid (buy) or received (sell) after fees."""
        if self.side == ExecutionSide.BUY:
            return self.gross_value + self.total_fees
        return self.gross_value - self.total_fees


# =============================================================================
# Result Models
# =============================================================================

class PositionCalculation(BaseModel):
    """Output of calculate_position_size (rounded, see calculations module)."""

    quantity: Decimal
    position_size_usd: Decimal
    risk_amount: Decimal
    risk_percent: Decimal
    risk_reward_ratio: Optional[Decimal] = None


class PnLResult(BaseModel):
    pnl_amount: Decimal
    pnl_percent: Decimal


class RiskLimitCheck(BaseModel):
    is_valid: bool
    violations: List[str] = Field(default_factory=list)


class PositionPermission(BaseModel):
    """Answer of can_open_positions. Anything but allowed is a hard stop."""

    allowed: bool
    reason: Optional[str] = None

    @classmethod
    def allow(cls) -> "PositionPermission":
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: str) -> "PositionPermission":
        return cls(allowed=False, reason=reason)


class CloneResult(BaseModel):
    original_id: str
    original_status: StrategyStatus
    cloned: Strategy


class StrategyVersion(BaseModel):
    """One entry of a lineage with its position summary."""

    strategy: Strategy
    open_positions: int = 0
    closed_positions: int = 0
    net_pnl: Decimal = Decimal("0")


class StrategyLineage(BaseModel):
    root: Strategy
    versions: List[StrategyVersion] = Field(default_factory=list)

    @property
    def total_versions(self) -> int:
        return len(self.versions)


class SystemMetrics(BaseModel):
    """Snapshot produced by a portfolio health check."""

    portfolio_id: str
    current_drawdown: Decimal
    peak_balance: Decimal
    current_balance: Decimal
    open_positions: int = 0
    account_status: AccountStatus
    previous_status: Optional[AccountStatus] = None
    active_breakers: List[CircuitBreakerEvent] = Field(default_factory=list)
    last_updated: datetime = Field(default_factory=datetime.utcnow)


class TradeRequest(BaseModel):
    """Inbound "evaluate new trade" request from the execution subsystem."""

    strategy_id: str
    symbol: str = Field(..., min_length=1)
    direction: Direction
    entry_price: Decimal
    stop_loss: Decimal
    risk_amount: Decimal
    target_price: Optional[Decimal] = None
    asset_class: Optional[AssetClass] = None
    daily_risk_used: Decimal = Field(default=Decimal("0"), ge=0)
    weekly_risk_used: Decimal = Field(default=Decimal("0"), ge=0)

    @field_validator("symbol")
    @classmethod
    def upper_symbol(cls, v: str) -> str:
        return v.strip().upper()


class TradeDecision(BaseModel):
    """Result of evaluating a trade request."""

    allowed: bool
    reason: Optional[str] = None
    sizing: Optional[PositionCalculation] = None
    adjusted_quantity: Optional[Decimal] = None
    multiplier: Decimal = Decimal("1")
    account_status: Optional[AccountStatus] = None
    asset_class_limit: Optional[AssetClassLimit] = None
    violations: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class EmergencyStopResult(BaseModel):
    portfolio_id: str
    portfolio_locked: bool
    strategies_blocked: int
    open_positions: int
    reason: str
