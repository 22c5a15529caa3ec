"""Configuration management for the Dojo risk core.

Settings come from the environment / .env via pydantic-settings. Drawdown
tiers, recovery rules and asset-class limits are data: they are loaded per
portfolio from a JSON risk profile file, so changing them needs no code
change. File layout:

    {
        "default": {"drawdown_actions": {...}, "asset_class_limits": {...}},
        "<portfolio id>": {...}
    }
"""

import json
from decimal import Decimal
from pathlib import Path
from typing import Dict, Literal, Optional

import structlog
from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from dojo_risk.core.errors import ConfigurationError
from dojo_risk.core.models import (
    AssetClassLimit, AssetClassLimits, DrawdownActions, DrawdownTier,
    RecoveryRules, TierAction
)

logger = structlog.get_logger(__name__)


# =============================================================================
# System Configuration
# =============================================================================


class SystemConfig(BaseSettings):
    """System-level configuration settings."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    environment: Literal["development", "staging", "production"] = Field(
        default="development", validation_alias="ENVIRONMENT"
    )
    app_name: str = Field(default="Dojo Risk Core", validation_alias="APP_NAME")
    app_version: str = Field(default="1.0.0", validation_alias="APP_VERSION")


# =============================================================================
# Risk Limits Configuration
# =============================================================================


class RiskLimitsConfig(BaseSettings):
    """Per-trade, daily and weekly risk budgets (percent of balance)."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    max_risk_per_trade: float = Field(default=2.0, validation_alias="MAX_RISK_PER_TRADE")
    max_daily_risk: float = Field(default=6.0, validation_alias="MAX_DAILY_RISK")
    max_weekly_risk: float = Field(default=10.0, validation_alias="MAX_WEEKLY_RISK")

    @field_validator("max_risk_per_trade", "max_daily_risk", "max_weekly_risk")
    @classmethod
    def validate_percentage(cls, v):
        """Validate that a risk budget is within (0, 100]."""
        if v <= 0 or v > 100:
            raise ValueError("Risk limit must be between 0 and 100 percent")
        return v


# =============================================================================
# Risk Profile Configuration
# =============================================================================


class RiskProfileConfig(BaseSettings):
    """Where per-portfolio risk profiles live and how lineage walks are bounded."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    risk_profile_file: Optional[str] = Field(default=None, validation_alias="RISK_PROFILE_FILE")
    max_lineage_depth: int = Field(default=1000, validation_alias="MAX_LINEAGE_DEPTH")

    @field_validator("max_lineage_depth")
    @classmethod
    def validate_depth(cls, v):
        if v < 1:
            raise ValueError("max_lineage_depth must be at least 1")
        return v


# =============================================================================
# Database Configuration
# =============================================================================


class DatabaseConfig(BaseSettings):
    """Database configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    database_url: str = Field(
        default="sqlite:///./data/dojo_risk.db", validation_alias="DATABASE_URL"
    )
    database_echo: bool = Field(default=False, validation_alias="DATABASE_ECHO")


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", validation_alias="LOG_LEVEL"
    )
    log_file: Optional[str] = Field(default="logs/dojo_risk.log", validation_alias="LOG_FILE")
    log_format: Literal["json", "console"] = Field(default="json", validation_alias="LOG_FORMAT")


# =============================================================================
# Risk Profiles
# =============================================================================

DEFAULT_DRAWDOWN_ACTIONS = DrawdownActions(
    tiers=[
        DrawdownTier(threshold=Decimal("-5"), action=TierAction.WARNING, notification=True),
        DrawdownTier(
            threshold=Decimal("-10"), action=TierAction.REDUCE,
            position_size_multiplier=Decimal("0.5"), notification=True,
        ),
        DrawdownTier(
            threshold=Decimal("-15"), action=TierAction.DEFENSIVE,
            position_size_multiplier=Decimal("0.25"), notification=True,
        ),
        DrawdownTier(threshold=Decimal("-20"), action=TierAction.LOCKED, notification=True),
    ],
    recovery_rules=RecoveryRules(
        trigger_percent=Decimal("-10"),
        exit_percent=Decimal("-5"),
        max_position_size=Decimal("0.5"),
    ),
)

DEFAULT_ASSET_CLASS_LIMITS = AssetClassLimits(
    crypto=AssetClassLimit(
        max_drawdown_percent=Decimal("40"),
        max_volatility_multiplier=Decimal("0.5"),
        cooling_off_period_hours=48,
    ),
    equities=AssetClassLimit(
        max_drawdown_percent=Decimal("20"),
        max_volatility_multiplier=Decimal("0.75"),
        cooling_off_period_hours=24,
    ),
    forex=AssetClassLimit(
        max_drawdown_percent=Decimal("15"),
        max_volatility_multiplier=Decimal("0.75"),
        cooling_off_period_hours=24,
        max_leverage=Decimal("10"),
    ),
    commodities=AssetClassLimit(
        max_drawdown_percent=Decimal("25"),
        max_volatility_multiplier=Decimal("0.5"),
        cooling_off_period_hours=24,
        max_leverage=Decimal("5"),
    ),
)


class RiskLimits(BaseModel):
    """Risk budgets carried by a profile (percent of balance)."""

    max_risk_per_trade: Decimal = Field(default=Decimal("2"), gt=0, le=100)
    max_daily_risk: Decimal = Field(default=Decimal("6"), gt=0, le=100)
    max_weekly_risk: Decimal = Field(default=Decimal("10"), gt=0, le=100)


class RiskProfile(BaseModel):
    """Everything the risk core needs to know about one portfolio's limits."""

    drawdown_actions: DrawdownActions = Field(default=DEFAULT_DRAWDOWN_ACTIONS)
    asset_class_limits: AssetClassLimits = Field(default=DEFAULT_ASSET_CLASS_LIMITS)
    risk_limits: RiskLimits = Field(default_factory=RiskLimits)


class RiskProfileLoader:
    """
    Resolves the RiskProfile for a portfolio id.

    Lookup order: explicit profile for the id, then the "default" entry,
    then built-in defaults. Profiles are parsed once per loader.
    """

    DEFAULT_KEY = "default"

    def __init__(
        self,
        profiles: Optional[Dict[str, RiskProfile]] = None,
        limits_config: Optional[RiskLimitsConfig] = None,
    ):
        self._profiles: Dict[str, RiskProfile] = dict(profiles or {})
        self._limits_config = limits_config

    @classmethod
    def from_dict(
        cls,
        raw: Dict[str, dict],
        limits_config: Optional[RiskLimitsConfig] = None,
    ) -> "RiskProfileLoader":
        """Build from already-decoded JSON data.

        Raises:
            ConfigurationError: if any profile fails validation
        """
        if not isinstance(raw, dict):
            raise ConfigurationError("risk_profiles", type(raw).__name__, "Risk profiles must be a JSON object")

        profiles: Dict[str, RiskProfile] = {}
        for key, value in raw.items():
            try:
                profiles[key] = RiskProfile.model_validate(value)
            except PydanticValidationError as exc:
                raise ConfigurationError(
                    f"risk_profiles.{key}", value, f"Invalid risk profile '{key}': {exc}"
                ) from exc
        return cls(profiles, limits_config)

    @classmethod
    def from_file(
        cls,
        path: str,
        limits_config: Optional[RiskLimitsConfig] = None,
    ) -> "RiskProfileLoader":
        """Load profiles from a JSON file."""
        file_path = Path(path)
        try:
            raw = json.loads(file_path.read_text())
        except FileNotFoundError as exc:
            raise ConfigurationError("risk_profile_file", path, f"Risk profile file not found: {path}") from exc
        except json.JSONDecodeError as exc:
            raise ConfigurationError("risk_profile_file", path, f"Risk profile file is not valid JSON: {exc}") from exc

        loader = cls.from_dict(raw, limits_config)
        logger.info("config.risk_profiles_loaded", path=path, profiles=sorted(raw.keys()))
        return loader

    @classmethod
    def from_config(
        cls,
        config: RiskProfileConfig,
        limits_config: Optional[RiskLimitsConfig] = None,
    ) -> "RiskProfileLoader":
        if config.risk_profile_file:
            return cls.from_file(config.risk_profile_file, limits_config)
        return cls(limits_config=limits_config)

    def get_profile(self, portfolio_id: Optional[str] = None) -> RiskProfile:
        if portfolio_id is not None and portfolio_id in self._profiles:
            return self._profiles[portfolio_id]
        if self.DEFAULT_KEY in self._profiles:
            return self._profiles[self.DEFAULT_KEY]
        if self._limits_config is None:
            return RiskProfile()
        return RiskProfile(risk_limits=RiskLimits(
            max_risk_per_trade=Decimal(str(self._limits_config.max_risk_per_trade)),
            max_daily_risk=Decimal(str(self._limits_config.max_daily_risk)),
            max_weekly_risk=Decimal(str(self._limits_config.max_weekly_risk)),
        ))

    def set_profile(self, portfolio_id: str, profile: RiskProfile) -> None:
        self._profiles[portfolio_id] = profile


# =============================================================================
# Aggregate Configuration
# =============================================================================


class RiskCoreConfig:
    """Aggregates every configuration section."""

    def __init__(self):
        self.system = SystemConfig()
        self.risk_limits = RiskLimitsConfig()
        self.risk_profiles = RiskProfileConfig()
        self.database = DatabaseConfig()
        self.logging = LoggingConfig()

    def validate_configuration(self) -> dict:
        """
        Validate the complete configuration and return any issues.

        Returns:
            Dictionary with 'valid' boolean and 'issues' list
        """
        issues = []

        limits = self.risk_limits
        if limits.max_risk_per_trade > limits.max_daily_risk:
            issues.append("Max risk per trade exceeds max daily risk")
        if limits.max_daily_risk > limits.max_weekly_risk:
            issues.append("Max daily risk exceeds max weekly risk")

        profile_file = self.risk_profiles.risk_profile_file
        if profile_file:
            try:
                RiskProfileLoader.from_file(profile_file)
            except ConfigurationError as exc:
                issues.append(exc.message)

        return {"valid": len(issues) == 0, "issues": issues}


# =============================================================================
# Global Configuration Instances
# =============================================================================

risk_limits_config = RiskLimitsConfig()
risk_profile_config = RiskProfileConfig()
database_config = DatabaseConfig()
logging_config = LoggingConfig()

core_config = RiskCoreConfig()


__all__ = [
    "SystemConfig",
    "RiskLimitsConfig",
    "RiskProfileConfig",
    "DatabaseConfig",
    "LoggingConfig",
    "RiskCoreConfig",
    "RiskLimits",
    "RiskProfile",
    "RiskProfileLoader",
    "DEFAULT_DRAWDOWN_ACTIONS",
    "DEFAULT_ASSET_CLASS_LIMITS",
    "risk_limits_config",
    "risk_profile_config",
    "database_config",
    "logging_config",
    "core_config",
]
