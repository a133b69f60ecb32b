"""
Configuration models for the liquidity protection engine.

Uses Pydantic for validation and type safety.
"""
import os
import re
from decimal import Decimal
from pathlib import Path
from typing import List, Literal, Optional

import yaml
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from liquidity_guard.constants import MAX_SLIPPAGE_BPS, MAX_TWAP_WINDOW_SECONDS

CONFIG_SCHEMA_VERSION = "2026-10-01"


class GuardConfig(BaseSettings):
    """Protective policy: rate limits, vesting, fees, slippage."""
    model_config = SettingsConfigDict(extra="ignore")

    # Rolling-window withdrawal limits (% of principal at window start)
    daily_limit_pct: Decimal = Field(default=Decimal("5"), ge=0, le=100)
    weekly_limit_pct: Decimal = Field(default=Decimal("25"), ge=0, le=100)

    # Vesting: % of lifetime deposits unlocked per full week since first deposit
    vesting_unlock_pct_per_week: Decimal = Field(default=Decimal("10"), ge=0, le=100)

    # Fee schedule
    base_fee_pct: Decimal = Field(default=Decimal("2"), ge=0, le=100)
    large_withdrawal_fee_pct: Decimal = Field(default=Decimal("5"), ge=0, le=100)
    large_withdrawal_threshold_pct: Decimal = Field(
        default=Decimal("50"), ge=0, le=100,
        description="Withdrawals above this share of principal pay the size surcharge",
    )
    max_fee_pct: Decimal = Field(default=Decimal("50"), ge=0, le=100, description="Hard fee ceiling")
    fee_sink: str = Field(default="fee-sink", min_length=1, description="Address receiving withdrawal fees")

    # Cooldown between two withdrawals of the same account
    removal_cooldown_seconds: int = Field(default=3600, ge=0, le=30 * 86_400)

    # 0 = unlimited
    max_principal_per_account: Decimal = Field(default=Decimal("0"), ge=0)

    # Minimum reward amount for a reinvestment; 0 = any amount
    reinjection_threshold: Decimal = Field(default=Decimal("0"), ge=0)

    # Slippage tolerance for AMM calls
    slippage_tolerance_bps: int = Field(default=50, ge=0, le=MAX_SLIPPAGE_BPS)

    @model_validator(mode="after")
    def validate_window_ordering(self):
        if self.weekly_limit_pct < self.daily_limit_pct:
            raise ValueError("weekly_limit_pct must be >= daily_limit_pct")
        return self


class TWAPConfig(BaseSettings):
    """TWAP observation windows and deviation tolerance."""
    model_config = SettingsConfigDict(extra="ignore")

    enabled: bool = True
    windows: List[int] = Field(default_factory=lambda: [1800, 3600, 14400])
    max_deviation_pct: Decimal = Field(default=Decimal("5"), ge=0, le=100)
    cache_ttl_seconds: int = Field(default=3600, ge=0, le=MAX_TWAP_WINDOW_SECONDS)

    @field_validator("windows")
    @classmethod
    def validate_windows(cls, v):
        seen = []
        for window in v:
            if window <= 0 or window > MAX_TWAP_WINDOW_SECONDS:
                raise ValueError(
                    f"TWAP window {window}s outside (0, {MAX_TWAP_WINDOW_SECONDS}]"
                )
            if window not in seen:
                seen.append(window)
        return seen

    @model_validator(mode="after")
    def validate_enabled_has_windows(self):
        if self.enabled and not self.windows:
            raise ValueError("At least one TWAP window is required while validation is enabled")
        return self


class PositionConfig(BaseSettings):
    """AMM position placement."""
    model_config = SettingsConfigDict(extra="ignore")

    # Range half-width, in multiples of the pool's tick spacing
    tick_half_width: int = Field(default=10, ge=1, le=10_000)


class MonitoringConfig(BaseSettings):
    """Logging configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = None


class StorageConfig(BaseSettings):
    """Persisted state surface."""
    model_config = SettingsConfigDict(extra="ignore")

    database_url: str = "sqlite:///data/liquidity_guard.db"


class Config(BaseSettings):
    """Main configuration class."""
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        extra="ignore",
    )

    schema_version: str = CONFIG_SCHEMA_VERSION
    engine_address: str = "liquidity-guard"
    guard: GuardConfig = Field(default_factory=GuardConfig)
    twap: TWAPConfig = Field(default_factory=TWAPConfig)
    positions: PositionConfig = Field(default_factory=PositionConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    environment: Literal["dev", "test", "prod"] = "prod"

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> "Config":
        """Load configuration from YAML file, expanding ${VAR} / $VAR references."""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(yaml_path, "r") as f:
            raw_content = f.read()

        pattern = re.compile(r'\$\{([^}]+)\}|\$([a-zA-Z_][a-zA-Z0-9_]*)')

        def replace_match(match):
            var_name = match.group(1) or match.group(2)
            return os.environ.get(var_name, match.group(0))  # Leave unresolved references as-is

        expanded_content = pattern.sub(replace_match, raw_content)
        config_dict = yaml.safe_load(expanded_content) or {}

        if "ENVIRONMENT" in os.environ:
            config_dict["environment"] = os.environ["ENVIRONMENT"]

        if os.getenv("DATABASE_URL"):
            config_dict.setdefault("storage", {})["database_url"] = os.environ["DATABASE_URL"]

        return cls(**config_dict)


def load_config(config_path: str | Path | None = None) -> Config:
    """
    Load and validate configuration.

    Args:
        config_path: Path to config.yaml file. If None, uses the bundled config/config.yaml

    Returns:
        Validated Config object

    Raises:
        FileNotFoundError: If config file not found
        pydantic.ValidationError: If configuration validation fails
    """
    from liquidity_guard.config.dotenv_loader import load_dotenv_files

    load_dotenv_files()

    if config_path is None:
        config_path = Path(__file__).parent / "config.yaml"

    return Config.from_yaml(config_path)
