"""
Configuration models for the autotrader.

Uses Pydantic for validation and type safety. Values come from
`config.yaml` (with ${VAR} expansion) and can be overridden from the
environment using the `__` nested delimiter, e.g. `SCAN__INTERVAL_SECONDS=30`.
"""
from typing import Dict, List, Literal, Optional
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import os
import re
import yaml
from pathlib import Path

from autotrader.exceptions import ConfigurationError

CONFIG_SCHEMA_VERSION = "2026-10-01"

RISK_CHECK_NAMES = (
    "liquidity",
    "holder_count",
    "concentration_bounded",
    "authority_revoked",
    "liquidity_locked",
    "tax_bounded",
    "sellable",
)


class SystemConfig(BaseSettings):
    """System metadata."""
    model_config = SettingsConfigDict(extra="ignore")

    name: str = "autotrader"
    version: str = "0.4.0"
    dry_run: bool = True  # If True, swaps are simulated by the paper venue
    shutdown_grace_seconds: float = Field(default=30.0, ge=0.0, le=600.0)


class ScanConfig(BaseSettings):
    """Candidate scan loop."""
    model_config = SettingsConfigDict(extra="ignore")

    enabled: bool = True
    interval_seconds: float = Field(default=60.0, ge=1.0, le=3600.0)
    batch_size: int = Field(default=20, ge=1, le=500)
    max_parallel: int = Field(default=5, ge=1, le=64)


class MonitorConfig(BaseSettings):
    """Open-position monitor loop."""
    model_config = SettingsConfigDict(extra="ignore")

    interval_seconds: float = Field(default=15.0, ge=1.0, le=600.0)
    stuck_closing_alert_seconds: float = Field(default=300.0, ge=10.0)


class RiskConfig(BaseSettings):
    """Risk evaluator thresholds and score weights.

    `fail_weights` apply when a check fails, `unknown_weights` when its
    signal is missing. `unknown_policy` decides, per raw entry filter,
    whether a missing signal admits or rejects.
    """
    model_config = SettingsConfigDict(extra="ignore")

    min_liquidity: float = Field(default=5.0, ge=0.0)
    min_holders: int = Field(default=50, ge=0)
    max_concentration_pct: float = Field(default=50.0, ge=0.0, le=100.0)
    max_transfer_tax_pct: float = Field(default=5.0, ge=0.0, le=100.0)

    fail_weights: Dict[str, int] = Field(default_factory=lambda: {
        "liquidity": 30,
        "holder_count": 10,
        "concentration_bounded": 15,
        "authority_revoked": 55,
        "liquidity_locked": 15,
        "tax_bounded": 25,
        "sellable": 100,
    })
    unknown_weights: Dict[str, int] = Field(default_factory=lambda: {
        "liquidity": 20,
        "holder_count": 5,
        "concentration_bounded": 10,
        "authority_revoked": 30,
        "liquidity_locked": 10,
        "tax_bounded": 10,
        "sellable": 40,
    })
    unknown_policy: Dict[str, Literal["admit", "reject"]] = Field(default_factory=lambda: {
        "liquidity": "reject",
        "holders": "admit",
        "asset_age": "admit",
        "concentration": "reject",
        "transfer_tax": "reject",
    })

    @field_validator("fail_weights", "unknown_weights")
    @classmethod
    def validate_weights(cls, v: Dict[str, int]) -> Dict[str, int]:
        unknown = set(v) - set(RISK_CHECK_NAMES)
        if unknown:
            raise ValueError(f"Unknown risk checks in weights: {sorted(unknown)}")
        for name, weight in v.items():
            if weight < 0 or weight > 100:
                raise ValueError(f"Weight for {name} must be within 0..100, got {weight}")
        return v

    def policy_for(self, filter_name: str) -> str:
        return self.unknown_policy.get(filter_name, "reject")


class ExecutionConfig(BaseSettings):
    """Swap execution: timeouts, retries and slippage."""
    model_config = SettingsConfigDict(extra="ignore")

    default_slippage_bps: int = Field(default=100, ge=1, le=5000)
    max_retries: int = Field(default=3, ge=0, le=10)
    retry_base_delay_seconds: float = Field(default=1.0, ge=0.0, le=30.0)
    retry_max_backoff_seconds: float = Field(default=10.0, ge=0.0, le=120.0)
    quote_timeout_seconds: float = Field(default=10.0, gt=0.0, le=120.0)
    submit_timeout_seconds: float = Field(default=20.0, gt=0.0, le=120.0)
    confirm_timeout_seconds: float = Field(default=60.0, gt=0.0, le=600.0)
    confirm_poll_interval_seconds: float = Field(default=2.0, gt=0.0, le=30.0)
    # Times an unconfirmed entry is re-checked before its reservation is released
    max_confirm_rechecks: int = Field(default=5, ge=1, le=100)
    # Sell attempts per close before the position is finalized as FAILED
    max_close_attempts: int = Field(default=5, ge=1, le=50)


class DataConfig(BaseSettings):
    """External data endpoints."""
    model_config = SettingsConfigDict(extra="ignore")

    jupiter_api_url: str = "https://quote-api.jup.ag/v6"
    price_api_url: str = "https://price.jup.ag/v6"
    rpc_url: str = "https://api.mainnet-beta.solana.com"
    discovery_url: Optional[str] = None
    birdeye_api_url: str = "https://public-api.birdeye.so"
    birdeye_api_key: Optional[str] = None
    # LP mint lookup for the liquidity-lock signal
    pool_api_url: str = "https://api-v3.raydium.io"
    # Owners whose LP holdings count as burned or locked
    lp_burn_addresses: List[str] = Field(
        default_factory=lambda: [
            "11111111111111111111111111111111",
            "1nc1nerator11111111111111111111111111111111",
        ]
    )
    lp_locker_owners: List[str] = Field(default_factory=list)
    lp_secured_min_pct: float = Field(default=95.0, gt=0.0, le=100.0)
    wallet_public_key: Optional[str] = None
    # Static candidate list used when no discovery endpoint is configured
    watchlist: List[str] = Field(default_factory=list)
    quote_mint: str = "So11111111111111111111111111111111111111112"
    quote_decimals: int = Field(default=9, ge=0, le=18)
    request_timeout_seconds: float = Field(default=10.0, gt=0.0, le=120.0)
    signal_timeout_seconds: float = Field(default=8.0, gt=0.0, le=120.0)

    @field_validator("birdeye_api_key", "wallet_public_key", "discovery_url")
    @classmethod
    def drop_unresolved_env(cls, v: Optional[str]) -> Optional[str]:
        # An unset ${VAR} survives expansion verbatim
        if v is None or v.startswith("$") or not v.strip():
            return None
        return v


class PersistenceConfig(BaseSettings):
    """On-disk state."""
    model_config = SettingsConfigDict(extra="ignore")

    positions_db_path: str = "data/positions.db"
    strategies_path: str = "data/strategies.json"


class PaperConfig(BaseSettings):
    """Paper (dry-run) venue behaviour."""
    model_config = SettingsConfigDict(extra="ignore")

    simulated_slippage_bps: int = Field(default=50, ge=0, le=5000)
    simulate_fill_delay_ms: int = Field(default=0, ge=0, le=10000)


class MonitoringConfig(BaseSettings):
    """Logging and event stream."""
    model_config = SettingsConfigDict(extra="ignore")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = "logs/run.log"
    event_queue_size: int = Field(default=1000, ge=1, le=100000)


class Config(BaseSettings):
    """Main configuration class."""
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        extra="ignore",
    )

    system: SystemConfig = Field(default_factory=SystemConfig)
    scan: ScanConfig = Field(default_factory=ScanConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    data: DataConfig = Field(default_factory=DataConfig)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)
    paper: PaperConfig = Field(default_factory=PaperConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    environment: Literal["dev", "paper", "prod"] = "dev"

    @model_validator(mode="after")
    def validate_backoff(self) -> "Config":
        if self.execution.retry_max_backoff_seconds < self.execution.retry_base_delay_seconds:
            raise ValueError("execution.retry_max_backoff_seconds must be >= retry_base_delay_seconds")
        return self

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> "Config":
        """Load configuration from YAML file."""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(yaml_path, "r") as f:
            raw_content = f.read()

        # ${VAR} or $VAR; unresolved references are left as-is
        pattern = re.compile(r'\$\{([^}]+)\}|\$([a-zA-Z_][a-zA-Z0-9_]*)')

        def replace_match(match):
            var_name = match.group(1) or match.group(2)
            return os.environ.get(var_name, match.group(0))

        expanded_content = pattern.sub(replace_match, raw_content)
        config_dict = yaml.safe_load(expanded_content) or {}

        if "ENVIRONMENT" in os.environ:
            config_dict["environment"] = os.environ["ENVIRONMENT"]

        env_dry_run = os.getenv("DRY_RUN")
        if env_dry_run is not None:
            config_dict.setdefault("system", {})
            config_dict["system"]["dry_run"] = env_dry_run in ("1", "true", "True", "TRUE")

        return cls(**config_dict)

    def validate_config(self) -> None:
        """Cross-section checks that need the whole config."""
        if self.environment == "prod" and self.system.dry_run:
            raise ConfigurationError("environment=prod requires system.dry_run=false")
        if not self.data.discovery_url and not self.data.watchlist and self.scan.enabled:
            raise ConfigurationError(
                "scan is enabled but neither data.discovery_url nor data.watchlist is set"
            )


def load_config(config_path: str | Path | None = None) -> Config:
    """
    Load and validate configuration.

    Args:
        config_path: Path to config.yaml file. If None, uses autotrader/config/config.yaml

    Returns:
        Validated Config object

    Raises:
        ConfigurationError: If the file is missing or validation fails
    """
    if config_path is None:
        config_path = Path(__file__).parent / "config.yaml"

    try:
        config = Config.from_yaml(config_path)
    except FileNotFoundError as e:
        raise ConfigurationError(str(e)) from e
    except ValueError as e:
        # pydantic.ValidationError is a ValueError subclass
        raise ConfigurationError(f"Invalid configuration in {config_path}: {e}") from e

    config.validate_config()
    return config
