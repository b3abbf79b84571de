"""
Configuration models for the MT5 terminal client.

Uses Pydantic for validation and type safety.
"""
import os
import re
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from mt5_client.domain.models import Credentials, Endpoint


class ConnectionConfig(BaseSettings):
    """Terminal endpoint, account and timeouts."""
    model_config = SettingsConfigDict(extra="ignore")

    # Connect either to a terminal host or to an MT cluster by name
    host: Optional[str] = None
    port: int = Field(default=443, ge=1, le=65535)
    server_name: Optional[str] = None
    base_chart_symbol: str = "EURUSD"
    wait_for_terminal: bool = True

    user: Optional[int] = None
    password: Optional[str] = Field(default=None, repr=False)

    connect_timeout_seconds: float = Field(default=30.0, gt=0, le=300.0, description="Login deadline")
    call_timeout_seconds: float = Field(default=10.0, gt=0, le=120.0, description="Per-call deadline")
    disconnect_timeout_seconds: float = Field(default=5.0, gt=0, le=60.0, description="Remote teardown bound")
    health_check_timeout_seconds: float = Field(default=3.0, gt=0, le=30.0)

    @model_validator(mode="after")
    def _endpoint_present(self) -> "ConnectionConfig":
        if self.host and self.server_name:
            raise ValueError("Configure either connection.host or connection.server_name, not both")
        return self


class RetryConfig(BaseSettings):
    """Retry/backoff for calls and reconnects."""
    model_config = SettingsConfigDict(extra="ignore")

    max_attempts: int = Field(default=3, ge=1, le=10, description="Attempts per call, including the first")
    reconnect_attempts: int = Field(default=3, ge=1, le=20, description="Session re-open attempts per reconnect")
    stream_reopen_attempts: int = Field(default=1, ge=0, le=5)
    base_delay_seconds: float = Field(default=0.5, ge=0.0, le=10.0)
    max_delay_seconds: float = Field(default=5.0, ge=0.0, le=60.0)
    jitter_seconds: float = Field(default=0.1, ge=0.0, le=5.0)


class TradingConfig(BaseSettings):
    """Order defaults."""
    model_config = SettingsConfigDict(extra="ignore")

    close_slippage_points: int = Field(default=10, ge=0, le=1000)
    order_slippage_points: int = Field(default=10, ge=0, le=1000)
    default_comment: Optional[str] = None
    batch_timeout_seconds: float = Field(default=120.0, gt=0, le=3600.0)


class MonitoringConfig(BaseSettings):
    """Logging configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = None


class Config(BaseSettings):
    """Main configuration class."""
    model_config = SettingsConfigDict(
        env_prefix="MT5_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    connection: ConnectionConfig = Field(default_factory=ConnectionConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    trading: TradingConfig = Field(default_factory=TradingConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> "Config":
        """Load configuration from YAML file."""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(yaml_path, "r") as f:
            raw_content = f.read()

        # ${VAR} or $VAR; unknown variables are left as written
        pattern = re.compile(r'\$\{([^}]+)\}|\$([a-zA-Z_][a-zA-Z0-9_]*)')

        def replace_match(match):
            var_name = match.group(1) or match.group(2)
            return os.environ.get(var_name, match.group(0))

        expanded_content = pattern.sub(replace_match, raw_content)
        config_dict = yaml.safe_load(expanded_content) or {}

        return cls(**config_dict)

    def endpoint(self) -> Endpoint:
        c = self.connection
        return Endpoint(
            host=c.host,
            port=c.port,
            server_name=c.server_name,
            base_chart_symbol=c.base_chart_symbol,
            wait_for_terminal=c.wait_for_terminal,
        )

    def credentials(self) -> Credentials:
        c = self.connection
        if c.user is None or c.password is None:
            raise ValueError("connection.user and connection.password are required")
        return Credentials(user=int(c.user), password=c.password)


def load_config(config_path: str | Path | None = None) -> Config:
    """
    Load and validate configuration.

    Args:
        config_path: Path to a config.yaml file. If None, uses the packaged
            mt5_client/config/config.yaml

    Returns:
        Validated Config object

    Raises:
        FileNotFoundError: If config file not found
        ValueError: If configuration validation fails
    """
    if config_path is None:
        config_path = Path(__file__).parent / "config.yaml"

    return Config.from_yaml(config_path)
