"""
Configuration for the deployment controller.

Settings come from (lowest to highest precedence) field defaults, an optional
YAML file, a ``.env`` file and ``BLUEGREEN_*`` environment variables.
"""

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class BlueGreenSettings(BaseSettings):
    """Settings for a single controller process."""

    model_config = SettingsConfigDict(
        env_prefix="BLUEGREEN_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Service identification
    service_name: str = Field(default="bluegreen-controller", description="Name of the service")
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=5000, description="Server port")

    # Persistence
    data_file: Path = Field(
        default=Path("data/storage-data.json"), description="Path of the JSON state snapshot"
    )

    # Audit log
    log_capacity: int = Field(default=100, gt=0, description="Audit entries retained")

    # Metrics monitor
    metrics_window_seconds: float = Field(default=300.0, gt=0, description="Sliding window length")
    max_samples_per_deployment: int = Field(
        default=1000, gt=0, description="Upper bound of retained samples per deployment"
    )
    error_rate_threshold: float = Field(default=5.0, description="Abort above this error rate (%)")
    max_latency_ms: float = Field(default=1000.0, description="Abort above this mean latency (ms)")
    min_success_rate: float = Field(default=95.0, description="Abort below this success rate (%)")
    min_uptime: float = Field(default=99.0, description="Minimum uptime (%)")

    # Process logging
    log_level: str = Field(default="INFO", description="Process log level")
    log_format: str = Field(default="json", description="json or text")

    @field_validator("log_format")
    @classmethod
    def _check_log_format(cls, value: str) -> str:
        value = value.lower()
        if value not in {"json", "text"}:
            raise ValueError("log_format must be 'json' or 'text'")
        return value


def load_yaml_overrides(config_file: Path) -> dict[str, Any]:
    """Read settings overrides from a YAML file; a missing file yields no overrides."""
    config_file = Path(config_file)
    if not config_file.exists():
        logger.warning(f"Config file {config_file} not found, using defaults")
        return {}
    with open(config_file) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {config_file} must contain a mapping")
    return data


def load_settings(config_file: Path | str | None = None, **overrides: Any) -> BlueGreenSettings:
    """Build settings, layering YAML file values under environment variables."""
    file_values = load_yaml_overrides(Path(config_file)) if config_file else {}

    # Init kwargs outrank env vars in pydantic-settings, so only pass file values
    # that the environment does not already provide.
    env_settings = BlueGreenSettings()
    explicit = env_settings.model_fields_set
    merged = {k: v for k, v in file_values.items() if k not in explicit}
    merged.update(overrides)
    return BlueGreenSettings(**merged)
