"""Configuration management using pydantic and pydantic-settings.

The monitored clusters live in a YAML document (path taken from ``CONFIG``);
process-level knobs such as logging and tracing come from the environment.
"""

import re
from pathlib import Path

import yaml
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Valid log levels
VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}

DEFAULT_CONFIG_FILE = "/etc/openshift-route-exporter/config.yml"
DEFAULT_LISTEN = ":9142"


class ConfigError(Exception):
    """Raised when the configuration document cannot be loaded."""


class TargetSettings(BaseModel):
    """One cluster to watch for routes."""

    model_config = ConfigDict(extra="ignore")

    kubeconfig: str = Field(
        default="",
        description="Path to a kubeconfig file; empty uses the in-cluster service account",
    )
    namespace_blacklist_regex: str = Field(
        default="^$",
        description="Routes in namespaces matching this regex are not probed",
    )
    labels: dict[str, str] = Field(
        default_factory=dict,
        description="Label selector applied when listing and watching routes",
    )

    @field_validator("namespace_blacklist_regex")
    @classmethod
    def validate_namespace_regex(cls, v: str) -> str:
        """Empty means exclude nothing; anything else must compile."""
        if not v:
            return "^$"
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f"Invalid namespace_blacklist_regex '{v}': {e}") from e
        return v

    @property
    def label_selector(self) -> str:
        """Labels rendered as a Kubernetes label selector."""
        return ",".join(f"{key}={value}" for key, value in sorted(self.labels.items()))


class MonitorSettings(BaseModel):
    """Exposition and probing settings."""

    model_config = ConfigDict(extra="ignore")

    listen: str = Field(default=DEFAULT_LISTEN, description="Metrics listen address")
    probe_timeout_seconds: float = Field(default=9.0, description="Per-route probe deadline")
    watch_backoff_seconds: float = Field(default=10.0, description="Delay before a watch restart")
    resync_period_seconds: int = Field(default=600, description="Full re-list interval")

    @field_validator("listen")
    @classmethod
    def validate_listen(cls, v: str) -> str:
        """Validate the listen address is ``[host]:port``."""
        if not v:
            return DEFAULT_LISTEN
        _, sep, port = v.rpartition(":")
        if not sep or not port.isdigit() or not 0 <= int(port) <= 65535:
            raise ValueError(f"Listen address must be [host]:port, got '{v}'")
        return v

    @field_validator("probe_timeout_seconds", "watch_backoff_seconds")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"Value must be positive, got {v}")
        return v

    @field_validator("resync_period_seconds")
    @classmethod
    def validate_resync(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"Resync period must be at least 1 second, got {v}")
        return v

    @property
    def host(self) -> str:
        host = self.listen.rpartition(":")[0]
        return host.strip("[]") or "0.0.0.0"

    @property
    def port(self) -> int:
        return int(self.listen.rpartition(":")[2])


class Settings(BaseModel):
    """The configuration document."""

    model_config = ConfigDict(extra="ignore")

    targets: list[TargetSettings] = Field(default_factory=list)
    monitor: MonitorSettings = Field(default_factory=MonitorSettings)


class AppSettings(BaseSettings):
    """Process settings from the environment."""

    model_config = SettingsConfigDict(env_prefix="APP_", populate_by_name=True)

    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="json", description="Log format: json or console")
    config_file: str = Field(
        default=DEFAULT_CONFIG_FILE,
        validation_alias=AliasChoices("CONFIG", "APP_CONFIG_FILE"),
        description="Path to the YAML configuration document",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is valid."""
        normalized = v.upper()
        if normalized not in VALID_LOG_LEVELS:
            raise ValueError(
                f"Invalid log level '{v}'. Must be one of: {', '.join(sorted(VALID_LOG_LEVELS))}"
            )
        return normalized

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Validate log format is valid."""
        normalized = v.lower()
        if normalized not in ("json", "console"):
            raise ValueError(f"Invalid log format '{v}'. Must be 'json' or 'console'")
        return normalized


class TracingSettings(BaseSettings):
    """OpenTelemetry tracing settings."""

    model_config = SettingsConfigDict(env_prefix="TRACING_")

    enabled: bool = Field(default=False, description="Export probe spans over OTLP")
    service_name: str = Field(default="route-monitor", description="service.name resource")


def load_settings(path: str | Path) -> Settings:
    """Load and validate the YAML configuration document.

    Args:
        path: Location of the YAML file.

    Returns:
        Validated settings.

    Raises:
        ConfigError: If the file is missing, not valid YAML, or fails validation.
    """
    path = Path(path)
    try:
        with open(path) as f:
            content = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse {path}: {e}") from e

    if content is None:
        content = {}
    if not isinstance(content, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")

    try:
        return Settings.model_validate(content)
    except ValidationError as e:
        raise ConfigError(f"Invalid config file {path}: {e}") from e
