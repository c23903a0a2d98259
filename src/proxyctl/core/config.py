"""Configuration management using Pydantic.

Provides:
- Typed configuration model with validation
- YAML file loading with defaults
- Environment variable overrides
"""

import re
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings

from proxyctl.core.exceptions import ConfigurationError


# Default configuration paths
DEFAULT_CONFIG_PATH = Path("/etc/proxyctl/config.yaml")
DEFAULT_RULES_DIR = Path("/etc/proxyctl")
DEFAULT_LOCK_PATH = Path("/run/proxyctl.lock")
DEFAULT_AUDIT_LOG = Path("/var/log/proxyctl/audit.log")

FILTER_RULES_NAME = "filter.rules"
NAT_RULES_NAME = "nat.rules"

# Linux interface names: at most 15 chars, no whitespace or slash
INTERFACE_PATTERN = re.compile(r"^[A-Za-z0-9_.:@-]{1,15}$")


def _require_absolute(v: Optional[Path]) -> Optional[Path]:
    if v is not None and not v.is_absolute():
        raise ValueError(f"path must be absolute: {v}")
    return v


def _validate_interface(v: Optional[str]) -> Optional[str]:
    if v is not None and not INTERFACE_PATTERN.match(v):
        raise ValueError(f"invalid interface name: {v!r}")
    return v


class ProxyctlConfig(BaseModel):
    """Root configuration model, loaded from /etc/proxyctl/config.yaml."""

    rules_dir: Path = DEFAULT_RULES_DIR
    filter_file: Optional[Path] = None
    nat_file: Optional[Path] = None
    lock_path: Path = DEFAULT_LOCK_PATH

    # None = first global-scope address on any interface
    interface: Optional[str] = None

    audit_enabled: bool = True
    audit_log: Path = DEFAULT_AUDIT_LOG

    @field_validator("rules_dir", "filter_file", "nat_file", "lock_path", "audit_log")
    @classmethod
    def validate_absolute(cls, v: Optional[Path]) -> Optional[Path]:
        return _require_absolute(v)

    @field_validator("interface")
    @classmethod
    def validate_interface(cls, v: Optional[str]) -> Optional[str]:
        return _validate_interface(v)

    @classmethod
    def load(cls, path: Path) -> "ProxyctlConfig":
        """Load configuration from YAML file.

        Args:
            path: Path to configuration file

        Returns:
            Loaded configuration

        Raises:
            ConfigurationError: If file not found or invalid
        """
        if not path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {path}",
            )

        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(
                f"Invalid YAML in configuration file: {path}",
                details=[str(e)],
            ) from e
        except PermissionError:
            raise ConfigurationError(
                f"Cannot read configuration file: {path}",
                hint="Check file permissions or run with sudo",
            )

        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Configuration file must contain a mapping: {path}",
            )

        try:
            return cls(**data)
        except Exception as e:
            raise ConfigurationError(
                f"Invalid configuration: {path}",
                details=[str(e)],
            ) from e

    @classmethod
    def load_or_default(cls, path: Optional[Path] = None) -> "ProxyctlConfig":
        """Load configuration, falling back to defaults if file doesn't exist."""
        if path is None:
            path = DEFAULT_CONFIG_PATH

        if path.exists():
            return cls.load(path)
        return cls()

    def to_yaml(self) -> str:
        """Convert configuration to YAML string."""
        data = self.model_dump(mode="json", exclude_none=True)
        return yaml.dump(data, default_flow_style=False, sort_keys=False)


class EnvironmentOverrides(BaseSettings):
    """Overrides loaded from environment variables.

    These take precedence over the config file.
    """

    interface: Optional[str] = Field(None, alias="PROXYCTL_INTERFACE")
    rules_dir: Optional[Path] = Field(None, alias="PROXYCTL_RULES_DIR")
    lock_path: Optional[Path] = Field(None, alias="PROXYCTL_LOCK_PATH")

    class Config:
        extra = "ignore"

    @field_validator("rules_dir", "lock_path")
    @classmethod
    def validate_absolute(cls, v: Optional[Path]) -> Optional[Path]:
        return _require_absolute(v)

    @field_validator("interface")
    @classmethod
    def validate_interface(cls, v: Optional[str]) -> Optional[str]:
        return _validate_interface(v)


class AppConfig:
    """Application configuration combining config file and environment.

    This is the main interface for accessing configuration throughout the app.
    """

    def __init__(
        self,
        config_path: Optional[Path] = None,
        config: Optional[ProxyctlConfig] = None,
        overrides: Optional[EnvironmentOverrides] = None,
    ) -> None:
        """Initialize application configuration.

        Args:
            config_path: Path to config file (uses default if None)
            config: Pre-loaded config (skips file loading if provided)
            overrides: Pre-loaded overrides (reads environment if None)
        """
        self.config_path = config_path or DEFAULT_CONFIG_PATH
        self._config = config or ProxyctlConfig.load_or_default(self.config_path)
        if overrides is None:
            try:
                overrides = EnvironmentOverrides()
            except Exception as e:
                raise ConfigurationError(
                    "Invalid PROXYCTL_* environment variable",
                    details=[str(e)],
                ) from e
        self._overrides = overrides

    @property
    def config(self) -> ProxyctlConfig:
        """Get the file configuration."""
        return self._config

    @property
    def rules_dir(self) -> Path:
        """Directory holding the persisted rule files."""
        return self._overrides.rules_dir or self._config.rules_dir

    @property
    def filter_path(self) -> Path:
        """Persisted filter table."""
        return self._config.filter_file or self.rules_dir / FILTER_RULES_NAME

    @property
    def nat_path(self) -> Path:
        """Persisted nat table."""
        return self._config.nat_file or self.rules_dir / NAT_RULES_NAME

    @property
    def lock_path(self) -> Path:
        """Host-wide lock file."""
        return self._overrides.lock_path or self._config.lock_path

    @property
    def interface(self) -> Optional[str]:
        """Interface to resolve the host address on."""
        return self._overrides.interface or self._config.interface

    @property
    def audit_log(self) -> Path:
        return self._config.audit_log

    @property
    def audit_enabled(self) -> bool:
        return self._config.audit_enabled
