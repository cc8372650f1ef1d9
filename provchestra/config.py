"""
Configuration management for provchestra deployments.

Loads and validates the deployment YAML file: base parameters, optional
module flags, post-deployment settings, retry/readiness tuning, logging,
and the run store location.
"""

import os
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from provchestra.errors import ConfigurationError


REQUIRED_PARAMETERS = ("location", "baseName", "adminObjectId", "adminLogin")

# Optional module name -> feature flag parameter
MODULE_FLAGS: Dict[str, str] = {
    "genai": "deployGenAI",
    "search": "deploySearch",
}

_TRUE_STRINGS = {"true", "yes", "1", "on"}
_FALSE_STRINGS = {"false", "no", "0", "off", ""}

GUID_PATTERN = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)


def get_provchestra_home() -> Path:
    """Return the provchestra home directory (PROVCHESTRA_HOME or ~/.config/provchestra)."""
    home = os.environ.get("PROVCHESTRA_HOME")
    if home:
        return Path(home).expanduser()
    return Path("~/.config/provchestra").expanduser()


def parse_flag(name: str, value: Any) -> bool:
    """
    Parse a feature flag value.

    Accepts booleans and the strings true/false/yes/no/1/0/on/off.

    Raises:
        ConfigurationError: If the value is not recognizable as a boolean
    """
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    raise ConfigurationError(f"Parameter '{name}' must be a boolean, got {value!r}")


class RetrySettings:
    """Step retry tuning."""

    def __init__(self, data: Dict[str, Any]):
        self.max_attempts = int(data.get("max_attempts", 3))
        self.backoff_seconds = float(data.get("backoff_seconds", 2.0))
        self.backoff_multiplier = float(data.get("backoff_multiplier", 2.0))
        self.max_backoff_seconds = float(data.get("max_backoff_seconds", 30.0))

    def validate(self) -> None:
        if self.max_attempts < 1:
            raise ConfigurationError("retry.max_attempts must be >= 1")
        if self.backoff_seconds < 0 or self.max_backoff_seconds < 0:
            raise ConfigurationError("retry backoff values must be >= 0")
        if self.backoff_multiplier < 1.0:
            raise ConfigurationError("retry.backoff_multiplier must be >= 1.0")


class ReadinessSettings:
    """Readiness poller tuning."""

    def __init__(self, data: Dict[str, Any]):
        self.max_wait_seconds = float(data.get("max_wait_seconds", 600.0))
        self.poll_interval_seconds = float(data.get("poll_interval_seconds", 10.0))
        self.backoff_multiplier = float(data.get("backoff_multiplier", 1.0))
        self.max_interval_seconds = float(data.get("max_interval_seconds", 60.0))

    def validate(self) -> None:
        if self.max_wait_seconds <= 0:
            raise ConfigurationError("readiness.max_wait_seconds must be > 0")
        if self.poll_interval_seconds <= 0:
            raise ConfigurationError("readiness.poll_interval_seconds must be > 0")
        if self.backoff_multiplier < 1.0:
            raise ConfigurationError("readiness.backoff_multiplier must be >= 1.0")


class PostDeploySettings:
    """Inputs for Phase 2 steps that are not deployment outputs."""

    def __init__(self, data: Dict[str, Any], base_dir: Path):
        self.schema_file = self._resolve(data.get("schema_file"), base_dir)
        self.procedures_dir = self._resolve(data.get("procedures_dir"), base_dir)
        self.openai_deployment_name = data.get("openai_deployment_name", "chat")
        self.allow_azure_services = bool(data.get("allow_azure_services", True))
        self.database_roles = list(data.get("database_roles", ["db_datareader", "db_datawriter"]))
        self.extra_app_settings: Dict[str, str] = dict(data.get("app_settings", {}))
        # "package.module:function" returning a DB-API connection for (target, token)
        self.connection_factory: Optional[str] = data.get("connection_factory")

    @staticmethod
    def _resolve(value: Optional[str], base_dir: Path) -> Optional[Path]:
        if not value:
            return None
        path = Path(value).expanduser()
        if not path.is_absolute():
            path = base_dir / path
        return path


class DeploymentConfig:
    """Complete deployment configuration."""

    def __init__(self, data: Dict[str, Any], source: Optional[Path] = None):
        if not isinstance(data, dict):
            raise ConfigurationError("Configuration must be a mapping")
        self.source = source
        self.raw_config = data
        base_dir = source.parent if source else Path.cwd()

        # Deployment metadata
        deployment = data.get("deployment", {}) or {}
        self.parameters: Dict[str, Any] = dict(data.get("parameters", {}) or {})
        self.name = deployment.get("name") or f"{self.parameters.get('baseName', 'unnamed')}-deployment"
        self.resource_group = deployment.get("resource_group")

        self.post_deploy = PostDeploySettings(data.get("post_deploy", {}) or {}, base_dir)
        self.retry = RetrySettings(data.get("retry", {}) or {})
        self.readiness = ReadinessSettings(data.get("readiness", {}) or {})

        # Logging
        self.logging = data.get("logging", {}) or {}

        # Run store
        self.run_store = data.get("run_store", {}) or {}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeploymentConfig":
        return cls(data)

    @classmethod
    def from_file(cls, config_path: Path) -> "DeploymentConfig":
        """Load and parse a YAML configuration file."""
        config_path = Path(config_path)
        if not config_path.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            with open(config_path, "r") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax: {e}") from e

        if not data:
            raise ConfigurationError("Configuration file is empty")
        return cls(data, source=config_path)

    def get(self, name: str, default: Any = None) -> Any:
        """Get a raw parameter value."""
        return self.parameters.get(name, default)

    def require(self, name: str) -> Any:
        """Get a required parameter or raise ConfigurationError."""
        value = self.parameters.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ConfigurationError(f"Missing required parameter: '{name}'")
        return value

    def flag(self, name: str) -> bool:
        return parse_flag(name, self.parameters.get(name, False))

    def module_enabled(self, module: str) -> bool:
        """Check whether an optional module is enabled by its feature flag."""
        if module not in MODULE_FLAGS:
            raise ConfigurationError(f"Unknown optional module: '{module}'")
        return self.flag(MODULE_FLAGS[module])

    def enabled_modules(self) -> List[str]:
        return [m for m in MODULE_FLAGS if self.module_enabled(m)]

    @property
    def base_name(self) -> str:
        return str(self.require("baseName"))

    @property
    def location(self) -> str:
        return str(self.require("location"))

    @property
    def client_ip_address(self) -> Optional[str]:
        return self.parameters.get("clientIpAddress")

    def public_parameters(self) -> Dict[str, Any]:
        """Parameters safe to persist in a run report."""
        return {k: v for k, v in self.parameters.items() if not _looks_secret(k)}

    def get_log_file_path(self) -> Path:
        """Get log file path with date interpolation."""
        log_output = self.logging.get("output", "logs/provchestra-{date}.log")
        log_output = log_output.replace("{date}", datetime.now().strftime("%Y-%m-%d"))
        return Path(log_output)

    def get_log_level(self) -> str:
        """Get logging level."""
        return self.logging.get("level", "INFO").upper()

    def get_log_format(self) -> str:
        """Get log format (structured or pretty)."""
        return self.logging.get("format", "structured")

    def should_log_to_console(self) -> bool:
        """Check if console logging is enabled."""
        return self.logging.get("console", True)

    def get_run_store_path(self) -> Path:
        """Get the run store directory (reports live in its runs/ subdirectory)."""
        path = self.run_store.get("path")
        if path:
            return Path(path).expanduser()
        return get_provchestra_home()

    def validate(self) -> None:
        """
        Validate the configuration.

        Raises:
            ConfigurationError: On the first problem found
        """
        for name in REQUIRED_PARAMETERS:
            self.require(name)

        if not GUID_PATTERN.match(str(self.parameters["adminObjectId"])):
            raise ConfigurationError(
                f"Parameter 'adminObjectId' must be a GUID, got {self.parameters['adminObjectId']!r}"
            )

        for flag_name in MODULE_FLAGS.values():
            parse_flag(flag_name, self.parameters.get(flag_name, False))

        self.retry.validate()
        self.readiness.validate()

        if self.post_deploy.schema_file is not None and not self.post_deploy.schema_file.exists():
            raise ConfigurationError(f"Schema file not found: {self.post_deploy.schema_file}")
        if self.post_deploy.procedures_dir is not None and not self.post_deploy.procedures_dir.is_dir():
            raise ConfigurationError(
                f"Procedures directory not found: {self.post_deploy.procedures_dir}"
            )

    def __repr__(self) -> str:
        return f"DeploymentConfig(name={self.name}, modules={self.enabled_modules()})"


def _looks_secret(key: str) -> bool:
    lowered = key.lower()
    return any(marker in lowered for marker in ("password", "secret", "token", "key"))


def load_config(config_path: Path) -> DeploymentConfig:
    """
    Load deployment configuration from a YAML file.

    Args:
        config_path: Path to the configuration file

    Returns:
        DeploymentConfig instance (not yet validated)

    Raises:
        ConfigurationError: If the file is missing, empty, or not valid YAML
    """
    return DeploymentConfig.from_file(Path(config_path))
