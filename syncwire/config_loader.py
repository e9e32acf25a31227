"""Config Loader - loads agent configuration from YAML.

Handles ${ENV_VAR} substitution so secrets (API keys, key passwords) can stay
out of the file, and cross-checks settings that are valid individually but
suspicious together.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml

from syncwire.errors import ConfigError
from syncwire.models import AgentConfig

_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")


def load_agent_config(config_path: Path) -> AgentConfig:
    """Load agent configuration from YAML with ${ENV_VAR} substitution."""
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            raw_config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file: {e}") from e

    if raw_config is None:
        raw_config = {}
    if not isinstance(raw_config, dict):
        raise ConfigError("Config file must be a YAML mapping")

    raw_config = _substitute_env_vars(raw_config)

    try:
        return AgentConfig.model_validate(raw_config)
    except Exception as e:
        raise ConfigError(f"Invalid config structure: {e}") from e


def _substitute_env_vars(data: Any) -> Any:
    """Recursively substitute ${ENV_VAR} patterns in strings within data."""
    if isinstance(data, str):
        return _substitute_string(data)
    elif isinstance(data, dict):
        return {k: _substitute_env_vars(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [_substitute_env_vars(item) for item in data]
    return data


def _substitute_string(s: str) -> str:
    """Substitute ${ENV_VAR} patterns. Raises ConfigError if env var is not set."""

    def replacer(match: re.Match) -> str:
        var_name = match.group(1)
        value = os.environ.get(var_name)
        if value is None:
            raise ConfigError(f"Environment variable '{var_name}' is not set")
        return value

    return _ENV_VAR_PATTERN.sub(replacer, s)


class ValidationWarning:
    """A non-fatal validation warning."""

    def __init__(self, category: str, message: str) -> None:
        self.category = category
        self.message = message

    def __str__(self) -> str:
        return f"[{self.category}] {self.message}"


class ValidationError:
    """A fatal validation error."""

    def __init__(self, category: str, message: str) -> None:
        self.category = category
        self.message = message

    def __str__(self) -> str:
        return f"[{self.category}] {self.message}"


class ValidationResult:
    """Result of cross-validation checks."""

    def __init__(self) -> None:
        self.warnings: list[ValidationWarning] = []
        self.errors: list[ValidationError] = []

    def add_warning(self, category: str, message: str) -> None:
        self.warnings.append(ValidationWarning(category, message))

    def add_error(self, category: str, message: str) -> None:
        self.errors.append(ValidationError(category, message))

    @property
    def is_valid(self) -> bool:
        """True if no errors (warnings are OK)."""
        return len(self.errors) == 0


def validate_agent_config(config: AgentConfig) -> ValidationResult:
    """Cross-check an AgentConfig.

    Errors: TLS files that do not exist, a key without a certificate.
    Warnings: verification disabled, certificate without a separate key,
    unbounded timeouts, a per-host idle bound above the total bound.
    """
    result = ValidationResult()
    tls = config.tls

    for field_name in ("ca_bundle", "cert", "key"):
        path = getattr(tls, field_name)
        if path and not Path(path).exists():
            result.add_error("tls", f"tls.{field_name} file not found: {path}")

    if tls.key and not tls.cert:
        result.add_error("tls", "tls.key is set but tls.cert is not")
    if tls.cert and not tls.key:
        result.add_warning(
            "tls", "tls.cert is set without tls.key; the certificate file must contain the key"
        )
    if not tls.verify_ssl:
        if tls.ca_bundle:
            result.add_warning("tls", "tls.verify_ssl is false but tls.ca_bundle is set; the bundle wins")
        else:
            result.add_warning("tls", "tls.verify_ssl is false; server certificates are not checked")

    for field_name in ("timeout_connect", "timeout_read", "timeout_write"):
        if getattr(config, field_name) == 0:
            result.add_warning("timeouts", f"{field_name} is 0; requests may block forever")

    if config.max_idle_per_host > config.max_idle_connections:
        result.add_warning(
            "pool",
            f"max_idle_per_host ({config.max_idle_per_host}) exceeds "
            f"max_idle_connections ({config.max_idle_connections})",
        )

    return result
