"""Configuration loader.

Loads config.yaml, validates it against the Pydantic schema and resolves
secrets from the environment. There is no module-level singleton: callers
load a config once and pass it to the components they construct, so tests
can build isolated instances side by side.

Usage:
    from replydesk.config import load_config, resolve_secret

    config = load_config()
    api_key = resolve_secret(config.oracle.api_key_env)
"""

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from replydesk.config_schema import CURRENT_SCHEMA_VERSION, AppConfig
from replydesk.core.errors import ConfigLoadError, ConfigValidationError
from replydesk.core.logging import get_logger

logger = get_logger(__name__)

# Default config path - can be overridden via environment variable
DEFAULT_CONFIG_PATH = Path("config/config.yaml")


def get_config_path() -> Path:
    """Get the config file path from environment or default."""
    env_path = os.environ.get("REPLYDESK_CONFIG_PATH")
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_PATH


def _format_validation_errors(error: ValidationError) -> str:
    """Format Pydantic validation errors into actionable messages.

    Args:
        error: Pydantic ValidationError

    Returns:
        Formatted error message with specific field errors
    """
    messages = []
    for err in error.errors():
        field_path = ".".join(str(loc) for loc in err["loc"])
        msg = err["msg"]
        err_type = err["type"]

        if err_type == "missing":
            messages.append(f"  - Missing required field '{field_path}'")
        elif err_type == "string_type":
            messages.append(f"  - Field '{field_path}' must be a string")
        elif err_type == "int_type":
            messages.append(f"  - Field '{field_path}' must be an integer")
        elif err_type == "extra_forbidden":
            messages.append(f"  - Unknown field '{field_path}'")
        else:
            messages.append(f"  - Field '{field_path}': {msg}")

    return "\n".join(messages)


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load and parse YAML file.

    Args:
        path: Path to YAML file

    Returns:
        Parsed YAML as dictionary

    Raises:
        ConfigLoadError: If file not found or YAML parse error
    """
    if not path.exists():
        raise ConfigLoadError(
            f"Configuration file not found: {path}\n"
            f"Create it by copying config/config.yaml.example to {path}"
        )

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigLoadError(f"Failed to parse YAML in {path}:\n{e}") from e
    except OSError as e:
        raise ConfigLoadError(f"Cannot read configuration file {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigLoadError(
            f"Configuration file must be a YAML mapping, got {type(data).__name__}"
        )
    return data


def _validate_config(data: dict[str, Any], path: Path) -> AppConfig:
    """Validate config data against Pydantic schema.

    Args:
        data: Parsed YAML data
        path: Path to config file (for error messages)

    Returns:
        Validated AppConfig instance

    Raises:
        ConfigValidationError: If validation fails
    """
    try:
        config = AppConfig(**data)
    except ValidationError as e:
        error_details = _format_validation_errors(e)
        raise ConfigValidationError(
            f"Configuration validation failed for {path}:\n{error_details}"
        ) from e

    if config.schema_version > CURRENT_SCHEMA_VERSION:
        raise ConfigValidationError(
            f"Config schema version {config.schema_version} is newer than "
            f"supported version {CURRENT_SCHEMA_VERSION}. "
            "Please upgrade replydesk or downgrade the config."
        )

    return config


def load_config(path: Path | None = None) -> AppConfig:
    """Load and validate configuration from YAML file.

    Args:
        path: Optional path to config file. If not provided, uses
              REPLYDESK_CONFIG_PATH env var or default.

    Returns:
        Validated AppConfig instance

    Raises:
        ConfigLoadError: If file cannot be loaded
        ConfigValidationError: If validation fails
    """
    config_path = path or get_config_path()

    logger.debug("config_loading", path=str(config_path))

    data = _load_yaml(config_path)
    config = _validate_config(data, config_path)

    logger.info(
        "config_loaded",
        path=str(config_path),
        schema_version=config.schema_version,
        oracle_provider=config.oracle.provider,
        oracle_model=config.oracle.model,
        templates_enabled=config.templates.enabled,
    )

    return config


def validate_config_file(path: Path | None = None) -> tuple[bool, str]:
    """Validate a config file without constructing any services.

    Args:
        path: Path to config file. If not provided, uses default.

    Returns:
        Tuple of (is_valid, message)
    """
    config_path = path or get_config_path()

    try:
        config = load_config(config_path)
    except ConfigLoadError as e:
        return (False, f"Load error: {e}")
    except ConfigValidationError as e:
        return (False, f"Validation error: {e}")

    warnings: list[str] = []
    if not os.environ.get(config.oracle.api_key_env):
        warnings.append(f"  ! {config.oracle.api_key_env} is not set")
    if config.imap.user and not os.environ.get(config.imap.password_env):
        warnings.append(f"  ! {config.imap.password_env} is not set")

    lines = [
        f"Configuration valid (schema version {config.schema_version})",
        f"  - oracle: {config.oracle.provider} / {config.oracle.model}",
        f"  - templates: {config.templates.path if config.templates.enabled else 'disabled'}",
        f"  - imap: {config.imap.user or 'not configured'}@{config.imap.host}",
        f"  - concurrency: {config.processing.concurrency}",
    ]
    return (True, "\n".join(lines + warnings))


def resolve_secret(env_var: str) -> str | None:
    """Read a secret from the environment.

    Args:
        env_var: Environment variable name from the config

    Returns:
        The secret value, or None when unset or empty
    """
    value = os.environ.get(env_var, "").strip()
    return value or None
