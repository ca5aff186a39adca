"""
flowcron · Configuration.

Loads configuration from:
  1. Defaults (defined here)
  2. A YAML file (overrides defaults)
  3. Environment variables FLOWCRON_* (override everything)
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from flowcron.core.errors import ConfigError
from flowcron.cron.jobs import DEFAULT_JOBS_FILE
from flowcron.utils.logging import get_logger, setup_logging

log = get_logger(__name__)

ENV_PREFIX = "FLOWCRON_"
DEFAULT_CONFIG_FILE = Path("flowcron.yaml")

# ============================================================================
# Configuration models
# ============================================================================


class LoggingConfig(BaseModel):
    """Logging setup."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    json_logs: bool = False
    log_dir: Path | None = None

    @field_validator("level", mode="before")
    @classmethod
    def _upper_level(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value


class FlowcronConfig(BaseModel):
    """Complete flowcron configuration.

    Loaded once at startup.
    """

    base_dir: Path = Field(
        default_factory=Path.cwd,
        description="Directory relative paths are resolved against",
    )
    jobs_file: Path = Field(
        default=DEFAULT_JOBS_FILE,
        description="Durable job record (JSON)",
    )
    timezone: str | None = Field(
        default=None,
        description="IANA zone for cron evaluation; empty = local zone",
    )
    misfire_grace_seconds: int = Field(default=60, ge=1, le=86_400)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("timezone", mode="before")
    @classmethod
    def _check_timezone(cls, value: Any) -> Any:
        if value in (None, ""):
            return None
        try:
            ZoneInfo(str(value))
        except (ZoneInfoNotFoundError, ValueError) as exc:
            msg = f"Unknown time zone: {value!r}"
            raise ValueError(msg) from exc
        return value

    @property
    def jobs_path(self) -> Path:
        """Absolute path of the job record."""
        return self._resolve(self.jobs_file)

    @property
    def log_dir(self) -> Path | None:
        """Absolute log directory, or None for console-only logging."""
        if self.logging.log_dir is None:
            return None
        return self._resolve(self.logging.log_dir)

    def _resolve(self, path: Path) -> Path:
        path = path.expanduser()
        return path if path.is_absolute() else self.base_dir / path


# ============================================================================
# Loading
# ============================================================================


def _apply_env_overrides(
    data: dict[str, Any],
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Applies FLOWCRON_* environment variables.

    Convention: FLOWCRON_<FIELD> sets a top-level field,
    FLOWCRON_<SECTION>_<KEY> sets data["section"]["key"].
    Example: FLOWCRON_LOGGING_LEVEL -> data["logging"]["level"]
    """
    environ = os.environ if environ is None else environ
    top_level = set(FlowcronConfig.model_fields)
    for key, value in environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        name = key[len(ENV_PREFIX):].lower()
        if not name:
            continue
        if name in top_level:
            data[name] = value
            continue
        section, _, leaf = name.partition("_")
        if not leaf:
            continue
        node = data.setdefault(section, {})
        if isinstance(node, dict):
            node[leaf] = value
    return data


def load_config(
    config_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> FlowcronConfig:
    """Loads the configuration.

    Order (later wins):
      1. Defaults (in the Pydantic models)
      2. YAML file (if present)
      3. FLOWCRON_* environment variables

    Args:
        config_path: Explicit YAML path. None = ./flowcron.yaml
        environ: Environment to read overrides from. None = os.environ

    Returns:
        Validated FlowcronConfig.

    Raises:
        ConfigError: If the file is not a mapping or values are invalid.
    """
    data: dict[str, Any] = {}

    if config_path is None:
        config_path = DEFAULT_CONFIG_FILE

    if config_path.exists():
        try:
            file_data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            log.warning("config_file_ignored", path=str(config_path), error=str(exc))
            file_data = None
        if file_data is not None and not isinstance(file_data, dict):
            raise ConfigError(
                f"Configuration must be a mapping, got {type(file_data).__name__}",
                details={"path": str(config_path)},
            )
        data = file_data or {}

    data = _apply_env_overrides(data, environ)

    try:
        return FlowcronConfig(**data)
    except ValidationError as exc:
        raise ConfigError(
            f"Invalid configuration: {exc}",
            details={"path": str(config_path)},
        ) from exc


def configure_logging(config: FlowcronConfig, *, console: bool = True) -> None:
    """Initialises logging from the ``logging`` section."""
    setup_logging(
        level=config.logging.level,
        log_dir=config.log_dir,
        json_logs=config.logging.json_logs,
        console=console,
    )
