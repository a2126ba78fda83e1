"""Configuration loading for the nsticky daemon and CLI.

Settings come from (highest priority first) environment variables, an
optional JSON file at ~/.config/nsticky/config.json, and built-in defaults.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from .constants import (
    COMMAND_TIMEOUT,
    CONTROL_SOCKET_ENV,
    ENV_PREFIX,
    NIRI_SOCKET_ENV,
    RECONNECT_INITIAL_DELAY,
    RECONNECT_MAX_ATTEMPTS,
    RECONNECT_MAX_DELAY,
    STAGE_WORKSPACE,
    ConfigPaths,
)

logger = logging.getLogger(__name__)


class DaemonConfig(BaseModel):
    """Validated daemon settings."""

    niri_socket: Optional[Path] = Field(
        default=None, description="niri IPC socket (normally $NIRI_SOCKET)"
    )
    control_socket: Path = Field(
        default=ConfigPaths.CONTROL_SOCKET_PATH, description="nsticky control socket"
    )
    stage_workspace: str = Field(
        default=STAGE_WORKSPACE, min_length=1, description="Workspace name used for staged windows"
    )
    command_timeout: float = Field(
        default=COMMAND_TIMEOUT, gt=0, le=60, description="Timeout for every niri command (s)"
    )
    reconnect_initial_delay: float = Field(default=RECONNECT_INITIAL_DELAY, gt=0)
    reconnect_max_delay: float = Field(default=RECONNECT_MAX_DELAY, gt=0)
    reconnect_max_attempts: int = Field(default=RECONNECT_MAX_ATTEMPTS, ge=1)

    @field_validator("stage_workspace")
    @classmethod
    def validate_stage_workspace(cls, v: str) -> str:
        """Workspace names are matched verbatim by niri; reject padding."""
        if v.strip() != v:
            raise ValueError(f"Stage workspace name has surrounding whitespace: {v!r}")
        return v

    @model_validator(mode="after")
    def validate_backoff(self) -> "DaemonConfig":
        if self.reconnect_initial_delay > self.reconnect_max_delay:
            raise ValueError(
                "reconnect_initial_delay must not exceed reconnect_max_delay "
                f"({self.reconnect_initial_delay} > {self.reconnect_max_delay})"
            )
        return self


def _read_config_file(config_file: Path) -> Dict[str, Any]:
    """Read the JSON config file, returning {} when it does not exist.

    Raises:
        ValueError: If the file exists but is not a JSON object
    """
    if not config_file.exists():
        logger.debug(f"Config file does not exist: {config_file}, using defaults")
        return {}

    try:
        with open(config_file) as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in {config_file}: {e}") from e

    if not isinstance(data, dict):
        raise ValueError(f"Config file {config_file} must contain a JSON object")

    logger.info(f"Loaded configuration from {config_file}")
    return data


def _env_overrides(env: Mapping[str, str]) -> Dict[str, Any]:
    """Collect overrides from NIRI_SOCKET, NSTICKY_SOCKET and NSTICKY_<FIELD>."""
    overrides: Dict[str, Any] = {}

    for name in DaemonConfig.model_fields:
        value = env.get(f"{ENV_PREFIX}{name.upper()}")
        if value:
            overrides[name] = value

    if env.get(NIRI_SOCKET_ENV):
        overrides["niri_socket"] = env[NIRI_SOCKET_ENV]
    if env.get(CONTROL_SOCKET_ENV):
        overrides["control_socket"] = env[CONTROL_SOCKET_ENV]

    return overrides


def load_config(
    config_file: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
) -> DaemonConfig:
    """Build the effective configuration.

    Args:
        config_file: JSON file to read (defaults to ~/.config/nsticky/config.json)
        env: Environment mapping (defaults to os.environ)

    Returns:
        Validated DaemonConfig

    Raises:
        ValueError: If the file is malformed
        pydantic.ValidationError: If a value is out of range
    """
    config_file = config_file or ConfigPaths.CONFIG_FILE
    env = os.environ if env is None else env

    data = _read_config_file(config_file)
    data.update(_env_overrides(env))
    return DaemonConfig(**data)
