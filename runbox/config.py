"""Sandbox configuration with YAML support."""

from __future__ import annotations

from pathlib import Path

import yaml
from pydantic import Field, ValidationError, field_validator

from runbox.errors import ConfigurationError
from runbox.schemas import BaseSchema

DEFAULT_STATE_PATH = "~/.runbox/state.db"


class SandboxConfig(BaseSchema):
    """Options for the engine, template loader and library manager."""

    timeout_ms: int = Field(default=4000, gt=0)
    template_source: str | None = None  # None uses the embedded template
    template_load_timeout_s: float = Field(default=5.0, gt=0)
    network_timeout_s: float = Field(default=5.0, gt=0)

    # None keeps library state in memory only
    state_path: str | None = DEFAULT_STATE_PATH

    python_executable: str | None = None
    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def known_log_level(cls, value: str) -> str:
        upper = value.upper()
        if upper not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(f"Unknown log level: {value}")
        return upper


def load_config(yaml_path: str | Path) -> SandboxConfig:
    """Load sandbox configuration from a YAML file.

    Args:
        yaml_path: Path to YAML configuration file

    Returns:
        SandboxConfig instance

    Raises:
        FileNotFoundError: If YAML file doesn't exist
        ConfigurationError: If YAML is empty or holds invalid options
    """
    yaml_path = Path(yaml_path)

    if not yaml_path.exists():
        raise FileNotFoundError(f"Config file not found: {yaml_path}")

    with open(yaml_path, "r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {yaml_path}: {e}") from e

    if not data or not isinstance(data, dict):
        raise ConfigurationError(f"Empty or invalid YAML file: {yaml_path}")

    try:
        return SandboxConfig.from_dict(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration in {yaml_path}: {e}") from e


def save_config(config: SandboxConfig, yaml_path: str | Path) -> None:
    """Save sandbox configuration to a YAML file."""
    yaml_path = Path(yaml_path)
    yaml_path.parent.mkdir(parents=True, exist_ok=True)

    data = config.to_dict()

    with open(yaml_path, "w", encoding="utf-8") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False, indent=2)
