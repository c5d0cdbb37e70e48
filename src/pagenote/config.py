"""
Engine configuration — ``~/.pagenote/config.yaml``.

Device-local tuning knobs that are not user settings and never sync:
debounce delays, HTTP timeout, chunk sizing, log level.

Example:
    push_debounce_seconds: 5
    http_timeout_seconds: 30
    log_level: INFO
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger("pagenote.config")

CONFIG_FILE = "config.yaml"


class EngineConfig(BaseModel):
    """Tuning for the sync engine on this device."""

    push_debounce_seconds: float = Field(default=5.0, ge=0)
    http_timeout_seconds: float = Field(default=30.0, gt=0)
    chunk_size: int = Field(default=7000, gt=0)
    chunk_quota: int = Field(default=90000, gt=0)
    sync_workers: int = Field(default=4, ge=1)
    log_level: str = "WARNING"


def load_config(home: Path) -> EngineConfig:
    """Load engine configuration, falling back to defaults.

    Args:
        home: PageNote home directory.

    Returns:
        EngineConfig: Parsed config, or defaults if the file is missing
        or malformed.
    """
    config_file = home / CONFIG_FILE
    if config_file.exists():
        try:
            data = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
            return EngineConfig(**data)
        except (yaml.YAMLError, ValueError, TypeError) as exc:
            logger.warning("Failed to load engine config: %s", exc)
    return EngineConfig()


def save_config(home: Path, config: EngineConfig) -> Path:
    """Write engine configuration as YAML.

    Returns:
        Path to the written file.
    """
    home.mkdir(parents=True, exist_ok=True)
    config_file = home / CONFIG_FILE
    config_file.write_text(
        yaml.dump(config.model_dump(mode="json"), default_flow_style=False),
        encoding="utf-8",
    )
    return config_file
