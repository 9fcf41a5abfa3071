"""Configuration loading utilities."""

import json
from pathlib import Path

from loguru import logger

from homehub.config.schema import HubConfig


def get_config_path() -> Path:
    """Get the default configuration file path."""
    return Path.home() / ".homehub" / "config.json"


def load_config(config_path: Path | str | None = None) -> HubConfig:
    """Load configuration from a JSON file, or return defaults.

    Environment variables (``HOMEHUB_MQTT__HOST`` etc.) are applied on top
    of defaults only when the file is absent or unreadable; values in the
    file take precedence otherwise.
    """
    path = Path(config_path) if config_path else get_config_path()

    if path.exists():
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            return HubConfig.model_validate(data)
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning(f"Failed to load config from {path}: {e}")
            logger.warning("Using default configuration.")

    return HubConfig()


def save_config(config: HubConfig, config_path: Path | str | None = None) -> None:
    """Save configuration to a JSON file (camelCase keys)."""
    path = Path(config_path) if config_path else get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    data = config.model_dump(by_alias=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
