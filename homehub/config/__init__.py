"""Configuration module for homehub."""

from homehub.config.loader import load_config
from homehub.config.schema import HubConfig

__all__ = ["HubConfig", "load_config"]
