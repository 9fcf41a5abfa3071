"""Configuration schema using Pydantic."""

from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings

from homehub.engine.protocol import DEFAULT_SUBSCRIPTIONS
from homehub.engine.resilience import RetryPolicy


class Base(BaseModel):
    """Base model that accepts both camelCase and snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RetryConfig(Base):
    """Exponential backoff parameters."""

    max_retries: int = 2          # -1 = retry forever
    base_delay: float = 0.5       # Seconds before the first retry
    max_delay: float = 10.0       # Cap on a single delay
    backoff_factor: float = 2.0
    jitter: float = 0.2           # Fraction of each delay that is randomised

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.max_retries,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            backoff_factor=self.backoff_factor,
            jitter=self.jitter,
        )


class MqttConfig(Base):
    """MQTT broker connection and inbound dispatch."""

    host: str = "localhost"
    port: int = 1883
    username: str | None = None
    password: str | None = None
    client_id: str = ""           # Empty = broker-assigned
    keepalive: int = 60
    qos: Literal[0, 1, 2] = 1
    subscriptions: list[str] = Field(default_factory=lambda: list(DEFAULT_SUBSCRIPTIONS))
    queue_size: int = 1000        # Inbound messages buffered before the reader blocks
    workers: int = 8              # Concurrent inbound handlers
    reconnect: RetryConfig = Field(
        default_factory=lambda: RetryConfig(max_retries=-1, base_delay=1.0, max_delay=60.0, jitter=0.5)
    )


class StoreConfig(Base):
    """Bundled device registry."""

    registry_path: str = ""       # JSON file; empty = in-memory only


class AutomationConfig(Base):
    """Automation rules loaded at startup."""

    rules_path: str = ""          # JSON file with {"rules": [...]}; empty = none
    rules: list[dict[str, Any]] = Field(default_factory=list)  # Inline rule definitions


class LoggingConfig(Base):
    """Loguru sink configuration."""

    level: str = "INFO"
    file: str = ""                # Optional log file; empty = stderr only
    rotation: str = "10 MB"
    retention: str = "7 days"


class HubConfig(BaseSettings):
    """Root configuration for homehub."""

    mqtt: MqttConfig = Field(default_factory=MqttConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    automation: AutomationConfig = Field(default_factory=AutomationConfig)
    publish_retry: RetryConfig = Field(default_factory=RetryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def registry_path(self) -> Path | None:
        """Expanded registry path, or None for an in-memory registry."""
        p = self.store.registry_path
        return Path(p).expanduser() if p else None

    model_config = ConfigDict(env_prefix="HOMEHUB_", env_nested_delimiter="__")
