"""Outbound device commands.

A command is a name understood by the device firmware plus a JSON payload.
``CommandPublisher`` encrypts it with the target device's key and publishes
it to ``home/devices/{deviceId}/command/{commandName}``.  It serves both
user-initiated commands (e.g. from a web handler) and automation actions.

Unlike the inbound path, every failure here is raised to the caller:

- ``DeviceNotFoundError``: target device unknown; nothing published
- ``CommandError``       : name/id not usable as a topic level
- ``EncryptionError``    : no key material or unserialisable payload
- ``PublishError``       : transport failed after the retry budget

Usage
-----
>>> publisher = CommandPublisher(store, crypto, transport)
>>> await publisher.publish_command("lamp-01", "setLed", {"state": "on"})
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from loguru import logger

from homehub.engine.encryption import CryptoChannel
from homehub.engine.errors import DeviceNotFoundError, PublishError
from homehub.engine.protocol import command_topic
from homehub.engine.registry import DeviceStateStore
from homehub.engine.resilience import NO_RETRY, RetryPolicy, retry_call


@dataclass
class Command:
    """A named command with a structured payload.

    Examples
    --------
    Switch an LED on:
        Command(name="setLed", payload={"state": "on"})
    """

    name: str
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "payload": self.payload}

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Command:
        payload = d.get("payload") or {}
        if not isinstance(payload, dict):
            raise TypeError(f"command payload must be an object, got {type(payload).__name__}")
        return cls(name=d["name"], payload=payload)


class Publisher(Protocol):
    """Anything that can publish raw bytes to a topic (the transport)."""

    async def publish(self, topic: str, payload: bytes) -> None:
        ...


class CommandPublisher:
    """Encrypts and publishes commands to devices."""

    def __init__(
        self,
        store: DeviceStateStore,
        crypto: CryptoChannel,
        transport: Publisher,
        *,
        retry: RetryPolicy = NO_RETRY,
        log: Any = None,
    ):
        self._store = store
        self._crypto = crypto
        self._transport = transport
        self._retry = retry
        self._log = log or logger

    async def publish_command(
        self,
        device_id: str,
        command_name: str,
        payload: dict[str, Any] | None = None,
        *,
        requested_by: str | None = None,
    ) -> str:
        """Encrypt and publish one command. Returns the topic it went to."""
        topic = command_topic(device_id, command_name)

        device = await self._store.find_by_id(device_id)
        if device is None:
            self._log.warning(
                f"[Commands] {command_name!r} rejected: device {device_id!r} not found"
            )
            raise DeviceNotFoundError(device_id)

        envelope = self._crypto.encrypt_json(payload or {}, device.key_material)

        await retry_call(
            self._transport.publish,
            topic,
            envelope.to_bytes(),
            policy=self._retry,
            retry_on=(PublishError,),
            label=f"publish {topic}",
        )
        self._log.info(
            f"[Commands] sent {command_name!r} to {device_id}"
            + (f" (requested by {requested_by})" if requested_by else "")
        )
        return topic

    async def publish(self, device_id: str, command: Command, **kwargs: Any) -> str:
        """Publish a ``Command`` object (used by automation actions)."""
        return await self.publish_command(device_id, command.name, command.payload, **kwargs)
