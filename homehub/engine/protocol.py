"""Wire-level protocol for device messages.

Topic namespace
---------------
Inbound (device → hub)::

    home/devices/{deviceId}/status
    home/devices/{deviceId}/telemetry
    home/devices/{deviceId}/telemetry/firmwareVersion

Outbound (hub → device)::

    home/devices/{deviceId}/command/{commandName}

Payload format
--------------
Every message body is an AES-256-GCM envelope encoded as three hex strings
joined by colons::

    {ivHex}:{authTagHex}:{ciphertextHex}

The plaintext inside is a UTF-8 JSON object.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from homehub.engine.errors import CommandError, DecryptionError, TopicError

TOPIC_ROOT = "home"
TOPIC_DEVICES = "devices"

IV_LENGTH = 12    # bytes, 96-bit GCM nonce
TAG_LENGTH = 16   # bytes, 128-bit GCM tag


class MessageClass(str, Enum):
    """Recognised inbound message classes."""

    STATUS = "status"
    TELEMETRY = "telemetry"
    # Outbound only; seen inbound when a broker echoes our own publishes
    COMMAND = "command"


class SubClass(str, Enum):
    """Recognised sub-selectors under a message class."""

    FIRMWARE_VERSION = "firmwareVersion"


# ---------------------------------------------------------------------------
# Topics
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Topic:
    """A parsed device topic.

    ``sub_class`` is ``""`` when the topic has only four segments.
    """

    device_id: str
    message_class: str
    sub_class: str = ""

    @classmethod
    def parse(cls, topic: str) -> Topic:
        """Parse ``home/devices/{id}/{class}[/{sub}]``.

        Raises ``TopicError`` if the topic has fewer than four segments, the
        literal prefix does not match, or the id/class segments are empty.
        Segments beyond the fifth are joined back into ``sub_class``.
        """
        parts = topic.split("/")
        if len(parts) < 4:
            raise TopicError(f"topic {topic!r} has {len(parts)} segments, need at least 4")
        if parts[0] != TOPIC_ROOT or parts[1] != TOPIC_DEVICES:
            raise TopicError(
                f"topic {topic!r} does not start with '{TOPIC_ROOT}/{TOPIC_DEVICES}'"
            )
        device_id, message_class = parts[2], parts[3]
        if not device_id or not message_class:
            raise TopicError(f"topic {topic!r} has an empty device id or message class")
        return cls(
            device_id=device_id,
            message_class=message_class,
            sub_class="/".join(parts[4:]),
        )

    def __str__(self) -> str:
        base = f"{TOPIC_ROOT}/{TOPIC_DEVICES}/{self.device_id}/{self.message_class}"
        return f"{base}/{self.sub_class}" if self.sub_class else base


def command_topic(device_id: str, command_name: str) -> str:
    """Build the outbound topic for *command_name* on *device_id*."""
    for label, value in (("device id", device_id), ("command name", command_name)):
        if not value:
            raise CommandError(f"empty {label}")
        if any(ch in value for ch in "/+#"):
            raise CommandError(f"{label} {value!r} contains '/', '+' or '#'")
    return str(Topic(device_id, MessageClass.COMMAND.value, command_name))


def subscription_pattern(message_class: str, sub_class: str = "") -> str:
    """Return the wildcard subscription for a message class across all devices."""
    base = f"{TOPIC_ROOT}/{TOPIC_DEVICES}/+/{message_class}"
    return f"{base}/{sub_class}" if sub_class else base


DEFAULT_SUBSCRIPTIONS = [
    subscription_pattern(MessageClass.STATUS.value),
    subscription_pattern(MessageClass.TELEMETRY.value),
    subscription_pattern(MessageClass.TELEMETRY.value, "+"),
]


# ---------------------------------------------------------------------------
# Encrypted envelope
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EncryptedEnvelope:
    """One encrypted message body: nonce, GCM tag and ciphertext."""

    iv: bytes
    auth_tag: bytes
    ciphertext: bytes

    def to_wire(self) -> str:
        return f"{self.iv.hex()}:{self.auth_tag.hex()}:{self.ciphertext.hex()}"

    def to_bytes(self) -> bytes:
        return self.to_wire().encode("ascii")

    @classmethod
    def from_wire(cls, data: str | bytes) -> EncryptedEnvelope:
        """Decode ``iv:tag:ciphertext``.

        Raises ``DecryptionError`` on a wrong segment count, invalid hex, or
        an IV/tag of the wrong length.  The ciphertext segment may be empty
        (empty plaintext); the IV and tag may not.
        """
        if isinstance(data, (bytes, bytearray)):
            try:
                data = bytes(data).decode("ascii")
            except UnicodeDecodeError as exc:
                raise DecryptionError("envelope is not ASCII hex") from exc

        parts = data.strip().split(":")
        if len(parts) != 3:
            raise DecryptionError(f"envelope has {len(parts)} segments, expected 3")
        iv_hex, tag_hex, ct_hex = parts
        if not iv_hex or not tag_hex:
            raise DecryptionError("envelope has an empty iv or auth tag")

        try:
            iv = bytes.fromhex(iv_hex)
            tag = bytes.fromhex(tag_hex)
            ciphertext = bytes.fromhex(ct_hex)
        except ValueError as exc:
            raise DecryptionError(f"envelope is not valid hex: {exc}") from exc

        if len(iv) != IV_LENGTH:
            raise DecryptionError(f"iv is {len(iv)} bytes, expected {IV_LENGTH}")
        if len(tag) != TAG_LENGTH:
            raise DecryptionError(f"auth tag is {len(tag)} bytes, expected {TAG_LENGTH}")
        return cls(iv=iv, auth_tag=tag, ciphertext=ciphertext)
