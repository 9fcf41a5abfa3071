"""Exception hierarchy for the messaging engine.

Inbound-path errors (``TopicError``, ``DecryptionError``) are caught and
logged by the router.  Outbound-path errors (``DeviceNotFoundError``,
``EncryptionError``, ``PublishError``, ``CommandError``) propagate to whoever
asked for the command.
"""

from __future__ import annotations


class HubError(Exception):
    """Base class for all engine errors."""


class EncryptionError(HubError):
    """A message body could not be encrypted."""


class DecryptionError(HubError):
    """An envelope was malformed or failed authentication."""


class TopicError(HubError):
    """A topic string does not match ``home/devices/{id}/{class}[/{sub}]``."""


class DeviceNotFoundError(HubError):
    """The target device is not known to the device store."""

    def __init__(self, device_id: str):
        super().__init__(f"Device '{device_id}' not found")
        self.device_id = device_id


class PublishError(HubError):
    """The transport could not deliver an outbound message."""


class CommandError(HubError):
    """A command is not well-formed (e.g. the name is not a valid topic level)."""


class InvalidConditionError(HubError):
    """An automation trigger condition could not be parsed."""


def http_status_for(exc: BaseException) -> int:
    """Map an outbound error to the status class a web layer should return."""
    if isinstance(exc, DeviceNotFoundError):
        return 404
    if isinstance(exc, (CommandError, InvalidConditionError)):
        return 400
    if isinstance(exc, PublishError):
        return 502
    return 500
