"""Inbound message routing: topic → decrypt → merge → automation.

``MessageRouter.handle_message`` is the single entry point the transport
calls for every received message.  Nothing it encounters on the way is
raised back to the transport: unknown topics, unknown devices, failed
decryption and malformed JSON are logged and the message is dropped.
Delivery is at-least-once and devices can be compromised, so garbage must
never take the router down.

Merge policy
------------
========================  ==================================================
topic                     effect on the device record
========================  ==================================================
``status``                boolean ``status`` → set status and replace
                          ``last_known_state`` with the payload; otherwise
                          merge the payload into ``last_known_state``
``telemetry/firmwareVersion``  string ``version`` → set ``firmware_version``
``telemetry[/other]``     merge the payload into ``last_known_state``
anything else             logged as unhandled, ignored
========================  ==================================================

Merges are read-modify-write against the store, so they are serialized per
device id.  Messages for different devices run fully in parallel.
"""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable

from loguru import logger

from homehub.engine.automation import RuleEngine
from homehub.engine.encryption import CryptoChannel
from homehub.engine.errors import DecryptionError, TopicError
from homehub.engine.protocol import MessageClass, SubClass, Topic
from homehub.engine.registry import DeviceRecord, DeviceStateStore

# Callback for applied merges: (record after merge, message class)
StateChangeCallback = Callable[[DeviceRecord, str], Any]

# Longest slice of an undecodable payload echoed into the log
_LOG_PAYLOAD_LIMIT = 256


class KeyedLock:
    """A map of ``asyncio.Lock`` objects created on demand per key.

    Locks are reference-counted and dropped once no task holds or waits on
    them, so the map does not grow with the number of devices ever seen.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class MessageRouter:
    """Turns raw ``(topic, bytes)`` pairs into state updates and rule runs."""

    def __init__(
        self,
        store: DeviceStateStore,
        crypto: CryptoChannel,
        rules: RuleEngine | None = None,
        *,
        log: Any = None,
    ):
        self._store = store
        self._crypto = crypto
        self._rules = rules
        self._log = log or logger
        self._device_locks = KeyedLock()
        self._state_callbacks: list[StateChangeCallback] = []

    def on_state_change(self, callback: StateChangeCallback) -> None:
        """Register a callback receiving ``(record, message_class)`` after a merge."""
        self._state_callbacks.append(callback)

    # -- entry point ---------------------------------------------------------

    async def handle_message(self, topic: str, raw: bytes) -> bool:
        """Process one inbound message. Returns True if device state changed."""
        try:
            parsed = Topic.parse(topic)
        except TopicError as exc:
            self._log.warning(f"[Router] discarding message: {exc}")
            return False

        if parsed.message_class == MessageClass.COMMAND:
            # Our own outbound traffic echoed back by a broad subscription
            self._log.debug(f"[Router] ignoring outbound command topic {topic}")
            return False

        async with self._device_locks.hold(parsed.device_id):
            result = await self._merge(parsed, raw)

        if result is None:
            return False
        device, payload = result

        self._notify_state_change(device, parsed.message_class)
        if self._rules is not None:
            await self._rules.evaluate(device, payload)
        return True

    # -- stages --------------------------------------------------------------

    async def _merge(
        self, topic: Topic, raw: bytes,
    ) -> tuple[DeviceRecord, dict[str, Any]] | None:
        """Decrypt and apply one message; call with the device lock held.

        Returns the re-read record and the payload, or None if nothing changed.
        """
        device = await self._store.find_by_id(topic.device_id)
        if device is None:
            self._log.warning(
                f"[Router] discarding {topic.message_class} from unknown device "
                f"{topic.device_id!r}"
            )
            return None

        payload = self._open(topic, raw, device)
        if payload is None:
            return None

        fields = self._merge_fields(topic, device, payload)
        if not fields:
            return None

        updated = await self._store.update(topic.device_id, fields)
        if updated is None:
            self._log.warning(
                f"[Router] device {topic.device_id!r} vanished during update"
            )
            return None

        current = await self._store.find_by_id(topic.device_id) or updated
        self._log.debug(
            f"[Router] {topic} applied to {topic.device_id}: {sorted(fields)}"
        )
        return current, payload

    def _open(
        self, topic: Topic, raw: bytes, device: DeviceRecord,
    ) -> dict[str, Any] | None:
        """Decrypt and JSON-decode a body; None (logged) on any failure."""
        try:
            plaintext = self._crypto.decrypt(raw, device.key_material)
        except DecryptionError as exc:
            self._log.error(
                f"[Router] discarding {topic} from {device.id}: decryption failed: {exc}"
            )
            return None

        try:
            payload = json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            self._log.error(
                f"[Router] discarding {topic} from {device.id}: malformed payload "
                f"{plaintext[:_LOG_PAYLOAD_LIMIT]!r}: {exc}"
            )
            return None

        if not isinstance(payload, dict):
            self._log.error(
                f"[Router] discarding {topic} from {device.id}: expected a JSON object, "
                f"got {plaintext[:_LOG_PAYLOAD_LIMIT]!r}"
            )
            return None
        return payload

    def _merge_fields(
        self, topic: Topic, device: DeviceRecord, payload: dict[str, Any],
    ) -> dict[str, Any]:
        """Compute the store update for a message class; {} means no change."""
        if topic.message_class == MessageClass.STATUS:
            status = payload.get("status")
            if isinstance(status, bool):
                return {"status": status, "last_known_state": dict(payload)}
            return {"last_known_state": {**device.last_known_state, **payload}}

        if topic.message_class == MessageClass.TELEMETRY:
            if topic.sub_class == SubClass.FIRMWARE_VERSION:
                version = payload.get("version")
                if isinstance(version, str):
                    return {"firmware_version": version}
                self._log.warning(
                    f"[Router] firmwareVersion from {device.id} has no string 'version'"
                )
                return {}
            return {"last_known_state": {**device.last_known_state, **payload}}

        self._log.info(
            f"[Router] unhandled message type {topic.message_class!r} "
            f"from {device.id}, ignoring"
        )
        return {}

    def _notify_state_change(self, device: DeviceRecord, message_class: str) -> None:
        for cb in self._state_callbacks:
            try:
                cb(device, message_class)
            except Exception as exc:
                self._log.error(f"[Router] state-change callback error: {exc}")
