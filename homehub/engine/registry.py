"""Device directory: key material and last-known state per device.

The engine only depends on the ``DeviceStateStore`` protocol (``find_by_id``
and ``update``), so a deployment can back it with whatever database holds
its device table.  ``DeviceRegistry`` is the bundled implementation: an
in-memory map that optionally writes through to a JSON file.

Usage
-----
>>> registry = DeviceRegistry(path="/var/lib/homehub/device_registry.json")
>>> registry.load()
>>> await registry.register_device("lamp-01", key_material="s3cret", name="Desk lamp")
>>> await registry.update("lamp-01", {"status": True})
>>> record = await registry.find_by_id("lamp-01")
"""

from __future__ import annotations

import asyncio
import copy
import json
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping, Protocol, runtime_checkable

from loguru import logger


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

@dataclass
class DeviceRecord:
    """Server-side record for one device."""

    id: str
    key_material: str                      # opaque secret; never sent over the wire
    name: str = ""
    device_type: str = ""
    status: bool = False
    last_known_state: dict[str, Any] = field(default_factory=dict)
    firmware_version: str | None = None
    owner_id: str | None = None
    updated_at: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "aesKey": self.key_material,
            "name": self.name,
            "type": self.device_type,
            "status": self.status,
            "lastKnownState": self.last_known_state,
            "firmwareVersion": self.firmware_version,
            "ownerId": self.owner_id,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> DeviceRecord:
        return cls(
            id=d["id"],
            key_material=d.get("aesKey", ""),
            name=d.get("name", ""),
            device_type=d.get("type", ""),
            status=bool(d.get("status", False)),
            last_known_state=dict(d.get("lastKnownState") or {}),
            firmware_version=d.get("firmwareVersion"),
            owner_id=d.get("ownerId"),
            updated_at=d.get("updatedAt", 0.0),
        )

    def public_dict(self) -> dict[str, Any]:
        """Return the record without its key material (for logs and listeners)."""
        d = self.to_dict()
        d.pop("aesKey")
        return d


# Fields that ``update()`` may change.  ``id`` and ``key_material`` are
# managed by registration, not by message merges.
UPDATABLE_FIELDS = frozenset({
    "name",
    "device_type",
    "status",
    "last_known_state",
    "firmware_version",
    "owner_id",
})


@runtime_checkable
class DeviceStateStore(Protocol):
    """The device directory interface the engine consumes."""

    async def find_by_id(self, device_id: str) -> DeviceRecord | None:
        ...

    async def update(
        self, device_id: str, fields: Mapping[str, Any],
    ) -> DeviceRecord | None:
        ...


# Callback type for device events: (record, event)
# event types: "registered", "updated", "removed"
DeviceEventCallback = Callable[[DeviceRecord, str], Any]


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class DeviceRegistry:
    """In-memory ``DeviceStateStore`` with optional JSON write-through.

    Records handed out by ``find_by_id``/``update`` are deep copies, so a
    caller holding one sees a stable snapshot even while later merges land.

    Thread / async safety
    ---------------------
    Mutations and file writes are guarded by an ``asyncio.Lock``.  The lock
    protects the map itself; read-modify-write sequences spanning a
    ``find_by_id`` and an ``update`` are serialized by the caller (the
    message router holds a per-device lock around them).
    """

    def __init__(self, path: str | Path | None = None):
        self.path = Path(path) if path else None
        self._devices: dict[str, DeviceRecord] = {}
        self._lock = asyncio.Lock()
        self._event_callbacks: list[DeviceEventCallback] = []

    # -- event system --------------------------------------------------------

    def on_event(self, callback: DeviceEventCallback) -> None:
        """Register a callback receiving ``(record, event_type)``."""
        self._event_callbacks.append(callback)

    def _fire_event(self, record: DeviceRecord, event: str) -> None:
        for cb in self._event_callbacks:
            try:
                cb(copy.deepcopy(record), event)
            except Exception as exc:
                logger.error(f"[DeviceRegistry] event callback error: {exc}")

    # -- persistence ---------------------------------------------------------

    def _read_file(self) -> dict[str, Any] | None:
        """Parsed registry file, or None when there is nothing usable on disk."""
        if self.path is None or not self.path.exists():
            return None
        try:
            raw = self.path.read_text(encoding="utf-8")
            return json.loads(raw) if raw.strip() else None
        except (json.JSONDecodeError, OSError) as exc:
            logger.error(f"[DeviceRegistry] cannot read {self.path}: {exc}")
            return None

    def load(self) -> None:
        """Populate the registry from its file. Missing, empty or corrupt → empty."""
        data = self._read_file()
        if data is None:
            logger.debug(f"[DeviceRegistry] starting empty ({self.path or 'in-memory'})")
            return

        for entry in data.get("devices", []):
            try:
                record = DeviceRecord.from_dict(entry)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning(f"[DeviceRegistry] ignoring bad device entry ({exc})")
                continue
            self._devices[record.id] = record
        logger.info(f"[DeviceRegistry] {len(self._devices)} devices read from {self.path}")

    def _save_sync(self) -> None:
        """Rewrite the file via a temp file and rename; call with the lock held."""
        if self.path is None:
            return
        snapshot = {
            "version": 1,
            "updated_at": time.time(),
            "devices": [r.to_dict() for r in self._devices.values()],
        }
        staging = self.path.parent / f".{self.path.name}.tmp"
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            staging.write_text(json.dumps(snapshot, indent=2, ensure_ascii=False), encoding="utf-8")
            os.replace(staging, self.path)
        except OSError as exc:
            logger.error(f"[DeviceRegistry] could not write {self.path}: {exc}")
            return
        try:
            os.chmod(self.path, 0o600)    # holds key material
        except OSError:
            pass  # no POSIX permissions on this filesystem

    # -- DeviceStateStore ----------------------------------------------------

    async def find_by_id(self, device_id: str) -> DeviceRecord | None:
        record = self._devices.get(device_id)
        return copy.deepcopy(record) if record else None

    async def update(
        self, device_id: str, fields: Mapping[str, Any],
    ) -> DeviceRecord | None:
        """Apply a partial update. Returns the new record, or None if unknown.

        Raises ``ValueError`` for fields outside ``UPDATABLE_FIELDS``.
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"cannot update fields {sorted(unknown)}")

        async with self._lock:
            record = self._devices.get(device_id)
            if record is None:
                logger.warning(f"[DeviceRegistry] update for unknown device {device_id}")
                return None
            for key, value in fields.items():
                setattr(record, key, copy.deepcopy(value))
            record.updated_at = time.time()
            self._save_sync()
            snapshot = copy.deepcopy(record)

        self._fire_event(snapshot, "updated")
        logger.debug(f"[DeviceRegistry] updated {device_id}: {sorted(fields)}")
        return snapshot

    # -- device management ---------------------------------------------------

    async def register_device(
        self,
        device_id: str,
        key_material: str,
        *,
        name: str = "",
        device_type: str = "",
        owner_id: str | None = None,
    ) -> DeviceRecord:
        """Register a device, or rotate the key of an existing one.

        State of an existing device is preserved.
        """
        if not key_material:
            raise ValueError("key_material must not be empty")

        async with self._lock:
            existing = self._devices.get(device_id)
            if existing:
                existing.key_material = key_material
                if name:
                    existing.name = name
                if device_type:
                    existing.device_type = device_type
                if owner_id is not None:
                    existing.owner_id = owner_id
                record, event = existing, "updated"
            else:
                record = DeviceRecord(
                    id=device_id,
                    key_material=key_material,
                    name=name or device_id,
                    device_type=device_type,
                    owner_id=owner_id,
                    updated_at=time.time(),
                )
                self._devices[device_id] = record
                event = "registered"
            self._save_sync()
            snapshot = copy.deepcopy(record)

        self._fire_event(snapshot, event)
        logger.info(f"[DeviceRegistry] {event} device {device_id}")
        return snapshot

    async def remove_device(self, device_id: str) -> bool:
        """Deprovision a device. Returns True if it existed."""
        async with self._lock:
            record = self._devices.pop(device_id, None)
            if record is None:
                return False
            self._save_sync()
        self._fire_event(record, "removed")
        logger.info(f"[DeviceRegistry] removed device {device_id}")
        return True

    def list_devices(self) -> list[DeviceRecord]:
        """Return snapshots of all devices."""
        return [copy.deepcopy(r) for r in self._devices.values()]

    @property
    def device_count(self) -> int:
        return len(self._devices)
