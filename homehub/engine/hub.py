"""Hub wiring: builds the engine components from a ``HubConfig``.

``HomeHub`` owns the device registry, crypto channel, command publisher,
rule engine, message router and MQTT transport, and connects them:

    transport ──► router ──► registry (merge) ──► rules ──► publisher ──► transport

It is also the surface non-core callers use: a web layer calls
``send_command`` and maps the raised errors with
``homehub.engine.errors.http_status_for``.
"""

from __future__ import annotations

from typing import Any

from loguru import logger

from homehub.config.schema import HubConfig
from homehub.engine.automation import RuleEngine
from homehub.engine.commands import CommandPublisher, Publisher
from homehub.engine.encryption import CryptoChannel
from homehub.engine.registry import DeviceRegistry, DeviceStateStore
from homehub.engine.router import MessageRouter
from homehub.engine.transport import MqttTransport


class HomeHub:
    """The assembled messaging and automation engine."""

    def __init__(
        self,
        config: HubConfig,
        *,
        store: DeviceStateStore | None = None,
        transport: Any = None,
        log: Any = None,
    ):
        self.config = config
        self._log = log or logger

        if store is None:
            registry = DeviceRegistry(path=config.registry_path)
            registry.load()
            store = registry
        self.store = store

        self.transport: Publisher = transport or MqttTransport(config.mqtt, log=self._log)
        self.crypto = CryptoChannel()
        self.publisher = CommandPublisher(
            self.store,
            self.crypto,
            self.transport,
            retry=config.publish_retry.to_policy(),
            log=self._log,
        )
        self.rules = RuleEngine(self.publisher, log=self._log)
        if config.automation.rules_path:
            self.rules.load_rules(config.automation.rules_path)
        if config.automation.rules:
            self.rules.load_rule_dicts(config.automation.rules)

        self.router = MessageRouter(self.store, self.crypto, self.rules, log=self._log)
        on_message = getattr(self.transport, "on_message", None)
        if on_message is not None:
            on_message(self.router.handle_message)

    # -- lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        start = getattr(self.transport, "start", None)
        if start is not None:
            await start()
        self._log.info(f"[Hub] started with {self.rules.rule_count} automation rules")

    async def stop(self) -> None:
        stop = getattr(self.transport, "stop", None)
        if stop is not None:
            try:
                await stop()
            except Exception as exc:
                self._log.error(f"[Hub] transport stop error: {exc}")
        self._log.info("[Hub] stopped")

    async def __aenter__(self) -> HomeHub:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    # -- caller surface ------------------------------------------------------

    async def send_command(
        self,
        device_id: str,
        command_name: str,
        payload: dict[str, Any] | None = None,
        *,
        requested_by: str | None = None,
    ) -> str:
        """Send a user-issued command. Raises on any outbound failure."""
        return await self.publisher.publish_command(
            device_id, command_name, payload, requested_by=requested_by,
        )
