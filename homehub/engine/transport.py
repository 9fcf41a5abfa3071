"""MQTT transport built on ``aiomqtt``.

A single reader task owns the broker connection.  Every received message is
put on a bounded ``asyncio.Queue``; a fixed pool of worker tasks drains the
queue and awaits the registered handlers.  A full queue blocks the reader
(back-pressure on the broker) instead of dropping messages.  Handlers may
therefore run concurrently, for the same device as well as for different
devices; the router serializes per device.

Connection loss is retried forever by default, with exponential backoff and
jitter (``MqttConfig.reconnect``).  ``publish`` never queues: while the
client is disconnected it fails immediately with ``PublishError`` and the
caller's retry policy decides what happens next.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

import aiomqtt
from loguru import logger

from homehub.config.schema import MqttConfig
from homehub.engine.errors import PublishError
from homehub.engine.resilience import supervised_task

# Callback type: receives (topic, raw payload bytes).
MessageHandler = Callable[[str, bytes], Awaitable[Any]]


def _as_bytes(payload: Any) -> bytes:
    """Normalise an aiomqtt payload (bytes, str, number or None) to bytes."""
    if payload is None:
        return b""
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload)
    return str(payload).encode("utf-8")


class MqttTransport:
    """Publish/subscribe client for the device topic namespace.

    Parameters
    ----------
    config:
        Broker address, QoS, subscriptions and dispatch sizing.
    client_factory:
        Returns a fresh (not yet entered) ``aiomqtt.Client``.  Tests pass a
        fake; the default builds one from *config*.
    """

    def __init__(
        self,
        config: MqttConfig,
        *,
        client_factory: Callable[[], Any] | None = None,
        log: Any = None,
    ):
        self._config = config
        self._client_factory = client_factory or self._make_client
        self._log = log or logger
        self._handlers: list[MessageHandler] = []
        self._client: Any = None
        self._connected = asyncio.Event()
        self._queue: asyncio.Queue[tuple[str, bytes]] | None = None
        self._reader: asyncio.Task | None = None
        self._workers: list[asyncio.Task] = []
        self._running = False

    def _make_client(self) -> aiomqtt.Client:
        c = self._config
        return aiomqtt.Client(
            hostname=c.host,
            port=c.port,
            username=c.username,
            password=c.password,
            identifier=c.client_id or None,
            keepalive=c.keepalive,
        )

    # -- handler registration ------------------------------------------------

    def on_message(self, handler: MessageHandler) -> None:
        """Register a callback invoked for every received message."""
        self._handlers.append(handler)

    @property
    def connected(self) -> bool:
        return self._connected.is_set()

    async def wait_connected(self, timeout: float | None = None) -> bool:
        """Wait until the broker connection is up. Returns False on timeout."""
        try:
            await asyncio.wait_for(self._connected.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    # -- lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        """Start the worker pool and the connection/reader loop."""
        if self._running:
            return
        self._running = True
        self._queue = asyncio.Queue(maxsize=self._config.queue_size)
        self._workers = [
            supervised_task(self._worker(), name=f"mqtt-worker-{i}")
            for i in range(max(1, self._config.workers))
        ]
        self._reader = supervised_task(self._run(), name="mqtt-reader")
        self._log.info(
            f"[MQTT] transport started: broker={self._config.host}:{self._config.port} "
            f"workers={len(self._workers)}"
        )

    async def stop(self) -> None:
        """Stop reading, finish queued messages, then stop the workers."""
        if not self._running:
            return
        self._running = False
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None
        if self._queue is not None:
            await self._queue.join()
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        self._log.info("[MQTT] transport stopped")

    # -- receiving -----------------------------------------------------------

    async def _run(self) -> None:
        """Connect, subscribe and read until stopped, reconnecting on errors."""
        policy = self._config.reconnect.to_policy()
        attempt = 0
        while self._running:
            try:
                async with self._client_factory() as client:
                    self._client = client
                    self._connected.set()
                    attempt = 0
                    self._log.info(
                        f"[MQTT] connected to {self._config.host}:{self._config.port}"
                    )
                    await self._consume(client)
            except aiomqtt.MqttError as exc:
                self._log.warning(f"[MQTT] connection error: {exc}")
            except Exception as exc:
                self._log.error(f"[MQTT] unexpected error in reader loop: {exc!r}")
            finally:
                self._client = None
                self._connected.clear()

            if not self._running:
                break
            if not policy.allows(attempt):
                self._log.error(f"[MQTT] giving up after {attempt + 1} connection attempts")
                break
            delay = policy.delay_for(attempt)
            attempt += 1
            self._log.info(f"[MQTT] reconnecting in {delay:.1f}s (attempt {attempt})")
            await asyncio.sleep(delay)

    async def _consume(self, client: Any) -> None:
        for pattern in self._config.subscriptions:
            await client.subscribe(pattern, qos=self._config.qos)
        self._log.debug(f"[MQTT] subscribed to {self._config.subscriptions}")

        assert self._queue is not None
        async for message in client.messages:
            await self._queue.put((str(message.topic), _as_bytes(message.payload)))

    async def _worker(self) -> None:
        assert self._queue is not None
        while True:
            topic, payload = await self._queue.get()
            try:
                await self.dispatch(topic, payload)
            finally:
                self._queue.task_done()

    async def dispatch(self, topic: str, payload: bytes) -> None:
        """Run every handler for one message; handler errors are logged."""
        for handler in self._handlers:
            try:
                await handler(topic, payload)
            except Exception as exc:
                self._log.error(f"[MQTT] handler error for {topic}: {exc!r}")

    # -- sending -------------------------------------------------------------

    async def publish(self, topic: str, payload: bytes) -> None:
        """Publish *payload* to *topic*. Raises ``PublishError`` on failure."""
        client = self._client
        if client is None:
            raise PublishError(f"cannot publish to {topic}: not connected")
        try:
            await client.publish(topic, payload=payload, qos=self._config.qos)
        except aiomqtt.MqttError as exc:
            raise PublishError(f"publish to {topic} failed: {exc}") from exc
        self._log.debug(f"[MQTT] published {len(payload)} bytes to {topic}")
