"""Tests for homehub.engine.transport: MQTT reader, worker pool and publish."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import aiomqtt
import pytest

from homehub.config.schema import MqttConfig, RetryConfig
from homehub.engine.errors import PublishError
from homehub.engine.transport import MqttTransport, _as_bytes


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class FakeClient:
    """Stands in for an ``aiomqtt.Client``: yields canned messages, then idles."""

    def __init__(self, messages=(), *, refuse: bool = False):
        self._messages = list(messages)
        self._refuse = refuse
        self.subscribe = AsyncMock()
        self.publish = AsyncMock()

    async def __aenter__(self):
        if self._refuse:
            raise aiomqtt.MqttError("connection refused")
        return self

    async def __aexit__(self, *exc_info):
        return False

    @property
    def messages(self):
        return self._iterate()

    async def _iterate(self):
        for topic, payload in self._messages:
            yield SimpleNamespace(topic=topic, payload=payload)
        await asyncio.Event().wait()


def _config(**overrides) -> MqttConfig:
    defaults = dict(
        workers=2,
        reconnect=RetryConfig(max_retries=-1, base_delay=0.01, max_delay=0.01, jitter=0.0),
    )
    defaults.update(overrides)
    return MqttConfig(**defaults)


async def _wait_for(predicate, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


# ---------------------------------------------------------------------------
# Payload normalisation
# ---------------------------------------------------------------------------

class TestAsBytes:
    @pytest.mark.parametrize("payload,expected", [
        (b"abc", b"abc"),
        (bytearray(b"abc"), b"abc"),
        ("abc", b"abc"),
        (42, b"42"),
        (None, b""),
    ])
    def test_normalise(self, payload, expected):
        assert _as_bytes(payload) == expected


# ---------------------------------------------------------------------------
# Receiving
# ---------------------------------------------------------------------------

class TestReceive:
    @pytest.mark.asyncio
    async def test_subscribes_and_dispatches(self):
        client = FakeClient([
            ("home/devices/a/status", b"one"),
            ("home/devices/b/telemetry", "two"),
        ])
        transport = MqttTransport(_config(), client_factory=lambda: client)
        received = []

        async def handler(topic, payload):
            received.append((topic, payload))

        transport.on_message(handler)
        await transport.start()
        try:
            assert await transport.wait_connected(timeout=1.0)
            await _wait_for(lambda: len(received) == 2)
        finally:
            await transport.stop()

        assert sorted(received) == [
            ("home/devices/a/status", b"one"),
            ("home/devices/b/telemetry", b"two"),
        ]
        subscribed = [c.args[0] for c in client.subscribe.await_args_list]
        assert subscribed == _config().subscriptions
        assert all(c.kwargs["qos"] == 1 for c in client.subscribe.await_args_list)

    @pytest.mark.asyncio
    async def test_handler_errors_do_not_stop_dispatch(self):
        transport = MqttTransport(_config(), client_factory=lambda: FakeClient())
        good = AsyncMock()
        transport.on_message(AsyncMock(side_effect=RuntimeError("bad handler")))
        transport.on_message(good)
        await transport.dispatch("home/devices/a/status", b"x")
        good.assert_awaited_once_with("home/devices/a/status", b"x")

    @pytest.mark.asyncio
    async def test_stop_drains_queued_messages(self):
        client = FakeClient([(f"home/devices/d{i}/telemetry", b"x") for i in range(6)])
        transport = MqttTransport(_config(workers=1), client_factory=lambda: client)
        handled = []

        async def slow_handler(topic, payload):
            await asyncio.sleep(0.01)
            handled.append(topic)

        transport.on_message(slow_handler)
        await transport.start()
        assert await transport.wait_connected(timeout=1.0)
        await asyncio.sleep(0.005)
        await transport.stop()

        assert len(handled) == 6
        assert not transport.connected

    @pytest.mark.asyncio
    async def test_start_and_stop_are_idempotent(self):
        factory = MagicMock(side_effect=lambda: FakeClient())
        transport = MqttTransport(_config(), client_factory=factory)
        await transport.start()
        await transport.start()
        assert await transport.wait_connected(timeout=1.0)
        await transport.stop()
        await transport.stop()
        assert factory.call_count == 1


# ---------------------------------------------------------------------------
# Reconnect
# ---------------------------------------------------------------------------

class TestReconnect:
    @pytest.mark.asyncio
    async def test_reconnects_after_refused_connection(self):
        clients = [FakeClient(refuse=True), FakeClient(refuse=True), FakeClient()]
        factory = MagicMock(side_effect=clients)
        transport = MqttTransport(_config(), client_factory=factory)
        await transport.start()
        try:
            assert await transport.wait_connected(timeout=1.0)
            assert factory.call_count == 3
        finally:
            await transport.stop()

    @pytest.mark.asyncio
    async def test_reconnects_after_unexpected_error(self):
        crashing = FakeClient()
        crashing.subscribe.side_effect = RuntimeError("subscribe blew up")
        factory = MagicMock(side_effect=[
            RuntimeError("factory blew up"),
            crashing,
            FakeClient(),
        ])
        log = MagicMock()
        transport = MqttTransport(_config(), client_factory=factory, log=log)
        await transport.start()
        try:
            await _wait_for(lambda: factory.call_count == 3 and transport.connected)
            assert not transport._reader.done()
            assert log.error.call_count == 2
        finally:
            await transport.stop()

    @pytest.mark.asyncio
    async def test_gives_up_when_budget_exhausted(self):
        factory = MagicMock(side_effect=lambda: FakeClient(refuse=True))
        cfg = _config(reconnect=RetryConfig(max_retries=1, base_delay=0.0, jitter=0.0))
        log = MagicMock()
        transport = MqttTransport(cfg, client_factory=factory, log=log)
        await transport.start()
        await asyncio.wait_for(transport._reader, timeout=1.0)
        assert factory.call_count == 2
        assert not transport.connected
        log.error.assert_called_once()
        await transport.stop()

    @pytest.mark.asyncio
    async def test_wait_connected_timeout(self):
        factory = MagicMock(side_effect=lambda: FakeClient(refuse=True))
        transport = MqttTransport(_config(), client_factory=factory)
        await transport.start()
        try:
            assert await transport.wait_connected(timeout=0.05) is False
        finally:
            await transport.stop()


# ---------------------------------------------------------------------------
# Publishing
# ---------------------------------------------------------------------------

class TestPublish:
    @pytest.mark.asyncio
    async def test_not_connected(self):
        transport = MqttTransport(_config(), client_factory=lambda: FakeClient())
        with pytest.raises(PublishError):
            await transport.publish("home/devices/a/command/x", b"body")

    @pytest.mark.asyncio
    async def test_publish_through_client(self):
        client = FakeClient()
        transport = MqttTransport(_config(qos=2), client_factory=lambda: client)
        await transport.start()
        try:
            assert await transport.wait_connected(timeout=1.0)
            await transport.publish("home/devices/a/command/x", b"body")
        finally:
            await transport.stop()
        client.publish.assert_awaited_once_with(
            "home/devices/a/command/x", payload=b"body", qos=2,
        )

    @pytest.mark.asyncio
    async def test_client_error_wrapped(self):
        client = FakeClient()
        client.publish.side_effect = aiomqtt.MqttError("socket closed")
        transport = MqttTransport(_config(), client_factory=lambda: client)
        await transport.start()
        try:
            assert await transport.wait_connected(timeout=1.0)
            with pytest.raises(PublishError):
                await transport.publish("home/devices/a/command/x", b"body")
        finally:
            await transport.stop()
