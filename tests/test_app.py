"""End-to-end tests for BridgeApp wiring with fake broker sessions."""

from __future__ import annotations

import asyncio
from configparser import ConfigParser
from pathlib import Path
from typing import Optional

import aiohttp
import pytest

from vent_bridge.adapters.mqtt import SessionState
from vent_bridge.app import BridgeApp
from vent_bridge.config import (
    BridgeConfig,
    BrokerConfig,
    HttpConfig,
    IngestConfig,
    LoggingConfig,
    RelayConfig,
)
from vent_bridge.errors import ConnectFailure

DATA_TOPIC = "devices/thing/data"
COMMAND_TOPIC = "devices/thing/commands"


def _build_config(port: int, *, connect_on_startup: bool = True) -> BridgeConfig:
    return BridgeConfig(
        broker=BrokerConfig(endpoint="broker.test", port=8883),
        ingest=IngestConfig(
            client_id_prefix="Thing-Server-",
            topic=DATA_TOPIC,
            subscribe_grace_seconds=0.05,
            connect_wait_seconds=1.0,
            connect_on_startup=connect_on_startup,
        ),
        relay=RelayConfig(
            client_id_prefix="Thing-Proxy-",
            command_topic=COMMAND_TOPIC,
            publish_timeout_seconds=1.0,
            connect_wait_seconds=1.0,
        ),
        http=HttpConfig(host="127.0.0.1", port=port),
        logging=LoggingConfig(),
        raw=ConfigParser(),
        path=Path("vent-bridge.cfg"),
    )


class FakeBrokerSession:
    def __init__(self, registry, config, *, identity, role="", clean_session=True):
        self.registry = registry
        self.identity = identity
        self.role = role
        self.state = SessionState.DISCONNECTED
        self.message_handlers = []
        self.disconnect_handlers = []
        self.subscribed = []
        self.published = []
        registry.sessions.append(self)

    def register_message_handler(self, handler):
        self.message_handlers.append(handler)

    def register_disconnect_handler(self, handler):
        self.disconnect_handlers.append(handler)

    async def connect(self, timeout: Optional[float] = None):
        if self.registry.connect_error is not None:
            raise self.registry.connect_error
        self.state = SessionState.CONNECTED

    def subscribe(self, topic, qos=1):
        self.subscribed.append(topic)
        future = asyncio.get_running_loop().create_future()
        future.set_result(qos)
        return future

    async def publish(self, topic, payload, *, qos=1, retain=False, timeout=10.0):
        self.published.append((topic, payload, qos))

    async def disconnect(self, timeout: float = 5.0):
        self.state = SessionState.DISCONNECTED

    def deliver(self, topic: str, payload: bytes) -> None:
        for handler in self.message_handlers:
            handler(topic, payload)


class SessionRegistry:
    def __init__(self):
        self.sessions: list[FakeBrokerSession] = []
        self.connect_error: Optional[Exception] = None

    def factory(self, config, **kwargs):
        return FakeBrokerSession(self, config, **kwargs)

    def by_role(self, role: str) -> list[FakeBrokerSession]:
        return [session for session in self.sessions if session.role == role]


async def _wait_for(predicate, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_bridge_relays_telemetry_and_commands(unused_tcp_port):
    registry = SessionRegistry()
    app = BridgeApp(_build_config(unused_tcp_port), session_factory=registry.factory)
    task = asyncio.create_task(app.run())

    try:
        await _wait_for(lambda: app.ingest.state == SessionState.CONNECTED)
        ingest_session = app.ingest.session
        assert ingest_session.subscribed == [DATA_TOPIC]

        ingest_session.deliver(DATA_TOPIC, b'{"smoke_level": 2200, "status": "DANGER"}')
        ingest_session.deliver(DATA_TOPIC, b"garbage")

        base_url = f"http://127.0.0.1:{unused_tcp_port}"
        async with aiohttp.ClientSession(base_url=base_url) as http:
            async with http.get("/api/iot-data") as response:
                data = await response.json()
            assert response.status == 200
            assert data["smoke_level"] == 2200
            assert data["status"] == "DANGER"
            assert data["vent_state"] == "CLOSED"

            body = {"action": "publish", "topic": COMMAND_TOPIC, "payload": '{"command": "ON"}'}
            async with http.post("/api/iot-proxy", json=body) as response:
                assert response.status == 200
                assert await response.json() == {"success": True}

            async with http.get("/healthz") as response:
                health = await response.json()
            assert response.status == 200
            assert health["counters"]["telemetry_dropped"] == 1
            assert health["counters"]["commands_published"] == 1

        [relay_session] = registry.by_role("relay")
        assert relay_session.published == [(COMMAND_TOPIC, b'{"command": "ON"}', 1)]
        assert relay_session.identity != ingest_session.identity
        assert relay_session.subscribed == []
    finally:
        app.request_shutdown()
        await asyncio.wait_for(task, timeout=2.0)

    assert all(session.state == SessionState.DISCONNECTED for session in registry.sessions)


@pytest.mark.asyncio
async def test_startup_connect_failure_is_recovered_by_next_poll(unused_tcp_port):
    registry = SessionRegistry()
    registry.connect_error = ConnectFailure("broker unreachable", role="ingest")
    app = BridgeApp(_build_config(unused_tcp_port), session_factory=registry.factory)
    task = asyncio.create_task(app.run())

    try:
        await _wait_for(lambda: app.ingest.connect_attempts == 1)
        await _wait_for(lambda: app.ingest.state == SessionState.DISCONNECTED)
        assert app.ingest.has_connected is False

        base_url = f"http://127.0.0.1:{unused_tcp_port}"
        async with aiohttp.ClientSession(base_url=base_url) as http:
            async with http.get("/api/iot-data") as response:
                data = await response.json()
            assert response.status == 500
            assert data["status"] == "ERROR"
            assert data["vent_state"] == "UNKNOWN"
            assert data["connection"] == "never_connected"

            registry.connect_error = None
            async with http.get("/api/iot-data") as response:
                data = await response.json()
            assert response.status == 200
            assert data["status"] == "NORMAL"
            assert data["connection"] == "connected"

        assert app.ingest.connect_attempts == 3
        assert app.ingest.has_connected is True
    finally:
        app.request_shutdown()
        await asyncio.wait_for(task, timeout=2.0)


@pytest.mark.asyncio
async def test_health_is_ok_before_first_command(unused_tcp_port):
    registry = SessionRegistry()
    app = BridgeApp(_build_config(unused_tcp_port), session_factory=registry.factory)
    task = asyncio.create_task(app.run())

    try:
        await _wait_for(lambda: app.ingest.state == SessionState.CONNECTED)

        base_url = f"http://127.0.0.1:{unused_tcp_port}"
        async with aiohttp.ClientSession(base_url=base_url) as http:
            async with http.get("/healthz") as response:
                health = await response.json()

        assert response.status == 200
        assert health["status"] == "ok"
        components = {item["name"]: item for item in health["components"]}
        assert components["relay"]["detail"] == "idle"
        assert components["ingest"]["healthy"] is True
        assert registry.by_role("relay") == []
    finally:
        app.request_shutdown()
        await asyncio.wait_for(task, timeout=2.0)
