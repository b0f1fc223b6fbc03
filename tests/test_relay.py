"""Tests for the outbound command relay."""

import json

import pytest

from vent_bridge.errors import ConnectFailure, InvalidCommand, PublishFailure
from vent_bridge.relay import Command, CommandAction, CommandRelay


class FakeSession:
    def __init__(self, publish_error=None):
        self.publish_error = publish_error
        self.published = []

    async def publish(self, topic, payload, *, qos=1, retain=False, timeout=10.0):
        if self.publish_error is not None:
            raise self.publish_error
        self.published.append((topic, payload, qos, timeout))


class FakeManager:
    """Connection manager stub counting ensure() calls."""

    def __init__(self, session=None, error=None):
        self.session = session or FakeSession()
        self.error = error
        self.ensure_calls = 0

    async def ensure(self):
        self.ensure_calls += 1
        if self.error is not None:
            raise self.error
        return self.session


def _relay(manager: FakeManager) -> CommandRelay:
    return CommandRelay(
        manager,
        command_topic="devices/thing/commands",
        qos=1,
        publish_timeout=2.0,
    )


def test_command_from_request_builds_publish():
    command = Command.from_request(
        {"action": "publish", "topic": "devices/thing/commands", "payload": '{"command":"ON"}'}
    )

    assert command.action is CommandAction.PUBLISH
    assert command.topic == "devices/thing/commands"
    assert command.payload == b'{"command":"ON"}'


@pytest.mark.parametrize(
    "body",
    [
        {"action": "subscribe", "topic": "devices/thing/commands", "payload": "{}"},
        {"topic": "devices/thing/commands", "payload": "{}"},
        {"action": "publish", "topic": "", "payload": "{}"},
        {"action": "publish", "topic": "devices/#", "payload": "{}"},
        {"action": "publish", "topic": "devices/thing/commands", "payload": {"command": "ON"}},
        ["publish"],
    ],
)
@pytest.mark.asyncio
async def test_invalid_command_never_connects(body):
    manager = FakeManager()
    relay = _relay(manager)

    with pytest.raises(InvalidCommand):
        await relay.submit(body)

    assert manager.ensure_calls == 0
    assert manager.session.published == []


@pytest.mark.asyncio
async def test_submit_publishes_with_at_least_once_qos():
    manager = FakeManager()
    relay = _relay(manager)

    await relay.submit(
        {"action": "publish", "topic": "devices/thing/commands", "payload": '{"command":"OFF"}'}
    )

    assert manager.session.published == [
        ("devices/thing/commands", b'{"command":"OFF"}', 1, 2.0)
    ]
    assert relay.published_count == 1


@pytest.mark.asyncio
async def test_connect_failure_propagates():
    manager = FakeManager(error=ConnectFailure("broker unreachable", role="relay"))
    relay = _relay(manager)

    with pytest.raises(ConnectFailure):
        await relay.publish("devices/thing/commands", b"{}")

    assert relay.published_count == 0


@pytest.mark.asyncio
async def test_publish_failure_propagates():
    session = FakeSession(
        publish_error=PublishFailure("no PUBACK", topic="devices/thing/commands")
    )
    relay = _relay(FakeManager(session=session))

    with pytest.raises(PublishFailure):
        await relay.publish("devices/thing/commands", b"{}")

    assert relay.published_count == 0


@pytest.mark.asyncio
async def test_session_dropping_mid_publish_becomes_publish_failure():
    session = FakeSession(publish_error=ConnectFailure("not connected", role="relay"))
    relay = _relay(FakeManager(session=session))

    with pytest.raises(PublishFailure) as excinfo:
        await relay.publish("devices/thing/commands", b"{}")

    assert excinfo.value.topic == "devices/thing/commands"


@pytest.mark.asyncio
async def test_send_vent_command_builds_device_payload():
    manager = FakeManager()
    relay = _relay(manager)

    await relay.send_vent_command("on")

    topic, payload, _, _ = manager.session.published[0]
    assert topic == "devices/thing/commands"
    assert json.loads(payload) == {"command": "ON"}


@pytest.mark.asyncio
async def test_send_vent_command_rejects_unknown_values():
    manager = FakeManager()
    relay = _relay(manager)

    with pytest.raises(InvalidCommand):
        await relay.send_vent_command("HALF")

    assert manager.ensure_calls == 0
