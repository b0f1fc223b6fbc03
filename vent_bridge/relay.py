"""Outbound command relay."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping

from .connection import ConnectionManager
from .errors import ConnectFailure, InvalidCommand, PublishFailure

LOGGER = logging.getLogger(__name__)


class CommandAction(str, Enum):
    PUBLISH = "publish"


class VentCommand(str, Enum):
    """Values accepted by the device on its command topic."""

    ON = "ON"
    OFF = "OFF"


@dataclass(frozen=True, slots=True)
class Command:
    action: CommandAction
    topic: str
    payload: bytes

    @classmethod
    def from_request(cls, body: Any) -> "Command":
        """Validate a ``{action, topic, payload}`` request body."""

        if not isinstance(body, Mapping):
            raise InvalidCommand("Command body must be a JSON object")

        action_value = body.get("action")
        try:
            action = CommandAction(action_value)
        except ValueError as exc:
            raise InvalidCommand("Invalid action") from exc

        topic = body.get("topic")
        if not isinstance(topic, str) or not topic.strip():
            raise InvalidCommand("Command topic must be a non-empty string")
        if any(char in topic for char in "#+"):
            raise InvalidCommand("Command topic must not contain wildcards")

        payload = body.get("payload", "")
        if not isinstance(payload, str):
            raise InvalidCommand("Command payload must be a string")

        return cls(action=action, topic=topic, payload=payload.encode("utf-8"))


class CommandRelay:
    """Publishes commands on the relay session with at-least-once delivery.

    The device must tolerate duplicates: the broker may redeliver a command
    that was already acknowledged.
    """

    def __init__(
        self,
        manager: ConnectionManager,
        *,
        command_topic: str,
        qos: int = 1,
        publish_timeout: float = 10.0,
    ) -> None:
        self._manager = manager
        self._command_topic = command_topic
        self._qos = qos
        self._publish_timeout = publish_timeout
        self._published = 0

    @property
    def command_topic(self) -> str:
        return self._command_topic

    @property
    def published_count(self) -> int:
        return self._published

    async def submit(self, body: Any) -> Command:
        """Validate a request body and relay it. Invalid bodies never touch the broker."""

        command = Command.from_request(body)
        await self.execute(command)
        return command

    async def execute(self, command: Command) -> None:
        if command.action is not CommandAction.PUBLISH:
            raise InvalidCommand(f"Unsupported action {command.action.value}")
        await self.publish(command.topic, command.payload)

    async def publish(self, topic: str, payload: bytes) -> None:
        """Publish ``payload`` on ``topic`` and wait for the broker's PUBACK.

        Raises:
            ConnectFailure: If the relay session cannot be established.
            PublishFailure: If the broker does not acknowledge the publish.
        """

        session = await self._manager.ensure()
        LOGGER.info("Publishing %d bytes to %s", len(payload), topic)
        try:
            await session.publish(
                topic, payload, qos=self._qos, timeout=self._publish_timeout
            )
        except ConnectFailure as exc:
            raise PublishFailure(str(exc), topic=topic) from exc
        except PublishFailure:
            LOGGER.warning("Publish to %s was not acknowledged", topic)
            raise
        self._published += 1

    async def send_vent_command(self, command: str | VentCommand) -> None:
        """Publish ``{"command": "ON"|"OFF"}`` on the device command topic."""

        try:
            vent_command = VentCommand(str(getattr(command, "value", command)).upper())
        except ValueError as exc:
            raise InvalidCommand(f"Unknown vent command {command!r}") from exc

        payload = json.dumps({"command": vent_command.value}).encode("utf-8")
        await self.publish(self._command_topic, payload)
