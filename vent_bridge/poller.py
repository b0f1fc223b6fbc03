"""Reference polling consumer for the bridge's HTTP surface."""

from __future__ import annotations

import asyncio
import json
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import aiohttp

from . import constants

LOGGER = logging.getLogger(__name__)

# Successes needed after a failure before the link is reported connected again.
RECOVERY_SUCCESSES = 2


class LinkStatus(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class CommandRejected(RuntimeError):
    """Raised when the poller refuses or fails to send a vent command."""


StatusListener = Callable[[LinkStatus, LinkStatus], None]
DataListener = Callable[[Dict[str, Any]], None]


class DashboardPoller:
    """Polls ``/api/iot-data`` on a fixed interval and tracks link status."""

    def __init__(
        self,
        base_url: str,
        *,
        command_topic: str = constants.DEFAULT_COMMAND_TOPIC,
        interval: float = constants.DEFAULT_POLL_INTERVAL_SECONDS,
        session: Optional[aiohttp.ClientSession] = None,
        request_timeout: float = 10.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._command_topic = command_topic
        self._interval = interval
        self._session = session
        self._owns_session = session is None
        self._request_timeout = request_timeout

        self._status = LinkStatus.CONNECTING
        self._seen_failure = False
        self._consecutive_successes = 0
        self._latest: Optional[Dict[str, Any]] = None
        self._status_listeners: List[StatusListener] = []
        self._data_listeners: List[DataListener] = []

    @property
    def status(self) -> LinkStatus:
        return self._status

    @property
    def latest(self) -> Optional[Dict[str, Any]]:
        return self._latest

    def add_status_listener(self, listener: StatusListener) -> None:
        self._status_listeners.append(listener)

    def add_data_listener(self, listener: DataListener) -> None:
        self._data_listeners.append(listener)

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._session = None

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Poll until ``stop_event`` is set or the task is cancelled."""

        stop_event = stop_event or asyncio.Event()
        try:
            while not stop_event.is_set():
                await self.poll_once()
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self._interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            await self.close()

    async def poll_once(self) -> Optional[Dict[str, Any]]:
        """Fetch one snapshot; returns ``None`` when the poll failed."""

        session = self._ensure_session()
        url = self._base_url + constants.DATA_ROUTE
        try:
            async with session.get(url) as response:
                if response.status != 200:
                    detail = await response.text()
                    LOGGER.warning(
                        "Poll returned %s: %s", response.status, detail.strip()[:200]
                    )
                    self._record_failure()
                    return None
                payload = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            LOGGER.warning("Poll of %s failed: %s", url, exc)
            self._record_failure()
            return None

        if not isinstance(payload, dict) or "smoke_level" not in payload:
            LOGGER.warning("Poll returned an unexpected body: %r", payload)
            self._record_failure()
            return None

        previous = self._latest
        self._latest = payload
        self._record_success()

        if payload.get("status") == "DANGER" and (
            previous is None or previous.get("status") != "DANGER"
        ):
            LOGGER.warning("DANGER: high smoke level %s", payload.get("smoke_level"))

        for listener in list(self._data_listeners):
            listener(payload)
        return payload

    async def send_command(self, command: str) -> None:
        """Ask the bridge to publish ``{"command": ...}`` to the device."""

        command = command.upper()
        if command not in ("ON", "OFF"):
            raise CommandRejected(f"Unknown vent command {command!r}")
        if self._status != LinkStatus.CONNECTED:
            raise CommandRejected("Cannot send command: bridge not connected")
        if command == "OFF" and (self._latest or {}).get("status") == "DANGER":
            raise CommandRejected("Safety lock: cannot close vent during danger")

        await self.post_command(command)
        if self._latest is not None:
            self._latest = dict(self._latest)
            self._latest["vent_state"] = "OPEN" if command == "ON" else "CLOSED"

    async def post_command(self, command: str) -> None:
        """Post a vent command without the link-status and safety checks."""

        session = self._ensure_session()
        body = {
            "action": "publish",
            "topic": self._command_topic,
            "payload": json.dumps({"command": command}),
        }
        try:
            async with session.post(
                self._base_url + constants.PROXY_ROUTE, json=body
            ) as response:
                if response.status != 200:
                    try:
                        detail = (await response.json()).get("error", "")
                    except (aiohttp.ContentTypeError, ValueError):
                        detail = await response.text()
                    raise CommandRejected(
                        f"Bridge refused command ({response.status}): {detail}"
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise CommandRejected(f"Failed to send command: {exc}") from exc

        LOGGER.info("Command sent: %s vent", "open" if command == "ON" else "close")

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._request_timeout)
            )
            self._owns_session = True
        return self._session

    def _record_failure(self) -> None:
        self._seen_failure = True
        self._consecutive_successes = 0
        self._set_status(LinkStatus.DISCONNECTED)

    def _record_success(self) -> None:
        self._consecutive_successes += 1
        if self._status == LinkStatus.CONNECTED:
            return
        required = RECOVERY_SUCCESSES if self._seen_failure else 1
        if self._consecutive_successes >= required:
            self._set_status(LinkStatus.CONNECTED)

    def _set_status(self, status: LinkStatus) -> None:
        previous = self._status
        if previous == status:
            return
        self._status = status
        LOGGER.info("Bridge link %s -> %s", previous.value, status.value)
        for listener in list(self._status_listeners):
            listener(previous, status)
