"""HTTP surface for the polling dashboard."""

from __future__ import annotations

import contextlib
import logging
from typing import Dict, Optional

from aiohttp import web

from . import constants
from .connection import ConnectionManager
from .errors import BridgeError, InvalidCommand
from .health import HealthReporter
from .relay import CommandRelay
from .telemetry import SmokeStatus, TelemetryCache, VentState

LOGGER = logging.getLogger(__name__)


def error_record(message: str, connection: Optional[str] = None) -> Dict[str, object]:
    """Body returned by the polling route when the bridge cannot serve data."""

    record: Dict[str, object] = {
        "error": message,
        "smoke_level": 0,
        "status": SmokeStatus.ERROR.value,
        "vent_state": VentState.UNKNOWN.value,
    }
    if connection is not None:
        record["connection"] = connection
    return record


class BridgeServer:
    """aiohttp server exposing the telemetry poll, command proxy and health routes."""

    def __init__(
        self,
        *,
        cache: TelemetryCache,
        ingest: ConnectionManager,
        relay: CommandRelay,
        health: HealthReporter,
        host: str,
        port: int,
    ) -> None:
        self._cache = cache
        self._ingest = ingest
        self._relay = relay
        self._health = health
        self._host = host
        self._port = port
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get(constants.DATA_ROUTE, self._handle_data)
        app.router.add_post(constants.PROXY_ROUTE, self._handle_proxy)
        app.router.add_get(constants.HEALTH_ROUTE, self._handle_health)
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._host, self._port)
        await self._site.start()
        LOGGER.info("Bridge HTTP server listening on http://%s:%s", self._host, self._port)

    async def stop(self) -> None:
        with contextlib.suppress(Exception):
            if self._site is not None:
                await self._site.stop()
        if self._runner is not None:
            await self._runner.cleanup()
        self._site = None
        self._runner = None

    def _connection_summary(self) -> str:
        if not self._ingest.has_connected:
            return "never_connected"
        return self._ingest.state.value

    async def _handle_data(self, request: web.Request) -> web.Response:
        try:
            await self._ingest.ensure()
        except BridgeError as exc:
            LOGGER.error("Telemetry poll failed: %s", exc)
            return web.json_response(
                error_record(str(exc), self._connection_summary()), status=500
            )
        except Exception as exc:
            LOGGER.exception("Unexpected error serving telemetry poll")
            return web.json_response(
                error_record(str(exc), self._connection_summary()), status=500
            )

        record = self._cache.snapshot()
        last_message_at = self._cache.last_message_at
        payload = record.as_dict()
        payload["connection"] = self._ingest.state.value
        payload["last_message_at"] = (
            last_message_at.isoformat(timespec="seconds") if last_message_at else None
        )
        return web.json_response(payload)

    async def _handle_proxy(self, request: web.Request) -> web.Response:
        try:
            body = await request.json()
        except ValueError:
            return web.json_response(
                {"error": "Request body must be JSON"}, status=400
            )

        try:
            command = await self._relay.submit(body)
        except InvalidCommand as exc:
            LOGGER.warning("Rejected command: %s", exc)
            return web.json_response({"error": str(exc)}, status=400)
        except BridgeError as exc:
            LOGGER.error("Command relay failed: %s", exc)
            return web.json_response({"error": str(exc)}, status=500)

        LOGGER.info("Relayed command to %s", command.topic)
        return web.json_response({"success": True})

    async def _handle_health(self, request: web.Request) -> web.Response:
        snapshot = self._health.snapshot()
        status = 200 if snapshot["status"] == "ok" else 503
        return web.json_response(snapshot, status=status)
