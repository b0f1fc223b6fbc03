"""Main application entry-point for vent-bridge."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .config import BridgeConfig, load_config
from .connection import ConnectionManager, SessionFactory, SessionRole
from .errors import ConnectFailure
from .health import HealthReporter
from .logging import configure_logging
from .relay import CommandRelay
from .server import BridgeServer
from .telemetry import TelemetryCache, TelemetrySubscriptionHandler

LOGGER = logging.getLogger(__name__)


class BridgeApp:
    """Wires the two broker roles, the telemetry cache and the HTTP surface.

    Sessions and the cache are owned here and injected into the request
    handlers; nothing is held in module-level state.
    """

    def __init__(
        self,
        config: Optional[BridgeConfig] = None,
        *,
        session_factory: Optional[SessionFactory] = None,
    ) -> None:
        self._config = config or load_config()
        self.cache = TelemetryCache()
        self.health = HealthReporter(counters=self._counters)

        ingest_config = self._config.ingest
        relay_config = self._config.relay

        self.ingest = ConnectionManager(
            SessionRole.INGEST,
            self._config.broker,
            client_id_prefix=ingest_config.client_id_prefix,
            subscribe_topic=ingest_config.topic,
            subscribe_qos=ingest_config.qos,
            message_handler=TelemetrySubscriptionHandler(
                self.cache, topic=ingest_config.topic
            ),
            subscribe_grace_seconds=ingest_config.subscribe_grace_seconds,
            wait_timeout=ingest_config.connect_wait_seconds,
            session_factory=session_factory,
        )
        self.relay_manager = ConnectionManager(
            SessionRole.RELAY,
            self._config.broker,
            client_id_prefix=relay_config.client_id_prefix,
            wait_timeout=relay_config.connect_wait_seconds,
            session_factory=session_factory,
        )
        self.relay = CommandRelay(
            self.relay_manager,
            command_topic=relay_config.command_topic,
            qos=relay_config.qos,
            publish_timeout=relay_config.publish_timeout_seconds,
        )

        for manager in (self.ingest, self.relay_manager):
            manager.register_state_listener(self.health.session_listener)
        self.health.update(self.ingest.role.value, False, "never connected")
        # The relay session opens on the first command.
        self.health.update(self.relay_manager.role.value, True, "idle")

        self.server = BridgeServer(
            cache=self.cache,
            ingest=self.ingest,
            relay=self.relay,
            health=self.health,
            host=self._config.http.host,
            port=self._config.http.port,
        )
        self._shutdown_event: Optional[asyncio.Event] = None

    @property
    def config(self) -> BridgeConfig:
        return self._config

    def _counters(self) -> dict[str, int]:
        return {
            "telemetry_applied": self.cache.messages_applied,
            "telemetry_dropped": self.cache.dropped_messages,
            "commands_published": self.relay.published_count,
            "ingest_connect_attempts": self.ingest.connect_attempts,
            "relay_connect_attempts": self.relay_manager.connect_attempts,
        }

    async def run(self) -> None:
        """Serve until cancelled or :meth:`request_shutdown` is called."""

        self._shutdown_event = asyncio.Event()
        LOGGER.info("vent-bridge starting with config: %s", self._config.path)

        await self.server.start()
        try:
            if self._config.ingest.connect_on_startup:
                try:
                    await self.ingest.ensure()
                except ConnectFailure as exc:
                    LOGGER.warning(
                        "Initial ingest connection failed (%s); will retry on next poll",
                        exc,
                    )
            await self._shutdown_event.wait()
        except asyncio.CancelledError:
            LOGGER.info("vent-bridge received shutdown signal")
            raise
        finally:
            await self.stop()

    def request_shutdown(self) -> None:
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    async def stop(self) -> None:
        await self.server.stop()
        for manager in (self.ingest, self.relay_manager):
            try:
                await manager.close()
            except Exception:
                LOGGER.warning("Failed to close %s session", manager.role.value, exc_info=True)

    @classmethod
    def start(cls, config: Optional[BridgeConfig] = None) -> None:
        instance = cls(config=config)
        configure_logging(
            instance._config.logging.level,
            log_path=instance._config.logging.path,
            log_network=instance._config.logging.log_network,
        )
        try:
            asyncio.run(instance.run())
        except KeyboardInterrupt:
            LOGGER.info("vent-bridge received shutdown signal")
