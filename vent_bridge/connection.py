"""Per-role broker session lifecycle.

Each role (ingest, relay) owns one :class:`ConnectionManager`. The manager
holds at most one live :class:`BrokerSession` and guarantees that concurrent
callers of :meth:`ConnectionManager.ensure` trigger a single connect
handshake. Recovery is lazy: when the session drops, the reference is
cleared and the next ``ensure()`` opens a fresh one.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from enum import Enum
from typing import Callable, List, Optional

from .adapters.mqtt import BrokerSession, MessageHandler, SessionState
from .config import BrokerConfig
from .errors import ConnectFailure, SubscribeFailure

LOGGER = logging.getLogger(__name__)

SessionFactory = Callable[..., BrokerSession]
StateListener = Callable[["ConnectionManager", SessionState, Optional[str]], None]


class SessionRole(str, Enum):
    """Logical role of a broker session."""

    INGEST = "ingest"
    """Subscribes to device telemetry."""

    RELAY = "relay"
    """Publishes commands to the device."""


class ConnectionManager:
    """Owns the broker session for one role.

    Args:
        role: Which logical session this manager owns.
        broker_config: Endpoint and credential paths.
        client_id_prefix: Prefix for the generated client identity.
        subscribe_topic: Topic subscribed after each connect (ingest role).
        subscribe_qos: QoS requested for ``subscribe_topic``.
        message_handler: Handler registered on every new session.
        subscribe_grace_seconds: Upper bound ``ensure()`` waits for SUBACK
            before returning the connected session anyway.
        wait_timeout: Upper bound a caller waits for another caller's
            in-flight connection attempt.
        session_factory: Builds sessions; defaults to :class:`BrokerSession`.
    """

    def __init__(
        self,
        role: SessionRole,
        broker_config: BrokerConfig,
        *,
        client_id_prefix: str,
        subscribe_topic: Optional[str] = None,
        subscribe_qos: int = 1,
        message_handler: Optional[MessageHandler] = None,
        subscribe_grace_seconds: float = 2.0,
        wait_timeout: float = 35.0,
        session_factory: Optional[SessionFactory] = None,
    ) -> None:
        self.role = role
        self._broker_config = broker_config
        self._client_id_prefix = client_id_prefix
        self._subscribe_topic = subscribe_topic
        self._subscribe_qos = subscribe_qos
        self._message_handler = message_handler
        self._subscribe_grace = max(0.0, subscribe_grace_seconds)
        self._wait_timeout = wait_timeout
        self._session_factory: SessionFactory = session_factory or BrokerSession

        self._condition = asyncio.Condition()
        self._session: Optional[BrokerSession] = None
        self._connecting = False
        self._generation = 0
        self._last_error: Optional[ConnectFailure] = None
        self._has_connected = False
        self._connect_attempts = 0
        self._identity_counter = itertools.count()
        self._state_listeners: List[StateListener] = []

    @property
    def session(self) -> Optional[BrokerSession]:
        return self._session

    @property
    def state(self) -> SessionState:
        if self._connecting:
            return SessionState.CONNECTING
        session = self._session
        if session is not None and session.state == SessionState.CONNECTED:
            return SessionState.CONNECTED
        return SessionState.DISCONNECTED

    @property
    def has_connected(self) -> bool:
        """Whether any session for this role has ever reached CONNECTED."""
        return self._has_connected

    @property
    def connect_attempts(self) -> int:
        return self._connect_attempts

    @property
    def last_error(self) -> Optional[ConnectFailure]:
        return self._last_error

    def register_state_listener(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    def build_identity(self) -> str:
        """Client identity unique across restarts and across attempts in a process."""
        stamp = int(time.time() * 1000)
        sequence = next(self._identity_counter)
        suffix = f"{stamp}" if sequence == 0 else f"{stamp}-{sequence}"
        return f"{self._client_id_prefix}{suffix}"

    async def ensure(self) -> BrokerSession:
        """Return a connected session, opening one if necessary.

        Raises:
            ConnectFailure: If the connect attempt fails, or another caller's
                attempt does not finish within the wait bound.
        """

        async with self._condition:
            while True:
                session = self._session
                if session is not None and session.state == SessionState.CONNECTED:
                    return session

                if not self._connecting:
                    break

                generation = self._generation
                try:
                    await asyncio.wait_for(
                        self._condition.wait_for(
                            lambda: self._generation != generation
                        ),
                        timeout=self._wait_timeout,
                    )
                except asyncio.TimeoutError as exc:
                    raise ConnectFailure(
                        f"Timed out waiting for {self.role.value} connection attempt",
                        role=self.role.value,
                    ) from exc

                if self._session is None and self._last_error is not None:
                    raise self._last_error

            self._connecting = True
            self._connect_attempts += 1

        self._notify_state(SessionState.CONNECTING, None)

        try:
            session = await self._open_session()
            if session.state != SessionState.CONNECTED:
                raise ConnectFailure(
                    f"{self.role.value} session {session.identity} dropped while connecting",
                    role=self.role.value,
                )
        except BaseException as exc:
            if isinstance(exc, ConnectFailure):
                error = exc
            elif isinstance(exc, asyncio.CancelledError):
                error = ConnectFailure(
                    f"{self.role.value} connection attempt was cancelled",
                    role=self.role.value,
                )
            else:
                error = ConnectFailure(
                    f"{self.role.value} connection failed: {exc}", role=self.role.value
                )
            await self._finish_attempt(None, error)
            self._notify_state(SessionState.DISCONNECTED, str(error))
            if error is exc:
                raise
            if isinstance(exc, asyncio.CancelledError):
                raise
            raise error from exc

        await self._finish_attempt(session, None)
        self._notify_state(SessionState.CONNECTED, session.identity)
        return session

    async def close(self) -> None:
        """Disconnect the held session, if any."""

        async with self._condition:
            session = self._session
            self._session = None
            self._last_error = None
            self._generation += 1
            self._condition.notify_all()

        if session is not None:
            LOGGER.info("Closing %s session %s", self.role.value, session.identity)
            await session.disconnect()
            self._notify_state(SessionState.DISCONNECTED, "closed")

    async def _finish_attempt(
        self, session: Optional[BrokerSession], error: Optional[ConnectFailure]
    ) -> None:
        async with self._condition:
            self._connecting = False
            self._session = session
            self._last_error = error
            if session is not None:
                self._has_connected = True
            self._generation += 1
            self._condition.notify_all()

    async def _open_session(self) -> BrokerSession:
        identity = self.build_identity()
        session = self._session_factory(
            self._broker_config,
            identity=identity,
            role=self.role.value,
            clean_session=False,
        )
        if self._message_handler is not None:
            session.register_message_handler(self._message_handler)
        session.register_disconnect_handler(self._handle_disconnect)

        LOGGER.info("Opening %s session %s", self.role.value, identity)
        await session.connect()
        LOGGER.info("%s session %s connected", self.role.value.capitalize(), identity)

        if self._subscribe_topic:
            await self._start_subscription(session, self._subscribe_topic)

        return session

    async def _start_subscription(self, session: BrokerSession, topic: str) -> None:
        LOGGER.info("Subscribing %s to %s", session.identity, topic)
        try:
            ack = session.subscribe(topic, qos=self._subscribe_qos)
        except SubscribeFailure as exc:
            LOGGER.error("Subscribe to %s failed: %s", topic, exc)
            return

        ack.add_done_callback(lambda future: self._log_subscribe_result(topic, future))

        if self._subscribe_grace <= 0:
            return

        done, _ = await asyncio.wait({ack}, timeout=self._subscribe_grace)
        if not done:
            LOGGER.info(
                "SUBACK for %s pending after %.1fs; continuing", topic, self._subscribe_grace
            )

    def _log_subscribe_result(self, topic: str, future: asyncio.Future[int]) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            LOGGER.error("Subscription to %s failed: %s", topic, exc)
        else:
            LOGGER.info("Subscribed to %s (granted qos=%s)", topic, future.result())

    def _handle_disconnect(self, session: BrokerSession, rc: int) -> None:
        if self._session is not session:
            return
        LOGGER.warning(
            "%s session %s disconnected (rc=%s); next request reconnects",
            self.role.value.capitalize(),
            session.identity,
            rc,
        )
        self._session = None
        self._notify_state(SessionState.DISCONNECTED, f"rc={rc}")

    def _notify_state(self, state: SessionState, detail: Optional[str]) -> None:
        for listener in list(self._state_listeners):
            try:
                listener(self, state, detail)
            except Exception:
                LOGGER.warning("Connection state listener failed", exc_info=True)
