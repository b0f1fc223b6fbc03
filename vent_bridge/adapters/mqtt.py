"""MQTT adapter encapsulating paho-mqtt client usage."""

from __future__ import annotations

import asyncio
import logging
import ssl
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional, Set, Tuple

import paho.mqtt.client as mqtt

from ..config import BrokerConfig
from ..errors import ConnectFailure, PublishFailure, SubscribeFailure

LOGGER = logging.getLogger(__name__)

MessageHandler = Callable[[str, bytes], Awaitable[None] | None]
DisconnectHandler = Callable[["BrokerSession", int], None]

# MQTT reason codes at or above 0x80 signal failure (SUBACK 0x80, MQTT5 errors).
_FAILURE_THRESHOLD = 0x80


class SessionState(str, Enum):
    """Lifecycle of one broker session."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


def _reason_value(reason_code: Any) -> int:
    value = getattr(reason_code, "value", reason_code)
    try:
        return int(value)
    except (TypeError, ValueError):
        return -1


class BrokerSession:
    """One mutually authenticated broker connection, bridged into asyncio.

    paho-mqtt runs its network loop on a background thread. Connection,
    subscription and publish acknowledgements are marshalled onto the event
    loop with ``call_soon_threadsafe``; inbound messages are handed to the
    registered handlers directly on the paho thread, so handlers must only
    touch in-memory state.
    """

    def __init__(
        self,
        config: BrokerConfig,
        *,
        identity: str,
        role: str = "",
        clean_session: bool = False,
    ) -> None:
        self.config = config
        self.identity = identity
        self.role = role
        self.clean_session = clean_session

        self._client: Optional[mqtt.Client] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connected_event: Optional[asyncio.Event] = None
        self._disconnect_event: Optional[asyncio.Event] = None
        self._last_connect_rc: Optional[int] = None
        self._closing = False
        self._state = SessionState.DISCONNECTED
        self._subscriptions: Set[str] = set()
        self._pending_subscribes: Dict[int, Tuple[str, asyncio.Future[int]]] = {}
        self._pending_publishes: Dict[int, Tuple[str, asyncio.Future[None]]] = {}
        self._message_handlers: List[MessageHandler] = []
        self._disconnect_handlers: List[DisconnectHandler] = []

    @property
    def endpoint(self) -> str:
        return self.config.address

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def subscriptions(self) -> FrozenSet[str]:
        return frozenset(self._subscriptions)

    def is_connected(self) -> bool:
        return self._state == SessionState.CONNECTED

    def register_message_handler(self, handler: MessageHandler) -> None:
        self._message_handlers.append(handler)

    def register_disconnect_handler(self, handler: DisconnectHandler) -> None:
        self._disconnect_handlers.append(handler)

    async def connect(self, timeout: Optional[float] = None) -> None:
        """Open the session and wait for the broker's CONNACK."""

        if timeout is None:
            timeout = self.config.connect_timeout_seconds

        self._loop = asyncio.get_running_loop()
        self._connected_event = asyncio.Event()
        self._disconnect_event = asyncio.Event()
        self._last_connect_rc = None
        self._closing = False

        client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.identity,
            clean_session=self.clean_session,
        )
        client.enable_logger(LOGGER)

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        client.on_subscribe = self._on_subscribe
        client.on_publish = self._on_publish
        client.on_connect_fail = self._on_connect_fail

        self._client = client
        self._state = SessionState.CONNECTING

        LOGGER.info(
            "Connecting to MQTT broker %s as %s", self.endpoint, self.identity
        )

        try:
            self._apply_tls(client)
            client.connect_async(
                self.config.endpoint, self.config.port, self.config.keepalive_seconds
            )
        except ConnectFailure:
            self._release_client()
            raise
        except (OSError, ValueError) as exc:
            self._release_client()
            raise ConnectFailure(
                f"Unable to start MQTT connection: {exc}", role=self.role
            ) from exc

        client.loop_start()

        try:
            await asyncio.wait_for(self._connected_event.wait(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            self._abort_connect(client)
            raise ConnectFailure(
                f"Timed out connecting to MQTT broker {self.endpoint}", role=self.role
            ) from exc
        except asyncio.CancelledError:
            self._abort_connect(client)
            raise

        if self._last_connect_rc != 0:
            rc = self._last_connect_rc
            self._abort_connect(client)
            raise ConnectFailure(
                f"MQTT broker rejected connection (rc={rc})", role=self.role, rc=rc
            )

        if self._disconnect_event.is_set():
            self._abort_connect(client)
            raise ConnectFailure(
                f"MQTT session {self.identity} dropped during connect", role=self.role
            )

        self._state = SessionState.CONNECTED

    async def disconnect(self, timeout: float = 5.0) -> None:
        """Gracefully disconnect from the broker."""

        client = self._client
        if client is None:
            return

        self._closing = True
        client.disconnect()

        try:
            if self._disconnect_event is not None:
                await asyncio.wait_for(self._disconnect_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("Timed out waiting for %s to disconnect", self.identity)
        finally:
            client.loop_stop()
            self._client = None
            self._state = SessionState.DISCONNECTED
            self._subscriptions.clear()

    def subscribe(self, topic: str, qos: int = 1) -> asyncio.Future[int]:
        """Send SUBSCRIBE and return a future resolved by the broker's SUBACK.

        The returned future yields the granted QoS, or fails with
        :class:`SubscribeFailure` when the broker refuses the topic or the
        session drops before acknowledging.
        """

        client = self._require_client()
        assert self._loop is not None

        result, mid = client.subscribe(topic, qos=qos)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise SubscribeFailure(
                f"Subscribe to {topic} failed with rc={result}", topic=topic, rc=result
            )

        future: asyncio.Future[int] = self._loop.create_future()
        self._pending_subscribes[mid] = (topic, future)
        return future

    async def publish(
        self,
        topic: str,
        payload: bytes,
        *,
        qos: int = 1,
        retain: bool = False,
        timeout: float = 10.0,
    ) -> None:
        """Publish and, for QoS > 0, wait for the broker's acknowledgement."""

        client = self._require_client()
        assert self._loop is not None

        info = client.publish(topic, payload, qos=qos, retain=retain)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise PublishFailure(
                f"Publish to {topic} failed with rc={info.rc}", topic=topic, rc=info.rc
            )

        if qos == 0:
            return

        future: asyncio.Future[None] = self._loop.create_future()
        self._pending_publishes[info.mid] = (topic, future)
        try:
            await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise PublishFailure(
                f"Publish to {topic} not acknowledged within {timeout:.1f}s",
                topic=topic,
            ) from exc
        finally:
            self._pending_publishes.pop(info.mid, None)

    def _require_client(self) -> mqtt.Client:
        if self._client is None or self._state != SessionState.CONNECTED:
            raise ConnectFailure(
                f"MQTT session {self.identity} is not connected", role=self.role
            )
        return self._client

    def _apply_tls(self, client: mqtt.Client) -> None:
        cert_path = self.config.cert_path
        key_path = self.config.key_path
        ca_path = self.config.ca_path

        if not (cert_path or key_path or ca_path):
            return

        if bool(cert_path) != bool(key_path):
            raise ConnectFailure(
                "Both cert_path and key_path must be provided for mutual TLS",
                role=self.role,
            )

        tls_kwargs: Dict[str, Any] = {}
        if ca_path:
            tls_kwargs["ca_certs"] = str(ca_path)
        if cert_path and key_path:
            tls_kwargs["certfile"] = str(cert_path)
            tls_kwargs["keyfile"] = str(key_path)

        try:
            client.tls_set(**tls_kwargs)
        except (OSError, ssl.SSLError, ValueError) as exc:
            raise ConnectFailure(f"TLS setup failed: {exc}", role=self.role) from exc

    def _abort_connect(self, client: mqtt.Client) -> None:
        self._closing = True
        client.disconnect()
        client.loop_stop()
        self._release_client()

    def _release_client(self) -> None:
        self._client = None
        self._state = SessionState.DISCONNECTED
        self._subscriptions.clear()

    def _call_in_loop(self, callback: Callable[..., None], *args: Any) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(callback, *args)

    # ------------------------------------------------------------------
    # paho callbacks (network thread)
    # ------------------------------------------------------------------
    def _on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:
        rc = _reason_value(reason_code)
        if rc == 0:
            LOGGER.info("Connected to MQTT broker as %s", self.identity)
        else:
            LOGGER.error(
                "MQTT connection for %s failed with rc=%s", self.identity, rc
            )
        self._call_in_loop(self._handle_connack, rc)

    def _on_connect_fail(self, client, userdata) -> None:
        LOGGER.error("MQTT broker %s unreachable for %s", self.endpoint, self.identity)
        self._call_in_loop(self._handle_connack, -1)

    def _on_disconnect(
        self, client, userdata, flags, reason_code, properties=None
    ) -> None:
        rc = _reason_value(reason_code)
        if not self._closing:
            # Stop paho's internal reconnect; the next ensure() opens a fresh session.
            client.disconnect()
        LOGGER.info("Disconnected from MQTT broker %s (rc=%s)", self.identity, rc)
        self._call_in_loop(self._handle_disconnected, rc)

    def _on_subscribe(
        self, client, userdata, mid, reason_code_list, properties=None
    ) -> None:
        codes = [_reason_value(code) for code in reason_code_list or []]
        self._call_in_loop(self._resolve_subscribe, mid, codes)

    def _on_publish(self, client, userdata, mid, reason_code=None, properties=None) -> None:
        rc = 0 if reason_code is None else _reason_value(reason_code)
        self._call_in_loop(self._resolve_publish, mid, rc)

    def _on_message(self, client, userdata, message: mqtt.MQTTMessage) -> None:
        for handler in list(self._message_handlers):
            try:
                result = handler(message.topic, message.payload)
                if asyncio.iscoroutine(result) and self._loop is not None:
                    asyncio.run_coroutine_threadsafe(result, self._loop)
            except Exception:  # pragma: no cover - handlers log their own failures
                LOGGER.exception("MQTT message handler raised an exception")

    # ------------------------------------------------------------------
    # Event loop side
    # ------------------------------------------------------------------
    def _handle_connack(self, rc: int) -> None:
        self._last_connect_rc = rc
        if self._connected_event is not None:
            self._connected_event.set()

    def _handle_disconnected(self, rc: int) -> None:
        self._state = SessionState.DISCONNECTED
        self._subscriptions.clear()
        if self._disconnect_event is not None:
            self._disconnect_event.set()

        for topic, future in self._pending_subscribes.values():
            if not future.done():
                future.set_exception(
                    SubscribeFailure(
                        f"Session closed before SUBACK for {topic}", topic=topic, rc=rc
                    )
                )
        self._pending_subscribes.clear()

        for topic, future in self._pending_publishes.values():
            if not future.done():
                future.set_exception(
                    PublishFailure(
                        f"Session closed before PUBACK for {topic}", topic=topic, rc=rc
                    )
                )

        if self._closing:
            return

        client = self._client
        if client is not None:
            client.loop_stop()
            self._release_client()

        for handler in list(self._disconnect_handlers):
            try:
                handler(self, rc)
            except Exception:
                LOGGER.exception("MQTT disconnect handler raised an exception")

    def _resolve_subscribe(self, mid: int, codes: List[int]) -> None:
        entry = self._pending_subscribes.pop(mid, None)
        if entry is None:
            return
        topic, future = entry
        if future.done():
            return

        failed = [code for code in codes if code < 0 or code >= _FAILURE_THRESHOLD]
        if failed or not codes:
            rc = failed[0] if failed else None
            future.set_exception(
                SubscribeFailure(
                    f"Broker refused subscription to {topic} (rc={rc})",
                    topic=topic,
                    rc=rc,
                )
            )
            return

        self._subscriptions.add(topic)
        future.set_result(codes[0])

    def _resolve_publish(self, mid: int, rc: int) -> None:
        entry = self._pending_publishes.get(mid)
        if entry is None:
            return
        topic, future = entry
        if future.done():
            return
        if rc >= _FAILURE_THRESHOLD:
            future.set_exception(
                PublishFailure(
                    f"Broker rejected publish to {topic} (rc={rc})", topic=topic, rc=rc
                )
            )
        else:
            future.set_result(None)
