"""Telemetry snapshot cache and the inbound subscription handler."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from threading import Lock
from typing import Any, Callable, Dict, Mapping, Optional

from .errors import DecodeFailure

LOGGER = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SmokeStatus(str, Enum):
    NORMAL = "NORMAL"
    DANGER = "DANGER"
    ERROR = "ERROR"


class VentState(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True, slots=True)
class TelemetryRecord:
    """Last known device state. Instances are immutable; the cache swaps them whole."""

    smoke_level: int = 0
    status: SmokeStatus = SmokeStatus.NORMAL
    vent_state: VentState = VentState.CLOSED
    observed_at: datetime = field(default_factory=_utcnow)

    def as_dict(self) -> Dict[str, object]:
        return {
            "smoke_level": self.smoke_level,
            "status": self.status.value,
            "vent_state": self.vent_state.value,
            "observed_at": self.observed_at.isoformat(timespec="seconds"),
        }

    def same_values(self, other: "TelemetryRecord") -> bool:
        return (
            self.smoke_level == other.smoke_level
            and self.status == other.status
            and self.vent_state == other.vent_state
        )


@dataclass(frozen=True, slots=True)
class TelemetryUpdate:
    """Fields decoded from one inbound message; ``None`` means absent."""

    smoke_level: Optional[int] = None
    status: Optional[SmokeStatus] = None
    vent_state: Optional[VentState] = None


class TelemetryCache:
    """Process-wide snapshot of the device state.

    Reads return the current record reference without locking. Writers hold a
    lock only around the read-modify-swap so concurrent merges cannot lose a
    field; readers never wait on it.
    """

    def __init__(self, *, clock: Callable[[], datetime] = _utcnow) -> None:
        self._clock = clock
        self._record = TelemetryRecord(observed_at=clock())
        self._lock = Lock()
        self._messages_applied = 0
        self._dropped_messages = 0
        self._last_message_at: Optional[datetime] = None

    def snapshot(self) -> TelemetryRecord:
        return self._record

    @property
    def messages_applied(self) -> int:
        return self._messages_applied

    @property
    def dropped_messages(self) -> int:
        return self._dropped_messages

    @property
    def last_message_at(self) -> Optional[datetime]:
        return self._last_message_at

    def apply(self, update: TelemetryUpdate) -> TelemetryRecord:
        """Merge ``update`` into the snapshot.

        ``smoke_level`` and ``status`` fall back to 0/NORMAL when absent;
        ``vent_state`` keeps its cached value when absent. Re-applying the same
        values leaves the record (including ``observed_at``) untouched.
        """

        with self._lock:
            current = self._record
            merged = replace(
                current,
                smoke_level=update.smoke_level if update.smoke_level is not None else 0,
                status=update.status if update.status is not None else SmokeStatus.NORMAL,
                vent_state=(
                    update.vent_state
                    if update.vent_state is not None
                    else current.vent_state
                ),
            )
            now = self._clock()
            self._messages_applied += 1
            self._last_message_at = now
            if merged.same_values(current):
                return current
            merged = replace(merged, observed_at=now)
            self._record = merged
            return merged

    def record_drop(self) -> None:
        with self._lock:
            self._dropped_messages += 1


def _parse_smoke_level(value: Any) -> int:
    if isinstance(value, bool):
        raise DecodeFailure(f"smoke_level must be an integer, got {value!r}")
    if isinstance(value, float):
        if not value.is_integer():
            raise DecodeFailure(f"smoke_level must be an integer, got {value!r}")
        value = int(value)
    if not isinstance(value, int):
        raise DecodeFailure(f"smoke_level must be an integer, got {value!r}")
    if value < 0:
        raise DecodeFailure(f"smoke_level must be non-negative, got {value}")
    return value


def _parse_enum(enum_type: type[Enum], name: str, value: Any) -> Any:
    if not isinstance(value, str):
        raise DecodeFailure(f"{name} must be a string, got {value!r}")
    try:
        return enum_type(value.strip().upper())
    except ValueError as exc:
        raise DecodeFailure(f"Unknown {name} {value!r}") from exc


def parse_update(message: Mapping[str, Any]) -> TelemetryUpdate:
    """Validate a decoded telemetry object. JSON ``null`` counts as absent."""

    smoke_level = message.get("smoke_level")
    status = message.get("status")
    vent_state = message.get("vent_state")

    return TelemetryUpdate(
        smoke_level=None if smoke_level is None else _parse_smoke_level(smoke_level),
        status=None if status is None else _parse_enum(SmokeStatus, "status", status),
        vent_state=(
            None
            if vent_state is None
            else _parse_enum(VentState, "vent_state", vent_state)
        ),
    )


def decode_payload(payload: bytes) -> TelemetryUpdate:
    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecodeFailure(f"Payload is not UTF-8: {exc}") from exc

    try:
        message = json.loads(text)
    except json.JSONDecodeError as exc:
        raise DecodeFailure(f"Payload is not JSON: {exc.msg}") from exc

    if not isinstance(message, dict):
        raise DecodeFailure(
            f"Telemetry payload must be a JSON object, got {type(message).__name__}"
        )

    return parse_update(message)


class TelemetrySubscriptionHandler:
    """Message handler registered on the ingest session.

    Runs on the broker client's delivery thread and only touches the cache.
    Malformed payloads are logged, counted and dropped.
    """

    def __init__(self, cache: TelemetryCache, *, topic: Optional[str] = None) -> None:
        self._cache = cache
        self._topic = topic

    def __call__(self, topic: str, payload: bytes) -> None:
        if self._topic is not None and topic != self._topic:
            LOGGER.debug("Ignoring message on unexpected topic %s", topic)
            return

        try:
            update = decode_payload(payload)
        except DecodeFailure as exc:
            self._cache.record_drop()
            LOGGER.warning("Dropping telemetry message on %s: %s", topic, exc)
            return

        record = self._cache.apply(update)
        LOGGER.debug("Telemetry snapshot now %s", record.as_dict())
