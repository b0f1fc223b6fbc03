"""Error types raised across the bridge."""

from __future__ import annotations

from typing import Optional


class BridgeError(RuntimeError):
    """Base class for failures surfaced by the bridge."""


class ConnectFailure(BridgeError):
    """Raised when a broker session cannot be established for a role."""

    def __init__(
        self, message: str, *, role: Optional[str] = None, rc: Optional[int] = None
    ) -> None:
        super().__init__(message)
        self.role = role
        self.rc = rc


class SubscribeFailure(BridgeError):
    """Raised when the broker refuses or fails a subscription."""

    def __init__(self, message: str, *, topic: str, rc: Optional[int] = None) -> None:
        super().__init__(message)
        self.topic = topic
        self.rc = rc


class PublishFailure(BridgeError):
    """Raised when an outbound publish is not acknowledged by the broker."""

    def __init__(self, message: str, *, topic: str, rc: Optional[int] = None) -> None:
        super().__init__(message)
        self.topic = topic
        self.rc = rc


class DecodeFailure(BridgeError):
    """Raised when an inbound telemetry payload cannot be decoded or validated."""


class InvalidCommand(BridgeError):
    """Raised when a command request is rejected before reaching the broker."""
