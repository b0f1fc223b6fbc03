"""Adapter modules for external integrations."""

from .mqtt import BrokerSession, SessionState

__all__ = [
    "BrokerSession",
    "SessionState",
]
