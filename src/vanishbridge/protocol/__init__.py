"""Messaging protocol contract and the Green API driver."""

from vanishbridge.protocol.base import (
    EventHandler,
    ProtocolClient,
    ProtocolConnection,
    ProtocolEvent,
    ProtocolEventType,
    ProtocolMessage,
)
from vanishbridge.protocol.green_api import GreenAPIProtocol

__all__ = [
    "EventHandler",
    "ProtocolClient",
    "ProtocolConnection",
    "ProtocolEvent",
    "ProtocolEventType",
    "ProtocolMessage",
    "GreenAPIProtocol",
]
