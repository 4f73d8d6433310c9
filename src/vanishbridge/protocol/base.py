"""Messaging protocol contract.

A ProtocolClient opens one ProtocolConnection per (owner, account). The
connection reports everything through a single async event callback, in
arrival order:

    PAIRING_CHALLENGE    no reusable credentials; `challenge` holds the code
    CREDENTIALS_UPDATED  new credential material to persist
    CONNECTION_OPENED    connected and usable
    CONNECTION_CLOSED    ended for any reason; `reason` holds the code
    MESSAGE_RECEIVED     a message event; `message` holds the payload

Operations on the connection raise ProtocolError on failure.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from vanishbridge.store.archive import PayloadKind


class ProtocolEventType(str, Enum):
    PAIRING_CHALLENGE = "pairing_challenge"
    CREDENTIALS_UPDATED = "credentials_updated"
    CONNECTION_OPENED = "connection_opened"
    CONNECTION_CLOSED = "connection_closed"
    MESSAGE_RECEIVED = "message_received"


@dataclass
class ProtocolMessage:
    """A message as reported by the protocol layer."""
    message_id: str
    conversation_id: str
    from_me: bool
    kind: PayloadKind = PayloadKind.TEXT
    text: str | None = None
    data: bytes | None = None  # thumbnail / audio bytes when available
    file_name: str | None = None
    timestamp: float = field(default_factory=time.time)
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class ProtocolEvent:
    type: ProtocolEventType
    challenge: str | None = None
    reason: str | None = None
    message: ProtocolMessage | None = None
    credentials: dict[str, Any] | None = None

    @classmethod
    def pairing(cls, challenge: str) -> "ProtocolEvent":
        return cls(ProtocolEventType.PAIRING_CHALLENGE, challenge=challenge)

    @classmethod
    def opened(cls) -> "ProtocolEvent":
        return cls(ProtocolEventType.CONNECTION_OPENED)

    @classmethod
    def closed(cls, reason: str = "unknown") -> "ProtocolEvent":
        return cls(ProtocolEventType.CONNECTION_CLOSED, reason=reason)

    @classmethod
    def received(cls, message: ProtocolMessage) -> "ProtocolEvent":
        return cls(ProtocolEventType.MESSAGE_RECEIVED, message=message)

    @classmethod
    def credentials_updated(cls, credentials: dict[str, Any]) -> "ProtocolEvent":
        return cls(ProtocolEventType.CREDENTIALS_UPDATED, credentials=credentials)


EventHandler = Callable[[ProtocolEvent], Awaitable[None]]


class ProtocolConnection(ABC):
    """One live protocol connection."""

    @abstractmethod
    async def revoke_message(self, conversation_id: str, message_id: str) -> None:
        """Delete a message for every recipient."""
        ...

    @abstractmethod
    async def logout(self) -> None:
        """Log the linked device out. The connection is unusable afterwards."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Stop delivering events and release resources. Does not log out."""
        ...


class ProtocolClient(ABC):
    """Factory for protocol connections."""

    @abstractmethod
    async def connect(
        self,
        owner: str,
        account: str,
        credentials: dict[str, Any] | None,
        on_event: EventHandler,
    ) -> ProtocolConnection:
        """Start connecting. Returns immediately; progress arrives as events."""
        ...

    async def close(self) -> None:
        return None
