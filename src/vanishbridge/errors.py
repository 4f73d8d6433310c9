"""Error taxonomy for the bridge.

Authorization and capacity errors are surfaced to the operator as plain
messages. Protocol and storage errors are logged; connection-level
protocol errors close the affected session, nothing else.
"""

from typing import Any


class BridgeError(Exception):
    """Base class for every error raised by the bridge."""

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.context = context or {}


class AuthorizationError(BridgeError):
    """Owner is not authorized or has not verified their passkey."""


class CapacityError(BridgeError):
    """Owner already has the maximum number of linked accounts."""


class AccountInUseError(BridgeError):
    """Account is already linked (or linking) under a different owner."""


class ProtocolError(BridgeError):
    """Connection, pairing, revoke or logout failure in the messaging protocol."""


class StorageError(BridgeError):
    """A durable write failed; the in-memory state was left unchanged."""


class NotFoundError(BridgeError):
    """No record exists for the requested owner/account."""
