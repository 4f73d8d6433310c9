"""A live protocol session for one (owner, account) pair.

State machine:

    INITIALIZING -> AWAITING_PAIRING -> OPEN -> CLOSED
         |                |                      ^
         +----------------+----------------------+

CLOSED is terminal. Handles are never persisted; on restart they are
rebuilt from the link registry and the credential vault.
"""

import time
from dataclasses import dataclass, field
from enum import Enum

from vanishbridge.protocol.base import ProtocolConnection


class SessionState(str, Enum):
    INITIALIZING = "initializing"
    AWAITING_PAIRING = "awaiting_pairing"
    OPEN = "open"
    CLOSED = "closed"


ALLOWED_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.INITIALIZING: {
        SessionState.AWAITING_PAIRING, SessionState.OPEN, SessionState.CLOSED,
    },
    SessionState.AWAITING_PAIRING: {
        SessionState.AWAITING_PAIRING, SessionState.OPEN, SessionState.CLOSED,
    },
    SessionState.OPEN: {SessionState.CLOSED},
    SessionState.CLOSED: set(),
}


@dataclass
class SessionHandle:
    """Runtime-only record of one session."""
    owner: str
    account: str
    state: SessionState = SessionState.INITIALIZING
    connection: ProtocolConnection | None = None
    linked: bool = False
    last_challenge: str | None = None
    close_reason: str | None = None
    created_at: float = field(default_factory=time.time)

    @property
    def key(self) -> tuple[str, str]:
        return (self.owner, self.account)

    @property
    def is_closed(self) -> bool:
        return self.state == SessionState.CLOSED

    def can_enter(self, state: SessionState) -> bool:
        return state in ALLOWED_TRANSITIONS[self.state]

    def enter(self, state: SessionState) -> bool:
        """Move to `state`. Returns False (and stays put) if not allowed."""
        if not self.can_enter(state):
            return False
        self.state = state
        return True

    def to_dict(self) -> dict:
        return {
            "owner": self.owner,
            "account": self.account,
            "state": self.state.value,
            "linked": self.linked,
            "created_at": self.created_at,
        }
