"""Live protocol sessions: handles, registry, lifecycle and recovery.

One SessionHandle per (owner, account). The registry answers "what is
running", the manager drives state from protocol events, and recovery
rebuilds sessions from the link registry on startup.
"""

from vanishbridge.sessions.handle import SessionHandle, SessionState
from vanishbridge.sessions.registry import SessionRegistry
from vanishbridge.sessions.manager import SessionManager
from vanishbridge.sessions.recovery import RecoveryOrchestrator, RecoveryReport

__all__ = [
    "SessionHandle",
    "SessionState",
    "SessionRegistry",
    "SessionManager",
    "RecoveryOrchestrator",
    "RecoveryReport",
]
