"""In-memory owner -> account -> SessionHandle map.

The single source of truth for what is running right now. Only the
event loop thread touches it, so check-then-mutate sequences need no
locking as long as they don't await in between.
"""

from vanishbridge.sessions.handle import SessionHandle


class SessionRegistry:

    def __init__(self):
        self._handles: dict[str, dict[str, SessionHandle]] = {}

    def get(self, owner: str, account: str) -> SessionHandle | None:
        return self._handles.get(owner, {}).get(account)

    def add(self, handle: SessionHandle) -> SessionHandle:
        """Store a handle. An existing live handle for the pair wins."""
        existing = self.get(handle.owner, handle.account)
        if existing is not None and not existing.is_closed:
            return existing
        self._handles.setdefault(handle.owner, {})[handle.account] = handle
        return handle

    def remove(self, owner: str, account: str, handle: SessionHandle | None = None) -> bool:
        """Remove the pair's handle, only if it is `handle` when one is given."""
        accounts = self._handles.get(owner)
        if not accounts or account not in accounts:
            return False
        if handle is not None and accounts[account] is not handle:
            return False
        del accounts[account]
        if not accounts:
            del self._handles[owner]
        return True

    def for_owner(self, owner: str) -> list[SessionHandle]:
        return list(self._handles.get(owner, {}).values())

    def owner_of(self, account: str) -> str | None:
        for owner, accounts in self._handles.items():
            if account in accounts:
                return owner
        return None

    def all(self) -> list[SessionHandle]:
        return [h for accounts in self._handles.values() for h in accounts.values()]

    def __len__(self) -> int:
        return sum(len(accounts) for accounts in self._handles.values())
