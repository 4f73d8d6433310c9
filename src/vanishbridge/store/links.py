"""Durable link registry: owner authorization state and linked accounts.

The whole registry is one JSON document:

    {
      "pending":    {"<owner>": {"requested_at": 1700000000.0}},
      "authorized": {"<owner>": {"passkey": "ab12cd34" | null,
                                  "verified": false,
                                  "granted_at": 1700000000.0,
                                  "linked_accounts": ["+15551234567"]}}
    }

Every mutation re-reads the document, applies the change to a copy,
writes the copy atomically (temp file + rename) and only then returns.
A failed write raises StorageError and nothing changes. Mutations are
serialized with a lock so two sessions linking in the same tick cannot
lose an update.
"""

import copy
import json
import logging
import os
import secrets
import threading
import time
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from vanishbridge.errors import (
    AccountInUseError,
    AuthorizationError,
    CapacityError,
    StorageError,
)

logger = logging.getLogger(__name__)


class OwnerStatus(str, Enum):
    UNAUTHORIZED = "unauthorized"
    PENDING = "pending"
    AUTHORIZED = "authorized"


def generate_passkey(length: int = 8) -> str:
    """Random hex passkey of exactly `length` characters."""
    return secrets.token_hex((length + 1) // 2)[:length]


def _empty() -> dict[str, Any]:
    return {"pending": {}, "authorized": {}}


class LinkStore:
    """Owner authorization + (owner, account) link records."""

    def __init__(
        self,
        path: Path,
        max_linked_per_owner: int = 3,
        passkey_length: int = 8,
    ):
        self.path = path
        self.max_linked_per_owner = max_linked_per_owner
        self.passkey_length = passkey_length
        self._lock = threading.RLock()

    # ── Persistence ────────────────────────────────────

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return _empty()
        try:
            with open(self.path) as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Link registry unreadable, starting empty: {e}")
            return _empty()
        if not isinstance(data, dict):
            return _empty()
        data.setdefault("pending", {})
        data.setdefault("authorized", {})
        return data

    def _save(self, data: dict[str, Any]) -> None:
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w") as f:
                json.dump(data, f, indent=4)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise StorageError(
                f"Failed to write link registry: {e}",
                context={"path": str(self.path)},
            ) from e

    def _mutate(self, change: Callable[[dict[str, Any]], Any]) -> Any:
        """Apply `change` to a copy and persist it.

        `change` returns (result, changed). Nothing is written when
        changed is False.
        """
        with self._lock:
            draft = copy.deepcopy(self._load())
            result, changed = change(draft)
            if changed:
                self._save(draft)
            return result

    def _read(self) -> dict[str, Any]:
        with self._lock:
            return self._load()

    # ── Access Management ─────────────────────────────

    def status(self, owner: str) -> OwnerStatus:
        data = self._read()
        if owner in data["authorized"]:
            return OwnerStatus.AUTHORIZED
        if owner in data["pending"]:
            return OwnerStatus.PENDING
        return OwnerStatus.UNAUTHORIZED

    def request_access(self, owner: str) -> bool:
        """Register owner as pending. Returns True if the state changed."""
        def change(data: dict[str, Any]) -> tuple[bool, bool]:
            if owner in data["authorized"] or owner in data["pending"]:
                return False, False
            data["pending"][owner] = {"requested_at": time.time()}
            return True, True

        return self._mutate(change)

    def grant(self, owner: str) -> str | None:
        """Move a pending owner to authorized. Returns the passkey, or None."""
        passkey = generate_passkey(self.passkey_length)

        def change(data: dict[str, Any]) -> tuple[str | None, bool]:
            if owner not in data["pending"]:
                return None, False
            del data["pending"][owner]
            data["authorized"][owner] = {
                "passkey": passkey,
                "verified": False,
                "granted_at": time.time(),
                "linked_accounts": [],
            }
            return passkey, True

        return self._mutate(change)

    def deny(self, owner: str) -> bool:
        """Drop a pending request."""
        def change(data: dict[str, Any]) -> tuple[bool, bool]:
            if owner not in data["pending"]:
                return False, False
            del data["pending"][owner]
            return True, True

        return self._mutate(change)

    def verify(self, owner: str, supplied_key: str) -> bool:
        """Check a one-time passkey. The key is cleared on success."""
        def change(data: dict[str, Any]) -> tuple[bool, bool]:
            record = data["authorized"].get(owner)
            if not record or not record.get("passkey") or not supplied_key:
                return False, False
            if not secrets.compare_digest(record["passkey"], supplied_key.strip()):
                return False, False
            record["passkey"] = None
            record["verified"] = True
            return True, True

        return self._mutate(change)

    def is_verified(self, owner: str) -> bool:
        record = self._read()["authorized"].get(owner)
        return bool(record and record.get("verified"))

    def remove_owner(self, owner: str) -> list[str]:
        """Forget an owner entirely. Returns the accounts that were linked."""
        def change(data: dict[str, Any]) -> tuple[list[str], bool]:
            record = data["authorized"].pop(owner, None)
            was_pending = data["pending"].pop(owner, None) is not None
            accounts = list(record.get("linked_accounts", [])) if record else []
            return accounts, record is not None or was_pending

        return self._mutate(change)

    # ── Linked Accounts ───────────────────────────────

    def owner_of(self, account: str) -> str | None:
        for owner, record in self._read()["authorized"].items():
            if account in record.get("linked_accounts", []):
                return owner
        return None

    def ensure_can_link(self, owner: str, account: str, reserved: int = 0) -> None:
        """Raise the reason `owner` cannot link `account`, if any.

        `reserved` counts accounts already being paired but not yet linked.
        """
        data = self._read()
        record = data["authorized"].get(owner)
        if not record or not record.get("verified"):
            raise AuthorizationError(f"Owner {owner} is not authorized")
        for other, other_record in data["authorized"].items():
            if other != owner and account in other_record.get("linked_accounts", []):
                raise AccountInUseError(f"{account} is linked by another owner")
        linked = record.get("linked_accounts", [])
        if account in linked:
            return
        if len(linked) + reserved >= self.max_linked_per_owner:
            raise CapacityError(
                f"Owner {owner} reached the limit of "
                f"{self.max_linked_per_owner} linked accounts"
            )

    def link_account(self, owner: str, account: str) -> bool:
        """Add account to owner's linked set. Duplicates are a no-op success."""
        def change(data: dict[str, Any]) -> tuple[bool, bool]:
            record = data["authorized"].get(owner)
            if not record:
                return False, False
            for other, other_record in data["authorized"].items():
                if other != owner and account in other_record.get("linked_accounts", []):
                    logger.warning(
                        f"Refusing to link {account} for {owner}: owned by {other}")
                    return False, False
            accounts = record.setdefault("linked_accounts", [])
            if account in accounts:
                return True, False
            if len(accounts) >= self.max_linked_per_owner:
                return False, False
            accounts.append(account)
            return True, True

        return self._mutate(change)

    def unlink_account(self, owner: str, account: str) -> None:
        """Remove account from owner's linked set. Absent is fine."""
        def change(data: dict[str, Any]) -> tuple[None, bool]:
            record = data["authorized"].get(owner)
            if not record or account not in record.get("linked_accounts", []):
                return None, False
            record["linked_accounts"] = [
                a for a in record["linked_accounts"] if a != account
            ]
            return None, True

        self._mutate(change)

    # ── Listing ───────────────────────────────────────

    def list_linked(self, owner: str) -> list[str]:
        record = self._read()["authorized"].get(owner)
        return list(record.get("linked_accounts", [])) if record else []

    def list_authorized_owners(self) -> list[str]:
        return list(self._read()["authorized"].keys())

    def list_pending_owners(self) -> list[str]:
        return list(self._read()["pending"].keys())

    def all_links(self) -> dict[str, list[str]]:
        """owner -> linked accounts, for every authorized owner."""
        return {
            owner: list(record.get("linked_accounts", []))
            for owner, record in self._read()["authorized"].items()
        }
