"""Per-(owner, account) protocol credential material.

The material is opaque here: the protocol layer hands over a dict each
time its credentials change, and gets the last saved dict back when the
session starts. One directory per pair, never shared between pairs.
"""

import json
import logging
import os
import shutil
from pathlib import Path
from typing import Any

from vanishbridge.errors import StorageError
from vanishbridge.store.paths import pair_dir

logger = logging.getLogger(__name__)

CREDS_FILE = "creds.json"


class CredentialVault:
    """Credential containers rooted at `root`."""

    def __init__(self, root: Path):
        self.root = root

    def _path(self, owner: str, account: str) -> Path:
        return pair_dir(self.root, owner, account) / CREDS_FILE

    def exists(self, owner: str, account: str) -> bool:
        return self._path(owner, account).exists()

    def load(self, owner: str, account: str) -> dict[str, Any] | None:
        path = self._path(owner, account)
        if not path.exists():
            return None
        try:
            with open(path) as f:
                return json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            # Unreadable material is treated as absent; pairing starts over.
            logger.warning(f"Ignoring unreadable credentials at {path}: {e}")
            return None

    def save(self, owner: str, account: str, material: dict[str, Any]) -> None:
        path = self._path(owner, account)
        tmp = path.with_suffix(".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w") as f:
                json.dump(material, f, indent=2)
            os.replace(tmp, path)
            path.chmod(0o600)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise StorageError(f"Failed to persist credentials: {e}") from e

    def purge(self, owner: str, account: str) -> bool:
        directory = pair_dir(self.root, owner, account)
        if not directory.exists():
            return False
        shutil.rmtree(directory, ignore_errors=True)
        logger.info(f"Cleared credentials for owner {owner}, account {account}")
        return True
