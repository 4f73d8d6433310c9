"""Archive of captured (sent-then-revoked) messages.

One directory per (owner, account). Files are named

    {epoch_ms:013d}-{seq:03d}-{kind}{ext}

so lexical order is creation order, the kind can be read back from the
name, and two captures in the same millisecond never overwrite each
other (files are opened with exclusive create).
"""

import logging
import shutil
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from vanishbridge.errors import StorageError
from vanishbridge.store.paths import pair_dir

logger = logging.getLogger(__name__)

MAX_SEQ = 1000


class PayloadKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"
    UNKNOWN = "unknown"


EXTENSIONS: dict[PayloadKind, str] = {
    PayloadKind.TEXT: ".txt",
    PayloadKind.IMAGE: ".jpg",
    PayloadKind.VIDEO: ".jpg",  # preview frame, not the video itself
    PayloadKind.AUDIO: ".ogg",
    PayloadKind.DOCUMENT: ".txt",  # filename placeholder
    PayloadKind.UNKNOWN: ".bin",
}


@dataclass(frozen=True)
class CapturedArtifact:
    """A stored copy of one self-authored message. Immutable once written."""
    owner: str
    account: str
    kind: PayloadKind
    timestamp: float
    path: Path

    @property
    def is_text(self) -> bool:
        return self.path.suffix == ".txt"

    def read_bytes(self) -> bytes:
        return self.path.read_bytes()

    def read_text(self) -> str:
        return self.path.read_text(encoding="utf-8", errors="replace")

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "timestamp": self.timestamp,
            "payload_location": str(self.path),
        }


def _parse_name(name: str) -> tuple[float, PayloadKind] | None:
    parts = name.split("-", 2)
    if len(parts) != 3 or not parts[0].isdigit() or not parts[1].isdigit():
        return None
    try:
        kind = PayloadKind(parts[2].split(".", 1)[0])
    except ValueError:
        return None
    return int(parts[0]) / 1000.0, kind


class ArtifactArchive:
    """Stores and lists CapturedArtifacts under `root`."""

    def __init__(self, root: Path):
        self.root = root

    def directory(self, owner: str, account: str) -> Path:
        return pair_dir(self.root, owner, account)

    def save(
        self,
        owner: str,
        account: str,
        kind: PayloadKind,
        payload: bytes | str,
        timestamp: float | None = None,
    ) -> CapturedArtifact:
        """Write a new artifact. Never overwrites an existing one."""
        ts = time.time() if timestamp is None else timestamp
        ms = int(ts * 1000)
        data = payload.encode("utf-8") if isinstance(payload, str) else payload
        directory = self.directory(owner, account)
        ext = EXTENSIONS[kind]

        try:
            directory.mkdir(parents=True, exist_ok=True)
            for seq in range(MAX_SEQ):
                path = directory / f"{ms:013d}-{seq:03d}-{kind.value}{ext}"
                try:
                    with open(path, "xb") as f:
                        f.write(data)
                except FileExistsError:
                    continue
                return CapturedArtifact(
                    owner=owner,
                    account=account,
                    kind=kind,
                    timestamp=ms / 1000.0,
                    path=path,
                )
        except OSError as e:
            raise StorageError(f"Failed to archive {kind.value} artifact: {e}") from e

        raise StorageError(f"Too many artifacts at timestamp {ms} for {account}")

    def list(self, owner: str, account: str) -> list[CapturedArtifact]:
        """All artifacts for the pair, oldest first."""
        directory = self.directory(owner, account)
        if not directory.exists():
            return []

        artifacts = []
        for path in sorted(directory.iterdir(), key=lambda p: p.name):
            if not path.is_file():
                continue
            parsed = _parse_name(path.name)
            if parsed is None:
                continue
            timestamp, kind = parsed
            artifacts.append(CapturedArtifact(
                owner=owner,
                account=account,
                kind=kind,
                timestamp=timestamp,
                path=path,
            ))
        return artifacts

    def purge(self, owner: str, account: str) -> bool:
        """Delete every artifact for the pair."""
        directory = self.directory(owner, account)
        if not directory.exists():
            return False
        shutil.rmtree(directory, ignore_errors=True)
        logger.info(f"Cleared archive for owner {owner}, account {account}")
        return True
