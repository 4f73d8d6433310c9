"""Send-and-vanish capture.

For every message the linked account itself sends:
1. ask the protocol to delete it for all recipients (by its original id)
2. extract the payload (text, thumbnail, audio, document name, raw blob)
3. archive the payload under a timestamp-derived name

A failed revoke is logged and archiving still happens. A failed archive
is logged and never retries the revoke. This is best-effort: a crash
between 1 and 3 can leave a revoked message with no archived copy.
"""

import json
import logging

from vanishbridge.errors import StorageError
from vanishbridge.protocol.base import ProtocolConnection, ProtocolMessage
from vanishbridge.store.archive import ArtifactArchive, CapturedArtifact, PayloadKind

logger = logging.getLogger(__name__)


def _raw_blob(message: ProtocolMessage) -> bytes:
    return json.dumps(message.raw, default=str, sort_keys=True).encode("utf-8")


def extract_payload(message: ProtocolMessage) -> tuple[PayloadKind, bytes | str]:
    """Pick what gets archived for a message.

    Media without decodable bytes falls back to the raw event as an
    opaque blob rather than being dropped.
    """
    kind = message.kind

    if kind == PayloadKind.TEXT:
        return kind, message.text or ""
    if kind in (PayloadKind.IMAGE, PayloadKind.VIDEO, PayloadKind.AUDIO):
        if message.data:
            return kind, message.data
        return PayloadKind.UNKNOWN, _raw_blob(message)
    if kind == PayloadKind.DOCUMENT:
        return kind, message.file_name or "(unnamed document)"
    return PayloadKind.UNKNOWN, message.data or _raw_blob(message)


class CaptureInterceptor:
    """Turns self-authored message events into revoke + archive."""

    def __init__(self, archive: ArtifactArchive):
        self.archive = archive

    async def handle(
        self,
        owner: str,
        account: str,
        connection: ProtocolConnection,
        message: ProtocolMessage,
    ) -> CapturedArtifact | None:
        """Capture one message. Messages from other people are ignored."""
        if not message.from_me:
            return None

        try:
            await connection.revoke_message(message.conversation_id, message.message_id)
        except Exception as e:
            logger.error(
                f"Revoke failed for {message.message_id} "
                f"({account}, owner {owner}): {e}"
            )

        try:
            kind, payload = extract_payload(message)
            artifact = self.archive.save(owner, account, kind, payload)
        except StorageError as e:
            logger.error(f"Archive failed for {message.message_id} ({account}): {e}")
            return None

        logger.info(f"Captured {artifact.kind.value} from {account} -> {artifact.path.name}")
        return artifact

    def list_artifacts(self, owner: str, account: str) -> list[CapturedArtifact]:
        return self.archive.list(owner, account)
