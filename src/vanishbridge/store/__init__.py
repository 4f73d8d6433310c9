"""Durable state: link registry, credential vault, artifact archive."""

from vanishbridge.store.links import LinkStore, OwnerStatus, generate_passkey
from vanishbridge.store.vault import CredentialVault
from vanishbridge.store.archive import (
    ArtifactArchive,
    CapturedArtifact,
    PayloadKind,
)

__all__ = [
    "LinkStore",
    "OwnerStatus",
    "generate_passkey",
    "CredentialVault",
    "ArtifactArchive",
    "CapturedArtifact",
    "PayloadKind",
]
