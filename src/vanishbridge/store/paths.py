"""Filesystem naming for per-(owner, account) storage."""

import re
from pathlib import Path

_UNSAFE = re.compile(r"[^A-Za-z0-9_.+-]")


def safe_segment(value: str) -> str:
    """Make an owner or account id usable as a single path component."""
    cleaned = _UNSAFE.sub("_", str(value).strip())
    if cleaned in ("", ".", ".."):
        raise ValueError(f"Unusable path segment: {value!r}")
    return cleaned


def pair_dir(root: Path, owner: str, account: str) -> Path:
    return root / safe_segment(owner) / safe_segment(account)
