"""Utility helpers for working with files."""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Optional

from foldersearch.models import Fingerprint


def compute_sha256(path: Path) -> str:
    """Compute SHA256 hash for a file."""
    sha = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1 << 20), b""):
            sha.update(chunk)
    return sha.hexdigest()


def compute_fingerprint(path: Path, known: Optional[Fingerprint] = None) -> Fingerprint:
    """Fingerprint a file, reusing ``known.sha256`` when size and mtime still match."""
    stat = path.stat()
    if known is not None and known.size == stat.st_size and known.mtime == stat.st_mtime:
        return known
    return Fingerprint(sha256=compute_sha256(path), size=stat.st_size, mtime=stat.st_mtime)


def is_within(path: Path, root: Path) -> bool:
    """True if ``path`` is ``root`` or lies underneath it (component-wise)."""
    try:
        path.relative_to(root)
    except ValueError:
        return False
    return True
