"""Filesystem enumeration with change fingerprints."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import FrozenSet, Iterable, Iterator, Mapping, Optional, Set, Tuple

from foldersearch.models import Fingerprint
from foldersearch.utils.files import compute_fingerprint

LOGGER = logging.getLogger(__name__)

DEFAULT_IGNORED_DIRS = frozenset(
    {
        ".git",
        ".hg",
        ".svn",
        "node_modules",
        "__pycache__",
        ".venv",
        "venv",
        ".mypy_cache",
        ".pytest_cache",
        "target",
        "dist",
        "build",
    }
)

SKIP_UNSUPPORTED = "unsupported"
SKIP_TOO_LARGE = "too_large"
SKIP_UNREADABLE = "unreadable"


@dataclass(slots=True)
class IgnorePolicy:
    """Decides which files are eligible for indexing."""

    extensions: FrozenSet[str]
    max_file_size: int = 50 * 1024 * 1024
    ignored_dirs: FrozenSet[str] = field(default=DEFAULT_IGNORED_DIRS)
    include_hidden: bool = False

    def skip_reason(self, path: Path, size: int) -> Optional[str]:
        if path.suffix.lower().lstrip(".") not in self.extensions:
            return SKIP_UNSUPPORTED
        if size > self.max_file_size:
            return SKIP_TOO_LARGE
        return None

    def ignores_name(self, name: str) -> bool:
        return not self.include_hidden and name.startswith(".")

    def ignores_path(self, path: Path, root: Path, *, is_dir: bool = False) -> bool:
        """True if any component between ``root`` and ``path`` is ignored."""
        try:
            parts = path.relative_to(root).parts
        except ValueError:
            return True
        dirs = parts if is_dir else parts[:-1]
        if any(part in self.ignored_dirs or self.ignores_name(part) for part in dirs):
            return True
        return not is_dir and bool(parts) and self.ignores_name(parts[-1])


@dataclass(frozen=True, slots=True)
class ScanEntry:
    """One file seen by a scan: either fingerprinted or skipped with a reason."""

    path: Path
    fingerprint: Optional[Fingerprint]
    skipped: Optional[str] = None


class FileScanner:
    """Walks indexed roots and fingerprints every eligible file.

    Each call to :meth:`scan` starts a fresh walk. Symlinks are followed, but
    every physical directory and file is visited at most once per scan.
    """

    def __init__(self, policy: IgnorePolicy) -> None:
        self.policy = policy

    def scan(
        self,
        roots: Iterable[Path],
        known: Optional[Mapping[str, Optional[Fingerprint]]] = None,
    ) -> Iterator[ScanEntry]:
        known = known or {}
        seen_dirs: Set[Tuple[int, int]] = set()
        seen_files: Set[Tuple[int, int]] = set()

        for root in roots:
            root = Path(root)
            if root.is_file():
                entry = self._visit_file(root, seen_files, known)
                if entry is not None:
                    yield entry
                continue
            if not root.is_dir():
                LOGGER.warning("Indexed folder is missing: %s", root)
                continue

            stack = [root]
            while stack:
                directory = stack.pop()
                try:
                    stat = directory.stat()
                except OSError as exc:
                    LOGGER.warning("Cannot stat %s: %s", directory, exc)
                    continue
                key = (stat.st_dev, stat.st_ino)
                if key in seen_dirs:
                    LOGGER.debug("Already visited %s, skipping", directory)
                    continue
                seen_dirs.add(key)

                try:
                    with os.scandir(directory) as it:
                        entries = sorted(it, key=lambda e: e.name)
                except OSError as exc:
                    LOGGER.warning("Cannot list %s: %s", directory, exc)
                    continue

                subdirs = []
                for dir_entry in entries:
                    if self.policy.ignores_name(dir_entry.name):
                        continue
                    path = Path(dir_entry.path)
                    try:
                        is_dir = dir_entry.is_dir()
                        is_file = not is_dir and dir_entry.is_file()
                    except OSError:
                        continue
                    if is_dir:
                        if dir_entry.name not in self.policy.ignored_dirs:
                            subdirs.append(path)
                    elif is_file:
                        entry = self._visit_file(path, seen_files, known)
                        if entry is not None:
                            yield entry
                stack.extend(reversed(subdirs))

    def scan_file(
        self, path: Path, known: Optional[Fingerprint] = None
    ) -> Optional[ScanEntry]:
        """Fingerprint a single path; ``None`` when it no longer exists."""
        if not path.is_file():
            return None
        return self._visit_file(path, set(), {str(path): known})

    def _visit_file(
        self,
        path: Path,
        seen_files: Set[Tuple[int, int]],
        known: Mapping[str, Optional[Fingerprint]],
    ) -> Optional[ScanEntry]:
        try:
            stat = path.stat()
        except OSError as exc:
            LOGGER.warning("Cannot stat %s: %s", path, exc)
            return ScanEntry(path, None, SKIP_UNREADABLE)

        key = (stat.st_dev, stat.st_ino)
        if key in seen_files:
            return None
        seen_files.add(key)

        reason = self.policy.skip_reason(path, stat.st_size)
        if reason is not None:
            return ScanEntry(path, None, reason)

        try:
            fingerprint = compute_fingerprint(path, known.get(str(path)))
        except OSError as exc:
            LOGGER.warning("Cannot read %s: %s", path, exc)
            return ScanEntry(path, None, SKIP_UNREADABLE)
        return ScanEntry(path, fingerprint)
