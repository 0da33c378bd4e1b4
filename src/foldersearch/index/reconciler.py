"""Incremental indexing: diff the filesystem against the store and apply the delta."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from pathlib import Path
from typing import (
    Any,
    Callable,
    Collection,
    Dict,
    Iterable,
    List,
    Literal,
    Mapping,
    Optional,
    Sequence,
    Set,
    Tuple,
    TypeVar,
)

import numpy as np

from foldersearch.embedding.encoder import Embedder
from foldersearch.errors import EmbeddingError, ExtractionError
from foldersearch.index.scanner import SKIP_UNREADABLE, FileScanner
from foldersearch.index.storage import SQLiteVectorStore
from foldersearch.ingestion.extractors import ContentExtractor, extension_of
from foldersearch.models import Chunk, DocumentRecord, ExtractionStatus, Fingerprint
from foldersearch.utils.files import is_within
from foldersearch.utils.text import semantic_chunk

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")
ProgressCallback = Callable[[int, int, Path], None]


@dataclass(slots=True)
class Delta:
    add: List[Path] = field(default_factory=list)
    update: List[Path] = field(default_factory=list)
    delete: List[Path] = field(default_factory=list)
    unchanged: List[Path] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.add or self.update or self.delete)


def compute_delta(
    stored: Mapping[str, Optional[Fingerprint]],
    live: Mapping[str, Fingerprint],
    *,
    rebuild: bool = False,
    keep: Collection[str] = (),
) -> Delta:
    """Diff the stored ``path -> fingerprint`` map against a live scan.

    Fingerprint equality is the only reason to leave a file alone; with
    ``rebuild`` every tracked file becomes an update candidate. Stored paths
    listed in ``keep`` (files that exist but could not be read) are never
    deleted.
    """
    delta = Delta()
    for path in sorted(live):
        if path not in stored:
            delta.add.append(Path(path))
        elif rebuild or stored[path] != live[path]:
            delta.update.append(Path(path))
        else:
            delta.unchanged.append(Path(path))
    delta.delete = [
        Path(path) for path in sorted(stored) if path not in live and path not in keep
    ]
    return delta


@dataclass(slots=True)
class ReconcileStats:
    inserted: int = 0
    updated: int = 0
    deleted: int = 0
    unchanged: int = 0
    skipped: int = 0
    failed: int = 0
    pending: int = 0
    cancelled: bool = False
    processed_files: list[Path] = field(default_factory=list)

    def increment(self, status: str, path: Path) -> None:
        if status == "inserted":
            self.inserted += 1
        elif status == "updated":
            self.updated += 1
        elif status == "deleted":
            self.deleted += 1
        elif status == "unchanged":
            self.unchanged += 1
        elif status == "skipped":
            self.skipped += 1
        elif status == "pending":
            self.pending += 1
        else:
            self.failed += 1
        self.processed_files.append(path)

    def as_dict(self) -> dict:
        return {
            "inserted": self.inserted,
            "updated": self.updated,
            "deleted": self.deleted,
            "unchanged": self.unchanged,
            "skipped": self.skipped,
            "failed": self.failed,
            "pending": self.pending,
            "cancelled": self.cancelled,
            "processed_files": [str(path) for path in self.processed_files],
        }


@dataclass(frozen=True, slots=True)
class FileEvent:
    """A change notification from a filesystem watcher."""

    kind: Literal["created", "modified", "deleted", "moved"]
    path: Path
    dest_path: Optional[Path] = None


def _call_with_timeout(func: Callable[..., T], timeout: Optional[float], *args) -> T:
    # daemon worker per call: an abandoned hung call never blocks interpreter exit
    outcome: Dict[str, Any] = {}

    def target() -> None:
        try:
            outcome["value"] = func(*args)
        except BaseException as exc:
            outcome["error"] = exc

    worker = threading.Thread(target=target, name="foldersearch-call", daemon=True)
    worker.start()
    worker.join(timeout)
    if worker.is_alive():
        raise FutureTimeout()
    if "error" in outcome:
        raise outcome["error"]
    return outcome["value"]


class IndexReconciler:
    """Keeps one container's store in step with the files under its roots."""

    def __init__(
        self,
        store: SQLiteVectorStore,
        embedder: Embedder,
        extractor: ContentExtractor,
        scanner: FileScanner,
        *,
        chunk_chars: Optional[int] = None,
        overlap: Optional[int] = None,
        extract_timeout: Optional[float] = 120.0,
        embed_timeout: Optional[float] = 60.0,
        embed_retries: int = 3,
        retry_backoff: float = 0.5,
        batch_size: int = 32,
    ) -> None:
        self.store = store
        self.embedder = embedder
        self.extractor = extractor
        self.scanner = scanner
        self.chunk_chars = chunk_chars
        self.overlap = overlap
        self.extract_timeout = extract_timeout
        self.embed_timeout = embed_timeout
        self.embed_retries = max(embed_retries, 1)
        self.retry_backoff = retry_backoff
        self.batch_size = batch_size

    def scan(
        self,
        roots: Sequence[Path],
        stored: Mapping[str, Optional[Fingerprint]],
        stats: ReconcileStats,
    ) -> Tuple[Dict[str, Fingerprint], Set[str]]:
        """Scan ``roots``.

        Returns the live ``path -> fingerprint`` map for everything eligible,
        and the set of paths that exist but could not be stat'ed or hashed.
        """
        live: Dict[str, Fingerprint] = {}
        unreadable: Set[str] = set()
        for entry in self.scanner.scan(roots, known=stored):
            if entry.skipped:
                LOGGER.debug("Skipping %s (%s)", entry.path, entry.skipped)
                stats.skipped += 1
                if entry.skipped == SKIP_UNREADABLE:
                    unreadable.add(str(entry.path))
                continue
            live[str(entry.path)] = entry.fingerprint
        return live, unreadable

    def reconcile(
        self,
        roots: Sequence[Path],
        *,
        rebuild: bool = False,
        cancel: Optional[threading.Event] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> ReconcileStats:
        """Bring the store in line with ``roots``.

        Each file's change is committed on its own, so an interrupted run can
        simply be repeated: the next scan re-derives whatever is left.
        """
        stats = ReconcileStats()
        stored = self.store.fingerprints()
        live, unreadable = self.scan(roots, stored, stats)
        delta = compute_delta(stored, live, rebuild=rebuild, keep=unreadable)
        stats.unchanged = len(delta.unchanged)
        LOGGER.info(
            "Delta for %s: %d new, %d changed, %d removed, %d unchanged",
            self.store.db_path.name,
            len(delta.add),
            len(delta.update),
            len(delta.delete),
            len(delta.unchanged),
        )

        for path in delta.delete:
            if self.store.delete_by_path(path):
                stats.increment("deleted", path)

        work = sorted(delta.add + delta.update)
        for position, path in enumerate(work, start=1):
            if cancel is not None and cancel.is_set():
                LOGGER.info("Reconciliation cancelled with %d files left", len(work) - position + 1)
                stats.cancelled = True
                break
            LOGGER.info(f"Processing: {path}")
            status = self.index_file(path, live[str(path)])
            stats.increment(status, path)
            if progress is not None:
                progress(position, len(work), path)

        return stats

    def index_file(self, path: Path, fingerprint: Fingerprint) -> str:
        """Extract, chunk, embed and store one file. Never raises for per-file failures."""
        try:
            text = _call_with_timeout(self.extractor.extract, self.extract_timeout, path)
        except FutureTimeout:
            return self._record_failure(
                ExtractionError(path, f"timed out after {self.extract_timeout}s"), fingerprint
            )
        except ExtractionError as exc:
            return self._record_failure(exc, fingerprint)
        except Exception as exc:
            return self._record_failure(ExtractionError(path, str(exc)), fingerprint)

        spans = semantic_chunk(
            text, extension_of(path), max_chars=self.chunk_chars, overlap=self.overlap
        )
        chunks = [Chunk(path, idx, span.start, span.end, span.text) for idx, span in enumerate(spans)]
        if not chunks:
            LOGGER.warning("No text extracted from %s", path)
            return self.store.upsert(
                DocumentRecord(path, fingerprint, ExtractionStatus.EMPTY), []
            )

        try:
            embeddings = self._embed_with_retry([chunk.text for chunk in chunks])
        except EmbeddingError as exc:
            LOGGER.warning("Embedding failed for %s, marking pending: %s", path, exc)
            self.store.mark_pending(path, str(exc))
            return "pending"

        return self.store.upsert(
            DocumentRecord(path, fingerprint, ExtractionStatus.INDEXED), chunks, embeddings
        )

    def _record_failure(self, error: ExtractionError, fingerprint: Fingerprint) -> str:
        LOGGER.warning("Failed to extract %s: %s", error.path, error.reason)
        self.store.upsert(
            DocumentRecord(error.path, fingerprint, ExtractionStatus.FAILED, error=error.reason),
            [],
        )
        return "failed"

    def _embed_with_retry(self, texts: List[str]) -> np.ndarray:
        batches = []
        for start in range(0, len(texts), self.batch_size):
            batch = texts[start : start + self.batch_size]
            batches.append(self._embed_batch(batch))
        return np.vstack(batches)

    def _embed_batch(self, batch: List[str]) -> np.ndarray:
        backoff = self.retry_backoff
        for attempt in range(1, self.embed_retries + 1):
            try:
                embeddings = _call_with_timeout(self.embedder.embed, self.embed_timeout, batch)
                embeddings = np.asarray(embeddings, dtype="float32")
                if embeddings.shape != (len(batch), self.store.dimension):
                    raise EmbeddingError(
                        f"Model returned shape {embeddings.shape}, "
                        f"expected ({len(batch)}, {self.store.dimension})"
                    )
                return embeddings
            except FutureTimeout:
                error: Exception = EmbeddingError(f"timed out after {self.embed_timeout}s")
            except EmbeddingError as exc:
                error = exc
            except Exception as exc:
                error = EmbeddingError(str(exc))

            if attempt == self.embed_retries:
                raise error
            LOGGER.warning(
                "Embedding attempt %d/%d failed (%s), retrying in %.2fs",
                attempt,
                self.embed_retries,
                error,
                backoff,
            )
            time.sleep(backoff)
            backoff *= 2
        raise EmbeddingError("no embedding attempts were made")

    def apply_event(self, event: FileEvent, roots: Iterable[Path]) -> str:
        """Apply a single watcher event through the same add/update/delete logic."""
        roots = [Path(root) for root in roots]
        if event.kind == "moved":
            removed = self._remove(event.path)
            if event.dest_path is None:
                return removed
            created = self.apply_event(FileEvent("created", event.dest_path), roots)
            return created if created != "ignored" else removed

        path = Path(event.path)
        root = next((root for root in roots if is_within(path, root)), None)
        if root is None:
            return "ignored"

        if event.kind == "deleted":
            return self._remove(path)

        if path.is_dir():
            stats = self.reconcile_subtree(path, root)
            return "updated" if stats.inserted or stats.updated or stats.deleted else "unchanged"

        if self.scanner.policy.ignores_path(path, root):
            return "ignored"

        stored = self.store.get_document(path)
        entry = self.scanner.scan_file(path, known=stored.fingerprint if stored else None)
        if entry is None:
            return self._remove(path)
        if entry.skipped:
            if stored is not None and entry.skipped != SKIP_UNREADABLE:
                self.store.delete_by_path(path)
                return "deleted"
            return "skipped"
        if stored is not None and stored.fingerprint == entry.fingerprint:
            return "unchanged"
        return self.index_file(path, entry.fingerprint)

    def reconcile_subtree(self, directory: Path, root: Path) -> ReconcileStats:
        """Reconcile only the part of ``root`` below ``directory``."""
        stats = ReconcileStats()
        if self.scanner.policy.ignores_path(directory, root, is_dir=True):
            return stats
        stored = {
            path: fingerprint
            for path, fingerprint in self.store.fingerprints().items()
            if is_within(Path(path), directory)
        }
        live, unreadable = self.scan([directory], stored, stats)
        delta = compute_delta(stored, live, keep=unreadable)
        stats.unchanged = len(delta.unchanged)
        for path in delta.delete:
            if self.store.delete_by_path(path):
                stats.increment("deleted", path)
        for path in sorted(delta.add + delta.update):
            stats.increment(self.index_file(path, live[str(path)]), path)
        return stats

    def _remove(self, path: Path) -> str:
        removed = [p for p in self.store.paths_under(path) if self.store.delete_by_path(p)]
        return "deleted" if removed else "ignored"

    def prune_outside(self, roots: Iterable[Path]) -> List[Path]:
        """Delete stored documents that none of ``roots`` covers."""
        roots = [Path(root) for root in roots]
        removed = []
        for path in sorted(self.store.fingerprints()):
            if any(is_within(Path(path), root) for root in roots):
                continue
            if self.store.delete_by_path(path):
                removed.append(Path(path))
        if removed:
            LOGGER.info("Removed %d documents outside the registered folders", len(removed))
        return removed
