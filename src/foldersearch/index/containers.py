"""Container registry and per-container indexing jobs.

Every public method of :class:`ContainerManager` is a stable operation that
outer surfaces (CLI, web API, tool servers) can call directly. Side effects
are listed in each docstring.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, Field, ValidationError

from foldersearch.config import DEFAULT_CONTAINER, AppConfig
from foldersearch.embedding.encoder import Embedder
from foldersearch.embedding.reranker import CrossEncoderReranker, Reranker
from foldersearch.errors import (
    ContainerExistsError,
    ContainerNotFoundError,
    IndexCorruptionError,
    IndexingInProgressError,
    PathConflictError,
    ProtectedContainerError,
)
from foldersearch.index.reconciler import FileEvent, IndexReconciler, ProgressCallback, ReconcileStats
from foldersearch.index.scanner import FileScanner, IgnorePolicy
from foldersearch.index.search import SearchEngine, SearchResult
from foldersearch.index.storage import SQLiteVectorStore
from foldersearch.ingestion.extractors import ContentExtractor
from foldersearch.utils.files import is_within

LOGGER = logging.getLogger(__name__)


class IndexedPathInfo(BaseModel):
    path: str
    last_scan_at: Optional[float] = None


class ContainerInfo(BaseModel):
    description: str = ""
    indexed_paths: List[IndexedPathInfo] = Field(default_factory=list)


def _default_containers() -> Dict[str, ContainerInfo]:
    return {DEFAULT_CONTAINER: ContainerInfo()}


class Registry(BaseModel):
    containers: Dict[str, ContainerInfo] = Field(default_factory=_default_containers)
    active_container: str = DEFAULT_CONTAINER


def store_file_name(container: str) -> str:
    """Filesystem-safe database name for a container."""
    sanitized = "".join(
        c if (c.isascii() and c.isalnum()) or c in "_-." else f"{ord(c):04x}" for c in container
    )
    return f"c_{sanitized}.db"


@dataclass(slots=True)
class IndexJob:
    container: str
    rebuild: bool
    cancel: threading.Event = field(default_factory=threading.Event)
    future: Optional[Future] = None
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None
    current: int = 0
    total: int = 0
    current_path: Optional[str] = None
    stats: Optional[ReconcileStats] = None
    error: Optional[str] = None

    @property
    def running(self) -> bool:
        return self.future is not None and not self.future.done()

    @property
    def state(self) -> str:
        if self.running:
            return "cancelling" if self.cancel.is_set() else "running"
        if self.error is not None:
            return "failed"
        if self.stats is not None and self.stats.cancelled:
            return "cancelled"
        return "done"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "container": self.container,
            "state": self.state,
            "rebuild": self.rebuild,
            "progress": {"current": self.current, "total": self.total, "path": self.current_path},
            "stats": self.stats.as_dict() if self.stats else None,
            "error": self.error,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


class ContainerManager:
    """Owns containers, their indexed folders and their exclusive vector stores.

    Each container has at most one writer at a time (an indexing job or a
    watcher event). Searches never wait for writers.
    """

    def __init__(
        self,
        config: AppConfig,
        embedder: Embedder,
        *,
        extractor: Optional[ContentExtractor] = None,
        reranker: Optional[Reranker] = None,
        base_dir: Optional[Path] = None,
        max_workers: int = 2,
    ) -> None:
        self.config = config
        self.embedder = embedder
        self.extractor = extractor or ContentExtractor()
        self.data_dir = config.resolve_data_dir(base_dir)
        self.registry_path = config.registry_path(base_dir)
        self.stores_dir = config.stores_dir(base_dir)
        self.stores_dir.mkdir(parents=True, exist_ok=True)

        self.scanner = FileScanner(
            IgnorePolicy(
                extensions=self.extractor.supported_extensions,
                max_file_size=config.max_file_size,
            )
        )
        if reranker is None and config.reranker_model:
            reranker = CrossEncoderReranker(config.reranker_model)
        self.search_engine = SearchEngine(embedder, reranker)

        self._lock = threading.RLock()
        self._stores: Dict[str, SQLiteVectorStore] = {}
        self._writer_locks: Dict[str, threading.Lock] = {}
        self._jobs: Dict[str, IndexJob] = {}
        self._deferred_events: Dict[str, List[FileEvent]] = {}
        self._needs_prune: Set[str] = set()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="foldersearch-index"
        )
        self._registry = self._load_registry()

    # ------------------------------------------------------------------ registry

    def _load_registry(self) -> Registry:
        if not self.registry_path.exists():
            registry = Registry()
            self._write_registry(registry)
            return registry
        try:
            registry = Registry.model_validate_json(self.registry_path.read_text(encoding="utf-8"))
        except (ValidationError, ValueError) as exc:
            raise IndexCorruptionError(self.registry_path, f"invalid registry: {exc}") from exc
        registry.containers.setdefault(DEFAULT_CONTAINER, ContainerInfo())
        if registry.active_container not in registry.containers:
            registry.active_container = DEFAULT_CONTAINER
        return registry

    def _write_registry(self, registry: Registry) -> None:
        self.registry_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.registry_path.with_suffix(".json.tmp")
        tmp.write_text(registry.model_dump_json(indent=2), encoding="utf-8")
        os.replace(tmp, self.registry_path)

    def _save(self) -> None:
        with self._lock:
            self._write_registry(self._registry)

    def _info(self, name: str) -> ContainerInfo:
        info = self._registry.containers.get(name)
        if info is None:
            raise ContainerNotFoundError(name)
        return info

    @property
    def active_container(self) -> str:
        return self._registry.active_container

    def list_containers(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                {
                    "name": name,
                    "description": info.description,
                    "indexed_paths": [p.path for p in info.indexed_paths],
                    "active": name == self._registry.active_container,
                }
                for name, info in sorted(self._registry.containers.items())
            ]

    def get(self, name: str) -> ContainerInfo:
        with self._lock:
            return self._info(name).model_copy(deep=True)

    def indexed_paths(self, name: str) -> List[Path]:
        with self._lock:
            return [Path(p.path) for p in self._info(name).indexed_paths]

    def create(self, name: str, description: str = "") -> None:
        """Register a new, empty container. Persists the registry."""
        name = name.strip()
        if not name:
            raise ValueError("Container name cannot be empty")
        with self._lock:
            if name in self._registry.containers:
                raise ContainerExistsError(name)
            self._registry.containers[name] = ContainerInfo(description=description)
            self._save()
        LOGGER.info("Created container %s", name)

    def delete(self, name: str) -> None:
        """Delete a container, its folder registrations and its vector store.

        Cancels and waits for any running indexing job first. The default
        container cannot be deleted.
        """
        if name == DEFAULT_CONTAINER:
            raise ProtectedContainerError(name)
        with self._lock:
            self._info(name)
        self.stop_indexing(name, wait=True)

        writer = self._writer_lock(name)
        with writer:
            with self._lock:
                self._info(name)
                store = self._stores.pop(name, None)
                if store is not None:
                    store.close()
                db_path = self.stores_dir / store_file_name(name)
                for suffix in ("", "-wal", "-shm"):
                    Path(f"{db_path}{suffix}").unlink(missing_ok=True)
                del self._registry.containers[name]
                if self._registry.active_container == name:
                    self._registry.active_container = DEFAULT_CONTAINER
                self._jobs.pop(name, None)
                self._deferred_events.pop(name, None)
                self._needs_prune.discard(name)
                self._save()
        with self._lock:
            self._writer_locks.pop(name, None)
        LOGGER.info("Deleted container %s", name)

    def set_active(self, name: str) -> None:
        with self._lock:
            self._info(name)
            self._registry.active_container = name
            self._save()

    def add_path(self, name: str, folder: Path | str) -> Path:
        """Register ``folder`` to container ``name``. Persists the registry.

        Raises :class:`PathConflictError` if another container owns the folder.
        Indexing is not started; call :meth:`start_indexing` or :meth:`index`.
        """
        resolved = Path(folder).expanduser().resolve()
        if not resolved.is_dir():
            raise NotADirectoryError(f"Not a directory: {resolved}")
        with self._lock:
            info = self._info(name)
            for other, other_info in self._registry.containers.items():
                if other != name and any(p.path == str(resolved) for p in other_info.indexed_paths):
                    raise PathConflictError(resolved, other)
            if not any(p.path == str(resolved) for p in info.indexed_paths):
                info.indexed_paths.append(IndexedPathInfo(path=str(resolved)))
                self._save()
        return resolved

    def remove_path(self, name: str, folder: Path | str) -> bool:
        """Unregister a folder and drop its documents from the container's store.

        Documents still covered by another of the container's folders stay.
        If a job holds the container, the purge runs as soon as it finishes.
        """
        resolved = str(Path(folder).expanduser().resolve())
        with self._lock:
            info = self._info(name)
            before = len(info.indexed_paths)
            info.indexed_paths = [p for p in info.indexed_paths if p.path != resolved]
            if len(info.indexed_paths) == before:
                return False
            self._save()
            self._needs_prune.add(name)

        writer = self._writer_lock(name)
        if writer.acquire(blocking=False):
            try:
                self._release_writer(name, writer)
            except IndexCorruptionError as exc:
                # retried by the next writer; indexing rebuilds the store anyway
                LOGGER.warning("Could not purge %s from %s yet: %s", resolved, name, exc.reason)
        else:
            LOGGER.info("Container %s is busy, removing %s documents after the job", name, resolved)
        return True

    def owners_of(self, path: Path | str) -> List[str]:
        """Containers that have a registered folder containing ``path``."""
        target = Path(path)
        with self._lock:
            return [
                name
                for name, info in sorted(self._registry.containers.items())
                if any(is_within(target, Path(p.path)) for p in info.indexed_paths)
            ]

    # ------------------------------------------------------------------ stores

    def store(self, name: str) -> SQLiteVectorStore:
        """The container's vector store, opened on first use.

        Raises :class:`IndexCorruptionError` when the stored index is unreadable.
        """
        with self._lock:
            self._info(name)
            store = self._stores.get(name)
            if store is None:
                store = SQLiteVectorStore(
                    self.stores_dir / store_file_name(name),
                    dimension=self.embedder.dimension,
                    model_name=getattr(self.embedder, "model_name", None),
                )
                self._stores[name] = store
            return store

    def _reset_store(self, name: str) -> SQLiteVectorStore:
        """Move an unreadable store aside and start an empty one."""
        with self._lock:
            stale = self._stores.pop(name, None)
            if stale is not None:
                stale.close()
            db_path = self.stores_dir / store_file_name(name)
            if db_path.exists():
                backup = db_path.with_name(f"{db_path.name}.{int(time.time())}.corrupt")
                os.replace(db_path, backup)
                LOGGER.warning("Moved unreadable index for %s to %s", name, backup)
            for suffix in ("-wal", "-shm"):
                Path(f"{db_path}{suffix}").unlink(missing_ok=True)
            return self.store(name)

    def _writer_lock(self, name: str) -> threading.Lock:
        with self._lock:
            return self._writer_locks.setdefault(name, threading.Lock())

    def _reconciler(self, store: SQLiteVectorStore) -> IndexReconciler:
        return IndexReconciler(
            store,
            self.embedder,
            self.extractor,
            self.scanner,
            chunk_chars=self.config.chunk_chars,
            overlap=self.config.overlap,
            extract_timeout=self.config.extract_timeout,
            embed_timeout=self.config.embed_timeout,
            embed_retries=self.config.embed_retries,
            retry_backoff=self.config.retry_backoff,
        )

    # ------------------------------------------------------------------ indexing

    def index(
        self,
        name: str,
        *,
        rebuild: bool = False,
        cancel: Optional[threading.Event] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> ReconcileStats:
        """Reconcile a container in the calling thread.

        Raises :class:`IndexingInProgressError` if the container already has
        a writer.
        """
        with self._lock:
            self._info(name)
        writer = self._writer_lock(name)
        if not writer.acquire(blocking=False):
            raise IndexingInProgressError(name)
        try:
            return self._reconcile_locked(name, rebuild, cancel, progress)
        finally:
            self._release_writer(name, writer)

    def start_indexing(
        self, name: str, *, rebuild: bool = False, supersede: bool = False
    ) -> IndexJob:
        """Start a background reconciliation for ``name``.

        A second request while a job is running is rejected with
        :class:`IndexingInProgressError`, unless ``supersede`` is set: then the
        running job is asked to stop, awaited, and replaced.
        """
        with self._lock:
            self._info(name)
        if supersede:
            self.stop_indexing(name, wait=True)

        writer = self._writer_lock(name)
        if not writer.acquire(blocking=False):
            raise IndexingInProgressError(name)

        job = IndexJob(container=name, rebuild=rebuild)

        def progress(current: int, total: int, path: Path) -> None:
            job.current, job.total, job.current_path = current, total, str(path)

        def run() -> ReconcileStats:
            try:
                job.stats = self._reconcile_locked(name, rebuild, job.cancel, progress)
                return job.stats
            except Exception as exc:
                LOGGER.exception("Indexing %s failed: %s", name, exc)
                job.error = str(exc)
                raise
            finally:
                job.finished_at = time.time()
                self._release_writer(name, writer)

        with self._lock:
            self._jobs[name] = job
            try:
                job.future = self._executor.submit(run)
            except Exception:
                writer.release()
                raise
        return job

    def stop_indexing(self, name: str, *, wait: bool = False) -> bool:
        """Ask the running job to halt before its next file. Applied files stay."""
        with self._lock:
            job = self._jobs.get(name)
        if job is None or not job.running:
            return False
        job.cancel.set()
        if wait and job.future is not None:
            try:
                job.future.result()
            except Exception:
                LOGGER.debug("Stopped job for %s ended with an error", name)
        return True

    def wait(self, name: str, timeout: Optional[float] = None) -> Optional[ReconcileStats]:
        """Block until the container's current job finishes; re-raises its error."""
        with self._lock:
            job = self._jobs.get(name)
        if job is None or job.future is None:
            return None
        return job.future.result(timeout=timeout)

    def job_status(self, name: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._info(name)
            job = self._jobs.get(name)
        return job.as_dict() if job else None

    def _reconcile_locked(
        self,
        name: str,
        rebuild: bool,
        cancel: Optional[threading.Event],
        progress: Optional[ProgressCallback],
    ) -> ReconcileStats:
        roots = self.indexed_paths(name)
        try:
            stats = self._reconciler(self.store(name)).reconcile(
                roots, rebuild=rebuild, cancel=cancel, progress=progress
            )
        except IndexCorruptionError as exc:
            LOGGER.error("Index for %s is unreadable (%s), rebuilding from scratch", name, exc.reason)
            stats = self._reconciler(self._reset_store(name)).reconcile(
                roots, rebuild=True, cancel=cancel, progress=progress
            )

        if not stats.cancelled:
            now = time.time()
            with self._lock:
                if name in self._registry.containers:
                    for indexed in self._registry.containers[name].indexed_paths:
                        if Path(indexed.path) in roots:
                            indexed.last_scan_at = now
                    self._save()
        LOGGER.info(
            "Indexed %s: inserted %d, updated %d, deleted %d, unchanged %d, failed %d, pending %d",
            name,
            stats.inserted,
            stats.updated,
            stats.deleted,
            stats.unchanged,
            stats.failed,
            stats.pending,
        )
        return stats

    # ------------------------------------------------------------------ watch events

    def handle_event(self, event: FileEvent) -> Dict[str, str]:
        """Apply a filesystem change to every container that indexes the path.

        If a container is busy with a job, the event is queued and applied
        when the job finishes. Returns ``{container: outcome}``.
        """
        if event.kind == "moved" and event.dest_path is not None:
            outcomes: Dict[str, str] = {}
            source_owners = set(self.owners_of(event.path))
            dest_owners = set(self.owners_of(event.dest_path))
            for name in sorted(source_owners | dest_owners):
                if name in source_owners and name in dest_owners:
                    sub_event = event
                elif name in source_owners:
                    sub_event = FileEvent("deleted", event.path)
                else:
                    sub_event = FileEvent("created", event.dest_path)
                outcomes[name] = self._apply_event(name, sub_event)
            return outcomes
        return {name: self._apply_event(name, event) for name in self.owners_of(event.path)}

    def _apply_event(self, name: str, event: FileEvent) -> str:
        writer = self._writer_lock(name)
        if not writer.acquire(blocking=False):
            with self._lock:
                self._deferred_events.setdefault(name, []).append(event)
            # the holder may have released before the event was queued
            if writer.acquire(blocking=False):
                self._release_writer(name, writer)
            return "queued"
        try:
            return self._reconciler(self.store(name)).apply_event(event, self.indexed_paths(name))
        finally:
            self._release_writer(name, writer)

    def _release_writer(self, name: str, writer: threading.Lock) -> None:
        """Apply work queued for ``name`` while it was busy, then release its writer.

        Work queued between the final check and the release is picked up by
        taking the lock again; if another writer got it first, that writer
        drains the queue when it releases.
        """
        while True:
            try:
                self._apply_queued(name)
            finally:
                writer.release()
            with self._lock:
                waiting = bool(self._deferred_events.get(name)) or name in self._needs_prune
            if not waiting or not writer.acquire(blocking=False):
                return

    def _apply_queued(self, name: str) -> None:
        with self._lock:
            if name not in self._registry.containers:
                self._deferred_events.pop(name, None)
                self._needs_prune.discard(name)
                return
            prune = name in self._needs_prune
            self._needs_prune.discard(name)
            events = self._deferred_events.pop(name, [])
        if not prune and not events:
            return
        try:
            reconciler = self._reconciler(self.store(name))
            if prune:
                reconciler.prune_outside(self.indexed_paths(name))
        except Exception:
            with self._lock:
                if prune:
                    self._needs_prune.add(name)
                self._deferred_events.setdefault(name, [])[:0] = events
            raise
        roots = self.indexed_paths(name)
        for event in events:
            reconciler.apply_event(event, roots)

    # ------------------------------------------------------------------ search

    def search(
        self,
        name: str,
        query: str,
        *,
        top_k: int = 10,
        multi_chunk: bool = False,
        path_prefix: Path | str | None = None,
        hybrid: bool = False,
        rerank: bool = False,
    ) -> List[SearchResult]:
        """Read-only similarity search in one container. Never waits for indexing.

        Only documents under the container's registered folders are returned.
        Raises :class:`ContainerEmptyError` before anything has been indexed
        and :class:`IndexCorruptionError` for an unreadable store.
        """
        store = self.store(name)
        return self.search_engine.search(
            store,
            query,
            top_k=top_k,
            multi_chunk=multi_chunk,
            path_prefix=path_prefix,
            container=name,
            hybrid=hybrid,
            rerank=rerank,
            within=self.indexed_paths(name),
        )

    def close(self) -> None:
        with self._lock:
            jobs = list(self._jobs.values())
        for job in jobs:
            job.cancel.set()
        self._executor.shutdown(wait=True)
        with self._lock:
            for store in self._stores.values():
                store.close()
            self._stores.clear()
