"""Filesystem watching: feed change events into the incremental indexer."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from foldersearch.index.containers import ContainerManager
from foldersearch.index.reconciler import FileEvent

LOGGER = logging.getLogger(__name__)

_KINDS = frozenset({"created", "modified", "deleted", "moved"})


def to_file_event(event: FileSystemEvent) -> Optional[FileEvent]:
    """Translate a watchdog event; ``None`` for events the indexer does not need."""
    kind = event.event_type
    if kind not in _KINDS:
        return None
    # directory "modified" fires whenever an entry changes; the entry gets its own event
    if event.is_directory and kind == "modified":
        return None
    dest = getattr(event, "dest_path", "") or None
    return FileEvent(
        kind,  # type: ignore[arg-type]
        Path(str(event.src_path)),
        Path(str(dest)) if kind == "moved" and dest else None,
    )


class _ManagerHandler(FileSystemEventHandler):
    def __init__(self, manager: ContainerManager) -> None:
        super().__init__()
        self.manager = manager

    def on_any_event(self, event: FileSystemEvent) -> None:
        file_event = to_file_event(event)
        if file_event is None:
            return
        try:
            outcomes = self.manager.handle_event(file_event)
        except Exception as exc:
            LOGGER.error("Failed to apply %s for %s: %s", file_event.kind, file_event.path, exc)
            return
        if outcomes:
            LOGGER.debug("%s %s -> %s", file_event.kind, file_event.path, outcomes)


class FolderWatcher:
    """Watches every registered folder and applies changes as they happen."""

    def __init__(self, manager: ContainerManager) -> None:
        self.manager = manager
        self._observer: Optional[Observer] = None
        self._watches: Dict[str, object] = {}

    def start(self) -> None:
        if self._observer is not None:
            return
        self._observer = Observer()
        self._observer.daemon = True
        self.refresh()
        self._observer.start()

    def refresh(self) -> None:
        """Sync scheduled watches with the folders currently registered."""
        if self._observer is None:
            return
        wanted = {
            path
            for container in self.manager.list_containers()
            for path in container["indexed_paths"]
        }
        handler = _ManagerHandler(self.manager)
        for path in sorted(wanted - self._watches.keys()):
            if not Path(path).is_dir():
                LOGGER.warning("Not watching missing folder %s", path)
                continue
            self._watches[path] = self._observer.schedule(handler, path, recursive=True)
            LOGGER.info("Watching %s", path)
        for path in sorted(self._watches.keys() - wanted):
            self._observer.unschedule(self._watches.pop(path))
            LOGGER.info("Stopped watching %s", path)

    def stop(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=5.0)
        self._observer = None
        self._watches.clear()
