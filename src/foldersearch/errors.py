"""Error taxonomy shared by the indexing and retrieval engine."""

from __future__ import annotations

from pathlib import Path


class FolderSearchError(Exception):
    """Base class for all domain errors."""


class ExtractionError(FolderSearchError):
    """A file could not be turned into text (unreadable, corrupt, unsupported, timed out)."""

    def __init__(self, path: Path | str, reason: str) -> None:
        super().__init__(f"Cannot extract text from {path}: {reason}")
        self.path = Path(path)
        self.reason = reason


class EmbeddingError(FolderSearchError):
    """The embedding model was unavailable, failed, or timed out."""


class IndexCorruptionError(FolderSearchError):
    """Stored index state for a container is unreadable and needs a rebuild."""

    def __init__(self, db_path: Path | str, reason: str) -> None:
        super().__init__(f"Index at {db_path} is unusable ({reason}); rebuild the container")
        self.db_path = Path(db_path)
        self.reason = reason


class ContainerNotFoundError(FolderSearchError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Container not found: {name}")
        self.name = name


class ContainerExistsError(FolderSearchError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Container already exists: {name}")
        self.name = name


class ProtectedContainerError(FolderSearchError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Cannot delete {name} container")
        self.name = name


class PathConflictError(FolderSearchError):
    """A folder is already registered to another container."""

    def __init__(self, path: Path | str, owner: str) -> None:
        super().__init__(f"{path} is already indexed by container '{owner}'")
        self.path = Path(path)
        self.owner = owner


class ContainerEmptyError(FolderSearchError):
    """Search was attempted on a container that has never indexed anything."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Container '{name}' has no indexed documents yet")
        self.name = name


class IndexingInProgressError(FolderSearchError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Container '{name}' is already being indexed")
        self.name = name
