"""Application configuration defaults."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from pathlib import Path

from foldersearch.embedding.encoder import DEFAULT_MODEL

DEFAULT_CONTAINER = "Default"
REGISTRY_FILE = "containers.json"
DATA_DIR_ENV = "FOLDERSEARCH_DATA_DIR"


def _get_default_data_dir() -> Path:
    """Get the default data directory based on environment and execution context."""
    override = os.environ.get(DATA_DIR_ENV)
    if override:
        return Path(override).expanduser()

    user_dir = Path.home() / "Documents" / "FolderSearch"

    # Frozen bundles always keep their data in the user's Documents folder
    if getattr(sys, "frozen", False):
        return user_dir

    # When running from source, prefer local data/ if it exists
    local_dir = Path("data")
    if local_dir.is_dir():
        return local_dir

    return user_dir


@dataclass(slots=True)
class AppConfig:
    data_dir: Path | None = None
    model_name: str = DEFAULT_MODEL
    # None means "use the per-extension defaults"
    chunk_chars: int | None = None
    overlap: int | None = None
    max_file_size: int = 50 * 1024 * 1024
    extract_timeout: float = 120.0
    embed_timeout: float = 60.0
    embed_retries: int = 3
    retry_backoff: float = 0.5
    # cross-encoder used when a search asks for reranking; None disables it
    reranker_model: str | None = None

    def __post_init__(self) -> None:
        if self.data_dir is None:
            self.data_dir = _get_default_data_dir()

    def resolve_data_dir(self, base_dir: Path | None = None) -> Path:
        if self.data_dir is None:
            self.data_dir = _get_default_data_dir()
        if Path(self.data_dir).is_absolute() or base_dir is None:
            return Path(self.data_dir)
        return base_dir / self.data_dir

    def registry_path(self, base_dir: Path | None = None) -> Path:
        return self.resolve_data_dir(base_dir) / REGISTRY_FILE

    def stores_dir(self, base_dir: Path | None = None) -> Path:
        return self.resolve_data_dir(base_dir) / "stores"
