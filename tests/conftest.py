"""Shared fixtures: a deterministic embedder and ready-made stores."""

from __future__ import annotations

import re
import zlib
from pathlib import Path
from typing import Iterable, Sequence

import numpy as np
import pytest

from foldersearch.config import AppConfig
from foldersearch.errors import EmbeddingError
from foldersearch.index.containers import ContainerManager
from foldersearch.index.reconciler import IndexReconciler
from foldersearch.index.scanner import FileScanner, IgnorePolicy
from foldersearch.index.storage import SQLiteVectorStore
from foldersearch.ingestion.extractors import ContentExtractor


class FakeEmbedder:
    """Hashed bag-of-words vectors: texts sharing words get similar vectors."""

    model_name = "fake-model"

    def __init__(self, dimension: int = 256) -> None:
        self.dimension = dimension
        self.calls = 0
        self.failures_left = 0

    def vector(self, text: str) -> np.ndarray:
        vec = np.zeros(self.dimension, dtype="float32")
        for word in re.findall(r"\w+", text.lower()):
            vec[zlib.crc32(word.encode("utf-8")) % self.dimension] += 1.0
        if not vec.any():
            vec[0] = 1.0
        return vec / np.linalg.norm(vec)

    def embed(self, texts: Sequence[str] | Iterable[str]) -> np.ndarray:
        self.calls += 1
        if self.failures_left > 0:
            self.failures_left -= 1
            raise EmbeddingError("model offline")
        return np.vstack([self.vector(text) for text in texts]).astype("float32")

    def embed_query(self, text: str) -> np.ndarray:
        return self.vector(text)


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def store(tmp_path: Path, embedder: FakeEmbedder):
    vector_store = SQLiteVectorStore(
        tmp_path / "store.db", dimension=embedder.dimension, model_name=embedder.model_name
    )
    yield vector_store
    vector_store.close()


@pytest.fixture
def extractor() -> ContentExtractor:
    return ContentExtractor()


@pytest.fixture
def make_reconciler(store: SQLiteVectorStore, embedder: FakeEmbedder, extractor: ContentExtractor):
    def factory(**kwargs) -> IndexReconciler:
        options = dict(extract_timeout=5.0, embed_timeout=5.0, embed_retries=2, retry_backoff=0.0)
        options.update(kwargs)
        scanner = FileScanner(IgnorePolicy(extensions=extractor.supported_extensions))
        return IndexReconciler(store, embedder, extractor, scanner, **options)

    return factory


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    return AppConfig(
        data_dir=tmp_path / "data",
        extract_timeout=5.0,
        embed_timeout=5.0,
        embed_retries=2,
        retry_backoff=0.0,
    )


@pytest.fixture
def manager(app_config: AppConfig, embedder: FakeEmbedder):
    container_manager = ContainerManager(app_config, embedder)
    yield container_manager
    container_manager.close()


@pytest.fixture
def docs(tmp_path: Path) -> Path:
    """A small folder of text documents on distinct topics."""
    root = tmp_path / "docs"
    root.mkdir()
    (root / "cooking.txt").write_text("pasta recipe with tomato sauce and basil", encoding="utf-8")
    (root / "garden.md").write_text("# Garden\n\nwatering roses and pruning hedges", encoding="utf-8")
    (root / "space.txt").write_text("rocket launch orbit satellite", encoding="utf-8")
    return root
