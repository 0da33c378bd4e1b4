"""Embedding model management."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Iterable, Literal, Protocol, Sequence, runtime_checkable

import numpy as np
from sentence_transformers import SentenceTransformer

from foldersearch.errors import EmbeddingError

DEFAULT_MODEL = "intfloat/multilingual-e5-base"

QUERY_PREFIX = "query: "
PASSAGE_PREFIX = "passage: "

logger = logging.getLogger(__name__)


@runtime_checkable
class Embedder(Protocol):
    """Text -> vector capability used by the indexer and the search engine.

    Implementations must return float32 arrays with a fixed ``dimension`` and
    raise :class:`EmbeddingError` when the model cannot serve a request.
    """

    model_name: str
    dimension: int

    def embed(self, texts: Sequence[str] | Iterable[str]) -> np.ndarray: ...

    def embed_query(self, text: str) -> np.ndarray: ...


def uses_e5_prefixes(model_name: str) -> bool:
    """E5 models expect ``query:`` / ``passage:`` markers on their inputs."""
    return "e5" in model_name.lower().rsplit("/", 1)[-1]


@dataclass(slots=True)
class EmbeddingConfig:
    model_name: str = DEFAULT_MODEL
    batch_size: int = 16
    normalize: bool = True
    backend: Literal["torch", "onnx", "openvino"] = "torch"
    device: str | None = None
    cache_folder: str | None = None


class EmbeddingModel:
    """Thin wrapper around `SentenceTransformer` for query and passage embeddings."""

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self.config = config or EmbeddingConfig()
        self.model_name = self.config.model_name

        try:
            self._model = self._load_model()
        except Exception as e:
            if self.config.backend == "torch":
                raise EmbeddingError(f"Failed to load model {self.model_name}: {e}") from e
            logger.warning(
                f"Failed to load model with backend '{self.config.backend}': {e}. "
                "Falling back to PyTorch."
            )
            self.config.backend = "torch"
            self._model = self._load_model()

        self.dimension = int(self._model.get_sentence_embedding_dimension())
        self._prefixed = uses_e5_prefixes(self.model_name)
        logger.info(
            "Loaded %s (backend: %s, dimension: %d)",
            self.model_name,
            self.config.backend,
            self.dimension,
        )

    def _load_model(self) -> SentenceTransformer:
        return SentenceTransformer(
            self.config.model_name,
            backend=self.config.backend,
            device=self.config.device,
            cache_folder=self.config.cache_folder,
        )

    def _encode(self, sentences: list[str]) -> np.ndarray:
        try:
            embeddings = self._model.encode(
                sentences,
                batch_size=self.config.batch_size,
                show_progress_bar=False,
                convert_to_numpy=True,
                normalize_embeddings=self.config.normalize,
            )
        except Exception as e:
            raise EmbeddingError(f"Embedding failed: {e}") from e
        return np.asarray(embeddings).astype("float32", copy=False)

    def embed(self, texts: Sequence[str] | Iterable[str]) -> np.ndarray:
        """Return float32 passage embeddings for input texts."""
        sentences = list(texts)
        if self._prefixed:
            sentences = [PASSAGE_PREFIX + text for text in sentences]
        return self._encode(sentences)

    def embed_query(self, text: str) -> np.ndarray:
        """Embed a single search query."""
        sentence = QUERY_PREFIX + text if self._prefixed else text
        embeddings = self._encode([sentence])
        if embeddings.shape[0] == 0:
            raise EmbeddingError("Empty embedding result")
        return embeddings[0]


class LazyEmbeddingModel:
    """Defers loading the model until a vector is actually needed.

    Registry-only operations (listing containers, registering folders) then
    never pay the model start-up cost.
    """

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self.config = config or EmbeddingConfig()
        self.model_name = self.config.model_name
        self._model: EmbeddingModel | None = None
        self._load_lock = threading.Lock()

    @property
    def loaded(self) -> bool:
        return self._model is not None

    def _get(self) -> EmbeddingModel:
        with self._load_lock:
            if self._model is None:
                self._model = EmbeddingModel(self.config)
            return self._model

    @property
    def dimension(self) -> int:
        return self._get().dimension

    def embed(self, texts: Sequence[str] | Iterable[str]) -> np.ndarray:
        return self._get().embed(texts)

    def embed_query(self, text: str) -> np.ndarray:
        return self._get().embed_query(text)
