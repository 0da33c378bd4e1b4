"""Cross-encoder reranking of search candidates."""

from __future__ import annotations

import logging
import threading
from typing import Protocol, Sequence, runtime_checkable

import numpy as np
from sentence_transformers import CrossEncoder

from foldersearch.errors import EmbeddingError

DEFAULT_RERANKER = "cross-encoder/ms-marco-MiniLM-L-6-v2"

logger = logging.getLogger(__name__)


@runtime_checkable
class Reranker(Protocol):
    """Scores how well each passage answers a query; larger is better."""

    def score(self, query: str, texts: Sequence[str]) -> np.ndarray: ...


class CrossEncoderReranker:
    """Wraps a `CrossEncoder`, loading it on first use."""

    def __init__(self, model_name: str = DEFAULT_RERANKER, device: str | None = None) -> None:
        self.model_name = model_name
        self.device = device
        self._model: CrossEncoder | None = None
        self._load_lock = threading.Lock()

    def _get(self) -> CrossEncoder:
        with self._load_lock:
            if self._model is None:
                try:
                    self._model = CrossEncoder(self.model_name, device=self.device)
                except Exception as e:
                    raise EmbeddingError(f"Failed to load reranker {self.model_name}: {e}") from e
                logger.info("Loaded reranker %s", self.model_name)
            return self._model

    def score(self, query: str, texts: Sequence[str]) -> np.ndarray:
        if not texts:
            return np.zeros(0, dtype="float32")
        model = self._get()
        try:
            scores = model.predict([(query, text) for text in texts], show_progress_bar=False)
        except Exception as e:
            raise EmbeddingError(f"Reranking failed: {e}") from e
        return np.asarray(scores, dtype="float32").reshape(-1)
