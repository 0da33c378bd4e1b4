"""Semantic search interface."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from foldersearch.embedding.encoder import Embedder
from foldersearch.embedding.reranker import Reranker
from foldersearch.errors import ContainerEmptyError, EmbeddingError
from foldersearch.index.storage import SQLiteVectorStore
from foldersearch.models import ChunkHit
from foldersearch.utils.files import is_within
from foldersearch.utils.text import expand_query

LOGGER = logging.getLogger(__name__)

# candidates fetched per requested result before per-document deduplication
OVERSAMPLE = 4
RRF_K = 60


@dataclass(slots=True)
class SearchResult:
    path: Path
    chunk_index: int
    score: float
    text: str
    start: int
    end: int
    extra_chunks: List[ChunkHit] = field(default_factory=list)


def reciprocal_rank_fusion(*rankings: Sequence[ChunkHit], k: int = RRF_K) -> List[ChunkHit]:
    """Merge ranked chunk lists into one.

    A chunk scores ``sum(1 / (k + rank))`` over the lists that contain it.
    Ties go to the most recently updated document, then path, then position.
    """
    scores: Dict[Tuple[Path, int], float] = {}
    hits: Dict[Tuple[Path, int], ChunkHit] = {}
    for ranking in rankings:
        for rank, hit in enumerate(ranking, start=1):
            key = (hit.path, hit.chunk_index)
            scores[key] = scores.get(key, 0.0) + 1.0 / (k + rank)
            hits.setdefault(key, hit)
    ordered = sorted(
        scores, key=lambda key: (-scores[key], -hits[key].updated_at, str(key[0]), key[1])
    )
    return [replace(hits[key], score=scores[key]) for key in ordered]


class SearchEngine:
    """High-level API to query a container's vector store.

    Results are one per document: a document's score is the score of its best
    matching chunk. With ``multi_chunk`` the document's other matching chunks
    ride along in ``extra_chunks``, best first.

    ``hybrid`` fuses the vector ranking with an FTS5 keyword ranking, and
    ``rerank`` reorders the candidates with a cross-encoder. Both are off by
    default; scores are then fused ranks or reranker scores, not cosines.
    """

    def __init__(self, embedder: Embedder, reranker: Optional[Reranker] = None) -> None:
        self.embedder = embedder
        self.reranker = reranker

    def search(
        self,
        store: SQLiteVectorStore,
        query: str,
        *,
        top_k: int = 10,
        multi_chunk: bool = False,
        path_prefix: Path | str | None = None,
        container: str = "",
        hybrid: bool = False,
        rerank: bool = False,
        within: Optional[Sequence[Path]] = None,
    ) -> List[SearchResult]:
        """Search ``store``; ``within`` drops hits outside the given folders."""
        query = query.strip()
        if not query:
            raise ValueError("Empty query")
        if rerank and self.reranker is None:
            raise ValueError("No reranker model is configured")
        if top_k <= 0:
            return []
        if store.document_count() == 0:
            raise ContainerEmptyError(container or store.db_path.stem)

        embedding = self.embedder.embed_query(query)
        fetch = top_k * OVERSAMPLE
        while True:
            hits, exhausted = self._candidates(store, query, embedding, fetch, path_prefix, hybrid)
            if within is not None:
                roots = [Path(root) for root in within]
                hits = [hit for hit in hits if any(is_within(hit.path, root) for root in roots)]
            grouped = self._group(hits)
            # stop once we have enough documents or the store ran out of chunks
            if len(grouped) >= top_k or exhausted:
                break
            fetch *= 2

        if rerank:
            grouped = self._group(self._rerank(query, hits[: top_k * OVERSAMPLE]))

        results: List[SearchResult] = []
        for best, *others in list(grouped.values())[:top_k]:
            results.append(
                SearchResult(
                    path=best.path,
                    chunk_index=best.chunk_index,
                    score=best.score,
                    text=best.text,
                    start=best.start,
                    end=best.end,
                    extra_chunks=others if multi_chunk else [],
                )
            )
        LOGGER.debug("Query %r returned %d results", query, len(results))
        return results

    @staticmethod
    def _candidates(
        store: SQLiteVectorStore,
        query: str,
        embedding: np.ndarray,
        fetch: int,
        path_prefix: Path | str | None,
        hybrid: bool,
    ) -> Tuple[List[ChunkHit], bool]:
        vector_hits = store.nearest_k(embedding, fetch, path_prefix)
        # fewer vector hits than asked for means every chunk has been seen
        exhausted = len(vector_hits) < fetch
        if not hybrid:
            return vector_hits, exhausted

        keyword_hits: List[ChunkHit] = []
        seen = set()
        for variant in expand_query(query):
            for hit in store.keyword_k(variant, fetch, path_prefix):
                if (hit.path, hit.chunk_index) not in seen:
                    seen.add((hit.path, hit.chunk_index))
                    keyword_hits.append(hit)
        if not keyword_hits:
            return vector_hits, exhausted
        return reciprocal_rank_fusion(vector_hits, keyword_hits), exhausted

    def _rerank(self, query: str, hits: List[ChunkHit]) -> List[ChunkHit]:
        try:
            scores = self.reranker.score(query, [hit.text for hit in hits])
        except EmbeddingError as exc:
            LOGGER.warning("Reranking failed, keeping retrieval order: %s", exc)
            return hits
        order = sorted(range(len(hits)), key=lambda idx: (-float(scores[idx]), idx))
        return [replace(hits[idx], score=float(scores[idx])) for idx in order]

    @staticmethod
    def _group(hits: List[ChunkHit]) -> Dict[Path, List[ChunkHit]]:
        # hits arrive best-first, so dict insertion order is document rank
        grouped: Dict[Path, List[ChunkHit]] = {}
        for hit in hits:
            grouped.setdefault(hit.path, []).append(hit)
        return grouped
