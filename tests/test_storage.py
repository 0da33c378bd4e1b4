"""Tests for the SQLite vector store."""

from __future__ import annotations

import math
import threading
from pathlib import Path

import numpy as np
import pytest

from foldersearch.errors import IndexCorruptionError
from foldersearch.index.storage import SQLiteVectorStore
from foldersearch.models import Chunk, DocumentRecord, ExtractionStatus, Fingerprint


def _fingerprint(tag: str = "a") -> Fingerprint:
    return Fingerprint(sha256=tag * 64, size=10, mtime=1.0)


def _doc(path: str, tag: str = "a") -> DocumentRecord:
    return DocumentRecord(Path(path), _fingerprint(tag))


def _chunks(path: str, *texts: str) -> list[Chunk]:
    return [Chunk(Path(path), idx, idx * 10, idx * 10 + len(text), text) for idx, text in enumerate(texts)]


def _unit(score: float) -> np.ndarray:
    """2-d unit vector whose cosine with (1, 0) is ``score``."""
    return np.array([score, math.sqrt(1.0 - score * score)], dtype="float32")


@pytest.fixture
def store2d(tmp_path: Path):
    vector_store = SQLiteVectorStore(tmp_path / "two.db", dimension=2)
    yield vector_store
    vector_store.close()


class TestSchema:
    """Test database schema creation and integrity checks."""

    def test_creates_tables(self, store: SQLiteVectorStore) -> None:
        """Should create the meta, documents and chunks tables."""
        tables = {
            row[0]
            for row in store.connection.execute("SELECT name FROM sqlite_master WHERE type='table'")
        }
        assert {"meta", "documents", "chunks"} <= tables

    def test_uses_wal_mode(self, store: SQLiteVectorStore) -> None:
        """Should run the database in WAL mode."""
        mode = store.connection.execute("PRAGMA journal_mode").fetchone()[0]
        assert mode.lower() == "wal"

    def test_garbage_file_raises_corruption(self, tmp_path: Path) -> None:
        """Should report an unreadable file as index corruption."""
        db_path = tmp_path / "broken.db"
        db_path.write_bytes(b"this is definitely not a sqlite database" * 100)

        with pytest.raises(IndexCorruptionError) as excinfo:
            SQLiteVectorStore(db_path, dimension=4)
        assert excinfo.value.db_path == db_path

    def test_dimension_change_raises_corruption(self, tmp_path: Path) -> None:
        """Should refuse to mix vectors of different dimensions."""
        SQLiteVectorStore(tmp_path / "dim.db", dimension=4).close()

        with pytest.raises(IndexCorruptionError, match="dimension"):
            SQLiteVectorStore(tmp_path / "dim.db", dimension=8)

    def test_model_change_raises_corruption(self, tmp_path: Path) -> None:
        """Should refuse to mix vectors from different models."""
        SQLiteVectorStore(tmp_path / "m.db", dimension=4, model_name="model-a").close()

        with pytest.raises(IndexCorruptionError, match="model"):
            SQLiteVectorStore(tmp_path / "m.db", dimension=4, model_name="model-b")

    def test_reopen_keeps_data(self, tmp_path: Path) -> None:
        """Should persist documents across reopen."""
        first = SQLiteVectorStore(tmp_path / "p.db", dimension=2)
        first.upsert(_doc("/data/a.txt"), _chunks("/data/a.txt", "hello"), np.array([_unit(0.5)]))
        first.close()

        second = SQLiteVectorStore(tmp_path / "p.db", dimension=2)
        try:
            assert second.document_count() == 1
            assert second.get_chunks("/data/a.txt")[0].text == "hello"
        finally:
            second.close()


class TestUpsert:
    """Test inserting and replacing documents."""

    def test_insert_then_update(self, store2d: SQLiteVectorStore) -> None:
        """Should report inserted first and updated on replacement."""
        vectors = np.array([_unit(0.1), _unit(0.2)])
        assert store2d.upsert(_doc("/d/a.txt"), _chunks("/d/a.txt", "one", "two"), vectors) == "inserted"
        assert (
            store2d.upsert(_doc("/d/a.txt", "b"), _chunks("/d/a.txt", "three"), vectors[:1])
            == "updated"
        )

        chunks = store2d.get_chunks("/d/a.txt")
        assert [c.text for c in chunks] == ["three"]
        assert store2d.get_document("/d/a.txt").fingerprint == _fingerprint("b")

    def test_fills_chunk_ids_and_timestamp(self, store2d: SQLiteVectorStore) -> None:
        """Should fill chunk ids and updated_at on the record."""
        document = _doc("/d/a.txt")
        store2d.upsert(document, _chunks("/d/a.txt", "x", "y"), np.array([_unit(0.1), _unit(0.2)]))

        assert len(document.chunk_ids) == 2
        assert document.updated_at > 0
        assert store2d.get_document("/d/a.txt").chunk_ids == document.chunk_ids

    def test_replacement_drops_old_chunk_ids(self, store2d: SQLiteVectorStore) -> None:
        """Should leave no chunk of the previous version behind."""
        first = _doc("/d/a.txt")
        store2d.upsert(first, _chunks("/d/a.txt", "x", "y"), np.array([_unit(0.1), _unit(0.2)]))
        second = _doc("/d/a.txt", "c")
        store2d.upsert(second, _chunks("/d/a.txt", "z"), np.array([_unit(0.3)]))

        ids = [row[0] for row in store2d.connection.execute("SELECT id FROM chunks")]
        assert ids == second.chunk_ids
        assert store2d.get_document("/d/a.txt").chunk_ids == second.chunk_ids

    def test_length_mismatch_raises(self, store2d: SQLiteVectorStore) -> None:
        """Should reject embeddings that do not line up with chunks."""
        with pytest.raises(ValueError):
            store2d.upsert(_doc("/d/a.txt"), _chunks("/d/a.txt", "x", "y"), np.array([_unit(0.1)]))
        assert store2d.document_count() == 0

    def test_wrong_dimension_raises(self, store2d: SQLiteVectorStore) -> None:
        """Should reject vectors of the wrong dimension."""
        with pytest.raises(ValueError):
            store2d.upsert(
                _doc("/d/a.txt"), _chunks("/d/a.txt", "x"), np.ones((1, 3), dtype="float32")
            )

    def test_record_without_chunks(self, store2d: SQLiteVectorStore) -> None:
        """Should store empty or failed documents without chunks."""
        record = DocumentRecord(
            Path("/d/bad.pdf"), _fingerprint(), ExtractionStatus.FAILED, error="corrupt"
        )
        store2d.upsert(record, [])

        stored = store2d.get_document("/d/bad.pdf")
        assert stored.status == ExtractionStatus.FAILED
        assert stored.error == "corrupt"
        assert stored.chunk_ids == []


class TestDelete:
    """Test removing documents."""

    def test_delete_by_path(self, store2d: SQLiteVectorStore) -> None:
        """Should remove the document and its chunks."""
        store2d.upsert(_doc("/d/a.txt"), _chunks("/d/a.txt", "x"), np.array([_unit(0.5)]))

        assert store2d.delete_by_path("/d/a.txt") is True
        assert store2d.get_document("/d/a.txt") is None
        assert store2d.connection.execute("SELECT COUNT(*) FROM chunks").fetchone()[0] == 0

    def test_delete_missing_is_noop(self, store2d: SQLiteVectorStore) -> None:
        """Should return False for unknown paths."""
        assert store2d.delete_by_path("/nowhere.txt") is False

    def test_paths_under_is_component_wise(self, store2d: SQLiteVectorStore) -> None:
        """Should not treat /data/p10 as lying under /data/p1."""
        for path in ("/data/p1/a.txt", "/data/p10/b.txt", "/data/p1/sub/c.txt"):
            store2d.upsert(_doc(path), _chunks(path, "x"), np.array([_unit(0.5)]))

        assert store2d.paths_under("/data/p1") == ["/data/p1/a.txt", "/data/p1/sub/c.txt"]


class TestPending:
    """Test documents waiting for a working embedding model."""

    def test_mark_pending_keeps_previous_chunks(self, store2d: SQLiteVectorStore) -> None:
        """Should keep the old chunks searchable and clear the fingerprint."""
        store2d.upsert(_doc("/d/a.txt"), _chunks("/d/a.txt", "old"), np.array([_unit(0.5)]))

        store2d.mark_pending("/d/a.txt", "model offline")

        stored = store2d.get_document("/d/a.txt")
        assert stored.status == ExtractionStatus.PENDING
        assert stored.fingerprint is None
        assert [c.text for c in store2d.get_chunks("/d/a.txt")] == ["old"]
        assert store2d.fingerprints() == {"/d/a.txt": None}

    def test_mark_pending_new_document(self, store2d: SQLiteVectorStore) -> None:
        """Should create a pending record for a never-indexed file."""
        store2d.mark_pending("/d/new.txt", "model offline")

        assert store2d.get_document("/d/new.txt").status == ExtractionStatus.PENDING
        assert store2d.get_stats()["pending_count"] == 1


class TestNearestK:
    """Test similarity ranking."""

    def test_returns_top_k_by_score(self, store2d: SQLiteVectorStore) -> None:
        """Should return the k best chunks, best first."""
        for name, score in (("a", 0.9), ("b", 0.5), ("c", 0.8)):
            path = f"/d/{name}.txt"
            store2d.upsert(_doc(path), _chunks(path, name), np.array([_unit(score)]))

        hits = store2d.nearest_k(np.array([1.0, 0.0]), 2)

        assert [hit.path.name for hit in hits] == ["a.txt", "c.txt"]
        assert hits[0].score == pytest.approx(0.9, abs=1e-5)
        assert hits[1].score == pytest.approx(0.8, abs=1e-5)

    def test_ties_prefer_recently_updated(self, store2d: SQLiteVectorStore) -> None:
        """Should rank the most recently updated document first on equal scores."""
        store2d.upsert(_doc("/d/a.txt"), _chunks("/d/a.txt", "x"), np.array([_unit(0.7)]))
        store2d.upsert(_doc("/d/b.txt"), _chunks("/d/b.txt", "x"), np.array([_unit(0.7)]))

        hits = store2d.nearest_k(np.array([1.0, 0.0]), 2)

        assert [hit.path.name for hit in hits] == ["b.txt", "a.txt"]

    def test_ties_then_by_path(self, store2d: SQLiteVectorStore) -> None:
        """Should fall back to path order when score and timestamp tie."""
        for path in ("/d/b.txt", "/d/a.txt"):
            store2d.upsert(_doc(path), _chunks(path, "x"), np.array([_unit(0.7)]))
        with store2d.transaction() as conn:
            conn.execute("UPDATE documents SET updated_at = 100.0")

        hits = store2d.nearest_k(np.array([1.0, 0.0]), 2)

        assert [hit.path.name for hit in hits] == ["a.txt", "b.txt"]

    def test_path_prefix_filter(self, store2d: SQLiteVectorStore) -> None:
        """Should only consider documents under the prefix."""
        store2d.upsert(_doc("/data/p1/a.txt"), _chunks("/data/p1/a.txt", "x"), np.array([_unit(0.2)]))
        store2d.upsert(_doc("/data/p10/b.txt"), _chunks("/data/p10/b.txt", "x"), np.array([_unit(0.9)]))

        hits = store2d.nearest_k(np.array([1.0, 0.0]), 5, path_prefix="/data/p1")

        assert [str(hit.path) for hit in hits] == ["/data/p1/a.txt"]

    def test_empty_store(self, store2d: SQLiteVectorStore) -> None:
        """Should return no hits when nothing is stored."""
        assert store2d.nearest_k(np.array([1.0, 0.0]), 3) == []

    def test_non_positive_k(self, store2d: SQLiteVectorStore) -> None:
        """Should return no hits for k <= 0."""
        store2d.upsert(_doc("/d/a.txt"), _chunks("/d/a.txt", "x"), np.array([_unit(0.5)]))
        assert store2d.nearest_k(np.array([1.0, 0.0]), 0) == []

    def test_query_dimension_mismatch(self, store2d: SQLiteVectorStore) -> None:
        """Should reject a query vector of the wrong dimension."""
        with pytest.raises(ValueError):
            store2d.nearest_k(np.ones(3), 1)

    def test_readers_never_see_half_replaced_documents(self, store2d: SQLiteVectorStore) -> None:
        """Concurrent readers should see either the old or the new chunk set."""
        path = "/d/a.txt"
        store2d.upsert(_doc(path), _chunks(path, *["v0"] * 5), np.array([_unit(0.5)] * 5))
        errors: list[str] = []
        done = threading.Event()

        def reader() -> None:
            while not done.is_set():
                hits = store2d.nearest_k(np.array([1.0, 0.0]), 10)
                versions = {hit.text for hit in hits}
                if len(hits) != 5 or len(versions) != 1:
                    errors.append(f"inconsistent read: {len(hits)} hits, {versions}")

        thread = threading.Thread(target=reader)
        thread.start()
        try:
            for version in range(1, 30):
                store2d.upsert(
                    _doc(path, str(version % 10)),
                    _chunks(path, *[f"v{version}"] * 5),
                    np.array([_unit(0.5)] * 5),
                )
        finally:
            done.set()
            thread.join()

        assert errors == []


class TestStats:
    """Test aggregate statistics."""

    def test_get_stats(self, store2d: SQLiteVectorStore) -> None:
        """Should count documents, chunks and statuses."""
        store2d.upsert(_doc("/d/a.txt"), _chunks("/d/a.txt", "x", "y"), np.array([_unit(0.1), _unit(0.2)]))
        store2d.upsert(
            DocumentRecord(Path("/d/b.pdf"), _fingerprint(), ExtractionStatus.FAILED, error="bad"), []
        )

        stats = store2d.get_stats()

        assert stats["document_count"] == 2
        assert stats["chunk_count"] == 2
        assert stats["total_size_bytes"] == 20
        assert stats["failed_count"] == 1

    def test_list_documents(self, store2d: SQLiteVectorStore) -> None:
        """Should list documents ordered by path with chunk counts."""
        store2d.upsert(_doc("/d/b.txt"), _chunks("/d/b.txt", "x"), np.array([_unit(0.1)]))
        store2d.upsert(_doc("/d/a.txt"), _chunks("/d/a.txt", "x", "y"), np.array([_unit(0.1), _unit(0.2)]))

        documents = store2d.list_documents()

        assert [d["path"] for d in documents] == ["/d/a.txt", "/d/b.txt"]
        assert [d["chunk_count"] for d in documents] == [2, 1]


class TestKeywordK:
    """Test full-text keyword lookup."""

    def test_matches_any_word(self, store2d: SQLiteVectorStore) -> None:
        """Should return chunks containing any query word, best match first."""
        store2d.upsert(
            _doc("/d/a.txt"),
            _chunks("/d/a.txt", "zebra crossing", "zebra stripes and zebra foals"),
            np.array([_unit(0.1), _unit(0.2)]),
        )
        store2d.upsert(_doc("/d/b.txt"), _chunks("/d/b.txt", "red apples"), np.array([_unit(0.3)]))

        hits = store2d.keyword_k("Zebra giraffe", 10)

        assert {(str(h.path), h.chunk_index) for h in hits} == {("/d/a.txt", 0), ("/d/a.txt", 1)}
        assert hits[0].score >= hits[1].score

    def test_path_prefix_filter(self, store2d: SQLiteVectorStore) -> None:
        """Should apply the same folder filter as vector search."""
        store2d.upsert(_doc("/data/p1/a.txt"), _chunks("/data/p1/a.txt", "zebra"), np.array([_unit(0.1)]))
        store2d.upsert(_doc("/data/p10/b.txt"), _chunks("/data/p10/b.txt", "zebra"), np.array([_unit(0.1)]))

        hits = store2d.keyword_k("zebra", 10, path_prefix="/data/p1")

        assert [str(h.path) for h in hits] == ["/data/p1/a.txt"]

    def test_replaced_and_deleted_text_is_gone(self, store2d: SQLiteVectorStore) -> None:
        """Should keep the keyword index in step with upserts and deletes."""
        store2d.upsert(_doc("/d/a.txt"), _chunks("/d/a.txt", "zebra"), np.array([_unit(0.1)]))
        store2d.upsert(_doc("/d/a.txt", "b"), _chunks("/d/a.txt", "lion"), np.array([_unit(0.1)]))

        assert store2d.keyword_k("zebra", 10) == []
        assert [h.text for h in store2d.keyword_k("lion", 10)] == ["lion"]

        store2d.delete_by_path("/d/a.txt")

        assert store2d.keyword_k("lion", 10) == []
        assert store2d.connection.execute("SELECT count(*) FROM chunks_fts").fetchone()[0] == 0

    def test_operator_characters_are_literal(self, store2d: SQLiteVectorStore) -> None:
        """Should not treat query punctuation as FTS syntax."""
        store2d.upsert(_doc("/d/a.txt"), _chunks("/d/a.txt", "cats and dogs"), np.array([_unit(0.1)]))

        hits = store2d.keyword_k('cats AND "( NEAR* -dogs', 10)

        assert [str(h.path) for h in hits] == ["/d/a.txt"]

    def test_no_words_or_k(self, store2d: SQLiteVectorStore) -> None:
        """Should return nothing for punctuation-only queries or k <= 0."""
        store2d.upsert(_doc("/d/a.txt"), _chunks("/d/a.txt", "zebra"), np.array([_unit(0.1)]))

        assert store2d.keyword_k("?!", 10) == []
        assert store2d.keyword_k("zebra", 0) == []

    def test_reopen_backfills_missing_index(self, tmp_path: Path) -> None:
        """Should index chunks written before the keyword table existed."""
        first = SQLiteVectorStore(tmp_path / "old.db", dimension=2)
        first.upsert(_doc("/d/a.txt"), _chunks("/d/a.txt", "zebra"), np.array([_unit(0.1)]))
        with first.transaction() as conn:
            conn.execute("DROP TABLE chunks_fts")
        first.close()

        second = SQLiteVectorStore(tmp_path / "old.db", dimension=2)
        try:
            assert [str(h.path) for h in second.keyword_k("zebra", 10)] == ["/d/a.txt"]
        finally:
            second.close()
