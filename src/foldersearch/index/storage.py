"""SQLite-backed vector store, one database file per container."""

from __future__ import annotations

import logging
import os
import re
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence

import numpy as np

from foldersearch.errors import IndexCorruptionError
from foldersearch.models import Chunk, ChunkHit, DocumentRecord, ExtractionStatus, Fingerprint

LOGGER = logging.getLogger(__name__)


def _like_prefix(prefix: str) -> str:
    escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return escaped + "%"


class SQLiteVectorStore:
    """Persistence layer for document records, chunks and their embeddings.

    Every thread gets its own connection; the database runs in WAL mode so
    readers never block on (or observe half of) a document being rewritten.
    """

    def __init__(
        self, db_path: Path, *, dimension: int, model_name: Optional[str] = None
    ) -> None:
        self.db_path = Path(db_path)
        self.dimension = dimension
        self.model_name = model_name
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._write_lock = threading.RLock()
        self._last_stamp = 0.0
        self._closed = False
        self.keyword_search = True
        try:
            self._check_integrity()
            self._ensure_schema()
            self._ensure_keyword_index()
            self._check_meta()
        except sqlite3.DatabaseError as exc:
            self.close()
            raise IndexCorruptionError(self.db_path, str(exc)) from exc
        except IndexCorruptionError:
            self.close()
            raise

    @property
    def connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            if self._closed:
                raise sqlite3.ProgrammingError(f"Store {self.db_path} is closed")
            conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30.0)
            conn.row_factory = sqlite3.Row
            with self._connections_lock:
                self._connections.append(conn)
            self._local.conn = conn
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            conn.execute("PRAGMA foreign_keys=ON;")
        return conn

    def close(self) -> None:
        self._closed = True
        with self._connections_lock:
            connections, self._connections = self._connections, []
        for conn in connections:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._write_lock:
            conn = self.connection
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    @contextmanager
    def _reading(self) -> Iterator[sqlite3.Connection]:
        try:
            yield self.connection
        except sqlite3.DatabaseError as exc:
            raise IndexCorruptionError(self.db_path, str(exc)) from exc

    def _check_integrity(self) -> None:
        row = self.connection.execute("PRAGMA quick_check").fetchone()
        if row is None or row[0] != "ok":
            raise IndexCorruptionError(self.db_path, f"integrity check failed: {row[0] if row else '?'}")

    def _ensure_schema(self) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS meta (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS documents (
                    id INTEGER PRIMARY KEY,
                    path TEXT NOT NULL UNIQUE,
                    sha256 TEXT,
                    size INTEGER,
                    mtime REAL,
                    status TEXT NOT NULL,
                    error TEXT,
                    updated_at REAL NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS chunks (
                    id INTEGER PRIMARY KEY,
                    document_id INTEGER NOT NULL,
                    chunk_index INTEGER NOT NULL,
                    start_offset INTEGER NOT NULL,
                    end_offset INTEGER NOT NULL,
                    text TEXT NOT NULL,
                    embedding BLOB NOT NULL,
                    FOREIGN KEY(document_id) REFERENCES documents(id) ON DELETE CASCADE
                )
                """
            )
            conn.execute(
                """CREATE INDEX IF NOT EXISTS idx_chunks_document_id
                    ON chunks(document_id)
                """
            )

    def _ensure_keyword_index(self) -> None:
        """Full-text index over chunk text; rowid is the chunk id."""
        try:
            with self.transaction() as conn:
                conn.execute(
                    """
                    CREATE VIRTUAL TABLE IF NOT EXISTS chunks_fts
                    USING fts5(text, tokenize='unicode61')
                    """
                )
                # chunks written before the keyword index existed
                conn.execute(
                    """
                    INSERT INTO chunks_fts(rowid, text)
                    SELECT id, text FROM chunks
                    WHERE id NOT IN (SELECT rowid FROM chunks_fts)
                    """
                )
        except sqlite3.OperationalError as exc:
            if "fts5" not in str(exc):
                raise
            LOGGER.warning("SQLite was built without FTS5, keyword search is disabled")
            self.keyword_search = False

    def _check_meta(self) -> None:
        with self.transaction() as conn:
            meta = {row["key"]: row["value"] for row in conn.execute("SELECT key, value FROM meta")}
            stored_dimension = meta.get("dimension")
            if stored_dimension is not None and int(stored_dimension) != self.dimension:
                raise IndexCorruptionError(
                    self.db_path,
                    f"vectors have dimension {stored_dimension}, model produces {self.dimension}",
                )
            stored_model = meta.get("model_name")
            if stored_model and self.model_name and stored_model != self.model_name:
                raise IndexCorruptionError(
                    self.db_path, f"built with model {stored_model}, configured {self.model_name}"
                )
            conn.execute(
                "INSERT OR IGNORE INTO meta(key, value) VALUES ('dimension', ?)",
                (str(self.dimension),),
            )
            if self.model_name:
                conn.execute(
                    "INSERT OR IGNORE INTO meta(key, value) VALUES ('model_name', ?)",
                    (self.model_name,),
                )

    def _stamp(self) -> float:
        # strictly increasing so "most recently updated" is always well defined
        self._last_stamp = max(time.time(), self._last_stamp + 1e-6)
        return self._last_stamp

    def upsert(
        self,
        document: DocumentRecord,
        chunks: Sequence[Chunk],
        embeddings: Optional[np.ndarray] = None,
    ) -> str:
        """Replace the document row and all of its chunks in one transaction.

        Returns ``"inserted"`` or ``"updated"``. ``document.chunk_ids`` and
        ``document.updated_at`` are filled in with the stored values.
        """
        if chunks:
            if embeddings is None or embeddings.shape[0] != len(chunks):
                raise ValueError("Embeddings and chunks length mismatch")
            if embeddings.ndim != 2 or embeddings.shape[1] != self.dimension:
                raise ValueError(
                    f"Expected {self.dimension}-dimensional embeddings, got {embeddings.shape}"
                )

        fingerprint = document.fingerprint
        with self.transaction() as conn:
            existing = conn.execute(
                "SELECT id FROM documents WHERE path = ?", (str(document.path),)
            ).fetchone()
            if existing:
                self._drop_keywords(conn, existing["id"])
                conn.execute("DELETE FROM chunks WHERE document_id = ?", (existing["id"],))
                conn.execute("DELETE FROM documents WHERE id = ?", (existing["id"],))

            updated_at = self._stamp()
            doc_id = conn.execute(
                """
                INSERT INTO documents(path, sha256, size, mtime, status, error, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(document.path),
                    fingerprint.sha256 if fingerprint else None,
                    fingerprint.size if fingerprint else None,
                    fingerprint.mtime if fingerprint else None,
                    document.status.value,
                    document.error,
                    updated_at,
                ),
            ).lastrowid

            chunk_ids = []
            for chunk, vector in zip(chunks, embeddings if chunks else []):
                chunk_ids.append(
                    conn.execute(
                        """
                        INSERT INTO chunks(
                            document_id, chunk_index, start_offset, end_offset, text, embedding
                        )
                        VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        (
                            doc_id,
                            chunk.index,
                            chunk.start,
                            chunk.end,
                            chunk.text,
                            sqlite3.Binary(np.asarray(vector, dtype="float32").tobytes()),
                        ),
                    ).lastrowid
                )
            if self.keyword_search:
                conn.executemany(
                    "INSERT INTO chunks_fts(rowid, text) VALUES (?, ?)",
                    [(chunk_id, chunk.text) for chunk_id, chunk in zip(chunk_ids, chunks)],
                )

        document.chunk_ids = chunk_ids
        document.updated_at = updated_at
        return "updated" if existing else "inserted"

    def _drop_keywords(self, conn: sqlite3.Connection, document_id: int) -> None:
        if self.keyword_search:
            conn.execute(
                "DELETE FROM chunks_fts WHERE rowid IN (SELECT id FROM chunks WHERE document_id = ?)",
                (document_id,),
            )

    def delete_by_path(self, path: Path | str) -> bool:
        """Remove a document and its chunks. Returns False if it was not stored."""
        with self.transaction() as conn:
            row = conn.execute("SELECT id FROM documents WHERE path = ?", (str(path),)).fetchone()
            if row is None:
                return False
            self._drop_keywords(conn, row["id"])
            conn.execute("DELETE FROM chunks WHERE document_id = ?", (row["id"],))
            conn.execute("DELETE FROM documents WHERE id = ?", (row["id"],))
        return True

    def mark_pending(self, path: Path | str, error: str) -> None:
        """Flag a document for retry, keeping the chunks of its previous version."""
        with self.transaction() as conn:
            updated = conn.execute(
                """
                UPDATE documents SET sha256 = NULL, status = ?, error = ?
                WHERE path = ?
                """,
                (ExtractionStatus.PENDING.value, error, str(path)),
            ).rowcount
            if not updated:
                conn.execute(
                    """
                    INSERT INTO documents(path, status, error, updated_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (str(path), ExtractionStatus.PENDING.value, error, self._stamp()),
                )

    def paths_under(self, root: Path | str) -> List[str]:
        """Stored document paths equal to or below ``root``."""
        prefix = str(root).rstrip(os.sep)
        with self._reading() as conn:
            rows = conn.execute(
                "SELECT path FROM documents WHERE path = ? OR path LIKE ? ESCAPE '\\' ORDER BY path",
                (prefix, _like_prefix(prefix + os.sep)),
            ).fetchall()
        return [row["path"] for row in rows]

    def fingerprints(self) -> Dict[str, Optional[Fingerprint]]:
        """Stored ``path -> fingerprint`` mapping; ``None`` for pending documents."""
        with self._reading() as conn:
            rows = conn.execute("SELECT path, sha256, size, mtime FROM documents").fetchall()
        return {
            row["path"]: (
                Fingerprint(row["sha256"], row["size"], row["mtime"]) if row["sha256"] else None
            )
            for row in rows
        }

    def get_document(self, path: Path | str) -> Optional[DocumentRecord]:
        with self._reading() as conn:
            row = conn.execute("SELECT * FROM documents WHERE path = ?", (str(path),)).fetchone()
            if row is None:
                return None
            chunk_ids = [
                r["id"]
                for r in conn.execute(
                    "SELECT id FROM chunks WHERE document_id = ? ORDER BY chunk_index",
                    (row["id"],),
                )
            ]
        return DocumentRecord(
            path=Path(row["path"]),
            fingerprint=(
                Fingerprint(row["sha256"], row["size"], row["mtime"]) if row["sha256"] else None
            ),
            status=ExtractionStatus(row["status"]),
            chunk_ids=chunk_ids,
            error=row["error"],
            updated_at=row["updated_at"],
        )

    def get_chunks(self, path: Path | str) -> List[Chunk]:
        with self._reading() as conn:
            rows = conn.execute(
                """
                SELECT c.chunk_index, c.start_offset, c.end_offset, c.text
                FROM chunks c
                JOIN documents d ON d.id = c.document_id
                WHERE d.path = ?
                ORDER BY c.chunk_index
                """,
                (str(path),),
            ).fetchall()
        return [
            Chunk(Path(path), row["chunk_index"], row["start_offset"], row["end_offset"], row["text"])
            for row in rows
        ]

    def document_count(self) -> int:
        with self._reading() as conn:
            return conn.execute("SELECT COUNT(*) FROM documents").fetchone()[0]

    def list_documents(self) -> List[Dict[str, Any]]:
        with self._reading() as conn:
            rows = conn.execute(
                """
                SELECT d.path, d.size, d.status, d.error, d.updated_at, COUNT(c.id) AS chunk_count
                FROM documents d
                LEFT JOIN chunks c ON c.document_id = d.id
                GROUP BY d.id
                ORDER BY d.path
                """
            ).fetchall()
        return [dict(row) for row in rows]

    def get_stats(self) -> Dict[str, int]:
        with self._reading() as conn:
            documents = conn.execute(
                "SELECT COUNT(*), COALESCE(SUM(size), 0) FROM documents"
            ).fetchone()
            chunk_count = conn.execute("SELECT COUNT(*) FROM chunks").fetchone()[0]
            by_status = {
                row["status"]: row["n"]
                for row in conn.execute(
                    "SELECT status, COUNT(*) AS n FROM documents GROUP BY status"
                )
            }
        return {
            "document_count": documents[0],
            "chunk_count": chunk_count,
            "total_size_bytes": documents[1],
            "pending_count": by_status.get(ExtractionStatus.PENDING.value, 0),
            "failed_count": by_status.get(ExtractionStatus.FAILED.value, 0),
        }

    def nearest_k(
        self,
        query_vector: np.ndarray,
        k: int,
        path_prefix: Path | str | None = None,
    ) -> List[ChunkHit]:
        """Return up to ``k`` chunks ranked by cosine similarity to ``query_vector``.

        Ties are broken by the most recently updated document, then by path,
        then by chunk position.
        """
        query = np.asarray(query_vector, dtype="float64").reshape(-1)
        if query.shape[0] != self.dimension:
            raise ValueError(f"Expected {self.dimension}-dimensional query, got {query.shape[0]}")
        if k <= 0:
            return []

        sql = """
            SELECT
                d.path AS path,
                d.updated_at AS updated_at,
                c.chunk_index AS chunk_index,
                c.start_offset AS start_offset,
                c.end_offset AS end_offset,
                c.text AS text,
                c.embedding AS embedding
            FROM chunks c
            JOIN documents d ON d.id = c.document_id
        """
        params: tuple = ()
        if path_prefix is not None:
            prefix = str(path_prefix).rstrip(os.sep)
            sql += " WHERE d.path = ? OR d.path LIKE ? ESCAPE '\\'"
            params = (prefix, _like_prefix(prefix + os.sep))

        # a single statement reads one consistent snapshot of the database
        with self._reading() as conn:
            rows = conn.execute(sql, params).fetchall()
        if not rows:
            return []

        embeddings = np.vstack(
            [np.frombuffer(row["embedding"], dtype="float32") for row in rows]
        ).astype("float64")
        norms = np.linalg.norm(embeddings, axis=1) * np.linalg.norm(query)
        raw = embeddings @ query
        scores = np.divide(raw, norms, out=np.zeros_like(raw), where=norms > 0)

        _, path_rank = np.unique([row["path"] for row in rows], return_inverse=True)
        updated = np.array([row["updated_at"] for row in rows], dtype="float64")
        positions = np.array([row["chunk_index"] for row in rows])
        # np.lexsort sorts by the last key first
        order = np.lexsort((positions, path_rank, -updated, -scores))[:k]

        return [
            ChunkHit(
                path=Path(rows[idx]["path"]),
                chunk_index=rows[idx]["chunk_index"],
                start=rows[idx]["start_offset"],
                end=rows[idx]["end_offset"],
                text=rows[idx]["text"],
                score=float(scores[idx]),
                updated_at=float(updated[idx]),
            )
            for idx in order
        ]

    def keyword_k(
        self,
        query: str,
        k: int,
        path_prefix: Path | str | None = None,
    ) -> List[ChunkHit]:
        """Return up to ``k`` chunks containing any word of ``query``, best BM25 first.

        ``score`` is the negated BM25 rank, so larger is better. Ties follow
        the same order as :meth:`nearest_k`.
        """
        terms = re.findall(r"\w+", query)
        if not terms or k <= 0 or not self.keyword_search:
            return []
        # quoted terms are matched literally, never parsed as FTS operators
        match = " OR ".join(f'"{term}"' for term in terms)

        sql = """
            SELECT
                d.path AS path,
                d.updated_at AS updated_at,
                c.chunk_index AS chunk_index,
                c.start_offset AS start_offset,
                c.end_offset AS end_offset,
                c.text AS text,
                bm25(chunks_fts) AS bm25_rank
            FROM chunks_fts
            JOIN chunks c ON c.id = chunks_fts.rowid
            JOIN documents d ON d.id = c.document_id
            WHERE chunks_fts MATCH ?
        """
        params: list = [match]
        if path_prefix is not None:
            prefix = str(path_prefix).rstrip(os.sep)
            sql += " AND (d.path = ? OR d.path LIKE ? ESCAPE '\\')"
            params += [prefix, _like_prefix(prefix + os.sep)]
        sql += " ORDER BY bm25_rank ASC, d.updated_at DESC, d.path ASC, c.chunk_index ASC LIMIT ?"
        params.append(k)

        with self._reading() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [
            ChunkHit(
                path=Path(row["path"]),
                chunk_index=row["chunk_index"],
                start=row["start_offset"],
                end=row["end_offset"],
                text=row["text"],
                score=-float(row["bm25_rank"]),
                updated_at=float(row["updated_at"]),
            )
            for row in rows
        ]
