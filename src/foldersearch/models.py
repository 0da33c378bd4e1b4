"""Core FolderSearch data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional


class ExtractionStatus(str, Enum):
    INDEXED = "indexed"
    EMPTY = "empty"
    FAILED = "failed"
    PENDING = "pending"


@dataclass(frozen=True, slots=True)
class Fingerprint:
    """Cheap change detector for a file: content hash plus size and mtime."""

    sha256: str
    size: int
    mtime: float


@dataclass(slots=True)
class DocumentRecord:
    """One indexed file inside a container."""

    path: Path
    fingerprint: Optional[Fingerprint]
    status: ExtractionStatus = ExtractionStatus.INDEXED
    chunk_ids: List[int] = field(default_factory=list)
    error: Optional[str] = None
    updated_at: float = 0.0


@dataclass(slots=True)
class Chunk:
    """Contiguous span of document text, the unit of embedding and retrieval."""

    document_path: Path
    index: int
    start: int
    end: int
    text: str


@dataclass(slots=True)
class ChunkHit:
    """A chunk returned by a vector or keyword query."""

    path: Path
    chunk_index: int
    start: int
    end: int
    text: str
    score: float
    updated_at: float
