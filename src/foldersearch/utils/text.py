"""Text helpers: deterministic chunking with character offsets."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, List, Optional


@dataclass(frozen=True, slots=True)
class TextSpan:
    """A contiguous ``[start, end)`` slice of a document's text."""

    start: int
    end: int
    text: str


@dataclass(frozen=True, slots=True)
class ChunkConfig:
    max_chars: int
    overlap: int


CODE_EXTENSIONS = frozenset(
    {"rs", "py", "js", "ts", "tsx", "jsx", "go", "java", "c", "cpp", "h", "hpp", "cs", "rb"}
)
PROSE_EXTENSIONS = frozenset({"md", "markdown", "txt", "rst", "adoc", "tex"})
CONFIG_EXTENSIONS = frozenset({"toml", "yaml", "yml", "json", "ini", "cfg", "conf", "env"})

_SEMANTIC_PATTERNS = {
    "rs": r"\n(?:pub\s+)?(?:async\s+)?(?:fn |struct |enum |impl |trait |mod )",
    "py": r"\n(?:class |def |async def )",
    "js": r"\n(?:function |class |export (?:default )?(?:function |class |const |let ))",
    "ts": r"\n(?:(?:export )?(?:function |class |interface |type |const |enum |async function ))",
    "go": r"\n(?:func |type )",
    "java": r"\n\s*(?:public |private |protected )?(?:static )?(?:class |interface |void |int |string |def )",
    "c": r"\n(?:[a-zA-Z_][a-zA-Z0-9_*\s]+\([^)]*\)\s*\{)",
    "rb": r"\n(?:class |module |def )",
    "md": r"\n#{1,6} ",
    "rst": r"\n\n",
    "txt": r"\n\n",
    "toml": r"\n\[",
    "yaml": r"\n[a-zA-Z_][a-zA-Z0-9_]*:",
}
_PATTERN_ALIASES = {
    "jsx": "js",
    "tsx": "ts",
    "cs": "java",
    "cpp": "c",
    "h": "c",
    "hpp": "c",
    "markdown": "md",
    "adoc": "rst",
    "tex": "txt",
    "bib": "txt",
    "ini": "toml",
    "cfg": "toml",
    "yml": "yaml",
}
_COMPILED: dict[str, re.Pattern[str]] = {}


def get_chunk_config(ext: str) -> ChunkConfig:
    """Chunk window sizes tuned per file family."""
    ext = ext.lower().lstrip(".")
    if ext in CODE_EXTENSIONS:
        return ChunkConfig(max_chars=1200, overlap=200)
    if ext in CONFIG_EXTENSIONS:
        return ChunkConfig(max_chars=600, overlap=100)
    # prose, tabular data and everything else
    return ChunkConfig(max_chars=800, overlap=150)


def _semantic_pattern(ext: str) -> Optional[re.Pattern[str]]:
    key = _PATTERN_ALIASES.get(ext, ext)
    source = _SEMANTIC_PATTERNS.get(key)
    if source is None:
        return None
    if key not in _COMPILED:
        _COMPILED[key] = re.compile(source)
    return _COMPILED[key]


def chunk_with_overlap(
    text: str, max_chars: int, overlap: int, *, offset: int = 0
) -> List[TextSpan]:
    """Split text into overlapping windows.

    Windows prefer to end after a newline, then after a sentence, then after a
    space. The next window starts ``overlap`` characters before the previous
    one ended. ``offset`` shifts the reported positions, for sub-chunking.
    """
    spans: List[TextSpan] = []
    if not text:
        return spans

    max_chars = max(max_chars, 1)
    start = 0
    length = len(text)
    while start < length:
        end = min(start + max_chars, length)
        if end >= length:
            spans.append(TextSpan(offset + start, offset + length, text[start:]))
            break

        window = text[start:end]
        split_at = end
        for separator in ("\n", ". ", " "):
            idx = window.rfind(separator)
            if idx > 0:
                split_at = start + idx + 1
                break

        spans.append(TextSpan(offset + start, offset + split_at, text[start:split_at]))

        rewind = min(overlap, split_at - start)
        next_start = split_at - rewind
        if next_start <= start:
            next_start = split_at
        start = next_start

    return spans


def _last_line_start(text: str, span: TextSpan) -> int:
    end = span.end
    while end > span.start and text[end - 1] == "\n":
        end -= 1
    if end == span.start:
        return span.end
    newline = text.rfind("\n", span.start, end)
    return newline + 1 if newline >= 0 else span.start


def semantic_chunk(
    text: str,
    ext: str,
    *,
    max_chars: Optional[int] = None,
    overlap: Optional[int] = None,
) -> List[TextSpan]:
    """Chunk text along language-aware boundaries.

    Segments between boundaries are packed up to ``max_chars``; each new chunk
    starts with the last line of the previous one. Oversized chunks and files
    without a known boundary pattern fall back to :func:`chunk_with_overlap`.
    Identical input always yields identical spans.
    """
    if not text.strip():
        return []

    ext = ext.lower().lstrip(".")
    config = get_chunk_config(ext)
    max_chars = max_chars or config.max_chars
    overlap = config.overlap if overlap is None else overlap

    pattern = _semantic_pattern(ext)
    if pattern is None:
        return chunk_with_overlap(text, max_chars, overlap)

    split_points = [0]
    for match in pattern.finditer(text):
        # boundaries sit right after the leading newline of the match
        pos = match.start() + 1
        if match.start() > 0 and pos > split_points[-1]:
            split_points.append(pos)
    if split_points[-1] != len(text):
        split_points.append(len(text))

    spans: List[TextSpan] = []

    def flush(start: int, end: int) -> None:
        if end - start > max_chars:
            spans.extend(chunk_with_overlap(text[start:end], max_chars, overlap, offset=start))
        else:
            spans.append(TextSpan(start, end, text[start:end]))

    current_start = 0
    current_end = 0
    for seg_start, seg_end in zip(split_points, split_points[1:]):
        if current_end > current_start and (
            current_end - current_start + seg_end - seg_start > max_chars
        ):
            flush(current_start, current_end)
            carry = _last_line_start(text, spans[-1])
            current_start = carry if spans[-1].start < carry < current_end else seg_start
        elif current_end == current_start:
            current_start = seg_start
        current_end = seg_end

    if text[current_start:current_end].strip():
        flush(current_start, current_end)

    return spans


def normalize_whitespace(lines: Iterable[str]) -> str:
    """Collapse whitespace and join lines."""
    return "\n".join(line.strip() for line in lines if line.strip())


STOP_WORDS = frozenset(
    """
    a an the is are was were be been being have has had do does did will would could
    should may might shall can to of in for on with at by from as into about between
    through during and but or nor not so yet it its this that these those i me my we
    our you your he she they them their what which who whom how when where why
    """.split()
)


def expand_query(query: str) -> List[str]:
    """Keyword-search variants of ``query``: as typed, lowercased, and without stop words."""
    variants = [query]
    lower = query.lower()
    if lower != query:
        variants.append(lower)
    words = lower.split()
    keywords = [word for word in words if word not in STOP_WORDS]
    if 2 <= len(keywords) < len(words):
        variants.append(" ".join(keywords))
    return variants
