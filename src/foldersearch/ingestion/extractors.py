"""Turn files into plain text."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import FrozenSet, Optional, Protocol, runtime_checkable

from foldersearch.errors import ExtractionError
from foldersearch.ingestion.pdf_loader import extract_pdf_text
from foldersearch.utils.text import CODE_EXTENSIONS, CONFIG_EXTENSIONS, PROSE_EXTENSIONS

LOGGER = logging.getLogger(__name__)

DATA_EXTENSIONS = frozenset({"csv", "tsv", "sql", "log"})
MARKUP_EXTENSIONS = frozenset({"html", "htm", "xml", "css", "scss", "sh", "bash", "bib", "kt", "swift", "php"})
TEXT_EXTENSIONS = CODE_EXTENSIONS | PROSE_EXTENSIONS | CONFIG_EXTENSIONS | DATA_EXTENSIONS | MARKUP_EXTENSIONS
IMAGE_EXTENSIONS = frozenset({"png", "jpg", "jpeg", "tif", "tiff", "bmp", "webp", "gif"})


@runtime_checkable
class OcrEngine(Protocol):
    """Image/scan -> text collaborator. Raises ``ExtractionError`` on failure."""

    def extract(self, path: Path) -> str: ...


def extension_of(path: Path) -> str:
    return path.suffix.lower().lstrip(".")


class ContentExtractor:
    """Dispatches a file to the right text extraction routine by extension."""

    def __init__(self, ocr: Optional[OcrEngine] = None) -> None:
        self.ocr = ocr

    @property
    def supported_extensions(self) -> FrozenSet[str]:
        extensions = TEXT_EXTENSIONS | {"pdf", "docx"}
        if self.ocr is not None:
            extensions = extensions | IMAGE_EXTENSIONS
        return frozenset(extensions)

    def supports(self, path: Path) -> bool:
        return extension_of(path) in self.supported_extensions

    def extract(self, path: Path) -> str:
        ext = extension_of(path)
        if ext in TEXT_EXTENSIONS:
            return self._extract_text(path)
        if ext == "pdf":
            return extract_pdf_text(path)
        if ext == "docx":
            return self._extract_docx(path)
        if ext in IMAGE_EXTENSIONS and self.ocr is not None:
            LOGGER.debug("Routing %s to OCR", path)
            return self.ocr.extract(path)
        raise ExtractionError(path, f"unsupported file type '.{ext}'")

    def _extract_text(self, path: Path) -> str:
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise ExtractionError(path, str(exc)) from exc
        if b"\x00" in data[:8192]:
            raise ExtractionError(path, "looks like a binary file")
        return data.decode("utf-8", errors="replace")

    def _extract_docx(self, path: Path) -> str:
        import docx  # python-docx

        try:
            document = docx.Document(str(path))
        except Exception as exc:
            raise ExtractionError(path, f"cannot open DOCX: {exc}") from exc
        return "\n".join(p.text for p in document.paragraphs if p.text.strip())
