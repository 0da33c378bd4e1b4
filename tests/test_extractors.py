"""Tests for content extraction."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from foldersearch.errors import ExtractionError
from foldersearch.ingestion.extractors import IMAGE_EXTENSIONS, ContentExtractor, extension_of


class TestContentExtractor:
    """Test ContentExtractor dispatch."""

    def test_plain_text(self, tmp_path: Path) -> None:
        """Should read text files as UTF-8."""
        path = tmp_path / "notes.md"
        path.write_text("# Título\n\ncontenuto", encoding="utf-8")

        assert ContentExtractor().extract(path) == "# Título\n\ncontenuto"

    def test_invalid_utf8_is_replaced(self, tmp_path: Path) -> None:
        """Should not fail on stray bytes."""
        path = tmp_path / "legacy.txt"
        path.write_bytes(b"caf\xe9 au lait")

        assert "au lait" in ContentExtractor().extract(path)

    def test_binary_content_raises(self, tmp_path: Path) -> None:
        """Should reject files that look binary."""
        path = tmp_path / "data.txt"
        path.write_bytes(b"abc\x00def")

        with pytest.raises(ExtractionError) as excinfo:
            ContentExtractor().extract(path)
        assert excinfo.value.path == path

    def test_missing_file_raises(self, tmp_path: Path) -> None:
        """Should wrap read errors."""
        with pytest.raises(ExtractionError):
            ContentExtractor().extract(tmp_path / "gone.txt")

    def test_unsupported_raises(self, tmp_path: Path) -> None:
        """Should reject unknown extensions."""
        path = tmp_path / "archive.zip"
        path.write_bytes(b"PK")

        with pytest.raises(ExtractionError, match="unsupported"):
            ContentExtractor().extract(path)

    def test_pdf_is_routed(self, tmp_path: Path) -> None:
        """Should hand PDFs to the PDF loader."""
        with patch(
            "foldersearch.ingestion.extractors.extract_pdf_text", return_value="pdf text"
        ) as mock_pdf:
            assert ContentExtractor().extract(tmp_path / "doc.PDF") == "pdf text"
        mock_pdf.assert_called_once_with(tmp_path / "doc.PDF")

    def test_docx(self, tmp_path: Path) -> None:
        """Should read paragraphs from Word documents."""
        import docx

        path = tmp_path / "report.docx"
        document = docx.Document()
        document.add_paragraph("First paragraph")
        document.add_paragraph("   ")
        document.add_paragraph("Second paragraph")
        document.save(str(path))

        assert ContentExtractor().extract(path) == "First paragraph\nSecond paragraph"

    def test_corrupt_docx_raises(self, tmp_path: Path) -> None:
        """Should wrap python-docx failures."""
        path = tmp_path / "broken.docx"
        path.write_bytes(b"not a zip file")

        with pytest.raises(ExtractionError, match="DOCX"):
            ContentExtractor().extract(path)

    def test_images_need_ocr(self, tmp_path: Path) -> None:
        """Should only accept images when an OCR engine is configured."""
        path = tmp_path / "scan.png"
        path.write_bytes(b"\x89PNG")
        ocr = MagicMock()
        ocr.extract.return_value = "scanned words"

        assert "png" not in ContentExtractor().supported_extensions
        assert IMAGE_EXTENSIONS <= ContentExtractor(ocr=ocr).supported_extensions
        assert ContentExtractor(ocr=ocr).extract(path) == "scanned words"
        with pytest.raises(ExtractionError):
            ContentExtractor().extract(path)

    def test_supports(self) -> None:
        """Should report support by extension, case-insensitively."""
        extractor = ContentExtractor()

        assert extractor.supports(Path("a.PY"))
        assert extractor.supports(Path("a.docx"))
        assert not extractor.supports(Path("a.exe"))


def test_extension_of() -> None:
    """Extensions are lower-cased without the dot."""
    assert extension_of(Path("/x/Report.TXT")) == "txt"
    assert extension_of(Path("/x/Makefile")) == ""
