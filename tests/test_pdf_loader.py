"""Tests for PDF text extraction."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from foldersearch.errors import ExtractionError
from foldersearch.ingestion.pdf_loader import extract_pdf_text, iter_text_parts


def _mock_doc(*texts: str, needs_pass: bool = False) -> MagicMock:
    pages = []
    for text in texts:
        page = MagicMock()
        if isinstance(text, Exception):
            page.get_text.side_effect = text
        else:
            page.get_text.return_value = text
        pages.append(page)

    doc = MagicMock()
    doc.needs_pass = needs_pass
    doc.__len__ = MagicMock(return_value=len(pages))
    doc.__getitem__ = MagicMock(side_effect=lambda i: pages[i])
    return doc


class TestIterTextParts:
    """Test iter_text_parts function."""

    @patch("foldersearch.ingestion.pdf_loader.fitz")
    def test_iter_text_parts_multiple_pages(self, mock_fitz: MagicMock, tmp_path: Path) -> None:
        """Should extract normalized text page by page."""
        mock_fitz.open.return_value = _mock_doc("  Page 1  \n\n line", "Page 2")

        parts = list(iter_text_parts(tmp_path / "multi.pdf"))

        assert parts == ["Page 1\nline\n", "Page 2\n"]
        mock_fitz.open.return_value.close.assert_called_once()

    @patch("foldersearch.ingestion.pdf_loader.fitz")
    def test_skips_empty_pages(self, mock_fitz: MagicMock, tmp_path: Path) -> None:
        """Should drop pages without text."""
        mock_fitz.open.return_value = _mock_doc("", "   ", "Content")

        assert list(iter_text_parts(tmp_path / "a.pdf")) == ["Content\n"]

    @patch("foldersearch.ingestion.pdf_loader.fitz")
    def test_skips_broken_pages(self, mock_fitz: MagicMock, tmp_path: Path) -> None:
        """Should keep going when a single page fails."""
        mock_fitz.open.return_value = _mock_doc(RuntimeError("bad page"), "Good page")

        assert list(iter_text_parts(tmp_path / "a.pdf")) == ["Good page\n"]

    @patch("foldersearch.ingestion.pdf_loader.fitz")
    def test_open_failure_raises(self, mock_fitz: MagicMock, tmp_path: Path) -> None:
        """Should wrap open errors in ExtractionError."""
        mock_fitz.open.side_effect = RuntimeError("cannot open broken document")

        with pytest.raises(ExtractionError, match="cannot open PDF"):
            list(iter_text_parts(tmp_path / "broken.pdf"))

    @patch("foldersearch.ingestion.pdf_loader.fitz")
    def test_encrypted_raises(self, mock_fitz: MagicMock, tmp_path: Path) -> None:
        """Should refuse password-protected PDFs."""
        mock_fitz.open.return_value = _mock_doc("secret", needs_pass=True)

        with pytest.raises(ExtractionError, match="encrypted"):
            list(iter_text_parts(tmp_path / "locked.pdf"))
        mock_fitz.open.return_value.close.assert_called_once()


class TestExtractPdfText:
    """Test extract_pdf_text function."""

    @patch("foldersearch.ingestion.pdf_loader.fitz")
    def test_joins_pages(self, mock_fitz: MagicMock, tmp_path: Path) -> None:
        """Should join pages with newlines."""
        mock_fitz.open.return_value = _mock_doc("One", "Two")

        assert extract_pdf_text(tmp_path / "a.pdf") == "One\nTwo\n"
