"""Format extraction — raw file bytes + declared media type → plain text.

Extractors are looked up in an :class:`ExtractorRegistry` keyed by the
normalized media type.  Adding a format means registering one more
object with an ``extract(data) -> ExtractedText`` method::

    registry = default_registry()
    registry.register("application/rtf", RtfExtractor())
    extracted = registry.extract(data, "application/rtf")

Every extractor's output is normalized (NFC, control characters removed,
whitespace collapsed, at most one blank line between paragraphs) so the
chunker always sees the same paragraph delimiters regardless of format.
"""

from __future__ import annotations

import io
import logging
import re
import unicodedata
from collections.abc import Iterable
from typing import Any, Protocol

from pydantic import BaseModel, Field

from nexusgov_rag.errors import EmptyExtraction, ExtractionFailure, UnsupportedFormat

logger = logging.getLogger(__name__)

PDF = "application/pdf"
DOCX = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
XLSX = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
XLS = "application/vnd.ms-excel"
TEXT_TYPES = ("text/plain", "text/markdown", "text/csv")


class ExtractedText(BaseModel):
    """Plain text recovered from a file, plus format-specific metadata."""

    text: str
    page_count: int | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class Extractor(Protocol):
    def extract(self, data: bytes) -> ExtractedText: ...


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def normalize_media_type(media_type: str) -> str:
    """``"Text/Plain; charset=UTF-8"`` → ``"text/plain"``."""
    return (media_type or "").split(";", 1)[0].strip().lower()


def normalize_text(text: str) -> str:
    """Unicode NFC, strip control chars, collapse whitespace, keep paragraphs."""
    text = unicodedata.normalize("NFC", text)
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = re.sub(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]", "", text)  # ctrl chars
    text = re.sub(r"[^\S\n]+", " ", text)  # collapse spaces (keep \n)
    text = re.sub(r" *\n *", "\n", text)  # no spaces around line breaks
    text = re.sub(r"\n{3,}", "\n\n", text)  # max one blank line
    return text.strip()


# ---------------------------------------------------------------------------
# Extractors
# ---------------------------------------------------------------------------


class PdfExtractor:
    """PDF text via ``pypdf``; pages are separated by a blank line."""

    def extract(self, data: bytes) -> ExtractedText:
        from pypdf import PdfReader

        reader = PdfReader(io.BytesIO(data))
        pages = [page.extract_text() or "" for page in reader.pages]
        info = {}
        if reader.metadata:
            info = {str(k).lstrip("/"): str(v) for k, v in reader.metadata.items()}
        return ExtractedText(
            text="\n\n".join(pages),
            page_count=len(reader.pages),
            metadata={"info": info},
        )


class DocxExtractor:
    """Word (OOXML) text via ``python-docx``.

    Body paragraphs are separated by a blank line so each one reaches the
    chunker as its own paragraph; every table follows as one block of
    tab-separated rows.
    """

    def extract(self, data: bytes) -> ExtractedText:
        from docx import Document as DocxDocument

        doc = DocxDocument(io.BytesIO(data))
        blocks = [p.text for p in doc.paragraphs if p.text.strip()]
        for table in doc.tables:
            blocks.append("\n".join("\t".join(cell.text for cell in row.cells) for row in table.rows))
        props = doc.core_properties
        return ExtractedText(
            text="\n\n".join(blocks),
            metadata={
                "paragraph_count": len(doc.paragraphs),
                "table_count": len(doc.tables),
                "author": props.author or None,
                "title": props.title or None,
            },
        )


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _sheet_block(title: str, rows: Iterable[Iterable[Any]]) -> str:
    """``=== title ===`` followed by the sheet's non-empty rows, tab-separated."""
    lines = []
    for row in rows:
        cells = [_cell_text(value) for value in row]
        if any(cells):
            lines.append("\t".join(cells).rstrip())
    return f"=== {title} ===\n" + "\n".join(lines)


class SpreadsheetExtractor:
    """Excel (OOXML) via ``openpyxl``; each sheet becomes a labeled block."""

    def extract(self, data: bytes) -> ExtractedText:
        from openpyxl import load_workbook

        workbook = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
        try:
            blocks = [_sheet_block(sheet.title, sheet.iter_rows(values_only=True)) for sheet in workbook.worksheets]
            sheet_names = list(workbook.sheetnames)
        finally:
            workbook.close()
        return ExtractedText(
            text="\n\n".join(blocks),
            metadata={"sheet_count": len(sheet_names), "sheet_names": sheet_names},
        )


class LegacySpreadsheetExtractor:
    """Excel 97-2003 (``.xls``) via ``xlrd``, in the same block layout as :class:`SpreadsheetExtractor`."""

    def extract(self, data: bytes) -> ExtractedText:
        import xlrd

        book = xlrd.open_workbook(file_contents=data, on_demand=True)
        try:
            blocks = []
            for sheet in book.sheets():
                rows = (sheet.row_values(r) for r in range(sheet.nrows))
                blocks.append(_sheet_block(sheet.name, rows))
            sheet_names = list(book.sheet_names())
        finally:
            book.release_resources()
        return ExtractedText(
            text="\n\n".join(blocks),
            metadata={"sheet_count": len(sheet_names), "sheet_names": sheet_names},
        )


class PlainTextExtractor:
    """UTF-8 decode; a leading BOM is dropped and invalid bytes are replaced."""

    def extract(self, data: bytes) -> ExtractedText:
        return ExtractedText(text=data.decode("utf-8-sig", errors="replace"))


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ExtractorRegistry:
    """Maps normalized media types to extractor implementations."""

    def __init__(self) -> None:
        self._extractors: dict[str, Extractor] = {}

    def register(self, media_type: str, extractor: Extractor) -> None:
        self._extractors[normalize_media_type(media_type)] = extractor

    def is_supported(self, media_type: str) -> bool:
        return normalize_media_type(media_type) in self._extractors

    @property
    def media_types(self) -> list[str]:
        return sorted(self._extractors)

    def extract(self, data: bytes, media_type: str) -> ExtractedText:
        """Extract and normalize text from *data*.

        Raises
        ------
        UnsupportedFormat
            No extractor is registered for *media_type*.
        ExtractionFailure
            The extractor could not parse the bytes.
        EmptyExtraction
            The normalized text is empty.
        """
        key = normalize_media_type(media_type)
        extractor = self._extractors.get(key)
        if extractor is None:
            raise UnsupportedFormat(media_type)

        try:
            extracted = extractor.extract(data)
        except Exception as exc:
            raise ExtractionFailure(f"{key} extraction failed: {exc}") from exc

        text = normalize_text(extracted.text)
        if not text:
            raise EmptyExtraction()

        logger.debug("Extracted %d characters from %d bytes (%s)", len(text), len(data), key)
        return extracted.model_copy(update={"text": text})


def default_registry() -> ExtractorRegistry:
    """Registry with PDF, Word, Excel (both formats) and plain-text support."""
    registry = ExtractorRegistry()
    registry.register(PDF, PdfExtractor())
    registry.register(DOCX, DocxExtractor())
    registry.register(XLSX, SpreadsheetExtractor())
    registry.register(XLS, LegacySpreadsheetExtractor())
    for media_type in TEXT_TYPES:
        registry.register(media_type, PlainTextExtractor())
    return registry


def extract(data: bytes, media_type: str) -> ExtractedText:
    """Extract text with the default registry."""
    return default_registry().extract(data, media_type)
