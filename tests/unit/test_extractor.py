"""Unit tests for format extraction."""

from __future__ import annotations

import io

import docx
import openpyxl
import pypdf
import pytest
import xlrd

from nexusgov_rag.errors import EmptyExtraction, ExtractionFailure, UnsupportedFormat
from nexusgov_rag.ingestion.chunker import ChunkingOptions, chunk_text
from nexusgov_rag.ingestion.extractor import (
    DOCX,
    PDF,
    XLS,
    XLSX,
    ExtractedText,
    ExtractorRegistry,
    default_registry,
    extract,
    normalize_media_type,
    normalize_text,
)


class TestNormalizeText:
    def test_collapses_whitespace_and_blank_lines(self) -> None:
        raw = "Rubrik  \r\n\r\n\r\n\r\n  Forsta\t\tstycket\n\n\nAndra"
        assert normalize_text(raw) == "Rubrik\n\nForsta stycket\n\nAndra"

    def test_strips_control_characters(self) -> None:
        assert normalize_text("a\x00b\x07c") == "abc"

    def test_unicode_nfc(self) -> None:
        assert normalize_text("a\u030a") == "\u00e5"


def test_normalize_media_type() -> None:
    assert normalize_media_type("Text/Plain; charset=UTF-8") == "text/plain"


class TestPlainText:
    @pytest.mark.parametrize("media_type", ["text/plain", "text/markdown", "text/csv"])
    def test_text_types_supported(self, media_type: str) -> None:
        result = extract("Hej världen".encode(), media_type)
        assert result.text == "Hej världen"

    def test_bom_and_invalid_bytes(self) -> None:
        result = extract(b"\xef\xbb\xbfabc \xff def", "text/plain")
        assert result.text.startswith("abc")
        assert "\ufffd" in result.text


class TestDocx:
    @staticmethod
    def _docx(paragraphs: list[str], table: list[list[str]] | None = None) -> bytes:
        doc = docx.Document()
        for text in paragraphs:
            doc.add_paragraph(text)
        if table:
            grid = doc.add_table(rows=len(table), cols=len(table[0]))
            for r, row in enumerate(table):
                for c, value in enumerate(row):
                    grid.rows[r].cells[c].text = value
        buf = io.BytesIO()
        doc.save(buf)
        return buf.getvalue()

    def test_paragraphs_and_tables(self) -> None:
        data = self._docx(["Riktlinjer for distansarbete", "Galler alla anstallda."], [["Dag", "Plats"]])

        result = extract(data, DOCX)
        assert result.text.startswith("Riktlinjer for distansarbete\n\nGaller alla anstallda.")
        assert "Dag Plats" in result.text
        assert result.metadata["table_count"] == 1

    def test_paragraphs_are_separated_by_blank_lines(self) -> None:
        paragraphs = [f"Avsnitt {i}: " + "den anstallde ska folja riktlinjerna for varje punkt " * 3 for i in range(12)]
        result = extract(self._docx(paragraphs), DOCX)

        assert result.text.count("\n\n") == len(paragraphs) - 1
        chunks = chunk_text(result.text, ChunkingOptions(chunk_size=400, chunk_overlap=0, min_chunk_size=0))
        assert len(chunks) > 1
        for chunk in chunks:
            assert chunk.content.lstrip().startswith("Avsnitt")


class TestSpreadsheet:
    def test_sheets_become_labeled_blocks(self) -> None:
        wb = openpyxl.Workbook()
        ws = wb.active
        ws.title = "Budget"
        ws.append(["Post", "Belopp"])
        ws.append(["Lokaler", 1200])
        wb.create_sheet("Tom")
        buf = io.BytesIO()
        wb.save(buf)

        result = extract(buf.getvalue(), XLSX)
        assert result.text.startswith("=== Budget ===")
        assert "Lokaler 1200" in result.text
        assert result.metadata["sheet_count"] == 2
        assert result.metadata["sheet_names"] == ["Budget", "Tom"]


class _XlsSheet:
    def __init__(self, name: str, rows: list[list[object]]) -> None:
        self.name = name
        self._rows = rows
        self.nrows = len(rows)

    def row_values(self, index: int) -> list[object]:
        return self._rows[index]


class _XlsBook:
    def __init__(self, sheets: list[_XlsSheet]) -> None:
        self._sheets = sheets
        self.released = False

    def sheets(self) -> list[_XlsSheet]:
        return self._sheets

    def sheet_names(self) -> list[str]:
        return [s.name for s in self._sheets]

    def release_resources(self) -> None:
        self.released = True


class TestLegacySpreadsheet:
    def test_sheets_become_labeled_blocks(self, monkeypatch: pytest.MonkeyPatch) -> None:
        book = _XlsBook(
            [
                _XlsSheet("Budget", [["Post", "Belopp"], ["", ""], ["Lokaler", 1200.0], ["Resor", 87.5]]),
                _XlsSheet("Tom", []),
            ]
        )
        monkeypatch.setattr(xlrd, "open_workbook", lambda **kwargs: book)

        result = extract(b"xls bytes", XLS)
        assert result.text == "=== Budget ===\nPost Belopp\nLokaler 1200\nResor 87.5\n\n=== Tom ==="
        assert result.metadata["sheet_names"] == ["Budget", "Tom"]
        assert book.released is True

    def test_corrupt_file_is_extraction_failure(self) -> None:
        with pytest.raises(ExtractionFailure):
            extract(b"not a spreadsheet", XLS)


class TestPdf:
    def test_blank_pdf_is_empty_extraction(self) -> None:
        writer = pypdf.PdfWriter()
        writer.add_blank_page(width=200, height=200)
        buf = io.BytesIO()
        writer.write(buf)

        with pytest.raises(EmptyExtraction):
            extract(buf.getvalue(), PDF)

    def test_corrupt_pdf_is_extraction_failure(self) -> None:
        with pytest.raises(ExtractionFailure):
            extract(b"not a pdf at all", PDF)


class TestRegistry:
    def test_unsupported_format(self) -> None:
        with pytest.raises(UnsupportedFormat) as exc_info:
            extract(b"...", "application/msword")
        assert exc_info.value.code == "UNSUPPORTED_FORMAT"

    def test_whitespace_only_is_empty(self) -> None:
        with pytest.raises(EmptyExtraction):
            extract(b"   \n\n\t ", "text/plain")

    def test_custom_extractor_registration(self) -> None:
        class Upper:
            def extract(self, data: bytes) -> ExtractedText:
                return ExtractedText(text=data.decode().upper())

        registry = ExtractorRegistry()
        registry.register("Application/X-Upper", Upper())
        assert registry.is_supported("application/x-upper")
        assert registry.extract(b"abc", "application/x-upper").text == "ABC"

    def test_default_media_types(self) -> None:
        types = default_registry().media_types
        assert PDF in types and DOCX in types and XLSX in types and XLS in types
        assert "application/msword" not in types
