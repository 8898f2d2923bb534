"""Document → structured JSON conversion (plain text per page)."""

from __future__ import annotations

import io
from pathlib import PurePath
from typing import Any

from extraction_queue.core.errors import ConversionError


def _pdf_pages(document: bytes) -> list[str]:
    from pdfminer.high_level import extract_text

    text = extract_text(io.BytesIO(document))
    # pdfminer separates pages with form feeds
    return [page for page in text.split("\f")]


def _docx_pages(document: bytes) -> list[str]:
    from docx import Document

    doc = Document(io.BytesIO(document))
    return ["\n".join(p.text for p in doc.paragraphs)]


def _xlsx_pages(document: bytes) -> list[str]:
    from openpyxl import load_workbook

    wb = load_workbook(filename=io.BytesIO(document), data_only=True, read_only=True)
    pages: list[str] = []
    for ws in wb.worksheets:
        rows: list[str] = []
        for row in ws.iter_rows(values_only=True):
            cells = [str(c) for c in row if c is not None]
            if cells:
                rows.append("\t".join(cells))
        pages.append("\n".join(rows))
    return pages


class PdfTextConverter:
    """Default converter: text extraction for PDF, DOCX, XLSX and plain text."""

    def convert(self, document: bytes, filename: str) -> dict[str, Any]:
        suffix = PurePath(filename).suffix.lower()
        try:
            if suffix == ".pdf":
                pages = _pdf_pages(document)
            elif suffix == ".docx":
                pages = _docx_pages(document)
            elif suffix in {".xlsx", ".xlsm"}:
                pages = _xlsx_pages(document)
            elif suffix in {".txt", ".csv", ""}:
                pages = [document.decode("utf-8", errors="replace")]
            else:
                raise ConversionError(f"Unsupported document type: {suffix or filename}")
        except ConversionError:
            raise
        except Exception as e:
            raise ConversionError(f"Failed to convert {filename}: {type(e).__name__}: {e}") from e

        pages = [p for p in pages if p.strip()]
        if not pages:
            raise ConversionError(f"No text content found in {filename}")
        return {
            "filename": filename,
            "pages": [{"page": i + 1, "text": text} for i, text in enumerate(pages)],
            "text": "\n\n".join(pages),
        }
