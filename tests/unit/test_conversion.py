import pytest

from extraction_queue.core.errors import ConversionError
from extraction_queue.extract.conversion import PdfTextConverter


def test_plain_text_becomes_single_page():
    out = PdfTextConverter().convert("Invoice 42\nTotal 10.00".encode(), "invoice.txt")
    assert out["filename"] == "invoice.txt"
    assert out["pages"] == [{"page": 1, "text": "Invoice 42\nTotal 10.00"}]
    assert out["text"] == "Invoice 42\nTotal 10.00"


def test_unsupported_type_is_a_conversion_error():
    with pytest.raises(ConversionError, match="Unsupported"):
        PdfTextConverter().convert(b"GIF89a", "logo.gif")


def test_empty_document_is_a_conversion_error():
    with pytest.raises(ConversionError, match="No text content"):
        PdfTextConverter().convert(b"   \n", "blank.txt")


def test_corrupt_pdf_is_a_conversion_error():
    with pytest.raises(ConversionError, match="Failed to convert"):
        PdfTextConverter().convert(b"not a pdf", "broken.pdf")
