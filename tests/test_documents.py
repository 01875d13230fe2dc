"""Tests for document type detection and text extraction."""

import asyncio

import fitz  # PyMuPDF
import pytest

from po_pipeline.core.documents import (
    DocumentReader,
    check_size,
    decode_text,
    detect_file_type,
    extract_pdf_text,
    read_document,
)
from po_pipeline.core.exceptions import DocumentError, InvalidDocumentError, PDFTooLargeError
from po_pipeline.core.models import DocumentKind


def make_pdf(pages):
    """Build an in-memory PDF with one text block per page."""
    doc = fitz.open()
    for text in pages:
        page = doc.new_page()
        if text:
            page.insert_text((72, 72), text)
    data = doc.tobytes()
    doc.close()
    return data


class TestDetectFileType:

    def test_declared_mime_type_wins(self):
        assert detect_file_type(b"anything", "application/pdf; charset=binary") == (DocumentKind.PDF, "application/pdf")
        assert detect_file_type(b"anything", "IMAGE/PNG") == (DocumentKind.IMAGE, "image/png")
        assert detect_file_type(b"a,b\n1,2", "text/csv") == (DocumentKind.TEXT, "text/csv")

    @pytest.mark.parametrize("head, expected", [
        (b"%PDF-1.7\n", (DocumentKind.PDF, "application/pdf")),
        (b"\xff\xd8\xff\xe0\x00\x10JFIF", (DocumentKind.IMAGE, "image/jpeg")),
        (b"\x89PNG\r\n\x1a\n\x00\x00", (DocumentKind.IMAGE, "image/png")),
        (b"GIF89a\x01\x00", (DocumentKind.IMAGE, "image/gif")),
        (b"RIFF\x24\x00\x00\x00WEBPVP8 ", (DocumentKind.IMAGE, "image/webp")),
    ])
    def test_magic_numbers(self, head, expected):
        assert detect_file_type(head, "application/octet-stream") == expected

    def test_unknown_content_is_text(self):
        assert detect_file_type(b"PO Number: 1", None) == (DocumentKind.TEXT, "text/plain")


class TestCheckSize:

    def test_within_limit(self):
        assert check_size("po.pdf", b"x" * 1024, max_size_mb=1.0) < 1.0

    def test_exceeds_limit(self):
        with pytest.raises(PDFTooLargeError) as exc_info:
            check_size("po.pdf", b"x" * 2048, max_size_mb=0.001)

        assert "exceeds maximum allowed size" in str(exc_info.value)
        assert exc_info.value.source == "po.pdf"


class TestExtractPdfText:

    def test_pages_are_joined(self):
        text, page_count = extract_pdf_text(make_pdf(["PO Number: 4500123", "Total: 99.00"]), "po.pdf")

        assert page_count == 2
        assert "PO Number: 4500123" in text
        assert "Total: 99.00" in text
        assert text.index("4500123") < text.index("99.00")

    def test_corrupt_pdf(self):
        with pytest.raises(InvalidDocumentError):
            extract_pdf_text(b"%PDF-1.4 this is not really a pdf", "broken.pdf")

    def test_pdf_without_text_layer(self):
        with pytest.raises(InvalidDocumentError) as exc_info:
            extract_pdf_text(make_pdf([""]), "scan.pdf")

        assert "no extractable text" in str(exc_info.value)


class TestDecodeText:

    def test_utf8_with_bom(self):
        assert decode_text("\ufeffPO Number: 1".encode("utf-8")) == "PO Number: 1"

    def test_cp1252_fallback(self):
        assert decode_text(b"Caf\xe9 \x93quoted\x94") == "Caf\u00e9 \u201cquoted\u201d"

    def test_blank_text_is_invalid(self):
        with pytest.raises(InvalidDocumentError):
            decode_text(b"   \n ")


class TestReadDocument:

    def test_pdf(self):
        content = read_document(make_pdf(["PO Number: 4500123"]), "po.pdf", "application/pdf")

        assert content.kind == DocumentKind.PDF
        assert content.page_count == 1
        assert "4500123" in content.text

    def test_image_keeps_bytes(self):
        data = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32
        content = read_document(data, "scan.png")

        assert content.is_image
        assert content.image_bytes == data
        assert content.text is None

    def test_text(self):
        content = read_document(b"PO Number: 7", "po.txt", "text/plain")

        assert content.kind == DocumentKind.TEXT
        assert content.text == "PO Number: 7"
        assert content.size_bytes == 12

    def test_empty_content(self):
        with pytest.raises(InvalidDocumentError):
            read_document(b"", "empty.pdf", "application/pdf")


class TestDocumentReader:

    @pytest.mark.asyncio
    async def test_read(self):
        reader = DocumentReader(fd_limit=2)

        content = await reader.read(make_pdf(["PO Number: 1"]), "po.pdf", "application/pdf")

        assert "PO Number: 1" in content.text

    @pytest.mark.asyncio
    async def test_concurrent_reads(self):
        reader = DocumentReader(fd_limit=2)
        documents = [make_pdf([f"PO Number: {i}"]) for i in range(5)]

        contents = await asyncio.gather(*(reader.read(d, f"po{i}.pdf") for i, d in enumerate(documents)))

        assert [f"PO Number: {i}" in c.text for i, c in enumerate(contents)] == [True] * 5

    @pytest.mark.asyncio
    async def test_errors_are_document_errors(self):
        reader = DocumentReader(max_size_mb=0.0001)

        with pytest.raises(DocumentError):
            await reader.read(b"x" * 1024, "big.txt", "text/plain")
