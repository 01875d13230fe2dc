"""Document type detection and text extraction for uploaded purchase orders.

PDF work is synchronous PyMuPDF code; the async reader runs it in a worker
thread guarded by a file-descriptor capacity limiter.
"""

import asyncio
import logging

import fitz  # PyMuPDF

from .exceptions import DocumentError, InvalidDocumentError, PDFTooLargeError
from .models import DocumentContent, DocumentKind
from .rate_limit import CapacityLimiter

logger = logging.getLogger(__name__)

IMAGE_MIME_TYPES = {"image/jpeg", "image/png", "image/gif", "image/webp"}
TEXT_MIME_TYPES = {"text/plain", "text/csv", "application/csv"}

_MAGIC_NUMBERS: tuple[tuple[bytes, DocumentKind, str], ...] = (
    (b"%PDF", DocumentKind.PDF, "application/pdf"),
    (b"\xff\xd8\xff", DocumentKind.IMAGE, "image/jpeg"),
    (b"\x89PNG\r\n\x1a\n", DocumentKind.IMAGE, "image/png"),
    (b"GIF87a", DocumentKind.IMAGE, "image/gif"),
    (b"GIF89a", DocumentKind.IMAGE, "image/gif"),
)


def detect_file_type(content: bytes, mime_type: str | None = None) -> tuple[DocumentKind, str]:
    """Classify content by declared MIME type, falling back to magic numbers.

    Returns:
        Tuple of (kind, effective mime type)
    """
    declared = (mime_type or "").split(";")[0].strip().lower()
    if declared == "application/pdf":
        return DocumentKind.PDF, declared
    if declared in IMAGE_MIME_TYPES:
        return DocumentKind.IMAGE, declared
    if declared in TEXT_MIME_TYPES:
        return DocumentKind.TEXT, declared

    head = content[:16]
    for magic, kind, detected_mime in _MAGIC_NUMBERS:
        if head.startswith(magic):
            return kind, detected_mime
    if head[:4] == b"RIFF" and content[8:12] == b"WEBP":
        return DocumentKind.IMAGE, "image/webp"

    return DocumentKind.TEXT, declared or "text/plain"


def check_size(source: str, content: bytes, max_size_mb: float = 100.0) -> float:
    """Reject documents larger than ``max_size_mb``.

    Returns:
        Size of the content in MB

    Raises:
        PDFTooLargeError: If content exceeds the maximum size
    """
    size_mb = len(content) / (1024 * 1024)
    logger.debug(f"Document size check: {source} = {size_mb:.1f}MB")
    if size_mb > max_size_mb:
        raise PDFTooLargeError(source, size_mb, max_size_mb)
    if size_mb > max_size_mb * 0.5:
        logger.warning(f"Large document detected: {source} ({size_mb:.1f}MB)")
    return size_mb


def extract_pdf_text(content: bytes, source: str = "<bytes>") -> tuple[str, int]:
    """Extract the text layer of every page, pages separated by blank lines.

    Returns:
        Tuple of (text, page_count)

    Raises:
        InvalidDocumentError: If the PDF is corrupted, has no pages or no text layer
    """
    try:
        doc = fitz.open(stream=content, filetype="pdf")
    except (fitz.FileDataError, RuntimeError, ValueError) as e:
        raise InvalidDocumentError(source, f"PDF file is corrupted: {e}")

    try:
        page_count = doc.page_count
        if page_count == 0:
            raise InvalidDocumentError(source, "PDF has no pages")

        pages = [page.get_text("text") for page in doc]
    finally:
        doc.close()

    text = "\n\n".join(page.strip() for page in pages if page.strip())
    if not text:
        raise InvalidDocumentError(source, "PDF has no extractable text layer")

    return text, page_count


def decode_text(content: bytes, source: str = "<bytes>") -> str:
    """Decode plain-text or CSV uploads."""
    for encoding in ("utf-8-sig", "cp1252"):
        try:
            text = content.decode(encoding)
            break
        except UnicodeDecodeError:
            continue
    else:
        text = content.decode("latin-1")

    if not text.strip():
        raise InvalidDocumentError(source, "Document is empty")
    return text


def read_document(
    content: bytes,
    source: str,
    mime_type: str | None = None,
    max_size_mb: float = 100.0
) -> DocumentContent:
    """Turn raw upload bytes into text or image content for extraction."""
    if not content:
        raise InvalidDocumentError(source, "Document is empty")

    check_size(source, content, max_size_mb)
    kind, effective_mime = detect_file_type(content, mime_type)

    if kind == DocumentKind.PDF:
        text, page_count = extract_pdf_text(content, source)
        return DocumentContent(
            source=source,
            kind=kind,
            mime_type=effective_mime,
            text=text,
            page_count=page_count,
            size_bytes=len(content),
        )

    if kind == DocumentKind.IMAGE:
        return DocumentContent(
            source=source,
            kind=kind,
            mime_type=effective_mime,
            image_bytes=content,
            page_count=1,
            size_bytes=len(content),
        )

    return DocumentContent(
        source=source,
        kind=kind,
        mime_type=effective_mime,
        text=decode_text(content, source),
        page_count=1,
        size_bytes=len(content),
    )


class DocumentReader:
    """Async document reader limiting concurrent PDF work."""

    def __init__(self, fd_limit: int = 50, max_size_mb: float = 100.0):
        self.limiter = CapacityLimiter(fd_limit)
        self.max_size_mb = max_size_mb

    async def read(self, content: bytes, source: str, mime_type: str | None = None) -> DocumentContent:
        """Read a document without blocking the event loop.

        Raises:
            DocumentError: If the document cannot be read
        """
        async with self.limiter:
            try:
                return await asyncio.to_thread(read_document, content, source, mime_type, self.max_size_mb)
            except DocumentError:
                raise
            except Exception as e:
                raise DocumentError(source, "Unable to read document", e)
