# User value: This file splits score PDFs into parts and renders previews so reviewers see exactly what was cut.
import io
import logging
from dataclasses import dataclass

import pypdfium2 as pdfium
from pypdf import PdfReader, PdfWriter
from pypdf.errors import PdfReadError

from schemas.session_contract import SessionErrorCode

logger = logging.getLogger("api.pdf")


class PdfProcessingError(RuntimeError):
    def __init__(self, code: SessionErrorCode, message: str):
        super().__init__(message)
        self.code = code


@dataclass
class SplitResult:
    page_start: int
    page_end: int
    page_count: int
    data: bytes


def _reader(data: bytes) -> PdfReader:
    if not data or not data.lstrip().startswith(b"%PDF"):
        raise PdfProcessingError(SessionErrorCode.PDF_INVALID, "File is not a PDF")
    try:
        reader = PdfReader(io.BytesIO(data))
    except (PdfReadError, ValueError, OSError) as exc:
        raise PdfProcessingError(SessionErrorCode.PDF_INVALID, f"Unreadable PDF: {exc}") from exc
    if reader.is_encrypted:
        raise PdfProcessingError(SessionErrorCode.PDF_ENCRYPTED, "PDF is encrypted or password protected")
    return reader


def count_pages(data: bytes) -> int:
    reader = _reader(data)
    try:
        return len(reader.pages)
    except (PdfReadError, ValueError) as exc:
        raise PdfProcessingError(SessionErrorCode.PDF_INVALID, f"Unreadable PDF: {exc}") from exc


def extract_page_text(data: bytes, max_pages: int | None = None) -> list[str]:
    reader = _reader(data)
    texts = []
    for idx, page in enumerate(reader.pages):
        if max_pages is not None and idx >= max_pages:
            break
        try:
            texts.append(page.extract_text() or "")
        except (PdfReadError, ValueError, KeyError) as exc:
            logger.warning("pdf_text_extract_failed page=%s error=%s", idx, exc)
            texts.append("")
    return texts


def split_pdf(data: bytes, ranges: list[tuple[int, int]]) -> list[SplitResult]:
    """Cut one PDF into several. Ranges are zero-indexed and inclusive."""
    reader = _reader(data)
    total = len(reader.pages)
    results = []
    for start, end in ranges:
        if start < 0 or end < start or end >= total:
            raise PdfProcessingError(
                SessionErrorCode.SPLIT_FAILED,
                f"Page range {start}-{end} outside document with {total} pages",
            )
        writer = PdfWriter()
        for idx in range(start, end + 1):
            writer.add_page(reader.pages[idx])
        buf = io.BytesIO()
        writer.write(buf)
        results.append(SplitResult(page_start=start, page_end=end, page_count=end - start + 1, data=buf.getvalue()))
    return results


def render_page(data: bytes, page_index: int, scale: float = 1.5) -> tuple[bytes, int]:
    """Render one page to PNG. Returns (png_bytes, total_pages)."""
    try:
        pdf = pdfium.PdfDocument(data)
    except pdfium.PdfiumError as exc:
        raise PdfProcessingError(SessionErrorCode.RENDER_FAILED, f"Cannot open PDF for rendering: {exc}") from exc
    try:
        total = len(pdf)
        if page_index < 0 or page_index >= total:
            raise IndexError(page_index)
        image = pdf[page_index].render(scale=scale).to_pil()
        buf = io.BytesIO()
        image.save(buf, format="PNG")
        return buf.getvalue(), total
    finally:
        pdf.close()


def render_pages(data: bytes, max_pages: int, scale: float = 1.0) -> list[bytes]:
    try:
        pdf = pdfium.PdfDocument(data)
    except pdfium.PdfiumError as exc:
        raise PdfProcessingError(SessionErrorCode.RENDER_FAILED, f"Cannot open PDF for rendering: {exc}") from exc
    try:
        pages = []
        for idx in range(min(len(pdf), max_pages)):
            image = pdf[idx].render(scale=scale).to_pil()
            buf = io.BytesIO()
            image.save(buf, format="PNG")
            pages.append(buf.getvalue())
        return pages
    finally:
        pdf.close()
