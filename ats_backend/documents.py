from __future__ import annotations

import io

import docx
import PyPDF2
from pydantic import BaseModel

from .errors import ExtractionFailed, FileTooLarge, UnsupportedFileType
from .logs import get_logger

logger = get_logger("documents")

PDF_MIME = "application/pdf"
DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
ALLOWED_MIME_TYPES = {PDF_MIME, DOCX_MIME}
MAX_UPLOAD_BYTES = 5 * 1024 * 1024


class UploadedDocument(BaseModel):
    filename: str
    content_type: str
    contents: bytes

    @property
    def size(self) -> int:
        return len(self.contents)


def normalize_content_type(content_type: str | None) -> str:
    # Drop parameters such as "; charset=binary".
    return (content_type or "").split(";", 1)[0].strip().lower()


def screen_upload(filename: str | None, content_type: str | None, contents: bytes) -> UploadedDocument:
    """Reject uploads the analysis endpoint never accepts, before any work is done."""
    mime_type = normalize_content_type(content_type)
    if mime_type not in ALLOWED_MIME_TYPES:
        raise UnsupportedFileType()
    if len(contents) > MAX_UPLOAD_BYTES:
        raise FileTooLarge()
    return UploadedDocument(filename=filename or "resume", content_type=mime_type, contents=contents)


def extract_pdf_text(contents: bytes) -> str:
    pdf_reader = PyPDF2.PdfReader(io.BytesIO(contents))
    extracted_pages: list[str] = []
    for page in pdf_reader.pages:
        extracted_pages.append(page.extract_text() or "")
    return "\n".join(extracted_pages)


def extract_docx_text(contents: bytes) -> str:
    document = docx.Document(io.BytesIO(contents))
    lines = [paragraph.text for paragraph in document.paragraphs]
    for table in document.tables:
        for row in table.rows:
            cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
            if cells:
                lines.append(" ".join(cells))
    return "\n".join(lines)


def extract(contents: bytes, mime_type: str) -> str:
    """Return the plain text of a PDF or DOCX document.

    A document with no extractable text yields a blank string; deciding that
    blank text is a failure is left to the caller.
    """
    mime_type = normalize_content_type(mime_type)
    if mime_type not in ALLOWED_MIME_TYPES:
        raise UnsupportedFileType()

    try:
        if mime_type == PDF_MIME:
            return extract_pdf_text(contents)
        return extract_docx_text(contents)
    except Exception as exc:
        logger.warning("Text extraction failed for %s: %s", mime_type, type(exc).__name__)
        raise ExtractionFailed() from exc
