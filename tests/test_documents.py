import pytest
from conftest import make_docx_bytes, make_pdf_bytes

from ats_backend import documents
from ats_backend.documents import DOCX_MIME, MAX_UPLOAD_BYTES, PDF_MIME, extract, screen_upload
from ats_backend.errors import ExtractionFailed, FileTooLarge, UnsupportedFileType


def test_pdf_text_is_extracted_in_page_order():
    contents = make_pdf_bytes(["Jane Doe", "Senior Python Engineer"])
    text = extract(contents, PDF_MIME)
    assert "Jane Doe" in text
    assert text.index("Jane Doe") < text.index("Senior Python Engineer")


def test_docx_paragraphs_and_tables_are_extracted():
    contents = make_docx_bytes(["Jane Doe", "Backend developer"], table_rows=[["Skills", "Python, SQL"]])
    text = extract(contents, DOCX_MIME)
    assert "Jane Doe\nBackend developer" in text
    assert "Skills Python, SQL" in text


def test_blank_pdf_yields_blank_text():
    assert extract(make_pdf_bytes([]), PDF_MIME).strip() == ""


@pytest.mark.parametrize("mime_type", [PDF_MIME, DOCX_MIME])
def test_garbage_bytes_fail_extraction(mime_type):
    with pytest.raises(ExtractionFailed):
        extract(b"this is not a real document", mime_type)


def test_docx_bytes_declared_as_pdf_fail_extraction():
    with pytest.raises(ExtractionFailed):
        extract(make_docx_bytes(["Jane"]), PDF_MIME)


def test_extract_rejects_other_types():
    with pytest.raises(UnsupportedFileType):
        extract(b"plain text", "text/plain")


def test_screen_upload_accepts_pdf_and_docx():
    pdf = screen_upload("cv.pdf", "application/pdf", b"%PDF")
    assert pdf.content_type == PDF_MIME and pdf.size == 4
    word = screen_upload("cv.docx", DOCX_MIME + "; charset=binary", b"PK")
    assert word.content_type == DOCX_MIME


@pytest.mark.parametrize("content_type", ["text/plain", "application/msword", "image/png", None, ""])
def test_screen_upload_rejects_other_types(content_type):
    with pytest.raises(UnsupportedFileType):
        screen_upload("cv", content_type, b"data")


def test_screen_upload_size_limit():
    screen_upload("cv.pdf", PDF_MIME, b"x" * MAX_UPLOAD_BYTES)
    with pytest.raises(FileTooLarge):
        screen_upload("cv.pdf", PDF_MIME, b"x" * (MAX_UPLOAD_BYTES + 1))


def test_max_upload_is_five_mebibytes():
    assert documents.MAX_UPLOAD_BYTES == 5242880
