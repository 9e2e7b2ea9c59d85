import io
import threading

import docx
import pytest
from fastapi.testclient import TestClient
from reportlab.lib.pagesizes import A4
from reportlab.pdfgen import canvas

from ats_backend.analysis import AnalysisWorkflow
from ats_backend.auth import CredentialService
from ats_backend.config import Settings
from ats_backend.main import Services, create_app
from ats_backend.scoring import ScoreResult
from ats_backend.store import AccountStore

TEST_SECRET = "test-secret"

JOB_DESCRIPTION = (
    "We are hiring a backend engineer with strong Python, FastAPI and PostgreSQL "
    "experience to build APIs on AWS with Docker."
)

SCORED = ScoreResult(
    score=72,
    missing_keywords=["FastAPI", "PostgreSQL", "Docker"],
    suggestions=[
        "Quantify the impact of your backend projects.",
        "Mention the cloud services you deployed to.",
        "Add a skills section listing your frameworks.",
    ],
)


class FakeScorer:
    def __init__(self, result=SCORED, error=None, barrier=None):
        self.result = result
        self.error = error
        self.barrier = barrier
        self.calls = []
        self._lock = threading.Lock()

    def score(self, resume_text, job_description):
        with self._lock:
            self.calls.append((resume_text, job_description))
        if self.barrier is not None:
            self.barrier.wait(timeout=5)
        if self.error is not None:
            raise self.error
        return self.result


class FakeExtractor:
    def __init__(self, text="Jane Doe\nPython developer with 5 years of experience."):
        self.text = text
        self.calls = []

    def __call__(self, contents, mime_type):
        self.calls.append(mime_type)
        return self.text


def make_pdf_bytes(lines):
    buffer = io.BytesIO()
    pdf = canvas.Canvas(buffer, pagesize=A4)
    y = 800
    for line in lines:
        pdf.drawString(72, y, line)
        y -= 18
    pdf.showPage()
    pdf.save()
    return buffer.getvalue()


def make_docx_bytes(paragraphs, table_rows=None):
    document = docx.Document()
    for paragraph in paragraphs:
        document.add_paragraph(paragraph)
    if table_rows:
        table = document.add_table(rows=len(table_rows), cols=len(table_rows[0]))
        for row, values in zip(table.rows, table_rows):
            for cell, value in zip(row.cells, values):
                cell.text = value
    buffer = io.BytesIO()
    document.save(buffer)
    return buffer.getvalue()


@pytest.fixture
def store(tmp_path):
    store = AccountStore(sqlite_path=str(tmp_path / "accounts.db")).open()
    yield store
    store.close()


@pytest.fixture
def credentials(store):
    return CredentialService(store, TEST_SECRET)


@pytest.fixture
def scorer():
    return FakeScorer()


@pytest.fixture
def client(tmp_path, store, credentials, scorer):
    settings = Settings(jwt_secret=TEST_SECRET, auth_db_path=str(tmp_path / "accounts.db"))
    services = Services(store, credentials, AnalysisWorkflow(store, scorer))
    app = create_app(settings, services=services)
    with TestClient(app) as test_client:
        yield test_client
