"""
Root conftest.py — Shared fixtures for ALL tests (unit + integration)

Fixture hierarchy:
  function-scoped : owner_id, job_id, fake_engine, fake_ai, pdf_parser,
                    pdf_renderer, receipt_image, sample_pdf_bytes,
                    make_upload, mock_jobs, mock_transactions,
                    db_engine, session_factory, test_settings,
                    app_under_test, async_client

Environment strategy:
  - No PostgreSQL: repositories run against a per-test SQLite file (aiosqlite).
  - No Tesseract / PyMuPDF / OpenAI: the OCR engine, the PDF collaborators
    and the AI client are replaced by small in-file fakes that record calls.
  - Celery points at the in-memory broker; tasks are never published.

How to run:
  pytest                                   # all tests
  pytest -m unit                           # unit tests only (fast, no I/O)
  pytest -m integration                    # HTTP tests through the ASGI app
  pytest backend/tests/unit/test_ocr_extractor.py
"""

from __future__ import annotations

import asyncio
import os
import uuid
from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import AsyncClient

# ─────────────────────────────────────────────────────────────────────────────
# Patch settings BEFORE any finscan imports so modules read test config
# ─────────────────────────────────────────────────────────────────────────────

os.environ.setdefault("DATABASE_URL",          "sqlite+aiosqlite://")
os.environ.setdefault("OPENAI_API_KEY",        "sk-test-key")
os.environ.setdefault("CELERY_BROKER_URL",     "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("APP_ENV",               "development")
os.environ.setdefault("DEBUG",                 "false")

from finscan.processing.ocr import RecognitionEngine, RecognitionWorker  # noqa: E402
from finscan.storage.uploads import UploadedFile  # noqa: E402

JPEG_HEADER = b"\xff\xd8\xff\xe0\x00\x10JFIF\x00"
PNG_HEADER = b"\x89PNG\r\n\x1a\n"


# ─────────────────────────────────────────────────────────────────────────────
# Stable identifiers
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def owner_id() -> uuid.UUID:
    return uuid.UUID("aaaaaaaa-aaaa-4aaa-8aaa-aaaaaaaaaaaa")


@pytest.fixture
def other_owner_id() -> uuid.UUID:
    return uuid.UUID("bbbbbbbb-bbbb-4bbb-8bbb-bbbbbbbbbbbb")


@pytest.fixture
def job_id() -> uuid.UUID:
    return uuid.UUID("cccccccc-cccc-4ccc-8ccc-cccccccccccc")


# ─────────────────────────────────────────────────────────────────────────────
# Fake OCR engine: counts worker creation and teardown
# ─────────────────────────────────────────────────────────────────────────────

class FakeWorker(RecognitionWorker):
    def __init__(self, engine: "FakeEngine") -> None:
        self._engine = engine

    async def recognize(self, path: str) -> str:
        self._engine.recognized.append(path)
        if self._engine.delay:
            await asyncio.sleep(self._engine.delay)
        result = self._engine.text
        if callable(result):
            result = result(path)
        if isinstance(result, BaseException):
            raise result
        return result

    async def terminate(self) -> None:
        self._engine.terminated += 1
        if self._engine.terminate_error is not None:
            raise self._engine.terminate_error


class FakeEngine(RecognitionEngine):
    """
    text            : str, an exception to raise, or callable(path) → either
    delay           : seconds recognize() sleeps before answering
    create_error    : raised from create_worker() when set
    terminate_error : raised from terminate() when set (after counting)
    """

    def __init__(self, text="TOTAL 12.50") -> None:
        self.text = text
        self.delay = 0.0
        self.create_error: BaseException | None = None
        self.terminate_error: BaseException | None = None
        self.created = 0
        self.terminated = 0
        self.recognized: list[str] = []

    async def create_worker(self) -> RecognitionWorker:
        if self.create_error is not None:
            raise self.create_error
        self.created += 1
        return FakeWorker(self)


@pytest.fixture
def fake_engine() -> FakeEngine:
    return FakeEngine()


# ─────────────────────────────────────────────────────────────────────────────
# Fake AI client: scripted replies, records prompts
# ─────────────────────────────────────────────────────────────────────────────

class FakeAIClient:
    """Replies are consumed in order; an exception entry is raised instead."""

    def __init__(self, *replies) -> None:
        self.replies = list(replies)
        self.prompts: list[str] = []

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, BaseException):
            raise reply
        return reply


@pytest.fixture
def fake_ai() -> FakeAIClient:
    return FakeAIClient(
        '{"amount": 12.5, "merchant": "Corner Cafe", "date": "2024-03-02", '
        '"category": "Food & Dining", "items": [], "confidence": 0.9}'
    )


# ─────────────────────────────────────────────────────────────────────────────
# PDF collaborators
# ─────────────────────────────────────────────────────────────────────────────

STATEMENT_TEXT = (
    "First National Bank  Statement period 01/01/2024 - 01/31/2024\n"
    "01/05/2024 Salary ACME Corp 2500.00\n"
    "01/07/2024 Grocery Mart -54.20\n"
)


@pytest.fixture
def pdf_parser():
    """Mocked PdfParser returning a statement with a usable text layer."""
    from finscan.processing.pdf import ParsedPdf, PdfParser

    parser = MagicMock(spec=PdfParser)
    parser.parse = AsyncMock(
        return_value=ParsedPdf(text=STATEMENT_TEXT, page_count=1, info={"Producer": "test"})
    )
    return parser


class FakeRenderer:
    """
    PdfRenderer stand-in that writes real PNG page files into output_dir.

    page_count : pages produced per render() call
    rendered   : one list of page paths per call
    """

    def __init__(self, page_count: int = 2) -> None:
        self.page_count = page_count
        self.rendered: list[list[str]] = []

    async def render(self, pdf_path: str, output_dir: str):
        from finscan.processing.pdf import RenderedPage

        pages = []
        for number in range(1, self.page_count + 1):
            path = os.path.join(output_dir, f"page-{number}.png")
            with open(path, "wb") as fh:
                fh.write(PNG_HEADER + b"\x00" * 256)
            pages.append(RenderedPage(page_number=number, path=path))
        self.rendered.append([page.path for page in pages])
        return pages


@pytest.fixture
def pdf_renderer() -> FakeRenderer:
    return FakeRenderer()


# ─────────────────────────────────────────────────────────────────────────────
# Sample files
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def receipt_image(tmp_path) -> str:
    """A .jpg on disk large enough to pass the OCR size floor."""
    path = tmp_path / "receipt.jpg"
    path.write_bytes(JPEG_HEADER + b"\x00" * 512)
    return str(path)


@pytest.fixture
def sample_pdf_bytes() -> bytes:
    """Minimal valid PDF — passes magic-byte check (%PDF header)."""
    return (
        b"%PDF-1.4\n"
        b"1 0 obj\n<< /Type /Catalog /Pages 2 0 R >>\nendobj\n"
        b"2 0 obj\n<< /Type /Pages /Kids [3 0 R] /Count 1 >>\nendobj\n"
        b"3 0 obj\n<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] >>\nendobj\n"
        b"trailer\n<< /Size 4 /Root 1 0 R >>\n"
        b"%%EOF"
    )


@pytest.fixture
def make_upload(tmp_path):
    """Build an UploadedFile whose bytes already sit on disk."""

    def _build(
        name: str = "receipt.jpg",
        content: bytes = JPEG_HEADER + b"\x00" * 512,
        content_type: str = "image/jpeg",
    ) -> UploadedFile:
        stored = f"upload-{uuid.uuid4().hex}-{name}"
        path = tmp_path / stored
        path.write_bytes(content)
        return UploadedFile(
            original_filename=name,
            stored_filename=stored,
            path=str(path),
            content_type=content_type,
            size_bytes=len(content),
        )

    return _build


# ─────────────────────────────────────────────────────────────────────────────
# Mock repositories
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def mock_jobs():
    """Mocked JobRepository; terminal writes succeed by default."""
    from finscan.services.jobs import JobRepository

    jobs = MagicMock(spec=JobRepository)
    jobs.create        = AsyncMock()
    jobs.complete      = AsyncMock(return_value=True)
    jobs.fail          = AsyncMock(return_value=True)
    jobs.get_for_owner = AsyncMock(return_value=None)
    jobs.heartbeat     = AsyncMock(return_value=True)
    jobs.list_for_owner = AsyncMock(return_value=([], 0))
    jobs.find_orphaned = AsyncMock(return_value=[])
    return jobs


@pytest.fixture
def mock_transactions():
    """Mocked TransactionRepository; create() echoes a Transaction-like object."""
    from finscan.services.transactions import TransactionRepository

    def _create(**kwargs):
        txn = MagicMock()
        txn.id = uuid.uuid4()
        for key, value in kwargs.items():
            setattr(txn, key, value)
        return txn

    transactions = MagicMock(spec=TransactionRepository)
    transactions.create        = AsyncMock(side_effect=_create)
    transactions.get_for_owner = AsyncMock(return_value=None)
    return transactions


# ─────────────────────────────────────────────────────────────────────────────
# SQLite database
# ─────────────────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """
    Fresh SQLite file per test. A file (not :memory:) gives every session its
    own connection, so a background pipeline and a request handler never
    share one transaction.
    """
    from sqlalchemy.ext.asyncio import create_async_engine

    from finscan.db.session import create_tables

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'finscan-test.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    from finscan.db.session import build_session_factory
    return build_session_factory(db_engine)


# ─────────────────────────────────────────────────────────────────────────────
# FastAPI app wired to SQLite + fakes
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def test_settings(tmp_path):
    from finscan.core.config import Settings
    return Settings(
        database_url="sqlite+aiosqlite://",
        upload_dir=str(tmp_path / "uploads"),
        max_upload_bytes=4096,
    )


@pytest_asyncio.fixture
async def app_under_test(
    session_factory, fake_engine, fake_ai, pdf_parser, pdf_renderer, test_settings, db_engine,
):
    """
    Real routing, repositories, pipeline and JobRunner. Only the OCR engine,
    PDF collaborators and AI client are fakes. The lifespan is not run;
    app.state is populated here instead.
    """
    from finscan.core.config import get_settings
    from finscan.main import create_app
    from finscan.processing.ocr import OCRTextExtractor
    from finscan.processing.pdf import PDFTextExtractor
    from finscan.processing.structured import StructuredExtractionAdapter
    from finscan.services.intake import IntakeDispatcher
    from finscan.services.jobs import JobRepository
    from finscan.services.materializer import TransactionMaterializer
    from finscan.services.pipeline import ExtractionPipeline
    from finscan.services.transactions import TransactionRepository
    from finscan.workers.runner import JobRunner

    jobs = JobRepository(session_factory)
    transactions = TransactionRepository(session_factory)
    ocr = OCRTextExtractor(fake_engine, timeout_seconds=5)
    pdf = PDFTextExtractor(pdf_parser, pdf_renderer, ocr)
    adapter = StructuredExtractionAdapter(fake_ai, timeout_seconds=5, base_delay=0)
    pipeline = ExtractionPipeline(jobs, ocr, pdf, adapter, TransactionMaterializer(transactions))
    runner = JobRunner(max_concurrency=2, max_pending=10)

    app = create_app()
    app.state.engine = db_engine
    app.state.runner = runner
    app.state.dispatcher = IntakeDispatcher(jobs, transactions, pipeline, runner)
    app.dependency_overrides[get_settings] = lambda: test_settings

    yield app

    await runner.shutdown(grace_seconds=1)
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def async_client(app_under_test) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP test client over ASGITransport (no lifespan, no network)."""
    from httpx import ASGITransport
    transport = ASGITransport(app=app_under_test)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
