"""
Unit Tests — IntakeDispatcher
═════════════════════════════
Submission, the outer failure guard and status reads. Repositories and the
pipeline are mocked; the JobRunner is real so scheduling behaves as in
production.

Coverage targets:
  ✅ submit returns the job id before the pipeline finishes
  ✅ job creation failure → JobCreationFailed, upload deleted, nothing scheduled
  ✅ runner full → job force-failed (SystemError), upload deleted, JobQueueFull
  ✅ pipeline escape → SystemError written by the outer guard
  ✅ cancellation → SystemError written, cancellation propagates
  ✅ force-fail write failure is logged, never raised
  ✅ synchronous statement path success / failure (including a lost terminal write)
  ✅ status view: owner scoping, linked transaction, classified error
"""

from __future__ import annotations

import asyncio
import os
import uuid
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from finscan.models.documents import DocumentJob, Transaction
from finscan.processing.errors import ERROR_MESSAGES, ErrorCategory
from finscan.schemas.documents import DocumentKind, JobStatus
from finscan.services.intake import (
    IntakeDispatcher,
    JobCreationFailed,
    JobNotFound,
    StatementProcessingFailed,
)
from finscan.services.pipeline import ExtractionPipeline, PipelineOutcome
from finscan.workers.runner import JobQueueFull, JobRunner

NOW = datetime(2024, 3, 2, 9, 30, tzinfo=timezone.utc)


@pytest.fixture
def pipeline(job_id):
    pipeline = MagicMock(spec=ExtractionPipeline)
    pipeline.run = AsyncMock(
        return_value=PipelineOutcome(job_id=job_id, status=JobStatus.COMPLETED)
    )
    return pipeline


@pytest.fixture
def runner() -> JobRunner:
    return JobRunner(max_concurrency=2, max_pending=5)


@pytest.fixture
def dispatcher(mock_jobs, mock_transactions, pipeline, runner, job_id) -> IntakeDispatcher:
    mock_jobs.create.return_value = SimpleNamespace(id=job_id)
    return IntakeDispatcher(mock_jobs, mock_transactions, pipeline, runner)


def _job_row(job_id, owner_id, **overrides) -> DocumentJob:
    fields = dict(
        id=job_id,
        owner_id=owner_id,
        kind="receipt",
        original_filename="receipt.jpg",
        stored_filename="receipt-1-2.jpg",
        file_path="/uploads/receipt-1-2.jpg",
        mime_type="image/jpeg",
        size_bytes=2048,
        status="processing",
        created_at=NOW,
        updated_at=NOW,
    )
    fields.update(overrides)
    return DocumentJob(**fields)


# ─────────────────────────────────────────────────────────────────────────────
# Submission
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestSubmit:

    async def test_returns_job_id_and_schedules_pipeline(
        self, dispatcher, pipeline, runner, mock_jobs, owner_id, job_id, make_upload,
    ):
        upload = make_upload()

        returned = await dispatcher.submit_document(upload, owner_id, DocumentKind.RECEIPT)

        assert returned == job_id
        assert runner.pending == 1
        assert await runner.drain(timeout=1)
        pipeline.run.assert_awaited_once_with(
            job_id, owner_id=owner_id, kind=DocumentKind.RECEIPT, upload=upload,
        )
        mock_jobs.fail.assert_not_awaited()

    async def test_job_creation_failure(
        self, dispatcher, pipeline, runner, mock_jobs, owner_id, make_upload,
    ):
        upload = make_upload()
        mock_jobs.create.side_effect = RuntimeError("connection refused")

        with pytest.raises(JobCreationFailed):
            await dispatcher.submit_document(upload, owner_id, DocumentKind.RECEIPT)

        assert not os.path.exists(upload.path)
        assert runner.pending == 0
        pipeline.run.assert_not_awaited()

    async def test_queue_full_force_fails_job(
        self, mock_jobs, mock_transactions, pipeline, owner_id, job_id, make_upload,
    ):
        mock_jobs.create.return_value = SimpleNamespace(id=job_id)
        runner = JobRunner(max_pending=1)
        release = asyncio.Event()
        runner.submit(uuid.uuid4(), release.wait())
        dispatcher = IntakeDispatcher(mock_jobs, mock_transactions, pipeline, runner)
        upload = make_upload()

        with pytest.raises(JobQueueFull):
            await dispatcher.submit_document(upload, owner_id, DocumentKind.RECEIPT)

        mock_jobs.fail.assert_awaited_once_with(job_id, ErrorCategory.SYSTEM)
        assert not os.path.exists(upload.path)
        pipeline.run.assert_not_awaited()

        release.set()
        await runner.drain(timeout=1)


# ─────────────────────────────────────────────────────────────────────────────
# Outer guard
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestOuterGuard:

    async def test_pipeline_escape_writes_system_error(
        self, dispatcher, pipeline, runner, mock_jobs, owner_id, job_id, make_upload,
    ):
        pipeline.run.side_effect = RuntimeError("database went away during fail()")

        await dispatcher.submit_document(make_upload(), owner_id, DocumentKind.RECEIPT)
        await runner.drain(timeout=1)

        mock_jobs.fail.assert_awaited_once_with(job_id, ErrorCategory.SYSTEM)

    async def test_force_fail_write_error_is_swallowed(
        self, dispatcher, pipeline, runner, mock_jobs, owner_id, make_upload, caplog,
    ):
        pipeline.run.side_effect = RuntimeError("pipeline bug")
        mock_jobs.fail.side_effect = RuntimeError("database still down")

        await dispatcher.submit_document(make_upload(), owner_id, DocumentKind.RECEIPT)
        await runner.drain(timeout=1)

        assert "Force-fail write failed" in caplog.text
        assert "JobRunner task crashed" not in caplog.text

    async def test_cancellation_writes_system_error(
        self, dispatcher, pipeline, runner, mock_jobs, owner_id, job_id, make_upload,
    ):
        async def _hang(*args, **kwargs):
            await asyncio.sleep(10)

        pipeline.run.side_effect = _hang

        await dispatcher.submit_document(make_upload(), owner_id, DocumentKind.RECEIPT)
        await asyncio.sleep(0.01)
        await runner.shutdown(grace_seconds=0.01)

        mock_jobs.fail.assert_awaited_once_with(job_id, ErrorCategory.SYSTEM)

    async def test_guard_after_successful_write_is_noop(
        self, dispatcher, pipeline, runner, mock_jobs, owner_id, make_upload,
    ):
        # the pipeline already completed the job, then something escaped
        pipeline.run.side_effect = RuntimeError("late failure")
        mock_jobs.fail.return_value = False

        await dispatcher.submit_document(make_upload(), owner_id, DocumentKind.RECEIPT)
        await runner.drain(timeout=1)

        mock_jobs.fail.assert_awaited_once()


# ─────────────────────────────────────────────────────────────────────────────
# Synchronous statement path
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestSynchronousStatement:

    async def test_success_returns_outcome(self, dispatcher, pipeline, owner_id, job_id, make_upload):
        txn = SimpleNamespace(id=uuid.uuid4())
        pipeline.run.return_value = PipelineOutcome(
            job_id=job_id, status=JobStatus.COMPLETED, transactions=[txn],
        )

        outcome = await dispatcher.process_statement_synchronously(
            make_upload("march.pdf", b"%PDF-1.4", "application/pdf"),
            owner_id,
            DocumentKind.PDF_STATEMENT,
        )

        assert outcome.job_id == job_id
        assert outcome.transactions == [txn]

    async def test_failed_job_raises_with_category(self, dispatcher, pipeline, owner_id, job_id, make_upload):
        pipeline.run.return_value = PipelineOutcome(
            job_id=job_id, status=JobStatus.FAILED, error_category=ErrorCategory.AI_ANALYSIS,
        )

        with pytest.raises(StatementProcessingFailed) as exc_info:
            await dispatcher.process_statement_synchronously(
                make_upload(), owner_id, DocumentKind.IMAGE_STATEMENT,
            )

        assert exc_info.value.category is ErrorCategory.AI_ANALYSIS
        assert exc_info.value.message == ERROR_MESSAGES[ErrorCategory.AI_ANALYSIS]

    async def test_escaped_error_raises_system_error(
        self, dispatcher, pipeline, mock_jobs, owner_id, job_id, make_upload,
    ):
        pipeline.run.side_effect = RuntimeError("bug")

        with pytest.raises(StatementProcessingFailed) as exc_info:
            await dispatcher.process_statement_synchronously(
                make_upload(), owner_id, DocumentKind.IMAGE_STATEMENT,
            )

        assert exc_info.value.category is ErrorCategory.SYSTEM
        mock_jobs.fail.assert_awaited_once_with(job_id, ErrorCategory.SYSTEM)

    async def test_lost_terminal_write_raises_system_error(
        self, dispatcher, pipeline, owner_id, job_id, make_upload,
    ):
        # orphan recovery failed the job after its transactions were written
        pipeline.run.return_value = PipelineOutcome(
            job_id=job_id, status=JobStatus.COMPLETED,
            transactions=[SimpleNamespace(id=uuid.uuid4())], written=False,
        )

        with pytest.raises(StatementProcessingFailed) as exc_info:
            await dispatcher.process_statement_synchronously(
                make_upload("march.pdf", b"%PDF-1.4", "application/pdf"),
                owner_id,
                DocumentKind.PDF_STATEMENT,
            )

        assert exc_info.value.category is ErrorCategory.SYSTEM
        assert exc_info.value.job_id == job_id


# ─────────────────────────────────────────────────────────────────────────────
# Reads
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestStatusReads:

    async def test_unknown_job_raises(self, dispatcher, owner_id, job_id):
        with pytest.raises(JobNotFound):
            await dispatcher.get_job_status(job_id, owner_id)

    async def test_completed_job_with_transaction(
        self, dispatcher, mock_jobs, mock_transactions, owner_id, job_id,
    ):
        txn_id = uuid.uuid4()
        mock_jobs.get_for_owner.return_value = _job_row(
            job_id, owner_id,
            status="completed",
            extracted_data={"amount": 18.75, "confidence": 0.9},
            linked_transaction_id=txn_id,
        )
        mock_transactions.get_for_owner.return_value = Transaction(
            id=txn_id,
            owner_id=owner_id,
            type="expense",
            amount=18.75,
            category="Food & Dining",
            description="Corner Cafe - Auto-extracted",
            date=NOW,
            source="receipt",
            receipt_url="/uploads/receipt-1-2.jpg",
            tx_metadata={"confidence": 0.9},
            document_job_id=job_id,
        )

        status = await dispatcher.get_job_status(job_id, owner_id)

        assert status.status is JobStatus.COMPLETED
        assert status.kind is DocumentKind.RECEIPT
        assert status.extracted_data["amount"] == 18.75
        assert status.transaction.id == txn_id
        assert status.transaction.metadata == {"confidence": 0.9}
        assert status.error is None
        mock_transactions.get_for_owner.assert_awaited_once_with(txn_id, owner_id)

    async def test_failed_job_exposes_classified_error(self, dispatcher, mock_jobs, owner_id, job_id):
        mock_jobs.get_for_owner.return_value = _job_row(
            job_id, owner_id,
            status="failed",
            error_type="CorruptedOrUnsupportedImage",
            error_message=ERROR_MESSAGES[ErrorCategory.CORRUPTED_IMAGE],
            error_at=NOW,
        )

        status = await dispatcher.get_job_status(job_id, owner_id)

        assert status.status is JobStatus.FAILED
        assert status.error.type == "CorruptedOrUnsupportedImage"
        assert status.error.message == ERROR_MESSAGES[ErrorCategory.CORRUPTED_IMAGE]
        assert status.transaction is None

    async def test_list_jobs(self, dispatcher, mock_jobs, owner_id, job_id):
        mock_jobs.list_for_owner.return_value = ([_job_row(job_id, owner_id)], 41)

        listing = await dispatcher.list_jobs(owner_id, page=2, limit=20)

        assert listing.total_items == 41
        assert listing.total_pages == 3
        assert listing.current_page == 2
        assert listing.jobs[0].job_id == job_id
        mock_jobs.list_for_owner.assert_awaited_once_with(owner_id, page=2, limit=20, kind=None)
