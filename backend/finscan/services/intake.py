"""
Intake Dispatcher

Accepts a stored upload, creates its job and hands the extraction pipeline
to the JobRunner, returning the job id without waiting for extraction.

Double-layered failure protection:

    _run_guarded()                       ← outer guard (this module)
      └── ExtractionPipeline.run()       ← inner handler: classify + fail()

The inner handler turns every stage failure into a classified terminal
write. The outer guard catches whatever still escapes (the inner failure
write raising, a bug, cancellation at shutdown) and force-writes
SystemError. Terminal writes are conditional, so a guard arriving after a
successful write is a no-op.

Synchronous errors raised to the caller:
  JobCreationFailed  — job row could not be created; upload deleted
  JobQueueFull       — runner saturated; job force-failed with SystemError
"""

from __future__ import annotations

import asyncio
import logging
import uuid

from finscan.processing.errors import ERROR_MESSAGES, ErrorCategory
from finscan.schemas.documents import (
    DocumentKind,
    JobError,
    JobListItem,
    JobListResponse,
    JobStatus,
    JobStatusResponse,
    TransactionOut,
)
from finscan.services.jobs import JobRepository, total_pages
from finscan.services.pipeline import ExtractionPipeline, PipelineOutcome
from finscan.services.transactions import TransactionRepository
from finscan.storage.uploads import UploadedFile, discard_upload
from finscan.workers.runner import JobQueueFull, JobRunner

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Domain errors
# ---------------------------------------------------------------------------

class JobCreationFailed(RuntimeError):
    """The job record could not be created; nothing was scheduled."""


class JobNotFound(LookupError):
    def __init__(self, job_id: uuid.UUID) -> None:
        super().__init__(f"Document job {job_id} not found")
        self.job_id = job_id


class StatementProcessingFailed(RuntimeError):
    """Raised by the synchronous statement path when the job ends failed."""

    def __init__(self, job_id: uuid.UUID, category: ErrorCategory) -> None:
        super().__init__(ERROR_MESSAGES[category])
        self.job_id = job_id
        self.category = category
        self.message = ERROR_MESSAGES[category]


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

class IntakeDispatcher:
    """
    All collaborators are injected; one instance lives on app.state.

    Usage:
        job_id = await dispatcher.submit_document(upload, owner_id, DocumentKind.RECEIPT)
        status = await dispatcher.get_job_status(job_id, owner_id)
    """

    def __init__(
        self,
        jobs:         JobRepository,
        transactions: TransactionRepository,
        pipeline:     ExtractionPipeline,
        runner:       JobRunner,
    ) -> None:
        self._jobs         = jobs
        self._transactions = transactions
        self._pipeline     = pipeline
        self._runner       = runner

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit_document(
        self,
        upload:   UploadedFile,
        owner_id: uuid.UUID,
        kind:     DocumentKind,
    ) -> uuid.UUID:
        job_id = await self._create_job(upload, owner_id, kind)

        try:
            self._runner.submit(job_id, self._run_guarded(job_id, owner_id, kind, upload))
        except JobQueueFull:
            await self._force_fail(job_id, reason="queue full")
            discard_upload(upload.path)
            raise

        logger.info("Document accepted | job=%s owner=%s kind=%s", job_id, owner_id, kind.value)
        return job_id

    async def process_statement_synchronously(
        self,
        upload:   UploadedFile,
        owner_id: uuid.UUID,
        kind:     DocumentKind,
    ) -> PipelineOutcome:
        """
        Run a statement through the pipeline inside the request.

        Returns the outcome (job id + created transactions).
        Raises StatementProcessingFailed if the job ends failed, including
        when another writer (orphan recovery) finalized it first.
        """
        job_id = await self._create_job(upload, owner_id, kind)
        outcome = await self._run_guarded(job_id, owner_id, kind, upload)

        if outcome is None:
            raise StatementProcessingFailed(job_id, ErrorCategory.SYSTEM)
        if outcome.status is JobStatus.FAILED:
            raise StatementProcessingFailed(job_id, outcome.error_category or ErrorCategory.SYSTEM)
        if not outcome.written:
            logger.warning("Synchronous statement lost its terminal write | job=%s", job_id)
            raise StatementProcessingFailed(job_id, ErrorCategory.SYSTEM)
        return outcome

    async def _create_job(
        self,
        upload:   UploadedFile,
        owner_id: uuid.UUID,
        kind:     DocumentKind,
    ) -> uuid.UUID:
        try:
            job = await self._jobs.create(owner_id=owner_id, kind=kind, upload=upload)
        except Exception as exc:
            logger.exception("Job creation failed | owner=%s file=%s", owner_id, upload.stored_filename)
            discard_upload(upload.path)
            raise JobCreationFailed("Failed to register the uploaded document") from exc
        return job.id

    # ------------------------------------------------------------------
    # Outer guard
    # ------------------------------------------------------------------

    async def _run_guarded(
        self,
        job_id:   uuid.UUID,
        owner_id: uuid.UUID,
        kind:     DocumentKind,
        upload:   UploadedFile,
    ) -> PipelineOutcome | None:
        try:
            async with self._runner.slot():
                return await self._pipeline.run(job_id, owner_id=owner_id, kind=kind, upload=upload)
        except asyncio.CancelledError:
            logger.warning("Job cancelled before reaching a terminal state | job=%s", job_id)
            await self._force_fail(job_id, reason="cancelled")
            raise
        except Exception:
            logger.exception("Job escaped pipeline failure handling | job=%s", job_id)
            await self._force_fail(job_id, reason="unhandled")
            return None

    async def _force_fail(self, job_id: uuid.UUID, *, reason: str) -> None:
        try:
            if await self._jobs.fail(job_id, ErrorCategory.SYSTEM):
                logger.warning("Job force-failed | job=%s reason=%s", job_id, reason)
        except Exception:
            # last line of defence; orphan recovery picks the job up later
            logger.exception("Force-fail write failed | job=%s reason=%s", job_id, reason)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_job_status(self, job_id: uuid.UUID, owner_id: uuid.UUID) -> JobStatusResponse:
        job = await self._jobs.get_for_owner(job_id, owner_id)
        if job is None:
            raise JobNotFound(job_id)

        transaction = None
        if job.linked_transaction_id is not None:
            txn = await self._transactions.get_for_owner(job.linked_transaction_id, owner_id)
            if txn is not None:
                transaction = TransactionOut.model_validate(txn)

        error = None
        if job.status == JobStatus.FAILED.value:
            error = JobError(
                message=job.error_message or ERROR_MESSAGES[ErrorCategory.SYSTEM],
                type=job.error_type or ErrorCategory.SYSTEM.value,
                timestamp=job.error_at,
            )

        return JobStatusResponse(
            job_id=job.id,
            kind=DocumentKind(job.kind),
            original_filename=job.original_filename,
            status=JobStatus(job.status),
            extracted_data=job.extracted_data,
            transaction=transaction,
            error=error,
            created_at=job.created_at,
            updated_at=job.updated_at,
        )

    async def list_jobs(
        self,
        owner_id: uuid.UUID,
        *,
        page:  int = 1,
        limit: int = 20,
        kind:  DocumentKind | None = None,
    ) -> JobListResponse:
        jobs, total = await self._jobs.list_for_owner(owner_id, page=page, limit=limit, kind=kind)
        return JobListResponse(
            jobs=[
                JobListItem(
                    job_id=job.id,
                    kind=DocumentKind(job.kind),
                    original_filename=job.original_filename,
                    status=JobStatus(job.status),
                    linked_transaction_id=job.linked_transaction_id,
                    created_at=job.created_at,
                )
                for job in jobs
            ],
            current_page=page,
            total_pages=total_pages(total, limit),
            total_items=total,
            items_per_page=limit,
        )
