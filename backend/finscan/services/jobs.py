"""
Job State Machine  —  document_jobs persistence
═══════════════════════════════════════════════

    processing ──complete()──► completed
        │
        └────────fail()──────► failed

Both terminal writes are conditional updates:

    UPDATE document_jobs SET ... WHERE id = :id AND status = 'processing'

so whichever writer gets there first wins and every later attempt is a
no-op that returns False. This is what lets the pipeline's own failure
handler, the intake dispatcher's outer guard and orphan recovery all
race safely for the same job.

heartbeat() uses the same WHERE clause to bump updated_at. The pipeline
calls it between stages, so a live job never looks orphaned, and a job
that orphan recovery has already failed is noticed before any
transaction is written for it.

Every repository method opens its own short transaction; nothing holds a
session across the (slow) OCR / AI stages.
"""

from __future__ import annotations

import logging
import math
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from finscan.db.session import session_scope
from finscan.models.documents import DocumentJob
from finscan.processing.errors import ERROR_MESSAGES, ErrorCategory
from finscan.schemas.documents import DocumentKind, JobStatus
from finscan.storage.uploads import UploadedFile

logger = logging.getLogger(__name__)


class JobRepository:
    """
    Async repository over document_jobs.

    One instance is built in the application lifespan and shared; it holds
    only the session factory.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create(
        self,
        *,
        owner_id: uuid.UUID,
        kind:     DocumentKind,
        upload:   UploadedFile,
    ) -> DocumentJob:
        job = DocumentJob(
            id=uuid.uuid4(),
            owner_id=owner_id,
            kind=kind.value,
            original_filename=upload.original_filename,
            stored_filename=upload.stored_filename,
            file_path=upload.path,
            mime_type=upload.content_type,
            size_bytes=upload.size_bytes,
            status=JobStatus.PROCESSING.value,
        )
        async with session_scope(self._session_factory) as session:
            session.add(job)
            await session.flush()

        logger.info(
            "Job created | job=%s owner=%s kind=%s file=%s size=%d",
            job.id, owner_id, kind.value, upload.stored_filename, upload.size_bytes,
        )
        return job

    # ------------------------------------------------------------------
    # Terminal writes (exactly once)
    # ------------------------------------------------------------------

    async def complete(
        self,
        job_id:                uuid.UUID,
        *,
        ocr_text:              str | None,
        extracted_data:        dict,
        linked_transaction_id: uuid.UUID | None = None,
    ) -> bool:
        stmt = (
            update(DocumentJob)
            .where(
                DocumentJob.id == job_id,
                DocumentJob.status == JobStatus.PROCESSING.value,
            )
            .values(
                status=JobStatus.COMPLETED.value,
                ocr_text=ocr_text,
                extracted_data=extracted_data,
                linked_transaction_id=linked_transaction_id,
                updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        written = await self._write_if_processing(stmt)
        if written:
            logger.info(
                "Job completed | job=%s linked_transaction=%s", job_id, linked_transaction_id,
            )
        else:
            logger.warning("Job complete ignored (already terminal) | job=%s", job_id)
        return written

    async def fail(
        self,
        job_id:   uuid.UUID,
        category: ErrorCategory,
        message:  str | None = None,
    ) -> bool:
        now = datetime.now(timezone.utc)
        stmt = (
            update(DocumentJob)
            .where(
                DocumentJob.id == job_id,
                DocumentJob.status == JobStatus.PROCESSING.value,
            )
            .values(
                status=JobStatus.FAILED.value,
                error_type=category.value,
                error_message=message or ERROR_MESSAGES[category],
                error_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        written = await self._write_if_processing(stmt)
        if written:
            logger.info("Job failed | job=%s error_type=%s", job_id, category.value)
        else:
            logger.warning(
                "Job fail ignored (already terminal) | job=%s error_type=%s", job_id, category.value,
            )
        return written

    async def _write_if_processing(self, stmt) -> bool:
        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)
            return result.rowcount == 1

    # ------------------------------------------------------------------
    # Liveness
    # ------------------------------------------------------------------

    async def heartbeat(self, job_id: uuid.UUID) -> bool:
        """
        Refresh updated_at while the job is still `processing`.

        Returns False once the job is terminal (typically force-failed by
        orphan recovery); the pipeline stops at that point.
        """
        stmt = (
            update(DocumentJob)
            .where(
                DocumentJob.id == job_id,
                DocumentJob.status == JobStatus.PROCESSING.value,
            )
            .values(updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        alive = await self._write_if_processing(stmt)
        if not alive:
            logger.warning("Job heartbeat rejected (no longer processing) | job=%s", job_id)
        return alive

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_for_owner(self, job_id: uuid.UUID, owner_id: uuid.UUID) -> DocumentJob | None:
        async with session_scope(self._session_factory) as session:
            return await session.scalar(
                select(DocumentJob).where(
                    DocumentJob.id == job_id,
                    DocumentJob.owner_id == owner_id,
                )
            )

    async def list_for_owner(
        self,
        owner_id: uuid.UUID,
        *,
        page:  int = 1,
        limit: int = 20,
        kind:  DocumentKind | None = None,
    ) -> tuple[list[DocumentJob], int]:
        """Newest first. Returns (jobs_on_page, total_matching)."""
        page = max(page, 1)
        limit = max(min(limit, 100), 1)

        filters = [DocumentJob.owner_id == owner_id]
        if kind is not None:
            filters.append(DocumentJob.kind == kind.value)

        async with session_scope(self._session_factory) as session:
            total = await session.scalar(
                select(func.count()).select_from(DocumentJob).where(*filters)
            )
            rows = await session.scalars(
                select(DocumentJob)
                .where(*filters)
                .order_by(DocumentJob.created_at.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            return list(rows), int(total or 0)

    async def find_orphaned(self, older_than: datetime) -> list[uuid.UUID]:
        """Jobs still `processing` whose last update is before `older_than`."""
        async with session_scope(self._session_factory) as session:
            rows = await session.scalars(
                select(DocumentJob.id).where(
                    DocumentJob.status == JobStatus.PROCESSING.value,
                    DocumentJob.updated_at < older_than,
                )
            )
            return list(rows)


def total_pages(total: int, limit: int) -> int:
    return math.ceil(total / limit) if limit else 0


# ---------------------------------------------------------------------------
# Orphaned-job recovery
# ---------------------------------------------------------------------------

async def recover_orphaned_jobs(jobs: JobRepository, older_than_seconds: int) -> int:
    """
    Force-fail jobs stuck in `processing` (process crash, lost task).

    Runs once at application start-up and periodically from Celery beat.
    Returns the number of jobs actually transitioned.
    """
    cutoff = datetime.now(timezone.utc) - timedelta(seconds=older_than_seconds)
    orphaned = await jobs.find_orphaned(cutoff)

    recovered = 0
    for job_id in orphaned:
        if await jobs.fail(job_id, ErrorCategory.SYSTEM):
            recovered += 1

    if orphaned:
        logger.warning(
            "Orphaned jobs recovered | found=%d failed=%d older_than_s=%d",
            len(orphaned), recovered, older_than_seconds,
        )
    return recovered
