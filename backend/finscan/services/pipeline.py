"""
Extraction Pipeline  —  one job, start to terminal write
════════════════════════════════════════════════════════

Receipt:
    OCR → clean → AI (receipt) → materialize (gated) → complete(job, linked_txn)

Statement (pdf-statement | image-statement):
    PDF cascade or OCR → AI (statement lines) → materialize each line
        → complete(job)        upload file removed afterwards

Any exception raised by a stage is classified and written as the job's
failure (category + its human-readable sentence). If that failure write
itself raises, the exception propagates to the intake dispatcher's outer
guard, which force-writes SystemError.

A materialization error on a receipt does not fail the job: the
extraction is still recorded, only without a linked transaction.

Heartbeats: the job's updated_at is refreshed before every stage (and
after every rendered PDF page). If a heartbeat finds the job already
terminal, usually because orphan recovery failed it, the run stops with
JobAbandoned: no further stage runs, no transaction is written and the
outcome reports written=False.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field

from finscan.models.documents import Transaction
from finscan.processing.errors import ERROR_MESSAGES, ErrorCategory, classify_error
from finscan.processing.ocr import OCRTextExtractor, clean_ocr_text
from finscan.processing.patterns import (
    extract_receipt_patterns,
    extract_transaction_tables,
    parse_statement_lines,
)
from finscan.processing.pdf import PDFTextExtractor
from finscan.processing.structured import StructuredExtractionAdapter
from finscan.schemas.documents import DocumentKind, JobStatus, TransactionSource
from finscan.services.jobs import JobRepository
from finscan.services.materializer import TransactionMaterializer
from finscan.storage.uploads import UploadedFile, discard_upload

logger = logging.getLogger(__name__)


class JobAbandoned(Exception):
    """The job left `processing` while this run was still working on it."""

    def __init__(self, job_id: uuid.UUID, stage: str) -> None:
        super().__init__(f"Job {job_id} is no longer processing (stage={stage})")
        self.job_id = job_id
        self.stage = stage


@dataclass
class PipelineOutcome:
    """
    job_id         : the job this run belonged to
    status         : terminal status reached (COMPLETED or FAILED)
    transactions   : transactions created by this run
    error_category : set when status is FAILED
    written        : False when another writer had already finalized the job
    """
    job_id:         uuid.UUID
    status:         JobStatus
    transactions:   list[Transaction] = field(default_factory=list)
    error_category: ErrorCategory | None = None
    written:        bool = True


class ExtractionPipeline:
    """
    Stateless per run; one instance is built in the lifespan and shared.

    Usage:
        outcome = await pipeline.run(job_id, owner_id=owner, kind=DocumentKind.RECEIPT, upload=upload)
    """

    def __init__(
        self,
        jobs:         JobRepository,
        ocr:          OCRTextExtractor,
        pdf:          PDFTextExtractor,
        adapter:      StructuredExtractionAdapter,
        materializer: TransactionMaterializer,
    ) -> None:
        self._jobs = jobs
        self._ocr = ocr
        self._pdf = pdf
        self._adapter = adapter
        self._materializer = materializer

    async def run(
        self,
        job_id:   uuid.UUID,
        *,
        owner_id: uuid.UUID,
        kind:     DocumentKind,
        upload:   UploadedFile,
    ) -> PipelineOutcome:
        t0 = time.monotonic()
        logger.info("Pipeline start | job=%s kind=%s file=%s", job_id, kind.value, upload.stored_filename)

        try:
            await self._checkpoint(job_id, "start")
            if kind is DocumentKind.RECEIPT:
                outcome = await self._run_receipt(job_id, owner_id, upload)
            else:
                outcome = await self._run_statement(job_id, owner_id, kind, upload)
        except JobAbandoned as exc:
            logger.warning(
                "Pipeline abandoned, job already terminal | job=%s kind=%s stage=%s",
                job_id, kind.value, exc.stage,
            )
            outcome = PipelineOutcome(
                job_id=job_id,
                status=JobStatus.FAILED,
                error_category=ErrorCategory.SYSTEM,
                written=False,
            )
        except Exception as exc:
            category = classify_error(exc)
            logger.error(
                "Pipeline failed | job=%s kind=%s category=%s error=%r",
                job_id, kind.value, category.value, exc,
            )
            written = await self._jobs.fail(job_id, category, ERROR_MESSAGES[category])
            outcome = PipelineOutcome(
                job_id=job_id,
                status=JobStatus.FAILED,
                error_category=category,
                written=written,
            )
        finally:
            if kind.is_statement:
                discard_upload(upload.path)

        logger.info(
            "Pipeline done | job=%s status=%s transactions=%d elapsed_ms=%.0f",
            job_id, outcome.status.value, len(outcome.transactions),
            (time.monotonic() - t0) * 1000,
        )
        return outcome

    async def _checkpoint(self, job_id: uuid.UUID, stage: str) -> None:
        if not await self._jobs.heartbeat(job_id):
            raise JobAbandoned(job_id, stage)

    # ------------------------------------------------------------------
    # Receipts
    # ------------------------------------------------------------------

    async def _run_receipt(
        self,
        job_id:   uuid.UUID,
        owner_id: uuid.UUID,
        upload:   UploadedFile,
    ) -> PipelineOutcome:
        raw_text = await self._ocr.extract(upload.path)
        clean_text = clean_ocr_text(raw_text)
        await self._checkpoint(job_id, "ai")
        extraction = await self._adapter.analyze_receipt(clean_text)
        await self._checkpoint(job_id, "materialize")

        txn: Transaction | None = None
        try:
            txn = await self._materializer.materialize_receipt(
                job_id=job_id,
                owner_id=owner_id,
                extraction=extraction,
                ocr_text=clean_text,
                stored_filename=upload.stored_filename,
            )
        except Exception:
            logger.exception("Receipt materialization failed, completing without transaction | job=%s", job_id)

        extracted_data = extraction.model_dump()
        extracted_data["pattern_candidates"] = extract_receipt_patterns(raw_text)

        written = await self._jobs.complete(
            job_id,
            ocr_text=clean_text,
            extracted_data=extracted_data,
            linked_transaction_id=txn.id if txn is not None else None,
        )
        return PipelineOutcome(
            job_id=job_id,
            status=JobStatus.COMPLETED,
            transactions=[txn] if txn is not None else [],
            written=written,
        )

    # ------------------------------------------------------------------
    # Statements
    # ------------------------------------------------------------------

    async def _run_statement(
        self,
        job_id:   uuid.UUID,
        owner_id: uuid.UUID,
        kind:     DocumentKind,
        upload:   UploadedFile,
    ) -> PipelineOutcome:
        if kind is DocumentKind.PDF_STATEMENT:
            pdf_result = await self._pdf.extract(
                upload.path, on_page=lambda: self._jobs.heartbeat(job_id),
            )
            text = pdf_result.text
            method = pdf_result.extraction_method
            page_count = pdf_result.page_count
            source = TransactionSource.PDF
        else:
            # keep line breaks: statement rows are line oriented
            text = (await self._ocr.extract(upload.path)).strip()
            method = "ocr"
            page_count = 1
            source = TransactionSource.IMAGE

        await self._checkpoint(job_id, "ai")
        lines = await self._adapter.analyze_statement(text)
        await self._checkpoint(job_id, "materialize")
        created = await self._materializer.materialize_statement(
            job_id=job_id,
            owner_id=owner_id,
            lines=lines,
            source=source,
        )

        extracted_data = {
            "transactions":            [line.model_dump() for line in lines],
            "created_transaction_ids": [str(txn.id) for txn in created],
            "extraction_method":       method,
            "page_count":              page_count,
            "pattern_candidates":      [c.model_dump() for c in parse_statement_lines(text)],
            "transaction_tables":      extract_transaction_tables(text),
        }
        written = await self._jobs.complete(
            job_id,
            ocr_text=text,
            extracted_data=extracted_data,
        )
        return PipelineOutcome(
            job_id=job_id,
            status=JobStatus.COMPLETED,
            transactions=created,
            written=written,
        )
