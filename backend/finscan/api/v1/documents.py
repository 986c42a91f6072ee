"""
Document Extraction API Router

  POST /api/v1/documents/receipts          → 202, receipt queued for extraction
  POST /api/v1/documents/statements        → 202, statement queued for extraction
  POST /api/v1/documents/statements/sync   → 200, statement processed in-request
  GET  /api/v1/documents/{job_id}/status   → job status (poll target)
  GET  /api/v1/documents                   → caller's jobs, newest first

Request lifecycle (async endpoints):
  ┌─────────────────────────────────────────────────────────┐
  │ 1. Owner id from X-User-ID (set by the upstream gateway) │
  │ 2. Upload validation (magic bytes + extension + size)    │
  │ 3. File written to upload_dir                            │
  │ 4. Job row created (status=processing)                   │
  │ 5. Pipeline handed to the JobRunner → 202 with job_id    │
  └─────────────────────────────────────────────────────────┘

Handlers stay thin: validation lives in storage.uploads, orchestration in
services.intake. Every error body is an ErrorResponse.
"""

from __future__ import annotations

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, File, Header, HTTPException, Query, Request, UploadFile, status
from fastapi.responses import JSONResponse

from finscan.core.config import Settings, get_settings
from finscan.schemas.documents import (
    RECEIPT_CONTENT_TYPES,
    STATEMENT_CONTENT_TYPES,
    DocumentKind,
    DocumentSubmitResponse,
    ErrorResponse,
    JobListResponse,
    JobStatusResponse,
    StatementSyncResponse,
    TransactionOut,
    UploadErrors,
)
from finscan.services.intake import (
    IntakeDispatcher,
    JobCreationFailed,
    JobNotFound,
    StatementProcessingFailed,
)
from finscan.storage.uploads import UploadedFile, save_upload
from finscan.workers.runner import JobQueueFull

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/documents",
    tags=["Document Extraction"],
)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_dispatcher(request: Request) -> IntakeDispatcher:
    return request.app.state.dispatcher


async def get_current_owner(
    x_user_id: Optional[str] = Header(None, alias="X-User-ID"),
) -> uuid.UUID:
    """Owner identity is asserted by the gateway; the body never carries it."""
    try:
        return uuid.UUID(x_user_id or "")
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=UploadErrors.unauthenticated().model_dump(),
        )


_ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Missing file or unsupported file type"},
    401: {"model": ErrorResponse, "description": "Missing or invalid X-User-ID"},
    413: {"model": ErrorResponse, "description": "File exceeds the upload size limit"},
    500: {"model": ErrorResponse, "description": "Internal server error"},
    503: {"model": ErrorResponse, "description": "Too many documents in flight"},
}


async def _accept(
    dispatcher: IntakeDispatcher,
    upload:     UploadedFile,
    owner_id:   uuid.UUID,
    kind:       DocumentKind,
) -> JSONResponse:
    try:
        job_id = await dispatcher.submit_document(upload, owner_id, kind)
    except JobQueueFull:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=UploadErrors.queue_full().model_dump(),
        )
    except JobCreationFailed as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=UploadErrors.storage_error(str(exc)).model_dump(),
        )

    body = DocumentSubmitResponse(job_id=job_id, kind=kind)
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content=body.model_dump(mode="json"),
        headers={"Location": f"/api/v1/documents/{job_id}/status"},
    )


def _statement_kind(upload: UploadedFile) -> DocumentKind:
    return DocumentKind.PDF_STATEMENT if upload.is_pdf else DocumentKind.IMAGE_STATEMENT


# ---------------------------------------------------------------------------
# POST /documents/receipts
# ---------------------------------------------------------------------------

@router.post(
    "/receipts",
    response_model=DocumentSubmitResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Upload a receipt image",
    description=(
        "Accepts JPEG, PNG, GIF or WEBP images. Returns 202 immediately; "
        "poll GET /documents/{job_id}/status for the extraction result."
    ),
    responses=_ERROR_RESPONSES,
)
async def upload_receipt(
    file:       Optional[UploadFile] = File(None, description="Receipt image"),
    owner_id:   uuid.UUID            = Depends(get_current_owner),
    dispatcher: IntakeDispatcher     = Depends(get_dispatcher),
    settings:   Settings             = Depends(get_settings),
) -> JSONResponse:
    upload = await save_upload(
        file,
        upload_dir=settings.upload_dir,
        max_bytes=settings.max_upload_bytes,
        allowed_types=RECEIPT_CONTENT_TYPES,
        fieldname="receipt",
    )
    return await _accept(dispatcher, upload, owner_id, DocumentKind.RECEIPT)


# ---------------------------------------------------------------------------
# POST /documents/statements
# ---------------------------------------------------------------------------

@router.post(
    "/statements",
    response_model=DocumentSubmitResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Upload a bank statement (PDF or image)",
    responses=_ERROR_RESPONSES,
)
async def upload_statement(
    file:       Optional[UploadFile] = File(None, description="Bank statement PDF or image"),
    owner_id:   uuid.UUID            = Depends(get_current_owner),
    dispatcher: IntakeDispatcher     = Depends(get_dispatcher),
    settings:   Settings             = Depends(get_settings),
) -> JSONResponse:
    upload = await save_upload(
        file,
        upload_dir=settings.upload_dir,
        max_bytes=settings.max_upload_bytes,
        allowed_types=STATEMENT_CONTENT_TYPES,
        fieldname="statement",
    )
    return await _accept(dispatcher, upload, owner_id, _statement_kind(upload))


@router.post(
    "/statements/sync",
    response_model=StatementSyncResponse,
    summary="Process a bank statement inside the request",
    description="Blocks until extraction finishes and returns the created transactions.",
    responses={
        **_ERROR_RESPONSES,
        422: {"model": ErrorResponse, "description": "Statement could not be processed"},
    },
)
async def upload_statement_sync(
    file:       Optional[UploadFile] = File(None, description="Bank statement PDF or image"),
    owner_id:   uuid.UUID            = Depends(get_current_owner),
    dispatcher: IntakeDispatcher     = Depends(get_dispatcher),
    settings:   Settings             = Depends(get_settings),
) -> StatementSyncResponse:
    upload = await save_upload(
        file,
        upload_dir=settings.upload_dir,
        max_bytes=settings.max_upload_bytes,
        allowed_types=STATEMENT_CONTENT_TYPES,
        fieldname="statement",
    )
    try:
        outcome = await dispatcher.process_statement_synchronously(
            upload, owner_id, _statement_kind(upload),
        )
    except StatementProcessingFailed as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=UploadErrors.processing_failed(exc.category.value, exc.message).model_dump(),
        )
    except JobCreationFailed as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=UploadErrors.storage_error(str(exc)).model_dump(),
        )

    created = len(outcome.transactions)
    return StatementSyncResponse(
        job_id=outcome.job_id,
        message=f"Successfully processed statement and created {created} transactions",
        transactions_created=created,
        transactions=[TransactionOut.model_validate(t) for t in outcome.transactions],
    )


# ---------------------------------------------------------------------------
# GET /documents/{job_id}/status
# ---------------------------------------------------------------------------

@router.get(
    "/{job_id}/status",
    response_model=JobStatusResponse,
    summary="Poll extraction status",
    responses={404: {"model": ErrorResponse, "description": "Unknown job for this owner"}},
)
async def get_job_status(
    job_id:     uuid.UUID,
    owner_id:   uuid.UUID        = Depends(get_current_owner),
    dispatcher: IntakeDispatcher = Depends(get_dispatcher),
) -> JobStatusResponse:
    try:
        return await dispatcher.get_job_status(job_id, owner_id)
    except JobNotFound:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=UploadErrors.job_not_found(job_id).model_dump(),
        )


# ---------------------------------------------------------------------------
# GET /documents
# ---------------------------------------------------------------------------

@router.get(
    "",
    response_model=JobListResponse,
    summary="List the caller's document jobs",
)
async def list_jobs(
    page:       int                    = Query(1, ge=1),
    limit:      int                    = Query(20, ge=1, le=100),
    kind:       Optional[DocumentKind] = Query(None),
    owner_id:   uuid.UUID              = Depends(get_current_owner),
    dispatcher: IntakeDispatcher       = Depends(get_dispatcher),
) -> JobListResponse:
    return await dispatcher.list_jobs(owner_id, page=page, limit=limit, kind=kind)
