"""
Document Extraction — Pydantic Schemas

Covers:
  - Upload constraints enforced before a job exists
  - Transient extraction results returned by the AI adapter
  - Job submission / status / list responses
  - Structured error bodies (400, 404, 413, 422, 500, 503)

Design decisions:
  - job_id is always server-generated (UUID4); never client-supplied.
  - A failed job exposes only the classified error sentence, never the raw
    engine message or a stack trace.
  - All timestamps are timezone-aware UTC datetimes.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ---------------------------------------------------------------------------
# Upload constraints: enforced before any job is created
# ---------------------------------------------------------------------------

RECEIPT_CONTENT_TYPES: frozenset[str] = frozenset(
    {"image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp"}
)

STATEMENT_CONTENT_TYPES: frozenset[str] = RECEIPT_CONTENT_TYPES | {"application/pdf"}

ALLOWED_EXTENSIONS: frozenset[str] = frozenset(
    {".jpg", ".jpeg", ".png", ".gif", ".webp", ".pdf"}
)

DEFAULT_CATEGORY = "Other"


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class DocumentKind(str, Enum):
    RECEIPT         = "receipt"
    PDF_STATEMENT   = "pdf-statement"
    IMAGE_STATEMENT = "image-statement"

    @property
    def is_statement(self) -> bool:
        return self is not DocumentKind.RECEIPT


class JobStatus(str, Enum):
    """
    Maps to document_jobs.status.
    Transitions: processing → completed | failed (both terminal)
    """
    PROCESSING = "processing"
    COMPLETED  = "completed"
    FAILED     = "failed"


class TransactionSource(str, Enum):
    MANUAL  = "manual"
    RECEIPT = "receipt"
    PDF     = "pdf"
    IMAGE   = "image"


# ---------------------------------------------------------------------------
# Extraction results (transient)
# ---------------------------------------------------------------------------

class ReceiptItem(BaseModel):
    name:     str = ""
    quantity: float = 1
    price:    float | None = None

    @field_validator("name", mode="before")
    @classmethod
    def _null_name(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("quantity", mode="before")
    @classmethod
    def _null_quantity(cls, v: Any) -> Any:
        return 1 if v is None else v


class ReceiptExtraction(BaseModel):
    """Structured receipt data as returned by the AI collaborator."""
    amount:     float | None = None
    merchant:   str | None = None
    date:       str | None = None
    category:   str = DEFAULT_CATEGORY
    items:      list[ReceiptItem] = Field(default_factory=list)
    confidence: float = 0.0

    @field_validator("category", mode="before")
    @classmethod
    def _default_category(cls, v: Any) -> Any:
        return v or DEFAULT_CATEGORY

    @field_validator("items", mode="before")
    @classmethod
    def _null_items(cls, v: Any) -> Any:
        return v or []

    @field_validator("confidence", mode="before")
    @classmethod
    def _null_confidence(cls, v: Any) -> Any:
        return 0.0 if v is None else v

    @classmethod
    def empty(cls) -> "ReceiptExtraction":
        """Zero-confidence result used when the AI response cannot be parsed."""
        return cls(amount=None, merchant=None, date=None, category=DEFAULT_CATEGORY,
                   items=[], confidence=0.0)


class StatementLine(BaseModel):
    """One transaction detected on a bank statement."""
    date:        str
    description: str
    amount:      float
    type:        Literal["income", "expense"]
    category:    str | None = None

    @field_validator("type", mode="before")
    @classmethod
    def _lower_type(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v


# ---------------------------------------------------------------------------
# Transaction view
# ---------------------------------------------------------------------------

class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id:              UUID
    type:            str
    amount:          float
    category:        str
    description:     str | None = None
    date:            datetime
    source:          str
    receipt_url:     str | None = None
    metadata:        dict = Field(default_factory=dict, validation_alias="tx_metadata")
    document_job_id: UUID | None = None


# ---------------------------------------------------------------------------
# Job responses
# ---------------------------------------------------------------------------

class JobError(BaseModel):
    """Classified failure — message is the user-facing category sentence."""
    message:   str
    type:      str
    timestamp: datetime | None = None


class DocumentSubmitResponse(BaseModel):
    """Returned immediately (HTTP 202); extraction continues in the background."""
    job_id:  UUID
    kind:    DocumentKind
    status:  JobStatus = JobStatus.PROCESSING
    message: str = "Document uploaded successfully. Processing in background."


class JobStatusResponse(BaseModel):
    """Polled by clients to track async processing progress."""
    job_id:            UUID
    kind:              DocumentKind
    original_filename: str
    status:            JobStatus
    extracted_data:    dict | None = None
    transaction:       TransactionOut | None = None
    error:             JobError | None = None
    created_at:        datetime
    updated_at:        datetime


class JobListItem(BaseModel):
    job_id:                UUID
    kind:                  DocumentKind
    original_filename:     str
    status:                JobStatus
    linked_transaction_id: UUID | None = None
    created_at:            datetime


class JobListResponse(BaseModel):
    jobs:           list[JobListItem]
    current_page:   int
    total_pages:    int
    total_items:    int
    items_per_page: int


class StatementSyncResponse(BaseModel):
    job_id:               UUID
    message:              str
    transactions_created: int
    transactions:         list[TransactionOut]


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """One problem inside an ErrorResponse (a field, a classified category, ...)."""
    field:   str | None = Field(None, description="Offending request field or header, when there is one")
    message: str
    code:    str         = Field(..., description="Error code or error category")


class ErrorResponse(BaseModel):
    """Body of every 4xx/5xx answer. `error_code` is stable; `message` is for people."""
    error_code:    str              = Field(..., description="Stable code, e.g. FILE_TOO_LARGE")
    message:       str              = Field(..., description="Sentence safe to show to the user")
    details:       list[ErrorDetail] = Field(default_factory=list)
    request_id:    str | None       = Field(None, description="X-Request-ID of the failed request")


# ---------------------------------------------------------------------------
# Error factories used by the upload routes and app handlers
# ---------------------------------------------------------------------------

class UploadErrors:
    """One static constructor per error_code the API can return."""

    @staticmethod
    def unauthenticated() -> ErrorResponse:
        return ErrorResponse(
            error_code="UNAUTHENTICATED",
            message="A valid X-User-ID header is required.",
            details=[
                ErrorDetail(
                    field="X-User-ID",
                    message="Header must carry the caller's user id as a UUID.",
                    code="UNAUTHENTICATED",
                )
            ],
        )

    @staticmethod
    def missing_file() -> ErrorResponse:
        return ErrorResponse(
            error_code="MISSING_FILE",
            message="Attach the receipt or statement as the 'file' form field.",
            details=[
                ErrorDetail(
                    field="file",
                    message="Missing or empty multipart field.",
                    code="MISSING_FILE",
                )
            ],
        )

    @staticmethod
    def unsupported_file_type(filename: str, detected_type: str, allowed: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="UNSUPPORTED_FILE_TYPE",
            message=f"Documents of type '{detected_type}' cannot be processed here.",
            details=[
                ErrorDetail(
                    field="file",
                    message=f"'{filename}' has an unsupported type '{detected_type}'. Allowed: {allowed}.",
                    code="UNSUPPORTED_FILE_TYPE",
                )
            ],
        )

    @staticmethod
    def file_too_large(size_bytes: int, limit_bytes: int) -> ErrorResponse:
        max_mb = limit_bytes // (1024 * 1024)
        return ErrorResponse(
            error_code="FILE_TOO_LARGE",
            message=f"Documents larger than {max_mb} MB are not accepted.",
            details=[
                ErrorDetail(
                    field="file",
                    message=f"Received {size_bytes:,} bytes; limit is {limit_bytes:,} bytes.",
                    code="FILE_TOO_LARGE",
                )
            ],
        )

    @staticmethod
    def storage_error(detail: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="STORAGE_ERROR",
            message="The document could not be registered. Please upload it again.",
            details=(
                [ErrorDetail(field=None, message=detail, code="STORAGE_ERROR")]
                if detail
                else []
            ),
        )

    @staticmethod
    def queue_full() -> ErrorResponse:
        return ErrorResponse(
            error_code="QUEUE_FULL",
            message="Too many documents are being processed right now. Please retry shortly.",
            details=[],
        )

    @staticmethod
    def processing_failed(category: str, message: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="PROCESSING_FAILED",
            message=message,
            details=[ErrorDetail(field=None, message=message, code=category)],
        )

    @staticmethod
    def internal_error(request_id: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="Something went wrong on our side. Quote the request id if you contact support.",
            details=[],
            request_id=request_id,
        )

    @staticmethod
    def job_not_found(job_id: UUID) -> ErrorResponse:
        return ErrorResponse(
            error_code="JOB_NOT_FOUND",
            message=f"Document job '{job_id}' was not found.",
            details=[],
        )
