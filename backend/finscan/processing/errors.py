"""
Extraction Error Taxonomy
═════════════════════════

Two layers:

  ExtractionErrorKind   — tag attached at the point of failure (OCR validation,
                          engine start-up, recognition, timeout, AI call ...)
  ErrorCategory         — stable, user-facing category persisted on a failed
                          job together with its human-readable sentence

classify_error() maps a tagged ExtractionError straight to its category.
Untagged exceptions (library errors that escaped a wrapper) fall back to
keyword matching over the exception text, in fixed priority order; the
first rule that matches wins.

    ExtractionError(kind) ──► direct map ──────────────┐
                                                       ├──► ErrorCategory
    any other Exception ──► keyword rules (ordered) ───┘
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Failure tags
# ---------------------------------------------------------------------------

class ExtractionErrorKind(str, Enum):
    FILE_NOT_FOUND        = "FileNotFound"
    FILE_TOO_LARGE        = "FileTooLarge"
    FILE_TOO_SMALL        = "FileTooSmall"
    UNSUPPORTED_FORMAT    = "UnsupportedFormat"
    ENGINE_INIT           = "EngineInitializationError"
    RECOGNITION           = "RecognitionError"
    TIMEOUT               = "Timeout"
    CONFIGURATION         = "ConfigurationError"
    EXTRACTION_FAILED     = "ExtractionFailed"
    AI_ANALYSIS_FAILED    = "AIAnalysisFailed"


class ExtractionError(Exception):
    """Failure raised by an extractor or the AI adapter, tagged with its kind."""

    def __init__(self, kind: ExtractionErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message

    def __repr__(self) -> str:
        return f"ExtractionError(kind={self.kind.value}, message={self.message!r})"


# ---------------------------------------------------------------------------
# User-facing categories
# ---------------------------------------------------------------------------

class ErrorCategory(str, Enum):
    CONFIGURATION   = "ConfigurationError"
    CORRUPTED_IMAGE = "CorruptedOrUnsupportedImage"
    AI_ANALYSIS     = "AIAnalysisFailed"
    FILE_NOT_FOUND  = "FileNotFound"
    FILE_TOO_LARGE  = "FileTooLarge"
    TIMEOUT         = "Timeout"
    WORKER          = "WorkerError"
    GENERIC         = "GenericProcessingError"
    SYSTEM          = "SystemError"


ERROR_MESSAGES: dict[ErrorCategory, str] = {
    ErrorCategory.CONFIGURATION:
        "Document processing is misconfigured on the server. Please try again later.",
    ErrorCategory.CORRUPTED_IMAGE:
        "The image appears to be corrupted or in an unsupported format. "
        "Please upload a clear JPG, PNG or PDF.",
    ErrorCategory.AI_ANALYSIS:
        "AI analysis of the document failed. Please try again later.",
    ErrorCategory.FILE_NOT_FOUND:
        "The uploaded file could not be found for processing. Please upload it again.",
    ErrorCategory.FILE_TOO_LARGE:
        "The file is too large to process. Please upload a file under 10MB.",
    ErrorCategory.TIMEOUT:
        "Processing took too long and was stopped. Please try a smaller or clearer image.",
    ErrorCategory.WORKER:
        "The text recognition engine failed to start. Please try again.",
    ErrorCategory.GENERIC:
        "We could not process this document. Please try again with a clearer file.",
    ErrorCategory.SYSTEM:
        "An unexpected system error interrupted processing. Please upload the document again.",
}


# ---------------------------------------------------------------------------
# Classification rules
# ---------------------------------------------------------------------------

_KIND_TO_CATEGORY: dict[ExtractionErrorKind, ErrorCategory] = {
    ExtractionErrorKind.FILE_NOT_FOUND:     ErrorCategory.FILE_NOT_FOUND,
    ExtractionErrorKind.FILE_TOO_LARGE:     ErrorCategory.FILE_TOO_LARGE,
    ExtractionErrorKind.FILE_TOO_SMALL:     ErrorCategory.CORRUPTED_IMAGE,
    ExtractionErrorKind.UNSUPPORTED_FORMAT: ErrorCategory.CORRUPTED_IMAGE,
    ExtractionErrorKind.ENGINE_INIT:        ErrorCategory.WORKER,
    ExtractionErrorKind.TIMEOUT:            ErrorCategory.TIMEOUT,
    ExtractionErrorKind.CONFIGURATION:      ErrorCategory.CONFIGURATION,
    ExtractionErrorKind.EXTRACTION_FAILED:  ErrorCategory.GENERIC,
    ExtractionErrorKind.AI_ANALYSIS_FAILED: ErrorCategory.AI_ANALYSIS,
}

# Priority order matters: the first matching rule wins.
_KEYWORD_RULES: tuple[tuple[ErrorCategory, tuple[str, ...]], ...] = (
    (ErrorCategory.CONFIGURATION, (
        "dataclone", "could not be cloned", "configuration", "tesseractnotfound",
    )),
    (ErrorCategory.CORRUPTED_IMAGE, (
        "corrupt jpeg", "corrupt", "premature end", "cannot identify image",
        "unsupported image", "truncated",
    )),
    (ErrorCategory.AI_ANALYSIS, (
        "ai service", "quota", "rate limit",
    )),
    (ErrorCategory.FILE_NOT_FOUND, (
        "not found", "enoent", "no such file",
    )),
    (ErrorCategory.FILE_TOO_LARGE, (
        "too large",
    )),
    (ErrorCategory.TIMEOUT, (
        "timeout", "timed out",
    )),
    (ErrorCategory.WORKER, (
        "worker",
    )),
)


def _match_keywords(text: str) -> ErrorCategory | None:
    haystack = text.lower()
    for category, keywords in _KEYWORD_RULES:
        if any(k in haystack for k in keywords):
            return category
    return None


def classify_error(exc: BaseException) -> ErrorCategory:
    """
    Map any failure to a stable ErrorCategory.

    Tagged errors map directly. A RecognitionError still consults the
    keyword rules, because the engine message is the only signal for
    corrupted input; anything unmatched becomes GenericProcessingError.
    """
    if isinstance(exc, ExtractionError):
        if exc.kind is ExtractionErrorKind.RECOGNITION:
            return _match_keywords(exc.message) or ErrorCategory.GENERIC
        return _KIND_TO_CATEGORY.get(exc.kind, ErrorCategory.GENERIC)

    if isinstance(exc, asyncio.TimeoutError):
        return ErrorCategory.TIMEOUT
    if isinstance(exc, FileNotFoundError):
        return ErrorCategory.FILE_NOT_FOUND

    text = f"{type(exc).__name__}: {exc}"
    category = _match_keywords(text) or ErrorCategory.GENERIC
    logger.debug("Untagged error classified | type=%s category=%s", type(exc).__name__, category.value)
    return category
