"""
Document Processing Package
════════════════════════════

Turns an uploaded receipt or statement into structured data:

  Image / PDF → text (OCR, direct parse) → structured result (AI)

Modules
───────
  ocr.py         Image → text with validation, timeout and per-call worker teardown
  pdf.py         PDF → text: direct text layer, then page OCR, then one OCR retry
  patterns.py    Regex receipt / statement-line helpers (secondary signal)
  structured.py  AI adapter: prompts, resilient JSON parsing, retry with back-off
  errors.py      Failure tags and the user-facing error taxonomy

Design principles
─────────────────
  • Engines are injected behind small contracts so tests never need Tesseract,
    PyMuPDF or an API key.
  • Blocking library calls run in the thread executor; nothing here blocks
    the event loop.
  • Failures are tagged where they happen (ExtractionError); classification
    by message text is only a fallback.
"""

from finscan.processing.errors import (
    ERROR_MESSAGES,
    ErrorCategory,
    ExtractionError,
    ExtractionErrorKind,
    classify_error,
)
from finscan.processing.ocr import OCRTextExtractor, clean_ocr_text
from finscan.processing.pdf import PDFExtractionResult, PDFTextExtractor
from finscan.processing.structured import StructuredExtractionAdapter

__all__ = [
    "ERROR_MESSAGES",
    "ErrorCategory",
    "ExtractionError",
    "ExtractionErrorKind",
    "classify_error",
    "OCRTextExtractor",
    "clean_ocr_text",
    "PDFExtractionResult",
    "PDFTextExtractor",
    "StructuredExtractionAdapter",
]
