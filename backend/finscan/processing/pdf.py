"""
PDF Text Extractor  —  direct text layer with OCR fallback
══════════════════════════════════════════════════════════

Strategy cascade:

  1. Direct parse (pypdf) of the native text layer.
       parse raised?                        → step 3
  2. Accept the direct text only if, trimmed and whitespace-collapsed,
     it is longer than 50 chars AND holds at least one alphanumeric.
       accepted                             → method = "direct"
  3. Render every page to PNG (PyMuPDF) into a call-owned temp directory,
     OCR the pages one after another, join with "--- Page N ---" markers.
                                            → method = "ocr"
  4. If steps 1–3 raised, run the render+OCR pass once more.
                                            → method = "ocr-fallback"
     If that raises too                     → ExtractionError(ExtractionFailed)

Resource discipline:
  - Each page image is deleted right after its OCR pass, pass or fail.
  - The temp directory is removed when the render pass exits.
  - A page whose OCR fails is logged and skipped; the remaining pages
    still contribute text. If no page at all could be read the pass fails.
  - `on_page`, when given, is awaited after every OCR page (pass or fail);
    the pipeline uses it as the job heartbeat during long renders.

Blocking library calls (pypdf, fitz) run in the default thread executor.
"""

from __future__ import annotations

import asyncio
import io
import logging
import os
import re
import tempfile
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from finscan.processing.errors import ExtractionError, ExtractionErrorKind
from finscan.processing.ocr import OCRTextExtractor

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

MIN_DIRECT_TEXT_CHARS = 50
DEFAULT_RENDER_ZOOM = 2.0

_WHITESPACE = re.compile(r"\s+")

PageCallback = Callable[[], Awaitable[object]]


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass
class ParsedPdf:
    """Output of a direct text-layer parse."""
    text:       str
    page_count: int
    info:       dict = field(default_factory=dict)


@dataclass
class RenderedPage:
    page_number: int     # 1-based
    path:        str


@dataclass
class PDFExtractionResult:
    """
    text              : extracted text (page markers included for OCR methods)
    page_count        : pages in the document
    extraction_method : "direct" | "ocr" | "ocr-fallback"
    document_info     : PDF metadata (title, producer, ...) when available
    """
    text:              str
    page_count:        int
    extraction_method: str
    document_info:     dict = field(default_factory=dict)


def has_selectable_text(text: str) -> bool:
    collapsed = _WHITESPACE.sub(" ", text or "").strip()
    return len(collapsed) > MIN_DIRECT_TEXT_CHARS and any(ch.isalnum() for ch in collapsed)


# ---------------------------------------------------------------------------
# Collaborator contracts
# ---------------------------------------------------------------------------

class PdfParser(ABC):
    @abstractmethod
    async def parse(self, data: bytes) -> ParsedPdf:
        """Parse raw PDF bytes into text + page count + info."""


class PdfRenderer(ABC):
    @abstractmethod
    async def render(self, pdf_path: str, output_dir: str) -> list[RenderedPage]:
        """Render every page of `pdf_path` to an image inside `output_dir`."""


# ---------------------------------------------------------------------------
# Library-backed implementations
# ---------------------------------------------------------------------------

class PypdfParser(PdfParser):
    """Reads the native text layer with pypdf."""

    async def parse(self, data: bytes) -> ParsedPdf:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._parse_sync, data)

    def _parse_sync(self, data: bytes) -> ParsedPdf:
        """Blocking parse — runs in thread executor."""
        from pypdf import PdfReader

        reader = PdfReader(io.BytesIO(data))
        texts = [(page.extract_text() or "") for page in reader.pages]

        info: dict = {}
        if reader.metadata:
            info = {
                str(key).lstrip("/"): str(value)
                for key, value in reader.metadata.items()
                if value is not None
            }
        return ParsedPdf(text="\n".join(texts), page_count=len(reader.pages), info=info)


class PyMuPDFRenderer(PdfRenderer):
    """Rasterizes pages with PyMuPDF (fitz) for the OCR pass."""

    def __init__(self, zoom: float = DEFAULT_RENDER_ZOOM) -> None:
        self._zoom = zoom

    async def render(self, pdf_path: str, output_dir: str) -> list[RenderedPage]:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._render_sync, pdf_path, output_dir)

    def _render_sync(self, pdf_path: str, output_dir: str) -> list[RenderedPage]:
        import fitz  # PyMuPDF; imported here to avoid module-level import cost

        pages: list[RenderedPage] = []
        doc = fitz.open(pdf_path)
        try:
            matrix = fitz.Matrix(self._zoom, self._zoom)
            for index, page in enumerate(doc):
                out = os.path.join(output_dir, f"page-{index + 1}.png")
                page.get_pixmap(matrix=matrix).save(out)
                pages.append(RenderedPage(page_number=index + 1, path=out))
        finally:
            doc.close()
        return pages


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------

class PDFTextExtractor:
    """
    PDF → text with the direct / OCR / OCR-fallback cascade.

    Usage:
        extractor = PDFTextExtractor(PypdfParser(), PyMuPDFRenderer(), ocr_extractor)
        result = await extractor.extract("/uploads/statement-123.pdf")
        result.extraction_method   # "direct" | "ocr" | "ocr-fallback"
    """

    def __init__(
        self,
        parser:   PdfParser,
        renderer: PdfRenderer,
        ocr:      OCRTextExtractor,
    ) -> None:
        self._parser = parser
        self._renderer = renderer
        self._ocr = ocr

    async def extract(self, path: str, on_page: PageCallback | None = None) -> PDFExtractionResult:
        if not os.path.isfile(path):
            raise ExtractionError(ExtractionErrorKind.FILE_NOT_FOUND, f"PDF file not found: {path}")

        t0 = time.monotonic()
        try:
            result = await self._extract_with_cascade(path, on_page)
        except Exception as exc:
            logger.warning(
                "PDF extraction failed, retrying OCR fallback | file=%s error=%s",
                os.path.basename(path), exc,
            )
            try:
                text, page_count = await self._ocr_pages(path, on_page)
            except Exception as fallback_exc:
                logger.error(
                    "PDF OCR fallback failed | file=%s error=%s",
                    os.path.basename(path), fallback_exc,
                )
                raise ExtractionError(
                    ExtractionErrorKind.EXTRACTION_FAILED,
                    f"Failed to extract text from PDF: {fallback_exc}",
                ) from fallback_exc
            result = PDFExtractionResult(
                text=text, page_count=page_count, extraction_method="ocr-fallback",
            )

        logger.info(
            "PDF | file=%s method=%s pages=%d chars=%d elapsed_ms=%.0f",
            os.path.basename(path), result.extraction_method, result.page_count,
            len(result.text), (time.monotonic() - t0) * 1000,
        )
        return result

    async def _extract_with_cascade(self, path: str, on_page: PageCallback | None) -> PDFExtractionResult:
        loop = asyncio.get_event_loop()
        data = await loop.run_in_executor(None, _read_bytes, path)

        parsed: ParsedPdf | None
        try:
            parsed = await self._parser.parse(data)
        except Exception as exc:
            logger.info("Direct PDF parse failed, switching to OCR | error=%s", exc)
            parsed = None

        if parsed is not None and has_selectable_text(parsed.text):
            return PDFExtractionResult(
                text=parsed.text.strip(),
                page_count=parsed.page_count,
                extraction_method="direct",
                document_info=parsed.info,
            )

        text, rendered_count = await self._ocr_pages(path, on_page)
        return PDFExtractionResult(
            text=text,
            page_count=parsed.page_count if parsed is not None else rendered_count,
            extraction_method="ocr",
            document_info=parsed.info if parsed is not None else {},
        )

    async def _ocr_pages(self, path: str, on_page: PageCallback | None = None) -> tuple[str, int]:
        """
        Render + OCR every page sequentially.
        Returns (joined_text, rendered_page_count).
        """
        with tempfile.TemporaryDirectory(prefix="finscan-pdf-") as workdir:
            pages = await self._renderer.render(path, workdir)
            chunks: list[str] = []
            failed = 0

            for page in pages:
                try:
                    page_text = await self._ocr.extract(page.path)
                    chunks.append(f"--- Page {page.page_number} ---\n{page_text}")
                except Exception as exc:
                    failed += 1
                    logger.warning(
                        "PDF page OCR failed, skipping | page=%d error=%s", page.page_number, exc,
                    )
                finally:
                    _remove_quietly(page.path)

                if on_page is not None:
                    await on_page()

        if pages and failed == len(pages):
            raise ExtractionError(
                ExtractionErrorKind.EXTRACTION_FAILED,
                f"OCR failed on all {len(pages)} rendered pages",
            )
        return "\n\n".join(chunks), len(pages)


def _read_bytes(path: str) -> bytes:
    with open(path, "rb") as fh:
        return fh.read()


def _remove_quietly(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Could not delete rendered page %s: %s", path, exc)
