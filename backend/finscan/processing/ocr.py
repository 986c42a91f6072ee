"""
OCR Text Extractor  —  Image → Text
═══════════════════════════════════

Per-call worker lifecycle
─────────────────────────
Every extract() call allocates its own recognition worker and tears it down
on every exit path (success, recognition error, timeout, cancellation).
Workers are never pooled or shared between jobs.

    validate_image_file(path)          ← precondition checks, no engine touched
          │
          ▼
    async with self._worker() as w     ← engine.create_worker()
          │
          ▼
    asyncio.wait_for(w.recognize(path), timeout)
          │
          ▼
    w.terminate()                      ← exactly once, always

Concrete engine: Tesseract via pytesseract + Pillow. Recognition is blocking,
so it runs in the default thread executor and only suspends its own task.
English only.

Text helper:
  clean_ocr_text() — normalizes raw OCR output (idempotent)
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

from finscan.processing.errors import ExtractionError, ExtractionErrorKind

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

MIN_IMAGE_BYTES = 100
MAX_IMAGE_BYTES = 10 * 1024 * 1024          # 10 MB
SUPPORTED_IMAGE_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png", ".gif", ".webp"})

OCR_TIMEOUT_SECONDS = 60.0
OCR_LANGUAGE = "eng"

_DISALLOWED_CHARS = re.compile(r"[^\w\s\d$.,\-:()/]", re.ASCII)
_WHITESPACE = re.compile(r"\s+")


# ---------------------------------------------------------------------------
# Engine contracts
# ---------------------------------------------------------------------------

class RecognitionWorker(ABC):
    """One private recognizer, owned by a single extract() call."""

    @abstractmethod
    async def recognize(self, path: str) -> str:
        """Return the raw text found in the image at `path`."""

    @abstractmethod
    async def terminate(self) -> None:
        """Release engine resources. Called exactly once per worker."""


class RecognitionEngine(ABC):
    """Factory for recognition workers."""

    @abstractmethod
    async def create_worker(self) -> RecognitionWorker:
        """Allocate a worker; raise ExtractionError on start-up failure."""


# ---------------------------------------------------------------------------
# Tesseract implementation
# ---------------------------------------------------------------------------

class TesseractWorker(RecognitionWorker):
    """
    Runs pytesseract.image_to_string in the thread executor.

    Pillow images opened by this worker are tracked and closed in
    terminate(), so a timed-out recognition does not leak file handles.
    """

    def __init__(self, language: str = OCR_LANGUAGE, timeout_seconds: float = OCR_TIMEOUT_SECONDS) -> None:
        self._language = language
        self._timeout = timeout_seconds
        self._open_images: list = []
        self._terminated = False

    async def recognize(self, path: str) -> str:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._recognize_sync, path)

    def _recognize_sync(self, path: str) -> str:
        """Blocking recognition — runs in thread executor."""
        import pytesseract
        from PIL import Image, UnidentifiedImageError

        try:
            image = Image.open(path)
            self._open_images.append(image)
            image.load()
            return pytesseract.image_to_string(
                image,
                lang=self._language,
                timeout=self._timeout,
            )
        except UnidentifiedImageError as exc:
            raise ExtractionError(
                ExtractionErrorKind.RECOGNITION,
                f"cannot identify image file: {exc}",
            ) from exc
        except RuntimeError as exc:
            # pytesseract signals its own subprocess timeout this way
            if "timeout" in str(exc).lower():
                raise ExtractionError(ExtractionErrorKind.TIMEOUT, str(exc)) from exc
            raise ExtractionError(ExtractionErrorKind.RECOGNITION, str(exc)) from exc
        except OSError as exc:
            raise ExtractionError(ExtractionErrorKind.RECOGNITION, str(exc)) from exc

    async def terminate(self) -> None:
        if self._terminated:
            return
        self._terminated = True
        for image in self._open_images:
            image.close()
        self._open_images.clear()


class TesseractEngine(RecognitionEngine):
    """
    Checks the tesseract binary is reachable before handing out a worker.

    TesseractNotFoundError   → ConfigurationError (missing binary / bad path)
    any other start-up error → EngineInitializationError
    """

    def __init__(
        self,
        tesseract_cmd:   str = "",
        language:        str = OCR_LANGUAGE,
        timeout_seconds: float = OCR_TIMEOUT_SECONDS,
    ) -> None:
        self._tesseract_cmd = tesseract_cmd
        self._language = language
        self._timeout = timeout_seconds

    async def create_worker(self) -> RecognitionWorker:
        loop = asyncio.get_event_loop()
        await loop.run_in_executor(None, self._check_engine)
        return TesseractWorker(language=self._language, timeout_seconds=self._timeout)

    def _check_engine(self) -> None:
        import pytesseract

        if self._tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = self._tesseract_cmd
        try:
            version = pytesseract.get_tesseract_version()
        except pytesseract.TesseractNotFoundError as exc:
            raise ExtractionError(
                ExtractionErrorKind.CONFIGURATION,
                f"Tesseract binary not available: {exc}",
            ) from exc
        except Exception as exc:
            raise ExtractionError(
                ExtractionErrorKind.ENGINE_INIT,
                f"Failed to initialize OCR worker: {exc}",
            ) from exc
        logger.debug("Tesseract ready | version=%s lang=%s", version, self._language)


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------

def validate_image_file(path: str) -> int:
    """
    Precondition checks run before any engine is touched.

    Returns the file size in bytes.
    Raises ExtractionError(FileNotFound | FileTooSmall | FileTooLarge | UnsupportedFormat).
    """
    if not os.path.isfile(path):
        raise ExtractionError(ExtractionErrorKind.FILE_NOT_FOUND, f"Image file not found: {path}")

    size = os.path.getsize(path)
    if size <= MIN_IMAGE_BYTES:
        raise ExtractionError(
            ExtractionErrorKind.FILE_TOO_SMALL,
            f"Image file is too small ({size} bytes) to contain readable text",
        )
    if size >= MAX_IMAGE_BYTES:
        raise ExtractionError(
            ExtractionErrorKind.FILE_TOO_LARGE,
            f"Image file is too large ({size} bytes); limit is {MAX_IMAGE_BYTES} bytes",
        )

    ext = Path(path).suffix.lower()
    if ext not in SUPPORTED_IMAGE_EXTENSIONS:
        raise ExtractionError(
            ExtractionErrorKind.UNSUPPORTED_FORMAT,
            f"Unsupported image format '{ext or '<none>'}'",
        )
    return size


class OCRTextExtractor:
    """
    Image → raw text, bounded by a timeout, one private worker per call.

    Usage:
        extractor = OCRTextExtractor(TesseractEngine())
        text = await extractor.extract("/uploads/receipt-123.jpg")
    """

    def __init__(
        self,
        engine:          RecognitionEngine,
        timeout_seconds: float = OCR_TIMEOUT_SECONDS,
    ) -> None:
        self._engine = engine
        self._timeout = timeout_seconds

    @asynccontextmanager
    async def _worker(self) -> AsyncIterator[RecognitionWorker]:
        try:
            worker = await self._engine.create_worker()
        except ExtractionError:
            raise
        except Exception as exc:
            raise ExtractionError(
                ExtractionErrorKind.ENGINE_INIT,
                f"Failed to initialize OCR worker: {exc}",
            ) from exc

        try:
            yield worker
        finally:
            try:
                await worker.terminate()
            except Exception as exc:
                # teardown failure must not mask the recognition outcome
                logger.warning("OCR worker terminate failed: %s", exc)

    async def extract(self, path: str) -> str:
        size = validate_image_file(path)
        t0 = time.monotonic()

        async with self._worker() as worker:
            try:
                text = await asyncio.wait_for(worker.recognize(path), timeout=self._timeout)
            except asyncio.TimeoutError as exc:
                logger.warning(
                    "OCR timeout | file=%s timeout_s=%.0f", os.path.basename(path), self._timeout,
                )
                raise ExtractionError(
                    ExtractionErrorKind.TIMEOUT,
                    f"OCR did not finish within {self._timeout:.0f} seconds",
                ) from exc
            except ExtractionError:
                raise
            except Exception as exc:
                raise ExtractionError(ExtractionErrorKind.RECOGNITION, str(exc)) from exc

        elapsed_ms = (time.monotonic() - t0) * 1000
        logger.info(
            "OCR | file=%s bytes=%d chars=%d elapsed_ms=%.0f",
            os.path.basename(path), size, len(text or ""), elapsed_ms,
        )
        return text or ""


# ---------------------------------------------------------------------------
# Text cleanup
# ---------------------------------------------------------------------------

def clean_ocr_text(text: str) -> str:
    """
    Normalize raw OCR output.

    Trims each line, drops blank lines, removes characters outside
    word chars / whitespace / $ . , - : ( ) /, then collapses all
    whitespace runs to a single space.  clean(clean(x)) == clean(x).
    """
    if not text:
        return ""
    lines = [line.strip() for line in text.splitlines()]
    joined = "\n".join(line for line in lines if line)
    stripped = _DISALLOWED_CHARS.sub("", joined)
    return _WHITESPACE.sub(" ", stripped).strip()
