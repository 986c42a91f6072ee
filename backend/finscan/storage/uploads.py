"""
Local upload storage.

Validates an incoming multipart upload and writes it under `upload_dir`
before any job exists, so every validation failure is a synchronous 4xx:

  - missing / empty file                 → 400 MISSING_FILE
  - type not allowed for the endpoint    → 400 UNSUPPORTED_FILE_TYPE
  - larger than max_upload_bytes         → 413 FILE_TOO_LARGE

The MIME type is detected from the file's magic bytes first and only falls
back to the extension; the client's Content-Type header is never trusted.

Stored names follow `<fieldname>-<epoch_ms>-<random><ext>` so two uploads of
the same file never collide.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import os
import random
import re
import time
from dataclasses import dataclass

from fastapi import HTTPException, UploadFile, status

from finscan.schemas.documents import ALLOWED_EXTENSIONS, UploadErrors

logger = logging.getLogger(__name__)

# Magic byte signatures checked against the start of the file
_MAGIC_BYTES: tuple[tuple[bytes, str], ...] = (
    (b"%PDF",              "application/pdf"),
    (b"\xff\xd8\xff",      "image/jpeg"),
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"GIF87a",            "image/gif"),
    (b"GIF89a",            "image/gif"),
)


@dataclass
class UploadedFile:
    """A validated upload that has been written to local disk."""
    original_filename: str
    stored_filename:   str
    path:              str
    content_type:      str
    size_bytes:        int

    @property
    def is_pdf(self) -> bool:
        return self.content_type == "application/pdf"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _get_extension(filename: str) -> str:
    """Return lowercased file extension including the dot."""
    parts = filename.rsplit(".", 1)
    return f".{parts[-1].lower()}" if len(parts) == 2 else ""


def _sanitize_filename(filename: str) -> str:
    """Strip directory components and unsafe characters from a client filename."""
    basename = filename.replace("\\", "/").rsplit("/", 1)[-1]
    safe = re.sub(r"[^a-zA-Z0-9._\-]", "_", basename)
    return safe[:200] or "upload"


def detect_mime_type(filename: str, head: bytes) -> str:
    for magic, mime in _MAGIC_BYTES:
        if head.startswith(magic):
            return mime
    if head[:4] == b"RIFF" and head[8:12] == b"WEBP":
        return "image/webp"

    guessed, _ = mimetypes.guess_type(filename)
    return guessed or "application/octet-stream"


def build_stored_filename(fieldname: str, original_filename: str) -> str:
    suffix = f"{int(time.time() * 1000)}-{random.randint(0, 10**9)}"
    return f"{fieldname}-{suffix}{_get_extension(original_filename)}"


def _write_file(path: str, data: bytes) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as fh:
        fh.write(data)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

async def save_upload(
    file:          UploadFile | None,
    *,
    upload_dir:    str,
    max_bytes:     int,
    allowed_types: frozenset[str],
    fieldname:     str,
) -> UploadedFile:
    """
    Validate and persist one upload.

    Raises HTTPException(400 | 413) with an ErrorResponse body on rejection.
    """
    if file is None or not file.filename:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=UploadErrors.missing_file().model_dump(),
        )

    data = await file.read()
    if not data:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=UploadErrors.missing_file().model_dump(),
        )

    if len(data) > max_bytes:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=UploadErrors.file_too_large(len(data), max_bytes).model_dump(),
        )

    original = _sanitize_filename(file.filename)
    detected = detect_mime_type(original, data[:16])
    ext = _get_extension(original)
    allowed = ", ".join(sorted(allowed_types))

    if detected not in allowed_types:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=UploadErrors.unsupported_file_type(original, detected, allowed).model_dump(),
        )
    if ext not in ALLOWED_EXTENSIONS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=UploadErrors.unsupported_file_type(original, ext or "<none>", allowed).model_dump(),
        )

    stored = build_stored_filename(fieldname, original)
    path = os.path.join(upload_dir, stored)

    loop = asyncio.get_event_loop()
    try:
        await loop.run_in_executor(None, _write_file, path, data)
    except OSError as exc:
        logger.exception("Upload write failed | path=%s", path)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=UploadErrors.storage_error(str(exc)).model_dump(),
        ) from exc

    logger.info(
        "Upload stored | file=%s stored=%s type=%s size=%d",
        original, stored, detected, len(data),
    )
    return UploadedFile(
        original_filename=original,
        stored_filename=stored,
        path=path,
        content_type=detected,
        size_bytes=len(data),
    )


def discard_upload(path: str) -> None:
    """Delete a stored upload; a file that is already gone is not an error."""
    try:
        os.remove(path)
        logger.debug("Upload removed | path=%s", path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Failed to clean up upload | path=%s error=%s", path, exc)
