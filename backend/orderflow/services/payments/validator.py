"""
Payment proof file validation.

Checks an uploaded proof before it is stored: allowed extension, size
limits, and a file signature (magic bytes) that agrees with the extension.
The validator also produces a filesystem-safe version of the filename.
"""

import os
import re
from dataclasses import dataclass
from typing import Optional, Protocol

from orderflow.core.logging import get_logger

logger = get_logger(__name__)

MAX_FILENAME_LENGTH = 255

# extension -> MIME type
ALLOWED_EXTENSIONS = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
    "pdf": "application/pdf",
}

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


@dataclass(frozen=True)
class FileValidationResult:
    is_valid: bool
    detected_mime_type: Optional[str] = None
    sanitized_filename: Optional[str] = None
    error: Optional[str] = None


class FileValidator(Protocol):
    """Validates a proof payload and reports its detected type."""

    def validate(self, payload: bytes, filename: str) -> FileValidationResult:
        ...


def detect_mime_type(payload: bytes) -> Optional[str]:
    """Identify a supported format from its leading bytes."""
    if payload.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if payload.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if payload.startswith((b"GIF87a", b"GIF89a")):
        return "image/gif"
    if len(payload) >= 12 and payload[:4] == b"RIFF" and payload[8:12] == b"WEBP":
        return "image/webp"
    if payload.startswith(b"%PDF"):
        return "application/pdf"
    return None


def sanitize_filename(filename: str) -> str:
    """Strip directories and replace unsafe characters."""
    name = os.path.basename(filename.replace("\\", "/")).strip()
    name = _UNSAFE_CHARS.sub("_", name).lstrip(".")
    if not name:
        name = "upload"
    if len(name) > MAX_FILENAME_LENGTH:
        stem, ext = os.path.splitext(name)
        name = stem[: MAX_FILENAME_LENGTH - len(ext)] + ext
    return name


class SignatureFileValidator:
    """Default validator based on extension and magic bytes."""

    def __init__(self, max_size_bytes: int = 10 * 1024 * 1024):
        self.max_size_bytes = max_size_bytes

    def validate(self, payload: bytes, filename: str) -> FileValidationResult:
        sanitized = sanitize_filename(filename or "")
        extension = os.path.splitext(sanitized)[1].lstrip(".").lower()

        if not payload:
            return self._reject("File is empty", sanitized)

        if len(payload) > self.max_size_bytes:
            return self._reject(
                f"File exceeds maximum size of {self.max_size_bytes} bytes", sanitized
            )

        expected_mime = ALLOWED_EXTENSIONS.get(extension)
        if expected_mime is None:
            return self._reject(
                f"File type '{extension or 'unknown'}' is not allowed", sanitized
            )

        detected = detect_mime_type(payload)
        if detected is None:
            return self._reject("File content does not match any allowed format", sanitized)

        if detected != expected_mime:
            return self._reject(
                f"File content ({detected}) does not match extension '.{extension}'",
                sanitized,
            )

        return FileValidationResult(
            is_valid=True,
            detected_mime_type=detected,
            sanitized_filename=sanitized,
        )

    def _reject(self, error: str, sanitized: str) -> FileValidationResult:
        logger.info("Proof file rejected", reason=error, filename=sanitized)
        return FileValidationResult(is_valid=False, sanitized_filename=sanitized, error=error)
