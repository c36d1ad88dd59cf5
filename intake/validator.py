from dataclasses import dataclass
from enum import Enum
from pathlib import PurePosixPath
import logging
import re
from typing import BinaryIO, Mapping

import filetype

logger = logging.getLogger("intake.validator")

MAX_FILENAME_LENGTH = 255
SAFE_BASENAME_RE = re.compile(r"[A-Za-z0-9_-]+")


class RejectionKind(str, Enum):
    TOO_LARGE = "TooLarge"
    MISSING_FILE = "MissingFile"
    UNKNOWN_OR_DISALLOWED_TYPE = "UnknownOrDisallowedType"
    INVALID_FILENAME = "InvalidFilename"


REJECTION_MESSAGES = {
    RejectionKind.TOO_LARGE: "File too large",
    RejectionKind.MISSING_FILE: "No file uploaded",
    RejectionKind.UNKNOWN_OR_DISALLOWED_TYPE: "File type not allowed",
    RejectionKind.INVALID_FILENAME: "Invalid filename",
}


@dataclass
class UploadCandidate:
    source: bytes | BinaryIO | None
    filename: str | None
    content_type: str | None
    subject_id: int
    field_name: str = "file"


@dataclass(frozen=True)
class ValidationResult:
    accepted: bool
    detected_type: str | None = None
    extension: str | None = None
    sanitized_base: str | None = None
    stored_name: str | None = None
    size: int = 0
    error: RejectionKind | None = None

    @classmethod
    def reject(cls, kind: RejectionKind, detected_type: str | None = None, size: int = 0) -> "ValidationResult":
        return cls(accepted=False, detected_type=detected_type, size=size, error=kind)


def sanitize_basename(raw: str | None) -> str | None:
    """Return the name without path or extension, or None if it is unsafe.

    The remaining base must not contain a dot, which defeats double
    extensions such as ``evil.php.jpg``.
    """
    if not raw:
        return None

    # Keep only the final path component
    name = PurePosixPath(raw).name
    # Also handle Windows-style backslash paths
    name = name.split("\\")[-1]

    if not name or len(name) > MAX_FILENAME_LENGTH:
        return None

    base = name.rpartition(".")[0] if "." in name else name
    if not SAFE_BASENAME_RE.fullmatch(base):
        return None
    return base


class ContentValidator:
    """Decides whether an upload may be stored, based only on its bytes."""

    def __init__(self, allowed_types: Mapping[str, str], max_bytes: int):
        self.allowed_types = {mime.lower(): ext.lower().lstrip(".") for mime, ext in allowed_types.items()}
        self.max_bytes = max_bytes

    def read_source(self, source: bytes | BinaryIO | None) -> bytes | None:
        if source is None:
            return None
        if isinstance(source, (bytes, bytearray)):
            return bytes(source)
        try:
            if source.seekable():
                source.seek(0)
            # Read with a limit to avoid unbounded memory usage
            return source.read(self.max_bytes + 1)
        except (OSError, ValueError) as exc:
            logger.warning("Failed to read upload content: %s", exc)
            return None

    def detect_type(self, content: bytes) -> str | None:
        kind = filetype.guess(content)
        return kind.mime if kind is not None else None

    def validate(self, candidate: UploadCandidate) -> ValidationResult:
        content = self.read_source(candidate.source)
        if not content:
            return ValidationResult.reject(RejectionKind.MISSING_FILE)

        size = len(content)
        if size > self.max_bytes:
            return ValidationResult.reject(RejectionKind.TOO_LARGE, size=size)

        # The declared content-type header is never consulted.
        detected = self.detect_type(content)
        extension = self.allowed_types.get(detected) if detected else None
        if extension is None:
            logger.info(
                "Rejected upload with detected type %s (declared %s)",
                detected, candidate.content_type,
            )
            return ValidationResult.reject(RejectionKind.UNKNOWN_OR_DISALLOWED_TYPE, detected, size)

        base = sanitize_basename(candidate.filename)
        if base is None:
            return ValidationResult.reject(RejectionKind.INVALID_FILENAME, detected, size)

        return ValidationResult(
            accepted=True,
            detected_type=detected,
            extension=extension,
            sanitized_base=base,
            stored_name=f"{candidate.subject_id}_{base}.{extension}",
            size=size,
        )
