from dataclasses import dataclass
from pathlib import Path
import logging
import re
import unicodedata
from typing import Mapping

from intake.errors import ClientInputError, NotFound, PathTraversalAttempt
from intake.validator import MAX_FILENAME_LENGTH

logger = logging.getLogger("intake.delivery")

_UNSAFE_HEADER_CHARS = re.compile(r"[^A-Za-z0-9._-]")

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


@dataclass(frozen=True)
class ResolvedFile:
    path: Path
    name: str
    media_type: str


def safe_header_filename(name: str) -> str:
    """ASCII-transliterate and strip a filename for use in a header."""
    ascii_name = unicodedata.normalize("NFKD", name).encode("ascii", "ignore").decode("ascii")
    cleaned = _UNSAFE_HEADER_CHARS.sub("_", ascii_name)
    return cleaned or "download"


def content_disposition(name: str, inline: bool = False) -> str:
    kind = "inline" if inline else "attachment"
    return f'{kind}; filename="{safe_header_filename(name)}"'


def delivery_headers(name: str, inline: bool = False) -> dict[str, str]:
    return {"Content-Disposition": content_disposition(name, inline), **NO_CACHE_HEADERS}


class DeliveryGuard:
    def __init__(self, storage_root: str | Path, allowed_types: Mapping[str, str]):
        self.storage_root = Path(storage_root)
        self.allowed_types = {ext.lower().lstrip("."): mime for ext, mime in allowed_types.items()}

    def resolve(self, requested_name: str | None) -> ResolvedFile:
        if not requested_name:
            raise ClientInputError("No file name given")

        # Check for directory traversal attempts
        if any(token in requested_name for token in ("..", "/", "\\", "\0")):
            raise PathTraversalAttempt(f"Traversal sequence in requested name {requested_name!r}")

        if len(requested_name) > MAX_FILENAME_LENGTH:
            raise ClientInputError(
                f"Requested name is {len(requested_name)} characters long", public_message="Invalid file name"
            )

        extension = requested_name.rpartition(".")[2].lower() if "." in requested_name else ""
        media_type = self.allowed_types.get(extension)
        if media_type is None:
            raise ClientInputError(f"Extension {extension!r} not allowed", public_message="File type not allowed")

        root = self.storage_root.resolve()
        candidate = (root / Path(requested_name).name).resolve()
        if not candidate.is_relative_to(root):
            raise PathTraversalAttempt(f"{requested_name!r} resolves outside the storage root")

        try:
            exists = candidate.is_file()
        except OSError as exc:
            logger.warning("Cannot stat requested file %r: %s", requested_name, exc)
            exists = False
        if not exists:
            raise NotFound(f"{requested_name!r} does not exist")

        return ResolvedFile(path=candidate, name=requested_name, media_type=media_type)
