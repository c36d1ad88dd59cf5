"""Port to the external document generator used by token downloads."""

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class GeneratedDocument:
    filename: str
    content: bytes
    media_type: str = "application/pdf"


class DocumentGenerator(Protocol):
    def generate(self, subject_id: int) -> GeneratedDocument | None:
        """Render the document for a subject, or None if the subject is unknown."""
        ...


class UnavailableDocumentGenerator:
    """Used when no generator is wired in; every subject is unknown."""

    def generate(self, subject_id: int) -> GeneratedDocument | None:
        return None
