from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field


class UploadResponse(BaseModel):
    success: bool
    filename: str | None = None
    size: int | None = None
    error: str | None = None


class TokenRequest(BaseModel):
    subject_id: int = Field(gt=0)
    lifetime: int | None = Field(default=None, gt=0, le=7 * 24 * 60 * 60)


class TokenResponse(BaseModel):
    token: str
    url: str
    expires_in: int


class AuditEvent(BaseModel):
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    event: str
    severity: str = Field(default="info")
    subject_id: int | None = None
    filename: str | None = None
    client_ip: str = Field(default="unknown")
    details: dict[str, Any] = Field(default_factory=dict)
