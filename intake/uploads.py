"""Upload pipeline: validate, scan in a staging area, then publish.

A file reaches the public storage root only after validation passed and the
scanner (when enabled) did not report it as infected. Until then it lives in
the staging directory, which is never served.
"""

from dataclasses import dataclass, replace
from pathlib import Path
import asyncio
import logging
import os
import shutil
import tempfile

from intake.audit import AuditTrail
from intake.errors import ClientInputError, InternalFault, ScanRejected, ScanUnavailable
from intake.scanner import ScanClient, ScanResult
from intake.validator import REJECTION_MESSAGES, ContentValidator, UploadCandidate

logger = logging.getLogger("intake.upload")


@dataclass(frozen=True)
class StoredUpload:
    filename: str
    path: Path
    size: int
    detected_type: str
    scan: ScanResult | None


class UploadService:
    def __init__(
        self,
        validator: ContentValidator,
        storage_root: str | Path,
        staging_dir: str | Path,
        audit: AuditTrail,
        scanner: ScanClient | None = None,
        strict: bool = True,
    ):
        self.validator = validator
        self.storage_root = Path(storage_root)
        self.staging_dir = Path(staging_dir)
        self.audit = audit
        self.scanner = scanner
        self.strict = strict
        self.storage_root.mkdir(parents=True, exist_ok=True)
        self.staging_dir.mkdir(parents=True, exist_ok=True)

    def _stage(self, content: bytes) -> Path:
        fd, name = tempfile.mkstemp(dir=self.staging_dir, prefix="upload_", suffix=".part")
        with os.fdopen(fd, "wb") as fh:
            fh.write(content)
        return Path(name)

    def _publish(self, staged: Path, stored_name: str) -> Path:
        target = self.storage_root / stored_name
        shutil.move(staged, target)
        os.chmod(target, 0o644)
        return target

    async def _scan(self, staged: Path, candidate: UploadCandidate, client_ip: str) -> ScanResult | None:
        if self.scanner is None:
            return None

        result = await asyncio.to_thread(self.scanner.scan, staged)
        if result.infected:
            await self.audit.virus_found(candidate.subject_id, candidate.filename, client_ip, result.virus or "unknown")
            raise ScanRejected(f"Signature detected: {result.virus}")

        if not result.completed:
            if self.strict:
                await self.audit.upload_rejected(candidate.subject_id, candidate.filename, client_ip, "scan_unavailable")
                raise ScanUnavailable(result.error)
            logger.warning(
                "Virus scan incomplete, accepting upload (strict mode off): subject=%s file=%s error=%s",
                candidate.subject_id, candidate.filename, result.error,
            )
        return result

    async def store(self, candidate: UploadCandidate, client_ip: str = "unknown") -> StoredUpload:
        # Read once; validation and staging work on the same bytes.
        content = self.validator.read_source(candidate.source)
        candidate = replace(candidate, source=content)

        result = self.validator.validate(candidate)
        if not result.accepted:
            await self.audit.upload_rejected(candidate.subject_id, candidate.filename, client_ip, result.error.value)
            raise ClientInputError(
                f"Validation failed: {result.error.value}",
                public_message=REJECTION_MESSAGES[result.error],
            )

        try:
            staged = await asyncio.to_thread(self._stage, content)
        except OSError as exc:
            logger.exception("Failed to stage upload for subject %s", candidate.subject_id)
            raise InternalFault(str(exc))

        try:
            scan = await self._scan(staged, candidate, client_ip)
            try:
                target = await asyncio.to_thread(self._publish, staged, result.stored_name)
            except OSError as exc:
                logger.exception("Failed to move upload into storage: %s", result.stored_name)
                raise InternalFault(str(exc))
        finally:
            staged.unlink(missing_ok=True)

        logger.info(
            "File uploaded: subject=%s field=%s file=%s type=%s size=%d",
            candidate.subject_id, candidate.field_name, result.stored_name, result.detected_type, result.size,
        )
        await self.audit.upload_success(candidate.subject_id, result.stored_name, client_ip, result.size)
        return StoredUpload(
            filename=result.stored_name,
            path=target,
            size=result.size,
            detected_type=result.detected_type,
            scan=scan,
        )
