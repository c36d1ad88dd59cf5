from contextlib import asynccontextmanager
from hashlib import sha256
from time import time
from urllib.parse import quote
import asyncio
import logging
import os
import re

import uvicorn
from fastapi import Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.responses import FileResponse, JSONResponse, Response

from intake.alerts import AlertNotifier
from intake.audit import AuditSink, AuditTrail, FileAuditSink, MongoAuditSink, NullAuditSink
from intake.auth import ServiceKeyAuth, get_service_caller
from intake.config import Settings
from intake.db import AUDIT_COLLECTION, ensure_audit_indexes, get_db
from intake.delivery import DeliveryGuard, delivery_headers
from intake.documents import DocumentGenerator, UnavailableDocumentGenerator
from intake.errors import (
    ClientInputError,
    IntakeError,
    NotFound,
    PathTraversalAttempt,
    RateLimited,
    TokenInvalidOrExpired,
)
from intake.logging_config import setup_logging
from intake.models import TokenRequest, TokenResponse, UploadResponse
from intake.rate_limit import RateLimiter
from intake.scanner import ScanClient
from intake.tokens import TokenIssuer
from intake.uploads import UploadService
from intake.validator import ContentValidator, RejectionKind, UploadCandidate

logger = logging.getLogger("intake")

# Allowance for multipart boundaries and form fields on top of the file itself
MULTIPART_OVERHEAD_BYTES = 64 * 1024
MAX_FIELD_NAME_LENGTH = 100
_SUBJECT_ID_RE = re.compile(r"[0-9]{1,18}")


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _client_id(request: Request, scope: str) -> str:
    # IP + User-Agent hash for better identification behind shared NAT
    user_agent = request.headers.get("user-agent", "")
    return f"{scope}:{_client_ip(request)}:{sha256(user_agent.encode('utf-8')).hexdigest()[:8]}"


async def enforce_rate_limit(request: Request, scope: str) -> None:
    limiter: RateLimiter | None = request.app.state.rate_limiter
    if limiter is None:
        return
    client_id = _client_id(request, scope)
    # File-backed store; keep its I/O off the event loop
    if await asyncio.to_thread(limiter.is_allowed, client_id):
        return
    retry_after = await asyncio.to_thread(limiter.retry_after, client_id)
    logger.warning("Rate limit exceeded for client %s (scope=%s)", _client_ip(request), scope)
    await request.app.state.audit.rate_limited(_client_ip(request), scope, retry_after)
    raise RateLimited(retry_after)


def _build_audit_sink(settings: Settings):
    if settings.audit_backend == "mongo":
        db = get_db(settings.mongodb_uri, settings.mongo_db)
        return MongoAuditSink(db[AUDIT_COLLECTION]), db
    if settings.audit_backend == "file":
        return FileAuditSink(settings.audit_log_path), None
    return NullAuditSink(), None


def create_app(
    settings: Settings | None = None,
    *,
    scan_client: ScanClient | None = None,
    audit_sink: AuditSink | None = None,
    document_generator: DocumentGenerator | None = None,
    notifier: AlertNotifier | None = None,
) -> FastAPI:
    """Build the API with every service constructed once from ``settings``.

    Raises ConfigurationError (e.g. for a missing token secret) before any
    request is served.
    """
    settings = settings or Settings.from_env()

    tokens = TokenIssuer(settings.token_secret, default_lifetime=settings.token_lifetime)

    mongo_db = None
    if audit_sink is None:
        audit_sink, mongo_db = _build_audit_sink(settings)
    notifier = notifier or AlertNotifier(settings.alert_webhook_url, settings.alert_env_name)
    audit = AuditTrail(audit_sink, notifier)

    scanner = None
    if settings.scan_enabled:
        scanner = scan_client or ScanClient(
            settings.clamav_host, settings.clamav_port, timeout=settings.clamav_timeout
        )

    validator = ContentValidator(settings.upload_types, settings.max_upload_bytes)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if mongo_db is not None:
            try:
                await ensure_audit_indexes(mongo_db, settings.audit_retention_days)
            except Exception:
                # App should stay available even if DB indexes can't be ensured at startup.
                logger.exception("Failed to ensure MongoDB audit indexes on startup")
        yield

    app = FastAPI(title="Intake Upload API", lifespan=lifespan)
    app.state.settings = settings
    app.state.tokens = tokens
    app.state.audit = audit
    app.state.scanner = scanner
    app.state.auth = ServiceKeyAuth(settings.auth_mode, settings.api_keys)
    app.state.documents = document_generator or UnavailableDocumentGenerator()
    app.state.delivery = DeliveryGuard(settings.upload_dir, settings.download_types)
    app.state.uploads = UploadService(
        validator,
        storage_root=settings.upload_dir,
        staging_dir=settings.staging_dir,
        audit=audit,
        scanner=scanner,
        strict=settings.scan_strict,
    )
    app.state.rate_limiter = (
        RateLimiter(
            settings.rate_limit_dir,
            max_requests=settings.rate_limit_max,
            window_seconds=settings.rate_limit_window,
            cleanup_probability=settings.rate_limit_cleanup_percent,
        )
        if settings.rate_limit_enabled
        else None
    )

    @app.exception_handler(IntakeError)
    async def intake_error_handler(request: Request, exc: IntakeError):
        log = logger.warning if exc.status_code >= 500 else logger.info
        log("%s on %s: %s", type(exc).__name__, request.url.path, exc.detail)
        body = UploadResponse(success=False, error=exc.public_message).model_dump(exclude_none=True)
        headers = None
        if isinstance(exc, RateLimited):
            body["retry_after"] = exc.retry_after
            headers = {"Retry-After": str(exc.retry_after)}
        return JSONResponse(body, status_code=exc.status_code, headers=headers)

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception("Unexpected error on %s", request.url.path)
        return JSONResponse({"success": False, "error": "An error occurred"}, status_code=500)

    @app.get("/health")
    def health():
        return {"status": "ok", "timestamp": int(time())}

    @app.get("/health/scanner")
    async def scanner_health(request: Request):
        scanner: ScanClient | None = request.app.state.scanner
        if scanner is None:
            return {"scanner": "disabled"}
        up = await asyncio.to_thread(scanner.ping)
        return JSONResponse({"scanner": "up" if up else "down"}, status_code=200 if up else 503)

    @app.post("/upload", response_model=UploadResponse, response_model_exclude_none=True)
    async def upload(
        request: Request,
        subject_id: str | None = Form(None, alias="subjectId"),
        field_name: str | None = Form(None, alias="fieldName"),
        file: UploadFile | None = File(None),
        caller: str = Depends(get_service_caller),
    ):
        await enforce_rate_limit(request, "upload")

        audit: AuditTrail = request.app.state.audit
        declared_name = file.filename if file is not None else None
        parsed_subject = None
        if subject_id and _SUBJECT_ID_RE.fullmatch(subject_id.strip()) and int(subject_id) > 0:
            parsed_subject = int(subject_id)

        async def reject(reason: str, detail: str, public_message: str):
            await audit.upload_rejected(parsed_subject, declared_name, _client_ip(request), reason)
            raise ClientInputError(detail, public_message=public_message)

        if parsed_subject is None:
            await reject("invalid_subject_id", f"Invalid subjectId {subject_id!r}", "Invalid subjectId")
        field_name = (field_name or "").strip()
        if not field_name or len(field_name) > MAX_FIELD_NAME_LENGTH:
            await reject("invalid_field_name", "Missing or oversized fieldName", "Invalid fieldName")

        max_bytes = request.app.state.settings.max_upload_bytes
        # Early rejection based on Content-Length header (before reading body)
        cl = request.headers.get("content-length")
        if cl and cl.isdigit() and int(cl) > max_bytes + MULTIPART_OVERHEAD_BYTES:
            await reject(RejectionKind.TOO_LARGE.value, f"Content-Length {cl} over limit", "File too large")

        content = None
        declared_type = None
        if file is not None:
            declared_type = file.content_type
            try:
                content = await file.read(max_bytes + 1)
            except OSError:
                logger.exception("Failed to read uploaded file %s", declared_name)
            finally:
                await file.close()

        candidate = UploadCandidate(
            source=content,
            filename=declared_name,
            content_type=declared_type,
            subject_id=parsed_subject,
            field_name=field_name,
        )
        stored = await request.app.state.uploads.store(candidate, client_ip=_client_ip(request))
        return UploadResponse(success=True, filename=stored.filename, size=stored.size)

    async def token_download(request: Request, token: str, inline: bool) -> Response:
        subject_id = request.app.state.tokens.validate(token)
        if subject_id is None:
            raise TokenInvalidOrExpired("Token rejected")

        generator: DocumentGenerator = request.app.state.documents
        document = await asyncio.to_thread(generator.generate, subject_id)
        if document is None:
            raise NotFound(f"No document for subject {subject_id}")

        return Response(
            content=document.content,
            media_type=document.media_type,
            headers=delivery_headers(document.filename, inline),
        )

    @app.get("/download")
    async def download(
        request: Request,
        file: str | None = None,
        token: str | None = None,
        disposition: str = "attachment",
    ):
        inline = disposition.lower() == "inline"
        if token is not None:
            return await token_download(request, token, inline)
        if file is None:
            raise ClientInputError("Neither file nor token given")

        await enforce_rate_limit(request, "download")
        guard: DeliveryGuard = request.app.state.delivery
        try:
            resolved = guard.resolve(file)
        except PathTraversalAttempt:
            logger.warning("Path traversal attempt from %s: %r", _client_ip(request), file)
            await request.app.state.audit.path_traversal(file, _client_ip(request))
            raise

        return FileResponse(
            resolved.path,
            media_type=resolved.media_type,
            headers=delivery_headers(resolved.name, inline),
        )

    @app.get("/pdf/download")
    async def pdf_download(request: Request, token: str = "", disposition: str = "attachment"):
        if not token:
            raise ClientInputError("Missing token", public_message="Missing download token")
        return await token_download(request, token, disposition.lower() == "inline")

    @app.post("/tokens", response_model=TokenResponse)
    async def issue_token(body: TokenRequest, request: Request, caller: str = Depends(get_service_caller)):
        tokens: TokenIssuer = request.app.state.tokens
        lifetime = body.lifetime or tokens.default_lifetime
        token = tokens.generate(body.subject_id, lifetime)
        logger.info("Issued download token for subject %s (caller=%s, lifetime=%ss)", body.subject_id, caller, lifetime)
        return TokenResponse(token=token, url=f"pdf/download?token={quote(token)}", expires_in=lifetime)

    return app


def run() -> None:
    settings = Settings.from_env()
    setup_logging(settings.log_level)
    uvicorn.run(
        create_app(settings),
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        log_config=None,
    )


if __name__ == "__main__":
    run()
