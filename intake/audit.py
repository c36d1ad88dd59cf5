"""
audit.py – Append-only audit-spår för säkerhetsrelevanta händelser.

Händelser:
  upload_success   – fil lagrad
  upload_rejected  – valideringen eller skanningen stoppade filen
  virus_found      – skannern rapporterade en signatur (kritisk)
  rate_limited     – en klient slog i taket för sitt fönster
  path_traversal   – otillåtet filnamn vid nedladdning (kritisk)

Backends (AUDIT_BACKEND):
  file  – JSON Lines i AUDIT_LOG_PATH (en post per rad)
  mongo – kollektionen audit_events med TTL-index
  off   – endast vanlig loggning

Fel i audit-sinken loggas men bryter aldrig förfrågan.
"""

import asyncio
import logging
from pathlib import Path
from threading import Lock
from typing import Any

from intake.alerts import AlertNotifier
from intake.models import AuditEvent

logger = logging.getLogger("intake.audit")

CRITICAL_EVENTS = {"virus_found", "path_traversal"}


class AuditSink:
    async def record(self, event: AuditEvent) -> None:
        raise NotImplementedError


class NullAuditSink(AuditSink):
    async def record(self, event: AuditEvent) -> None:
        return None


class FileAuditSink(AuditSink):
    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lock = Lock()

    def _append(self, line: str) -> None:
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as fh:
                fh.write(line + "\n")

    async def record(self, event: AuditEvent) -> None:
        await asyncio.to_thread(self._append, event.model_dump_json())


class MongoAuditSink(AuditSink):
    def __init__(self, collection):
        self.collection = collection

    async def record(self, event: AuditEvent) -> None:
        await self.collection.insert_one(event.model_dump())


class AuditTrail:
    def __init__(self, sink: AuditSink | None = None, notifier: AlertNotifier | None = None):
        self.sink = sink or NullAuditSink()
        self.notifier = notifier

    async def log(
        self,
        event: str,
        *,
        subject_id: int | None = None,
        filename: str | None = None,
        client_ip: str = "unknown",
        **details: Any,
    ) -> AuditEvent:
        record = AuditEvent(
            event=event,
            severity="critical" if event in CRITICAL_EVENTS else "info",
            subject_id=subject_id,
            filename=filename,
            client_ip=client_ip,
            details=details,
        )
        level = logging.WARNING if event != "upload_success" else logging.INFO
        logger.log(
            level, "audit event=%s subject=%s file=%s ip=%s details=%s",
            event, subject_id, filename, client_ip, details,
        )
        try:
            await self.sink.record(record)
        except Exception:
            logger.exception("Failed to write audit event %s", event)

        if self.notifier is not None and record.severity == "critical":
            await self.notifier.notify(record)
        return record

    async def upload_success(self, subject_id: int, filename: str, client_ip: str, size: int) -> AuditEvent:
        return await self.log("upload_success", subject_id=subject_id, filename=filename, client_ip=client_ip, size=size)

    async def upload_rejected(self, subject_id: int | None, filename: str | None, client_ip: str, reason: str) -> AuditEvent:
        return await self.log("upload_rejected", subject_id=subject_id, filename=filename, client_ip=client_ip, reason=reason)

    async def virus_found(self, subject_id: int, filename: str | None, client_ip: str, virus: str) -> AuditEvent:
        return await self.log("virus_found", subject_id=subject_id, filename=filename, client_ip=client_ip, virus=virus)

    async def rate_limited(self, client_ip: str, scope: str, retry_after: int) -> AuditEvent:
        return await self.log("rate_limited", client_ip=client_ip, scope=scope, retry_after=retry_after)

    async def path_traversal(self, requested: str, client_ip: str) -> AuditEvent:
        return await self.log("path_traversal", filename=requested, client_ip=client_ip)
