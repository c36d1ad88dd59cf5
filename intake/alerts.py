"""
alerts.py – Larm vid kritiska säkerhetshändelser.

Skickar en JSON-payload till en webhook (Slack/Teams/valfri) när
audit-spåret registrerar en kritisk händelse:
  - virus_found     – skannern hittade en signatur
  - path_traversal  – någon försökte ta sig ut ur lagringskatalogen

Konfigureras via ALERT_WEBHOOK_URL och ALERT_ENV_NAME. Tom URL = avstängt.
Fel i alerting ska aldrig blockera svaret till klienten.
"""

import asyncio
import json
import logging
from urllib import request as urllib_request

from intake.models import AuditEvent

logger = logging.getLogger("intake.alerts")


class AlertNotifier:
    def __init__(self, webhook_url: str = "", env_name: str = "production", timeout: float = 5.0):
        self.webhook_url = webhook_url
        self.env_name = env_name
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url)

    def build_payload(self, event: AuditEvent) -> dict:
        """Bygg en strukturerad payload för webhooken."""
        return {
            "env": self.env_name,
            "event": event.event,
            "severity": event.severity,
            "subject_id": event.subject_id,
            "filename": event.filename,
            "client_ip": event.client_ip,
            "details": event.details,
            "created_at": event.created_at.isoformat(),
        }

    def _send_webhook(self, payload: dict) -> None:
        """Synkron webhook-avsändning (körs i en tråd via asyncio.to_thread)."""
        body = json.dumps(payload).encode("utf-8")
        req = urllib_request.Request(
            self.webhook_url,
            data=body,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        with urllib_request.urlopen(req, timeout=self.timeout) as resp:
            logger.info("Alert webhook delivered, status=%s", resp.status)

    async def notify(self, event: AuditEvent) -> None:
        if not self.enabled:
            return
        try:
            await asyncio.to_thread(self._send_webhook, self.build_payload(event))
        except Exception as exc:
            logger.error("Alert webhook failed: %s", exc)
