"""
auth.py – API-nyckelskydd för tjänst-till-tjänst-anrop.

Uppladdning och utfärdande av nedladdningstoken anropas av andra
backend-tjänster, inte av slutanvändare. Två lägen via AUTH_MODE:
  off     – ingen kontroll (default)
  apikey  – nyckel i X-API-Key-headern

Nycklar i INTAKE_API_KEYS som "caller1:key1,caller2:key2" eller bara
"key1,key2" (anroparen heter då "service").
"""

import hmac
import logging

from fastapi import HTTPException, Request

logger = logging.getLogger("intake.auth")


class ServiceKeyAuth:
    def __init__(self, mode: str = "off", api_keys: dict[str, str] | None = None):
        self.mode = mode
        self._api_keys = dict(api_keys or {})

    def resolve(self, key: str) -> str | None:
        """Jämför i konstant tid mot varje konfigurerad nyckel."""
        caller = None
        for known, name in self._api_keys.items():
            if hmac.compare_digest(known.encode("utf-8"), key.encode("utf-8")):
                caller = name
        return caller

    def authenticate(self, request: Request) -> str:
        if self.mode == "off":
            return "anonymous"

        key = request.headers.get("X-API-Key", "").strip()
        caller = self.resolve(key) if key else None
        if caller is None:
            logger.warning(
                "Unauthorized call to %s from %s – ogiltig eller saknad API-nyckel",
                request.url.path,
                request.client.host if request.client else "unknown",
            )
            raise HTTPException(status_code=401, detail="Invalid or missing API key")
        return caller


async def get_service_caller(request: Request) -> str:
    """
    FastAPI-dependency som returnerar anroparens namn.

    Om AUTH_MODE=off returneras alltid "anonymous".
    Vid fel kastas HTTP 401.
    """
    auth: ServiceKeyAuth = request.app.state.auth
    return auth.authenticate(request)
