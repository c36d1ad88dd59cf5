"""Stateless, HMAC-signed download tokens.

Token format (URL-safe base64, padding stripped)::

    {subject_id}:{issued_at}:{lifetime}:{hex_hmac_sha256}

Tokens carry no server-side state and stay valid until they expire; there is
no revocation and no one-time use.
"""

import base64
import binascii
import hashlib
import hmac
import logging
import re
import time
from typing import Callable

from intake.errors import ConfigurationError

logger = logging.getLogger("intake.tokens")

DEFAULT_LIFETIME = 1800
MIN_SECRET_LENGTH = 32

# Bounded so int() never hits the interpreter's digit limit
_DIGITS_RE = re.compile(r"[0-9]{1,18}")
_TOKEN_RE = re.compile(r"[A-Za-z0-9_-]+={0,2}")


class TokenIssuer:
    def __init__(
        self,
        secret: str | None,
        default_lifetime: int = DEFAULT_LIFETIME,
        clock: Callable[[], float] = time.time,
    ):
        if not secret:
            raise ConfigurationError(
                "PDF_TOKEN_SECRET not configured. Generate one with: openssl rand -hex 32"
            )
        if len(secret) < MIN_SECRET_LENGTH:
            raise ConfigurationError(
                f"PDF_TOKEN_SECRET must be at least {MIN_SECRET_LENGTH} characters long"
            )
        self._key = secret.encode("utf-8")
        self.default_lifetime = default_lifetime
        self._clock = clock

    def _mac(self, subject_id: int, issued_at: int, lifetime: int) -> str:
        message = f"{subject_id}:{issued_at}:{lifetime}".encode("ascii")
        return hmac.new(self._key, message, hashlib.sha256).hexdigest()

    def generate(self, subject_id: int, lifetime: int | None = None) -> str:
        lifetime = self.default_lifetime if lifetime is None else lifetime
        if subject_id < 0 or lifetime < 0:
            raise ValueError("subject_id and lifetime must be non-negative")
        issued_at = int(self._clock())
        raw = f"{subject_id}:{issued_at}:{lifetime}:{self._mac(subject_id, issued_at, lifetime)}"
        return base64.urlsafe_b64encode(raw.encode("ascii")).decode("ascii").rstrip("=")

    def validate(self, token: str | None) -> int | None:
        """Return the subject id for a valid, unexpired token, otherwise None.

        Malformed, forged and expired tokens are indistinguishable to the caller.
        """
        if not token or not _TOKEN_RE.fullmatch(token):
            return None
        try:
            padded = token.rstrip("=") + "=" * (-len(token.rstrip("=")) % 4)
            decoded = base64.urlsafe_b64decode(padded).decode("ascii")
        except (binascii.Error, ValueError):
            return None

        parts = decoded.split(":")
        if len(parts) != 4:
            return None
        subject, issued, lifetime, provided_mac = parts
        if not all(_DIGITS_RE.fullmatch(value) for value in (subject, issued, lifetime)):
            return None

        subject_id, issued_at, lifetime_s = int(subject), int(issued), int(lifetime)
        expected_mac = self._mac(subject_id, issued_at, lifetime_s)
        if not hmac.compare_digest(expected_mac, provided_mac):
            return None

        if int(self._clock()) - issued_at >= lifetime_s:
            logger.debug("Expired token for subject %s", subject_id)
            return None
        return subject_id
