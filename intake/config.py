"""Environment-driven settings, read once at startup and passed to each service."""

from dataclasses import dataclass, field
from pathlib import Path
import os
import tempfile
from typing import Mapping

from intake.errors import ConfigurationError

DEFAULT_UPLOAD_TYPES: dict[str, str] = {
    "application/pdf": "pdf",
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
}

DEFAULT_DOWNLOAD_TYPES: dict[str, str] = {
    "pdf": "application/pdf",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
    "doc": "application/msword",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "xls": "application/vnd.ms-excel",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "txt": "text/plain",
}

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _env_int(env: Mapping[str, str], name: str, default: int, minimum: int = 1) -> int:
    value = env.get(name)
    if value is None or value.strip() == "":
        return default
    try:
        parsed = int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")
    if parsed < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {parsed}")
    return parsed


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    value = env.get(name)
    if value is None or value.strip() == "":
        return default
    try:
        parsed = float(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {value!r}")
    if parsed <= 0:
        raise ConfigurationError(f"{name} must be positive, got {parsed}")
    return parsed


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    value = env.get(name)
    if value is None or value.strip() == "":
        return default
    lowered = value.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {value!r}")


def _env_table(env: Mapping[str, str], name: str, default: dict[str, str]) -> dict[str, str]:
    """Parse "key=value,key=value" into a dict (keys and values lower-cased)."""
    raw = env.get(name, "").strip()
    if not raw:
        return dict(default)
    table: dict[str, str] = {}
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        key, sep, value = entry.partition("=")
        key, value = key.strip().lower(), value.strip().lower().lstrip(".")
        if not sep or not key or not value:
            raise ConfigurationError(f"{name} entries must look like key=value, got {entry!r}")
        table[key] = value
    if not table:
        raise ConfigurationError(f"{name} must not be empty")
    return table


def _parse_api_keys(raw: str) -> dict[str, str]:
    # Format: "caller1:key1,caller2:key2" or just "key1,key2"
    keys: dict[str, str] = {}
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        if ":" in entry:
            caller, key = entry.split(":", 1)
            keys[key.strip()] = caller.strip()
        else:
            keys[entry] = "service"
    return keys


@dataclass(frozen=True)
class Settings:
    token_secret: str
    upload_dir: Path = Path("uploads")
    staging_dir: Path = field(default_factory=lambda: Path(tempfile.gettempdir()) / "intake-staging")
    max_upload_bytes: int = 10 * 1024 * 1024
    upload_types: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_UPLOAD_TYPES))
    download_types: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_DOWNLOAD_TYPES))

    scan_enabled: bool = True
    scan_strict: bool = True
    clamav_host: str = "clamav"
    clamav_port: int = 3310
    clamav_timeout: float = 30.0

    token_lifetime: int = 1800

    rate_limit_enabled: bool = True
    rate_limit_max: int = 10
    rate_limit_window: int = 60
    rate_limit_cleanup_percent: int = 10
    rate_limit_dir: Path = Path("cache/ratelimit")

    audit_backend: str = "file"
    audit_log_path: Path = Path("logs/audit.log")
    mongodb_uri: str = "mongodb://localhost:27017/intake"
    mongo_db: str = "intake"
    audit_retention_days: int = 90

    alert_webhook_url: str = ""
    alert_env_name: str = "production"

    auth_mode: str = "off"
    api_keys: dict[str, str] = field(default_factory=dict)

    log_level: str = "INFO"

    def __post_init__(self):
        if self.audit_backend not in {"file", "mongo", "off"}:
            raise ConfigurationError(f"AUDIT_BACKEND must be file, mongo or off, got {self.audit_backend!r}")
        if self.auth_mode not in {"off", "apikey"}:
            raise ConfigurationError(f"AUTH_MODE must be off or apikey, got {self.auth_mode!r}")
        if self.auth_mode == "apikey" and not self.api_keys:
            raise ConfigurationError("AUTH_MODE=apikey requires INTAKE_API_KEYS")
        if not 0 <= self.rate_limit_cleanup_percent <= 100:
            raise ConfigurationError("RATE_LIMIT_CLEANUP_PERCENT must be between 0 and 100")
        if not 0 < self.clamav_port < 65536:
            raise ConfigurationError(f"CLAMAV_PORT out of range: {self.clamav_port}")

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if env is None else env
        staging = env.get("UPLOAD_STAGING_DIR", "").strip()
        return cls(
            token_secret=env.get("PDF_TOKEN_SECRET", ""),
            upload_dir=Path(env.get("UPLOAD_DIR", "uploads")),
            staging_dir=Path(staging) if staging else Path(tempfile.gettempdir()) / "intake-staging",
            max_upload_bytes=_env_int(env, "UPLOAD_MAX_SIZE", 10 * 1024 * 1024),
            upload_types=_env_table(env, "UPLOAD_ALLOWED_TYPES", DEFAULT_UPLOAD_TYPES),
            download_types=_env_table(env, "DOWNLOAD_ALLOWED_TYPES", DEFAULT_DOWNLOAD_TYPES),
            scan_enabled=_env_bool(env, "CLAMAV_ENABLED", True),
            scan_strict=_env_bool(env, "CLAMAV_STRICT", True),
            clamav_host=env.get("CLAMAV_HOST", "clamav").strip() or "clamav",
            clamav_port=_env_int(env, "CLAMAV_PORT", 3310),
            clamav_timeout=_env_float(env, "CLAMAV_TIMEOUT_SECONDS", 30.0),
            token_lifetime=_env_int(env, "PDF_TOKEN_LIFETIME", 1800),
            rate_limit_enabled=_env_bool(env, "RATE_LIMIT_ENABLED", True),
            rate_limit_max=_env_int(env, "RATE_LIMIT_MAX", 10),
            rate_limit_window=_env_int(env, "RATE_LIMIT_WINDOW", 60),
            rate_limit_cleanup_percent=_env_int(env, "RATE_LIMIT_CLEANUP_PERCENT", 10, minimum=0),
            rate_limit_dir=Path(env.get("RATE_LIMIT_DIR", "cache/ratelimit")),
            audit_backend=env.get("AUDIT_BACKEND", "file").strip().lower(),
            audit_log_path=Path(env.get("AUDIT_LOG_PATH", "logs/audit.log")),
            mongodb_uri=env.get("MONGODB_URI", "mongodb://localhost:27017/intake"),
            mongo_db=env.get("MONGO_DB", "intake"),
            audit_retention_days=_env_int(env, "AUDIT_RETENTION_DAYS", 90),
            alert_webhook_url=env.get("ALERT_WEBHOOK_URL", "").strip(),
            alert_env_name=env.get("ALERT_ENV_NAME", "production"),
            auth_mode=env.get("AUTH_MODE", "off").strip().lower(),
            api_keys=_parse_api_keys(env.get("INTAKE_API_KEYS", "")),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )
