from dataclasses import replace
import struct

import pytest
from fastapi.testclient import TestClient

from intake.audit import AuditSink
from intake.config import Settings
from intake.main import create_app
from intake.scanner import ScanResult

TEST_SECRET = "test-secret-0123456789abcdef0123456789"

PNG_HEADER = (
    b"\x89PNG\r\n\x1a\n"
    + struct.pack(">I", 13) + b"IHDR" + struct.pack(">IIBBBBB", 1, 1, 8, 2, 0, 0, 0) + b"\x00" * 4
    + struct.pack(">I", 0) + b"IDAT" + b"\x00" * 4
)
JPEG_HEADER = b"\xff\xd8\xff\xe0\x00\x10JFIF\x00\x01\x01\x00\x00\x01\x00\x01\x00\x00"
PDF_HEADER = b"%PDF-1.7\n%\xe2\xe3\xcf\xd3\n1 0 obj\n<< /Type /Catalog >>\nendobj\n"


def png_bytes(size: int = 256) -> bytes:
    return PNG_HEADER + b"\x00" * max(0, size - len(PNG_HEADER))


class FakeScanner:
    """Stands in for ScanClient; returns a fixed verdict and records scanned paths."""

    def __init__(self, result: ScanResult | None = None, pong: bool = True):
        self.result = result or ScanResult(clean=True)
        self.pong = pong
        self.scanned: list[bytes] = []

    def scan(self, file_path):
        with open(file_path, "rb") as fh:
            self.scanned.append(fh.read())
        return self.result

    def ping(self) -> bool:
        return self.pong


class MemoryAuditSink(AuditSink):
    def __init__(self):
        self.events = []

    async def record(self, event):
        self.events.append(event)

    def names(self) -> list[str]:
        return [event.event for event in self.events]


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        token_secret=TEST_SECRET,
        upload_dir=tmp_path / "uploads",
        staging_dir=tmp_path / "staging",
        rate_limit_dir=tmp_path / "ratelimit",
        audit_log_path=tmp_path / "logs" / "audit.log",
        max_upload_bytes=10 * 1024 * 1024,
        rate_limit_max=100,
        rate_limit_cleanup_percent=0,
    )


@pytest.fixture
def scanner() -> FakeScanner:
    return FakeScanner()


@pytest.fixture
def audit_sink() -> MemoryAuditSink:
    return MemoryAuditSink()


@pytest.fixture
def make_client(settings, scanner, audit_sink):
    def _make(document_generator=None, raise_server_exceptions=True, **overrides):
        app_settings = replace(settings, **overrides)
        app = create_app(
            app_settings,
            scan_client=scanner,
            audit_sink=audit_sink,
            document_generator=document_generator,
        )
        return TestClient(app, raise_server_exceptions=raise_server_exceptions)

    return _make


@pytest.fixture
def client(make_client):
    with make_client() as test_client:
        yield test_client
