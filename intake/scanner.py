from dataclasses import dataclass
from pathlib import Path
import logging
import re
import socket
import struct

logger = logging.getLogger("intake.scanner")

DEFAULT_TIMEOUT_SECONDS = 30.0
PING_TIMEOUT_SECONDS = 2.0
CHUNK_SIZE = 4096
MAX_RESPONSE_BYTES = 4096

INSTREAM_COMMAND = b"nINSTREAM\n"
PING_COMMAND = b"nPING\n"
PONG = "PONG"

_FOUND_RE = re.compile(r": (.+) FOUND$")


@dataclass(frozen=True)
class ScanResult:
    """Outcome of one scan: clean True/False, or None when the scan did not complete."""

    clean: bool | None
    virus: str | None = None
    error: str | None = None

    @classmethod
    def unknown(cls, message: str) -> "ScanResult":
        return cls(clean=None, error=message)

    @property
    def infected(self) -> bool:
        return self.clean is False

    @property
    def completed(self) -> bool:
        return self.clean is not None


def parse_response(response: str) -> ScanResult:
    response = response.strip().rstrip("\0")
    if not response:
        return ScanResult.unknown("no response from scanner")
    if response.endswith(": OK"):
        return ScanResult(clean=True)
    # "stream: {VirusName} FOUND"
    match = _FOUND_RE.search(response)
    if match:
        return ScanResult(clean=False, virus=match.group(1))
    return ScanResult.unknown(f"unexpected response: {response}")


def _read_line(sock: socket.socket) -> str:
    buffer = b""
    while b"\n" not in buffer and len(buffer) < MAX_RESPONSE_BYTES:
        data = sock.recv(MAX_RESPONSE_BYTES)
        if not data:
            break
        buffer += data
    return buffer.split(b"\n", 1)[0].decode("utf-8", errors="replace")


class ScanClient:
    """clamd client speaking the INSTREAM protocol over TCP.

    Every failure resolves to an unknown result; it is up to the caller to
    decide whether an incomplete scan blocks the upload.
    """

    def __init__(
        self,
        host: str,
        port: int = 3310,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        chunk_size: int = CHUNK_SIZE,
    ):
        self.host = host
        self.port = port
        self.timeout = timeout
        self.chunk_size = chunk_size

    def scan(self, file_path: str | Path) -> ScanResult:
        try:
            fh = open(file_path, "rb")
        except OSError as exc:
            logger.warning("Cannot open %s for scanning: %s", file_path, exc)
            return ScanResult.unknown("cannot open file for scanning")

        try:
            with fh, socket.create_connection((self.host, self.port), timeout=self.timeout) as sock:
                sock.sendall(INSTREAM_COMMAND)
                # Each chunk is preceded by its 4-byte big-endian length.
                while chunk := fh.read(self.chunk_size):
                    sock.sendall(struct.pack(">I", len(chunk)) + chunk)
                sock.sendall(struct.pack(">I", 0))
                response = _read_line(sock)
        except OSError as exc:
            # Log full detail internally; keep API response free of infrastructure info.
            logger.warning("ClamAV scan failed (host=%s port=%s): %s", self.host, self.port, exc)
            return ScanResult.unknown(f"scanner unavailable: {exc.__class__.__name__}")

        result = parse_response(response)
        if not result.completed:
            logger.warning("ClamAV returned %r for %s", response, file_path)
        return result

    def ping(self) -> bool:
        try:
            with socket.create_connection((self.host, self.port), timeout=PING_TIMEOUT_SECONDS) as sock:
                sock.sendall(PING_COMMAND)
                return _read_line(sock).strip().rstrip("\0") == PONG
        except OSError as exc:
            logger.info("ClamAV ping failed (host=%s port=%s): %s", self.host, self.port, exc)
            return False
