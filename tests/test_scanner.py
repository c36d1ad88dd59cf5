import socket
import socketserver
import struct
import threading
from unittest.mock import MagicMock, patch

import pytest

from intake.scanner import ScanClient, ScanResult, parse_response


# ─── Response parser ─────────────────────────────────────────────────────────

def test_parse_ok_is_clean():
    assert parse_response("stream: OK") == ScanResult(clean=True)


def test_parse_found_is_infected_with_signature():
    result = parse_response("stream: Eicar-Signature FOUND")
    assert result.clean is False
    assert result.virus == "Eicar-Signature"
    assert result.infected is True


def test_parse_garbage_is_unknown():
    result = parse_response("garbage")
    assert result.clean is None
    assert result.error == "unexpected response: garbage"


def test_parse_error_line_is_unknown_not_infected():
    result = parse_response("INSTREAM size limit exceeded. ERROR")
    assert result.clean is None
    assert result.error is not None


def test_parse_empty_is_unknown():
    assert parse_response("").clean is None


def test_parse_tolerates_trailing_newline_and_nul():
    assert parse_response("stream: OK\n").clean is True
    assert parse_response("stream: Win.Test.EICAR_HDB-1 FOUND\0").virus == "Win.Test.EICAR_HDB-1"


# ─── Socket handling (mocked) ────────────────────────────────────────────────

def _sock(*responses: bytes) -> MagicMock:
    sock = MagicMock()
    sock.__enter__ = lambda s: s
    sock.__exit__ = MagicMock(return_value=False)
    sock.recv.side_effect = list(responses) + [b""]
    return sock


@pytest.fixture
def sample_file(tmp_path):
    path = tmp_path / "sample.bin"
    path.write_bytes(b"A" * 10000)
    return path


class TestScanClientMocked:
    def test_frames_file_in_chunks_with_terminator(self, sample_file):
        sock = _sock(b"stream: OK\n")
        client = ScanClient("clamav", 3310, timeout=1, chunk_size=4096)
        with patch("socket.create_connection", return_value=sock):
            result = client.scan(sample_file)

        assert result.clean is True
        sent = [call.args[0] for call in sock.sendall.call_args_list]
        assert sent[0] == b"nINSTREAM\n"
        assert sent[-1] == struct.pack(">I", 0)
        lengths = [struct.unpack(">I", frame[:4])[0] for frame in sent[1:-1]]
        assert lengths == [4096, 4096, 1808]
        assert all(frame[4:] == b"A" * size for frame, size in zip(sent[1:-1], lengths))

    def test_found_returns_infected(self, sample_file):
        with patch("socket.create_connection", return_value=_sock(b"stream: Eicar-Signature FOUND\n")):
            result = ScanClient("clamav").scan(sample_file)
        assert result.clean is False
        assert result.virus == "Eicar-Signature"

    def test_response_split_across_reads(self, sample_file):
        with patch("socket.create_connection", return_value=_sock(b"stream: ", b"OK\n")):
            result = ScanClient("clamav").scan(sample_file)
        assert result.clean is True

    def test_connection_refused_is_unknown(self, sample_file):
        with patch("socket.create_connection", side_effect=ConnectionRefusedError("refused")):
            result = ScanClient("clamav").scan(sample_file)
        assert result.clean is None
        assert "unavailable" in result.error

    def test_timeout_is_unknown(self, sample_file):
        with patch("socket.create_connection", side_effect=socket.timeout("timed out")):
            result = ScanClient("clamav").scan(sample_file)
        assert result.clean is None

    def test_mid_stream_error_is_unknown_and_socket_closed(self, sample_file):
        sock = _sock()
        sock.sendall.side_effect = [None, BrokenPipeError("peer closed")]
        with patch("socket.create_connection", return_value=sock):
            result = ScanClient("clamav").scan(sample_file)
        assert result.clean is None
        sock.__exit__.assert_called_once()

    def test_no_response_is_unknown(self, sample_file):
        with patch("socket.create_connection", return_value=_sock()):
            result = ScanClient("clamav").scan(sample_file)
        assert result.clean is None
        assert result.error == "no response from scanner"

    def test_missing_file_is_unknown_without_connecting(self, tmp_path):
        with patch("socket.create_connection") as connect:
            result = ScanClient("clamav").scan(tmp_path / "gone.bin")
        assert result.clean is None
        connect.assert_not_called()

    def test_ping_pong(self):
        sock = _sock(b"PONG\n")
        with patch("socket.create_connection", return_value=sock) as connect:
            assert ScanClient("clamav").ping() is True
        sock.sendall.assert_called_once_with(b"nPING\n")
        assert connect.call_args.kwargs["timeout"] == 2.0

    def test_ping_wrong_reply(self):
        with patch("socket.create_connection", return_value=_sock(b"NOPE\n")):
            assert ScanClient("clamav").ping() is False

    def test_ping_unreachable(self):
        with patch("socket.create_connection", side_effect=ConnectionRefusedError()):
            assert ScanClient("clamav").ping() is False


# ─── Loopback fake clamd ─────────────────────────────────────────────────────

class _FakeClamd(socketserver.StreamRequestHandler):
    signature = b"EICAR-STANDARD-ANTIVIRUS-TEST-FILE"

    def handle(self):
        command = self.rfile.readline()
        if command == b"nPING\n":
            self.wfile.write(b"PONG\n")
            return
        assert command == b"nINSTREAM\n"
        payload = b""
        while True:
            (length,) = struct.unpack(">I", self.rfile.read(4))
            if length == 0:
                break
            payload += self.rfile.read(length)
        self.server.received.append(payload)
        if self.signature in payload:
            self.wfile.write(b"stream: Eicar-Signature FOUND\n")
        else:
            self.wfile.write(b"stream: OK\n")


@pytest.fixture
def clamd():
    server = socketserver.ThreadingTCPServer(("127.0.0.1", 0), _FakeClamd)
    server.daemon_threads = True
    server.received = []
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.shutdown()
    server.server_close()


def test_round_trip_against_loopback_daemon(clamd, tmp_path):
    host, port = clamd.server_address
    clean = tmp_path / "clean.pdf"
    clean.write_bytes(b"%PDF-1.4 " + b"x" * 9000)
    infected = tmp_path / "eicar.txt"
    infected.write_bytes(
        b"X5O!P%@AP[4\\PZX54(P^)7CC)7}$EICAR-STANDARD-ANTIVIRUS-TEST-FILE!$H+H*"
    )

    client = ScanClient(host, port, timeout=5)
    assert client.ping() is True
    assert client.scan(clean) == ScanResult(clean=True)
    assert client.scan(infected).virus == "Eicar-Signature"
    assert clamd.received[0] == clean.read_bytes()


def test_unreachable_daemon_resolves_to_unknown(tmp_path):
    # Bind then close to get a port nobody listens on.
    probe = socket.socket()
    probe.bind(("127.0.0.1", 0))
    port = probe.getsockname()[1]
    probe.close()

    path = tmp_path / "a.pdf"
    path.write_bytes(b"%PDF-1.4")
    result = ScanClient("127.0.0.1", port, timeout=1).scan(path)
    assert result.clean is None
    assert result.error
