from __future__ import annotations

import base64
import json
import socket
import threading
from pathlib import Path

import pytest

from mailrun.storage.runs import StructuredLogger


class MockSmtpServer:
    """Single-connection SMTP server that records every command it receives.

    Replies are success codes unless overridden: ``reject_rcpt_at`` makes the
    n-th RCPT (1-based) fail with 550, ``ehlo_code``, ``auth_code`` and
    ``quit_code`` change those replies and ``extensions`` is what EHLO
    advertises. ``tls_garbage`` accepts STARTTLS and then answers the TLS
    handshake with plain text.
    """

    def __init__(
        self,
        *,
        extensions: tuple[str, ...] = (),
        reject_rcpt_at: int | None = None,
        ehlo_code: int = 250,
        starttls_code: int = 454,
        tls_garbage: bool = False,
        auth_code: int = 235,
        quit_code: int = 221,
    ) -> None:
        self.extensions = extensions
        self.reject_rcpt_at = reject_rcpt_at
        self.ehlo_code = ehlo_code
        self.starttls_code = starttls_code
        self.tls_garbage = tls_garbage
        self.auth_code = auth_code
        self.quit_code = quit_code
        self.commands: list[str] = []
        self.payload: bytes | None = None
        self.auth_credentials: list[str] = []
        self.client_closed = threading.Event()
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._sock.bind(("127.0.0.1", 0))
        self._sock.listen(1)
        self._sock.settimeout(10)
        self._thread = threading.Thread(target=self._serve, daemon=True)

    @property
    def host(self) -> str:
        return f"127.0.0.1:{self._sock.getsockname()[1]}"

    @property
    def verbs(self) -> list[str]:
        return [cmd.split(" ", 1)[0] for cmd in self.commands]

    def start(self) -> "MockSmtpServer":
        self._thread.start()
        return self

    def stop(self) -> None:
        self._thread.join(timeout=10)
        self._sock.close()

    def _serve(self) -> None:
        try:
            conn, _ = self._sock.accept()
        except OSError:
            return
        conn.settimeout(10)
        rfile = conn.makefile("rb")
        try:
            conn.sendall(b"220 mock ESMTP ready\r\n")
            rcpt_count = 0
            while True:
                line = rfile.readline()
                if not line:
                    self.client_closed.set()
                    return
                command = _normalize(line.rstrip(b"\r\n").decode("utf-8"))
                self.commands.append(command)
                verb, _, arg = command.partition(" ")

                if verb == "EHLO":
                    if self.ehlo_code != 250:
                        conn.sendall(f"{self.ehlo_code} command not recognized\r\n".encode())
                        continue
                    lines = ["mock.local", *self.extensions]
                    reply = "".join(f"250-{item}\r\n" for item in lines[:-1]) + f"250 {lines[-1]}\r\n"
                    conn.sendall(reply.encode())
                elif verb == "HELO":
                    conn.sendall(b"250 mock.local\r\n")
                elif verb == "STARTTLS":
                    if self.tls_garbage:
                        # accept the upgrade, then answer the handshake with plain text
                        conn.sendall(b"220 2.0.0 Ready to start TLS\r\n")
                        rfile.read1(1)  # wait for the ClientHello
                        conn.sendall(b"this is not a TLS record\r\n")
                        try:
                            rfile.read()
                        except OSError:
                            pass  # a reset also means the client hung up
                        self.client_closed.set()
                        return
                    conn.sendall(f"{self.starttls_code} TLS not available\r\n".encode())
                elif verb == "AUTH":
                    _, _, initial = arg.partition(" ")
                    self.auth_credentials.append(base64.b64decode(initial).decode("utf-8"))
                    if self.auth_code == 235:
                        conn.sendall(b"235 2.7.0 Authentication successful\r\n")
                    else:
                        conn.sendall(f"{self.auth_code} 5.7.8 Authentication credentials invalid\r\n".encode())
                elif verb == "MAIL":
                    conn.sendall(b"250 2.1.0 Ok\r\n")
                elif verb == "RCPT":
                    rcpt_count += 1
                    if rcpt_count == self.reject_rcpt_at:
                        conn.sendall(b"550 5.1.1 No such user\r\n")
                    else:
                        conn.sendall(b"250 2.1.5 Ok\r\n")
                elif verb == "DATA":
                    conn.sendall(b"354 End data with <CR><LF>.<CR><LF>\r\n")
                    self.payload = _read_data(rfile)
                    conn.sendall(b"250 2.0.0 Ok: queued\r\n")
                elif verb == "QUIT":
                    conn.sendall(f"{self.quit_code} Bye\r\n".encode())
                else:
                    conn.sendall(b"502 5.5.2 Error: command not recognized\r\n")
        except OSError:
            return
        finally:
            rfile.close()
            conn.close()


def _normalize(command: str) -> str:
    verb, _, arg = command.partition(" ")
    verb = verb.upper()
    for keyword in ("FROM:", "TO:"):
        if arg.upper().startswith(keyword):
            arg = keyword + arg[len(keyword):]
    return f"{verb} {arg}" if arg else verb


def _read_data(rfile) -> bytes:
    chunks: list[bytes] = []
    while True:
        line = rfile.readline()
        if not line or line == b".\r\n":
            return b"".join(chunks)
        if line.startswith(b".."):
            line = line[1:]
        chunks.append(line)


@pytest.fixture
def smtp_server():
    servers: list[MockSmtpServer] = []

    def factory(**kwargs) -> MockSmtpServer:
        server = MockSmtpServer(**kwargs).start()
        servers.append(server)
        return server

    yield factory
    for server in servers:
        server.stop()


@pytest.fixture
def log_events():
    """Reader for JSONL run logs, oldest event first."""

    def read(path: Path) -> list[dict]:
        if not path.exists():
            return []
        with path.open("r", encoding="utf-8") as f:
            return [json.loads(line) for line in f if line.strip()]

    return read


@pytest.fixture
def run_logger(tmp_path: Path) -> StructuredLogger:
    return StructuredLogger(path=tmp_path / "logs" / "run.log", run_id="test-run")


@pytest.fixture
def closed_port() -> int:
    """A local port with nothing listening on it."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port
