"""
pytest configuration and fixtures.
"""

import socket
import threading
import time
from typing import Generator

import pytest

# Make the package importable without installing it
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from forkcorn.config import Config
from forkcorn.connection import ConnectionHandler
from forkcorn.supervisor import Supervisor


def hello_app(environ, start_response):
    """The application from the end-to-end scenario: fixed plain-text body."""
    start_response("200 OK", [("Content-Type", "text/plain")])
    return [b"Hello, World!"]


def echo_app(environ, start_response):
    """Echoes method, path, query and body back."""
    body = environ["wsgi.input"].read()
    text = "{} {} {}\n".format(
        environ["REQUEST_METHOD"], environ["PATH_INFO"], environ["QUERY_STRING"]
    ).encode("latin-1") + body
    start_response("200 OK", [
        ("Content-Type", "text/plain"),
        ("Content-Length", str(len(text))),
    ])
    return [text]


def recv_all(sock: socket.socket, timeout: float = 5.0) -> bytes:
    """Read until the peer closes the connection."""
    sock.settimeout(timeout)
    chunks = []
    while True:
        try:
            chunk = sock.recv(65536)
        except ConnectionResetError:
            break
        if not chunk:
            break
        chunks.append(chunk)
    return b"".join(chunks)


def exchange(app, raw: bytes, config: Config = None, half_close: bool = False) -> bytes:
    """Run one ConnectionHandler cycle over a socketpair and return the reply."""
    server_sock, client_sock = socket.socketpair()
    try:
        client_sock.sendall(raw)
        if half_close:
            client_sock.shutdown(socket.SHUT_WR)
        handler = ConnectionHandler(
            app, config or Config(recv_timeout=2.0), "testserver", 8000
        )
        handler.handle(server_sock, ("127.0.0.1", 50000))
        return recv_all(client_sock)
    finally:
        client_sock.close()


def http_get(address: tuple, path: str = "/", timeout: float = 5.0) -> bytes:
    """Send a GET over TCP and return the raw response."""
    with socket.create_connection(address, timeout=timeout) as sock:
        sock.sendall(
            f"GET {path} HTTP/1.1\r\nHost: {address[0]}\r\n\r\n".encode("latin-1")
        )
        return recv_all(sock, timeout)


def wait_for_port(port: int, timeout: float = 10.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        try:
            with socket.create_connection(("127.0.0.1", port), timeout=0.5):
                return
        except OSError:
            time.sleep(0.05)
    raise RuntimeError(f"Nothing listening on port {port}")


@pytest.fixture
def free_port() -> int:
    """Get a free port for testing."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class RunningSupervisor:
    """Runs a Supervisor in a background thread (signals not installed)."""

    def __init__(self, app, config: Config):
        self.supervisor = Supervisor(app, config)
        self.result = None
        self._thread = threading.Thread(target=self._run, daemon=True)

    def _run(self):
        self.result = self.supervisor.run(install_signals=False)

    def start(self) -> "RunningSupervisor":
        self._thread.start()
        if not self.supervisor.started.wait(10.0):
            raise RuntimeError("Supervisor failed to start")
        return self

    @property
    def address(self) -> tuple:
        return self.supervisor.address

    def stop(self, timeout: float = 15.0) -> bool:
        """Request shutdown; returns True if run() returned within *timeout*."""
        self.supervisor.stop()
        self._thread.join(timeout)
        return not self._thread.is_alive()


@pytest.fixture
def start_supervisor() -> Generator:
    """Factory fixture; every supervisor started through it is stopped after the test."""
    running = []

    def factory(app, **options) -> RunningSupervisor:
        options.setdefault("host", "127.0.0.1")
        options.setdefault("port", 0)
        options.setdefault("graceful_timeout", 5.0)
        options.setdefault("recv_timeout", 5.0)
        srv = RunningSupervisor(app, Config(**options)).start()
        running.append(srv)
        return srv

    yield factory

    for srv in running:
        srv.stop()
