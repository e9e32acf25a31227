"""Pytest configuration and fixtures for syncwire tests.

This file provides:
- FakeSocket / make_stream: in-memory sockets for decoder and compiler tests
- ScriptedConnector: replaces engine.connect with scripted server replies
- PortReservation: Race-free port allocation for test servers
- MockServer: Subprocess management for the FastAPI mock server
"""

from __future__ import annotations

import socket
import subprocess
import sys
import time
from pathlib import Path
from typing import Any, Callable, Generator

import pytest

from syncwire.models import PoolKey
from syncwire.stream import TransportStream

PROJECT_ROOT = Path(__file__).parent.parent
MOCK_SERVER_MODULE = "tests.integration.mock_server"

DEFAULT_KEY = PoolKey("http", "localhost", 80)


# =============================================================================
# In-memory transport
# =============================================================================


class FakeSocket:
    """Socket stand-in: recv() serves scripted bytes, sendall() records them.

    ``incoming`` is either the bytes available from the start, or a list of
    replies, one per request: each reply after the first only becomes
    readable once the previous one was consumed and something was sent,
    like a server answering one request at a time.

    recv_size caps how much one recv() returns, to exercise reads that
    straddle framing boundaries.
    """

    def __init__(
        self,
        incoming: bytes | list[bytes] = b"",
        recv_size: int | None = None,
        send_error: OSError | None = None,
        recv_error: OSError | None = None,
    ) -> None:
        replies = [incoming] if isinstance(incoming, bytes) else list(incoming)
        self._incoming = bytearray(replies.pop(0) if replies else b"")
        self._pending = replies
        self._sent_since_reply = False
        self._recv_size = recv_size
        self._send_error = send_error
        self._recv_error = recv_error
        self.sent = bytearray()
        self.timeouts: list[float | None] = []
        self.closed = False
        self.shut_down = False

    def settimeout(self, timeout: float | None) -> None:
        self.timeouts.append(timeout)

    def recv(self, size: int) -> bytes:
        if self._recv_error is not None:
            raise self._recv_error
        if not self._incoming and self._pending and self._sent_since_reply:
            self._incoming.extend(self._pending.pop(0))
            self._sent_since_reply = False
        if self._recv_size is not None:
            size = min(size, self._recv_size)
        data = bytes(self._incoming[:size])
        del self._incoming[:size]
        return data

    def sendall(self, data: bytes) -> None:
        if self._send_error is not None:
            raise self._send_error
        self.sent.extend(data)
        self._sent_since_reply = True

    def shutdown(self, how: int) -> None:
        self.shut_down = True

    def close(self) -> None:
        self.closed = True


def make_stream(incoming: bytes | list[bytes] = b"", key: PoolKey = DEFAULT_KEY, **kwargs: Any) -> TransportStream:
    """TransportStream over a FakeSocket preloaded with ``incoming``."""
    return TransportStream(FakeSocket(incoming, **kwargs), key)


def http_response(
    status: int = 200,
    body: bytes = b"",
    headers: dict[str, str] | None = None,
    reason: str = "OK",
) -> bytes:
    """Wire bytes of a response. Content-Length is added unless a framing header is given."""
    headers = dict(headers or {})
    if "Transfer-Encoding" not in headers and "Content-Length" not in headers:
        headers["Content-Length"] = str(len(body))
    head = f"HTTP/1.1 {status} {reason}\r\n"
    head += "".join(f"{name}: {value}\r\n" for name, value in headers.items())
    return head.encode("latin-1") + b"\r\n" + body


class ScriptedConnector:
    """Stands in for syncwire.stream.connect inside the engine.

    Each connect() pops the next scripted reply and returns a stream over a
    FakeSocket holding it. A list scripts one reply per request sent on that
    connection. Keyword arguments for a FakeSocket can be passed
    by scripting a (bytes, dict) tuple instead of plain bytes.
    """

    def __init__(self, *replies: bytes | list[bytes] | tuple[bytes, dict[str, Any]]) -> None:
        self._replies = list(replies)
        self.streams: list[TransportStream] = []
        self.calls: list[dict[str, Any]] = []

    def __call__(self, host: str, port: int, **kwargs: Any) -> TransportStream:
        self.calls.append({"host": host, "port": port, **kwargs})
        if not self._replies:
            raise AssertionError(f"Unexpected connect to {host}:{port}")
        reply = self._replies.pop(0)
        socket_kwargs: dict[str, Any] = {}
        if isinstance(reply, tuple):
            reply, socket_kwargs = reply
        scheme = "https" if kwargs.get("tls") else "http"
        key = kwargs.get("key") or PoolKey(scheme, host, port)
        stream = TransportStream(FakeSocket(reply, **socket_kwargs), key)
        self.streams.append(stream)
        return stream

    def sent(self, index: int = 0) -> bytes:
        """Bytes written to the ``index``-th connected stream."""
        return bytes(self.streams[index]._sock.sent)


@pytest.fixture
def scripted_connect(monkeypatch: pytest.MonkeyPatch) -> Callable[..., ScriptedConnector]:
    """Install a ScriptedConnector as the engine's connect function.

    Example:
        def test_x(scripted_connect):
            connector = scripted_connect(http_response(body=b"hi"))
            response = syncwire.get("http://example.com/").call()
    """

    def install(*replies: bytes | tuple[bytes, dict[str, Any]]) -> ScriptedConnector:
        connector = ScriptedConnector(*replies)
        monkeypatch.setattr("syncwire.engine.connect", connector)
        return connector

    return install


# =============================================================================
# Mock server subprocess
# =============================================================================


class PortReservation:
    """Holds a reserved port with socket kept open to prevent races.

    WHY this exists: find_free_port() has a race window - another process can
    grab the port between when we find it and when our server binds. This class
    keeps the socket open until just before the server starts, eliminating the race.
    """

    def __init__(self) -> None:
        self._socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._socket.bind(("127.0.0.1", 0))  # Port 0 = OS assigns ephemeral port
        self._port = self._socket.getsockname()[1]
        self._released = False

    @property
    def port(self) -> int:
        return self._port

    def release(self) -> int:
        """Release the socket and return the port for server use.

        Safe to call multiple times - subsequent calls are no-ops.
        """
        if not self._released:
            self._socket.close()
            self._released = True
        return self._port

    def __enter__(self) -> PortReservation:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.release()


def find_free_port() -> int:
    """Find an available port on localhost.

    WARNING: Race condition exists between this returning and a server binding.
    Fine for tests that only need a port nobody listens on.
    """
    with PortReservation() as reservation:
        return reservation.port


def wait_for_server_ready(host: str, port: int, timeout: float = 10.0) -> bool:
    """Block until server accepts TCP connections, or timeout expires."""
    start = time.time()
    while time.time() - start < timeout:
        try:
            with socket.create_connection((host, port), timeout=1.0):
                return True
        except (ConnectionRefusedError, socket.timeout, OSError):
            time.sleep(0.1)
    return False


class MockServer:
    """Manages the mock server subprocess for integration tests.

    Runs tests/integration/mock_server.py (FastAPI under uvicorn) as a
    subprocess listening on 127.0.0.1.
    """

    def __init__(self, port: int | PortReservation) -> None:
        if isinstance(port, PortReservation):
            self._reservation: PortReservation | None = port
            self.port = port.port
        else:
            self._reservation = None
            self.port = port
        self.host = "127.0.0.1"
        self.base_url = f"http://{self.host}:{self.port}"
        self._process: subprocess.Popen | None = None

    def url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def start(self) -> None:
        """Start the mock server subprocess.

        Raises:
            RuntimeError: If server fails to start within 10 seconds.
        """
        if self._reservation:
            self._reservation.release()

        self._process = subprocess.Popen(
            [
                sys.executable, "-m", MOCK_SERVER_MODULE,
                "--host", self.host,
                "--port", str(self.port),
            ],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=PROJECT_ROOT,
        )

        if not wait_for_server_ready(self.host, self.port):
            stderr = ""
            if self._process and self._process.stderr:
                stderr = self._process.stderr.read().decode(errors="replace")
            self.stop()
            raise RuntimeError(
                f"MockServer failed to start on port {self.port}. "
                f"stderr: {stderr or '(empty)'}"
            )

    def stop(self) -> None:
        """Stop the mock server subprocess with graceful shutdown.

        Uses SIGTERM first, then SIGKILL after 5s if process doesn't exit.
        Safe to call multiple times or if server was never started.
        """
        if self._process:
            self._process.terminate()
            try:
                self._process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                # Process ignored SIGTERM, escalate to SIGKILL
                self._process.kill()
                try:
                    self._process.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    pass  # Process is unkillable (zombie?), nothing more we can do
            self._process = None

    def __enter__(self) -> MockServer:
        self.start()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.stop()


# =============================================================================
# Pytest Fixtures
# =============================================================================


@pytest.fixture(scope="session")
def fixture_mock_server() -> Generator[MockServer, None, None]:
    """Start the mock server once per test session."""
    with MockServer(PortReservation()) as server:
        yield server


@pytest.fixture(scope="session")
def mock_server(fixture_mock_server: MockServer) -> MockServer:
    """Alias for fixture_mock_server."""
    return fixture_mock_server


# =============================================================================
# Pytest Hooks
# =============================================================================


def pytest_collection_modifyitems(
    config: pytest.Config, items: list[pytest.Item]
) -> None:
    """Automatically apply markers based on test location.

    Enables running subsets via:
        pytest -m integration  # only integration tests
        pytest -m unit         # only unit tests
    """
    for item in items:
        test_path = Path(item.fspath)
        if "integration" in test_path.parts:
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)
