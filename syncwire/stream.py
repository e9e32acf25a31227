"""Transport Stream - a byte channel over a plain or TLS-wrapped socket.

Each blocking operation (connect, read, write) runs under its own deadline.
A deadline of 0 blocks forever. Any failure marks the stream broken; a broken
stream is never returned to the pool.
"""

from __future__ import annotations

import logging
import socket
import ssl
import time
from typing import Any

from syncwire.errors import (
    ConfigError,
    ConnectFailed,
    ProtocolError,
    RequestError,
    RequestTimeout,
    TransportError,
)
from syncwire.models import IpVersion, PoolKey, TlsConfig

logger = logging.getLogger(__name__)

RECV_SIZE = 16 * 1024
MAX_LINE_LENGTH = 64 * 1024


def build_ssl_context(tls: TlsConfig) -> ssl.SSLContext:
    """Build the SSL context an agent uses for every https connection.

    Raises:
        ConfigError: If the cipher string, CA bundle, or client cert is invalid.
    """
    context = ssl.create_default_context()

    if tls.ciphers:
        try:
            context.set_ciphers(tls.ciphers)
        except ssl.SSLError as e:
            raise ConfigError(f"Invalid cipher string '{tls.ciphers}': {e}") from e

    if tls.ca_bundle:
        try:
            context.load_verify_locations(tls.ca_bundle)
        except (OSError, ssl.SSLError) as e:
            raise ConfigError(f"Cannot load CA bundle '{tls.ca_bundle}': {e}") from e
    elif not tls.verify_ssl:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE

    # Handle client certificate (mTLS)
    if tls.cert:
        try:
            context.load_cert_chain(tls.cert, tls.key, password=tls.key_password)
        except (OSError, ssl.SSLError) as e:
            raise ConfigError(f"Cannot load client certificate '{tls.cert}': {e}") from e

    return context


def _remaining(deadline: float | None) -> float | None:
    if deadline is None:
        return None
    return deadline - time.monotonic()


def _ordered_addresses(host: str, port: int, ip_version: IpVersion) -> list[tuple[Any, ...]]:
    """Resolve ``host`` and put the preferred address family first."""
    infos = socket.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    preferred = socket.AF_INET6 if ip_version == IpVersion.V6 else socket.AF_INET
    first = [info for info in infos if info[0] == preferred]
    rest = [info for info in infos if info[0] != preferred]
    return first + rest


def connect(
    host: str,
    port: int,
    *,
    tls: bool = False,
    ip_version: IpVersion = IpVersion.V6,
    connect_timeout: float = 0.0,
    ssl_context: ssl.SSLContext | None = None,
    key: PoolKey | None = None,
) -> TransportStream:
    """Open a stream to ``host:port``, trying every resolved address in order.

    The whole call, TLS handshake included, shares one ``connect_timeout``
    budget.

    Raises:
        ConnectFailed: DNS failure, every address refused, or TLS failure.
        RequestTimeout: The connect budget ran out.
    """
    deadline = time.monotonic() + connect_timeout if connect_timeout else None
    target = f"{host}:{port}"

    try:
        addresses = _ordered_addresses(host, port, ip_version)
    except socket.gaierror as e:
        raise ConnectFailed(f"Could not resolve {host}: {e}") from e
    if not addresses:
        raise ConnectFailed(f"No addresses found for {host}")

    sock: socket.socket | None = None
    last_error: OSError | None = None
    for family, socktype, proto, _, address in addresses:
        remaining = _remaining(deadline)
        if remaining is not None and remaining <= 0:
            raise RequestTimeout(f"Connect to {target} timed out after {connect_timeout}s")

        try:
            candidate = socket.socket(family, socktype, proto)
        except OSError as e:
            # Address family not supported on this host.
            last_error = e
            continue
        candidate.settimeout(remaining)
        try:
            candidate.connect(address)
        except OSError as e:
            candidate.close()
            last_error = e
            logger.debug("Connect to %s via %s failed: %s", target, address[0], e)
            continue
        sock = candidate
        break

    if sock is None:
        if isinstance(last_error, TimeoutError):
            raise RequestTimeout(
                f"Connect to {target} timed out after {connect_timeout}s"
            ) from last_error
        raise ConnectFailed(f"Could not connect to {target}: {last_error}") from last_error

    sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)

    if tls:
        context = ssl_context or ssl.create_default_context()
        remaining = _remaining(deadline)
        if remaining is not None and remaining <= 0:
            sock.close()
            raise RequestTimeout(f"Connect to {target} timed out after {connect_timeout}s")
        sock.settimeout(remaining)
        try:
            sock = context.wrap_socket(sock, server_hostname=host)
        except TimeoutError as e:
            sock.close()
            raise RequestTimeout(f"TLS handshake with {target} timed out") from e
        except OSError as e:
            sock.close()
            raise ConnectFailed(f"TLS handshake with {target} failed: {e}") from e

    logger.debug("Connected to %s%s", target, " (tls)" if tls else "")
    scheme = "https" if tls else "http"
    return TransportStream(sock, key or PoolKey(scheme, host, port))


class TransportStream:
    """Buffered byte channel over one socket.

    Ownership moves between the pool and exactly one in-flight request; a
    stream is never read or written by two threads at once.
    """

    def __init__(
        self,
        sock: Any,
        key: PoolKey,
        read_timeout: float = 0.0,
        write_timeout: float = 0.0,
    ) -> None:
        self._sock = sock
        self.key = key
        self._read_timeout = read_timeout
        self._write_timeout = write_timeout
        self._buffer = bytearray()
        self._closed = False
        self.broken = False
        self.reusable = True

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def has_buffered_data(self) -> bool:
        """True when bytes past the last framed message are waiting unread."""
        return bool(self._buffer)

    def set_timeouts(self, read_timeout: float, write_timeout: float) -> None:
        """Apply the deadlines of the request that now owns the stream."""
        self._read_timeout = read_timeout
        self._write_timeout = write_timeout

    def _fail(self, error: OSError, operation: str) -> RequestError:
        self.broken = True
        if isinstance(error, TimeoutError):
            limit = self._read_timeout if operation == "Read" else self._write_timeout
            return RequestTimeout(f"{operation} timed out after {limit}s")
        return TransportError(f"{operation} failed: {error}")

    def _recv(self) -> bytes:
        self._sock.settimeout(self._read_timeout or None)
        try:
            return self._sock.recv(RECV_SIZE)
        except ssl.SSLEOFError:
            # Peer closed without close_notify; treat as EOF, framing checks catch truncation.
            return b""
        except OSError as e:
            raise self._fail(e, "Read") from e

    def _fill(self) -> bool:
        data = self._recv()
        if not data:
            return False
        self._buffer.extend(data)
        return True

    def read(self, size: int = -1) -> bytes:
        """Return up to ``size`` bytes (one receive at most), or b"" at EOF."""
        if not self._buffer and not self._fill():
            return b""
        if size < 0 or size >= len(self._buffer):
            data = bytes(self._buffer)
            self._buffer.clear()
            return data
        data = bytes(self._buffer[:size])
        del self._buffer[:size]
        return data

    def readline(self, limit: int = MAX_LINE_LENGTH) -> bytes:
        """Read through the next LF. Returns what is left (maybe b"") at EOF.

        Raises:
            ProtocolError: If no line ending shows up within ``limit`` bytes.
        """
        while True:
            index = self._buffer.find(b"\n")
            if index >= 0:
                line = bytes(self._buffer[: index + 1])
                del self._buffer[: index + 1]
                return line
            if len(self._buffer) > limit:
                self.broken = True
                raise ProtocolError(f"Line exceeds {limit} bytes")
            if not self._fill():
                line = bytes(self._buffer)
                self._buffer.clear()
                return line

    def write(self, data: bytes) -> None:
        self._sock.settimeout(self._write_timeout or None)
        try:
            self._sock.sendall(data)
        except OSError as e:
            raise self._fail(e, "Write") from e

    def half_close(self) -> None:
        """Signal end of the request body by shutting down the write side."""
        self.reusable = False
        try:
            self._sock.shutdown(socket.SHUT_WR)
        except OSError as e:
            raise self._fail(e, "Write") from e

    def close(self) -> None:
        """Close the socket. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._buffer.clear()
        self._sock.close()

    def __repr__(self) -> str:
        state = "closed" if self._closed else ("broken" if self.broken else "open")
        return f"TransportStream({self.key.scheme}://{self.key.host}:{self.key.port}, {state})"
