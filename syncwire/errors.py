"""Error taxonomy for syncwire.

Every failed request surfaces as exactly one RequestError subclass. The
redirect-limit case is the exception: it is carried by a synthetic Response
(see Response.synthetic_error) instead of being raised.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Which part of the exchange failed."""

    BAD_URL = "bad_url"
    CONNECT_FAILED = "connect_failed"
    TIMEOUT = "timeout"
    IO = "io"
    PROTOCOL = "protocol"
    REDIRECT_LIMIT = "redirect_limit"


class RequestError(Exception):
    """Base class for request execution errors."""

    kind: ErrorKind = ErrorKind.IO

    def __init__(self, message: str, url: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.url = url

    def __str__(self) -> str:
        if self.url:
            return f"{self.message} ({self.url})"
        return self.message


class BadUrl(RequestError):
    """Raised when a target URL or Location header cannot be resolved."""

    kind = ErrorKind.BAD_URL


class ConnectFailed(RequestError):
    """Raised when DNS, the TCP connect, or the TLS handshake fails."""

    kind = ErrorKind.CONNECT_FAILED


class RequestTimeout(RequestError):
    """Raised when a connect, read, or write deadline is exceeded."""

    kind = ErrorKind.TIMEOUT


class TransportError(RequestError):
    """Raised when the socket fails mid-transfer.

    ``stale`` is set when the request could not be written, or the peer
    closed the connection before sending a single byte of the response.
    That is how an idle pooled connection the server already dropped shows up.
    """

    kind = ErrorKind.IO

    def __init__(self, message: str, url: str | None = None, stale: bool = False) -> None:
        super().__init__(message, url)
        self.stale = stale


class ProtocolError(RequestError):
    """Raised for a malformed status line, header block, or chunk framing."""

    kind = ErrorKind.PROTOCOL


class RedirectLimitExceeded(RequestError):
    """Describes a redirect chain that ran out of hops."""

    kind = ErrorKind.REDIRECT_LIMIT


class ConfigError(Exception):
    """Raised when configuration loading fails."""
