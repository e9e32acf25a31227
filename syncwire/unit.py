"""Request Compiler - turns a RequestSpec into the wire form of one hop.

A Unit carries the resolved URL, the final header block (Host, framing, and
default headers injected), and a body source with its framing decided:
fixed-length, chunked, or unbounded (terminated by half-closing the socket).
"""

from __future__ import annotations

import base64
import json
from enum import Enum
from typing import Any, NamedTuple
from urllib.parse import quote, unquote, urljoin, urlsplit

from syncwire import __version__
from syncwire.errors import BadUrl, ProtocolError, TransportError
from syncwire.header import Header, Headers
from syncwire.models import (
    DEFAULT_PORTS,
    Body,
    BytesBody,
    EmptyBody,
    JsonBody,
    PoolKey,
    ReaderBody,
    RequestSpec,
    TextBody,
)
from syncwire.stream import TransportStream

BASE_URL = "http://localhost/"
USER_AGENT = f"syncwire/{__version__}"
CHUNK_SIZE = 16 * 1024

# Characters left alone when percent-encoding a path or an existing query.
_PATH_SAFE = "/%:@!$&'()*+,;=-._~"
_QUERY_SAFE = _PATH_SAFE + "?"


class Framing(str, Enum):
    """How the request body is delimited on the wire."""

    NONE = "none"
    FIXED = "fixed"
    CHUNKED = "chunked"
    UNBOUNDED = "unbounded"


class ResolvedUrl(NamedTuple):
    """Absolute URL of one hop, with the port filled in."""

    scheme: str
    host: str
    port: int
    path: str
    query: str = ""
    username: str | None = None
    password: str | None = None

    @property
    def pool_key(self) -> PoolKey:
        return PoolKey(self.scheme, self.host, self.port)

    @property
    def tls(self) -> bool:
        return self.scheme == "https"

    @property
    def netloc(self) -> str:
        """Host (bracketed if IPv6) plus the port when it is not the scheme default."""
        host = f"[{self.host}]" if ":" in self.host else self.host
        if self.port == DEFAULT_PORTS[self.scheme]:
            return host
        return f"{host}:{self.port}"

    def __str__(self) -> str:
        query = f"?{self.query}" if self.query else ""
        return f"{self.scheme}://{self.netloc}{self.path}{query}"


def resolve_url(url: str, base: str = BASE_URL) -> ResolvedUrl:
    """Resolve ``url`` (absolute, or relative to ``base``) into a ResolvedUrl.

    Raises:
        BadUrl: If the URL cannot be parsed, has no host, or is not http(s).
    """
    try:
        parts = urlsplit(urljoin(base, url.strip()))
        port = parts.port
    except ValueError as e:
        raise BadUrl(f"Invalid URL: {e}", url) from e

    scheme = parts.scheme.lower()
    if scheme not in DEFAULT_PORTS:
        raise BadUrl(f"Unsupported scheme '{parts.scheme}'", url)
    if not parts.hostname:
        raise BadUrl("URL has no host", url)

    return ResolvedUrl(
        scheme=scheme,
        host=parts.hostname,
        port=port or DEFAULT_PORTS[scheme],
        path=quote(parts.path or "/", safe=_PATH_SAFE),
        query=quote(parts.query, safe=_QUERY_SAFE),
        username=unquote(parts.username) if parts.username else None,
        password=unquote(parts.password) if parts.password else None,
    )


def combine_query(url_query: str, pairs: tuple[tuple[str, str], ...] | list[tuple[str, str]]) -> str:
    """Append stored query pairs after the URL's own query.

    Returns:
        "" when there is no query at all, otherwise "?..." with the URL's
        query first and each added key/value percent-encoded.
    """
    parts = [url_query] if url_query else []
    parts.extend(f"{quote(k, safe='')}={quote(v, safe='')}" for k, v in pairs)
    if not parts:
        return ""
    return "?" + "&".join(parts)


def basic_auth(user: str, password: str) -> str:
    """Base64 credentials for an ``Authorization: Basic`` header."""
    return base64.b64encode(f"{user}:{password}".encode("utf-8")).decode("ascii")


def encode_text(text: str, charset: str) -> bytes:
    """Encode with ``charset``; unknown charsets and unencodable text fall back to UTF-8."""
    try:
        return text.encode(charset)
    except (LookupError, UnicodeEncodeError):
        return text.encode("utf-8")


def _sanitize_header_value(value: str) -> bytes:
    """Encode a header line for the wire.

    Header fields are octets; anything outside Latin-1 is replaced with '?'
    so the request can still be sent.
    """
    return value.encode("latin-1", errors="replace")


def _payload(body: Body, headers: Headers) -> tuple[bytes | None, Any]:
    """Return (known-length bytes, reader) for a body; at most one is set."""
    if isinstance(body, EmptyBody):
        return None, None
    if isinstance(body, BytesBody):
        return body.data, None
    if isinstance(body, TextBody):
        return encode_text(body.text, body.charset), None
    if isinstance(body, JsonBody):
        if not headers.has("Content-Type"):
            headers.add("Content-Type", "application/json")
        return json.dumps(body.value).encode("utf-8"), None
    if isinstance(body, ReaderBody):
        return None, body.reader
    raise TypeError(f"Unknown body type: {type(body).__name__}")


class Unit:
    """Compiled, send-ready form of one request attempt.

    Usage:
        url = resolve_url(spec.url)
        unit = Unit.compile(spec, url)
        unit.send(stream)
    """

    def __init__(
        self,
        method: str,
        url: ResolvedUrl,
        query: str,
        headers: Headers,
        payload: bytes | None = None,
        reader: Any = None,
        framing: Framing = Framing.NONE,
        content_length: int | None = None,
    ) -> None:
        self.method = method
        self.url = url
        self.query = query
        self.headers = headers
        self.payload = payload
        self.reader = reader
        self.framing = framing
        self.content_length = content_length

    @classmethod
    def compile(
        cls,
        spec: RequestSpec,
        url: ResolvedUrl,
        *,
        method: str | None = None,
        body: Body | None = None,
        headers: tuple[Header, ...] | None = None,
        query: tuple[tuple[str, str], ...] | None = None,
        cookie_header: str | None = None,
    ) -> Unit:
        """Build the Unit for one hop.

        ``method``, ``body``, ``headers`` and ``query`` override the RequestSpec's
        values (used when following redirects).

        Raises:
            ProtocolError: If the caller set a non-numeric Content-Length on a
                reader body.
        """
        method = (method or spec.method).upper()
        body = spec.body if body is None else body
        pairs = spec.query if query is None else query

        supplied = Headers(spec.headers if headers is None else headers)
        supplied.remove("Host")
        headers = Headers([Header("Host", url.netloc), *supplied])

        if not headers.has("User-Agent"):
            headers.add("User-Agent", USER_AGENT)
        if not headers.has("Accept"):
            headers.add("Accept", "*/*")
        if url.username is not None and not headers.has("Authorization"):
            headers.add("Authorization", f"Basic {basic_auth(url.username, url.password or '')}")
        if cookie_header and not headers.has("Cookie"):
            headers.add("Cookie", cookie_header)

        payload, reader = _payload(body, headers)
        chunked = any("chunked" in v.lower() for v in headers.get_all("Transfer-Encoding"))
        content_length = None

        if chunked:
            headers.remove("Content-Length")
            framing = Framing.CHUNKED
        elif reader is not None:
            declared = headers.get("Content-Length")
            if declared is not None:
                try:
                    content_length = int(declared.strip())
                except ValueError as e:
                    raise ProtocolError(f"Invalid Content-Length header: {declared!r}") from e
                framing = Framing.FIXED
            else:
                # Receiver can only find the end of the body when we stop writing.
                headers.set("Connection", "close")
                framing = Framing.UNBOUNDED
        elif payload is not None:
            content_length = len(payload)
            headers.set("Content-Length", str(content_length))
            framing = Framing.FIXED
        else:
            framing = Framing.NONE

        return cls(
            method=method,
            url=url,
            query=combine_query(url.query, pairs),
            headers=headers,
            payload=payload,
            reader=reader,
            framing=framing,
            content_length=content_length,
        )

    @property
    def pool_key(self) -> PoolKey:
        return self.url.pool_key

    @property
    def replayable(self) -> bool:
        """False when the body is a reader that can only be consumed once."""
        return self.reader is None

    @property
    def target(self) -> str:
        return f"{self.url.path}{self.query}"

    @property
    def full_url(self) -> str:
        return f"{self.url.scheme}://{self.url.netloc}{self.target}"

    @property
    def closes_connection(self) -> bool:
        return any("close" in v.lower() for v in self.headers.get_all("Connection"))

    def head(self) -> bytes:
        """Request line and header block, terminated by the empty line."""
        lines = [f"{self.method} {self.target} HTTP/1.1"]
        lines.extend(str(header) for header in self.headers)
        return _sanitize_header_value("\r\n".join(lines) + "\r\n\r\n")

    def send(self, stream: TransportStream) -> None:
        """Write the request to ``stream`` using the compiled framing."""
        if self.closes_connection:
            stream.reusable = False

        head = self.head()
        if self.framing == Framing.NONE:
            stream.write(head)
        elif self.framing == Framing.FIXED and self.reader is None:
            stream.write(head + (self.payload or b""))
        elif self.framing == Framing.CHUNKED and self.reader is None:
            stream.write(head + _chunk(self.payload or b"") + b"0\r\n\r\n")
        else:
            stream.write(head)
            self._send_reader(stream)

    def _read_body(self, size: int) -> bytes:
        try:
            return self.reader.read(size)
        except OSError as e:
            raise TransportError(f"Reading request body failed: {e}", str(self.url)) from e

    def _send_reader(self, stream: TransportStream) -> None:
        if self.framing == Framing.FIXED:
            remaining = self.content_length or 0
            while remaining > 0:
                data = self._read_body(min(CHUNK_SIZE, remaining))
                if not data:
                    stream.broken = True
                    raise ProtocolError(
                        f"Request body ended {remaining} bytes short of Content-Length "
                        f"{self.content_length}",
                        str(self.url),
                    )
                stream.write(data)
                remaining -= len(data)
            return

        while True:
            data = self._read_body(CHUNK_SIZE)
            if not data:
                break
            stream.write(_chunk(data) if self.framing == Framing.CHUNKED else data)

        if self.framing == Framing.CHUNKED:
            stream.write(b"0\r\n\r\n")
        else:
            stream.half_close()

    def __repr__(self) -> str:
        return f"Unit({self.method} {self.url.scheme}://{self.url.netloc}{self.target}, {self.framing.value})"


def _chunk(data: bytes) -> bytes:
    if not data:
        return b""
    return f"{len(data):x}\r\n".encode("ascii") + data + b"\r\n"
