"""Response Decoder - parses a status line, headers, and a framed body.

The body is read lazily. Body readers count the bytes they yield and know
when the framing has completed cleanly (Content-Length reached or the zero
chunk seen); only then is the stream handed back for pooling. A body that is
abandoned early, fails, or is delimited by connection close takes its stream
down with it.
"""

from __future__ import annotations

import io
import json
import re
from typing import Any, Callable, Iterator

from syncwire.errors import ProtocolError, RequestError, TransportError
from syncwire.header import Headers
from syncwire.stream import TransportStream

MAX_HEADERS = 100
READ_SIZE = 16 * 1024

_STATUS_LINE = re.compile(r"^HTTP/(\d+\.\d+) (\d{3})(?: (.*))?$")
_CHUNK_SIZE = re.compile(rb"^[0-9a-fA-F]+$")

Release = Callable[[TransportStream], None]


def charset_from_content_type(content_type: str | None) -> str | None:
    """Return the ``charset`` parameter of a Content-Type value, if any."""
    if not content_type:
        return None
    for param in content_type.split(";")[1:]:
        name, _, value = param.partition("=")
        if name.strip().lower() == "charset" and value.strip():
            return value.strip().strip('"')
    return None


# =============================================================================
# Body Readers
# =============================================================================


class BodyReader(io.RawIOBase):
    """Raw reader over one framed body.

    ``on_complete`` receives the stream once framing completes cleanly. Any
    error or an early close() closes the stream instead.
    """

    def __init__(self, stream: TransportStream, on_complete: Release) -> None:
        super().__init__()
        self._stream: TransportStream | None = stream
        self._on_complete = on_complete
        self.bytes_read = 0
        self.complete = False

    def readable(self) -> bool:
        return True

    def _read_chunk(self, stream: TransportStream, size: int) -> bytes:
        raise NotImplementedError

    def readinto(self, buffer: Any) -> int:
        stream = self._stream
        if stream is None:
            return 0
        try:
            data = self._read_chunk(stream, len(buffer))
        except BaseException:
            self._discard()
            raise
        count = len(data)
        buffer[:count] = data
        self.bytes_read += count
        if self.complete:
            self._release()
        return count

    def _release(self) -> None:
        stream, self._stream = self._stream, None
        if stream is not None:
            self._on_complete(stream)

    def _discard(self) -> None:
        stream, self._stream = self._stream, None
        if stream is not None:
            stream.close()

    def close(self) -> None:
        if self.complete:
            self._release()
        else:
            self._discard()
        super().close()


class LengthReader(BodyReader):
    """Body of exactly ``length`` bytes. Reads past the end return b""."""

    def __init__(self, stream: TransportStream, on_complete: Release, length: int) -> None:
        super().__init__(stream, on_complete)
        self.length = length
        if length == 0:
            self.complete = True
            self._release()

    def _read_chunk(self, stream: TransportStream, size: int) -> bytes:
        remaining = self.length - self.bytes_read
        if remaining <= 0:
            self.complete = True
            return b""
        data = stream.read(min(size, remaining))
        if not data:
            stream.broken = True
            raise TransportError(
                f"Connection closed after {self.bytes_read} of {self.length} body bytes"
            )
        if self.bytes_read + len(data) >= self.length:
            self.complete = True
        return data


class ChunkedReader(BodyReader):
    """Decodes Transfer-Encoding: chunked framing."""

    def __init__(self, stream: TransportStream, on_complete: Release) -> None:
        super().__init__(stream, on_complete)
        self._chunk_left = 0

    def _read_size(self, stream: TransportStream) -> int:
        line = stream.readline()
        if not line:
            stream.broken = True
            raise TransportError("Connection closed inside chunked body")
        size_text = line.split(b";", 1)[0].strip()
        if not _CHUNK_SIZE.match(size_text):
            stream.broken = True
            raise ProtocolError(f"Malformed chunk size: {line!r}")
        return int(size_text, 16)

    def _read_trailers(self, stream: TransportStream) -> None:
        while True:
            line = stream.readline()
            if not line:
                # Terminator seen but the final CRLF never arrived.
                stream.reusable = False
                return
            if not line.strip():
                return

    def _read_chunk(self, stream: TransportStream, size: int) -> bytes:
        if self.complete:
            return b""

        if self._chunk_left == 0:
            self._chunk_left = self._read_size(stream)
            if self._chunk_left == 0:
                self._read_trailers(stream)
                self.complete = True
                return b""

        data = stream.read(min(size, self._chunk_left))
        if not data:
            stream.broken = True
            raise TransportError("Connection closed inside chunked body")
        self._chunk_left -= len(data)

        if self._chunk_left == 0:
            line_end = stream.readline()
            if line_end not in (b"\r\n", b"\n"):
                stream.broken = True
                raise ProtocolError(f"Missing CRLF after chunk data: {line_end!r}")
        return data


class CloseDelimitedReader(BodyReader):
    """Body that runs until the peer closes. The stream is never pooled afterwards."""

    def __init__(self, stream: TransportStream, on_complete: Release) -> None:
        super().__init__(stream, on_complete)
        stream.reusable = False

    def _read_chunk(self, stream: TransportStream, size: int) -> bytes:
        data = stream.read(size)
        if not data:
            self.complete = True
        return data


# =============================================================================
# Response
# =============================================================================


class Response:
    """A status, headers, and a lazily read body.

    The body must be read to the end (or the response closed) before the
    underlying connection can be reused. Usage:

        with agent.get("https://example.com/").call() as response:
            if response.ok:
                text = response.into_string()
    """

    def __init__(
        self,
        status: int,
        status_text: str,
        headers: Headers,
        url: str,
        reader: BodyReader | None = None,
        http_version: str = "1.1",
        error: RequestError | None = None,
    ) -> None:
        self.status = status
        self.status_text = status_text
        self.headers = headers
        self.url = url
        self.http_version = http_version
        self._reader = reader
        self._error = error

    @classmethod
    def from_error(
        cls, error: RequestError, url: str, status: int = 500, status_text: str | None = None
    ) -> Response:
        """A body-less response standing in for a non-fatal client-side error."""
        return cls(
            status=status,
            status_text=status_text or error.message,
            headers=Headers(),
            url=url,
            error=error,
        )

    # --- Status helpers ---

    @property
    def ok(self) -> bool:
        return 200 <= self.status <= 299

    @property
    def redirect(self) -> bool:
        return 300 <= self.status <= 399

    @property
    def client_error(self) -> bool:
        return 400 <= self.status <= 499

    @property
    def server_error(self) -> bool:
        return 500 <= self.status <= 599

    @property
    def error(self) -> bool:
        return self.client_error or self.server_error

    @property
    def synthetic(self) -> bool:
        """True when the response was produced locally, not sent by a server."""
        return self._error is not None

    @property
    def synthetic_error(self) -> RequestError | None:
        return self._error

    # --- Headers ---

    def header(self, name: str) -> str | None:
        return self.headers.get(name)

    def all(self, name: str) -> list[str]:
        return self.headers.get_all(name)

    def has(self, name: str) -> bool:
        return self.headers.has(name)

    def header_names(self) -> list[str]:
        return self.headers.names()

    @property
    def content_type(self) -> str:
        """Media type without parameters, ``text/plain`` if absent."""
        value = self.headers.get("Content-Type")
        if not value:
            return "text/plain"
        return value.split(";", 1)[0].strip()

    @property
    def charset(self) -> str:
        return charset_from_content_type(self.headers.get("Content-Type")) or "utf-8"

    # --- Body ---

    @property
    def bytes_read(self) -> int:
        return self._reader.bytes_read if self._reader is not None else 0

    @property
    def body_complete(self) -> bool:
        return self._reader is None or self._reader.complete

    def read(self, size: int = -1) -> bytes:
        """Read up to ``size`` body bytes (all remaining if negative)."""
        if self._reader is None or self._reader.closed:
            return b""
        if size < 0:
            return self._reader.readall()
        return self._reader.read(size) or b""

    def iter_bytes(self, chunk_size: int = READ_SIZE) -> Iterator[bytes]:
        while True:
            data = self.read(chunk_size)
            if not data:
                return
            yield data

    def into_reader(self) -> io.RawIOBase:
        """The raw body reader. Closing it releases or discards the connection."""
        if self._reader is None:
            return io.BytesIO(b"")
        return self._reader

    def into_string(self) -> str:
        """Whole body decoded with the response charset (UTF-8 if unknown)."""
        data = self.read()
        try:
            return data.decode(self.charset, errors="replace")
        except LookupError:
            return data.decode("utf-8", errors="replace")

    def into_json(self) -> Any:
        """Whole body parsed as JSON.

        Raises:
            ValueError: If the body is not valid JSON.
        """
        return json.loads(self.into_string())

    def drain(self, limit: int | None = None) -> bool:
        """Read and discard the body so the connection can be reused.

        Stops and closes the response when more than ``limit`` bytes remain.

        Returns:
            True if the body was read to its end.
        """
        while True:
            if self.body_complete:
                self.close()
                return True
            if limit is not None and self.bytes_read > limit:
                self.close()
                return False
            if not self.read(READ_SIZE) and not self.body_complete:
                self.close()
                return False

    def close(self) -> None:
        """Release the connection if the body was fully read, otherwise discard it."""
        if self._reader is not None:
            self._reader.close()

    def __enter__(self) -> Response:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"Response[status: {self.status}, status_text: {self.status_text}, url: {self.url}]"


# =============================================================================
# Decoding
# =============================================================================


def _parse_status_line(line: bytes) -> tuple[str, int, str]:
    text = line.decode("latin-1").rstrip("\r\n")
    match = _STATUS_LINE.match(text)
    if not match:
        raise ProtocolError(f"Malformed status line: {text!r}")
    return match.group(1), int(match.group(2)), match.group(3) or ""


def _read_headers(stream: TransportStream) -> Headers:
    headers = Headers()
    while True:
        line = stream.readline()
        if not line.endswith(b"\n"):
            stream.broken = True
            raise TransportError("Connection closed inside the header block")
        if line in (b"\r\n", b"\n"):
            return headers
        if len(headers) >= MAX_HEADERS:
            stream.broken = True
            raise ProtocolError(f"More than {MAX_HEADERS} response headers")
        name, value = Headers.parse_line(line.decode("latin-1"))
        headers.add(name, value)


def _keep_alive(http_version: str, headers: Headers) -> bool:
    connection = ",".join(headers.get_all("Connection")).lower()
    if "close" in connection:
        return False
    if http_version == "1.0":
        return "keep-alive" in connection
    return True


def _content_length(headers: Headers) -> int | None:
    value = headers.get("Content-Length")
    if value is None:
        return None
    try:
        length = int(value.strip())
    except ValueError:
        length = -1
    if length < 0:
        raise ProtocolError(f"Invalid Content-Length: {value!r}")
    return length


def read_response(
    stream: TransportStream,
    *,
    method: str,
    url: str,
    on_release: Release,
) -> Response:
    """Parse one response from ``stream``.

    Raises:
        TransportError: The connection closed before or during the header
            block (``stale`` is set when not a single byte arrived).
        ProtocolError: Malformed status line, headers, or Content-Length.
    """
    while True:
        line = stream.readline()
        if not line:
            stream.broken = True
            raise TransportError("Connection closed before the status line", url, stale=True)
        try:
            http_version, status, status_text = _parse_status_line(line)
            headers = _read_headers(stream)
        except ProtocolError as e:
            stream.broken = True
            e.url = url
            raise
        # Interim responses (100 Continue, 103 Early Hints) precede the real one.
        if 100 <= status < 200 and status != 101:
            continue
        break

    if not _keep_alive(http_version, headers) or status == 101:
        stream.reusable = False

    reader: BodyReader | None
    transfer_encoding = ",".join(headers.get_all("Transfer-Encoding")).lower()
    if method == "HEAD" or status < 200 or status in (204, 304):
        on_release(stream)
        reader = None
    elif "chunked" in transfer_encoding:
        reader = ChunkedReader(stream, on_release)
    else:
        try:
            length = _content_length(headers)
        except ProtocolError as e:
            stream.broken = True
            e.url = url
            raise
        if length is not None:
            reader = LengthReader(stream, on_release, length)
        else:
            reader = CloseDelimitedReader(stream, on_release)

    return Response(
        status=status,
        status_text=status_text,
        headers=headers,
        url=url,
        reader=reader,
        http_version=http_version,
    )
