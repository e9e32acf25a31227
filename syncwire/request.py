"""Request builder.

A Request wraps a frozen RequestSpec. Every builder method returns a new
Request, so a half-built request can be shared and specialised from several
threads without any of them seeing the others' changes:

    base = agent.get("/items").set("Accept", "application/json")
    first = base.query("page", "1").call()
    second = base.query("page", "2").call()
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, BinaryIO
from urllib.parse import parse_qsl

from syncwire import engine
from syncwire.errors import BadUrl
from syncwire.header import Header, Headers
from syncwire.models import (
    Body,
    BytesBody,
    EmptyBody,
    IpVersion,
    JsonBody,
    ReaderBody,
    RequestSpec,
    TextBody,
)
from syncwire.response import Response, charset_from_content_type
from syncwire.unit import basic_auth, combine_query, resolve_url

if TYPE_CHECKING:
    from syncwire.agent import AgentState


def _non_negative(name: str, value: float) -> float:
    if value < 0:
        raise ValueError(f"{name} must not be negative, got {value}")
    return value


class Request:
    """An immutable request under construction. Finish it with call() or a send_*() method."""

    def __init__(self, spec: RequestSpec, state: AgentState) -> None:
        self._spec = spec
        self._state = state

    @property
    def spec(self) -> RequestSpec:
        return self._spec

    def _with(self, **changes: Any) -> Request:
        return Request(self._spec.model_copy(update=changes), self._state)

    # --- Execution ---

    def call(self) -> Response:
        """Execute without a body, blocking until the response head has arrived."""
        return self._do_call(EmptyBody())

    def send_bytes(self, data: bytes) -> Response:
        """Send raw bytes. Content-Length is set to ``len(data)``."""
        return self._do_call(BytesBody(data=bytes(data)))

    def send_string(self, text: str) -> Response:
        """Send text, encoded with the charset of this request's Content-Type (UTF-8 by default)."""
        charset = charset_from_content_type(self.header("Content-Type")) or "utf-8"
        return self._do_call(TextBody(text=text, charset=charset))

    def send_json(self, value: Any) -> Response:
        """Send a JSON document. Content-Type defaults to application/json."""
        return self._do_call(JsonBody(value=value))

    def send(self, reader: BinaryIO) -> Response:
        """Stream the body from a binary reader.

        The length is unknown, so the body goes out chunked if
        ``Transfer-Encoding: chunked`` is set, fixed-length if a
        Content-Length is set, and otherwise until the connection is
        half-closed.
        """
        return self._do_call(ReaderBody(reader=reader))

    def _do_call(self, body: Body) -> Response:
        return engine.execute(self._state, self._spec.model_copy(update={"body": body}))

    # --- Headers ---

    def set(self, name: str, value: str) -> Request:
        """Add a header. Setting the same name twice keeps both values."""
        return self._with(headers=(*self._spec.headers, Header(name, value)))

    def header(self, name: str) -> str | None:
        return Headers(self._spec.headers).get(name)

    def all(self, name: str) -> list[str]:
        return Headers(self._spec.headers).get_all(name)

    def has(self, name: str) -> bool:
        return Headers(self._spec.headers).has(name)

    def header_names(self) -> list[str]:
        """Set header names, lower-cased."""
        return Headers(self._spec.headers).names()

    def auth(self, user: str, password: str) -> Request:
        """Basic auth. Same as putting ``user:password@`` in the URL."""
        return self.auth_kind("Basic", basic_auth(user, password))

    def auth_kind(self, kind: str, token: str) -> Request:
        """Authorization of other kinds, such as ``Bearer`` or ``Digest``."""
        headers = Headers(self._spec.headers)
        headers.set("Authorization", f"{kind} {token}")
        return self._with(headers=headers.to_tuple())

    # --- Query ---

    def query(self, param: str, value: str) -> Request:
        """Add a query parameter, e.g. ``query("foo", "bar baz")`` -> ``?foo=bar%20baz``."""
        return self._with(query=(*self._spec.query, (param, value)))

    def query_str(self, query: str) -> Request:
        """Add query parameters from a string such as ``?format=json&dest=/login``."""
        pairs = parse_qsl(query.lstrip("?"), keep_blank_values=True)
        return self._with(query=(*self._spec.query, *pairs))

    # --- Behaviour ---

    def timeout_connect(self, seconds: float) -> Request:
        """Deadline for establishing the connection. 0 (default) waits forever."""
        return self._with(timeout_connect=_non_negative("timeout_connect", seconds))

    def timeout_read(self, seconds: float) -> Request:
        """Deadline for each individual socket read. 0 (default) waits forever."""
        return self._with(timeout_read=_non_negative("timeout_read", seconds))

    def timeout_write(self, seconds: float) -> Request:
        """Deadline for each individual socket write. 0 (default) waits forever."""
        return self._with(timeout_write=_non_negative("timeout_write", seconds))

    def timeout(self, seconds: float) -> Request:
        """Set the connect, read, and write deadlines at once."""
        seconds = _non_negative("timeout", seconds)
        return self._with(timeout_connect=seconds, timeout_read=seconds, timeout_write=seconds)

    def redirects(self, count: int) -> Request:
        """How many redirects to follow (default 5).

        0 returns the 3xx response itself. Running out of redirects with a
        limit above 0 produces a synthetic 500 response.
        """
        if count < 0:
            raise ValueError(f"redirects must not be negative, got {count}")
        return self._with(redirects=count)

    def set_preferred_ip_version(self, ip_version: IpVersion) -> Request:
        return self._with(ip_version=IpVersion(ip_version))

    # --- Accessors ---

    @property
    def method(self) -> str:
        return self._spec.method

    @property
    def url(self) -> str:
        """The URL exactly as given, without added query parameters."""
        return self._spec.url

    def get_host(self) -> str:
        return resolve_url(self._spec.url).host

    def get_scheme(self) -> str:
        return resolve_url(self._spec.url).scheme

    def get_path(self) -> str:
        return resolve_url(self._spec.url).path

    def get_query(self) -> str:
        """The complete query, e.g. ``?foo=bar&format=json``."""
        return combine_query(resolve_url(self._spec.url).query, self._spec.query)

    def __repr__(self) -> str:
        try:
            target = f"{self.get_path()}{self.get_query()}"
        except BadUrl:
            target = "BAD_URL"
        headers = [tuple(h) for h in self._spec.headers]
        return f"Request({self._spec.method} {target}, {headers})"
