"""Execution Engine - runs one request, following redirects hop by hop.

Each hop goes RESOLVE (compile a Unit) -> ACQUIRE (pooled or fresh stream)
-> SEND -> DECODE, then either REDIRECT back to RESOLVE or finish. The chain
is an explicit loop so the redirect budget and its termination stay visible.

Redirect method policy is fixed:
    301, 302, 303 -> GET with an empty body (HEAD stays HEAD)
    307, 308      -> same method and body; a body that cannot be replayed
                     (a reader) ends the chain and the 3xx is returned
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from syncwire.errors import RedirectLimitExceeded, RequestError, TransportError
from syncwire.header import Header, Headers
from syncwire.models import Body, EmptyBody, RequestSpec
from syncwire.response import Response, read_response
from syncwire.stream import TransportStream, connect
from syncwire.unit import ResolvedUrl, Unit, resolve_url

if TYPE_CHECKING:
    from syncwire.agent import AgentState

logger = logging.getLogger(__name__)

REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})
REDIRECT_LIMIT_STATUS = 500
# Redirect bodies larger than this are dropped with their connection instead of drained.
DRAIN_LIMIT = 64 * 1024

_BODY_HEADERS = ("Content-Length", "Transfer-Encoding", "Content-Type")


@dataclass(frozen=True)
class Hop:
    """What changes between hops of one redirect chain."""

    url: ResolvedUrl
    method: str
    body: Body
    headers: tuple[Header, ...]
    query: tuple[tuple[str, str], ...] = ()


def execute(state: AgentState, spec: RequestSpec) -> Response:
    """Execute ``spec`` and return the final response.

    Returns a synthetic response (status 500, ``synthetic_error`` set to
    RedirectLimitExceeded) when the redirect budget runs out.

    Raises:
        RequestError: BadUrl, ConnectFailed, RequestTimeout, TransportError,
            or ProtocolError.
    """
    hop = Hop(
        url=resolve_url(spec.url),
        method=spec.method.upper(),
        body=spec.body,
        headers=spec.headers,
        query=spec.query,
    )
    remaining = spec.redirects

    while True:
        unit = Unit.compile(
            spec,
            hop.url,
            method=hop.method,
            body=hop.body,
            headers=hop.headers,
            query=hop.query,
            cookie_header=state.cookies.header_for(hop.url),
        )
        response = exchange(state, spec, unit)
        state.cookies.store_response(hop.url, response.headers)

        location = response.header("Location")
        if response.status not in REDIRECT_STATUSES or location is None or spec.redirects == 0:
            return response

        if remaining == 0:
            response.close()
            error = RedirectLimitExceeded(
                f"Too many redirects (limit {spec.redirects})", response.url
            )
            logger.debug("%s", error)
            return Response.from_error(
                error, response.url, status=REDIRECT_LIMIT_STATUS, status_text="Too Many Redirects"
            )

        try:
            next_hop = redirect_hop(hop, response.status, location, unit.replayable)
        except RequestError:
            response.close()
            raise
        if next_hop is None:
            return response

        remaining -= 1
        logger.debug(
            "Following %d redirect to %s (%d left)", response.status, next_hop.url, remaining
        )
        response.drain(DRAIN_LIMIT)
        hop = next_hop


def redirect_hop(hop: Hop, status: int, location: str, replayable: bool) -> Hop | None:
    """Build the next hop for a redirect, or None when it cannot be followed.

    Raises:
        BadUrl: If ``location`` cannot be resolved against the current URL.
    """
    url = resolve_url(location, base=str(hop.url))
    headers = Headers(hop.headers)
    if url.pool_key != hop.url.pool_key:
        # Caller credentials do not follow a redirect to another origin.
        headers.remove("Authorization")
        headers.remove("Cookie")

    if status in (301, 302, 303):
        method = "HEAD" if hop.method == "HEAD" else "GET"
        body: Body = EmptyBody()
        for name in _BODY_HEADERS:
            headers.remove(name)
    else:
        if not replayable:
            logger.debug("Not following %d: request body cannot be sent twice", status)
            return None
        method = hop.method
        body = hop.body

    return Hop(url=url, method=method, body=body, headers=headers.to_tuple())


def exchange(state: AgentState, spec: RequestSpec, unit: Unit) -> Response:
    """Send one Unit and decode its response.

    A stale failure on a reused pooled stream (the write failed, or the peer
    closed it before a single response byte) is retried once on a fresh
    connection if the body can be sent again. A response that had already
    started arriving is never sent twice. Everything else surfaces unchanged.
    """
    stream = state.pool.checkout(unit.pool_key)
    if stream is None:
        return _send_and_decode(state, unit, _connect(state, spec, unit), spec)

    try:
        return _send_and_decode(state, unit, stream, spec)
    except TransportError as e:
        if not (e.stale and unit.replayable):
            raise
        logger.debug("Pooled connection failed (%s), retrying on a fresh connection", e)

    return _send_and_decode(state, unit, _connect(state, spec, unit), spec)


def _connect(state: AgentState, spec: RequestSpec, unit: Unit) -> TransportStream:
    url = unit.url
    try:
        return connect(
            url.host,
            url.port,
            tls=url.tls,
            ip_version=spec.ip_version,
            connect_timeout=spec.timeout_connect,
            ssl_context=state.ssl_context if url.tls else None,
            key=unit.pool_key,
        )
    except RequestError as e:
        if e.url is None:
            e.url = unit.full_url
        raise


def _send_and_decode(
    state: AgentState, unit: Unit, stream: TransportStream, spec: RequestSpec
) -> Response:
    pool = state.pool

    def release(done: TransportStream) -> None:
        pool.checkin(done.key, done)

    stream.set_timeouts(spec.timeout_read, spec.timeout_write)
    try:
        try:
            unit.send(stream)
        except TransportError as e:
            # Nothing of the response has been read yet.
            e.stale = True
            raise
        return read_response(stream, method=unit.method, url=unit.full_url, on_release=release)
    except RequestError as e:
        stream.close()
        if e.url is None:
            e.url = unit.full_url
        raise
    except BaseException:
        stream.close()
        raise
