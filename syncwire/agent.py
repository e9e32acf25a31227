"""Agent - state shared between requests: connection pool, cookies, headers.

Clones of an Agent share one AgentState by reference, so a pool and a cookie
jar can be used from many threads at once. Persistent headers belong to the
Agent value itself and are copied into every Request it creates.
"""

from __future__ import annotations

import logging
import ssl
import threading
from http.cookies import CookieError, SimpleCookie
from typing import Any, NamedTuple

from syncwire.header import Headers
from syncwire.models import AgentConfig, RequestSpec
from syncwire.pool import ConnectionPool
from syncwire.request import Request
from syncwire.stream import build_ssl_context
from syncwire.unit import ResolvedUrl, basic_auth

logger = logging.getLogger(__name__)


class StoredCookie(NamedTuple):
    name: str
    value: str
    domain: str | None
    path: str
    secure: bool = False
    host_only: bool = False


def _domain_match(host: str, domain: str) -> bool:
    host = host.lower()
    domain = domain.lower().lstrip(".")
    return host == domain or host.endswith("." + domain)


def _path_match(request_path: str, cookie_path: str) -> bool:
    if request_path == cookie_path or cookie_path == "/":
        return True
    if not request_path.startswith(cookie_path):
        return False
    return cookie_path.endswith("/") or request_path[len(cookie_path)] == "/"


def _default_path(request_path: str) -> str:
    if not request_path.startswith("/") or request_path.count("/") <= 1:
        return "/"
    return request_path[: request_path.rfind("/")]


class CookieJar:
    """Thread-safe cookie store fed by Set-Cookie headers and Agent.set_cookie()."""

    def __init__(self) -> None:
        self._cookies: dict[tuple[str | None, str, str], StoredCookie] = {}
        self._lock = threading.Lock()

    def set(self, cookie: StoredCookie) -> None:
        with self._lock:
            self._cookies[(cookie.domain, cookie.path, cookie.name)] = cookie

    def get(self, name: str) -> StoredCookie | None:
        with self._lock:
            for cookie in self._cookies.values():
                if cookie.name == name:
                    return cookie
        return None

    def __len__(self) -> int:
        with self._lock:
            return len(self._cookies)

    def store_response(self, url: ResolvedUrl, headers: Headers) -> None:
        """Remember every acceptable cookie a response sets."""
        for raw in headers.get_all("Set-Cookie"):
            parsed: SimpleCookie = SimpleCookie()
            try:
                parsed.load(raw)
            except CookieError as e:
                logger.debug("Ignoring malformed Set-Cookie %r: %s", raw, e)
                continue

            for morsel in parsed.values():
                domain_attr = morsel["domain"].lstrip(".").lower()
                if domain_attr and not _domain_match(url.host, domain_attr):
                    logger.debug("Rejecting cookie %s for foreign domain %s", morsel.key, domain_attr)
                    continue
                cookie = StoredCookie(
                    name=morsel.key,
                    value=morsel.value,
                    domain=domain_attr or url.host,
                    path=morsel["path"] or _default_path(url.path),
                    secure=bool(morsel["secure"]),
                    host_only=not domain_attr,
                )
                max_age = morsel["max-age"].strip()
                if max_age.lstrip("-").isdigit() and int(max_age) <= 0:
                    with self._lock:
                        self._cookies.pop((cookie.domain, cookie.path, cookie.name), None)
                    continue
                self.set(cookie)

    def header_for(self, url: ResolvedUrl) -> str | None:
        """Value for a Cookie header sent to ``url``, or None when nothing matches."""
        with self._lock:
            cookies = list(self._cookies.values())

        pairs = []
        for cookie in cookies:
            if cookie.secure and not url.tls:
                continue
            if cookie.domain is not None:
                if cookie.host_only and url.host.lower() != cookie.domain:
                    continue
                if not _domain_match(url.host, cookie.domain):
                    continue
            if not _path_match(url.path, cookie.path):
                continue
            pairs.append(f"{cookie.name}={cookie.value}")
        return "; ".join(pairs) or None


class AgentState:
    """What clones of one Agent share: the pool, the cookie jar, the SSL context."""

    def __init__(self, config: AgentConfig) -> None:
        self.config = config
        self.pool = ConnectionPool(config.max_idle_connections, config.max_idle_per_host)
        self.cookies = CookieJar()
        self._ssl_context: ssl.SSLContext | None = None
        self._lock = threading.Lock()

    @property
    def ssl_context(self) -> ssl.SSLContext:
        """Built on first https use."""
        with self._lock:
            if self._ssl_context is None:
                self._ssl_context = build_ssl_context(self.config.tls)
            return self._ssl_context


class Agent:
    """Keeps state between requests.

    Usage:
        agent = Agent()
        agent.set("X-Api-Key", "secret")
        response = agent.get("https://example.com/items").query("page", "2").call()

    Or with context manager (closes pooled connections on exit):
        with Agent(config) as agent:
            agent.post("/ingest").send_json({"name": "martin"})
    """

    def __init__(self, config: AgentConfig | None = None, *, state: AgentState | None = None) -> None:
        self.config = config or AgentConfig()
        self._state = state or AgentState(self.config)
        self._headers = Headers(self.config.headers.items())
        self._lock = threading.Lock()

    @property
    def state(self) -> AgentState:
        return self._state

    @property
    def pool(self) -> ConnectionPool:
        return self._state.pool

    def clone(self) -> Agent:
        """A new Agent sharing this one's pool and cookies, with a copy of its headers."""
        other = Agent(self.config, state=self._state)
        with self._lock:
            other._headers = self._headers.copy()
        return other

    def set(self, name: str, value: str) -> Agent:
        """Add a header sent with every request made from this agent."""
        with self._lock:
            self._headers.set(name, value)
        return self

    def header(self, name: str) -> str | None:
        with self._lock:
            return self._headers.get(name)

    def auth(self, user: str, password: str) -> Agent:
        """Basic auth for every request made from this agent."""
        return self.auth_kind("Basic", basic_auth(user, password))

    def auth_kind(self, kind: str, token: str) -> Agent:
        """Authorization of other kinds, e.g. ``Bearer`` or ``Digest``."""
        return self.set("Authorization", f"{kind} {token}")

    def set_cookie(self, name: str, value: str, domain: str | None = None, path: str = "/") -> Agent:
        """Store a cookie. Without ``domain`` it is sent to every host."""
        self._state.cookies.set(StoredCookie(name=name, value=value, domain=domain, path=path))
        return self

    def cookie(self, name: str) -> str | None:
        cookie = self._state.cookies.get(name)
        return cookie.value if cookie is not None else None

    def request(self, method: str, url: str) -> Request:
        """Start a request preloaded with this agent's headers and defaults."""
        with self._lock:
            headers = self._headers.to_tuple()
        spec = RequestSpec(
            method=method.upper(),
            url=url,
            headers=headers,
            timeout_connect=self.config.timeout_connect,
            timeout_read=self.config.timeout_read,
            timeout_write=self.config.timeout_write,
            redirects=self.config.redirects,
            ip_version=self.config.ip_version,
        )
        return Request(spec, self._state)

    def get(self, url: str) -> Request:
        return self.request("GET", url)

    def head(self, url: str) -> Request:
        return self.request("HEAD", url)

    def post(self, url: str) -> Request:
        return self.request("POST", url)

    def put(self, url: str) -> Request:
        return self.request("PUT", url)

    def delete(self, url: str) -> Request:
        return self.request("DELETE", url)

    def patch(self, url: str) -> Request:
        return self.request("PATCH", url)

    def options(self, url: str) -> Request:
        return self.request("OPTIONS", url)

    def trace(self, url: str) -> Request:
        return self.request("TRACE", url)

    def connect(self, url: str) -> Request:
        return self.request("CONNECT", url)

    def close(self) -> None:
        """Close every idle pooled connection."""
        self._state.pool.close_all()

    def __enter__(self) -> Agent:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
