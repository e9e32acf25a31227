"""syncwire - a small blocking HTTP/1.1 client.

    import syncwire

    response = syncwire.get("https://example.com/").set("Accept", "text/html").call()
    if response.ok:
        print(response.into_string())

Use an Agent to keep connections and cookies between requests:

    agent = syncwire.agent()
    agent.post("https://example.com/ingest").send_json({"name": "martin"})
"""

__version__ = "0.1.0"

from syncwire.agent import Agent, CookieJar
from syncwire.errors import (
    BadUrl,
    ConfigError,
    ConnectFailed,
    ErrorKind,
    ProtocolError,
    RedirectLimitExceeded,
    RequestError,
    RequestTimeout,
    TransportError,
)
from syncwire.header import Header, Headers
from syncwire.models import AgentConfig, IpVersion, TlsConfig
from syncwire.request import Request
from syncwire.response import Response

__all__ = [
    "Agent",
    "AgentConfig",
    "BadUrl",
    "ConfigError",
    "ConnectFailed",
    "CookieJar",
    "ErrorKind",
    "Header",
    "Headers",
    "IpVersion",
    "ProtocolError",
    "RedirectLimitExceeded",
    "Request",
    "RequestError",
    "RequestTimeout",
    "Response",
    "TlsConfig",
    "TransportError",
    "agent",
    "connect",
    "delete",
    "get",
    "head",
    "options",
    "patch",
    "post",
    "put",
    "request",
    "trace",
]


def agent() -> Agent:
    """A new Agent with default configuration."""
    return Agent()


def request(method: str, url: str) -> Request:
    """Start a request with any method on a fresh default agent."""
    return Agent().request(method, url)


def get(url: str) -> Request:
    return request("GET", url)


def head(url: str) -> Request:
    return request("HEAD", url)


def post(url: str) -> Request:
    return request("POST", url)


def put(url: str) -> Request:
    return request("PUT", url)


def delete(url: str) -> Request:
    return request("DELETE", url)


def patch(url: str) -> Request:
    return request("PATCH", url)


def options(url: str) -> Request:
    return request("OPTIONS", url)


def trace(url: str) -> Request:
    return request("TRACE", url)


def connect(url: str) -> Request:
    return request("CONNECT", url)
