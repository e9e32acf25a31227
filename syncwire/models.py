"""Internal data models for syncwire.

All models use Pydantic v2. Request descriptions are frozen: the builder
produces a new RequestSpec for every change (model_copy), so a spec handed to
the engine is never mutated underneath it.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, NamedTuple, Union

from pydantic import BaseModel, ConfigDict, Field

from syncwire.header import Header

DEFAULT_REDIRECTS = 5
DEFAULT_PORTS = {"http": 80, "https": 443}


class IpVersion(str, Enum):
    """Address family tried first when connecting."""

    V4 = "v4"
    V6 = "v6"


class PoolKey(NamedTuple):
    """Connection reuse eligibility: two hops may share a stream only if keys match."""

    scheme: str
    host: str
    port: int


# =============================================================================
# Request Bodies
# =============================================================================


class EmptyBody(BaseModel):
    """No request payload."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["empty"] = "empty"


class BytesBody(BaseModel):
    """Raw bytes, length known up front."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["bytes"] = "bytes"
    data: bytes = Field(description="Payload sent as-is")


class TextBody(BaseModel):
    """Text encoded with ``charset`` (falls back to UTF-8 when encoding fails)."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["text"] = "text"
    text: str = Field(description="Payload text")
    charset: str = Field(default="utf-8", description="Charset from the Content-Type header")


class ReaderBody(BaseModel):
    """A binary file-like object of unknown length. Can only be sent once."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["reader"] = "reader"
    reader: Any = Field(description="Object with a read(size) method returning bytes")


class JsonBody(BaseModel):
    """Structured value serialized to UTF-8 JSON when the request is compiled."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["json"] = "json"
    value: Any = Field(default=None, description="JSON-serializable value")


Body = Annotated[
    Union[EmptyBody, BytesBody, TextBody, ReaderBody, JsonBody],
    Field(discriminator="kind"),
]


# =============================================================================
# Request Description
# =============================================================================


class RequestSpec(BaseModel):
    """Everything the engine needs to execute one request.

    ``url`` may be absolute or path-only; path-only targets resolve against
    http://localhost/. Timeouts are seconds, 0 means block forever.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    method: str = Field(description="HTTP method token (GET, POST, etc.)")
    url: str = Field(description="Target URL exactly as given")
    headers: tuple[Header, ...] = Field(default=(), description="Ordered headers, duplicates allowed")
    query: tuple[tuple[str, str], ...] = Field(
        default=(), description="Query pairs appended after the URL's own query"
    )
    body: Body = Field(default_factory=EmptyBody, description="Request payload")
    timeout_connect: float = Field(default=0.0, ge=0, description="Connect deadline (0 = unbounded)")
    timeout_read: float = Field(default=0.0, ge=0, description="Per-read deadline (0 = unbounded)")
    timeout_write: float = Field(default=0.0, ge=0, description="Per-write deadline (0 = unbounded)")
    redirects: int = Field(default=DEFAULT_REDIRECTS, ge=0, description="Maximum redirects to follow")
    ip_version: IpVersion = Field(default=IpVersion.V6, description="Preferred address family")


# =============================================================================
# Runtime Configuration Models
# =============================================================================


class TlsConfig(BaseModel):
    """TLS settings applied to every https connection an agent opens."""

    model_config = ConfigDict(extra="forbid")

    verify_ssl: bool = Field(default=True, description="Verify the server certificate")
    ca_bundle: str | None = Field(default=None, description="Path to a CA bundle (PEM)")
    cert: str | None = Field(default=None, description="Client certificate for mTLS (PEM)")
    key: str | None = Field(default=None, description="Client private key for mTLS (PEM)")
    key_password: str | None = Field(default=None, description="Password for the client key")
    ciphers: str | None = Field(default=None, description="OpenSSL cipher string")


class AgentConfig(BaseModel):
    """Top-level agent configuration (loaded from YAML by config_loader)."""

    model_config = ConfigDict(extra="forbid")

    headers: dict[str, str] = Field(
        default_factory=dict,
        description="Headers sent with every request (supports ${ENV_VAR} substitution)",
    )
    timeout_connect: float = Field(default=0.0, ge=0, description="Default connect deadline")
    timeout_read: float = Field(default=0.0, ge=0, description="Default per-read deadline")
    timeout_write: float = Field(default=0.0, ge=0, description="Default per-write deadline")
    redirects: int = Field(default=DEFAULT_REDIRECTS, ge=0, description="Default redirect budget")
    ip_version: IpVersion = Field(default=IpVersion.V6, description="Preferred address family")
    max_idle_connections: int = Field(default=100, ge=0, description="Idle streams kept in total")
    max_idle_per_host: int = Field(default=4, ge=0, description="Idle streams kept per pool key")
    tls: TlsConfig = Field(default_factory=TlsConfig, description="TLS settings")
