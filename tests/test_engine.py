"""Tests for syncwire.engine against scripted connections.

Tests cover:
- Connection reuse, and discarding connections whose body was abandoned
- The one-shot retry on a stale pooled connection
- Redirect method policy, header stripping, limits, and Location errors
- Error URLs and connection parameters passed to connect()
"""

import io
import logging
import ssl

import pytest

from syncwire.agent import Agent
from syncwire.errors import (
    BadUrl,
    ConnectFailed,
    ProtocolError,
    RedirectLimitExceeded,
    TransportError,
)
from syncwire.models import PoolKey
from tests.conftest import http_response

KEY = PoolKey("http", "example.com", 80)


def redirect(status: int, location: str, **headers: str) -> bytes:
    return http_response(status, headers={"Location": location, **headers}, reason="Redirect")


def requests_in(sent: bytes) -> list[bytes]:
    """Request lines written to a connection, in order."""
    return [line for line in sent.split(b"\r\n") if line.endswith(b" HTTP/1.1")]


def request_after(sent: bytes, request_line: bytes) -> bytes:
    return sent[sent.index(request_line):]


# =============================================================================
# Single Hop
# =============================================================================


class TestSingleHop:
    def test_get(self, scripted_connect):
        connector = scripted_connect(http_response(body=b"hi"))
        response = Agent().get("http://example.com/").call()

        assert response.status == 200
        assert response.into_string() == "hi"
        assert response.url == "http://example.com/"
        assert connector.sent().startswith(b"GET / HTTP/1.1\r\nHost: example.com\r\n")
        assert connector.calls[0]["host"] == "example.com"
        assert connector.calls[0]["port"] == 80
        assert connector.calls[0]["tls"] is False

    def test_https_uses_agent_ssl_context(self, scripted_connect):
        connector = scripted_connect(http_response())
        agent = Agent()
        agent.get("https://example.com/").call()

        assert connector.calls[0]["tls"] is True
        assert connector.calls[0]["port"] == 443
        assert isinstance(connector.calls[0]["ssl_context"], ssl.SSLContext)
        assert connector.calls[0]["ssl_context"] is agent.state.ssl_context

    def test_timeouts_passed_through(self, scripted_connect):
        connector = scripted_connect(http_response())
        Agent().get("http://example.com/").timeout_connect(3).timeout_read(4).timeout_write(5).call()

        assert connector.calls[0]["connect_timeout"] == 3
        assert connector.streams[0]._read_timeout == 4
        assert connector.streams[0]._write_timeout == 5

    def test_query_pairs_sent(self, scripted_connect):
        connector = scripted_connect(http_response())
        Agent().get("http://example.com/search?q=1").query("page", "2 3").call()
        assert connector.sent().startswith(b"GET /search?q=1&page=2%203 HTTP/1.1\r\n")

    def test_protocol_error_carries_url(self, scripted_connect):
        scripted_connect(b"SMTP ready\r\n\r\n")
        with pytest.raises(ProtocolError) as exc_info:
            Agent().get("http://example.com/x").call()
        assert exc_info.value.url == "http://example.com/x"

    def test_connect_failure_carries_url(self, monkeypatch: pytest.MonkeyPatch):
        def refuse(host, port, **kwargs):
            raise ConnectFailed(f"Could not connect to {host}:{port}: refused")

        monkeypatch.setattr("syncwire.engine.connect", refuse)
        with pytest.raises(ConnectFailed) as exc_info:
            Agent().get("http://example.com/x").call()
        assert exc_info.value.url == "http://example.com/x"

    def test_bad_url(self, scripted_connect):
        connector = scripted_connect()
        with pytest.raises(BadUrl):
            Agent().get("gopher://example.com/").call()
        assert connector.calls == []


# =============================================================================
# Connection Reuse
# =============================================================================


class TestReuse:
    def test_fully_read_response_reuses_connection(self, scripted_connect):
        connector = scripted_connect([http_response(body=b"one"), http_response(body=b"two")])
        agent = Agent()

        assert agent.get("http://example.com/a").call().into_string() == "one"
        assert agent.pool.idle_count(KEY) == 1
        assert agent.get("http://example.com/b").call().into_string() == "two"

        assert len(connector.calls) == 1
        assert requests_in(connector.sent()) == [b"GET /a HTTP/1.1", b"GET /b HTTP/1.1"]

    def test_abandoned_body_not_reused(self, scripted_connect):
        connector = scripted_connect(
            http_response(body=b"x" * 1000) + http_response(body=b"never read"),
            http_response(body=b"fresh"),
        )
        agent = Agent()

        response = agent.get("http://example.com/a").call()
        response.read(10)
        response.close()

        assert agent.pool.idle_count() == 0
        assert connector.streams[0].closed
        assert agent.get("http://example.com/b").call().into_string() == "fresh"
        assert len(connector.calls) == 2

    def test_bytes_past_content_length_not_reused(self, scripted_connect):
        connector = scripted_connect(
            http_response(body=b"hello") + b"GARBAGE",
            http_response(body=b"second"),
        )
        agent = Agent()

        assert agent.get("http://example.com/a").call().into_string() == "hello"
        assert agent.pool.idle_count() == 0
        assert connector.streams[0].closed
        assert agent.get("http://example.com/b").call().into_string() == "second"
        assert len(connector.calls) == 2

    def test_bytes_past_chunk_terminator_not_reused(self, scripted_connect):
        chunked = http_response(200, b"2\r\nok\r\n0\r\n\r\n", {"Transfer-Encoding": "chunked"})
        connector = scripted_connect(chunked + b"JUNK", http_response(body=b"second"))
        agent = Agent()

        assert agent.get("http://example.com/").call().into_string() == "ok"
        assert agent.get("http://example.com/").call().into_string() == "second"
        assert len(connector.calls) == 2

    def test_connection_close_not_reused(self, scripted_connect):
        connector = scripted_connect(
            http_response(body=b"bye", headers={"Connection": "close", "Content-Length": "3"}),
            http_response(body=b"again"),
        )
        agent = Agent()
        agent.get("http://example.com/").call().into_string()
        assert agent.pool.idle_count() == 0
        agent.get("http://example.com/").call().into_string()
        assert len(connector.calls) == 2

    def test_clones_share_the_pool(self, scripted_connect):
        connector = scripted_connect([http_response(body=b"1"), http_response(body=b"2")])
        agent = Agent()
        clone = agent.clone()
        agent.get("http://example.com/").call().into_string()
        clone.get("http://example.com/").call().into_string()
        assert len(connector.calls) == 1


class TestStaleRetry:
    def test_stale_pooled_connection_retried_once(self, scripted_connect):
        connector = scripted_connect(http_response(body=b"first"), http_response(body=b"fresh"))
        agent = Agent()
        agent.get("http://example.com/").call().into_string()

        # The pooled stream has nothing more to give: the server closed it while idle.
        response = agent.get("http://example.com/").call()

        assert response.into_string() == "fresh"
        assert len(connector.calls) == 2
        assert connector.streams[0].closed

    def test_replayable_body_resent(self, scripted_connect):
        connector = scripted_connect(http_response(), http_response(status=201, reason="Created"))
        agent = Agent()
        agent.get("http://example.com/").call().into_string()

        response = agent.post("http://example.com/items").send_json({"a": 1})

        assert response.status == 201
        assert connector.sent(1).endswith(b'{"a": 1}')

    def test_write_failure_on_pooled_connection_retried(self, scripted_connect):
        connector = scripted_connect(http_response(), http_response(status=201, reason="Created"))
        agent = Agent()
        agent.get("http://example.com/").call().into_string()
        connector.streams[0]._sock._send_error = BrokenPipeError("broken pipe")

        response = agent.post("http://example.com/items").send_string("payload")

        assert response.status == 201
        assert connector.sent(1).endswith(b"payload")

    def test_partial_response_on_pooled_connection_not_retried(self, scripted_connect):
        connector = scripted_connect(
            [http_response(), b"HTTP/1.1 201 Created\r\nX-Partial: 1\r\n"],
            http_response(),
        )
        agent = Agent()
        agent.get("http://example.com/").call().into_string()

        with pytest.raises(TransportError, match="inside the header block") as exc_info:
            agent.post("http://example.com/items").send_string("payload")

        assert not exc_info.value.stale
        assert len(connector.calls) == 1
        assert connector.sent().count(b"POST /items") == 1

    def test_reader_body_not_retried(self, scripted_connect):
        connector = scripted_connect(http_response(), http_response())
        agent = Agent()
        agent.get("http://example.com/").call().into_string()

        with pytest.raises(TransportError):
            agent.post("http://example.com/upload").send(io.BytesIO(b"once only"))
        assert len(connector.calls) == 1

    def test_fresh_connection_failure_not_retried(self, scripted_connect):
        connector = scripted_connect(b"", http_response())
        with pytest.raises(TransportError):
            Agent().get("http://example.com/").call()
        assert len(connector.calls) == 1


# =============================================================================
# Redirects
# =============================================================================


class TestRedirectMethods:
    @pytest.mark.parametrize("status", [301, 302, 303])
    def test_post_becomes_get_without_body(self, scripted_connect, status: int):
        connector = scripted_connect([redirect(status, "/new"), http_response(body=b"done")])
        response = (
            Agent()
            .post("http://example.com/old")
            .set("Content-Type", "text/plain")
            .send_string("payload")
        )

        assert response.status == 200
        assert response.url == "http://example.com/new"
        assert response.into_string() == "done"
        second = request_after(connector.sent(), b"GET /new HTTP/1.1")
        assert b"payload" not in second
        assert b"Content-Length" not in second
        assert b"Content-Type" not in second

    @pytest.mark.parametrize("status", [307, 308])
    def test_method_and_body_preserved(self, scripted_connect, status: int):
        connector = scripted_connect([redirect(status, "/new"), http_response(body=b"done")])
        response = Agent().put("http://example.com/old").send_bytes(b"payload")

        assert response.into_string() == "done"
        second = request_after(connector.sent(), b"PUT /new HTTP/1.1")
        assert second.endswith(b"Content-Length: 7\r\n\r\npayload")

    def test_head_stays_head(self, scripted_connect):
        connector = scripted_connect([redirect(302, "/new"), http_response(headers={"Content-Length": "10"})])
        response = Agent().head("http://example.com/old").call()

        assert response.status == 200
        assert requests_in(connector.sent()) == [b"HEAD /old HTTP/1.1", b"HEAD /new HTTP/1.1"]

    def test_unreplayable_body_stops_chain(self, scripted_connect):
        scripted_connect(redirect(307, "/new"))
        response = Agent().post("http://example.com/old").send(io.BytesIO(b"stream"))

        assert response.status == 307
        assert response.header("Location") == "/new"


class TestRedirectChain:
    def test_relative_location(self, scripted_connect):
        connector = scripted_connect([redirect(302, "../c?x=1"), http_response()])
        response = Agent().get("http://example.com/a/b/page").call()
        assert response.url == "http://example.com/a/c?x=1"
        assert requests_in(connector.sent())[1] == b"GET /a/c?x=1 HTTP/1.1"

    def test_query_pairs_not_carried_to_next_hop(self, scripted_connect):
        connector = scripted_connect([redirect(302, "/next"), http_response()])
        Agent().get("http://example.com/first").query("token", "t").call()
        assert requests_in(connector.sent()) == [b"GET /first?token=t HTTP/1.1", b"GET /next HTTP/1.1"]

    def test_cross_host_strips_authorization(self, scripted_connect):
        connector = scripted_connect(
            redirect(302, "http://other.example/landing"),
            http_response(body=b"landed"),
        )
        response = Agent().get("http://example.com/").auth_kind("Bearer", "secret").set("X-Keep", "1").call()

        assert response.into_string() == "landed"
        assert connector.calls[1]["host"] == "other.example"
        assert b"Authorization: Bearer secret" in connector.sent(0)
        assert b"Authorization" not in connector.sent(1)
        assert b"X-Keep: 1" in connector.sent(1)
        assert b"Host: other.example\r\n" in connector.sent(1)

    def test_cross_host_strips_caller_cookie(self, scripted_connect):
        connector = scripted_connect(
            redirect(302, "http://other.example/landing"),
            http_response(),
        )
        Agent().get("http://example.com/").set("Cookie", "session=secret").call()

        assert b"Cookie: session=secret" in connector.sent(0)
        assert b"Cookie" not in connector.sent(1)

    def test_same_host_keeps_caller_cookie(self, scripted_connect):
        connector = scripted_connect([redirect(302, "/next"), http_response()])
        Agent().get("http://example.com/").set("Cookie", "session=secret").call()
        second = request_after(connector.sent(), b"GET /next HTTP/1.1")
        assert b"Cookie: session=secret\r\n" in second

    def test_same_host_keeps_authorization(self, scripted_connect):
        connector = scripted_connect([redirect(302, "/next"), http_response()])
        Agent().get("http://example.com/").auth("user", "pw").call()
        second = request_after(connector.sent(), b"GET /next HTTP/1.1")
        assert b"Authorization: Basic " in second

    def test_scheme_change_is_cross_origin(self, scripted_connect):
        connector = scripted_connect(redirect(301, "https://example.com/"), http_response())
        Agent().get("http://example.com/").auth_kind("Bearer", "secret").call()
        assert connector.calls[1]["tls"] is True
        assert b"Authorization" not in connector.sent(1)

    def test_cookies_from_redirect_sent_on_next_hop(self, scripted_connect):
        connector = scripted_connect(
            [redirect(302, "/next", **{"Set-Cookie": "hop=one; Path=/"}), http_response()]
        )
        agent = Agent()
        agent.get("http://example.com/").call()
        second = request_after(connector.sent(), b"GET /next HTTP/1.1")
        assert b"Cookie: hop=one\r\n" in second
        assert agent.cookie("hop") == "one"

    def test_large_redirect_body_discards_connection(self, scripted_connect):
        big = http_response(302, b"x" * 100_000, {"Location": "/next"})
        connector = scripted_connect(big + http_response(body=b"never"), http_response(body=b"fresh"))
        response = Agent().get("http://example.com/").call()

        assert response.into_string() == "fresh"
        assert len(connector.calls) == 2
        assert connector.streams[0].closed

    def test_missing_location_returns_redirect(self, scripted_connect):
        scripted_connect(http_response(302, reason="Found"))
        response = Agent().get("http://example.com/").call()
        assert response.status == 302

    def test_other_3xx_not_followed(self, scripted_connect):
        scripted_connect(redirect(300, "/choice"))
        assert Agent().get("http://example.com/").call().status == 300

    def test_bad_location(self, scripted_connect):
        connector = scripted_connect(redirect(302, "http://example.com:99999/"))
        with pytest.raises(BadUrl):
            Agent().get("http://example.com/").call()
        assert len(connector.calls) == 1

    def test_redirect_logged(self, scripted_connect, caplog: pytest.LogCaptureFixture):
        scripted_connect([redirect(302, "/next"), http_response()])
        with caplog.at_level(logging.DEBUG, logger="syncwire"):
            Agent().get("http://example.com/").call()
        assert "Following 302 redirect to http://example.com/next" in caplog.text


class TestRedirectLimit:
    def test_zero_returns_redirect_itself(self, scripted_connect):
        connector = scripted_connect(redirect(302, "/next"))
        response = Agent().get("http://example.com/").redirects(0).call()

        assert response.status == 302
        assert not response.synthetic
        assert response.header("Location") == "/next"
        assert len(requests_in(connector.sent())) == 1

    def test_exhausted_budget_gives_synthetic_response(self, scripted_connect):
        connector = scripted_connect([redirect(302, "/loop") for _ in range(3)])
        response = Agent().get("http://example.com/loop").redirects(2).call()

        assert response.status == 500
        assert response.status_text == "Too Many Redirects"
        assert response.synthetic
        assert isinstance(response.synthetic_error, RedirectLimitExceeded)
        assert response.read() == b""
        # Two redirects followed, three requests sent, the last Location never dereferenced.
        assert len(requests_in(connector.sent())) == 3

    def test_chain_within_budget(self, scripted_connect):
        hops = [redirect(302, f"/hop{i}") for i in range(1, 3)]
        connector = scripted_connect(hops + [http_response(body=b"end")])
        response = Agent().get("http://example.com/hop0").redirects(2).call()

        assert response.into_string() == "end"
        assert requests_in(connector.sent()) == [
            b"GET /hop0 HTTP/1.1",
            b"GET /hop1 HTTP/1.1",
            b"GET /hop2 HTTP/1.1",
        ]

    def test_agent_default_budget(self, scripted_connect):
        connector = scripted_connect([redirect(302, "/loop") for _ in range(6)])
        response = Agent().get("http://example.com/loop").call()
        assert response.synthetic
        assert len(requests_in(connector.sent())) == 6
