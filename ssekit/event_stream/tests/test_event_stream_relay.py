"""
Test suite for the stream relay.

The inbound leg runs through httpx.ASGITransport and the upstream leg is an
httpx.MockTransport handler, so both sides of the relay are observable.
"""

import asyncio

import httpx
import pytest

from ssekit.event_stream import (
    HOP_BY_HOP_HEADERS,
    InvalidTargetError,
    RelayConfig,
    StreamRelay,
    UnsupportedMethodError,
    create_relay_app,
    filter_headers,
    is_event_stream,
    map_method,
    resolve_target_url,
)


# ============================================================================
# Fixtures
# ============================================================================

class Upstream:
    """Upstream server double recording every request it receives."""

    def __init__(self, respond):
        self.respond = respond
        self.requests = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        await request.aread()
        self.requests.append(request)
        return self.respond(request)


async def streamed(*chunks: bytes):
    """Async body so the double answers with an unread stream, as a real upstream does."""
    for chunk in chunks:
        yield chunk


def relay_scope(target: str, method: str = "GET") -> dict:
    """ASGI scope for a relay call, as the router hands it to the endpoint."""
    return {
        "type": "http",
        "method": method,
        "path": f"/proxy/{target}",
        "path_params": {"path": target},
        "query_string": b"",
        "headers": [],
    }


def relay_client(upstream: Upstream) -> httpx.AsyncClient:
    """Inbound client talking to a relay app whose upstream is the double."""
    upstream_client = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
    app = create_relay_app(RelayConfig(), client=upstream_client)
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://relay")


@pytest.fixture
def echo_upstream():
    """Upstream that echoes method, query and body."""
    def respond(request):
        return httpx.Response(
            201 if request.method == "POST" else 200,
            headers={"Content-Type": "text/plain", "X-Upstream": "yes"},
            content=streamed(request.method.encode() + b" " + request.content),
        )
    return Upstream(respond)


# ============================================================================
# Target Resolution Tests
# ============================================================================

class TestResolveTargetUrl:
    """Tests for resolve_target_url."""

    def test_explicit_scheme_and_port(self):
        assert resolve_target_url("http://example.com:9000/api", "x=1") == "http://example.com:9000/api?x=1"

    def test_default_scheme_and_port(self):
        assert resolve_target_url("example.com/api") == "https://example.com:80/api"

    def test_https_without_path(self):
        assert resolve_target_url("https://example.com") == "https://example.com:80"

    def test_single_slash_scheme(self):
        """Test the form produced when a proxy collapses double slashes."""
        assert resolve_target_url("http:/example.com:81/a/b") == "http://example.com:81/a/b"

    def test_empty_port_defaults(self):
        assert resolve_target_url("example.com:/x") == "https://example.com:80/x"

    def test_custom_defaults(self):
        url = resolve_target_url("example.com/x", default_scheme="http", default_port=8080)

        assert url == "http://example.com:8080/x"

    def test_query_passed_unchanged(self):
        url = resolve_target_url("http://h/p", "a=1&b=%20x&a=2")

        assert url == "http://h:80/p?a=1&b=%20x&a=2"

    @pytest.mark.parametrize("encoded", ["", "http://", ":8080/api", "/api"])
    def test_missing_host(self, encoded):
        with pytest.raises(InvalidTargetError):
            resolve_target_url(encoded)


class TestHelpers:
    """Tests for method mapping, content type detection and header filtering."""

    def test_map_method(self):
        for method in ("GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS", "TRACE", "CONNECT"):
            assert map_method(method) == method

    def test_map_method_unsupported(self):
        with pytest.raises(UnsupportedMethodError):
            map_method("BREW")

    def test_is_event_stream(self):
        assert is_event_stream("text/event-stream")
        assert is_event_stream("text/event-stream; charset=utf-8")
        assert is_event_stream("Text/Event-Stream")
        assert not is_event_stream("application/json")
        assert not is_event_stream(None)

    def test_hop_by_hop_set(self):
        assert len(HOP_BY_HOP_HEADERS) == 16
        assert {"connection", "transfer-encoding", "set-cookie", "alt-svc"} <= HOP_BY_HOP_HEADERS

    def test_filter_headers(self):
        headers = [
            (b"Set-Cookie", b"a=1"),
            (b"connection", b"keep-alive"),
            (b"Transfer-Encoding", b"chunked"),
            (b"X-Keep", b"1"),
            (b"host", b"relay"),
            (b"x-keep", b"2"),
        ]

        assert filter_headers(headers, excluded=("host",)) == [(b"X-Keep", b"1"), (b"x-keep", b"2")]


# ============================================================================
# Relay App Tests
# ============================================================================

class TestStreamRelay:
    """Tests for the relay application."""

    @pytest.mark.asyncio
    async def test_get_forwarded(self, echo_upstream):
        """Test target resolution, query passthrough and response mirroring."""
        async with relay_client(echo_upstream) as client:
            response = await client.get(
                "/proxy/http://upstream.test:9000/api?x=1",
                headers={"X-Custom": "abc"},
            )

        assert response.status_code == 200
        assert response.text == "GET "
        assert response.headers["x-upstream"] == "yes"

        request = echo_upstream.requests[0]
        assert str(request.url) == "http://upstream.test:9000/api?x=1"
        assert request.headers["x-custom"] == "abc"
        assert request.headers["host"] == "upstream.test:9000"

    @pytest.mark.asyncio
    async def test_post_body_forwarded(self, echo_upstream):
        """Test that the inbound body and status travel both ways."""
        async with relay_client(echo_upstream) as client:
            response = await client.post("/proxy/http://upstream.test/items", content=b"payload")

        assert response.status_code == 201
        assert response.content == b"POST payload"
        assert echo_upstream.requests[0].content == b"payload"

    @pytest.mark.asyncio
    async def test_other_methods_forwarded(self, echo_upstream):
        """Test that non-GET verbs keep their method."""
        async with relay_client(echo_upstream) as client:
            response = await client.put("/proxy/http://upstream.test/items/1", content=b"x")
            deleted = await client.delete("/proxy/http://upstream.test/items/1")

        assert response.content == b"PUT x"
        assert deleted.content == b"DELETE "

    @pytest.mark.asyncio
    async def test_hop_by_hop_response_headers_dropped(self):
        """Test that hop-by-hop response headers never reach the client."""
        upstream = Upstream(lambda request: httpx.Response(
            200,
            headers={
                "Set-Cookie": "session=1",
                "Connection": "close",
                "Transfer-Encoding": "chunked",
                "Alt-Svc": "h3=\":443\"",
                "X-Kept": "1",
            },
            content=streamed(b"ok"),
        ))

        async with relay_client(upstream) as client:
            response = await client.get("/proxy/http://upstream.test/")

        assert response.content == b"ok"
        assert response.headers["x-kept"] == "1"
        for name in ("set-cookie", "connection", "transfer-encoding", "alt-svc"):
            assert name not in response.headers

    @pytest.mark.asyncio
    async def test_hop_by_hop_request_headers_dropped(self, echo_upstream):
        """Test that hop-by-hop request headers are not forwarded."""
        async with relay_client(echo_upstream) as client:
            await client.get(
                "/proxy/http://upstream.test/",
                headers={"Proxy-Authorization": "secret", "TE": "trailers", "X-Kept": "1"},
            )

        forwarded = echo_upstream.requests[0].headers
        assert "proxy-authorization" not in forwarded
        assert "te" not in forwarded
        assert forwarded["x-kept"] == "1"

    @pytest.mark.asyncio
    async def test_event_stream_passthrough(self):
        """Test that an event stream is relayed byte for byte."""
        chunks = [b"data: Connected\n\n", b"data: tick\n", b"\n", b"data: [DONE]\n\n"]

        async def body():
            for chunk in chunks:
                yield chunk

        upstream = Upstream(lambda request: httpx.Response(
            200,
            headers={"Content-Type": "text/event-stream", "Cache-Control": "no-cache"},
            content=body(),
        ))

        async with relay_client(upstream) as client:
            response = await asyncio.wait_for(
                client.get("/proxy/http://upstream.test:5079/sse"),
                timeout=5.0,
            )

        assert response.status_code == 200
        assert response.headers["content-type"] == "text/event-stream"
        assert response.headers["cache-control"] == "no-cache"
        assert response.content == b"".join(chunks)

    @pytest.mark.asyncio
    async def test_unsupported_method(self, echo_upstream):
        """Test that an unknown verb fails before any upstream call."""
        async with relay_client(echo_upstream) as client:
            response = await client.request("BREW", "/proxy/http://upstream.test/pot")

        assert response.status_code == 405
        assert response.json() == {"error": "Unsupported method: BREW"}
        assert "GET" in response.headers["allow"]
        assert echo_upstream.requests == []

    @pytest.mark.asyncio
    async def test_invalid_target(self, echo_upstream):
        """Test that a path without a host is rejected."""
        async with relay_client(echo_upstream) as client:
            response = await client.get("/proxy/:8080/api")

        assert response.status_code == 400
        assert echo_upstream.requests == []

    @pytest.mark.asyncio
    async def test_upstream_unreachable(self):
        """Test that a connection failure becomes a 502."""
        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        upstream_client = httpx.AsyncClient(transport=httpx.MockTransport(refuse))
        app = create_relay_app(client=upstream_client)

        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://relay") as client:
            response = await client.get("/proxy/http://down.test/")

        assert response.status_code == 502
        assert "refused" in response.json()["error"]

    @pytest.mark.asyncio
    async def test_health(self, echo_upstream):
        """Test the health endpoint."""
        async with relay_client(echo_upstream) as client:
            response = await client.get("/health")

        assert response.json() == {"status": "healthy", "prefix": "/proxy"}

    @pytest.mark.asyncio
    async def test_client_disconnect_stops_stream(self):
        """Test that a disconnecting client ends an endless relayed stream."""
        async def endless():
            yield b"data: a\n\n"
            await asyncio.sleep(30)

        upstream = Upstream(lambda request: httpx.Response(
            200,
            headers={"Content-Type": "text/event-stream"},
            content=endless(),
        ))
        relay = StreamRelay(client=httpx.AsyncClient(transport=httpx.MockTransport(upstream)))

        scope = relay_scope("http://upstream.test/sse")
        messages = [{"type": "http.request", "body": b"", "more_body": False}]

        async def receive():
            if messages:
                return messages.pop()
            await asyncio.sleep(0.05)
            return {"type": "http.disconnect"}

        sent = []

        async def send(message):
            sent.append(message)

        await asyncio.wait_for(relay(scope, receive, send), timeout=5.0)
        await relay.aclose()

        assert sent[0]["type"] == "http.response.start"
        assert sent[0]["status"] == 200
        bodies = [m["body"] for m in sent[1:]]
        assert bodies == [b"data: a\n\n", b""]
        assert sent[-1]["more_body"] is False

    @pytest.mark.asyncio
    async def test_preloaded_upstream_body(self):
        """Test relaying a response whose body the transport already read."""
        upstream = Upstream(lambda request: httpx.Response(
            200,
            headers={"Content-Type": "text/plain", "Set-Cookie": "a=1"},
            content=b"already read",
        ))

        async with relay_client(upstream) as client:
            response = await client.get("/proxy/http://upstream.test/")

        assert response.status_code == 200
        assert response.content == b"already read"
        assert "set-cookie" not in response.headers

    @pytest.mark.asyncio
    async def test_upstream_reset_mid_stream(self):
        """Test that an upstream failure mid-body still ends the response in order."""
        async def broken():
            yield b"data: a\n\n"
            raise httpx.ReadError("reset")

        upstream = Upstream(lambda request: httpx.Response(
            200,
            headers={"Content-Type": "text/event-stream"},
            content=broken(),
        ))
        relay = StreamRelay(client=httpx.AsyncClient(transport=httpx.MockTransport(upstream)))
        connected = asyncio.Event()

        async def receive():
            await connected.wait()
            return {"type": "http.disconnect"}

        sent = []

        async def send(message):
            sent.append(message)

        await asyncio.wait_for(relay(relay_scope("http://upstream.test/sse"), receive, send), timeout=5.0)
        await relay.aclose()

        assert sent[0]["status"] == 200
        assert [m["body"] for m in sent[1:]] == [b"data: a\n\n", b""]
        assert sent[-1]["more_body"] is False

    @pytest.mark.asyncio
    async def test_client_write_failure(self):
        """Test that a client failing mid-write ends the relay without raising."""
        upstream = Upstream(lambda request: httpx.Response(
            200,
            headers={"Content-Type": "text/plain"},
            content=streamed(b"one", b"two"),
        ))
        relay = StreamRelay(client=httpx.AsyncClient(transport=httpx.MockTransport(upstream)))

        async def receive():
            return {"type": "http.request", "body": b"", "more_body": False}

        sent = []

        async def send(message):
            if message["type"] == "http.response.body":
                raise ConnectionResetError("client went away")
            sent.append(message)

        await asyncio.wait_for(relay(relay_scope("http://upstream.test/"), receive, send), timeout=5.0)
        await relay.aclose()

        assert [m["type"] for m in sent] == ["http.response.start"]
