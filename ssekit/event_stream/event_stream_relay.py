"""
Event Stream Relay

This module provides a transparent HTTP relay that forwards one inbound
request to a target encoded in its path and mirrors the upstream response
back, minus hop-by-hop headers. The response body is copied incrementally in
both cases; event streams are additionally tied to the inbound connection so
a disconnecting client stops the upstream read.

Route shape:
    <any-method> /proxy/[http://|https://]host[:port]/path?query
"""

import asyncio
import logging
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Tuple

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import Receive, Scope, Send

from .cancellation import CancellationToken, OperationCancelled
from .event_stream_base import (
    EVENT_STREAM_MEDIA_TYPE,
    InvalidTargetError,
    UnsupportedMethodError,
)


# Configure logging
logger = logging.getLogger(__name__)

_END = object()

# Headers that only mean something for one transport leg
HOP_BY_HOP_HEADERS = frozenset(name.lower() for name in (
    "Connection",
    "Transfer-Encoding",
    "Keep-Alive",
    "Upgrade",
    "Proxy-Connection",
    "Proxy-Authenticate",
    "Proxy-Authentication-Info",
    "Proxy-Authorization",
    "Proxy-Features",
    "Proxy-Instruction",
    "Security-Scheme",
    "ALPN",
    "Close",
    "Set-Cookie",
    "TE",
    "Alt-Svc",
))

SUPPORTED_METHODS = (
    "GET",
    "POST",
    "PUT",
    "DELETE",
    "PATCH",
    "HEAD",
    "OPTIONS",
    "TRACE",
    "CONNECT",
)

_BODYLESS_METHODS = ("GET", "HEAD")
_SCHEME_PREFIX = re.compile(r"^(https?):/{1,2}")


@dataclass
class RelayConfig:
    """Configuration for the stream relay."""

    # Route prefix the encoded target follows
    prefix: str = "/proxy"

    # Timeout settings (read is unbounded so live streams are not cut)
    connect_timeout: float = 10.0
    read_timeout: Optional[float] = None

    # Target defaults
    default_scheme: str = "https"
    default_port: int = 80


def map_method(method: str) -> str:
    """
    Map an inbound method onto one the relay can forward.

    Raises:
        UnsupportedMethodError: If the method is not a standard HTTP verb
    """
    if method not in SUPPORTED_METHODS:
        raise UnsupportedMethodError(method)
    return method


def resolve_target_url(
    encoded: str,
    query_string: str = "",
    default_scheme: str = "https",
    default_port: int = 80,
) -> str:
    """
    Resolve the target URL encoded in a relay path.

    Args:
        encoded: Path after the relay prefix, e.g. "http://example.com:9000/api"
        query_string: Inbound query string, without the leading "?"
        default_scheme: Scheme used when the path carries none
        default_port: Port used when the authority carries none

    Returns:
        The absolute target URL

    Raises:
        InvalidTargetError: If no host can be found
    """
    remainder = encoded
    scheme = default_scheme
    match = _SCHEME_PREFIX.match(remainder)
    if match:
        scheme = match.group(1)
        remainder = remainder[match.end():]

    authority, slash, path = remainder.partition("/")
    host, colon, port = authority.partition(":")
    if not host:
        raise InvalidTargetError(f"No target host in relay path: {encoded!r}", path=encoded)
    if not colon or not port:
        port = str(default_port)

    url = f"{scheme}://{host}:{port}{slash}{path}"
    if query_string:
        url += f"?{query_string}"
    return url


def is_event_stream(content_type: Optional[str]) -> bool:
    """Whether a Content-Type header names an event stream."""
    if not content_type:
        return False
    media_type = content_type.split(";", 1)[0].strip().lower()
    return media_type == EVENT_STREAM_MEDIA_TYPE


def filter_headers(
    headers: Iterable[Tuple[bytes, bytes]],
    excluded: Iterable[str] = (),
) -> List[Tuple[bytes, bytes]]:
    """
    Drop hop-by-hop headers (and any extra names) from raw header pairs.

    Args:
        headers: Raw (name, value) pairs
        excluded: Additional lower-case names to drop

    Returns:
        The headers to forward, in their original order
    """
    dropped = HOP_BY_HOP_HEADERS.union(excluded)
    return [
        (name, value)
        for name, value in headers
        if name.decode("latin-1").lower() not in dropped
    ]


async def _next_chunk(chunks: AsyncIterator[bytes]) -> Any:
    try:
        return await chunks.__anext__()
    except StopAsyncIteration:
        return _END


class StreamRelay:
    """
    ASGI endpoint relaying one request per call.

    The relay never decodes frames; it only looks at the upstream content
    type to decide whether the copy is tied to the inbound connection.
    """

    def __init__(self, config: Optional[RelayConfig] = None, client: Optional[httpx.AsyncClient] = None):
        """
        Initialize the relay.

        Args:
            config: Optional configuration (uses defaults if not provided)
            client: Optional shared HTTP client for upstream requests
        """
        self.config = config or RelayConfig()
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        """Shared upstream client, created on first use."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(
                    self.config.connect_timeout,
                    read=self.config.read_timeout,
                ),
                follow_redirects=False,
            )
        return self._client

    async def aclose(self) -> None:
        """Close the upstream client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)

        try:
            method = map_method(request.method)
            url = resolve_target_url(
                request.path_params.get("path", ""),
                scope.get("query_string", b"").decode("latin-1"),
                default_scheme=self.config.default_scheme,
                default_port=self.config.default_port,
            )
        except UnsupportedMethodError as e:
            logger.warning(f"Rejected relay request: {e}")
            response = JSONResponse(
                {"error": e.message},
                status_code=405,
                headers={"Allow": ", ".join(SUPPORTED_METHODS)},
            )
            await response(scope, receive, send)
            return
        except InvalidTargetError as e:
            logger.warning(f"Rejected relay request: {e}")
            await JSONResponse({"error": e.message}, status_code=400)(scope, receive, send)
            return

        logger.info(f"Relaying {method} {url}")

        try:
            upstream = await self._send_upstream(request, method, url)
        except httpx.RequestError as e:
            logger.error(f"Upstream request to {url} failed: {e}")
            await JSONResponse({"error": f"Upstream request failed: {e}"}, status_code=502)(scope, receive, send)
            return

        try:
            await self._relay_response(upstream, receive, send)
        finally:
            await upstream.aclose()

    async def _send_upstream(self, request: Request, method: str, url: str) -> httpx.Response:
        """Build the outbound request and return once its headers arrive."""
        headers = filter_headers(request.headers.raw, excluded=("host",))
        content = None
        if method not in _BODYLESS_METHODS:
            content = request.stream()

        outbound = self.client.build_request(method, url, headers=headers, content=content)
        return await self.client.send(outbound, stream=True)

    async def _relay_response(self, upstream: httpx.Response, receive: Receive, send: Send) -> None:
        """Mirror status, headers and body of the upstream response."""
        await send({
            "type": "http.response.start",
            "status": upstream.status_code,
            "headers": filter_headers(upstream.headers.raw),
        })

        try:
            if is_event_stream(upstream.headers.get("content-type")):
                disconnected = CancellationToken()
                watcher = asyncio.create_task(self._listen_for_disconnect(receive, disconnected))
                try:
                    await self._copy_body(upstream, send, disconnected)
                except OperationCancelled:
                    logger.info("Client disconnected, stopping relayed stream")
                finally:
                    watcher.cancel()
            else:
                await self._copy_body(upstream, send)

        except httpx.HTTPError as e:
            logger.info(f"Upstream response ended early: {e!r}")
        except OSError as e:
            logger.info(f"Client went away while relaying: {e}")

        try:
            await send({"type": "http.response.body", "body": b"", "more_body": False})
        except OSError as e:
            logger.debug(f"Could not flush relayed response: {e}")

    async def _copy_body(
        self,
        upstream: httpx.Response,
        send: Send,
        cancellation: Optional[CancellationToken] = None
    ) -> None:
        """Copy the body chunk by chunk; each write completes before the next read."""
        if upstream.is_stream_consumed:
            # Body was loaded eagerly by the transport; only the decoded bytes remain
            if upstream.content:
                await send({"type": "http.response.body", "body": upstream.content, "more_body": True})
            return

        chunks = upstream.aiter_raw()
        while True:
            if cancellation is None:
                chunk = await _next_chunk(chunks)
            else:
                chunk = await cancellation.guard(_next_chunk(chunks))
            if chunk is _END:
                break
            await send({"type": "http.response.body", "body": chunk, "more_body": True})

    @staticmethod
    async def _listen_for_disconnect(receive: Receive, disconnected: CancellationToken) -> None:
        while True:
            message = await receive()
            if message["type"] == "http.disconnect":
                disconnected.cancel()
                return


def create_relay_app(
    config: Optional[RelayConfig] = None,
    client: Optional[httpx.AsyncClient] = None,
    cors_origins: Optional[List[str]] = None,
) -> FastAPI:
    """
    Create the FastAPI application serving the relay.

    Args:
        config: Optional relay configuration
        client: Optional shared HTTP client for upstream requests
        cors_origins: Allowed CORS origins (any origin if not provided)

    Returns:
        The configured application
    """
    config = config or RelayConfig()
    relay = StreamRelay(config, client)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handle application lifespan events."""
        logger.info("Stream relay starting up...")
        yield
        logger.info("Stream relay shutting down...")
        await relay.aclose()

    app = FastAPI(
        title="Event Stream Relay",
        description="Forwards requests, including live event streams, to an encoded target",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.relay = relay

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        """Health check endpoint."""
        return {"status": "healthy", "prefix": config.prefix}

    # Any method; unsupported ones are rejected by the relay itself
    app.add_route(f"{config.prefix}/{{path:path}}", relay, name="proxy")

    return app


# Export symbols
__all__ = [
    "HOP_BY_HOP_HEADERS",
    "SUPPORTED_METHODS",
    "RelayConfig",
    "StreamRelay",
    "map_method",
    "resolve_target_url",
    "is_event_stream",
    "filter_headers",
    "create_relay_app",
]
