"""
Event Stream Producer

This module provides the server side of the protocol. For each accepted
connection an EventProducer writes an opening frame, then a data frame every
interval until the connection is cancelled, then one sentinel frame.

Cancellation comes from three independent sources combined into one token:
the client disconnecting, the process shutting down, and a fixed maximum
lifetime per connection.
"""

import asyncio
import inspect
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import Response
from starlette.types import Receive, Scope, Send

from .cancellation import CancellationToken, OperationCancelled
from .event_stream_base import EVENT_STREAM_MEDIA_TYPE, SENTINEL_DATA, Event


# Configure logging
logger = logging.getLogger(__name__)


Writer = Callable[[bytes], Awaitable[None]]
EventSource = Callable[[], Union[str, Event, Awaitable[Union[str, Event]]]]


@dataclass
class ProducerConfig:
    """Configuration for the event producer."""

    # Endpoint path
    path: str = "/sse"

    # Timing settings (seconds)
    interval: float = 2.0
    max_lifetime: float = 30.0
    sentinel_timeout: float = 5.0

    # Framing
    opening_data: str = "Connected"
    sentinel_data: str = SENTINEL_DATA
    encoding: str = "utf-8"

    # Headers
    # Explicit Content-Type keeps Starlette from appending a charset
    headers: Dict[str, str] = field(default_factory=lambda: {
        "Content-Type": EVENT_STREAM_MEDIA_TYPE,
        "Cache-Control": "no-cache",
        "Connection": "keep-alive",
    })


class EventProducer:
    """
    Writes one connection's worth of frames.

    The producer is transport-agnostic: it writes through an async callable
    and stops when the cancellation token fires.
    """

    def __init__(self, config: Optional[ProducerConfig] = None, source: Optional[EventSource] = None):
        """
        Initialize the producer.

        Args:
            config: Optional configuration (uses defaults if not provided)
            source: Optional callable supplying each data frame; sync or async,
                returning a string or an Event. Defaults to the current time.
        """
        self.config = config or ProducerConfig()
        self.source = source

    async def next_event(self) -> Event:
        """Produce the next data event."""
        if self.source is None:
            return Event(data=str(datetime.now().replace(microsecond=0)))

        value = self.source()
        if inspect.isawaitable(value):
            value = await value
        if isinstance(value, Event):
            return value
        return Event(data=str(value))

    async def run(self, write: Writer, cancellation: CancellationToken) -> int:
        """
        Write the opening frame, data frames until cancelled, then the sentinel.

        Termination is always graceful: cancellation, even mid-wait or
        mid-write, ends the loop and the sentinel is still written.

        Args:
            write: Async callable writing raw bytes to the client
            cancellation: Composite cancellation for this connection

        Returns:
            Number of data frames written
        """
        encoding = self.config.encoding
        written = 0

        try:
            await self._write_opening(write, cancellation)

            while not cancellation.cancelled:
                event = await self.next_event()
                await cancellation.guard(write(event.encode(encoding)))
                written += 1
                if await cancellation.sleep(self.config.interval):
                    break

        except OperationCancelled:
            logger.debug("Producer write abandoned on cancellation")

        except asyncio.TimeoutError:
            logger.warning("Timed out writing the opening frame")

        except OSError as e:
            logger.info(f"Client went away while streaming: {e}")

        await self._write_sentinel(write)
        logger.debug(f"Producer finished after {written} data frames")
        return written

    async def _write_opening(self, write: Writer, cancellation: CancellationToken) -> None:
        frame = Event(data=self.config.opening_data).encode(self.config.encoding)
        if cancellation.cancelled:
            # Still announced on a connection that is already over, bounded like the sentinel
            await asyncio.wait_for(write(frame), timeout=self.config.sentinel_timeout)
        else:
            await cancellation.guard(write(frame))

    async def _write_sentinel(self, write: Writer) -> None:
        frame = Event(data=self.config.sentinel_data).encode(self.config.encoding)
        try:
            await asyncio.wait_for(write(frame), timeout=self.config.sentinel_timeout)
        except asyncio.TimeoutError:
            logger.warning("Timed out writing the sentinel frame")
        except OSError as e:
            logger.debug(f"Sentinel frame not delivered: {e}")


class EventStreamResponse(Response):
    """
    ASGI response that runs an EventProducer for one connection.

    The response listens for the client disconnecting and links that signal
    with the process-wide shutdown token and the connection lifetime.
    """

    media_type = EVENT_STREAM_MEDIA_TYPE

    def __init__(
        self,
        producer: EventProducer,
        shutdown: CancellationToken,
        status_code: int = 200,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.producer = producer
        self.shutdown = shutdown
        self.status_code = status_code
        self.background = None
        self.init_headers(headers)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        disconnected = CancellationToken()
        watcher = asyncio.create_task(self._listen_for_disconnect(receive, disconnected))

        async def write(data: bytes) -> None:
            await send({"type": "http.response.body", "body": data, "more_body": True})

        try:
            await send({
                "type": "http.response.start",
                "status": self.status_code,
                "headers": self.raw_headers,
            })

            with CancellationToken.any(
                self.shutdown,
                disconnected,
                timeout=self.producer.config.max_lifetime,
            ) as cancellation:
                await self.producer.run(write, cancellation)

            try:
                await send({"type": "http.response.body", "body": b"", "more_body": False})
            except OSError as e:
                logger.debug(f"Could not close response body: {e}")

        finally:
            watcher.cancel()

    @staticmethod
    async def _listen_for_disconnect(receive: Receive, disconnected: CancellationToken) -> None:
        while True:
            message = await receive()
            if message["type"] == "http.disconnect":
                disconnected.cancel()
                return


def create_producer_app(
    config: Optional[ProducerConfig] = None,
    shutdown: Optional[CancellationToken] = None,
    source: Optional[EventSource] = None,
    cors_origins: Optional[List[str]] = None,
) -> FastAPI:
    """
    Create the FastAPI application serving the event stream.

    Args:
        config: Optional producer configuration
        shutdown: Process-wide shutdown token (created if not provided)
        source: Optional data frame source for the producer
        cors_origins: Allowed CORS origins (any origin if not provided)

    Returns:
        The configured application
    """
    config = config or ProducerConfig()
    shutdown = shutdown or CancellationToken()
    producer = EventProducer(config, source)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handle application lifespan events."""
        logger.info("Event producer starting up...")
        yield
        logger.info("Event producer shutting down...")
        shutdown.cancel()

    app = FastAPI(
        title="Event Stream Producer",
        description="Emits a periodic server-sent event stream",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.shutdown = shutdown
    app.state.producer = producer

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        """Health check endpoint."""
        return {
            "status": "stopping" if shutdown.cancelled else "healthy",
            "endpoint": config.path,
        }

    @app.api_route(config.path, methods=["GET", "POST"])
    async def event_stream(request: Request) -> EventStreamResponse:
        """Open one event stream connection."""
        client = request.client.host if request.client else "unknown"
        logger.info(f"Event stream opened for {client}")
        return EventStreamResponse(producer, shutdown, headers=config.headers)

    return app


# Export symbols
__all__ = [
    "ProducerConfig",
    "EventProducer",
    "EventStreamResponse",
    "create_producer_app",
]
