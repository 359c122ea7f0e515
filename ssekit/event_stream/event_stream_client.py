"""
Event Stream Client

This module provides the consumer side of the protocol: a StreamingSession
that owns one HTTP request/response at a time, feeds the response bytes to the
frame parser, drives the ready-state machine, and reconnects after transport
failures when the server supplied a retry hint.

The session is pulled, not pushed: start() returns an async iterator of
Event, StateChange and SessionError values in the order they happen.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, Optional, Union

import httpx

from .cancellation import CancellationToken, OperationCancelled
from .event_stream_base import (
    EVENT_STREAM_MEDIA_TYPE,
    Event,
    EventStreamDecoder,
    EventStreamTransportError,
)


# Configure logging
logger = logging.getLogger(__name__)

_END = object()


class ReadyState(Enum):
    """Connection state of a session."""
    INITIALIZING = -1
    CONNECTING = 0
    OPEN = 1
    CLOSED = 2


@dataclass(frozen=True)
class SessionConfig:
    """Configuration for one streaming session."""

    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    method: Optional[str] = None  # GET unless a payload is provided
    payload: Optional[str] = None
    debug: bool = False

    # Reconnection settings
    reconnect: bool = True
    max_reconnect_attempts: int = 10

    # Timeout settings
    connect_timeout: float = 10.0
    read_timeout: Optional[float] = None

    encoding: str = "utf-8"

    @property
    def resolved_method(self) -> str:
        """The HTTP method to use for each attempt."""
        if self.method:
            return self.method.upper()
        return "POST" if self.payload else "GET"


@dataclass(frozen=True)
class StateChange:
    """Notification that the session moved to a new ready state."""
    state: ReadyState
    previous: ReadyState


@dataclass(frozen=True)
class SessionError:
    """Notification that the current connection attempt failed."""
    error: EventStreamTransportError
    retry: Optional[int] = None


SessionItem = Union[Event, StateChange, SessionError]


async def _next_chunk(chunks: AsyncIterator[bytes]) -> Any:
    try:
        return await chunks.__anext__()
    except StopAsyncIteration:
        return _END


class StreamingSession:
    """
    Consumer for one event stream.

    Usage:
        session = StreamingSession(SessionConfig(url="http://localhost:5079/sse"))
        async for item in session.start(cancellation):
            if isinstance(item, Event):
                ...
    """

    def __init__(self, config: SessionConfig, client: Optional[httpx.AsyncClient] = None):
        """
        Initialize the session.

        Args:
            config: Session configuration
            client: Optional HTTP client; one is created per start() if omitted
        """
        self.config = config
        self._client = client
        self._ready_state = ReadyState.INITIALIZING
        self._last_error: Optional[EventStreamTransportError] = None
        self._retry: Optional[int] = None
        self._last_event_id: Optional[str] = None

    @property
    def ready_state(self) -> ReadyState:
        """Get the current ready state."""
        return self._ready_state

    @property
    def last_error(self) -> Optional[EventStreamTransportError]:
        """Get the most recent transport error, if any."""
        return self._last_error

    @property
    def retry(self) -> Optional[int]:
        """Get the last retry hint (milliseconds) sent by the server."""
        return self._retry

    @property
    def last_event_id(self) -> Optional[str]:
        """Get the id of the last event that carried one."""
        return self._last_event_id

    def _transition(self, state: ReadyState) -> StateChange:
        change = StateChange(state=state, previous=self._ready_state)
        self._ready_state = state
        if self.config.debug:
            logger.info(f"Ready state {change.previous.name} -> {state.name}")
        return change

    def _build_request(self, client: httpx.AsyncClient) -> httpx.Request:
        headers = {
            "Accept": EVENT_STREAM_MEDIA_TYPE,
            "Cache-Control": "no-cache",
        }
        headers.update(self.config.headers)
        if self._last_event_id is not None:
            headers["Last-Event-ID"] = self._last_event_id

        content = None
        if self.config.payload:
            headers.setdefault("Content-Type", "application/json")
            content = self.config.payload.encode(self.config.encoding)

        return client.build_request(
            self.config.resolved_method,
            self.config.url,
            headers=headers,
            content=content,
        )

    def _create_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(
                self.config.connect_timeout,
                read=self.config.read_timeout,
            ),
        )

    def _observe(self, event: Event) -> None:
        if event.retry is not None:
            self._retry = event.retry
        if event.id is not None:
            self._last_event_id = event.id
        if self.config.debug:
            logger.info(f"Event received: {event.type}")

    async def start(self, cancellation: Optional[CancellationToken] = None) -> AsyncIterator[SessionItem]:
        """
        Connect and stream until the stream ends, fails for good, or is cancelled.

        Args:
            cancellation: Optional token; firing it closes the session without
                an error notification

        Yields:
            Events, state changes and error notifications in order
        """
        cancellation = cancellation or CancellationToken()
        owns_client = self._client is None
        client = self._client or self._create_client()
        attempts = 0

        if self.config.debug:
            logger.info(f"Starting to stream events from {self.config.url}")

        try:
            while True:
                yield self._transition(ReadyState.CONNECTING)

                attempt = self._attempt(client, cancellation)
                try:
                    async for item in attempt:
                        if isinstance(item, StateChange) and item.state is ReadyState.OPEN:
                            attempts = 0
                        yield item

                except OperationCancelled:
                    logger.debug(f"Session for {self.config.url} cancelled")
                    yield self._transition(ReadyState.CLOSED)
                    return

                except (httpx.HTTPError, EventStreamTransportError) as e:
                    error = e if isinstance(e, EventStreamTransportError) else EventStreamTransportError(
                        f"Request error: {e}", retry=self._retry
                    )
                    self._last_error = error
                    logger.warning(f"Stream from {self.config.url} failed: {error}")
                    yield SessionError(error=error, retry=self._retry)

                else:
                    yield self._transition(ReadyState.CLOSED)
                    return

                finally:
                    await attempt.aclose()

                yield self._transition(ReadyState.CLOSED)

                if not self._should_reconnect(attempts):
                    return

                attempts += 1
                logger.info(
                    f"Reconnection attempt {attempts}/{self.config.max_reconnect_attempts} "
                    f"in {self._retry}ms"
                )
                if await cancellation.sleep(self._retry / 1000):
                    return

        finally:
            self._ready_state = ReadyState.CLOSED
            if owns_client:
                await client.aclose()
            if self.config.debug:
                logger.info("Streaming has ended")

    async def _attempt(
        self,
        client: httpx.AsyncClient,
        cancellation: CancellationToken
    ) -> AsyncIterator[SessionItem]:
        """Run one connection attempt from request to end of body."""
        request = self._build_request(client)
        response = await cancellation.guard(client.send(request, stream=True))

        try:
            if not response.is_success:
                raise EventStreamTransportError(
                    f"HTTP error: {response.status_code}",
                    status_code=response.status_code,
                    retry=self._retry,
                )

            yield self._transition(ReadyState.OPEN)

            decoder = EventStreamDecoder(self.config.encoding)
            chunks = response.aiter_bytes()
            while True:
                chunk = await cancellation.guard(_next_chunk(chunks))
                if chunk is _END:
                    break
                for event in decoder.feed(chunk):
                    self._observe(event)
                    yield event

            for event in decoder.finish():
                self._observe(event)
                yield event

        finally:
            await response.aclose()

    def _should_reconnect(self, attempts: int) -> bool:
        if not self.config.reconnect or self._retry is None:
            return False
        if attempts >= self.config.max_reconnect_attempts:
            logger.error(f"Max reconnection attempts ({self.config.max_reconnect_attempts}) reached")
            return False
        return True

    async def events(self, cancellation: Optional[CancellationToken] = None) -> AsyncIterator[Event]:
        """
        Stream only the events, dropping notifications.

        Args:
            cancellation: Optional cancellation token

        Yields:
            Events in arrival order
        """
        async for item in self.start(cancellation):
            if isinstance(item, Event):
                yield item

    def __aiter__(self) -> AsyncIterator[Event]:
        return self.events()


# Export symbols
__all__ = [
    "ReadyState",
    "SessionConfig",
    "StateChange",
    "SessionError",
    "SessionItem",
    "StreamingSession",
]
