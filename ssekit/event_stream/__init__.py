"""
Event Stream Package

This package provides the server-sent events protocol stack: a frame parser
that turns arbitrary byte reads into typed events, a consumer session with
reconnection, a producer that writes a periodic stream per connection, and a
relay that forwards streams through an intermediary without buffering them.

Usage:
    from ssekit.event_stream import (
        SessionConfig,
        StreamingSession,
        create_producer_app,
        create_relay_app,
    )

    # Server side
    app = create_producer_app(ProducerConfig(interval=1.0))

    # Client side
    session = StreamingSession(SessionConfig(url="http://localhost:5079/sse"))
    async for event in session.events():
        print(event.data)
"""

from .cancellation import CancellationToken, OperationCancelled

from .event_stream_base import (
    DEFAULT_EVENT_TYPE,
    EVENT_STREAM_MEDIA_TYPE,
    SENTINEL_DATA,
    Event,
    EventStreamDecoder,
    FrameState,
    LineBuffer,
    aiter_events,
    aparse_lines,
    parse_lines,
    parse_retry,
    EventStreamError,
    EventStreamTransportError,
    InvalidTargetError,
    UnsupportedMethodError,
)

from .event_stream_client import (
    ReadyState,
    SessionConfig,
    SessionError,
    SessionItem,
    StateChange,
    StreamingSession,
)

from .event_stream_producer import (
    EventProducer,
    EventStreamResponse,
    ProducerConfig,
    create_producer_app,
)

from .event_stream_relay import (
    HOP_BY_HOP_HEADERS,
    SUPPORTED_METHODS,
    RelayConfig,
    StreamRelay,
    create_relay_app,
    filter_headers,
    is_event_stream,
    map_method,
    resolve_target_url,
)


__version__ = "1.0.0"
__all__ = [
    # Cancellation
    "CancellationToken",
    "OperationCancelled",
    # Base module exports
    "DEFAULT_EVENT_TYPE",
    "EVENT_STREAM_MEDIA_TYPE",
    "SENTINEL_DATA",
    "Event",
    "EventStreamDecoder",
    "FrameState",
    "LineBuffer",
    "aiter_events",
    "aparse_lines",
    "parse_lines",
    "parse_retry",
    "EventStreamError",
    "EventStreamTransportError",
    "InvalidTargetError",
    "UnsupportedMethodError",
    # Client module exports
    "ReadyState",
    "SessionConfig",
    "SessionError",
    "SessionItem",
    "StateChange",
    "StreamingSession",
    # Producer module exports
    "EventProducer",
    "EventStreamResponse",
    "ProducerConfig",
    "create_producer_app",
    # Relay module exports
    "HOP_BY_HOP_HEADERS",
    "SUPPORTED_METHODS",
    "RelayConfig",
    "StreamRelay",
    "create_relay_app",
    "filter_headers",
    "is_event_stream",
    "map_method",
    "resolve_target_url",
]
