"""
Event Stream Base Implementation

This module provides the wire-level pieces shared by the producer, the
consumer session and the relay: the immutable Event value, the line buffering
layer that turns arbitrary byte reads into whole lines, and the frame parser
that turns lines into events at blank-line boundaries.

Wire format (UTF-8, newline terminated):

    event: <type>
    data: <line>        (repeatable)
    id: <id>
    retry: <milliseconds>
    : <comment>         (ignored)
    <blank line>        (frame terminator)
"""

import codecs
import logging
import re
from dataclasses import dataclass, replace
from typing import AsyncIterable, AsyncIterator, Iterable, Iterator, List, Optional, Tuple


# Configure logging
logger = logging.getLogger(__name__)


DEFAULT_EVENT_TYPE = "message"
EVENT_STREAM_MEDIA_TYPE = "text/event-stream"
SENTINEL_DATA = "[DONE]"

_LINE_TERMINATOR = re.compile(r"\r\n|\r|\n")
_BOM = "\ufeff"


@dataclass(frozen=True)
class Event:
    """A single dispatched event."""

    type: str = DEFAULT_EVENT_TYPE
    data: str = ""
    id: Optional[str] = None
    retry: Optional[int] = None

    @property
    def is_sentinel(self) -> bool:
        """Whether this event marks an intentional end of stream."""
        return self.data == SENTINEL_DATA

    def encode(self, encoding: str = "utf-8") -> bytes:
        """
        Encode the event as one wire frame.

        Args:
            encoding: Text encoding to use

        Returns:
            The frame, terminated by a blank line

        Raises:
            ValueError: If a field cannot be represented on the wire
        """
        for name, value in (("event", self.type), ("id", self.id)):
            if value is not None and _LINE_TERMINATOR.search(value):
                raise ValueError(f"Field '{name}' must not contain line terminators")
        if self.retry is not None and self.retry < 0:
            raise ValueError(f"Retry must be non-negative, got: {self.retry}")

        lines = []
        if self.type and self.type != DEFAULT_EVENT_TYPE:
            lines.append(f"event: {self.type}")
        for data_line in _LINE_TERMINATOR.split(self.data):
            lines.append(f"data: {data_line}")
        if self.id is not None:
            lines.append(f"id: {self.id}")
        if self.retry is not None:
            lines.append(f"retry: {self.retry}")

        return ("\n".join(lines) + "\n\n").encode(encoding)


def parse_retry(value: str) -> Optional[int]:
    """
    Parse a retry value in milliseconds.

    Returns:
        The value, or None if it is not a non-negative integer
    """
    value = value.strip()
    if value and value.isascii() and value.isdigit():
        return int(value)
    return None


@dataclass(frozen=True)
class FrameState:
    """
    Fields collected for the frame currently being read.

    Each line produces the next state; a blank line also produces the
    finished Event, if any field was set.
    """

    type: Optional[str] = None
    data: Tuple[str, ...] = ()
    id: Optional[str] = None
    retry: Optional[int] = None
    populated: bool = False

    def apply(self, line: str) -> Tuple["FrameState", Optional[Event]]:
        """
        Apply one line (terminator already stripped).

        Returns:
            The next state and the event completed by this line, if any
        """
        if not line:
            return FrameState(), self.build()

        if line.startswith(":"):
            return self, None

        name, separator, value = line.partition(":")
        if not separator:
            return self, None

        name = name.strip().lower()
        if value.startswith(" "):
            value = value[1:]

        if name == "event":
            return replace(self, type=value, populated=True), None
        if name == "data":
            return replace(self, data=self.data + (value,), populated=True), None
        if name == "id":
            return replace(self, id=value, populated=True), None
        if name == "retry":
            retry = parse_retry(value)
            if retry is None:
                logger.debug(f"Ignoring invalid retry value: {value!r}")
                return self, None
            return replace(self, retry=retry, populated=True), None

        return self, None

    def build(self) -> Optional[Event]:
        """Build the event for the current frame, or None if nothing was set."""
        if not self.populated:
            return None
        return Event(
            type=self.type or DEFAULT_EVENT_TYPE,
            data="\n".join(self.data).rstrip(),
            id=self.id,
            retry=self.retry,
        )


def parse_lines(lines: Iterable[str]) -> Iterator[Event]:
    """
    Parse whole lines into events.

    A frame still pending at the end of input is flushed as a final event.
    """
    state = FrameState()
    for line in lines:
        state, event = state.apply(line)
        if event is not None:
            yield event

    event = state.build()
    if event is not None:
        yield event


async def aparse_lines(lines: AsyncIterable[str]) -> AsyncIterator[Event]:
    """Asynchronous counterpart of parse_lines."""
    state = FrameState()
    async for line in lines:
        state, event = state.apply(line)
        if event is not None:
            yield event

    event = state.build()
    if event is not None:
        yield event


class LineBuffer:
    """
    Turns arbitrary byte reads into whole lines.

    A line, or a multi-byte character, may span any number of reads.
    """

    def __init__(self, encoding: str = "utf-8"):
        """
        Initialize the line buffer.

        Args:
            encoding: Text encoding to use
        """
        self.encoding = encoding
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""
        self._started = False

    def feed(self, data: bytes) -> List[str]:
        """
        Feed raw bytes and return the lines they complete.

        Args:
            data: Raw byte data

        Returns:
            Completed lines, terminators stripped
        """
        return self._split(self._decoder.decode(data))

    def flush(self) -> List[str]:
        """Return whatever remains at end of input as final lines."""
        tail = self._strip_bom(self._buffer + self._decoder.decode(b"", final=True))
        self._buffer = ""
        if not tail:
            return []

        lines = _LINE_TERMINATOR.split(tail)
        if lines[-1] == "":
            lines.pop()
        return lines

    def reset(self) -> None:
        """Drop buffered data."""
        self._decoder.reset()
        self._buffer = ""
        self._started = False

    def has_buffered_data(self) -> bool:
        """Check if there's a partial line waiting for more input."""
        return bool(self._buffer)

    def _strip_bom(self, text: str) -> str:
        if not self._started and text:
            self._started = True
            if text.startswith(_BOM):
                return text[1:]
        return text

    def _split(self, text: str) -> List[str]:
        buffer = self._strip_bom(self._buffer + text)
        lines = []
        start = 0

        while True:
            match = _LINE_TERMINATOR.search(buffer, start)
            if match is None:
                break
            # A CR at the very end may be the first half of a CRLF
            if match.group() == "\r" and match.end() == len(buffer):
                break
            lines.append(buffer[start:match.start()])
            start = match.end()

        self._buffer = buffer[start:]
        return lines


class EventStreamDecoder:
    """
    Incremental decoder from raw bytes to events.

    Combines a LineBuffer with the frame parser; feed() may be called with
    chunks split at any byte boundary.
    """

    def __init__(self, encoding: str = "utf-8"):
        """
        Initialize the decoder.

        Args:
            encoding: Text encoding to use
        """
        self.encoding = encoding
        self._lines = LineBuffer(encoding)
        self._state = FrameState()

    @property
    def state(self) -> FrameState:
        """Fields collected for the frame being read."""
        return self._state

    def feed(self, data: bytes) -> List[Event]:
        """
        Feed data to the decoder and return completed events.

        Args:
            data: Raw byte data

        Returns:
            Events completed by this data, in arrival order
        """
        return self._apply(self._lines.feed(data))

    def finish(self) -> List[Event]:
        """Flush the partial line and pending frame at end of input."""
        events = self._apply(self._lines.flush())
        event = self._state.build()
        self._state = FrameState()
        if event is not None:
            events.append(event)
        return events

    def reset(self) -> None:
        """Reset the decoder."""
        self._lines.reset()
        self._state = FrameState()

    def has_buffered_data(self) -> bool:
        """Check if there's buffered data waiting for more input."""
        return self._lines.has_buffered_data() or self._state.populated

    def _apply(self, lines: List[str]) -> List[Event]:
        events = []
        for line in lines:
            self._state, event = self._state.apply(line)
            if event is not None:
                events.append(event)
        return events


async def aiter_events(chunks: AsyncIterable[bytes], encoding: str = "utf-8") -> AsyncIterator[Event]:
    """
    Parse a stream of byte chunks into events.

    Args:
        chunks: Async iterable yielding raw byte chunks
        encoding: Text encoding to use

    Yields:
        Events in arrival order
    """
    decoder = EventStreamDecoder(encoding)
    async for chunk in chunks:
        for event in decoder.feed(chunk):
            yield event
    for event in decoder.finish():
        yield event


class EventStreamError(Exception):
    """Base exception for event stream errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class EventStreamTransportError(EventStreamError):
    """Connection failure or non-success response while streaming."""

    def __init__(self, message: str, status_code: Optional[int] = None, retry: Optional[int] = None):
        self.status_code = status_code
        self.retry = retry
        super().__init__(message)


class UnsupportedMethodError(EventStreamError):
    """HTTP method the relay cannot forward."""

    def __init__(self, method: str):
        self.method = method
        super().__init__(f"Unsupported method: {method}")


class InvalidTargetError(EventStreamError):
    """Relay path that does not encode a usable target."""

    def __init__(self, message: str, path: Optional[str] = None):
        self.path = path
        super().__init__(message)


# Export symbols
__all__ = [
    "DEFAULT_EVENT_TYPE",
    "EVENT_STREAM_MEDIA_TYPE",
    "SENTINEL_DATA",
    "Event",
    "FrameState",
    "LineBuffer",
    "EventStreamDecoder",
    "parse_retry",
    "parse_lines",
    "aparse_lines",
    "aiter_events",
    "EventStreamError",
    "EventStreamTransportError",
    "UnsupportedMethodError",
    "InvalidTargetError",
]
