"""Decoder for line-framed ``data: <json>`` event streams.

The transport delivers the response body in chunks whose boundaries have no
relation to record boundaries: one chunk may hold several records, or end in
the middle of a line, or in the middle of a multi-byte UTF-8 character. The
decoder buffers the trailing partial line between reads so each complete
record is decoded exactly once.

Usage:
    >>> decoder = StreamDecoder()
    >>> decoder.feed(b'data: {"type": "content_chunk", "con')
    []
    >>> decoder.feed(b'tent": "hi"}\\n\\n')
    [StreamEvent(type='content_chunk', data={'content': 'hi'}, sequence=1, ...)]
"""

import codecs
import json
from collections.abc import AsyncIterable, AsyncIterator

import structlog

from events.types import StreamEvent

logger = structlog.get_logger(__name__)

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"

# Longest slice of a bad line included in log output
_LOG_LINE_LIMIT = 200


class StreamDecoder:
    """Incremental decoder for one stream.

    A decoder instance holds the partial-line buffer of a single stream and
    must not be shared between streams.

    Attributes:
        done: True once the ``data: [DONE]`` sentinel was seen. Records after
            it are not forwarded.
        malformed_count: Number of ``data:`` records skipped as unparseable.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._sequence = 0
        self.done = False
        self.malformed_count = 0

    def feed(self, chunk: bytes | str) -> list[StreamEvent]:
        """Add one transport chunk and return the events it completed.

        Every line except the last is processed; the last may be incomplete
        and stays in the buffer until the next chunk.

        Args:
            chunk: Raw bytes or already-decoded text.

        Returns:
            Decoded events in stream order (possibly empty).
        """
        if isinstance(chunk, (bytes, bytearray)):
            text = self._utf8.decode(chunk)
        else:
            text = chunk
        if not text:
            return []

        self._buffer += text
        *lines, self._buffer = self._buffer.split("\n")
        return self._decode_lines(lines)

    def flush(self) -> list[StreamEvent]:
        """Decode whatever remains buffered once the stream has ended."""
        remaining = self._buffer + self._utf8.decode(b"", final=True)
        self._buffer = ""
        if not remaining:
            return []
        return self._decode_lines(remaining.split("\n"))

    def _decode_lines(self, lines: list[str]) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        for line in lines:
            event = self._decode_line(line.rstrip("\r"))
            if event is not None:
                events.append(event)
        return events

    def _decode_line(self, line: str) -> StreamEvent | None:
        if not line.startswith(DATA_PREFIX):
            return None

        payload = line[len(DATA_PREFIX):]
        if payload.strip() == DONE_SENTINEL:
            self.done = True
            logger.debug("stream_done_sentinel_received", events_decoded=self._sequence)
            return None

        if self.done:
            logger.debug("stream_record_after_done_ignored")
            return None

        try:
            record = json.loads(payload)
        except json.JSONDecodeError as e:
            self.malformed_count += 1
            logger.warning(
                "malformed_stream_record",
                error=str(e),
                line=line[:_LOG_LINE_LIMIT],
            )
            return None

        if not isinstance(record, dict) or not isinstance(record.get("type"), str):
            self.malformed_count += 1
            logger.warning(
                "stream_record_missing_type",
                line=line[:_LOG_LINE_LIMIT],
            )
            return None

        event_type = record.pop("type")
        self._sequence += 1
        return StreamEvent(type=event_type, data=record, sequence=self._sequence)


async def decode_stream(
    chunks: AsyncIterable[bytes | str],
) -> AsyncIterator[StreamEvent]:
    """Decode an async iterable of transport chunks into events.

    Args:
        chunks: The response body, chunk by chunk.

    Yields:
        Each decoded event, in stream order.
    """
    decoder = StreamDecoder()
    async for chunk in chunks:
        for event in decoder.feed(chunk):
            yield event
    for event in decoder.flush():
        yield event
