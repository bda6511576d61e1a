"""Tests for events/decoder.py -- ``data:`` record reassembly.

Covers records split across chunks, malformed lines, non-data lines, the
``[DONE]`` sentinel, multi-byte characters split between chunks, and the
final unterminated line.
"""

import json

from events.decoder import StreamDecoder, decode_stream

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _line(record: dict) -> str:
    return f"data: {json.dumps(record, ensure_ascii=False)}\n\n"


async def _aiter(chunks):
    for chunk in chunks:
        yield chunk


# =========================================================================
# Chunk boundaries
# =========================================================================


class TestChunkBoundaries:
    """Records are decoded exactly once regardless of how chunks split them."""

    def test_record_split_across_two_chunks(self) -> None:
        decoder = StreamDecoder()
        wire = _line({"type": "content_chunk", "content": "hello"})

        first = decoder.feed(wire[:17])
        second = decoder.feed(wire[17:])

        assert first == []
        assert len(second) == 1
        assert second[0].type == "content_chunk"
        assert second[0].data == {"content": "hello"}

    def test_many_records_in_one_chunk(self) -> None:
        decoder = StreamDecoder()
        wire = "".join(_line({"type": "chunk", "chunk": str(i)}) for i in range(3))

        events = decoder.feed(wire)

        assert [e.data["chunk"] for e in events] == ["0", "1", "2"]
        assert [e.sequence for e in events] == [1, 2, 3]

    def test_byte_at_a_time(self) -> None:
        decoder = StreamDecoder()
        wire = (_line({"type": "start"}) + _line({"type": "complete", "result": 1})).encode()

        events = []
        for i in range(len(wire)):
            events.extend(decoder.feed(wire[i : i + 1]))

        assert [e.type for e in events] == ["start", "complete"]

    def test_multibyte_character_split_between_chunks(self) -> None:
        decoder = StreamDecoder()
        wire = _line({"type": "content_chunk", "content": "café ☕"}).encode("utf-8")
        split = wire.index("☕".encode()) + 1

        events = decoder.feed(wire[:split]) + decoder.feed(wire[split:])

        assert len(events) == 1
        assert events[0].data["content"] == "café ☕"

    def test_crlf_line_endings(self) -> None:
        decoder = StreamDecoder()

        events = decoder.feed('data: {"type": "start"}\r\n\r\n')

        assert [e.type for e in events] == ["start"]


# =========================================================================
# Malformed and ignored lines
# =========================================================================


class TestMalformedLines:
    """Bad records are skipped without disturbing their neighbours."""

    def test_malformed_line_between_two_good_lines(self) -> None:
        decoder = StreamDecoder()
        wire = (
            _line({"type": "content_chunk", "content": "a"})
            + "data: {not json\n\n"
            + _line({"type": "content_chunk", "content": "b"})
        )

        events = decoder.feed(wire)

        assert [e.data["content"] for e in events] == ["a", "b"]
        assert decoder.malformed_count == 1

    def test_record_without_type_is_skipped(self) -> None:
        decoder = StreamDecoder()

        events = decoder.feed('data: {"content": "x"}\ndata: [1, 2]\n')

        assert events == []
        assert decoder.malformed_count == 2

    def test_non_data_lines_are_ignored(self) -> None:
        decoder = StreamDecoder()
        wire = ": keep-alive\nevent: message\nid: 7\n\n" + _line({"type": "start"})

        events = decoder.feed(wire)

        assert [e.type for e in events] == ["start"]
        assert decoder.malformed_count == 0


# =========================================================================
# [DONE] sentinel
# =========================================================================


class TestDoneSentinel:
    """``data: [DONE]`` ends forwarding but is not itself an event."""

    def test_done_stops_forwarding(self) -> None:
        decoder = StreamDecoder()
        wire = _line({"type": "chunk", "chunk": "x"}) + "data: [DONE]\n\n" + _line(
            {"type": "chunk", "chunk": "late"}
        )

        events = decoder.feed(wire)

        assert [e.data["chunk"] for e in events] == ["x"]
        assert decoder.done is True


# =========================================================================
# End of stream
# =========================================================================


class TestFlush:
    """The final unterminated line is decoded at stream closure."""

    def test_flush_decodes_trailing_record(self) -> None:
        decoder = StreamDecoder()

        assert decoder.feed('data: {"type": "done", "messageId": "m1"}') == []
        events = decoder.flush()

        assert len(events) == 1
        assert events[0].data == {"messageId": "m1"}

    def test_flush_with_empty_buffer(self) -> None:
        decoder = StreamDecoder()
        decoder.feed(_line({"type": "start"}))

        assert decoder.flush() == []

    async def test_decode_stream_generator(self) -> None:
        chunks = [b'data: {"type": "sta', b'rt"}\n\ndata: {"type": "complete"}']

        events = [event async for event in decode_stream(_aiter(chunks))]

        assert [e.type for e in events] == ["start", "complete"]
        assert events[1].is_terminal
