"""Tests for the line buffer and the SSE / NDJSON decoders."""

from __future__ import annotations

import json

import pytest

from chatdesk.llm.wire import DONE, LineBuffer, NDJSONDecoder, SSEDecoder


def _split(data: bytes, sizes: list[int]) -> list[bytes]:
    """Cut *data* into consecutive chunks of the given sizes (rest last)."""
    chunks, pos = [], 0
    for size in sizes:
        chunks.append(data[pos:pos + size])
        pos += size
    chunks.append(data[pos:])
    return [c for c in chunks if c]


async def _agen(chunks: list[bytes]):
    for chunk in chunks:
        yield chunk


async def _collect(decoder, chunks: list[bytes]) -> list:
    return [frame async for frame in decoder.decode(_agen(chunks))]


SSE_BODY = (
    'event: message_start\n'
    'data: {"type": "message_start", "message": {"model": "m"}}\n'
    '\n'
    ': keep-alive comment\n'
    'data: {"type": "content_block_delta", "delta": {"text": "héllo ✓"}}\r\n'
    'data: {"type": "message_stop"}\n'
    '\n'
).encode()


# ---------------------------------------------------------------------------
# LineBuffer
# ---------------------------------------------------------------------------

class TestLineBuffer:
    def test_holds_partial_line(self):
        buf = LineBuffer()
        assert buf.feed(b"abc") == []
        assert buf.feed(b"def\nxy") == ["abcdef"]
        assert buf.flush() == ["xy"]

    def test_strips_carriage_return(self):
        buf = LineBuffer()
        assert buf.feed(b"one\r\ntwo\r\n") == ["one", "two"]

    def test_multibyte_split_across_chunks(self):
        data = "✓\n".encode()
        buf = LineBuffer()
        assert buf.feed(data[:1]) == []
        assert buf.feed(data[1:2]) == []
        assert buf.feed(data[2:]) == ["✓"]

    def test_flush_returns_unterminated_tail(self):
        buf = LineBuffer()
        buf.feed(b"last")
        assert buf.flush() == ["last"]
        assert buf.flush() == []


# ---------------------------------------------------------------------------
# SSE
# ---------------------------------------------------------------------------

class TestSSEDecoder:
    async def test_single_chunk(self):
        frames = await _collect(SSEDecoder(), [SSE_BODY])
        assert [f["type"] for f in frames] == [
            "message_start", "content_block_delta", "message_stop",
        ]
        assert frames[1]["delta"]["text"] == "héllo ✓"

    @pytest.mark.parametrize("sizes", [
        [1] * 40,
        [7, 13, 29, 3],
        [60, 1, 1, 1, 2],
        [len(SSE_BODY) - 1],
    ])
    async def test_chunking_does_not_change_frames(self, sizes):
        expected = await _collect(SSEDecoder(), [SSE_BODY])
        got = await _collect(SSEDecoder(), _split(SSE_BODY, sizes))
        assert got == expected

    async def test_byte_at_a_time(self):
        chunks = [SSE_BODY[i:i + 1] for i in range(len(SSE_BODY))]
        frames = await _collect(SSEDecoder(), chunks)
        assert len(frames) == 3
        assert frames[1]["delta"]["text"] == "héllo ✓"

    async def test_done_ends_decoding(self):
        body = (
            b'data: {"n": 1}\n'
            b'data: [DONE]\n'
            b'data: {"n": 2}\n'
        )
        decoder = SSEDecoder()
        frames = await _collect(decoder, [body])
        assert frames == [{"n": 1}, DONE]
        assert decoder.done
        assert decoder.feed(b'data: {"n": 3}\n') == []

    async def test_malformed_payload_is_skipped(self):
        body = (
            b'data: {"n": 1}\n'
            b'data: {not json\n'
            b'data: [1, 2]\n'
            b'data: \n'
            b'data: {"n": 2}\n'
        )
        frames = await _collect(SSEDecoder(), [body])
        assert frames == [{"n": 1}, {"n": 2}]

    def test_ignores_non_data_lines(self):
        decoder = SSEDecoder()
        assert decoder.feed(b"event: ping\nid: 4\nretry: 10\n: x\n") == []

    async def test_final_line_without_newline(self):
        frames = await _collect(SSEDecoder(), [b'data: {"n": 1}'])
        assert frames == [{"n": 1}]


# ---------------------------------------------------------------------------
# NDJSON
# ---------------------------------------------------------------------------

NDJSON_LINES = [
    {"message": {"content": "Hi"}, "done": False},
    {"message": {"content": " ✓ there"}, "done": False},
    {"done": True, "prompt_eval_count": 4, "eval_count": 2},
]
NDJSON_BODY = "".join(json.dumps(o, ensure_ascii=False) + "\n" for o in NDJSON_LINES).encode()


class TestNDJSONDecoder:
    async def test_lines(self):
        assert await _collect(NDJSONDecoder(), [NDJSON_BODY]) == NDJSON_LINES

    @pytest.mark.parametrize("sizes", [[1] * 50, [5, 17, 31], [len(NDJSON_BODY) - 2]])
    async def test_arbitrary_chunk_boundaries(self, sizes):
        got = await _collect(NDJSONDecoder(), _split(NDJSON_BODY, sizes))
        assert got == NDJSON_LINES

    async def test_blank_and_malformed_lines_skipped(self):
        body = b'\n   \n{"a": 1}\nnot json\n"string"\n{"b": 2}\n'
        assert await _collect(NDJSONDecoder(), [body]) == [{"a": 1}, {"b": 2}]

    async def test_unterminated_last_line(self):
        assert await _collect(NDJSONDecoder(), [b'{"a": 1}\n{"b"', b': 2}']) == [
            {"a": 1}, {"b": 2},
        ]
