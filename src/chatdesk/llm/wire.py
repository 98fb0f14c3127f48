"""Wire decoders: raw response bytes -> provider-native frames.

Network reads do not respect line boundaries, so both decoders sit on a
``LineBuffer`` that keeps the incomplete tail of each chunk and prefixes it
onto the next one.  A frame is one JSON object: the payload of an SSE
``data: `` line, or one line of newline-delimited JSON.
"""

from __future__ import annotations

import codecs
import json
import logging
from typing import Any, AsyncIterable, AsyncIterator

_logger = logging.getLogger(__name__)

Frame = dict[str, Any]


class _Done:
    """Sentinel frame: the SSE stream sent ``data: [DONE]``."""

    def __repr__(self) -> str:
        return "DONE"


DONE = _Done()

_SSE_PREFIX = "data: "
_SSE_DONE = "[DONE]"


class LineBuffer:
    """Incremental UTF-8 line splitter.

    Multi-byte characters split across chunks are held back by the
    incremental decoder until complete.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._tail = ""

    def feed(self, chunk: bytes) -> list[str]:
        """Return every line completed by *chunk* (without terminators)."""
        text = self._tail + self._decoder.decode(chunk)
        lines = text.split("\n")
        self._tail = lines.pop()
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> list[str]:
        """Return the unterminated last line, if any."""
        text = self._tail + self._decoder.decode(b"", final=True)
        self._tail = ""
        text = text.rstrip("\r")
        return [text] if text else []


class _LineDecoder:
    """Shared feed/flush/async-iteration plumbing for line-based decoders."""

    def __init__(self) -> None:
        self._lines = LineBuffer()
        self._done = False

    @property
    def done(self) -> bool:
        """True once a termination sentinel was seen."""
        return self._done

    def feed(self, chunk: bytes) -> list[Frame | _Done]:
        if self._done:
            return []
        return self._parse_lines(self._lines.feed(chunk))

    def flush(self) -> list[Frame | _Done]:
        if self._done:
            return []
        return self._parse_lines(self._lines.flush())

    async def decode(self, chunks: AsyncIterable[bytes]) -> AsyncIterator[Frame | _Done]:
        """Lazily yield frames from *chunks*; single pass, not restartable."""
        async for chunk in chunks:
            for frame in self.feed(chunk):
                yield frame
            if self._done:
                return
        for frame in self.flush():
            yield frame

    def _parse_lines(self, lines: list[str]) -> list[Frame | _Done]:
        frames: list[Frame | _Done] = []
        for line in lines:
            frame = self._parse_line(line)
            if frame is None:
                continue
            frames.append(frame)
            if frame is DONE:
                self._done = True
                break
        return frames

    def _parse_line(self, line: str) -> Frame | _Done | None:
        raise NotImplementedError


class SSEDecoder(_LineDecoder):
    """Server-Sent-Events decoder used by the Claude and OpenAI streams.

    Only ``data: `` lines carry frames; ``event:``/``id:``/comment lines
    are ignored.  ``data: [DONE]`` yields ``DONE`` and ends decoding.
    """

    def _parse_line(self, line: str) -> Frame | _Done | None:
        if not line.startswith(_SSE_PREFIX):
            return None
        payload = line[len(_SSE_PREFIX):].strip()
        if payload == _SSE_DONE:
            return DONE
        if not payload:
            return None
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            _logger.warning("Skipping malformed SSE payload (%s): %.200s", e, payload)
            return None
        if not isinstance(data, dict):
            _logger.warning("Skipping non-object SSE payload: %.200s", payload)
            return None
        return data


class NDJSONDecoder(_LineDecoder):
    """Newline-delimited JSON decoder used by the Ollama stream."""

    def _parse_line(self, line: str) -> Frame | _Done | None:
        if not line.strip():
            return None
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            _logger.debug("Skipping malformed JSON line: %.200s", line)
            return None
        if not isinstance(data, dict):
            return None
        return data
