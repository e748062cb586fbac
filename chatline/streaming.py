"""
SSE stream decoding for OpenAI-compatible chat completions.

The server sends lines like:

    data: {"choices": [{"delta": {"content": "Hel"}, "index": 0}]}
    data: {"choices": [{"delta": {"content": "lo"}, "index": 0}]}
    data: [DONE]

Reads arrive in arbitrary pieces: one read can carry several lines, and
one line (or one multi-byte UTF-8 character) can be split across two
reads. The decoder buffers the incomplete tail until the rest shows up.
No network or storage knowledge lives here.
"""

from __future__ import annotations

import codecs
import json
import logging
from typing import AsyncIterator, Callable, Protocol

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_MARKER = "[DONE]"


class ByteSource(Protocol):
    """Pull-based byte source. read() returns (done, chunk)."""

    async def read(self) -> tuple[bool, bytes]:
        ...


class IteratorByteSource:
    """Adapts an async iterator of bytes (e.g. httpx aiter_bytes()) to ByteSource."""

    def __init__(self, chunks: AsyncIterator[bytes]):
        self._chunks = chunks.__aiter__()

    async def read(self) -> tuple[bool, bytes]:
        try:
            chunk = await self._chunks.__anext__()
        except StopAsyncIteration:
            return True, b""
        return False, chunk


def extract_delta(frame) -> str:
    """Pull choices[0].delta.content out of a parsed frame, or '' if absent."""
    if not isinstance(frame, dict):
        return ""
    choices = frame.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    first = choices[0]
    if not isinstance(first, dict):
        return ""
    delta = first.get("delta")
    if not isinstance(delta, dict):
        return ""
    content = delta.get("content")
    return content if isinstance(content, str) else ""


def parse_sse_line(line: str) -> str:
    """
    Interpret one SSE line. Returns the text delta it carries, or ''.
    Non-data lines, the [DONE] terminator and unparsable JSON all yield ''.
    """
    if line.endswith("\r"):
        line = line[:-1]
    if not line.startswith(DATA_PREFIX):
        return ""
    data = line[len(DATA_PREFIX):]
    if data == DONE_MARKER:
        return ""
    try:
        frame = json.loads(data)
    except json.JSONDecodeError:
        # partial or interleaved frames are expected mid-stream
        return ""
    return extract_delta(frame)


class SSEDecoder:
    """
    Incremental decoder: feed() raw bytes, get back the deltas completed so far.
    Call finish() once the source is exhausted to flush the last line.
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> list[str]:
        self._buffer += self._decoder.decode(chunk)
        *complete, self._buffer = self._buffer.split("\n")
        return [d for d in (parse_sse_line(line) for line in complete) if d]

    def finish(self) -> list[str]:
        self._buffer += self._decoder.decode(b"", final=True)
        tail, self._buffer = self._buffer, ""
        if not tail:
            return []
        delta = parse_sse_line(tail)
        return [delta] if delta else []


async def parse_sse_stream(
    source: ByteSource,
    on_chunk: Callable[[str], None] | None = None,
) -> str:
    """
    Read the source to completion, calling on_chunk for every delta in
    stream order. Returns the full concatenated text.

    One pass over one stream: no retries. [DONE] does not end the loop,
    only the source reporting done does.
    """
    decoder = SSEDecoder()
    parts: list[str] = []

    def _emit(deltas: list[str]):
        for delta in deltas:
            parts.append(delta)
            if on_chunk is not None:
                on_chunk(delta)

    while True:
        done, chunk = await source.read()
        if chunk:
            _emit(decoder.feed(chunk))
        if done:
            break

    _emit(decoder.finish())
    logger.debug("SSE stream finished: %d deltas, %d chars", len(parts), sum(map(len, parts)))
    return "".join(parts)
