from __future__ import annotations

import codecs
import json
from typing import AsyncIterable, AsyncIterator, List

import structlog

from brain_console.domain.schemas.stream_messages import StreamMessage, parse_stream_message
from brain_console.infrastructure.observability.logger_config import compact_error

logger = structlog.get_logger(__name__)


class NdjsonFrameDecoder:
    """
    Incremental newline-delimited JSON decoder.

    Bytes are fed in arrival order; complete lines are parsed into stream
    messages and the trailing fragment is kept for the next chunk. A line that
    does not parse is logged and dropped.
    """

    def __init__(self, encoding: str = "utf-8"):
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""
        self.dropped_lines = 0
        self._finished = False

    def feed(self, chunk: bytes) -> List[StreamMessage]:
        if self._finished:
            raise RuntimeError("decoder already finished")
        self._buffer += self._decoder.decode(chunk)
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return self._parse_lines(lines)

    def finish(self) -> List[StreamMessage]:
        """Flush the decoder and parse whatever is left as one final line."""
        if self._finished:
            return []
        self._finished = True
        remainder = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        return self._parse_lines([remainder])

    def _parse_lines(self, lines: List[str]) -> List[StreamMessage]:
        messages: List[StreamMessage] = []
        for line in lines:
            text = line.strip()
            if not text:
                continue
            try:
                messages.append(parse_stream_message(json.loads(text)))
            except ValueError as exc:
                self.dropped_lines += 1
                logger.warning(
                    "stream_frame_dropped",
                    error=compact_error(exc),
                    line_preview=compact_error(text, limit=120),
                )
        return messages


async def decode_stream(chunks: AsyncIterable[bytes], encoding: str = "utf-8") -> AsyncIterator[StreamMessage]:
    decoder = NdjsonFrameDecoder(encoding=encoding)
    async for chunk in chunks:
        for message in decoder.feed(chunk):
            yield message
    for message in decoder.finish():
        yield message
