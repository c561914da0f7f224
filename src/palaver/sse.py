"""Server-Sent Events decoding.

The backend streams ``data: {...}`` frames terminated by ``data: [DONE]``.
:class:`SSEDecoder` turns arbitrary-sized byte reads into decoded JSON
payloads.
"""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


class SSEDecoder:
    """Incremental decoder for ``data:`` lines.

    Bytes are buffered until a full line is available, so frames split
    across reads (even inside a multi-byte character) decode identically.
    Lines that fail to parse are logged and skipped.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.done = False
        self.skipped = 0

    def feed(self, data: bytes) -> list[dict]:
        if self.done:
            return []
        self._buffer += self._decoder.decode(data)
        *lines, self._buffer = self._buffer.split("\n")
        return self._parse_lines(lines)

    def close(self) -> list[dict]:
        """Flush a final line that had no trailing newline."""
        if self.done:
            return []
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        return self._parse_lines([tail]) if tail else []

    def _parse_lines(self, lines: list[str]) -> list[dict]:
        payloads = []
        for line in lines:
            line = line.rstrip("\r")
            if not line.startswith(DATA_PREFIX):
                continue
            data = line[len(DATA_PREFIX):]
            if data.startswith(" "):
                data = data[1:]
            if data.strip() == DONE_SENTINEL:
                self.done = True
                break
            try:
                payload = json.loads(data)
            except json.JSONDecodeError as e:
                self.skipped += 1
                logger.warning(f"Skipping undecodable stream line: {e}")
                continue
            if not isinstance(payload, dict):
                self.skipped += 1
                logger.warning(f"Skipping non-object stream payload: {data[:80]}")
                continue
            payloads.append(payload)
        return payloads


async def iter_sse_payloads(
    byte_stream: AsyncIterable[bytes],
) -> AsyncIterator[dict]:
    """Yield decoded payloads until the sentinel or the end of the body."""
    decoder = SSEDecoder()
    async for data in byte_stream:
        for payload in decoder.feed(data):
            yield payload
        if decoder.done:
            return
    for payload in decoder.close():
        yield payload
