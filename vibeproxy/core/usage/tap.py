from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator

from vibeproxy.core.usage.extract import extract_token_counts
from vibeproxy.core.usage.types import TokenCounts
from vibeproxy.core.utils.sse import is_event_stream, is_json_content, parse_sse_data_line

logger = logging.getLogger(__name__)


class UsageTap:
    """Observes a relayed response body and picks up token usage on the way.

    Event streams are parsed line by line and only the unterminated tail line is
    buffered. JSON bodies are captured up to ``max_capture_bytes`` and parsed
    once the body ends. Other content types are only counted.
    """

    def __init__(
        self,
        content_type: str | None,
        *,
        max_event_bytes: int = 2 * 1024 * 1024,
        max_capture_bytes: int = 4 * 1024 * 1024,
    ) -> None:
        self._sse = is_event_stream(content_type)
        self._json = not self._sse and is_json_content(content_type)
        self._max_event_bytes = max_event_bytes
        self._max_capture_bytes = max_capture_bytes
        self._pending = bytearray()
        self._discarding_line = False
        self._captured = bytearray()
        self._capture_overflow = False
        self._counts: TokenCounts | None = None
        self._finished = False
        self.bytes_seen = 0

    @property
    def counts(self) -> TokenCounts | None:
        return self._counts

    def feed(self, chunk: bytes) -> None:
        self.bytes_seen += len(chunk)
        if self._sse:
            self._feed_sse(chunk)
        elif self._json:
            self._feed_json(chunk)

    def finish(self) -> TokenCounts | None:
        if self._finished:
            return self._counts
        self._finished = True
        if self._sse and self._pending and not self._discarding_line:
            self._observe(parse_sse_data_line(bytes(self._pending)))
        elif self._json and self._captured and not self._capture_overflow:
            try:
                payload = json.loads(bytes(self._captured))
            except (UnicodeDecodeError, ValueError):
                logger.debug("Upstream JSON body could not be parsed bytes=%d", len(self._captured))
            else:
                self._observe(payload)
        self._pending.clear()
        self._captured.clear()
        return self._counts

    def _feed_sse(self, chunk: bytes) -> None:
        start = 0
        while True:
            newline = chunk.find(b"\n", start)
            if newline < 0:
                break
            if self._discarding_line:
                self._discarding_line = False
            else:
                self._pending.extend(chunk[start:newline])
                self._observe(parse_sse_data_line(bytes(self._pending)))
            self._pending.clear()
            start = newline + 1
        if self._discarding_line:
            return
        self._pending.extend(chunk[start:])
        if len(self._pending) > self._max_event_bytes:
            logger.debug("Dropping oversized SSE line bytes=%d", len(self._pending))
            self._pending.clear()
            self._discarding_line = True

    def _feed_json(self, chunk: bytes) -> None:
        if self._capture_overflow:
            return
        if len(self._captured) + len(chunk) > self._max_capture_bytes:
            self._capture_overflow = True
            self._captured.clear()
            return
        self._captured.extend(chunk)

    def _observe(self, payload: object) -> None:
        if payload is None:
            return
        found = extract_token_counts(payload)
        if found is None:
            return
        self._counts = found if self._counts is None else self._counts.merge(found)


async def tap_stream(source: AsyncIterator[bytes], tap: UsageTap) -> AsyncIterator[bytes]:
    async for chunk in source:
        yield chunk
        try:
            tap.feed(chunk)
        except Exception:
            logger.debug("Usage tap failed, continuing without usage", exc_info=True)
