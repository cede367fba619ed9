"""Incremental decoder for ``data:``-framed chat completion streams."""

from __future__ import annotations

import codecs
from collections.abc import AsyncIterable, AsyncIterator, Iterable, Iterator
from dataclasses import dataclass
import json
import logging
from typing import Any

LOGGER = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True)
class DeltaEvent:
    """One incremental fragment of assistant text."""

    text: str


class StreamDecoder:
    """Reassemble arbitrary byte chunks into delta events.

    The decoder buffers at the text level behind an incremental UTF-8 decoder,
    so a code point split across two chunks is carried over instead of being
    mangled. Only complete lines are interpreted; the trailing fragment waits
    for the next chunk and is discarded if the stream ends first.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.done = False
        self.malformed_records = 0

    def feed(self, chunk: bytes) -> list[DeltaEvent]:
        """Consume one chunk and return the events completed by it."""
        self._buffer += self._decoder.decode(chunk)
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        events: list[DeltaEvent] = []
        for line in lines:
            event = self._parse_line(line)
            if event is not None:
                events.append(event)
        return events

    def close(self) -> None:
        """Signal end of stream; any partial trailing line is dropped."""
        leftover = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        if leftover.strip():
            LOGGER.debug(
                "stream.leftover.discarded",
                extra={"event": "stream.leftover.discarded", "length": len(leftover)},
            )

    def _parse_line(self, line: str) -> DeltaEvent | None:
        trimmed = line.strip()
        if not trimmed or not trimmed.startswith(DATA_PREFIX):
            return None
        payload = trimmed[len(DATA_PREFIX) :]
        if payload == DONE_SENTINEL:
            self.done = True
            return None
        try:
            record = json.loads(payload)
        except ValueError as exc:
            self.malformed_records += 1
            LOGGER.warning(
                "stream.record.malformed",
                extra={"event": "stream.record.malformed", "error": str(exc)},
            )
            return None
        text = self._extract_delta(record)
        return DeltaEvent(text) if text else None

    @staticmethod
    def _extract_delta(record: Any) -> str:
        """Pull ``choices[0].delta.content`` out of a parsed record."""
        if not isinstance(record, dict):
            return ""
        error = record.get("error")
        if error:
            LOGGER.warning(
                "stream.record.error",
                extra={"event": "stream.record.error", "error": str(error)},
            )
            return ""
        choices = record.get("choices")
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

    async def aiter(self, chunks: AsyncIterable[bytes]) -> AsyncIterator[DeltaEvent]:
        """Pull events out of an async byte source, one at a time."""
        try:
            async for chunk in chunks:
                for event in self.feed(chunk):
                    yield event
        finally:
            self.close()


def iter_deltas(chunks: Iterable[bytes]) -> Iterator[DeltaEvent]:
    """Synchronous counterpart of :meth:`StreamDecoder.aiter`."""
    decoder = StreamDecoder()
    try:
        for chunk in chunks:
            yield from decoder.feed(chunk)
    finally:
        decoder.close()
