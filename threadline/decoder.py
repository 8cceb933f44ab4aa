"""Decoder for the chat endpoint's line-framed text stream.

Each non-blank line starts with a two-character tag:

- ``0:`` followed by a JSON string literal: a text delta
- ``d:`` or ``e:``: end of the reply; nothing after it is read
- anything else: a malformed frame, reported and skipped
"""

import codecs
import json
import logging
from dataclasses import dataclass
from typing import AsyncIterable, AsyncIterator, Iterable, Iterator, List, Optional, Union

logger = logging.getLogger(__name__)

TEXT_TAG = "0:"
END_TAGS = ("d:", "e:")

Chunk = Union[str, bytes]


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class EndOfStream:
    payload: str = ""


@dataclass(frozen=True)
class MalformedFrame:
    raw_line: str


StreamEvent = Union[TextDelta, EndOfStream, MalformedFrame]


def decode_line(line: str) -> Optional[StreamEvent]:
    """Decode a single frame; blank lines decode to None."""
    line = line.rstrip("\r")
    if not line.strip():
        return None
    tag, payload = line[:2], line[2:]
    if tag == TEXT_TAG:
        try:
            text = json.loads(payload)
        except json.JSONDecodeError:
            return MalformedFrame(line)
        if not isinstance(text, str):
            return MalformedFrame(line)
        return TextDelta(text)
    if tag in END_TAGS:
        return EndOfStream(payload)
    return MalformedFrame(line)


class StreamDecoder:
    """Incremental decoder holding only the unterminated tail of the input.

    Use one instance per reply. Once an ``EndOfStream`` has been produced
    the decoder is finished and ignores further input.
    """

    def __init__(self):
        self._buffer = ""
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self.finished = False

    def feed(self, chunk: Chunk) -> List[StreamEvent]:
        if self.finished:
            return []
        if isinstance(chunk, bytes):
            chunk = self._utf8.decode(chunk)
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        return self._decode_lines(lines)

    def close(self) -> List[StreamEvent]:
        """Flush a final line that was not newline-terminated."""
        if self.finished:
            return []
        tail = self._buffer + self._utf8.decode(b"", final=True)
        self._buffer = ""
        events = self._decode_lines([tail])
        self.finished = True
        return events

    def _decode_lines(self, lines: Iterable[str]) -> List[StreamEvent]:
        events: List[StreamEvent] = []
        for line in lines:
            event = decode_line(line)
            if event is None:
                continue
            events.append(event)
            if isinstance(event, EndOfStream):
                self.finished = True
                self._buffer = ""
                break
        return events


def iter_events(chunks: Iterable[Chunk]) -> Iterator[StreamEvent]:
    """Pull decoded events from a synchronous chunk source."""
    decoder = StreamDecoder()
    for chunk in chunks:
        yield from decoder.feed(chunk)
        if decoder.finished:
            return
    yield from decoder.close()


async def aiter_events(chunks: AsyncIterable[Chunk]) -> AsyncIterator[StreamEvent]:
    """Pull decoded events from an asynchronous chunk source.

    Stops reading the source as soon as the end marker is seen.
    """
    decoder = StreamDecoder()
    async for chunk in chunks:
        for event in decoder.feed(chunk):
            yield event
        if decoder.finished:
            return
    for event in decoder.close():
        yield event
