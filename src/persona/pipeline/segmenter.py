"""
Sentence segmentation for streamed model output

Turns incremental text deltas into complete sentences as early as possible so
synthesis can start before the model has finished talking.

State machine: buffer + boundary scan + minimum-length gate.
- A boundary is ".", "!" or "?" followed by whitespace.
- A span is only emitted when it has more than `min_chars` non-whitespace
  characters; shorter spans ("3.", "Dr.") keep growing until the next boundary.
- End of stream flushes whatever is left as a final unit.
"""

import re
from dataclasses import dataclass
from typing import AsyncIterable, AsyncIterator, List, Optional

import structlog

from persona.core.config import config
from persona.pipeline.cancellation import CancellationToken

logger = structlog.get_logger()

SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+")
_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class SentenceUnit:
    """A sentence ready for synthesis"""
    sequence: int
    text: str
    is_final: bool = False


def _visible_length(text: str) -> int:
    return len(_WHITESPACE.sub("", text))


class SentenceSegmenter:
    """
    Incremental sentence splitter.

    feed() and flush() are synchronous; segment() drives them from an async
    stream of deltas. Not restartable: after flush() the segmenter is closed.
    """

    def __init__(self, min_chars: Optional[int] = None):
        self.min_chars = config.SEGMENTER_MIN_CHARS if min_chars is None else min_chars
        self._buffer = ""
        self._next_sequence = 0
        self._closed = False

    @property
    def buffered_text(self) -> str:
        return self._buffer

    @property
    def emitted_count(self) -> int:
        return self._next_sequence

    def _emit(self, text: str, is_final: bool) -> SentenceUnit:
        unit = SentenceUnit(sequence=self._next_sequence, text=text, is_final=is_final)
        self._next_sequence += 1
        return unit

    def feed(self, delta: str) -> List[SentenceUnit]:
        """Append a delta and return every sentence completed by it"""
        if self._closed:
            raise RuntimeError("Segmenter already flushed; create a new one per stream")
        if not delta:
            return []

        self._buffer += delta

        units: List[SentenceUnit] = []
        start = 0
        for match in SENTENCE_BOUNDARY.finditer(self._buffer):
            span = self._buffer[start:match.start()]
            if _visible_length(span) > self.min_chars:
                units.append(self._emit(span.strip(), is_final=False))
                start = match.end()

        if start:
            self._buffer = self._buffer[start:]
        return units

    def flush(self) -> Optional[SentenceUnit]:
        """Close the segmenter, returning the remainder as a final unit if non-blank"""
        if self._closed:
            return None
        self._closed = True

        remainder = self._buffer.strip()
        self._buffer = ""
        if not remainder:
            return None
        return self._emit(remainder, is_final=True)


async def segment(deltas: AsyncIterable[str],
                  token: Optional[CancellationToken] = None,
                  min_chars: Optional[int] = None) -> AsyncIterator[SentenceUnit]:
    """
    Yield SentenceUnits from an async stream of text deltas.

    Cancellation stops consumption before the next delta; nothing is flushed
    after cancellation.
    """
    segmenter = SentenceSegmenter(min_chars=min_chars)
    delta_count = 0

    iterator = deltas.__aiter__()
    try:
        while True:
            if token is not None and token.cancelled:
                logger.info("segmenter.cancelled",
                            deltas=delta_count,
                            emitted=segmenter.emitted_count)
                return

            try:
                delta = await iterator.__anext__()
            except StopAsyncIteration:
                break

            delta_count += 1
            for unit in segmenter.feed(delta):
                yield unit

        if token is not None and token.cancelled:
            return

        final = segmenter.flush()
        if final is not None:
            yield final

        logger.debug("segmenter.completed",
                     deltas=delta_count,
                     emitted=segmenter.emitted_count)
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()
