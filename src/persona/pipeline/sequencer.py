"""
Playback sequencer

Turns ordered SynthesisResults into the single channel a playback sink sees:
AudioChunk for playable audio, SkipSignal where synthesis failed. Each
sequence is emitted at most once. After cancellation nothing more reaches the
sink; late results are drained and suppressed.
"""

from dataclasses import dataclass
from typing import AsyncIterable, AsyncIterator, Optional, Union

import structlog

from persona.pipeline.cancellation import CancellationToken
from persona.pipeline.dispatcher import ResultStatus, SynthesisResult
from persona.services.protocols import PlaybackSink

logger = structlog.get_logger()


@dataclass(frozen=True)
class AudioChunk:
    sequence: int
    text: str
    audio: bytes
    duration_hint: Optional[float] = None
    is_final: bool = False


@dataclass(frozen=True)
class SkipSignal:
    """No audio for this sentence; captions should still show `text`"""
    sequence: int
    text: str
    reason: str
    is_final: bool = False


PlaybackEvent = Union[AudioChunk, SkipSignal]


@dataclass
class PlaybackSummary:
    played: int = 0
    skipped: int = 0
    suppressed: int = 0
    cancelled: bool = False


class PlaybackSequencer:
    """
    Single-consumer ordered channel in front of a playback sink.

    Usage:
        sequencer = PlaybackSequencer(dispatcher.results(units, token), token)
        async for event in sequencer:
            ...
    or:
        summary = await sequencer.play_to(sink)
    """

    def __init__(self,
                 results: AsyncIterable[SynthesisResult],
                 token: Optional[CancellationToken] = None):
        self._results = results
        self.token = token or CancellationToken()
        self._last_sequence = -1
        self._consumed = False
        self.summary = PlaybackSummary()

    def __aiter__(self) -> AsyncIterator[PlaybackEvent]:
        if self._consumed:
            raise RuntimeError("PlaybackSequencer can only be iterated once")
        self._consumed = True
        return self._events()

    async def _events(self) -> AsyncIterator[PlaybackEvent]:
        async for result in self._results:
            if self.token.cancelled:
                self.summary.cancelled = True
                self.summary.suppressed += 1
                continue

            if result.sequence <= self._last_sequence:
                logger.warning("sequencer.duplicate_dropped",
                               sequence=result.sequence,
                               last_sequence=self._last_sequence)
                continue

            if result.status is ResultStatus.CANCELLED:
                self.summary.suppressed += 1
                continue

            self._last_sequence = result.sequence

            if result.status is ResultStatus.OK and result.audio:
                self.summary.played += 1
                yield AudioChunk(
                    sequence=result.sequence,
                    text=result.text,
                    audio=result.audio,
                    duration_hint=result.duration_hint,
                    is_final=result.is_final,
                )
            else:
                reason = type(result.error).__name__ if result.error is not None else "empty_audio"
                self.summary.skipped += 1
                logger.info("sequencer.skip", sequence=result.sequence, reason=reason)
                yield SkipSignal(
                    sequence=result.sequence,
                    text=result.text,
                    reason=reason,
                    is_final=result.is_final,
                )

        if self.token.cancelled:
            self.summary.cancelled = True

        logger.info("sequencer.completed",
                    played=self.summary.played,
                    skipped=self.summary.skipped,
                    suppressed=self.summary.suppressed,
                    cancelled=self.summary.cancelled)

    async def play_to(self, sink: PlaybackSink) -> PlaybackSummary:
        """Feed every event to the sink, awaiting it so slow playback throttles synthesis"""
        async for event in self:
            if isinstance(event, AudioChunk):
                await sink.play(event)
            else:
                await sink.skip(event)
        return self.summary
