"""
Synthesis dispatcher: bounded out-of-order producers, in-order consumer

Sentences are synthesized by up to `max_concurrency` simultaneous provider
calls. Completed audio lands in a reordering buffer keyed by sequence number;
a delivery cursor hands results to the consumer strictly in sequence order,
no matter which provider call finished first.

Failure policy:
- A failed or timed-out call becomes an error result at its own slot.
- Cancellation stops issuing, abandons in-flight calls (reported as
  cancelled) and discards completed results that were not yet delivered.
- Issuing stops while `max_pending` results are undelivered, so a slow
  consumer throttles the provider instead of growing the buffer.
"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterable, AsyncIterator, Dict, Optional

import structlog

from persona.core.config import config
from persona.core.error_handling import (
    SpeechSynthesisError,
    SynthesisTimeout,
    ProviderFailure,
    log_and_return_error,
)
from persona.pipeline.cancellation import CancellationToken
from persona.pipeline.segmenter import SentenceUnit
from persona.services.protocols import SpeechProvider
from persona.services.voice_settings import VoiceConfig

logger = structlog.get_logger()

# ~150 words per minute, ~5 characters per word
_CHARS_PER_SECOND = 150 * 5 / 60


class ResultStatus(str, Enum):
    OK = "ok"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class SynthesisResult:
    """Outcome of synthesizing one sentence"""
    sequence: int
    text: str
    status: ResultStatus
    audio: Optional[bytes] = None
    error: Optional[BaseException] = None
    duration_hint: Optional[float] = None
    is_final: bool = False
    latency_ms: Optional[float] = None

    @property
    def ok(self) -> bool:
        return self.status is ResultStatus.OK


def estimate_duration(text: str) -> float:
    """Rough spoken duration in seconds"""
    return round(len(text) / _CHARS_PER_SECOND, 2)


class SynthesisDispatcher:
    """
    Bounded-concurrency speech synthesis with in-order delivery.

    One dispatcher can serve many streams; each call to results() owns its
    own reordering buffer.
    """

    def __init__(self,
                 provider: SpeechProvider,
                 voice: VoiceConfig,
                 max_concurrency: Optional[int] = None,
                 max_pending: Optional[int] = None,
                 sentence_timeout: Optional[float] = None):
        self.provider = provider
        self.voice = voice
        self.max_concurrency = max_concurrency or config.TTS_MAX_CONCURRENCY
        self.max_pending = max(max_pending or config.TTS_MAX_PENDING, self.max_concurrency)
        self.sentence_timeout = sentence_timeout or config.TTS_SENTENCE_TIMEOUT_SEC

        if self.max_concurrency < 1:
            raise ValueError(f"max_concurrency must be at least 1, got {self.max_concurrency}")

    async def results(self,
                      sentences: AsyncIterable[SentenceUnit],
                      token: Optional[CancellationToken] = None) -> AsyncIterator[SynthesisResult]:
        """Yield one SynthesisResult per sentence, in sequence order"""
        run = _DispatchRun(self, sentences, token or CancellationToken())
        async for result in run.deliver():
            yield result


class _DispatchRun:
    """State of a single results() call. Only this object touches the buffer."""

    def __init__(self, dispatcher: SynthesisDispatcher,
                 sentences: AsyncIterable[SentenceUnit],
                 token: CancellationToken):
        self.dispatcher = dispatcher
        self.sentences = sentences
        self.token = token

        self.buffer: Dict[int, SynthesisResult] = {}
        self.units: Dict[int, SentenceUnit] = {}  # issued, not yet delivered
        self.in_flight: Dict[int, asyncio.Task] = {}
        self.cursor = 0
        self.issued = 0

        self.source_done = False
        self.source_error: Optional[BaseException] = None
        self.feeder: Optional[asyncio.Task] = None

        self.progress = asyncio.Event()
        self.slots = asyncio.Semaphore(dispatcher.max_concurrency)
        self.window = asyncio.Semaphore(dispatcher.max_pending)

        self.delivered = 0
        self.failed = 0

    # ---------------------------------------------------------------
    # Producer side
    # ---------------------------------------------------------------

    async def _feed(self) -> None:
        iterator = self.sentences.__aiter__()
        try:
            while not self.token.cancelled:
                await self.window.acquire()
                await self.slots.acquire()

                if self.token.cancelled:
                    self.slots.release()
                    self.window.release()
                    break

                try:
                    unit = await iterator.__anext__()
                except StopAsyncIteration:
                    self.slots.release()
                    self.window.release()
                    break

                if unit.sequence != self.issued:
                    raise ValueError(
                        f"Sentence sequence {unit.sequence} out of order, expected {self.issued}"
                    )

                self.units[unit.sequence] = unit
                self.issued += 1
                self.in_flight[unit.sequence] = asyncio.create_task(self._synthesize(unit))

                logger.debug("dispatcher.issued",
                             sequence=unit.sequence,
                             in_flight=len(self.in_flight),
                             buffered=len(self.buffer))

            if self.token.cancelled:
                aclose = getattr(iterator, "aclose", None)
                if aclose is not None:
                    await aclose()

        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.source_error = e
            logger.error("dispatcher.source_failed", error=str(e), issued=self.issued)
        finally:
            self.source_done = True
            self.progress.set()

    async def _synthesize(self, unit: SentenceUnit) -> None:
        dispatcher = self.dispatcher
        started = time.perf_counter()
        try:
            audio = await asyncio.wait_for(
                dispatcher.provider.synthesize(
                    unit.text,
                    dispatcher.voice.voice_id,
                    dispatcher.voice.settings,
                ),
                timeout=dispatcher.sentence_timeout,
            )
            result = SynthesisResult(
                sequence=unit.sequence,
                text=unit.text,
                status=ResultStatus.OK,
                audio=audio,
                duration_hint=estimate_duration(unit.text),
                is_final=unit.is_final,
                latency_ms=round((time.perf_counter() - started) * 1000, 1),
            )
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            result = self._failure(unit, SynthesisTimeout(unit.sequence, dispatcher.sentence_timeout))
        except ProviderFailure as e:
            result = self._failure(unit, e)
        except Exception as e:
            error = SpeechSynthesisError(f"Synthesis failed: {e}", provider="speech")
            error.__cause__ = e
            result = self._failure(unit, error)
        finally:
            self.slots.release()
            self.in_flight.pop(unit.sequence, None)

        self.buffer[unit.sequence] = result
        self.progress.set()

    def _failure(self, unit: SentenceUnit, error: ProviderFailure) -> SynthesisResult:
        self.failed += 1
        log_and_return_error(error,
                             operation="synthesize",
                             component="dispatcher",
                             sequence=unit.sequence,
                             text_length=len(unit.text))
        return SynthesisResult(
            sequence=unit.sequence,
            text=unit.text,
            status=ResultStatus.FAILED,
            error=error,
            duration_hint=estimate_duration(unit.text),
            is_final=unit.is_final,
        )

    # ---------------------------------------------------------------
    # Consumer side
    # ---------------------------------------------------------------

    def _on_cancel(self) -> None:
        if self.feeder is not None:
            self.feeder.cancel()
        for task in list(self.in_flight.values()):
            task.cancel()
        self.progress.set()

    async def deliver(self) -> AsyncIterator[SynthesisResult]:
        self.feeder = asyncio.create_task(self._feed())
        self.token.add_callback(self._on_cancel)

        try:
            while True:
                if self.token.cancelled:
                    for result in self._cancelled_results():
                        yield result
                    return

                if self.cursor in self.buffer:
                    result = self.buffer.pop(self.cursor)
                    self.units.pop(self.cursor, None)
                    self.cursor += 1
                    self.delivered += 1
                    self.window.release()
                    yield result
                    continue

                if self.source_done and self.cursor >= self.issued:
                    break

                self.progress.clear()
                await self.progress.wait()

            logger.info("dispatcher.completed",
                        delivered=self.delivered,
                        failed=self.failed)

            if self.source_error is not None:
                raise self.source_error

        finally:
            self.token.remove_callback(self._on_cancel)
            pending = [self.feeder, *self.in_flight.values()]
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    def _cancelled_results(self) -> list[SynthesisResult]:
        """Cancelled markers for abandoned calls; completed-but-undelivered audio is dropped"""
        remaining = sorted(seq for seq in self.units if seq >= self.cursor)
        discarded = [seq for seq in remaining if seq in self.buffer]

        logger.info("dispatcher.cancelled",
                    delivered=self.delivered,
                    abandoned=len(remaining) - len(discarded),
                    discarded=len(discarded))

        self.buffer.clear()
        return [
            SynthesisResult(
                sequence=seq,
                text=self.units[seq].text,
                status=ResultStatus.CANCELLED,
                is_final=self.units[seq].is_final,
            )
            for seq in remaining
            if seq not in discarded
        ]
