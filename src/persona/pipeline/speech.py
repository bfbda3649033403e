"""
Speech pipeline

model text deltas -> SentenceSegmenter -> SynthesisDispatcher -> PlaybackSequencer -> sink
"""

from typing import AsyncIterable, AsyncIterator, Optional

import structlog

from persona.core.logging_config import PerformanceLogger
from persona.pipeline.cancellation import CancellationToken
from persona.pipeline.dispatcher import SynthesisDispatcher
from persona.pipeline.segmenter import segment
from persona.pipeline.sequencer import PlaybackEvent, PlaybackSequencer, PlaybackSummary
from persona.services.protocols import PlaybackSink, SpeechProvider
from persona.services.voice_settings import VoiceConfig

logger = structlog.get_logger()


class SpeechPipeline:
    """
    Speaks a streamed reply sentence by sentence

    Usage:
        pipeline = SpeechPipeline(get_speech_provider(), VoiceConfig.from_preset("voice-id"))
        summary = await pipeline.speak(llm_deltas, sink, token)
    """

    def __init__(self,
                 provider: SpeechProvider,
                 voice: VoiceConfig,
                 max_concurrency: Optional[int] = None,
                 max_pending: Optional[int] = None,
                 sentence_timeout: Optional[float] = None,
                 min_chars: Optional[int] = None):
        self.dispatcher = SynthesisDispatcher(
            provider,
            voice,
            max_concurrency=max_concurrency,
            max_pending=max_pending,
            sentence_timeout=sentence_timeout,
        )
        self.min_chars = min_chars

    def sequencer(self,
                  deltas: AsyncIterable[str],
                  token: Optional[CancellationToken] = None) -> PlaybackSequencer:
        token = token or CancellationToken()
        sentences = segment(deltas, token=token, min_chars=self.min_chars)
        return PlaybackSequencer(self.dispatcher.results(sentences, token), token)

    async def events(self,
                     deltas: AsyncIterable[str],
                     token: Optional[CancellationToken] = None) -> AsyncIterator[PlaybackEvent]:
        async for event in self.sequencer(deltas, token):
            yield event

    async def speak(self,
                    deltas: AsyncIterable[str],
                    sink: PlaybackSink,
                    token: Optional[CancellationToken] = None) -> PlaybackSummary:
        with PerformanceLogger(logger, "speech.speak", voice_id=self.dispatcher.voice.voice_id):
            summary = await self.sequencer(deltas, token).play_to(sink)

        logger.info("speech.completed",
                    played=summary.played,
                    skipped=summary.skipped,
                    cancelled=summary.cancelled)
        return summary
