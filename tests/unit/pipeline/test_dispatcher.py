"""
Unit Tests for the Synthesis Dispatcher

In-order delivery, bounded concurrency, per-sentence failure and timeout,
back-pressure and cancellation.
"""

import asyncio
import pytest
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent.parent.parent / "src"))

from persona.core.error_handling import SpeechSynthesisError, SynthesisTimeout
from persona.pipeline.cancellation import CancellationToken
from persona.pipeline.dispatcher import (
    ResultStatus,
    SynthesisDispatcher,
    estimate_duration,
)
from persona.pipeline.segmenter import SentenceUnit
from persona.services.voice_settings import VoiceConfig

from conftest import FakeSpeechProvider


VOICE = VoiceConfig.from_preset("voice-1")


async def units_of(*texts, final_last=True):
    for i, text in enumerate(texts):
        yield SentenceUnit(sequence=i, text=text, is_final=final_last and i == len(texts) - 1)


async def collect(dispatcher, source, token=None):
    return [r async for r in dispatcher.results(source, token)]


@pytest.mark.unit
class TestDispatcherOrdering:
    """Results come back in sequence order regardless of completion order"""

    @pytest.mark.asyncio
    async def test_later_sentence_finishing_first_is_held_back(self):
        provider = FakeSpeechProvider(delays={"Sentence zero.": 0.05, "Sentence one.": 0.0})
        dispatcher = SynthesisDispatcher(provider, VOICE, max_concurrency=2)

        results = await collect(dispatcher, units_of("Sentence zero.", "Sentence one."))

        assert provider.completed == ["Sentence one.", "Sentence zero."]
        assert [r.sequence for r in results] == [0, 1]
        assert [r.audio for r in results] == [b"audio:Sentence zero.", b"audio:Sentence one."]
        assert all(r.status is ResultStatus.OK for r in results)

    @pytest.mark.asyncio
    async def test_voice_passed_through_unmodified(self):
        provider = FakeSpeechProvider()
        voice = VoiceConfig.from_preset("voice-xyz", "expressive")
        dispatcher = SynthesisDispatcher(provider, voice)

        await collect(dispatcher, units_of("Only sentence."))

        text, voice_id, settings = provider.calls[0]
        assert voice_id == "voice-xyz"
        assert settings is voice.settings

    @pytest.mark.asyncio
    async def test_empty_source_yields_nothing(self):
        provider = FakeSpeechProvider()
        dispatcher = SynthesisDispatcher(provider, VOICE)

        assert await collect(dispatcher, units_of()) == []
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_result_metadata(self):
        provider = FakeSpeechProvider()
        dispatcher = SynthesisDispatcher(provider, VOICE)

        results = await collect(dispatcher, units_of("A first sentence.", "The last one"))

        assert [r.is_final for r in results] == [False, True]
        assert results[0].duration_hint == estimate_duration("A first sentence.")
        assert results[0].latency_ms is not None

    @pytest.mark.asyncio
    async def test_out_of_order_source_is_rejected(self):
        async def bad_source():
            yield SentenceUnit(sequence=0, text="zero")
            yield SentenceUnit(sequence=2, text="two")

        dispatcher = SynthesisDispatcher(FakeSpeechProvider(), VOICE)

        received = []
        with pytest.raises(ValueError):
            async for result in dispatcher.results(bad_source()):
                received.append(result.sequence)

        assert received == [0]

    @pytest.mark.asyncio
    async def test_upstream_error_raised_after_issued_sentences(self):
        async def broken_source():
            yield SentenceUnit(sequence=0, text="Delivered first.")
            raise RuntimeError("model stream dropped")

        dispatcher = SynthesisDispatcher(FakeSpeechProvider(), VOICE)

        received = []
        with pytest.raises(RuntimeError, match="model stream dropped"):
            async for result in dispatcher.results(broken_source()):
                received.append(result.sequence)

        assert received == [0]


@pytest.mark.unit
class TestDispatcherFailures:
    """A failed sentence occupies its own slot; the rest keep flowing"""

    @pytest.mark.asyncio
    async def test_failure_becomes_error_result_at_its_slot(self):
        provider = FakeSpeechProvider(fail_on={"Second goes wrong."})
        dispatcher = SynthesisDispatcher(provider, VOICE, max_concurrency=3)

        results = await collect(dispatcher, units_of("First is fine.", "Second goes wrong.", "Third is fine."))

        assert [r.status for r in results] == [ResultStatus.OK, ResultStatus.FAILED, ResultStatus.OK]
        assert isinstance(results[1].error, SpeechSynthesisError)
        assert results[1].audio is None
        assert results[2].audio == b"audio:Third is fine."

    @pytest.mark.asyncio
    async def test_timeout_becomes_error_result(self):
        provider = FakeSpeechProvider(hang_on={"Stuck forever."})
        dispatcher = SynthesisDispatcher(provider, VOICE, max_concurrency=2, sentence_timeout=0.05)

        results = await collect(dispatcher, units_of("Stuck forever.", "Next one works."))

        assert results[0].status is ResultStatus.FAILED
        assert isinstance(results[0].error, SynthesisTimeout)
        assert results[0].error.sequence == 0
        assert results[1].status is ResultStatus.OK

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_wrapped(self):
        class ExplodingProvider:
            async def synthesize(self, text, voice_id, settings):
                raise KeyError("boom")

        dispatcher = SynthesisDispatcher(ExplodingProvider(), VOICE)

        results = await collect(dispatcher, units_of("Anything at all."))

        assert results[0].status is ResultStatus.FAILED
        assert isinstance(results[0].error, SpeechSynthesisError)
        assert isinstance(results[0].error.__cause__, KeyError)


@pytest.mark.unit
class TestDispatcherConcurrency:
    """Bounded parallelism and back-pressure"""

    @pytest.mark.asyncio
    async def test_concurrency_cap(self):
        texts = [f"Sentence number {i}." for i in range(8)]
        provider = FakeSpeechProvider(delay=0.01)
        dispatcher = SynthesisDispatcher(provider, VOICE, max_concurrency=2)

        results = await collect(dispatcher, units_of(*texts))

        assert len(results) == 8
        assert provider.max_active == 2

    @pytest.mark.asyncio
    async def test_slow_consumer_throttles_issuing(self):
        texts = [f"Sentence number {i}." for i in range(8)]
        provider = FakeSpeechProvider()
        dispatcher = SynthesisDispatcher(provider, VOICE, max_concurrency=2, max_pending=2)

        delivered = 0
        async for result in dispatcher.results(units_of(*texts)):
            delivered += 1
            await asyncio.sleep(0.01)
            assert len(provider.calls) <= delivered + 2

        assert delivered == 8

    def test_invalid_concurrency(self):
        with pytest.raises(ValueError):
            SynthesisDispatcher(FakeSpeechProvider(), VOICE, max_concurrency=-1)


@pytest.mark.unit
class TestDispatcherCancellation:
    """Cancellation abandons in-flight calls and discards undelivered audio"""

    @pytest.mark.asyncio
    async def test_in_flight_calls_reported_cancelled(self):
        provider = FakeSpeechProvider(hang_on={"Hangs one.", "Hangs two."})
        dispatcher = SynthesisDispatcher(provider, VOICE, max_concurrency=3)
        token = CancellationToken()

        results = []
        async for result in dispatcher.results(units_of("Quick one.", "Hangs one.", "Hangs two."), token):
            results.append(result)
            if result.sequence == 0:
                token.cancel("barge_in")

        assert [(r.sequence, r.status) for r in results] == [
            (0, ResultStatus.OK),
            (1, ResultStatus.CANCELLED),
            (2, ResultStatus.CANCELLED),
        ]
        assert sorted(provider.cancelled) == ["Hangs one.", "Hangs two."]

    @pytest.mark.asyncio
    async def test_completed_undelivered_results_are_discarded(self):
        provider = FakeSpeechProvider(hang_on={"Blocks delivery."})
        dispatcher = SynthesisDispatcher(provider, VOICE, max_concurrency=2)
        token = CancellationToken()

        consumer = asyncio.create_task(
            collect(dispatcher, units_of("Blocks delivery.", "Already done."), token)
        )
        for _ in range(100):
            if "Already done." in provider.completed:
                break
            await asyncio.sleep(0.005)

        token.cancel("barge_in")
        results = await consumer

        assert [(r.sequence, r.status) for r in results] == [(0, ResultStatus.CANCELLED)]

    @pytest.mark.asyncio
    async def test_no_new_calls_after_cancellation(self):
        texts = [f"Sentence number {i}." for i in range(6)]
        provider = FakeSpeechProvider(delay=0.01)
        dispatcher = SynthesisDispatcher(provider, VOICE, max_concurrency=1)
        token = CancellationToken()

        async for result in dispatcher.results(units_of(*texts), token):
            if result.sequence == 1:
                token.cancel()
                calls_at_cancel = len(provider.calls)

        assert len(provider.calls) == calls_at_cancel
        assert calls_at_cancel < 6
