"""
Unit Tests for ElevenLabsSpeechProvider

The HTTP side runs against httpx.MockTransport.
"""

import json
import pytest
from pathlib import Path

import httpx

import sys
sys.path.insert(0, str(Path(__file__).parent.parent.parent.parent / "src"))

from persona.core.config import Config
from persona.core.error_handling import SpeechSynthesisError
from persona.services import tts
from persona.services.tts_elevenlabs import CONSISTENT_SEED, ElevenLabsSpeechProvider
from persona.services.voice_settings import VoiceConfig, VoiceSettings, expressive_voice_settings


def make_provider(handler, **kwargs):
    return ElevenLabsSpeechProvider(
        api_key="xi-test",
        base_url="https://api.elevenlabs.test/v1",
        model_id="eleven_turbo_v2_5",
        output_format="mp3_44100_128",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


@pytest.mark.unit
class TestSynthesize:

    @pytest.mark.asyncio
    async def test_request_shape(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["request"] = request
            return httpx.Response(200, content=b"ID3-mp3-bytes")

        provider = make_provider(handler)
        settings = expressive_voice_settings()
        try:
            audio = await provider.synthesize("Hello there.", "voice-42", settings)
        finally:
            await provider.close()

        request = seen["request"]
        assert audio == b"ID3-mp3-bytes"
        assert request.url.path == "/v1/text-to-speech/voice-42/stream"
        assert request.url.params["output_format"] == "mp3_44100_128"
        assert request.headers["xi-api-key"] == "xi-test"
        assert request.headers["accept"] == "audio/mpeg"
        assert json.loads(request.content) == {
            "text": "Hello there.",
            "model_id": "eleven_turbo_v2_5",
            "voice_settings": {
                "stability": 0.45,
                "similarity_boost": 0.70,
                "style": 0.15,
                "use_speaker_boost": False,
            },
            "seed": CONSISTENT_SEED,
        }

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,retriable", [(429, True), (500, True), (503, True), (401, False), (422, False)])
    async def test_http_errors_mapped(self, status, retriable):
        provider = make_provider(lambda request: httpx.Response(status, text="nope"))

        with pytest.raises(SpeechSynthesisError) as exc_info:
            await provider.synthesize("Hello.", "voice-42", VoiceSettings())
        await provider.close()

        assert exc_info.value.status_code == status
        assert exc_info.value.retriable is retriable
        assert exc_info.value.provider == "elevenlabs"

    @pytest.mark.asyncio
    async def test_timeout_is_retriable(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        provider = make_provider(handler)

        with pytest.raises(SpeechSynthesisError) as exc_info:
            await provider.synthesize("Hello.", "voice-42", VoiceSettings())
        await provider.close()

        assert exc_info.value.retriable is True

    @pytest.mark.asyncio
    async def test_empty_audio_rejected(self):
        provider = make_provider(lambda request: httpx.Response(200, content=b""))

        with pytest.raises(SpeechSynthesisError, match="empty audio"):
            await provider.synthesize("Hello.", "voice-42", VoiceSettings())
        await provider.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text,voice_id", [("", "voice-42"), ("   ", "voice-42"), ("Hello.", "")])
    async def test_invalid_input_never_hits_network(self, text, voice_id):
        calls = []
        provider = make_provider(lambda request: calls.append(request) or httpx.Response(200, content=b"x"))

        with pytest.raises(SpeechSynthesisError):
            await provider.synthesize(text, voice_id, VoiceSettings())

        assert calls == []

    def test_api_key_required(self, monkeypatch):
        monkeypatch.setattr(Config, "TTS_API_KEY", None)

        with pytest.raises(ValueError):
            ElevenLabsSpeechProvider()


@pytest.mark.unit
class TestVoiceSettings:

    def test_out_of_range_rejected(self):
        with pytest.raises(ValueError):
            VoiceSettings(stability=1.5)

    def test_from_dict_keeps_unknown_keys(self):
        settings = VoiceSettings.from_dict({"stability": 0.3, "speed": 1.1, "optimize": {"level": 2}})

        assert settings.stability == 0.3
        assert settings.extra == {"speed": 1.1, "optimize": {"level": 2}}
        assert settings.to_dict() == {
            "stability": 0.3,
            "similarity_boost": 0.75,
            "style": 0.0,
            "use_speaker_boost": False,
            "speed": 1.1,
            "optimize": {"level": 2},
        }

    @pytest.mark.asyncio
    async def test_unknown_keys_reach_the_provider(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, content=b"mp3")

        provider = make_provider(handler)
        settings = VoiceSettings.from_dict({"stability": 0.4, "speed": 0.9})
        await provider.synthesize("Hello.", "voice-42", settings)
        await provider.close()

        assert seen["body"]["voice_settings"]["speed"] == 0.9
        assert seen["body"]["voice_settings"]["stability"] == 0.4

    def test_unknown_preset(self):
        with pytest.raises(ValueError, match="Unknown voice preset"):
            VoiceConfig.from_preset("voice-42", "whisper")


@pytest.mark.unit
class TestSpeechProviderFactory:

    def test_singleton_and_override(self, monkeypatch):
        monkeypatch.setattr(Config, "TTS_PROVIDER", "elevenlabs")
        monkeypatch.setattr(Config, "TTS_API_KEY", "xi-test")
        tts.set_speech_provider(None)
        try:
            first = tts.get_speech_provider()
            assert isinstance(first, ElevenLabsSpeechProvider)
            assert tts.get_speech_provider() is first
        finally:
            tts.set_speech_provider(None)

    def test_unknown_provider(self, monkeypatch):
        monkeypatch.setattr(Config, "TTS_PROVIDER", "festival")
        tts.set_speech_provider(None)

        with pytest.raises(ValueError, match="Unknown TTS provider"):
            tts.get_speech_provider()
