"""
Voice API

/api/voice-stream synthesizes a single sentence; /api/speak runs a whole
reply through the speech pipeline and streams the audio back in order.
"""

from typing import Any, AsyncIterator, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import Response, StreamingResponse
from pydantic import BaseModel, Field
from slowapi import Limiter
from slowapi.util import get_remote_address

from persona.core.config import config
from persona.core.error_handling import SpeechSynthesisError, create_error_response
from persona.pipeline.cancellation import CancellationToken
from persona.pipeline.sequencer import AudioChunk
from persona.pipeline.speech import SpeechPipeline
from persona.services.protocols import SpeechProvider
from persona.services.voice_settings import VoiceConfig, VoiceSettings

logger = structlog.get_logger()

router = APIRouter(prefix="/api", tags=["voice"])

limiter = Limiter(key_func=get_remote_address)


def get_speech_provider(request: Request) -> SpeechProvider:
    return request.app.state.speech_provider


class VoiceRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=5000)
    voice_id: Optional[str] = None
    preset: str = "natural"
    voice_settings: Optional[Dict[str, Any]] = None


def resolve_voice(body: VoiceRequest) -> VoiceConfig:
    """Explicit settings win over the preset; 422 for bad input"""
    voice_id = body.voice_id or config.TTS_DEFAULT_VOICE_ID
    if not voice_id:
        raise HTTPException(status_code=422, detail="voice_id is required (no default voice configured)")

    try:
        if body.voice_settings:
            return VoiceConfig(voice_id=voice_id, settings=VoiceSettings.from_dict(body.voice_settings))
        return VoiceConfig.from_preset(voice_id, body.preset)
    except (ValueError, TypeError) as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.post("/voice-stream")
@limiter.limit(config.RATE_LIMIT)
async def voice_stream(
    request: Request,
    body: VoiceRequest,
    provider: SpeechProvider = Depends(get_speech_provider),
):
    """Synthesize one sentence and return it as audio/mpeg"""
    voice = resolve_voice(body)

    try:
        audio = await provider.synthesize(body.text, voice.voice_id, voice.settings)
    except SpeechSynthesisError as e:
        error = create_error_response(e, operation="voice.stream", component="voice_api")
        status_code = 429 if e.status_code == 429 else 502
        raise HTTPException(status_code=status_code, detail=error["error"])

    logger.info("voice.stream.completed", voice_id=voice.voice_id, size_bytes=len(audio))
    return Response(content=audio, media_type="audio/mpeg")


async def _as_deltas(text: str) -> AsyncIterator[str]:
    yield text


@router.post("/speak")
@limiter.limit(config.RATE_LIMIT)
async def speak(
    request: Request,
    body: VoiceRequest,
    provider: SpeechProvider = Depends(get_speech_provider),
):
    """
    Speak a full reply

    Sentences are synthesized concurrently and streamed back in order.
    Sentences that fail to synthesize are left out of the stream; their
    sequence numbers are listed in the server log.
    """
    voice = resolve_voice(body)
    pipeline = SpeechPipeline(provider, voice)
    token = CancellationToken()

    async def audio_stream() -> AsyncIterator[bytes]:
        finished = False
        try:
            async for event in pipeline.events(_as_deltas(body.text), token):
                if isinstance(event, AudioChunk):
                    yield event.audio
            finished = True
        finally:
            if not finished:
                token.cancel("client_disconnected")

    return StreamingResponse(audio_stream(), media_type="audio/mpeg")
