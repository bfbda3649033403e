"""
ElevenLabs speech provider

One HTTP request per sentence against the streaming text-to-speech endpoint.
Voice settings are forwarded exactly as given.
"""

from typing import Optional

import httpx
import structlog

from persona.core.config import config
from persona.core.error_handling import SpeechSynthesisError
from persona.services.voice_settings import VoiceSettings

logger = structlog.get_logger()

# Fixed seed keeps the voice consistent across the sentences of one reply
CONSISTENT_SEED = 123456789


class ElevenLabsSpeechProvider:
    """
    ElevenLabs text-to-speech over httpx

    Features:
    - Lazily created, reused AsyncClient
    - Status codes mapped to SpeechSynthesisError (429/5xx marked retriable)
    - Injectable transport for tests
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model_id: Optional[str] = None,
        output_format: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key or config.TTS_API_KEY
        if not self.api_key:
            raise ValueError("ElevenLabs API key is required (PERSONA_TTS_API_KEY)")

        self.base_url = base_url or config.TTS_API_BASE_URL
        self.model_id = model_id or config.TTS_API_MODEL
        self.output_format = output_format or config.TTS_OUTPUT_FORMAT
        self.timeout = timeout or config.TTS_HTTP_TIMEOUT_SEC
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

        logger.info("tts.elevenlabs.init",
                    base_url=self.base_url,
                    model=self.model_id,
                    output_format=self.output_format)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client"""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={
                    "xi-api-key": self.api_key,
                    "Content-Type": "application/json",
                    "Accept": "audio/mpeg",
                },
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def build_request_body(self, text: str, settings: VoiceSettings) -> dict:
        return {
            "text": text,
            "model_id": self.model_id,
            "voice_settings": settings.to_dict(),
            "seed": CONSISTENT_SEED,
        }

    async def synthesize(self, text: str, voice_id: str, settings: VoiceSettings) -> bytes:
        """
        Synthesize one sentence

        Returns:
            Audio bytes in `output_format`

        Raises:
            SpeechSynthesisError: Empty input, HTTP error, or empty audio
        """
        if not text or not text.strip():
            raise SpeechSynthesisError("Text cannot be empty", provider="elevenlabs")
        if not voice_id:
            raise SpeechSynthesisError("voice_id is required", provider="elevenlabs")

        client = await self._get_client()

        try:
            response = await client.post(
                f"/text-to-speech/{voice_id}/stream",
                json=self.build_request_body(text, settings),
                params={"output_format": self.output_format},
            )
        except httpx.TimeoutException as e:
            raise SpeechSynthesisError(
                f"ElevenLabs request timed out after {self.timeout}s",
                provider="elevenlabs",
                retriable=True,
            ) from e
        except httpx.HTTPError as e:
            raise SpeechSynthesisError(
                f"Failed to reach ElevenLabs: {e}",
                provider="elevenlabs",
                retriable=True,
            ) from e

        if response.status_code != 200:
            logger.warning("tts.elevenlabs.http_error",
                           status_code=response.status_code,
                           voice_id=voice_id,
                           body=response.text[:200])
            raise SpeechSynthesisError(
                f"ElevenLabs API error: {response.status_code}",
                provider="elevenlabs",
                retriable=response.status_code == 429 or response.status_code >= 500,
                status_code=response.status_code,
            )

        audio = response.content
        if not audio:
            raise SpeechSynthesisError("ElevenLabs returned empty audio", provider="elevenlabs")

        logger.debug("tts.elevenlabs.synthesized",
                     voice_id=voice_id,
                     text_length=len(text),
                     size_bytes=len(audio))
        return audio
