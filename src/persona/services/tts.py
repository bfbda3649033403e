"""
Speech Provider Factory

Returns the speech provider selected by PERSONA_TTS_PROVIDER.
"""
import structlog
from persona.core.config import config
from persona.services.protocols import SpeechProvider

logger = structlog.get_logger()

_speech_provider: SpeechProvider | None = None


def get_speech_provider() -> SpeechProvider:
    """
    Get speech provider instance (singleton)

    Supported providers:
    - elevenlabs: ElevenLabs streaming TTS

    Returns:
        SpeechProvider implementation

    Raises:
        ValueError: Unknown provider or missing credentials
    """
    global _speech_provider

    if _speech_provider is not None:
        return _speech_provider

    provider = config.TTS_PROVIDER.lower()

    if provider == "elevenlabs":
        from persona.services.tts_elevenlabs import ElevenLabsSpeechProvider
        logger.info("tts.factory.init", provider="elevenlabs", model=config.TTS_API_MODEL)
        _speech_provider = ElevenLabsSpeechProvider()

    else:
        raise ValueError(
            f"Unknown TTS provider: '{provider}'\n"
            f"Supported providers: elevenlabs"
        )

    logger.info("tts.factory.ready", provider=provider)
    return _speech_provider


def set_speech_provider(provider: SpeechProvider | None) -> None:
    """Override the singleton (tests, alternative wiring)"""
    global _speech_provider
    _speech_provider = provider
