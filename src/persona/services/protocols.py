"""
Service provider protocols (interfaces)

Contracts the speech pipeline and memory subsystem consume. Concrete
providers (ElevenLabs, OpenAI, SQLite, Supabase, test fakes) hide behind them.
"""
from typing import TYPE_CHECKING, Protocol, Sequence

from persona.memory.models import SimilarityMatch
from persona.services.voice_settings import VoiceSettings

if TYPE_CHECKING:
    from persona.pipeline.sequencer import AudioChunk, SkipSignal


class SpeechProvider(Protocol):
    """
    Text-to-speech provider interface

    Implementations:
    - ElevenLabsSpeechProvider: ElevenLabs streaming endpoint
    """

    async def synthesize(
        self,
        text: str,
        voice_id: str,
        settings: VoiceSettings,
    ) -> bytes:
        """
        Synthesize one sentence

        Args:
            text: Sentence to speak
            voice_id: Provider voice identifier
            settings: Passed through to the provider unmodified

        Returns:
            Encoded audio bytes (mp3 by default)

        Raises:
            SpeechSynthesisError: Provider rejected or failed the request
        """
        ...


class EmbeddingClient(Protocol):
    """
    Text embedding provider interface

    Implementations:
    - OpenAIEmbeddingClient: OpenAI /v1/embeddings
    """

    dimensions: int

    async def embed(self, text: str) -> list[float]:
        """
        Embed a single text

        Returns:
            Vector of exactly `dimensions` floats

        Raises:
            EmbeddingError: Quota, network or malformed response
        """
        ...

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        """Embed many texts; result order matches input order"""
        ...


class SimilarityIndex(Protocol):
    """
    Nearest-neighbour search over stored fragments

    Isolation is enforced by the index itself: only fragments whose
    avatar_id AND user_id equal the arguments may ever be returned.

    Implementations:
    - SQLiteSimilarityIndex: tenant-scoped SQL + numpy cosine
    - SupabaseSimilarityIndex: match_memory_fragments RPC (pgvector)
    """

    async def search(
        self,
        vector: Sequence[float],
        avatar_id: str,
        user_id: str,
        threshold: float,
        top_k: int,
    ) -> list[SimilarityMatch]:
        """
        Returns:
            Matches with score >= threshold, highest score first, at most top_k

        Raises:
            SimilaritySearchError: Index unavailable or query failed
        """
        ...


class PlaybackSink(Protocol):
    """Downstream consumer of ordered audio (transport, player, file writer)"""

    async def play(self, chunk: "AudioChunk") -> None:
        """Render one chunk; returning signals readiness for the next"""
        ...

    async def skip(self, signal: "SkipSignal") -> None:
        """A sentence without audio; captions continue"""
        ...
