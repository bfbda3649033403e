"""
Test Configuration and Fixtures for Persona

Provides fake providers (speech, embedding, similarity), a playback sink
that records events, and a temporary database.
"""

import asyncio
import hashlib
import os
import sys
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np
import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

os.environ.setdefault("PERSONA_ENV", "test")

from persona.core.error_handling import (
    EmbeddingError,
    SimilaritySearchError,
    SpeechSynthesisError,
    get_error_handler,
)
from persona.memory.models import MemoryFragment, SimilarityMatch
from persona.services.database import MemoryStore


# ============================================================
# Fake providers
# ============================================================

class FakeSpeechProvider:
    """
    Scriptable speech provider

    Args:
        delay: Default seconds each call takes
        delays: Per-text delay override
        fail_on: Texts that raise SpeechSynthesisError
        hang_on: Texts that never complete (until cancelled)
        gates: Per-text asyncio.Event the call waits for before finishing
    """

    def __init__(self,
                 delay: float = 0.0,
                 delays: Optional[Dict[str, float]] = None,
                 fail_on: Iterable[str] = (),
                 hang_on: Iterable[str] = (),
                 gates: Optional[Dict[str, asyncio.Event]] = None):
        self.delay = delay
        self.delays = delays or {}
        self.fail_on = set(fail_on)
        self.hang_on = set(hang_on)
        self.gates = gates or {}

        self.calls: List[tuple] = []
        self.completed: List[str] = []
        self.cancelled: List[str] = []
        self.active = 0
        self.max_active = 0

    async def synthesize(self, text, voice_id, settings) -> bytes:
        self.calls.append((text, voice_id, settings))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if text in self.gates:
                await self.gates[text].wait()
            if text in self.hang_on:
                await asyncio.Event().wait()
            await asyncio.sleep(self.delays.get(text, self.delay))
            if text in self.fail_on:
                raise SpeechSynthesisError(f"provider rejected: {text}", provider="fake")
            self.completed.append(text)
            return f"audio:{text}".encode()
        except asyncio.CancelledError:
            self.cancelled.append(text)
            raise
        finally:
            self.active -= 1


def text_vector(text: str, dimensions: int = 32) -> List[float]:
    """Deterministic pseudo-random unit vector per normalised text"""
    normalised = " ".join(text.lower().split())
    seed = int(hashlib.sha256(normalised.encode()).hexdigest()[:8], 16)
    vector = np.random.default_rng(seed).normal(size=dimensions)
    return (vector / np.linalg.norm(vector)).tolist()


class FakeEmbeddingClient:
    """Deterministic embeddings; identical text gives identical vectors"""

    def __init__(self, dimensions: int = 32, vectors: Optional[Dict[str, Sequence[float]]] = None):
        self.dimensions = dimensions
        self.vectors = dict(vectors or {})
        self.fail = False
        self.calls: List[str] = []
        self.batch_calls: List[List[str]] = []

    def _vector(self, text: str) -> List[float]:
        if text in self.vectors:
            return list(self.vectors[text])
        return text_vector(text, self.dimensions)

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        if self.fail:
            raise EmbeddingError("embedding service unavailable", provider="fake", retriable=True)
        return self._vector(text)

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        self.batch_calls.append(list(texts))
        if self.fail:
            raise EmbeddingError("embedding service unavailable", provider="fake", retriable=True)
        return [self._vector(t) for t in texts]


class FakeSimilarityIndex:
    """Returns the scripted matches; records every search"""

    def __init__(self, matches: Optional[List[SimilarityMatch]] = None):
        self.matches = list(matches or [])
        self.fail = False
        self.calls: List[dict] = []

    async def search(self, vector, avatar_id, user_id, threshold, top_k):
        self.calls.append({
            "avatar_id": avatar_id,
            "user_id": user_id,
            "threshold": threshold,
            "top_k": top_k,
        })
        if self.fail:
            raise SimilaritySearchError("index offline", provider="fake")
        return list(self.matches)


class RecordingSink:
    """PlaybackSink that records what it was given"""

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.events: list = []

    async def play(self, chunk) -> None:
        await asyncio.sleep(self.delay)
        self.events.append(("play", chunk.sequence, chunk.audio))

    async def skip(self, signal) -> None:
        self.events.append(("skip", signal.sequence, signal.reason))


async def stream_of(*deltas: str, delay: float = 0.0):
    """Async iterable of text deltas"""
    for delta in deltas:
        if delay:
            await asyncio.sleep(delay)
        yield delta


def make_match(fragment: MemoryFragment, score: float) -> SimilarityMatch:
    return SimilarityMatch(fragment_id=fragment.id, score=score, fragment=fragment)


# ============================================================
# Fixtures
# ============================================================

@pytest.fixture(autouse=True)
def reset_error_stats():
    """Error handler is a process-wide singleton"""
    get_error_handler().reset()
    yield
    get_error_handler().reset()


@pytest.fixture
def speech_provider():
    return FakeSpeechProvider()


@pytest.fixture
def embedder():
    return FakeEmbeddingClient()


@pytest.fixture
async def store(tmp_path):
    """MemoryStore on a temporary database file"""
    async with MemoryStore(tmp_path / "test.db") as memory_store:
        yield memory_store


# Test markers configuration
def pytest_configure(config):
    """Configure pytest markers"""
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as integration test"
    )
    config.addinivalue_line(
        "markers", "unit: mark test as unit test"
    )
