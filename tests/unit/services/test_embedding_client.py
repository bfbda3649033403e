"""
Unit Tests for OpenAIEmbeddingClient

The HTTP side runs against httpx.MockTransport; backoff sleeps are patched out.
"""

import json
import pytest
from pathlib import Path
from unittest.mock import AsyncMock, patch

import httpx

import sys
sys.path.insert(0, str(Path(__file__).parent.parent.parent.parent / "src"))

from persona.core.error_handling import EmbeddingError
from persona.services.embedding import MAX_BATCH_SIZE, OpenAIEmbeddingClient


def embeddings_response(inputs, dimensions=4, reverse=False):
    data = [
        {"index": i, "embedding": [float(i)] * dimensions, "object": "embedding"}
        for i in range(len(inputs))
    ]
    if reverse:
        data.reverse()
    return httpx.Response(200, json={"data": data, "model": "text-embedding-3-small"})


def make_client(handler, dimensions=4, max_retries=2):
    return OpenAIEmbeddingClient(
        api_key="sk-test",
        base_url="https://api.openai.test/v1",
        dimensions=dimensions,
        max_retries=max_retries,
        transport=httpx.MockTransport(handler),
    )


@pytest.fixture
def no_backoff():
    with patch("persona.core.error_handling.asyncio.sleep", new_callable=AsyncMock) as sleep:
        yield sleep


@pytest.mark.unit
class TestEmbed:

    @pytest.mark.asyncio
    async def test_request_shape(self):
        seen = {}

        def handler(request):
            seen["request"] = request
            return embeddings_response(["x"])

        client = make_client(handler)
        try:
            vector = await client.embed("I have a dog.")
        finally:
            await client.close()

        body = json.loads(seen["request"].content)
        assert vector == [0.0, 0.0, 0.0, 0.0]
        assert seen["request"].url.path == "/v1/embeddings"
        assert seen["request"].headers["authorization"] == "Bearer sk-test"
        assert body == {"model": "text-embedding-3-small", "input": ["I have a dog."], "encoding_format": "float"}

    @pytest.mark.asyncio
    async def test_dimension_mismatch(self):
        client = make_client(lambda request: embeddings_response(["x"], dimensions=3))

        with pytest.raises(EmbeddingError, match="4-dimensional"):
            await client.embed("hello")
        await client.close()

    @pytest.mark.asyncio
    async def test_empty_text_rejected(self):
        client = make_client(lambda request: embeddings_response(["x"]))

        with pytest.raises(EmbeddingError):
            await client.embed("  ")

    @pytest.mark.asyncio
    async def test_retries_rate_limit(self, no_backoff):
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) == 1:
                return httpx.Response(429)
            return embeddings_response(["x"])

        client = make_client(handler)
        vector = await client.embed("hello")
        await client.close()

        assert len(attempts) == 2
        assert len(vector) == 4
        assert no_backoff.await_count == 1

    @pytest.mark.asyncio
    async def test_auth_error_not_retried(self, no_backoff):
        attempts = []

        def handler(request):
            attempts.append(request)
            return httpx.Response(401)

        client = make_client(handler)
        with pytest.raises(EmbeddingError) as exc_info:
            await client.embed("hello")
        await client.close()

        assert exc_info.value.status_code == 401
        assert len(attempts) == 1
        no_backoff.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_server_errors_exhaust_retries(self, no_backoff):
        attempts = []

        def handler(request):
            attempts.append(request)
            return httpx.Response(503)

        client = make_client(handler, max_retries=2)
        with pytest.raises(EmbeddingError):
            await client.embed("hello")
        await client.close()

        assert len(attempts) == 3


@pytest.mark.unit
class TestEmbedBatch:

    @pytest.mark.asyncio
    async def test_results_follow_index_order(self):
        client = make_client(lambda request: embeddings_response(
            json.loads(request.content)["input"], reverse=True))

        vectors = await client.embed_batch(["a", "b", "c"])
        await client.close()

        assert [v[0] for v in vectors] == [0.0, 1.0, 2.0]

    @pytest.mark.asyncio
    async def test_large_input_split_into_batches(self):
        sizes = []

        def handler(request):
            inputs = json.loads(request.content)["input"]
            sizes.append(len(inputs))
            return embeddings_response(inputs)

        client = make_client(handler)
        vectors = await client.embed_batch([f"text {i}" for i in range(MAX_BATCH_SIZE + 5)])
        await client.close()

        assert sizes == [MAX_BATCH_SIZE, 5]
        assert len(vectors) == MAX_BATCH_SIZE + 5

    @pytest.mark.asyncio
    async def test_count_mismatch(self):
        client = make_client(lambda request: embeddings_response(["only one"]))

        with pytest.raises(EmbeddingError, match="Expected 2 embeddings"):
            await client.embed_batch(["a", "b"])
        await client.close()
