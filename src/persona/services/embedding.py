"""
Embedding client

OpenAI embeddings over httpx, with retry on rate limits and server errors
and a strict dimension check on every returned vector.
"""

from typing import Optional, Sequence

import httpx
import structlog

from persona.core.config import config
from persona.core.error_handling import EmbeddingError, retry_async
from persona.core.logging_config import log_performance
from persona.services.protocols import EmbeddingClient

logger = structlog.get_logger()

# Inputs per request; the API accepts more but smaller batches fail less
MAX_BATCH_SIZE = 100


class OpenAIEmbeddingClient:
    """
    Fixed-dimension text embeddings (text-embedding-3-small by default)
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        dimensions: Optional[int] = None,
        max_retries: Optional[int] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key or config.EMBEDDING_API_KEY
        if not self.api_key:
            raise ValueError("Embedding API key is required (PERSONA_EMBEDDING_API_KEY)")

        self.base_url = base_url or config.EMBEDDING_API_BASE_URL
        self.model = model or config.EMBEDDING_MODEL
        self.dimensions = dimensions or config.EMBEDDING_DIMENSIONS
        self.max_retries = config.EMBEDDING_MAX_RETRIES if max_retries is None else max_retries
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(self, inputs: list[str]) -> list[list[float]]:
        client = await self._get_client()
        try:
            response = await client.post(
                "/embeddings",
                json={"model": self.model, "input": inputs, "encoding_format": "float"},
            )
        except httpx.HTTPError as e:
            raise EmbeddingError(f"Embedding request failed: {e}", provider="openai", retriable=True) from e

        if response.status_code != 200:
            raise EmbeddingError(
                f"Embedding API error: {response.status_code}",
                provider="openai",
                retriable=response.status_code == 429 or response.status_code >= 500,
                status_code=response.status_code,
            )

        try:
            data = sorted(response.json()["data"], key=lambda item: item.get("index", 0))
            vectors = [item["embedding"] for item in data]
        except (ValueError, KeyError, TypeError) as e:
            raise EmbeddingError(f"Malformed embedding response: {e}", provider="openai") from e

        if len(vectors) != len(inputs):
            raise EmbeddingError(
                f"Expected {len(inputs)} embeddings, got {len(vectors)}",
                provider="openai",
            )
        for vector in vectors:
            if len(vector) != self.dimensions:
                raise EmbeddingError(
                    f"Expected {self.dimensions}-dimensional embedding, got {len(vector)}",
                    provider="openai",
                )
        return vectors

    @log_performance("embedding.embed")
    async def embed(self, text: str) -> list[float]:
        if not text or not text.strip():
            raise EmbeddingError("Cannot embed empty text", provider="openai")

        vectors = await retry_async(
            lambda: self._request([text]),
            operation="embedding.embed",
            max_retries=self.max_retries,
        )
        return vectors[0]

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        if any(not t or not t.strip() for t in texts):
            raise EmbeddingError("Cannot embed empty text", provider="openai")

        vectors: list[list[float]] = []
        for start in range(0, len(texts), MAX_BATCH_SIZE):
            batch = list(texts[start:start + MAX_BATCH_SIZE])
            vectors.extend(await retry_async(
                lambda batch=batch: self._request(batch),
                operation="embedding.embed_batch",
                max_retries=self.max_retries,
            ))

        logger.debug("embedding.batch_complete", count=len(vectors), model=self.model)
        return vectors


_embedding_client: EmbeddingClient | None = None


def get_embedding_client() -> EmbeddingClient:
    """
    Get embedding client instance (singleton)

    Supported providers:
    - openai: OpenAI embeddings API

    Raises:
        ValueError: Unknown provider or missing credentials
    """
    global _embedding_client

    if _embedding_client is not None:
        return _embedding_client

    provider = config.EMBEDDING_PROVIDER.lower()

    if provider == "openai":
        logger.info("embedding.factory.init", provider="openai", model=config.EMBEDDING_MODEL)
        _embedding_client = OpenAIEmbeddingClient()
    else:
        raise ValueError(
            f"Unknown embedding provider: '{provider}'\n"
            f"Supported providers: openai"
        )

    return _embedding_client


def set_embedding_client(client: EmbeddingClient | None) -> None:
    """Override the singleton (tests, alternative wiring)"""
    global _embedding_client
    _embedding_client = client
