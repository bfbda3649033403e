"""
Similarity indexes

Both implementations scope the query itself to (avatar_id, user_id): the
SQLite index only ever loads the tenant's rows, the Supabase index passes the
tenant to the match_memory_fragments function.
"""

import re
from datetime import datetime
from typing import Optional, Sequence

import httpx
import numpy as np
import structlog

from persona.core.config import config
from persona.core.error_handling import SimilaritySearchError
from persona.memory.models import MemoryFragment, SimilarityMatch, require_tenant
from persona.services.database import MemoryStore
from persona.services.protocols import SimilarityIndex

logger = structlog.get_logger()


def cosine_scores(query: Sequence[float], matrix: np.ndarray) -> np.ndarray:
    """Cosine similarity of query against each row, clipped to [0, 1]"""
    q = np.asarray(query, dtype=np.float32)
    q_norm = np.linalg.norm(q)
    row_norms = np.linalg.norm(matrix, axis=1)
    denom = row_norms * q_norm
    with np.errstate(divide="ignore", invalid="ignore"):
        scores = np.where(denom > 0, matrix @ q / denom, 0.0)
    return np.clip(scores, 0.0, 1.0)


_FRACTION = re.compile(r"\.(\d+)")


def parse_timestamp(value: str) -> datetime:
    """
    Parse a PostgREST timestamp

    Accepts a trailing "Z" and fractions of any length (Postgres trims
    trailing zeros, so ".12345" is common).
    """
    text = value.strip().replace(" ", "T", 1).replace("Z", "+00:00")
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    return datetime.fromisoformat(text)


def rank_matches(matches: list[SimilarityMatch]) -> list[SimilarityMatch]:
    """Highest score first; equal scores put the newest fragment first"""
    return sorted(
        matches,
        key=lambda m: (-m.score, -m.fragment.created_at.timestamp()),
    )


class SQLiteSimilarityIndex:
    """
    Exact nearest-neighbour search over the tenant's fragments in MemoryStore

    Fine for the per-(avatar, user) fragment counts a single avatar accumulates.
    """

    def __init__(self, store: MemoryStore):
        self.store = store

    async def search(self, vector: Sequence[float], avatar_id: str, user_id: str,
                     threshold: float, top_k: int) -> list[SimilarityMatch]:
        require_tenant(avatar_id, user_id)

        try:
            fragments = await self.store.list_fragments(avatar_id, user_id)
        except Exception as e:
            raise SimilaritySearchError(f"Fragment lookup failed: {e}", provider="sqlite") from e

        if not fragments:
            return []

        try:
            matrix = np.asarray([f.embedding for f in fragments], dtype=np.float32)
            scores = cosine_scores(vector, matrix)
        except ValueError as e:
            raise SimilaritySearchError(f"Embedding dimension mismatch: {e}", provider="sqlite") from e

        matches = [
            SimilarityMatch(fragment_id=f.id, score=float(score), fragment=f)
            for f, score in zip(fragments, scores)
            if score >= threshold
        ]
        ranked = rank_matches(matches)[:top_k]

        logger.debug("similarity.sqlite.search",
                     avatar_id=avatar_id,
                     user_id=user_id,
                     candidates=len(fragments),
                     matched=len(matches),
                     returned=len(ranked))
        return ranked


class SupabaseSimilarityIndex:
    """
    pgvector search through a Supabase RPC

    Expects a SQL function (default name match_memory_fragments) taking
    query_embedding, match_threshold, match_count, target_avatar_id and
    target_user_id, and returning fragment rows with a `similarity` column.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        key: Optional[str] = None,
        function_name: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url or config.SUPABASE_URL
        self.key = key or config.SUPABASE_KEY
        if not self.url or not self.key:
            raise ValueError("Supabase URL and key are required (PERSONA_SUPABASE_URL / PERSONA_SUPABASE_KEY)")

        self.function_name = function_name or config.SUPABASE_MATCH_FUNCTION
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.url.rstrip("/") + "/rest/v1",
                headers={
                    "apikey": self.key,
                    "Authorization": f"Bearer {self.key}",
                    "Content-Type": "application/json",
                },
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def search(self, vector: Sequence[float], avatar_id: str, user_id: str,
                     threshold: float, top_k: int) -> list[SimilarityMatch]:
        require_tenant(avatar_id, user_id)
        client = await self._get_client()

        try:
            response = await client.post(
                f"/rpc/{self.function_name}",
                json={
                    "query_embedding": list(vector),
                    "match_threshold": threshold,
                    "match_count": top_k,
                    "target_avatar_id": avatar_id,
                    "target_user_id": user_id,
                },
            )
        except httpx.HTTPError as e:
            raise SimilaritySearchError(f"Supabase RPC failed: {e}", provider="supabase", retriable=True) from e

        if response.status_code != 200:
            raise SimilaritySearchError(
                f"Supabase RPC error: {response.status_code}",
                provider="supabase",
                retriable=response.status_code >= 500,
                status_code=response.status_code,
            )

        try:
            rows = response.json()
            matches = [
                SimilarityMatch(
                    fragment_id=str(row["id"]),
                    score=min(max(float(row["similarity"]), 0.0), 1.0),
                    fragment=MemoryFragment(
                        id=str(row["id"]),
                        avatar_id=row["avatar_id"],
                        user_id=row["user_id"],
                        text=row["fragment_text"],
                        conversation_context=row.get("conversation_context") or {},
                        created_at=parse_timestamp(row["created_at"]),
                    ),
                )
                for row in rows
            ]
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise SimilaritySearchError(f"Malformed Supabase response: {e}", provider="supabase") from e

        return rank_matches(matches)[:top_k]


def create_similarity_index(store: MemoryStore) -> SimilarityIndex:
    """
    Build the similarity index selected by PERSONA_SIMILARITY_PROVIDER

    Supported providers:
    - sqlite: search the local MemoryStore
    - supabase: match_memory_fragments RPC
    """
    provider = config.SIMILARITY_PROVIDER.lower()

    if provider == "sqlite":
        index: SimilarityIndex = SQLiteSimilarityIndex(store)
    elif provider == "supabase":
        index = SupabaseSimilarityIndex()
    else:
        raise ValueError(
            f"Unknown similarity provider: '{provider}'\n"
            f"Supported providers: sqlite, supabase"
        )

    logger.info("similarity.factory.ready", provider=provider)
    return index
