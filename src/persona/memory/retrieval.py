"""
Memory retrieval

Embeds the query, asks the similarity index for the tenant's nearest
fragments and caches the answer for a short TTL. Provider failures degrade to
"no memories"; a fragment belonging to another tenant is an IsolationViolation
and always propagates.
"""

from dataclasses import replace
from typing import List, Optional, Sequence, Tuple
from urllib.parse import quote

import structlog

from persona.core.cache import TTLCache
from persona.core.config import config
from persona.core.error_handling import IsolationViolation, log_and_return_error
from persona.core.logging_config import PerformanceLogger
from persona.memory.models import MemoryFragment, RetrievalQuery, require_tenant
from persona.services.protocols import EmbeddingClient, SimilarityIndex
from persona.services.similarity import rank_matches

logger = structlog.get_logger()

CACHE_NAMESPACE = "memories"


def tenant_prefix(avatar_id: str, user_id: Optional[str] = None) -> str:
    """Cache key prefix for an avatar, or for one (avatar, user) pair"""
    prefix = f"{CACHE_NAMESPACE}:{quote(avatar_id, safe='')}:"
    if user_id is not None:
        prefix += f"{quote(user_id, safe='')}:"
    return prefix


def cache_key(query: RetrievalQuery) -> str:
    return (
        f"{tenant_prefix(query.avatar_id, query.user_id)}"
        f"{query.threshold:.4f}:{query.top_k}:{query.query_text}"
    )


def format_memories(fragments: List[MemoryFragment]) -> str:
    """Prompt block listing the memories, or "" when there are none"""
    if not fragments:
        return ""
    lines = "\n".join(f"- {fragment.text}" for fragment in fragments)
    return f"\nRelevant memories about the user:\n{lines}\n"


class MemoryRetrievalEngine:
    """
    Tenant-scoped semantic retrieval with a TTL cache

    Args:
        embedder: EmbeddingClient used for query vectors
        index: SimilarityIndex that filters by avatar_id and user_id itself
        cache: Shared TTLCache (a private one is created when omitted)
        default_threshold: Similarity cut-off used when retrieve() gets none
        default_top_k: Result limit used when retrieve() gets none
    """

    def __init__(self,
                 embedder: EmbeddingClient,
                 index: SimilarityIndex,
                 cache: Optional[TTLCache] = None,
                 cache_ttl: Optional[float] = None,
                 default_threshold: Optional[float] = None,
                 default_top_k: Optional[int] = None):
        self.embedder = embedder
        self.index = index
        if cache is None:
            cache = TTLCache(default_ttl=cache_ttl or config.MEMORY_CACHE_TTL_SEC,
                             name="retrieval",
                             max_entries=config.MEMORY_CACHE_MAX_ENTRIES)
        self.cache: TTLCache[Tuple[MemoryFragment, ...]] = cache
        self.cache_ttl = cache_ttl
        self.default_threshold = config.MEMORY_SIMILARITY_THRESHOLD if default_threshold is None \
            else default_threshold
        self.default_top_k = default_top_k or config.MEMORY_TOP_K

    async def retrieve(self,
                       query_text: str,
                       avatar_id: str,
                       user_id: str,
                       threshold: Optional[float] = None,
                       top_k: Optional[int] = None) -> List[MemoryFragment]:
        """Highest score first; [] for a blank query or when a provider fails"""
        require_tenant(avatar_id, user_id)
        if not query_text or not query_text.strip():
            return []

        query = RetrievalQuery(
            query_text=query_text,
            avatar_id=avatar_id,
            user_id=user_id,
            threshold=self.default_threshold if threshold is None else threshold,
            top_k=top_k or self.default_top_k,
        )
        return await self.retrieve_query(query)

    async def retrieve_query(self, query: RetrievalQuery) -> List[MemoryFragment]:
        key = cache_key(query)
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("retrieval.cache_hit",
                         avatar_id=query.avatar_id,
                         user_id=query.user_id,
                         count=len(cached))
            return list(cached)

        with PerformanceLogger(logger, "retrieval.search",
                               avatar_id=query.avatar_id, user_id=query.user_id):
            try:
                vector = await self.embedder.embed(query.query_text)
                fragments = await self.search_vector(
                    vector,
                    query.avatar_id,
                    query.user_id,
                    threshold=query.threshold,
                    top_k=query.top_k,
                )
            except IsolationViolation:
                raise
            except Exception as e:
                return log_and_return_error(
                    e,
                    default_return=[],
                    operation="retrieval.search",
                    component="memory_retrieval",
                    avatar_id=query.avatar_id,
                    user_id=query.user_id,
                )

        self.cache.set(key, tuple(fragments), ttl=self.cache_ttl)
        logger.info("retrieval.completed",
                    avatar_id=query.avatar_id,
                    user_id=query.user_id,
                    returned=len(fragments),
                    threshold=query.threshold)
        return fragments

    async def search_vector(self,
                            vector: Sequence[float],
                            avatar_id: str,
                            user_id: str,
                            threshold: float,
                            top_k: int) -> List[MemoryFragment]:
        """
        Uncached index search for an already-embedded query

        Provider errors propagate. Scores are provider-defined, so only the
        lower bound is applied here.
        """
        require_tenant(avatar_id, user_id)
        matches = await self.index.search(
            vector,
            avatar_id=avatar_id,
            user_id=user_id,
            threshold=threshold,
            top_k=top_k,
        )

        tenant = (avatar_id, user_id)
        for match in matches:
            if match.fragment.tenant != tenant:
                logger.critical("retrieval.isolation_violation",
                                fragment_id=match.fragment_id,
                                avatar_id=avatar_id,
                                user_id=user_id)
                raise IsolationViolation(tenant, match.fragment.tenant, match.fragment_id)

        kept = [m for m in matches if m.score >= threshold]
        return [replace(m.fragment, score=m.score) for m in rank_matches(kept)][:top_k]

    def invalidate(self, avatar_id: str, user_id: Optional[str] = None) -> int:
        """Drop cached results for an avatar, or for one (avatar, user) pair"""
        removed = self.cache.invalidate_prefix(tenant_prefix(avatar_id, user_id))
        logger.debug("retrieval.cache_invalidated", avatar_id=avatar_id, user_id=user_id, removed=removed)
        return removed

    async def context_for_prompt(self,
                                 query_text: str,
                                 avatar_id: str,
                                 user_id: str,
                                 max_memories: Optional[int] = None) -> str:
        fragments = await self.retrieve(
            query_text,
            avatar_id,
            user_id,
            top_k=max_memories or config.MEMORY_CHAT_MAX_MEMORIES,
        )
        return format_memories(fragments)
