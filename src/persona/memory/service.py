"""
Memory service

Write path: turn -> extract -> embed -> de-duplicate -> persist -> invalidate.
Read path: query -> retrieval engine -> prompt block.
"""

from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog

from persona.core.config import config
from persona.core.error_handling import IsolationViolation, log_and_return_error
from persona.memory.extractor import FragmentExtractor
from persona.memory.models import ConversationTurn, MemoryFragment, require_tenant
from persona.memory.retrieval import MemoryRetrievalEngine
from persona.services.database import MemoryStore
from persona.services.protocols import EmbeddingClient

logger = structlog.get_logger()


def _normalise(text: str) -> str:
    return " ".join(text.lower().split()).rstrip(".!?;")


class MemoryService:
    """Glue between the extractor, the retrieval engine and the store"""

    def __init__(self,
                 store: MemoryStore,
                 embedder: EmbeddingClient,
                 retrieval: MemoryRetrievalEngine,
                 extractor: Optional[FragmentExtractor] = None,
                 dedup_threshold: Optional[float] = None):
        self.store = store
        self.embedder = embedder
        self.retrieval = retrieval
        self.extractor = extractor or FragmentExtractor()
        self.dedup_threshold = config.MEMORY_DEDUP_THRESHOLD if dedup_threshold is None else dedup_threshold

    async def record_turn(self, turn: ConversationTurn) -> str:
        return await self.store.save_turn(turn)

    async def _is_known(self, candidate: MemoryFragment) -> bool:
        """Candidate must already carry its embedding"""
        existing = await self.retrieval.search_vector(
            candidate.embedding,
            candidate.avatar_id,
            candidate.user_id,
            threshold=self.dedup_threshold,
            top_k=1,
        )
        return bool(existing)

    async def process_turn(self,
                           turn: ConversationTurn,
                           context: Optional[Dict[str, Any]] = None,
                           extraction_threshold: Optional[float] = None) -> List[MemoryFragment]:
        """
        Extract, embed, de-duplicate and store the memories in one turn

        Returns:
            Stored fragments (with embeddings); [] when nothing qualified or
            any step failed
        """
        try:
            candidates = self.extractor.extract_turn(
                turn, context=context, extraction_threshold=extraction_threshold
            )

            seen = set()
            unique = []
            for candidate in candidates:
                key = _normalise(candidate.text)
                if key in seen:
                    continue
                seen.add(key)
                unique.append(candidate)

            if not unique:
                return []

            vectors = await self.embedder.embed_batch([c.text for c in unique])
            embedded = [replace(c, embedding=tuple(v)) for c, v in zip(unique, vectors)]

            fragments = []
            for candidate in embedded:
                if await self._is_known(candidate):
                    logger.debug("memory.duplicate_skipped",
                                 avatar_id=turn.avatar_id,
                                 user_id=turn.user_id,
                                 text=candidate.text[:80])
                    continue
                fragments.append(candidate)

            if not fragments:
                return []

            await self.store.save_fragments(fragments)
        except IsolationViolation:
            raise
        except Exception as e:
            return log_and_return_error(
                e,
                default_return=[],
                operation="memory.process_turn",
                component="memory_service",
                avatar_id=turn.avatar_id,
                user_id=turn.user_id,
            )

        self.retrieval.invalidate(turn.avatar_id, turn.user_id)
        logger.info("memory.fragments_stored",
                    avatar_id=turn.avatar_id,
                    user_id=turn.user_id,
                    candidates=len(candidates),
                    stored=len(fragments))
        return fragments

    async def memories_for_chat(self,
                                query: str,
                                avatar_id: str,
                                user_id: str,
                                max_memories: Optional[int] = None) -> str:
        return await self.retrieval.context_for_prompt(query, avatar_id, user_id, max_memories)

    async def list_memories(self, avatar_id: str, user_id: str,
                            limit: int = 50, offset: int = 0) -> List[MemoryFragment]:
        return await self.store.list_fragments(avatar_id, user_id, limit=limit, offset=offset)

    async def get_memory(self, fragment_id: str, avatar_id: str, user_id: str) -> Optional[MemoryFragment]:
        """One fragment of this tenant, or None"""
        return await self.store.get_fragment(fragment_id, avatar_id, user_id)

    async def stats(self, avatar_id: str, user_id: str) -> Dict[str, Any]:
        return await self.store.fragment_stats(avatar_id, user_id)

    async def export(self, avatar_id: str, user_id: str, include_embeddings: bool = False) -> Dict[str, Any]:
        """
        Everything stored for one tenant, oldest first

        Returns:
            {"export_info": {...}, "stats": {...}, "memories": [...]}
        """
        fragments = await self.store.list_fragments(avatar_id, user_id)
        fragments.reverse()
        stats = await self.stats(avatar_id, user_id)

        memories = []
        for fragment in fragments:
            item = {
                "id": fragment.id,
                "text": fragment.text,
                "score": fragment.score,
                "turn_id": fragment.turn_id,
                "conversation_context": fragment.conversation_context,
                "created_at": fragment.created_at.isoformat(),
            }
            if include_embeddings and fragment.embedding is not None:
                item["embedding"] = list(fragment.embedding)
            memories.append(item)

        logger.info("memory.exported", avatar_id=avatar_id, user_id=user_id, count=len(memories))
        return {
            "export_info": {
                "avatar_id": avatar_id,
                "user_id": user_id,
                "exported_at": datetime.now(timezone.utc).isoformat(),
                "total_memories": len(memories),
                "include_embeddings": include_embeddings,
            },
            "stats": {
                "total_fragments": stats["total_fragments"],
                "oldest_memory": stats["oldest_memory"].isoformat() if stats["oldest_memory"] else None,
                "newest_memory": stats["newest_memory"].isoformat() if stats["newest_memory"] else None,
            },
            "memories": memories,
        }

    async def forget_all(self, avatar_id: str, user_id: str) -> int:
        """Delete every fragment of this tenant; returns the count removed"""
        require_tenant(avatar_id, user_id)
        removed = await self.store.delete_all_fragments(avatar_id, user_id)
        self.retrieval.invalidate(avatar_id, user_id)
        logger.info("memory.forgot_all", avatar_id=avatar_id, user_id=user_id, removed=removed)
        return removed

    async def forget(self, fragment_id: str, avatar_id: str, user_id: str) -> bool:
        """Delete one fragment of this tenant; False when it does not exist here"""
        require_tenant(avatar_id, user_id)
        deleted = await self.store.delete_fragment(fragment_id, avatar_id, user_id)
        if deleted:
            self.retrieval.invalidate(avatar_id, user_id)
        return deleted
