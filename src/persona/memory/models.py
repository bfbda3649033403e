"""
Memory data model

Every fragment carries both avatar_id and user_id. Those two ids together are
the tenant: queries and writes are always scoped to the pair.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple


def _new_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def require_tenant(avatar_id: str, user_id: str) -> None:
    """Both ids must be present; an unscoped query or write is a bug"""
    if not avatar_id or not str(avatar_id).strip():
        raise ValueError("avatar_id is required")
    if not user_id or not str(user_id).strip():
        raise ValueError("user_id is required")


class Speaker(str, Enum):
    USER = "user"
    AVATAR = "avatar"


@dataclass(frozen=True)
class ConversationTurn:
    """One message, recorded once and never mutated"""
    speaker: Speaker
    text: str
    avatar_id: str
    user_id: str
    timestamp: datetime = field(default_factory=_utcnow)
    id: str = field(default_factory=_new_id)

    def __post_init__(self):
        require_tenant(self.avatar_id, self.user_id)
        if not isinstance(self.speaker, Speaker):
            object.__setattr__(self, "speaker", Speaker(self.speaker))


@dataclass(frozen=True)
class MemoryFragment:
    """
    A persisted unit of personal memory.

    `score` means memory-worthiness for extractor candidates and similarity
    for retrieval results. `embedding` is None until attached before storage.
    """
    text: str
    avatar_id: str
    user_id: str
    id: str = field(default_factory=_new_id)
    embedding: Optional[Tuple[float, ...]] = None
    score: float = 0.0
    extracted_from: Optional[ConversationTurn] = None
    turn_id: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    conversation_context: Dict[str, Any] = field(default_factory=dict, compare=False)

    def __post_init__(self):
        require_tenant(self.avatar_id, self.user_id)
        if self.embedding is not None and not isinstance(self.embedding, tuple):
            object.__setattr__(self, "embedding", tuple(float(v) for v in self.embedding))
        if self.turn_id is None and self.extracted_from is not None:
            object.__setattr__(self, "turn_id", self.extracted_from.id)

    @property
    def tenant(self) -> Tuple[str, str]:
        return (self.avatar_id, self.user_id)


@dataclass(frozen=True)
class RetrievalQuery:
    """Transient; never persisted"""
    query_text: str
    avatar_id: str
    user_id: str
    threshold: float = 0.7
    top_k: int = 10

    def __post_init__(self):
        require_tenant(self.avatar_id, self.user_id)
        if not 0.0 <= self.threshold <= 1.0:
            raise ValueError(f"threshold must be in [0, 1], got {self.threshold}")
        if self.top_k < 1:
            raise ValueError(f"top_k must be at least 1, got {self.top_k}")

    @property
    def tenant(self) -> Tuple[str, str]:
        return (self.avatar_id, self.user_id)


@dataclass(frozen=True)
class SimilarityMatch:
    """A similarity index hit: the (fragment_id, score) pair plus the stored row"""
    fragment_id: str
    score: float
    fragment: MemoryFragment
