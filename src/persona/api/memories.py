"""
Memory API

Extract memories from a user message, search them semantically, read stats,
export, list or delete them. Every request names both avatar_id and user_id.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from slowapi import Limiter
from slowapi.util import get_remote_address

from persona.core.config import config
from persona.memory.models import ConversationTurn, MemoryFragment, Speaker
from persona.memory.retrieval import format_memories
from persona.memory.service import MemoryService

logger = structlog.get_logger()

router = APIRouter(prefix="/api/memories", tags=["memories"])

limiter = Limiter(key_func=get_remote_address)


def get_memory_service(request: Request) -> MemoryService:
    return request.app.state.memory_service


# Models
class TenantRequest(BaseModel):
    avatar_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)


class ExtractRequest(TenantRequest):
    """Message to mine for memories"""
    text: str = Field(..., min_length=1, max_length=10000)
    context: Optional[Dict[str, Any]] = None
    extraction_threshold: Optional[float] = Field(None, ge=0.0, le=1.0)
    store: bool = True


class SearchRequest(TenantRequest):
    query: str = Field(..., max_length=2000)
    threshold: Optional[float] = Field(None, ge=0.0, le=1.0)
    top_k: Optional[int] = Field(None, ge=1, le=100)


class MemoryResponse(BaseModel):
    id: str
    text: str
    avatar_id: str
    user_id: str
    score: float
    turn_id: Optional[str]
    created_at: datetime
    conversation_context: Dict[str, Any]

    @classmethod
    def from_fragment(cls, fragment: MemoryFragment) -> "MemoryResponse":
        return cls(
            id=fragment.id,
            text=fragment.text,
            avatar_id=fragment.avatar_id,
            user_id=fragment.user_id,
            score=fragment.score,
            turn_id=fragment.turn_id,
            created_at=fragment.created_at,
            conversation_context=fragment.conversation_context,
        )


class ExtractResponse(BaseModel):
    memories: List[MemoryResponse]
    count: int
    stored: bool


class SearchResponse(BaseModel):
    memories: List[MemoryResponse]
    count: int
    prompt_context: str


class MemoryList(BaseModel):
    memories: List[MemoryResponse]
    total: int
    page: int
    per_page: int


class MemoryStats(BaseModel):
    total_fragments: int
    oldest_memory: Optional[datetime] = None
    newest_memory: Optional[datetime] = None


# API Endpoints
@router.post("/extract", response_model=ExtractResponse)
@limiter.limit(config.RATE_LIMIT)
async def extract_memories(
    request: Request,
    body: ExtractRequest,
    service: MemoryService = Depends(get_memory_service),
):
    """
    Extract memory fragments from a user message

    With store=false the candidates are returned without embedding or
    persisting them.
    """
    logger.info("memories.extract", avatar_id=body.avatar_id, user_id=body.user_id, store=body.store)

    if not body.store:
        fragments = service.extractor.extract(
            body.text,
            body.avatar_id,
            body.user_id,
            context=body.context,
            extraction_threshold=body.extraction_threshold,
        )
    else:
        turn = ConversationTurn(
            speaker=Speaker.USER,
            text=body.text,
            avatar_id=body.avatar_id,
            user_id=body.user_id,
        )
        await service.record_turn(turn)
        fragments = await service.process_turn(
            turn,
            context=body.context,
            extraction_threshold=body.extraction_threshold,
        )

    return ExtractResponse(
        memories=[MemoryResponse.from_fragment(f) for f in fragments],
        count=len(fragments),
        stored=body.store,
    )


@router.post("/search", response_model=SearchResponse)
@limiter.limit(config.RATE_LIMIT)
async def search_memories(
    request: Request,
    body: SearchRequest,
    service: MemoryService = Depends(get_memory_service),
):
    """Semantic search over one tenant's memories, highest similarity first"""
    fragments = await service.retrieval.retrieve(
        body.query,
        body.avatar_id,
        body.user_id,
        threshold=body.threshold,
        top_k=body.top_k,
    )

    logger.info("memories.search", avatar_id=body.avatar_id, user_id=body.user_id, returned=len(fragments))

    return SearchResponse(
        memories=[MemoryResponse.from_fragment(f) for f in fragments],
        count=len(fragments),
        prompt_context=format_memories(fragments),
    )


@router.get("", response_model=MemoryList)
@limiter.limit(config.RATE_LIMIT)
async def list_memories(
    request: Request,
    avatar_id: str = Query(..., min_length=1),
    user_id: str = Query(..., min_length=1),
    page: int = Query(1, ge=1, description="Page number"),
    per_page: int = Query(20, ge=1, le=100, description="Items per page"),
    service: MemoryService = Depends(get_memory_service),
):
    """List one tenant's stored memories, newest first"""
    offset = (page - 1) * per_page
    fragments = await service.list_memories(avatar_id, user_id, limit=per_page, offset=offset)
    total = await service.store.count_fragments(avatar_id, user_id)

    return MemoryList(
        memories=[MemoryResponse.from_fragment(f) for f in fragments],
        total=total,
        page=page,
        per_page=per_page,
    )


@router.get("/stats", response_model=MemoryStats)
@limiter.limit(config.RATE_LIMIT)
async def memory_stats(
    request: Request,
    avatar_id: str = Query(..., min_length=1),
    user_id: str = Query(..., min_length=1),
    service: MemoryService = Depends(get_memory_service),
):
    """Fragment count and the oldest / newest memory dates for one tenant"""
    return MemoryStats(**await service.stats(avatar_id, user_id))


@router.get("/export")
@limiter.limit(config.RATE_LIMIT)
async def export_memories(
    request: Request,
    avatar_id: str = Query(..., min_length=1),
    user_id: str = Query(..., min_length=1),
    include_embeddings: bool = Query(False),
    service: MemoryService = Depends(get_memory_service),
):
    """Download one tenant's memories as a JSON attachment, oldest first"""
    data = await service.export(avatar_id, user_id, include_embeddings=include_embeddings)
    filename = f"memories-{datetime.now(timezone.utc):%Y%m%d}.json"

    return JSONResponse(
        content=data,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/{fragment_id}", response_model=MemoryResponse)
@limiter.limit(config.RATE_LIMIT)
async def get_memory(
    request: Request,
    fragment_id: str,
    avatar_id: str = Query(..., min_length=1),
    user_id: str = Query(..., min_length=1),
    service: MemoryService = Depends(get_memory_service),
):
    """One memory; 404 unless it belongs to this avatar and user"""
    fragment = await service.get_memory(fragment_id, avatar_id, user_id)
    if fragment is None:
        raise HTTPException(status_code=404, detail=f"Memory not found: {fragment_id}")

    return MemoryResponse.from_fragment(fragment)


@router.delete("")
@limiter.limit(config.RATE_LIMIT)
async def delete_all_memories(
    request: Request,
    avatar_id: str = Query(..., min_length=1),
    user_id: str = Query(..., min_length=1),
    service: MemoryService = Depends(get_memory_service),
):
    """Delete every memory of one avatar/user pair"""
    deleted = await service.forget_all(avatar_id, user_id)
    logger.info("memories.deleted_all", avatar_id=avatar_id, user_id=user_id, deleted=deleted)

    return {"success": True, "deleted_count": deleted}


@router.delete("/{fragment_id}")
@limiter.limit(config.RATE_LIMIT)
async def delete_memory(
    request: Request,
    fragment_id: str,
    avatar_id: str = Query(..., min_length=1),
    user_id: str = Query(..., min_length=1),
    service: MemoryService = Depends(get_memory_service),
):
    """Delete one memory; 404 unless it belongs to this avatar and user"""
    deleted = await service.forget(fragment_id, avatar_id, user_id)
    if not deleted:
        raise HTTPException(status_code=404, detail=f"Memory not found: {fragment_id}")

    return {"success": True, "id": fragment_id}
