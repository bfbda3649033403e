"""
Persona - FastAPI Main Application

Entry point for the avatar speech and memory API server.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from persona import __version__
from persona.core.config import config
from persona.core.error_handling import IsolationViolation, create_error_response, get_error_handler
from persona.core.logging_config import configure_logging
from persona.memory.retrieval import MemoryRetrievalEngine
from persona.memory.service import MemoryService
from persona.services.database import MemoryStore
from persona.services.embedding import get_embedding_client
from persona.services.similarity import create_similarity_index
from persona.services.tts import get_speech_provider
from persona.api.memories import router as memories_router
from persona.api.voice import router as voice_router

# Configure unified structured logging
configure_logging()
logger = structlog.get_logger()

# Initialize rate limiter
limiter = Limiter(key_func=get_remote_address)


def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    logger.warning(
        "rate_limit_exceeded",
        client_ip=get_remote_address(request),
        path=request.url.path,
        limit=str(exc.detail)
    )
    return JSONResponse(
        status_code=429,
        content={"error": "Rate limit exceeded. Please try again later."},
    )


def isolation_violation_handler(request: Request, exc: IsolationViolation):
    """Never degrade: the request fails and the violation is logged as fatal"""
    error = create_error_response(exc, operation=request.url.path, component="api")
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": {"id": error["error"]["id"], "type": "IsolationViolation"}},
    )


async def _close_quietly(resource, name: str) -> None:
    close = getattr(resource, "close", None)
    if close is None:
        return
    try:
        await close()
    except Exception as e:
        logger.warning("persona.shutdown.close_failed", resource=name, error=str(e))


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager

    Startup: validate configuration, open the store, build the providers and
    the memory service. Shutdown: close HTTP clients and the database.
    """
    logger.info("persona.startup", version=app.version)

    if not config.validate():
        logger.error("persona.startup.failed", reason="config_validation_failed")
        raise RuntimeError("Configuration validation failed")

    store = MemoryStore()
    await store.connect()

    embedder = get_embedding_client()
    index = create_similarity_index(store)
    retrieval = MemoryRetrievalEngine(embedder, index)

    app.state.store = store
    app.state.memory_service = MemoryService(store, embedder, retrieval)
    app.state.speech_provider = get_speech_provider()

    logger.info("persona.startup.complete",
                database=str(config.DATABASE_PATH),
                similarity=config.SIMILARITY_PROVIDER,
                tts=config.TTS_PROVIDER)

    yield  # Server is running

    logger.info("persona.shutdown", message="Cleaning up resources")
    await _close_quietly(app.state.speech_provider, "speech_provider")
    await _close_quietly(embedder, "embedding_client")
    await _close_quietly(index, "similarity_index")
    await store.close()
    logger.info("persona.shutdown.complete")


# Create FastAPI application
app = FastAPI(
    title="Persona - Avatar Speech & Memory",
    description="Streaming avatar speech and tenant-isolated semantic memory",
    version=__version__,
    lifespan=lifespan,
)

# Configure rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
app.add_exception_handler(IsolationViolation, isolation_violation_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Authorization", "Content-Type"],
)


# Health check endpoint
@app.get("/health", tags=["System"])
@limiter.limit("30/minute")
async def health_check(request: Request):
    """Health check endpoint"""
    service = getattr(request.app.state, "memory_service", None)
    return JSONResponse({
        "status": "healthy",
        "version": app.version,
        "database": str(config.DATABASE_PATH.exists()),
        "memory_cache": service.retrieval.cache.stats() if service else None,
        "errors": get_error_handler().get_stats(),
    })


# Include routers
app.include_router(memories_router)
app.include_router(voice_router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("persona.main:app", host=config.HOST, port=config.PORT)
