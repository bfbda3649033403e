"""
Configuration management for Persona

Loads settings from environment variables with sensible defaults.
"""

import os
from pathlib import Path
from typing import Optional


class Config:
    """Application configuration"""

    # Project paths
    PROJECT_ROOT = Path(__file__).parent.parent.parent.parent
    DATA_DIR = Path(os.getenv("PERSONA_DATA_DIR", str(PROJECT_ROOT / "data")))

    # Database
    DATABASE_PATH = Path(os.getenv("PERSONA_DATABASE_PATH", str(DATA_DIR / "persona.db")))

    # Server settings
    HOST: str = os.getenv("PERSONA_HOST", "0.0.0.0")
    PORT: int = int(os.getenv("PERSONA_PORT", "8000"))

    # CORS settings
    CORS_ORIGINS: list[str] = os.getenv(
        "PERSONA_CORS_ORIGINS",
        "http://localhost:3000,http://localhost:8000"
    ).split(",")

    # Per-client request limit (slowapi syntax)
    RATE_LIMIT: str = os.getenv("PERSONA_RATE_LIMIT", "60/minute")

    # ============================================================
    # Service Provider Configuration
    # ============================================================

    # Supported speech providers: elevenlabs
    TTS_PROVIDER: str = os.getenv("PERSONA_TTS_PROVIDER", "elevenlabs")

    # Supported embedding providers: openai
    EMBEDDING_PROVIDER: str = os.getenv("PERSONA_EMBEDDING_PROVIDER", "openai")

    # Supported similarity indexes: sqlite, supabase
    SIMILARITY_PROVIDER: str = os.getenv("PERSONA_SIMILARITY_PROVIDER", "sqlite")

    # -------------------- TTS API Configuration --------------------
    TTS_API_KEY: Optional[str] = os.getenv("PERSONA_TTS_API_KEY")
    TTS_API_BASE_URL: str = os.getenv("PERSONA_TTS_API_BASE_URL", "https://api.elevenlabs.io/v1")
    TTS_API_MODEL: str = os.getenv("PERSONA_TTS_API_MODEL", "eleven_turbo_v2_5")
    TTS_OUTPUT_FORMAT: str = os.getenv("PERSONA_TTS_OUTPUT_FORMAT", "mp3_44100_128")
    TTS_DEFAULT_VOICE_ID: Optional[str] = os.getenv("PERSONA_TTS_VOICE_ID")
    TTS_HTTP_TIMEOUT_SEC: float = float(os.getenv("PERSONA_TTS_HTTP_TIMEOUT", "30.0"))

    # -------------------- Embedding API Configuration --------------------
    EMBEDDING_API_KEY: Optional[str] = os.getenv("PERSONA_EMBEDDING_API_KEY")
    EMBEDDING_API_BASE_URL: str = os.getenv("PERSONA_EMBEDDING_API_BASE_URL", "https://api.openai.com/v1")
    EMBEDDING_MODEL: str = os.getenv("PERSONA_EMBEDDING_MODEL", "text-embedding-3-small")
    EMBEDDING_DIMENSIONS: int = int(os.getenv("PERSONA_EMBEDDING_DIMENSIONS", "1536"))
    EMBEDDING_MAX_RETRIES: int = int(os.getenv("PERSONA_EMBEDDING_MAX_RETRIES", "3"))

    # -------------------- Supabase (similarity RPC) --------------------
    SUPABASE_URL: Optional[str] = os.getenv("PERSONA_SUPABASE_URL")
    SUPABASE_KEY: Optional[str] = os.getenv("PERSONA_SUPABASE_KEY")
    SUPABASE_MATCH_FUNCTION: str = os.getenv("PERSONA_SUPABASE_MATCH_FUNCTION", "match_memory_fragments")

    # ============================================================
    # Speech pipeline
    # ============================================================

    SEGMENTER_MIN_CHARS: int = int(os.getenv("PERSONA_SEGMENTER_MIN_CHARS", "5"))
    TTS_MAX_CONCURRENCY: int = int(os.getenv("PERSONA_TTS_MAX_CONCURRENCY", "3"))
    TTS_MAX_PENDING: int = int(os.getenv("PERSONA_TTS_MAX_PENDING", "6"))  # issued but undelivered
    TTS_SENTENCE_TIMEOUT_SEC: float = float(os.getenv("PERSONA_TTS_SENTENCE_TIMEOUT", "15.0"))

    # ============================================================
    # Semantic memory
    # ============================================================

    MEMORY_CACHE_TTL_SEC: float = float(os.getenv("PERSONA_MEMORY_CACHE_TTL", "60"))
    MEMORY_CACHE_MAX_ENTRIES: int = int(os.getenv("PERSONA_MEMORY_CACHE_MAX_ENTRIES", "2048"))
    MEMORY_SIMILARITY_THRESHOLD: float = float(os.getenv("PERSONA_MEMORY_THRESHOLD", "0.7"))
    MEMORY_TOP_K: int = int(os.getenv("PERSONA_MEMORY_TOP_K", "10"))
    MEMORY_CHAT_MAX_MEMORIES: int = int(os.getenv("PERSONA_MEMORY_CHAT_MAX", "5"))
    MEMORY_EXTRACTION_THRESHOLD: float = float(os.getenv("PERSONA_EXTRACTION_THRESHOLD", "0.5"))
    MEMORY_DEDUP_THRESHOLD: float = float(os.getenv("PERSONA_DEDUP_THRESHOLD", "0.95"))

    # Logging
    LOG_LEVEL: str = os.getenv("PERSONA_LOG_LEVEL", "INFO")

    @classmethod
    def validate(cls) -> bool:
        """Validate configuration and create necessary directories"""
        try:
            cls.DATA_DIR.mkdir(parents=True, exist_ok=True)
            cls.DATABASE_PATH.parent.mkdir(parents=True, exist_ok=True)

            if not 0.0 <= cls.MEMORY_SIMILARITY_THRESHOLD <= 1.0:
                raise ValueError(
                    f"PERSONA_MEMORY_THRESHOLD must be in [0, 1], got {cls.MEMORY_SIMILARITY_THRESHOLD}"
                )
            if not 0.0 <= cls.MEMORY_EXTRACTION_THRESHOLD <= 1.0:
                raise ValueError(
                    f"PERSONA_EXTRACTION_THRESHOLD must be in [0, 1], got {cls.MEMORY_EXTRACTION_THRESHOLD}"
                )
            if cls.MEMORY_CACHE_MAX_ENTRIES < 1:
                raise ValueError("PERSONA_MEMORY_CACHE_MAX_ENTRIES must be at least 1")
            if cls.TTS_MAX_CONCURRENCY < 1:
                raise ValueError("PERSONA_TTS_MAX_CONCURRENCY must be at least 1")
            if cls.TTS_MAX_PENDING < cls.TTS_MAX_CONCURRENCY:
                raise ValueError("PERSONA_TTS_MAX_PENDING must be >= PERSONA_TTS_MAX_CONCURRENCY")

            return True
        except Exception as e:
            print(f"[FAIL] Configuration validation failed: {e}")
            return False


# Global config instance
config = Config()
