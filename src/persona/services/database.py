"""
Persistent store for conversation turns and memory fragments

Async interface to SQLite using aiosqlite. Every read and delete is scoped
by avatar_id AND user_id in the WHERE clause.
"""

import json
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

import aiosqlite
import numpy as np
import structlog

from persona.core.config import config
from persona.memory.models import (
    ConversationTurn,
    MemoryFragment,
    Speaker,
    require_tenant,
)

logger = structlog.get_logger()


SCHEMA = """
CREATE TABLE IF NOT EXISTS conversation_turns (
    id TEXT PRIMARY KEY,
    avatar_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    speaker TEXT NOT NULL,
    text TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_turns_tenant
    ON conversation_turns (avatar_id, user_id, created_at);

CREATE TABLE IF NOT EXISTS memory_fragments (
    id TEXT PRIMARY KEY,
    avatar_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    fragment_text TEXT NOT NULL,
    embedding BLOB NOT NULL,
    extraction_score REAL NOT NULL DEFAULT 0,
    turn_id TEXT,
    conversation_context TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_fragments_tenant
    ON memory_fragments (avatar_id, user_id, created_at);
"""

_FRAGMENT_COLUMNS = """
    id, avatar_id, user_id, fragment_text, embedding,
    extraction_score, turn_id, conversation_context, created_at
"""


def encode_embedding(vector: Iterable[float]) -> bytes:
    return np.asarray(list(vector), dtype=np.float32).tobytes()


def decode_embedding(blob: bytes) -> tuple[float, ...]:
    return tuple(float(v) for v in np.frombuffer(blob, dtype=np.float32))


def _row_to_fragment(row: aiosqlite.Row) -> MemoryFragment:
    return MemoryFragment(
        id=row["id"],
        avatar_id=row["avatar_id"],
        user_id=row["user_id"],
        text=row["fragment_text"],
        embedding=decode_embedding(row["embedding"]),
        score=row["extraction_score"],
        turn_id=row["turn_id"],
        conversation_context=json.loads(row["conversation_context"] or "{}"),
        created_at=datetime.fromisoformat(row["created_at"]),
    )


class MemoryStore:
    """
    Async store for Persona

    Handles conversation turns and memory fragments.
    """

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = Path(db_path or config.DATABASE_PATH)
        self._conn: Optional[aiosqlite.Connection] = None

    async def connect(self):
        """Establish database connection and make sure the schema exists"""
        if self._conn is None:
            self._conn = await aiosqlite.connect(str(self.db_path))
            self._conn.row_factory = aiosqlite.Row
            await self._conn.executescript(SCHEMA)
            await self._conn.commit()
            logger.info("db.connected", path=str(self.db_path))

    async def close(self):
        """Close database connection"""
        if self._conn:
            await self._conn.close()
            self._conn = None
            logger.info("db.closed")

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _connection(self) -> aiosqlite.Connection:
        if not self._conn:
            await self.connect()
        return self._conn

    # Conversation turns

    async def save_turn(self, turn: ConversationTurn) -> str:
        """Persist a conversation turn. Returns: turn ID"""
        conn = await self._connection()
        await conn.execute(
            """
            INSERT INTO conversation_turns (id, avatar_id, user_id, speaker, text, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (turn.id, turn.avatar_id, turn.user_id, turn.speaker.value, turn.text,
             turn.timestamp.isoformat()),
        )
        await conn.commit()

        logger.debug("db.turn.saved", id=turn.id, avatar_id=turn.avatar_id, user_id=turn.user_id)
        return turn.id

    async def get_turns(self, avatar_id: str, user_id: str, limit: int = 50) -> list[ConversationTurn]:
        """Recent turns for one tenant, newest first"""
        require_tenant(avatar_id, user_id)
        conn = await self._connection()
        cursor = await conn.execute(
            """
            SELECT id, avatar_id, user_id, speaker, text, created_at
            FROM conversation_turns
            WHERE avatar_id = ? AND user_id = ?
            ORDER BY created_at DESC
            LIMIT ?
            """,
            (avatar_id, user_id, limit),
        )
        rows = await cursor.fetchall()
        return [
            ConversationTurn(
                id=row["id"],
                avatar_id=row["avatar_id"],
                user_id=row["user_id"],
                speaker=Speaker(row["speaker"]),
                text=row["text"],
                timestamp=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]

    # Memory fragments

    def _fragment_params(self, fragment: MemoryFragment) -> tuple:
        if fragment.embedding is None:
            raise ValueError(f"Fragment {fragment.id} has no embedding; attach one before storing")
        return (
            fragment.id,
            fragment.avatar_id,
            fragment.user_id,
            fragment.text,
            encode_embedding(fragment.embedding),
            fragment.score,
            fragment.turn_id,
            json.dumps(fragment.conversation_context, default=str),
            fragment.created_at.isoformat(),
        )

    async def save_fragments(self, fragments: list[MemoryFragment]) -> list[str]:
        """Persist fragments in one transaction. Returns: fragment IDs in input order"""
        if not fragments:
            return []

        params = [self._fragment_params(f) for f in fragments]
        conn = await self._connection()
        await conn.executemany(
            f"INSERT INTO memory_fragments ({_FRAGMENT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            params,
        )
        await conn.commit()

        logger.info("db.fragments.saved",
                    count=len(fragments),
                    avatar_id=fragments[0].avatar_id,
                    user_id=fragments[0].user_id)
        return [f.id for f in fragments]

    async def save_fragment(self, fragment: MemoryFragment) -> str:
        ids = await self.save_fragments([fragment])
        return ids[0]

    async def get_fragment(self, fragment_id: str, avatar_id: str, user_id: str) -> Optional[MemoryFragment]:
        require_tenant(avatar_id, user_id)
        conn = await self._connection()
        cursor = await conn.execute(
            f"""
            SELECT {_FRAGMENT_COLUMNS}
            FROM memory_fragments
            WHERE id = ? AND avatar_id = ? AND user_id = ?
            """,
            (fragment_id, avatar_id, user_id),
        )
        row = await cursor.fetchone()
        return _row_to_fragment(row) if row else None

    async def list_fragments(self, avatar_id: str, user_id: str,
                             limit: Optional[int] = None, offset: int = 0) -> list[MemoryFragment]:
        """All fragments for one tenant, newest first"""
        require_tenant(avatar_id, user_id)
        conn = await self._connection()
        cursor = await conn.execute(
            f"""
            SELECT {_FRAGMENT_COLUMNS}
            FROM memory_fragments
            WHERE avatar_id = ? AND user_id = ?
            ORDER BY created_at DESC
            LIMIT ? OFFSET ?
            """,
            (avatar_id, user_id, -1 if limit is None else limit, offset),
        )
        rows = await cursor.fetchall()

        logger.debug("db.fragments.fetched", avatar_id=avatar_id, user_id=user_id, count=len(rows))
        return [_row_to_fragment(row) for row in rows]

    async def count_fragments(self, avatar_id: str, user_id: str) -> int:
        require_tenant(avatar_id, user_id)
        conn = await self._connection()
        cursor = await conn.execute(
            "SELECT COUNT(*) FROM memory_fragments WHERE avatar_id = ? AND user_id = ?",
            (avatar_id, user_id),
        )
        row = await cursor.fetchone()
        return int(row[0])

    async def fragment_stats(self, avatar_id: str, user_id: str) -> dict:
        """Count plus oldest and newest created_at (None when the tenant has no fragments)"""
        require_tenant(avatar_id, user_id)
        conn = await self._connection()
        cursor = await conn.execute(
            """
            SELECT COUNT(*) AS total, MIN(created_at) AS oldest, MAX(created_at) AS newest
            FROM memory_fragments
            WHERE avatar_id = ? AND user_id = ?
            """,
            (avatar_id, user_id),
        )
        row = await cursor.fetchone()
        return {
            "total_fragments": int(row["total"]),
            "oldest_memory": datetime.fromisoformat(row["oldest"]) if row["oldest"] else None,
            "newest_memory": datetime.fromisoformat(row["newest"]) if row["newest"] else None,
        }

    async def delete_fragment(self, fragment_id: str, avatar_id: str, user_id: str) -> bool:
        require_tenant(avatar_id, user_id)
        conn = await self._connection()
        cursor = await conn.execute(
            "DELETE FROM memory_fragments WHERE id = ? AND avatar_id = ? AND user_id = ?",
            (fragment_id, avatar_id, user_id),
        )
        await conn.commit()

        deleted = cursor.rowcount > 0
        logger.info("db.fragment.deleted", id=fragment_id, avatar_id=avatar_id, user_id=user_id, deleted=deleted)
        return deleted

    async def delete_all_fragments(self, avatar_id: str, user_id: str) -> int:
        require_tenant(avatar_id, user_id)
        conn = await self._connection()
        cursor = await conn.execute(
            "DELETE FROM memory_fragments WHERE avatar_id = ? AND user_id = ?",
            (avatar_id, user_id),
        )
        await conn.commit()

        logger.info("db.fragments.deleted_all", avatar_id=avatar_id, user_id=user_id, count=cursor.rowcount)
        return cursor.rowcount
