"""
Conversation and message storage.

Messages are an append-only log ordered by (created_at, seq); conversation
metadata is the only mutable state. All writes pass through a single lock so
ordering and the monotonic updated_at never race each other.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Protocol

import asyncpg
from loguru import logger

from gateway.db import postgres
from gateway.errors import PersistenceFailure
from gateway.models.chat import Conversation, Message

SCHEMA = """
CREATE TABLE IF NOT EXISTS conversations (
    id          TEXT PRIMARY KEY,
    title       TEXT NOT NULL DEFAULT 'New Chat',
    model       TEXT NOT NULL DEFAULT '',
    created_at  TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS messages (
    seq              BIGSERIAL PRIMARY KEY,
    id               TEXT NOT NULL UNIQUE,
    conversation_id  TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
    role             TEXT NOT NULL CHECK (role IN ('user', 'assistant', 'system')),
    content          TEXT NOT NULL,
    model            TEXT,
    tokens_used      INTEGER,
    duration         DOUBLE PRECISION,
    created_at       TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_messages_conversation_id ON messages(conversation_id, created_at, seq);
CREATE INDEX IF NOT EXISTS idx_conversations_updated ON conversations(updated_at DESC);
"""

_CONVERSATION_COLUMNS = "id, title, model, created_at, updated_at"
_MESSAGE_COLUMNS = "id, conversation_id, role, content, model, tokens_used, duration, created_at"


class ConversationStore(Protocol):
    async def create_conversation(
        self, conversation_id: str, title: str, model: str, first_message: Message | None = None
    ) -> Conversation: ...

    async def get_conversation(self, conversation_id: str) -> Conversation | None: ...

    async def list_conversations(self) -> list[Conversation]: ...

    async def update_title(self, conversation_id: str, title: str) -> bool: ...

    async def touch(self, conversation_id: str) -> None: ...

    async def delete_conversation(self, conversation_id: str) -> bool: ...

    async def create_message(self, message: Message) -> None: ...

    async def get_messages(self, conversation_id: str) -> list[Message]: ...

    async def get_stats(self) -> dict[str, int]: ...


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _affected(status: str) -> bool:
    """asyncpg returns command tags such as 'UPDATE 1' / 'DELETE 0'."""
    return not status.endswith(" 0")


@asynccontextmanager
async def _storage_errors(action: str):
    try:
        yield
    except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as exc:
        logger.error("[store] {} failed: {}", action, exc)
        raise PersistenceFailure(f"Failed to {action}") from exc


async def _insert_message(conn: asyncpg.Connection, message: Message) -> None:
    """Append a message and bump its conversation; caller owns the transaction."""
    await conn.execute(
        f"""INSERT INTO messages ({_MESSAGE_COLUMNS})
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)""",
        message.id,
        message.conversation_id,
        message.role,
        message.content,
        message.model,
        message.tokens_used,
        message.duration,
        message.created_at,
    )
    await conn.execute(
        "UPDATE conversations SET updated_at = GREATEST(updated_at, $1) WHERE id = $2",
        message.created_at,
        message.conversation_id,
    )


class PostgresStore:
    def __init__(self) -> None:
        self._write_lock = asyncio.Lock()

    async def ensure_schema(self) -> None:
        async with _storage_errors("create schema"):
            await postgres.execute(SCHEMA)
        logger.info("[store] schema ready")

    async def create_conversation(
        self, conversation_id: str, title: str, model: str, first_message: Message | None = None
    ) -> Conversation:
        """Insert a conversation, optionally with its opening message in the same transaction."""
        now = _now()
        updated = now
        async with self._write_lock, _storage_errors("create conversation"):
            async with postgres.transaction() as conn:
                await conn.execute(
                    """INSERT INTO conversations (id, title, model, created_at, updated_at)
                       VALUES ($1, $2, $3, $4, $4)""",
                    conversation_id,
                    title,
                    model,
                    now,
                )
                if first_message is not None:
                    await _insert_message(conn, first_message)
                    updated = max(now, first_message.created_at)
        return Conversation(id=conversation_id, title=title, model=model, created_at=now, updated_at=updated)

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        async with _storage_errors("get conversation"):
            row = await postgres.fetch_one(
                f"SELECT {_CONVERSATION_COLUMNS} FROM conversations WHERE id = $1",
                conversation_id,
            )
        return Conversation(**dict(row)) if row else None

    async def list_conversations(self) -> list[Conversation]:
        async with _storage_errors("list conversations"):
            rows = await postgres.fetch_all(
                f"SELECT {_CONVERSATION_COLUMNS} FROM conversations ORDER BY updated_at DESC"
            )
        return [Conversation(**dict(r)) for r in rows]

    async def update_title(self, conversation_id: str, title: str) -> bool:
        async with self._write_lock, _storage_errors("update conversation"):
            status = await postgres.execute(
                """UPDATE conversations
                   SET title = $1, updated_at = GREATEST(updated_at, $2)
                   WHERE id = $3""",
                title,
                _now(),
                conversation_id,
            )
        return _affected(status)

    async def touch(self, conversation_id: str) -> None:
        async with self._write_lock, _storage_errors("touch conversation"):
            await postgres.execute(
                "UPDATE conversations SET updated_at = GREATEST(updated_at, $1) WHERE id = $2",
                _now(),
                conversation_id,
            )

    async def delete_conversation(self, conversation_id: str) -> bool:
        async with self._write_lock, _storage_errors("delete conversation"):
            status = await postgres.execute(
                "DELETE FROM conversations WHERE id = $1",
                conversation_id,
            )
        return _affected(status)

    async def create_message(self, message: Message) -> None:
        async with self._write_lock, _storage_errors("save message"):
            async with postgres.transaction() as conn:
                await _insert_message(conn, message)

    async def get_messages(self, conversation_id: str) -> list[Message]:
        async with _storage_errors("get messages"):
            rows = await postgres.fetch_all(
                f"""SELECT {_MESSAGE_COLUMNS} FROM messages
                    WHERE conversation_id = $1
                    ORDER BY created_at ASC, seq ASC""",
                conversation_id,
            )
        return [Message(**dict(r)) for r in rows]

    async def get_stats(self) -> dict[str, int]:
        async with _storage_errors("get stats"):
            row = await postgres.fetch_one(
                """SELECT
                       (SELECT COUNT(*) FROM conversations)                AS total_conversations,
                       (SELECT COUNT(*) FROM messages)                     AS total_messages,
                       (SELECT COALESCE(SUM(tokens_used), 0) FROM messages) AS total_tokens"""
            )
        return {k: int(v) for k, v in dict(row).items()}
