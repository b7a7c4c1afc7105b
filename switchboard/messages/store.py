"""Conversation and message persistence with SQLite backend."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any
from uuid import uuid4

import aiosqlite

from switchboard.models import (
    Conversation,
    Message,
    MessageType,
    ProcessingStatus,
    utcnow_iso,
)
from switchboard.utils.logging import get_logger

log = get_logger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    organization_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    title TEXT NOT NULL DEFAULT '',
    model TEXT NOT NULL,
    temperature REAL NOT NULL,
    max_tokens INTEGER,
    system_prompt TEXT,
    kb_ids TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS messages (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    conversation_id TEXT NOT NULL,
    organization_id TEXT NOT NULL,
    message_type TEXT NOT NULL,
    content TEXT NOT NULL DEFAULT '',
    processing_status TEXT NOT NULL,
    sources TEXT NOT NULL DEFAULT '[]',
    metadata TEXT NOT NULL DEFAULT '{}',
    error_message TEXT,
    generation INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_messages_conversation
    ON messages (conversation_id, seq);
"""

_MESSAGE_COLUMNS = (
    "id, conversation_id, organization_id, message_type, content, processing_status, "
    "sources, metadata, error_message, generation, created_at, updated_at"
)


def _row_to_message(row: Any) -> Message:
    return Message(
        id=row[0],
        conversation_id=row[1],
        organization_id=row[2],
        message_type=MessageType(row[3]),
        content=row[4],
        processing_status=ProcessingStatus(row[5]),
        sources=json.loads(row[6]),
        metadata=json.loads(row[7]),
        error_message=row[8],
        generation=row[9],
        created_at=row[10],
        updated_at=row[11],
    )


class MessageStore:
    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def start(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(str(self._db_path))
        await self._db.executescript(_SCHEMA)
        await self._db.commit()

    async def stop(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def create_conversation(
        self,
        organization_id: str,
        user_id: str,
        title: str = "",
        model: str = "gpt-4",
        temperature: float = 0.7,
        max_tokens: int | None = None,
        system_prompt: str | None = None,
        kb_ids: list[str] | None = None,
    ) -> Conversation:
        assert self._db is not None
        conversation = Conversation(
            id=uuid4().hex,
            organization_id=organization_id,
            user_id=user_id,
            title=title,
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            system_prompt=system_prompt,
            kb_ids=list(kb_ids or []),
        )
        await self._db.execute(
            "INSERT INTO conversations (id, organization_id, user_id, title, model, "
            "temperature, max_tokens, system_prompt, kb_ids, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                conversation.id,
                organization_id,
                user_id,
                title,
                model,
                temperature,
                max_tokens,
                system_prompt,
                json.dumps(conversation.kb_ids),
                utcnow_iso(),
            ),
        )
        await self._db.commit()
        return conversation

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        assert self._db is not None
        cursor = await self._db.execute(
            "SELECT id, organization_id, user_id, title, model, temperature, "
            "max_tokens, system_prompt, kb_ids FROM conversations WHERE id = ?",
            (conversation_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return Conversation(
            id=row[0],
            organization_id=row[1],
            user_id=row[2],
            title=row[3],
            model=row[4],
            temperature=row[5],
            max_tokens=row[6],
            system_prompt=row[7],
            kb_ids=json.loads(row[8]),
        )

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def add_message(
        self,
        conversation_id: str,
        organization_id: str,
        message_type: MessageType,
        content: str = "",
        status: ProcessingStatus = ProcessingStatus.PENDING,
        metadata: dict[str, Any] | None = None,
    ) -> Message:
        assert self._db is not None
        message = Message(
            id=uuid4().hex,
            conversation_id=conversation_id,
            organization_id=organization_id,
            message_type=message_type,
            content=content,
            processing_status=status,
            metadata=metadata or {},
        )
        await self._db.execute(
            f"INSERT INTO messages ({_MESSAGE_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                message.id,
                conversation_id,
                organization_id,
                message_type.value,
                content,
                status.value,
                "[]",
                json.dumps(message.metadata),
                None,
                0,
                message.created_at,
                message.updated_at,
            ),
        )
        await self._db.commit()
        return message

    async def get_message(self, message_id: str) -> Message | None:
        assert self._db is not None
        cursor = await self._db.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = ?",
            (message_id,),
        )
        row = await cursor.fetchone()
        return _row_to_message(row) if row else None

    async def list_messages(self, conversation_id: str) -> list[Message]:
        """All messages of a conversation, oldest first."""
        assert self._db is not None
        cursor = await self._db.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages "
            "WHERE conversation_id = ? ORDER BY seq ASC",
            (conversation_id,),
        )
        rows = await cursor.fetchall()
        return [_row_to_message(row) for row in rows]

    async def begin_processing(self, message_id: str) -> int | None:
        """Move a message to processing under a fresh generation.

        Clears content, sources, metadata and error in the same write. Returns the new
        generation, or None if the message does not exist.
        """
        assert self._db is not None
        cursor = await self._db.execute(
            "UPDATE messages SET processing_status = ?, content = '', sources = '[]', "
            "metadata = '{}', error_message = NULL, generation = generation + 1, updated_at = ? "
            "WHERE id = ? RETURNING generation",
            (ProcessingStatus.PROCESSING.value, utcnow_iso(), message_id),
        )
        row = await cursor.fetchone()
        await self._db.commit()
        return row[0] if row else None

    async def update_status(
        self,
        message_id: str,
        status: ProcessingStatus,
        content: str | None = None,
        sources: list[dict[str, Any]] | None = None,
        error_message: str | None = None,
        generation: int | None = None,
    ) -> bool:
        """Finish a processing message in a single write.

        Only a message currently in ``processing`` (and, when given, still at
        ``generation``) is updated. Returns False when the write was rejected.
        """
        assert self._db is not None
        assignments = ["processing_status = ?", "error_message = ?", "updated_at = ?"]
        params: list[Any] = [
            status.value,
            error_message if status is ProcessingStatus.ERROR else None,
            utcnow_iso(),
        ]
        if content is not None:
            assignments.append("content = ?")
            params.append(content)
        if sources is not None:
            assignments.append("sources = ?")
            params.append(json.dumps(sources))

        where = "id = ? AND processing_status = ?"
        params.extend([message_id, ProcessingStatus.PROCESSING.value])
        if generation is not None:
            where += " AND generation = ?"
            params.append(generation)

        cursor = await self._db.execute(
            f"UPDATE messages SET {', '.join(assignments)} WHERE {where}",
            params,
        )
        await self._db.commit()
        return cursor.rowcount > 0

    async def update_metadata(
        self,
        message_id: str,
        metadata: dict[str, Any],
        generation: int | None = None,
    ) -> bool:
        """Merge ``metadata`` into the stored metadata."""
        assert self._db is not None
        message = await self.get_message(message_id)
        if message is None:
            return False
        if generation is not None and message.generation != generation:
            return False
        merged = {**message.metadata, **metadata}

        where = "id = ?"
        params: list[Any] = [json.dumps(merged), utcnow_iso(), message_id]
        if generation is not None:
            where += " AND generation = ?"
            params.append(generation)
        cursor = await self._db.execute(
            f"UPDATE messages SET metadata = ?, updated_at = ? WHERE {where}",
            params,
        )
        await self._db.commit()
        return cursor.rowcount > 0

    async def list_stuck(self, cutoff: str) -> list[Message]:
        """Messages still processing whose last update is older than ``cutoff``."""
        assert self._db is not None
        cursor = await self._db.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages "
            "WHERE processing_status = ? AND updated_at < ? ORDER BY seq ASC",
            (ProcessingStatus.PROCESSING.value, cutoff),
        )
        rows = await cursor.fetchall()
        return [_row_to_message(row) for row in rows]
