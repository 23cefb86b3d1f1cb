"""Bounded per-conversation message log."""

from __future__ import annotations

from datetime import datetime

from telechat_bot.core.types import Role
from telechat_bot.log import get_logger
from telechat_bot.messenger.models import ConversationKey
from telechat_bot.storage.database import Database
from telechat_bot.storage.models import Turn

logger = get_logger(__name__)

DEFAULT_MAX_TURNS = 20


class ConversationRepository:
    """Append-only turn log, pruned to the newest ``max_turns`` per key."""

    def __init__(self, db: Database, max_turns: int = DEFAULT_MAX_TURNS):
        self._db = db
        self._max_turns = max_turns

    @property
    def max_turns(self) -> int:
        return self._max_turns

    async def append_message(self, key: ConversationKey, role: Role | str, content: str) -> int:
        """Insert a turn and drop everything older than the newest ``max_turns``.

        Insert and prune are committed together. Returns the new row id.
        """
        role = Role(role)
        if role not in (Role.USER, Role.ASSISTANT):
            raise ValueError(f"cannot store turn with role {role!r}")

        async with self._db.write_lock:
            conn = self._db.conn
            try:
                cursor = await conn.execute(
                    "INSERT INTO chat_history (chat_id, thread_id, role, content) VALUES (?, ?, ?, ?)",
                    (key.chat_id, key.thread_id, role.value, content),
                )
                await conn.execute(
                    """DELETE FROM chat_history
                       WHERE chat_id = ? AND thread_id = ?
                         AND id NOT IN (
                           SELECT id FROM chat_history
                           WHERE chat_id = ? AND thread_id = ?
                           ORDER BY id DESC
                           LIMIT ?
                         )""",
                    (key.chat_id, key.thread_id, key.chat_id, key.thread_id, self._max_turns),
                )
                await conn.commit()
            except Exception:
                await conn.rollback()
                raise
        return cursor.lastrowid  # type: ignore[return-value]

    async def read_recent_messages(self, key: ConversationKey, limit: int | None = None) -> list[Turn]:
        """Return up to ``limit`` most recent turns, oldest first."""
        limit = self._max_turns if limit is None else limit
        cursor = await self._db.conn.execute(
            """SELECT id, chat_id, thread_id, role, content, created_at FROM chat_history
               WHERE chat_id = ? AND thread_id = ?
               ORDER BY id DESC
               LIMIT ?""",
            (key.chat_id, key.thread_id, limit),
        )
        rows = await cursor.fetchall()
        return [self._row_to_turn(row) for row in reversed(rows)]

    async def count_messages(self, key: ConversationKey) -> int:
        cursor = await self._db.conn.execute(
            "SELECT COUNT(*) FROM chat_history WHERE chat_id = ? AND thread_id = ?",
            (key.chat_id, key.thread_id),
        )
        row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def clear_history(self, key: ConversationKey) -> int:
        """Delete all turns for a key. Returns number of deleted rows."""
        async with self._db.write_lock:
            cursor = await self._db.conn.execute(
                "DELETE FROM chat_history WHERE chat_id = ? AND thread_id = ?",
                (key.chat_id, key.thread_id),
            )
            await self._db.conn.commit()
        logger.info("history_cleared", chat_id=key.chat_id, thread_id=key.thread_id, deleted=cursor.rowcount)
        return cursor.rowcount

    @staticmethod
    def _row_to_turn(row) -> Turn:
        return Turn(
            key=ConversationKey(row["chat_id"], row["thread_id"]),
            role=row["role"],
            content=row["content"],
            id=row["id"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )
