"""Per-user language preference."""

from __future__ import annotations

from telechat_bot.storage.database import Database

DEFAULT_LANGUAGE = "en"


class PreferenceRepository:
    def __init__(self, db: Database):
        self._db = db

    async def get_language(self, user_id: int) -> str:
        cursor = await self._db.conn.execute(
            "SELECT language_code FROM user_preferences WHERE user_id = ?",
            (user_id,),
        )
        row = await cursor.fetchone()
        if row is None or not row["language_code"]:
            return DEFAULT_LANGUAGE
        return row["language_code"]

    async def set_language(self, user_id: int, language_code: str) -> None:
        async with self._db.write_lock:
            await self._db.conn.execute(
                """INSERT INTO user_preferences (user_id, language_code) VALUES (?, ?)
                   ON CONFLICT(user_id) DO UPDATE SET language_code = excluded.language_code""",
                (user_id, language_code),
            )
            await self._db.conn.commit()
