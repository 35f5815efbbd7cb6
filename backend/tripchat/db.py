import json
import uuid

import aiosqlite

from tripchat.config import settings
from tripchat.errors import PersistenceError

DB_PATH = settings.db_path


async def init_db(db_path: str = DB_PATH):
    """Initialize the schema for chat threads, transcripts and saved itineraries."""
    async with aiosqlite.connect(db_path) as db:
        await db.execute("""
            CREATE TABLE IF NOT EXISTS chat_threads (
                thread_id TEXT PRIMARY KEY,
                user_id TEXT,
                title TEXT,
                updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS chat_messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                thread_id TEXT NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP
            )
        """)

        await db.execute("""
            CREATE INDEX IF NOT EXISTS idx_chat_messages_thread
            ON chat_messages(thread_id, id)
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS itineraries (
                itinerary_id TEXT PRIMARY KEY,
                thread_id TEXT,
                itinerary_text TEXT NOT NULL,
                structured_json TEXT,
                metadata_json TEXT,
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP
            )
        """)
        await db.commit()


class SqliteItineraryStore:
    """Durable store for generated itineraries, keyed by chat thread."""

    def __init__(self, db_path: str = DB_PATH):
        self.db_path = db_path

    async def save(self, chat_id: str | None, itinerary: dict) -> dict:
        itinerary_id = str(uuid.uuid4())
        try:
            await self._insert(itinerary_id, chat_id, itinerary)
        except aiosqlite.Error as e:
            raise PersistenceError(f"Saving itinerary for chat {chat_id} failed: {e}") from e
        return {"itinerary_id": itinerary_id}

    async def _insert(self, itinerary_id: str, chat_id: str | None, itinerary: dict) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "INSERT INTO itineraries (itinerary_id, thread_id, itinerary_text, structured_json, metadata_json) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    itinerary_id,
                    chat_id,
                    itinerary.get("itinerary_text") or "",
                    json.dumps(itinerary.get("structured_itinerary")),
                    json.dumps(itinerary.get("metadata") or {}, default=str),
                ),
            )
            await db.commit()

    async def list_for_chat(self, chat_id: str) -> list[dict]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT itinerary_id, itinerary_text, structured_json, metadata_json, created_at "
                "FROM itineraries WHERE thread_id = ? ORDER BY created_at",
                (chat_id,),
            )
            rows = await cursor.fetchall()
        return [
            {
                "itinerary_id": row["itinerary_id"],
                "itinerary_text": row["itinerary_text"],
                "structured_itinerary": json.loads(row["structured_json"]) if row["structured_json"] else None,
                "metadata": json.loads(row["metadata_json"]) if row["metadata_json"] else {},
                "created_at": row["created_at"],
            }
            for row in rows
        ]


class SqliteChatHistory:
    """Append-only chat transcript."""

    def __init__(self, db_path: str = DB_PATH):
        self.db_path = db_path

    async def append(self, chat_id: str | None, role: str, text: str) -> None:
        if not chat_id:
            return
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    "INSERT INTO chat_messages (thread_id, role, content) VALUES (?, ?, ?)",
                    (chat_id, role, text),
                )
                await db.execute(
                    "UPDATE chat_threads SET updated_at = CURRENT_TIMESTAMP WHERE thread_id = ?",
                    (chat_id,),
                )
                await db.commit()
        except aiosqlite.Error as e:
            raise PersistenceError(f"Appending to chat {chat_id} failed: {e}") from e

    async def history(self, chat_id: str) -> list[dict]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT role, content FROM chat_messages WHERE thread_id = ? ORDER BY id",
                (chat_id,),
            )
            return [{"role": row["role"], "content": row["content"]} for row in await cursor.fetchall()]
