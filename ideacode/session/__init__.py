"""Per-directory conversation persistence with SQLite storage."""

import asyncio
import hashlib
import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite

from ideacode.config import get_config
from ideacode.exceptions import SessionError
from ideacode.llm import Message
from ideacode.logging import get_logger

log = get_logger(__name__)


def _utcnow_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(UTC).isoformat()


def conversation_key(cwd: Path | str) -> str:
    """Stable row key for a working directory (first 16 hex chars of sha256)."""
    resolved = str(Path(cwd).expanduser().resolve())
    return hashlib.sha256(resolved.encode("utf-8")).hexdigest()[:16]


class ConversationStore:
    """Stores one conversation per working directory.

    Messages are persisted as their JSON wire form; block content is kept as
    is. Saves from the turn loop go through ``schedule_save`` which debounces
    bursts of writes; ``flush`` forces the pending write out.
    """

    def __init__(self, db_path: Path | str | None = None, debounce_ms: int | None = None):
        """Initialize conversation store.

        Args:
            db_path: Optional database path override
            debounce_ms: Optional debounce window override
        """
        config = get_config()
        if db_path is None:
            self.db_path = Path(config.session.path).expanduser()
        else:
            self.db_path = Path(db_path).expanduser()
        self.debounce_ms = config.session.debounce_ms if debounce_ms is None else int(debounce_ms)

        self._db: aiosqlite.Connection | None = None
        self._pending_task: asyncio.Task[None] | None = None
        self._pending: tuple[str, list[dict[str, Any]]] | None = None

    async def _ensure_db(self) -> aiosqlite.Connection:
        """Ensure database is initialized."""
        if self._db is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._db = await aiosqlite.connect(str(self.db_path))
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS conversations (
                    key TEXT PRIMARY KEY,
                    cwd TEXT NOT NULL,
                    messages TEXT NOT NULL DEFAULT '[]',
                    updated_at TEXT NOT NULL
                )
            """)
            await self._db.commit()
        return self._db

    async def load(self, cwd: Path | str) -> list[Message]:
        """Load the conversation for ``cwd`` (empty when none is stored)."""
        try:
            db = await self._ensure_db()
            async with db.execute(
                "SELECT messages FROM conversations WHERE key = ?",
                (conversation_key(cwd),),
            ) as cursor:
                row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise SessionError(f"Failed to load conversation: {e}") from e

        if not row:
            return []
        try:
            raw = json.loads(row[0])
        except json.JSONDecodeError as e:
            log.warning("Stored conversation is not valid JSON, starting fresh", error=str(e))
            return []
        if not isinstance(raw, list):
            return []
        return [Message.from_dict(item) for item in raw if isinstance(item, dict)]

    async def _write(self, cwd: str, payload: list[dict[str, Any]]) -> None:
        try:
            db = await self._ensure_db()
            await db.execute("""
                INSERT OR REPLACE INTO conversations (key, cwd, messages, updated_at)
                VALUES (?, ?, ?, ?)
            """, (
                conversation_key(cwd),
                cwd,
                json.dumps(payload, ensure_ascii=False),
                _utcnow_iso(),
            ))
            await db.commit()
        except aiosqlite.Error as e:
            raise SessionError(f"Failed to save conversation: {e}") from e
        log.debug("Saved conversation", cwd=cwd, messages=len(payload))

    async def save(self, cwd: Path | str, messages: list[Message]) -> None:
        """Write the conversation for ``cwd`` immediately."""
        await self._write(str(cwd), [msg.to_dict() for msg in messages])

    def schedule_save(self, cwd: Path | str, messages: list[Message]) -> None:
        """Debounced save; the latest snapshot wins."""
        self._pending = (str(cwd), [msg.to_dict() for msg in messages])
        if self._pending_task is not None and not self._pending_task.done():
            self._pending_task.cancel()
        self._pending_task = asyncio.create_task(self._debounced_write())

    async def _debounced_write(self) -> None:
        await asyncio.sleep(max(0, self.debounce_ms) / 1000)
        pending, self._pending = self._pending, None
        if pending is None:
            return
        try:
            await self._write(*pending)
        except SessionError as e:
            log.error("Debounced conversation save failed", error=str(e))

    async def flush(self) -> None:
        """Write any pending snapshot now."""
        task, self._pending_task = self._pending_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        pending, self._pending = self._pending, None
        if pending is not None:
            await self._write(*pending)

    async def delete(self, cwd: Path | str) -> bool:
        """Drop the stored conversation for ``cwd``."""
        self._pending = None
        if self._pending_task is not None and not self._pending_task.done():
            self._pending_task.cancel()
        try:
            db = await self._ensure_db()
            cursor = await db.execute(
                "DELETE FROM conversations WHERE key = ?",
                (conversation_key(cwd),),
            )
            await db.commit()
        except aiosqlite.Error as e:
            raise SessionError(f"Failed to delete conversation: {e}") from e
        return cursor.rowcount > 0

    async def close(self) -> None:
        """Flush pending writes and close the database connection."""
        await self.flush()
        if self._db:
            await self._db.close()
            self._db = None


# Global conversation store
_store: ConversationStore | None = None


def get_conversation_store() -> ConversationStore:
    """Get the global conversation store."""
    global _store
    if _store is None:
        _store = ConversationStore()
    return _store


def set_conversation_store(store: ConversationStore | None) -> None:
    """Set the global conversation store."""
    global _store
    _store = store
