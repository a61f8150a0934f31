"""
Durable request queue.

Every formatted request is committed to SQLite before any delivery attempt,
so a crash between append and send leaves it recoverable on restart. Rows
are only deleted by remove() after a confirmed delivery; the queue never
evicts on its own.
"""
import asyncio
import time
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

import aiosqlite
import structlog

from tracklink.errors import PersistenceFailure
from tracklink.models import QueueEntry, RequestDescriptor

logger = structlog.get_logger("queue")


class RequestQueue(Protocol):
    """Port: ordered, persistent store of pending requests."""

    async def initialize(self) -> None: ...

    async def append(self, descriptor: RequestDescriptor) -> int: ...

    async def peek_oldest(self) -> Optional[QueueEntry]: ...

    async def remove(self, persisted_id: int) -> None: ...

    async def count(self) -> int: ...

    async def close(self) -> None: ...


class SqliteRequestQueue:
    """
    Disk-backed FIFO queue using SQLite.

    AUTOINCREMENT keys are strictly increasing and never reused, so they give
    both the delivery order and a stable identity for idempotent removal.
    """

    def __init__(self, db_path: str, synchronous: str = "FULL"):
        self.db_path = db_path
        self.synchronous = synchronous
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        return self._db is not None

    async def initialize(self) -> None:
        """Open the database and create the queue table. Safe to call twice."""
        if self._db is not None:
            return

        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            self._db = await aiosqlite.connect(self.db_path)
            await self._db.execute("PRAGMA journal_mode=WAL")
            await self._db.execute(f"PRAGMA synchronous={self.synchronous}")
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS position_queue (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    url TEXT NOT NULL,
                    created_at REAL NOT NULL
                )
            """)
            await self._db.commit()
        except aiosqlite.Error as e:
            await self.close()
            raise PersistenceFailure(f"Cannot open queue {self.db_path}: {e}") from e

        logger.info("Queue initialized", path=self.db_path, pending=await self.count())

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise PersistenceFailure("Queue is not initialized")
        return self._db

    async def append(self, descriptor: RequestDescriptor) -> int:
        """Commit a request to disk and return its persisted id."""
        async with self._lock:
            db = self._conn()
            try:
                cursor = await db.execute(
                    "INSERT INTO position_queue (url, created_at) VALUES (?, ?)",
                    (descriptor.url, time.time()),
                )
                await db.commit()
            except aiosqlite.Error as e:
                await db.rollback()
                raise PersistenceFailure(f"Queue append failed: {e}") from e

            persisted_id = cursor.lastrowid
            logger.debug("Request queued", persisted_id=persisted_id)
            return persisted_id

    async def peek_oldest(self) -> Optional[QueueEntry]:
        """Oldest pending request, or None when the queue is empty. Does NOT remove it."""
        async with self._lock:
            try:
                cursor = await self._conn().execute(
                    "SELECT id, url FROM position_queue ORDER BY id ASC LIMIT 1"
                )
                row = await cursor.fetchone()
            except aiosqlite.Error as e:
                raise PersistenceFailure(f"Queue read failed: {e}") from e

        if row is None:
            return None
        persisted_id, url = row
        return QueueEntry(persisted_id, RequestDescriptor(url=url, persisted_id=persisted_id))

    async def remove(self, persisted_id: int) -> None:
        """Delete a delivered request. Removing an unknown id is a no-op."""
        # Ensure ID is an integer so a stray value can never match another row
        if isinstance(persisted_id, bool) or not isinstance(persisted_id, int):
            raise TypeError(f"persisted_id must be int, got {type(persisted_id).__name__}")

        async with self._lock:
            db = self._conn()
            try:
                cursor = await db.execute(
                    "DELETE FROM position_queue WHERE id = ?", (persisted_id,)
                )
                await db.commit()
            except aiosqlite.Error as e:
                await db.rollback()
                raise PersistenceFailure(f"Queue remove failed: {e}") from e

            if cursor.rowcount == 0:
                logger.debug("Remove of absent request ignored", persisted_id=persisted_id)

    async def count(self) -> int:
        try:
            cursor = await self._conn().execute("SELECT COUNT(*) FROM position_queue")
            return (await cursor.fetchone())[0]
        except aiosqlite.Error as e:
            raise PersistenceFailure(f"Queue count failed: {e}") from e

    async def get_stats(self) -> Dict[str, Any]:
        """Queue depth, age of the oldest entry and database size."""
        try:
            db = self._conn()
            cursor = await db.execute(
                "SELECT COUNT(*), MIN(created_at) FROM position_queue"
            )
            total, oldest = await cursor.fetchone()
            cursor = await db.execute("PRAGMA page_count")
            page_count = (await cursor.fetchone())[0]
            cursor = await db.execute("PRAGMA page_size")
            page_size = (await cursor.fetchone())[0]
        except aiosqlite.Error as e:
            raise PersistenceFailure(f"Queue stats failed: {e}") from e

        db_bytes = page_count * page_size
        return {
            "total": total,
            "oldest_age_s": round(time.time() - oldest, 1) if oldest else None,
            "db_bytes": db_bytes,
            "db_mb": round(db_bytes / 1024 / 1024, 1),
        }

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None
