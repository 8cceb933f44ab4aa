import asyncio
import logging
from pathlib import Path
from typing import Optional, Tuple

import aiosqlite

from .models import utc_now
from .utils import get_app_data_dir

logger = logging.getLogger(__name__)


class SnapshotDatabase:
    """SQLite key-value store for the local cache snapshot."""

    def __init__(self, db_path: Optional[Path] = None):
        if db_path is None:
            db_path = get_app_data_dir() / "threadline.db"
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(db_path)
        self._lock = asyncio.Lock()
        self.connection: Optional[aiosqlite.Connection] = None

    async def _connect(self) -> aiosqlite.Connection:
        if self.connection is None:
            self.connection = await aiosqlite.connect(self.db_path)
            await self._setup_snapshots_table()
            logger.debug(f"Opened snapshot database at {self.db_path}")
        return self.connection

    async def _setup_snapshots_table(self):
        await self.connection.execute("""
            CREATE TABLE IF NOT EXISTS snapshots (
                name TEXT PRIMARY KEY,
                version INTEGER NOT NULL,
                payload TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        await self.connection.commit()

    async def load(self, name: str) -> Optional[Tuple[int, str]]:
        """Return ``(version, payload)`` for a stored record, or None."""
        async with self._lock:
            conn = await self._connect()
            async with conn.execute(
                "SELECT version, payload FROM snapshots WHERE name = ?", (name,)
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return int(row[0]), row[1]

    async def save(self, name: str, version: int, payload: str) -> None:
        now = utc_now().isoformat()
        async with self._lock:
            conn = await self._connect()
            await conn.execute(
                """
                INSERT INTO snapshots (name, version, payload, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    version = excluded.version,
                    payload = excluded.payload,
                    updated_at = excluded.updated_at
                """,
                (name, version, payload, now),
            )
            await conn.commit()

    async def delete(self, name: str) -> None:
        async with self._lock:
            conn = await self._connect()
            await conn.execute("DELETE FROM snapshots WHERE name = ?", (name,))
            await conn.commit()

    async def close(self):
        async with self._lock:
            if self.connection is not None:
                await self.connection.close()
                self.connection = None
