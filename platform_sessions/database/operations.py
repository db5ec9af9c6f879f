"""Database operations."""

from datetime import datetime, timezone
from typing import Optional, Protocol

import aiosqlite


class KVBackend(Protocol):
    """Key/value contract the session store depends on."""

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str) -> None: ...

    async def delete(self, key: str) -> bool: ...

    async def keys(self, prefix: str = "") -> list[str]: ...


class Database:
    """SQLite-backed key/value store."""

    def __init__(self, db_path: str):
        """
        Initialize database wrapper.

        Args:
            db_path: Path to SQLite database
        """
        self.db_path = db_path
        self._connection: Optional[aiosqlite.Connection] = None

    async def connect(self) -> None:
        """Open database connection."""
        self._connection = await aiosqlite.connect(self.db_path)
        self._connection.row_factory = aiosqlite.Row

    async def close(self) -> None:
        """Close database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    @property
    def conn(self) -> aiosqlite.Connection:
        """Get database connection."""
        if not self._connection:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._connection

    # Key/value operations

    async def get(self, key: str) -> Optional[str]:
        """Get the raw value stored under key."""
        async with self.conn.execute("SELECT value FROM kv WHERE key = ?", (key,)) as cursor:
            row = await cursor.fetchone()
            if not row:
                return None
            return row["value"]

    async def set(self, key: str, value: str) -> None:
        """Insert or replace the value stored under key."""
        await self.conn.execute(
            """
            INSERT INTO kv (key, value, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                updated_at = excluded.updated_at
            """,
            (key, value, datetime.now(timezone.utc).isoformat()),
        )
        await self.conn.commit()

    async def delete(self, key: str) -> bool:
        """
        Delete a key.

        Returns:
            True if a row was removed
        """
        cursor = await self.conn.execute("DELETE FROM kv WHERE key = ?", (key,))
        await self.conn.commit()
        return cursor.rowcount > 0

    async def keys(self, prefix: str = "") -> list[str]:
        """List keys starting with the literal prefix, sorted."""
        async with self.conn.execute(
            "SELECT key FROM kv WHERE substr(key, 1, ?) = ? ORDER BY key",
            (len(prefix), prefix),
        ) as cursor:
            rows = await cursor.fetchall()
            return [row["key"] for row in rows]
