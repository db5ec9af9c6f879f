"""Database schema initialization."""

import aiosqlite


# SQLite schema DDL
SCHEMA = """
-- Key/value table holding serialized session records
CREATE TABLE IF NOT EXISTS kv (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TIMESTAMP NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_kv_updated_at ON kv(updated_at);
"""


async def init_database(db_path: str) -> None:
    """
    Initialize the database with the schema.

    Args:
        db_path: Path to the SQLite database file
    """
    async with aiosqlite.connect(db_path) as db:
        await db.executescript(SCHEMA)
        await db.commit()
