"""Async SQLite cache layer for usagechart."""

import logging
from pathlib import Path

import aiosqlite

from .config import DB_PATH
from .models import FileState, UsageRecord

logger = logging.getLogger("usagechart")

SCHEMA = """
CREATE TABLE IF NOT EXISTS file_state (
    file_path TEXT PRIMARY KEY,
    agent_name TEXT NOT NULL,
    last_offset INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS usage_records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    agent_name TEXT NOT NULL,
    model TEXT NOT NULL,
    date_key TEXT NOT NULL,
    tokens INTEGER NOT NULL,
    cost REAL NOT NULL DEFAULT 0.0,
    hour INTEGER,
    dow INTEGER,
    source_file TEXT NOT NULL,
    source_offset INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_rec_agent ON usage_records(agent_name);
CREATE INDEX IF NOT EXISTS idx_rec_model ON usage_records(model);
CREATE INDEX IF NOT EXISTS idx_rec_date ON usage_records(date_key);
CREATE INDEX IF NOT EXISTS idx_rec_source_file ON usage_records(source_file);
CREATE UNIQUE INDEX IF NOT EXISTS idx_rec_source_line ON usage_records(source_file, source_offset);
"""

REQUIRED_COLUMNS = {
    "file_state": {"file_path", "agent_name", "last_offset"},
    "usage_records": {
        "id",
        "agent_name",
        "model",
        "date_key",
        "tokens",
        "cost",
        "hour",
        "dow",
        "source_file",
        "source_offset",
    },
}

SAVEPOINT = "file_sync"


class Database:
    def __init__(self, db_path=None):
        self.db_path = Path(db_path) if db_path else DB_PATH
        self._db: aiosqlite.Connection | None = None

    async def init(self):
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        # Autocommit mode: transactions and savepoints are issued explicitly
        self._db = await aiosqlite.connect(str(self.db_path), isolation_level=None)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        # The cache is re-derivable from the logs, so full fsync is not needed
        await self._db.execute("PRAGMA synchronous=NORMAL")
        await self.ensure_schema()

    async def close(self):
        if self._db:
            await self._db.close()
            self._db = None

    async def ensure_schema(self):
        """Create the cache tables, rebuilding them if an older layout is found."""
        if await self._missing_columns():
            logger.warning("Cache schema is outdated, rebuilding %s", self.db_path)
            await self._drop_tables()
        try:
            await self._db.executescript(SCHEMA)
        except aiosqlite.IntegrityError:
            # Existing rows violate the unique source-line index
            logger.warning("Cache holds duplicate source lines, rebuilding %s", self.db_path)
            await self._drop_tables()
            await self._db.executescript(SCHEMA)

    async def _missing_columns(self) -> bool:
        for table, required in REQUIRED_COLUMNS.items():
            rows = await self._db.execute_fetchall(f"PRAGMA table_info({table})")
            columns = {r["name"] for r in rows}
            if columns and not required <= columns:
                return True
        return False

    async def _drop_tables(self):
        await self._db.execute("DROP TABLE IF EXISTS usage_records")
        await self._db.execute("DROP TABLE IF EXISTS file_state")

    # --- transactions ---

    async def begin(self):
        await self._db.execute("BEGIN IMMEDIATE")

    async def commit(self):
        await self._db.execute("COMMIT")

    async def rollback(self):
        if self._db.in_transaction:
            await self._db.execute("ROLLBACK")

    async def savepoint(self):
        await self._db.execute(f"SAVEPOINT {SAVEPOINT}")

    async def release(self):
        await self._db.execute(f"RELEASE {SAVEPOINT}")

    async def rollback_to_savepoint(self):
        await self._db.execute(f"ROLLBACK TO {SAVEPOINT}")
        await self._db.execute(f"RELEASE {SAVEPOINT}")

    # --- file state ---

    async def get_file_state(self, file_path: str) -> FileState | None:
        cursor = await self._db.execute(
            "SELECT file_path, agent_name, last_offset FROM file_state WHERE file_path = ?",
            (file_path,),
        )
        row = await cursor.fetchone()
        return FileState(**dict(row)) if row else None

    async def save_file_state(self, state: FileState):
        await self._db.execute(
            """INSERT INTO file_state (file_path, agent_name, last_offset)
               VALUES (?, ?, ?)
               ON CONFLICT(file_path) DO UPDATE SET
                   agent_name = excluded.agent_name,
                   last_offset = excluded.last_offset""",
            (state.file_path, state.agent_name, state.last_offset),
        )

    async def count_session_files(self) -> int:
        cursor = await self._db.execute("SELECT COUNT(*) FROM file_state")
        row = await cursor.fetchone()
        return row[0]

    # --- usage records ---

    async def delete_records_for(self, file_path: str) -> int:
        cursor = await self._db.execute(
            "DELETE FROM usage_records WHERE source_file = ?", (file_path,)
        )
        return cursor.rowcount

    async def insert_records(self, records: list[UsageRecord]) -> int:
        """Insert records, ignoring source lines already cached. Returns rows added."""
        if not records:
            return 0
        cursor = await self._db.executemany(
            """INSERT OR IGNORE INTO usage_records
               (agent_name, model, date_key, tokens, cost, hour, dow,
                source_file, source_offset)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            [
                (
                    r.agent_name,
                    r.model,
                    r.date_key,
                    r.tokens,
                    r.cost,
                    r.hour,
                    r.dow,
                    r.source_file,
                    r.source_offset,
                )
                for r in records
            ],
        )
        return cursor.rowcount

    # --- queries ---

    async def fetch_all(self, sql: str, params=()) -> list[dict]:
        rows = await self._db.execute_fetchall(sql, params)
        return [dict(r) for r in rows]

    async def fetch_one(self, sql: str, params=()) -> dict | None:
        cursor = await self._db.execute(sql, params)
        row = await cursor.fetchone()
        return dict(row) if row else None

