"""
SQLite database connection management and schema initialization.
Uses aiosqlite for fully async, non-blocking access.
"""
import aiosqlite
import asyncio
import logging
from pathlib import Path

from src.config import DB_PATH

logger = logging.getLogger(__name__)

# Module-level connection pool (single shared connection with WAL mode)
_db: aiosqlite.Connection | None = None
_lock = asyncio.Lock()


async def get_db() -> aiosqlite.Connection:
    """Return the shared async database connection, initializing it if needed."""
    global _db
    if _db is None:
        async with _lock:
            if _db is None:
                if DB_PATH != ":memory:":
                    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
                _db = await aiosqlite.connect(DB_PATH)
                _db.row_factory = aiosqlite.Row
                # WAL mode: allows concurrent reads while writing
                await _db.execute("PRAGMA journal_mode=WAL")
                await init_schema(_db)
                logger.info(f"Database initialized at {DB_PATH}")
    return _db


async def close_db() -> None:
    """Gracefully close the database connection."""
    global _db
    if _db is not None:
        await _db.close()
        _db = None
        logger.info("Database connection closed.")


async def init_schema(db: aiosqlite.Connection) -> None:
    """Create all tables if they do not already exist (idempotent)."""
    await db.executescript("""
        -- ----------------------------------------------------------------
        -- Thread binding: chat thread -> agent session plus overrides
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS threads (
            thread_id         TEXT PRIMARY KEY,
            session_id        TEXT,
            mention_required  INTEGER,
            model             TEXT,
            agent             TEXT,
            updated_at        TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_threads_session
            ON threads(session_id);

        -- ----------------------------------------------------------------
        -- Channel settings: working directory and default overrides
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS channels (
            channel_id  TEXT PRIMARY KEY,
            directory   TEXT,
            model       TEXT,
            agent       TEXT
        );

        -- ----------------------------------------------------------------
        -- Scheduled tasks recorded from agent mailbox intents.
        -- Running them is the external scheduler's job.
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS scheduled_tasks (
            id              TEXT PRIMARY KEY,
            group_folder    TEXT NOT NULL,
            chat_jid        TEXT NOT NULL DEFAULT '',
            prompt          TEXT NOT NULL,
            schedule_type   TEXT NOT NULL,
            schedule_value  TEXT NOT NULL,
            context_mode    TEXT NOT NULL DEFAULT 'group',
            next_run        TEXT,
            status          TEXT NOT NULL DEFAULT 'active',
            created_at      TEXT NOT NULL,
            created_by      TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_tasks_group
            ON scheduled_tasks(group_folder);

        -- ----------------------------------------------------------------
        -- Registered groups: one sandboxed agent mailbox per group folder
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS registered_groups (
            chat_jid  TEXT PRIMARY KEY,
            name      TEXT NOT NULL,
            folder    TEXT NOT NULL,
            trigger   TEXT NOT NULL,
            added_at  TEXT NOT NULL
        );
    """)
    await db.commit()
    logger.info("Schema initialized.")
