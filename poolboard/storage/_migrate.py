import logging
import time

from ._schema import SCHEMA_SQL, SCHEMA_VERSION

logger = logging.getLogger("storage")


async def _current_version(db) -> int:
    async with db.execute(
        "SELECT name FROM sqlite_master WHERE type = 'table' AND name = 'schema_version'"
    ) as cursor:
        if await cursor.fetchone() is None:
            return 0
    async with db.execute("SELECT MAX(version) FROM schema_version") as cursor:
        row = await cursor.fetchone()
    return row[0] if row and row[0] is not None else 0


async def run_migrations(db, logger_override=None):
    """Create the schema on a fresh database and stamp its version."""
    log = logger_override or logger
    current_version = await _current_version(db)

    if current_version < SCHEMA_VERSION:
        log.info("Creating database schema v%d", SCHEMA_VERSION)
        await db.executescript(SCHEMA_SQL)
        await db.execute(
            "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
            (SCHEMA_VERSION, time.time()),
        )
        await db.commit()
    else:
        log.debug("Database schema up to date (v%d)", current_version)
