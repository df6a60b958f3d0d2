import asyncio
import logging
from typing import Optional

import aiosqlite

from ._schema import SCHEMA_VERSION
from ._migrate import run_migrations
from .participants import ParticipantRepo
from .watermarks import WatermarkRepo

logger = logging.getLogger("storage")


class StorageManager:
    """Top-level manager: opens the database, runs migrations, exposes repos."""

    def __init__(self, db_path: str = "poolboard.db"):
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None
        self.participants: Optional[ParticipantRepo] = None
        self.watermarks: Optional[WatermarkRepo] = None
        # Serialises multi-statement writes on the shared connection
        self.write_lock = asyncio.Lock()

    async def initialize(self):
        self._db = await aiosqlite.connect(self.db_path)
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA foreign_keys=ON")
        await run_migrations(self._db, logger)

        self.participants = ParticipantRepo(self._db, self.write_lock)
        self.watermarks = WatermarkRepo(self._db)

        logger.info("Storage initialized: %s (schema v%d)", self.db_path, SCHEMA_VERSION)

    async def commit(self):
        await self._db.commit()

    async def rollback(self):
        await self._db.rollback()

    async def close(self):
        if self._db:
            await self._db.close()
            self._db = None
            logger.info("Storage closed")
