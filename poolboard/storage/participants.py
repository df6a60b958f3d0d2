import asyncio
import logging
import time
from typing import List, Optional

import aiosqlite

logger = logging.getLogger("storage")

_COLUMNS = (
    "address, is_active, is_public, best_ever, total_blocks, "
    "authorised_at, created_at, updated_at"
)


def _row_to_dict(row) -> dict:
    return {
        "address": row[0],
        "is_active": bool(row[1]),
        "is_public": bool(row[2]),
        "best_ever": row[3],
        "total_blocks": row[4],
        "authorised_at": row[5],
        "created_at": row[6],
        "updated_at": row[7],
    }


class RegistrationThrottled(Exception):
    """Too many new participants registered recently."""


class ParticipantRepo:
    """CRUD operations for the participants table (the monitored-user registry).

    Methods that commit take the storage write lock, so they can never
    commit another writer's half-finished statements.
    """

    def __init__(self, db: aiosqlite.Connection, write_lock: Optional[asyncio.Lock] = None):
        self._db = db
        self._write_lock = write_lock or asyncio.Lock()

    async def register(
        self,
        address: str,
        authorised: bool = True,
        max_recent: Optional[int] = None,
        window_sec: float = 0.0,
    ) -> Optional[dict]:
        """Create a participant row. Returns None if the address already exists.

        With max_recent set, raises RegistrationThrottled when that many
        authorised registrations already happened in the last window_sec.
        """
        async with self._write_lock:
            now = time.time()
            if max_recent is not None:
                if await self.count_registered_since(now - window_sec) >= max_recent:
                    raise RegistrationThrottled(
                        "Too many addresses added recently, please try again later."
                    )
            cursor = await self._db.execute(
                "INSERT OR IGNORE INTO participants "
                "(address, is_active, is_public, authorised_at, created_at, updated_at) "
                "VALUES (?, 1, 1, ?, ?, ?)",
                (address, now if authorised else 0, now, now),
            )
            await self._db.commit()
        if cursor.rowcount == 0:
            return None
        return await self.get(address)

    async def get(self, address: str) -> Optional[dict]:
        async with self._db.execute(
            f"SELECT {_COLUMNS} FROM participants WHERE address = ?",
            (address,),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return _row_to_dict(row)

    async def get_visibility(self, address: str) -> Optional[bool]:
        """Return the stored public flag, or None when no registry row exists."""
        async with self._db.execute(
            "SELECT is_public FROM participants WHERE address = ?", (address,)
        ) as cursor:
            row = await cursor.fetchone()
        if row is None or row[0] is None:
            return None
        return bool(row[0])

    async def set_visibility(self, address: str, is_public: bool) -> bool:
        async with self._write_lock:
            cursor = await self._db.execute(
                "UPDATE participants SET is_public = ?, updated_at = ? WHERE address = ?",
                (int(is_public), time.time(), address),
            )
            await self._db.commit()
        return cursor.rowcount > 0

    async def deactivate(self, address: str) -> bool:
        async with self._write_lock:
            cursor = await self._db.execute(
                "UPDATE participants SET is_active = 0, updated_at = ? WHERE address = ?",
                (time.time(), address),
            )
            await self._db.commit()
        return cursor.rowcount > 0

    async def record_observation(self, address: str, difficulty: float, new_block: bool):
        """Create-or-update the row for an address seen by the collector.

        best_ever only ever rises; total_blocks counts distinct blocks. The
        caller holds the write lock and commits.
        """
        now = time.time()
        await self._db.execute(
            "INSERT INTO participants "
            "(address, is_active, is_public, best_ever, total_blocks, authorised_at, created_at, updated_at) "
            "VALUES (?, 1, 1, ?, ?, 0, ?, ?) "
            "ON CONFLICT(address) DO UPDATE SET "
            "  best_ever = MAX(participants.best_ever, excluded.best_ever), "
            "  total_blocks = participants.total_blocks + excluded.total_blocks, "
            "  updated_at = excluded.updated_at",
            (address, difficulty, 1 if new_block else 0, now, now),
        )

    async def count_registered_since(self, since_ts: float) -> int:
        async with self._db.execute(
            "SELECT COUNT(*) FROM participants WHERE authorised_at > ?", (since_ts,)
        ) as cursor:
            row = await cursor.fetchone()
        return row[0] if row else 0

    async def top_by_best_ever(self, limit: int) -> List[dict]:
        results = []
        async with self._db.execute(
            f"SELECT {_COLUMNS} FROM participants "
            "WHERE is_active = 1 AND is_public = 1 AND authorised_at != 0 "
            "ORDER BY best_ever DESC, address ASC LIMIT ?",
            (limit,),
        ) as cursor:
            async for row in cursor:
                results.append(_row_to_dict(row))
        return results

    async def top_by_authorised_at(self, limit: int) -> List[dict]:
        results = []
        async with self._db.execute(
            f"SELECT {_COLUMNS} FROM participants "
            "WHERE is_active = 1 AND is_public = 1 AND authorised_at != 0 "
            "ORDER BY authorised_at ASC, address ASC LIMIT ?",
            (limit,),
        ) as cursor:
            async for row in cursor:
                results.append(_row_to_dict(row))
        return results

    async def count(self) -> int:
        async with self._db.execute("SELECT COUNT(*) FROM participants") as cursor:
            row = await cursor.fetchone()
        return row[0] if row else 0
