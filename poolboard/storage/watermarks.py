import logging
import time
from typing import Dict, List, Optional

import aiosqlite

logger = logging.getLogger("storage")

MAX_LIMIT = 500
MAX_USERS_PER_BLOCK = 1000

# Addresses whose owner opted out. A missing registry row is never in this
# set, so unregistered addresses stay public.
PRIVATE_ADDRESSES_SQL = "SELECT address FROM participants WHERE is_public = 0"
INACTIVE_ADDRESSES_SQL = "SELECT address FROM participants WHERE is_active = 0"


def clamp_limit(limit, max_limit: int = MAX_LIMIT) -> int:
    return max(1, min(int(limit), max_limit))


def _watermark_row(row) -> dict:
    return {
        "block_height": row[0],
        "top_diff_address": row[1],
        "difficulty": row[2],
        "block_timestamp": row[3],
        "collected_at": row[4],
    }


class WatermarkRepo:
    """Watermark (block_highest_diff) and per-user (user_block_diff) records."""

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    # -------------------------------------------------------------------
    # Writes (conditional, caller commits)
    # -------------------------------------------------------------------

    async def upsert_watermark(
        self,
        block_height: int,
        address: str,
        difficulty: float,
        block_timestamp: Optional[float] = None,
    ) -> bool:
        """Insert the watermark or replace it only with a strictly higher difficulty.

        Returns True when the stored row changed.
        """
        now = time.time()
        cursor = await self._db.execute(
            "INSERT INTO block_highest_diff "
            "(block_height, top_diff_address, difficulty, block_timestamp, collected_at) "
            "VALUES (?, ?, ?, ?, ?) "
            "ON CONFLICT(block_height) DO UPDATE SET "
            "  top_diff_address = excluded.top_diff_address, "
            "  difficulty = excluded.difficulty, "
            "  block_timestamp = COALESCE(block_highest_diff.block_timestamp, excluded.block_timestamp), "
            "  collected_at = excluded.collected_at "
            "WHERE excluded.difficulty > block_highest_diff.difficulty",
            (block_height, address, difficulty, block_timestamp, now),
        )
        changed = cursor.rowcount > 0
        if block_timestamp is not None and not changed:
            await self._db.execute(
                "UPDATE block_highest_diff SET block_timestamp = ? "
                "WHERE block_height = ? AND block_timestamp IS NULL",
                (block_timestamp, block_height),
            )
        return changed

    async def upsert_submission(self, block_height: int, address: str, difficulty: float) -> Optional[str]:
        """Record a user's best share for a block; never lowers a stored value.

        Returns "new", "raised", or None when the stored row was kept. The
        caller holds the write lock, so the prior row read here is stable.
        """
        async with self._db.execute(
            "SELECT 1 FROM user_block_diff WHERE block_height = ? AND address = ?",
            (block_height, address),
        ) as cursor:
            existed = await cursor.fetchone() is not None
        cursor = await self._db.execute(
            "INSERT INTO user_block_diff (block_height, address, difficulty, collected_at) "
            "VALUES (?, ?, ?, ?) "
            "ON CONFLICT(block_height, address) DO UPDATE SET "
            "  difficulty = excluded.difficulty, "
            "  collected_at = excluded.collected_at "
            "WHERE excluded.difficulty > user_block_diff.difficulty",
            (block_height, address, difficulty, time.time()),
        )
        if cursor.rowcount == 0:
            return None
        return "raised" if existed else "new"

    async def prune(self, keep_blocks: int) -> Dict[str, int]:
        """Delete block records older than the newest ``keep_blocks`` heights."""
        max_height = await self.max_height()
        if max_height is None:
            return {"blocks": 0, "users": 0}
        cutoff = max_height - keep_blocks
        c1 = await self._db.execute(
            "DELETE FROM block_highest_diff WHERE block_height < ?", (cutoff,)
        )
        c2 = await self._db.execute(
            "DELETE FROM user_block_diff WHERE block_height < ?", (cutoff,)
        )
        await self._db.commit()
        return {"blocks": c1.rowcount, "users": c2.rowcount}

    # -------------------------------------------------------------------
    # Watermark reads
    # -------------------------------------------------------------------

    async def get(self, block_height: int) -> Optional[dict]:
        async with self._db.execute(
            "SELECT block_height, top_diff_address, difficulty, block_timestamp, collected_at "
            "FROM block_highest_diff WHERE block_height = ?",
            (block_height,),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return _watermark_row(row)

    async def get_recent(self, limit: int, max_limit: int = MAX_LIMIT) -> List[dict]:
        bounded = clamp_limit(limit, max_limit)
        results = []
        async with self._db.execute(
            "SELECT block_height, top_diff_address, difficulty, block_timestamp, collected_at "
            "FROM block_highest_diff ORDER BY block_height DESC LIMIT ?",
            (bounded,),
        ) as cursor:
            async for row in cursor:
                results.append(_watermark_row(row))
        return results

    async def get_wins_for_address(self, address: str, limit: int) -> List[dict]:
        results = []
        async with self._db.execute(
            "SELECT block_height, top_diff_address, difficulty, block_timestamp, collected_at "
            "FROM block_highest_diff WHERE top_diff_address = ? "
            "ORDER BY block_height DESC LIMIT ?",
            (address, clamp_limit(limit)),
        ) as cursor:
            async for row in cursor:
                results.append(_watermark_row(row))
        return results

    async def max_height(self) -> Optional[int]:
        async with self._db.execute("SELECT MAX(block_height) FROM block_highest_diff") as cursor:
            row = await cursor.fetchone()
        return row[0] if row else None

    async def missing_heights(self, start: int, end: int) -> List[int]:
        """Heights in [start, end] with no watermark, ascending."""
        if end < start:
            return []
        present = set()
        async with self._db.execute(
            "SELECT block_height FROM block_highest_diff WHERE block_height BETWEEN ? AND ?",
            (start, end),
        ) as cursor:
            async for row in cursor:
                present.add(row[0])
        return [h for h in range(start, end + 1) if h not in present]

    async def count(self) -> int:
        async with self._db.execute("SELECT COUNT(*) FROM block_highest_diff") as cursor:
            row = await cursor.fetchone()
        return row[0] if row else 0

    # -------------------------------------------------------------------
    # Per-user reads
    # -------------------------------------------------------------------

    async def get_block_submissions(
        self, block_height: int, limit: Optional[int] = None, public_only: bool = False,
    ) -> List[dict]:
        """A block's per-user bests, difficulty descending, never more than MAX_USERS_PER_BLOCK."""
        bounded = MAX_USERS_PER_BLOCK if limit is None else clamp_limit(limit, MAX_USERS_PER_BLOCK)
        query = ("SELECT address, difficulty FROM user_block_diff "
                 "WHERE block_height = ?")
        if public_only:
            query += f" AND address NOT IN ({PRIVATE_ADDRESSES_SQL})"
        query += " ORDER BY difficulty DESC, collected_at ASC, address ASC LIMIT ?"
        results = []
        async with self._db.execute(query, (block_height, bounded)) as cursor:
            async for row in cursor:
                results.append({"address": row[0], "difficulty": row[1]})
        return results

    async def count_block_submissions(self, block_height: int, public_only: bool = False) -> int:
        query = "SELECT COUNT(*) FROM user_block_diff WHERE block_height = ?"
        if public_only:
            query += f" AND address NOT IN ({PRIVATE_ADDRESSES_SQL})"
        async with self._db.execute(query, (block_height,)) as cursor:
            row = await cursor.fetchone()
        return row[0] if row else 0

    async def best_public_submission(self, block_height: int) -> Optional[dict]:
        rows = await self.get_block_submissions(block_height, limit=1, public_only=True)
        return rows[0] if rows else None

    async def get_submissions_for_address(self, address: str, limit: int) -> List[dict]:
        results = []
        async with self._db.execute(
            "SELECT u.block_height, u.address, u.difficulty, w.block_timestamp "
            "FROM user_block_diff u "
            "LEFT JOIN block_highest_diff w ON w.block_height = u.block_height "
            "WHERE u.address = ? ORDER BY u.block_height DESC LIMIT ?",
            (address, clamp_limit(limit)),
        ) as cursor:
            async for row in cursor:
                results.append({
                    "block_height": row[0],
                    "address": row[1],
                    "difficulty": row[2],
                    "block_timestamp": row[3],
                })
        return results

    # -------------------------------------------------------------------
    # Leaderboards
    # -------------------------------------------------------------------

    async def win_count_leaderboard(self, limit: int, public_only: bool = True) -> List[dict]:
        query = ("SELECT top_diff_address, COUNT(*) AS watermark_count, "
                 "SUM(difficulty) AS total_diff, AVG(difficulty) AS avg_diff "
                 "FROM block_highest_diff")
        if public_only:
            query += f" WHERE top_diff_address NOT IN ({PRIVATE_ADDRESSES_SQL})"
        query += (" GROUP BY top_diff_address "
                  "ORDER BY watermark_count DESC, total_diff DESC, top_diff_address ASC LIMIT ?")
        results = []
        async with self._db.execute(query, (clamp_limit(limit),)) as cursor:
            async for row in cursor:
                results.append({
                    "address": row[0],
                    "watermark_count": row[1],
                    "total_diff": row[2],
                    "avg_diff": row[3],
                })
        return results

    async def combined_leaderboard(self, limit: int, public_only: bool = True) -> List[dict]:
        """Rank by best difficulty and by watermark wins, then by the mean of both ranks.

        Ranks are dense and computed independently per metric. Equal
        combined scores fall back to address order.
        """
        where = f"c.address NOT IN ({INACTIVE_ADDRESSES_SQL})"
        if public_only:
            where += f" AND c.address NOT IN ({PRIVATE_ADDRESSES_SQL})"
        query = (
            "WITH candidates AS ("
            "  SELECT address, difficulty AS diff FROM user_block_diff"
            "  UNION ALL SELECT top_diff_address, difficulty FROM block_highest_diff"
            "  UNION ALL SELECT address, best_ever FROM participants"
            "), wins AS ("
            "  SELECT top_diff_address AS address, COUNT(*) AS wins"
            "  FROM block_highest_diff GROUP BY top_diff_address"
            "), totals AS ("
            "  SELECT c.address, MAX(c.diff) AS best_diff, COALESCE(w.wins, 0) AS wins"
            "  FROM candidates c LEFT JOIN wins w ON w.address = c.address"
            f"  WHERE {where}"
            "  GROUP BY c.address"
            "), ranked AS ("
            "  SELECT address, best_diff, wins,"
            "    DENSE_RANK() OVER (ORDER BY best_diff DESC) AS diff_rank,"
            "    DENSE_RANK() OVER (ORDER BY wins DESC) AS wins_rank"
            "  FROM totals"
            ") "
            "SELECT address, best_diff, wins, diff_rank, wins_rank, "
            "  (diff_rank + wins_rank) / 2.0 AS combined_score "
            "FROM ranked ORDER BY combined_score ASC, address ASC LIMIT ?"
        )
        results = []
        async with self._db.execute(query, (clamp_limit(limit),)) as cursor:
            async for row in cursor:
                results.append({
                    "address": row[0],
                    "diff": row[1],
                    "watermark_count": row[2],
                    "diff_rank": row[3],
                    "watermark_rank": row[4],
                    "combined_score": row[5],
                })
        return results
