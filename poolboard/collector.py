"""
collector.py - Highest-difficulty watermark collector.

Pulls per-user best shares for a block from the pool API and records:
 - the block watermark (highest share) in block_highest_diff
 - every user's best share in user_block_diff
 - the participant registry row (best_ever, total_blocks)

All writes are monotonic: a stored difficulty is only ever replaced by a
strictly greater one, so re-collection is idempotent.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional

import aiosqlite

from poolboard.privacy import truncate
from poolboard.source import SOURCE_TIMEOUT, SourceError, Submission

if TYPE_CHECKING:
    from poolboard.source import ChainExplorer, PoolApiSource
    from poolboard.storage import StorageManager

logger = logging.getLogger("collector")

MAX_TRIGGER_BATCH = 5
TRIGGER_TIMEOUT = 5.0
BACKFILL_BLOCKS = 432
KEEP_BLOCKS = 432
RECONCILE_WINDOW = 10
RECONCILE_INTERVAL = 600.0


def pick_top(submissions: List[Submission]) -> Submission:
    """Highest difficulty; on ties the earliest entry wins."""
    top = submissions[0]
    for s in submissions[1:]:
        if s.difficulty > top.difficulty:
            top = s
    return top


def best_per_address(submissions: Iterable[Submission]) -> List[Submission]:
    """Collapse duplicate addresses to their maximum, keeping first-seen order."""
    best: Dict[str, Submission] = {}
    for s in submissions:
        current = best.get(s.address)
        if current is None or s.difficulty > current.difficulty:
            best[s.address] = s
    return list(best.values())


class WatermarkCollector:
    """Ensures a watermark record exists for requested blocks."""

    def __init__(
        self,
        storage: "StorageManager",
        source: "PoolApiSource",
        explorer: Optional["ChainExplorer"] = None,
        max_concurrent: int = MAX_TRIGGER_BATCH,
        source_timeout: float = SOURCE_TIMEOUT * 3,
        keep_blocks: Optional[int] = KEEP_BLOCKS,
    ):
        self._storage = storage
        self._source = source
        self._explorer = explorer
        self.max_concurrent = max_concurrent
        self.source_timeout = source_timeout
        self.keep_blocks = keep_blocks
        self._source_slots = asyncio.Semaphore(max_concurrent)
        self._inflight: Dict[int, asyncio.Task] = {}
        self._reconciling = False
        self._loop_task: Optional[asyncio.Task] = None

    # -------------------------------------------------------------------
    # Single block
    # -------------------------------------------------------------------

    async def collect(self, block_height: int) -> bool:
        """Collect one block. False when nothing could be recorded.

        Blocks already behind the retention window are skipped.
        """
        if await self._behind_retention(block_height):
            logger.debug("Block %d is older than the retention window, skipping", block_height)
            return False
        try:
            async with self._source_slots:
                submissions = await asyncio.wait_for(
                    self._source.fetch_submissions(block_height), timeout=self.source_timeout,
                )
        except asyncio.TimeoutError:
            logger.warning("Timed out fetching submissions for block %d", block_height)
            return False
        except SourceError as exc:
            logger.warning("Submission source failed for block %d: %s", block_height, exc)
            return False

        if not submissions:
            logger.debug("No submissions yet for block %d", block_height)
            return False

        per_user = best_per_address(submissions)
        top = pick_top(per_user)
        block_ts = await self._block_timestamp(block_height)

        # Shielded so a cancelled caller cannot interrupt a half-written block
        try:
            changed = await asyncio.shield(self._record(block_height, top, per_user, block_ts))
        except aiosqlite.Error:
            logger.exception("Failed to record watermark for block %d", block_height)
            return False

        logger.info(
            "Collected block %d: top=%s diff=%.3g users=%d%s",
            block_height, truncate(top.address), top.difficulty, len(per_user),
            "" if changed else " (unchanged)",
        )
        return True

    async def _record(
        self, block_height: int, top: Submission, per_user: List[Submission],
        block_ts: Optional[float],
    ) -> bool:
        repo = self._storage.watermarks
        participants = self._storage.participants
        async with self._storage.write_lock:
            try:
                changed = await repo.upsert_watermark(
                    block_height, top.address, top.difficulty, block_ts,
                )
                for s in per_user:
                    outcome = await repo.upsert_submission(block_height, s.address, s.difficulty)
                    if outcome is not None:
                        changed = True
                        await participants.record_observation(
                            s.address, s.difficulty, new_block=(outcome == "new"),
                        )
                await self._storage.commit()
            except aiosqlite.Error:
                await self._storage.rollback()
                raise
            if changed and self.keep_blocks:
                try:
                    pruned = await repo.prune(self.keep_blocks)
                    if pruned["blocks"] or pruned["users"]:
                        logger.info(
                            "Pruned %d old blocks and %d user entries",
                            pruned["blocks"], pruned["users"],
                        )
                except aiosqlite.Error:
                    logger.exception("Failed to prune old block records")
        return changed

    async def _behind_retention(self, block_height: int) -> bool:
        if not self.keep_blocks:
            return False
        newest = await self._storage.watermarks.max_height()
        return newest is not None and block_height < newest - self.keep_blocks

    async def _block_timestamp(self, block_height: int) -> Optional[float]:
        if self._explorer is None:
            return None
        try:
            return await asyncio.wait_for(
                self._explorer.get_block_timestamp(block_height), timeout=self.source_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Timed out fetching timestamp for block %d", block_height)
            return None

    # -------------------------------------------------------------------
    # Batches
    # -------------------------------------------------------------------

    def _task_for(self, block_height: int, batch_slots: asyncio.Semaphore) -> asyncio.Task:
        task = self._inflight.get(block_height)
        if task is not None and not task.done():
            return task

        async def _run():
            async with batch_slots:
                return await self.collect(block_height)

        task = asyncio.create_task(_run())
        self._inflight[block_height] = task
        task.add_done_callback(lambda t, h=block_height: self._discard(h, t))
        return task

    def _discard(self, block_height: int, task: asyncio.Task):
        if self._inflight.get(block_height) is task:
            del self._inflight[block_height]
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Collection for block %d raised", block_height, exc_info=task.exception(),
            )

    async def collect_many(
        self,
        block_heights: Iterable[int],
        max_concurrent: Optional[int] = None,
        timeout: Optional[float] = TRIGGER_TIMEOUT,
    ) -> Dict[int, bool]:
        """Collect several blocks concurrently with an overall deadline.

        Blocks still running at the deadline are reported False and left to
        finish their writes in the background.
        """
        heights = list(dict.fromkeys(block_heights))
        if not heights:
            return {}
        batch_slots = asyncio.Semaphore(max_concurrent or self.max_concurrent)
        tasks = {h: self._task_for(h, batch_slots) for h in heights}

        done, pending = await asyncio.wait(set(tasks.values()), timeout=timeout)
        if pending:
            logger.info(
                "%d of %d collections still running after %.1fs",
                len(pending), len(heights), timeout,
            )

        results = {}
        for h, task in tasks.items():
            if task in done and not task.cancelled() and task.exception() is None:
                results[h] = bool(task.result())
            else:
                results[h] = False
        return results

    # -------------------------------------------------------------------
    # Reconciliation
    # -------------------------------------------------------------------

    async def backfill(self, tip: Optional[int] = None, count: int = BACKFILL_BLOCKS) -> dict:
        """Collect every missing block in the ``count`` blocks ending at ``tip``."""
        if tip is None:
            tip = await self._current_tip()
        start = max(0, tip - count + 1)
        missing = await self._storage.watermarks.missing_heights(start, tip)
        skipped = (tip - start + 1) - len(missing)
        results = await self.collect_many(missing, timeout=None)
        collected = sum(1 for ok in results.values() if ok)
        summary = {
            "collected": collected,
            "skipped": skipped,
            "failed": len(missing) - collected,
        }
        logger.info(
            "Backfill %d..%d complete: %d collected, %d skipped, %d failed/empty",
            start, tip, summary["collected"], summary["skipped"], summary["failed"],
        )
        return summary

    async def reconcile(self, window: int = RECONCILE_WINDOW) -> int:
        """Fill gaps among the most recent blocks. Returns the number collected."""
        if self._reconciling:
            logger.warning("Reconciliation already running, skipping this cycle")
            return 0
        self._reconciling = True
        try:
            summary = await self.backfill(count=window)
            return summary["collected"]
        finally:
            self._reconciling = False

    async def _current_tip(self) -> int:
        if self._explorer is None:
            raise SourceError("No chain explorer configured")
        return await self._explorer.get_tip_height()

    async def _reconcile_loop(self, backfill_blocks: int, interval: float):
        try:
            await self.backfill(count=backfill_blocks)
        except Exception:
            logger.exception("Error during startup backfill")
        while True:
            await asyncio.sleep(interval)
            try:
                await self.reconcile()
            except Exception:
                logger.exception("Error in periodic reconciliation")

    def start(self, backfill_blocks: int = BACKFILL_BLOCKS, interval: float = RECONCILE_INTERVAL):
        if self._explorer is None:
            logger.warning("No chain explorer configured; background reconciliation disabled")
            return
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self._reconcile_loop(backfill_blocks, interval))
            logger.info(
                "Collector started (backfill=%d blocks, reconcile every %.0fs)",
                backfill_blocks, interval,
            )

    async def stop(self):
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        if self._inflight:
            # Let in-flight writes finish rather than cutting them off
            await asyncio.wait(set(self._inflight.values()), timeout=TRIGGER_TIMEOUT)
        logger.info("Collector stopped")
