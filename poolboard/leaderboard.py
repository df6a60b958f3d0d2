"""
leaderboard.py - Public ranked views over the watermark records.

Every record returned here is privacy-filtered and carries only the
truncated form of an address.
"""

import logging
import re
from typing import TYPE_CHECKING, List, Optional

from poolboard.privacy import truncate
from poolboard.storage import MAX_LIMIT

if TYPE_CHECKING:
    from poolboard.privacy import AddressPrivacyFilter
    from poolboard.storage import StorageManager

logger = logging.getLogger("leaderboard")

MAX_BLOCK_HEIGHT = 2_000_000
MAX_ADDRESS_LENGTH = 100
REGISTRATION_WINDOW_SEC = 180
REGISTRATION_MAX_PER_WINDOW = 10

_LEGACY_RE = re.compile(r"^1[a-km-zA-HJ-NP-Z1-9]{25,34}$")
_P2SH_RE = re.compile(r"^3[a-km-zA-HJ-NP-Z1-9]{25,34}$")
_BECH32_RE = re.compile(r"^bc1[a-z0-9]{25,90}$")


def is_valid_address(address: str) -> bool:
    if not address or len(address) > MAX_ADDRESS_LENGTH:
        return False
    return bool(_LEGACY_RE.match(address) or _P2SH_RE.match(address) or _BECH32_RE.match(address))


def validate_block_height(block_height) -> int:
    try:
        height = int(block_height)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid block height: {block_height!r}")
    if height < 0 or height > MAX_BLOCK_HEIGHT:
        raise ValueError(f"Block height out of range: {height}")
    return height


def validate_limit(limit, max_limit: int = MAX_LIMIT) -> int:
    try:
        value = int(limit)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid limit: {limit!r}")
    if value < 1 or value > max_limit:
        raise ValueError(f"Limit must be between 1 and {max_limit}")
    return value


def validate_address(address: str) -> str:
    if not isinstance(address, str) or not is_valid_address(address.strip()):
        raise ValueError("Invalid Bitcoin address")
    return address.strip()


class LeaderboardRankingEngine:
    """Ranked, public views of watermarks and per-user difficulty history."""

    def __init__(self, storage: "StorageManager", privacy: "AddressPrivacyFilter"):
        self._storage = storage
        self._privacy = privacy

    # -------------------------------------------------------------------
    # Watermarks
    # -------------------------------------------------------------------

    async def recent_watermarks(self, limit: int = 10) -> List[dict]:
        """Most recent blocks, each showing its highest-difficulty public user.

        When the block's top share belongs to a private user, the best
        public share for that block is shown instead. A block with no
        public share at all keeps its height but shows no address.
        """
        limit = validate_limit(limit)
        rows = await self._storage.watermarks.get_recent(limit)
        results = []
        for row in rows:
            address = row["top_diff_address"]
            difficulty = row["difficulty"]
            if not await self._privacy.is_public(address):
                best = await self._storage.watermarks.best_public_submission(row["block_height"])
                address = best["address"] if best else None
                difficulty = best["difficulty"] if best else None
            results.append({
                "block_height": row["block_height"],
                "top_diff_address": truncate(address) if address else None,
                "difficulty": difficulty,
                "block_timestamp": row["block_timestamp"],
            })
        return results

    async def watermark_leaderboard(self, limit: int = 10) -> List[dict]:
        limit = validate_limit(limit)
        rows = await self._storage.watermarks.win_count_leaderboard(limit, public_only=True)
        return [
            {
                "address": truncate(r["address"]),
                "watermark_count": r["watermark_count"],
                "total_diff": r["total_diff"],
                "avg_diff": r["avg_diff"],
            }
            for r in rows
        ]

    async def interval_leaderboard(self, block_height: int) -> Optional[dict]:
        """One block's public view; None when the block has no watermark."""
        block_height = validate_block_height(block_height)
        watermark = await self._storage.watermarks.get(block_height)
        if watermark is None:
            return None
        users = await self._storage.watermarks.get_block_submissions(block_height, public_only=True)
        user_count = await self._storage.watermarks.count_block_submissions(
            block_height, public_only=True,
        )
        if await self._privacy.is_public(watermark["top_diff_address"]):
            top = {
                "address": truncate(watermark["top_diff_address"]),
                "difficulty": watermark["difficulty"],
            }
        elif users:
            top = {"address": truncate(users[0]["address"]), "difficulty": users[0]["difficulty"]}
        else:
            top = {"address": None, "difficulty": None}
        return {
            "block_height": block_height,
            "block_timestamp": watermark["block_timestamp"],
            "top_diff": top,
            "users": [
                {"address": truncate(u["address"]), "difficulty": u["difficulty"]}
                for u in users
            ],
            "user_count": user_count,
        }

    # -------------------------------------------------------------------
    # Per-participant history
    # -------------------------------------------------------------------

    async def participant_watermark_history(self, address: str, limit: int = 10) -> List[dict]:
        address = validate_address(address)
        limit = validate_limit(limit)
        if not await self._privacy.is_public(address):
            return []
        rows = await self._storage.watermarks.get_wins_for_address(address, limit)
        return [
            {
                "block_height": r["block_height"],
                "top_diff_address": truncate(r["top_diff_address"]),
                "difficulty": r["difficulty"],
                "block_timestamp": r["block_timestamp"],
            }
            for r in rows
        ]

    async def participant_submission_history(self, address: str, limit: int = 10) -> List[dict]:
        address = validate_address(address)
        limit = validate_limit(limit)
        if not await self._privacy.is_public(address):
            return []
        rows = await self._storage.watermarks.get_submissions_for_address(address, limit)
        return [
            {
                "block_height": r["block_height"],
                "difficulty": r["difficulty"],
                "block_timestamp": r["block_timestamp"],
                "address": truncate(r["address"]),
            }
            for r in rows
        ]

    # -------------------------------------------------------------------
    # Participant leaderboards
    # -------------------------------------------------------------------

    async def combined_leaderboard(self, limit: int = 9) -> List[dict]:
        limit = validate_limit(limit)
        rows = await self._storage.watermarks.combined_leaderboard(limit, public_only=True)
        for r in rows:
            r["address"] = truncate(r["address"])
        return rows

    async def difficulty_leaderboard(self, limit: int = 9) -> List[dict]:
        limit = validate_limit(limit)
        rows = await self._storage.participants.top_by_best_ever(limit)
        return [
            {
                "address": truncate(r["address"]),
                "diff": r["best_ever"],
                "authorised_at": r["authorised_at"],
                "created_at": r["created_at"],
            }
            for r in rows
        ]

    async def loyalty_leaderboard(self, limit: int = 9) -> List[dict]:
        limit = validate_limit(limit)
        rows = await self._storage.participants.top_by_authorised_at(limit)
        return [
            {
                "address": truncate(r["address"]),
                "authorised_at": r["authorised_at"],
                "bestever": r["best_ever"],
                "created_at": r["created_at"],
            }
            for r in rows
        ]

    # -------------------------------------------------------------------
    # Registry
    # -------------------------------------------------------------------

    async def register_participant(self, address: str) -> dict:
        """Start monitoring an address. Raises RegistrationThrottled on bursts."""
        address = validate_address(address)
        participants = self._storage.participants
        if await participants.get(address) is not None:
            return {"created": False}
        row = await participants.register(
            address,
            max_recent=REGISTRATION_MAX_PER_WINDOW,
            window_sec=REGISTRATION_WINDOW_SEC,
        )
        if row is None:
            return {"created": False}
        logger.info("Registered participant %s", truncate(address))
        return {"created": True, "created_at": row["created_at"]}
