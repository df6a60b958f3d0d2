"""Highest-diff router: /api/highest-diff/* watermark endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query
from starlette.requests import Request

from poolboard.collector import MAX_TRIGGER_BATCH, TRIGGER_TIMEOUT
from poolboard.deps import get_server, governed
from poolboard.leaderboard import MAX_BLOCK_HEIGHT, MAX_ADDRESS_LENGTH
from poolboard.storage import MAX_LIMIT

router = APIRouter()


def parse_block_list(raw: str) -> list:
    """Valid, de-duplicated heights from a comma-separated list, in order."""
    heights = []
    for part in raw.split(","):
        part = part.strip()
        if not part.isdigit():
            continue
        height = int(part)
        if height <= MAX_BLOCK_HEIGHT and height not in heights:
            heights.append(height)
    return heights


@router.get("/api/highest-diff", dependencies=[Depends(governed)])
async def highest_diff(
    request: Request,
    view: str = Query(default="recent", alias="type", pattern="^(recent|winners|user)$"),
    address: Optional[str] = Query(default=None, max_length=MAX_ADDRESS_LENGTH),
    limit: int = Query(default=10, ge=1, le=MAX_LIMIT),
):
    srv = get_server(request)
    try:
        if view == "winners":
            return await srv.leaderboard.watermark_leaderboard(limit)
        if view == "user":
            if not address:
                raise HTTPException(status_code=400, detail="Missing address parameter")
            return await srv.leaderboard.participant_submission_history(address, limit)
        if address:
            return await srv.leaderboard.participant_watermark_history(address, limit)
        return await srv.leaderboard.recent_watermarks(limit)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/api/highest-diff/{block_height}", dependencies=[Depends(governed)])
async def highest_diff_block(
    request: Request,
    block_height: int = Path(..., ge=0, le=MAX_BLOCK_HEIGHT),
):
    srv = get_server(request)
    result = await srv.leaderboard.interval_leaderboard(block_height)
    if result is None:
        raise HTTPException(status_code=404, detail="No data found for this block")
    return result


@router.post("/api/highest-diff", dependencies=[Depends(governed)])
async def trigger_collection(
    request: Request,
    blocks: str = Query(..., max_length=256),
):
    srv = get_server(request)
    heights = parse_block_list(blocks)
    if not heights:
        raise HTTPException(status_code=400, detail="No valid block heights provided")
    heights = heights[:MAX_TRIGGER_BATCH]
    results = await srv.collector.collect_many(heights, timeout=TRIGGER_TIMEOUT)
    return {
        "triggered": heights,
        "results": {str(h): results.get(h, False) for h in heights},
    }
