"""Leaderboard router: /api/leaderboard participant rankings."""

from fastapi import APIRouter, Depends, HTTPException, Query
from starlette.requests import Request

from poolboard.deps import get_server, governed
from poolboard.storage import MAX_LIMIT

router = APIRouter()


@router.get("/api/leaderboard", dependencies=[Depends(governed)])
async def leaderboard(
    request: Request,
    board: str = Query(default="combined", alias="type",
                       pattern="^(combined|difficulty|loyalty|watermarks)$"),
    limit: int = Query(default=9, ge=1, le=MAX_LIMIT),
):
    srv = get_server(request)
    engine = srv.leaderboard
    try:
        if board == "difficulty":
            return await engine.difficulty_leaderboard(limit)
        if board == "loyalty":
            return await engine.loyalty_leaderboard(limit)
        if board == "watermarks":
            return await engine.watermark_leaderboard(limit)
        return await engine.combined_leaderboard(limit)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
