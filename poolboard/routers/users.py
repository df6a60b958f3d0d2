"""Users router: /api/user participant registration."""

from fastapi import APIRouter, Depends, HTTPException
from starlette.requests import Request

from poolboard.deps import get_server, governed
from poolboard.models import RegisterRequest
from poolboard.privacy import truncate
from poolboard.storage import RegistrationThrottled

router = APIRouter()


@router.post("/api/user", dependencies=[Depends(governed)])
async def register_user(request: Request, req: RegisterRequest):
    srv = get_server(request)
    try:
        result = await srv.leaderboard.register_participant(req.address)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except RegistrationThrottled as e:
        raise HTTPException(status_code=429, detail=str(e))
    if not result["created"]:
        return {"message": "Address already being monitored"}
    return {
        "message": "Address added successfully",
        "address": truncate(req.address.strip()),
        "created_at": result["created_at"],
    }
