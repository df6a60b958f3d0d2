"""Dependency helpers for router modules."""

from fastapi import HTTPException
from starlette.requests import Request
from starlette.responses import Response

from poolboard.ratelimit import RateLimitResult

FALLBACK_CLIENT_ID = "unknown-client"


def get_server(request: Request):
    return request.app.state.server


def client_identifier(request: Request) -> str:
    """First X-Forwarded-For hop, then X-Real-IP, then a shared fallback."""
    forwarded_for = request.headers.get("x-forwarded-for", "")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip", "").strip()
    if real_ip:
        return real_ip
    return FALLBACK_CLIENT_ID


def governed(request: Request, response: Response) -> RateLimitResult:
    """Admit the request or fail with 429.

    The result is kept on request.state so error responses raised later in
    the handler still carry the rate-limit headers.
    """
    srv = get_server(request)
    result = srv.governor.admit(client_identifier(request))
    request.state.rate_limit = result
    if not result.allowed:
        raise HTTPException(
            status_code=429,
            detail="Too many requests",
            headers=result.headers(),
        )
    for name, value in result.headers().items():
        response.headers[name] = value
    return result
