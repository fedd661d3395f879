"""Rate limiting dependency backed by the limiter on ``app.state``."""

from __future__ import annotations

from typing import Callable

from fastapi import HTTPException, Request

from services.rate_limiter import RATE_LIMIT_PRESETS, get_rate_limit_error_message


def client_identifier(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def rate_limit(action: str, preset: str = "DEFAULT") -> Callable[[Request], None]:
    """Return a FastAPI dependency that enforces a per-client sliding window."""
    config = RATE_LIMIT_PRESETS[preset]

    async def _dependency(request: Request):
        if getattr(request.app.state, "disable_rate_limits", False):
            return
        limiter = request.app.state.rate_limiter
        result = await limiter.check(client_identifier(request), action, config)
        if not result.allowed:
            raise HTTPException(
                status_code=429,
                detail=get_rate_limit_error_message(result),
                headers={"Retry-After": str(max(int(result.reset_in), 1))},
            )

    return _dependency
