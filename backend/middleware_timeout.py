"""
Request timeout middleware for FastAPI.

Bounds HTTP request duration so a stalled upstream (LLM, enrichment, RPC)
cannot hold a worker indefinitely. WebSocket connections are not affected.
"""
import asyncio
import logging
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from config import REQUEST_TIMEOUT_SECONDS

logger = logging.getLogger("au_gold")


class TimeoutMiddleware(BaseHTTPMiddleware):
    """Returns 504 when a request runs longer than `timeout_seconds`."""

    def __init__(self, app, timeout_seconds: float = REQUEST_TIMEOUT_SECONDS):
        super().__init__(app)
        self.timeout_seconds = timeout_seconds

    async def dispatch(self, request: Request, call_next):
        try:
            return await asyncio.wait_for(call_next(request), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                f"[timeout] {request.method} {request.url.path} exceeded {self.timeout_seconds}s"
            )
            return JSONResponse(
                status_code=504,
                content={
                    "code": "request_timeout",
                    "detail": f"Request exceeded maximum duration of {self.timeout_seconds} seconds",
                },
            )
