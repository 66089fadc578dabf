"""ASGI middleware that throttles requests per client identifier."""

from __future__ import annotations

import logging
import sqlite3

from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Receive, Scope, Send

from src.ratelimit.base import RateLimiter

logger = logging.getLogger(__name__)

# Paths that are never throttled (exact match)
EXEMPT_PATHS = {"/health", "/healthz", "/ready"}

TOO_MANY_REQUESTS = "Too many requests. Please try again later."


def client_identifier(request: Request, trust_forwarded: bool = False) -> str:
    """Peer address of the request, or ``anonymous`` when there is none.

    With ``trust_forwarded`` the first ``x-forwarded-for`` hop wins. Only
    enable it behind a proxy that overwrites that header.
    """
    if trust_forwarded:
        forwarded = request.headers.get("x-forwarded-for", "")
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    if request.client and request.client.host:
        return request.client.host
    return "anonymous"


class RateLimitMiddleware:
    """Returns 429 once a client exceeds its sliding-window budget."""

    def __init__(
        self, app: ASGIApp, limiter: RateLimiter, trust_forwarded: bool = False,
    ) -> None:
        self.app = app
        self._limiter = limiter
        self._trust_forwarded = trust_forwarded

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        if request.url.path in EXEMPT_PATHS:
            await self.app(scope, receive, send)
            return

        identifier = client_identifier(request, self._trust_forwarded)
        try:
            allowed = await run_in_threadpool(self._limiter.check_limit, identifier)
        except sqlite3.Error:
            # Shared limiter unavailable: fail open.
            logger.exception("Rate limiter backend failed for %s", identifier)
            allowed = True

        if not allowed:
            logger.warning(
                "Rate limit exceeded for %s on %s %s",
                identifier, request.method, request.url.path,
            )
            response = JSONResponse({"error": TOO_MANY_REQUESTS}, status_code=429)
            await response(scope, receive, send)
            return

        await self.app(scope, receive, send)
