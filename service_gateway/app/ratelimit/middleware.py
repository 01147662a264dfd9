"""
Rate limiting middleware for the Gateway.

Every request is evaluated before the rest of the application sees it:

- unlimited: forwarded untouched
- allowed: forwarded, response gets ``x-ratelimit-*`` quota headers
- denied: 429 with ``retry-after``, the application is never called
- evaluation error: 500, the application is never called
"""

from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.types import ASGIApp

from shared.errors import error_body
from shared.logging import get_logger, set_user_context
from shared.metrics import MetricsCollector

from ..auth.identity import Authenticated, IdentitySettings, client_address, resolve
from .limiter import Decision, RateLimiter, RateLimiterError

LIMIT_HEADER = "x-ratelimit-limit"
REMAINING_HEADER = "x-ratelimit-remaining"
RESET_HEADER = "x-ratelimit-reset"
RETRY_AFTER_HEADER = "retry-after"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Identity-aware rate limiting in front of the next handler."""

    def __init__(
        self,
        app: ASGIApp,
        *,
        limiter: RateLimiter,
        identity_settings: IdentitySettings,
        enabled: bool = True,
        metrics: Optional[MetricsCollector] = None,
    ):
        super().__init__(app)
        self.limiter = limiter
        self.identity_settings = identity_settings
        self.enabled = enabled
        self.metrics = metrics
        self.logger = get_logger("gateway.rate_limit_middleware")

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        try:
            decision = await self.check_request(request)
        except RateLimiterError as exc:
            self.logger.error(
                "Rate limit evaluation failed",
                kind=exc.kind.value,
                error=exc.message,
                details=exc.details,
                path=request.url.path,
            )
            self._record("error")
            return JSONResponse(status_code=500, content=error_body(500, "Internal Server Error"))

        self._record(decision.outcome)

        if decision.is_unlimited:
            return await call_next(request)

        if not decision.is_allowed:
            return JSONResponse(
                status_code=429,
                content=error_body(429, "Too Many Requests"),
                headers={RETRY_AFTER_HEADER: str(decision.reset_seconds)},
            )

        response = await call_next(request)
        set_quota_headers(response, decision)
        return response

    async def check_request(self, request: Request) -> Decision:
        """Resolve the caller of ``request`` and evaluate its rate limit."""
        if not self.enabled:
            return Decision.unlimited()

        peer = request.client.host if request.client else None
        address = client_address(request.headers, peer, self.identity_settings.trust_forwarded_for)
        identity = resolve(request.headers, address, self.identity_settings)
        if isinstance(identity, Authenticated):
            set_user_context(identity.user_id)

        if self.metrics is not None:
            with self.metrics.time_operation("rate_limit_evaluation_seconds"):
                return await self._evaluate(identity)
        return await self._evaluate(identity)

    async def _evaluate(self, identity) -> Decision:
        # The store round trip completes even if the caller disconnects.
        evaluation = asyncio.ensure_future(self.limiter.evaluate(identity))
        try:
            return await asyncio.shield(evaluation)
        except asyncio.CancelledError:
            evaluation.add_done_callback(self._collect_abandoned)
            raise

    def _collect_abandoned(self, evaluation: asyncio.Future) -> None:
        """Log the failure of an evaluation whose caller went away."""
        if evaluation.cancelled():
            return
        exc = evaluation.exception()
        if exc is not None:
            self.logger.warning(
                "Rate limit evaluation failed after caller left",
                error=str(exc),
                error_type=type(exc).__name__,
            )

    def _record(self, outcome: str) -> None:
        if self.metrics is not None:
            self.metrics.record_rate_limit_decision(outcome)


def set_quota_headers(response: Response, decision: Decision) -> None:
    """Attach the quota headers of an allowed decision to ``response``."""
    if decision.is_unlimited:
        return
    response.headers[LIMIT_HEADER] = str(decision.limit)
    response.headers[REMAINING_HEADER] = str(decision.remaining)
    response.headers[RESET_HEADER] = str(decision.reset_seconds)
