"""
API Gateway service with identity-aware rate limiting.
"""

from datetime import datetime
from typing import Callable, Dict, Optional, Tuple

from shared.base_service import BaseService
from shared.config import ServiceConfig

from .auth.claims import issue
from .auth.identity import IdentitySettings
from .ratelimit.limiter import RateLimiter
from .ratelimit.middleware import RateLimitMiddleware
from .ratelimit.pool import StorePool
from .ratelimit.store import CounterStore, utcnow


class GatewayService(BaseService):
    """API Gateway service implementation."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        *,
        store_pool: Optional[StorePool] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store_pool = store_pool
        self._clock = clock
        super().__init__("gateway", 8000, config=config)

        @self.app.on_event("shutdown")
        async def _shutdown():
            await self.store_pool.close()

        self._setup_gateway_routes()

        # Expose service instance via app state for introspection/testing
        self.app.state.gateway_service = self

    def _setup_middleware(self):
        """Install the rate limiter inside the request timing middleware."""
        if self._store_pool is None:
            self._store_pool = StorePool.from_config(self.config)
        self.store_pool = self._store_pool
        self.counter_store = CounterStore(self.store_pool, clock=self._clock)
        self.rate_limiter = RateLimiter.from_config(self.counter_store, self.config)

        self.app.add_middleware(
            RateLimitMiddleware,
            limiter=self.rate_limiter,
            identity_settings=IdentitySettings.from_config(self.config),
            enabled=self.config.rate_limit_enabled,
            metrics=self.metrics,
        )
        self.logger.info(
            "Rate limiting configured",
            enabled=self.config.rate_limit_enabled,
            default_requests=self.config.rate_limit_default_requests,
            window_seconds=self.config.rate_limit_window_seconds,
            key_prefix=self.config.rate_limit_key_prefix,
        )

        super()._setup_middleware()

    def _setup_gateway_routes(self):
        """Set up gateway routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "gateway",
                "message": "Rate limiting API Gateway",
                "version": "1.0.0",
            }

    def issue_token(self, user_id: str, limit: int, roles: str = "USER") -> Tuple[str, int]:
        """Sign a token this gateway accepts, valid for the configured lifetime."""
        return issue(
            user_id,
            limit,
            roles,
            self.config.jwt_secret_key,
            self.config.jwt_lifetime_hours,
            algorithm=self.config.jwt_algorithm,
        )

    async def _check_dependencies(self) -> Dict[str, str]:
        """Report the counter store as the gateway's only dependency."""
        return {"redis": "ok" if await self.store_pool.ping() else "error"}


def create_app(config: Optional[ServiceConfig] = None, **kwargs):
    """Create FastAPI application."""
    service = GatewayService(config, **kwargs)
    return service.app


if __name__ == "__main__":
    service = GatewayService()
    service.run()
