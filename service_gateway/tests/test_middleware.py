"""
Unit tests for the rate limiting middleware.
"""

import asyncio
from typing import List, Optional, Tuple

import httpx
import pytest
from unittest.mock import MagicMock
from fastapi import FastAPI
from redis.exceptions import ConnectionError as RedisConnectionError

from service_gateway.app.auth.identity import Anonymous, IdentitySettings
from service_gateway.app.ratelimit.limiter import RateLimiter
from service_gateway.app.ratelimit.middleware import RateLimitMiddleware
from service_gateway.app.ratelimit.store import CounterStore
from shared.metrics import MetricsCollector
from shared.test_helpers import (
    InMemoryStorePool,
    ManualClock,
    MockTokenGenerator,
    MockUser,
    UnavailableStorePool,
)

SECRET = "mock-secret"
QUOTA_HEADERS = ("x-ratelimit-limit", "x-ratelimit-remaining", "x-ratelimit-reset")


def build_app(
    pool,
    clock: ManualClock,
    *,
    enabled: bool = True,
    default_limit: int = 2,
    metrics: Optional[MetricsCollector] = None,
) -> Tuple[FastAPI, List[str]]:
    """Small app whose only route records every time it is reached."""
    app = FastAPI()
    calls: List[str] = []

    @app.get("/ping")
    async def ping():
        calls.append("ping")
        return {"pong": True}

    limiter = RateLimiter(CounterStore(pool, clock=clock), key_prefix="rl_", window_seconds=60)
    app.add_middleware(
        RateLimitMiddleware,
        limiter=limiter,
        identity_settings=IdentitySettings(
            verification_key=SECRET,
            algorithm="HS512",
            default_limit=default_limit,
        ),
        enabled=enabled,
        metrics=metrics,
    )
    return app, calls


def client_for(app: FastAPI, address: Optional[str] = "10.0.0.1") -> httpx.AsyncClient:
    peer = (address, 51000) if address is not None else None
    transport = httpx.ASGITransport(app=app, client=peer)
    return httpx.AsyncClient(transport=transport, base_url="http://gateway.test")


class TestRateLimitMiddleware:
    """Test cases for RateLimitMiddleware."""

    @pytest.fixture
    def pool(self):
        return InMemoryStorePool()

    @pytest.fixture
    def clock(self):
        return ManualClock()

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("gateway")

    @pytest.mark.asyncio
    async def test_window_scenario(self, pool, clock):
        app, calls = build_app(pool, clock, default_limit=2)

        async with client_for(app, "10.0.0.1") as client:
            first = await client.get("/ping")
            clock.advance(1)
            second = await client.get("/ping")
            clock.advance(1)
            third = await client.get("/ping")
            clock.advance(58)
            fourth = await client.get("/ping")

        assert first.status_code == 200
        assert first.headers["x-ratelimit-limit"] == "2"
        assert first.headers["x-ratelimit-remaining"] == "1"
        assert first.headers["x-ratelimit-reset"] == "60"
        assert "retry-after" not in first.headers

        assert second.status_code == 200
        assert second.headers["x-ratelimit-remaining"] == "0"
        assert second.headers["x-ratelimit-reset"] == "59"

        assert third.status_code == 429
        assert third.json() == {"code": 429, "message": "Too Many Requests"}
        assert third.headers["content-type"].startswith("application/json")
        assert 0 < int(third.headers["retry-after"]) < 60
        for header in QUOTA_HEADERS:
            assert header not in third.headers

        assert fourth.status_code == 200
        assert fourth.headers["x-ratelimit-remaining"] == "1"
        assert fourth.headers["x-ratelimit-reset"] == "60"

        assert calls == ["ping", "ping", "ping"]
        assert "rl_10.0.0.1" in pool.redis.hashes

    @pytest.mark.asyncio
    async def test_denied_requests_never_reach_the_handler(self, pool, clock):
        app, calls = build_app(pool, clock, default_limit=1)

        async with client_for(app) as client:
            responses = [await client.get("/ping") for _ in range(4)]

        assert [r.status_code for r in responses] == [200, 429, 429, 429]
        assert calls == ["ping"]

    @pytest.mark.asyncio
    async def test_disabled_always_dispatches_without_headers(self, pool, clock):
        app, calls = build_app(pool, clock, enabled=False, default_limit=1)

        async with client_for(app, address=None) as client:
            responses = [await client.get("/ping") for _ in range(3)]

        assert [r.status_code for r in responses] == [200, 200, 200]
        for response in responses:
            for header in QUOTA_HEADERS:
                assert header not in response.headers
        assert calls == ["ping"] * 3
        assert pool.checkouts == 0

    @pytest.mark.asyncio
    async def test_unlimited_anonymous_passes_through(self, pool, clock):
        app, calls = build_app(pool, clock, default_limit=-1)

        async with client_for(app, address=None) as client:
            response = await client.get("/ping")

        assert response.status_code == 200
        assert response.json() == {"pong": True}
        for header in QUOTA_HEADERS:
            assert header not in response.headers
        assert pool.checkouts == 0

    @pytest.mark.asyncio
    async def test_missing_address_is_a_server_error(self, pool, clock):
        app, calls = build_app(pool, clock, default_limit=2)

        async with client_for(app, address=None) as client:
            response = await client.get("/ping")

        assert response.status_code == 500
        assert response.json() == {"code": 500, "message": "Internal Server Error"}
        assert calls == []

    @pytest.mark.asyncio
    async def test_store_outage_is_a_server_error(self, clock):
        app, calls = build_app(UnavailableStorePool(), clock, default_limit=2)

        async with client_for(app) as client:
            response = await client.get("/ping")

        assert response.status_code == 500
        body = response.json()
        assert body == {"code": 500, "message": "Internal Server Error"}
        assert "retry-after" not in response.headers
        assert calls == []

    @pytest.mark.asyncio
    async def test_authenticated_caller_uses_token_limit(self, pool, clock):
        app, calls = build_app(pool, clock, default_limit=2)
        token = MockTokenGenerator(secret=SECRET).generate_access_token(MockUser("u1", rate_limit=5))

        async with client_for(app, "10.0.0.1") as client:
            response = await client.get("/ping", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 200
        assert response.headers["x-ratelimit-limit"] == "5"
        assert response.headers["x-ratelimit-remaining"] == "4"
        assert "rl_u1" in pool.redis.hashes
        assert "rl_10.0.0.1" not in pool.redis.hashes

    @pytest.mark.asyncio
    async def test_authenticated_caller_without_address(self, pool, clock):
        app, calls = build_app(pool, clock, default_limit=2)
        token = MockTokenGenerator(secret=SECRET).generate_access_token(MockUser("u1", rate_limit=5))

        async with client_for(app, address=None) as client:
            response = await client.get("/ping", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 200
        assert response.headers["x-ratelimit-remaining"] == "4"

    @pytest.mark.asyncio
    async def test_unlimited_token_skips_the_store(self, pool, clock):
        app, calls = build_app(pool, clock, default_limit=2)
        token = MockTokenGenerator(secret=SECRET).generate_access_token(MockUser("svc", rate_limit=-1))

        async with client_for(app) as client:
            responses = [
                await client.get("/ping", headers={"Authorization": f"Bearer {token}"})
                for _ in range(5)
            ]

        assert all(r.status_code == 200 for r in responses)
        assert all("x-ratelimit-limit" not in r.headers for r in responses)
        assert pool.checkouts == 0

    @pytest.mark.asyncio
    async def test_limit_below_unlimited_is_unlimited(self, pool, clock):
        app, calls = build_app(pool, clock, default_limit=2)
        token = MockTokenGenerator(secret=SECRET).generate_access_token(MockUser("u9", rate_limit=-5))

        async with client_for(app) as client:
            responses = [
                await client.get("/ping", headers={"Authorization": f"Bearer {token}"})
                for _ in range(3)
            ]

        assert [r.status_code for r in responses] == [200, 200, 200]
        for response in responses:
            for header in QUOTA_HEADERS:
                assert header not in response.headers
        assert calls == ["ping"] * 3
        assert pool.checkouts == 0
        assert "rl_u9" not in pool.redis.hashes

    @pytest.mark.asyncio
    async def test_forged_token_is_counted_by_address(self, pool, clock):
        app, calls = build_app(pool, clock, default_limit=2)
        forged = MockTokenGenerator(secret="other-secret").generate_access_token(MockUser("u1", rate_limit=100))

        async with client_for(app, "10.0.0.1") as client:
            response = await client.get("/ping", headers={"Authorization": f"Bearer {forged}"})

        assert response.status_code == 200
        assert response.headers["x-ratelimit-limit"] == "2"
        assert "rl_10.0.0.1" in pool.redis.hashes

    @pytest.mark.asyncio
    async def test_decisions_are_counted(self, pool, clock, metrics):
        app, calls = build_app(pool, clock, default_limit=1, metrics=metrics)

        async with client_for(app) as client:
            await client.get("/ping")
            await client.get("/ping")

        registry = metrics.registry
        assert registry.get_sample_value("rate_limit_decisions_total", {"outcome": "allowed"}) == 1.0
        assert registry.get_sample_value("rate_limit_decisions_total", {"outcome": "denied"}) == 1.0
        assert registry.get_sample_value("rate_limit_evaluation_seconds_count") == 2.0


class TestCancellation:
    """Store evaluation outlives a caller that goes away."""

    @pytest.mark.asyncio
    async def test_evaluation_completes_after_cancel(self):
        pool = InMemoryStorePool()
        gate = asyncio.Event()
        original_hgetall = pool.redis.hgetall

        async def slow_hgetall(key):
            await gate.wait()
            return await original_hgetall(key)

        pool.redis.hgetall = slow_hgetall
        limiter = RateLimiter(CounterStore(pool, clock=ManualClock()), key_prefix="rl_", window_seconds=60)
        middleware = RateLimitMiddleware(
            FastAPI(),
            limiter=limiter,
            identity_settings=IdentitySettings(SECRET, "HS512", 2),
        )

        task = asyncio.create_task(middleware._evaluate(Anonymous("10.0.0.1", 2)))
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        gate.set()
        for _ in range(10):
            await asyncio.sleep(0)

        assert pool.redis.hashes["rl_10.0.0.1"]["remaining"] == "1"
        assert pool.in_use == 0

    @pytest.mark.asyncio
    async def test_failure_after_cancel_is_logged(self):
        pool = InMemoryStorePool()
        gate = asyncio.Event()

        async def failing_hgetall(key):
            await gate.wait()
            raise RedisConnectionError("Connection reset by peer")

        pool.redis.hgetall = failing_hgetall
        limiter = RateLimiter(CounterStore(pool, clock=ManualClock()), key_prefix="rl_", window_seconds=60)
        middleware = RateLimitMiddleware(
            FastAPI(),
            limiter=limiter,
            identity_settings=IdentitySettings(SECRET, "HS512", 2),
        )
        middleware.logger = MagicMock()

        task = asyncio.create_task(middleware._evaluate(Anonymous("10.0.0.1", 2)))
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        gate.set()
        for _ in range(10):
            await asyncio.sleep(0)

        middleware.logger.warning.assert_called_once()
        assert middleware.logger.warning.call_args.kwargs["error_type"] == "RateLimiterError"
        assert pool.in_use == 0
