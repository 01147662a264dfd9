"""
Rate limit decisions for resolved caller identities.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from shared.errors import AccessLayerException
from shared.logging import get_logger

from ..auth.identity import Anonymous, Authenticated, Identity, Unresolvable
from .store import UNLIMITED, CounterStore, StoreError, StoreErrorKind


class RateLimiterErrorKind(str, Enum):
    MISSING_ADDRESS = "missing_address"
    STORE_UNAVAILABLE = "store_unavailable"
    CORRUPT_RECORD = "corrupt_record"


_FROM_STORE = {
    StoreErrorKind.STORE_UNAVAILABLE: RateLimiterErrorKind.STORE_UNAVAILABLE,
    StoreErrorKind.CORRUPT_RECORD: RateLimiterErrorKind.CORRUPT_RECORD,
}


class RateLimiterError(AccessLayerException):
    """A request could not be evaluated against its rate limit."""

    def __init__(self, kind: RateLimiterErrorKind, message: str, details: Optional[Dict[str, Any]] = None):
        self.kind = kind
        super().__init__(kind.name, message, details)

    @classmethod
    def from_store_error(cls, error: StoreError) -> "RateLimiterError":
        return cls(_FROM_STORE[error.kind], error.message, details=error.details)


@dataclass(frozen=True)
class Decision:
    """Outcome of one rate limit evaluation."""

    limit: int
    remaining: int
    reset_seconds: int

    @classmethod
    def unlimited(cls) -> "Decision":
        return cls(UNLIMITED, 0, 0)

    @property
    def is_unlimited(self) -> bool:
        return self.limit <= UNLIMITED

    @property
    def is_allowed(self) -> bool:
        return self.is_unlimited or self.remaining >= 0

    @property
    def outcome(self) -> str:
        if self.is_unlimited:
            return "unlimited"
        return "allowed" if self.remaining >= 0 else "denied"


class RateLimiter:
    """Fixed-window rate limiter keyed by caller identity."""

    def __init__(self, store: CounterStore, key_prefix: str, window_seconds: int):
        self.store = store
        self.key_prefix = key_prefix
        self.window_seconds = window_seconds
        self.logger = get_logger("gateway.rate_limiter")

    @classmethod
    def from_config(cls, store: CounterStore, config) -> "RateLimiter":
        return cls(store, config.rate_limit_key_prefix, config.rate_limit_window_seconds)

    def key_for(self, identity: Identity) -> str:
        """Build the store key addressing the counter of ``identity``."""
        if isinstance(identity, Authenticated):
            return f"{self.key_prefix}{identity.user_id}"
        if isinstance(identity, Anonymous) and identity.address:
            return f"{self.key_prefix}{identity.address}"
        raise ValueError(f"No rate limit key for {identity!r}")

    async def evaluate(self, identity: Identity) -> Decision:
        """Count the request of ``identity`` and decide whether it may proceed."""
        if isinstance(identity, Unresolvable):
            raise RateLimiterError(
                RateLimiterErrorKind.MISSING_ADDRESS,
                "Caller network address unavailable",
            )

        if identity.limit <= UNLIMITED:
            return Decision.unlimited()

        key = self.key_for(identity)
        try:
            limit, remaining, reset = await self.store.check_and_update(key, identity.limit, self.window_seconds)
        except StoreError as exc:
            raise RateLimiterError.from_store_error(exc) from exc

        decision = Decision(limit, remaining, reset)
        if not decision.is_allowed:
            self.logger.warning("Rate limit exceeded", key=key, limit=limit, reset_seconds=reset)
        return decision
