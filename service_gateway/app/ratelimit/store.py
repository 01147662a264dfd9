"""
Fixed-window request counters kept in Redis.

Each rate limit key maps to a hash with two fields:

- ``remaining``: requests left in the window. Goes to -1 on the first
  over-limit request and stays there until the window resets.
- ``expiresAt``: RFC 3339 UTC timestamp at which the window ends.

The check-and-update sequence is a plain read followed by a write, with no
WATCH/MULTI or server-side script. Concurrent requests on the same key can
read the same ``remaining`` and both be admitted, so under contention a key may
let a few more requests through than its limit. Replacing the sequence with a
single atomic script keyed identically would close the gap.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from redis.exceptions import RedisError

from shared.errors import AccessLayerException
from shared.logging import get_logger

from .pool import StorePool

UNLIMITED = -1

REMAINING_FIELD = "remaining"
EXPIRES_AT_FIELD = "expiresAt"

# Pool checkout timeouts and dropped sockets surface as RedisError or OSError
STORE_FAILURES = (RedisError, OSError)


class StoreErrorKind(str, Enum):
    STORE_UNAVAILABLE = "store_unavailable"
    CORRUPT_RECORD = "corrupt_record"


class StoreError(AccessLayerException):
    """The counter store could not be read or updated."""

    def __init__(self, kind: StoreErrorKind, message: str, details: Optional[Dict[str, Any]] = None):
        self.kind = kind
        super().__init__(kind.name, message, details)


@dataclass(frozen=True)
class CounterRecord:
    remaining: int
    expires_at: datetime


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CounterStore:
    """Check-and-update protocol over a pooled Redis client."""

    def __init__(self, pool: StorePool, clock: Callable[[], datetime] = utcnow):
        self.pool = pool
        self.clock = clock
        self.logger = get_logger("gateway.counter_store")

    async def check_and_update(self, key: str, limit: int, window_seconds: int) -> Tuple[int, int, int]:
        """Count one request against ``key``.

        Returns ``(limit, remaining, reset_seconds)``; ``remaining`` below zero
        means the request is over the limit.
        """
        if limit <= UNLIMITED:
            return UNLIMITED, 0, 0

        try:
            async with self.pool.client() as client:
                now = self.clock()
                remaining = limit - 1
                reset = window_seconds
                expires_at = now + timedelta(seconds=window_seconds)

                fields = await client.hgetall(key)
                if fields:
                    stored_expiry = _parse_expiry(key, fields)
                    reset = int((stored_expiry - now).total_seconds())

                    if reset <= 0:
                        # Window elapsed: start a fresh one
                        await client.delete(key)
                        reset = window_seconds
                    else:
                        expires_at = stored_expiry
                        remaining = _parse_remaining(key, fields)
                        if remaining >= 0:
                            remaining -= 1

                await client.hset(key, mapping={
                    REMAINING_FIELD: remaining,
                    EXPIRES_AT_FIELD: expires_at.isoformat(),
                })
                await client.expireat(key, _ceil_epoch(expires_at))
        except STORE_FAILURES as exc:
            self.logger.error("Counter store unavailable", key=key, error=str(exc))
            raise StoreError(
                StoreErrorKind.STORE_UNAVAILABLE,
                "Counter store unavailable",
                details={"key": key, "error": str(exc)},
            ) from exc

        return limit, remaining, reset

    async def status(self, key: str) -> Optional[CounterRecord]:
        """Read a counter without counting a request."""
        try:
            async with self.pool.client() as client:
                fields = await client.hgetall(key)
        except STORE_FAILURES as exc:
            raise StoreError(
                StoreErrorKind.STORE_UNAVAILABLE,
                "Counter store unavailable",
                details={"key": key, "error": str(exc)},
            ) from exc

        if not fields:
            return None
        return CounterRecord(remaining=_parse_remaining(key, fields), expires_at=_parse_expiry(key, fields))

    async def reset(self, key: str) -> bool:
        """Drop the counter for ``key``; returns True if one existed."""
        try:
            async with self.pool.client() as client:
                deleted = await client.delete(key)
        except STORE_FAILURES as exc:
            raise StoreError(
                StoreErrorKind.STORE_UNAVAILABLE,
                "Counter store unavailable",
                details={"key": key, "error": str(exc)},
            ) from exc

        self.logger.info("Rate limit reset", key=key, existed=bool(deleted))
        return bool(deleted)


def _parse_expiry(key: str, fields: Dict[str, str]) -> datetime:
    raw = fields.get(EXPIRES_AT_FIELD)
    if raw is None:
        raise StoreError(StoreErrorKind.CORRUPT_RECORD, "Counter record has no expiry", details={"key": key})
    try:
        expires_at = datetime.fromisoformat(raw)
    except (TypeError, ValueError) as exc:
        raise StoreError(
            StoreErrorKind.CORRUPT_RECORD,
            "Counter record expiry is not a timestamp",
            details={"key": key, "value": raw},
        ) from exc
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return expires_at


def _parse_remaining(key: str, fields: Dict[str, str]) -> int:
    raw = fields.get(REMAINING_FIELD)
    if raw is None:
        raise StoreError(StoreErrorKind.CORRUPT_RECORD, "Counter record has no remaining count", details={"key": key})
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise StoreError(
            StoreErrorKind.CORRUPT_RECORD,
            "Counter record remaining count is not an integer",
            details={"key": key, "value": raw},
        ) from exc


def _ceil_epoch(moment: datetime) -> int:
    seconds = moment.timestamp()
    whole = int(seconds)
    return whole if whole == seconds else whole + 1
