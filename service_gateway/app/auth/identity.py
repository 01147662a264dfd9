"""
Caller identity resolution for rate limiting.

An authenticated caller is identified by the user id baked into a verified
token and carries the limit from that token. Anonymous callers fall back to
their network address and the configured default limit.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional, Union

from shared.logging import get_logger

from .claims import UNLIMITED, TokenInvalid, bearer_token, verify

logger = get_logger("gateway.identity")


@dataclass(frozen=True)
class Authenticated:
    user_id: str
    limit: int


@dataclass(frozen=True)
class Anonymous:
    # None only when the limit is UNLIMITED
    address: Optional[str]
    limit: int


@dataclass(frozen=True)
class Unresolvable:
    """Anonymous caller without a network address while limiting is active."""


Identity = Union[Authenticated, Anonymous, Unresolvable]


@dataclass(frozen=True)
class IdentitySettings:
    """The slice of service configuration the resolver needs."""

    verification_key: str
    algorithm: str
    default_limit: int
    trust_forwarded_for: bool = False

    @classmethod
    def from_config(cls, config) -> "IdentitySettings":
        return cls(
            verification_key=config.jwt_secret_key,
            algorithm=config.jwt_algorithm,
            default_limit=config.rate_limit_default_requests,
            trust_forwarded_for=config.rate_limit_trust_forwarded_for,
        )


def client_address(headers: Mapping[str, str], peer: Optional[str], trust_forwarded_for: bool = False) -> Optional[str]:
    """Pick the address that identifies an anonymous caller."""
    if trust_forwarded_for:
        forwarded_for = headers.get("x-forwarded-for")
        if forwarded_for:
            first_hop = forwarded_for.split(",")[0].strip()
            if first_hop:
                return first_hop
        real_ip = headers.get("x-real-ip")
        if real_ip and real_ip.strip():
            return real_ip.strip()
    return peer or None


def resolve(headers: Mapping[str, str], address: Optional[str], settings: IdentitySettings) -> Identity:
    """Resolve the identity of a request."""
    token = bearer_token(headers.get("authorization"))
    if token is not None:
        try:
            claims = verify(token, settings.verification_key, settings.algorithm)
        except TokenInvalid as exc:
            logger.warning("Ignoring invalid bearer token", reason=exc.reason.value)
        else:
            return Authenticated(user_id=claims.user_id, limit=claims.limit)

    if settings.default_limit == UNLIMITED:
        return Anonymous(address=address, limit=UNLIMITED)

    if address:
        return Anonymous(address=address, limit=settings.default_limit)

    return Unresolvable()
