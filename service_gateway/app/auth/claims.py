"""
Signed identity tokens: verification, claim extraction and issuance.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from jose import ExpiredSignatureError, JWTError, jwt
from jose.exceptions import JWTClaimsError
from pydantic import BaseModel, ValidationError

from shared.errors import AuthenticationError

DEFAULT_ALGORITHM = "HS512"
UNLIMITED = -1


class TokenInvalidReason(str, Enum):
    """Why a token was refused."""

    SIGNATURE_INVALID = "signature_invalid"
    EXPIRED = "expired"
    MALFORMED = "malformed"


class TokenInvalid(AuthenticationError):
    """A token failed verification; nothing it carries may be trusted."""

    def __init__(self, reason: TokenInvalidReason, details: Optional[Dict[str, Any]] = None):
        self.reason = reason
        super().__init__(f"Invalid token ({reason.value})", details)


class Claims(BaseModel):
    """Payload of a verified identity token."""

    sub: str
    exp: int
    iat: int
    nbf: int
    user_id: str
    user_roles: str
    # Max number of requests per window (-1 or below: unlimited)
    user_rate_limit: int

    @property
    def limit(self) -> int:
        return self.user_rate_limit


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Return the token of a ``Bearer <token>`` header value, if any."""
    if not authorization:
        return None

    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None

    token = token.strip()
    return token or None


def verify(token: str, key: str, algorithm: str = DEFAULT_ALGORITHM) -> Claims:
    """Verify the token signature and time window and return its claims.

    Raises ``TokenInvalid`` on any failure.
    """
    try:
        jwt.get_unverified_header(token)
    except JWTError as exc:
        raise TokenInvalid(TokenInvalidReason.MALFORMED, details={"error": str(exc)}) from exc

    try:
        payload = jwt.decode(
            token,
            key,
            algorithms=[algorithm],
            options={"verify_aud": False},
        )
    except ExpiredSignatureError as exc:
        raise TokenInvalid(TokenInvalidReason.EXPIRED, details={"error": str(exc)}) from exc
    except JWTClaimsError as exc:
        # nbf in the future, or a time claim that is not a number
        raise TokenInvalid(TokenInvalidReason.EXPIRED, details={"error": str(exc)}) from exc
    except JWTError as exc:
        raise TokenInvalid(TokenInvalidReason.SIGNATURE_INVALID, details={"error": str(exc)}) from exc

    try:
        return Claims.model_validate(payload, strict=True)
    except ValidationError as exc:
        raise TokenInvalid(TokenInvalidReason.MALFORMED, details={"error": str(exc)}) from exc


def issue(
    user_id: str,
    limit: int,
    roles: str,
    key: str,
    lifetime_hours: int,
    algorithm: str = DEFAULT_ALGORITHM,
) -> Tuple[str, int]:
    """Sign a token for ``user_id`` and return it with its expiry (epoch seconds)."""
    now = int(time.time())
    expires_at = now + lifetime_hours * 3600

    claims = Claims(
        sub=user_id,
        exp=expires_at,
        iat=now,
        nbf=now,
        user_id=user_id,
        user_roles=roles,
        user_rate_limit=limit,
    )
    token = jwt.encode(claims.model_dump(), key, algorithm=algorithm)
    return token, expires_at
