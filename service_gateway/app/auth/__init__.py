"""
Authentication helpers for the Access Gateway service.
"""

from .claims import Claims, TokenInvalid, TokenInvalidReason, bearer_token, issue, verify
from .identity import Anonymous, Authenticated, Identity, IdentitySettings, Unresolvable, resolve

__all__ = [
    "Anonymous",
    "Authenticated",
    "Claims",
    "Identity",
    "IdentitySettings",
    "TokenInvalid",
    "TokenInvalidReason",
    "Unresolvable",
    "bearer_token",
    "issue",
    "resolve",
    "verify",
]
