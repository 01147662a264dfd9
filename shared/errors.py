"""
Shared error handling for the rate limiting gateway.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response format."""

    code: int
    message: str


class AccessLayerException(Exception):
    """Base exception for gateway services."""

    status_code: int = 500

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to the public error body; details stay internal."""
        return ErrorResponse(code=self.status_code, message=self.message)


class AuthenticationError(AccessLayerException):
    """Authentication-related errors."""

    status_code = 401

    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHENTICATION_ERROR", message, details)


def error_body(status_code: int, message: str) -> Dict[str, Any]:
    """Build the JSON body shared by every synthesized error response."""
    return ErrorResponse(code=status_code, message=message).model_dump()
