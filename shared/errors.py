"""
Shared error handling for the IoT Data Marketplace gateway.

Every error raised on the request path derives from ``MarketplaceError`` and
carries the HTTP status it maps to. Handlers in ``shared.base_service`` turn
these into the ``{"success": false, "error": ..., "code": ...}`` envelope.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response format."""

    success: bool = False
    code: str
    error: str
    request_id: Optional[str] = None
    details: Dict[str, Any] = {}


class MarketplaceError(Exception):
    """Base exception for marketplace errors."""

    status_code = 500

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None,
                 status_code: Optional[int] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    def to_response(self, request_id: Optional[str] = None) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            code=self.code,
            error=self.message,
            request_id=request_id,
            details=self.details
        )


class ValidationError(MarketplaceError):
    """Missing or malformed request fields."""

    status_code = 400

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class FeedInactiveError(MarketplaceError):
    """The feed exists but is not active."""

    status_code = 400

    def __init__(self, feed_id: str):
        super().__init__("FEED_INACTIVE", "Feed is not active", {"feed_id": feed_id})


class AuthenticationError(MarketplaceError):
    """No credential, or an invalid one, where one is required."""

    status_code = 401

    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHENTICATION_ERROR", message, details)


class AuthorizationError(MarketplaceError):
    """Valid credential without rights on the target feed or subscription."""

    status_code = 403

    def __init__(self, message: str = "Access denied", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHORIZATION_ERROR", message, details)


class NotFoundError(MarketplaceError):
    """Feed, subscription or credential does not exist."""

    status_code = 404

    def __init__(self, message: str = "Not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", message, details)


class UpstreamError(MarketplaceError):
    """Ledger, blob store or database failure after retries were exhausted.

    ``reason`` is the internal failure detail; it is logged but the caller
    only sees ``message``.
    """

    status_code = 500

    def __init__(self, service: str, reason: str = "", details: Optional[Dict[str, Any]] = None,
                 message: Optional[str] = None):
        self.service = service
        self.reason = reason
        super().__init__("UPSTREAM_ERROR", message or f"{service} request failed", details)


class InternalError(MarketplaceError):
    """Unexpected failure."""

    status_code = 500

    def __init__(self, message: str = "Internal server error", details: Optional[Dict[str, Any]] = None):
        super().__init__("INTERNAL_ERROR", message, details)
