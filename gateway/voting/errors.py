"""
Error taxonomy shared by the voting core and the HTTP layer.

Each error carries a stable ``code`` string, the HTTP status it maps to and
a short message that is safe to show to end users.
"""

from __future__ import annotations

from typing import Any, Optional


class GatewayError(Exception):
    code        = "InternalError"
    status_code = 500
    default_message = "An error occurred while processing your request"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def extra(self) -> dict[str, Any]:
        return {}

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message, **self.extra()}


class ValidationFailed(GatewayError):
    code        = "ValidationFailed"
    status_code = 400
    default_message = "Validation failed"

    def __init__(self, message: Optional[str] = None, field: Optional[str] = None):
        super().__init__(message)
        self.field = field

    def extra(self) -> dict[str, Any]:
        return {"field": self.field} if self.field else {}


class InvalidSignature(GatewayError):
    """Covers bad signatures, stale timestamps and non-canonical messages alike."""

    code        = "InvalidSignature"
    status_code = 401
    default_message = "Invalid or expired wallet signature"


class MalformedMessage(ValueError):
    """Raised by the message codec when a text is not a canonical message."""


class DuplicateVote(GatewayError):
    code        = "DuplicateVote"
    status_code = 400
    default_message = "You have already voted for this product"

    def __init__(self, votes: int, payout_status: str, message: Optional[str] = None):
        super().__init__(message)
        self.votes         = votes
        self.payout_status = payout_status

    def extra(self) -> dict[str, Any]:
        return {"votes": self.votes, "payoutStatus": self.payout_status}


class RateLimitExceeded(GatewayError):
    code        = "RateLimitExceeded"
    status_code = 429
    default_message = "Rate limit exceeded"

    def __init__(self, limiter: str, message: Optional[str] = None):
        super().__init__(message)
        self.limiter = limiter

    def extra(self) -> dict[str, Any]:
        return {"limiter": self.limiter}


class ProductNotFound(GatewayError):
    code        = "ProductNotFound"
    status_code = 404
    default_message = "Product not found"


class PayoutFailed(GatewayError):
    code        = "PayoutFailed"
    status_code = 502
    default_message = "Payout provider rejected the payout"


class StorageError(GatewayError):
    code        = "StorageError"
    status_code = 500
    default_message = "A storage error occurred while processing your request"
