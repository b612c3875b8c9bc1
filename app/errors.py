from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from fastapi import HTTPException


class ConflictReason(str, Enum):
    DUPLICATE_ACTIVE_SUBSCRIPTION = "DUPLICATE_ACTIVE_SUBSCRIPTION"
    SWAP_ALREADY_PENDING = "SWAP_ALREADY_PENDING"
    SAME_PLAN = "SAME_PLAN"
    CONCURRENT_UPDATE = "CONCURRENT_UPDATE"


class ValidationError(HTTPException):
    def __init__(self, detail: Any = "Invalid request") -> None:
        super().__init__(400, detail)


class SignatureError(HTTPException):
    def __init__(self, detail: Any = "Invalid webhook signature") -> None:
        super().__init__(401, detail)


class AuthzError(HTTPException):
    def __init__(self, detail: Any = "Forbidden") -> None:
        super().__init__(403, detail)


class NotFoundError(HTTPException):
    def __init__(self, detail: Any = "Not found") -> None:
        super().__init__(404, detail)


class ConflictError(HTTPException):
    def __init__(self, reason: ConflictReason, message: str) -> None:
        self.reason = reason
        self.message = message
        super().__init__(409, {"message": message, "reason": reason.value})


class DuplicateActiveSubscription(ConflictError):
    def __init__(self, message: str = "An active subscription already exists") -> None:
        super().__init__(ConflictReason.DUPLICATE_ACTIVE_SUBSCRIPTION, message)


class ProviderError(HTTPException):
    """The billing provider rejected a request or failed to answer it."""

    status = 500

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        provider_detail: Optional[str] = None,
        http_status: Optional[int] = None,
    ) -> None:
        self.message = message
        self.code = code
        self.provider_detail = provider_detail
        self.http_status = http_status
        super().__init__(self.status, provider_detail or message)


class CatalogUnavailable(ProviderError):
    pass


class IdentityResolutionFailed(ProviderError):
    pass


class PaymentMethodRejected(ProviderError):
    status = 402


class UnknownOutcomeError(HTTPException):
    """A mutating provider call timed out; its effect must be re-read, not retried."""

    def __init__(self, operation: str) -> None:
        self.operation = operation
        super().__init__(
            504,
            f"Billing provider did not answer {operation}; the request may have been applied. Re-query current state.",
        )
