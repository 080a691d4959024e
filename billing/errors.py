"""Typed billing errors carrying a stable code, message and details."""

from __future__ import annotations

from typing import Any, Dict, Optional


class BillingError(Exception):
    """Base class for errors surfaced to billing callers."""

    code = "billing_error"
    http_status = 500

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<{type(self).__name__} code={self.code!r} message={self.message!r}>"


class AuthenticationRequired(BillingError):
    code = "unauthenticated"
    http_status = 401


class ValidationError(BillingError):
    code = "validation_error"
    http_status = 400


class NotFoundError(BillingError):
    code = "not_found"
    http_status = 404


class ConflictError(BillingError):
    code = "conflict"
    http_status = 409


class InvalidTransition(ConflictError):
    code = "invalid_transition"

    def __init__(self, current: str, requested: str, *, subscription_id: Optional[str] = None) -> None:
        super().__init__(
            f"Subscription cannot move from {current!r} to {requested!r}.",
            details={"current_status": current, "requested_status": requested, "subscription_id": subscription_id},
        )
        self.current = current
        self.requested = requested


class QuotaExceeded(BillingError):
    code = "quota_exceeded"
    http_status = 402

    def __init__(
        self,
        resource_type: str,
        *,
        current: int,
        limit: int,
        requested: int,
    ) -> None:
        remaining = max(limit - current, 0)
        super().__init__(
            f"{resource_type} limit reached ({current}/{limit}); {remaining} remaining.",
            details={
                "resource_type": resource_type,
                "current": current,
                "limit": limit,
                "remaining": remaining,
                "requested": requested,
            },
        )
        self.resource_type = resource_type
        self.current = current
        self.limit = limit
        self.remaining = remaining


class ProviderError(BillingError):
    """The ledger provider call failed or timed out; nothing was committed locally."""

    code = "provider_error"
    http_status = 502

    def __init__(self, message: str, *, operation: str, retryable: bool = True, details: Optional[Dict[str, Any]] = None) -> None:
        payload = {"operation": operation, "retryable": retryable}
        payload.update(details or {})
        super().__init__(message, details=payload)
        self.operation = operation
        self.retryable = retryable


class InvalidSignature(BillingError):
    code = "invalid_signature"
    http_status = 400


class RetryLater(BillingError):
    """Webhook soft failure: the local row may not have committed yet."""

    code = "retry_later"
    http_status = 503
