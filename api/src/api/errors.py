"""Error taxonomy for the auction engine.

Each error carries a ``kind`` (the category surfaced to callers), a machine-readable
``code`` so clients can prompt the right remediation, and a human-readable message.
"""

from __future__ import annotations

from typing import Any


class AuctionError(Exception):
    kind = "error"
    status_code = 500

    def __init__(self, message: str, *, code: str | None = None, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.kind
        self.context = context

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": False,
            "error": self.kind,
            "code": self.code,
            "message": self.message,
        }
        if self.context:
            payload["context"] = {k: str(v) for k, v in self.context.items()}
        return payload


class ValidationError(AuctionError):
    """Bad input shape or range. Never retried."""

    kind = "validation"
    status_code = 400


class NotFoundError(AuctionError):
    kind = "not_found"
    status_code = 404


class StateConflictError(AuctionError):
    """Request conflicts with current state (auction ended, already authorized...)."""

    kind = "conflict"
    status_code = 409


class ForbiddenError(StateConflictError):
    """Caller may not perform the action (self-bid, deposit/KYC/terms gating)."""

    kind = "forbidden"
    status_code = 403


class RateLimitedError(AuctionError):
    kind = "rate_limited"
    status_code = 429

    def __init__(self, message: str, *, retry_after: int, **context: Any) -> None:
        super().__init__(message, code="rate_limited", **context)
        self.retry_after = retry_after


class ExternalProcessorError(AuctionError):
    """Payment processor call failed. Resolved by the reconciliation sweep."""

    kind = "processor_error"
    status_code = 502


class ProcessorTimeoutError(ExternalProcessorError):
    kind = "processor_timeout"
    status_code = 504


class PersistenceError(AuctionError):
    """Datastore write failed after a processor side effect succeeded."""

    kind = "persistence_error"
    status_code = 500
