"""Error taxonomy shared by the stores, the services and the HTTP layer.

Every error carries a stable ``code``, a user-safe ``message`` and the HTTP
status the boundary maps it to. Internal detail (driver errors, provider
responses) is kept on ``__cause__`` and never rendered to clients.
"""
from __future__ import annotations

from typing import Optional


class LedgerError(Exception):
    status_code = 500
    code = "internal_error"
    retryable = False

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or "Unexpected error"
        super().__init__(self.message)

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class ValidationError(LedgerError):
    status_code = 400
    code = "validation_error"


class AuthError(LedgerError):
    status_code = 401
    code = "auth_required"

    def __init__(self, message: str = "Authentication required",
                 status_code: int = 401) -> None:
        super().__init__(message)
        self.status_code = status_code
        if status_code == 403:
            self.code = "forbidden"


class NotFoundError(LedgerError):
    status_code = 404
    code = "not_found"


class UnknownTransaction(NotFoundError):
    code = "unknown_transaction"

    def __init__(self, external_transaction_id: str) -> None:
        super().__init__("Unknown transaction")
        self.external_transaction_id = external_transaction_id


class ConflictError(LedgerError):
    status_code = 409
    code = "conflict"

    def __init__(self, reason: str, message: Optional[str] = None) -> None:
        super().__init__(message or reason)
        self.reason = reason


class CouponConflict(ConflictError):
    code = "coupon_conflict"

    MESSAGES = {
        "invalid": "Invalid coupon code",
        "expired": "Coupon has expired",
        "limit_reached": "Coupon usage limit reached",
        "already_used": "You have already used this coupon",
    }

    def __init__(self, reason: str, message: Optional[str] = None) -> None:
        super().__init__(reason, message or self.MESSAGES.get(reason))


class CapacityExceeded(ConflictError):
    code = "capacity_exceeded"

    def __init__(self, item_id: str) -> None:
        super().__init__("capacity_exceeded", "Sold out")
        self.item_id = item_id


class InvalidSignature(LedgerError):
    status_code = 400
    code = "invalid_signature"

    def __init__(self, message: str = "Invalid signature") -> None:
        super().__init__(message)


class UpstreamError(LedgerError):
    status_code = 502
    code = "upstream_error"
    retryable = True


class PersistenceError(LedgerError):
    status_code = 503
    code = "persistence_error"
    retryable = True
