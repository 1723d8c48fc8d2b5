"""Domain exceptions for the DID engine.

Every exception carries a machine-readable ``code`` and an optional
``details`` mapping.  Exceptions are grouped into families that the HTTP
layer translates to status codes exactly once:

* :class:`ValidationError` -- the request was wrong; nothing was mutated.
* :class:`ConflictError` -- the caller's view of the world was stale.
* :class:`NotFoundError` -- a referenced entity does not exist.
* :class:`PermissionDenied` -- the caller may not perform the action.
* :class:`InsufficientBalance` -- the ledger cannot cover the charge.
* :class:`DependencyError` -- a collaborator (ledger, OTP provider, billing gateway) failed.
* :class:`SecurityError` -- an inbound request failed authentication.
"""

from __future__ import annotations

from typing import Any


class DidEngineError(Exception):
    """Base class for all domain errors."""

    code: str = "ERROR"

    def __init__(self, message: str, *, code: str | None = None, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details: dict[str, Any] = details or {}


# ---------------------------------------------------------------------------
# Families
# ---------------------------------------------------------------------------


class ValidationError(DidEngineError):
    code = "VALIDATION_ERROR"


class ConflictError(DidEngineError):
    code = "CONFLICT"


class NotFoundError(DidEngineError):
    code = "NOT_FOUND"


class PermissionDenied(DidEngineError):
    code = "PERMISSION_DENIED"


class DependencyError(DidEngineError):
    code = "DEPENDENCY_FAILED"


class SecurityError(DidEngineError):
    code = "UNAUTHORIZED"


# ---------------------------------------------------------------------------
# Inventory
# ---------------------------------------------------------------------------


class InvalidStateTransition(ConflictError):
    """The requested transition is not in the DID lifecycle graph."""

    code = "INVALID_STATE_TRANSITION"

    def __init__(self, from_status: str, to_status: str) -> None:
        super().__init__(
            f"Transition {from_status} -> {to_status} is not allowed",
            details={"from_status": from_status, "to_status": to_status},
        )


class StateConflict(ConflictError):
    """The DID no longer satisfies the precondition of the transition."""

    code = "STATE_CONFLICT"


class DidNotAvailable(ConflictError):
    code = "DID_NOT_AVAILABLE"


class DidNotFound(NotFoundError):
    code = "DID_NOT_FOUND"


class DidNotOwned(PermissionDenied):
    code = "DID_NOT_OWNED"


class DidNotAssigned(ConflictError):
    code = "DID_NOT_ASSIGNED"


class ByonCannotRelease(PermissionDenied):
    code = "BYON_CANNOT_RELEASE"


# ---------------------------------------------------------------------------
# Billing
# ---------------------------------------------------------------------------


class CustomerNotFound(NotFoundError):
    code = "CUSTOMER_NOT_FOUND"


class InvoiceNotFound(NotFoundError):
    code = "INVOICE_NOT_FOUND"


class InsufficientBalance(DidEngineError):
    """Balance does not cover the amount due."""

    code = "INSUFFICIENT_BALANCE"

    def __init__(self, required: Any, available: Any) -> None:
        super().__init__(
            f"Insufficient balance: {required} required, {available} available",
            details={"required": str(required), "available": str(available)},
        )
        self.required = required
        self.available = available


class BalanceDeductionFailed(DependencyError):
    code = "BALANCE_DEDUCTION_FAILED"


class AssignmentAfterDebitFailed(DependencyError):
    """The balance was debited but the DID could not be assigned.

    The debit is not reversed automatically; the details carry what an
    operator needs to reconcile by hand.
    """

    code = "ASSIGNMENT_AFTER_DEBIT_FAILED"


class DidTakenAfterDebit(AssignmentAfterDebitFailed, ConflictError):
    """Another buyer won the DID between the debit and the assignment.

    Keeps the reconciliation details and code of its parent but is
    reported as a conflict.
    """


class GatewayApiError(DependencyError):
    """The billing gateway refused a request or could not be reached.

    Transport failures are always worth retrying.  Rejections are too,
    unless the message says the credentials or the client are wrong.
    """

    code = "GATEWAY_API_ERROR"

    _PERMANENT = (
        "client id not found",
        "invalid client",
        "authentication failed",
        "invalid api credentials",
        "access denied",
    )

    def __init__(self, message: str, *, transport: bool = False, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, details=details)
        self.transport = transport

    @property
    def retryable(self) -> bool:
        if self.transport:
            return True
        lowered = self.message.lower()
        return not any(pattern in lowered for pattern in self._PERMANENT)


class InvalidAmount(ValidationError):
    code = "INVALID_AMOUNT"


class TopupNotAllowed(PermissionDenied):
    code = "TOPUP_NOT_ALLOWED"


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


class OrderNotFound(NotFoundError):
    code = "ORDER_NOT_FOUND"


class OrderNotPending(ConflictError):
    code = "ORDER_NOT_PENDING"


class CustomerNotPostpaid(PermissionDenied):
    code = "CUSTOMER_NOT_POSTPAID"


class DidProvisionFailed(ConflictError):
    code = "DID_PROVISION_FAILED"


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


class HandlerError(ConflictError):
    """An invoice handler could not apply its side effect."""

    code = "HANDLER_ERROR"


class WebhookAuthenticationError(SecurityError):
    """Signature or timestamp check failed.  The message is for logs only."""

    code = "WEBHOOK_UNAUTHORIZED"


class WebhookPayloadError(ValidationError):
    code = "WEBHOOK_BAD_PAYLOAD"


# ---------------------------------------------------------------------------
# BYON
# ---------------------------------------------------------------------------


class ByonError(DidEngineError):
    """BYON failure carrying its own HTTP status."""

    INVALID_PHONE_FORMAT = "INVALID_PHONE_FORMAT"
    DUPLICATE_NUMBER = "DUPLICATE_NUMBER"
    INVENTORY_NUMBER = "INVENTORY_NUMBER"
    DAILY_LIMIT_EXCEEDED = "DAILY_LIMIT_EXCEEDED"
    BYON_LIMIT_REACHED = "BYON_LIMIT_REACHED"
    MAX_ATTEMPTS = "MAX_ATTEMPTS"
    VERIFICATION_FAILED = "VERIFICATION_FAILED"
    INVALID_CODE = "INVALID_CODE"
    EXPIRED = "EXPIRED"
    NOT_FOUND = "NOT_FOUND"
    RELEASE_DENIED = "RELEASE_DENIED"

    HTTP_STATUS: dict[str, int] = {
        INVALID_PHONE_FORMAT: 400,
        DUPLICATE_NUMBER: 409,
        INVENTORY_NUMBER: 409,
        DAILY_LIMIT_EXCEEDED: 429,
        BYON_LIMIT_REACHED: 403,
        MAX_ATTEMPTS: 429,
        VERIFICATION_FAILED: 503,
        INVALID_CODE: 401,
        EXPIRED: 401,
        NOT_FOUND: 404,
        RELEASE_DENIED: 403,
    }

    def __init__(self, code: str, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, code=code, details=details)

    @property
    def http_status(self) -> int:
        return self.HTTP_STATUS.get(self.code, 400)

    @classmethod
    def invalid_phone_format(cls, phone: str) -> ByonError:
        return cls(
            cls.INVALID_PHONE_FORMAT,
            "Phone number must be in E.164 format (e.g. +14155551234)",
            details={"phone_number": phone},
        )

    @classmethod
    def duplicate_number(cls, phone: str) -> ByonError:
        return cls(
            cls.DUPLICATE_NUMBER,
            "This number is already registered by another customer",
            details={"phone_number": phone},
        )

    @classmethod
    def inventory_number(cls, phone: str) -> ByonError:
        return cls(
            cls.INVENTORY_NUMBER,
            "This number exists in the DID marketplace and cannot be added as BYON",
            details={"phone_number": phone},
        )

    @classmethod
    def daily_limit_exceeded(cls, limit: int) -> ByonError:
        return cls(
            cls.DAILY_LIMIT_EXCEEDED,
            f"Daily verification limit of {limit} reached, try again tomorrow",
            details={"daily_limit": limit},
        )

    @classmethod
    def byon_limit_reached(cls, limit: int) -> ByonError:
        return cls(
            cls.BYON_LIMIT_REACHED,
            f"BYON number limit of {limit} reached",
            details={"byon_limit": limit},
        )

    @classmethod
    def max_attempts(cls) -> ByonError:
        return cls(cls.MAX_ATTEMPTS, "Maximum verification attempts exceeded, request a new code")

    @classmethod
    def verification_failed(cls, reason: str) -> ByonError:
        return cls(cls.VERIFICATION_FAILED, f"Could not send verification code: {reason}")

    @classmethod
    def invalid_code(cls, attempts_remaining: int) -> ByonError:
        return cls(
            cls.INVALID_CODE,
            "Invalid verification code",
            details={"attempts_remaining": attempts_remaining},
        )

    @classmethod
    def expired(cls) -> ByonError:
        return cls(cls.EXPIRED, "Verification code has expired, request a new code")

    @classmethod
    def not_found(cls) -> ByonError:
        return cls(cls.NOT_FOUND, "No pending verification found for this number")

    @classmethod
    def release_denied(cls) -> ByonError:
        return cls(cls.RELEASE_DENIED, "Only BYON numbers can be released through this path")
