"""Error taxonomy for the AP2 gateway.

Every error carries a stable machine-readable ``code`` and a message meant
for merchant-side remediation. Messages never include secrets.
"""

from __future__ import annotations

from typing import Any

INVALID_API_KEY = "INVALID_API_KEY"
INVALID_SIGNATURE = "INVALID_SIGNATURE"
EXPIRED_REQUEST = "EXPIRED_REQUEST"
MERCHANT_SUSPENDED = "MERCHANT_SUSPENDED"
MANDATE_NOT_FOUND = "MANDATE_NOT_FOUND"
MANDATE_INACTIVE = "MANDATE_INACTIVE"
MANDATE_EXPIRED = "MANDATE_EXPIRED"
MANDATE_TYPE_MISMATCH = "MANDATE_TYPE_MISMATCH"
AGENT_NOT_AUTHORIZED = "AGENT_NOT_AUTHORIZED"
INSUFFICIENT_PERMISSIONS = "INSUFFICIENT_PERMISSIONS"
LIMIT_EXCEEDED = "LIMIT_EXCEEDED"
INVALID_TRANSACTION_TYPE = "INVALID_TRANSACTION_TYPE"
INVALID_TRANSITION = "INVALID_TRANSITION"
WEBHOOK_DELIVERY_FAILED = "WEBHOOK_DELIVERY_FAILED"
NOT_FOUND = "NOT_FOUND"
VALIDATION_ERROR = "VALIDATION_ERROR"
PAYMENT_FAILED = "PAYMENT_FAILED"

STATUS_CODES: dict[str, int] = {
    INVALID_API_KEY: 401,
    INVALID_SIGNATURE: 401,
    EXPIRED_REQUEST: 401,
    MERCHANT_SUSPENDED: 403,
    MANDATE_NOT_FOUND: 404,
    MANDATE_INACTIVE: 403,
    MANDATE_EXPIRED: 403,
    MANDATE_TYPE_MISMATCH: 400,
    AGENT_NOT_AUTHORIZED: 403,
    INSUFFICIENT_PERMISSIONS: 403,
    LIMIT_EXCEEDED: 403,
    INVALID_TRANSACTION_TYPE: 400,
    INVALID_TRANSITION: 409,
    WEBHOOK_DELIVERY_FAILED: 502,
    NOT_FOUND: 404,
    VALIDATION_ERROR: 400,
    PAYMENT_FAILED: 402,
}


class GatewayError(Exception):
    status_code = 400

    def __init__(self, code: str, message: str, *, status_code: int | None = None, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code or STATUS_CODES.get(code, self.status_code)
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class AuthError(GatewayError):
    """Request could not be attributed to an active merchant."""

    status_code = 401


class MandateError(GatewayError):
    """Mandate missing, not owned by the agent, inactive, expired or of the wrong type."""

    status_code = 403


class ConstraintViolation(MandateError):
    """A mandate or merchant limit would be exceeded by the requested action."""

    def __init__(self, message: str, *, rule: str | None = None):
        super().__init__(LIMIT_EXCEEDED, message, details={"rule": rule} if rule else None)
        self.rule = rule


class InvalidTransition(GatewayError):
    status_code = 409

    def __init__(self, message: str, *, details: dict[str, Any] | None = None):
        super().__init__(INVALID_TRANSITION, message, details=details)


class NotFoundError(GatewayError):
    status_code = 404

    def __init__(self, message: str):
        super().__init__(NOT_FOUND, message)


class ValidationError(GatewayError):
    def __init__(self, message: str, *, details: dict[str, Any] | None = None):
        super().__init__(VALIDATION_ERROR, message, details=details)
