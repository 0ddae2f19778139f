# Overview: Domain exception taxonomy shared by services and routes.

"""
Error taxonomy

- ValidationError: malformed input, rejected before the store is touched
- ConflictError: a write lost to a newer one (or a duplicate); sync reports it as skipped
- InsufficientStockError: business rule violation; a sync change is marked failed
- NotFoundError: referenced order/product/shift/staff is absent
- UnauthorizedError: bad credential, token, tracking token or phone mismatch
- ForbiddenError: authenticated but not allowed (role / ownership)
- ShiftError: shift state conflicts (already open, already closed)

Routes translate these to HTTP status codes through `status_code`; the sync
apply loop catches RetailError per change and never lets one abort the batch.
"""

from __future__ import annotations


class RetailError(Exception):
    """Base class for domain errors. `details` is returned to the caller as-is."""

    status_code = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        body = {"error": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(RetailError):
    """400-level input problem."""

    status_code = 400


class InvalidTransitionError(ValidationError):
    """Order status change not allowed by the lifecycle."""


class ConflictError(RetailError):
    """Stale write superseded by a newer one."""

    status_code = 409


class InsufficientStockError(RetailError):
    status_code = 409


class NotFoundError(RetailError):
    status_code = 404


class UnauthorizedError(RetailError):
    status_code = 401


class ForbiddenError(RetailError):
    status_code = 403


class ShiftError(RetailError):
    """Raised for shift management errors."""

    status_code = 409
