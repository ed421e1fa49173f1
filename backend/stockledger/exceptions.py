"""
Error taxonomy for the ledger and order engine.

Every error raised across a service boundary is a LedgerError. Each carries a
human-readable message, a ``details`` dict for the caller to render, and the
HTTP status the transport layer should answer with.
"""

from __future__ import annotations

from decimal import Decimal


class LedgerError(Exception):
    """Base class for all domain errors."""

    http_status = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class ValidationError(LedgerError, ValueError):
    """Input rejected before any write (non-positive quantity, missing field...)."""


class NotFoundError(LedgerError):
    http_status = 404


class InsufficientInventory(LedgerError):
    """A deduction would take the balance below zero."""

    http_status = 409

    def __init__(self, available: Decimal, required: Decimal, details: dict | None = None):
        super().__init__(
            f"Insufficient inventory. Available: {available}, Required: {required}",
            details={"available": str(available), "required": str(required), **(details or {})},
        )
        self.available = available
        self.required = required


class OrderLocked(LedgerError):
    http_status = 409


class HistoricalOrderImmutable(LedgerError):
    """The order predates the deduction regime and is read-only."""

    http_status = 409


class InvalidStatusTransition(LedgerError):
    http_status = 409


class PermissionDenied(LedgerError):
    http_status = 403


class TransactionFailure(LedgerError):
    """Storage failed mid-operation; everything was rolled back."""

    http_status = 503


class NegativeInventoryInvariantViolation(LedgerError):
    """
    The post-write balance check failed.

    Only reachable if the row-lock discipline is broken. Treat as a bug:
    never retried.
    """

    http_status = 500


class ImmutableMovementError(LedgerError):
    """An update or delete was attempted on an append-only row."""

    http_status = 500
