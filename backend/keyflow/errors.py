# Overview: Domain error taxonomy shared by services and mapped to HTTP codes by routes.

from __future__ import annotations


class KeyflowError(Exception):
    """Base class for every error the key services raise on purpose."""

    code = "error"
    status_code = 400

    def __init__(self, message: str, *, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        body = {"error": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class InvalidArgumentError(KeyflowError):
    """400-level input problem (bad count, missing fields)."""

    code = "invalid_argument"
    status_code = 400


class AccessDeniedError(KeyflowError):
    """Hierarchy adjacency, role or ownership violation."""

    code = "access_denied"
    status_code = 403


class NotFoundError(KeyflowError):
    code = "not_found"
    status_code = 404


class InsufficientInventoryError(KeyflowError):
    """Not enough available keys in the pool to satisfy the request."""

    code = "insufficient_inventory"
    status_code = 409


class ConflictError(KeyflowError):
    """
    Idempotency guard tripped: the request was already resolved, or a
    racing caller claimed the record first.
    """

    code = "conflict"
    status_code = 409


class InvalidStateError(KeyflowError):
    """A specific record exists but is not in a claimable state."""

    code = "invalid_state"
    status_code = 409


class InternalError(KeyflowError):
    code = "internal"
    status_code = 500
