"""
Engine Error Taxonomy

Every mutating engine operation either returns a success payload or raises
one of these typed failures. The API layer maps them onto HTTP responses
using ``status_code`` and ``code``; nothing here is an opaque error.

Author: Khalil Bannouri
Version: 1.0.0
"""

from typing import Any, Optional


class OrderEngineError(Exception):
    """
    Base class for all typed engine failures.

    Attributes:
        code: Machine-readable error code (e.g., "resource_conflict")
        message: Human-readable, actionable message for staff
        status_code: HTTP status the API layer should use
        details: Extra structured context for the caller
    """

    code = "order_engine_error"
    status_code = 400

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ResourceConflict(OrderEngineError):
    """Table or rider slot already bound to another order."""
    code = "resource_conflict"
    status_code = 409


class InvalidTransition(OrderEngineError):
    """Illegal order or line status change."""
    code = "invalid_transition"
    status_code = 409


class OrderAlreadyClosed(InvalidTransition):
    """Settlement attempted on an order that is already closed."""
    code = "order_already_closed"


class EmptyOrder(OrderEngineError):
    """Order has no lines (or nothing held) to act on."""
    code = "empty_order"
    status_code = 422


class MissingDeliveryAddress(OrderEngineError):
    """Delivery order fired without an address."""
    code = "missing_delivery_address"
    status_code = 422


class AuthorizationRequired(OrderEngineError):
    """The acting role cannot perform this; re-invoke with elevated credentials."""
    code = "authorization_required"
    status_code = 403


class InvalidSettlementSelection(OrderEngineError):
    """Rider settlement included an order that cannot be settled."""
    code = "invalid_settlement_selection"
    status_code = 422


class InvalidRequest(OrderEngineError):
    """Input that is well-formed but not acceptable (bad quantity, unknown item...)."""
    code = "invalid_request"
    status_code = 422


class NotFound(OrderEngineError):
    """Referenced order, line, table or staff member does not exist."""
    code = "not_found"
    status_code = 404
