"""Error taxonomy shared by every Joyería POS layer.

Each exception carries a machine-readable ``kind`` and a ``details`` mapping
with the offending field, amount, or category so that a front end can render
a specific message without parsing text.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional


class PosError(Exception):
    """Base class for all domain and persistence errors."""

    kind = "error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details: Mapping[str, Any] = details


class ValidationError(PosError, ValueError):
    """Raised when caller input is malformed and must be corrected."""

    kind = "validation_error"

    def __init__(self, message: str, *, field: Optional[str] = None, **details: Any) -> None:
        super().__init__(message, field=field, **details)
        self.field = field


class InvalidItem(ValidationError):
    """Raised when a sale line has a bad shape, quantity, price, or product."""

    kind = "invalid_item"

    def __init__(self, message: str, *, index: int, field: Optional[str] = None, **details: Any) -> None:
        super().__init__(message, field=field, index=index, **details)
        self.index = index


class InvalidAmount(ValidationError):
    """Raised when a cash amount is not a finite, positive number."""

    kind = "invalid_amount"


class BusinessRuleViolation(PosError):
    """Raised when a requested operation violates a domain constraint."""

    kind = "business_rule"


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced product, sale, customer, or session is unknown."""

    kind = "missing_reference"


class InsufficientStock(BusinessRuleViolation):
    """Raised when a product or category cannot cover the requested quantity."""

    kind = "insufficient_stock"

    def __init__(
        self,
        message: str,
        *,
        category_id: Optional[str],
        category_name: Optional[str],
        requested: int,
        available: int,
        product_id: Optional[int] = None,
    ) -> None:
        super().__init__(
            message,
            category_id=category_id,
            category_name=category_name,
            product_id=product_id,
            requested=requested,
            available=available,
        )
        self.category_id = category_id
        self.category_name = category_name
        self.product_id = product_id
        self.requested = requested
        self.available = available


class NoOpenRegister(BusinessRuleViolation):
    """Raised when a cash movement is attempted without an open session."""

    kind = "no_open_register"


class RegisterAlreadyOpen(BusinessRuleViolation):
    """Raised when opening a register while another session is still open."""

    kind = "register_already_open"


class WithdrawalExceedsAvailable(BusinessRuleViolation):
    """Raised when a withdrawal exceeds the expected cash on hand."""

    kind = "withdrawal_exceeds_available"


class PersistenceFailure(PosError):
    """Raised when the document store cannot be read or written."""

    kind = "persistence_failure"


class PersistenceTimeout(PersistenceFailure):
    """Raised when a document store operation exceeds its time budget."""

    kind = "persistence_timeout"


__all__ = [
    "PosError",
    "ValidationError",
    "InvalidItem",
    "InvalidAmount",
    "BusinessRuleViolation",
    "MissingReferenceError",
    "InsufficientStock",
    "NoOpenRegister",
    "RegisterAlreadyOpen",
    "WithdrawalExceedsAvailable",
    "PersistenceFailure",
    "PersistenceTimeout",
]
