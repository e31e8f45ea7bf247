"""Business-tier exception hierarchy.

Everything a caller of :mod:`stockroom` can catch derives from
:class:`ApplicationError`. Storage failures raised by the data access layer
never escape directly; they are wrapped in :class:`StorageError` together with
the operation that failed and the affected id::

    ApplicationError
    +-- BusinessRuleViolation
    |   +-- TransactionClosedError
    |   +-- InvalidQuantityError
    |   +-- InsufficientStockError
    |   +-- MissingReferenceError
    |       +-- UnknownProductError
    |       +-- TransactionNotFoundError
    +-- StorageError
"""

from __future__ import annotations

from typing import Any, Optional


class ApplicationError(Exception):
    """Base class for every failure surfaced to callers."""


class BusinessRuleViolation(ApplicationError):
    """Raised when a requested operation violates a domain constraint."""


class TransactionClosedError(BusinessRuleViolation):
    """Raised when a line item is added to a closed transaction."""

    def __init__(self, transaction_id: int) -> None:
        self.transaction_id = transaction_id
        super().__init__(f"Transaction {transaction_id} is already closed")


class InvalidQuantityError(BusinessRuleViolation):
    """Raised for negative, over-limit, or malformed quantities."""

    def __init__(self, message: str, *, quantity: Any = None) -> None:
        self.quantity = quantity
        super().__init__(message)


class InsufficientStockError(BusinessRuleViolation):
    """Raised when a stock change would drive a product below zero."""

    def __init__(self, product_id: int, available: Any, requested: Any) -> None:
        self.product_id = product_id
        self.available = available
        self.requested = requested
        super().__init__(
            f"Current stock ({available}) is not enough for {requested} units of product {product_id}"
        )


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced product or transaction is unknown."""


class UnknownProductError(MissingReferenceError):
    """Raised when no product matches the given code or id."""


class TransactionNotFoundError(MissingReferenceError):
    """Raised when no transaction header matches the given id."""


class StorageError(ApplicationError):
    """A storage failure wrapped with the operation and id it affected."""

    def __init__(self, operation: str, entity_id: Optional[int] = None, *, detail: Optional[str] = None) -> None:
        self.operation = operation
        self.entity_id = entity_id
        message = f"Unable to {operation}"
        if entity_id is not None:
            message += f" (id {entity_id})"
        if detail:
            message += f": {detail}"
        super().__init__(message)


__all__ = [
    "ApplicationError",
    "BusinessRuleViolation",
    "TransactionClosedError",
    "InvalidQuantityError",
    "InsufficientStockError",
    "MissingReferenceError",
    "UnknownProductError",
    "TransactionNotFoundError",
    "StorageError",
]
