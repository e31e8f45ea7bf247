"""Enumerations and fixed values shared by the stockroom layers.

The data access layer, the product store, and the transaction service all
speak in terms of these identifiers, so the worksheet names and persisted
status codes are defined exactly once.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum, IntEnum


# Workbook layout version expected by every layer.
EXPECTED_SCHEMA_VERSION = "1.0.0"

DEFAULT_RENTAL_FEE_RATE = Decimal("0.20")
DEFAULT_HARD_LIMIT_DAYS = 7
DEFAULT_RENTAL_DAYS = 7
SOFT_PENALTY_RATE = Decimal("0.5")


class TransactionStatus(str, Enum):
    """Open/closed axis of every transaction, stored as a single letter."""

    OPEN = "O"
    CLOSED = "C"


class ReturnStatus(IntEnum):
    """Return axis of a rental, stored as ``0``/``1``."""

    WAITING = 0
    RETURNED = 1


class SheetName(str, Enum):
    """Worksheet names, one per persisted table."""

    PRODUCT = "product"
    SALE = "sale"
    RENTAL = "rental"
    SALE_PRODUCT = "saleproduct"
    RENTAL_PRODUCT = "rentalproduct"


SHEET_COLUMNS: dict[str, tuple[str, ...]] = {
    SheetName.PRODUCT.value: ("id", "item_code", "description", "price", "qty"),
    SheetName.SALE.value: ("id", "date", "total", "status"),
    SheetName.RENTAL.value: ("id", "date", "total", "status", "return_date", "return_status"),
    SheetName.SALE_PRODUCT.value: ("id", "transaction_id", "product_id", "qty"),
    SheetName.RENTAL_PRODUCT.value: ("id", "transaction_id", "product_id", "qty"),
}


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_RENTAL_FEE_RATE",
    "DEFAULT_HARD_LIMIT_DAYS",
    "DEFAULT_RENTAL_DAYS",
    "SOFT_PENALTY_RATE",
    "TransactionStatus",
    "ReturnStatus",
    "SheetName",
    "SHEET_COLUMNS",
]
