"""In-memory transaction model shared by sales and rentals.

Sales and rentals have the same shape. What differs between them is captured
by a :class:`TransactionKind`: where the kind is persisted, the fee rate
applied to line subtotals, the per-call quantity ceiling, whether quantities
must be whole units, and whether the kind has a return axis.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, List, Optional, Union

from .constants import DEFAULT_RENTAL_FEE_RATE, ReturnStatus, SheetName, TransactionStatus
from .data_manager import ProductRow
from .exceptions import BusinessRuleViolation, InvalidQuantityError


Quantity = Union[Decimal, int]


@dataclass(frozen=True)
class TransactionKind:
    """Rules that parameterize a :class:`Transaction`."""

    name: str
    header_sheet: str
    line_sheet: str
    fee_rate: Decimal
    max_quantity_per_line: Optional[int]
    integral_quantities: bool
    tracks_returns: bool

    def with_fee_rate(self, fee_rate: Decimal) -> "TransactionKind":
        return replace(self, fee_rate=Decimal(fee_rate))

    def coerce_quantity(self, quantity: Any) -> Quantity:
        """Normalise ``quantity`` into this kind's unit.

        Sales keep fractional :class:`~decimal.Decimal` quantities; rentals
        count whole units and come back as ``int``.

        Raises:
            InvalidQuantityError: If the value is not a finite number, or is
                fractional for a kind that counts whole units.
        """

        if isinstance(quantity, bool):
            raise InvalidQuantityError(f"Invalid quantity: {quantity!r}", quantity=quantity)
        try:
            value = Decimal(str(quantity))
        except (InvalidOperation, ValueError) as exc:
            raise InvalidQuantityError(f"Invalid quantity: {quantity!r}", quantity=quantity) from exc
        if not value.is_finite():
            raise InvalidQuantityError(f"Invalid quantity: {quantity!r}", quantity=quantity)
        if self.integral_quantities:
            if value != value.to_integral_value():
                raise InvalidQuantityError(
                    f"{self.name.capitalize()} quantities must be whole units, got {quantity}",
                    quantity=quantity,
                )
            return int(value)
        return value


SALE = TransactionKind(
    name="sale",
    header_sheet=SheetName.SALE.value,
    line_sheet=SheetName.SALE_PRODUCT.value,
    fee_rate=Decimal("1"),
    max_quantity_per_line=None,
    integral_quantities=False,
    tracks_returns=False,
)

RENTAL = TransactionKind(
    name="rental",
    header_sheet=SheetName.RENTAL.value,
    line_sheet=SheetName.RENTAL_PRODUCT.value,
    fee_rate=DEFAULT_RENTAL_FEE_RATE,
    max_quantity_per_line=1,
    integral_quantities=True,
    tracks_returns=True,
)


@dataclass
class LineItem:
    """One product and quantity within a transaction."""

    product: ProductRow
    quantity: Quantity
    fee_rate: Decimal = Decimal("1")
    line_id: Optional[int] = None

    @property
    def product_id(self) -> int:
        return self.product.product_id

    @property
    def unit_price(self) -> Decimal:
        return self.product.price

    @property
    def retail_value(self) -> Decimal:
        """Full price of the units, regardless of the kind's fee rate."""

        return self.product.price * self.quantity

    @property
    def subtotal(self) -> Decimal:
        return self.retail_value * self.fee_rate


@dataclass(eq=False)
class Transaction:
    """A sale or rental header plus its ordered line items.

    Instances compare by identity: the repository cache guarantees a single
    live instance per id between invalidations.
    """

    transaction_id: int
    kind: TransactionKind
    created_on: date
    status: TransactionStatus = TransactionStatus.OPEN
    line_items: List[LineItem] = field(default_factory=list)
    due_date: Optional[date] = None
    return_status: Optional[ReturnStatus] = None

    def __post_init__(self) -> None:
        if self.kind.tracks_returns and self.return_status is None:
            self.return_status = ReturnStatus.WAITING

    @property
    def is_open(self) -> bool:
        return self.status == TransactionStatus.OPEN

    @property
    def is_returned(self) -> bool:
        return self.return_status == ReturnStatus.RETURNED

    def total(self) -> Decimal:
        """Sum of the line-item subtotals, recomputed on every call."""

        return sum((item.subtotal for item in self.line_items), Decimal("0"))

    def close(self) -> bool:
        """Move to ``CLOSED``. Returns ``False`` when already closed."""

        if not self.is_open:
            return False
        self.status = TransactionStatus.CLOSED
        return True

    def append(self, item: LineItem) -> None:
        self.line_items.append(item)

    def set_return_status(self, status: ReturnStatus) -> None:
        if not self.kind.tracks_returns:
            raise BusinessRuleViolation(f"A {self.kind.name} has no return status")
        self.return_status = status

    def __str__(self) -> str:
        parts = [
            f"{self.kind.name.capitalize()} {self.transaction_id} @ {self.created_on.isoformat()}",
            "open" if self.is_open else "closed",
        ]
        if self.kind.tracks_returns:
            parts.append("returned" if self.is_returned else "unreturned")
        parts.append(f"total of {self.total()} with products:")
        text = "; ".join(parts)
        for item in self.line_items:
            text += f" [code {item.product.item_code}, {item.quantity} units]"
        if self.due_date is not None:
            text += f" Return date is {self.due_date.isoformat()}"
        return text
