"""Business logic layer for stockroom.

:class:`TransactionService` is the only component callers should mutate
transactions through. It enforces the open/closed lifecycle, the rental
return axis, and the protocol that couples a product's stock to the line
items that consume it. The module also assembles the :class:`RuntimeContext`
that bundles settings, the open workbook, and one service per transaction
kind.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, List, Optional

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION, ReturnStatus, TransactionStatus
from .exceptions import (
    BusinessRuleViolation,
    InsufficientStockError,
    InvalidQuantityError,
    StorageError,
    TransactionClosedError,
)
from .penalty import PenaltyCalculator
from .product_store import ProductStore
from .repository import LazyScan, TransactionRepository
from .transactions import RENTAL, SALE, LineItem, Transaction, TransactionKind


def resolve_date(candidate: Optional[date]) -> date:
    """Return ``candidate`` or, when ``None``, today's UTC date."""

    return candidate if candidate is not None else datetime.now(UTC).date()


class TransactionService:
    """Lifecycle and stock-consistency rules for one transaction kind.

    Args:
        repository (TransactionRepository): Storage for this kind.
        products (ProductStore): Product lookups and stock adjustment.
        penalties (PenaltyCalculator | None): Overdue fee rules, used by
            kinds with a return axis.
        default_rental_days (int): Loan period applied when a rental is
            created without an explicit due date.
    """

    def __init__(
        self,
        repository: TransactionRepository,
        products: ProductStore,
        *,
        penalties: Optional[PenaltyCalculator] = None,
        default_rental_days: int = 7,
    ) -> None:
        self.repository = repository
        self.products = products
        self.penalties = penalties if penalties is not None else PenaltyCalculator()
        self.default_rental_days = default_rental_days

    @property
    def kind(self) -> TransactionKind:
        return self.repository.kind

    def new_transaction(self, created_on: Optional[date] = None, *, due_date: Optional[date] = None) -> Transaction:
        """Create an open, empty transaction and return its live instance.

        Rentals start in the waiting return state. When ``due_date`` is
        omitted it defaults to ``created_on + default_rental_days``.
        """

        created_on = resolve_date(created_on)
        if self.kind.tracks_returns:
            due_date = due_date or created_on + timedelta(days=self.default_rental_days)
        elif due_date is not None:
            raise BusinessRuleViolation(f"A {self.kind.name} has no due date")

        transaction_id = self.repository.insert(created_on, due_date=due_date)
        log.info("Created %s %s", self.kind.name, transaction_id)
        return self.repository.get(transaction_id)

    def get(self, transaction_id: int) -> Transaction:
        return self.repository.get(transaction_id)

    def get_all(self) -> LazyScan[Transaction]:
        """Lazy, restartable scan over every transaction of this kind."""

        return self.repository.all()

    def filter(self, predicate: Callable[[Transaction], bool]) -> List[Transaction]:
        """Return the transactions for which ``predicate`` is true."""

        return [transaction for transaction in self.get_all() if predicate(transaction)]

    def add_line_item(self, transaction: Transaction, item_code: int, quantity: Any) -> LineItem:
        """Reserve ``quantity`` units of ``item_code`` for ``transaction``.

        The steps run in a fixed order. Validation comes first (deleted or
        closed transaction, negative quantity, the per-call ceiling of the kind,
        unknown product, insufficient stock). Then stock is decremented and
        persisted, the line is appended in memory, and finally the line row is
        written. Nothing is rolled back: a storage failure on the last step
        leaves the stock decremented and surfaces as a
        :class:`~stockroom.exceptions.StorageError`.

        Returns:
            LineItem: The appended line item, carrying its persisted id.

        Raises:
            TransactionNotFoundError: If the header of ``transaction`` was deleted.
            TransactionClosedError: If ``transaction`` is closed in memory or in storage.
            InvalidQuantityError: If ``quantity`` is negative, malformed, or
                above the kind's per-call ceiling.
            UnknownProductError: If ``item_code`` matches no product.
            InsufficientStockError: If the product stock is below ``quantity``.
            StorageError: If a write fails.
        """

        self._require_kind(transaction)
        # the instance may outlive its header or be older than the stored status
        stored = self.repository.stored_status(transaction.transaction_id)
        if not transaction.is_open or stored != TransactionStatus.OPEN:
            log.warning("Attempted to add product %s to closed %s %s", item_code, self.kind.name, transaction.transaction_id)
            raise TransactionClosedError(transaction.transaction_id)

        qty = self.kind.coerce_quantity(quantity)
        if qty < 0:
            log.warning("Rejected negative quantity %s for %s %s", qty, self.kind.name, transaction.transaction_id)
            raise InvalidQuantityError(
                f"Negative amount ({qty} units of product {item_code}) for {self.kind.name} {transaction.transaction_id}",
                quantity=qty,
            )
        limit = self.kind.max_quantity_per_line
        if limit is not None and qty > limit:
            log.warning("Rejected quantity %s above limit %s for %s %s", qty, limit, self.kind.name, transaction.transaction_id)
            raise InvalidQuantityError(
                f"At most {limit} unit(s) of product {item_code} per {self.kind.name} line, got {qty}",
                quantity=qty,
            )

        product = self.products.get_by_code(item_code)
        if product.stock < qty:
            log.warning("Insufficient stock for product %s: %s < %s", item_code, product.stock, qty)
            raise InsufficientStockError(product.product_id, product.stock, qty)

        product = self.products.adjust_stock(product.product_id, -qty)

        item = LineItem(product=product, quantity=qty, fee_rate=self.kind.fee_rate)
        transaction.append(item)

        item.line_id = self.repository.insert_line_item(transaction.transaction_id, product.product_id, qty)
        self.repository.forget_if_stale(transaction)
        log.info(
            "Added %s units of product %s to %s %s",
            qty,
            item_code,
            self.kind.name,
            transaction.transaction_id,
        )
        return item

    def close(self, transaction: Transaction) -> Decimal:
        """Close ``transaction`` and persist its total; a no-op when already closed.

        Returns:
            Decimal: The transaction total.
        """

        self._require_kind(transaction)
        if not transaction.close():
            log.debug("%s %s already closed", self.kind.name.capitalize(), transaction.transaction_id)
            return transaction.total()

        total = transaction.total()
        try:
            self.repository.update_header(transaction.transaction_id, total=total, status=TransactionStatus.CLOSED)
        except StorageError:
            transaction.status = TransactionStatus.OPEN
            raise
        log.info("Closed %s %s with total %s", self.kind.name, transaction.transaction_id, total)
        return total

    def delete(self, transaction: Transaction) -> None:
        """Delete ``transaction`` and its line items. Consumed stock is not restored."""

        self._require_kind(transaction)
        self.repository.delete(transaction.transaction_id)
        log.info("Deleted %s %s", self.kind.name, transaction.transaction_id)

    def return_line_item(self, item_code: int, quantity: Any) -> data_manager.ProductRow:
        """Put ``quantity`` units of ``item_code`` back in stock.

        The call is not checked against the outstanding lines of any rental.

        Returns:
            data_manager.ProductRow: The product with its restored stock.
        """

        self._require_returns()
        qty = self.kind.coerce_quantity(quantity)
        if qty < 0:
            raise InvalidQuantityError(f"Cannot return a negative amount ({qty}) of product {item_code}", quantity=qty)
        product = self.products.get_by_code(item_code)
        log.info("Returning %s units of product %s", qty, item_code)
        return self.products.adjust_stock(product.product_id, qty)

    def mark_returned(self, transaction: Transaction) -> None:
        self._set_return_status(transaction, ReturnStatus.RETURNED)

    def unmark_returned(self, transaction: Transaction) -> None:
        self._set_return_status(transaction, ReturnStatus.WAITING)

    def penalty(self, transaction: Transaction, now: Optional[date] = None) -> Decimal:
        """Overdue fee owed by ``transaction`` if evaluated on ``now`` (default today)."""

        self._require_returns()
        self._require_kind(transaction)
        return self.penalties.calculate(transaction, resolve_date(now))

    def describe(self) -> str:
        """Render every transaction of this kind, one per line."""

        return "\n".join(str(transaction) for transaction in self.get_all())

    def _set_return_status(self, transaction: Transaction, status: ReturnStatus) -> None:
        self._require_returns()
        self._require_kind(transaction)
        previous = transaction.return_status
        transaction.set_return_status(status)
        try:
            self.repository.update_return_status(transaction.transaction_id, status)
        except StorageError:
            transaction.return_status = previous
            raise
        log.info("Set %s %s return status to %s", self.kind.name, transaction.transaction_id, status.name)

    def _require_returns(self) -> None:
        if not self.kind.tracks_returns:
            raise BusinessRuleViolation(f"A {self.kind.name} has no return status")

    def _require_kind(self, transaction: Transaction) -> None:
        if transaction.kind.name != self.kind.name:
            raise BusinessRuleViolation(
                f"Cannot handle a {transaction.kind.name} with the {self.kind.name} service"
            )


@dataclass(frozen=True)
class RuntimeContext:
    """Settings, the open workbook, and the services built on top of it."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    products: ProductStore
    sales: TransactionService
    rentals: TransactionService

    def service_for(self, kind_name: str) -> TransactionService:
        """Return the service for ``"sale"`` or ``"rental"``."""

        if kind_name == SALE.name:
            return self.sales
        if kind_name == RENTAL.name:
            return self.rentals
        raise KeyError(f"Unknown transaction kind: {kind_name}")


def build_context(settings: data_manager.ConfigSettings, workbook: Workbook) -> RuntimeContext:
    """Wire the product store, repositories, caches, and services for ``workbook``."""

    products = ProductStore(workbook)
    penalties = PenaltyCalculator(hard_limit_days=settings.hard_limit_days)
    rental_kind = RENTAL.with_fee_rate(settings.rental_fee_rate)
    return RuntimeContext(
        settings=settings,
        workbook=workbook,
        products=products,
        sales=TransactionService(TransactionRepository(workbook, SALE, products), products),
        rentals=TransactionService(
            TransactionRepository(workbook, rental_kind, products),
            products,
            penalties=penalties,
            default_rental_days=settings.default_rental_days,
        ),
    )


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Resolve ``config.ini``, open the workbook, and build a fresh context.

    Raises:
        FileNotFoundError: If the configuration file or workbook is missing.
        KeyError: When mandatory configuration options are missing.
    """

    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return build_context(settings, workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Refuse to run against a workbook layout other than ``EXPECTED_SCHEMA_VERSION``.

    Raises:
        RuntimeError: On a mismatch.
    """

    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Save the in-memory workbook to the configured data file."""

    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook from disk and rebuild every service with empty caches.

    Unsaved changes in ``context`` are discarded.
    """

    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return build_context(context.settings, workbook)
