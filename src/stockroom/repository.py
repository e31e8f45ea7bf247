"""Persistence of transaction headers and their line items.

One :class:`TransactionRepository` exists per transaction kind. It owns the
:class:`~stockroom.entity_cache.EntityCache` for that kind, so loaded
transactions keep a stable identity until a write invalidates them.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Callable, Generic, Iterator, Optional, TypeVar

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import ReturnStatus, TransactionStatus
from .entity_cache import EntityCache
from .exceptions import StorageError, TransactionNotFoundError
from .product_store import ProductStore
from .transactions import LineItem, Quantity, Transaction, TransactionKind


T = TypeVar("T")


class LazyScan(Generic[T]):
    """Finite iterable that restarts its scan on every ``iter()`` call."""

    def __init__(self, factory: Callable[[], Iterator[T]]) -> None:
        self._factory = factory

    def __iter__(self) -> Iterator[T]:
        return self._factory()


class TransactionRepository:
    """Load and store one kind of transaction in the workbook."""

    def __init__(
        self,
        workbook: Workbook,
        kind: TransactionKind,
        products: ProductStore,
        cache: Optional[EntityCache[Transaction]] = None,
    ) -> None:
        self._workbook = workbook
        self.kind = kind
        self._products = products
        self.cache: EntityCache[Transaction] = cache if cache is not None else EntityCache(kind.name)

    def insert(self, created_on: date, *, due_date: Optional[date] = None) -> int:
        """Persist a new open, empty header and return its generated id."""

        extra = {}
        if self.kind.tracks_returns:
            extra = {"return_date": due_date, "return_status": int(ReturnStatus.WAITING)}
        try:
            return data_manager.insert_header(
                self._workbook,
                self.kind.header_sheet,
                created_on=created_on,
                total=Decimal("0.00"),
                status=TransactionStatus.OPEN.value,
                **extra,
            )
        except data_manager.PersistenceError as exc:
            log.error("Unable to insert %s: %s", self.kind.name, exc)
            raise StorageError(f"create {self.kind.name}", detail=str(exc)) from exc

    def get(self, transaction_id: int) -> Transaction:
        """Return the cached instance for ``transaction_id`` or load it.

        Raises:
            TransactionNotFoundError: If no header has this id.
            StorageError: If the workbook cannot be read.
        """

        return self.cache.get_or_load(transaction_id, self._load)

    def all(self) -> LazyScan[Transaction]:
        """Every transaction of this kind, reusing and populating the cache."""

        return LazyScan(self._scan)

    def stored_status(self, transaction_id: int) -> TransactionStatus:
        """Return the status currently stored in the header of ``transaction_id``.

        Raises:
            TransactionNotFoundError: If the header no longer exists.
            StorageError: If the workbook cannot be read.
        """

        try:
            header = data_manager.find_header(self._workbook, self.kind.header_sheet, transaction_id)
            return TransactionStatus(header.status)
        except data_manager.RecordNotFoundError as exc:
            self.cache.invalidate(transaction_id)
            raise TransactionNotFoundError(f"Unknown {self.kind.name} id: {transaction_id}") from exc
        except (data_manager.PersistenceError, ValueError) as exc:
            log.error("Unable to read %s %s: %s", self.kind.name, transaction_id, exc)
            raise StorageError(f"read {self.kind.name}", transaction_id, detail=str(exc)) from exc

    def forget_if_stale(self, transaction: Transaction) -> None:
        """Drop the cache entry for ``transaction``'s id if it holds another instance."""

        cached = self.cache.get(transaction.transaction_id)
        if cached is not None and cached is not transaction:
            self.cache.invalidate(transaction.transaction_id)

    def insert_line_item(self, transaction_id: int, product_id: int, quantity: Quantity) -> int:
        """Persist a line-item row and return its generated id."""

        try:
            return data_manager.insert_line_item(
                self._workbook,
                self.kind.line_sheet,
                transaction_id=transaction_id,
                product_id=product_id,
                quantity=quantity,
            )
        except data_manager.PersistenceError as exc:
            log.error(
                "Unable to record product %s on %s %s: %s",
                product_id,
                self.kind.name,
                transaction_id,
                exc,
            )
            raise StorageError(f"add product {product_id} to {self.kind.name}", transaction_id, detail=str(exc)) from exc

    def update_header(self, transaction_id: int, *, total: Decimal, status: TransactionStatus) -> None:
        """Write the total and status of a header, then invalidate its cache entry."""

        self._update(transaction_id, {"total": total, "status": status.value}, operation="close")

    def update_return_status(self, transaction_id: int, status: ReturnStatus) -> None:
        """Write the return status of a rental, then invalidate its cache entry."""

        self._update(transaction_id, {"return_status": int(status)}, operation="update return status of")

    def delete(self, transaction_id: int) -> None:
        """Delete the line items, then the header, then the cache entry.

        Product stock is deliberately left untouched.
        """

        try:
            data_manager.delete_line_items(self._workbook, self.kind.line_sheet, transaction_id)
            data_manager.delete_record(self._workbook, self.kind.header_sheet, transaction_id)
        except data_manager.RecordNotFoundError as exc:
            raise TransactionNotFoundError(f"Unknown {self.kind.name} id: {transaction_id}") from exc
        except data_manager.PersistenceError as exc:
            log.error("Unable to delete %s %s: %s", self.kind.name, transaction_id, exc)
            raise StorageError(f"delete {self.kind.name}", transaction_id, detail=str(exc)) from exc
        finally:
            self.cache.invalidate(transaction_id)

    def _update(self, transaction_id: int, field_values: dict, *, operation: str) -> None:
        try:
            data_manager.update_record(
                self._workbook,
                self.kind.header_sheet,
                transaction_id,
                field_values=field_values,
            )
        except data_manager.RecordNotFoundError as exc:
            raise TransactionNotFoundError(f"Unknown {self.kind.name} id: {transaction_id}") from exc
        except data_manager.PersistenceError as exc:
            log.error("Unable to %s %s %s: %s", operation, self.kind.name, transaction_id, exc)
            raise StorageError(f"{operation} {self.kind.name}", transaction_id, detail=str(exc)) from exc
        finally:
            self.cache.invalidate(transaction_id)

    def _scan(self) -> Iterator[Transaction]:
        try:
            headers = list(data_manager.iter_headers(self._workbook, self.kind.header_sheet))
        except data_manager.PersistenceError as exc:
            log.error("Unable to scan %s headers: %s", self.kind.name, exc)
            raise StorageError(f"list {self.kind.name}s", detail=str(exc)) from exc

        for header in headers:
            cached = self.cache.get(header.transaction_id)
            if cached is None:
                cached = self.cache.put(header.transaction_id, self._build(header))
            yield cached

    def _load(self, transaction_id: int) -> Transaction:
        try:
            header = data_manager.find_header(self._workbook, self.kind.header_sheet, transaction_id)
        except data_manager.RecordNotFoundError as exc:
            log.warning("%s lookup failed for id '%s'", self.kind.name.capitalize(), transaction_id)
            raise TransactionNotFoundError(f"Unknown {self.kind.name} id: {transaction_id}") from exc
        except data_manager.PersistenceError as exc:
            log.error("Unable to read %s %s: %s", self.kind.name, transaction_id, exc)
            raise StorageError(f"read {self.kind.name}", transaction_id, detail=str(exc)) from exc
        return self._build(header)

    def _build(self, header: data_manager.HeaderRow) -> Transaction:
        try:
            rows = list(data_manager.iter_line_items(self._workbook, self.kind.line_sheet, header.transaction_id))
            status = TransactionStatus(header.status)
            return_status = ReturnStatus(header.return_status) if header.return_status is not None else None
        except (data_manager.PersistenceError, ValueError) as exc:
            log.error("Unable to load %s %s: %s", self.kind.name, header.transaction_id, exc)
            raise StorageError(f"read {self.kind.name}", header.transaction_id, detail=str(exc)) from exc

        transaction = Transaction(
            transaction_id=header.transaction_id,
            kind=self.kind,
            created_on=header.created_on,
            status=status,
            due_date=header.return_date if self.kind.tracks_returns else None,
            return_status=return_status if self.kind.tracks_returns else None,
        )
        for row in rows:
            transaction.append(
                LineItem(
                    product=self._products.get_by_id(row.product_id),
                    quantity=self.kind.coerce_quantity(row.quantity),
                    fee_rate=self.kind.fee_rate,
                    line_id=row.line_id,
                )
            )
        log.debug("Loaded %s %s with %d line items", self.kind.name, header.transaction_id, len(rows))
        return transaction
