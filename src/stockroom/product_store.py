"""Product lookups and the stock-adjustment protocol."""

from __future__ import annotations

from dataclasses import replace
from decimal import Decimal
from typing import Iterable, List, Tuple, Union

from openpyxl.workbook import Workbook

from . import data_manager, log
from .exceptions import InsufficientStockError, StorageError, UnknownProductError
from .transactions import Transaction


class ProductStore:
    """Read products and adjust their stock in the workbook.

    ``adjust_stock`` is check-then-write with no lock; the store must not be
    shared between concurrent callers.
    """

    def __init__(self, workbook: Workbook) -> None:
        self._workbook = workbook

    def get_by_code(self, item_code: int) -> data_manager.ProductRow:
        """Resolve a product by its external item code.

        Raises:
            UnknownProductError: If no product carries ``item_code``.
            StorageError: If the product sheet cannot be read.
        """

        return self._find("item_code", item_code)

    def get_by_id(self, product_id: int) -> data_manager.ProductRow:
        """Resolve a product by its internal id.

        Raises:
            UnknownProductError: If no product has ``product_id``.
            StorageError: If the product sheet cannot be read.
        """

        return self._find("id", product_id)

    def iter_products(self) -> List[data_manager.ProductRow]:
        try:
            return list(data_manager.iter_products(self._workbook))
        except data_manager.PersistenceError as exc:
            log.error("Unable to list products: %s", exc)
            raise StorageError("list products", detail=str(exc)) from exc

    def adjust_stock(self, product_id: int, delta: Union[Decimal, int]) -> data_manager.ProductRow:
        """Apply a signed ``delta`` to a product's stock and persist it.

        Negative deltas consume stock, positive ones return it. A delta that
        would leave the stock below zero is rejected and nothing is written.

        Returns:
            data_manager.ProductRow: The product with its new stock.

        Raises:
            UnknownProductError: If ``product_id`` does not exist.
            InsufficientStockError: If ``stock + delta < 0``.
            StorageError: If the workbook cannot be updated.
        """

        product = self.get_by_id(product_id)
        new_stock = product.stock + delta
        if new_stock < 0:
            log.warning(
                "Rejected stock change of %s for product %s (stock %s)",
                delta,
                product_id,
                product.stock,
            )
            raise InsufficientStockError(product_id, product.stock, -delta)

        try:
            data_manager.update_record(
                self._workbook,
                data_manager.PRODUCT_SHEET,
                product_id,
                field_values={"qty": new_stock},
            )
        except data_manager.PersistenceError as exc:
            log.error("Unable to update stock of product %s: %s", product_id, exc)
            raise StorageError("update product stock", product_id, detail=str(exc)) from exc

        log.info("Adjusted stock of product %s by %s (now %s)", product_id, delta, new_stock)
        return replace(product, stock=new_stock)

    def stocks_of(self, transaction: Transaction) -> List[Tuple[int, Decimal]]:
        """Return ``(item_code, current stock)`` for each line of ``transaction``."""

        return [
            (item.product.item_code, self.get_by_id(item.product_id).stock)
            for item in transaction.line_items
        ]

    def _find(self, column: str, value: int) -> data_manager.ProductRow:
        try:
            return data_manager.find_product(self._workbook, column=column, value=value)
        except data_manager.RecordNotFoundError as exc:
            log.warning("Product lookup failed for %s '%s'", column, value)
            label = "code" if column == "item_code" else "id"
            raise UnknownProductError(f"Unknown product {label}: {value}") from exc
        except data_manager.PersistenceError as exc:
            log.error("Unable to read product %s '%s': %s", column, value, exc)
            raise StorageError("read product", value, detail=str(exc)) from exc


def describe_products(products: Iterable[data_manager.ProductRow]) -> List[str]:
    """Render products one per line for listings."""

    return [
        f"{product.description} [code {product.item_code} with unit price {product.price} and stock {product.stock}]"
        for product in products
    ]
