"""Data access layer for the stockroom workbook.

This module provides low-level helpers that read from and write to the
workbook that backs products, sales, rentals, and their line items. Business
rules belong elsewhere.

The public API is organised around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening and persisting the Excel file.
3. Sheet operations: point lookups, full scans, inserts returning a generated
   id, updates by id, and deletes by id or by parent id.

Every failure raised here is a :class:`PersistenceError`. Callers in the
business layer translate those into :class:`~stockroom.exceptions.StorageError`.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional, Sequence

from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet
import openpyxl

from . import log
from .constants import (
    DEFAULT_HARD_LIMIT_DAYS,
    DEFAULT_RENTAL_DAYS,
    DEFAULT_RENTAL_FEE_RATE,
    SHEET_COLUMNS,
    SheetName,
)


CONFIG_FILE_NAME = "config.ini"
PRODUCT_SHEET = SheetName.PRODUCT.value
# hidden sheet holding the highest id ever issued per sheet
ID_COUNTER_SHEET = "idcounter"
ID_COUNTER_COLUMNS = ("sheet", "last_id")


class PersistenceError(Exception):
    """Raised when the workbook cannot satisfy a storage request."""


class RecordNotFoundError(PersistenceError):
    """Raised when a point lookup matches no row."""


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    rental_fee_rate: Decimal = DEFAULT_RENTAL_FEE_RATE
    hard_limit_days: int = DEFAULT_HARD_LIMIT_DAYS
    default_rental_days: int = DEFAULT_RENTAL_DAYS


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``product`` sheet."""

    product_id: int
    item_code: int
    description: str
    price: Decimal
    stock: Decimal


@dataclass(frozen=True)
class HeaderRow:
    """In-memory view of a ``sale`` or ``rental`` header row.

    ``return_date`` and ``return_status`` are ``None`` for sales.
    """

    transaction_id: int
    created_on: date
    total: Decimal
    status: str
    return_date: Optional[date] = None
    return_status: Optional[int] = None


@dataclass(frozen=True)
class LineItemRow:
    """In-memory view of a ``saleproduct`` or ``rentalproduct`` row."""

    line_id: int
    transaction_id: int
    product_id: int
    quantity: Decimal


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate ``config.ini``.

    An explicit path is returned as-is. Otherwise the search walks up from the
    current working directory and returns the first ``config.ini`` found.

    Raises:
        FileNotFoundError: If no parent directory holds ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` into a ``ConfigParser``.

    Required entries are validated later by :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after ``~``
            expansion and resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    The ``[System]`` section is mandatory. The ``[Rental]`` section is
    optional and every option in it falls back to the package defaults.
    Relative ``DataFile`` entries are anchored to ``base_path`` (or the
    current working directory) and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to anchor a relative
            ``DataFile``.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required ``[System]`` entry is missing.
        ValueError: If a ``[Rental]`` entry cannot be parsed.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    try:
        fee_rate = Decimal(parser.get("Rental", "FeeRate", fallback=str(DEFAULT_RENTAL_FEE_RATE)))
    except InvalidOperation as exc:
        raise ValueError("Rental FeeRate must be a decimal number") from exc
    hard_limit_days = parser.getint("Rental", "HardLimitDays", fallback=DEFAULT_HARD_LIMIT_DAYS)
    default_rental_days = parser.getint("Rental", "DefaultRentalDays", fallback=DEFAULT_RENTAL_DAYS)
    if fee_rate < 0 or hard_limit_days < 0 or default_rental_days < 0:
        raise ValueError("Rental settings must not be negative")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        rental_fee_rate=fee_rate,
        hard_limit_days=hard_limit_days,
        default_rental_days=default_rental_days,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the workbook at ``data_file`` with :func:`openpyxl.load_workbook`.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist ``workbook`` to ``destination``, creating parent folders."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding unsaved in-memory changes."""

    return open_workbook(data_file)


def get_sheet(workbook: Workbook, sheet_name: str) -> Worksheet:
    """Return the named worksheet or raise :class:`PersistenceError`."""

    try:
        return workbook[sheet_name]
    except KeyError as exc:
        raise PersistenceError(f"Worksheet not found: {sheet_name}") from exc


def header_map(sheet: Worksheet) -> dict[str, int]:
    """Map header titles to 1-based column indices."""

    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1]) if cell.value is not None}


def iter_raw_rows(workbook: Workbook, sheet_name: str) -> Iterator[tuple[int, tuple[Any, ...]]]:
    """Yield ``(row_index, values)`` for every non-empty data row."""

    sheet = get_sheet(workbook, sheet_name)
    for row_idx, raw in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield row_idx, raw


def iter_products(workbook: Workbook) -> Iterable[ProductRow]:
    """Stream every product row in sheet order."""

    for _, raw in iter_raw_rows(workbook, PRODUCT_SHEET):
        yield deserialize_product(raw)


def iter_headers(workbook: Workbook, sheet_name: str) -> Iterable[HeaderRow]:
    """Stream every transaction header of ``sheet_name`` in sheet order."""

    for _, raw in iter_raw_rows(workbook, sheet_name):
        yield deserialize_header(raw)


def iter_line_items(workbook: Workbook, sheet_name: str, transaction_id: Optional[int] = None) -> Iterable[LineItemRow]:
    """Stream line-item rows, optionally restricted to one transaction."""

    for _, raw in iter_raw_rows(workbook, sheet_name):
        record = deserialize_line_item(raw)
        if transaction_id is None or record.transaction_id == transaction_id:
            yield record


def find_product(workbook: Workbook, *, column: str, value: int) -> ProductRow:
    """Return the product whose ``column`` equals ``value``.

    ``column`` is ``"id"`` for internal ids or ``"item_code"`` for the external
    code.

    Raises:
        RecordNotFoundError: If no row matches.
    """

    row_index = locate_row(workbook, PRODUCT_SHEET, column, value)
    if row_index is None:
        raise RecordNotFoundError(f"Product not found: {column}={value}")
    sheet = get_sheet(workbook, PRODUCT_SHEET)
    raw = next(sheet.iter_rows(min_row=row_index, max_row=row_index, values_only=True))
    return deserialize_product(raw)


def find_header(workbook: Workbook, sheet_name: str, transaction_id: int) -> HeaderRow:
    """Return the header row with the given id.

    Raises:
        RecordNotFoundError: If no row matches.
    """

    row_index = locate_row(workbook, sheet_name, "id", transaction_id)
    if row_index is None:
        raise RecordNotFoundError(f"{sheet_name} {transaction_id} not found")
    sheet = get_sheet(workbook, sheet_name)
    raw = next(sheet.iter_rows(min_row=row_index, max_row=row_index, values_only=True))
    return deserialize_header(raw)


def next_id(workbook: Workbook, sheet_name: str) -> int:
    """Return the next id for ``sheet_name`` without claiming it.

    The id is one above both the highest id present and the highest id ever
    issued, so ids freed by deletes are never handed out again.
    """

    highest = issued_id(workbook, sheet_name)
    for _, raw in iter_raw_rows(workbook, sheet_name):
        try:
            highest = max(highest, int(raw[0]))
        except (TypeError, ValueError) as exc:
            raise PersistenceError(f"Malformed id in {sheet_name}: {raw[0]!r}") from exc
    return highest + 1


def _id_counter_sheet(workbook: Workbook, *, create: bool) -> Optional[Worksheet]:
    if ID_COUNTER_SHEET in workbook.sheetnames:
        return workbook[ID_COUNTER_SHEET]
    if not create:
        return None
    sheet = workbook.create_sheet(ID_COUNTER_SHEET)
    sheet.append(list(ID_COUNTER_COLUMNS))
    sheet.sheet_state = "hidden"
    return sheet


def issued_id(workbook: Workbook, sheet_name: str) -> int:
    """Highest id ever issued for ``sheet_name``; ``0`` if none was recorded."""

    if _id_counter_sheet(workbook, create=False) is None:
        return 0
    row_index = locate_row(workbook, ID_COUNTER_SHEET, "sheet", sheet_name)
    if row_index is None:
        return 0
    value = workbook[ID_COUNTER_SHEET].cell(row=row_index, column=2).value
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise PersistenceError(f"Malformed id counter for {sheet_name}: {value!r}") from exc


def _claim_id(workbook: Workbook, sheet_name: str) -> int:
    new_id = next_id(workbook, sheet_name)
    sheet = _id_counter_sheet(workbook, create=True)
    row_index = locate_row(workbook, ID_COUNTER_SHEET, "sheet", sheet_name)
    if row_index is None:
        sheet.append([sheet_name, new_id])
    else:
        sheet.cell(row=row_index, column=2, value=new_id)
    return new_id


def append_product(workbook: Workbook, record: ProductRow) -> None:
    """Append a fully specified product row (used when seeding)."""

    sheet = get_sheet(workbook, PRODUCT_SHEET)
    if locate_row(workbook, PRODUCT_SHEET, "item_code", record.item_code) is not None:
        raise PersistenceError(f"Duplicate item code: {record.item_code}")
    sheet.append(serialize_product(record))


def insert_header(
    workbook: Workbook,
    sheet_name: str,
    *,
    created_on: date,
    total: Decimal,
    status: str,
    return_date: Optional[date] = None,
    return_status: Optional[int] = None,
) -> int:
    """Insert a transaction header and return its generated id."""

    sheet = get_sheet(workbook, sheet_name)
    record = HeaderRow(
        transaction_id=_claim_id(workbook, sheet_name),
        created_on=created_on,
        total=total,
        status=status,
        return_date=return_date,
        return_status=return_status,
    )
    width = len(SHEET_COLUMNS.get(sheet_name, ()))
    sheet.append(serialize_header(record)[: width or None])
    return record.transaction_id


def insert_line_item(workbook: Workbook, sheet_name: str, *, transaction_id: int, product_id: int, quantity: Decimal) -> int:
    """Insert a line-item row and return its generated id."""

    sheet = get_sheet(workbook, sheet_name)
    record = LineItemRow(
        line_id=_claim_id(workbook, sheet_name),
        transaction_id=transaction_id,
        product_id=product_id,
        quantity=quantity,
    )
    sheet.append(serialize_line_item(record))
    return record.line_id


def update_record(workbook: Workbook, sheet_name: str, record_id: int, *, field_values: dict[str, Any]) -> None:
    """Overwrite selected columns of the row whose ``id`` is ``record_id``.

    Raises:
        RecordNotFoundError: If the row does not exist.
        PersistenceError: If a field is not a column of the sheet.
    """

    row_index = locate_row(workbook, sheet_name, "id", record_id)
    if row_index is None:
        raise RecordNotFoundError(f"{sheet_name} {record_id} not found")

    sheet = get_sheet(workbook, sheet_name)
    columns = header_map(sheet)

    for field, value in field_values.items():
        if field not in columns:
            raise PersistenceError(f"Unknown {sheet_name} field: {field}")
        sheet.cell(row=row_index, column=columns[field], value=_to_cell(value))


def delete_record(workbook: Workbook, sheet_name: str, record_id: int) -> None:
    """Delete the row whose ``id`` is ``record_id``.

    Raises:
        RecordNotFoundError: If the row does not exist.
    """

    row_index = locate_row(workbook, sheet_name, "id", record_id)
    if row_index is None:
        raise RecordNotFoundError(f"{sheet_name} {record_id} not found")
    get_sheet(workbook, sheet_name).delete_rows(row_index)


def delete_line_items(workbook: Workbook, sheet_name: str, transaction_id: int) -> int:
    """Delete every line-item row of ``transaction_id``; return how many."""

    sheet = get_sheet(workbook, sheet_name)
    column = header_map(sheet).get("transaction_id")
    if column is None:
        raise PersistenceError(f"Unknown column: transaction_id in {sheet_name}")

    doomed = [
        row_idx
        for row_idx, raw in iter_raw_rows(workbook, sheet_name)
        if raw[column - 1] == transaction_id
    ]
    # bottom-up so earlier indices stay valid
    for row_idx in reversed(doomed):
        sheet.delete_rows(row_idx)
    log.debug("Deleted %d line items of %s %s", len(doomed), sheet_name, transaction_id)
    return len(doomed)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: Any) -> Optional[int]:
    """Return the 1-based index of the first row whose ``key_column`` equals ``key_value``.

    The header row is never matched.

    Raises:
        PersistenceError: If ``key_column`` is not a header of the sheet.
    """

    sheet = get_sheet(workbook, sheet_name)
    columns = header_map(sheet)
    if key_column not in columns:
        raise PersistenceError(f"Unknown column: {key_column} in {sheet_name}")

    key_col_index = columns[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] == key_value:
            return row_idx

    return None


def _to_cell(value: Any) -> Any:
    """Convert Python values into what the worksheet stores."""

    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


def _to_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


def _to_decimal(value: Any, default: str = "0") -> Decimal:
    return Decimal(str(value)) if value is not None else Decimal(default)


def serialize_product(record: ProductRow) -> list[object]:
    """Arrange a product as ``[id, item_code, description, price, qty]``."""

    return [record.product_id, record.item_code, record.description, record.price, record.stock]


def serialize_header(record: HeaderRow) -> list[object]:
    """Arrange a header as ``[id, date, total, status, return_date, return_status]``.

    Sale sheets only keep the first four values.
    """

    return [
        record.transaction_id,
        _to_cell(record.created_on),
        record.total,
        record.status,
        _to_cell(record.return_date) if record.return_date is not None else None,
        int(record.return_status) if record.return_status is not None else None,
    ]


def serialize_line_item(record: LineItemRow) -> list[object]:
    return [record.line_id, record.transaction_id, record.product_id, record.quantity]


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw worksheet row into a :class:`ProductRow`.

    Raises:
        PersistenceError: If a cell cannot be converted.
    """

    try:
        product_id, item_code, description, price, qty = tuple(raw_row[:5])
        return ProductRow(
            product_id=int(product_id),
            item_code=int(item_code),
            description=str(description) if description is not None else "",
            price=_to_decimal(price, "0.00"),
            stock=_to_decimal(qty),
        )
    except (TypeError, ValueError, InvalidOperation) as exc:
        raise PersistenceError(f"Malformed product row: {tuple(raw_row)!r}") from exc


def deserialize_header(raw_row: Sequence[object]) -> HeaderRow:
    """Convert a raw ``sale``/``rental`` row into a :class:`HeaderRow`.

    Raises:
        PersistenceError: If a cell cannot be converted.
    """

    values = list(raw_row) + [None] * (6 - len(raw_row))
    transaction_id, created_raw, total_raw, status, return_raw, return_status = values[:6]
    try:
        created_on = _to_date(created_raw)
        if created_on is None:
            raise ValueError("missing date")
        return HeaderRow(
            transaction_id=int(transaction_id),
            created_on=created_on,
            total=_to_decimal(total_raw, "0.00"),
            status=str(status),
            return_date=_to_date(return_raw),
            return_status=int(return_status) if return_status is not None else None,
        )
    except (TypeError, ValueError, InvalidOperation) as exc:
        raise PersistenceError(f"Malformed transaction row: {tuple(raw_row)!r}") from exc


def deserialize_line_item(raw_row: Sequence[object]) -> LineItemRow:
    """Convert a raw line-item row into a :class:`LineItemRow`.

    Raises:
        PersistenceError: If a cell cannot be converted.
    """

    try:
        line_id, transaction_id, product_id, qty = tuple(raw_row[:4])
        return LineItemRow(
            line_id=int(line_id),
            transaction_id=int(transaction_id),
            product_id=int(product_id),
            quantity=_to_decimal(qty),
        )
    except (TypeError, ValueError, InvalidOperation) as exc:
        raise PersistenceError(f"Malformed line item row: {tuple(raw_row)!r}") from exc
