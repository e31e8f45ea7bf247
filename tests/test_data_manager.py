"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
from datetime import date
from decimal import Decimal
from pathlib import Path

import openpyxl
from openpyxl.workbook import Workbook as OpenpyxlWorkbook
import pytest

from stockroom import constants, data_manager  # noqa: E402


SALE_SHEET = constants.SheetName.SALE.value
RENTAL_SHEET = constants.SheetName.RENTAL.value
SALE_LINES = constants.SheetName.SALE_PRODUCT.value


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    result = data_manager.find_config_file(config_file)
    assert result == config_file


def test_find_config_file_discovers_in_cwd(tmp_path, monkeypatch):
    """Auto-discovery should locate config.ini in the working directory tree."""

    config_dir = tmp_path / "nested"
    config_dir.mkdir(parents=True)
    config_file = config_dir / "config.ini"
    config_file.write_text("[System]\nDataFile=stockroom.xlsx")
    monkeypatch.chdir(config_dir)

    result = data_manager.find_config_file()
    assert result == config_file


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    """Absent configuration should surface a clear FileNotFoundError."""

    monkeypatch.chdir(tmp_path)
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_loads_sections(config_file: Path):
    """read_config should return a populated ConfigParser."""

    parser = data_manager.read_config(config_file)
    assert parser.get("System", "StoreName") == "Test Stockroom"


def test_read_config_missing_file_raises(tmp_path):
    """Missing files should propagate a FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile entries should be anchored to the config location."""

    parser = configparser.ConfigParser()
    bundle = config_factory(make_relative=True)
    parser.read(bundle.config_path)
    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)
    assert settings.data_file == (bundle.config_path.parent / bundle.workbook_path.name).resolve()
    assert settings.store_name == "Test Stockroom"


def test_parse_settings_requires_expected_sections(tmp_path):
    """Missing keys should result in a descriptive KeyError."""

    parser = configparser.ConfigParser()
    parser.read_string("[Other]\nvalue=1")
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


def test_parse_settings_defaults_rental_section(tmp_path):
    """Without a [Rental] section the package defaults apply."""

    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataFile=a.xlsx\nStoreName=S\nSchemaVersion=1.0.0")
    settings = data_manager.parse_settings(parser, base_path=tmp_path)
    assert settings.rental_fee_rate == constants.DEFAULT_RENTAL_FEE_RATE
    assert settings.hard_limit_days == constants.DEFAULT_HARD_LIMIT_DAYS
    assert settings.default_rental_days == constants.DEFAULT_RENTAL_DAYS


def test_parse_settings_reads_rental_overrides(config_factory):
    """Explicit [Rental] values should override the defaults."""

    bundle = config_factory(rental={"fee_rate": "0.25", "hard_limit_days": 3, "default_rental_days": 14})
    parser = data_manager.read_config(bundle.config_path)
    settings = data_manager.parse_settings(parser, base_path=bundle.directory)
    assert settings.rental_fee_rate == Decimal("0.25")
    assert settings.hard_limit_days == 3
    assert settings.default_rental_days == 14


@pytest.mark.parametrize("entry", ["FeeRate = lots", "FeeRate = -0.1", "HardLimitDays = -1"])
def test_parse_settings_rejects_bad_rental_values(tmp_path, entry):
    """Unparseable or negative rental settings should raise ValueError."""

    parser = configparser.ConfigParser()
    parser.read_string(f"[System]\nDataFile=a.xlsx\nStoreName=S\nSchemaVersion=1.0.0\n[Rental]\n{entry}")
    with pytest.raises(ValueError):
        data_manager.parse_settings(parser, base_path=tmp_path)


# ---------------------------------------------------------------------------
# Workbook lifecycle
# ---------------------------------------------------------------------------


def test_open_workbook_returns_openpyxl_instance(master_workbook_path):
    """open_workbook should hand back a loaded Workbook object."""

    workbook = data_manager.open_workbook(master_workbook_path)
    assert isinstance(workbook, OpenpyxlWorkbook)


def test_open_workbook_missing_file_raises(tmp_path):
    """Missing workbook files should yield FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_save_workbook_with_destination_creates_copy(workbook, tmp_path):
    """Providing a destination should create a new file independent of the source."""

    data_manager.insert_header(
        workbook, SALE_SHEET, created_on=date(2026, 1, 5), total=Decimal("0"), status="O"
    )
    copy_path = tmp_path / "nested" / "copy.xlsx"
    data_manager.save_workbook(workbook, destination=copy_path)

    copy = openpyxl.load_workbook(copy_path)
    rows = list(copy[SALE_SHEET].iter_rows(min_row=2, values_only=True))
    assert len(rows) == 1
    assert (rows[0][0], rows[0][1], rows[0][3]) == (1, "2026-01-05", "O")
    assert Decimal(str(rows[0][2])) == 0


def test_refresh_workbook_returns_new_instance(master_workbook_path):
    """refresh_workbook should return a freshly loaded workbook from disk."""

    original = data_manager.open_workbook(master_workbook_path)
    data_manager.update_record(original, data_manager.PRODUCT_SHEET, 1, field_values={"qty": Decimal("2")})
    data_manager.save_workbook(original, master_workbook_path)

    refreshed = data_manager.refresh_workbook(master_workbook_path)
    assert refreshed is not original
    assert data_manager.find_product(refreshed, column="id", value=1).stock == Decimal("2")


def test_get_sheet_unknown_name_raises(workbook):
    """A missing worksheet should be reported as a PersistenceError."""

    with pytest.raises(data_manager.PersistenceError):
        data_manager.get_sheet(workbook, "nope")


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


def test_iter_products_yields_seeded_rows(workbook):
    """iter_products should yield ProductRow instances in sheet order."""

    rows = list(data_manager.iter_products(workbook))
    assert [row.product_id for row in rows] == [1, 2, 3, 4, 5]
    assert rows[0] == data_manager.ProductRow(
        product_id=1,
        item_code=101,
        description="Drill",
        price=Decimal("13100"),
        stock=Decimal("6"),
    )


def test_find_product_by_code_and_id(workbook):
    """find_product should resolve either the external code or the internal id."""

    by_code = data_manager.find_product(workbook, column="item_code", value=102)
    by_id = data_manager.find_product(workbook, column="id", value=2)
    assert by_code == by_id
    assert by_code.description == "Ladder"


def test_find_product_missing_raises(workbook):
    """Unknown products should surface a RecordNotFoundError."""

    with pytest.raises(data_manager.RecordNotFoundError):
        data_manager.find_product(workbook, column="item_code", value=999)


def test_find_header_missing_raises(workbook):
    """A missing header id should surface a RecordNotFoundError."""

    with pytest.raises(data_manager.RecordNotFoundError):
        data_manager.find_header(workbook, SALE_SHEET, 42)


def test_iter_line_items_filters_by_transaction(workbook):
    """iter_line_items should restrict rows to the requested transaction."""

    data_manager.insert_line_item(workbook, SALE_LINES, transaction_id=1, product_id=3, quantity=Decimal("2"))
    data_manager.insert_line_item(workbook, SALE_LINES, transaction_id=2, product_id=4, quantity=Decimal("1"))
    data_manager.insert_line_item(workbook, SALE_LINES, transaction_id=1, product_id=4, quantity=Decimal("5"))

    rows = list(data_manager.iter_line_items(workbook, SALE_LINES, 1))
    assert [(row.line_id, row.product_id) for row in rows] == [(1, 3), (3, 4)]
    assert len(list(data_manager.iter_line_items(workbook, SALE_LINES))) == 3


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


def test_next_id_is_max_plus_one(workbook):
    """Generated ids should follow the highest id present, not the row count."""

    assert data_manager.next_id(workbook, data_manager.PRODUCT_SHEET) == 6
    assert data_manager.next_id(workbook, SALE_SHEET) == 1
    workbook[SALE_SHEET].append([7, "2026-01-01", 0, "O"])
    assert data_manager.next_id(workbook, SALE_SHEET) == 8


def test_deleted_ids_are_not_issued_again(master_workbook_path):
    """The issued-id counter should survive deletes and a save/reload cycle."""

    workbook = data_manager.open_workbook(master_workbook_path)
    for _ in range(2):
        data_manager.insert_header(workbook, SALE_SHEET, created_on=date(2026, 1, 5), total=Decimal("0"), status="O")
    data_manager.delete_record(workbook, SALE_SHEET, 2)
    assert data_manager.issued_id(workbook, SALE_SHEET) == 2
    assert data_manager.next_id(workbook, SALE_SHEET) == 3
    data_manager.save_workbook(workbook, master_workbook_path)

    reloaded = data_manager.open_workbook(master_workbook_path)
    assert reloaded[data_manager.ID_COUNTER_SHEET].sheet_state == "hidden"
    new_id = data_manager.insert_header(
        reloaded, SALE_SHEET, created_on=date(2026, 1, 6), total=Decimal("0"), status="O"
    )
    assert new_id == 3
    assert data_manager.issued_id(reloaded, RENTAL_SHEET) == 0


def test_next_id_does_not_claim(workbook):
    """Peeking at the next id should not advance the counter."""

    assert data_manager.next_id(workbook, SALE_SHEET) == 1
    assert data_manager.next_id(workbook, SALE_SHEET) == 1
    assert data_manager.ID_COUNTER_SHEET not in workbook.sheetnames


def test_insert_header_sale_keeps_sale_columns(workbook):
    """Sale headers should be written without the rental-only columns."""

    new_id = data_manager.insert_header(
        workbook, SALE_SHEET, created_on=date(2026, 1, 5), total=Decimal("0"), status="O"
    )
    header = data_manager.find_header(workbook, SALE_SHEET, new_id)
    assert new_id == 1
    assert header.created_on == date(2026, 1, 5)
    assert header.return_date is None
    assert workbook[SALE_SHEET].max_column == len(constants.SHEET_COLUMNS[SALE_SHEET])


def test_insert_header_rental_round_trips_return_axis(master_workbook_path):
    """Rental headers should persist their return date and return status."""

    workbook = data_manager.open_workbook(master_workbook_path)
    new_id = data_manager.insert_header(
        workbook,
        RENTAL_SHEET,
        created_on=date(2026, 1, 5),
        total=Decimal("0"),
        status="O",
        return_date=date(2026, 1, 12),
        return_status=0,
    )
    data_manager.save_workbook(workbook, master_workbook_path)

    header = data_manager.find_header(data_manager.open_workbook(master_workbook_path), RENTAL_SHEET, new_id)
    assert header.return_date == date(2026, 1, 12)
    assert header.return_status == 0


def test_append_product_rejects_duplicate_code(workbook):
    """append_product should refuse a second product with the same code."""

    record = data_manager.ProductRow(6, 101, "Another drill", Decimal("1"), Decimal("1"))
    with pytest.raises(data_manager.PersistenceError):
        data_manager.append_product(workbook, record)


def test_update_record_modifies_existing_row(workbook):
    """update_record should overwrite only the requested columns."""

    data_manager.update_record(workbook, data_manager.PRODUCT_SHEET, 3, field_values={"qty": Decimal("7")})
    product = data_manager.find_product(workbook, column="id", value=3)
    assert product.stock == Decimal("7")
    assert product.description == "Paint roller"


def test_update_record_missing_raises(workbook):
    """Updating a nonexistent row should surface a RecordNotFoundError."""

    with pytest.raises(data_manager.RecordNotFoundError):
        data_manager.update_record(workbook, SALE_SHEET, 99, field_values={"status": "C"})


def test_update_record_unknown_field_raises(workbook):
    """Writing a column the sheet does not have should fail loudly."""

    with pytest.raises(data_manager.PersistenceError):
        data_manager.update_record(workbook, data_manager.PRODUCT_SHEET, 1, field_values={"colour": "red"})


def test_delete_record_and_line_items(workbook):
    """Deleting a header and its lines should leave other transactions intact."""

    for _ in range(2):
        data_manager.insert_header(workbook, SALE_SHEET, created_on=date(2026, 1, 5), total=Decimal("0"), status="O")
    data_manager.insert_line_item(workbook, SALE_LINES, transaction_id=1, product_id=3, quantity=Decimal("1"))
    data_manager.insert_line_item(workbook, SALE_LINES, transaction_id=2, product_id=3, quantity=Decimal("1"))
    data_manager.insert_line_item(workbook, SALE_LINES, transaction_id=1, product_id=4, quantity=Decimal("1"))

    assert data_manager.delete_line_items(workbook, SALE_LINES, 1) == 2
    data_manager.delete_record(workbook, SALE_SHEET, 1)

    assert [h.transaction_id for h in data_manager.iter_headers(workbook, SALE_SHEET)] == [2]
    assert [row.transaction_id for row in data_manager.iter_line_items(workbook, SALE_LINES)] == [2]


def test_delete_record_missing_raises(workbook):
    """Deleting a missing row should raise RecordNotFoundError."""

    with pytest.raises(data_manager.RecordNotFoundError):
        data_manager.delete_record(workbook, SALE_SHEET, 1)


def test_locate_row_returns_row_index(workbook):
    """locate_row should return the worksheet index of the matching key."""

    assert data_manager.locate_row(workbook, data_manager.PRODUCT_SHEET, "item_code", 103) == 4


def test_locate_row_returns_none_when_missing(workbook):
    """locate_row should return None if the key is not present."""

    assert data_manager.locate_row(workbook, data_manager.PRODUCT_SHEET, "item_code", 999) is None


def test_locate_row_unknown_column_raises(workbook):
    """locate_row should reject columns absent from the header row."""

    with pytest.raises(data_manager.PersistenceError):
        data_manager.locate_row(workbook, data_manager.PRODUCT_SHEET, "sku", 1)


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def test_serialize_product_preserves_order():
    """serialize_product should follow the column ordering defined by setup."""

    record = data_manager.ProductRow(1, 101, "Drill", Decimal("1.25"), Decimal("3"))
    assert data_manager.serialize_product(record) == [1, 101, "Drill", Decimal("1.25"), Decimal("3")]


def test_serialize_header_writes_iso_dates():
    """serialize_header should store dates as ISO strings."""

    record = data_manager.HeaderRow(4, date(2026, 2, 1), Decimal("35"), "C", date(2026, 2, 8), 1)
    assert data_manager.serialize_header(record) == [4, "2026-02-01", Decimal("35"), "C", "2026-02-08", 1]


def test_deserialize_header_pads_sale_rows():
    """Sale rows have four cells; the rental-only fields come back as None."""

    record = data_manager.deserialize_header([3, "2026-02-01", "12.50", "O"])
    assert record.total == Decimal("12.50")
    assert record.return_date is None
    assert record.return_status is None


@pytest.mark.parametrize(
    "raw",
    [
        ["x", "2026-02-01", "0", "O"],
        [1, "not a date", "0", "O"],
        [1, None, "0", "O"],
    ],
)
def test_deserialize_header_rejects_malformed_rows(raw):
    """Unconvertible cells should surface a PersistenceError."""

    with pytest.raises(data_manager.PersistenceError):
        data_manager.deserialize_header(raw)


def test_deserialize_product_rejects_malformed_rows():
    """A non-numeric price should surface a PersistenceError."""

    with pytest.raises(data_manager.PersistenceError):
        data_manager.deserialize_product([1, 101, "Drill", "cheap", 1])
