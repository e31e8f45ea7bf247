"""Utility for initializing the stockroom workbook.

The module doubles as a script (``python setup_excel.py``) and as a library
used by tests. Products can be seeded from a CSV file whose columns are
``item_code,description,price,qty``.
"""

from __future__ import annotations

import argparse
import configparser
import csv
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Iterable, Mapping, Sequence
import sys

import openpyxl
from openpyxl.styles import Font

from stockroom.constants import SHEET_COLUMNS, SheetName

CONFIG_FILE = "config.ini"

# item_code, description, price, qty
SeedProduct = tuple[int, str, Decimal, Decimal]


@dataclass(frozen=True)
class SetupSettings:
    """Type-safe representation of configuration values used during setup."""

    data_file: Path


def load_settings(config_path: Path) -> SetupSettings:
    """Read ``config.ini`` and produce :class:`SetupSettings`.

    A relative ``DataFile`` is resolved against the config file's directory.
    """

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)

    try:
        data_file_raw = parser.get("System", "DataFile")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        data_file_path = (config_path.parent / data_file_path).resolve()

    return SetupSettings(data_file=data_file_path)


def read_seed_file(seed_path: Path) -> list[SeedProduct]:
    """Parse a product seed CSV into ``(item_code, description, price, qty)`` tuples."""

    with seed_path.open(newline="", encoding="utf-8") as handle:
        reader = csv.DictReader(handle)
        return [
            (int(row["item_code"]), row["description"], Decimal(row["price"]), Decimal(row["qty"]))
            for row in reader
        ]


def create_master_workbook(
    destination: Path,
    *,
    products: Iterable[SeedProduct] = (),
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    overwrite: bool = False,
) -> Path:
    """Create the stockroom workbook at ``destination``.

    Every sheet gets a bold header row. ``products`` are appended to the
    product sheet with ids ``1..n`` in the given order. When ``overwrite`` is
    ``False`` (the default) an existing file raises ``FileExistsError``.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing workbook: {destination}"
        )

    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()

    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)

    for sheet_name, columns in sheet_columns.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    product_sheet = workbook[SheetName.PRODUCT.value]
    seen_codes: set[int] = set()
    for product_id, (item_code, description, price, qty) in enumerate(products, start=1):
        if item_code in seen_codes:
            raise ValueError(f"Duplicate item code in seed data: {item_code}")
        if price < 0 or qty < 0:
            raise ValueError(f"Price and stock must not be negative (item code {item_code})")
        seen_codes.add(item_code)
        product_sheet.append([product_id, item_code, description, price, qty])

    workbook.save(destination)
    return destination


def run_from_config(config_path: Path, *, seed_path: Path | None = None, overwrite: bool = False) -> Path:
    """Create the workbook named by ``config_path``, optionally seeded."""

    settings = load_settings(config_path)
    products = read_seed_file(seed_path) if seed_path is not None else ()
    return create_master_workbook(settings.data_file, products=products, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the stockroom workbook")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--seed",
        default=None,
        help="CSV file with item_code,description,price,qty columns.",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the setup script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()
    seed_path = Path(args.seed).expanduser().resolve() if args.seed else None

    print("--- Stockroom Setup Script ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, seed_path=seed_path, overwrite=args.force)
    except (FileNotFoundError, KeyError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except ValueError as exc:
        print(f"\n[ERROR] Invalid seed data: {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except (PermissionError, OSError) as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
