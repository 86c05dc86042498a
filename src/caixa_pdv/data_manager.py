"""Data access layer for Caixa PDV.

This module provides low-level helpers that read from and write to the store
workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading structured rows and inserting or updating
   individual rows by key.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass
from datetime import datetime, tzinfo
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import CENTS, ZERO, SheetName


CONFIG_FILE_NAME = "config.ini"
DEFAULT_CACHE_FILE = ".caixa_cache.json"
DEFAULT_HISTORY_DAYS = 60
DEFAULT_MAX_ATTEMPTS = 5

PRODUCTS_SHEET = SheetName.PRODUCTS.value
SALES_SHEET = SheetName.SALES.value
SALE_ITEMS_SHEET = SheetName.SALE_ITEMS.value
CASH_DRAWERS_SHEET = SheetName.CASH_DRAWERS.value
WITHDRAWALS_SHEET = SheetName.WITHDRAWALS.value

SHEET_HEADERS: dict[str, list[str]] = {
    PRODUCTS_SHEET: ["ProductID", "ProductName", "Stock", "Price", "Category", "UpdatedAt"],
    SALES_SHEET: [
        "SaleID",
        "Timestamp",
        "Subtotal",
        "DiscountType",
        "DiscountValue",
        "DiscountAmount",
        "Total",
        "PaymentMethod",
    ],
    SALE_ITEMS_SHEET: ["SaleItemID", "SaleID", "ProductID", "ProductName", "Quantity", "PricePerItem"],
    CASH_DRAWERS_SHEET: ["Date", "OpeningCash", "PreviousClosingCash", "ClosingCash", "ClosedAt"],
    WITHDRAWALS_SHEET: ["WithdrawalID", "Date", "Amount", "Reason", "Timestamp"],
}


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    time_zone: Optional[tzinfo] = None
    cache_file: Path = Path(DEFAULT_CACHE_FILE)
    history_days: int = DEFAULT_HISTORY_DAYS
    max_attempts: int = DEFAULT_MAX_ATTEMPTS


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: str
    product_name: str
    stock: int
    price: Decimal
    category: str
    updated_at: Optional[str] = None


@dataclass(frozen=True)
class SaleRow:
    """In-memory view of a row from the ``Sales`` sheet."""

    sale_id: str
    timestamp_iso: str
    subtotal: Decimal
    discount_type: Optional[str]
    discount_value: Optional[Decimal]
    discount_amount: Decimal
    total: Decimal
    payment_method: str


@dataclass(frozen=True)
class SaleItemRow:
    """In-memory view of a row from the ``SaleItems`` sheet."""

    sale_item_id: str
    sale_id: str
    product_id: str
    product_name: str
    quantity: int
    price_per_item: Decimal


@dataclass(frozen=True)
class CashDrawerRow:
    """In-memory view of a row from the ``CashDrawers`` sheet.

    ``closing_cash`` stays ``None`` until the day is closed.
    """

    date: str
    opening_cash: Decimal
    previous_closing_cash: Decimal
    closing_cash: Optional[Decimal]
    closed_at_iso: Optional[str] = None


@dataclass(frozen=True)
class WithdrawalRow:
    """In-memory view of a row from the ``Withdrawals`` sheet."""

    withdrawal_id: str
    date: str
    amount: Decimal
    reason: str
    timestamp_iso: str


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification, which allows the caller to deliberately target a
    non-standard location. When no explicit path is given the function walks up
    from the current working directory toward the filesystem root looking for a
    file named ``CONFIG_FILE_NAME``. The first match that exists on disk is
    considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search. May be relative to the current working directory.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
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
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Initialized parser containing the raw
            configuration data. Validation of required entries happens in
            :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser(inline_comment_prefixes=(";", "#"))
    parser.read(config_path, encoding="utf-8")
    return parser


def _anchor(raw: str, base_path: Optional[Path]) -> Path:
    path = Path(raw).expanduser()
    if not path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        path = (base_path / path).resolve()
    return path


def _positive_int(parser: configparser.ConfigParser, option: str, default: int) -> int:
    raw = parser.get("Sync", option, fallback=str(default))
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"Sync.{option} must be an integer, got {raw!r}") from exc
    if value <= 0:
        raise ValueError(f"Sync.{option} must be greater than zero, got {value}")
    return value


def parse_time_zone(name: Optional[str]) -> Optional[tzinfo]:
    """Resolve an IANA zone name; blank values mean the system local zone.

    Raises:
        ValueError: If ``name`` is not a known zone.
    """

    if name is None or not name.strip():
        return None
    try:
        return ZoneInfo(name.strip())
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown time zone: {name!r}") from exc


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    Relative ``DataFile`` and ``CacheFile`` entries are expanded against
    ``base_path`` when provided, or against the current working directory as a
    fallback. The ``[Sync]`` section is optional.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used as the anchor for relative
            paths. Defaults to :func:`Path.cwd` when omitted.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing.
        ValueError: If a numeric option or the time zone is malformed.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    time_zone = parse_time_zone(parser.get("System", "TimeZone", fallback=None))
    cache_raw = parser.get("Sync", "CacheFile", fallback=DEFAULT_CACHE_FILE)

    return ConfigSettings(
        data_file=_anchor(data_file_raw, base_path),
        store_name=store_name,
        schema_version=schema_version,
        time_zone=time_zone,
        cache_file=_anchor(cache_raw, base_path),
        history_days=_positive_int(parser, "HistoryDays", DEFAULT_HISTORY_DAYS),
        max_attempts=_positive_int(parser, "MaxAttempts", DEFAULT_MAX_ATTEMPTS),
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the store workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the workbook.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def _iter_rows(workbook: Workbook, sheet_name: str) -> Iterable[Sequence[object]]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def iter_products(workbook: Workbook) -> Iterable[ProductRow]:
    """Iterate over product records stored on the ``Products`` worksheet.

    Args:
        workbook (Workbook): Workbook containing the ``Products`` sheet.

    Yields:
        ProductRow: One structured row for each meaningful record in the sheet.
    """

    for raw in _iter_rows(workbook, PRODUCTS_SHEET):
        yield deserialize_product(raw)


def iter_sales(workbook: Workbook) -> Iterable[SaleRow]:
    """Stream sale headers from the ``Sales`` worksheet."""

    for raw in _iter_rows(workbook, SALES_SHEET):
        yield deserialize_sale(raw)


def iter_sale_items(workbook: Workbook) -> Iterable[SaleItemRow]:
    """Stream sale lines from the ``SaleItems`` worksheet."""

    for raw in _iter_rows(workbook, SALE_ITEMS_SHEET):
        yield deserialize_sale_item(raw)


def iter_cash_drawers(workbook: Workbook) -> Iterable[CashDrawerRow]:
    """Stream the per-day drawer rows from the ``CashDrawers`` worksheet."""

    for raw in _iter_rows(workbook, CASH_DRAWERS_SHEET):
        yield deserialize_cash_drawer(raw)


def iter_withdrawals(workbook: Workbook) -> Iterable[WithdrawalRow]:
    for raw in _iter_rows(workbook, WITHDRAWALS_SHEET):
        yield deserialize_withdrawal(raw)


def header_map(workbook: Workbook, sheet_name: str) -> dict[str, int]:
    """Map header titles of ``sheet_name`` to their 1-based column index."""

    sheet = workbook[sheet_name]
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the column that stores the
            lookup key.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    headers = header_map(workbook, sheet_name)
    if key_column not in headers:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = headers[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        cell_value = row[key_col_index - 1]
        if cell_value is not None and str(cell_value) == key_value:
            return row_idx

    return None


def upsert_row(workbook: Workbook, sheet_name: str, key_column: str, values: Sequence[object]) -> int:
    """Insert ``values`` or overwrite the row that already holds the same key.

    The key is read from ``values`` at the position of ``key_column`` so that
    repeated writes of the same record leave exactly one row behind.

    Args:
        workbook (Workbook): Workbook containing ``sheet_name``.
        sheet_name (str): Worksheet receiving the row.
        key_column (str): Header title of the identifying column.
        values (Sequence[object]): Full row in the sheet's column order.

    Returns:
        int: 1-based index of the row that was written.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    headers = header_map(workbook, sheet_name)
    if key_column not in headers:
        raise KeyError(f"Unknown column: {key_column}")
    key_value = str(values[headers[key_column] - 1])

    sheet = workbook[sheet_name]
    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        sheet.append(list(values))
        row_index = sheet.max_row
        log.debug("Inserted %s row '%s'", sheet_name, key_value)
    else:
        for col, value in enumerate(values, start=1):
            sheet.cell(row=row_index, column=col, value=value)
        log.debug("Updated %s row '%s'", sheet_name, key_value)
    return row_index


def update_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns of the row identified by ``key_value``.

    Raises:
        KeyError: If the row or any referenced column cannot be found.
    """

    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        raise KeyError(f"{sheet_name} row not found: {key_value}")

    sheet = workbook[sheet_name]
    headers = header_map(workbook, sheet_name)
    for field, value in field_values.items():
        if field not in headers:
            raise KeyError(f"Unknown {sheet_name} field: {field}")
        sheet.cell(row=row_index, column=headers[field], value=value)


def _pad(raw_row: Sequence[object], width: int) -> tuple:
    values = tuple(raw_row[:width])
    return values + (None,) * (width - len(values))


def _money(raw: object) -> Decimal:
    if raw is None or raw == "":
        return ZERO
    return Decimal(str(raw)).quantize(CENTS)


def _optional_money(raw: object) -> Optional[Decimal]:
    if raw is None or raw == "":
        return None
    return Decimal(str(raw)).quantize(CENTS)


def _text(raw: object) -> str:
    if raw is None:
        return ""
    if isinstance(raw, datetime):
        return raw.isoformat()
    return str(raw)


def _day(raw: object) -> str:
    if isinstance(raw, datetime):
        return raw.date().isoformat()
    return _text(raw)


def serialize_product(record: ProductRow) -> list[object]:
    """Convert a product dataclass into the worksheet column ordering.

    Returns:
        list[object]: Values arranged as ``[ProductID, ProductName, Stock,
        Price, Category, UpdatedAt]``.
    """

    return [
        record.product_id,
        record.product_name,
        record.stock,
        record.price,
        record.category,
        record.updated_at,
    ]


def serialize_sale(record: SaleRow) -> list[object]:
    return [
        record.sale_id,
        record.timestamp_iso,
        record.subtotal,
        record.discount_type,
        record.discount_value,
        record.discount_amount,
        record.total,
        record.payment_method,
    ]


def serialize_sale_item(record: SaleItemRow) -> list[object]:
    return [
        record.sale_item_id,
        record.sale_id,
        record.product_id,
        record.product_name,
        record.quantity,
        record.price_per_item,
    ]


def serialize_cash_drawer(record: CashDrawerRow) -> list[object]:
    return [
        record.date,
        record.opening_cash,
        record.previous_closing_cash,
        record.closing_cash,
        record.closed_at_iso,
    ]


def serialize_withdrawal(record: WithdrawalRow) -> list[object]:
    return [record.withdrawal_id, record.date, record.amount, record.reason, record.timestamp_iso]


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw worksheet row into a strongly typed product record.

    The converter normalizes money into :class:`~decimal.Decimal` instances and
    coerces id/name fields to ``str`` to avoid surprises caused by Excel
    automatically interpreting numbers.
    """

    product_id, product_name, stock, price, category, updated_at = _pad(raw_row, 6)
    return ProductRow(
        product_id=str(product_id),
        product_name=_text(product_name),
        stock=int(stock) if stock is not None else 0,
        price=_money(price),
        category=_text(category),
        updated_at=_text(updated_at) or None,
    )


def deserialize_sale(raw_row: Sequence[object]) -> SaleRow:
    """Convert a raw ``Sales`` row; blank discount columns stay ``None``."""

    (
        sale_id,
        timestamp,
        subtotal,
        discount_type,
        discount_value,
        discount_amount,
        total,
        payment_method,
    ) = _pad(raw_row, 8)

    return SaleRow(
        sale_id=str(sale_id),
        timestamp_iso=_text(timestamp),
        subtotal=_money(subtotal),
        discount_type=_text(discount_type) or None,
        discount_value=_optional_money(discount_value),
        discount_amount=_money(discount_amount),
        total=_money(total),
        payment_method=_text(payment_method),
    )


def deserialize_sale_item(raw_row: Sequence[object]) -> SaleItemRow:
    sale_item_id, sale_id, product_id, product_name, quantity, price_per_item = _pad(raw_row, 6)
    return SaleItemRow(
        sale_item_id=str(sale_item_id),
        sale_id=str(sale_id),
        product_id=str(product_id),
        product_name=_text(product_name),
        quantity=int(quantity) if quantity is not None else 0,
        price_per_item=_money(price_per_item),
    )


def deserialize_cash_drawer(raw_row: Sequence[object]) -> CashDrawerRow:
    date, opening_cash, previous_closing_cash, closing_cash, closed_at = _pad(raw_row, 5)
    return CashDrawerRow(
        date=_day(date),
        opening_cash=_money(opening_cash),
        previous_closing_cash=_money(previous_closing_cash),
        closing_cash=_optional_money(closing_cash),
        closed_at_iso=_text(closed_at) or None,
    )


def deserialize_withdrawal(raw_row: Sequence[object]) -> WithdrawalRow:
    withdrawal_id, date, amount, reason, timestamp = _pad(raw_row, 5)
    return WithdrawalRow(
        withdrawal_id=str(withdrawal_id),
        date=_day(date),
        amount=_money(amount),
        reason=_text(reason),
        timestamp_iso=_text(timestamp),
    )
