"""Data access layer for Billbook.

This module provides low-level helpers that read from and write to the
billing workbook. It stands in for the external store the engine talks to:
the item lookup, the party lookup and the commit sink. Business logic
belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening and persisting the Excel file.
3. Sheet operations: loading structured records and appending or updating
   individual rows.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence

import openpyxl
from openpyxl.workbook import Workbook

from . import log
from .billing import StockItem, quantize_money
from .constants import PartyRole, SheetName, TransactionType
from .ledger import LedgerEntry, Party


CONFIG_FILE_NAME = "config.ini"
ITEMS_SHEET = SheetName.ITEMS.value
PARTIES_SHEET = SheetName.PARTIES.value
LEDGER_SHEET = SheetName.LEDGER_ENTRIES.value
INVOICES_SHEET = SheetName.INVOICES.value
INVOICE_LINES_SHEET = SheetName.INVOICE_LINES.value

_TRUE_STRINGS = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    shop_name: str
    schema_version: str
    default_with_gst: bool


@dataclass(frozen=True)
class InvoiceRow:
    """In-memory view of a row from the ``Invoices`` sheet."""

    invoice_id: str
    timestamp_iso: str
    kind: str
    party_id: str
    with_gst: bool
    line_count: int
    subtotal: Decimal
    tax_total: Decimal
    invoice_total: Decimal
    previous_balance_paid: Decimal
    grand_total: Decimal
    payment_status: Optional[str]
    paid_amount: Decimal
    balance_due: Decimal
    return_type: Optional[str]
    notes: Optional[str]


@dataclass(frozen=True)
class InvoiceLineRow:
    """One priced cart line stored on the ``InvoiceLines`` sheet."""

    invoice_id: str
    line_number: int
    item_id: str
    quantity: int
    rate: Decimal
    discount_type: str
    discount_value: Optional[Decimal]
    tax_rate: Decimal
    item_total: Decimal
    discount_amount: Decimal
    total_after_discount: Decimal
    taxable_value: Decimal
    tax_amount: Decimal


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the
    current working directory looking for ``CONFIG_FILE_NAME``; the first
    match is authoritative.

    Raises:
        FileNotFoundError: If no parent directory holds ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for candidate_dir in (current, *current.parents):
        candidate = candidate_dir / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion
            and resolution.
    """

    config_path = Path(config_path).expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    Relative ``DataFile`` entries are anchored to ``base_path`` (or the
    current working directory). ``[Defaults] WithGst`` is optional and
    defaults to ``False``.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to resolve a relative
            ``DataFile``.

    Returns:
        ConfigSettings: Immutable settings with a resolved data file path.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If ``WithGst`` is not a boolean.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        shop_name = parser.get("System", "ShopName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    default_with_gst = parser.getboolean("Defaults", "WithGst", fallback=False)

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        shop_name=shop_name,
        schema_version=schema_version,
        default_with_gst=default_with_gst,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the billing workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to ``destination``, creating parent folders."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)
    log.debug("Saved workbook to '%s'", dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding unsaved in-memory changes."""

    return open_workbook(data_file)


def _iter_sheet(workbook: Workbook, sheet_name: str) -> Iterable[Sequence[object]]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def iter_items(workbook: Workbook) -> Iterable[StockItem]:
    """Iterate over item records stored on the ``Items`` worksheet."""

    for raw in _iter_sheet(workbook, ITEMS_SHEET):
        yield deserialize_item(raw)


def iter_parties(workbook: Workbook) -> Iterable[Party]:
    """Iterate over the ``Parties`` worksheet and yield typed records."""

    for raw in _iter_sheet(workbook, PARTIES_SHEET):
        yield deserialize_party(raw)


def iter_ledger_entries(workbook: Workbook) -> Iterable[LedgerEntry]:
    """Stream ledger entries in the order they were appended."""

    for raw in _iter_sheet(workbook, LEDGER_SHEET):
        yield deserialize_ledger_entry(raw)


def iter_invoices(workbook: Workbook) -> Iterable[InvoiceRow]:
    """Stream committed invoice headers from the ``Invoices`` worksheet."""

    for raw in _iter_sheet(workbook, INVOICES_SHEET):
        yield deserialize_invoice(raw)


def iter_invoice_lines(workbook: Workbook) -> Iterable[InvoiceLineRow]:
    """Stream committed cart lines in the order they were appended."""

    for raw in _iter_sheet(workbook, INVOICE_LINES_SHEET):
        yield deserialize_invoice_line(raw)


def append_item(workbook: Workbook, record: StockItem) -> None:
    workbook[ITEMS_SHEET].append(serialize_item(record))


def append_party(workbook: Workbook, record: Party) -> None:
    workbook[PARTIES_SHEET].append(serialize_party(record))


def append_ledger_entry(workbook: Workbook, record: LedgerEntry) -> None:
    """Append a ledger entry. Existing rows are never rewritten."""

    workbook[LEDGER_SHEET].append(serialize_ledger_entry(record))


def append_invoice(workbook: Workbook, record: InvoiceRow) -> None:
    workbook[INVOICES_SHEET].append(serialize_invoice(record))


def append_invoice_line(workbook: Workbook, record: InvoiceLineRow) -> None:
    workbook[INVOICE_LINES_SHEET].append(serialize_invoice_line(record))


def update_item(workbook: Workbook, item_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing item.

    Raises:
        KeyError: If the item or any referenced column cannot be found.
    """

    _update_fields(workbook, ITEMS_SHEET, "ItemID", item_id, field_values)


def update_party(workbook: Workbook, party_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing party.

    Raises:
        KeyError: If the party or any referenced column cannot be found.
    """

    _update_fields(workbook, PARTIES_SHEET, "PartyID", party_id, field_values)


def _update_fields(
    workbook: Workbook,
    sheet_name: str,
    key_column: str,
    key_value: str,
    field_values: dict[str, Any],
) -> None:
    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        raise KeyError(f"{sheet_name} row not found: {key_value}")

    sheet = workbook[sheet_name]
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}

    for field, value in field_values.items():
        if field not in header_map:
            raise KeyError(f"Unknown {sheet_name} field: {field}")
        sheet.cell(row=row_index, column=header_map[field], value=_cell_value(value))


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] is not None and str(row[key_col_index - 1]) == key_value:
            return row_idx

    return None


def _cell_value(value: Any) -> Any:
    # Enum members are written as their plain value.
    return getattr(value, "value", value)


def _decimal(raw: object, default: str = "0") -> Decimal:
    return Decimal(str(raw)) if raw is not None and raw != "" else Decimal(default)


def _optional_str(raw: object) -> Optional[str]:
    return str(raw) if raw is not None else None


def _bool(raw: object) -> bool:
    if isinstance(raw, str):
        return raw.strip().lower() in _TRUE_STRINGS
    return bool(raw)


def serialize_item(record: StockItem) -> list[object]:
    """Values arranged as ``[ItemID, ProductName, SaleRate, PurchaseRate, TaxRate, AvailableQuantity]``."""

    return [
        record.item_id,
        record.product_name,
        record.sale_rate,
        record.purchase_rate,
        record.tax_rate,
        record.available_quantity,
    ]


def serialize_party(record: Party) -> list[object]:
    """Values arranged as ``[PartyID, PartyName, Role, OpeningBalance, BalanceAmount, IsActive]``."""

    return [
        record.party_id,
        record.name,
        record.role.value,
        record.opening_balance,
        record.balance_amount,
        record.is_active,
    ]


def serialize_ledger_entry(record: LedgerEntry) -> list[object]:
    return [
        record.entry_id,
        record.party_id,
        record.transaction_type.value,
        record.previous_balance,
        record.this_transaction_amount,
        record.paid_amount,
        record.balance_after,
        record.timestamp.isoformat(),
        record.reference_id,
    ]


def serialize_invoice(record: InvoiceRow) -> list[object]:
    """Invoice header values; unrounded totals are stored to the paisa."""

    return [
        record.invoice_id,
        record.timestamp_iso,
        record.kind,
        record.party_id,
        record.with_gst,
        record.line_count,
        quantize_money(record.subtotal),
        quantize_money(record.tax_total),
        record.invoice_total,
        record.previous_balance_paid,
        record.grand_total,
        record.payment_status,
        record.paid_amount,
        record.balance_due,
        record.return_type,
        record.notes,
    ]


def serialize_invoice_line(record: InvoiceLineRow) -> list[object]:
    """Cart line values; derived amounts are stored to the paisa."""

    return [
        record.invoice_id,
        record.line_number,
        record.item_id,
        record.quantity,
        record.rate,
        record.discount_type,
        record.discount_value,
        record.tax_rate,
        quantize_money(record.item_total),
        quantize_money(record.discount_amount),
        quantize_money(record.total_after_discount),
        quantize_money(record.taxable_value),
        quantize_money(record.tax_amount),
    ]


def deserialize_item(raw_row: Sequence[object]) -> StockItem:
    """Convert a raw worksheet row into a typed :class:`StockItem`.

    Numeric cells become :class:`~decimal.Decimal` values and identifiers
    are coerced to ``str`` so Excel's number guessing never leaks through.
    """

    item_id, product_name, sale_rate, purchase_rate, tax_rate, available = raw_row[:6]
    return StockItem(
        item_id=str(item_id),
        product_name=str(product_name) if product_name is not None else "",
        sale_rate=_decimal(sale_rate, "0.00"),
        purchase_rate=_decimal(purchase_rate, "0.00"),
        tax_rate=_decimal(tax_rate),
        available_quantity=int(available) if available is not None else 0,
    )


def deserialize_party(raw_row: Sequence[object]) -> Party:
    party_id, name, role, opening_balance, balance_amount, is_active = raw_row[:6]
    return Party(
        party_id=str(party_id),
        name=str(name) if name is not None else "",
        role=PartyRole(str(role)),
        opening_balance=_decimal(opening_balance, "0.00"),
        balance_amount=_decimal(balance_amount, "0.00"),
        is_active=_bool(is_active),
    )


def deserialize_ledger_entry(raw_row: Sequence[object]) -> LedgerEntry:
    (
        entry_id,
        party_id,
        transaction_type,
        previous_balance,
        this_transaction_amount,
        paid_amount,
        balance_after,
        timestamp_iso,
        reference_id,
    ) = raw_row[:9]
    return LedgerEntry(
        entry_id=str(entry_id),
        party_id=str(party_id),
        transaction_type=TransactionType(str(transaction_type)),
        previous_balance=_decimal(previous_balance),
        this_transaction_amount=_decimal(this_transaction_amount),
        paid_amount=_decimal(paid_amount),
        balance_after=_decimal(balance_after),
        timestamp=datetime.fromisoformat(str(timestamp_iso)),
        reference_id=_optional_str(reference_id),
    )


def deserialize_invoice(raw_row: Sequence[object]) -> InvoiceRow:
    (
        invoice_id,
        timestamp_iso,
        kind,
        party_id,
        with_gst,
        line_count,
        subtotal,
        tax_total,
        invoice_total,
        previous_balance_paid,
        grand_total,
        payment_status,
        paid_amount,
        balance_due,
        return_type,
        notes,
    ) = raw_row[:16]
    return InvoiceRow(
        invoice_id=str(invoice_id),
        timestamp_iso=str(timestamp_iso) if timestamp_iso is not None else "",
        kind=str(kind) if kind is not None else "",
        party_id=str(party_id),
        with_gst=_bool(with_gst),
        line_count=int(line_count) if line_count is not None else 0,
        subtotal=_decimal(subtotal),
        tax_total=_decimal(tax_total),
        invoice_total=_decimal(invoice_total),
        previous_balance_paid=_decimal(previous_balance_paid),
        grand_total=_decimal(grand_total),
        payment_status=_optional_str(payment_status),
        paid_amount=_decimal(paid_amount),
        balance_due=_decimal(balance_due),
        return_type=_optional_str(return_type),
        notes=_optional_str(notes),
    )


def deserialize_invoice_line(raw_row: Sequence[object]) -> InvoiceLineRow:
    (
        invoice_id,
        line_number,
        item_id,
        quantity,
        rate,
        discount_type,
        discount_value,
        tax_rate,
        item_total,
        discount_amount,
        total_after_discount,
        taxable_value,
        tax_amount,
    ) = raw_row[:13]
    return InvoiceLineRow(
        invoice_id=str(invoice_id),
        line_number=int(line_number) if line_number is not None else 0,
        item_id=str(item_id),
        quantity=int(quantity) if quantity is not None else 0,
        rate=_decimal(rate),
        discount_type=str(discount_type) if discount_type is not None else "amount",
        discount_value=None if discount_value is None or discount_value == "" else _decimal(discount_value),
        tax_rate=_decimal(tax_rate),
        item_total=_decimal(item_total),
        discount_amount=_decimal(discount_amount),
        total_after_discount=_decimal(total_after_discount),
        taxable_value=_decimal(taxable_value),
        tax_amount=_decimal(tax_amount),
    )
