"""Data access layer for Schola ERP.

This module provides low-level helpers that read from and write to the master
workbook. Business logic belongs elsewhere.

The public API is designed around four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, stamping, and persisting the Excel
   file.
3. Sheet operations: loading structured records and appending or updating
   individual rows.
4. Batched writes: staging every write of one business event and applying
   them together, rolling back the in-memory workbook if any of them fails.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass, fields
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Type

from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet
import openpyxl

from . import log
from .constants import (
    DEFAULT_CURRENCY,
    DEFAULT_FORECAST_MODEL,
    DEFAULT_LOW_MARGIN_THRESHOLD,
    DEFAULT_PAYMENT_METHOD,
    DEFAULT_SELLING_MARKUP,
    SheetName,
)


CONFIG_FILE_NAME = "config.ini"

# Column layout of every worksheet. The order matches the field order of the
# corresponding row dataclass below.
SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.SCHOOLS.value: [
        "SchoolID",
        "SchoolName",
        "PrincipalName",
        "PhoneNumber",
        "ContactDetails",
        "CreditLimit",
        "TotalInvoiced",
        "TotalPaid",
        "OutstandingBalance",
        "PaymentDaysHistory",
    ],
    SheetName.INVENTORY.value: [
        "BatchID",
        "ItemName",
        "Size",
        "Supplier",
        "PurchasePrice",
        "QuantityProcured",
        "QuantityRemaining",
        "ProcurementDate",
    ],
    SheetName.LPOS.value: [
        "LPOID",
        "SchoolID",
        "LPONumber",
        "DateReceived",
        "Status",
    ],
    SheetName.LPO_ITEMS.value: [
        "LPOItemID",
        "LPOID",
        "ItemName",
        "QuantityOrdered",
        "QuantityDelivered",
    ],
    SheetName.INVOICES.value: [
        "InvoiceID",
        "InvoiceNumber",
        "InvoiceDate",
        "DeliveryDate",
        "SchoolID",
        "LPOID",
        "ExtraCost",
        "TotalRevenue",
        "TotalCOGS",
        "GrossProfit",
        "MarginPercent",
        "AmountPaid",
    ],
    SheetName.INVOICE_ITEMS.value: [
        "InvoiceItemID",
        "InvoiceID",
        "BatchID",
        "ItemName",
        "LPOItemID",
        "Quantity",
        "SellingPrice",
        "CostPrice",
    ],
    SheetName.PAYMENTS.value: [
        "PaymentID",
        "InvoiceID",
        "SchoolID",
        "Amount",
        "Method",
        "Reference",
        "BankName",
        "ChequeDate",
        "PaymentDate",
    ],
    SheetName.EXPENSES.value: [
        "ExpenseID",
        "ExpenseName",
        "Category",
        "Amount",
        "ExpenseDate",
    ],
    SheetName.LEDGER.value: [
        "EntryID",
        "EntryDate",
        "CreatedAt",
        "EntryType",
        "Reference",
        "Debit",
        "Credit",
        "Balance",
    ],
}


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    business_name: str
    schema_version: str
    currency: str = DEFAULT_CURRENCY
    default_payment_method: str = DEFAULT_PAYMENT_METHOD
    selling_markup: Decimal = DEFAULT_SELLING_MARKUP
    low_margin_threshold: Decimal = DEFAULT_LOW_MARGIN_THRESHOLD
    forecast_model: str = DEFAULT_FORECAST_MODEL


@dataclass(frozen=True)
class SchoolRow:
    """In-memory view of a row from the ``Schools`` sheet."""

    school_id: str
    school_name: str
    principal_name: str
    phone_number: Optional[str]
    contact_details: Optional[str]
    credit_limit: Decimal
    total_invoiced: Decimal
    total_paid: Decimal
    outstanding_balance: Decimal
    payment_days_history: Tuple[int, ...] = ()


@dataclass(frozen=True)
class InventoryBatchRow:
    """In-memory view of a row from the ``Inventory`` sheet."""

    batch_id: str
    item_name: str
    size: Optional[str]
    supplier: Optional[str]
    purchase_price: Decimal
    quantity_procured: Decimal
    quantity_remaining: Decimal
    procurement_date: str


@dataclass(frozen=True)
class LPORow:
    """In-memory view of a row from the ``LPOs`` sheet."""

    lpo_id: str
    school_id: str
    lpo_number: str
    date_received: str
    status: str


@dataclass(frozen=True)
class LPOItemRow:
    """In-memory view of a row from the ``LPOItems`` sheet."""

    lpo_item_id: str
    lpo_id: str
    item_name: str
    quantity_ordered: Decimal
    quantity_delivered: Decimal


@dataclass(frozen=True)
class InvoiceRow:
    """In-memory view of a row from the ``Invoices`` sheet."""

    invoice_id: str
    invoice_number: str
    invoice_date: str
    delivery_date: str
    school_id: str
    lpo_id: Optional[str]
    extra_cost: Decimal
    total_revenue: Decimal
    total_cogs: Decimal
    gross_profit: Decimal
    margin_percent: Decimal
    amount_paid: Decimal


@dataclass(frozen=True)
class InvoiceItemRow:
    """In-memory view of a row from the ``InvoiceItems`` sheet."""

    invoice_item_id: str
    invoice_id: str
    batch_id: str
    item_name: str
    lpo_item_id: Optional[str]
    quantity: Decimal
    selling_price: Decimal
    cost_price: Decimal


@dataclass(frozen=True)
class PaymentRow:
    """In-memory view of a row from the ``Payments`` sheet."""

    payment_id: str
    invoice_id: str
    school_id: str
    amount: Decimal
    method: str
    reference: Optional[str]
    bank_name: Optional[str]
    cheque_date: Optional[str]
    payment_date: str


@dataclass(frozen=True)
class ExpenseRow:
    """In-memory view of a row from the ``Expenses`` sheet."""

    expense_id: str
    expense_name: str
    category: str
    amount: Decimal
    expense_date: str


@dataclass(frozen=True)
class LedgerEntryRow:
    """In-memory view of a row from the ``Ledger`` sheet."""

    entry_id: str
    entry_date: str
    created_at: str
    entry_type: str
    reference: str
    debit: Decimal
    credit: Decimal
    balance: Decimal


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

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
    for directory in (current, *current.parents):
        candidate = directory / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.
            Validation of required entries happens in :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    The ``[System]`` section is mandatory. ``[Defaults]``, ``[Policies]``
    and ``[Forecast]`` are optional and fall back to the package constants.
    Relative ``DataFile`` entries are anchored at ``base_path`` (or the
    working directory).

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to resolve a relative
            ``DataFile``.

    Returns:
        ConfigSettings: Immutable settings with a resolved data file path.

    Raises:
        KeyError: If a required ``[System]`` option is missing.
        ValueError: If a numeric option cannot be parsed as a decimal.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        business_name = parser.get("System", "BusinessName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    currency = parser.get("Defaults", "Currency", fallback=DEFAULT_CURRENCY)
    payment_method = parser.get("Defaults", "PaymentMethod", fallback=DEFAULT_PAYMENT_METHOD)
    markup = _parse_decimal_option(parser, "Defaults", "SellingMarkup", DEFAULT_SELLING_MARKUP)
    threshold = _parse_decimal_option(parser, "Policies", "LowMarginThreshold", DEFAULT_LOW_MARGIN_THRESHOLD)
    forecast_model = parser.get("Forecast", "Model", fallback=DEFAULT_FORECAST_MODEL)

    return ConfigSettings(
        data_file=data_file_path,
        business_name=business_name,
        schema_version=schema_version,
        currency=currency,
        default_payment_method=payment_method,
        selling_markup=markup,
        low_margin_threshold=threshold,
        forecast_model=forecast_model,
    )


def _parse_decimal_option(parser: configparser.ConfigParser, section: str, option: str, default: Decimal) -> Decimal:
    raw = parser.get(section, option, fallback=None)
    if raw is None or not raw.strip():
        return default
    try:
        return Decimal(raw.strip())
    except InvalidOperation as exc:
        raise ValueError(f"Invalid decimal for [{section}] {option}: {raw!r}") from exc


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the master workbook.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk at an explicitly provided destination.

    Parent directories are created on demand.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the serialized
            workbook.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def workbook_stamp(data_file: Path) -> Optional[int]:
    """Return the modification stamp (``st_mtime_ns``) of the workbook file.

    The stamp acts as a version token: callers capture it when loading and
    compare it before saving to detect another process having written the
    file in between. ``None`` is returned when the file does not exist.
    """

    path = Path(data_file).expanduser().resolve()
    try:
        return path.stat().st_mtime_ns
    except FileNotFoundError:
        return None


def missing_sheets(workbook: Workbook) -> List[str]:
    """List the expected worksheets that ``workbook`` does not contain."""

    present = set(workbook.sheetnames)
    return [name for name in SHEET_COLUMNS if name not in present]


def header_map(sheet: Worksheet) -> Dict[Any, int]:
    """Map header titles on row 1 to their 1-based column indices."""

    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the lookup column.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    headers = header_map(sheet)
    if key_column not in headers:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = headers[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] == key_value:
            return row_idx

    return None


# ---------------------------------------------------------------------------
# Cell conversion helpers
# ---------------------------------------------------------------------------


def _to_decimal(raw: object, default: str = "0") -> Decimal:
    if raw is None or raw == "":
        return Decimal(default)
    return Decimal(str(raw))


def _to_text(raw: object) -> str:
    return str(raw) if raw is not None else ""


def _to_optional_text(raw: object) -> Optional[str]:
    if raw is None or raw == "":
        return None
    return str(raw)


def _to_history(raw: object) -> Tuple[int, ...]:
    if raw is None or raw == "":
        return ()
    if isinstance(raw, (int, float)):
        return (int(raw),)
    return tuple(int(part) for part in str(raw).split(",") if part.strip())


def _cell_value(value: object) -> object:
    # Day-count histories are the only sequence-typed field; Excel gets a
    # comma-separated string.
    if isinstance(value, tuple):
        return ",".join(str(item) for item in value) if value else None
    return value


def serialize_record(record: object) -> List[object]:
    """Convert a row dataclass into its worksheet column ordering.

    Args:
        record (object): Any of the ``*Row`` dataclasses defined in this
            module.

    Returns:
        list[object]: Values ordered to match :data:`SHEET_COLUMNS`,
            preserving :class:`~decimal.Decimal` instances for numeric fields.
    """

    return [_cell_value(getattr(record, item.name)) for item in fields(record)]


def deserialize_school(raw_row: Sequence[object]) -> SchoolRow:
    """Convert a raw ``Schools`` row into a :class:`SchoolRow`."""

    (school_id, name, principal, phone, contact, limit_raw, invoiced_raw,
     paid_raw, outstanding_raw, history_raw) = raw_row
    return SchoolRow(
        school_id=str(school_id),
        school_name=_to_text(name),
        principal_name=_to_text(principal),
        phone_number=_to_optional_text(phone),
        contact_details=_to_optional_text(contact),
        credit_limit=_to_decimal(limit_raw),
        total_invoiced=_to_decimal(invoiced_raw),
        total_paid=_to_decimal(paid_raw),
        outstanding_balance=_to_decimal(outstanding_raw),
        payment_days_history=_to_history(history_raw),
    )


def deserialize_inventory_batch(raw_row: Sequence[object]) -> InventoryBatchRow:
    """Convert a raw ``Inventory`` row into an :class:`InventoryBatchRow`."""

    (batch_id, item_name, size, supplier, price_raw, procured_raw,
     remaining_raw, procured_on) = raw_row
    return InventoryBatchRow(
        batch_id=str(batch_id),
        item_name=_to_text(item_name),
        size=_to_optional_text(size),
        supplier=_to_optional_text(supplier),
        purchase_price=_to_decimal(price_raw),
        quantity_procured=_to_decimal(procured_raw),
        quantity_remaining=_to_decimal(remaining_raw),
        procurement_date=_to_text(procured_on),
    )


def deserialize_lpo(raw_row: Sequence[object]) -> LPORow:
    """Convert a raw ``LPOs`` row into an :class:`LPORow`."""

    lpo_id, school_id, lpo_number, received, status = raw_row
    return LPORow(
        lpo_id=str(lpo_id),
        school_id=_to_text(school_id),
        lpo_number=_to_text(lpo_number),
        date_received=_to_text(received),
        status=_to_text(status),
    )


def deserialize_lpo_item(raw_row: Sequence[object]) -> LPOItemRow:
    """Convert a raw ``LPOItems`` row into an :class:`LPOItemRow`."""

    item_id, lpo_id, item_name, ordered_raw, delivered_raw = raw_row
    return LPOItemRow(
        lpo_item_id=str(item_id),
        lpo_id=_to_text(lpo_id),
        item_name=_to_text(item_name),
        quantity_ordered=_to_decimal(ordered_raw),
        quantity_delivered=_to_decimal(delivered_raw),
    )


def deserialize_invoice(raw_row: Sequence[object]) -> InvoiceRow:
    """Convert a raw ``Invoices`` row into an :class:`InvoiceRow`.

    Monetary columns become :class:`~decimal.Decimal` (blank cells read as
    zero) and a blank ``LPOID`` stays ``None`` for invoices raised without a
    purchase order.
    """

    (invoice_id, number, invoice_date, delivery_date, school_id, lpo_id,
     extra_raw, revenue_raw, cogs_raw, profit_raw, margin_raw, paid_raw) = raw_row
    return InvoiceRow(
        invoice_id=str(invoice_id),
        invoice_number=_to_text(number),
        invoice_date=_to_text(invoice_date),
        delivery_date=_to_text(delivery_date),
        school_id=_to_text(school_id),
        lpo_id=_to_optional_text(lpo_id),
        extra_cost=_to_decimal(extra_raw),
        total_revenue=_to_decimal(revenue_raw),
        total_cogs=_to_decimal(cogs_raw),
        gross_profit=_to_decimal(profit_raw),
        margin_percent=_to_decimal(margin_raw),
        amount_paid=_to_decimal(paid_raw),
    )


def deserialize_invoice_item(raw_row: Sequence[object]) -> InvoiceItemRow:
    """Convert a raw ``InvoiceItems`` row into an :class:`InvoiceItemRow`."""

    (item_id, invoice_id, batch_id, item_name, lpo_item_id, quantity_raw,
     selling_raw, cost_raw) = raw_row
    return InvoiceItemRow(
        invoice_item_id=str(item_id),
        invoice_id=_to_text(invoice_id),
        batch_id=_to_text(batch_id),
        item_name=_to_text(item_name),
        lpo_item_id=_to_optional_text(lpo_item_id),
        quantity=_to_decimal(quantity_raw),
        selling_price=_to_decimal(selling_raw),
        cost_price=_to_decimal(cost_raw),
    )


def deserialize_payment(raw_row: Sequence[object]) -> PaymentRow:
    """Convert a raw ``Payments`` row into a :class:`PaymentRow`."""

    (payment_id, invoice_id, school_id, amount_raw, method, reference,
     bank_name, cheque_date, paid_on) = raw_row
    return PaymentRow(
        payment_id=str(payment_id),
        invoice_id=_to_text(invoice_id),
        school_id=_to_text(school_id),
        amount=_to_decimal(amount_raw),
        method=_to_text(method),
        reference=_to_optional_text(reference),
        bank_name=_to_optional_text(bank_name),
        cheque_date=_to_optional_text(cheque_date),
        payment_date=_to_text(paid_on),
    )


def deserialize_expense(raw_row: Sequence[object]) -> ExpenseRow:
    """Convert a raw ``Expenses`` row into an :class:`ExpenseRow`."""

    expense_id, name, category, amount_raw, spent_on = raw_row
    return ExpenseRow(
        expense_id=str(expense_id),
        expense_name=_to_text(name),
        category=_to_text(category),
        amount=_to_decimal(amount_raw),
        expense_date=_to_text(spent_on),
    )


def deserialize_ledger_entry(raw_row: Sequence[object]) -> LedgerEntryRow:
    """Convert a raw ``Ledger`` row into a :class:`LedgerEntryRow`."""

    (entry_id, entry_date, created_at, entry_type, reference, debit_raw,
     credit_raw, balance_raw) = raw_row
    return LedgerEntryRow(
        entry_id=str(entry_id),
        entry_date=_to_text(entry_date),
        created_at=_to_text(created_at),
        entry_type=_to_text(entry_type),
        reference=_to_text(reference),
        debit=_to_decimal(debit_raw),
        credit=_to_decimal(credit_raw),
        balance=_to_decimal(balance_raw),
    )


@dataclass(frozen=True)
class SheetBinding:
    """Tie a worksheet to its key column, row dataclass, and row decoder."""

    sheet_name: str
    key_column: str
    row_type: Type[Any]
    deserialize: Callable[[Sequence[object]], Any]


SHEET_BINDINGS: Mapping[str, SheetBinding] = {
    binding.sheet_name: binding
    for binding in (
        SheetBinding(SheetName.SCHOOLS.value, "SchoolID", SchoolRow, deserialize_school),
        SheetBinding(SheetName.INVENTORY.value, "BatchID", InventoryBatchRow, deserialize_inventory_batch),
        SheetBinding(SheetName.LPOS.value, "LPOID", LPORow, deserialize_lpo),
        SheetBinding(SheetName.LPO_ITEMS.value, "LPOItemID", LPOItemRow, deserialize_lpo_item),
        SheetBinding(SheetName.INVOICES.value, "InvoiceID", InvoiceRow, deserialize_invoice),
        SheetBinding(SheetName.INVOICE_ITEMS.value, "InvoiceItemID", InvoiceItemRow, deserialize_invoice_item),
        SheetBinding(SheetName.PAYMENTS.value, "PaymentID", PaymentRow, deserialize_payment),
        SheetBinding(SheetName.EXPENSES.value, "ExpenseID", ExpenseRow, deserialize_expense),
        SheetBinding(SheetName.LEDGER.value, "EntryID", LedgerEntryRow, deserialize_ledger_entry),
    )
}


def binding_for_record(record: object) -> SheetBinding:
    """Return the :class:`SheetBinding` whose row type matches ``record``.

    Raises:
        TypeError: If ``record`` is not one of the known row dataclasses.
    """

    for binding in SHEET_BINDINGS.values():
        if isinstance(record, binding.row_type):
            return binding
    raise TypeError(f"No worksheet is bound to {type(record).__name__}")


# ---------------------------------------------------------------------------
# Sheet operations
# ---------------------------------------------------------------------------


def iter_records(workbook: Workbook, sheet_name: str) -> Iterable[Any]:
    """Iterate over typed records stored on ``sheet_name`` in row order.

    The header row and fully empty rows are skipped. Each remaining row is
    trimmed to the expected column count and decoded with the sheet's
    deserializer.

    Args:
        workbook (Workbook): Workbook containing the sheet.
        sheet_name (str): One of the :class:`~schola_erp.constants.SheetName`
            values.

    Yields:
        Any: One row dataclass per populated worksheet row.
    """

    binding = SHEET_BINDINGS[sheet_name]
    width = len(SHEET_COLUMNS[sheet_name])
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, max_col=width, values_only=True):
        if any(cell is not None for cell in raw):
            padded = tuple(raw) + (None,) * (width - len(raw))
            yield binding.deserialize(padded)


def iter_schools(workbook: Workbook) -> Iterable[SchoolRow]:
    return iter_records(workbook, SheetName.SCHOOLS.value)


def iter_inventory(workbook: Workbook) -> Iterable[InventoryBatchRow]:
    return iter_records(workbook, SheetName.INVENTORY.value)


def iter_lpos(workbook: Workbook) -> Iterable[LPORow]:
    return iter_records(workbook, SheetName.LPOS.value)


def iter_lpo_items(workbook: Workbook) -> Iterable[LPOItemRow]:
    return iter_records(workbook, SheetName.LPO_ITEMS.value)


def iter_invoices(workbook: Workbook) -> Iterable[InvoiceRow]:
    return iter_records(workbook, SheetName.INVOICES.value)


def iter_invoice_items(workbook: Workbook) -> Iterable[InvoiceItemRow]:
    return iter_records(workbook, SheetName.INVOICE_ITEMS.value)


def iter_payments(workbook: Workbook) -> Iterable[PaymentRow]:
    return iter_records(workbook, SheetName.PAYMENTS.value)


def iter_expenses(workbook: Workbook) -> Iterable[ExpenseRow]:
    return iter_records(workbook, SheetName.EXPENSES.value)


def iter_ledger(workbook: Workbook) -> Iterable[LedgerEntryRow]:
    return iter_records(workbook, SheetName.LEDGER.value)


# Collection readers keyed by sheet name, used by the business layer caches.
SHEET_READERS: Mapping[str, Callable[[Workbook], Iterable[Any]]] = {
    SheetName.SCHOOLS.value: iter_schools,
    SheetName.INVENTORY.value: iter_inventory,
    SheetName.LPOS.value: iter_lpos,
    SheetName.LPO_ITEMS.value: iter_lpo_items,
    SheetName.INVOICES.value: iter_invoices,
    SheetName.INVOICE_ITEMS.value: iter_invoice_items,
    SheetName.PAYMENTS.value: iter_payments,
    SheetName.EXPENSES.value: iter_expenses,
    SheetName.LEDGER.value: iter_ledger,
}


def _write_row(sheet: Worksheet, values: Sequence[object]) -> int:
    # Written cell by cell below ``max_row`` so that rows removed during a
    # rollback do not leave a gap before the next append.
    row_idx = sheet.max_row + 1
    for col_idx, value in enumerate(values, start=1):
        sheet.cell(row=row_idx, column=col_idx, value=value)
    return row_idx


def append_record(workbook: Workbook, record: object) -> int:
    """Append a row dataclass to the worksheet bound to its type.

    Args:
        workbook (Workbook): Workbook whose sheet should be modified.
        record (object): Structured row ready for persistence.

    Returns:
        int: 1-based index of the newly written row.
    """

    binding = binding_for_record(record)
    return _write_row(workbook[binding.sheet_name], serialize_record(record))


def _resolve_update(workbook: Workbook, sheet_name: str, key_value: str, field_values: Mapping[str, Any]) -> List[Tuple[int, int, Any]]:
    binding = SHEET_BINDINGS[sheet_name]
    row_index = locate_row(workbook, sheet_name, binding.key_column, key_value)
    if row_index is None:
        raise KeyError(f"{sheet_name} row not found: {key_value}")

    headers = header_map(workbook[sheet_name])
    cells: List[Tuple[int, int, Any]] = []
    for column, value in field_values.items():
        if column not in headers:
            raise KeyError(f"Unknown {sheet_name} field: {column}")
        cells.append((row_index, headers[column], _cell_value(value)))
    return cells


# ---------------------------------------------------------------------------
# Batched writes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _StagedAppend:
    record: object


@dataclass(frozen=True)
class _StagedUpdate:
    sheet_name: str
    key_value: str
    field_values: Mapping[str, Any]


class WriteBatch:
    """Stage appends and updates across sheets and apply them all-or-nothing.

    Every staged update is resolved (row located, columns validated) before
    the first cell is touched, so a bad reference fails the batch without
    side effects. If an error still occurs while applying, cells already
    written are restored and appended rows are removed before re-raising.
    A batch can be committed only once.
    """

    def __init__(self, workbook: Workbook) -> None:
        self._workbook = workbook
        self._staged: List[Any] = []
        self._committed = False

    def append(self, record: object) -> None:
        binding_for_record(record)
        self._staged.append(_StagedAppend(record))

    def update(self, sheet_name: str, key_value: str, *, field_values: Mapping[str, Any]) -> None:
        if sheet_name not in SHEET_BINDINGS:
            raise KeyError(f"Unknown sheet: {sheet_name}")
        self._staged.append(_StagedUpdate(sheet_name, key_value, dict(field_values)))

    def commit(self) -> None:
        """Apply every staged write in order.

        Raises:
            RuntimeError: If the batch was already committed.
            KeyError: If a staged update targets an unknown row or column.
        """

        if self._committed:
            raise RuntimeError("WriteBatch already committed")

        planned_updates = {
            index: _resolve_update(self._workbook, op.sheet_name, op.key_value, op.field_values)
            for index, op in enumerate(self._staged)
            if isinstance(op, _StagedUpdate)
        }

        appended: List[Tuple[str, int]] = []
        overwritten: List[Tuple[str, int, int, Any]] = []
        applied = 0
        try:
            for index, op in enumerate(self._staged):
                if isinstance(op, _StagedAppend):
                    binding = binding_for_record(op.record)
                    row_idx = append_record(self._workbook, op.record)
                    appended.append((binding.sheet_name, row_idx))
                    applied += 1
                    continue
                sheet = self._workbook[op.sheet_name]
                for row_idx, col_idx, value in planned_updates[index]:
                    cell = sheet.cell(row=row_idx, column=col_idx)
                    overwritten.append((op.sheet_name, row_idx, col_idx, cell.value))
                    cell.value = value
                applied += 1
        except Exception:
            log.error("Write batch failed after %d of %d writes; rolling back", applied, len(self._staged))
            self._rollback(appended, overwritten)
            raise

        self._committed = True
        log.debug("Committed write batch with %d operations", len(self._staged))

    def _rollback(self, appended: List[Tuple[str, int]], overwritten: List[Tuple[str, int, int, Any]]) -> None:
        for sheet_name, row_idx, col_idx, previous in reversed(overwritten):
            self._workbook[sheet_name].cell(row=row_idx, column=col_idx).value = previous
        for sheet_name, row_idx in reversed(appended):
            self._workbook[sheet_name].delete_rows(row_idx)
