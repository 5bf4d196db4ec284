"""Business logic layer for Schola ERP.

This module holds the event handlers that keep the books consistent: every
procurement, invoice, payment, and expense re-reads the records it depends on,
derives the dependent updates through :mod:`schola_erp.derivations`, and
applies all of its writes through a single
:class:`~schola_erp.data_manager.WriteBatch`. All I/O goes through the Data
Access Layer (DAL).
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, fields
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from openpyxl.workbook import Workbook

from . import data_manager, derivations, log
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    GENERAL_INVOICE_ID,
    ExpenseCategory,
    LedgerEntryType,
    LPOStatus,
    PaymentMethod,
    SheetName,
)


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced school, batch, LPO, or invoice is unknown."""


class CreditLimitExceeded(BusinessRuleViolation):
    """Raised when an invoice would push a school past its credit limit.

    This is a soft stop: re-submitting the command with
    ``accept_credit_overrun=True`` posts the invoice anyway.
    """

    def __init__(self, school_id: str, projected_balance: Decimal, credit_limit: Decimal) -> None:
        super().__init__(
            f"Outstanding balance for school '{school_id}' would reach {projected_balance}, "
            f"exceeding its credit limit of {credit_limit}"
        )
        self.school_id = school_id
        self.projected_balance = projected_balance
        self.credit_limit = credit_limit


class StaleWorkbookError(RuntimeError):
    """Raised when the workbook on disk changed after this context loaded it."""


# Cache buckets mirror the workbook sheets; the stamp bucket is kept apart so
# invalidating data never forgets which file version was loaded.
DATA_BUCKETS: Tuple[str, ...] = tuple(sheet.value for sheet in SheetName)
WORKBOOK_BUCKET = "workbook"


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the BLL."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class AddSchoolCommand:
    """User intent for registering a new school account."""

    school_name: str
    principal_name: str
    credit_limit: Decimal
    phone_number: Optional[str] = None
    contact_details: Optional[str] = None


@dataclass(frozen=True)
class LPOItemCommand:
    """One ordered line of a purchase order."""

    item_name: str
    quantity_ordered: Decimal


@dataclass(frozen=True)
class AddLPOCommand:
    """User intent for recording a purchase order received from a school."""

    school_id: str
    lpo_number: str
    items: Tuple[LPOItemCommand, ...]
    date_received: Optional[date] = None


@dataclass(frozen=True)
class ProcureCommand:
    """User intent for bringing a new inventory batch into stock."""

    item_name: str
    purchase_price: Decimal
    quantity_procured: Decimal
    size: Optional[str] = None
    supplier: Optional[str] = None
    procurement_date: Optional[date] = None


@dataclass(frozen=True)
class InvoiceLineCommand:
    """One line of a sale, drawn from a specific inventory batch."""

    batch_id: str
    quantity: Decimal
    selling_price: Optional[Decimal] = None
    lpo_item_id: Optional[str] = None


@dataclass(frozen=True)
class RecordInvoiceCommand:
    """User intent for invoicing a school."""

    school_id: str
    lines: Tuple[InvoiceLineCommand, ...]
    extra_cost: Decimal = Decimal("0")
    lpo_id: Optional[str] = None
    invoice_date: Optional[date] = None
    delivery_date: Optional[date] = None
    accept_credit_overrun: bool = False


@dataclass(frozen=True)
class RecordPaymentCommand:
    """User intent for recording money received from a school."""

    school_id: str
    amount: Decimal
    method: Optional[PaymentMethod] = None
    reference: Optional[str] = None
    bank_name: Optional[str] = None
    cheque_date: Optional[date] = None
    payment_date: Optional[date] = None


@dataclass(frozen=True)
class RecordExpenseCommand:
    """User intent for logging an operating expense."""

    expense_name: str
    category: ExpenseCategory
    amount: Decimal
    expense_date: Optional[date] = None


@dataclass(frozen=True)
class LPORecord:
    """A purchase order together with its item rows."""

    lpo: data_manager.LPORow
    items: Tuple[data_manager.LPOItemRow, ...]


@dataclass(frozen=True)
class EventResult:
    """Records written by one ledger-affecting event."""

    record: Any
    ledger_entry: data_manager.LedgerEntryRow
    children: Tuple[Any, ...] = ()


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time."""

    return candidate if candidate is not None else datetime.now(UTC)


def _resolve_date(candidate: Optional[date]) -> date:
    """Return ``candidate`` or today's UTC date."""

    return candidate if candidate is not None else _resolve_timestamp(None).date()


def current_date() -> date:
    """Today's date in UTC, the reference day for aging and default dates."""

    return _resolve_timestamp(None).date()


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name.

    Args:
        context (RuntimeContext): Runtime state carrying the shared cache
            dictionary.
        name (str): Logical bucket name to fetch or create.

    Returns:
        dict[str, Any]: Mutable mapping used to cache derived collections.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets so the next read rescans the workbook."""

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _record_key(record: object) -> str:
    return getattr(record, fields(record)[0].name)


def _ensure_sheet_cache(context: RuntimeContext, sheet_name: str) -> Dict[str, Any]:
    """Populate the cache bucket for one sheet on demand.

    The bucket stores ``all`` rows in workbook order and a ``by_id`` lookup
    keyed by the sheet's identifier column.
    """

    bucket = _get_cache_bucket(context, sheet_name)
    if "all" not in bucket:
        rows = list(data_manager.SHEET_READERS[sheet_name](context.workbook))
        bucket["all"] = rows
        bucket["by_id"] = {_record_key(row): row for row in rows}
        log.debug("Populated %s cache with %d entries", sheet_name, len(rows))
    return bucket


def _refresh_reads(context: RuntimeContext) -> None:
    # Handlers derive from what the workbook holds right now, not from
    # whatever an earlier read left in the cache.
    _invalidate_cache(context, *DATA_BUCKETS)


def _new_context(settings: data_manager.ConfigSettings, workbook: Workbook) -> RuntimeContext:
    context = RuntimeContext(settings=settings, workbook=workbook)
    _get_cache_bucket(context, WORKBOOK_BUCKET)["stamp"] = data_manager.workbook_stamp(settings.data_file)
    return context


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

    The configuration file is resolved and parsed, the workbook opened, and
    its layout checked. The file's modification stamp is remembered so that
    :func:`persist_context` can refuse to overwrite a newer copy.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Fully populated context ready for the handlers.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options or worksheets are
            missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    missing = data_manager.missing_sheets(workbook)
    if missing:
        log.error("Workbook '%s' lacks sheets: %s", settings.data_file, ", ".join(missing))
        raise KeyError(f"Workbook is missing sheets: {', '.join(missing)}")
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return _new_context(settings, workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
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


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


def list_schools(context: RuntimeContext) -> List[data_manager.SchoolRow]:
    """Return every school in workbook order."""
    return list(_ensure_sheet_cache(context, SheetName.SCHOOLS.value)["all"])


def list_inventory(context: RuntimeContext, *, in_stock_only: bool = False) -> List[data_manager.InventoryBatchRow]:
    """Return inventory batches, optionally only those with stock remaining."""
    batches = _ensure_sheet_cache(context, SheetName.INVENTORY.value)["all"]
    if in_stock_only:
        return [batch for batch in batches if batch.quantity_remaining > 0]
    return list(batches)


def list_lpos(context: RuntimeContext, *, school_id: Optional[str] = None) -> List[data_manager.LPORow]:
    """Return purchase orders, optionally restricted to one school."""
    lpos = _ensure_sheet_cache(context, SheetName.LPOS.value)["all"]
    return [lpo for lpo in lpos if school_id is None or lpo.school_id == school_id]


def list_lpo_items(context: RuntimeContext, lpo_id: str) -> List[data_manager.LPOItemRow]:
    """Return the items of one purchase order in the order they were entered."""
    items = _ensure_sheet_cache(context, SheetName.LPO_ITEMS.value)["all"]
    return [item for item in items if item.lpo_id == lpo_id]


def list_invoices(context: RuntimeContext, *, school_id: Optional[str] = None) -> List[data_manager.InvoiceRow]:
    """Return invoices in workbook order, optionally for one school only."""
    invoices = _ensure_sheet_cache(context, SheetName.INVOICES.value)["all"]
    return [invoice for invoice in invoices if school_id is None or invoice.school_id == school_id]


def list_invoice_items(context: RuntimeContext, invoice_id: Optional[str] = None) -> List[data_manager.InvoiceItemRow]:
    """Return invoice lines, either all of them or those of one invoice."""
    items = _ensure_sheet_cache(context, SheetName.INVOICE_ITEMS.value)["all"]
    return [item for item in items if invoice_id is None or item.invoice_id == invoice_id]


def list_payments(context: RuntimeContext) -> List[data_manager.PaymentRow]:
    return list(_ensure_sheet_cache(context, SheetName.PAYMENTS.value)["all"])


def list_expenses(context: RuntimeContext) -> List[data_manager.ExpenseRow]:
    return list(_ensure_sheet_cache(context, SheetName.EXPENSES.value)["all"])


def list_ledger(context: RuntimeContext) -> List[data_manager.LedgerEntryRow]:
    """Fetch the append-only ledger in insertion order.

    The returned list is a shallow copy so callers can sort or filter without
    touching the cache.
    """
    return list(_ensure_sheet_cache(context, SheetName.LEDGER.value)["all"])


def _get_by_id(context: RuntimeContext, sheet_name: str, record_id: str, label: str) -> Any:
    cache = _ensure_sheet_cache(context, sheet_name)
    try:
        return cache["by_id"][record_id]
    except KeyError as exc:
        log.warning("%s lookup failed for id '%s'", label.capitalize(), record_id)
        raise MissingReferenceError(f"Unknown {label} id: {record_id}") from exc


def get_school(context: RuntimeContext, school_id: str) -> data_manager.SchoolRow:
    """Resolve a school by id.

    Raises:
        MissingReferenceError: If ``school_id`` is absent from the workbook.
    """
    return _get_by_id(context, SheetName.SCHOOLS.value, school_id, "school")


def get_batch(context: RuntimeContext, batch_id: str) -> data_manager.InventoryBatchRow:
    """Resolve an inventory batch by id.

    Raises:
        MissingReferenceError: If ``batch_id`` is absent from the workbook.
    """
    return _get_by_id(context, SheetName.INVENTORY.value, batch_id, "batch")


def get_lpo(context: RuntimeContext, lpo_id: str) -> data_manager.LPORow:
    """Resolve a purchase order by id.

    Raises:
        MissingReferenceError: If ``lpo_id`` is absent from the workbook.
    """
    return _get_by_id(context, SheetName.LPOS.value, lpo_id, "LPO")


def get_invoice(context: RuntimeContext, invoice_id: str) -> data_manager.InvoiceRow:
    """Resolve an invoice by id.

    Raises:
        MissingReferenceError: If ``invoice_id`` is absent from the workbook.
    """
    return _get_by_id(context, SheetName.INVOICES.value, invoice_id, "invoice")


def find_invoice_by_number(context: RuntimeContext, invoice_number: str) -> data_manager.InvoiceRow:
    """Resolve an invoice by its printed number (``INV-0001``).

    Raises:
        MissingReferenceError: If no invoice carries ``invoice_number``.
    """
    for invoice in list_invoices(context):
        if invoice.invoice_number == invoice_number:
            return invoice
    log.warning("Invoice lookup failed for number '%s'", invoice_number)
    raise MissingReferenceError(f"Unknown invoice number: {invoice_number}")


def verify_ledger(context: RuntimeContext) -> List[derivations.BalanceMismatch]:
    """Recompute the running balance over the whole ledger.

    Returns:
        list[derivations.BalanceMismatch]: Rows whose stored balance differs
            from the recomputed one. Empty when the ledger is consistent.
    """
    mismatches = derivations.verify_running_balances(list_ledger(context))
    for mismatch in mismatches:
        log.warning(
            "Ledger entry '%s' records balance %s, expected %s",
            mismatch.entry_id,
            mismatch.recorded,
            mismatch.expected,
        )
    return mismatches


# ---------------------------------------------------------------------------
# Event handlers
# ---------------------------------------------------------------------------


def add_school(context: RuntimeContext, command: AddSchoolCommand) -> data_manager.SchoolRow:
    """Register a school with zeroed balances and an empty payment history.

    Raises:
        ValueError: If the name or principal is blank or the credit limit is
            negative.
    """
    require_text(command.school_name, "School name")
    require_text(command.principal_name, "Principal name")
    require_nonnegative_money(command.credit_limit)

    school = data_manager.SchoolRow(
        school_id=generate_record_id("SCH"),
        school_name=command.school_name.strip(),
        principal_name=command.principal_name.strip(),
        phone_number=command.phone_number,
        contact_details=command.contact_details,
        credit_limit=command.credit_limit,
        total_invoiced=Decimal("0"),
        total_paid=Decimal("0"),
        outstanding_balance=Decimal("0"),
        payment_days_history=(),
    )
    batch = data_manager.WriteBatch(context.workbook)
    batch.append(school)
    batch.commit()
    _invalidate_cache(context, SheetName.SCHOOLS.value)
    log.info("Added school '%s' (%s) with credit limit %s", school.school_name, school.school_id, school.credit_limit)
    return school


def add_lpo(context: RuntimeContext, command: AddLPOCommand) -> LPORecord:
    """Record a purchase order received from a school.

    The order starts as ``Pending`` with nothing delivered.

    Raises:
        MissingReferenceError: If the school is unknown.
        BusinessRuleViolation: If the school already has an LPO with the same
            number.
        ValueError: If the number is blank, there are no items, or an item
            has a blank name or non-positive quantity.
    """
    _refresh_reads(context)
    school = get_school(context, command.school_id)
    require_text(command.lpo_number, "LPO number")
    if not command.items:
        log.error("LPO '%s' submitted without items", command.lpo_number)
        raise ValueError("An LPO needs at least one item")
    for item in command.items:
        require_text(item.item_name, "Item name")
        require_positive_quantity(item.quantity_ordered)

    lpo_number = command.lpo_number.strip()
    if any(existing.lpo_number == lpo_number for existing in list_lpos(context, school_id=school.school_id)):
        log.warning("Duplicate LPO number '%s' for school '%s'", lpo_number, school.school_id)
        raise BusinessRuleViolation(f"LPO '{lpo_number}' already recorded for {school.school_name}")

    lpo = data_manager.LPORow(
        lpo_id=generate_record_id("LPO"),
        school_id=school.school_id,
        lpo_number=lpo_number,
        date_received=_resolve_date(command.date_received).isoformat(),
        status=LPOStatus.PENDING.value,
    )
    items = tuple(
        data_manager.LPOItemRow(
            lpo_item_id=generate_record_id("LPI"),
            lpo_id=lpo.lpo_id,
            item_name=item.item_name.strip(),
            quantity_ordered=item.quantity_ordered,
            quantity_delivered=Decimal("0"),
        )
        for item in command.items
    )

    batch = data_manager.WriteBatch(context.workbook)
    batch.append(lpo)
    for item in items:
        batch.append(item)
    batch.commit()
    _invalidate_cache(context, SheetName.LPOS.value, SheetName.LPO_ITEMS.value)
    log.info("Recorded LPO '%s' for school '%s' with %d items", lpo.lpo_number, school.school_id, len(items))
    return LPORecord(lpo=lpo, items=items)


def record_procurement(context: RuntimeContext, command: ProcureCommand) -> EventResult:
    """Bring a new batch into stock and debit its cost to the ledger.

    The batch starts with ``quantity_remaining`` equal to the procured
    quantity. The ledger receives one ``Purchase`` entry whose debit is
    ``quantity_procured * purchase_price``.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        command (ProcureCommand): Structured procurement intent.

    Returns:
        EventResult: The new batch and its ledger entry.

    Raises:
        ValueError: If the item name is blank, the quantity is not positive,
            or the price is negative.
    """
    _refresh_reads(context)
    require_text(command.item_name, "Item name")
    require_positive_quantity(command.quantity_procured)
    require_nonnegative_money(command.purchase_price)

    batch_row = data_manager.InventoryBatchRow(
        batch_id=generate_record_id("BAT"),
        item_name=command.item_name.strip(),
        size=command.size,
        supplier=command.supplier,
        purchase_price=command.purchase_price,
        quantity_procured=command.quantity_procured,
        quantity_remaining=command.quantity_procured,
        procurement_date=_resolve_date(command.procurement_date).isoformat(),
    )
    cost = command.quantity_procured * command.purchase_price

    writes = data_manager.WriteBatch(context.workbook)
    writes.append(batch_row)
    entry = _stage_ledger_entry(
        context,
        writes,
        LedgerEntryType.PURCHASE,
        f"Procurement: {command.supplier or 'Unspecified supplier'} - {batch_row.item_name}",
        debit=cost,
    )
    writes.commit()
    _invalidate_cache(context, SheetName.INVENTORY.value, SheetName.LEDGER.value)
    log.info(
        "Recorded procurement '%s' of %s x %s at %s (ledger balance %s)",
        batch_row.batch_id,
        command.quantity_procured,
        batch_row.item_name,
        command.purchase_price,
        entry.balance,
    )
    return EventResult(record=batch_row, ledger_entry=entry)


def record_invoice(context: RuntimeContext, command: RecordInvoiceCommand) -> EventResult:
    """Invoice a school and apply every dependent update in one batch.

    The workflow:

    1. Re-reads the school, the batches on each line, and the linked LPO.
    2. Captures each batch's purchase price as the line's cost price and
       fills in a default selling price (cost times the configured markup)
       when the line has none.
    3. Derives revenue, COGS, gross profit, and margin.
    4. Checks the school's credit limit and stops with
       :class:`CreditLimitExceeded` unless the command accepts the overrun.
    5. Stages the invoice and its lines, the depleted batches, the LPO
       delivery progress, the school's new totals, and a ``Sale`` ledger
       entry, then commits them together.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        command (RecordInvoiceCommand): Structured invoice intent.

    Returns:
        EventResult: The invoice, its ledger entry, and its item rows as
            ``children``.

    Raises:
        MissingReferenceError: If the school, a batch, the LPO, or a line's
            LPO item is unknown.
        BusinessRuleViolation: If the LPO belongs to another school, or a
            line names an LPO item on an invoice without an LPO.
        CreditLimitExceeded: If the credit limit would be exceeded and the
            overrun was not accepted.
        ValueError: If there are no lines or a quantity or amount is invalid.
    """
    _refresh_reads(context)
    school = get_school(context, command.school_id)
    if not command.lines:
        log.error("Invoice for school '%s' submitted without lines", command.school_id)
        raise ValueError("An invoice needs at least one line")
    require_nonnegative_money(command.extra_cost)

    lpo: Optional[data_manager.LPORow] = None
    if command.lpo_id is not None:
        lpo = get_lpo(context, command.lpo_id)
        if lpo.school_id != school.school_id:
            log.warning("LPO '%s' belongs to school '%s', not '%s'", lpo.lpo_id, lpo.school_id, school.school_id)
            raise BusinessRuleViolation(f"LPO '{lpo.lpo_number}' was not issued by {school.school_name}")
        if lpo.status == LPOStatus.COMPLETED.value:
            log.warning("Invoicing against LPO '%s' which is already completed", lpo.lpo_number)

    invoice_id = generate_record_id("IVC")
    lines = tuple(_build_invoice_line(context, invoice_id, line, lpo) for line in command.lines)
    totals = derivations.compute_invoice_totals(lines, command.extra_cost)

    if derivations.exceeds_credit_limit(school, totals.total_revenue):
        projected = school.outstanding_balance + totals.total_revenue
        if not command.accept_credit_overrun:
            log.warning(
                "Invoice for school '%s' would exceed credit limit (%s > %s)",
                school.school_id,
                projected,
                school.credit_limit,
            )
            raise CreditLimitExceeded(school.school_id, projected, school.credit_limit)
        log.warning(
            "Posting invoice for school '%s' beyond credit limit (%s > %s) on operator confirmation",
            school.school_id,
            projected,
            school.credit_limit,
        )

    invoice_date = _resolve_date(command.invoice_date)
    invoice = data_manager.InvoiceRow(
        invoice_id=invoice_id,
        invoice_number=derivations.next_invoice_number(inv.invoice_number for inv in list_invoices(context)),
        invoice_date=invoice_date.isoformat(),
        delivery_date=(command.delivery_date or invoice_date).isoformat(),
        school_id=school.school_id,
        lpo_id=lpo.lpo_id if lpo is not None else None,
        extra_cost=command.extra_cost,
        total_revenue=totals.total_revenue,
        total_cogs=totals.total_cogs,
        gross_profit=totals.gross_profit,
        margin_percent=totals.margin_percent,
        amount_paid=Decimal("0"),
    )

    writes = data_manager.WriteBatch(context.workbook)
    writes.append(invoice)
    for line in lines:
        writes.append(line)
    _stage_batch_depletion(context, writes, lines)
    if lpo is not None:
        _stage_lpo_delivery(context, writes, lpo, lines)
    writes.update(
        SheetName.SCHOOLS.value,
        school.school_id,
        field_values=derivations.school_totals_after_invoice(school, totals.total_revenue),
    )
    entry = _stage_ledger_entry(
        context,
        writes,
        LedgerEntryType.SALE,
        f"Invoice: {invoice.invoice_number}",
        credit=totals.total_revenue,
    )
    writes.commit()
    _invalidate_cache(context, *DATA_BUCKETS)

    if totals.margin_percent < context.settings.low_margin_threshold and totals.total_revenue > 0:
        log.warning("Invoice '%s' margin %s%% is below threshold", invoice.invoice_number, totals.margin_percent)
    log.info(
        "Recorded invoice '%s' for school '%s' (revenue=%s, cogs=%s, margin=%s%%)",
        invoice.invoice_number,
        school.school_id,
        totals.total_revenue,
        totals.total_cogs,
        totals.margin_percent,
    )
    return EventResult(record=invoice, ledger_entry=entry, children=lines)


def record_payment(context: RuntimeContext, command: RecordPaymentCommand) -> EventResult:
    """Record money received from a school.

    The payment is attributed to the school's first invoice (in workbook
    order) that still has an open balance, or to the ``general`` sentinel
    when none is open. A real invoice gets its ``AmountPaid`` raised and the
    school's payment-days history gains the days between invoicing and
    payment. The school's totals move by the full amount and one ``Payment``
    ledger entry is credited.

    Overpaying an invoice or driving the outstanding balance negative is
    allowed and logged; the excess stays on the account as credit.

    Returns:
        EventResult: The payment and its ledger entry. ``children`` holds the
            invoice as it was before the payment, when one was selected.

    Raises:
        MissingReferenceError: If the school is unknown.
        ValueError: If the amount is not positive or the configured default
            payment method is not recognised.
    """
    _refresh_reads(context)
    school = get_school(context, command.school_id)
    require_positive_money(command.amount)
    method = command.method or PaymentMethod(context.settings.default_payment_method)
    paid_on = _resolve_date(command.payment_date)

    target = derivations.select_payment_invoice(list_invoices(context, school_id=school.school_id))
    payment = data_manager.PaymentRow(
        payment_id=generate_record_id("PAY"),
        invoice_id=target.invoice_id if target is not None else GENERAL_INVOICE_ID,
        school_id=school.school_id,
        amount=command.amount,
        method=method.value,
        reference=command.reference,
        bank_name=command.bank_name,
        cheque_date=command.cheque_date.isoformat() if command.cheque_date else None,
        payment_date=paid_on.isoformat(),
    )

    school_fields: Dict[str, Any] = dict(derivations.school_totals_after_payment(school, command.amount))
    writes = data_manager.WriteBatch(context.workbook)
    writes.append(payment)
    if target is not None:
        new_paid = target.amount_paid + command.amount
        if new_paid > target.total_revenue:
            log.warning(
                "Payment '%s' overpays invoice '%s' by %s",
                payment.payment_id,
                target.invoice_number,
                new_paid - target.total_revenue,
            )
        writes.update(SheetName.INVOICES.value, target.invoice_id, field_values={"AmountPaid": new_paid})
        try:
            days = derivations.payment_days(target.invoice_date, payment.payment_date)
        except ValueError:
            log.warning("Invoice '%s' has an unreadable date '%s'; payment days not tracked", target.invoice_id, target.invoice_date)
        else:
            school_fields["PaymentDaysHistory"] = school.payment_days_history + (days,)
    else:
        log.warning("No open invoice for school '%s'; payment '%s' booked as general", school.school_id, payment.payment_id)

    if school_fields["OutstandingBalance"] < 0:
        log.warning("School '%s' now holds a credit of %s", school.school_id, -school_fields["OutstandingBalance"])
    writes.update(SheetName.SCHOOLS.value, school.school_id, field_values=school_fields)
    entry = _stage_ledger_entry(
        context,
        writes,
        LedgerEntryType.PAYMENT,
        f"Received: {school.school_name}",
        credit=command.amount,
    )
    writes.commit()
    _invalidate_cache(context, *DATA_BUCKETS)
    log.info(
        "Recorded payment '%s' of %s from school '%s' against '%s'",
        payment.payment_id,
        command.amount,
        school.school_id,
        payment.invoice_id,
    )
    return EventResult(record=payment, ledger_entry=entry, children=(target,) if target is not None else ())


def record_expense(context: RuntimeContext, command: RecordExpenseCommand) -> EventResult:
    """Log an operating expense and debit it to the ledger.

    Raises:
        ValueError: If the name is blank or the amount is not positive.
        BusinessRuleViolation: If the category is not an
            :class:`~schola_erp.constants.ExpenseCategory`.
    """
    _refresh_reads(context)
    require_text(command.expense_name, "Expense name")
    require_positive_money(command.amount)
    if not isinstance(command.category, ExpenseCategory):
        log.error("Unsupported expense category provided: %s", command.category)
        raise BusinessRuleViolation(f"Unsupported expense category: {command.category}")

    expense = data_manager.ExpenseRow(
        expense_id=generate_record_id("EXP"),
        expense_name=command.expense_name.strip(),
        category=command.category.value,
        amount=command.amount,
        expense_date=_resolve_date(command.expense_date).isoformat(),
    )
    writes = data_manager.WriteBatch(context.workbook)
    writes.append(expense)
    entry = _stage_ledger_entry(
        context,
        writes,
        LedgerEntryType.EXPENSE,
        f"{expense.category}: {expense.expense_name}",
        debit=command.amount,
    )
    writes.commit()
    _invalidate_cache(context, SheetName.EXPENSES.value, SheetName.LEDGER.value)
    log.info("Recorded expense '%s' (%s) of %s", expense.expense_name, expense.category, expense.amount)
    return EventResult(record=expense, ledger_entry=entry)


def _build_invoice_line(
    context: RuntimeContext,
    invoice_id: str,
    line: InvoiceLineCommand,
    lpo: Optional[data_manager.LPORow],
) -> data_manager.InvoiceItemRow:
    """Resolve one line command against its batch and validate it."""
    require_positive_quantity(line.quantity)
    batch = get_batch(context, line.batch_id)
    if line.selling_price is None:
        selling_price = derivations.default_selling_price(batch.purchase_price, context.settings.selling_markup)
    else:
        require_nonnegative_money(line.selling_price)
        selling_price = line.selling_price
    if selling_price < batch.purchase_price:
        log.warning("Line on batch '%s' sells below cost (%s < %s)", batch.batch_id, selling_price, batch.purchase_price)
    if line.lpo_item_id is not None and lpo is None:
        log.error("Line references LPO item '%s' but the invoice has no LPO", line.lpo_item_id)
        raise BusinessRuleViolation("LPO item given for an invoice without an LPO")
    return data_manager.InvoiceItemRow(
        invoice_item_id=generate_record_id("IVI"),
        invoice_id=invoice_id,
        batch_id=batch.batch_id,
        item_name=batch.item_name,
        lpo_item_id=line.lpo_item_id,
        quantity=line.quantity,
        selling_price=selling_price,
        cost_price=batch.purchase_price,
    )


def _stage_batch_depletion(
    context: RuntimeContext,
    writes: data_manager.WriteBatch,
    lines: Tuple[data_manager.InvoiceItemRow, ...],
) -> None:
    remaining = {line.batch_id: get_batch(context, line.batch_id).quantity_remaining for line in lines}
    for depletion in derivations.deplete_batches(remaining, lines).values():
        if depletion.shortfall > 0:
            log.warning(
                "Batch '%s' short by %s units; stock floored at zero",
                depletion.batch_id,
                depletion.shortfall,
            )
        writes.update(
            SheetName.INVENTORY.value,
            depletion.batch_id,
            field_values={"QuantityRemaining": depletion.quantity_remaining},
        )


def _stage_lpo_delivery(
    context: RuntimeContext,
    writes: data_manager.WriteBatch,
    lpo: data_manager.LPORow,
    lines: Tuple[data_manager.InvoiceItemRow, ...],
) -> None:
    items = list_lpo_items(context, lpo.lpo_id)
    try:
        delivery = derivations.apply_lpo_delivery(items, lines)
    except KeyError as exc:
        log.warning("Invoice line does not belong to LPO '%s': %s", lpo.lpo_id, exc)
        raise MissingReferenceError(f"Line references an item not on LPO '{lpo.lpo_number}'") from exc

    for line in delivery.unmatched_lines:
        log.warning("Line for '%s' matched no item on LPO '%s'", line.item_name, lpo.lpo_number)
    for before, after in zip(items, delivery.items):
        if after.quantity_delivered != before.quantity_delivered:
            writes.update(
                SheetName.LPO_ITEMS.value,
                after.lpo_item_id,
                field_values={"QuantityDelivered": after.quantity_delivered},
            )
    writes.update(SheetName.LPOS.value, lpo.lpo_id, field_values={"Status": delivery.status.value})
    log.info("LPO '%s' moves from %s to %s", lpo.lpo_number, lpo.status, delivery.status.value)


def _stage_ledger_entry(
    context: RuntimeContext,
    writes: data_manager.WriteBatch,
    entry_type: LedgerEntryType,
    reference: str,
    *,
    debit: Decimal = Decimal("0"),
    credit: Decimal = Decimal("0"),
) -> data_manager.LedgerEntryRow:
    """Compose the next ledger entry from the latest balance and stage it.

    Args:
        context (RuntimeContext): Runtime context whose ledger supplies the
            latest balance.
        writes (data_manager.WriteBatch): Batch the entry is appended to.
        entry_type (LedgerEntryType): Business event being booked.
        reference (str): Free-text description shown in the ledger.
        debit (Decimal): Money leaving the business.
        credit (Decimal): Money entering the business.

    Returns:
        data_manager.LedgerEntryRow: The staged entry, including its running
            balance.
    """
    previous = derivations.latest_balance(list_ledger(context))
    timestamp = _resolve_timestamp(None)
    entry = data_manager.LedgerEntryRow(
        entry_id=generate_record_id("LED"),
        entry_date=timestamp.date().isoformat(),
        created_at=timestamp.isoformat(),
        entry_type=entry_type.value,
        reference=reference,
        debit=debit,
        credit=credit,
        balance=derivations.next_ledger_balance(previous, debit=debit, credit=credit),
    )
    writes.append(entry)
    return entry


def generate_record_id(prefix: str) -> str:
    """Generate a unique record identifier such as ``SCH-1A2B3C4D5E6F``."""
    return f"{prefix}-{uuid.uuid4().hex[:12].upper()}"


def require_positive_quantity(quantity: Decimal) -> None:
    """Validate that a quantity is strictly positive.

    Raises:
        ValueError: If ``quantity`` is zero or negative.
    """
    if quantity <= Decimal("0"):
        log.error("Quantity validation failed: %s", quantity)
        raise ValueError("Quantity must be greater than zero")


def require_nonnegative_money(amount: Decimal) -> None:
    """Validate that a monetary value is nonnegative.

    Raises:
        ValueError: If ``amount`` is less than zero.
    """
    if amount < Decimal("0"):
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be zero or positive")


def require_positive_money(amount: Decimal) -> None:
    """Validate that a monetary value is strictly positive.

    Raises:
        ValueError: If ``amount`` is zero or negative.
    """
    if amount <= Decimal("0"):
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be greater than zero")


def require_text(value: Optional[str], label: str) -> None:
    """Validate that a required text field is present and not blank.

    Raises:
        ValueError: If ``value`` is ``None`` or whitespace only.
    """
    if value is None or not value.strip():
        log.error("%s is required", label)
        raise ValueError(f"{label} is required")


def persist_context(context: RuntimeContext) -> None:
    """Persist in-memory workbook changes to the configured data file.

    The stamp captured when the workbook was loaded (or last saved) is compared
    with the file on disk first. If another process has written the file in
    the meantime, nothing is saved.

    Raises:
        StaleWorkbookError: If the workbook on disk changed since it was
            loaded by this context.
    """
    bucket = _get_cache_bucket(context, WORKBOOK_BUCKET)
    expected = bucket.get("stamp")
    current = data_manager.workbook_stamp(context.settings.data_file)
    if expected is not None and current != expected:
        log.error("Workbook '%s' changed on disk since it was loaded; refusing to overwrite", context.settings.data_file)
        raise StaleWorkbookError(
            f"Workbook '{context.settings.data_file}' was modified by another process; reload and retry"
        )

    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    bucket["stamp"] = data_manager.workbook_stamp(context.settings.data_file)
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Returns:
        RuntimeContext: Fresh context with a newly opened workbook, an empty
            cache, and a new file stamp.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return _new_context(context.settings, workbook)
