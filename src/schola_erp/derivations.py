"""Pure derivation rules behind every ledger-affecting event.

Nothing in this module reads or writes the workbook. Each function takes the
current values of the records an event depends on and returns the values the
event handler should write back, which keeps the arithmetic testable without a
workbook or a runtime context.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .constants import INVOICE_NUMBER_PREFIX, INVOICE_NUMBER_WIDTH, LPOStatus
from .data_manager import InvoiceItemRow, InvoiceRow, LedgerEntryRow, LPOItemRow, SchoolRow


ZERO = Decimal("0")
HUNDRED = Decimal("100")
TWOPLACES = Decimal("0.01")


@dataclass(frozen=True)
class InvoiceTotals:
    """Revenue, cost, and margin figures derived from invoice lines."""

    total_revenue: Decimal
    total_cogs: Decimal
    gross_profit: Decimal
    margin_percent: Decimal


@dataclass(frozen=True)
class LPODelivery:
    """Outcome of applying an invoice's lines to a purchase order."""

    items: Tuple[LPOItemRow, ...]
    status: LPOStatus
    unmatched_lines: Tuple[InvoiceItemRow, ...] = ()


@dataclass(frozen=True)
class BatchDepletion:
    """New remaining quantity for one batch plus any stock shortfall."""

    batch_id: str
    quantity_remaining: Decimal
    shortfall: Decimal = ZERO


@dataclass(frozen=True)
class BalanceMismatch:
    """A ledger row whose stored balance disagrees with the running total."""

    entry_id: str
    expected: Decimal
    recorded: Decimal


def next_ledger_balance(previous_balance: Decimal, *, debit: Decimal = ZERO, credit: Decimal = ZERO) -> Decimal:
    """Return ``previous_balance + credit - debit``."""

    return previous_balance + credit - debit


def latest_balance(entries: Sequence[LedgerEntryRow]) -> Decimal:
    """Balance of the most recently appended ledger entry, or zero."""

    return entries[-1].balance if entries else ZERO


def margin_percent(gross_profit: Decimal, total_revenue: Decimal) -> Decimal:
    """Gross margin as a percentage rounded half-up to two places.

    Zero (or negative) revenue yields a 0% margin instead of a division error.
    """

    if total_revenue <= ZERO:
        return ZERO
    return (gross_profit / total_revenue * HUNDRED).quantize(TWOPLACES, rounding=ROUND_HALF_UP)


def compute_invoice_totals(lines: Iterable[InvoiceItemRow], extra_cost: Decimal = ZERO) -> InvoiceTotals:
    """Derive revenue, COGS, gross profit, and margin for a set of lines.

    ``extra_cost`` (delivery or logistics charged to the school) counts as
    revenue but carries no cost.
    """

    revenue = ZERO
    cogs = ZERO
    for line in lines:
        revenue += line.selling_price * line.quantity
        cogs += line.cost_price * line.quantity
    revenue += extra_cost
    profit = revenue - cogs
    return InvoiceTotals(
        total_revenue=revenue,
        total_cogs=cogs,
        gross_profit=profit,
        margin_percent=margin_percent(profit, revenue),
    )


def default_selling_price(purchase_price: Decimal, markup: Decimal) -> Decimal:
    """Suggested unit price: cost times markup, rounded to a whole unit."""

    return (purchase_price * markup).quantize(Decimal("1"), rounding=ROUND_HALF_UP)


def deplete_batches(remaining_by_batch: Mapping[str, Decimal], lines: Iterable[InvoiceItemRow]) -> Dict[str, BatchDepletion]:
    """Apply invoice lines to batch stock, flooring each batch at zero.

    Several lines drawing on the same batch are applied cumulatively. When a
    line asks for more than is left the batch drops to zero and the missing
    quantity is reported as ``shortfall``; the line itself is not altered.

    Args:
        remaining_by_batch (Mapping[str, Decimal]): Current
            ``quantity_remaining`` keyed by batch id.
        lines (Iterable[InvoiceItemRow]): Lines of the invoice being posted.

    Returns:
        dict[str, BatchDepletion]: Depletion per touched batch id.

    Raises:
        KeyError: If a line references a batch missing from
            ``remaining_by_batch``.
    """

    results: Dict[str, BatchDepletion] = {}
    for line in lines:
        current = results[line.batch_id].quantity_remaining if line.batch_id in results else remaining_by_batch[line.batch_id]
        previous_shortfall = results[line.batch_id].shortfall if line.batch_id in results else ZERO
        left = current - line.quantity
        results[line.batch_id] = BatchDepletion(
            batch_id=line.batch_id,
            quantity_remaining=max(ZERO, left),
            shortfall=previous_shortfall + (-left if left < ZERO else ZERO),
        )
    return results


def derive_lpo_status(items: Sequence[LPOItemRow]) -> LPOStatus:
    """Completed when every item is fully delivered, Partial when any delivery exists."""

    if items and all(item.quantity_delivered >= item.quantity_ordered for item in items):
        return LPOStatus.COMPLETED
    if any(item.quantity_delivered > ZERO for item in items):
        return LPOStatus.PARTIAL
    return LPOStatus.PENDING


def apply_lpo_delivery(items: Sequence[LPOItemRow], lines: Iterable[InvoiceItemRow]) -> LPODelivery:
    """Accumulate delivered quantities from invoice lines onto LPO items.

    A line that carries ``lpo_item_id`` is matched to that item; a line
    without one falls back to the first LPO item with the same name. Lines
    that match nothing are returned in ``unmatched_lines``. Delivered
    quantities only ever grow.

    Raises:
        KeyError: If a line's ``lpo_item_id`` is not one of ``items``.
    """

    updated: Dict[str, LPOItemRow] = {item.lpo_item_id: item for item in items}
    by_name: Dict[str, str] = {}
    for item in items:
        by_name.setdefault(item.item_name, item.lpo_item_id)

    unmatched: List[InvoiceItemRow] = []
    for line in lines:
        if line.lpo_item_id is not None:
            if line.lpo_item_id not in updated:
                raise KeyError(f"LPO item not on purchase order: {line.lpo_item_id}")
            target_id = line.lpo_item_id
        else:
            target_id = by_name.get(line.item_name)
            if target_id is None:
                unmatched.append(line)
                continue
        target = updated[target_id]
        updated[target_id] = replace(target, quantity_delivered=target.quantity_delivered + line.quantity)

    ordered = tuple(updated[item.lpo_item_id] for item in items)
    return LPODelivery(items=ordered, status=derive_lpo_status(ordered), unmatched_lines=tuple(unmatched))


def exceeds_credit_limit(school: SchoolRow, new_revenue: Decimal) -> bool:
    """True when posting ``new_revenue`` would push the school past its limit."""

    return school.outstanding_balance + new_revenue > school.credit_limit


def school_totals_after_invoice(school: SchoolRow, revenue: Decimal) -> Dict[str, Decimal]:
    """Column values for a school after invoicing ``revenue``."""

    return {
        "TotalInvoiced": school.total_invoiced + revenue,
        "OutstandingBalance": school.outstanding_balance + revenue,
    }


def school_totals_after_payment(school: SchoolRow, amount: Decimal) -> Dict[str, Decimal]:
    """Column values for a school after receiving ``amount``.

    The outstanding balance is not floored; a negative value is a credit held
    on the school's account.
    """

    return {
        "TotalPaid": school.total_paid + amount,
        "OutstandingBalance": school.outstanding_balance - amount,
    }


def select_payment_invoice(invoices: Iterable[InvoiceRow]) -> Optional[InvoiceRow]:
    """First invoice, in store order, that still has an open balance."""

    for invoice in invoices:
        if invoice.total_revenue > invoice.amount_paid:
            return invoice
    return None


def payment_days(invoice_date: str, payment_date: str) -> int:
    """Whole days between invoicing and payment, never negative."""

    elapsed = (date.fromisoformat(payment_date) - date.fromisoformat(invoice_date)).days
    return max(0, elapsed)


def next_invoice_number(existing_numbers: Iterable[str]) -> str:
    """Next sequential ``INV-0000`` style number after the highest one in use.

    Numbers that do not follow the prefix/digits pattern are ignored. The
    sequence keeps four digits up to ``INV-9999`` and simply grows wider after.
    """

    highest = 0
    for number in existing_numbers:
        if not number.startswith(INVOICE_NUMBER_PREFIX):
            continue
        digits = number[len(INVOICE_NUMBER_PREFIX):]
        if digits.isdigit():
            highest = max(highest, int(digits))
    return f"{INVOICE_NUMBER_PREFIX}{highest + 1:0{INVOICE_NUMBER_WIDTH}d}"


def verify_running_balances(entries: Iterable[LedgerEntryRow]) -> List[BalanceMismatch]:
    """Recompute balances from zero and report rows that disagree."""

    mismatches: List[BalanceMismatch] = []
    running = ZERO
    for entry in entries:
        running = next_ledger_balance(running, debit=entry.debit, credit=entry.credit)
        if entry.balance != running:
            mismatches.append(BalanceMismatch(entry.entry_id, expected=running, recorded=entry.balance))
    return mismatches
