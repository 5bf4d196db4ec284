"""Read-only aggregations behind the dashboard and the CLI report commands.

The functions here take plain lists of row dataclasses and never touch the
workbook, so they can be tested with hand-built rows. :func:`build_dashboard`
is the one entry point that pulls those lists from a runtime context.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from . import core_logic, log
from .constants import LPOStatus
from .data_manager import (
    ExpenseRow,
    InventoryBatchRow,
    InvoiceItemRow,
    InvoiceRow,
    LedgerEntryRow,
    LPORow,
    SchoolRow,
)
from .derivations import TWOPLACES, ZERO, latest_balance


AGING_BUCKETS: Tuple[str, ...] = ("0-30 Days", "31-60 Days", "61+ Days")
OPEN_BALANCE_EPSILON = Decimal("0.01")
TOP_N = 5


@dataclass(frozen=True)
class DashboardSummary:
    """Headline KPIs for the business as a whole."""

    revenue: Decimal
    cogs: Decimal
    gross_profit: Decimal
    total_expenses: Decimal
    net_profit: Decimal
    receivables: Decimal
    inventory_value: Decimal
    cash_balance: Decimal
    inventory_turnover: Decimal


@dataclass(frozen=True)
class ItemProfit:
    item_name: str
    profit: Decimal


@dataclass(frozen=True)
class SlowPayer:
    school_id: str
    school_name: str
    average_days: Decimal
    outstanding_balance: Decimal


@dataclass(frozen=True)
class MonthTrend:
    month: str
    revenue: Decimal
    profit: Decimal


@dataclass(frozen=True)
class Dashboard:
    """Everything the ``dashboard`` command prints."""

    summary: DashboardSummary
    top_items: List[ItemProfit]
    slowest_payers: List[SlowPayer]
    aging: Dict[str, Decimal]
    trend: List[MonthTrend]
    low_margin: List[InvoiceRow]


def summarize(
    invoices: Iterable[InvoiceRow],
    expenses: Iterable[ExpenseRow],
    schools: Iterable[SchoolRow],
    inventory: Iterable[InventoryBatchRow],
    ledger: Sequence[LedgerEntryRow],
) -> DashboardSummary:
    """Compute the headline KPIs.

    Net profit is gross profit less every recorded expense. Inventory turnover
    is COGS divided by the value of the stock still on hand (a simplified
    proxy for average inventory) and is zero when nothing is in stock.

    Args:
        invoices (Iterable[InvoiceRow]): Every invoice on record.
        expenses (Iterable[ExpenseRow]): Every expense on record.
        schools (Iterable[SchoolRow]): Every school on record.
        inventory (Iterable[InventoryBatchRow]): Every inventory batch.
        ledger (Sequence[LedgerEntryRow]): The ledger in insertion order.

    Returns:
        DashboardSummary: Aggregated figures.
    """

    revenue = ZERO
    cogs = ZERO
    for invoice in invoices:
        revenue += invoice.total_revenue
        cogs += invoice.total_cogs
    gross = revenue - cogs
    total_expenses = sum((expense.amount for expense in expenses), ZERO)
    receivables = sum((school.outstanding_balance for school in schools), ZERO)
    inventory_value = sum((batch.quantity_remaining * batch.purchase_price for batch in inventory), ZERO)
    if inventory_value > ZERO:
        turnover = (cogs / inventory_value).quantize(TWOPLACES, rounding=ROUND_HALF_UP)
    else:
        turnover = ZERO

    return DashboardSummary(
        revenue=revenue,
        cogs=cogs,
        gross_profit=gross,
        total_expenses=total_expenses,
        net_profit=gross - total_expenses,
        receivables=receivables,
        inventory_value=inventory_value,
        cash_balance=latest_balance(ledger),
        inventory_turnover=turnover,
    )


def top_profit_items(items: Iterable[InvoiceItemRow], limit: int = TOP_N) -> List[ItemProfit]:
    """Items ranked by ``(selling - cost) * quantity`` summed across invoices."""

    profits: Dict[str, Decimal] = {}
    for item in items:
        line_profit = (item.selling_price - item.cost_price) * item.quantity
        profits[item.item_name] = profits.get(item.item_name, ZERO) + line_profit
    ranked = sorted(profits.items(), key=lambda pair: pair[1], reverse=True)
    return [ItemProfit(item_name=name, profit=profit) for name, profit in ranked[:limit]]


def slowest_payers(schools: Iterable[SchoolRow], limit: int = TOP_N) -> List[SlowPayer]:
    """Schools with a payment history, slowest average first.

    Schools that have never paid against an invoice are left out.
    """

    payers = []
    for school in schools:
        history = school.payment_days_history
        if not history:
            continue
        average = (Decimal(sum(history)) / Decimal(len(history))).quantize(TWOPLACES, rounding=ROUND_HALF_UP)
        payers.append(
            SlowPayer(
                school_id=school.school_id,
                school_name=school.school_name,
                average_days=average,
                outstanding_balance=school.outstanding_balance,
            )
        )
    payers.sort(key=lambda payer: payer.average_days, reverse=True)
    return payers[:limit]


def receivables_aging(invoices: Iterable[InvoiceRow], today: date) -> Dict[str, Decimal]:
    """Bucket open invoice balances by age in days.

    Only balances above one cent count. An invoice whose date cannot be read
    is logged and skipped.

    Returns:
        dict[str, Decimal]: ``AGING_BUCKETS`` labels mapped to open amounts.
    """

    buckets = {label: ZERO for label in AGING_BUCKETS}
    for invoice in invoices:
        balance = invoice.total_revenue - invoice.amount_paid
        if balance <= OPEN_BALANCE_EPSILON:
            continue
        try:
            age = (today - date.fromisoformat(invoice.invoice_date)).days
        except ValueError:
            log.warning("Skipping invoice '%s' in aging: unreadable date '%s'", invoice.invoice_number, invoice.invoice_date)
            continue
        if age <= 30:
            label = AGING_BUCKETS[0]
        elif age <= 60:
            label = AGING_BUCKETS[1]
        else:
            label = AGING_BUCKETS[2]
        buckets[label] += balance
    return buckets


def monthly_trend(invoices: Iterable[InvoiceRow]) -> List[MonthTrend]:
    """Revenue and gross profit per calendar month, January to December.

    Invoices from different years fall into the same month slot.
    """

    revenue = [ZERO] * 12
    profit = [ZERO] * 12
    for invoice in invoices:
        try:
            month = date.fromisoformat(invoice.invoice_date).month
        except ValueError:
            log.warning("Skipping invoice '%s' in trend: unreadable date '%s'", invoice.invoice_number, invoice.invoice_date)
            continue
        revenue[month - 1] += invoice.total_revenue
        profit[month - 1] += invoice.gross_profit
    return [
        MonthTrend(month=calendar.month_abbr[index + 1], revenue=revenue[index], profit=profit[index])
        for index in range(12)
    ]


def low_margin_invoices(invoices: Iterable[InvoiceRow], threshold: Decimal) -> List[InvoiceRow]:
    """Invoices with revenue whose margin falls below ``threshold`` percent."""

    return [
        invoice
        for invoice in invoices
        if invoice.total_revenue > ZERO and invoice.margin_percent < threshold
    ]


def open_lpos_for_school(lpos: Iterable[LPORow], school_id: str) -> List[LPORow]:
    """A school's purchase orders that are not yet completed."""

    return [lpo for lpo in lpos if lpo.school_id == school_id and lpo.status != LPOStatus.COMPLETED.value]


def build_dashboard(context: core_logic.RuntimeContext, *, today: Optional[date] = None) -> Dashboard:
    """Assemble every dashboard figure from the workbook behind ``context``.

    Args:
        context (core_logic.RuntimeContext): Runtime context to read from.
        today (date | None): Reference date for receivables aging. Defaults to
            the current UTC date.

    Returns:
        Dashboard: KPIs, rankings, aging buckets, trend, and low-margin
            invoices.
    """

    invoices = core_logic.list_invoices(context)
    schools = core_logic.list_schools(context)
    summary = summarize(
        invoices,
        core_logic.list_expenses(context),
        schools,
        core_logic.list_inventory(context),
        core_logic.list_ledger(context),
    )
    reference_day = today if today is not None else core_logic.current_date()
    dashboard = Dashboard(
        summary=summary,
        top_items=top_profit_items(core_logic.list_invoice_items(context)),
        slowest_payers=slowest_payers(schools),
        aging=receivables_aging(invoices, reference_day),
        trend=monthly_trend(invoices),
        low_margin=low_margin_invoices(invoices, context.settings.low_margin_threshold),
    )
    log.debug("Built dashboard over %d invoices and %d schools", len(invoices), len(schools))
    return dashboard
