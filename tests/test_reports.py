"""Tests for the dashboard aggregations."""

from __future__ import annotations

from datetime import date
from decimal import Decimal

from schola_erp import data_manager, reports


def test_summarize_combines_sales_expenses_and_stock(make_invoice, make_school, make_batch, make_ledger_entry):
    invoices = [
        make_invoice("A", total_revenue=Decimal("820"), total_cogs=Decimal("500")),
        make_invoice("B", total_revenue=Decimal("180"), total_cogs=Decimal("100")),
    ]
    expenses = [data_manager.ExpenseRow("E1", "Rent", "Rent", Decimal("150"), "2026-02-01")]
    schools = [make_school("S1", outstanding_balance=Decimal("820")), make_school("S2", outstanding_balance=Decimal("-20"))]
    inventory = [make_batch("B1", quantity_remaining=Decimal("90")), make_batch("B2", quantity_remaining=Decimal("0"))]
    ledger = [make_ledger_entry("L1", balance=Decimal("-5000")), make_ledger_entry("L2", balance=Decimal("-4180"))]

    summary = reports.summarize(invoices, expenses, schools, inventory, ledger)

    assert summary.revenue == Decimal("1000")
    assert summary.cogs == Decimal("600")
    assert summary.gross_profit == Decimal("400")
    assert summary.net_profit == Decimal("250")
    assert summary.receivables == Decimal("800")
    assert summary.inventory_value == Decimal("4500")
    assert summary.cash_balance == Decimal("-4180")
    assert summary.inventory_turnover == Decimal("0.13")


def test_summarize_on_empty_books_is_all_zero():
    summary = reports.summarize([], [], [], [], [])

    assert summary.revenue == summary.net_profit == summary.cash_balance == Decimal("0")
    assert summary.inventory_turnover == Decimal("0")


def test_top_profit_items_groups_by_name(make_invoice_item):
    items = [
        make_invoice_item("1", item_name="Pencil", quantity=Decimal("10"), selling_price=Decimal("12"), cost_price=Decimal("10")),
        make_invoice_item("2", item_name="Pencil", quantity=Decimal("5"), selling_price=Decimal("12"), cost_price=Decimal("10")),
        make_invoice_item("3", item_name="Chalk", quantity=Decimal("1"), selling_price=Decimal("100"), cost_price=Decimal("20")),
        make_invoice_item("4", item_name="Ruler", quantity=Decimal("2"), selling_price=Decimal("5"), cost_price=Decimal("6")),
    ]

    ranked = reports.top_profit_items(items, limit=2)

    assert [(entry.item_name, entry.profit) for entry in ranked] == [("Chalk", Decimal("80")), ("Pencil", Decimal("30"))]


def test_slowest_payers_skips_schools_without_history(make_school):
    schools = [
        make_school("S1", school_name="Fast", payment_days_history=(5, 7)),
        make_school("S2", school_name="Never Paid"),
        make_school("S3", school_name="Slow", payment_days_history=(40, 45, 50)),
    ]

    payers = reports.slowest_payers(schools)

    assert [payer.school_name for payer in payers] == ["Slow", "Fast"]
    assert payers[0].average_days == Decimal("45.00")
    assert payers[1].average_days == Decimal("6.00")


def test_receivables_aging_buckets_by_invoice_age(make_invoice):
    today = date(2026, 4, 30)
    invoices = [
        make_invoice("A", invoice_date="2026-03-31", total_revenue=Decimal("100")),
        make_invoice("B", invoice_date="2026-03-30", total_revenue=Decimal("200"), amount_paid=Decimal("50")),
        make_invoice("C", invoice_date="2026-03-01", total_revenue=Decimal("300")),
        make_invoice("D", invoice_date="2026-02-28", total_revenue=Decimal("400")),
        make_invoice("E", invoice_date="2026-01-01", total_revenue=Decimal("500"), amount_paid=Decimal("500")),
        make_invoice("F", invoice_date="2026-04-30", total_revenue=Decimal("10"), amount_paid=Decimal("9.995")),
    ]

    aging = reports.receivables_aging(invoices, today)

    assert aging == {
        "0-30 Days": Decimal("100"),
        "31-60 Days": Decimal("450"),
        "61+ Days": Decimal("400"),
    }


def test_receivables_aging_skips_unreadable_dates(make_invoice):
    aging = reports.receivables_aging([make_invoice(invoice_date="someday")], date(2026, 1, 1))

    assert all(amount == Decimal("0") for amount in aging.values())


def test_monthly_trend_covers_every_month(make_invoice):
    invoices = [
        make_invoice("A", invoice_date="2026-01-15", total_revenue=Decimal("100"), gross_profit=Decimal("30")),
        make_invoice("B", invoice_date="2025-01-20", total_revenue=Decimal("50"), gross_profit=Decimal("10")),
        make_invoice("C", invoice_date="2026-03-02", total_revenue=Decimal("70"), gross_profit=Decimal("7")),
    ]

    trend = reports.monthly_trend(invoices)

    assert [entry.month for entry in trend][:3] == ["Jan", "Feb", "Mar"]
    assert len(trend) == 12
    assert (trend[0].revenue, trend[0].profit) == (Decimal("150"), Decimal("40"))
    assert trend[1].revenue == Decimal("0")
    assert trend[2].profit == Decimal("7")


def test_low_margin_invoices_ignore_zero_revenue(make_invoice):
    invoices = [
        make_invoice("A", margin_percent=Decimal("5")),
        make_invoice("B", margin_percent=Decimal("25")),
        make_invoice("C", total_revenue=Decimal("0"), margin_percent=Decimal("0")),
    ]

    assert [invoice.invoice_id for invoice in reports.low_margin_invoices(invoices, Decimal("10"))] == ["A"]


def test_open_lpos_for_school_hides_completed():
    lpos = [
        data_manager.LPORow("L1", "S1", "LPO/1", "2026-01-01", "Pending"),
        data_manager.LPORow("L2", "S1", "LPO/2", "2026-01-02", "Completed"),
        data_manager.LPORow("L3", "S2", "LPO/3", "2026-01-03", "Partial"),
        data_manager.LPORow("L4", "S1", "LPO/4", "2026-01-04", "Partial"),
    ]

    assert [lpo.lpo_id for lpo in reports.open_lpos_for_school(lpos, "S1")] == ["L1", "L4"]


def test_build_dashboard_reads_from_context(monkeypatch, context, make_invoice, make_school, make_invoice_item):
    from schola_erp import core_logic

    monkeypatch.setattr(core_logic, "list_invoices", lambda ctx: [make_invoice(margin_percent=Decimal("3"))])
    monkeypatch.setattr(core_logic, "list_schools", lambda ctx: [make_school(outstanding_balance=Decimal("800"))])
    monkeypatch.setattr(core_logic, "list_expenses", lambda ctx: [])
    monkeypatch.setattr(core_logic, "list_inventory", lambda ctx: [])
    monkeypatch.setattr(core_logic, "list_ledger", lambda ctx: [])
    monkeypatch.setattr(core_logic, "list_invoice_items", lambda ctx: [make_invoice_item()])

    dashboard = reports.build_dashboard(context, today=date(2026, 2, 10))

    assert dashboard.summary.receivables == Decimal("800")
    assert dashboard.aging["0-30 Days"] == Decimal("800")
    assert dashboard.top_items[0].profit == Decimal("300")
    assert [invoice.invoice_id for invoice in dashboard.low_margin] == ["IVC-1"]
