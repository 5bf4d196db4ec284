"""Tests for PDF invoice rendering."""

from __future__ import annotations

from decimal import Decimal

import pytest

from schola_erp import core_logic, invoice_export


def test_invoice_status_follows_amount_paid(make_invoice):
    assert invoice_export.invoice_status(make_invoice()) == "PENDING"
    assert invoice_export.invoice_status(make_invoice(amount_paid=Decimal("800"))) == "PAID"
    assert invoice_export.invoice_status(make_invoice(amount_paid=Decimal("900"))) == "PAID"


def test_default_filename_replaces_whitespace(make_invoice, make_school):
    school = make_school(school_name="  St.  Mary's   Girls ")

    assert invoice_export.default_filename(make_invoice(), school) == "INV-0001_St._Mary's_Girls.pdf"


def test_render_invoice_pdf_writes_document(tmp_path, make_invoice, make_invoice_item, make_school):
    destination = tmp_path / "out" / "invoice.pdf"

    written = invoice_export.render_invoice_pdf(
        make_invoice(extra_cost=Decimal("20"), total_revenue=Decimal("820")),
        [make_invoice_item("L1"), make_invoice_item("L2", item_name="Pencil", quantity=Decimal("3"))],
        make_school(),
        destination,
        business_name="Test Supplies",
    )

    assert written == destination.resolve()
    assert written.read_bytes().startswith(b"%PDF")


def test_export_invoice_defaults_to_workbook_folder(monkeypatch, context, make_invoice, make_school, make_invoice_item):
    monkeypatch.setattr(core_logic, "find_invoice_by_number", lambda ctx, number: make_invoice(invoice_number=number))
    monkeypatch.setattr(core_logic, "get_school", lambda ctx, school_id: make_school(school_id))
    monkeypatch.setattr(core_logic, "list_invoice_items", lambda ctx, invoice_id: [make_invoice_item()])

    written = invoice_export.export_invoice(context, "INV-0007")

    assert written == (context.settings.data_file.parent / "INV-0007_Hill_Academy.pdf").resolve()
    assert written.exists()


def test_export_invoice_unknown_number_raises(monkeypatch, context):
    monkeypatch.setattr(core_logic, "list_invoices", lambda ctx: [])

    with pytest.raises(core_logic.MissingReferenceError):
        invoice_export.export_invoice(context, "INV-0404")
