"""Render invoices as printable PDF documents with reportlab."""

from __future__ import annotations

import re
from decimal import Decimal
from pathlib import Path
from typing import List, Optional, Sequence

from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from . import core_logic, log
from .data_manager import InvoiceItemRow, InvoiceRow, SchoolRow


BRAND_COLOR = colors.HexColor("#4F46E5")
MUTED_COLOR = colors.HexColor("#64748B")
FOOTER_TEXT = "Thank you for your business. Payment is due within school credit terms."


def invoice_status(invoice: InvoiceRow) -> str:
    """``PAID`` once the amount paid covers the revenue, else ``PENDING``."""

    return "PAID" if invoice.amount_paid >= invoice.total_revenue else "PENDING"


def default_filename(invoice: InvoiceRow, school: SchoolRow) -> str:
    """``<invoiceNumber>_<School_Name>.pdf`` with whitespace runs replaced by ``_``."""

    safe_name = re.sub(r"\s+", "_", school.school_name.strip())
    return f"{invoice.invoice_number}_{safe_name}.pdf"


def _money(currency: str, amount: Decimal) -> str:
    return f"{currency} {amount:,.2f}"


def render_invoice_pdf(
    invoice: InvoiceRow,
    items: Sequence[InvoiceItemRow],
    school: SchoolRow,
    destination: Path,
    *,
    business_name: str,
    currency: str = "Ksh",
) -> Path:
    """Write a single-page invoice PDF.

    The page carries the business name, the invoice number, date and payment
    status, a bill-to block for the school, one table row per line, the extra
    cost when there is one, the grand total, and a footer.

    Args:
        invoice (InvoiceRow): Invoice to render.
        items (Sequence[InvoiceItemRow]): Lines belonging to ``invoice``.
        school (SchoolRow): The invoiced school.
        destination (Path): File to create. Parent folders are created.
        business_name (str): Name printed in the header.
        currency (str): Currency label for amounts.

    Returns:
        Path: The resolved path of the written file.
    """

    target = Path(destination).expanduser().resolve()
    target.parent.mkdir(parents=True, exist_ok=True)

    doc = SimpleDocTemplate(
        str(target),
        pagesize=A4,
        rightMargin=40,
        leftMargin=40,
        topMargin=40,
        bottomMargin=30,
        title=f"Invoice {invoice.invoice_number}",
    )
    styles = getSampleStyleSheet()
    title_style = ParagraphStyle(
        "InvoiceTitle",
        parent=styles["Heading1"],
        fontSize=22,
        textColor=BRAND_COLOR,
        spaceAfter=4,
    )
    muted_style = ParagraphStyle(
        "InvoiceMuted",
        parent=styles["Normal"],
        fontSize=9,
        textColor=MUTED_COLOR,
    )
    footer_style = ParagraphStyle(
        "InvoiceFooter",
        parent=styles["Italic"],
        fontSize=8,
        textColor=MUTED_COLOR,
        alignment=TA_CENTER,
    )

    elements: List[object] = [
        Paragraph(business_name.upper(), title_style),
        Paragraph("SCHOOL SUPPLY DISTRIBUTION", muted_style),
        Spacer(1, 0.2 * inch),
        Paragraph(
            f"<b>INVOICE:</b> {invoice.invoice_number}<br/>"
            f"<b>DATE:</b> {invoice.invoice_date}<br/>"
            f"<b>STATUS:</b> {invoice_status(invoice)}",
            styles["Normal"],
        ),
        Spacer(1, 0.2 * inch),
    ]

    bill_to = ["<b>BILL TO:</b>", school.school_name, f"Attn: {school.principal_name}"]
    if school.contact_details:
        bill_to.append(school.contact_details)
    if school.phone_number:
        bill_to.append(school.phone_number)
    elements.append(Paragraph("<br/>".join(bill_to), styles["Normal"]))
    elements.append(Spacer(1, 0.3 * inch))

    data = [["ITEM DESCRIPTION", "QTY", "UNIT PRICE", "TOTAL"]]
    for item in items:
        data.append(
            [
                item.item_name,
                f"{item.quantity:,}",
                _money(currency, item.selling_price),
                _money(currency, item.selling_price * item.quantity),
            ]
        )
    if invoice.extra_cost > 0:
        data.append(["Logistics/Extra", "", "", _money(currency, invoice.extra_cost)])
    data.append(["GRAND TOTAL", "", "", _money(currency, invoice.total_revenue)])

    table = Table(data, colWidths=[3 * inch, 0.7 * inch, 1.4 * inch, 1.5 * inch])
    table.setStyle(TableStyle([
        ("BACKGROUND", (0, 0), (-1, 0), BRAND_COLOR),
        ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
        ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
        ("FONTSIZE", (0, 0), (-1, -1), 9),
        ("ALIGN", (1, 1), (-1, -1), "RIGHT"),
        ("FONTNAME", (0, -1), (-1, -1), "Helvetica-Bold"),
        ("TEXTCOLOR", (0, -1), (-1, -1), BRAND_COLOR),
        ("ROWBACKGROUNDS", (0, 1), (-1, -2), [colors.white, colors.HexColor("#F1F5F9")]),
        ("GRID", (0, 0), (-1, -2), 0.5, colors.grey),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 6),
    ]))
    elements.append(table)
    elements.append(Spacer(1, 0.5 * inch))
    elements.append(Paragraph(FOOTER_TEXT, footer_style))

    doc.build(elements)
    log.info("Exported invoice '%s' to '%s'", invoice.invoice_number, target)
    return target


def export_invoice(
    context: core_logic.RuntimeContext,
    invoice_number: str,
    output_dir: Optional[Path] = None,
) -> Path:
    """Look up an invoice by number and render it next to the workbook.

    Raises:
        MissingReferenceError: If the invoice or its school is unknown.
    """

    invoice = core_logic.find_invoice_by_number(context, invoice_number)
    school = core_logic.get_school(context, invoice.school_id)
    items = core_logic.list_invoice_items(context, invoice.invoice_id)
    directory = Path(output_dir) if output_dir is not None else context.settings.data_file.parent
    return render_invoice_pdf(
        invoice,
        items,
        school,
        directory / default_filename(invoice, school),
        business_name=context.settings.business_name,
        currency=context.settings.currency,
    )
