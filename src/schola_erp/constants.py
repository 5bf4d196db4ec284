"""Enumerations shared across Schola ERP modules.

The data access layer, the event handlers, the reports and the CLI all refer
to ledger entry types, LPO statuses and sheet names through these enums so the
workbook text values are spelled in exactly one place.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Invoice id used for payments that could not be attributed to an open invoice.
GENERAL_INVOICE_ID = "general"

INVOICE_NUMBER_PREFIX = "INV-"
INVOICE_NUMBER_WIDTH = 4

DEFAULT_CURRENCY = "Ksh"
DEFAULT_PAYMENT_METHOD = "Cheque"
DEFAULT_SELLING_MARKUP = Decimal("1.15")
DEFAULT_LOW_MARGIN_THRESHOLD = Decimal("10")
DEFAULT_FORECAST_MODEL = "gemini-2.5-flash"


class LedgerEntryType(str, Enum):
    """Enumerate the business events that append to the cash ledger."""

    PURCHASE = "Purchase"
    SALE = "Sale"
    PAYMENT = "Payment"
    EXPENSE = "Expense"


class LPOStatus(str, Enum):
    """Fulfilment state of a local purchase order."""

    PENDING = "Pending"
    PARTIAL = "Partial"
    COMPLETED = "Completed"


class ExpenseCategory(str, Enum):
    """Operating expense buckets."""

    RENT = "Rent"
    UTILITIES = "Utilities"
    TRANSPORT = "Transport"
    SALARIES = "Salaries"
    MISC = "Misc"


class PaymentMethod(str, Enum):
    """Enumerate the ways a school settles its account."""

    CHEQUE = "Cheque"
    CASH = "Cash"
    MPESA = "M-Pesa"
    BANK_TRANSFER = "Bank Transfer"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    SCHOOLS = "Schools"
    INVENTORY = "Inventory"
    LPOS = "LPOs"
    LPO_ITEMS = "LPOItems"
    INVOICES = "Invoices"
    INVOICE_ITEMS = "InvoiceItems"
    PAYMENTS = "Payments"
    EXPENSES = "Expenses"
    LEDGER = "Ledger"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "GENERAL_INVOICE_ID",
    "INVOICE_NUMBER_PREFIX",
    "INVOICE_NUMBER_WIDTH",
    "DEFAULT_CURRENCY",
    "DEFAULT_PAYMENT_METHOD",
    "DEFAULT_SELLING_MARKUP",
    "DEFAULT_LOW_MARGIN_THRESHOLD",
    "DEFAULT_FORECAST_MODEL",
    "LedgerEntryType",
    "LPOStatus",
    "ExpenseCategory",
    "PaymentMethod",
    "SheetName",
]
