"""Command-line entry points for the Schola ERP toolkit.

The CLI only wires argparse and translates arguments into the command objects
of :mod:`schola_erp.core_logic`; every rule lives in the business layer. Read
commands print their results to stdout. The workbook is saved only after a
mutating command finished with exit code 0.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence, Tuple

from . import core_logic, forecast, invoice_export, log, reports
from .constants import ExpenseCategory, PaymentMethod

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_BUSINESS_RULE = 2
EXIT_MISSING_FILE = 3
EXIT_CREDIT_LIMIT = 4


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    mutates: bool = False


def decimal_arg(raw: str) -> Decimal:
    """argparse ``type`` for monetary amounts and quantities."""
    try:
        return Decimal(raw)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"not a number: {raw!r}") from exc


def date_arg(raw: str) -> date:
    """argparse ``type`` for ISO ``YYYY-MM-DD`` dates."""
    try:
        return date.fromisoformat(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"not an ISO date: {raw!r}") from exc


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="schola-cli",
        description="Command-line tools for the Schola ERP workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upward from the working directory by default).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def _simple_spec(
    name: str,
    help_text: str,
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int],
    add_arguments: Callable[[argparse.ArgumentParser], None],
    *,
    mutates: bool,
) -> CommandSpec:
    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        sub = action.add_parser(name, help=help_text)
        add_arguments(sub)
        sub.set_defaults(command=name)
        return sub

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute, mutates=mutates)


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as invoices and payments."""
    specs = {
        "add-school": _simple_spec("add-school", "Register a school account.", run_add_school, _add_school_arguments, mutates=True),
        "add-lpo": _simple_spec("add-lpo", "Record a purchase order from a school.", run_add_lpo, _add_lpo_arguments, mutates=True),
        "procure": _simple_spec("procure", "Bring a new inventory batch into stock.", run_procure, _procure_arguments, mutates=True),
        "invoice": _simple_spec("invoice", "Invoice a school from inventory batches.", run_invoice, _invoice_arguments, mutates=True),
        "pay": _simple_spec("pay", "Record a payment received from a school.", run_pay, _pay_arguments, mutates=True),
        "expense": _simple_spec("expense", "Log an operating expense.", run_expense, _expense_arguments, mutates=True),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "dashboard": _simple_spec("dashboard", "Show headline KPIs and rankings.", run_dashboard, _no_arguments, mutates=False),
        "ledger": _simple_spec("ledger", "Show the cash ledger.", run_ledger, _ledger_arguments, mutates=False),
        "schools": _simple_spec("schools", "Show school balances.", run_schools, _no_arguments, mutates=False),
        "stock": _simple_spec("stock", "Show inventory batches.", run_stock, _stock_arguments, mutates=False),
        "aging": _simple_spec("aging", "Show receivables by age.", run_aging, _aging_arguments, mutates=False),
        "trend": _simple_spec("trend", "Show revenue and profit per calendar month.", run_trend, _no_arguments, mutates=False),
        "export-invoice": _simple_spec(
            "export-invoice", "Write an invoice as a PDF file.", run_export_invoice, _export_arguments, mutates=False
        ),
        "forecast": _simple_spec(
            "forecast", "Forecast item demand from sales history.", run_forecast, _forecast_arguments, mutates=False
        ),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _no_arguments(parser: argparse.ArgumentParser) -> None:
    return None


def _add_school_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--name", required=True)
    parser.add_argument("--principal", required=True)
    parser.add_argument("--credit-limit", type=decimal_arg, required=True)
    parser.add_argument("--phone", default=None)
    parser.add_argument("--contact", default=None, help="Address or other contact details.")


def _add_lpo_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--school-id", required=True)
    parser.add_argument("--lpo-number", required=True)
    parser.add_argument(
        "--item",
        dest="items",
        action="append",
        required=True,
        metavar="NAME=QTY",
        help="Ordered item; repeat for each line.",
    )
    parser.add_argument("--date", type=date_arg, default=None)


def _procure_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--item-name", required=True)
    parser.add_argument("--purchase-price", type=decimal_arg, required=True)
    parser.add_argument("--quantity", type=decimal_arg, required=True)
    parser.add_argument("--size", default=None)
    parser.add_argument("--supplier", default=None)
    parser.add_argument("--date", type=date_arg, default=None)


def _invoice_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--school-id", required=True)
    parser.add_argument(
        "--line",
        dest="lines",
        action="append",
        required=True,
        metavar="BATCH:QTY[:PRICE[:LPO_ITEM]]",
        help="Invoice line; repeat for each batch. Leave PRICE empty for the default markup.",
    )
    parser.add_argument("--extra-cost", type=decimal_arg, default=Decimal("0"))
    parser.add_argument("--lpo-id", default=None)
    parser.add_argument("--date", type=date_arg, default=None)
    parser.add_argument("--delivery-date", type=date_arg, default=None)
    parser.add_argument(
        "--accept-credit-overrun",
        action="store_true",
        help="Post the invoice even if it exceeds the school's credit limit.",
    )


def _pay_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--school-id", required=True)
    parser.add_argument("--amount", type=decimal_arg, required=True)
    parser.add_argument("--method", choices=[member.value for member in PaymentMethod], default=None)
    parser.add_argument("--reference", default=None)
    parser.add_argument("--bank-name", default=None)
    parser.add_argument("--cheque-date", type=date_arg, default=None)
    parser.add_argument("--date", type=date_arg, default=None)


def _expense_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--name", required=True)
    parser.add_argument("--category", choices=[member.value for member in ExpenseCategory], required=True)
    parser.add_argument("--amount", type=decimal_arg, required=True)
    parser.add_argument("--date", type=date_arg, default=None)


def _ledger_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--verify", action="store_true", help="Recompute running balances and report mismatches.")


def _stock_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--in-stock", action="store_true", help="Hide batches that are sold out.")


def _aging_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--as-of", type=date_arg, default=None)


def _export_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--invoice-number", required=True)
    parser.add_argument("--output-dir", type=Path, default=None)


def _forecast_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--item",
        dest="items",
        action="append",
        default=None,
        help="Item to forecast; repeat for each. Defaults to every item in stock.",
    )


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    return core_logic.load_runtime_context(Path(config_path) if config_path is not None else None)


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def parse_lpo_item(raw: str) -> core_logic.LPOItemCommand:
    """Parse ``NAME=QTY`` into an LPO item command."""
    name, separator, quantity = raw.rpartition("=")
    if not separator or not name.strip():
        raise ValueError(f"LPO item must look like NAME=QTY: {raw!r}")
    try:
        return core_logic.LPOItemCommand(item_name=name.strip(), quantity_ordered=Decimal(quantity))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid quantity in LPO item: {raw!r}") from exc


def parse_invoice_line(raw: str) -> core_logic.InvoiceLineCommand:
    """Parse ``BATCH:QTY[:PRICE[:LPO_ITEM]]`` into an invoice line command."""
    parts = raw.split(":")
    if len(parts) < 2 or len(parts) > 4 or not parts[0].strip():
        raise ValueError(f"Invoice line must look like BATCH:QTY[:PRICE[:LPO_ITEM]]: {raw!r}")
    batch_id, quantity = parts[0].strip(), parts[1]
    price = parts[2].strip() if len(parts) > 2 else ""
    lpo_item = parts[3].strip() if len(parts) > 3 else ""
    try:
        return core_logic.InvoiceLineCommand(
            batch_id=batch_id,
            quantity=Decimal(quantity),
            selling_price=Decimal(price) if price else None,
            lpo_item_id=lpo_item or None,
        )
    except InvalidOperation as exc:
        raise ValueError(f"Invalid number in invoice line: {raw!r}") from exc


def translate_add_school(args: argparse.Namespace) -> core_logic.AddSchoolCommand:
    """Translate CLI args into an add-school command object."""
    return core_logic.AddSchoolCommand(
        school_name=args.name,
        principal_name=args.principal,
        credit_limit=args.credit_limit,
        phone_number=args.phone,
        contact_details=args.contact,
    )


def translate_add_lpo(args: argparse.Namespace) -> core_logic.AddLPOCommand:
    """Translate CLI args into an add-LPO command object."""
    return core_logic.AddLPOCommand(
        school_id=args.school_id,
        lpo_number=args.lpo_number,
        items=tuple(parse_lpo_item(raw) for raw in args.items),
        date_received=args.date,
    )


def translate_procure(args: argparse.Namespace) -> core_logic.ProcureCommand:
    """Translate CLI args into a procurement command object."""
    return core_logic.ProcureCommand(
        item_name=args.item_name,
        purchase_price=args.purchase_price,
        quantity_procured=args.quantity,
        size=args.size,
        supplier=args.supplier,
        procurement_date=args.date,
    )


def translate_invoice(args: argparse.Namespace) -> core_logic.RecordInvoiceCommand:
    """Translate CLI args into an invoice command object."""
    return core_logic.RecordInvoiceCommand(
        school_id=args.school_id,
        lines=tuple(parse_invoice_line(raw) for raw in args.lines),
        extra_cost=args.extra_cost,
        lpo_id=args.lpo_id,
        invoice_date=args.date,
        delivery_date=args.delivery_date,
        accept_credit_overrun=args.accept_credit_overrun,
    )


def translate_pay(args: argparse.Namespace) -> core_logic.RecordPaymentCommand:
    """Translate CLI args into a payment command object."""
    return core_logic.RecordPaymentCommand(
        school_id=args.school_id,
        amount=args.amount,
        method=PaymentMethod(args.method) if args.method else None,
        reference=args.reference,
        bank_name=args.bank_name,
        cheque_date=args.cheque_date,
        payment_date=args.date,
    )


def translate_expense(args: argparse.Namespace) -> core_logic.RecordExpenseCommand:
    """Translate CLI args into an expense command object."""
    return core_logic.RecordExpenseCommand(
        expense_name=args.name,
        category=ExpenseCategory(args.category),
        amount=args.amount,
        expense_date=args.date,
    )


def run_add_school(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    school = core_logic.add_school(context, translate_add_school(args))
    print(f"Added school {school.school_id}: {school.school_name}")
    return EXIT_OK


def run_add_lpo(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    record = core_logic.add_lpo(context, translate_add_lpo(args))
    print(f"Recorded LPO {record.lpo.lpo_number} ({record.lpo.lpo_id})")
    for item in record.items:
        print(f"  {item.lpo_item_id}  {item.item_name} x {item.quantity_ordered}")
    return EXIT_OK


def run_procure(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    result = core_logic.record_procurement(context, translate_procure(args))
    print(f"Recorded batch {result.record.batch_id}; ledger balance {result.ledger_entry.balance}")
    return EXIT_OK


def run_invoice(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    result = core_logic.record_invoice(context, translate_invoice(args))
    invoice = result.record
    print(
        f"Recorded invoice {invoice.invoice_number}: revenue {invoice.total_revenue}, "
        f"margin {invoice.margin_percent}%; ledger balance {result.ledger_entry.balance}"
    )
    return EXIT_OK


def run_pay(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    result = core_logic.record_payment(context, translate_pay(args))
    print(
        f"Recorded payment {result.record.payment_id} against {result.record.invoice_id}; "
        f"ledger balance {result.ledger_entry.balance}"
    )
    return EXIT_OK


def run_expense(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    result = core_logic.record_expense(context, translate_expense(args))
    print(f"Recorded expense {result.record.expense_id}; ledger balance {result.ledger_entry.balance}")
    return EXIT_OK


def _print_rows(headers: Sequence[str], rows: Iterable[Sequence[object]]) -> None:
    table: List[Tuple[str, ...]] = [tuple(headers)] + [tuple(str(value) for value in row) for row in rows]
    widths = [max(len(row[index]) for row in table) for index in range(len(headers))]
    for row in table:
        print("  ".join(value.ljust(width) for value, width in zip(row, widths)).rstrip())


def run_dashboard(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    dashboard = reports.build_dashboard(context)
    summary = dashboard.summary
    currency = context.settings.currency
    _print_rows(
        ("Metric", "Value"),
        [
            ("Revenue", f"{currency} {summary.revenue}"),
            ("COGS", f"{currency} {summary.cogs}"),
            ("Gross profit", f"{currency} {summary.gross_profit}"),
            ("Expenses", f"{currency} {summary.total_expenses}"),
            ("Net profit", f"{currency} {summary.net_profit}"),
            ("Receivables", f"{currency} {summary.receivables}"),
            ("Inventory value", f"{currency} {summary.inventory_value}"),
            ("Cash balance", f"{currency} {summary.cash_balance}"),
            ("Inventory turnover", summary.inventory_turnover),
        ],
    )
    print()
    _print_rows(("Top item", "Profit"), [(item.item_name, item.profit) for item in dashboard.top_items])
    print()
    _print_rows(
        ("Slowest payer", "Avg days", "Outstanding"),
        [(payer.school_name, payer.average_days, payer.outstanding_balance) for payer in dashboard.slowest_payers],
    )
    if dashboard.low_margin:
        print()
        _print_rows(
            ("Low-margin invoice", "Margin %"),
            [(invoice.invoice_number, invoice.margin_percent) for invoice in dashboard.low_margin],
        )
    return EXIT_OK


def run_ledger(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    entries = core_logic.list_ledger(context)
    _print_rows(
        ("Date", "Type", "Reference", "Debit", "Credit", "Balance"),
        [(e.entry_date, e.entry_type, e.reference, e.debit, e.credit, e.balance) for e in entries],
    )
    if getattr(args, "verify", False):
        mismatches = core_logic.verify_ledger(context)
        if mismatches:
            print(f"{len(mismatches)} ledger entries carry an inconsistent balance")
            return EXIT_FAILURE
        print("Ledger balances are consistent")
    return EXIT_OK


def run_schools(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    _print_rows(
        ("ID", "School", "Invoiced", "Paid", "Outstanding", "Limit"),
        [
            (s.school_id, s.school_name, s.total_invoiced, s.total_paid, s.outstanding_balance, s.credit_limit)
            for s in core_logic.list_schools(context)
        ],
    )
    return EXIT_OK


def run_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    batches = core_logic.list_inventory(context, in_stock_only=getattr(args, "in_stock", False))
    _print_rows(
        ("Batch", "Item", "Size", "Supplier", "Cost", "Remaining", "Procured"),
        [
            (b.batch_id, b.item_name, b.size or "", b.supplier or "", b.purchase_price, b.quantity_remaining, b.quantity_procured)
            for b in batches
        ],
    )
    return EXIT_OK


def run_aging(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    today = getattr(args, "as_of", None) or core_logic.current_date()
    buckets = reports.receivables_aging(core_logic.list_invoices(context), today)
    _print_rows(("Age", "Open balance"), list(buckets.items()))
    return EXIT_OK


def run_trend(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    trend = reports.monthly_trend(core_logic.list_invoices(context))
    _print_rows(("Month", "Revenue", "Profit"), [(m.month, m.revenue, m.profit) for m in trend])
    return EXIT_OK


def run_export_invoice(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    path = invoice_export.export_invoice(context, args.invoice_number, args.output_dir)
    print(f"Wrote {path}")
    return EXIT_OK


def run_forecast(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    backend = forecast.build_backend(context.settings)
    insights = forecast.forecast_from_context(context, backend, getattr(args, "items", None))
    if not insights:
        print("No forecast available")
        return EXIT_FAILURE
    _print_rows(
        ("Item", "Demand 30d", "Reorder", "Stockout", "Insight"),
        [
            (i.item_name, i.predicted_demand, i.suggested_reorder, i.estimated_stockout_date, i.insight)
            for i in insights
        ],
    )
    return EXIT_OK


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.CreditLimitExceeded):
        log.error("%s (re-run with --accept-credit-overrun to post anyway)", error)
        return EXIT_CREDIT_LIMIT
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return EXIT_BUSINESS_RULE
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return EXIT_MISSING_FILE
    log.error("%s", error)
    return EXIT_FAILURE


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == EXIT_OK and command_table[args.command].mutates:
            persist_workbook(context)
        return exit_code
    except Exception as error:
        return handle_cli_error(error)
