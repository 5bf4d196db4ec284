"""Shared pytest fixtures and utilities for Schola ERP tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator
from unittest.mock import Mock

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from schola_erp import cli, constants, core_logic, data_manager  # noqa: E402
from schola_erp.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "BusinessName = {business_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Defaults]\n"
    "Currency = Ksh\n"
    "PaymentMethod = Cheque\n"
    "SellingMarkup = 1.15\n\n"
    "[Policies]\n"
    "LowMarginThreshold = 10\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    business_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(*, subdir: str | None = None, filename: str = "schola_master.xlsx") -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        return create_master_workbook(base_dir / filename, overwrite=True)

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh master workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        business_name: str = "Test Supplies",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
    ) -> ConfigBundle:
        bundle_dir_name = f"bundle_{uuid.uuid4().hex}"
        workbook_path = workbook_factory(subdir=bundle_dir_name)
        bundle_dir = workbook_path.parent
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                business_name=business_name,
                schema_version=schema_version,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            business_name=business_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load a live runtime context over a fresh workbook through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="schola-cli", description="Schola CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


# ---------------------------------------------------------------------------
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "schola_master.xlsx",
        business_name="Test Supplies",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )


@pytest.fixture
def workbook() -> Mock:
    """Return a mock workbook object for business logic tests."""

    return Mock(name="workbook")


@pytest.fixture
def context(settings: data_manager.ConfigSettings, workbook: Mock) -> core_logic.RuntimeContext:
    """Assemble a runtime context from injected settings and workbook mocks."""

    return core_logic.RuntimeContext(settings=settings, workbook=workbook)


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply


# ---------------------------------------------------------------------------
# Row builders
# ---------------------------------------------------------------------------


@pytest.fixture
def make_school() -> Callable[..., data_manager.SchoolRow]:
    """Build a :class:`SchoolRow` with sensible defaults."""

    def _make(school_id: str = "SCH-1", **overrides) -> data_manager.SchoolRow:
        values = dict(
            school_id=school_id,
            school_name="Hill Academy",
            principal_name="J. Mwangi",
            phone_number="0700000000",
            contact_details="P.O. Box 1",
            credit_limit=Decimal("10000"),
            total_invoiced=Decimal("0"),
            total_paid=Decimal("0"),
            outstanding_balance=Decimal("0"),
            payment_days_history=(),
        )
        values.update(overrides)
        return data_manager.SchoolRow(**values)

    return _make


@pytest.fixture
def make_batch() -> Callable[..., data_manager.InventoryBatchRow]:
    """Build an :class:`InventoryBatchRow` with sensible defaults."""

    def _make(batch_id: str = "BAT-1", **overrides) -> data_manager.InventoryBatchRow:
        values = dict(
            batch_id=batch_id,
            item_name="Exercise Book",
            size="A4",
            supplier="Kenpaper",
            purchase_price=Decimal("50"),
            quantity_procured=Decimal("100"),
            quantity_remaining=Decimal("100"),
            procurement_date="2026-01-05",
        )
        values.update(overrides)
        return data_manager.InventoryBatchRow(**values)

    return _make


@pytest.fixture
def make_invoice() -> Callable[..., data_manager.InvoiceRow]:
    """Build an :class:`InvoiceRow` with sensible defaults."""

    def _make(invoice_id: str = "IVC-1", **overrides) -> data_manager.InvoiceRow:
        values = dict(
            invoice_id=invoice_id,
            invoice_number="INV-0001",
            invoice_date="2026-02-01",
            delivery_date="2026-02-01",
            school_id="SCH-1",
            lpo_id=None,
            extra_cost=Decimal("0"),
            total_revenue=Decimal("800"),
            total_cogs=Decimal("500"),
            gross_profit=Decimal("300"),
            margin_percent=Decimal("37.50"),
            amount_paid=Decimal("0"),
        )
        values.update(overrides)
        return data_manager.InvoiceRow(**values)

    return _make


@pytest.fixture
def make_invoice_item() -> Callable[..., data_manager.InvoiceItemRow]:
    """Build an :class:`InvoiceItemRow` with sensible defaults."""

    def _make(invoice_item_id: str = "IVI-1", **overrides) -> data_manager.InvoiceItemRow:
        values = dict(
            invoice_item_id=invoice_item_id,
            invoice_id="IVC-1",
            batch_id="BAT-1",
            item_name="Exercise Book",
            lpo_item_id=None,
            quantity=Decimal("10"),
            selling_price=Decimal("80"),
            cost_price=Decimal("50"),
        )
        values.update(overrides)
        return data_manager.InvoiceItemRow(**values)

    return _make


@pytest.fixture
def make_ledger_entry() -> Callable[..., data_manager.LedgerEntryRow]:
    """Build a :class:`LedgerEntryRow` with sensible defaults."""

    def _make(entry_id: str = "LED-1", **overrides) -> data_manager.LedgerEntryRow:
        values = dict(
            entry_id=entry_id,
            entry_date="2026-01-05",
            created_at="2026-01-05T09:00:00+00:00",
            entry_type=constants.LedgerEntryType.PURCHASE.value,
            reference="Procurement: Kenpaper - Exercise Book",
            debit=Decimal("0"),
            credit=Decimal("0"),
            balance=Decimal("0"),
        )
        values.update(overrides)
        return data_manager.LedgerEntryRow(**values)

    return _make
