"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
import os
from decimal import Decimal
from pathlib import Path

import openpyxl
from openpyxl.workbook import Workbook as OpenpyxlWorkbook
import pytest

from schola_erp import constants, data_manager  # noqa: E402


SCHOOLS = constants.SheetName.SCHOOLS.value
INVENTORY = constants.SheetName.INVENTORY.value
LEDGER = constants.SheetName.LEDGER.value


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    result = data_manager.find_config_file(config_file)
    assert result == config_file


def test_find_config_file_discovers_in_parent_directory(tmp_path, monkeypatch):
    """Auto-discovery should walk up from the working directory."""

    config_file = tmp_path / "config.ini"
    config_file.write_text("[System]\nDataFile=schola_master.xlsx")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    assert data_manager.find_config_file() == config_file


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    """Absent configuration should surface a clear FileNotFoundError."""

    monkeypatch.chdir(tmp_path)
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_loads_sections(config_file: Path):
    """read_config should return a populated ConfigParser."""

    parser = data_manager.read_config(config_file)
    assert parser.get("System", "BusinessName") == "Test Supplies"
    assert parser.get("Defaults", "PaymentMethod") == "Cheque"


def test_read_config_missing_file_raises(tmp_path):
    """Missing files should propagate a FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile entries should be anchored to the config location."""

    parser = configparser.ConfigParser()
    bundle = config_factory(make_relative=True)
    parser.read(bundle.config_path)
    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)
    assert settings.data_file == (bundle.config_path.parent / bundle.workbook_path.name).resolve()
    assert settings.business_name == "Test Supplies"
    assert settings.selling_markup == Decimal("1.15")
    assert settings.low_margin_threshold == Decimal("10")


def test_parse_settings_falls_back_to_defaults(tmp_path):
    """Only [System] is mandatory; the other sections have defaults."""

    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataFile=data.xlsx\nBusinessName=Acme\nSchemaVersion=1.0.0\n")
    settings = data_manager.parse_settings(parser, base_path=tmp_path)

    assert settings.currency == constants.DEFAULT_CURRENCY
    assert settings.default_payment_method == constants.DEFAULT_PAYMENT_METHOD
    assert settings.selling_markup == constants.DEFAULT_SELLING_MARKUP
    assert settings.low_margin_threshold == constants.DEFAULT_LOW_MARGIN_THRESHOLD
    assert settings.forecast_model == constants.DEFAULT_FORECAST_MODEL


def test_parse_settings_reads_forecast_model(tmp_path):
    parser = configparser.ConfigParser()
    parser.read_string(
        "[System]\nDataFile=data.xlsx\nBusinessName=Acme\nSchemaVersion=1.0.0\n"
        "[Forecast]\nModel=gemini-custom\n"
    )

    assert data_manager.parse_settings(parser, base_path=tmp_path).forecast_model == "gemini-custom"


def test_parse_settings_requires_expected_sections(tmp_path):
    """Missing keys should result in a descriptive KeyError."""

    parser = configparser.ConfigParser()
    parser.read_string("[Other]\nvalue=1")
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


def test_parse_settings_rejects_bad_decimal(tmp_path):
    parser = configparser.ConfigParser()
    parser.read_string(
        "[System]\nDataFile=data.xlsx\nBusinessName=Acme\nSchemaVersion=1.0.0\n"
        "[Defaults]\nSellingMarkup=lots\n"
    )
    with pytest.raises(ValueError):
        data_manager.parse_settings(parser, base_path=tmp_path)


def test_open_workbook_returns_openpyxl_instance(master_workbook_path):
    """open_workbook should hand back a loaded Workbook object."""

    workbook = data_manager.open_workbook(master_workbook_path)
    assert isinstance(workbook, OpenpyxlWorkbook)
    assert data_manager.missing_sheets(workbook) == []


def test_open_workbook_missing_file_raises(tmp_path):
    """Missing workbook files should yield FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_missing_sheets_lists_absent_collections():
    workbook = openpyxl.Workbook()
    workbook.active.title = SCHOOLS

    missing = data_manager.missing_sheets(workbook)

    assert SCHOOLS not in missing
    assert LEDGER in missing


def test_save_workbook_with_destination_creates_copy(master_workbook_path, tmp_path, make_school):
    """Providing a destination should create a new file independent of the source."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_record(workbook, make_school("SCH-9"))
    copy_path = tmp_path / "nested" / "copy.xlsx"
    data_manager.save_workbook(workbook, destination=copy_path)

    copy = openpyxl.load_workbook(copy_path)
    ids = [row[0] for row in copy[SCHOOLS].iter_rows(min_row=2, values_only=True)]
    assert ids == ["SCH-9"]


def test_refresh_workbook_returns_new_instance(master_workbook_path, make_batch):
    """refresh_workbook should return a freshly loaded workbook from disk."""

    original = data_manager.open_workbook(master_workbook_path)
    data_manager.append_record(original, make_batch("BAT-7"))
    data_manager.save_workbook(original, master_workbook_path)

    refreshed = data_manager.refresh_workbook(master_workbook_path)
    assert refreshed is not original
    assert [batch.batch_id for batch in data_manager.iter_inventory(refreshed)] == ["BAT-7"]


def test_workbook_stamp_tracks_file_changes(master_workbook_path, tmp_path):
    stamp = data_manager.workbook_stamp(master_workbook_path)
    assert stamp is not None

    os.utime(master_workbook_path, ns=(stamp + 5_000_000_000, stamp + 5_000_000_000))

    assert data_manager.workbook_stamp(master_workbook_path) != stamp
    assert data_manager.workbook_stamp(tmp_path / "nope.xlsx") is None


def test_school_round_trip_preserves_history_and_decimals(master_workbook_path, make_school):
    """Payment-day histories are stored as comma text and decoded back to ints."""

    workbook = data_manager.open_workbook(master_workbook_path)
    school = make_school(
        "SCH-2",
        outstanding_balance=Decimal("820.50"),
        total_invoiced=Decimal("820.50"),
        payment_days_history=(12, 40),
        phone_number=None,
    )
    data_manager.append_record(workbook, school)
    data_manager.save_workbook(workbook, master_workbook_path)

    stored = openpyxl.load_workbook(master_workbook_path)[SCHOOLS]
    assert stored.cell(row=2, column=10).value == "12,40"

    reloaded = list(data_manager.iter_schools(data_manager.open_workbook(master_workbook_path)))
    assert reloaded == [school]


def test_iter_records_skips_blank_rows(master_workbook_path, make_batch):
    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_record(workbook, make_batch("BAT-1"))
    workbook[INVENTORY].append([None] * len(data_manager.SHEET_COLUMNS[INVENTORY]))
    data_manager.append_record(workbook, make_batch("BAT-2"))

    assert [batch.batch_id for batch in data_manager.iter_inventory(workbook)] == ["BAT-1", "BAT-2"]


def test_deserialize_invoice_keeps_missing_lpo_as_none():
    row = ("IVC-1", "INV-0001", "2026-02-01", "2026-02-02", "SCH-1", None, None, 820, 500, 320, 39.02, 0)

    invoice = data_manager.deserialize_invoice(row)

    assert invoice.lpo_id is None
    assert invoice.extra_cost == Decimal("0")
    assert invoice.margin_percent == Decimal("39.02")


def test_binding_for_record_rejects_unknown_types():
    with pytest.raises(TypeError):
        data_manager.binding_for_record(object())


def test_locate_row_finds_key(master_workbook_path, make_school):
    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_record(workbook, make_school("SCH-1"))
    data_manager.append_record(workbook, make_school("SCH-2"))

    assert data_manager.locate_row(workbook, SCHOOLS, "SchoolID", "SCH-2") == 3
    assert data_manager.locate_row(workbook, SCHOOLS, "SchoolID", "SCH-3") is None
    with pytest.raises(KeyError):
        data_manager.locate_row(workbook, SCHOOLS, "Nope", "SCH-1")


def test_sheet_readers_cover_every_sheet(master_workbook_path, make_batch):
    """Each sheet has a typed reader returning the rows of that sheet only."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_record(workbook, make_batch("BAT-1"))

    assert set(data_manager.SHEET_READERS) == set(data_manager.SHEET_COLUMNS)
    assert list(data_manager.SHEET_READERS[INVENTORY](workbook)) == [make_batch("BAT-1")]
    assert list(data_manager.iter_invoices(workbook)) == []


def test_write_batch_update_merges_named_columns(master_workbook_path, make_school):
    """Only the supplied columns should change."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_record(workbook, make_school("SCH-1"))

    batch = data_manager.WriteBatch(workbook)
    batch.update(
        SCHOOLS,
        "SCH-1",
        field_values={"OutstandingBalance": Decimal("250"), "PaymentDaysHistory": (3,)},
    )
    batch.commit()

    (school,) = data_manager.iter_schools(workbook)
    assert school.outstanding_balance == Decimal("250")
    assert school.payment_days_history == (3,)
    assert school.school_name == "Hill Academy"


def test_write_batch_update_unknown_column_raises(master_workbook_path, make_school):
    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_record(workbook, make_school("SCH-1"))

    batch = data_manager.WriteBatch(workbook)
    batch.update(SCHOOLS, "SCH-1", field_values={"Unknown": 1})
    with pytest.raises(KeyError):
        batch.commit()


# ---------------------------------------------------------------------------
# Batched writes
# ---------------------------------------------------------------------------


def test_write_batch_applies_appends_and_updates(master_workbook_path, make_school, make_ledger_entry):
    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_record(workbook, make_school("SCH-1"))

    batch = data_manager.WriteBatch(workbook)
    batch.append(make_ledger_entry("LED-1", credit=Decimal("100"), balance=Decimal("100")))
    batch.update(SCHOOLS, "SCH-1", field_values={"TotalPaid": Decimal("100")})
    batch.commit()

    assert [entry.entry_id for entry in data_manager.iter_ledger(workbook)] == ["LED-1"]
    assert next(iter(data_manager.iter_schools(workbook))).total_paid == Decimal("100")


def test_write_batch_validates_before_touching_cells(master_workbook_path, make_school, make_ledger_entry):
    """A bad update reference fails the batch before any append happens."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_record(workbook, make_school("SCH-1"))

    batch = data_manager.WriteBatch(workbook)
    batch.append(make_ledger_entry("LED-1"))
    batch.update(SCHOOLS, "SCH-404", field_values={"TotalPaid": Decimal("1")})

    with pytest.raises(KeyError):
        batch.commit()

    assert list(data_manager.iter_ledger(workbook)) == []


def test_write_batch_rolls_back_when_apply_fails(master_workbook_path, make_school, make_ledger_entry, monkeypatch):
    """Appended rows are removed and overwritten cells restored on failure."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_record(workbook, make_school("SCH-1"))
    before = list(data_manager.iter_schools(workbook))

    batch = data_manager.WriteBatch(workbook)
    batch.update(SCHOOLS, "SCH-1", field_values={"TotalPaid": Decimal("5")})
    batch.append(make_ledger_entry("LED-1"))
    batch.append(make_ledger_entry("LED-2"))

    real_append = data_manager.append_record
    calls = {"count": 0}

    def flaky_append(wb, record):
        calls["count"] += 1
        if calls["count"] == 2:
            raise OSError("disk full")
        return real_append(wb, record)

    monkeypatch.setattr(data_manager, "append_record", flaky_append)

    with pytest.raises(OSError):
        batch.commit()

    assert list(data_manager.iter_schools(workbook)) == before
    assert list(data_manager.iter_ledger(workbook)) == []
    assert workbook[LEDGER].max_row == 1


def test_write_batch_commits_once(master_workbook_path, make_ledger_entry):
    workbook = data_manager.open_workbook(master_workbook_path)
    batch = data_manager.WriteBatch(workbook)
    batch.append(make_ledger_entry())
    batch.commit()

    with pytest.raises(RuntimeError):
        batch.commit()


def test_write_batch_rejects_unknown_sheet(master_workbook_path):
    batch = data_manager.WriteBatch(data_manager.open_workbook(master_workbook_path))
    with pytest.raises(KeyError):
        batch.update("Nope", "X", field_values={})
