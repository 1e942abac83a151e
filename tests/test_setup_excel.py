"""Tests for the workbook bootstrap script."""

from __future__ import annotations

import openpyxl
import pytest

from cattle_ledger import data_manager, setup_excel


def test_create_master_workbook_writes_bold_headers(tmp_path):
    path = setup_excel.create_master_workbook(tmp_path / "ledger.xlsx")

    workbook = openpyxl.load_workbook(path)
    assert workbook.sheetnames == list(data_manager.SHEET_COLUMNS)
    for sheet_name, columns in data_manager.SHEET_COLUMNS.items():
        header = next(workbook[sheet_name].iter_rows(min_row=1, max_row=1))
        assert [cell.value for cell in header] == list(columns)
        assert all(cell.font.bold for cell in header)


def test_create_master_workbook_refuses_to_overwrite(tmp_path):
    path = setup_excel.create_master_workbook(tmp_path / "ledger.xlsx")

    with pytest.raises(FileExistsError):
        setup_excel.create_master_workbook(path)
    assert setup_excel.create_master_workbook(path, overwrite=True) == path


def test_main_creates_workbook_from_config(config_factory, capsys):
    bundle = config_factory()
    bundle.workbook_path.unlink()

    assert setup_excel.main(["--config", str(bundle.config_path)]) == 0
    assert bundle.workbook_path.exists()
    assert "SUCCESS" in capsys.readouterr().out


def test_main_reports_existing_workbook(config_factory, capsys):
    bundle = config_factory()

    assert setup_excel.main(["--config", str(bundle.config_path)]) == 1
    assert "--force" in capsys.readouterr().out


def test_main_reports_missing_config(tmp_path):
    assert setup_excel.main(["--config", str(tmp_path / "absent.ini")]) == 1
