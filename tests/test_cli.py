"""CLI smoke tests."""

from __future__ import annotations

import pytest
from typer.testing import CliRunner

from taxminder.cli import app

runner = CliRunner()


@pytest.fixture(autouse=True)
def data_dir(tmp_path, monkeypatch):
    monkeypatch.setenv("TAXMINDER_DATA_DIR", str(tmp_path))
    return tmp_path


def test_init_creates_database(data_dir):
    result = runner.invoke(app, ["init"])
    assert result.exit_code == 0
    assert "Templates added: 5" in result.output
    assert (data_dir / "taxminder.db").exists()


def test_client_add_reports_field_errors():
    result = runner.invoke(app, ["client", "add", "acme", "Acme Ltd", "--stagger", "5"])
    assert result.exit_code == 1
    assert "vat_stagger_group" in result.output


def test_client_show_unknown():
    runner.invoke(app, ["init"])
    result = runner.invoke(app, ["client", "show", "ghost"])
    assert result.exit_code == 1
    assert "not found" in result.output


def test_detect():
    result = runner.invoke(app, ["detect", "VAT return", "Please find attached the receipts"])
    assert result.exit_code == 0
    assert "documents detected" in result.output
    assert "vat_return" in result.output
