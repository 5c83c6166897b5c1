"""Shared fixtures: a throwaway sqlite database with the default templates loaded."""

from __future__ import annotations

from datetime import date

import pytest

from taxminder import db
from taxminder.catalog import onboard_client, seed_templates
from taxminder.config import Settings
from taxminder.integrations.bank_holidays import reset_shared_caches
from taxminder.models import Client, ClientType

# England & Wales bank holidays used across the suite
HOLIDAYS = frozenset({
    "2025-12-25", "2025-12-26",
    "2026-01-01", "2026-04-03", "2026-04-06", "2026-05-04", "2026-05-25",
    "2026-08-31", "2026-12-25", "2026-12-28",
    "2027-01-01",
})


@pytest.fixture(autouse=True)
def fresh_holiday_cache():
    reset_shared_caches()
    yield
    reset_shared_caches()


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(data_dir=str(tmp_path), lock_ttl_seconds=60, send_hour=None,
                    auto_rollover=False, accountant_name="PhaseTwo")


@pytest.fixture()
def c(tmp_path):
    with db.conn(tmp_path / "taxminder.db") as conn:
        seed_templates(conn)
        yield conn


@pytest.fixture()
def add_client(c):
    """Onboard a client with sensible defaults; keyword args override."""
    def _add(client_id: str = "acme", **kw) -> Client:
        fields = {
            "id": client_id,
            "company_name": "Acme Ltd",
            "client_type": ClientType.LIMITED_COMPANY,
            "email": "accounts@acme.example",
            "year_end_date": date(2026, 1, 31),
        }
        fields.update(kw)
        client = Client(**fields)
        onboard_client(c, client)
        return client
    return _add
