"""Filing type and default template catalog.

Loads the YAML reference data shipped in ``taxminder/data`` and derives a
client's filing assignments at onboarding.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

import yaml

from taxminder import db
from taxminder.models import Client, FilingAssignment, FilingType, ReminderTemplate

DATA_DIR = Path(__file__).parent / "data"


def _load_yaml(name: str, data_dir: str | Path | None = None) -> dict:
    path = Path(data_dir or DATA_DIR) / f"{name}.yaml"
    if not path.exists():
        return {}
    with open(path) as f:
        return yaml.safe_load(f) or {}


@lru_cache(maxsize=None)
def filing_types() -> dict[str, FilingType]:
    """All filing types, keyed by id."""
    data = _load_yaml("filing_types")
    return {ft["id"]: FilingType.model_validate(ft) for ft in data.get("filing_types", [])}


def filing_type_name(filing_type_id: str) -> str:
    ft = filing_types().get(filing_type_id)
    return ft.name if ft else filing_type_id


def default_templates(data_dir: str | Path | None = None) -> list[ReminderTemplate]:
    data = _load_yaml("templates", data_dir)
    return [ReminderTemplate.model_validate(t) for t in data.get("templates", [])]


def derive_assignments(client: Client) -> list[FilingAssignment]:
    """Filing types that apply to a client, from client type and VAT registration."""
    assignments = []
    for ft in filing_types().values():
        if client.client_type not in ft.applicable_client_types:
            continue
        if ft.requires_vat and not client.vat_registered:
            continue
        assignments.append(FilingAssignment(client_id=client.id, filing_type_id=ft.id))
    return assignments


def seed_templates(c, data_dir: str | Path | None = None) -> int:
    """Insert the default templates; existing templates are left as edited."""
    existing = {t.id for t in db.list_templates(c, active_only=False)}
    added = 0
    for t in default_templates(data_dir):
        if t.id in existing:
            continue
        db.save_template(c, t)
        added += 1
    return added


def onboard_client(c, client: Client) -> list[FilingAssignment]:
    """Save a new client and create its derived filing assignments."""
    with db.transaction(c):
        db.save_client(c, client)
        assignments = derive_assignments(client)
        for a in assignments:
            db.upsert_assignment(c, a)
        db.log(c, client.id, "client_onboarded",
               detail={"filing_types": [a.filing_type_id.value for a in assignments]})
    return assignments
