"""Field-level validation messages."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from taxminder.models import Client, TemplateStep
from taxminder.validation import field_errors


def test_field_errors_name_each_field():
    with pytest.raises(ValidationError) as exc:
        Client(id="acme", company_name="Acme Ltd", client_type="Charity",
               vat_stagger_group=4, year_end_date="31/01/2026")
    fields = {e["field"] for e in field_errors(exc.value)}
    assert fields == {"client_type", "vat_stagger_group", "year_end_date"}
    assert all(e["message"] for e in field_errors(exc.value))


def test_negative_delay_rejected():
    with pytest.raises(ValidationError) as exc:
        TemplateStep(step_number=1, delay_days=-1, subject="s", body="b")
    assert field_errors(exc.value)[0]["field"] == "delay_days"
