"""Template inheritance and placeholder substitution."""

from __future__ import annotations

from datetime import date

from taxminder.engine.templates import (
    AVAILABLE_PLACEHOLDERS,
    get_overridden_field_names,
    resolve_template_for_client,
    substitute_variables,
)
from taxminder.models import OverrideEntry, StepFields, TemplateStep

BASE = [
    TemplateStep(step_number=1, delay_days=60, subject="First notice", body="Please send records."),
    TemplateStep(step_number=2, delay_days=30, subject="Follow-up", body="We notice..."),
]


def test_no_overrides_returns_base():
    assert resolve_template_for_client(BASE, []) == BASE


def test_override_replaces_only_named_fields():
    overrides = [OverrideEntry(step_index=1,
                               overridden_fields=StepFields(delay_days=21, body="Custom body"))]
    resolved = resolve_template_for_client(BASE, overrides)
    assert resolved[0] == BASE[0]
    assert resolved[1].subject == "Follow-up"
    assert resolved[1].delay_days == 21
    assert resolved[1].body == "Custom body"
    assert resolved[1].step_number == 2


def test_base_edits_flow_through_unoverridden_fields():
    overrides = [OverrideEntry(step_index=1, overridden_fields=StepFields(body="Custom body"))]
    edited = [BASE[0], BASE[1].model_copy(update={"subject": "Second notice"})]
    resolved = resolve_template_for_client(edited, overrides)
    assert resolved[1].subject == "Second notice"
    assert resolved[1].body == "Custom body"


def test_out_of_range_override_is_ignored():
    overrides = [OverrideEntry(step_index=5, overridden_fields=StepFields(subject="Ghost"))]
    assert resolve_template_for_client(BASE, overrides) == BASE
    assert get_overridden_field_names(BASE, overrides) == {}


def test_overridden_field_names():
    overrides = [OverrideEntry(step_index=0, overridden_fields=StepFields(subject="Hi", delay_days=45))]
    assert get_overridden_field_names(BASE, overrides) == {0: ["subject", "delay_days"]}


def test_substitute_variables():
    text = "{{client_name}}: {{filing_type}} due {{deadline}} ({{deadline_short}}), " \
           "{{days_until_deadline}} days. {{accountant_name}} {{unknown}}"
    out = substitute_variables(text, {
        "client_name": "Acme Ltd",
        "deadline": date(2026, 1, 31),
        "filing_type": "Self Assessment",
    }, today=date(2026, 1, 1))
    assert out == ("Acme Ltd: Self Assessment due 31 January 2026 (31/01/2026), "
                   "30 days. PhaseTwo {{unknown}}")


def test_every_documented_placeholder_is_filled():
    text = " ".join("{{%s}}" % name for name in AVAILABLE_PLACEHOLDERS)
    out = substitute_variables(text, {"client_name": "Acme Ltd", "deadline": date(2026, 1, 31),
                                      "filing_type": "VAT Return"}, today=date(2026, 1, 1))
    assert "{{" not in out
