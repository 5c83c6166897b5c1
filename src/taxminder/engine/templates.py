"""Template inheritance and placeholder substitution.

A client's effective reminder steps are the live base template with that
client's per-step field overrides layered on top. Only fields that were
actually overridden are replaced, so edits to the base template keep
flowing through to every field a client has not customised.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from datetime import date

from taxminder.engine.working_days import utc_today
from taxminder.models import OverrideEntry, TemplateStep


AVAILABLE_PLACEHOLDERS: dict[str, str] = {
    "client_name": "Client's company or trading name",
    "deadline": "Deadline date in long format (e.g. 31 January 2026)",
    "deadline_short": "Deadline date in short format (e.g. 31/01/2026)",
    "filing_type": "Type of filing (e.g. Corporation Tax Payment)",
    "days_until_deadline": "Number of days remaining until deadline",
    "accountant_name": "Practice name",
}

_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")


def _valid_overrides(base_steps: list[TemplateStep],
                     overrides: Iterable[OverrideEntry]) -> dict[int, OverrideEntry]:
    """Index overrides by step, dropping indices with no base step (last one wins)."""
    by_index: dict[int, OverrideEntry] = {}
    for o in overrides:
        if 0 <= o.step_index < len(base_steps):
            by_index[o.step_index] = o
    return by_index


def resolve_template_for_client(base_steps: list[TemplateStep],
                                overrides: Iterable[OverrideEntry]) -> list[TemplateStep]:
    """Merge base template steps with a client's per-step field overrides."""
    by_index = _valid_overrides(base_steps, overrides)
    resolved: list[TemplateStep] = []
    for i, step in enumerate(base_steps):
        o = by_index.get(i)
        fields = o.overridden_fields.present() if o else {}
        resolved.append(step.model_copy(update=fields) if fields else step)
    return resolved


def get_overridden_field_names(base_steps: list[TemplateStep],
                               overrides: Iterable[OverrideEntry]) -> dict[int, list[str]]:
    """Map step index -> names of the fields the client has overridden."""
    result: dict[int, list[str]] = {}
    for i, o in _valid_overrides(base_steps, overrides).items():
        names = list(o.overridden_fields.present())
        if names:
            result[i] = names
    return result


def substitute_variables(template: str, context: Mapping[str, object],
                         today: date | None = None) -> str:
    """Replace ``{{placeholder}}`` tokens; unknown placeholders are left as-is.

    ``context`` needs ``client_name``, ``deadline`` (a date) and ``filing_type``;
    ``accountant_name`` is optional.
    """
    today = today or utc_today()
    deadline: date = context["deadline"]  # type: ignore[assignment]
    values = {
        "client_name": str(context.get("client_name", "")),
        "deadline": deadline.strftime("%d %B %Y"),
        "deadline_short": deadline.strftime("%d/%m/%Y"),
        "filing_type": str(context.get("filing_type", "")),
        "days_until_deadline": str((deadline - today).days),
        "accountant_name": str(context.get("accountant_name") or "PhaseTwo"),
    }
    return _PLACEHOLDER.sub(lambda m: values.get(m.group(1), m.group(0)), template)
