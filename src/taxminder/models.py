"""Core data models for clients, filings, templates, and the reminder queue."""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class FilingTypeId(str, Enum):
    CORPORATION_TAX_PAYMENT = "corporation_tax_payment"
    CT600_FILING = "ct600_filing"
    COMPANIES_HOUSE = "companies_house"
    VAT_RETURN = "vat_return"
    SELF_ASSESSMENT = "self_assessment"


# Filing types whose rollover advances the client's year-end date
ANNUAL_FILING_TYPES = frozenset({
    FilingTypeId.CORPORATION_TAX_PAYMENT.value,
    FilingTypeId.CT600_FILING.value,
    FilingTypeId.COMPANIES_HOUSE.value,
})


class ClientType(str, Enum):
    LIMITED_COMPANY = "Limited Company"
    SOLE_TRADER = "Sole Trader"
    PARTNERSHIP = "Partnership"
    LLP = "LLP"


class ReminderStatus(str, Enum):
    SCHEDULED = "scheduled"
    PENDING = "pending"
    RESCHEDULED = "rescheduled"
    SENT = "sent"
    CANCELLED = "cancelled"
    FAILED = "failed"
    RECORDS_RECEIVED = "records_received"


# Statuses the queue builder may delete or rewrite
MUTABLE_STATUSES = frozenset({
    ReminderStatus.SCHEDULED.value,
    ReminderStatus.PENDING.value,
    ReminderStatus.RESCHEDULED.value,
})

# Statuses whose content may be updated in place on rebuild
REWRITABLE_STATUSES = frozenset({
    ReminderStatus.SCHEDULED.value,
    ReminderStatus.RESCHEDULED.value,
})


class FilingStatus(str, Enum):
    COMPLETED = "completed"
    RECORDS_RECEIVED = "records_received"
    OVERDUE = "overdue"
    CRITICAL = "critical"        # < 1 week
    APPROACHING = "approaching"  # 1-4 weeks
    SCHEDULED = "scheduled"      # > 4 weeks
    NO_DEADLINE = "no_deadline"


# ---------------------------------------------------------------------------
# Reference data
# ---------------------------------------------------------------------------

class FilingType(BaseModel):
    id: str
    name: str
    description: str = ""
    applicable_client_types: list[ClientType] = Field(default_factory=list)
    requires_vat: bool = False


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class Client(BaseModel):
    id: str
    company_name: str
    client_type: ClientType = ClientType.LIMITED_COMPANY
    email: str = ""
    year_end_date: date | None = None
    vat_registered: bool = False
    vat_stagger_group: int | None = Field(default=None, ge=1, le=3)
    reminders_paused: bool = False
    records_received_for: list[str] = Field(default_factory=list)
    completed_for: list[str] = Field(default_factory=list)

    @field_validator("records_received_for", "completed_for")
    @classmethod
    def _dedupe(cls, v: list[str]) -> list[str]:
        return list(dict.fromkeys(v))


class FilingAssignment(BaseModel):
    client_id: str
    filing_type_id: FilingTypeId
    is_active: bool = True


class DeadlineOverride(BaseModel):
    client_id: str
    filing_type_id: FilingTypeId
    override_date: date
    reason: str = ""


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

class TemplateStep(BaseModel):
    model_config = {"frozen": True}

    step_number: int = Field(ge=1)
    delay_days: int = Field(ge=0)
    subject: str
    body: str


class ReminderTemplate(BaseModel):
    id: str
    name: str
    filing_type_id: FilingTypeId
    steps: list[TemplateStep] = Field(default_factory=list, max_length=5)
    is_active: bool = True


class StepFields(BaseModel):
    """Partial fields of a template step; unset fields fall through to the base."""

    subject: str | None = None
    body: str | None = None
    delay_days: int | None = Field(default=None, ge=0)

    def present(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True, exclude_none=True)


class OverrideEntry(BaseModel):
    step_index: int
    overridden_fields: StepFields = Field(default_factory=StepFields)


class ClientTemplateOverride(BaseModel):
    client_id: str
    template_id: str
    step_index: int = Field(ge=0)
    overridden_fields: StepFields


# ---------------------------------------------------------------------------
# Reminder queue
# ---------------------------------------------------------------------------

class ReminderQueueEntry(BaseModel):
    id: int | None = None
    client_id: str
    filing_type_id: str
    template_id: str
    step_index: int
    deadline_date: date
    send_date: date
    subject: str = ""
    body: str = ""
    resolved_subject: str | None = None
    resolved_body: str | None = None
    status: ReminderStatus = ReminderStatus.SCHEDULED
    queued_at: datetime | None = None

    @property
    def key(self) -> tuple[str, str, date, int]:
        return (self.client_id, self.filing_type_id, self.deadline_date, self.step_index)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

class BuildResult(BaseModel):
    created: int = 0
    updated: int = 0
    retired: int = 0
    skipped: int = 0
    clients: int = 0
    errors: list[str] = Field(default_factory=list)

    def merge(self, other: BuildResult) -> None:
        self.created += other.created
        self.updated += other.updated
        self.retired += other.retired
        self.skipped += other.skipped
        self.clients += other.clients
        self.errors.extend(other.errors)


class RolloverCandidate(BaseModel):
    client_id: str
    client_name: str
    filing_type_id: str
    deadline_date: date
    days_overdue: int
    next_deadline: date | None = None


class RolloverResult(BaseModel):
    success: bool
    client_id: str
    filing_type_id: str
    old_year_end: date | None = None
    new_year_end: date | None = None
    error: str | None = None
    queue_error: str | None = None


class BulkRolloverResult(BaseModel):
    results: list[RolloverResult] = Field(default_factory=list)

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def error_count(self) -> int:
        return sum(1 for r in self.results if not r.success)


class ProcessResult(BaseModel):
    queued: int = 0
    rolled_over: int = 0
    errors: list[str] = Field(default_factory=list)
    skipped: int = 0
    skipped_wrong_hour: bool = False
    build: BuildResult | None = None


class KeywordBreakdown(BaseModel):
    high_confidence: float = 0
    medium_confidence: float = 0
    document_types: float = 0
    action_verbs: float = 0
    typos: float = 0
    context_phrases: float = 0
    negative_indicators: float = 0
    has_attachments: float = 0

    def total(self) -> float:
        return sum(self.model_dump().values())


class KeywordDetection(BaseModel):
    score: float
    documents_detected: bool
    breakdown: KeywordBreakdown
    matched_keywords: list[str] = Field(default_factory=list)
