"""Keyword scoring for inbound client emails.

Scores subject + body text for signs that a client is sending documents, and
guesses which filing the documents are for. A confident match feeds
``mark_records_received``.
"""

from __future__ import annotations

import logging

from taxminder.engine.queue_builder import mark_records_received
from taxminder.errors import TaxminderError
from taxminder.models import FilingTypeId, KeywordBreakdown, KeywordDetection

logger = logging.getLogger("taxminder.engine.keywords")

DETECTION_THRESHOLD = 2.0

# category -> (weight, phrases)
DOCUMENT_KEYWORDS: dict[str, tuple[float, tuple[str, ...]]] = {
    "high_confidence": (2.0, (
        "attached", "attachment", "attachments",
        "enclosed", "enclosure", "enclosures",
        "please find attached", "pfa", "find attached",
        "see attached", "attached please find",
        "kindly find attached", "attached herewith",
        "file attached", "files attached",
    )),
    "medium_confidence": (1.0, (
        "invoice", "invoices", "receipt", "receipts",
        "spreadsheet", "excel", "xlsx", "csv",
        "here's the", "here is the", "sending you",
        "sent you", "i've attached", "i have attached",
        "sharing the", "forwarding", "forwarded",
        "sending over", "sent over",
    )),
    "document_types": (0.5, (
        "document", "documents", "doc", "docs",
        "file", "files", "paperwork", "records",
        "vat receipt", "vat receipts", "purchase invoice",
        "sales invoice", "credit note", "debit note",
        "bank statement", "payslip", "payslips",
        "p60", "p45", "p11d", "sa302",
        "tax calculation", "tax return", "accounts",
        "annual accounts", "management accounts",
    )),
    "action_verbs": (0.5, (
        "sending", "sent", "submitting", "submitted",
        "providing", "provided", "uploading", "uploaded",
        "attaching", "returning", "returned",
        "completing", "completed", "sharing", "shared",
    )),
    "typos": (1.0, (
        "atached", "attachd", "attched",
        "receit", "recipt", "recpt",
        "invioce", "invoce",
        "spreedsheet", "exel",
        "documnet", "docuemnt",
    )),
    "context_phrases": (0.5, (
        "vat return", "year end", "tax documents",
        "hmrc documents", "companies house",
        "quarterly returns", "self assessment",
        "corporation tax", "as requested", "as discussed",
        "for your review", "for your records",
    )),
    "negative_indicators": (-2.0, (
        "can you send", "could you send", "please send",
        "need help", "question about", "when is",
        "what's the deadline", "reminder about",
    )),
}

ATTACHMENT_BONUS = 2.0


def _normalise(subject: str | None, body: str | None) -> str:
    return " ".join(p for p in (subject, body) if p).lower()


def detect_document_keywords(subject: str | None, body: str | None,
                             has_attachments: bool = False) -> KeywordDetection:
    """Score an email for document-sending intent (substring matching)."""
    text = _normalise(subject, body)
    breakdown = KeywordBreakdown()
    matched: list[str] = []

    for category, (weight, phrases) in DOCUMENT_KEYWORDS.items():
        for phrase in phrases:
            if phrase in text:
                setattr(breakdown, category, getattr(breakdown, category) + weight)
                matched.append(f"[NEGATIVE] {phrase}" if weight < 0 else phrase)

    if has_attachments:
        breakdown.has_attachments = ATTACHMENT_BONUS
        matched.append("[HAS ATTACHMENTS]")

    score = breakdown.total()
    return KeywordDetection(
        score=score,
        documents_detected=score >= DETECTION_THRESHOLD,
        breakdown=breakdown,
        matched_keywords=matched,
    )


def detect_filing_type(subject: str | None, body: str | None) -> str | None:
    """Most likely filing type mentioned in an email, most specific rules first."""
    text = _normalise(subject, body)

    if "vat" in text and any(w in text for w in ("return", "quarter", "quarterly")):
        return FilingTypeId.VAT_RETURN.value

    if any(w in text for w in ("corporation tax", "corp tax", "ct600")):
        if "payment" in text or "pay" in text:
            return FilingTypeId.CORPORATION_TAX_PAYMENT.value
        if any(w in text for w in ("return", "filing", "ct600")):
            return FilingTypeId.CT600_FILING.value
        return FilingTypeId.CORPORATION_TAX_PAYMENT.value

    if any(w in text for w in ("companies house", "annual accounts", "confirmation statement")):
        return FilingTypeId.COMPANIES_HOUSE.value

    if ("self assessment" in text or "sa302" in text
            or ("tax return" in text and ("personal" in text or "individual" in text))):
        return FilingTypeId.SELF_ASSESSMENT.value

    return None


def apply_inbound_signal(c, client_id: str, subject: str | None, body: str | None,
                         has_attachments: bool = False) -> str | None:
    """Mark records received when an email looks like a document submission.

    Returns the filing type that was marked, or None when nothing was changed.
    """
    detection = detect_document_keywords(subject, body, has_attachments)
    if not detection.documents_detected:
        return None
    filing_type_id = detect_filing_type(subject, body)
    if filing_type_id is None:
        logger.info("Documents detected for %s but no filing type (score %.1f)",
                    client_id, detection.score)
        return None
    try:
        mark_records_received(c, client_id, filing_type_id)
    except TaxminderError as e:
        logger.warning("Inbound signal for %s/%s not applied: %s", client_id, filing_type_id, e)
        return None
    return filing_type_id
