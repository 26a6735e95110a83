"""Event type definitions for compliance notifications.

Events are published after the unit of work that caused them commits.
Downstream collaborators (notification delivery, document rendering)
subscribe through publisher hooks; delivery is their concern.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID, uuid4


class EventType(str, Enum):
    """Types of events published by the compliance engine."""

    # Report lifecycle
    REPORT_GENERATED = "report.generated"
    REPORT_VALIDATED = "report.validated"
    REPORT_VALIDATION_FAILED = "report.validation_failed"
    REPORT_SUBMITTED_FOR_REVIEW = "report.submitted_for_review"
    REPORT_APPROVED = "report.approved"
    REPORT_REJECTED = "report.rejected"
    REPORT_REOPENED = "report.reopened"
    REPORT_FILED = "report.filed"
    REPORT_ARCHIVED = "report.archived"
    REPORT_DOCUMENT_ATTACHED = "report.document_attached"
    REPORT_GENERATION_SKIPPED = "report.generation_skipped"

    # Excise tax
    TAX_DETERMINED = "tax.determined"
    TAX_PAID = "tax.paid"

    # Errors
    ERROR = "error"


@dataclass
class ComplianceEvent:
    """Base event structure for all compliance events."""

    event_type: EventType
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: UUID = field(default_factory=uuid4)
    company_id: int | None = None
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Serialize event to a JSON-safe dictionary."""
        return {
            "id": str(self.event_id),
            "type": self.event_type.value,
            "timestamp": self.timestamp.isoformat(),
            "company_id": self.company_id,
            "data": self.data,
        }


@dataclass
class ReportEvent(ComplianceEvent):
    """Event for a monthly report lifecycle transition."""

    report_id: int | None = None
    month: int = 0
    year: int = 0
    from_status: str | None = None
    to_status: str = ""
    actor: str = ""

    def to_dict(self) -> dict[str, Any]:
        base = super().to_dict()
        base["report"] = {
            "id": self.report_id,
            "period": f"{self.year:04d}-{self.month:02d}",
            "from_status": self.from_status,
            "to_status": self.to_status,
            "actor": self.actor,
        }
        return base


@dataclass
class TaxEvent(ComplianceEvent):
    """Event for an excise tax determination or payment."""

    determination_id: int | None = None
    order_ref: str = ""
    proof_gallons: str = "0"
    tax_amount: str = "0"

    def to_dict(self) -> dict[str, Any]:
        base = super().to_dict()
        base["tax"] = {
            "determination_id": self.determination_id,
            "order_ref": self.order_ref,
            "proof_gallons": self.proof_gallons,
            "tax_amount": self.tax_amount,
        }
        return base


# Factory functions for creating events


REPORT_EVENT_FOR_STATUS = {
    "draft": EventType.REPORT_GENERATED,
    "validation_failed": EventType.REPORT_VALIDATION_FAILED,
    "pending_review": EventType.REPORT_SUBMITTED_FOR_REVIEW,
    "approved": EventType.REPORT_APPROVED,
    "rejected": EventType.REPORT_REJECTED,
    "submitted": EventType.REPORT_FILED,
    "archived": EventType.REPORT_ARCHIVED,
}


def report_transitioned(
    company_id: int,
    report_id: int,
    month: int,
    year: int,
    from_status: str | None,
    to_status: str,
    actor: str,
    data: dict[str, Any] | None = None,
) -> ReportEvent:
    """Create an event for a report entering a new status."""
    if from_status is None:
        event_type = EventType.REPORT_GENERATED
    elif from_status in ("rejected", "validation_failed") and to_status == "draft":
        event_type = (
            EventType.REPORT_REOPENED if from_status == "rejected" else EventType.REPORT_VALIDATED
        )
    else:
        event_type = REPORT_EVENT_FOR_STATUS.get(to_status, EventType.REPORT_VALIDATED)
    return ReportEvent(
        event_type=event_type,
        company_id=company_id,
        report_id=report_id,
        month=month,
        year=year,
        from_status=from_status,
        to_status=to_status,
        actor=actor,
        data=data or {},
    )


def report_validated(
    company_id: int,
    report_id: int,
    month: int,
    year: int,
    status: str,
    actor: str,
    errors: int,
    warnings: int,
) -> ReportEvent:
    """Create an event for a validation run that left the status unchanged."""
    return ReportEvent(
        event_type=EventType.REPORT_VALIDATED,
        company_id=company_id,
        report_id=report_id,
        month=month,
        year=year,
        from_status=status,
        to_status=status,
        actor=actor,
        data={"errors": errors, "warnings": warnings},
    )


def document_attached(
    company_id: int, report_id: int, month: int, year: int, status: str, actor: str, document_ref: str
) -> ReportEvent:
    """Create an event for a rendered document being attached to a report."""
    return ReportEvent(
        event_type=EventType.REPORT_DOCUMENT_ATTACHED,
        company_id=company_id,
        report_id=report_id,
        month=month,
        year=year,
        from_status=status,
        to_status=status,
        actor=actor,
        data={"document_ref": document_ref},
    )


def generation_skipped(company_id: int, month: int, year: int, reason: str) -> ComplianceEvent:
    """Create an event for a scheduled generation that did nothing."""
    return ComplianceEvent(
        event_type=EventType.REPORT_GENERATION_SKIPPED,
        company_id=company_id,
        data={"month": month, "year": year, "reason": reason},
    )


def tax_determined(
    company_id: int,
    determination_id: int,
    order_ref: str,
    proof_gallons: str,
    tax_amount: str,
) -> TaxEvent:
    """Create a tax determination event."""
    return TaxEvent(
        event_type=EventType.TAX_DETERMINED,
        company_id=company_id,
        determination_id=determination_id,
        order_ref=order_ref,
        proof_gallons=proof_gallons,
        tax_amount=tax_amount,
    )


def tax_paid(
    company_id: int,
    determination_id: int,
    order_ref: str,
    tax_amount: str,
    payment_reference: str,
) -> TaxEvent:
    """Create a tax payment event."""
    return TaxEvent(
        event_type=EventType.TAX_PAID,
        company_id=company_id,
        determination_id=determination_id,
        order_ref=order_ref,
        tax_amount=tax_amount,
        data={"payment_reference": payment_reference},
    )


def error_event(
    message: str, details: dict[str, Any] | None = None, company_id: int | None = None
) -> ComplianceEvent:
    """Create an error event, such as a failed scheduled generation."""
    return ComplianceEvent(
        event_type=EventType.ERROR,
        company_id=company_id,
        data={"message": message, "details": details or {}},
    )
