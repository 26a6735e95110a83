"""Compliance event types and the in-process publisher."""

from ttb_compliance.events.publisher import EventPublisher, get_publisher, reset_publisher
from ttb_compliance.events.types import ComplianceEvent, EventType, ReportEvent, TaxEvent

__all__ = [
    "ComplianceEvent",
    "EventPublisher",
    "EventType",
    "ReportEvent",
    "TaxEvent",
    "get_publisher",
    "reset_publisher",
]
