"""Exceptions raised by the compliance engine.

None of these are retried automatically: the caller corrects the underlying
data and tries again.
"""

from typing import Any


class ComplianceError(Exception):
    """Base exception for compliance engine errors."""

    def __init__(self, message: str, details: Any = None):
        super().__init__(message)
        self.details = details


class InvalidMeasurement(ComplianceError):
    """Gauge input is outside physical bounds."""

    pass


class InvalidQuantity(ComplianceError):
    """Gallons are negative or not a finite number."""

    pass


class UnknownClassification(ComplianceError):
    """Value is not a member of a closed enumeration."""

    pass


class ReportValidationError(ComplianceError):
    """A report has blocking validation errors."""

    def __init__(self, message: str, errors: list[Any] | None = None, details: Any = None):
        super().__init__(message, details)
        self.errors = list(errors or [])


class ReconciliationImbalance(ReportValidationError):
    """Opening plus inflows minus outflows does not equal closing."""

    pass


class AlreadyExists(ComplianceError):
    """A non-rejected report already exists for the period."""

    pass


class InvalidTransition(ComplianceError):
    """Requested action is not allowed from the current state."""

    def __init__(self, message: str, current: str | None = None, action: str | None = None):
        super().__init__(message, {"current": current, "action": action})
        self.current = current
        self.action = action


class AuditWriteFailure(ComplianceError):
    """Audit entry could not be written; the enclosing change is rolled back."""

    pass


class PeriodLocked(ComplianceError):
    """Period already has a submitted report and accepts no new entries."""

    pass


class EntityNotFound(ComplianceError):
    """Referenced entity does not exist."""

    pass
