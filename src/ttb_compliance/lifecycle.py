"""Monthly report lifecycle.

Reports move through an explicit transition table:

    draft --fail_validation--> validation_failed --retry--> draft
    draft --submit_for_review--> pending_review --approve--> approved
    draft | pending_review --reject--> rejected --reopen--> draft
    approved --mark_submitted--> submitted --archive--> archived

Every mutation runs in one unit of work that also writes the report's audit
entry. Events are published only after that unit of work commits.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ttb_compliance.audit import AuditAction, AuditLogger, RequestMetadata, snapshot
from ttb_compliance.config import FlatSettings, get_settings
from ttb_compliance.db import SessionFactory, unit_of_work, utcnow
from ttb_compliance.errors import (
    AlreadyExists,
    ComplianceError,
    EntityNotFound,
    InvalidTransition,
    ReportValidationError,
)
from ttb_compliance.events.publisher import EventPublisher, get_publisher
from ttb_compliance.events.types import (
    ComplianceEvent,
    document_attached,
    error_event,
    generation_skipped,
    report_transitioned,
    report_validated,
)
from ttb_compliance.excise_tax import ExciseTaxService
from ttb_compliance.locks import KeyedLocks
from ttb_compliance.models import Company, FormType, MonthlyReport, ReportStatus, coerce_enum
from ttb_compliance.reconciliation import (
    MonthlyReportData,
    ReconciliationAggregator,
    ValidationResult,
    raise_for_errors,
    validate_report_data,
)
from ttb_compliance.schedule import ReportingPeriod

logger = structlog.get_logger(__name__)


class ReportAction(str, Enum):
    """Events that move a report between states."""

    FAIL_VALIDATION = "fail_validation"
    RETRY = "retry"
    SUBMIT_FOR_REVIEW = "submit_for_review"
    APPROVE = "approve"
    REJECT = "reject"
    REOPEN = "reopen"
    MARK_SUBMITTED = "mark_submitted"
    ARCHIVE = "archive"


class ReviewDecision(str, Enum):
    """Outcome of a review."""

    APPROVE = "approve"
    REJECT = "reject"


TRANSITIONS: dict[tuple[ReportStatus, ReportAction], ReportStatus] = {
    (ReportStatus.DRAFT, ReportAction.FAIL_VALIDATION): ReportStatus.VALIDATION_FAILED,
    (ReportStatus.VALIDATION_FAILED, ReportAction.RETRY): ReportStatus.DRAFT,
    (ReportStatus.DRAFT, ReportAction.SUBMIT_FOR_REVIEW): ReportStatus.PENDING_REVIEW,
    (ReportStatus.PENDING_REVIEW, ReportAction.APPROVE): ReportStatus.APPROVED,
    (ReportStatus.DRAFT, ReportAction.REJECT): ReportStatus.REJECTED,
    (ReportStatus.PENDING_REVIEW, ReportAction.REJECT): ReportStatus.REJECTED,
    (ReportStatus.REJECTED, ReportAction.REOPEN): ReportStatus.DRAFT,
    (ReportStatus.APPROVED, ReportAction.MARK_SUBMITTED): ReportStatus.SUBMITTED,
    (ReportStatus.SUBMITTED, ReportAction.ARCHIVE): ReportStatus.ARCHIVED,
}

# Statuses whose validation snapshot may be recomputed
VALIDATABLE_STATUSES = (
    ReportStatus.DRAFT,
    ReportStatus.VALIDATION_FAILED,
    ReportStatus.PENDING_REVIEW,
)

# Generation of one (company, year, month) is serialized across all managers
_period_locks = KeyedLocks()


def next_status(current: ReportStatus, action: ReportAction) -> ReportStatus:
    """Look up the state an action leads to.

    Raises:
        InvalidTransition: If the action is not allowed from ``current``.
    """
    try:
        return TRANSITIONS[(current, action)]
    except KeyError:
        allowed = sorted(a.value for (s, a) in TRANSITIONS if s == current)
        raise InvalidTransition(
            f"Cannot {action.value} a {current.value} report"
            + (f"; allowed: {', '.join(allowed)}" if allowed else "; the report is final"),
            current=current.value,
            action=action.value,
        ) from None


def allowed_actions(current: ReportStatus) -> list[ReportAction]:
    return [action for (status, action) in TRANSITIONS if status == current]


@dataclass(frozen=True)
class ScheduledRun:
    """Outcome of one company's scheduled generation."""

    company_id: int
    period: ReportingPeriod
    report_id: int | None = None
    skipped_reason: str | None = None
    error: str | None = None

    @property
    def generated(self) -> bool:
        return self.report_id is not None


class ReportLifecycleManager:
    """Generates monthly reports and moves them through review and filing."""

    def __init__(
        self,
        session_factory: SessionFactory,
        aggregator: ReconciliationAggregator | None = None,
        tax_service: ExciseTaxService | None = None,
        audit_logger: AuditLogger | None = None,
        settings: FlatSettings | None = None,
        publisher: EventPublisher | None = None,
    ):
        self._session_factory = session_factory
        self._audit = audit_logger or AuditLogger(session_factory)
        self._aggregator = aggregator or ReconciliationAggregator(
            session_factory, audit_logger=self._audit
        )
        self._tax = tax_service or ExciseTaxService(
            session_factory, audit_logger=self._audit, settings=settings, publisher=publisher
        )
        self._settings = settings
        self._publisher = publisher
        self._logger = logger.bind(component="report_lifecycle")

    @property
    def settings(self) -> FlatSettings:
        return self._settings or get_settings()

    @property
    def publisher(self) -> EventPublisher:
        return self._publisher or get_publisher()

    # -- generation ---------------------------------------------------------

    def generate(
        self,
        company_id: int,
        month: int,
        year: int,
        actor: str,
        form_type: FormType | str = FormType.FORM_5110_28,
        metadata: RequestMetadata | None = None,
    ) -> MonthlyReport:
        """Reconcile a month and persist it as a new draft report.

        The draft carries its validation snapshot and excise tax summary;
        its closing balances become the next month's opening snapshot.

        Raises:
            ReportValidationError: Month or year is out of range.
            AlreadyExists: A non-rejected report exists for the period and form.
            EntityNotFound: The company does not exist.
        """
        period = ReportingPeriod(year=year, month=month)
        form_type = coerce_enum(FormType, form_type, "form_type")

        with _period_locks.hold((company_id, period.year, period.month)):
            try:
                with unit_of_work(self._session_factory) as session:
                    company = self._company(session, company_id)
                    existing = self._live_report(session, company_id, period, form_type)
                    if existing is not None:
                        raise AlreadyExists(
                            f"Report {existing.id} ({existing.status.value}) already covers "
                            f"{period} for company {company_id}",
                            details={"report_id": existing.id, "status": existing.status.value},
                        )

                    data = self._aggregator.aggregate(
                        company_id, period.month, period.year, session=session
                    )
                    result = validate_report_data(data, company, self.settings)
                    tax_summary = self._tax.monthly_summary(
                        company_id, period.month, period.year, session=session
                    )

                    now = utcnow()
                    report = MonthlyReport(
                        company_id=company_id,
                        month=period.month,
                        year=period.year,
                        form_type=form_type,
                        status=ReportStatus.DRAFT,
                        generated_at=now,
                        generated_by=actor,
                        tax_summary=tax_summary.to_dict(),
                    )
                    self._store_validation(report, result, now)
                    session.add(report)
                    session.flush()
                    self._audit.record_change(
                        session, AuditAction.CREATE, actor, report, metadata=metadata
                    )

                    self._aggregator.write_closing_snapshot(session, data, report.id, actor)
                    superseded = self._supersede_rejected(session, report, actor, metadata)
            except IntegrityError as exc:
                raise AlreadyExists(
                    f"A report already covers {period} for company {company_id}",
                    details={"company_id": company_id, "period": str(period)},
                ) from exc

        self._logger.info(
            "report_generated",
            report_id=report.id,
            company_id=company_id,
            period=str(period),
            form_type=form_type.value,
            errors=len(report.validation_errors),
            warnings=len(report.validation_warnings),
            superseded=superseded,
        )
        self._publish(
            report_transitioned(
                company_id=company_id,
                report_id=report.id,
                month=period.month,
                year=period.year,
                from_status=None,
                to_status=report.status.value,
                actor=actor,
                data={
                    "errors": len(report.validation_errors),
                    "warnings": len(report.validation_warnings),
                },
            )
        )
        return report

    def generate_scheduled(
        self, now: datetime | None = None, actor: str = "scheduler"
    ) -> list[ScheduledRun]:
        """Generate the prior month's report for every company due this hour.

        A period that already has a report is skipped, so repeated triggers
        within the window are harmless. One company's failure does not stop
        the others; it is logged and returned in its run.
        """
        now = now or utcnow()
        with self._session_factory() as session:
            companies = list(
                session.scalars(
                    select(Company).where(Company.auto_generate.is_(True)).order_by(Company.id)
                )
            )

        runs: list[ScheduledRun] = []
        for company in companies:
            schedule = company.schedule
            if not schedule.is_due(now):
                continue
            period = schedule.reporting_period(now)
            try:
                report = self.generate(company.id, period.month, period.year, actor)
            except AlreadyExists:
                self._logger.info(
                    "scheduled_generation_skipped",
                    company_id=company.id,
                    period=str(period),
                )
                self._publish(
                    generation_skipped(company.id, period.month, period.year, "already_exists")
                )
                runs.append(
                    ScheduledRun(company.id, period, skipped_reason="already_exists")
                )
            except ComplianceError as exc:
                self._logger.error(
                    "scheduled_generation_failed",
                    company_id=company.id,
                    period=str(period),
                    error=str(exc),
                )
                self._publish(
                    error_event(
                        str(exc),
                        {"operation": "generate_scheduled", "month": period.month, "year": period.year},
                        company_id=company.id,
                    )
                )
                runs.append(ScheduledRun(company.id, period, error=str(exc)))
            else:
                runs.append(ScheduledRun(company.id, period, report_id=report.id))
        return runs

    # -- validation ---------------------------------------------------------

    def validate(
        self, report_id: int, actor: str, metadata: RequestMetadata | None = None
    ) -> tuple[MonthlyReport, ValidationResult]:
        """Recompute and store a report's validation snapshot.

        A draft with errors moves to validation_failed; a validation_failed
        report that is now clean moves back to draft.
        """
        with unit_of_work(self._session_factory) as session:
            report = self._report(session, report_id)
            if report.status not in VALIDATABLE_STATUSES:
                raise InvalidTransition(
                    f"Cannot validate a {report.status.value} report",
                    current=report.status.value,
                    action="validate",
                )
            before = snapshot(report)
            from_status = report.status
            data, result = self._evaluate(session, report)

            now = utcnow()
            self._store_validation(report, result, now)
            if from_status == ReportStatus.DRAFT and not result.is_valid:
                report.status = next_status(from_status, ReportAction.FAIL_VALIDATION)
            elif from_status == ReportStatus.VALIDATION_FAILED and result.is_valid:
                report.status = next_status(from_status, ReportAction.RETRY)
            session.flush()
            self._audit.record_change(
                session, AuditAction.UPDATE, actor, report, old_value=before, metadata=metadata
            )
            self._aggregator.refresh_closing_snapshot(session, data, report.id, actor)

        self._logger.info(
            "report_validated",
            report_id=report_id,
            status=report.status.value,
            errors=len(result.errors),
            warnings=len(result.warnings),
        )
        if report.status != from_status:
            event: ComplianceEvent = self._transition_event(report, from_status, actor)
        else:
            event = report_validated(
                company_id=report.company_id,
                report_id=report.id,
                month=report.month,
                year=report.year,
                status=report.status.value,
                actor=actor,
                errors=len(result.errors),
                warnings=len(result.warnings),
            )
        self._publish(event)
        return report, result

    # -- review chain -------------------------------------------------------

    def submit_for_review(
        self, report_id: int, actor: str, metadata: RequestMetadata | None = None
    ) -> MonthlyReport:
        """Move a clean draft to pending review.

        Validation is recomputed first. Any error aborts the transition and
        the report stays in draft.

        Raises:
            ReconciliationImbalance: A group does not balance.
            ReportValidationError: Other blocking errors.
            InvalidTransition: The report is not a draft.
        """

        def apply(session: Session, report: MonthlyReport, now: datetime) -> None:
            data, result = self._evaluate(session, report)
            raise_for_errors(result)
            self._store_validation(report, result, now)
            report.submitted_for_review_by = actor
            report.submitted_for_review_at = now
            self._aggregator.refresh_closing_snapshot(session, data, report.id, actor)

        return self._transition(report_id, ReportAction.SUBMIT_FOR_REVIEW, actor, metadata, apply)

    def review(
        self,
        report_id: int,
        decision: ReviewDecision | str,
        actor: str,
        notes: str | None = None,
        metadata: RequestMetadata | None = None,
    ) -> MonthlyReport:
        """Approve or reject a report.

        Approval records the reviewer as approver. Rejection records the
        reviewer and notes and clears any earlier approval. Drafts may be
        rejected without review.
        """
        decision = coerce_enum(ReviewDecision, decision, "decision")

        def apply(session: Session, report: MonthlyReport, now: datetime) -> None:
            report.reviewed_by = actor
            report.reviewed_at = now
            report.review_notes = notes
            if decision == ReviewDecision.APPROVE:
                report.approved_by = actor
                report.approved_at = now
            else:
                report.approved_by = None
                report.approved_at = None

        action = ReportAction.APPROVE if decision == ReviewDecision.APPROVE else ReportAction.REJECT
        return self._transition(report_id, action, actor, metadata, apply)

    def approve(
        self,
        report_id: int,
        actor: str,
        notes: str | None = None,
        metadata: RequestMetadata | None = None,
    ) -> MonthlyReport:
        return self.review(report_id, ReviewDecision.APPROVE, actor, notes, metadata)

    def reject(
        self,
        report_id: int,
        actor: str,
        notes: str | None = None,
        metadata: RequestMetadata | None = None,
    ) -> MonthlyReport:
        return self.review(report_id, ReviewDecision.REJECT, actor, notes, metadata)

    def reopen(
        self, report_id: int, actor: str, metadata: RequestMetadata | None = None
    ) -> MonthlyReport:
        """Return a rejected report to draft.

        Raises:
            InvalidTransition: The report is not rejected, or was superseded.
            AlreadyExists: Another live report now covers the period.
        """
        with self._session_factory() as session:
            report = self._report(session, report_id)
            key = (report.company_id, report.year, report.month)

        def apply(session: Session, report: MonthlyReport, now: datetime) -> None:
            if report.superseded_by_id is not None:
                raise InvalidTransition(
                    f"Report {report.id} was superseded by report {report.superseded_by_id}",
                    current=report.status.value,
                    action=ReportAction.REOPEN.value,
                )
            live = self._live_report(session, report.company_id, report.period, report.form_type)
            if live is not None:
                raise AlreadyExists(
                    f"Report {live.id} ({live.status.value}) already covers {report.period}",
                    details={"report_id": live.id},
                )
            report.reviewed_by = None
            report.reviewed_at = None
            report.submitted_for_review_by = None
            report.submitted_for_review_at = None

        with _period_locks.hold(key):
            try:
                return self._transition(report_id, ReportAction.REOPEN, actor, metadata, apply)
            except IntegrityError as exc:
                raise AlreadyExists(f"Another report already covers report {report_id}'s period") from exc

    def mark_submitted(
        self,
        report_id: int,
        confirmation_number: str,
        actor: str,
        metadata: RequestMetadata | None = None,
    ) -> MonthlyReport:
        """Record that an approved report was filed with the regulator.

        Raises:
            ReportValidationError: The confirmation number is empty, or the
                stored validation snapshot carries errors.
        """
        confirmation_number = (confirmation_number or "").strip()
        if not confirmation_number:
            raise ReportValidationError("A regulator confirmation number is required")

        def apply(session: Session, report: MonthlyReport, now: datetime) -> None:
            if report.validation_errors:
                raise ReportValidationError(
                    f"Report {report.id} has {len(report.validation_errors)} validation "
                    "error(s) that must be resolved before filing",
                    errors=list(report.validation_errors),
                )
            report.confirmation_number = confirmation_number
            report.submitted_by = actor
            report.submitted_at = now

        return self._transition(report_id, ReportAction.MARK_SUBMITTED, actor, metadata, apply)

    def archive(
        self, report_id: int, actor: str, metadata: RequestMetadata | None = None
    ) -> MonthlyReport:
        """Archive a filed report. Archived is terminal."""

        def apply(session: Session, report: MonthlyReport, now: datetime) -> None:
            report.archived_by = actor
            report.archived_at = now

        return self._transition(report_id, ReportAction.ARCHIVE, actor, metadata, apply)

    # -- artifacts and reads ------------------------------------------------

    def attach_document(
        self,
        report_id: int,
        document_ref: str,
        actor: str,
        metadata: RequestMetadata | None = None,
    ) -> MonthlyReport:
        """Record where the rendered form for a report is stored."""
        document_ref = (document_ref or "").strip()
        if not document_ref:
            raise ReportValidationError("document_ref is required")

        with unit_of_work(self._session_factory) as session:
            report = self._report(session, report_id)
            if report.status == ReportStatus.ARCHIVED:
                raise InvalidTransition(
                    f"Report {report_id} is archived",
                    current=report.status.value,
                    action="attach_document",
                )
            before = snapshot(report)
            report.document_ref = document_ref
            session.flush()
            self._audit.record_change(
                session, AuditAction.UPDATE, actor, report, old_value=before, metadata=metadata
            )

        self._logger.info("report_document_attached", report_id=report_id, document_ref=document_ref)
        self._publish(
            document_attached(
                company_id=report.company_id,
                report_id=report.id,
                month=report.month,
                year=report.year,
                status=report.status.value,
                actor=actor,
                document_ref=document_ref,
            )
        )
        return report

    def get(self, report_id: int) -> MonthlyReport:
        with self._session_factory() as session:
            return self._report(session, report_id)

    def reports_for_company(self, company_id: int, year: int | None = None) -> list[MonthlyReport]:
        statement = select(MonthlyReport).where(MonthlyReport.company_id == company_id)
        if year is not None:
            statement = statement.where(MonthlyReport.year == year)
        statement = statement.order_by(
            MonthlyReport.year, MonthlyReport.month, MonthlyReport.id
        )
        with self._session_factory() as session:
            return list(session.scalars(statement))

    def report_data(self, report_id: int) -> MonthlyReportData:
        """Recompute a report's reconciliation for downstream consumers."""
        with self._session_factory() as session:
            report = self._report(session, report_id)
            return self._aggregator.aggregate(
                report.company_id, report.month, report.year, session=session
            )

    # -- internals ----------------------------------------------------------

    def _transition(
        self,
        report_id: int,
        action: ReportAction,
        actor: str,
        metadata: RequestMetadata | None,
        apply: Callable[[Session, MonthlyReport, datetime], None],
    ) -> MonthlyReport:
        with unit_of_work(self._session_factory) as session:
            report = self._report(session, report_id)
            from_status = report.status
            target = next_status(from_status, action)
            before = snapshot(report)

            apply(session, report, utcnow())
            report.status = target
            session.flush()
            self._audit.record_change(
                session, AuditAction.UPDATE, actor, report, old_value=before, metadata=metadata
            )

        self._logger.info(
            "report_transitioned",
            report_id=report_id,
            action=action.value,
            from_status=from_status.value,
            to_status=report.status.value,
            actor=actor,
        )
        self._publish(self._transition_event(report, from_status, actor))
        return report

    def _evaluate(
        self, session: Session, report: MonthlyReport
    ) -> tuple[MonthlyReportData, ValidationResult]:
        company = self._company(session, report.company_id)
        data = self._aggregator.aggregate(
            report.company_id, report.month, report.year, session=session
        )
        return data, validate_report_data(data, company, self.settings)

    @staticmethod
    def _store_validation(report: MonthlyReport, result: ValidationResult, now: datetime) -> None:
        # New lists so the JSON columns register the change
        report.validation_errors = [issue.to_dict() for issue in result.errors]
        report.validation_warnings = [issue.to_dict() for issue in result.warnings]
        report.validated_at = now

    def _supersede_rejected(
        self,
        session: Session,
        report: MonthlyReport,
        actor: str,
        metadata: RequestMetadata | None,
    ) -> int:
        rejected = session.scalars(
            select(MonthlyReport).where(
                MonthlyReport.company_id == report.company_id,
                MonthlyReport.year == report.year,
                MonthlyReport.month == report.month,
                MonthlyReport.form_type == report.form_type,
                MonthlyReport.status == ReportStatus.REJECTED,
                MonthlyReport.superseded_by_id.is_(None),
                MonthlyReport.id != report.id,
            )
        ).all()
        for old in rejected:
            before = snapshot(old)
            old.superseded_by_id = report.id
            session.flush()
            self._audit.record_change(
                session, AuditAction.UPDATE, actor, old, old_value=before, metadata=metadata
            )
        return len(rejected)

    @staticmethod
    def _live_report(
        session: Session, company_id: int, period: ReportingPeriod, form_type: FormType
    ) -> MonthlyReport | None:
        return session.scalar(
            select(MonthlyReport)
            .where(
                MonthlyReport.company_id == company_id,
                MonthlyReport.year == period.year,
                MonthlyReport.month == period.month,
                MonthlyReport.form_type == form_type,
                MonthlyReport.status != ReportStatus.REJECTED,
            )
            .limit(1)
        )

    @staticmethod
    def _report(session: Session, report_id: int) -> MonthlyReport:
        report = session.get(MonthlyReport, report_id)
        if report is None:
            raise EntityNotFound(f"Report {report_id} not found")
        return report

    @staticmethod
    def _company(session: Session, company_id: int) -> Company:
        company = session.get(Company, company_id)
        if company is None:
            raise EntityNotFound(f"Company {company_id} not found")
        return company

    @staticmethod
    def _transition_event(
        report: MonthlyReport, from_status: ReportStatus, actor: str
    ) -> ComplianceEvent:
        data: dict[str, Any] = {}
        if report.confirmation_number and report.status == ReportStatus.SUBMITTED:
            data["confirmation_number"] = report.confirmation_number
        if report.review_notes and report.status in (ReportStatus.APPROVED, ReportStatus.REJECTED):
            data["review_notes"] = report.review_notes
        return report_transitioned(
            company_id=report.company_id,
            report_id=report.id,
            month=report.month,
            year=report.year,
            from_status=from_status.value,
            to_status=report.status.value,
            actor=actor,
            data=data,
        )

    def _publish(self, event: ComplianceEvent) -> None:
        self.publisher.publish(event)
