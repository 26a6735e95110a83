"""Monthly inventory reconciliation.

For a company and month the aggregator folds ledger entries into
per-(product, spirits class) sections:

    closing = opening + production + transfers_in + gains - transfers_out - losses

Opening balances come from the closing snapshot of the prior period, so a
month is computed from that month's entries plus one snapshot. When the
prior snapshot is missing the balance is rolled forward from the latest
earlier snapshot (or from the first entry) and the report carries a warning.

When a physical inventory count exists for the month, the counted balance is
the reported closing and any difference from the ledger is an imbalance.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, Protocol
from uuid import uuid4

import structlog
from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session

from ttb_compliance.audit import AuditAction, AuditLogger, RequestMetadata
from ttb_compliance.config import FlatSettings, get_settings
from ttb_compliance.db import SessionFactory, unit_of_work
from ttb_compliance.errors import EntityNotFound, ReconciliationImbalance, ReportValidationError
from ttb_compliance.ledger import INVENTORY_EFFECT, TransactionLedger
from ttb_compliance.models import (
    Company,
    InventorySnapshot,
    LedgerTransaction,
    MonthlyReport,
    ReportStatus,
    SnapshotSource,
    SpiritsClass,
    TransactionType,
    coerce_enum,
)
from ttb_compliance.quantities import ZERO, non_negative, round2
from ttb_compliance.schedule import ReportingPeriod

logger = structlog.get_logger(__name__)


class Section(str, Enum):
    """Sections of a monthly report."""

    OPENING = "opening"
    PRODUCTION = "production"
    TRANSFERS_IN = "transfers_in"
    TRANSFERS_OUT = "transfers_out"
    LOSSES = "losses"
    GAINS = "gains"
    CLOSING = "closing"


# Section each transaction type folds into. Tax determinations and bottling
# are not storage movements and fold into nothing.
SECTION_FOR_TYPE: dict[TransactionType, Section | None] = {
    TransactionType.PRODUCTION: Section.PRODUCTION,
    TransactionType.TRANSFER_IN: Section.TRANSFERS_IN,
    TransactionType.TRANSFER_OUT: Section.TRANSFERS_OUT,
    TransactionType.LOSS: Section.LOSSES,
    TransactionType.DESTRUCTION: Section.LOSSES,
    TransactionType.GAIN: Section.GAINS,
    TransactionType.TAX_DETERMINATION: None,
    TransactionType.BOTTLING: None,
}


class IssueCode(str, Enum):
    """Validation findings attached to a report."""

    # errors
    RECONCILIATION_IMBALANCE = "reconciliation_imbalance"
    MISSING_IDENTIFIER = "missing_identifier"
    STALE_PRIOR_PERIOD = "stale_prior_period"
    # warnings
    INVENTORY_NEGATIVE = "inventory_negative"
    LARGE_VARIANCE = "large_variance"
    OPENING_ROLLED_FORWARD = "opening_rolled_forward"


class OpeningSource(str, Enum):
    """How the opening balance of a month was obtained."""

    SNAPSHOT = "snapshot"
    ROLLED_FORWARD = "rolled_forward"
    EMPTY = "empty"


@dataclass(frozen=True)
class Gallons:
    """Proof gallons and wine gallons moved or held together."""

    proof: Decimal = ZERO
    wine: Decimal = ZERO

    def __add__(self, other: "Gallons") -> "Gallons":
        return Gallons(self.proof + other.proof, self.wine + other.wine)

    def __sub__(self, other: "Gallons") -> "Gallons":
        return Gallons(self.proof - other.proof, self.wine - other.wine)

    def scaled(self, sign: int) -> "Gallons":
        return Gallons(self.proof * sign, self.wine * sign)

    def rounded(self) -> "Gallons":
        return Gallons(round2(self.proof), round2(self.wine))

    def is_zero(self) -> bool:
        return self.proof == 0 and self.wine == 0

    def to_dict(self) -> dict[str, str]:
        return {"proof_gallons": str(self.proof), "wine_gallons": str(self.wine)}


@dataclass(frozen=True)
class SectionTotal:
    """One row of a report section."""

    product_type: str
    spirits_class: SpiritsClass
    proof_gallons: Decimal
    wine_gallons: Decimal


@dataclass(frozen=True)
class GroupBalance:
    """All sections of one (product, spirits class) group, rounded to cents."""

    product_type: str
    spirits_class: SpiritsClass
    opening: Gallons
    production: Gallons
    transfers_in: Gallons
    transfers_out: Gallons
    losses: Gallons
    gains: Gallons
    closing: Gallons

    @property
    def expected_closing(self) -> Gallons:
        return (
            self.opening + self.production + self.transfers_in + self.gains
            - self.transfers_out - self.losses
        )

    @property
    def imbalance(self) -> Gallons:
        return self.closing - self.expected_closing

    @property
    def available(self) -> Gallons:
        return self.opening + self.production + self.transfers_in + self.gains

    def section(self, section: Section) -> Gallons:
        return getattr(self, section.value)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "product_type": self.product_type,
            "spirits_class": self.spirits_class.value,
        }
        for section in Section:
            data[section.value] = self.section(section).to_dict()
        return data


@dataclass(frozen=True)
class ValidationIssue:
    """One error or warning found on a report."""

    code: IssueCode
    message: str
    product_type: str | None = None
    spirits_class: SpiritsClass | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "product_type": self.product_type,
            "spirits_class": self.spirits_class.value if self.spirits_class else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ValidationIssue":
        spirits_class = data.get("spirits_class")
        return cls(
            code=IssueCode(data["code"]),
            message=data["message"],
            product_type=data.get("product_type"),
            spirits_class=SpiritsClass(spirits_class) if spirits_class else None,
        )


@dataclass(frozen=True)
class ValidationResult:
    """Blocking errors and non-blocking warnings, kept apart."""

    errors: tuple[ValidationIssue, ...] = ()
    warnings: tuple[ValidationIssue, ...] = ()

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def has(self, code: IssueCode) -> bool:
        return any(issue.code == code for issue in self.errors + self.warnings)


@dataclass(frozen=True)
class MonthlyReportData:
    """Computed reconciliation of one company and month. Not persisted."""

    company_id: int
    period: ReportingPeriod
    groups: tuple[GroupBalance, ...]
    opening_source: OpeningSource
    closing_counted: bool = False
    late_prior_period_entries: int = 0
    warnings: tuple[ValidationIssue, ...] = field(default=())

    @property
    def start(self) -> date:
        return self.period.start

    @property
    def end(self) -> date:
        return self.period.end

    def section(self, section: Section) -> tuple[SectionTotal, ...]:
        """Rows of one section; flow sections omit groups with no movement."""
        rows = []
        for group in self.groups:
            gallons = group.section(section)
            if section not in (Section.OPENING, Section.CLOSING) and gallons.is_zero():
                continue
            rows.append(
                SectionTotal(
                    product_type=group.product_type,
                    spirits_class=group.spirits_class,
                    proof_gallons=gallons.proof,
                    wine_gallons=gallons.wine,
                )
            )
        return tuple(rows)

    def total(self, section: Section) -> Gallons:
        result = Gallons()
        for group in self.groups:
            result = result + group.section(section)
        return result

    def to_dict(self) -> dict[str, Any]:
        return {
            "company_id": self.company_id,
            "month": self.period.month,
            "year": self.period.year,
            "opening_source": self.opening_source.value,
            "closing_counted": self.closing_counted,
            "groups": [group.to_dict() for group in self.groups],
            "totals": {section.value: self.total(section).to_dict() for section in Section},
            "warnings": [issue.to_dict() for issue in self.warnings],
        }


class HasIdentifiers(Protocol):
    permit_number: str | None
    ein: str | None


GroupKey = tuple[str, SpiritsClass]


def _group_key(product_type: str, spirits_class: SpiritsClass) -> GroupKey:
    return (product_type.strip().casefold(), spirits_class)


class _Accumulator:
    """Running per-group totals keyed case-insensitively on product."""

    def __init__(self) -> None:
        self.names: dict[GroupKey, str] = {}
        self.totals: dict[GroupKey, dict[Section, Gallons]] = {}

    def add(self, product_type: str, spirits_class: SpiritsClass, section: Section, amount: Gallons) -> None:
        key = _group_key(product_type, spirits_class)
        self.names.setdefault(key, product_type.strip())
        sections = self.totals.setdefault(key, {})
        sections[section] = sections.get(section, Gallons()) + amount

    def get(self, key: GroupKey, section: Section) -> Gallons:
        return self.totals.get(key, {}).get(section, Gallons())


def _usable_snapshot():
    # Closing balances of rejected reports never seed a later month
    rejected = select(MonthlyReport.id).where(MonthlyReport.status == ReportStatus.REJECTED)
    return or_(
        InventorySnapshot.report_id.is_(None),
        InventorySnapshot.report_id.not_in(rejected),
    )


def fold_entries(
    opening: dict[GroupKey, tuple[str, Gallons]],
    entries: Iterable[LedgerTransaction],
    counted_closing: dict[GroupKey, tuple[str, Gallons]] | None = None,
) -> tuple[GroupBalance, ...]:
    """Fold a month of entries onto opening balances.

    Pure: the same inputs always give the same groups, sorted by product
    then spirits class.
    """
    acc = _Accumulator()
    for key, (name, gallons) in opening.items():
        acc.add(name, key[1], Section.OPENING, gallons)

    for entry in entries:
        section = SECTION_FOR_TYPE[entry.transaction_type]
        if section is None:
            continue
        acc.add(
            entry.product_type,
            entry.spirits_class,
            section,
            Gallons(entry.proof_gallons, entry.wine_gallons),
        )

    if counted_closing is not None:
        for key, (name, gallons) in counted_closing.items():
            acc.add(name, key[1], Section.CLOSING, gallons)

    groups = []
    for key in sorted(acc.totals, key=lambda k: (k[0], k[1].value)):
        opening_g = acc.get(key, Section.OPENING).rounded()
        production = acc.get(key, Section.PRODUCTION).rounded()
        transfers_in = acc.get(key, Section.TRANSFERS_IN).rounded()
        transfers_out = acc.get(key, Section.TRANSFERS_OUT).rounded()
        losses = acc.get(key, Section.LOSSES).rounded()
        gains = acc.get(key, Section.GAINS).rounded()
        if counted_closing is not None:
            closing = acc.get(key, Section.CLOSING).rounded()
        else:
            closing = (
                opening_g + production + transfers_in + gains - transfers_out - losses
            ).rounded()
        groups.append(
            GroupBalance(
                product_type=acc.names[key],
                spirits_class=key[1],
                opening=opening_g,
                production=production,
                transfers_in=transfers_in,
                transfers_out=transfers_out,
                losses=losses,
                gains=gains,
                closing=closing,
            )
        )
    return tuple(groups)


def validate_report_data(
    data: MonthlyReportData,
    company: HasIdentifiers,
    settings: FlatSettings | None = None,
) -> ValidationResult:
    """Check a month's reconciliation. Pure; safe to call repeatedly.

    Errors block the report from leaving draft: an imbalance beyond the
    configured tolerance, a missing permit number or EIN, or prior-period
    entries recorded after the prior period was closed. Warnings (negative
    inventory, large losses, a rolled-forward opening) are kept for the
    reviewer but block nothing.
    """
    settings = settings or get_settings()
    tolerance = settings.reconciliation_tolerance
    errors: list[ValidationIssue] = []
    warnings: list[ValidationIssue] = list(data.warnings)

    if not (company.permit_number or "").strip():
        errors.append(
            ValidationIssue(IssueCode.MISSING_IDENTIFIER, "Company has no TTB permit number")
        )
    if not (company.ein or "").strip():
        errors.append(ValidationIssue(IssueCode.MISSING_IDENTIFIER, "Company has no EIN"))

    if data.late_prior_period_entries:
        errors.append(
            ValidationIssue(
                IssueCode.STALE_PRIOR_PERIOD,
                f"{data.late_prior_period_entries} entries dated in "
                f"{data.period.previous()} were recorded after that period closed; "
                "regenerate the prior report first",
            )
        )

    for group in data.groups:
        imbalance = group.imbalance
        if abs(imbalance.proof) > tolerance or abs(imbalance.wine) > tolerance:
            errors.append(
                ValidationIssue(
                    IssueCode.RECONCILIATION_IMBALANCE,
                    f"Closing {group.closing.proof} PG / {group.closing.wine} WG differs from "
                    f"opening + inflows - outflows ({group.expected_closing.proof} PG / "
                    f"{group.expected_closing.wine} WG) by more than {tolerance}",
                    product_type=group.product_type,
                    spirits_class=group.spirits_class,
                )
            )

        available = group.available.proof
        if (
            available > 0
            and group.losses.proof > 0
            and group.losses.proof / available > settings.large_variance_ratio
        ):
            warnings.append(
                ValidationIssue(
                    IssueCode.LARGE_VARIANCE,
                    f"Losses of {group.losses.proof} PG are "
                    f"{round2(group.losses.proof / available * 100)}% of available inventory",
                    product_type=group.product_type,
                    spirits_class=group.spirits_class,
                )
            )

    return ValidationResult(errors=tuple(errors), warnings=tuple(warnings))


def raise_for_errors(result: ValidationResult) -> None:
    """Raise the most specific exception for a failed validation."""
    if result.is_valid:
        return
    messages = "; ".join(issue.message for issue in result.errors)
    if any(issue.code == IssueCode.RECONCILIATION_IMBALANCE for issue in result.errors):
        raise ReconciliationImbalance(messages, errors=list(result.errors))
    raise ReportValidationError(messages, errors=list(result.errors))


@dataclass(frozen=True)
class CountLine:
    """One line of a physical inventory count."""

    product_type: str
    spirits_class: SpiritsClass | str
    proof_gallons: Any
    wine_gallons: Any = ZERO


class ReconciliationAggregator:
    """Builds monthly reconciliations and records closing snapshots."""

    def __init__(
        self,
        session_factory: SessionFactory,
        ledger: TransactionLedger | None = None,
        audit_logger: AuditLogger | None = None,
    ):
        self._session_factory = session_factory
        self._audit = audit_logger or AuditLogger(session_factory)
        self._ledger = ledger or TransactionLedger(session_factory, self._audit)
        self._logger = logger.bind(component="reconciliation")

    def aggregate(
        self, company_id: int, month: int, year: int, session: Session | None = None
    ) -> MonthlyReportData:
        """Reconcile one company and month. Reads only; never writes.

        Raises:
            ReportValidationError: Month is not 1-12 or year is before 2000.
        """
        period = ReportingPeriod(year=year, month=month)
        if session is not None:
            return self._aggregate(session, company_id, period)
        with self._session_factory() as own_session:
            return self._aggregate(own_session, company_id, period)

    def validate(
        self, company_id: int, month: int, year: int, settings: FlatSettings | None = None
    ) -> tuple[MonthlyReportData, ValidationResult]:
        """Aggregate and validate without touching any report."""
        with self._session_factory() as session:
            company = session.get(Company, company_id)
            if company is None:
                raise EntityNotFound(f"Company {company_id} not found")
            data = self._aggregate(session, company_id, ReportingPeriod(year=year, month=month))
            return data, validate_report_data(data, company, settings)

    def write_closing_snapshot(
        self,
        session: Session,
        data: MonthlyReportData,
        report_id: int,
        actor: str,
    ) -> list[InventorySnapshot]:
        """Persist a report's closing balances as the next period's opening.

        Each call writes a new batch; the newest batch of the period wins.
        """
        batch_id = f"report:{report_id}:{uuid4().hex[:12]}"
        rows = [
            InventorySnapshot(
                company_id=data.company_id,
                year=data.period.year,
                month=data.period.month,
                source=SnapshotSource.REPORT,
                batch_id=batch_id,
                report_id=report_id,
                product_type=group.product_type,
                spirits_class=group.spirits_class,
                proof_gallons=group.closing.proof,
                wine_gallons=group.closing.wine,
            )
            for group in data.groups
        ]
        session.add_all(rows)
        session.flush()
        for row in rows:
            self._audit.record_change(session, AuditAction.CREATE, actor, row)
        self._logger.info(
            "closing_snapshot_written",
            company_id=data.company_id,
            period=str(data.period),
            report_id=report_id,
            groups=len(rows),
        )
        return rows

    def refresh_closing_snapshot(
        self,
        session: Session,
        data: MonthlyReportData,
        report_id: int,
        actor: str,
    ) -> bool:
        """Rewrite a report's closing snapshot if its balances have moved.

        Returns:
            True when a new batch was written.
        """
        batch_id = session.scalar(
            select(InventorySnapshot.batch_id)
            .where(InventorySnapshot.report_id == report_id)
            .order_by(InventorySnapshot.id.desc())
            .limit(1)
        )
        current = {
            key: gallons
            for key, (_, gallons) in self._balances(
                session.scalars(
                    select(InventorySnapshot).where(InventorySnapshot.batch_id == batch_id)
                )
            ).items()
        }
        closing = {
            _group_key(group.product_type, group.spirits_class): group.closing
            for group in data.groups
        }
        if current == closing:
            return False
        self.write_closing_snapshot(session, data, report_id, actor)
        return True

    def record_inventory_count(
        self,
        company_id: int,
        month: int,
        year: int,
        lines: Iterable[CountLine],
        actor: str,
        metadata: RequestMetadata | None = None,
    ) -> list[InventorySnapshot]:
        """Record a physical count of closing inventory for a month."""
        period = ReportingPeriod(year=year, month=month)
        batch_id = f"count:{uuid4().hex}"
        rows = []
        for line in lines:
            product_type = (line.product_type or "").strip()
            if not product_type:
                raise ReportValidationError("Count line is missing product_type")
            rows.append(
                InventorySnapshot(
                    company_id=company_id,
                    year=period.year,
                    month=period.month,
                    source=SnapshotSource.COUNT,
                    batch_id=batch_id,
                    product_type=product_type,
                    spirits_class=coerce_enum(SpiritsClass, line.spirits_class, "spirits_class"),
                    proof_gallons=non_negative(line.proof_gallons, "proof_gallons"),
                    wine_gallons=non_negative(line.wine_gallons, "wine_gallons"),
                )
            )

        with unit_of_work(self._session_factory) as session:
            if session.get(Company, company_id) is None:
                raise EntityNotFound(f"Company {company_id} not found")
            session.add_all(rows)
            session.flush()
            for row in rows:
                self._audit.record_change(session, AuditAction.CREATE, actor, row, metadata=metadata)

        self._logger.info(
            "inventory_count_recorded",
            company_id=company_id,
            period=str(period),
            lines=len(rows),
        )
        return rows

    def _aggregate(self, session: Session, company_id: int, period: ReportingPeriod) -> MonthlyReportData:
        warnings: list[ValidationIssue] = []
        opening, opening_source, closed_at = self._opening_balances(session, company_id, period)
        if opening_source == OpeningSource.ROLLED_FORWARD:
            warnings.append(
                ValidationIssue(
                    IssueCode.OPENING_ROLLED_FORWARD,
                    f"No closing snapshot for {period.previous()}; opening balance was "
                    "rolled forward from earlier ledger entries",
                )
            )

        late_entries = 0
        if closed_at is not None:
            prior = period.previous()
            late_entries = session.scalar(
                select(func.count(LedgerTransaction.id)).where(
                    LedgerTransaction.company_id == company_id,
                    LedgerTransaction.transaction_date >= prior.start,
                    LedgerTransaction.transaction_date < prior.end,
                    LedgerTransaction.recorded_at > closed_at,
                    LedgerTransaction.transaction_type.in_(list(INVENTORY_EFFECT)),
                )
            ) or 0

        counted = self._latest_batch(session, company_id, period, SnapshotSource.COUNT)
        counted_closing = self._balances(counted) if counted else None

        entries = self._ledger.query(company_id, period.start, period.end, session=session)
        groups = fold_entries(opening, entries, counted_closing)

        for group in groups:
            if group.closing.proof < 0 or group.closing.wine < 0:
                warnings.append(
                    ValidationIssue(
                        IssueCode.INVENTORY_NEGATIVE,
                        f"Closing inventory is negative ({group.closing.proof} PG / "
                        f"{group.closing.wine} WG)",
                        product_type=group.product_type,
                        spirits_class=group.spirits_class,
                    )
                )

        data = MonthlyReportData(
            company_id=company_id,
            period=period,
            groups=groups,
            opening_source=opening_source,
            closing_counted=counted_closing is not None,
            late_prior_period_entries=late_entries,
            warnings=tuple(warnings),
        )
        self._logger.debug(
            "month_aggregated",
            company_id=company_id,
            period=str(period),
            groups=len(groups),
            opening_source=opening_source.value,
        )
        return data

    def _opening_balances(
        self, session: Session, company_id: int, period: ReportingPeriod
    ) -> tuple[dict[GroupKey, tuple[str, Gallons]], OpeningSource, datetime | None]:
        prior = period.previous()
        rows = self._period_snapshot(session, company_id, prior)
        if rows:
            closed_at = max(row.created_at for row in rows)
            return self._balances(rows), OpeningSource.SNAPSHOT, closed_at

        base_period, base_rows = self._earlier_snapshot(session, company_id, prior)
        balances = self._balances(base_rows)
        start = base_period.end if base_period else None
        moved = self._roll_forward(session, company_id, balances, start, period.start)
        if base_period is None and not moved:
            return balances, OpeningSource.EMPTY, None
        return balances, OpeningSource.ROLLED_FORWARD, None

    def _period_snapshot(
        self, session: Session, company_id: int, period: ReportingPeriod
    ) -> list[InventorySnapshot]:
        return self._latest_batch(
            session, company_id, period, SnapshotSource.REPORT
        ) or self._latest_batch(session, company_id, period, SnapshotSource.COUNT)

    def _latest_batch(
        self,
        session: Session,
        company_id: int,
        period: ReportingPeriod,
        source: SnapshotSource,
    ) -> list[InventorySnapshot]:
        batch_id = session.scalar(
            select(InventorySnapshot.batch_id)
            .where(
                InventorySnapshot.company_id == company_id,
                InventorySnapshot.year == period.year,
                InventorySnapshot.month == period.month,
                InventorySnapshot.source == source,
                _usable_snapshot(),
            )
            .order_by(InventorySnapshot.id.desc())
            .limit(1)
        )
        if batch_id is None:
            return []
        return list(
            session.scalars(
                select(InventorySnapshot)
                .where(InventorySnapshot.batch_id == batch_id)
                .order_by(InventorySnapshot.id)
            )
        )

    def _earlier_snapshot(
        self, session: Session, company_id: int, before: ReportingPeriod
    ) -> tuple[ReportingPeriod | None, list[InventorySnapshot]]:
        latest = session.execute(
            select(InventorySnapshot.year, InventorySnapshot.month)
            .where(
                InventorySnapshot.company_id == company_id,
                _usable_snapshot(),
                or_(
                    InventorySnapshot.year < before.year,
                    and_(
                        InventorySnapshot.year == before.year,
                        InventorySnapshot.month < before.month,
                    ),
                ),
            )
            .order_by(InventorySnapshot.year.desc(), InventorySnapshot.month.desc())
            .limit(1)
        ).first()
        if latest is None:
            return None, []
        base = ReportingPeriod(year=latest.year, month=latest.month)
        return base, self._period_snapshot(session, company_id, base)

    def _roll_forward(
        self,
        session: Session,
        company_id: int,
        balances: dict[GroupKey, tuple[str, Gallons]],
        start: date | None,
        end: date,
    ) -> int:
        statement = select(LedgerTransaction).where(
            LedgerTransaction.company_id == company_id,
            LedgerTransaction.transaction_date < end,
        )
        if start is not None:
            statement = statement.where(LedgerTransaction.transaction_date >= start)
        statement = statement.order_by(LedgerTransaction.transaction_date, LedgerTransaction.id)

        moved = 0
        for entry in session.scalars(statement):
            sign = INVENTORY_EFFECT.get(entry.transaction_type)
            if sign is None:
                continue
            key = _group_key(entry.product_type, entry.spirits_class)
            name, current = balances.get(key, (entry.product_type.strip(), Gallons()))
            balances[key] = (
                name,
                current + Gallons(entry.proof_gallons, entry.wine_gallons).scaled(sign),
            )
            moved += 1
        for key, (name, gallons) in balances.items():
            balances[key] = (name, gallons.rounded())
        return moved

    @staticmethod
    def _balances(rows: Iterable[InventorySnapshot]) -> dict[GroupKey, tuple[str, Gallons]]:
        balances: dict[GroupKey, tuple[str, Gallons]] = {}
        for row in rows:
            key = _group_key(row.product_type, row.spirits_class)
            name, current = balances.get(key, (row.product_type, Gallons()))
            balances[key] = (
                name,
                current + Gallons(row.proof_gallons, row.wine_gallons),
            )
        return balances
