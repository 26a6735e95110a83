"""Federal excise tax on spirits removed from bond.

Removals are taxed per proof gallon under two tiers. An eligible company
pays the reduced rate on its first ``reduced_rate_threshold`` proof gallons
of the calendar year and the standard rate after that; an ineligible
company pays the standard rate on everything.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ttb_compliance.audit import AuditAction, AuditLogger, RequestMetadata, snapshot
from ttb_compliance.config import FlatSettings, get_settings
from ttb_compliance.db import SessionFactory, unit_of_work, utcnow
from ttb_compliance.errors import EntityNotFound, InvalidQuantity, InvalidTransition
from ttb_compliance.events.publisher import EventPublisher, get_publisher
from ttb_compliance.events.types import tax_determined, tax_paid
from ttb_compliance.gauge import GaugeProcessor
from ttb_compliance.ledger import LedgerEntry, TransactionLedger
from ttb_compliance.locks import KeyedLocks
from ttb_compliance.models import (
    Company,
    SpiritsClass,
    TaxDetermination,
    TaxStatus,
    TransactionType,
)
from ttb_compliance.quantities import ZERO, non_negative, round2
from ttb_compliance.schedule import ReportingPeriod

logger = structlog.get_logger(__name__)

# Product line the determination is booked under in the ledger
DETERMINATION_PRODUCT_TYPE = "Distilled Spirits"
DETERMINATION_SPIRITS_CLASS = SpiritsClass.UNDER_190_PROOF

# Determinations of one company are serialized so YTD totals stay exact
_company_locks = KeyedLocks()


@dataclass(frozen=True)
class TaxRates:
    """Per-proof-gallon rates and the annual reduced-rate allowance."""

    standard_rate: Decimal
    reduced_rate: Decimal
    reduced_rate_threshold: Decimal

    @classmethod
    def from_settings(cls, settings: FlatSettings | None = None) -> "TaxRates":
        settings = settings or get_settings()
        return cls(
            standard_rate=settings.standard_rate,
            reduced_rate=settings.reduced_rate,
            reduced_rate_threshold=settings.reduced_rate_threshold,
        )


@dataclass(frozen=True)
class ExciseTaxCalculation:
    """Result of splitting a removal across the two rate tiers."""

    total_proof_gallons: Decimal
    prior_ytd_proof_gallons: Decimal
    eligible: bool
    reduced_rate_gallons: Decimal
    standard_rate_gallons: Decimal
    reduced_rate_tax: Decimal
    standard_rate_tax: Decimal
    total_tax: Decimal
    effective_rate: Decimal
    eligibility_reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_proof_gallons": str(self.total_proof_gallons),
            "prior_ytd_proof_gallons": str(self.prior_ytd_proof_gallons),
            "eligible": self.eligible,
            "reduced_rate_gallons": str(self.reduced_rate_gallons),
            "standard_rate_gallons": str(self.standard_rate_gallons),
            "reduced_rate_tax": str(self.reduced_rate_tax),
            "standard_rate_tax": str(self.standard_rate_tax),
            "total_tax": str(self.total_tax),
            "effective_rate": str(self.effective_rate),
            "eligibility_reason": self.eligibility_reason,
        }


@dataclass(frozen=True)
class DeterminationLine:
    """One determination as listed in a monthly summary."""

    determination_id: int
    order_ref: str
    determination_date: date
    proof_gallons: Decimal
    tax_amount: Decimal
    effective_rate: Decimal
    paid_on: date | None


@dataclass(frozen=True)
class ExciseTaxSummary:
    """Excise tax activity of one company in one month."""

    company_id: int
    period: ReportingPeriod
    determination_count: int = 0
    proof_gallons: Decimal = ZERO
    tax_due: Decimal = ZERO
    tax_paid: Decimal = ZERO
    determinations: tuple[DeterminationLine, ...] = field(default=())

    @property
    def outstanding(self) -> Decimal:
        return self.tax_due - self.tax_paid

    def to_dict(self) -> dict[str, Any]:
        return {
            "company_id": self.company_id,
            "month": self.period.month,
            "year": self.period.year,
            "determination_count": self.determination_count,
            "proof_gallons": str(self.proof_gallons),
            "tax_due": str(self.tax_due),
            "tax_paid": str(self.tax_paid),
            "outstanding": str(self.outstanding),
            "determinations": [
                {
                    "id": line.determination_id,
                    "order_ref": line.order_ref,
                    "determination_date": line.determination_date.isoformat(),
                    "proof_gallons": str(line.proof_gallons),
                    "tax_amount": str(line.tax_amount),
                    "effective_rate": str(line.effective_rate),
                    "paid_on": line.paid_on.isoformat() if line.paid_on else None,
                }
                for line in self.determinations
            ],
        }


def calculate_excise_tax(
    total_proof_gallons: Any,
    prior_ytd_proof_gallons: Any,
    eligible: bool,
    rates: TaxRates,
    eligibility_reason: str = "",
) -> ExciseTaxCalculation:
    """Split a removal across the reduced and standard tiers.

    Args:
        total_proof_gallons: Proof gallons removed.
        prior_ytd_proof_gallons: Proof gallons already determined this year.
        eligible: Whether the company qualifies for the reduced rate.
        rates: Rates and the annual reduced-rate allowance.

    Returns:
        The split, with each tier's tax rounded to cents.

    Raises:
        InvalidQuantity: If either amount is negative or not finite.
    """
    total = non_negative(total_proof_gallons, "total_proof_gallons")
    prior_ytd = non_negative(prior_ytd_proof_gallons, "prior_ytd_proof_gallons")

    if eligible:
        remaining = max(ZERO, rates.reduced_rate_threshold - prior_ytd)
        reduced_gallons = min(total, remaining)
    else:
        reduced_gallons = ZERO
    standard_gallons = total - reduced_gallons

    reduced_tax = round2(reduced_gallons * rates.reduced_rate)
    standard_tax = round2(standard_gallons * rates.standard_rate)
    total_tax = reduced_tax + standard_tax
    effective_rate = round2(total_tax / total) if total > 0 else round2(ZERO)

    return ExciseTaxCalculation(
        total_proof_gallons=total,
        prior_ytd_proof_gallons=prior_ytd,
        eligible=eligible,
        reduced_rate_gallons=reduced_gallons,
        standard_rate_gallons=standard_gallons,
        reduced_rate_tax=reduced_tax,
        standard_rate_tax=standard_tax,
        total_tax=total_tax,
        effective_rate=effective_rate,
        eligibility_reason=eligibility_reason,
    )


class ExciseTaxService:
    """Determines, records and summarizes excise tax per company."""

    def __init__(
        self,
        session_factory: SessionFactory,
        ledger: TransactionLedger | None = None,
        gauges: GaugeProcessor | None = None,
        audit_logger: AuditLogger | None = None,
        settings: FlatSettings | None = None,
        publisher: EventPublisher | None = None,
    ):
        self._session_factory = session_factory
        self._audit = audit_logger or AuditLogger(session_factory)
        self._ledger = ledger or TransactionLedger(session_factory, self._audit)
        self._gauges = gauges or GaugeProcessor(session_factory, self._audit)
        self._settings = settings
        self._publisher = publisher
        self._logger = logger.bind(component="excise_tax")

    @property
    def settings(self) -> FlatSettings:
        return self._settings or get_settings()

    @property
    def rates(self) -> TaxRates:
        return TaxRates.from_settings(self.settings)

    @property
    def publisher(self) -> EventPublisher:
        return self._publisher or get_publisher()

    def eligibility(self, company: Company) -> tuple[bool, str]:
        """Decide reduced-rate eligibility and say why."""
        if not company.reduced_rate_eligible:
            return False, "Company is marked ineligible for the reduced rate"
        limit = self.settings.annual_production_limit
        production = company.annual_production_pg
        if limit is not None and production is not None and production >= limit:
            return False, f"Annual production ({production} PG) exceeds limit of {limit} PG"
        return True, "Eligible for the reduced rate"

    def is_eligible(self, company: Company) -> bool:
        return self.eligibility(company)[0]

    def year_to_date_proof_gallons(
        self,
        company_id: int,
        year: int,
        through: date | None = None,
        session: Session | None = None,
    ) -> Decimal:
        """Sum proof gallons determined in ``year``, up to and including ``through``."""
        statement = select(func.coalesce(func.sum(TaxDetermination.proof_gallons), 0)).where(
            TaxDetermination.company_id == company_id,
            TaxDetermination.determination_date >= date(year, 1, 1),
            TaxDetermination.determination_date < date(year + 1, 1, 1),
        )
        if through is not None:
            statement = statement.where(TaxDetermination.determination_date <= through)
        if session is not None:
            total = session.scalar(statement)
        else:
            with self._session_factory() as own_session:
                total = own_session.scalar(statement)
        return round2(Decimal(str(total or 0)))

    def preview(
        self, company_id: int, proof_gallons: Any, on: date | None = None
    ) -> ExciseTaxCalculation:
        """Calculate the tax a removal would incur today. Writes nothing."""
        on = on or utcnow().date()
        with self._session_factory() as session:
            company = self._company(session, company_id)
            return self._calculate(session, company, proof_gallons, on)

    def calculate_for_order(
        self, company_id: int, order_ref: str, on: date | None = None
    ) -> ExciseTaxCalculation:
        """Calculate tax on the effective removal gauges taken for an order.

        Raises:
            InvalidQuantity: If the order has no proof gallons gauged for removal.
        """
        on = on or utcnow().date()
        with self._session_factory() as session:
            company = self._company(session, company_id)
            proof_gallons = self._order_proof_gallons(session, company_id, order_ref)
            return self._calculate(session, company, proof_gallons, on)

    def record_determination(
        self,
        company_id: int,
        order_ref: str,
        actor: str,
        on: date | None = None,
        metadata: RequestMetadata | None = None,
    ) -> TaxDetermination:
        """Determine and record tax on an order's removal.

        Idempotent per order: a second call returns the existing row. The
        determination, its ``tax_determination`` ledger entry and both audit
        entries commit together.
        """
        on = on or utcnow().date()
        existing = self.get_for_order(company_id, order_ref)
        if existing is not None:
            self._logger.info(
                "tax_determination_exists", company_id=company_id, order_ref=order_ref
            )
            return existing

        try:
            with _company_locks.hold(company_id):
                with unit_of_work(self._session_factory) as session:
                    determination, calculation = self._determine(
                        session, company_id, order_ref, actor, on, metadata
                    )
        except IntegrityError:
            existing = self.get_for_order(company_id, order_ref)
            if existing is None:
                raise
            return existing

        self._logger.info(
            "tax_determined",
            determination_id=determination.id,
            company_id=company_id,
            order_ref=order_ref,
            proof_gallons=str(determination.proof_gallons),
            tax_amount=str(determination.tax_amount),
            reduced_rate_gallons=str(calculation.reduced_rate_gallons),
        )
        self.publisher.publish(
            tax_determined(
                company_id=company_id,
                determination_id=determination.id,
                order_ref=order_ref,
                proof_gallons=str(determination.proof_gallons),
                tax_amount=str(determination.tax_amount),
            )
        )
        return determination

    def record_payment(
        self,
        determination_id: int,
        payment_reference: str,
        paid_on: date,
        actor: str,
        metadata: RequestMetadata | None = None,
    ) -> TaxDetermination:
        """Mark a determination as paid. Payment fields are the only ones that change.

        Raises:
            InvalidTransition: If the determination is already paid.
        """
        if not (payment_reference or "").strip():
            raise InvalidQuantity("payment_reference is required")

        with unit_of_work(self._session_factory) as session:
            determination = session.get(TaxDetermination, determination_id)
            if determination is None:
                raise EntityNotFound(f"Tax determination {determination_id} not found")
            if determination.paid_on is not None:
                raise InvalidTransition(
                    f"Tax determination {determination_id} was already paid on "
                    f"{determination.paid_on.isoformat()}",
                    current="paid",
                    action="record_payment",
                )
            before = snapshot(determination)
            determination.payment_reference = payment_reference.strip()
            determination.paid_on = paid_on
            session.flush()
            self._audit.record_change(
                session, AuditAction.UPDATE, actor, determination, old_value=before, metadata=metadata
            )

        self._logger.info(
            "tax_payment_recorded",
            determination_id=determination_id,
            payment_reference=determination.payment_reference,
        )
        self.publisher.publish(
            tax_paid(
                company_id=determination.company_id,
                determination_id=determination.id,
                order_ref=determination.order_ref,
                tax_amount=str(determination.tax_amount),
                payment_reference=determination.payment_reference,
            )
        )
        return determination

    def get_for_order(self, company_id: int, order_ref: str) -> TaxDetermination | None:
        with self._session_factory() as session:
            return session.scalar(
                select(TaxDetermination).where(
                    TaxDetermination.company_id == company_id,
                    TaxDetermination.order_ref == order_ref,
                )
            )

    def monthly_summary(
        self, company_id: int, month: int, year: int, session: Session | None = None
    ) -> ExciseTaxSummary:
        """Summarize determinations dated in one month."""
        period = ReportingPeriod(year=year, month=month)
        statement = (
            select(TaxDetermination)
            .where(
                TaxDetermination.company_id == company_id,
                TaxDetermination.determination_date >= period.start,
                TaxDetermination.determination_date < period.end,
            )
            .order_by(TaxDetermination.determination_date, TaxDetermination.id)
        )
        if session is not None:
            rows = list(session.scalars(statement))
        else:
            with self._session_factory() as own_session:
                rows = list(own_session.scalars(statement))

        lines = tuple(
            DeterminationLine(
                determination_id=row.id,
                order_ref=row.order_ref,
                determination_date=row.determination_date,
                proof_gallons=row.proof_gallons,
                tax_amount=row.tax_amount,
                effective_rate=row.effective_rate,
                paid_on=row.paid_on,
            )
            for row in rows
        )
        return ExciseTaxSummary(
            company_id=company_id,
            period=period,
            determination_count=len(lines),
            proof_gallons=sum((line.proof_gallons for line in lines), ZERO),
            tax_due=sum((line.tax_amount for line in lines), ZERO),
            tax_paid=sum((line.tax_amount for line in lines if line.paid_on), ZERO),
            determinations=lines,
        )

    def _determine(
        self,
        session: Session,
        company_id: int,
        order_ref: str,
        actor: str,
        on: date,
        metadata: RequestMetadata | None,
    ) -> tuple[TaxDetermination, ExciseTaxCalculation]:
        company = self._company(session, company_id)
        proof_gallons = self._order_proof_gallons(session, company_id, order_ref)
        calculation = self._calculate(session, company, proof_gallons, on)

        determination = TaxDetermination(
            company_id=company_id,
            order_ref=order_ref,
            determination_date=on,
            proof_gallons=calculation.total_proof_gallons,
            reduced_rate_gallons=calculation.reduced_rate_gallons,
            standard_rate_gallons=calculation.standard_rate_gallons,
            reduced_rate_tax=calculation.reduced_rate_tax,
            standard_rate_tax=calculation.standard_rate_tax,
            effective_rate=calculation.effective_rate,
            tax_amount=calculation.total_tax,
        )
        session.add(determination)
        session.flush()
        self._audit.record_change(session, AuditAction.CREATE, actor, determination, metadata=metadata)

        self._ledger.record(
            LedgerEntry(
                company_id=company_id,
                transaction_date=on,
                transaction_type=TransactionType.TAX_DETERMINATION,
                product_type=DETERMINATION_PRODUCT_TYPE,
                spirits_class=DETERMINATION_SPIRITS_CLASS,
                tax_status=TaxStatus.TAX_PAID,
                proof_gallons=calculation.total_proof_gallons,
                source_ref=f"tax_determination:{determination.id}",
                notes=(
                    f"Excise tax ${calculation.total_tax} on {calculation.total_proof_gallons} PG "
                    f"for order {order_ref}: {calculation.reduced_rate_gallons} PG reduced, "
                    f"{calculation.standard_rate_gallons} PG standard"
                ),
            ),
            actor,
            metadata=metadata,
            session=session,
        )
        return determination, calculation

    def _calculate(
        self, session: Session, company: Company, proof_gallons: Any, on: date
    ) -> ExciseTaxCalculation:
        eligible, reason = self.eligibility(company)
        prior_ytd = (
            self.year_to_date_proof_gallons(company.id, on.year, through=on, session=session)
            if eligible
            else ZERO
        )
        return calculate_excise_tax(proof_gallons, prior_ytd, eligible, self.rates, reason)

    def _order_proof_gallons(self, session: Session, company_id: int, order_ref: str) -> Decimal:
        gauges = self._gauges.removal_gauges_for_order(company_id, order_ref, session=session)
        total = sum((gauge.proof_gallons for gauge in gauges), ZERO)
        if total <= 0:
            raise InvalidQuantity(
                f"Order {order_ref} has no proof gallons gauged for removal",
                details={"company_id": company_id, "order_ref": order_ref},
            )
        return total

    @staticmethod
    def _company(session: Session, company_id: int) -> Company:
        company = session.get(Company, company_id)
        if company is None:
            raise EntityNotFound(f"Company {company_id} not found")
        return company
