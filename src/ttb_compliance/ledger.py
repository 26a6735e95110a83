"""Append-only ledger of inventory-affecting transactions."""

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Iterable

import structlog
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ttb_compliance.audit import AuditAction, AuditLogger, RequestMetadata
from ttb_compliance.db import SessionFactory, StreamingQuery, unit_of_work
from ttb_compliance.errors import (
    ComplianceError,
    EntityNotFound,
    InvalidQuantity,
    InvalidTransition,
    PeriodLocked,
)
from ttb_compliance.models import (
    Company,
    LedgerTransaction,
    SpiritsClass,
    TaxStatus,
    TransactionType,
    coerce_enum,
)
from ttb_compliance.quantities import ZERO, non_negative

logger = structlog.get_logger(__name__)

# Sign of each transaction type's effect on stored inventory. Tax
# determinations and bottling move spirits between accounts without
# changing the storage balance, so they have no entry.
INVENTORY_EFFECT: dict[TransactionType, int] = {
    TransactionType.PRODUCTION: 1,
    TransactionType.TRANSFER_IN: 1,
    TransactionType.GAIN: 1,
    TransactionType.TRANSFER_OUT: -1,
    TransactionType.LOSS: -1,
    TransactionType.DESTRUCTION: -1,
}


@dataclass(frozen=True)
class LedgerEntry:
    """A transaction to append, as submitted by an upstream collaborator."""

    company_id: int
    transaction_date: date
    transaction_type: TransactionType | str
    product_type: str
    spirits_class: SpiritsClass | str
    proof_gallons: Any
    wine_gallons: Any = ZERO
    tax_status: TaxStatus | str = TaxStatus.BONDED
    source_ref: str | None = None
    notes: str | None = None


@dataclass(frozen=True)
class LedgerFilter:
    """Optional narrowing of a ledger query."""

    transaction_types: frozenset[TransactionType] | None = None
    product_type: str | None = None
    spirits_class: SpiritsClass | None = None
    tax_status: TaxStatus | None = None

    @classmethod
    def of_types(cls, types: Iterable[TransactionType | str]) -> "LedgerFilter":
        return cls(
            transaction_types=frozenset(
                coerce_enum(TransactionType, value, "transaction_type") for value in types
            )
        )


class LedgerQuery(StreamingQuery[LedgerTransaction]):
    """Transactions ordered by date, then insertion order."""

    pass


def source_ref_for(transaction_id: int) -> str:
    return f"ledger_transaction:{transaction_id}"


class TransactionLedger:
    """Appends and reads ledger transactions. Nothing is ever updated or removed."""

    def __init__(self, session_factory: SessionFactory, audit_logger: AuditLogger | None = None):
        self._session_factory = session_factory
        self._audit = audit_logger or AuditLogger(session_factory)
        self._logger = logger.bind(component="ledger")

    def record(
        self,
        entry: LedgerEntry,
        actor: str,
        metadata: RequestMetadata | None = None,
        session: Session | None = None,
    ) -> LedgerTransaction:
        """Validate and append a transaction, with its audit entry.

        When ``session`` is given the write joins the caller's unit of work.

        Raises:
            InvalidQuantity: Gallons are negative or not numeric.
            UnknownClassification: Type, spirits class or tax status is unknown.
            PeriodLocked: The month already has an approved or filed report.
            EntityNotFound: The company does not exist.
        """
        transaction = self._build(entry)

        if session is not None:
            return self._append(session, transaction, actor, metadata)
        with unit_of_work(self._session_factory) as own_session:
            return self._append(own_session, transaction, actor, metadata)

    def record_correction(
        self,
        original_id: int,
        corrected_proof_gallons: Any,
        corrected_wine_gallons: Any,
        actor: str,
        notes: str | None = None,
        correction_date: date | None = None,
        metadata: RequestMetadata | None = None,
    ) -> LedgerTransaction:
        """Offset a transaction with a loss or gain entry.

        The original is left untouched. The new entry carries the
        difference between the corrected and recorded amounts, as a loss
        when inventory was overstated and a gain when it was understated,
        and points back at the original through its source reference.
        """
        corrected_pg = non_negative(corrected_proof_gallons, "corrected_proof_gallons")
        corrected_wg = non_negative(corrected_wine_gallons, "corrected_wine_gallons")

        with unit_of_work(self._session_factory) as session:
            original = session.get(LedgerTransaction, original_id)
            if original is None:
                raise EntityNotFound(f"Ledger transaction {original_id} not found")
            sign = INVENTORY_EFFECT.get(original.transaction_type)
            if sign is None:
                raise InvalidTransition(
                    f"{original.transaction_type.value} transactions do not affect "
                    "stored inventory and cannot be corrected with a loss or gain",
                    current=original.transaction_type.value,
                    action="correct",
                )

            proof_delta = sign * (corrected_pg - original.proof_gallons)
            wine_delta = sign * (corrected_wg - original.wine_gallons)
            if proof_delta == 0 and wine_delta == 0:
                raise InvalidQuantity(
                    f"Correction of transaction {original_id} changes nothing"
                )
            correction_type = (
                TransactionType.GAIN
                if proof_delta > 0 or (proof_delta == 0 and wine_delta > 0)
                else TransactionType.LOSS
            )

            correction = self._build(
                LedgerEntry(
                    company_id=original.company_id,
                    transaction_date=correction_date or original.transaction_date,
                    transaction_type=correction_type,
                    product_type=original.product_type,
                    spirits_class=original.spirits_class,
                    tax_status=original.tax_status,
                    proof_gallons=abs(proof_delta),
                    wine_gallons=abs(wine_delta),
                    source_ref=source_ref_for(original.id),
                    notes=notes or f"Correction of transaction {original.id}",
                )
            )
            return self._append(session, correction, actor, metadata)

    def query(
        self,
        company_id: int,
        start: date,
        end: date,
        filters: LedgerFilter | None = None,
        session: Session | None = None,
    ) -> LedgerQuery:
        """Build a lazy, restartable query over ``start <= date < end``."""
        statement = select(LedgerTransaction).where(
            LedgerTransaction.company_id == company_id,
            LedgerTransaction.transaction_date >= start,
            LedgerTransaction.transaction_date < end,
        )
        if filters is not None:
            if filters.transaction_types:
                statement = statement.where(
                    LedgerTransaction.transaction_type.in_(filters.transaction_types)
                )
            if filters.product_type:
                statement = statement.where(
                    func.lower(LedgerTransaction.product_type) == filters.product_type.lower()
                )
            if filters.spirits_class is not None:
                statement = statement.where(
                    LedgerTransaction.spirits_class == filters.spirits_class
                )
            if filters.tax_status is not None:
                statement = statement.where(LedgerTransaction.tax_status == filters.tax_status)
        statement = statement.order_by(LedgerTransaction.transaction_date, LedgerTransaction.id)
        return LedgerQuery(statement, session_factory=self._session_factory, session=session)

    def corrections_of(self, original_id: int) -> list[LedgerTransaction]:
        statement = (
            select(LedgerTransaction)
            .where(LedgerTransaction.source_ref == source_ref_for(original_id))
            .order_by(LedgerTransaction.id)
        )
        with self._session_factory() as session:
            return list(session.scalars(statement))

    def _build(self, entry: LedgerEntry) -> LedgerTransaction:
        product_type = (entry.product_type or "").strip()
        if not product_type:
            raise ComplianceError("product_type is required")
        transaction_date = entry.transaction_date
        if isinstance(transaction_date, datetime):
            transaction_date = transaction_date.date()
        if not isinstance(transaction_date, date):
            raise ComplianceError(f"transaction_date must be a date, got {transaction_date!r}")
        return LedgerTransaction(
            company_id=entry.company_id,
            transaction_date=transaction_date,
            transaction_type=coerce_enum(TransactionType, entry.transaction_type, "transaction_type"),
            product_type=product_type,
            spirits_class=coerce_enum(SpiritsClass, entry.spirits_class, "spirits_class"),
            tax_status=coerce_enum(TaxStatus, entry.tax_status, "tax_status"),
            proof_gallons=non_negative(entry.proof_gallons, "proof_gallons"),
            wine_gallons=non_negative(entry.wine_gallons, "wine_gallons"),
            source_ref=entry.source_ref,
            notes=entry.notes,
        )

    def _append(
        self,
        session: Session,
        transaction: LedgerTransaction,
        actor: str,
        metadata: RequestMetadata | None,
    ) -> LedgerTransaction:
        if session.get(Company, transaction.company_id) is None:
            raise EntityNotFound(f"Company {transaction.company_id} not found")
        day = transaction.transaction_date
        if self._audit.is_period_locked(session, transaction.company_id, day.month, day.year):
            raise PeriodLocked(
                f"{day.year:04d}-{day.month:02d} is closed for company "
                f"{transaction.company_id}; record the entry in an open period",
                details={"company_id": transaction.company_id, "month": day.month, "year": day.year},
            )

        session.add(transaction)
        session.flush()
        self._audit.record_change(session, AuditAction.CREATE, actor, transaction, metadata=metadata)

        self._logger.info(
            "transaction_recorded",
            transaction_id=transaction.id,
            company_id=transaction.company_id,
            transaction_type=transaction.transaction_type.value,
            proof_gallons=str(transaction.proof_gallons),
        )
        return transaction
