"""Relational model for compliance entities.

Every entity has a surrogate integer id. Associations are plain foreign
keys; services look related rows up explicitly instead of walking object
graphs. Gauge records, ledger transactions, snapshots and audit entries are
append-only.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, TypeVar

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from ttb_compliance.db import utcnow
from ttb_compliance.errors import UnknownClassification
from ttb_compliance.schedule import ReportCadence, ReportingPeriod, ReportSchedule

GALLONS = Numeric(14, 2)
MONEY = Numeric(14, 2)
RATE = Numeric(10, 4)


class TransactionType(str, Enum):
    """Inventory-affecting event recorded in the ledger."""

    PRODUCTION = "production"
    TRANSFER_IN = "transfer_in"
    TRANSFER_OUT = "transfer_out"
    LOSS = "loss"
    GAIN = "gain"
    TAX_DETERMINATION = "tax_determination"
    DESTRUCTION = "destruction"
    BOTTLING = "bottling"


class SpiritsClass(str, Enum):
    """Regulator spirits category used to segment reporting."""

    UNDER_190_PROOF = "under_190_proof"
    NEUTRAL_190_OR_MORE = "neutral_190_or_more"
    ALCOHOL = "alcohol"
    WINE = "wine"


class TaxStatus(str, Enum):
    """Whether inventory is bonded (untaxed), tax-paid, exported or tax-free."""

    BONDED = "bonded"
    TAX_PAID = "tax_paid"
    EXPORT = "export"
    TAX_FREE = "tax_free"


class GaugeType(str, Enum):
    """Purpose of a barrel gauge."""

    FILL = "fill"
    STORAGE = "storage"
    REMOVAL = "removal"


class FormType(str, Enum):
    """Regulator form a monthly report is filed on."""

    FORM_5110_28 = "5110_28"  # processing operations
    FORM_5110_40 = "5110_40"  # storage operations


class SnapshotSource(str, Enum):
    """Where an inventory snapshot came from."""

    REPORT = "report"  # closing balance of a generated report
    COUNT = "count"  # physical inventory count


class ReportStatus(str, Enum):
    """Lifecycle state of a monthly report."""

    DRAFT = "draft"
    VALIDATION_FAILED = "validation_failed"
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    SUBMITTED = "submitted"
    ARCHIVED = "archived"
    REJECTED = "rejected"


E = TypeVar("E", bound=Enum)


def coerce_enum(enum_cls: type[E], value: Any, field_name: str) -> E:
    """Convert a value to a member of a closed enumeration.

    Raises:
        UnknownClassification: If the value is not a member.
    """
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError as exc:
        allowed = ", ".join(member.value for member in enum_cls)
        raise UnknownClassification(
            f"Unknown {field_name} {value!r}; expected one of: {allowed}",
            details={"field": field_name, "value": value},
        ) from exc


def _enum_column(enum_cls: type[Enum]) -> SAEnum:
    return SAEnum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [member.value for member in members],
        validate_strings=True,
    )


class Base(DeclarativeBase):
    pass


class Company(Base):
    """A distillery and its report schedule configuration."""

    __tablename__ = "companies"

    id: Mapped[int] = mapped_column(primary_key=True)
    profile_key: Mapped[str | None] = mapped_column(String(100), unique=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    permit_number: Mapped[str | None] = mapped_column(String(50))
    ein: Mapped[str | None] = mapped_column(String(20))
    reduced_rate_eligible: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    annual_production_pg: Mapped[Decimal | None] = mapped_column(GALLONS)

    schedule_cadence: Mapped[ReportCadence] = mapped_column(
        _enum_column(ReportCadence), default=ReportCadence.MONTHLY, nullable=False
    )
    schedule_hour: Mapped[int] = mapped_column(Integer, default=6, nullable=False)
    schedule_day_of_month: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    schedule_day_of_week: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    auto_generate: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    @property
    def schedule(self) -> ReportSchedule:
        return ReportSchedule(
            cadence=self.schedule_cadence,
            hour=self.schedule_hour,
            day_of_month=self.schedule_day_of_month,
            day_of_week=self.schedule_day_of_week,
            auto_generate=self.auto_generate,
        )

    def apply_schedule(self, schedule: ReportSchedule) -> None:
        self.schedule_cadence = schedule.cadence
        self.schedule_hour = schedule.hour
        self.schedule_day_of_month = schedule.day_of_month
        self.schedule_day_of_week = schedule.day_of_week
        self.auto_generate = schedule.auto_generate


class GaugeRecord(Base):
    """An immutable barrel measurement. Corrections are new rows."""

    __tablename__ = "gauge_records"
    __table_args__ = (
        Index("ix_gauge_records_barrel", "company_id", "barrel_ref", "gauged_at"),
        Index("ix_gauge_records_order", "company_id", "order_ref"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id"), nullable=False)
    barrel_ref: Mapped[str] = mapped_column(String(100), nullable=False)
    gauge_type: Mapped[GaugeType] = mapped_column(_enum_column(GaugeType), nullable=False)
    gauged_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    proof: Mapped[Decimal] = mapped_column(Numeric(6, 2), nullable=False)
    temperature_f: Mapped[Decimal] = mapped_column(Numeric(6, 2), nullable=False)
    observed_volume: Mapped[Decimal] = mapped_column(GALLONS, nullable=False)
    wine_gallons: Mapped[Decimal] = mapped_column(GALLONS, nullable=False)
    proof_gallons: Mapped[Decimal] = mapped_column(GALLONS, nullable=False)
    operator_ref: Mapped[str | None] = mapped_column(String(100))
    order_ref: Mapped[str | None] = mapped_column(String(100))
    corrects_id: Mapped[int | None] = mapped_column(ForeignKey("gauge_records.id"))
    correction_reason: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class LedgerTransaction(Base):
    """An append-only inventory movement."""

    __tablename__ = "ledger_transactions"
    __table_args__ = (
        Index(
            "ix_ledger_natural_key",
            "company_id",
            "transaction_date",
            "transaction_type",
            "product_type",
            "spirits_class",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id"), nullable=False)
    transaction_date: Mapped[date] = mapped_column(Date, nullable=False)
    transaction_type: Mapped[TransactionType] = mapped_column(
        _enum_column(TransactionType), nullable=False
    )
    product_type: Mapped[str] = mapped_column(String(100), nullable=False)
    spirits_class: Mapped[SpiritsClass] = mapped_column(
        _enum_column(SpiritsClass), nullable=False
    )
    tax_status: Mapped[TaxStatus] = mapped_column(
        _enum_column(TaxStatus), default=TaxStatus.BONDED, nullable=False
    )
    proof_gallons: Mapped[Decimal] = mapped_column(GALLONS, nullable=False)
    wine_gallons: Mapped[Decimal] = mapped_column(GALLONS, nullable=False)
    source_ref: Mapped[str | None] = mapped_column(String(200))
    notes: Mapped[str | None] = mapped_column(Text)
    recorded_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class MonthlyReport(Base):
    """A monthly compliance report and its review/approval chain."""

    __tablename__ = "monthly_reports"
    __table_args__ = (
        # At most one live report per company, period and form.
        Index(
            "uq_monthly_reports_live_period",
            "company_id",
            "year",
            "month",
            "form_type",
            unique=True,
            sqlite_where=text("status != 'rejected'"),
            postgresql_where=text("status != 'rejected'"),
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id"), nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    form_type: Mapped[FormType] = mapped_column(
        _enum_column(FormType), default=FormType.FORM_5110_28, nullable=False
    )
    status: Mapped[ReportStatus] = mapped_column(
        _enum_column(ReportStatus), default=ReportStatus.DRAFT, nullable=False
    )

    generated_at: Mapped[datetime | None] = mapped_column(DateTime)
    generated_by: Mapped[str] = mapped_column(String(100), nullable=False)
    submitted_for_review_by: Mapped[str | None] = mapped_column(String(100))
    submitted_for_review_at: Mapped[datetime | None] = mapped_column(DateTime)
    reviewed_by: Mapped[str | None] = mapped_column(String(100))
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime)
    review_notes: Mapped[str | None] = mapped_column(Text)
    approved_by: Mapped[str | None] = mapped_column(String(100))
    approved_at: Mapped[datetime | None] = mapped_column(DateTime)
    submitted_by: Mapped[str | None] = mapped_column(String(100))
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime)
    confirmation_number: Mapped[str | None] = mapped_column(String(100))
    archived_by: Mapped[str | None] = mapped_column(String(100))
    archived_at: Mapped[datetime | None] = mapped_column(DateTime)

    document_ref: Mapped[str | None] = mapped_column(String(500))
    validation_errors: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, default=list, nullable=False
    )
    validation_warnings: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, default=list, nullable=False
    )
    validated_at: Mapped[datetime | None] = mapped_column(DateTime)
    tax_summary: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    superseded_by_id: Mapped[int | None] = mapped_column(ForeignKey("monthly_reports.id"))

    @property
    def period(self) -> ReportingPeriod:
        return ReportingPeriod(year=self.year, month=self.month)


class InventorySnapshot(Base):
    """Closing balance of one product/spirits class at the end of a period.

    Rows are written in batches: one batch per generated report, or one per
    physical inventory count. Batches are never edited; the newest batch of
    a source wins.
    """

    __tablename__ = "inventory_snapshots"
    __table_args__ = (
        Index("ix_inventory_snapshots_period", "company_id", "year", "month", "source"),
        Index("ix_inventory_snapshots_batch", "batch_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id"), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    source: Mapped[SnapshotSource] = mapped_column(_enum_column(SnapshotSource), nullable=False)
    batch_id: Mapped[str] = mapped_column(String(64), nullable=False)
    report_id: Mapped[int | None] = mapped_column(ForeignKey("monthly_reports.id"))
    product_type: Mapped[str] = mapped_column(String(100), nullable=False)
    spirits_class: Mapped[SpiritsClass] = mapped_column(
        _enum_column(SpiritsClass), nullable=False
    )
    proof_gallons: Mapped[Decimal] = mapped_column(GALLONS, nullable=False)
    wine_gallons: Mapped[Decimal] = mapped_column(GALLONS, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class TaxDetermination(Base):
    """Excise tax determined on one order's removal. Only payment fields change."""

    __tablename__ = "tax_determinations"
    __table_args__ = (UniqueConstraint("company_id", "order_ref", name="uq_tax_determination_order"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id"), nullable=False)
    order_ref: Mapped[str] = mapped_column(String(100), nullable=False)
    determination_date: Mapped[date] = mapped_column(Date, nullable=False)
    proof_gallons: Mapped[Decimal] = mapped_column(GALLONS, nullable=False)
    reduced_rate_gallons: Mapped[Decimal] = mapped_column(GALLONS, nullable=False)
    standard_rate_gallons: Mapped[Decimal] = mapped_column(GALLONS, nullable=False)
    reduced_rate_tax: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    standard_rate_tax: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    effective_rate: Mapped[Decimal] = mapped_column(RATE, nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    payment_reference: Mapped[str | None] = mapped_column(String(100))
    paid_on: Mapped[date | None] = mapped_column(Date)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class AuditLogEntry(Base):
    """Write-once before/after record of one mutation."""

    __tablename__ = "audit_log"
    __table_args__ = (
        Index("ix_audit_log_entity", "entity_type", "entity_id"),
        Index("ix_audit_log_timestamp", "timestamp", "id"),
        Index("ix_audit_log_company", "company_id", "timestamp"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[int] = mapped_column(Integer, nullable=False)
    company_id: Mapped[int | None] = mapped_column(ForeignKey("companies.id"))
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    actor: Mapped[str] = mapped_column(String(100), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    old_values: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    new_values: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    change_description: Mapped[str | None] = mapped_column(Text)
    request_metadata: Mapped[dict[str, Any] | None] = mapped_column(JSON)
