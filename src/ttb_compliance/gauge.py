"""Gauge processing: barrel measurements to wine gallons and proof gallons.

Observed volume is corrected to the 60°F reference with a banded factor
table (temperature band x proof band), then converted to proof gallons:

    wine_gallons  = round(observed_volume * factor, 2)
    proof_gallons = round(wine_gallons * proof / 100, 2)
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy import exists, select
from sqlalchemy.orm import Session, aliased

from ttb_compliance.audit import AuditAction, AuditLogger, RequestMetadata
from ttb_compliance.db import SessionFactory, unit_of_work, utcnow
from ttb_compliance.errors import EntityNotFound, InvalidMeasurement, InvalidTransition
from ttb_compliance.models import Company, GaugeRecord, GaugeType, coerce_enum
from ttb_compliance.quantities import round2, to_decimal

logger = structlog.get_logger(__name__)

MAX_PROOF = Decimal("200")
MAX_TEMPERATURE_F = Decimal("212")
REFERENCE_TEMPERATURE_F = Decimal("60")

# Upper bounds of the proof bands; proof at or above the last bound uses the last column
PROOF_BAND_LIMITS = (Decimal("100"), Decimal("120"), Decimal("140"), Decimal("160"), Decimal("180"))

# Rows: <40°F, 40-50, 50-60, exactly 60, 60-70, 70-80, 80-90, >90.
# Columns: proof <100, 100-120, 120-140, 140-160, 160-180, 180+.
CORRECTION_FACTORS: tuple[tuple[Decimal, ...], ...] = tuple(
    tuple(Decimal(factor) for factor in row)
    for row in (
        ("1.0150", "1.0180", "1.0200", "1.0220", "1.0240", "1.0260"),
        ("1.0100", "1.0120", "1.0135", "1.0150", "1.0165", "1.0180"),
        ("1.0050", "1.0060", "1.0068", "1.0075", "1.0083", "1.0090"),
        ("1.0000", "1.0000", "1.0000", "1.0000", "1.0000", "1.0000"),
        ("0.9950", "0.9940", "0.9933", "0.9925", "0.9918", "0.9910"),
        ("0.9900", "0.9880", "0.9865", "0.9850", "0.9835", "0.9820"),
        ("0.9850", "0.9820", "0.9798", "0.9775", "0.9753", "0.9730"),
        ("0.9800", "0.9760", "0.9730", "0.9700", "0.9670", "0.9640"),
    )
)


@dataclass(frozen=True)
class GaugeReading:
    """Normalized result of one gauge."""

    proof: Decimal
    temperature_f: Decimal
    observed_volume: Decimal
    correction_factor: Decimal
    wine_gallons: Decimal
    proof_gallons: Decimal


def _temperature_band(temperature_f: Decimal) -> int:
    if temperature_f < 40:
        return 0
    if temperature_f < 50:
        return 1
    if temperature_f < REFERENCE_TEMPERATURE_F:
        return 2
    if temperature_f == REFERENCE_TEMPERATURE_F:
        return 3
    if temperature_f <= 70:
        return 4
    if temperature_f <= 80:
        return 5
    if temperature_f <= 90:
        return 6
    return 7


def _proof_band(proof: Decimal) -> int:
    for index, limit in enumerate(PROOF_BAND_LIMITS):
        if proof < limit:
            return index
    return len(PROOF_BAND_LIMITS)


def correction_factor(temperature_f: Decimal, proof: Decimal) -> Decimal:
    """Look up the volume correction factor to 60°F."""
    return CORRECTION_FACTORS[_temperature_band(temperature_f)][_proof_band(proof)]


def process_gauge(proof: Any, temperature_f: Any, observed_volume: Any) -> GaugeReading:
    """Normalize one barrel measurement.

    Args:
        proof: Observed proof, 0 to 200.
        temperature_f: Observed temperature in °F, above 0 and at most 212.
        observed_volume: Observed volume in gallons, zero or more.

    Returns:
        The reading with wine gallons at 60°F and proof gallons.

    Raises:
        InvalidMeasurement: If any input is outside physical bounds.
    """
    proof = to_decimal(proof, "proof", InvalidMeasurement)
    temperature_f = to_decimal(temperature_f, "temperature_f", InvalidMeasurement)
    observed_volume = to_decimal(observed_volume, "observed_volume", InvalidMeasurement)

    if not 0 <= proof <= MAX_PROOF:
        raise InvalidMeasurement(
            f"Proof must be between 0 and {MAX_PROOF}, got {proof}",
            details={"field": "proof", "value": str(proof)},
        )
    if not 0 < temperature_f <= MAX_TEMPERATURE_F:
        raise InvalidMeasurement(
            f"Temperature must be above 0°F and at most {MAX_TEMPERATURE_F}°F, got {temperature_f}",
            details={"field": "temperature_f", "value": str(temperature_f)},
        )
    if observed_volume < 0:
        raise InvalidMeasurement(
            f"Observed volume must be non-negative, got {observed_volume}",
            details={"field": "observed_volume", "value": str(observed_volume)},
        )

    factor = correction_factor(temperature_f, proof)
    wine_gallons = round2(observed_volume * factor)
    proof_gallons = round2(wine_gallons * proof / 100)

    return GaugeReading(
        proof=proof,
        temperature_f=temperature_f,
        observed_volume=observed_volume,
        correction_factor=factor,
        wine_gallons=wine_gallons,
        proof_gallons=proof_gallons,
    )


def _not_superseded():
    later = aliased(GaugeRecord)
    return ~exists(select(later.id).where(later.corrects_id == GaugeRecord.id))


class GaugeProcessor:
    """Records barrel gauges. Records are never edited; corrections are new rows."""

    def __init__(self, session_factory: SessionFactory, audit_logger: AuditLogger | None = None):
        self._session_factory = session_factory
        self._audit = audit_logger or AuditLogger(session_factory)
        self._logger = logger.bind(component="gauge_processor")

    def record(
        self,
        company_id: int,
        barrel_ref: str,
        gauge_type: GaugeType | str,
        proof: Any,
        temperature_f: Any,
        observed_volume: Any,
        actor: str,
        gauged_at: datetime | None = None,
        operator_ref: str | None = None,
        order_ref: str | None = None,
        metadata: RequestMetadata | None = None,
    ) -> GaugeRecord:
        """Process and persist a gauge, with its audit entry."""
        gauge_type = coerce_enum(GaugeType, gauge_type, "gauge_type")
        reading = process_gauge(proof, temperature_f, observed_volume)

        with unit_of_work(self._session_factory) as session:
            if session.get(Company, company_id) is None:
                raise EntityNotFound(f"Company {company_id} not found")
            record = GaugeRecord(
                company_id=company_id,
                barrel_ref=barrel_ref,
                gauge_type=gauge_type,
                gauged_at=gauged_at or utcnow(),
                operator_ref=operator_ref,
                order_ref=order_ref,
            )
            self._apply_reading(record, reading)
            session.add(record)
            session.flush()
            self._audit.record_change(session, AuditAction.CREATE, actor, record, metadata=metadata)

        self._logger.info(
            "gauge_recorded",
            gauge_id=record.id,
            barrel_ref=barrel_ref,
            gauge_type=gauge_type.value,
            proof_gallons=str(record.proof_gallons),
        )
        return record

    def correct(
        self,
        record_id: int,
        actor: str,
        proof: Any,
        temperature_f: Any,
        observed_volume: Any,
        reason: str,
        gauged_at: datetime | None = None,
        metadata: RequestMetadata | None = None,
    ) -> GaugeRecord:
        """Supersede a gauge with a corrected one. The original stays as recorded."""
        reading = process_gauge(proof, temperature_f, observed_volume)

        with unit_of_work(self._session_factory) as session:
            original = session.get(GaugeRecord, record_id)
            if original is None:
                raise EntityNotFound(f"Gauge record {record_id} not found")
            superseded_by = session.scalar(
                select(GaugeRecord.id).where(GaugeRecord.corrects_id == record_id)
            )
            if superseded_by is not None:
                raise InvalidTransition(
                    f"Gauge record {record_id} was already corrected by {superseded_by}",
                    current="superseded",
                    action="correct",
                )
            correction = GaugeRecord(
                company_id=original.company_id,
                barrel_ref=original.barrel_ref,
                gauge_type=original.gauge_type,
                gauged_at=gauged_at or utcnow(),
                operator_ref=original.operator_ref,
                order_ref=original.order_ref,
                corrects_id=original.id,
                correction_reason=reason,
            )
            self._apply_reading(correction, reading)
            session.add(correction)
            session.flush()
            self._audit.record_change(
                session, AuditAction.CREATE, actor, correction, metadata=metadata
            )

        self._logger.info("gauge_corrected", gauge_id=correction.id, corrects_id=record_id)
        return correction

    def get(self, record_id: int) -> GaugeRecord:
        with self._session_factory() as session:
            record = session.get(GaugeRecord, record_id)
            if record is None:
                raise EntityNotFound(f"Gauge record {record_id} not found")
            return record

    def records_for_barrel(
        self, company_id: int, barrel_ref: str, include_superseded: bool = False
    ) -> list[GaugeRecord]:
        """List a barrel's gauges, newest first."""
        statement = select(GaugeRecord).where(
            GaugeRecord.company_id == company_id, GaugeRecord.barrel_ref == barrel_ref
        )
        if not include_superseded:
            statement = statement.where(_not_superseded())
        statement = statement.order_by(GaugeRecord.gauged_at.desc(), GaugeRecord.id.desc())
        with self._session_factory() as session:
            return list(session.scalars(statement))

    def records_for_company(
        self,
        company_id: int,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[GaugeRecord]:
        """List a company's effective gauges in [start, end), newest first."""
        statement = select(GaugeRecord).where(
            GaugeRecord.company_id == company_id, _not_superseded()
        )
        if start is not None:
            statement = statement.where(GaugeRecord.gauged_at >= start)
        if end is not None:
            statement = statement.where(GaugeRecord.gauged_at < end)
        statement = statement.order_by(GaugeRecord.gauged_at.desc(), GaugeRecord.id.desc())
        with self._session_factory() as session:
            return list(session.scalars(statement))

    def removal_gauges_for_order(
        self, company_id: int, order_ref: str, session: Session | None = None
    ) -> list[GaugeRecord]:
        """Effective removal gauges taken for an order."""
        statement = (
            select(GaugeRecord)
            .where(
                GaugeRecord.company_id == company_id,
                GaugeRecord.order_ref == order_ref,
                GaugeRecord.gauge_type == GaugeType.REMOVAL,
                _not_superseded(),
            )
            .order_by(GaugeRecord.gauged_at, GaugeRecord.id)
        )
        if session is not None:
            return list(session.scalars(statement))
        with self._session_factory() as own_session:
            return list(own_session.scalars(statement))

    @staticmethod
    def _apply_reading(record: GaugeRecord, reading: GaugeReading) -> None:
        record.proof = reading.proof
        record.temperature_f = reading.temperature_f
        record.observed_volume = reading.observed_volume
        record.wine_gallons = reading.wine_gallons
        record.proof_gallons = reading.proof_gallons
