"""Audit trail for compliance entities.

Every mutation of a compliance entity writes exactly one audit entry in the
same session (and therefore the same transaction) as the mutation. If the
entry cannot be written, ``AuditWriteFailure`` propagates and the unit of
work rolls the mutation back.
"""

import csv
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, TextIO

import structlog
from sqlalchemy import func, inspect, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ttb_compliance.db import SessionFactory, StreamingQuery, utcnow
from ttb_compliance.errors import AuditWriteFailure
from ttb_compliance.models import (
    AuditLogEntry,
    Company,
    GaugeRecord,
    InventorySnapshot,
    LedgerTransaction,
    MonthlyReport,
    ReportStatus,
    TaxDetermination,
)

logger = structlog.get_logger(__name__)

MAX_USER_AGENT_LENGTH = 500

# Statuses after which a period accepts no new ledger entries
LOCKING_STATUSES = (ReportStatus.APPROVED, ReportStatus.SUBMITTED, ReportStatus.ARCHIVED)

CSV_COLUMNS = [
    "timestamp_utc",
    "actor",
    "entity_type",
    "entity_id",
    "action",
    "change_description",
    "ip_address",
    "user_agent",
]

ENTITY_TYPES: dict[type, str] = {
    Company: "company",
    GaugeRecord: "gauge_record",
    InventorySnapshot: "inventory_snapshot",
    LedgerTransaction: "ledger_transaction",
    MonthlyReport: "monthly_report",
    TaxDetermination: "tax_determination",
}

# Timestamps handed out by this process; guarded by _clock_lock
_clock_lock = threading.Lock()
_last_issued: datetime | None = None


class AuditAction(str, Enum):
    """Kind of mutation an audit entry describes."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


ACTION_VERBS = {
    AuditAction.CREATE: "created",
    AuditAction.UPDATE: "updated",
    AuditAction.DELETE: "deleted",
}


@dataclass(frozen=True)
class RequestMetadata:
    """Where a change came from, when the caller knows."""

    ip_address: str | None = None
    user_agent: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        user_agent = self.user_agent
        if user_agent and len(user_agent) > MAX_USER_AGENT_LENGTH:
            user_agent = user_agent[:MAX_USER_AGENT_LENGTH]
        data: dict[str, Any] = {"ip_address": self.ip_address, "user_agent": user_agent}
        data.update(self.extra)
        return data


@dataclass
class AuditFilter:
    """Filters for querying the audit trail. Date bounds are inclusive."""

    entity_type: str | None = None
    entity_id: int | None = None
    actor: str | None = None
    company_id: int | None = None
    start: datetime | None = None
    end: datetime | None = None


def _json_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return [_json_value(item) for item in value]
    if isinstance(value, dict):
        return {key: _json_value(item) for key, item in value.items()}
    return value


def snapshot(entity: Any) -> dict[str, Any]:
    """Serialize an ORM row's column values into a JSON-safe dict."""
    mapper = inspect(entity).mapper
    return {
        attr.key: _json_value(getattr(entity, attr.key))
        for attr in mapper.column_attrs
    }


def entity_type_name(entity: Any) -> str:
    return ENTITY_TYPES.get(type(entity), type(entity).__tablename__)


def _company_of(entity: Any) -> int | None:
    if isinstance(entity, Company):
        return entity.id
    return getattr(entity, "company_id", None)


def changed_fields(old: dict[str, Any] | None, new: dict[str, Any] | None) -> list[str]:
    if not old or not new:
        return []
    return sorted(key for key in new if old.get(key) != new.get(key))


def describe_change(
    action: AuditAction,
    entity_type: str,
    actor: str,
    old: dict[str, Any] | None,
    new: dict[str, Any] | None,
) -> str:
    """Build a one-line human readable description of a change."""
    verb = ACTION_VERBS[action]
    values = new or old or {}

    if entity_type == "ledger_transaction":
        subject = (
            f"{values.get('transaction_type')} transaction for "
            f"{values.get('proof_gallons')} proof gallons on {values.get('transaction_date')}"
        )
    elif entity_type == "gauge_record":
        subject = (
            f"{values.get('gauge_type')} gauge record for barrel {values.get('barrel_ref')} "
            f"({values.get('proof_gallons')} proof gallons)"
        )
    elif entity_type == "monthly_report":
        subject = f"monthly report for {values.get('month')}/{values.get('year')}"
        if old and new and old.get("status") != new.get("status"):
            subject += f" ({old.get('status')} -> {new.get('status')})"
    elif entity_type == "tax_determination":
        subject = (
            f"tax determination for order {values.get('order_ref')} "
            f"({values.get('proof_gallons')} proof gallons, ${values.get('tax_amount')})"
        )
    elif entity_type == "inventory_snapshot":
        subject = (
            f"{values.get('source')} inventory snapshot for {values.get('product_type')} "
            f"{values.get('spirits_class')} at {values.get('month')}/{values.get('year')}"
        )
    elif entity_type == "company":
        subject = f"company {values.get('name')}"
    else:
        subject = entity_type

    description = f"{actor} {verb} {subject}"
    fields = changed_fields(old, new)
    if action == AuditAction.UPDATE and fields:
        description += f"; changed: {', '.join(fields)}"
    return description


class AuditQuery(StreamingQuery[AuditLogEntry]):
    """Time-ordered, lazily streamed audit entries."""

    pass


class AuditLogger:
    """Writes and reads the audit trail."""

    def __init__(self, session_factory: SessionFactory | None = None):
        self._session_factory = session_factory
        self._logger = logger.bind(component="audit")

    def record(
        self,
        session: Session,
        entity_type: str,
        entity_id: int,
        action: AuditAction,
        actor: str,
        old_value: dict[str, Any] | None = None,
        new_value: dict[str, Any] | None = None,
        metadata: RequestMetadata | None = None,
        company_id: int | None = None,
    ) -> AuditLogEntry:
        """Write one audit entry in the caller's session.

        Raises:
            AuditWriteFailure: If the entry cannot be flushed.
        """
        try:
            timestamp = self._next_timestamp(session)
            entry = AuditLogEntry(
                entity_type=entity_type,
                entity_id=entity_id,
                company_id=company_id,
                action=action.value,
                actor=actor,
                timestamp=timestamp,
                old_values=old_value,
                new_values=new_value,
                change_description=describe_change(
                    action, entity_type, actor, old_value, new_value
                ),
                request_metadata=metadata.to_dict() if metadata else None,
            )
            session.add(entry)
            session.flush()
        except SQLAlchemyError as exc:
            self._logger.error(
                "audit_write_failed",
                entity_type=entity_type,
                entity_id=entity_id,
                action=action.value,
                error=str(exc),
            )
            raise AuditWriteFailure(
                f"Could not write audit entry for {entity_type} {entity_id}",
                details={"action": action.value, "error": str(exc)},
            ) from exc

        self._logger.info(
            "audit_recorded",
            entity_type=entity_type,
            entity_id=entity_id,
            action=action.value,
            actor=actor,
        )
        return entry

    def record_change(
        self,
        session: Session,
        action: AuditAction,
        actor: str,
        entity: Any,
        old_value: dict[str, Any] | None = None,
        metadata: RequestMetadata | None = None,
    ) -> AuditLogEntry:
        """Audit a change to an ORM entity, snapshotting its current state.

        The entity must already be flushed so it has an id. ``old_value`` is
        the snapshot taken before an update; deletes pass the entity as it
        was and record no new value.
        """
        current = snapshot(entity)
        if action == AuditAction.DELETE:
            old_value, new_value = old_value or current, None
        else:
            new_value = current
        return self.record(
            session,
            entity_type=entity_type_name(entity),
            entity_id=entity.id,
            action=action,
            actor=actor,
            old_value=old_value,
            new_value=new_value,
            metadata=metadata,
            company_id=_company_of(entity),
        )

    def query(self, filters: AuditFilter | None = None, session: Session | None = None) -> AuditQuery:
        """Build a lazy, restartable, time-ordered query over the trail."""
        filters = filters or AuditFilter()
        statement = select(AuditLogEntry)
        if filters.entity_type is not None:
            statement = statement.where(AuditLogEntry.entity_type == filters.entity_type)
        if filters.entity_id is not None:
            statement = statement.where(AuditLogEntry.entity_id == filters.entity_id)
        if filters.actor is not None:
            statement = statement.where(AuditLogEntry.actor == filters.actor)
        if filters.company_id is not None:
            statement = statement.where(AuditLogEntry.company_id == filters.company_id)
        if filters.start is not None:
            statement = statement.where(AuditLogEntry.timestamp >= filters.start)
        if filters.end is not None:
            statement = statement.where(AuditLogEntry.timestamp <= filters.end)
        statement = statement.order_by(AuditLogEntry.timestamp, AuditLogEntry.id)
        return AuditQuery(statement, session_factory=self._session_factory, session=session)

    def export_csv(self, entries: Iterable[AuditLogEntry], stream: TextIO) -> int:
        """Write entries as CSV to ``stream``. Returns the number of rows."""
        writer = csv.writer(stream)
        writer.writerow(CSV_COLUMNS)
        count = 0
        for entry in entries:
            request = entry.request_metadata or {}
            writer.writerow(
                [
                    entry.timestamp.isoformat(sep=" ", timespec="microseconds"),
                    entry.actor,
                    entry.entity_type,
                    entry.entity_id,
                    entry.action,
                    entry.change_description or "",
                    request.get("ip_address") or "",
                    request.get("user_agent") or "",
                ]
            )
            count += 1
        self._logger.info("audit_exported", rows=count)
        return count

    def is_period_locked(self, session: Session, company_id: int, month: int, year: int) -> bool:
        """Check whether an approved or filed report closes the period."""
        statement = (
            select(MonthlyReport.id)
            .where(
                MonthlyReport.company_id == company_id,
                MonthlyReport.month == month,
                MonthlyReport.year == year,
                MonthlyReport.status.in_(LOCKING_STATUSES),
            )
            .limit(1)
        )
        return session.execute(statement).first() is not None

    def _next_timestamp(self, session: Session) -> datetime:
        global _last_issued

        with _clock_lock:
            latest = session.execute(select(func.max(AuditLogEntry.timestamp))).scalar()
            if _last_issued is not None and (latest is None or _last_issued > latest):
                latest = _last_issued
            now = utcnow()
            if latest is not None and now <= latest:
                now = latest + timedelta(microseconds=1)
            _last_issued = now
            return now
