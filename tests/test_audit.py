"""Tests for the audit trail."""

import csv
import io
from datetime import date, timedelta

import pytest
from sqlalchemy import func, select, text

from ttb_compliance.audit import (
    CSV_COLUMNS,
    AuditAction,
    AuditFilter,
    RequestMetadata,
    changed_fields,
    describe_change,
)
from ttb_compliance.errors import AuditWriteFailure
from ttb_compliance.ledger import LedgerEntry
from ttb_compliance.models import LedgerTransaction, TransactionType


class TestDescribeChange:
    """Tests for human readable descriptions."""

    def test_create_description(self):
        """Test the description of a new ledger entry."""
        description = describe_change(
            AuditAction.CREATE,
            "ledger_transaction",
            "operator",
            None,
            {"transaction_type": "loss", "proof_gallons": "4.00", "transaction_date": "2025-03-02"},
        )

        assert description == "operator created loss transaction for 4.00 proof gallons on 2025-03-02"

    def test_update_lists_changed_fields(self):
        """Test that updates name the fields that changed."""
        old = {"month": 3, "year": 2025, "status": "draft", "reviewed_by": None}
        new = {"month": 3, "year": 2025, "status": "pending_review", "reviewed_by": None}

        description = describe_change(AuditAction.UPDATE, "monthly_report", "alice", old, new)

        assert description == (
            "alice updated monthly report for 3/2025 (draft -> pending_review); changed: status"
        )

    def test_changed_fields(self):
        """Test field comparison."""
        assert changed_fields({"a": 1, "b": 2}, {"a": 1, "b": 3}) == ["b"]
        assert changed_fields(None, {"a": 1}) == []


class TestRequestMetadata:
    """Tests for request metadata."""

    def test_user_agent_is_truncated(self):
        """Test that long user agents are cut to 500 characters."""
        metadata = RequestMetadata(ip_address="10.0.0.8", user_agent="x" * 800, extra={"request_id": "r-1"})

        data = metadata.to_dict()

        assert len(data["user_agent"]) == 500
        assert data["ip_address"] == "10.0.0.8"
        assert data["request_id"] == "r-1"


class TestAuditLogger:
    """Tests for writing and reading the trail."""

    def test_metadata_is_stored(self, ledger, audit, company):
        """Test that request metadata travels with the entry."""
        transaction = ledger.record(
            LedgerEntry(
                company_id=company.id,
                transaction_date=date(2025, 3, 1),
                transaction_type=TransactionType.PRODUCTION,
                product_type="Rye",
                spirits_class="under_190_proof",
                proof_gallons="10",
            ),
            "operator",
            metadata=RequestMetadata(ip_address="192.168.1.20", user_agent="pytest"),
        )

        (entry,) = audit.query(AuditFilter(entity_type="ledger_transaction", entity_id=transaction.id))
        assert entry.request_metadata == {"ip_address": "192.168.1.20", "user_agent": "pytest"}

    def test_timestamps_strictly_increase(self, record, audit):
        """Test that entries written back to back never share a timestamp."""
        for _ in range(20):
            record(TransactionType.PRODUCTION, 1)

        timestamps = [e.timestamp for e in audit.query()]

        assert len(timestamps) == 21  # company plus twenty entries
        assert all(later > earlier for earlier, later in zip(timestamps, timestamps[1:]))

    def test_failed_audit_rolls_back_mutation(self, record, engine, session_factory):
        """Test that when the audit entry cannot be written the change is not kept."""
        with engine.begin() as connection:
            connection.execute(text("DROP TABLE audit_log"))

        with pytest.raises(AuditWriteFailure):
            record(TransactionType.PRODUCTION, 100)

        with session_factory() as session:
            assert session.scalar(select(func.count(LedgerTransaction.id))) == 0

    def test_query_filters(self, record, audit, lifecycle, company):
        """Test filtering by entity, actor, company and time."""
        record(TransactionType.PRODUCTION, 10, actor="alice")
        record(TransactionType.PRODUCTION, 20, actor="bob")
        report = lifecycle.generate(company.id, 3, 2025, "carol")

        assert [e.actor for e in audit.query(AuditFilter(actor="alice"))] == ["alice"]
        assert len(audit.query(AuditFilter(entity_type="monthly_report", entity_id=report.id)).all()) == 1
        assert len(audit.query(AuditFilter(company_id=company.id)).all()) >= 4

        everything = audit.query().all()
        middle = everything[2].timestamp
        windowed = audit.query(AuditFilter(start=middle, end=middle)).all()
        assert [e.id for e in windowed] == [everything[2].id]
        assert audit.query(AuditFilter(start=everything[-1].timestamp + timedelta(seconds=1))).all() == []

    def test_query_is_restartable(self, record, audit):
        """Test that iterating a query twice reads the trail twice."""
        query = audit.query(AuditFilter(entity_type="ledger_transaction"))
        record(TransactionType.PRODUCTION, 10)

        assert len(list(query)) == 1
        record(TransactionType.PRODUCTION, 10)
        assert len(list(query)) == 2

    def test_export_csv(self, record, audit):
        """Test CSV export columns and rows."""
        record(TransactionType.PRODUCTION, "12.50", actor="alice")
        stream = io.StringIO()

        rows = audit.export_csv(audit.query(AuditFilter(entity_type="ledger_transaction")), stream)

        parsed = list(csv.reader(io.StringIO(stream.getvalue())))
        assert rows == 1
        assert parsed[0] == CSV_COLUMNS
        assert parsed[1][1] == "alice"
        assert parsed[1][2] == "ledger_transaction"
        assert parsed[1][4] == "create"
        assert "12.50 proof gallons" in parsed[1][5]
        assert parsed[1][6] == ""
