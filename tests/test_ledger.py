"""Tests for the transaction ledger."""

from datetime import date
from decimal import Decimal

import pytest

from ttb_compliance.audit import AuditFilter
from ttb_compliance.errors import (
    ComplianceError,
    EntityNotFound,
    InvalidQuantity,
    InvalidTransition,
    PeriodLocked,
    UnknownClassification,
)
from ttb_compliance.ledger import LedgerEntry, LedgerFilter
from ttb_compliance.models import SpiritsClass, TaxStatus, TransactionType


class TestRecord:
    """Tests for appending transactions."""

    def test_record_stores_entry(self, record):
        """Test that a recorded transaction keeps its classification and quantities."""
        transaction = record("production", "1000.50", wine_gallons="500.25")

        assert transaction.id is not None
        assert transaction.transaction_type == TransactionType.PRODUCTION
        assert transaction.spirits_class == SpiritsClass.UNDER_190_PROOF
        assert transaction.tax_status == TaxStatus.BONDED
        assert transaction.proof_gallons == Decimal("1000.50")
        assert transaction.wine_gallons == Decimal("500.25")

    def test_record_writes_audit_entry(self, record, audit, company):
        """Test that each append writes one create entry by the actor."""
        transaction = record(TransactionType.PRODUCTION, "250.00", actor="still_operator")

        entries = audit.query(
            AuditFilter(entity_type="ledger_transaction", entity_id=transaction.id)
        ).all()

        assert len(entries) == 1
        assert entries[0].action == "create"
        assert entries[0].actor == "still_operator"
        assert entries[0].company_id == company.id
        assert entries[0].old_values is None
        assert entries[0].new_values["proof_gallons"] == "250.00"
        assert "production transaction for 250.00 proof gallons" in entries[0].change_description

    def test_zero_gallons_allowed(self, record):
        """Test that zero is a valid quantity."""
        transaction = record(TransactionType.GAIN, 0)

        assert transaction.proof_gallons == Decimal("0")

    @pytest.mark.parametrize("value", ["-0.01", "nan", "inf", None, "lots"])
    def test_rejects_bad_quantities(self, ledger, company, value):
        """Test that negative, non-finite or non-numeric gallons are rejected."""
        with pytest.raises(InvalidQuantity):
            ledger.record(
                LedgerEntry(
                    company_id=company.id,
                    transaction_date=date(2025, 3, 1),
                    transaction_type=TransactionType.PRODUCTION,
                    product_type="Bourbon",
                    spirits_class=SpiritsClass.UNDER_190_PROOF,
                    proof_gallons=value,
                ),
                "operator",
            )

    def test_rejects_unknown_type(self, ledger, company):
        """Test that transaction types outside the enumeration are rejected."""
        with pytest.raises(UnknownClassification):
            ledger.record(
                LedgerEntry(
                    company_id=company.id,
                    transaction_date=date(2025, 3, 1),
                    transaction_type="evaporation",
                    product_type="Bourbon",
                    spirits_class=SpiritsClass.UNDER_190_PROOF,
                    proof_gallons=10,
                ),
                "operator",
            )

    def test_rejects_unknown_spirits_class(self, record):
        """Test that spirits classes outside the enumeration are rejected."""
        with pytest.raises(UnknownClassification):
            record(TransactionType.PRODUCTION, 10, spirits_class="moonshine")

    def test_requires_product_type(self, record):
        """Test that a blank product type is rejected."""
        with pytest.raises(ComplianceError):
            record(TransactionType.PRODUCTION, 10, product_type="   ")

    def test_unknown_company(self, record):
        """Test that entries for a missing company are rejected."""
        with pytest.raises(EntityNotFound):
            record(TransactionType.PRODUCTION, 10, company_id=404)

    def test_rejected_entry_writes_nothing(self, record, ledger, company):
        """Test that a failed append leaves neither a row nor an audit entry."""
        with pytest.raises(InvalidQuantity):
            record(TransactionType.PRODUCTION, -5)

        rows = ledger.query(company.id, date(2025, 1, 1), date(2026, 1, 1)).all()
        assert rows == []


class TestPeriodLock:
    """Tests for the closed-period guard."""

    def test_entries_refused_after_approval(self, record, lifecycle, company):
        """Test that an approved month accepts no new entries."""
        record(TransactionType.PRODUCTION, 100)
        report = lifecycle.generate(company.id, 3, 2025, "preparer")
        lifecycle.submit_for_review(report.id, "preparer")
        lifecycle.approve(report.id, "reviewer")

        with pytest.raises(PeriodLocked):
            record(TransactionType.LOSS, 2, on=date(2025, 3, 31))

        # The following month is still open
        record(TransactionType.LOSS, 2, on=date(2025, 4, 1))

    def test_draft_does_not_lock(self, record, lifecycle, company):
        """Test that a draft report leaves its month open."""
        lifecycle.generate(company.id, 3, 2025, "preparer")

        record(TransactionType.PRODUCTION, 5, on=date(2025, 3, 30))


class TestQuery:
    """Tests for reading the ledger."""

    def test_half_open_range_in_order(self, record, ledger, company):
        """Test that the end date is exclusive and rows come back by date then insertion."""
        late = record(TransactionType.PRODUCTION, 10, on=date(2025, 3, 20))
        first = record(TransactionType.PRODUCTION, 20, on=date(2025, 3, 1))
        second = record(TransactionType.LOSS, 1, on=date(2025, 3, 1))
        record(TransactionType.PRODUCTION, 30, on=date(2025, 4, 1))
        record(TransactionType.PRODUCTION, 40, on=date(2025, 2, 28))

        rows = ledger.query(company.id, date(2025, 3, 1), date(2025, 4, 1)).all()

        assert [row.id for row in rows] == [first.id, second.id, late.id]

    def test_query_is_lazy_and_restartable(self, record, ledger, company):
        """Test that a query re-reads the ledger each time it is iterated."""
        query = ledger.query(company.id, date(2025, 3, 1), date(2025, 4, 1))
        assert list(query) == []

        record(TransactionType.PRODUCTION, 10)

        assert len(list(query)) == 1
        assert len(list(query)) == 1

    def test_filters(self, record, ledger, company):
        """Test narrowing by type, product and spirits class."""
        record(TransactionType.PRODUCTION, 10, product_type="Bourbon")
        record(TransactionType.PRODUCTION, 20, product_type="Vodka", spirits_class="neutral_190_or_more")
        record(TransactionType.LOSS, 1, product_type="bourbon")

        bourbon = ledger.query(
            company.id, date(2025, 3, 1), date(2025, 4, 1), LedgerFilter(product_type="BOURBON")
        ).all()
        assert len(bourbon) == 2

        losses = ledger.query(
            company.id, date(2025, 3, 1), date(2025, 4, 1), LedgerFilter.of_types(["loss"])
        ).all()
        assert [row.proof_gallons for row in losses] == [Decimal("1.00")]

        neutral = ledger.query(
            company.id,
            date(2025, 3, 1),
            date(2025, 4, 1),
            LedgerFilter(spirits_class=SpiritsClass.NEUTRAL_190_OR_MORE),
        ).all()
        assert [row.product_type for row in neutral] == ["Vodka"]


class TestCorrections:
    """Tests for offsetting corrections."""

    def test_overstated_production_is_offset_by_loss(self, record, ledger):
        """Test that correcting production downward appends a loss for the difference."""
        original = record(TransactionType.PRODUCTION, 100, wine_gallons=50)

        correction = ledger.record_correction(original.id, 90, 45, "supervisor")

        assert correction.transaction_type == TransactionType.LOSS
        assert correction.proof_gallons == Decimal("10")
        assert correction.wine_gallons == Decimal("5")
        assert correction.source_ref == f"ledger_transaction:{original.id}"
        assert [c.id for c in ledger.corrections_of(original.id)] == [correction.id]

    def test_understated_loss_is_offset_by_loss(self, record, ledger):
        """Test that increasing a recorded loss appends a further loss."""
        original = record(TransactionType.LOSS, 4, wine_gallons=2)

        correction = ledger.record_correction(original.id, 6, 3, "supervisor")

        assert correction.transaction_type == TransactionType.LOSS
        assert correction.proof_gallons == Decimal("2")

    def test_overstated_loss_is_offset_by_gain(self, record, ledger):
        """Test that reducing a recorded loss appends a gain."""
        original = record(TransactionType.LOSS, 4, wine_gallons=2)

        correction = ledger.record_correction(original.id, 1, 0.5, "supervisor")

        assert correction.transaction_type == TransactionType.GAIN
        assert correction.proof_gallons == Decimal("3")

    def test_no_change_is_rejected(self, record, ledger):
        """Test that a correction must change something."""
        original = record(TransactionType.PRODUCTION, 100, wine_gallons=50)

        with pytest.raises(InvalidQuantity):
            ledger.record_correction(original.id, 100, 50, "supervisor")

    def test_non_storage_entries_cannot_be_corrected(self, record, ledger):
        """Test that bottling entries have no loss or gain offset."""
        original = record(TransactionType.BOTTLING, 100)

        with pytest.raises(InvalidTransition):
            ledger.record_correction(original.id, 90, 45, "supervisor")

    def test_original_is_untouched(self, record, ledger, company):
        """Test that the corrected transaction keeps its recorded amounts."""
        original = record(TransactionType.PRODUCTION, 100, wine_gallons=50)
        ledger.record_correction(original.id, 120, 60, "supervisor")

        rows = ledger.query(
            company.id, date(2025, 3, 1), date(2025, 4, 1), LedgerFilter.of_types(["production"])
        ).all()
        assert [row.proof_gallons for row in rows] == [Decimal("100.00")]
