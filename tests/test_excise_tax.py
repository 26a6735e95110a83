"""Tests for excise tax calculation and determinations."""

import threading
from datetime import date
from decimal import Decimal

import pytest

from ttb_compliance.audit import AuditFilter
from ttb_compliance.errors import EntityNotFound, InvalidQuantity, InvalidTransition
from ttb_compliance.events import EventType
from ttb_compliance.excise_tax import ExciseTaxService, TaxRates, calculate_excise_tax
from ttb_compliance.ledger import LedgerFilter
from ttb_compliance.models import GaugeType, TaxStatus, TransactionType

RATES = TaxRates(
    standard_rate=Decimal("13.50"),
    reduced_rate=Decimal("2.70"),
    reduced_rate_threshold=Decimal("100000"),
)


@pytest.fixture
def make_service(session_factory, ledger, gauges, audit, settings, publisher):
    """Build a tax service with some settings overridden."""

    def _make(**overrides):
        return ExciseTaxService(
            session_factory,
            ledger=ledger,
            gauges=gauges,
            audit_logger=audit,
            settings=settings.model_copy(update=overrides),
            publisher=publisher,
        )

    return _make


@pytest.fixture
def removal(gauges, company):
    """Gauge a barrel out of bond for an order."""

    def _removal(order_ref, proof=120, volume=50, barrel_ref=None):
        return gauges.record(
            company.id,
            barrel_ref or f"{order_ref}-barrel",
            GaugeType.REMOVAL,
            proof,
            60,
            volume,
            actor="gauger",
            order_ref=order_ref,
        )

    return _removal


class TestCalculateExciseTax:
    """Tests for the two-tier split."""

    def test_split_across_threshold(self):
        """Test that a removal crossing the allowance is split between tiers."""
        result = calculate_excise_tax(Decimal("2000"), Decimal("99000"), True, RATES)

        assert result.reduced_rate_gallons == Decimal("1000")
        assert result.standard_rate_gallons == Decimal("1000")
        assert result.reduced_rate_tax == Decimal("2700.00")
        assert result.standard_rate_tax == Decimal("13500.00")
        assert result.total_tax == Decimal("16200.00")
        assert result.effective_rate == Decimal("8.10")

    def test_first_removal_of_year_above_allowance(self):
        """Test that a first removal larger than the allowance pays both tiers."""
        result = calculate_excise_tax(Decimal("150000"), Decimal("0"), True, RATES)

        assert result.reduced_rate_gallons == Decimal("100000")
        assert result.standard_rate_gallons == Decimal("50000")
        assert result.total_tax == Decimal("100000") * RATES.reduced_rate + Decimal("50000") * RATES.standard_rate
        assert result.total_tax == Decimal("945000.00")
        assert result.effective_rate == Decimal("6.30")

    def test_all_reduced_below_threshold(self):
        """Test that an eligible removal inside the allowance pays only the reduced rate."""
        result = calculate_excise_tax("500", "0", True, RATES)

        assert result.reduced_rate_gallons == Decimal("500")
        assert result.standard_rate_gallons == Decimal("0")
        assert result.total_tax == Decimal("1350.00")
        assert result.effective_rate == Decimal("2.70")

    def test_allowance_used_up(self):
        """Test that once the allowance is used everything pays the standard rate."""
        result = calculate_excise_tax("10", "150000", True, RATES)

        assert result.reduced_rate_gallons == Decimal("0")
        assert result.total_tax == Decimal("135.00")

    def test_ineligible_pays_standard_rate(self):
        """Test that an ineligible company pays the standard rate on everything."""
        result = calculate_excise_tax("100", "0", False, RATES, eligibility_reason="not a craft producer")

        assert result.reduced_rate_gallons == Decimal("0")
        assert result.standard_rate_gallons == Decimal("100")
        assert result.total_tax == Decimal("1350.00")
        assert result.effective_rate == Decimal("13.50")
        assert not result.eligible
        assert result.eligibility_reason == "not a craft producer"

    def test_tiers_are_rounded_before_summing(self):
        """Test that the total is the sum of the rounded tier amounts."""
        result = calculate_excise_tax("0.01", "99999.995", True, RATES)

        # 0.005 PG at each rate: 0.0135 -> 0.01 and 0.0675 -> 0.07
        assert result.reduced_rate_tax == Decimal("0.01")
        assert result.standard_rate_tax == Decimal("0.07")
        assert result.total_tax == Decimal("0.08")

    def test_zero_gallons(self):
        """Test that nothing removed means no tax and a zero effective rate."""
        result = calculate_excise_tax(0, 0, True, RATES)

        assert result.total_tax == Decimal("0.00")
        assert result.effective_rate == Decimal("0.00")

    @pytest.mark.parametrize("total,prior", [("-1", "0"), ("10", "-5"), ("nan", "0"), (None, "0")])
    def test_rejects_bad_quantities(self, total, prior):
        """Test that negative or non-numeric amounts are rejected."""
        with pytest.raises(InvalidQuantity):
            calculate_excise_tax(total, prior, True, RATES)

    def test_to_dict(self):
        """Test calculation serialization."""
        result = calculate_excise_tax("2000", "99000", True, RATES).to_dict()

        assert result["total_tax"] == "16200.00"
        assert result["eligible"] is True


class TestEligibility:
    """Tests for reduced-rate eligibility."""

    def test_flagged_company_is_eligible(self, tax_service, company):
        """Test that a flagged company under any limit is eligible."""
        eligible, reason = tax_service.eligibility(company)

        assert eligible
        assert reason

    def test_production_at_limit_is_ineligible(self, make_service, company):
        """Test that production at or above the configured limit removes eligibility."""
        service = make_service(annual_production_limit=Decimal("38500"))

        eligible, reason = service.eligibility(company)

        assert not eligible
        assert "38500" in reason

    def test_unflagged_company_is_ineligible(self, tax_service, registry):
        """Test that the company flag is required."""
        company = registry.create("Riverbend Spirits", "setup", "DSP-OR-20877", "93-7654321")

        assert not tax_service.is_eligible(company)
        calculation = tax_service.preview(company.id, "100", on=date(2025, 3, 1))
        assert calculation.total_tax == Decimal("1350.00")


class TestExciseTaxService:
    """Tests for recording determinations."""

    def test_preview_writes_nothing(self, tax_service, company):
        """Test that a preview uses the year-to-date total without recording anything."""
        calculation = tax_service.preview(company.id, "100", on=date(2025, 3, 1))

        assert calculation.total_tax == Decimal("270.00")
        assert tax_service.year_to_date_proof_gallons(company.id, 2025) == Decimal("0.00")

    def test_preview_unknown_company(self, tax_service):
        """Test that previews need an existing company."""
        with pytest.raises(EntityNotFound):
            tax_service.preview(404, "100")

    def test_order_without_removal_gauges(self, tax_service, gauges, company):
        """Test that an order with no removal gauges cannot be taxed."""
        gauges.record(company.id, "B-1", GaugeType.STORAGE, 120, 60, 50, actor="gauger", order_ref="SO-9")

        with pytest.raises(InvalidQuantity):
            tax_service.calculate_for_order(company.id, "SO-9", on=date(2025, 3, 1))
        with pytest.raises(InvalidQuantity):
            tax_service.record_determination(company.id, "SO-9", "clerk", on=date(2025, 3, 1))

    def test_record_determination(self, tax_service, removal, ledger, audit, publisher, company):
        """Test that a determination, its ledger entry and audit entries are written together."""
        removal("SO-100", proof=120, volume=50, barrel_ref="B-1")
        removal("SO-100", proof=110, volume=40, barrel_ref="B-2")

        determination = tax_service.record_determination(
            company.id, "SO-100", "clerk", on=date(2025, 3, 15)
        )

        assert determination.proof_gallons == Decimal("104.00")
        assert determination.reduced_rate_gallons == Decimal("104.00")
        assert determination.tax_amount == Decimal("280.80")
        assert determination.effective_rate == Decimal("2.70")

        entries = ledger.query(
            company.id,
            date(2025, 3, 1),
            date(2025, 4, 1),
            LedgerFilter.of_types([TransactionType.TAX_DETERMINATION]),
        ).all()
        assert len(entries) == 1
        assert entries[0].source_ref == f"tax_determination:{determination.id}"
        assert entries[0].tax_status == TaxStatus.TAX_PAID
        assert entries[0].proof_gallons == Decimal("104.00")

        audited = audit.query(AuditFilter(entity_type="tax_determination")).all()
        assert [e.entity_id for e in audited] == [determination.id]

        events = [e for e in publisher.recent_events if e.event_type == EventType.TAX_DETERMINED]
        assert len(events) == 1
        assert events[0].to_dict()["tax"]["tax_amount"] == "280.80"

    def test_record_determination_is_idempotent(self, tax_service, removal, ledger, company):
        """Test that determining the same order twice returns the first determination."""
        removal("SO-101")

        first = tax_service.record_determination(company.id, "SO-101", "clerk", on=date(2025, 3, 2))
        second = tax_service.record_determination(company.id, "SO-101", "clerk", on=date(2025, 3, 9))

        assert second.id == first.id
        rows = ledger.query(
            company.id, date(2025, 1, 1), date(2026, 1, 1), LedgerFilter.of_types(["tax_determination"])
        ).all()
        assert len(rows) == 1

    def test_year_to_date_moves_removals_to_standard_rate(self, make_service, removal, company):
        """Test that earlier determinations in the year use up the allowance."""
        service = make_service(reduced_rate_threshold=Decimal("100"))
        removal("SO-1", proof=120, volume=50)
        removal("SO-2", proof=110, volume=40)

        first = service.record_determination(company.id, "SO-1", "clerk", on=date(2025, 2, 1))
        second = service.record_determination(company.id, "SO-2", "clerk", on=date(2025, 3, 1))

        assert first.reduced_rate_gallons == Decimal("60.00")
        assert second.reduced_rate_gallons == Decimal("40.00")
        assert second.standard_rate_gallons == Decimal("4.00")
        assert second.tax_amount == Decimal("162.00")
        assert service.year_to_date_proof_gallons(company.id, 2025) == Decimal("104.00")
        assert service.year_to_date_proof_gallons(
            company.id, 2025, through=date(2025, 2, 28)
        ) == Decimal("60.00")

    def test_allowance_resets_each_year(self, make_service, removal, company):
        """Test that the year-to-date total starts over on January 1."""
        service = make_service(reduced_rate_threshold=Decimal("100"))
        removal("SO-1", proof=120, volume=100)
        removal("SO-2", proof=120, volume=50)

        service.record_determination(company.id, "SO-1", "clerk", on=date(2025, 12, 30))
        january = service.record_determination(company.id, "SO-2", "clerk", on=date(2026, 1, 2))

        assert january.standard_rate_gallons == Decimal("0.00")
        assert service.year_to_date_proof_gallons(company.id, 2026) == Decimal("60.00")

    def test_concurrent_determinations_share_allowance_exactly(self, make_service, removal, company):
        """Test that simultaneous determinations never both claim the same allowance."""
        service = make_service(reduced_rate_threshold=Decimal("100"))
        orders = [f"SO-{n}" for n in range(4)]
        for order in orders:
            removal(order, proof=120, volume=50)

        results = []
        errors = []

        def determine(order_ref):
            try:
                results.append(
                    service.record_determination(company.id, order_ref, "clerk", on=date(2025, 3, 1))
                )
            except Exception as exc:  # noqa: BLE001
                errors.append(exc)

        threads = [threading.Thread(target=determine, args=(order,)) for order in orders]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert sum(r.reduced_rate_gallons for r in results) == Decimal("100.00")
        assert sum(r.standard_rate_gallons for r in results) == Decimal("140.00")

    def test_record_payment(self, tax_service, removal, publisher, company):
        """Test that payment is recorded once and published."""
        removal("SO-200")
        determination = tax_service.record_determination(
            company.id, "SO-200", "clerk", on=date(2025, 3, 4)
        )

        paid = tax_service.record_payment(determination.id, " PAY-8812 ", date(2025, 4, 14), "treasurer")

        assert paid.payment_reference == "PAY-8812"
        assert paid.paid_on == date(2025, 4, 14)
        assert paid.tax_amount == determination.tax_amount
        assert any(e.event_type == EventType.TAX_PAID for e in publisher.recent_events)

        with pytest.raises(InvalidTransition):
            tax_service.record_payment(determination.id, "PAY-8813", date(2025, 4, 15), "treasurer")

    def test_record_payment_requires_reference(self, tax_service):
        """Test that a payment needs a reference."""
        with pytest.raises(InvalidQuantity):
            tax_service.record_payment(1, "  ", date(2025, 4, 14), "treasurer")

    def test_monthly_summary(self, tax_service, removal, company):
        """Test that a month's determinations are totalled with paid and outstanding amounts."""
        removal("SO-1", proof=120, volume=50)
        removal("SO-2", proof=110, volume=40)
        removal("SO-3", proof=100, volume=10)
        first = tax_service.record_determination(company.id, "SO-1", "clerk", on=date(2025, 3, 3))
        tax_service.record_determination(company.id, "SO-2", "clerk", on=date(2025, 3, 20))
        tax_service.record_determination(company.id, "SO-3", "clerk", on=date(2025, 4, 1))
        tax_service.record_payment(first.id, "PAY-1", date(2025, 3, 31), "treasurer")

        summary = tax_service.monthly_summary(company.id, 3, 2025)

        assert summary.determination_count == 2
        assert summary.proof_gallons == Decimal("104.00")
        assert summary.tax_due == Decimal("280.80")
        assert summary.tax_paid == Decimal("162.00")
        assert summary.outstanding == Decimal("118.80")
        assert [line.order_ref for line in summary.determinations] == ["SO-1", "SO-2"]
        assert summary.to_dict()["determinations"][0]["paid_on"] == "2025-03-31"
