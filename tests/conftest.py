"""Pytest configuration and fixtures."""

import os
from datetime import date
from decimal import Decimal

import pytest

# Set test environment variables before importing settings
os.environ.setdefault("TTB_STANDARD_RATE", "13.50")
os.environ.setdefault("TTB_REDUCED_RATE", "2.70")
os.environ.setdefault("TTB_REDUCED_RATE_THRESHOLD", "100000")
os.environ.setdefault("TTB_RECONCILIATION_TOLERANCE", "0.01")
os.environ.setdefault("TTB_DATABASE_URL", "sqlite://")

from ttb_compliance.audit import AuditLogger  # noqa: E402
from ttb_compliance.companies import CompanyRegistry  # noqa: E402
from ttb_compliance.config.settings import get_settings  # noqa: E402
from ttb_compliance.db import create_db_engine, create_session_factory, init_db  # noqa: E402
from ttb_compliance.events.publisher import EventPublisher, reset_publisher  # noqa: E402
from ttb_compliance.excise_tax import ExciseTaxService  # noqa: E402
from ttb_compliance.gauge import GaugeProcessor  # noqa: E402
from ttb_compliance.ledger import LedgerEntry, TransactionLedger  # noqa: E402
from ttb_compliance.lifecycle import ReportLifecycleManager  # noqa: E402
from ttb_compliance.models import SpiritsClass  # noqa: E402
from ttb_compliance.reconciliation import ReconciliationAggregator  # noqa: E402
from ttb_compliance.schedule import ReportCadence, ReportSchedule  # noqa: E402


@pytest.fixture
def settings():
    """Fresh settings built from the test environment."""
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def _fresh_publisher():
    reset_publisher()
    yield
    reset_publisher()


@pytest.fixture
def engine(tmp_path):
    """A file-backed SQLite database so threads can share it."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'ttb.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def publisher():
    return EventPublisher()


@pytest.fixture
def audit(session_factory):
    return AuditLogger(session_factory)


@pytest.fixture
def ledger(session_factory, audit):
    return TransactionLedger(session_factory, audit)


@pytest.fixture
def gauges(session_factory, audit):
    return GaugeProcessor(session_factory, audit)


@pytest.fixture
def aggregator(session_factory, ledger, audit):
    return ReconciliationAggregator(session_factory, ledger, audit)


@pytest.fixture
def tax_service(session_factory, ledger, gauges, audit, settings, publisher):
    return ExciseTaxService(
        session_factory,
        ledger=ledger,
        gauges=gauges,
        audit_logger=audit,
        settings=settings,
        publisher=publisher,
    )


@pytest.fixture
def lifecycle(session_factory, aggregator, tax_service, audit, settings, publisher):
    return ReportLifecycleManager(
        session_factory,
        aggregator=aggregator,
        tax_service=tax_service,
        audit_logger=audit,
        settings=settings,
        publisher=publisher,
    )


@pytest.fixture
def registry(session_factory, audit):
    return CompanyRegistry(session_factory, audit)


@pytest.fixture
def company(registry):
    """An eligible craft distillery with complete identifiers."""
    return registry.create(
        name="Copper Still Distilling Co.",
        actor="setup",
        permit_number="DSP-KY-15023",
        ein="61-1234567",
        reduced_rate_eligible=True,
        annual_production_pg=Decimal("38500"),
        schedule=ReportSchedule(
            cadence=ReportCadence.MONTHLY, hour=6, day_of_month=3, auto_generate=True
        ),
    )


@pytest.fixture
def record(ledger, company):
    """Append a bonded bourbon entry for the test company."""

    def _record(
        transaction_type,
        proof_gallons,
        on=date(2025, 3, 10),
        wine_gallons=None,
        product_type="Bourbon",
        spirits_class=SpiritsClass.UNDER_190_PROOF,
        company_id=None,
        actor="operator",
    ):
        proof = Decimal(str(proof_gallons))
        return ledger.record(
            LedgerEntry(
                company_id=company_id or company.id,
                transaction_date=on,
                transaction_type=transaction_type,
                product_type=product_type,
                spirits_class=spirits_class,
                proof_gallons=proof,
                wine_gallons=Decimal(str(wine_gallons)) if wine_gallons is not None else proof / 2,
            ),
            actor,
        )

    return _record
