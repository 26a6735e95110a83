"""TTB compliance engine - distillery gauging, ledger reconciliation, excise tax and monthly reports."""

__version__ = "0.1.0"

from ttb_compliance.audit import AuditFilter, AuditLogger, RequestMetadata
from ttb_compliance.companies import CompanyRegistry
from ttb_compliance.config import configure_logging, get_settings
from ttb_compliance.errors import (
    AlreadyExists,
    AuditWriteFailure,
    ComplianceError,
    EntityNotFound,
    InvalidMeasurement,
    InvalidQuantity,
    InvalidTransition,
    PeriodLocked,
    ReconciliationImbalance,
    ReportValidationError,
    UnknownClassification,
)
from ttb_compliance.excise_tax import ExciseTaxService, TaxRates, calculate_excise_tax
from ttb_compliance.gauge import GaugeProcessor, process_gauge
from ttb_compliance.ledger import LedgerEntry, LedgerFilter, TransactionLedger
from ttb_compliance.lifecycle import ReportAction, ReportLifecycleManager, ReviewDecision
from ttb_compliance.reconciliation import (
    MonthlyReportData,
    ReconciliationAggregator,
    validate_report_data,
)
from ttb_compliance.schedule import ReportingPeriod, ReportSchedule

__all__ = [
    # Version
    "__version__",
    # Services
    "AuditLogger",
    "CompanyRegistry",
    "ExciseTaxService",
    "GaugeProcessor",
    "ReconciliationAggregator",
    "ReportLifecycleManager",
    "TransactionLedger",
    # Pure calculations
    "calculate_excise_tax",
    "process_gauge",
    "validate_report_data",
    # Values
    "AuditFilter",
    "LedgerEntry",
    "LedgerFilter",
    "MonthlyReportData",
    "ReportAction",
    "ReportSchedule",
    "ReportingPeriod",
    "RequestMetadata",
    "ReviewDecision",
    "TaxRates",
    # Errors
    "AlreadyExists",
    "AuditWriteFailure",
    "ComplianceError",
    "EntityNotFound",
    "InvalidMeasurement",
    "InvalidQuantity",
    "InvalidTransition",
    "PeriodLocked",
    "ReconciliationImbalance",
    "ReportValidationError",
    "UnknownClassification",
    # Config
    "get_settings",
    "configure_logging",
]
