"""Operator command line for the compliance engine.

Usage:
    # Create tables and load the company profiles
    ttb-compliance init-db
    ttb-compliance load-companies

    # Generate and move a report through review
    ttb-compliance generate --company copper_still --month 5 --year 2025
    ttb-compliance validate 12
    ttb-compliance submit-for-review 12 --actor alice
    ttb-compliance review 12 approve --actor bob --notes "Checked against counts"

    # Run from cron at the top of every hour
    ttb-compliance run-schedule
"""

import argparse
import json
import sys
from collections.abc import Callable, Sequence
from datetime import date, datetime
from pathlib import Path
from typing import Any

import structlog

from ttb_compliance.audit import AuditFilter, AuditLogger
from ttb_compliance.companies import CompanyRegistry
from ttb_compliance.config import configure_logging, load_company_profiles
from ttb_compliance.db import (
    SessionFactory,
    create_db_engine,
    create_session_factory,
    get_session_factory,
    init_db,
    utcnow,
)
from ttb_compliance.errors import ComplianceError
from ttb_compliance.excise_tax import ExciseTaxService
from ttb_compliance.gauge import process_gauge
from ttb_compliance.lifecycle import ReportLifecycleManager, ReviewDecision
from ttb_compliance.models import Company, FormType, MonthlyReport

logger = structlog.get_logger(__name__)

DEFAULT_ACTOR = "cli"


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _report_summary(report: MonthlyReport) -> dict[str, Any]:
    return {
        "id": report.id,
        "company_id": report.company_id,
        "period": str(report.period),
        "form_type": report.form_type.value,
        "status": report.status.value,
        "errors": report.validation_errors,
        "warnings": report.validation_warnings,
    }


def _resolve_company(session_factory: SessionFactory, value: str) -> Company:
    registry = CompanyRegistry(session_factory)
    if value.isdigit():
        return registry.get(int(value))
    return registry.by_key(value)


def _parse_datetime(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid ISO datetime: {value!r}") from exc


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid ISO date: {value!r}") from exc


# -- command handlers ---------------------------------------------------------


def cmd_init_db(args: argparse.Namespace, session_factory: SessionFactory) -> int:
    with session_factory() as session:
        init_db(session.get_bind())
    return 0


def cmd_load_companies(args: argparse.Namespace, session_factory: SessionFactory) -> int:
    profiles = load_company_profiles(args.dir)
    companies = CompanyRegistry(session_factory).sync_profiles(profiles.values(), args.actor)
    _emit([{"id": c.id, "key": c.profile_key, "name": c.name} for c in companies])
    return 0


def cmd_generate(args: argparse.Namespace, session_factory: SessionFactory) -> int:
    company = _resolve_company(session_factory, args.company)
    report = ReportLifecycleManager(session_factory).generate(
        company.id, args.month, args.year, args.actor, form_type=args.form_type
    )
    _emit(_report_summary(report))
    return 0


def cmd_validate(args: argparse.Namespace, session_factory: SessionFactory) -> int:
    report, result = ReportLifecycleManager(session_factory).validate(args.report_id, args.actor)
    _emit(_report_summary(report))
    return 0 if result.is_valid else 2


def cmd_submit_for_review(args: argparse.Namespace, session_factory: SessionFactory) -> int:
    report = ReportLifecycleManager(session_factory).submit_for_review(args.report_id, args.actor)
    _emit(_report_summary(report))
    return 0


def cmd_review(args: argparse.Namespace, session_factory: SessionFactory) -> int:
    report = ReportLifecycleManager(session_factory).review(
        args.report_id, args.decision, args.actor, notes=args.notes
    )
    _emit(_report_summary(report))
    return 0


def cmd_reopen(args: argparse.Namespace, session_factory: SessionFactory) -> int:
    report = ReportLifecycleManager(session_factory).reopen(args.report_id, args.actor)
    _emit(_report_summary(report))
    return 0


def cmd_mark_submitted(args: argparse.Namespace, session_factory: SessionFactory) -> int:
    report = ReportLifecycleManager(session_factory).mark_submitted(
        args.report_id, args.confirmation_number, args.actor
    )
    _emit(_report_summary(report))
    return 0


def cmd_archive(args: argparse.Namespace, session_factory: SessionFactory) -> int:
    report = ReportLifecycleManager(session_factory).archive(args.report_id, args.actor)
    _emit(_report_summary(report))
    return 0


def cmd_run_schedule(args: argparse.Namespace, session_factory: SessionFactory) -> int:
    runs = ReportLifecycleManager(session_factory).generate_scheduled(
        now=args.now, actor=args.actor
    )
    _emit(
        [
            {
                "company_id": run.company_id,
                "period": str(run.period),
                "report_id": run.report_id,
                "skipped": run.skipped_reason,
                "error": run.error,
            }
            for run in runs
        ]
    )
    return 1 if any(run.error for run in runs) else 0


def cmd_next_runs(args: argparse.Namespace, session_factory: SessionFactory) -> int:
    after = args.after or utcnow()
    rows = []
    for company in CompanyRegistry(session_factory).all():
        schedule = company.schedule
        run_at = schedule.next_run(after)
        rows.append(
            {
                "company_id": company.id,
                "name": company.name,
                "cadence": schedule.cadence.value,
                "auto_generate": schedule.auto_generate,
                "next_run": run_at.isoformat(),
                "reports_on": str(schedule.reporting_period(run_at)),
            }
        )
    _emit(rows)
    return 0


def cmd_export_audit(args: argparse.Namespace, session_factory: SessionFactory) -> int:
    audit = AuditLogger(session_factory)
    query = audit.query(
        AuditFilter(
            entity_type=args.entity_type,
            entity_id=args.entity_id,
            actor=args.by,
            company_id=args.company_id,
            start=args.start,
            end=args.end,
        )
    )
    if args.output is None:
        audit.export_csv(query, sys.stdout)
        return 0
    with open(args.output, "w", newline="", encoding="utf-8") as stream:
        rows = audit.export_csv(query, stream)
    logger.info("audit_export_written", path=str(args.output), rows=rows)
    return 0


def cmd_tax_preview(args: argparse.Namespace, session_factory: SessionFactory) -> int:
    company = _resolve_company(session_factory, args.company)
    calculation = ExciseTaxService(session_factory).preview(
        company.id, args.proof_gallons, on=args.on
    )
    _emit(calculation.to_dict())
    return 0


def cmd_gauge(args: argparse.Namespace, session_factory: SessionFactory) -> int:
    reading = process_gauge(args.proof, args.temperature, args.volume)
    _emit(
        {
            "proof": str(reading.proof),
            "temperature_f": str(reading.temperature_f),
            "observed_volume": str(reading.observed_volume),
            "correction_factor": str(reading.correction_factor),
            "wine_gallons": str(reading.wine_gallons),
            "proof_gallons": str(reading.proof_gallons),
        }
    )
    return 0


# -- parser -------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ttb-compliance",
        description="Distillery TTB compliance engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--database-url", help="Override TTB_DATABASE_URL")
    parser.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Override LOG_LEVEL"
    )
    parser.add_argument("--log-format", choices=["json", "console"], help="Override LOG_FORMAT")
    sub = parser.add_subparsers(dest="command", required=True)

    def command(name: str, handler: Callable[..., int], help: str) -> argparse.ArgumentParser:
        p = sub.add_parser(name, help=help)
        p.set_defaults(handler=handler)
        p.add_argument("--actor", default=DEFAULT_ACTOR, help="Who is making the change")
        return p

    command("init-db", cmd_init_db, "Create database tables")

    p = command("load-companies", cmd_load_companies, "Create or update companies from YAML")
    p.add_argument("--dir", type=Path, help="Profile directory (default: TTB_COMPANIES_DIR)")

    p = command("generate", cmd_generate, "Generate a monthly report")
    p.add_argument("--company", required=True, help="Company id or profile key")
    p.add_argument("--month", type=int, required=True)
    p.add_argument("--year", type=int, required=True)
    p.add_argument(
        "--form-type",
        choices=[f.value for f in FormType],
        default=FormType.FORM_5110_28.value,
    )

    p = command("validate", cmd_validate, "Recompute a report's validation")
    p.add_argument("report_id", type=int)

    p = command("submit-for-review", cmd_submit_for_review, "Send a draft for review")
    p.add_argument("report_id", type=int)

    p = command("review", cmd_review, "Approve or reject a report")
    p.add_argument("report_id", type=int)
    p.add_argument("decision", choices=[d.value for d in ReviewDecision])
    p.add_argument("--notes")

    p = command("reopen", cmd_reopen, "Return a rejected report to draft")
    p.add_argument("report_id", type=int)

    p = command("mark-submitted", cmd_mark_submitted, "Record a regulator confirmation")
    p.add_argument("report_id", type=int)
    p.add_argument("confirmation_number")

    p = command("archive", cmd_archive, "Archive a filed report")
    p.add_argument("report_id", type=int)

    p = command("run-schedule", cmd_run_schedule, "Generate every report due this hour")
    p.add_argument("--now", type=_parse_datetime, help="Run as of this UTC time")

    p = command("next-runs", cmd_next_runs, "Show each company's next scheduled run")
    p.add_argument("--after", type=_parse_datetime, help="Reference UTC time")

    p = command("export-audit", cmd_export_audit, "Export the audit trail as CSV")
    p.add_argument("--entity-type")
    p.add_argument("--entity-id", type=int)
    p.add_argument("--by", help="Only changes made by this actor")
    p.add_argument("--company-id", type=int)
    p.add_argument("--start", type=_parse_datetime)
    p.add_argument("--end", type=_parse_datetime)
    p.add_argument("--output", type=Path, help="File to write (default: stdout)")

    p = command("tax-preview", cmd_tax_preview, "Preview excise tax on a removal")
    p.add_argument("--company", required=True, help="Company id or profile key")
    p.add_argument("--proof-gallons", required=True)
    p.add_argument("--on", type=_parse_date, help="Determination date (default: today)")

    p = command("gauge", cmd_gauge, "Convert a barrel gauge to wine and proof gallons")
    p.add_argument("--proof", required=True)
    p.add_argument("--temperature", required=True, help="Degrees Fahrenheit")
    p.add_argument("--volume", required=True, help="Observed gallons")

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    configure_logging(level=args.log_level, format=args.log_format)

    if args.database_url:
        session_factory = create_session_factory(create_db_engine(args.database_url))
    else:
        session_factory = get_session_factory()

    try:
        return args.handler(args, session_factory)
    except ComplianceError as e:
        logger.error(
            "command_failed",
            command=args.command,
            error_type=type(e).__name__,
            error=str(e),
        )
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
