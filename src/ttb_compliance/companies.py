"""Company records: identity, tax eligibility and report schedule."""

from collections.abc import Iterable
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from ttb_compliance.audit import AuditAction, AuditLogger, RequestMetadata, snapshot
from ttb_compliance.config import CompanyProfile
from ttb_compliance.db import SessionFactory, unit_of_work
from ttb_compliance.errors import EntityNotFound
from ttb_compliance.models import Company
from ttb_compliance.quantities import non_negative, round2
from ttb_compliance.schedule import ReportSchedule

logger = structlog.get_logger(__name__)


def _production(value: Any) -> Decimal | None:
    # Stored at two decimals; normalizing keeps unchanged profiles unchanged
    if value is None:
        return None
    return round2(non_negative(value, "annual_production_pg"))


class CompanyRegistry:
    """Creates and updates companies, auditing every change."""

    def __init__(self, session_factory: SessionFactory, audit_logger: AuditLogger | None = None):
        self._session_factory = session_factory
        self._audit = audit_logger or AuditLogger(session_factory)
        self._logger = logger.bind(component="companies")

    def sync_profiles(
        self,
        profiles: Iterable[CompanyProfile],
        actor: str,
        metadata: RequestMetadata | None = None,
    ) -> list[Company]:
        """Create or update one company per profile, matched on profile key.

        Companies whose stored values already match their profile are left
        alone and get no audit entry.
        """
        synced = []
        created = updated = 0
        with unit_of_work(self._session_factory) as session:
            for profile in profiles:
                company = session.scalar(select(Company).where(Company.profile_key == profile.key))
                if company is None:
                    company = Company(profile_key=profile.key)
                    self._apply_profile(company, profile)
                    session.add(company)
                    session.flush()
                    self._audit.record_change(
                        session, AuditAction.CREATE, actor, company, metadata=metadata
                    )
                    created += 1
                else:
                    before = snapshot(company)
                    self._apply_profile(company, profile)
                    session.flush()
                    if snapshot(company) != before:
                        self._audit.record_change(
                            session, AuditAction.UPDATE, actor, company, old_value=before, metadata=metadata
                        )
                        updated += 1
                synced.append(company)

        self._logger.info("companies_synced", created=created, updated=updated, total=len(synced))
        return synced

    def create(
        self,
        name: str,
        actor: str,
        permit_number: str | None = None,
        ein: str | None = None,
        reduced_rate_eligible: bool = False,
        annual_production_pg: Any = None,
        schedule: ReportSchedule | None = None,
        metadata: RequestMetadata | None = None,
    ) -> Company:
        """Create a company that has no YAML profile."""
        company = Company(
            name=name,
            permit_number=permit_number,
            ein=ein,
            reduced_rate_eligible=reduced_rate_eligible,
            annual_production_pg=_production(annual_production_pg),
        )
        company.apply_schedule(schedule or ReportSchedule())
        with unit_of_work(self._session_factory) as session:
            session.add(company)
            session.flush()
            self._audit.record_change(session, AuditAction.CREATE, actor, company, metadata=metadata)
        self._logger.info("company_created", company_id=company.id, name=name)
        return company

    def update_schedule(
        self,
        company_id: int,
        schedule: ReportSchedule,
        actor: str,
        metadata: RequestMetadata | None = None,
    ) -> Company:
        with unit_of_work(self._session_factory) as session:
            company = self._get(session, company_id)
            before = snapshot(company)
            company.apply_schedule(schedule)
            session.flush()
            self._audit.record_change(
                session, AuditAction.UPDATE, actor, company, old_value=before, metadata=metadata
            )
        self._logger.info(
            "company_schedule_updated",
            company_id=company_id,
            cadence=schedule.cadence.value,
            auto_generate=schedule.auto_generate,
        )
        return company

    def get(self, company_id: int) -> Company:
        with self._session_factory() as session:
            return self._get(session, company_id)

    def by_key(self, profile_key: str) -> Company:
        with self._session_factory() as session:
            company = session.scalar(select(Company).where(Company.profile_key == profile_key))
            if company is None:
                raise EntityNotFound(f"No company with profile key {profile_key!r}")
            return company

    def all(self) -> list[Company]:
        with self._session_factory() as session:
            return list(session.scalars(select(Company).order_by(Company.id)))

    @staticmethod
    def _get(session: Session, company_id: int) -> Company:
        company = session.get(Company, company_id)
        if company is None:
            raise EntityNotFound(f"Company {company_id} not found")
        return company

    @staticmethod
    def _apply_profile(company: Company, profile: CompanyProfile) -> None:
        company.name = profile.name
        company.permit_number = profile.permit_number
        company.ein = profile.ein
        company.reduced_rate_eligible = profile.reduced_rate_eligible
        company.annual_production_pg = _production(profile.annual_production_pg)
        company.apply_schedule(profile.schedule)
