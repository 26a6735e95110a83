"""Reporting periods and per-company report generation schedules.

The engine does not run a background loop. An external trigger (cron, a
worker, the ``run-schedule`` CLI command) asks each company's schedule
whether a run is due and calls the lifecycle manager.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum

from ttb_compliance.errors import ReportValidationError

MIN_REPORT_YEAR = 2000


class ReportCadence(str, Enum):
    """How often a company's report generation fires."""

    MONTHLY = "monthly"
    WEEKLY = "weekly"


@dataclass(frozen=True, order=True)
class ReportingPeriod:
    """A calendar month being reported on."""

    year: int
    month: int

    def __post_init__(self) -> None:
        if not 1 <= self.month <= 12:
            raise ReportValidationError(f"Month must be 1-12, got {self.month}")
        if self.year < MIN_REPORT_YEAR:
            raise ReportValidationError(
                f"Year must be {MIN_REPORT_YEAR} or later, got {self.year}"
            )

    @classmethod
    def containing(cls, moment: date | datetime) -> "ReportingPeriod":
        return cls(year=moment.year, month=moment.month)

    @property
    def start(self) -> date:
        """First day of the month."""
        return date(self.year, self.month, 1)

    @property
    def end(self) -> date:
        """First day of the following month (exclusive bound)."""
        return self.next().start

    def previous(self) -> "ReportingPeriod":
        if self.month == 1:
            return ReportingPeriod(year=self.year - 1, month=12)
        return ReportingPeriod(year=self.year, month=self.month - 1)

    def next(self) -> "ReportingPeriod":
        if self.month == 12:
            return ReportingPeriod(year=self.year + 1, month=1)
        return ReportingPeriod(year=self.year, month=self.month + 1)

    def __str__(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"


@dataclass(frozen=True)
class ReportSchedule:
    """A company's report generation schedule (times are UTC).

    Monthly schedules fire on ``day_of_month``; weekly schedules fire on
    ``day_of_week`` (0 = Monday). Days are capped at 28 so every month has
    the run day.
    """

    cadence: ReportCadence = ReportCadence.MONTHLY
    hour: int = 6
    day_of_month: int = 1
    day_of_week: int = 0
    auto_generate: bool = False

    def __post_init__(self) -> None:
        if not isinstance(self.cadence, ReportCadence):
            object.__setattr__(self, "cadence", ReportCadence(self.cadence))
        if not 0 <= self.hour <= 23:
            raise ValueError(f"hour must be 0-23, got {self.hour}")
        if not 1 <= self.day_of_month <= 28:
            raise ValueError(f"day_of_month must be 1-28, got {self.day_of_month}")
        if not 0 <= self.day_of_week <= 6:
            raise ValueError(f"day_of_week must be 0-6, got {self.day_of_week}")

    def next_run(self, after: datetime) -> datetime:
        """Get the first run time strictly later than ``after``."""
        if self.cadence == ReportCadence.MONTHLY:
            candidate = after.replace(
                day=self.day_of_month, hour=self.hour, minute=0, second=0, microsecond=0
            )
            if candidate <= after:
                period = ReportingPeriod.containing(after).next()
                candidate = candidate.replace(year=period.year, month=period.month)
            return candidate

        days_ahead = (self.day_of_week - after.weekday()) % 7
        candidate = (after + timedelta(days=days_ahead)).replace(
            hour=self.hour, minute=0, second=0, microsecond=0
        )
        if candidate <= after:
            candidate += timedelta(days=7)
        return candidate

    def previous_run(self, at: datetime) -> datetime:
        """Get the latest run time at or before ``at``."""
        if self.cadence == ReportCadence.MONTHLY:
            candidate = at.replace(
                day=self.day_of_month, hour=self.hour, minute=0, second=0, microsecond=0
            )
            if candidate > at:
                period = ReportingPeriod.containing(at).previous()
                candidate = candidate.replace(year=period.year, month=period.month)
            return candidate

        days_back = (at.weekday() - self.day_of_week) % 7
        candidate = (at - timedelta(days=days_back)).replace(
            hour=self.hour, minute=0, second=0, microsecond=0
        )
        if candidate > at:
            candidate -= timedelta(days=7)
        return candidate

    def is_due(self, now: datetime, window: timedelta = timedelta(hours=1)) -> bool:
        """Check whether a run falls within ``window`` before ``now``."""
        if not self.auto_generate:
            return False
        return now - self.previous_run(now) < window

    @staticmethod
    def reporting_period(run_at: datetime) -> ReportingPeriod:
        """Get the period a run reports on: the calendar month before it."""
        return ReportingPeriod.containing(run_at).previous()
