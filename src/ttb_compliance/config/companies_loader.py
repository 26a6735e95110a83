"""Utilities for loading company compliance profiles from YAML files."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml  # type: ignore[import-untyped]

from ttb_compliance.config.settings import get_settings
from ttb_compliance.schedule import ReportCadence, ReportSchedule

PACKAGED_COMPANIES_DIR = Path(__file__).resolve().parent / "companies"

WEEKDAY_NAME_TO_INDEX = {
    "monday": 0,
    "mon": 0,
    "tuesday": 1,
    "tue": 1,
    "tues": 1,
    "wednesday": 2,
    "wed": 2,
    "thursday": 3,
    "thu": 3,
    "thurs": 3,
    "friday": 4,
    "fri": 4,
    "saturday": 5,
    "sat": 5,
    "sunday": 6,
    "sun": 6,
}


@dataclass(frozen=True)
class CompanyProfile:
    """Compliance identity and report schedule for one distillery."""

    key: str
    name: str
    permit_number: str | None = None
    ein: str | None = None
    reduced_rate_eligible: bool = False
    annual_production_pg: Decimal | None = None
    schedule: ReportSchedule = field(default_factory=ReportSchedule)


def _normalize_day_key(day_key: Any) -> int | None:
    """Normalize a day key from YAML into a weekday index (0=Mon..6=Sun)."""
    if isinstance(day_key, bool):
        return None
    if isinstance(day_key, int):
        return day_key
    if isinstance(day_key, str):
        return WEEKDAY_NAME_TO_INDEX.get(day_key.strip().lower())
    return None


def _parse_schedule(path: Path, raw: Any) -> ReportSchedule:
    if raw is None:
        return ReportSchedule()
    if not isinstance(raw, dict):
        raise ValueError(f"{path.name}: schedule must be a mapping")

    try:
        cadence = ReportCadence(str(raw.get("cadence", "monthly")).strip().lower())
    except ValueError as exc:
        raise ValueError(f"{path.name}: unknown cadence {raw.get('cadence')!r}") from exc

    day_of_week = _normalize_day_key(raw.get("day_of_week", 0))
    if day_of_week is None:
        raise ValueError(f"{path.name}: invalid day_of_week {raw.get('day_of_week')!r}")

    try:
        return ReportSchedule(
            cadence=cadence,
            hour=int(raw.get("hour", 6)),
            day_of_month=int(raw.get("day_of_month", 1)),
            day_of_week=day_of_week,
            auto_generate=bool(raw.get("auto_generate", False)),
        )
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{path.name}: {exc}") from exc


def parse_company_profile(path: Path, data: dict[str, Any]) -> CompanyProfile:
    """Build a profile from one parsed YAML document."""
    name = data.get("name")
    if not name:
        raise ValueError(f"{path.name}: name is required")

    production_raw = data.get("annual_production_pg")
    production: Decimal | None = None
    if production_raw is not None:
        try:
            production = Decimal(str(production_raw))
        except InvalidOperation as exc:
            raise ValueError(
                f"{path.name}: invalid annual_production_pg {production_raw!r}"
            ) from exc
        if production < 0:
            raise ValueError(f"{path.name}: annual_production_pg must be non-negative")

    return CompanyProfile(
        key=path.stem,
        name=str(name),
        permit_number=data.get("permit_number") or None,
        ein=str(data["ein"]) if data.get("ein") else None,
        reduced_rate_eligible=bool(data.get("reduced_rate_eligible", False)),
        annual_production_pg=production,
        schedule=_parse_schedule(path, data.get("schedule")),
    )


@lru_cache
def load_company_profiles(directory: Path | None = None) -> dict[str, CompanyProfile]:
    """Load company profiles from YAML files.

    Args:
        directory: Directory of ``*.yaml`` profiles. Defaults to
            ``TTB_COMPANIES_DIR`` or the packaged sample profiles.

    Returns:
        Mapping of profile key (filename stem) to profile.
    """
    companies_dir = directory or get_settings().companies_dir or PACKAGED_COMPANIES_DIR
    companies_dir = Path(companies_dir)
    if not companies_dir.exists():
        return {}

    profiles: dict[str, CompanyProfile] = {}
    for path in sorted(companies_dir.glob("*.yaml")):
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{path.name}: profile must be a mapping")
        profiles[path.stem] = parse_company_profile(path, data)

    return profiles
