"""Configuration module for the TTB compliance engine."""

from ttb_compliance.config.companies_loader import CompanyProfile, load_company_profiles
from ttb_compliance.config.logging import configure_logging, get_logger
from ttb_compliance.config.settings import FlatSettings, get_settings

__all__ = [
    "CompanyProfile",
    "FlatSettings",
    "configure_logging",
    "get_logger",
    "get_settings",
    "load_company_profiles",
]
