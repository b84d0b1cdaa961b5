"""
Core services for the application.

This package contains the main service implementations for the application,
including chart aggregation, offline caching, household sync and sharing.
"""

from .aggregation import (
    format_summary,
    get_chart_data,
    get_symptom_trend_data,
    get_top_symptoms_by_avg_severity,
)
from .base import Result
from .entry_sync import SyncGateway, merge_entries
from .household import HouseholdService
from .offline_cache import OfflineCacheController
from .session import LocalEntryRepository, SessionService
from .share_links import ShareLinkService, fetch_doctor_summary

__all__ = [
    "Result",
    "format_summary",
    "get_chart_data",
    "get_symptom_trend_data",
    "get_top_symptoms_by_avg_severity",
    "OfflineCacheController",
    "SessionService",
    "LocalEntryRepository",
    "SyncGateway",
    "merge_entries",
    "HouseholdService",
    "ShareLinkService",
    "fetch_doctor_summary",
]
