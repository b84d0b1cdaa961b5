"""
Entry aggregation: doctor summaries, chart series, rankings and trends.

All functions are pure and never raise on odd input; entries without a
severity simply drop out of severity math. Day grouping uses the leading
ISO date of each entry's stored timestamp, with no timezone conversion.
"""

import re
from collections import defaultdict
from collections.abc import Iterable, Mapping, Sequence
from datetime import UTC, datetime, timedelta
from typing import Any, Literal

from pydantic import BaseModel, Field

from core.domain.models import (
    MENSTRUAL_EVENT_TYPES,
    EventEntry,
    EventType,
    SeverityEntry,
    parse_entries,
)

AnyEntry = SeverityEntry | EventEntry
# "all" or a number of trailing days
Window = Literal["all"] | int | str

NO_DATA_SUMMARY = "No side effects recorded."
SUMMARY_TITLE = "=== Tamoxifen Side Effect Summary ==="

# Types that are not symptoms for ranking purposes
RANKING_EXCLUDED_TYPES: frozenset[str] = MENSTRUAL_EVENT_TYPES | {EventType.WEIGHT_CHANGES.value}

_LEADING_INT = re.compile(r"\s*[+-]?\d+")


class BarChartData(BaseModel):
    """Occurrence counts per symptom type for each party."""

    labels: list[str] = Field(default_factory=list)
    patient_data: list[int] = Field(default_factory=list)
    partner_data: list[int] = Field(default_factory=list)


class LineChartData(BaseModel):
    """Daily mean severity per party; None where a party logged nothing."""

    labels: list[str] = Field(default_factory=list)
    raw_dates: list[str] = Field(default_factory=list)
    patient_data: list[float | None] = Field(default_factory=list)
    partner_data: list[float | None] = Field(default_factory=list)


class ChartData(BaseModel):
    bar_data: BarChartData
    line_data: LineChartData
    total_patient: int
    total_partner: int
    menstrual_dates: list[str] = Field(default_factory=list)


class SymptomRanking(BaseModel):
    type: str
    avg_severity: float
    count: int


class TrendData(BaseModel):
    """Per-type daily averages on a shared day axis."""

    raw_dates: list[str] = Field(default_factory=list)
    labels: list[str] = Field(default_factory=list)
    series_by_type: dict[str, list[float | None]] = Field(default_factory=dict)
    menstrual_dates: list[str] = Field(default_factory=list)


def _entries(entries: Iterable[AnyEntry | Mapping[str, Any]] | None) -> list[AnyEntry]:
    items: list[AnyEntry] = []
    for entry in entries or []:
        if isinstance(entry, SeverityEntry | EventEntry):
            items.append(entry)
        elif isinstance(entry, Mapping):
            # stored payloads; malformed ones are dropped
            items.extend(parse_entries([entry]))
    return items


def _severity_entries(entries: Iterable[AnyEntry]) -> list[SeverityEntry]:
    return [e for e in entries if isinstance(e, SeverityEntry)]


def _event_entries(entries: Iterable[AnyEntry]) -> list[EventEntry]:
    return [e for e in entries if isinstance(e, EventEntry)]


def _mean(values: Sequence[int]) -> float:
    return sum(values) / len(values)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


def _window_days(window: Window) -> int | None:
    """Leading integer of a window, or None when there is none (``"7.5"`` -> 7)."""
    if isinstance(window, int):
        return window
    match = _LEADING_INT.match(str(window))
    return int(match.group()) if match else None


def _apply_window(
    entries: Iterable[AnyEntry] | None, window: Window, now: datetime | None
) -> list[AnyEntry]:
    items = _entries(entries)
    if window == "all":
        return items
    days = _window_days(window)
    if days is None:
        # unparseable window matches nothing
        return []
    reference = _aware(now) if now is not None else datetime.now(UTC)
    try:
        start = reference - timedelta(days=days)
    except OverflowError:
        # window reaches past the calendar on one side or the other
        return items if days > 0 else []
    return [e for e in items if e.date >= start]


def _type_label(entry_type: str) -> str:
    return entry_type.replace("_", " ")


def _day_label(day: str) -> str:
    """``2024-03-07`` -> ``3/7``."""
    _, month, dom = day.split("-")
    return f"{int(month)}/{int(dom)}"


def _group_severities_by_day(entries: Iterable[SeverityEntry]) -> dict[str, list[int]]:
    by_day: dict[str, list[int]] = defaultdict(list)
    for entry in entries:
        by_day[entry.day].append(entry.severity)
    return by_day


def _daily_means(by_day: dict[str, list[int]], days: Sequence[str]) -> list[float | None]:
    return [_mean(by_day[d]) if by_day.get(d) else None for d in days]


def format_summary(
    entries: Sequence[AnyEntry] | None, generated_at: datetime | None = None
) -> str:
    """Render entries as a plain-text report for a clinician."""
    if not entries:
        return NO_DATA_SUMMARY

    items = _entries(entries)
    severity_entries = _severity_entries(items)
    event_entries = _event_entries(items)

    lines = [SUMMARY_TITLE, ""]

    by_type: dict[str, list[SeverityEntry]] = defaultdict(list)
    for entry in severity_entries:
        by_type[entry.type].append(entry)

    if severity_entries:
        lines.extend(["--- KEY FINDINGS ---", ""])

        most_frequent_type: str | None = None
        max_count = 0
        for entry_type, typed in by_type.items():
            if len(typed) > max_count:
                max_count = len(typed)
                most_frequent_type = entry_type

        highest_type: str | None = None
        max_avg = 0.0
        for entry_type, typed in by_type.items():
            avg = _mean([e.severity for e in typed])
            if avg > max_avg:
                max_avg = avg
                highest_type = entry_type

        worst_day: str | None = None
        worst_day_avg = 0.0
        for day, severities in _group_severities_by_day(severity_entries).items():
            avg = _mean(severities)
            if avg > worst_day_avg:
                worst_day_avg = avg
                worst_day = day

        ordered = sorted(severity_entries, key=lambda e: e.date)
        start_day, end_day = ordered[0].day, ordered[-1].day

        if most_frequent_type:
            lines.append(
                f"Most frequent symptom: {_type_label(most_frequent_type)} "
                f"({max_count} occurrences)"
            )
        if highest_type:
            lines.append(
                f"Highest severity symptom: {_type_label(highest_type)} (avg {max_avg:.1f}/5)"
            )
        if worst_day:
            lines.append(f"Worst day recorded: {worst_day} (avg severity {worst_day_avg:.1f}/5)")
        lines.append(f"Reporting period: {start_day} to {end_day}")
        lines.append("")

    lines.extend(["--- DETAILED BREAKDOWN ---", ""])
    for entry_type, typed in by_type.items():
        avg = _mean([e.severity for e in typed])
        lines.append(_type_label(entry_type).upper())
        lines.append(f"  Occurrences: {len(typed)}")
        lines.append(f"  Avg Severity: {avg:.1f}/5")
        lines.append("")

    menstrual = [e for e in event_entries if e.type in MENSTRUAL_EVENT_TYPES]
    if menstrual:
        lines.append("--- Menstrual / Bleeding Events ---")
        for entry in sorted(menstrual, key=lambda e: e.date):
            label = _type_label(entry.type).title()
            suffix = f" - {entry.notes}" if entry.notes else ""
            lines.append(f"  {entry.day}: {label}{suffix}")
        lines.append("")

    weights = [
        e for e in event_entries if e.type == EventType.WEIGHT_CHANGES.value and e.notes
    ]
    if weights:
        lines.append("--- Weight Tracking ---")
        for entry in sorted(weights, key=lambda e: e.date):
            lines.append(f"  {entry.day}: {entry.notes}")
        lines.append("")

    stamp = _aware(generated_at) if generated_at is not None else datetime.now(UTC)
    lines.append(f"Total entries: {len(entries)}")
    lines.append(f"Report generated: {stamp.date().isoformat()}")

    return "\n".join(lines)


def filter_by_date_range(
    entries: Sequence[AnyEntry] | None, start: datetime, end: datetime
) -> list[AnyEntry]:
    """Entries dated within [start, end]."""
    lower, upper = _aware(start), _aware(end)
    return [e for e in _entries(entries) if lower <= e.date <= upper]


def filter_by_type(entries: Sequence[AnyEntry] | None, entry_type: str) -> list[AnyEntry]:
    return [e for e in _entries(entries) if e.type == entry_type]


def filter_by_author(entries: Sequence[AnyEntry] | None, author: str) -> list[AnyEntry]:
    return [e for e in _entries(entries) if e.author is not None and e.author == author]


def get_chart_data(
    patient_entries: Sequence[AnyEntry] | None,
    partner_observations: Sequence[AnyEntry] | None,
    window: Window,
    now: datetime | None = None,
) -> ChartData:
    """
    Build bar (frequency) and line (daily severity) series for both parties.

    The bar axis is the alphabetical union of non-menstrual types; the line
    axis is every day on which either party logged a severity.
    """
    patient = _apply_window(patient_entries, window, now)
    partner = _apply_window(partner_observations, window, now)

    severity_patient = _severity_entries(patient)
    severity_partner = _severity_entries(partner)

    patient_by_type: dict[str, int] = defaultdict(int)
    for entry in severity_patient:
        patient_by_type[entry.type] += 1
    partner_by_type: dict[str, int] = defaultdict(int)
    for entry in partner:
        partner_by_type[entry.type] += 1

    all_types = sorted(
        t for t in set(patient_by_type) | set(partner_by_type) if t not in MENSTRUAL_EVENT_TYPES
    )
    bar_data = BarChartData(
        labels=[_type_label(t) for t in all_types],
        patient_data=[patient_by_type.get(t, 0) for t in all_types],
        partner_data=[partner_by_type.get(t, 0) for t in all_types],
    )

    patient_by_day = _group_severities_by_day(severity_patient)
    partner_by_day = _group_severities_by_day(severity_partner)
    all_days = sorted(set(patient_by_day) | set(partner_by_day))

    line_data = LineChartData(
        labels=[_day_label(d) for d in all_days],
        raw_dates=all_days,
        patient_data=_daily_means(patient_by_day, all_days),
        partner_data=_daily_means(partner_by_day, all_days),
    )

    # dict keeps insertion order while deduplicating
    menstrual_dates = dict.fromkeys(
        e.day for e in _event_entries(patient) if e.type in MENSTRUAL_EVENT_TYPES
    )

    return ChartData(
        bar_data=bar_data,
        line_data=line_data,
        total_patient=len(patient),
        total_partner=len(partner),
        menstrual_dates=list(menstrual_dates),
    )


def get_top_symptoms_by_avg_severity(
    entries: Sequence[AnyEntry] | None,
    window: Window,
    top_n: int = 3,
    now: datetime | None = None,
) -> list[SymptomRanking]:
    """Rank symptom types by mean severity, highest first, ignoring counts."""
    windowed = _apply_window(entries, window, now)
    symptoms = [
        e for e in _severity_entries(windowed) if e.type not in RANKING_EXCLUDED_TYPES
    ]

    by_type: dict[str, list[int]] = defaultdict(list)
    for entry in symptoms:
        by_type[entry.type].append(entry.severity)

    rankings = [
        SymptomRanking(type=entry_type, avg_severity=_mean(severities), count=len(severities))
        for entry_type, severities in by_type.items()
    ]
    # sorted() is stable, so ties keep first-seen order
    rankings = sorted(rankings, key=lambda r: r.avg_severity, reverse=True)
    return rankings[: top_n or 3]


def get_symptom_trend_data(
    entries: Sequence[AnyEntry] | None,
    window: Window,
    types: Sequence[str],
    now: datetime | None = None,
) -> TrendData:
    """Daily mean severity for each requested type over a shared day axis."""
    windowed = _apply_window(entries, window, now)
    severity_entries = _severity_entries(windowed)

    all_days = sorted({e.day for e in severity_entries})

    series_by_type: dict[str, list[float | None]] = {}
    for entry_type in types:
        by_day = _group_severities_by_day(e for e in severity_entries if e.type == entry_type)
        series_by_type[entry_type] = _daily_means(by_day, all_days)

    menstrual_dates = [
        e.day for e in _event_entries(windowed) if e.type in MENSTRUAL_EVENT_TYPES
    ]

    return TrendData(
        raw_dates=all_days,
        labels=[_day_label(d) for d in all_days],
        series_by_type=series_by_type,
        menstrual_dates=menstrual_dates,
    )
