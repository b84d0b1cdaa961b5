"""
Domain models for symptom and event tracking.

These models represent the core business concepts and are framework-agnostic.
Entries form a tagged union on the ``event`` flag: severity entries carry a
1-5 rating, event entries never do. Payloads coming back from storage are
validated here once instead of being duck-typed at every read site.
"""

import random
import string
import time
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, Literal

import structlog
from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

logger = structlog.get_logger(__name__)


class Author(str, Enum):
    """Who logged an entry."""

    PATIENT = "patient"
    PARTNER = "partner"


class Role(str, Enum):
    """Role of a user inside a household."""

    PATIENT = "patient"
    PARTNER = "partner"


class SymptomType(str, Enum):
    """Side effects a patient can rate."""

    HOT_FLASHES = "hot_flashes"
    JOINT_PAIN = "joint_pain"
    MUSCLE_PAIN = "muscle_pain"
    FATIGUE = "fatigue"
    MOOD_CHANGES = "mood_changes"
    NAUSEA = "nausea"
    HEADACHES = "headaches"
    WEIGHT_CHANGES = "weight_changes"
    SLEEP_PROBLEMS = "sleep_problems"
    OTHER = "other"


class PartnerObservationType(str, Enum):
    """Things a partner can observe and rate."""

    NOTICED_MOOD_CHANGE = "noticed_mood_change"
    SEEMED_TIRED = "seemed_tired"
    MENTIONED_PAIN = "mentioned_pain"
    SLEEP_ISSUES_OBSERVED = "sleep_issues_observed"
    APPETITE_CHANGE = "appetite_change"
    LOW_ENERGY = "low_energy"
    SEEMED_UNCOMFORTABLE = "seemed_uncomfortable"
    OTHER = "other"


class EventType(str, Enum):
    """Occurrences logged without a severity."""

    PERIOD_STARTED = "period_started"
    PERIOD_ENDED = "period_ended"
    SPOTTING = "spotting"
    DAILY_NOTE = "daily_note"
    EXERCISE = "exercise"
    WEIGHT_CHANGES = "weight_changes"


SIDE_EFFECT_TYPES: list[str] = [t.value for t in SymptomType]
PARTNER_OBSERVATION_TYPES: list[str] = [t.value for t in PartnerObservationType]
MENSTRUAL_EVENT_TYPES: frozenset[str] = frozenset(
    {EventType.PERIOD_STARTED.value, EventType.PERIOD_ENDED.value, EventType.SPOTTING.value}
)

MIN_SEVERITY = 1
MAX_SEVERITY = 5

_ID_ALPHABET = string.digits + string.ascii_lowercase


def _to_base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(_ID_ALPHABET[remainder])
    return "".join(reversed(digits))


def generate_id() -> str:
    """Client-side entry id: base-36 millisecond clock plus five random characters."""
    suffix = "".join(random.choices(_ID_ALPHABET, k=5))
    return _to_base36(time.time_ns() // 1_000_000) + suffix


class _EntryBase(BaseModel):
    """Fields shared by every entry kind."""

    # Payloads may carry extra fields (exercise description, message); keep them.
    model_config = ConfigDict(frozen=True, extra="allow")

    id: str = Field(default_factory=generate_id, min_length=1)
    type: str = Field(min_length=1, description="Symptom, observation or event type")
    notes: str = ""
    date: datetime = Field(default_factory=lambda: datetime.now(UTC))
    author: Author | None = None

    # Owning user of the remote record; never written back into the payload.
    owner_id: str | None = Field(default=None, exclude=True)

    @field_validator("type", mode="before")
    @classmethod
    def _plain_type(cls, v: Any) -> Any:
        return v.value if isinstance(v, Enum) else v

    @field_validator("notes", mode="before")
    @classmethod
    def _none_notes_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("date")
    @classmethod
    def _assume_utc(cls, v: datetime) -> datetime:
        return v if v.tzinfo is not None else v.replace(tzinfo=UTC)

    @property
    def day(self) -> str:
        """Leading ISO calendar day, no timezone normalization."""
        return self.date.isoformat()[:10]

    def to_payload(self) -> dict[str, Any]:
        """JSON-ready payload for local or remote persistence."""
        return self.model_dump(mode="json", exclude_none=True)


class SeverityEntry(_EntryBase):
    """A logged symptom with a 1-5 intensity rating."""

    event: Literal[False] = False
    severity: int = Field(ge=MIN_SEVERITY, le=MAX_SEVERITY)

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload.pop("event", None)
        return payload


class EventEntry(_EntryBase):
    """A logged occurrence without intensity."""

    event: Literal[True] = True

    @model_validator(mode="before")
    @classmethod
    def _reject_severity(cls, data: Any) -> Any:
        if isinstance(data, Mapping) and data.get("severity") is not None:
            raise ValueError("Event entries never carry a severity")
        return data


def _entry_kind(value: Any) -> str:
    if isinstance(value, Mapping):
        return "event" if value.get("event") is True else "severity"
    return "event" if getattr(value, "event", False) is True else "severity"


Entry = Annotated[
    Annotated[SeverityEntry, Tag("severity")] | Annotated[EventEntry, Tag("event")],
    Discriminator(_entry_kind),
]

_entry_adapter: TypeAdapter[SeverityEntry | EventEntry] = TypeAdapter(Entry)


def parse_entry(payload: Mapping[str, Any]) -> SeverityEntry | EventEntry:
    """Validate a stored payload into an entry. Raises ValidationError."""
    return _entry_adapter.validate_python(dict(payload))


def parse_entries(payloads: Iterable[Mapping[str, Any]]) -> list[SeverityEntry | EventEntry]:
    """Validate many payloads, dropping the malformed ones."""
    entries: list[SeverityEntry | EventEntry] = []
    for payload in payloads:
        try:
            entries.append(parse_entry(payload))
        except ValidationError as e:
            logger.warning(
                "entry_payload_rejected",
                entry_id=payload.get("id") if isinstance(payload, Mapping) else None,
                errors=e.error_count(),
            )
    return entries


def _check_severity(severity: int) -> None:
    if severity < MIN_SEVERITY or severity > MAX_SEVERITY:
        raise ValueError("Severity must be between 1 and 5")


def create_entry(type: str, severity: int, notes: str | None = None) -> SeverityEntry:
    """Create a new side effect entry. Raises ValueError outside 1..5."""
    _check_severity(severity)
    return SeverityEntry(type=type, severity=severity, notes=notes or "")


def create_event_entry(type: str, notes: str | None = None) -> EventEntry:
    """Create a new event entry (no severity, e.g. menstrual events)."""
    return EventEntry(type=type, notes=notes or "")


def create_daily_note(
    author: str | Author, notes: str | None, date: datetime | None = None
) -> EventEntry:
    """Create a daily note; anything but "partner" is attributed to the patient."""
    resolved = Author.PARTNER if author == Author.PARTNER else Author.PATIENT
    fields: dict[str, Any] = {
        "type": EventType.DAILY_NOTE.value,
        "notes": notes or "",
        "author": resolved,
    }
    if date is not None:
        fields["date"] = date
    return EventEntry(**fields)


def create_partner_observation(
    type: str, severity: int, notes: str | None = None
) -> SeverityEntry:
    """Create a partner observation. Raises ValueError outside 1..5."""
    _check_severity(severity)
    return SeverityEntry(type=type, severity=severity, notes=notes or "", author=Author.PARTNER)


# Remote records (persisted by the hosted backend)


class RemoteEntryRecord(BaseModel):
    """Row of the remote ``entries`` table."""

    id: str
    household_id: str
    occurred_at: str = Field(description="Date-only index derived from the payload date")
    payload: dict[str, Any]
    created_by_user_id: str | None = None


class Household(BaseModel):
    """Sharing boundary: one patient owner and zero or more partners."""

    id: str
    owner_user_id: str
    patient_name: str | None = None


class HouseholdMember(BaseModel):
    household_id: str
    user_id: str
    role: Role = Role.PARTNER
    display_name: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    removed_at: datetime | None = None


class HouseholdInvite(BaseModel):
    id: str
    household_id: str
    invited_email: str
    role: Role = Role.PARTNER
    expires_at: datetime
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    accepted_at: datetime | None = None
    accepted_by_user_id: str | None = None
    revoked: bool | None = False


class ShareLink(BaseModel):
    """Read-only report grant. Only the SHA-256 digest of the token is stored."""

    id: str
    household_id: str
    token_hash: str = Field(min_length=64, max_length=64)
    expires_at: datetime
    revoked: bool = False
    last_accessed_at: datetime | None = None


class LoginCode(BaseModel):
    id: str
    email: str
    code: str = Field(min_length=6, max_length=6)
    expires_at: datetime
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    used: bool = False


class EndpointResponse(BaseModel):
    """Status and JSON body returned by a callable endpoint handler."""

    status: int
    body: dict[str, Any] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class DateRange(BaseModel):
    start: str | None = None
    end: str | None = None


class SymptomCount(BaseModel):
    symptom: str
    count: int


class DoctorSummary(BaseModel):
    """Read-only report served to a clinician through a share link."""

    date_range: DateRange
    total_entries: int
    severity_counts: dict[str, int] = Field(default_factory=dict)
    top_symptoms: list[SymptomCount] = Field(default_factory=list)
    entries: list[dict[str, Any]] = Field(
        default_factory=list, description="Sanitized entries for charts; no private notes"
    )
    generated_at: datetime
