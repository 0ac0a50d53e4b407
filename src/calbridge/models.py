"""Typed records for calendars, events and conflict results.

External data (Google API payloads) is validated into these shapes at the
boundary; internal logic only sees the checked records.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, time, timedelta, tzinfo
from enum import StrEnum
from typing import Any, Literal, cast
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

AccessRole = Literal["owner", "writer", "reader", "freeBusyReader"]
Intent = Literal["read", "write"]

PERMISSION_RANK: dict[str, int] = {
    "owner": 4,
    "writer": 3,
    "reader": 2,
    "freeBusyReader": 1,
}
WRITE_ROLES = frozenset({"owner", "writer"})


def permission_rank(role: str) -> int:
    return PERMISSION_RANK.get(role, 0)


def coerce_zoneinfo(name: str | None) -> tzinfo:
    """Return the named zone, falling back to UTC for unknown or empty names."""
    if not name:
        return UTC
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return UTC


def parse_rfc3339(value: str, *, fallback_tz: tzinfo = UTC) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    parsed = datetime.fromisoformat(normalized)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=fallback_tz)
    return parsed


def to_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _boundary_to_datetime(value: date | datetime, tz: tzinfo) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=tz)
    return datetime.combine(value, time.min, tzinfo=tz)


# ---------------------------------------------------------------------------
# Calendar identity
# ---------------------------------------------------------------------------


class CalendarAccessEntry(BaseModel):
    """The access one account has on one calendar."""

    model_config = ConfigDict(frozen=True)

    account_alias: str
    access_role: str
    is_primary: bool = False
    summary: str = ""
    summary_override: str | None = None

    @property
    def rank(self) -> int:
        return permission_rank(self.access_role)

    @property
    def can_write(self) -> bool:
        return self.access_role in WRITE_ROLES


class UnifiedCalendar(BaseModel):
    """One calendar merged across every account that can see it."""

    model_config = ConfigDict(frozen=True)

    calendar_id: str
    accounts: tuple[CalendarAccessEntry, ...]
    preferred_account: str
    display_name: str

    @model_validator(mode="after")
    def _preferred_is_member(self) -> UnifiedCalendar:
        if self.preferred_account not in {entry.account_alias for entry in self.accounts}:
            raise ValueError("preferred_account must be one of the calendar's accounts")
        return self

    def access_for(self, alias: str) -> CalendarAccessEntry | None:
        for entry in self.accounts:
            if entry.account_alias == alias:
                return entry
        return None

    @property
    def preferred_access(self) -> CalendarAccessEntry:
        # preferred_account is validated to be one of the accounts.
        return cast(CalendarAccessEntry, self.access_for(self.preferred_account))


class CalendarResolution(BaseModel):
    """Result of resolving a calendar name or id to an account."""

    model_config = ConfigDict(frozen=True)

    calendar_id: str
    account_alias: str
    access_role: str


class RoutingResult(BaseModel):
    """Batch routing of calendars to the accounts that will query them."""

    resolved: dict[str, list[str]] = Field(default_factory=dict)
    warnings: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class CalendarEvent(BaseModel):
    """Normalized event stub used for conflict scoring and write results."""

    event_id: str
    title: str = ""
    start: datetime
    end: datetime
    all_day: bool = False
    location: str | None = None
    attendees: list[str] = Field(default_factory=list)
    status: str | None = None
    html_link: str | None = None
    self_response_status: str | None = None

    @classmethod
    def from_google(
        cls, payload: dict[str, Any], *, fallback_timezone: str | None = None
    ) -> CalendarEvent | None:
        """Build from a Google event resource; ``None`` when it has no usable times."""
        event_id = payload.get("id")
        start_raw = payload.get("start")
        end_raw = payload.get("end")
        if not isinstance(event_id, str) or not isinstance(start_raw, dict):
            return None
        if not isinstance(end_raw, dict):
            return None

        tz = coerce_zoneinfo(start_raw.get("timeZone") or fallback_timezone)
        all_day = "date" in start_raw and "dateTime" not in start_raw
        try:
            if all_day:
                start = _boundary_to_datetime(date.fromisoformat(start_raw["date"]), tz)
                end = _boundary_to_datetime(date.fromisoformat(end_raw["date"]), tz)
            else:
                start = parse_rfc3339(start_raw["dateTime"], fallback_tz=tz)
                end_tz = coerce_zoneinfo(end_raw.get("timeZone") or fallback_timezone)
                end = parse_rfc3339(end_raw["dateTime"], fallback_tz=end_tz)
        except (KeyError, TypeError, ValueError):
            return None

        attendees: list[str] = []
        self_status = None
        for attendee in payload.get("attendees") or []:
            if not isinstance(attendee, dict):
                continue
            email = attendee.get("email")
            if isinstance(email, str) and email:
                attendees.append(email)
            if attendee.get("self"):
                self_status = attendee.get("responseStatus")

        location = payload.get("location")
        return cls(
            event_id=event_id,
            title=payload.get("summary") or "",
            start=start,
            end=end,
            all_day=all_day,
            location=location.strip() or None if isinstance(location, str) else None,
            attendees=attendees,
            status=payload.get("status"),
            html_link=payload.get("htmlLink"),
            self_response_status=self_status,
        )

    @property
    def duration(self) -> timedelta:
        return self.end - self.start


class EventDraft(BaseModel):
    """A candidate event about to be created or the new shape of an updated one.

    Naive ``start``/``end`` datetimes are interpreted in ``time_zone``; plain
    dates denote an all-day event with an exclusive end date.
    """

    title: str
    start: datetime | date
    end: datetime | date
    time_zone: str | None = None
    location: str | None = None
    description: str | None = None
    attendees: list[str] = Field(default_factory=list)

    @field_validator("title")
    @classmethod
    def _normalize_title(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("title must be a non-empty string")
        return normalized

    @field_validator("location", "description")
    @classmethod
    def _normalize_optional(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None

    @model_validator(mode="after")
    def _validate_boundaries(self) -> EventDraft:
        if isinstance(self.start, datetime) != isinstance(self.end, datetime):
            raise ValueError("start and end must both be datetimes or both be dates")
        start, end = self.time_range()
        if end <= start:
            raise ValueError("end must be after start")
        return self

    @property
    def all_day(self) -> bool:
        return not isinstance(self.start, datetime)

    def time_range(self) -> tuple[datetime, datetime]:
        """Timezone-aware ``(start, end)``."""
        tz = coerce_zoneinfo(self.time_zone)
        return _boundary_to_datetime(self.start, tz), _boundary_to_datetime(self.end, tz)

    def as_event(self, event_id: str = "") -> CalendarEvent:
        start, end = self.time_range()
        return CalendarEvent(
            event_id=event_id,
            title=self.title,
            start=start,
            end=end,
            all_day=self.all_day,
            location=self.location,
            attendees=list(self.attendees),
        )

    def to_google_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {"summary": self.title}
        if self.all_day:
            body["start"] = {"date": self.start.isoformat()}
            body["end"] = {"date": self.end.isoformat()}
        else:
            start, end = self.time_range()
            start_obj: dict[str, Any] = {"dateTime": start.isoformat()}
            end_obj: dict[str, Any] = {"dateTime": end.isoformat()}
            if self.time_zone:
                start_obj["timeZone"] = self.time_zone
                end_obj["timeZone"] = self.time_zone
            body["start"] = start_obj
            body["end"] = end_obj
        if self.location:
            body["location"] = self.location
        if self.description:
            body["description"] = self.description
        if self.attendees:
            body["attendees"] = [{"email": email} for email in self.attendees]
        return body


class EventPatch(BaseModel):
    """Partial update for an existing event; ``None`` fields are left unchanged."""

    title: str | None = None
    start: datetime | date | None = None
    end: datetime | date | None = None
    time_zone: str | None = None
    location: str | None = None
    description: str | None = None
    attendees: list[str] | None = None

    @property
    def changes_time(self) -> bool:
        return self.start is not None or self.end is not None

    def apply_to(self, event: CalendarEvent) -> EventDraft:
        """The draft the event would become after this patch."""
        start: date | datetime = self.start if self.start is not None else event.start
        end: date | datetime = self.end if self.end is not None else event.end
        if isinstance(start, datetime) != isinstance(end, datetime):
            # Mixed boundary kinds: promote the date side to the event's datetime.
            start = event.start if not isinstance(start, datetime) else start
            end = event.end if not isinstance(end, datetime) else end
        return EventDraft(
            title=self.title if self.title is not None else event.title,
            start=start,
            end=end,
            time_zone=self.time_zone,
            location=self.location if self.location is not None else event.location,
            attendees=self.attendees if self.attendees is not None else event.attendees,
        )

    def to_google_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {}
        if self.title is not None:
            body["summary"] = self.title
        for key, value in (("start", self.start), ("end", self.end)):
            if value is None:
                continue
            if isinstance(value, datetime):
                boundary: dict[str, Any] = {"dateTime": value.isoformat()}
                if self.time_zone:
                    boundary["timeZone"] = self.time_zone
            else:
                boundary = {"date": value.isoformat()}
            body[key] = boundary
        if self.location is not None:
            body["location"] = self.location
        if self.description is not None:
            body["description"] = self.description
        if self.attendees is not None:
            body["attendees"] = [{"email": email} for email in self.attendees]
        return body


# ---------------------------------------------------------------------------
# Conflict detection
# ---------------------------------------------------------------------------


class DuplicateCandidate(BaseModel):
    event: CalendarEvent
    calendar_id: str
    similarity: float = Field(ge=0.0, le=1.0)
    suggestion: str = ""


class OverlapCandidate(BaseModel):
    event: CalendarEvent
    calendar_id: str
    overlap_seconds: int
    overlap_percentage: int
    overlap_start: datetime
    overlap_end: datetime

    @property
    def overlap_duration(self) -> str:
        minutes = self.overlap_seconds // 60
        if minutes < 60:
            return f"{minutes} minute{'s' if minutes != 1 else ''}"
        hours, rest = divmod(minutes, 60)
        text = f"{hours} hour{'s' if hours != 1 else ''}"
        if rest:
            text += f" {rest} minute{'s' if rest != 1 else ''}"
        return text


class ConflictVerdict(StrEnum):
    CLEAR = "clear"
    WARN = "warn"
    BLOCK = "block"


class ConflictCheckResult(BaseModel):
    duplicates: list[DuplicateCandidate] = Field(default_factory=list)
    conflicts: list[OverlapCandidate] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    blocking_threshold: float = 0.95

    @property
    def has_conflicts(self) -> bool:
        return bool(self.duplicates or self.conflicts)

    @property
    def blocking_duplicate(self) -> DuplicateCandidate | None:
        blocking = [dup for dup in self.duplicates if dup.similarity >= self.blocking_threshold]
        if not blocking:
            return None
        return max(blocking, key=lambda dup: dup.similarity)

    @property
    def verdict(self) -> ConflictVerdict:
        if self.blocking_duplicate is not None:
            return ConflictVerdict.BLOCK
        if self.has_conflicts:
            return ConflictVerdict.WARN
        return ConflictVerdict.CLEAR

    def summary_warnings(self) -> list[str]:
        messages: list[str] = []
        if self.duplicates:
            messages.append(f"Found {len(self.duplicates)} potential duplicate(s)")
        if self.conflicts:
            messages.append(f"Found {len(self.conflicts)} scheduling conflict(s)")
        messages.extend(self.warnings)
        return messages
