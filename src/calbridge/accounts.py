"""Account aliases and the records stored per account.

An alias is the user-chosen key for one connected Google account ("work",
"personal", ...).  The same validation runs wherever an alias is accepted so
that path-traversal-like or reserved device names never reach the filesystem
layer.

On disk each account is a flat JSON object: the OAuth token fields issued by
Google plus three cache fields owned by calbridge::

    {
      "access_token": "...",
      "refresh_token": "...",
      "expiry_date": 1767225600000,
      "cached_email": "me@example.com",
      "cached_calendars": [{"id": "primary@example.com", ...}],
      "calendars_cached_at": 1767225000000
    }

:class:`Account` is the checked in-memory shape of that object.
"""

from __future__ import annotations

import re
import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from calbridge.errors import InvalidAliasError, InvalidCredentialsError

ALIAS_PATTERN = re.compile(r"^[a-z0-9_-]{1,64}$")
RESERVED_ALIASES = frozenset(
    {
        ".",
        "..",
        "con",
        "prn",
        "aux",
        "nul",
        *(f"com{i}" for i in range(1, 10)),
        *(f"lpt{i}" for i in range(1, 10)),
    }
)
DEFAULT_ALIAS = "normal"

_INVALID_ALIAS_MESSAGE = (
    "Invalid account ID. Must be 1-64 characters: "
    "lowercase letters, numbers, dashes, underscores only."
)

# Fields of a stored account entry that are calbridge cache, not credentials.
CACHE_FIELDS = ("cached_email", "cached_calendars", "calendars_cached_at")


def validate_alias(alias: Any) -> str:
    """Return *alias* unchanged if it is a valid account alias.

    Raises :class:`InvalidAliasError` otherwise.  Reserved names are checked
    before the pattern so that ``.`` and ``..`` get the more specific message.
    """
    if not isinstance(alias, str) or not alias:
        raise InvalidAliasError(_INVALID_ALIAS_MESSAGE)
    if alias in RESERVED_ALIASES:
        raise InvalidAliasError(f'Account ID "{alias}" is reserved and cannot be used.')
    if not ALIAS_PATTERN.fullmatch(alias):
        raise InvalidAliasError(_INVALID_ALIAS_MESSAGE)
    return alias


def normalize_alias(alias: Any) -> str:
    """Lower-case and strip *alias*, then validate it."""
    if not isinstance(alias, str):
        raise InvalidAliasError(_INVALID_ALIAS_MESSAGE)
    return validate_alias(alias.strip().lower())


def now_ms() -> int:
    return int(time.time() * 1000)


class CredentialBlob(BaseModel):
    """OAuth token material for one account.

    Unknown provider fields are preserved so a round-trip through calbridge
    never drops data Google returned.
    """

    model_config = ConfigDict(extra="allow")

    access_token: str | None = None
    refresh_token: str | None = None
    expiry_date: int | None = None
    token_type: str | None = None
    scope: str | None = None
    id_token: str | None = None

    def has_minimum_fields(self) -> bool:
        return bool(self.access_token) or bool(self.refresh_token)

    def is_expired(self, *, skew_ms: int = 0, at_ms: int | None = None) -> bool:
        """Whether the access token is missing or expires within *skew_ms*."""
        if not self.access_token:
            return True
        if self.expiry_date is None:
            return False
        current = now_ms() if at_ms is None else at_ms
        return current >= self.expiry_date - skew_ms

    def merged_with(self, newer: CredentialBlob) -> CredentialBlob:
        """Overlay *newer* on this blob, keeping our refresh token if *newer* omits it."""
        payload = self.model_dump(exclude_none=True)
        payload.update(newer.model_dump(exclude_none=True))
        if not newer.refresh_token and self.refresh_token:
            payload["refresh_token"] = self.refresh_token
        return CredentialBlob.model_validate(payload)

    def __repr__(self) -> str:
        return (
            "CredentialBlob("
            f"access_token={'<REDACTED>' if self.access_token else None}, "
            f"refresh_token={'<REDACTED>' if self.refresh_token else None}, "
            f"expiry_date={self.expiry_date!r})"
        )

    __str__ = __repr__


class CalendarSummary(BaseModel):
    """One calendar-list entry as cached per account."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    summary: str = ""
    summary_override: str | None = Field(default=None, alias="summaryOverride")
    access_role: str = Field(default="reader", alias="accessRole")
    primary: bool = False
    background_color: str | None = Field(default=None, alias="backgroundColor")
    time_zone: str | None = Field(default=None, alias="timeZone")

    @property
    def display_name(self) -> str:
        return self.summary_override or self.summary or self.id

    @classmethod
    def from_api(cls, item: dict[str, Any]) -> CalendarSummary | None:
        """Build from a Google ``calendarList`` item; ``None`` when it has no id."""
        calendar_id = item.get("id")
        if not isinstance(calendar_id, str) or not calendar_id:
            return None
        return cls(
            id=calendar_id,
            summary=item.get("summary") or calendar_id,
            summary_override=item.get("summaryOverride") or None,
            access_role=item.get("accessRole") or "reader",
            primary=bool(item.get("primary", False)),
            background_color=item.get("backgroundColor") or None,
            time_zone=item.get("timeZone") or None,
        )


def sort_calendar_summaries(calendars: list[CalendarSummary]) -> list[CalendarSummary]:
    """Primary calendar first, then by display name."""
    return sorted(calendars, key=lambda cal: (not cal.primary, cal.display_name.lower(), cal.id))


class Account(BaseModel):
    """A stored account: alias, credentials and calbridge-owned cache fields."""

    model_config = ConfigDict(frozen=True)

    alias: str
    credentials: CredentialBlob
    cached_email: str | None = None
    cached_calendars: list[CalendarSummary] | None = None
    calendars_cached_at: int | None = None

    @classmethod
    def from_entry(cls, alias: str, entry: Any) -> Account:
        """Validate a raw on-disk entry.

        Raises :class:`InvalidAliasError` or :class:`InvalidCredentialsError`.
        """
        validate_alias(alias)
        if not isinstance(entry, dict):
            raise InvalidCredentialsError(f'Entry for account "{alias}" is not an object')

        token_fields = {key: value for key, value in entry.items() if key not in CACHE_FIELDS}
        try:
            credentials = CredentialBlob.model_validate(token_fields)
        except ValidationError as exc:
            raise InvalidCredentialsError(
                f'Entry for account "{alias}" has malformed token fields: '
                f"{exc.error_count()} validation error(s)"
            ) from exc
        if not credentials.has_minimum_fields():
            raise InvalidCredentialsError(
                f'Entry for account "{alias}" has neither an access token nor a refresh token'
            )

        calendars = None
        raw_calendars = entry.get("cached_calendars")
        if isinstance(raw_calendars, list):
            try:
                calendars = [CalendarSummary.model_validate(item) for item in raw_calendars]
            except ValidationError:
                # A bad cache is discarded, the credentials are still usable.
                calendars = None

        cached_at = entry.get("calendars_cached_at")
        cached_email = entry.get("cached_email")
        return cls(
            alias=alias,
            credentials=credentials,
            cached_email=cached_email if isinstance(cached_email, str) else None,
            cached_calendars=calendars,
            calendars_cached_at=cached_at if isinstance(cached_at, int) else None,
        )

    def to_entry(self) -> dict[str, Any]:
        """Serialize back to the flat on-disk shape."""
        entry = self.credentials.model_dump(exclude_none=True)
        if self.cached_email:
            entry["cached_email"] = self.cached_email
        if self.cached_calendars is not None:
            entry["cached_calendars"] = [
                cal.model_dump(by_alias=True, exclude_none=True) for cal in self.cached_calendars
            ]
            if self.calendars_cached_at is not None:
                entry["calendars_cached_at"] = self.calendars_cached_at
        return entry

    def calendars_stale(self, ttl_ms: int, *, at_ms: int | None = None) -> bool:
        if self.cached_calendars is None or self.calendars_cached_at is None:
            return True
        current = now_ms() if at_ms is None else at_ms
        return current - self.calendars_cached_at > ttl_ms


class AccountStatus(StrEnum):
    ACTIVE = "active"
    EXPIRED = "expired"


class AccountSummary(BaseModel):
    """Row returned by ``TokenManager.list_summaries()``."""

    alias: str
    email: str
    status: AccountStatus
    calendars: list[CalendarSummary] = Field(default_factory=list)


def account_status(credentials: CredentialBlob, *, at_ms: int | None = None) -> AccountStatus:
    """``expired`` only when no refresh token can recover an unusable access token."""
    if credentials.refresh_token:
        return AccountStatus.ACTIVE
    if credentials.is_expired(at_ms=at_ms):
        return AccountStatus.EXPIRED
    return AccountStatus.ACTIVE
