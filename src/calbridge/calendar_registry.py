"""Unified, deduplicated view of calendars across accounts.

The same calendar (identified by its Google calendar id) is often visible from
several accounts with different access roles.  The registry merges those
views, picks a *preferred* account per calendar (highest permission, ties
broken by lexical alias) and routes names or ids to the account that should
serve a read or a write.

The unified view is cached per set of accounts for ``cache_ttl`` seconds.
Name lookups run against indexes built once per fetch.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Protocol

from calbridge.accounts import CalendarSummary
from calbridge.config import DEFAULT_CALENDAR_CACHE_TTL_SECONDS, DEFAULT_FETCH_TIMEOUT_SECONDS
from calbridge.core.metrics import CalbridgeMetrics
from calbridge.core.telemetry import operation_span
from calbridge.errors import CalbridgeError, CalendarResolutionError
from calbridge.models import (
    CalendarAccessEntry,
    CalendarResolution,
    Intent,
    RoutingResult,
    UnifiedCalendar,
)

logger = logging.getLogger(__name__)

PRIMARY_CALENDAR_ID = "primary"


class CalendarListSource(Protocol):
    async def list_calendars(self) -> list[CalendarSummary]: ...


def _preferred_entry(entries: Iterable[CalendarAccessEntry]) -> CalendarAccessEntry:
    return min(entries, key=lambda entry: (-entry.rank, entry.account_alias))


def _display_name(
    entries: list[CalendarAccessEntry], preferred: CalendarAccessEntry, calendar_id: str
) -> str:
    for entry in entries:
        if entry.is_primary and entry.summary_override:
            return entry.summary_override
    return preferred.summary_override or preferred.summary or calendar_id


def build_unified_calendars(
    calendars_by_alias: Mapping[str, list[CalendarSummary]],
) -> list[UnifiedCalendar]:
    """Merge per-account calendar lists into one entry per calendar id."""
    grouped: dict[str, list[CalendarAccessEntry]] = defaultdict(list)
    for alias in sorted(calendars_by_alias):
        for calendar in calendars_by_alias[alias]:
            grouped[calendar.id].append(
                CalendarAccessEntry(
                    account_alias=alias,
                    access_role=calendar.access_role,
                    is_primary=calendar.primary,
                    summary=calendar.summary or calendar.id,
                    summary_override=calendar.summary_override,
                )
            )

    unified: list[UnifiedCalendar] = []
    for calendar_id in sorted(grouped):
        entries = grouped[calendar_id]
        preferred = _preferred_entry(entries)
        unified.append(
            UnifiedCalendar(
                calendar_id=calendar_id,
                accounts=tuple(entries),
                preferred_account=preferred.account_alias,
                display_name=_display_name(entries, preferred, calendar_id),
            )
        )
    return unified


def _resolution_for(calendar: UnifiedCalendar, intent: Intent) -> CalendarResolution | None:
    preferred = calendar.preferred_access
    if intent == "write" and not preferred.can_write:
        return None
    return CalendarResolution(
        calendar_id=calendar.calendar_id,
        account_alias=preferred.account_alias,
        access_role=preferred.access_role,
    )


@dataclass
class _Snapshot:
    """One fetch worth of unified calendars plus name indexes."""

    calendars: list[UnifiedCalendar]
    fetched_at: float
    by_id: dict[str, UnifiedCalendar] = field(default_factory=dict)
    override_exact: dict[str, list[str]] = field(default_factory=dict)
    override_folded: dict[str, list[str]] = field(default_factory=dict)
    title_exact: dict[str, list[str]] = field(default_factory=dict)
    title_folded: dict[str, list[str]] = field(default_factory=dict)

    @classmethod
    def build(cls, calendars: list[UnifiedCalendar], fetched_at: float) -> _Snapshot:
        snapshot = cls(calendars=calendars, fetched_at=fetched_at)
        for calendar in calendars:
            snapshot.by_id[calendar.calendar_id] = calendar
            for entry in calendar.accounts:
                if entry.summary_override:
                    _index(snapshot.override_exact, entry.summary_override, calendar)
                    _index(snapshot.override_folded, entry.summary_override.lower(), calendar)
                if entry.summary:
                    _index(snapshot.title_exact, entry.summary, calendar)
                    _index(snapshot.title_folded, entry.summary.lower(), calendar)
        return snapshot

    def match_name(self, name: str, intent: Intent) -> CalendarResolution | None:
        folded = name.lower()
        for index, key in (
            (self.override_exact, name),
            (self.override_folded, folded),
            (self.title_exact, name),
            (self.title_folded, folded),
        ):
            for calendar_id in index.get(key, ()):
                resolution = _resolution_for(self.by_id[calendar_id], intent)
                if resolution is not None:
                    return resolution
        return None


def _index(index: dict[str, list[str]], key: str, calendar: UnifiedCalendar) -> None:
    # Calendars arrive sorted by id, so each bucket stays sorted.
    bucket = index.setdefault(key, [])
    if calendar.calendar_id not in bucket:
        bucket.append(calendar.calendar_id)


class CalendarRegistry:
    """Explicitly constructed registry with a per-account-set TTL cache.

    Parameters
    ----------
    cache_ttl:
        Seconds a unified view stays valid.
    fetch_timeout:
        Upper bound in seconds for each account's calendar-list fetch.
    clock:
        Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        *,
        cache_ttl: float = DEFAULT_CALENDAR_CACHE_TTL_SECONDS,
        fetch_timeout: float = DEFAULT_FETCH_TIMEOUT_SECONDS,
        metrics: CalbridgeMetrics | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cache_ttl = cache_ttl
        self._fetch_timeout = fetch_timeout
        self._metrics = metrics or CalbridgeMetrics()
        self._clock = clock
        self._cache: dict[tuple[str, ...], _Snapshot] = {}
        self._last_fetch_errors: dict[str, str] = {}

    @property
    def last_fetch_errors(self) -> dict[str, str]:
        """Alias -> reason for accounts whose last fetch failed."""
        return dict(self._last_fetch_errors)

    def clear_cache(self) -> None:
        self._cache.clear()

    def reset(self) -> None:
        self._cache.clear()
        self._last_fetch_errors.clear()

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------

    async def get_unified_calendars(
        self, accounts: Mapping[str, CalendarListSource]
    ) -> list[UnifiedCalendar]:
        """Merged calendars for *accounts*, sorted by calendar id."""
        snapshot = await self._snapshot(accounts)
        return list(snapshot.calendars)

    async def _snapshot(self, accounts: Mapping[str, CalendarListSource]) -> _Snapshot:
        key = tuple(sorted(accounts))
        cached = self._cache.get(key)
        now = self._clock()
        if cached is not None and now - cached.fetched_at < self._cache_ttl:
            self._metrics.registry_cache_hit()
            return cached

        self._metrics.registry_cache_miss()
        aliases = list(key)
        results = await asyncio.gather(*(self._fetch(alias, accounts[alias]) for alias in aliases))

        calendars_by_alias: dict[str, list[CalendarSummary]] = {}
        failed = False
        for alias, result in zip(aliases, results, strict=True):
            if isinstance(result, str):
                failed = True
                self._last_fetch_errors[alias] = result
                continue
            self._last_fetch_errors.pop(alias, None)
            calendars_by_alias[alias] = result

        snapshot = _Snapshot.build(build_unified_calendars(calendars_by_alias), self._clock())
        if not failed:
            self._cache[key] = snapshot
        return snapshot

    async def _fetch(
        self, alias: str, client: CalendarListSource
    ) -> list[CalendarSummary] | str:
        """The account's calendars, or the failure reason."""
        with operation_span("registry.fetch", account=alias):
            try:
                return await asyncio.wait_for(client.list_calendars(), timeout=self._fetch_timeout)
            except TimeoutError:
                reason = f"calendar list fetch timed out after {self._fetch_timeout:.1f}s"
            except CalbridgeError as exc:
                reason = str(exc)
        self._metrics.registry_fetch_failure(alias)
        logger.warning("Excluding account %s from calendar registry: %s", alias, reason)
        return reason

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get_account_for_calendar(
        self,
        calendar_id: str,
        accounts: Mapping[str, CalendarListSource],
        intent: Intent = "read",
    ) -> CalendarResolution | None:
        """Preferred account for a known calendar id.

        Write intent requires ``owner`` or ``writer`` on the preferred account.
        """
        snapshot = await self._snapshot(accounts)
        calendar = snapshot.by_id.get(calendar_id)
        if calendar is None:
            return None
        return _resolution_for(calendar, intent)

    async def get_accounts_for_calendar(
        self, calendar_id: str, accounts: Mapping[str, CalendarListSource]
    ) -> list[CalendarAccessEntry]:
        snapshot = await self._snapshot(accounts)
        calendar = snapshot.by_id.get(calendar_id)
        return list(calendar.accounts) if calendar is not None else []

    async def resolve_calendar_name_to_id(
        self,
        name_or_id: str,
        accounts: Mapping[str, CalendarListSource],
        intent: Intent = "read",
    ) -> CalendarResolution | None:
        """Route a calendar name or id to ``(calendar_id, account, role)``.

        Names match with precedence: exact override, case-insensitive
        override, exact title, case-insensitive title.  With write intent only
        calendars whose preferred account can write are eligible.
        """
        if not accounts:
            return None

        if len(accounts) == 1:
            return await self._resolve_single_account(name_or_id, accounts, intent)

        if name_or_id == PRIMARY_CALENDAR_ID:
            resolution = await self.get_account_for_calendar(name_or_id, accounts, intent)
            if resolution is not None:
                return resolution
            first_alias = sorted(accounts)[0]
            return CalendarResolution(
                calendar_id=PRIMARY_CALENDAR_ID, account_alias=first_alias, access_role="owner"
            )

        if "@" in name_or_id:
            return await self.get_account_for_calendar(name_or_id, accounts, intent)

        snapshot = await self._snapshot(accounts)
        return snapshot.match_name(name_or_id, intent)

    async def _resolve_single_account(
        self,
        name_or_id: str,
        accounts: Mapping[str, CalendarListSource],
        intent: Intent,
    ) -> CalendarResolution | None:
        ((alias, client),) = accounts.items()
        if name_or_id == PRIMARY_CALENDAR_ID:
            return CalendarResolution(
                calendar_id=PRIMARY_CALENDAR_ID, account_alias=alias, access_role="owner"
            )
        if "@" in name_or_id:
            return CalendarResolution(
                calendar_id=name_or_id, account_alias=alias, access_role="unknown"
            )

        result = await self._fetch(alias, client)
        if isinstance(result, str):
            self._last_fetch_errors[alias] = result
            return None
        snapshot = _Snapshot.build(build_unified_calendars({alias: result}), self._clock())
        return snapshot.match_name(name_or_id, intent)

    async def resolve_calendars_to_accounts(
        self,
        names_or_ids: Iterable[str],
        accounts: Mapping[str, CalendarListSource],
        restrict_to: Iterable[str] | None = None,
    ) -> RoutingResult:
        """Route several calendars at once: ``alias -> [calendar ids]``.

        Unresolvable calendars become warnings.

        Raises:
            CalendarResolutionError: if calendars were requested and none
                resolved.
        """
        available: Mapping[str, CalendarListSource] = accounts
        if restrict_to is not None:
            allowed = set(restrict_to)
            available = {alias: client for alias, client in accounts.items() if alias in allowed}

        requested = list(names_or_ids)
        result = RoutingResult()
        for name_or_id in requested:
            resolution = await self.resolve_calendar_name_to_id(name_or_id, available, "read")
            if resolution is None:
                result.warnings.append(f'Calendar "{name_or_id}" not found on any account')
                continue
            calendar_ids = result.resolved.setdefault(resolution.account_alias, [])
            if resolution.calendar_id not in calendar_ids:
                calendar_ids.append(resolution.calendar_id)

        if requested and not result.resolved:
            raise CalendarResolutionError(
                "None of the requested calendars could be resolved: " + "; ".join(result.warnings)
            )
        return result
