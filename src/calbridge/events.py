"""Event writes gated by conflict detection.

``EventWriter`` resolves the target account and calendar, checks the
candidate against nearby events, refuses blocking-level duplicates unless the
caller opts in, and only then talks to the Calendar API.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping

from pydantic import BaseModel, Field

from calbridge.calendar_registry import CalendarRegistry
from calbridge.conflicts import (
    DEFAULT_DUPLICATE_THRESHOLD,
    ConflictDetectionOptions,
    ConflictDetectionService,
)
from calbridge.core.logging import account_context
from calbridge.errors import CalendarApiError, DuplicateEventError
from calbridge.google import GoogleCalendarClient
from calbridge.models import (
    CalendarEvent,
    DuplicateCandidate,
    EventDraft,
    EventPatch,
    OverlapCandidate,
)
from calbridge.routing import ResolvedTarget, resolve_target

logger = logging.getLogger(__name__)

AccountsProvider = Callable[[], Awaitable[Mapping[str, GoogleCalendarClient]]]


class EventWriteResult(BaseModel):
    event: CalendarEvent
    alias: str
    calendar_id: str
    duplicates: list[DuplicateCandidate] = Field(default_factory=list)
    conflicts: list[OverlapCandidate] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class EventWriter:
    """Create, update and delete events across accounts.

    *accounts* is an async callable returning the current ``alias -> client``
    mapping, typically ``TokenManager.load_all``.
    """

    def __init__(
        self,
        accounts: AccountsProvider,
        registry: CalendarRegistry,
        conflicts: ConflictDetectionService | None = None,
    ) -> None:
        self._accounts = accounts
        self._registry = registry
        self._conflicts = conflicts or ConflictDetectionService()

    async def _target(self, account: str | None, calendar: str) -> ResolvedTarget:
        return await resolve_target(
            self._registry, account, calendar, await self._accounts(), "write"
        )

    async def create_event(
        self,
        draft: EventDraft,
        calendar: str = "primary",
        account: str | None = None,
        *,
        allow_duplicates: bool = False,
        duplicate_similarity_threshold: float | None = None,
        calendars_to_check: list[str] | None = None,
    ) -> EventWriteResult:
        """Insert *draft* unless it duplicates an existing event.

        Raises:
            DuplicateEventError: a blocking-level duplicate exists and
                *allow_duplicates* is false.
        """
        target = await self._target(account, calendar)
        options = ConflictDetectionOptions(
            calendars_to_check=calendars_to_check,
            duplicate_similarity_threshold=(
                duplicate_similarity_threshold
                if duplicate_similarity_threshold is not None
                else DEFAULT_DUPLICATE_THRESHOLD
            ),
        )

        with account_context(target.alias):
            check = await self._conflicts.check_conflicts(
                target.client, draft, target.calendar_id, options
            )
            blocking = check.blocking_duplicate
            if blocking is not None:
                if not allow_duplicates:
                    raise DuplicateEventError(blocking)
                logger.info(
                    "Creating %r despite a %.0f%% similar event (allow_duplicates)",
                    draft.title,
                    blocking.similarity * 100,
                )

            created = await target.client.insert_event(
                target.calendar_id, draft.to_google_body()
            )

        return EventWriteResult(
            event=created,
            alias=target.alias,
            calendar_id=target.calendar_id,
            duplicates=check.duplicates,
            conflicts=check.conflicts,
            warnings=check.summary_warnings(),
        )

    async def update_event(
        self,
        event_id: str,
        patch: EventPatch,
        calendar: str = "primary",
        account: str | None = None,
        *,
        duplicate_similarity_threshold: float | None = None,
        calendars_to_check: list[str] | None = None,
    ) -> EventWriteResult:
        """Patch an event; conflicts are re-checked only when its time changes.

        Duplicates found here are reported as warnings and never block.
        """
        target = await self._target(account, calendar)
        duplicates: list[DuplicateCandidate] = []
        conflicts: list[OverlapCandidate] = []
        warnings: list[str] = []

        with account_context(target.alias):
            if patch.changes_time:
                existing = await target.client.get_event(target.calendar_id, event_id)
                if existing is None:
                    raise CalendarApiError(
                        status_code=404, message=f'Event "{event_id}" not found'
                    )
                options = ConflictDetectionOptions(
                    calendars_to_check=calendars_to_check,
                    duplicate_similarity_threshold=(
                        duplicate_similarity_threshold
                        if duplicate_similarity_threshold is not None
                        else DEFAULT_DUPLICATE_THRESHOLD
                    ),
                    exclude_event_id=event_id,
                )
                check = await self._conflicts.check_conflicts(
                    target.client, patch.apply_to(existing), target.calendar_id, options
                )
                duplicates = check.duplicates
                conflicts = check.conflicts
                warnings = check.summary_warnings()

            updated = await target.client.patch_event(
                target.calendar_id, event_id, patch.to_google_body()
            )

        return EventWriteResult(
            event=updated,
            alias=target.alias,
            calendar_id=target.calendar_id,
            duplicates=duplicates,
            conflicts=conflicts,
            warnings=warnings,
        )

    async def delete_event(
        self, event_id: str, calendar: str = "primary", account: str | None = None
    ) -> str:
        """Delete an event; returns the alias of the account that performed it."""
        target = await self._target(account, calendar)
        with account_context(target.alias):
            await target.client.delete_event(target.calendar_id, event_id)
            logger.info("Deleted event %s from %s", event_id, target.calendar_id)
        return target.alias
