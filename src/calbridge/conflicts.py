"""Write-time duplicate and overlap detection.

Before an event is created (or moved), nearby events on the target calendars
are compared against the candidate:

- **duplicates**: events whose similarity score reaches the warning
  threshold (0.70 by default, overridable per call).  A score of 0.95 or more
  is *blocking*: the write is refused unless the caller overrides it.
- **conflicts**: events whose time range strictly intersects the candidate's.

Similarity is deterministic and weighs title (0.5), time (0.4) and location
(0.1).  When either side has no location, title and time are renormalized to
5/9 and 4/9.  Fuzzy (non-identical) titles are capped at 0.8 so that only an
exact title can reach the blocking level.
"""

from __future__ import annotations

import asyncio
import difflib
import logging
from collections.abc import Sequence
from datetime import datetime, timedelta
from typing import Protocol

from pydantic import BaseModel, Field

from calbridge.config import DEFAULT_FETCH_TIMEOUT_SECONDS
from calbridge.core.metrics import CalbridgeMetrics
from calbridge.core.telemetry import operation_span
from calbridge.errors import CalbridgeError
from calbridge.models import (
    CalendarEvent,
    ConflictCheckResult,
    DuplicateCandidate,
    EventDraft,
    OverlapCandidate,
)

logger = logging.getLogger(__name__)

DEFAULT_DUPLICATE_THRESHOLD = 0.70
BLOCKING_DUPLICATE_THRESHOLD = 0.95
FUZZY_TITLE_CAP = 0.8
TITLE_WEIGHT = 0.5
TIME_WEIGHT = 0.4
LOCATION_WEIGHT = 0.1
SEARCH_PADDING = timedelta(days=1)

_BLOCKING_SUGGESTION = (
    "This event is nearly identical to an existing one; consider updating the existing "
    "event instead"
)
_WARNING_SUGGESTION = "Review the existing event before creating this one"


class EventSource(Protocol):
    async def list_events(
        self, calendar_id: str, time_min: datetime, time_max: datetime
    ) -> list[CalendarEvent]: ...


class ConflictDetectionOptions(BaseModel):
    check_duplicates: bool = True
    check_conflicts: bool = True
    calendars_to_check: list[str] | None = None
    duplicate_similarity_threshold: float = Field(
        default=DEFAULT_DUPLICATE_THRESHOLD, ge=0.0, le=1.0
    )
    include_declined_events: bool = False
    exclude_event_id: str | None = None


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


def normalize_title(title: str) -> str:
    return " ".join(title.lower().split())


def title_similarity(left: str, right: str) -> float:
    a = normalize_title(left)
    b = normalize_title(right)
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0
    tokens_a = set(a.split())
    tokens_b = set(b.split())
    jaccard = len(tokens_a & tokens_b) / len(tokens_a | tokens_b)
    ratio = difflib.SequenceMatcher(None, a, b).ratio()
    return min(max(jaccard, ratio), FUZZY_TITLE_CAP)


def time_similarity(
    start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime
) -> float:
    """1.0 for identical ranges, otherwise intersection over union."""
    if start_a == start_b and end_a == end_b:
        return 1.0
    intersection = (min(end_a, end_b) - max(start_a, start_b)).total_seconds()
    if intersection <= 0:
        return 0.0
    union = (max(end_a, end_b) - min(start_a, start_b)).total_seconds()
    return intersection / union if union > 0 else 0.0


def location_similarity(left: str | None, right: str | None) -> float | None:
    """``None`` when either side has no location to compare."""
    if not left or not right:
        return None
    return 1.0 if left.strip().lower() == right.strip().lower() else 0.0


def event_similarity(candidate: CalendarEvent, existing: CalendarEvent) -> float:
    title = title_similarity(candidate.title, existing.title)
    timing = time_similarity(candidate.start, candidate.end, existing.start, existing.end)
    location = location_similarity(candidate.location, existing.location)
    if location is None:
        total = TITLE_WEIGHT + TIME_WEIGHT
        score = (TITLE_WEIGHT * title + TIME_WEIGHT * timing) / total
    else:
        score = TITLE_WEIGHT * title + TIME_WEIGHT * timing + LOCATION_WEIGHT * location
    return round(min(score, 1.0), 4)


def find_overlap(
    candidate: CalendarEvent, existing: CalendarEvent, calendar_id: str = ""
) -> OverlapCandidate | None:
    """Strict intersection; events that only touch at a boundary do not overlap."""
    if not (candidate.start < existing.end and candidate.end > existing.start):
        return None
    overlap_start = max(candidate.start, existing.start)
    overlap_end = min(candidate.end, existing.end)
    seconds = int((overlap_end - overlap_start).total_seconds())
    duration = candidate.duration.total_seconds()
    percentage = round(seconds / duration * 100) if duration > 0 else 100
    return OverlapCandidate(
        event=existing,
        calendar_id=calendar_id,
        overlap_seconds=seconds,
        overlap_percentage=percentage,
        overlap_start=overlap_start,
        overlap_end=overlap_end,
    )


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class ConflictDetectionService:
    """Checks a candidate event against the events already on its calendars."""

    def __init__(
        self,
        *,
        fetch_timeout: float = DEFAULT_FETCH_TIMEOUT_SECONDS,
        metrics: CalbridgeMetrics | None = None,
    ) -> None:
        self._fetch_timeout = fetch_timeout
        self._metrics = metrics or CalbridgeMetrics()

    async def check_conflicts(
        self,
        client: EventSource,
        candidate: EventDraft | CalendarEvent,
        calendar_id: str,
        options: ConflictDetectionOptions | None = None,
    ) -> ConflictCheckResult:
        opts = options or ConflictDetectionOptions()
        event = candidate.as_event() if isinstance(candidate, EventDraft) else candidate
        result = ConflictCheckResult(blocking_threshold=BLOCKING_DUPLICATE_THRESHOLD)

        if not (opts.check_duplicates or opts.check_conflicts):
            return result

        with operation_span("conflicts.check"):
            window_start = event.start - SEARCH_PADDING
            window_end = event.end + SEARCH_PADDING
            for target in opts.calendars_to_check or [calendar_id]:
                existing = await self._fetch_events(
                    client, target, window_start, window_end, result
                )
                self._compare(event, target, existing, opts, result, window_start, window_end)

        result.duplicates.sort(key=lambda dup: (-dup.similarity, dup.event.start))
        result.conflicts.sort(key=lambda overlap: (overlap.overlap_start, overlap.event.event_id))
        self._metrics.conflict_check(result.verdict.value)
        if result.has_conflicts:
            logger.info(
                "Conflict check for %r found %d duplicate(s) and %d conflict(s)",
                event.title,
                len(result.duplicates),
                len(result.conflicts),
            )
        return result

    async def _fetch_events(
        self,
        client: EventSource,
        calendar_id: str,
        window_start: datetime,
        window_end: datetime,
        result: ConflictCheckResult,
    ) -> Sequence[CalendarEvent]:
        try:
            return await asyncio.wait_for(
                client.list_events(calendar_id, window_start, window_end),
                timeout=self._fetch_timeout,
            )
        except TimeoutError:
            reason = f"timed out after {self._fetch_timeout:.1f}s"
        except CalbridgeError as exc:
            reason = str(exc)
        logger.warning("Conflict check skipped calendar %s: %s", calendar_id, reason)
        result.warnings.append(f'Could not check calendar "{calendar_id}" for conflicts: {reason}')
        return []

    @staticmethod
    def _compare(
        candidate: CalendarEvent,
        calendar_id: str,
        existing: Sequence[CalendarEvent],
        opts: ConflictDetectionOptions,
        result: ConflictCheckResult,
        window_start: datetime,
        window_end: datetime,
    ) -> None:
        for other in existing:
            if opts.exclude_event_id and other.event_id == opts.exclude_event_id:
                continue
            if other.status == "cancelled":
                continue
            if not opts.include_declined_events and other.self_response_status == "declined":
                continue
            if not (other.start < window_end and other.end > window_start):
                continue

            if opts.check_duplicates:
                similarity = event_similarity(candidate, other)
                floor = min(opts.duplicate_similarity_threshold, BLOCKING_DUPLICATE_THRESHOLD)
                if similarity >= floor:
                    blocking = similarity >= BLOCKING_DUPLICATE_THRESHOLD
                    result.duplicates.append(
                        DuplicateCandidate(
                            event=other,
                            calendar_id=calendar_id,
                            similarity=similarity,
                            suggestion=_BLOCKING_SUGGESTION if blocking else _WARNING_SUGGESTION,
                        )
                    )
                    continue

            if opts.check_conflicts:
                overlap = find_overlap(candidate, other, calendar_id)
                if overlap is not None:
                    result.conflicts.append(overlap)
