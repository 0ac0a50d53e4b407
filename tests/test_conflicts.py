"""Unit tests for duplicate and overlap detection."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest

from calbridge.conflicts import (
    ConflictDetectionOptions,
    ConflictDetectionService,
    event_similarity,
    find_overlap,
    location_similarity,
    time_similarity,
    title_similarity,
)
from calbridge.errors import CalendarApiError
from calbridge.models import CalendarEvent, ConflictVerdict, EventDraft

pytestmark = pytest.mark.unit

T10 = datetime(2026, 3, 2, 10, 0, tzinfo=UTC)


def _event(
    event_id: str,
    title: str,
    start: datetime,
    minutes: int = 60,
    **extra,
) -> CalendarEvent:
    return CalendarEvent(
        event_id=event_id,
        title=title,
        start=start,
        end=start + timedelta(minutes=minutes),
        **extra,
    )


def _draft(title: str, start: datetime = T10, minutes: int = 60, **extra) -> EventDraft:
    return EventDraft(title=title, start=start, end=start + timedelta(minutes=minutes), **extra)


@pytest.fixture
def service() -> ConflictDetectionService:
    return ConflictDetectionService(fetch_timeout=1.0, metrics=MagicMock())


class TestScoring:
    def test_title_is_case_and_whitespace_insensitive(self):
        assert title_similarity("Team  Standup", "team standup") == 1.0

    def test_fuzzy_titles_are_capped(self):
        assert title_similarity("Standup", "Standup!") == 0.8

    def test_empty_title_scores_zero(self):
        assert title_similarity("", "Standup") == 0.0

    def test_time_similarity(self):
        end = T10 + timedelta(hours=1)
        assert time_similarity(T10, end, T10, end) == 1.0
        assert time_similarity(T10, end, end, end + timedelta(hours=1)) == 0.0
        half = T10 + timedelta(minutes=30)
        assert time_similarity(T10, end, half, half + timedelta(hours=1)) == pytest.approx(1 / 3)

    def test_location_only_counts_when_both_present(self):
        assert location_similarity(None, "Room 1") is None
        assert location_similarity(" room 1 ", "Room 1") == 1.0
        assert location_similarity("Room 1", "Room 2") == 0.0

    def test_identical_events_reach_blocking_level(self):
        event = _event("a", "Team Standup", T10)
        assert event_similarity(event, event) == 1.0

    def test_extra_title_word_is_a_warning_level_match(self):
        score = event_similarity(
            _event("a", "Team Standup", T10), _event("b", "Team Standup Meeting", T10)
        )
        assert score == pytest.approx(0.8611, abs=1e-4)

    def test_different_location_keeps_exact_match_below_blocking(self):
        score = event_similarity(
            _event("a", "Review", T10, location="Room 1"),
            _event("b", "Review", T10, location="Room 2"),
        )
        assert score == pytest.approx(0.9)

    def test_score_is_symmetric(self):
        a = _event("a", "Planning", T10, minutes=90)
        b = _event("b", "Planning session", T10 + timedelta(minutes=30))
        assert event_similarity(a, b) == event_similarity(b, a)


class TestOverlap:
    def test_touching_boundaries_do_not_overlap(self):
        candidate = _event("c", "A", T10)
        assert find_overlap(candidate, _event("x", "B", T10 + timedelta(hours=1))) is None
        assert find_overlap(candidate, _event("y", "B", T10 - timedelta(hours=1))) is None

    def test_partial_overlap_percentage_of_candidate(self):
        candidate = _event("c", "A", T10)
        existing = _event("x", "B", T10 + timedelta(minutes=30), minutes=90)

        overlap = find_overlap(candidate, existing, "primary")

        assert overlap.overlap_seconds == 1800
        assert overlap.overlap_percentage == 50
        assert overlap.overlap_start == T10 + timedelta(minutes=30)
        assert overlap.overlap_end == T10 + timedelta(hours=1)
        assert overlap.overlap_duration == "30 minutes"
        assert overlap.calendar_id == "primary"

    def test_containing_event_is_full_overlap(self):
        candidate = _event("c", "A", T10, minutes=30)
        existing = _event("x", "B", T10 - timedelta(hours=1), minutes=180)
        overlap = find_overlap(candidate, existing)
        assert overlap.overlap_percentage == 100
        assert overlap.overlap_duration == "30 minutes"


class TestService:
    async def test_identical_event_blocks(self, service, fake_client):
        client = fake_client("work", events={"primary": [_event("e1", "Team Standup", T10)]})

        result = await service.check_conflicts(client, _draft("Team Standup"), "primary")

        assert result.verdict is ConflictVerdict.BLOCK
        assert result.blocking_duplicate.event.event_id == "e1"
        assert "updating the existing event" in result.duplicates[0].suggestion
        assert result.conflicts == []
        service._metrics.conflict_check.assert_called_once_with("block")

    async def test_similar_event_warns(self, service, fake_client):
        client = fake_client(
            "work", events={"primary": [_event("e1", "Team Standup Meeting", T10)]}
        )

        result = await service.check_conflicts(client, _draft("Team Standup"), "primary")

        assert result.verdict is ConflictVerdict.WARN
        assert result.blocking_duplicate is None
        (duplicate,) = result.duplicates
        assert 0.70 <= duplicate.similarity < 0.95
        assert result.summary_warnings() == ["Found 1 potential duplicate(s)"]

    async def test_threshold_override_turns_duplicate_into_conflict(self, service, fake_client):
        client = fake_client(
            "work", events={"primary": [_event("e1", "Team Standup Meeting", T10)]}
        )
        options = ConflictDetectionOptions(duplicate_similarity_threshold=0.9)

        result = await service.check_conflicts(client, _draft("Team Standup"), "primary", options)

        assert result.duplicates == []
        assert [c.event.event_id for c in result.conflicts] == ["e1"]
        assert result.conflicts[0].overlap_percentage == 100

    async def test_threshold_above_blocking_floor_still_blocks(self, service, fake_client):
        client = fake_client(
            "work", events={"primary": [_event("e1", "Team Standup", T10, minutes=61)]}
        )
        options = ConflictDetectionOptions(duplicate_similarity_threshold=0.999)

        result = await service.check_conflicts(client, _draft("Team Standup"), "primary", options)

        assert result.verdict is ConflictVerdict.BLOCK
        (duplicate,) = result.duplicates
        assert 0.95 <= duplicate.similarity < 0.999
        assert result.conflicts == []

    async def test_unrelated_overlap_is_a_conflict(self, service, fake_client):
        client = fake_client(
            "work",
            events={
                "primary": [
                    _event("e1", "Board review", T10 + timedelta(minutes=30), minutes=90),
                    _event("e2", "Lunch", T10 + timedelta(hours=1)),
                ]
            },
        )

        result = await service.check_conflicts(client, _draft("Dentist"), "primary")

        assert result.duplicates == []
        (conflict,) = result.conflicts
        assert conflict.event.event_id == "e1"
        assert conflict.overlap_percentage == 50
        assert result.summary_warnings() == ["Found 1 scheduling conflict(s)"]

    async def test_skipped_events(self, service, fake_client):
        client = fake_client(
            "work",
            events={
                "primary": [
                    _event("self", "Team Standup", T10),
                    _event("gone", "Team Standup", T10, status="cancelled"),
                    _event("no", "Team Standup", T10, self_response_status="declined"),
                ]
            },
        )
        options = ConflictDetectionOptions(exclude_event_id="self")

        result = await service.check_conflicts(client, _draft("Team Standup"), "primary", options)

        assert result.verdict is ConflictVerdict.CLEAR

    async def test_declined_events_can_be_included(self, service, fake_client):
        client = fake_client(
            "work",
            events={
                "primary": [_event("no", "Sync", T10, self_response_status="declined")]
            },
        )
        options = ConflictDetectionOptions(include_declined_events=True)

        result = await service.check_conflicts(client, _draft("Sync"), "primary", options)

        assert [dup.event.event_id for dup in result.duplicates] == ["no"]

    async def test_search_window_is_padded_by_a_day(self, service, fake_client):
        client = fake_client("work")
        await service.check_conflicts(client, _draft("Sync"), "primary")

        ((calendar_id, time_min, time_max),) = client.list_events_calls
        assert calendar_id == "primary"
        assert time_min == T10 - timedelta(days=1)
        assert time_max == T10 + timedelta(hours=1, days=1)

    async def test_checks_every_requested_calendar(self, service, fake_client):
        client = fake_client(
            "work",
            events={
                "primary": [_event("e1", "Sync", T10)],
                "team@x": [_event("e2", "Planning", T10 + timedelta(minutes=15))],
            },
        )
        options = ConflictDetectionOptions(calendars_to_check=["primary", "team@x"])

        result = await service.check_conflicts(client, _draft("Sync"), "primary", options)

        assert [dup.calendar_id for dup in result.duplicates] == ["primary"]
        assert [c.calendar_id for c in result.conflicts] == ["team@x"]

    async def test_fetch_failure_becomes_a_warning(self, service, fake_client):
        client = fake_client("work", fail_with=CalendarApiError(status_code=500, message="down"))

        result = await service.check_conflicts(client, _draft("Sync"), "primary")

        assert result.verdict is ConflictVerdict.CLEAR
        (warning,) = result.warnings
        assert warning.startswith('Could not check calendar "primary" for conflicts:')
        assert "down" in warning

    async def test_disabled_checks_skip_fetching(self, service, fake_client):
        client = fake_client("work")
        options = ConflictDetectionOptions(check_duplicates=False, check_conflicts=False)

        result = await service.check_conflicts(client, _draft("Sync"), "primary", options)

        assert result.verdict is ConflictVerdict.CLEAR
        assert client.list_events_calls == []
