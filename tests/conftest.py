"""Shared fixtures for the calbridge test suite."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any

import httpx
import pytest

from calbridge.accounts import CalendarSummary
from calbridge.core.write_queue import SerializedWriteQueue
from calbridge.credential_store import CredentialStore
from calbridge.errors import CalendarApiError
from calbridge.google import OAuthClientConfig
from calbridge.models import CalendarEvent


class FakeCalendarClient:
    """In-memory stand-in for ``GoogleCalendarClient``.

    ``calendars`` feeds ``list_calendars``; ``events`` maps calendar id to the
    events ``list_events`` returns.  Set ``fail_with`` to make calendar and
    event listing raise.
    """

    def __init__(
        self,
        alias: str,
        calendars: list[dict[str, Any]] | None = None,
        events: dict[str, list[CalendarEvent]] | None = None,
        *,
        fail_with: Exception | None = None,
    ) -> None:
        self.alias = alias
        self.calendars = [CalendarSummary.model_validate(item) for item in calendars or []]
        self.events = events or {}
        self.fail_with = fail_with
        self.list_calendars_calls = 0
        self.list_events_calls: list[tuple[str, datetime, datetime]] = []
        self.inserted: list[tuple[str, dict[str, Any]]] = []
        self.patched: list[tuple[str, str, dict[str, Any]]] = []
        self.deleted: list[tuple[str, str]] = []

    async def list_calendars(self) -> list[CalendarSummary]:
        self.list_calendars_calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        return list(self.calendars)

    async def list_events(
        self, calendar_id: str, time_min: datetime, time_max: datetime
    ) -> list[CalendarEvent]:
        self.list_events_calls.append((calendar_id, time_min, time_max))
        if self.fail_with is not None:
            raise self.fail_with
        return list(self.events.get(calendar_id, []))

    async def get_event(self, calendar_id: str, event_id: str) -> CalendarEvent | None:
        for event in self.events.get(calendar_id, []):
            if event.event_id == event_id:
                return event
        return None

    async def insert_event(self, calendar_id: str, body: dict[str, Any]) -> CalendarEvent:
        self.inserted.append((calendar_id, body))
        payload = {"id": f"new-{len(self.inserted)}", **body}
        event = CalendarEvent.from_google(payload)
        assert event is not None
        return event

    async def patch_event(
        self, calendar_id: str, event_id: str, body: dict[str, Any]
    ) -> CalendarEvent:
        self.patched.append((calendar_id, event_id, body))
        existing = await self.get_event(calendar_id, event_id)
        if existing is None:
            raise CalendarApiError(status_code=404, message="Not Found")
        return existing

    async def delete_event(self, calendar_id: str, event_id: str) -> None:
        self.deleted.append((calendar_id, event_id))


@pytest.fixture
def fake_client() -> type[FakeCalendarClient]:
    return FakeCalendarClient


@pytest.fixture
def queue() -> SerializedWriteQueue:
    return SerializedWriteQueue(unit_timeout=5.0)


@pytest.fixture
def token_path(tmp_path: Path) -> Path:
    return tmp_path / "config" / "tokens.json"


@pytest.fixture
def store(token_path: Path, queue: SerializedWriteQueue) -> CredentialStore:
    return CredentialStore(token_path, queue=queue)


@pytest.fixture
def oauth_config() -> OAuthClientConfig:
    return OAuthClientConfig(client_id="client-id", client_secret="client-secret")


@pytest.fixture
def mock_http() -> Callable[[Callable[[httpx.Request], httpx.Response]], httpx.AsyncClient]:
    """Build an ``httpx.AsyncClient`` whose requests are answered by *handler*."""

    def _build(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    return _build
