"""Unit tests for the Google OAuth session and Calendar API client.

All HTTP traffic is served by ``httpx.MockTransport``; nothing leaves the
process.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from urllib.parse import parse_qs

import httpx
import pytest

from calbridge.accounts import CredentialBlob, now_ms
from calbridge.errors import (
    CalendarApiError,
    InvalidCredentialsError,
    TokenRefreshError,
    TokenRevokedError,
)
from calbridge.google import (
    GoogleCalendarClient,
    GoogleOAuthSession,
    OAuthClientConfig,
    safe_google_error_message,
)

pytestmark = pytest.mark.unit

TOKEN_HOST = "oauth2.googleapis.com"
API_HOST = "www.googleapis.com"


def _fresh_blob(**overrides) -> CredentialBlob:
    payload = {
        "access_token": "access-1",
        "refresh_token": "refresh-1",
        "expiry_date": now_ms() + 3_600_000,
    }
    payload.update(overrides)
    return CredentialBlob.model_validate(payload)


def _token_response(access_token: str = "access-2", **extra) -> httpx.Response:
    return httpx.Response(200, json={"access_token": access_token, "expires_in": 3600, **extra})


# ============================================================================
# OAuth client config
# ============================================================================


class TestOAuthClientConfig:
    def test_top_level_fields(self):
        config = OAuthClientConfig.from_json(
            json.dumps({"client_id": " cid ", "client_secret": "secret"})
        )
        assert config.client_id == "cid"

    @pytest.mark.parametrize("nesting", ["installed", "web"])
    def test_nested_fields(self, nesting):
        config = OAuthClientConfig.from_json(
            json.dumps(
                {
                    nesting: {
                        "client_id": "cid",
                        "client_secret": "secret",
                        "redirect_uris": ["http://localhost:3500/oauth2callback"],
                    }
                }
            )
        )
        assert config.client_secret == "secret"
        assert config.redirect_uri == "http://localhost:3500/oauth2callback"

    def test_missing_fields(self):
        with pytest.raises(InvalidCredentialsError, match="client_secret"):
            OAuthClientConfig.from_json(json.dumps({"installed": {"client_id": "cid"}}))

    def test_invalid_json(self):
        with pytest.raises(InvalidCredentialsError, match="valid JSON"):
            OAuthClientConfig.from_json("{nope")

    def test_missing_file(self, tmp_path):
        with pytest.raises(InvalidCredentialsError, match="Cannot read"):
            OAuthClientConfig.from_file(tmp_path / "absent.json")

    def test_repr_hides_secret(self):
        config = OAuthClientConfig(client_id="cid", client_secret="top-secret")
        assert "top-secret" not in repr(config)


# ============================================================================
# OAuth session
# ============================================================================


class TestGoogleOAuthSession:
    async def test_fresh_token_is_reused_without_a_request(self, oauth_config, mock_http):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        async with mock_http(handler) as http:
            session = GoogleOAuthSession(oauth_config, _fresh_blob(), http)
            assert await session.get_access_token() == "access-1"

    async def test_refresh_preserves_refresh_token_and_notifies(self, oauth_config, mock_http):
        seen: list[dict] = []
        notified: list[CredentialBlob] = []

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.host == TOKEN_HOST
            seen.append(parse_qs(request.content.decode()))
            return _token_response()

        async with mock_http(handler) as http:
            session = GoogleOAuthSession(
                oauth_config,
                _fresh_blob(expiry_date=0),
                http,
                alias="work",
                on_tokens=notified.append,
            )
            token = await session.get_access_token()

        assert token == "access-2"
        assert seen[0]["grant_type"] == ["refresh_token"]
        assert seen[0]["refresh_token"] == ["refresh-1"]
        assert session.credentials.refresh_token == "refresh-1"
        assert session.credentials.expiry_date > now_ms()
        assert len(notified) == 1
        assert notified[0].access_token == "access-2"
        assert notified[0].refresh_token == "refresh-1"

    async def test_token_expiring_within_five_minutes_is_refreshed(self, oauth_config, mock_http):
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return _token_response()

        async with mock_http(handler) as http:
            session = GoogleOAuthSession(
                oauth_config, _fresh_blob(expiry_date=now_ms() + 60_000), http
            )
            await session.get_access_token()
        assert calls == 1

    async def test_invalid_grant_maps_to_revoked(self, oauth_config, mock_http):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                400, json={"error": "invalid_grant", "error_description": "Token revoked"}
            )

        async with mock_http(handler) as http:
            session = GoogleOAuthSession(oauth_config, _fresh_blob(), http, alias="work")
            with pytest.raises(TokenRevokedError) as exc_info:
                await session.refresh()
        assert exc_info.value.alias == "work"

    async def test_server_error_maps_to_refresh_error(self, oauth_config, mock_http):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, json={"error": {"message": "backend"}})

        async with mock_http(handler) as http:
            session = GoogleOAuthSession(oauth_config, _fresh_blob(), http)
            with pytest.raises(TokenRefreshError, match="500") as exc_info:
                await session.refresh()
        assert not isinstance(exc_info.value, TokenRevokedError)

    async def test_refresh_without_refresh_token(self, oauth_config, mock_http):
        async with mock_http(lambda request: _token_response()) as http:
            session = GoogleOAuthSession(oauth_config, CredentialBlob(access_token="a"), http)
            with pytest.raises(TokenRefreshError, match="No refresh token"):
                await session.refresh()

    async def test_close_clears_callback(self, oauth_config, mock_http):
        notified: list[CredentialBlob] = []
        async with mock_http(lambda request: _token_response()) as http:
            session = GoogleOAuthSession(
                oauth_config, _fresh_blob(), http, on_tokens=notified.append
            )
            session.close()
            await session.refresh()
        assert notified == []

    async def test_adopt_stored_keeps_newer_session_token(self, oauth_config, mock_http):
        async with mock_http(lambda request: _token_response()) as http:
            session = GoogleOAuthSession(oauth_config, _fresh_blob(expiry_date=0), http)
            await session.get_access_token()

            assert session.adopt_stored(_fresh_blob(expiry_date=0)) is False
            assert session.credentials.access_token == "access-2"

            later = _fresh_blob(access_token="access-3", expiry_date=now_ms() + 7_200_000)
            assert session.adopt_stored(later) is True
            assert session.credentials.access_token == "access-3"


# ============================================================================
# Calendar client
# ============================================================================


def _client(oauth_config, http, blob: CredentialBlob | None = None) -> GoogleCalendarClient:
    session = GoogleOAuthSession(oauth_config, blob or _fresh_blob(), http, alias="work")
    return GoogleCalendarClient("work", session, http)


class TestGoogleCalendarClient:
    async def test_list_calendars_follows_pages(self, oauth_config, mock_http):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.headers["Authorization"] == "Bearer access-1"
            if "pageToken" not in request.url.params:
                return httpx.Response(
                    200,
                    json={
                        "items": [{"id": "me@example.com", "accessRole": "owner", "primary": True}],
                        "nextPageToken": "page-2",
                    },
                )
            return httpx.Response(
                200, json={"items": [{"id": "team@example.com", "summary": "Team"}]}
            )

        async with mock_http(handler) as http:
            calendars = await _client(oauth_config, http).list_calendars()

        assert [cal.id for cal in calendars] == ["me@example.com", "team@example.com"]
        assert calendars[0].access_role == "owner"
        assert calendars[1].access_role == "reader"

    async def test_401_forces_one_refresh_and_retries(self, oauth_config, mock_http):
        api_tokens: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == TOKEN_HOST:
                return _token_response("access-2")
            api_tokens.append(request.headers["Authorization"])
            if len(api_tokens) == 1:
                return httpx.Response(401, json={"error": {"message": "Invalid Credentials"}})
            return httpx.Response(200, json={"id": "primary", "timeZone": "UTC"})

        async with mock_http(handler) as http:
            payload = await _client(oauth_config, http).get_calendar("primary")

        assert payload["timeZone"] == "UTC"
        assert api_tokens == ["Bearer access-1", "Bearer access-2"]

    async def test_rate_limit_honours_retry_after(self, oauth_config, mock_http):
        attempts = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal attempts
            attempts += 1
            if attempts < 3:
                return httpx.Response(429, headers={"Retry-After": "0"})
            return httpx.Response(200, json={"items": []})

        async with mock_http(handler) as http:
            assert await _client(oauth_config, http).list_calendars() == []
        assert attempts == 3

    async def test_rate_limit_gives_up_after_three_retries(self, oauth_config, mock_http):
        attempts = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal attempts
            attempts += 1
            return httpx.Response(503, headers={"Retry-After": "0"}, text="unavailable")

        async with mock_http(handler) as http:
            with pytest.raises(CalendarApiError) as exc_info:
                await _client(oauth_config, http).list_calendars()
        assert exc_info.value.status_code == 503
        assert attempts == 4

    async def test_api_error_message_is_redacted(self, oauth_config, mock_http):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                403, json={"error": {"message": "denied for access_token=ya29.leaked"}}
            )

        async with mock_http(handler) as http:
            with pytest.raises(CalendarApiError) as exc_info:
                await _client(oauth_config, http).get_calendar("x@example.com")
        assert "ya29.leaked" not in str(exc_info.value)
        assert exc_info.value.status_code == 403

    async def test_list_events_parses_timed_and_all_day(self, oauth_config, mock_http):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["singleEvents"] == "true"
            assert request.url.params["timeMin"] == "2026-03-01T00:00:00Z"
            return httpx.Response(
                200,
                json={
                    "items": [
                        {
                            "id": "e1",
                            "summary": "Standup",
                            "start": {"dateTime": "2026-03-02T09:00:00Z"},
                            "end": {"dateTime": "2026-03-02T09:15:00Z"},
                            "attendees": [
                                {
                                    "email": "me@example.com",
                                    "self": True,
                                    "responseStatus": "declined",
                                }
                            ],
                        },
                        {
                            "id": "e2",
                            "summary": "Offsite",
                            "start": {"date": "2026-03-03"},
                            "end": {"date": "2026-03-04"},
                        },
                        {"id": "broken", "start": {}},
                    ]
                },
            )

        async with mock_http(handler) as http:
            events = await _client(oauth_config, http).list_events(
                "me@example.com",
                datetime(2026, 3, 1, tzinfo=UTC),
                datetime(2026, 3, 8, tzinfo=UTC),
            )

        assert [event.event_id for event in events] == ["e1", "e2"]
        assert events[0].self_response_status == "declined"
        assert events[1].all_day is True
        assert events[1].duration.days == 1

    async def test_get_user_email_prefers_token_info(self, oauth_config, mock_http):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/tokeninfo"
            return httpx.Response(200, json={"email": "me@example.com"})

        async with mock_http(handler) as http:
            assert await _client(oauth_config, http).get_user_email() == "me@example.com"

    async def test_get_user_email_falls_back_to_primary_calendar(self, oauth_config, mock_http):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/tokeninfo":
                return httpx.Response(400, json={"error": "invalid_token"})
            return httpx.Response(200, json={"id": "me@example.com"})

        async with mock_http(handler) as http:
            assert await _client(oauth_config, http).get_user_email() == "me@example.com"

    async def test_get_user_email_unknown(self, oauth_config, mock_http):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, text="boom")

        async with mock_http(handler) as http:
            assert await _client(oauth_config, http).get_user_email() == "unknown"

    async def test_delete_treats_404_as_success(self, oauth_config, mock_http):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "DELETE"
            return httpx.Response(404)

        async with mock_http(handler) as http:
            await _client(oauth_config, http).delete_event("me@example.com", "gone")

    async def test_insert_event_posts_body(self, oauth_config, mock_http):
        bodies: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(
                200,
                json={
                    "id": "created",
                    "summary": "Lunch",
                    "start": {"dateTime": "2026-03-02T12:00:00Z"},
                    "end": {"dateTime": "2026-03-02T13:00:00Z"},
                },
            )

        body = {
            "summary": "Lunch",
            "start": {"dateTime": "2026-03-02T12:00:00+00:00"},
            "end": {"dateTime": "2026-03-02T13:00:00+00:00"},
        }
        async with mock_http(handler) as http:
            event = await _client(oauth_config, http).insert_event("me@example.com", body)

        assert event.event_id == "created"
        assert bodies == [body]


def test_safe_error_message_handles_oauth_error_shape():
    response = httpx.Response(400, json={"error": "invalid_grant", "error_description": "Bad"})
    assert safe_google_error_message(response) == "invalid_grant: Bad"
