"""Google OAuth session and Calendar API client, one pair per account.

``GoogleOAuthSession`` owns an account's :class:`CredentialBlob` and refreshes
it against the Google token endpoint.  After every successful refresh the
registered ``on_tokens`` callback receives the merged blob; the token manager
uses it to persist refreshed credentials through the write queue.

``GoogleCalendarClient`` issues authenticated Calendar v3 requests.  A 401
triggers one forced refresh and retry; 429/503 responses are retried with
exponential backoff, honouring ``Retry-After``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any, cast
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from calbridge.accounts import CalendarSummary, CredentialBlob, now_ms
from calbridge.core.logging import redact_secrets
from calbridge.errors import (
    CalendarApiError,
    InvalidCredentialsError,
    TokenRefreshError,
    TokenRevokedError,
)
from calbridge.models import CalendarEvent, to_rfc3339

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_TOKENINFO_URL = "https://oauth2.googleapis.com/tokeninfo"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"

# Refresh this long before the recorded expiry.
REFRESH_SKEW_MS = 5 * 60 * 1000
DEFAULT_REQUEST_TIMEOUT_SECONDS = 30.0

RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0

MAX_PAGE_SIZE = 250

TokensCallback = Callable[[CredentialBlob], None]


class OAuthClientConfig(BaseModel):
    """OAuth client id/secret used for refresh-token exchange."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)
    redirect_uri: str | None = None

    @field_validator("client_id", "client_secret")
    @classmethod
    def _normalize_non_empty(cls, value: str, info: ValidationInfo) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be a non-empty string")
        return normalized

    def __repr__(self) -> str:
        return f"OAuthClientConfig(client_id={self.client_id!r}, client_secret=<REDACTED>)"

    @classmethod
    def from_json(cls, raw_value: str) -> OAuthClientConfig:
        """Parse a Google OAuth keys document (``installed``/``web`` nesting allowed)."""
        try:
            payload = json.loads(raw_value)
        except json.JSONDecodeError as exc:
            raise InvalidCredentialsError(
                f"OAuth keys file must be valid JSON: {exc.msg}"
            ) from exc

        if not isinstance(payload, dict):
            raise InvalidCredentialsError("OAuth keys file must decode to a JSON object")

        client_id = _extract_client_value(payload, "client_id")
        client_secret = _extract_client_value(payload, "client_secret")
        missing = sorted(
            key
            for key, value in (("client_id", client_id), ("client_secret", client_secret))
            if not isinstance(value, str) or not value.strip()
        )
        if missing:
            raise InvalidCredentialsError(
                f"OAuth keys file is missing required field(s): {', '.join(missing)}"
            )

        redirect_uris = _extract_client_value(payload, "redirect_uris")
        redirect_uri = None
        if isinstance(redirect_uris, list) and redirect_uris and isinstance(redirect_uris[0], str):
            redirect_uri = redirect_uris[0]
        return cls(client_id=client_id, client_secret=client_secret, redirect_uri=redirect_uri)

    @classmethod
    def from_file(cls, path: Path) -> OAuthClientConfig:
        try:
            raw_value = Path(path).read_text(encoding="utf-8")
        except OSError as exc:
            raise InvalidCredentialsError(f"Cannot read OAuth keys file {path}: {exc}") from exc
        return cls.from_json(raw_value)


def _extract_client_value(payload: dict[str, Any], key: str) -> Any:
    if key in payload:
        return payload[key]

    for nested_key in ("installed", "web"):
        nested = payload.get(nested_key)
        if isinstance(nested, dict) and key in nested:
            return nested[key]
    return None


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return 3600
    if isinstance(value, int | float):
        return int(value) if value > 0 else 3600
    return 3600


def _error_payload(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def safe_google_error_message(response: httpx.Response) -> str:
    """Short, single-line, redacted error text from a Google error response."""
    payload = _error_payload(response)
    text = None
    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                text = message
        elif isinstance(error_payload, str) and error_payload.strip():
            description = payload.get("error_description")
            text = f"{error_payload}: {description}" if description else error_payload

    if text is None:
        text = response.text.strip() or "Request failed without an error payload"
    return " ".join(redact_secrets(text).split())[:200]


class GoogleOAuthSession:
    """Access-token cache and refresh-token exchange for one account."""

    def __init__(
        self,
        client_config: OAuthClientConfig,
        credentials: CredentialBlob,
        http_client: httpx.AsyncClient,
        *,
        alias: str | None = None,
        on_tokens: TokensCallback | None = None,
    ) -> None:
        self._client_config = client_config
        self._credentials = credentials
        self._http_client = http_client
        self._alias = alias
        self._on_tokens = on_tokens
        self._refresh_lock = asyncio.Lock()

    @property
    def credentials(self) -> CredentialBlob:
        return self._credentials

    def set_credentials(self, credentials: CredentialBlob) -> None:
        self._credentials = credentials

    def adopt_stored(self, credentials: CredentialBlob) -> bool:
        """Take *credentials* read from disk unless ours expire later.

        A refresh updates this session before its background write reaches
        the file, so a reload in between sees the older token.
        """
        current = self._credentials.expiry_date
        stored = credentials.expiry_date
        if current is not None and stored is not None and stored < current:
            return False
        self._credentials = credentials
        return True

    @property
    def on_tokens(self) -> TokensCallback | None:
        return self._on_tokens

    @on_tokens.setter
    def on_tokens(self, callback: TokensCallback | None) -> None:
        self._on_tokens = callback

    def needs_refresh(self, *, at_ms: int | None = None) -> bool:
        return self._credentials.is_expired(skew_ms=REFRESH_SKEW_MS, at_ms=at_ms)

    async def get_access_token(self, *, force_refresh: bool = False) -> str:
        if not force_refresh and not self.needs_refresh():
            return cast(str, self._credentials.access_token)

        async with self._refresh_lock:
            if not force_refresh and not self.needs_refresh():
                return cast(str, self._credentials.access_token)

            credentials = self._credentials
            if not force_refresh and credentials.access_token and not credentials.refresh_token:
                # No way to renew; let the API decide whether it still works.
                return credentials.access_token

            refreshed = await self.refresh()
            return cast(str, refreshed.access_token)

    async def refresh(self) -> CredentialBlob:
        """Exchange the refresh token for a new access token.

        Raises:
            TokenRevokedError: the provider answered ``invalid_grant``.
            TokenRefreshError: any other failure.
        """
        refresh_token = self._credentials.refresh_token
        if not refresh_token:
            raise TokenRefreshError(
                "No refresh token available; re-authenticate the account", alias=self._alias
            )

        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data={
                    "client_id": self._client_config.client_id,
                    "client_secret": self._client_config.client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise TokenRefreshError(
                f"Google OAuth token refresh request failed: {redact_secrets(str(exc))}",
                alias=self._alias,
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            payload = _error_payload(response)
            if isinstance(payload, dict) and payload.get("error") == "invalid_grant":
                raise TokenRevokedError(
                    "Refresh token was revoked or expired; re-authenticate the account",
                    alias=self._alias,
                )
            raise TokenRefreshError(
                "Google OAuth token refresh failed "
                f"({response.status_code}): {safe_google_error_message(response)}",
                alias=self._alias,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise TokenRefreshError(
                "Google OAuth token endpoint returned invalid JSON", alias=self._alias
            ) from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise TokenRefreshError(
                "Google OAuth token response is missing a non-empty access_token",
                alias=self._alias,
            )

        expires_in = _coerce_expires_in_seconds(payload.get("expires_in"))
        fresh: dict[str, Any] = {
            "access_token": access_token.strip(),
            "expiry_date": now_ms() + expires_in * 1000,
        }
        for key in ("refresh_token", "token_type", "scope", "id_token"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                fresh[key] = value

        merged = self._credentials.merged_with(CredentialBlob.model_validate(fresh))
        self._credentials = merged
        logger.debug("Refreshed access token for account %s", self._alias)
        self._notify(merged)
        return merged

    def _notify(self, credentials: CredentialBlob) -> None:
        callback = self._on_tokens
        if callback is None:
            return
        try:
            callback(credentials)
        except Exception:
            logger.exception("Token refresh callback failed for account %s", self._alias)

    def close(self) -> None:
        self._on_tokens = None


class GoogleCalendarClient:
    """Authenticated Calendar v3 client for one account."""

    def __init__(
        self,
        alias: str,
        session: GoogleOAuthSession,
        http_client: httpx.AsyncClient,
        *,
        owns_http_client: bool = False,
    ) -> None:
        self._alias = alias
        self._session = session
        self._http_client = http_client
        self._owns_http_client = owns_http_client

    @classmethod
    def create(
        cls,
        alias: str,
        client_config: OAuthClientConfig,
        credentials: CredentialBlob,
        *,
        http_client: httpx.AsyncClient | None = None,
        on_tokens: TokensCallback | None = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ) -> GoogleCalendarClient:
        owns = http_client is None
        client = http_client or httpx.AsyncClient(timeout=timeout)
        session = GoogleOAuthSession(
            client_config, credentials, client, alias=alias, on_tokens=on_tokens
        )
        return cls(alias, session, client, owns_http_client=owns)

    @property
    def alias(self) -> str:
        return self._alias

    @property
    def session(self) -> GoogleOAuthSession:
        return self._session

    @property
    def credentials(self) -> CredentialBlob:
        return self._session.credentials

    # ------------------------------------------------------------------
    # Request helpers
    # ------------------------------------------------------------------

    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self._request_with_bearer(
            method=method, path=path, params=params, json_body=json_body
        )

        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarApiError(
                status_code=response.status_code,
                message=safe_google_error_message(response),
            )

        if response.status_code == 204:
            return {}

        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarApiError(
                status_code=response.status_code,
                message="Google Calendar API returned invalid JSON for a successful response",
            ) from exc

        if not isinstance(payload, dict):
            raise CalendarApiError(
                status_code=response.status_code,
                message="Google Calendar API returned an unexpected JSON payload shape",
            )
        return payload

    async def _request_with_bearer(
        self,
        *,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        normalized_path = path if path.startswith("/") else f"/{path}"
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}{normalized_path}"

        response = await self._request_once(
            method=method, url=url, params=params, json_body=json_body, force_refresh=False
        )

        if response.status_code == 401 and self._session.credentials.refresh_token:
            response = await self._request_once(
                method=method, url=url, params=params, json_body=json_body, force_refresh=True
            )

        retry = 0
        while (
            response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < RATE_LIMIT_MAX_RETRIES
        ):
            backoff = RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**retry)
            retry_after_header = response.headers.get("Retry-After")
            if retry_after_header is not None:
                try:
                    backoff = float(retry_after_header)
                except ValueError:
                    pass
            logger.warning(
                "Calendar API rate-limited for account %s (status=%d), "
                "retrying in %.1fs (attempt %d/%d)",
                self._alias,
                response.status_code,
                backoff,
                retry + 1,
                RATE_LIMIT_MAX_RETRIES,
            )
            await asyncio.sleep(backoff)
            response = await self._request_once(
                method=method, url=url, params=params, json_body=json_body, force_refresh=False
            )
            retry += 1

        return response

    async def _request_once(
        self,
        *,
        method: str,
        url: str,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
        force_refresh: bool,
    ) -> httpx.Response:
        access_token = await self._session.get_access_token(force_refresh=force_refresh)
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            raise CalendarApiError(
                status_code=0,
                message=f"request failed: {redact_secrets(str(exc))}",
            ) from exc

    # ------------------------------------------------------------------
    # Calendars
    # ------------------------------------------------------------------

    async def list_calendars(self) -> list[CalendarSummary]:
        """Every calendar-list entry visible to the account (all pages)."""
        calendars: list[CalendarSummary] = []
        page_token: str | None = None
        while True:
            params: dict[str, Any] = {"maxResults": MAX_PAGE_SIZE}
            if page_token:
                params["pageToken"] = page_token
            payload = await self._request_json(
                "GET", "/users/me/calendarList", params=params
            )
            items = payload.get("items") or []
            if not isinstance(items, list):
                raise CalendarApiError(
                    status_code=200, message="calendarList response has a non-list items field"
                )
            for item in items:
                if not isinstance(item, dict):
                    continue
                summary = CalendarSummary.from_api(item)
                if summary is not None:
                    calendars.append(summary)
            page_token = payload.get("nextPageToken")
            if not page_token:
                return calendars

    async def get_calendar(self, calendar_id: str) -> dict[str, Any]:
        return await self._request_json("GET", f"/calendars/{quote(calendar_id, safe='')}")

    async def get_user_email(self) -> str:
        """The account's email address, or ``"unknown"`` when it cannot be determined.

        Tries the token-info endpoint first, then the primary calendar's id.
        """
        try:
            access_token = await self._session.get_access_token()
            response = await self._http_client.get(
                GOOGLE_TOKENINFO_URL, params={"access_token": access_token}
            )
            if response.status_code == 200:
                payload = response.json()
                email = payload.get("email") if isinstance(payload, dict) else None
                if isinstance(email, str) and email:
                    return email
        except (httpx.HTTPError, ValueError, TokenRefreshError) as exc:
            logger.debug(
                "Token info lookup failed for account %s: %s",
                self._alias,
                redact_secrets(str(exc)),
            )

        try:
            primary = await self.get_calendar("primary")
        except (CalendarApiError, TokenRefreshError) as exc:
            logger.debug("Primary calendar lookup failed for account %s: %s", self._alias, exc)
            return "unknown"
        calendar_id = primary.get("id")
        if isinstance(calendar_id, str) and "@" in calendar_id:
            return calendar_id
        return "unknown"

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def list_events(
        self,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
        *,
        max_results: int = MAX_PAGE_SIZE,
        fallback_timezone: str | None = None,
    ) -> list[CalendarEvent]:
        """Single (expanded) events intersecting ``[time_min, time_max)``."""
        if max_results < 1:
            raise ValueError("max_results must be at least 1")

        path = f"/calendars/{quote(calendar_id, safe='')}/events"
        events: list[CalendarEvent] = []
        page_token: str | None = None
        while len(events) < max_results:
            params: dict[str, Any] = {
                "singleEvents": True,
                "showDeleted": False,
                "orderBy": "startTime",
                "timeMin": to_rfc3339(time_min),
                "timeMax": to_rfc3339(time_max),
                "maxResults": min(max_results - len(events), MAX_PAGE_SIZE),
            }
            if page_token:
                params["pageToken"] = page_token
            payload = await self._request_json("GET", path, params=params)
            items = payload.get("items") or []
            if not isinstance(items, list):
                raise CalendarApiError(
                    status_code=200, message="events response has a non-list items field"
                )
            for item in items:
                if not isinstance(item, dict):
                    continue
                event = CalendarEvent.from_google(item, fallback_timezone=fallback_timezone)
                if event is not None:
                    events.append(event)
            page_token = payload.get("nextPageToken")
            if not page_token:
                break
        return events[:max_results]

    async def get_event(self, calendar_id: str, event_id: str) -> CalendarEvent | None:
        path = f"/calendars/{quote(calendar_id, safe='')}/events/{quote(event_id, safe='')}"
        response = await self._request_with_bearer(method="GET", path=path)
        if response.status_code == 404:
            return None
        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarApiError(
                status_code=response.status_code,
                message=safe_google_error_message(response),
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarApiError(
                status_code=response.status_code,
                message="Google Calendar API returned invalid JSON for get_event",
            ) from exc
        if not isinstance(payload, dict):
            return None
        return CalendarEvent.from_google(payload)

    async def insert_event(self, calendar_id: str, body: dict[str, Any]) -> CalendarEvent:
        payload = await self._request_json(
            "POST", f"/calendars/{quote(calendar_id, safe='')}/events", json_body=body
        )
        return self._expect_event(payload, "insert")

    async def patch_event(
        self, calendar_id: str, event_id: str, body: dict[str, Any]
    ) -> CalendarEvent:
        path = f"/calendars/{quote(calendar_id, safe='')}/events/{quote(event_id, safe='')}"
        payload = await self._request_json("PATCH", path, json_body=body)
        return self._expect_event(payload, "patch")

    async def delete_event(self, calendar_id: str, event_id: str) -> None:
        """Delete an event; an already-deleted event (404) counts as success."""
        path = f"/calendars/{quote(calendar_id, safe='')}/events/{quote(event_id, safe='')}"
        response = await self._request_with_bearer(method="DELETE", path=path)
        if response.status_code == 404:
            logger.debug("delete_event: event %s already deleted", event_id)
            return
        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarApiError(
                status_code=response.status_code,
                message=safe_google_error_message(response),
            )

    @staticmethod
    def _expect_event(payload: dict[str, Any], operation: str) -> CalendarEvent:
        event = CalendarEvent.from_google(payload)
        if event is None:
            raise CalendarApiError(
                status_code=200,
                message=f"Google Calendar returned an unusable event after {operation}",
            )
        return event

    async def close(self) -> None:
        self._session.close()
        if self._owns_http_client:
            await self._http_client.aclose()
