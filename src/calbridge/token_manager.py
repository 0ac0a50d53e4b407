"""Credential lifecycle for every connected account.

The token manager is the only writer of the credential file.  Every mutation
(save, remove, a refreshed token, cached metadata from summaries) is a unit on
the shared :class:`SerializedWriteQueue` that re-reads the file before
merging, so concurrent writers for different aliases never lose each other's
changes.

Usage::

    manager = TokenManager.from_settings(load_settings())
    clients = await manager.load_all()
    work = await manager.get("work")
    for summary in await manager.list_summaries():
        print(summary.alias, summary.email, summary.status)
    await manager.close()
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

import httpx
from pydantic import ValidationError

from calbridge.accounts import (
    CACHE_FIELDS,
    DEFAULT_ALIAS,
    Account,
    AccountStatus,
    AccountSummary,
    CalendarSummary,
    CredentialBlob,
    account_status,
    normalize_alias,
    now_ms,
    sort_calendar_summaries,
)
from calbridge.client_factory import AccountClientFactory, ClientConfigSource
from calbridge.config import (
    DEFAULT_CALENDAR_CACHE_TTL_SECONDS,
    DEFAULT_FETCH_TIMEOUT_SECONDS,
    CalbridgeSettings,
)
from calbridge.core.logging import account_context
from calbridge.core.write_queue import SerializedWriteQueue
from calbridge.credential_store import CredentialStore
from calbridge.errors import (
    AccountNotFoundError,
    CalbridgeError,
    InvalidAliasError,
    InvalidCredentialsError,
    TokenRefreshError,
    TokenRevokedError,
)
from calbridge.google import GoogleCalendarClient, OAuthClientConfig

logger = logging.getLogger(__name__)

AccountsChangedCallback = Callable[[], None]


def _coerce_credentials(credentials: CredentialBlob | Mapping[str, Any]) -> CredentialBlob:
    if isinstance(credentials, CredentialBlob):
        blob = credentials
    else:
        try:
            blob = CredentialBlob.model_validate(dict(credentials))
        except ValidationError as exc:
            raise InvalidCredentialsError(
                f"Malformed credentials: {exc.error_count()} validation error(s)"
            ) from exc
    if not blob.has_minimum_fields():
        raise InvalidCredentialsError("Credentials need an access token or a refresh token")
    return blob


class TokenManager:
    """Loads, persists and refreshes account credentials.

    Parameters
    ----------
    store:
        The credential store; its queue serializes every write.
    client_config:
        OAuth client config (or a loader for it) used to build API clients.
    default_alias:
        Alias used when a caller asks for "the" account.
    calendar_cache_ttl:
        Seconds before cached calendar lists are re-fetched by summaries.
    fetch_timeout:
        Upper bound in seconds for each live network call made by summaries.
    """

    def __init__(
        self,
        store: CredentialStore,
        client_config: ClientConfigSource,
        *,
        default_alias: str = DEFAULT_ALIAS,
        calendar_cache_ttl: float = DEFAULT_CALENDAR_CACHE_TTL_SECONDS,
        fetch_timeout: float = DEFAULT_FETCH_TIMEOUT_SECONDS,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._store = store
        self._default_alias = normalize_alias(default_alias)
        self._calendar_cache_ttl_ms = int(calendar_cache_ttl * 1000)
        self._fetch_timeout = fetch_timeout
        self._factory = AccountClientFactory(
            client_config, self._on_tokens, http_client=http_client
        )
        self._pending_writes: set[asyncio.Task[None]] = set()
        self.on_accounts_changed: list[AccountsChangedCallback] = []

    @classmethod
    def from_settings(
        cls, settings: CalbridgeSettings, *, http_client: httpx.AsyncClient | None = None
    ) -> TokenManager:
        queue = SerializedWriteQueue(unit_timeout=settings.write_unit_timeout)
        store = CredentialStore(
            settings.token_path, queue=queue, legacy_path=settings.legacy_token_path
        )
        keys_path = settings.oauth_keys_path
        return cls(
            store,
            lambda: OAuthClientConfig.from_file(keys_path),
            default_alias=settings.default_alias,
            calendar_cache_ttl=settings.calendar_cache_ttl,
            fetch_timeout=settings.fetch_timeout,
            http_client=http_client,
        )

    @property
    def default_alias(self) -> str:
        return self._default_alias

    @property
    def token_path(self) -> Path:
        return self._store.path

    @property
    def store(self) -> CredentialStore:
        return self._store

    @property
    def factory(self) -> AccountClientFactory:
        return self._factory

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def _load_accounts(self) -> dict[str, Account]:
        raw = await self._store.load()
        accounts: dict[str, Account] = {}
        for alias, entry in sorted(raw.items()):
            try:
                accounts[alias] = Account.from_entry(alias, entry)
            except (InvalidAliasError, InvalidCredentialsError) as exc:
                logger.warning("Skipping stored account %r: %s", alias, exc)
        return accounts

    async def load_all(self) -> dict[str, GoogleCalendarClient]:
        """One client per valid stored account, reusing existing handles."""
        accounts = await self._load_accounts()

        for alias in self._factory.aliases():
            if alias not in accounts:
                await self._factory.discard(alias)

        return {
            alias: self._factory.get_or_create(alias, account.credentials)
            for alias, account in accounts.items()
        }

    async def get(self, alias: str) -> GoogleCalendarClient:
        """Client for *alias*.

        Raises:
            InvalidAliasError: before any file access, for a malformed alias.
            AccountNotFoundError: the alias is not stored.
        """
        normalized = normalize_alias(alias)
        clients = await self.load_all()
        client = clients.get(normalized)
        if client is None:
            raise AccountNotFoundError(normalized, clients)
        return client

    async def get_default(self) -> GoogleCalendarClient:
        return await self.get(self._default_alias)

    async def list_aliases(self) -> list[str]:
        return sorted(await self._load_accounts())

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def save(
        self,
        alias: str,
        credentials: CredentialBlob | Mapping[str, Any],
        email: str | None = None,
    ) -> None:
        """Store credentials for *alias*, keeping every cached field on disk."""
        normalized = normalize_alias(alias)
        blob = _coerce_credentials(credentials)
        stored: dict[str, Any] = {}

        def _merge(current: dict[str, Any]) -> dict[str, Any]:
            existing = current.get(normalized)
            existing = existing if isinstance(existing, dict) else {}
            entry = blob.model_dump(exclude_none=True)
            if not blob.refresh_token and existing.get("refresh_token"):
                entry["refresh_token"] = existing["refresh_token"]
            entry.update({key: existing[key] for key in CACHE_FIELDS if key in existing})
            if email:
                entry["cached_email"] = email
            current[normalized] = entry
            stored.update(entry)
            return current

        await self._store.update(_merge, name=f"save:{normalized}")
        logger.info("Saved credentials for account %s", normalized)

        client = self._factory.get(normalized)
        if client is not None:
            token_fields = {k: v for k, v in stored.items() if k not in CACHE_FIELDS}
            client.session.set_credentials(CredentialBlob.model_validate(token_fields))
        self._notify_accounts_changed()

    async def remove(self, alias: str) -> None:
        """Forget *alias*; the file is deleted when no account remains."""
        normalized = normalize_alias(alias)
        found = False
        available: list[str] = []

        def _drop(current: dict[str, Any]) -> dict[str, Any] | None:
            nonlocal found
            if normalized not in current:
                available.extend(current)
                return None
            found = True
            del current[normalized]
            return current

        await self._store.update(_drop, name=f"remove:{normalized}")
        if not found:
            raise AccountNotFoundError(normalized, available)

        await self._factory.discard(normalized)
        logger.info("Removed account %s", normalized)
        self._notify_accounts_changed()

    def _notify_accounts_changed(self) -> None:
        for callback in list(self.on_accounts_changed):
            callback()

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def _on_tokens(self, alias: str, credentials: CredentialBlob) -> None:
        """Refresh callback: persist the new blob for *alias* in the background."""
        task = asyncio.get_running_loop().create_task(
            self._persist_refreshed(alias, credentials), name=f"persist-tokens:{alias}"
        )
        self._pending_writes.add(task)
        task.add_done_callback(self._pending_writes.discard)

    async def _persist_refreshed(self, alias: str, credentials: CredentialBlob) -> None:
        fresh = credentials.model_dump(exclude_none=True)

        def _merge(current: dict[str, Any]) -> dict[str, Any] | None:
            entry = current.get(alias)
            if not isinstance(entry, dict):
                logger.warning(
                    "Account %s is no longer stored; dropping refreshed credentials", alias
                )
                return None
            previous_refresh = entry.get("refresh_token")
            entry.update(fresh)
            if not fresh.get("refresh_token") and previous_refresh:
                entry["refresh_token"] = previous_refresh
            return current

        with account_context(alias):
            try:
                await self._store.update(_merge, name=f"refresh:{alias}")
            except CalbridgeError as exc:
                logger.error("Could not persist refreshed credentials for %s: %s", alias, exc)

    async def wait_for_pending_writes(self) -> None:
        """Wait for background credential writes started by refreshes."""
        if self._pending_writes:
            await asyncio.gather(*list(self._pending_writes))
        await self._store.queue.drain()

    async def refresh_if_needed(self, alias: str) -> bool:
        """Refresh *alias* when its access token expires within five minutes.

        Returns False (with a logged reason) when the account cannot obtain a
        usable token.
        """
        client = await self.get(alias)
        session = client.session
        if not session.needs_refresh():
            return True
        if not session.credentials.refresh_token:
            logger.warning("Account %s has no refresh token; re-authentication required", alias)
            return False
        with account_context(client.alias):
            try:
                await session.refresh()
            except TokenRevokedError:
                logger.warning("Refresh token for account %s was revoked", client.alias)
                return False
            except TokenRefreshError as exc:
                logger.warning("Token refresh failed for account %s: %s", client.alias, exc)
                return False
        return True

    async def validate(self, alias: str) -> bool:
        """Whether *alias* is stored and has (or can obtain) a usable token."""
        try:
            return await self.refresh_if_needed(alias)
        except AccountNotFoundError:
            return False

    # ------------------------------------------------------------------
    # Summaries
    # ------------------------------------------------------------------

    async def list_summaries(self) -> list[AccountSummary]:
        """Alias, email, status and calendars for every stored account.

        Cached email and calendars are used while fresh.  Live data fetched
        here is persisted with a single merge that touches only the cache
        fields of accounts still on disk.
        """
        accounts = await self._load_accounts()
        results = await asyncio.gather(
            *(self._summarize(account) for account in accounts.values())
        )

        cache_updates = {
            summary.alias: updates for summary, updates in results if updates
        }
        if cache_updates:
            await self._store.update(
                lambda current: _merge_cache_fields(current, cache_updates),
                name="cache-summaries",
            )
        return [summary for summary, _ in results]

    async def _summarize(self, account: Account) -> tuple[AccountSummary, dict[str, Any]]:
        alias = account.alias
        client = self._factory.get_or_create(alias, account.credentials)
        credentials = account.credentials
        updates: dict[str, Any] = {}

        with account_context(alias):
            if credentials.refresh_token and client.session.needs_refresh():
                try:
                    credentials = await asyncio.wait_for(
                        client.session.refresh(), timeout=self._fetch_timeout
                    )
                except (TokenRefreshError, TimeoutError) as exc:
                    logger.warning("Could not refresh account %s: %s", alias, exc)

            status = account_status(credentials)
            email = account.cached_email
            calendars = account.cached_calendars

            if status is AccountStatus.ACTIVE:
                if not email or email == "unknown":
                    try:
                        fetched = await asyncio.wait_for(
                            client.get_user_email(), timeout=self._fetch_timeout
                        )
                    except (CalbridgeError, TimeoutError) as exc:
                        logger.warning("Could not fetch email for account %s: %s", alias, exc)
                    else:
                        if fetched != "unknown":
                            email = fetched
                            updates["cached_email"] = fetched

                if account.calendars_stale(self._calendar_cache_ttl_ms):
                    try:
                        listed = await asyncio.wait_for(
                            client.list_calendars(), timeout=self._fetch_timeout
                        )
                    except (CalbridgeError, TimeoutError) as exc:
                        logger.warning(
                            "Could not fetch calendars for account %s: %s", alias, exc
                        )
                    else:
                        calendars = sort_calendar_summaries(listed)
                        updates["cached_calendars"] = _dump_calendars(calendars)
                        updates["calendars_cached_at"] = now_ms()

        summary = AccountSummary(
            alias=alias,
            email=email or "unknown",
            status=status,
            calendars=list(calendars or []),
        )
        return summary, updates

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def close(self) -> None:
        await self.wait_for_pending_writes()
        await self._factory.close()


def _dump_calendars(calendars: list[CalendarSummary]) -> list[dict[str, Any]]:
    return [cal.model_dump(by_alias=True, exclude_none=True) for cal in calendars]


def _merge_cache_fields(
    current: dict[str, Any], updates: Mapping[str, Mapping[str, Any]]
) -> dict[str, Any] | None:
    changed = False
    for alias, fields in updates.items():
        entry = current.get(alias)
        if not isinstance(entry, dict):
            continue
        entry.update({key: value for key, value in fields.items() if key in CACHE_FIELDS})
        changed = True
    return current if changed else None
