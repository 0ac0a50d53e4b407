"""Per-account Google client handles.

The factory builds one :class:`GoogleCalendarClient` per alias and wires its
refresh notification to ``refresh_hook(alias, credentials)``.  Handles are
reused across loads; discarding a handle unregisters the callback first so a
late refresh can never write credentials for a removed account.
"""

from __future__ import annotations

import functools
import logging
from collections.abc import Callable

import httpx

from calbridge.accounts import CredentialBlob
from calbridge.google import (
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    GoogleCalendarClient,
    OAuthClientConfig,
)

logger = logging.getLogger(__name__)

RefreshHook = Callable[[str, CredentialBlob], None]
ClientConfigSource = OAuthClientConfig | Callable[[], OAuthClientConfig]


class AccountClientFactory:
    """Creates, caches and tears down per-account API clients.

    Parameters
    ----------
    client_config:
        The OAuth client config, or a zero-argument callable that loads it on
        first use (so a missing keys file only fails when a client is needed).
    refresh_hook:
        Called as ``refresh_hook(alias, credentials)`` after each refresh.
    http_client:
        Optional shared ``httpx.AsyncClient``; one is created (and owned) on
        demand otherwise.
    """

    def __init__(
        self,
        client_config: ClientConfigSource,
        refresh_hook: RefreshHook,
        *,
        http_client: httpx.AsyncClient | None = None,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self._client_config_source = client_config
        self._client_config: OAuthClientConfig | None = (
            client_config if isinstance(client_config, OAuthClientConfig) else None
        )
        self._refresh_hook = refresh_hook
        self._http_client = http_client
        self._owns_http_client = http_client is None
        self._request_timeout = request_timeout
        self._clients: dict[str, GoogleCalendarClient] = {}

    def _resolve_client_config(self) -> OAuthClientConfig:
        if self._client_config is None:
            source = self._client_config_source
            if not callable(source):
                raise TypeError(f"Unsupported OAuth client config source: {source!r}")
            self._client_config = source()
        return self._client_config

    def _shared_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._request_timeout)
        return self._http_client

    def get(self, alias: str) -> GoogleCalendarClient | None:
        return self._clients.get(alias)

    def get_or_create(self, alias: str, credentials: CredentialBlob) -> GoogleCalendarClient:
        """Return the handle for *alias*, updating its credentials if it already exists."""
        existing = self._clients.get(alias)
        if existing is not None:
            existing.session.adopt_stored(credentials)
            return existing

        client = GoogleCalendarClient.create(
            alias,
            self._resolve_client_config(),
            credentials,
            http_client=self._shared_http_client(),
            on_tokens=functools.partial(self._refresh_hook, alias),
        )
        self._clients[alias] = client
        logger.debug("Created API client for account %s", alias)
        return client

    async def discard(self, alias: str) -> bool:
        """Unregister the refresh callback, close and forget the handle."""
        client = self._clients.pop(alias, None)
        if client is None:
            return False
        await client.close()
        logger.debug("Discarded API client for account %s", alias)
        return True

    def aliases(self) -> list[str]:
        return sorted(self._clients)

    def clients(self) -> dict[str, GoogleCalendarClient]:
        return dict(self._clients)

    async def close(self) -> None:
        for alias in list(self._clients):
            await self.discard(alias)
        if self._owns_http_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
