"""Account selection for tool-style operations.

Rules:

- an explicit alias is validated and must be stored
- without an alias, a single account is used implicitly; several accounts are
  ambiguous for writes, while reads fall back to the lexically first alias
- calendar targets are routed through the :class:`CalendarRegistry` so a
  write lands on an account that may write to the calendar
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from calbridge.accounts import normalize_alias
from calbridge.calendar_registry import CalendarRegistry
from calbridge.errors import (
    AccountNotFoundError,
    AmbiguousAccountError,
    CalendarResolutionError,
    NoAccountsError,
)
from calbridge.google import GoogleCalendarClient
from calbridge.models import Intent

AccountClients = Mapping[str, GoogleCalendarClient]


@dataclass(frozen=True)
class ResolvedTarget:
    client: GoogleCalendarClient
    alias: str
    calendar_id: str
    auto_selected: bool


def _lookup(alias: str, accounts: AccountClients) -> tuple[str, GoogleCalendarClient]:
    normalized = normalize_alias(alias)
    client = accounts.get(normalized)
    if client is None:
        raise AccountNotFoundError(normalized, accounts)
    return normalized, client


def select_client(alias: str | None, accounts: AccountClients) -> GoogleCalendarClient:
    """Client for *alias*, or the only account when no alias is given.

    Raises:
        NoAccountsError: no account is stored.
        AmbiguousAccountError: several accounts and no alias.
    """
    if alias is not None:
        return _lookup(alias, accounts)[1]
    if not accounts:
        raise NoAccountsError()
    if len(accounts) == 1:
        return next(iter(accounts.values()))
    raise AmbiguousAccountError(accounts)


def select_client_or_first(alias: str | None, accounts: AccountClients) -> GoogleCalendarClient:
    """Like :func:`select_client`, but reads default to the lexically first alias."""
    if alias is not None:
        return _lookup(alias, accounts)[1]
    if not accounts:
        raise NoAccountsError()
    return accounts[sorted(accounts)[0]]


def select_clients(
    aliases: str | Iterable[str] | None, accounts: AccountClients
) -> dict[str, GoogleCalendarClient]:
    """Several accounts at once; ``None`` or empty selects every account."""
    if not accounts:
        raise NoAccountsError()
    if aliases is None:
        return dict(sorted(accounts.items()))
    requested = [aliases] if isinstance(aliases, str) else list(aliases)
    if not requested:
        return dict(sorted(accounts.items()))

    selected: dict[str, GoogleCalendarClient] = {}
    for alias in requested:
        normalized, client = _lookup(alias, accounts)
        selected[normalized] = client
    return selected


async def resolve_target(
    registry: CalendarRegistry,
    alias: str | None,
    calendar: str,
    accounts: AccountClients,
    intent: Intent = "write",
) -> ResolvedTarget:
    """Pick the account and calendar id an operation should use.

    With an explicit alias the calendar is resolved against that account
    only.  Otherwise the registry chooses the calendar's preferred account.
    """
    if not accounts:
        raise NoAccountsError()

    access = "write" if intent == "write" else "read"

    if alias is not None:
        normalized, client = _lookup(alias, accounts)
        resolution = await registry.resolve_calendar_name_to_id(
            calendar, {normalized: client}, intent
        )
        if resolution is None:
            raise CalendarResolutionError(
                f'Calendar "{calendar}" not found with {access} access on account "{normalized}"'
            )
        return ResolvedTarget(
            client=client,
            alias=normalized,
            calendar_id=resolution.calendar_id,
            auto_selected=False,
        )

    resolution = await registry.resolve_calendar_name_to_id(calendar, accounts, intent)
    if resolution is None:
        raise CalendarResolutionError(
            f'No account has {access} access to calendar "{calendar}". '
            f"Available accounts: {', '.join(sorted(accounts))}"
        )
    return ResolvedTarget(
        client=accounts[resolution.account_alias],
        alias=resolution.account_alias,
        calendar_id=resolution.calendar_id,
        auto_selected=len(accounts) > 1,
    )
