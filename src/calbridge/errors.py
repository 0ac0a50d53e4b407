"""Error taxonomy shared by the credential, registry and conflict layers.

Every exception raised by calbridge derives from :class:`CalbridgeError`, so
callers exposing operations to an agent can map the whole family to a single
"request failed" surface while still branching on the concrete kind:

- not-found: :class:`AccountNotFoundError`, :class:`CalendarResolutionError`,
  :class:`NoAccountsError`
- invalid-input: :class:`InvalidAliasError`, :class:`InvalidCredentialsError`,
  :class:`AmbiguousAccountError`
- authorization: :class:`AuthorizationError` and its refresh subclasses
- corruption: :class:`CredentialFileCorruptError`
- remote API: :class:`CalendarApiError`
- write gate: :class:`DuplicateEventError`

Messages are safe to log: they never include token material.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from calbridge.models import DuplicateCandidate


class CalbridgeError(Exception):
    """Base class for all calbridge errors."""


# ---------------------------------------------------------------------------
# Invalid input
# ---------------------------------------------------------------------------


class InvalidAliasError(CalbridgeError, ValueError):
    """Raised when an account alias fails format or reserved-name validation."""


class InvalidCredentialsError(CalbridgeError, ValueError):
    """Raised when a credential blob is malformed or lacks required fields."""


class AmbiguousAccountError(CalbridgeError):
    """Raised when several accounts are available and none was specified."""

    def __init__(self, aliases: Iterable[str]) -> None:
        self.aliases = sorted(aliases)
        super().__init__(
            f"Multiple accounts available ({', '.join(self.aliases)}). "
            "You must specify the 'account' parameter to indicate which account to use."
        )


# ---------------------------------------------------------------------------
# Not found
# ---------------------------------------------------------------------------


class NoAccountsError(CalbridgeError):
    """Raised when an operation needs an account and none is authenticated."""

    def __init__(self) -> None:
        super().__init__("No authenticated accounts available. Please run authentication first.")


class AccountNotFoundError(CalbridgeError, LookupError):
    """Raised when an explicitly requested alias is not stored."""

    def __init__(self, alias: str, available: Iterable[str] = ()) -> None:
        self.alias = alias
        self.available = sorted(available)
        message = f'Account "{alias}" not found.'
        if self.available:
            message += f" Available accounts: {', '.join(self.available)}"
        else:
            message += " Please authenticate this account first."
        super().__init__(message)


class CalendarResolutionError(CalbridgeError, LookupError):
    """Raised when a calendar name or id cannot be routed to any account."""


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------


class AuthorizationError(CalbridgeError):
    """Base error for per-account authorization failures."""

    def __init__(self, message: str, *, alias: str | None = None) -> None:
        self.alias = alias
        super().__init__(message)


class TokenRefreshError(AuthorizationError):
    """Raised when a refresh-token exchange fails for a transient or unknown reason."""


class TokenRevokedError(TokenRefreshError):
    """Raised when the provider rejects the refresh token (``invalid_grant``)."""


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class CredentialFileCorruptError(CalbridgeError):
    """Raised when the on-disk credential file cannot be parsed."""


class WriteQueueTimeoutError(CalbridgeError, TimeoutError):
    """Raised to the submitter of a queued write unit that exceeded its time budget."""


# ---------------------------------------------------------------------------
# Remote API
# ---------------------------------------------------------------------------


class CalendarApiError(CalbridgeError):
    """Raised when a Google Calendar API request fails."""

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Google Calendar API request failed ({status_code}): {message}")


# ---------------------------------------------------------------------------
# Write gate
# ---------------------------------------------------------------------------


class DuplicateEventError(CalbridgeError):
    """Raised when a candidate event is a blocking-level duplicate of an existing event."""

    def __init__(self, duplicate: DuplicateCandidate) -> None:
        self.duplicate = duplicate
        percent = round(duplicate.similarity * 100)
        super().__init__(
            f"Duplicate event detected ({percent}% similar). "
            f'Event "{duplicate.event.title}" already exists. '
            "To create anyway, set allow_duplicates to true."
        )
