"""File-backed credential store for all connected accounts.

One JSON file holds every account, keyed by alias.  The file is always in
exactly one of three states:

- absent: no accounts
- legacy: a single token blob at the top level (pre multi-account layout);
  migrated on first load to ``{"normal": <blob>}`` and persisted at once
- multi-account: ``{alias: entry, ...}``

Writes are atomic (temp file in the same directory, fsync, ``os.replace``)
and the file is created with owner-only permissions (``0o600``).

Every mutation is submitted to the shared :class:`SerializedWriteQueue` via
:meth:`CredentialStore.update`, which re-reads the file inside the queued
unit before applying the caller's change.  Plain reads may happen outside the
queue.

Usage::

    store = CredentialStore(path, queue=queue)
    accounts = await store.load()

    def add_work(current):
        current["work"] = {"access_token": "...", "refresh_token": "..."}
        return current

    await store.update(add_work, name="save:work")
"""

from __future__ import annotations

import contextlib
import copy
import json
import logging
import os
import tempfile
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

from calbridge.accounts import DEFAULT_ALIAS
from calbridge.core.write_queue import SerializedWriteQueue
from calbridge.errors import CredentialFileCorruptError

logger = logging.getLogger(__name__)

FILE_MODE = 0o600
_LEGACY_MARKER_KEYS = ("access_token", "refresh_token")

Mutator = Callable[[dict[str, Any]], dict[str, Any] | None]


def is_legacy_shape(data: Mapping[str, Any]) -> bool:
    """A legacy file carries token strings at the top level.

    ``access_token`` and ``refresh_token`` are also valid aliases, whose
    entries are objects, so only a string value marks the legacy shape.
    """
    return any(isinstance(data.get(key), str) for key in _LEGACY_MARKER_KEYS)


def migrate_legacy_shape(data: Mapping[str, Any]) -> dict[str, Any]:
    """Wrap a legacy blob under the implicit default alias.

    Multi-account data is returned as a copy, unchanged, so applying this
    twice never double-wraps.
    """
    if is_legacy_shape(data):
        return {DEFAULT_ALIAS: dict(data)}
    return dict(data)


class CredentialStore:
    """Owns the on-disk account state.

    Parameters
    ----------
    path:
        Location of the credential file.
    queue:
        The serialized write queue shared with the token manager.
    legacy_path:
        Optional pre-multi-account file location to migrate from when *path*
        does not exist yet.
    """

    def __init__(
        self,
        path: Path,
        *,
        queue: SerializedWriteQueue,
        legacy_path: Path | None = None,
    ) -> None:
        self._path = Path(path)
        self._queue = queue
        self._legacy_path = Path(legacy_path) if legacy_path is not None else None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def queue(self) -> SerializedWriteQueue:
        return self._queue

    def exists(self) -> bool:
        return self._path.exists()

    # ------------------------------------------------------------------
    # Synchronous file primitives
    # ------------------------------------------------------------------

    def read(self) -> dict[str, Any]:
        """Parse the file without migration.

        Returns ``{}`` when the file does not exist.

        Raises:
            CredentialFileCorruptError: if the content is not a JSON object.
        """
        try:
            content = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        try:
            parsed = json.loads(content)
        except json.JSONDecodeError as exc:
            raise CredentialFileCorruptError(
                f"Credential file {self._path} is not valid JSON: {exc.msg}"
            ) from exc
        if not isinstance(parsed, dict):
            raise CredentialFileCorruptError(
                f"Credential file {self._path} must contain a JSON object"
            )
        return parsed

    def write(self, data: Mapping[str, Any]) -> None:
        """Replace the file content atomically with owner-only permissions."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(data, indent=2, sort_keys=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self._path.name}.", suffix=".tmp", dir=self._path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(tmp_name, FILE_MODE)
            os.replace(tmp_name, self._path)
        except BaseException:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(tmp_name)
            raise

    def delete(self) -> bool:
        """Remove the file; returns False if it was already gone."""
        try:
            self._path.unlink()
        except FileNotFoundError:
            return False
        return True

    # ------------------------------------------------------------------
    # Queued operations
    # ------------------------------------------------------------------

    async def load(self) -> dict[str, Any]:
        """Return the multi-account mapping, recovering from bad on-disk state.

        - no file: tries the legacy location, else ``{}``
        - legacy shape: wrapped under ``normal`` and persisted through the queue
        - corrupted file: deleted through the queue, ``{}`` returned

        Never raises for a missing, legacy or corrupted file.
        """
        if not self.exists() and self._legacy_path is not None:
            await self.migrate_legacy_location()

        try:
            data = self.read()
        except CredentialFileCorruptError as exc:
            logger.warning("%s; removing it and starting with no accounts", exc)
            await self._queue.submit(self._delete_if_still_corrupt, name="remove-corrupt")
            return {}

        if is_legacy_shape(data):
            return await self._queue.submit(self._migrate_in_place, name="migrate-legacy")
        return data

    async def update(self, mutator: Mutator, *, name: str = "update") -> dict[str, Any]:
        """Apply *mutator* to freshly re-read state inside the write queue.

        *mutator* receives a private copy of the current multi-account mapping
        and returns the new mapping, or ``None`` to leave the file untouched.
        An empty mapping deletes the file.  Exceptions raised by *mutator*
        abort the unit without writing and propagate to the caller.

        Returns the state as it is on disk after the unit.
        """

        async def _unit() -> dict[str, Any]:
            current = self._read_for_update()
            updated = mutator(copy.deepcopy(current))
            if updated is None:
                return current
            if not updated:
                if self.delete():
                    logger.info("All accounts removed, credential file deleted")
                return {}
            self.write(updated)
            return updated

        return await self._queue.submit(_unit, name=name)

    async def migrate_legacy_location(self) -> bool:
        """Copy a legacy-location file to the secure path if the latter is absent.

        Returns True when a migration happened.  A malformed legacy file is
        skipped with a warning.
        """
        legacy_path = self._legacy_path
        if legacy_path is None:
            return False

        async def _unit() -> bool:
            if self.exists() or not legacy_path.exists():
                return False
            try:
                legacy = json.loads(legacy_path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as exc:
                logger.warning(
                    "Invalid legacy token file %s, skipping migration: %s", legacy_path, exc
                )
                return False
            if not isinstance(legacy, dict):
                logger.warning("Invalid legacy token format in %s, skipping migration", legacy_path)
                return False

            self.write(legacy)
            logger.info("Migrated tokens from legacy location %s to %s", legacy_path, self._path)
            try:
                legacy_path.unlink()
            except OSError as exc:
                logger.warning("Could not remove legacy token file %s: %s", legacy_path, exc)
            return True

        return await self._queue.submit(_unit, name="migrate-legacy-location")

    # ------------------------------------------------------------------
    # Unit bodies
    # ------------------------------------------------------------------

    def _read_for_update(self) -> dict[str, Any]:
        try:
            return migrate_legacy_shape(self.read())
        except CredentialFileCorruptError as exc:
            logger.warning("%s; it will be overwritten", exc)
            return {}

    async def _delete_if_still_corrupt(self) -> None:
        try:
            self.read()
        except CredentialFileCorruptError:
            self.delete()
            logger.warning("Removed corrupted credential file %s", self._path)

    async def _migrate_in_place(self) -> dict[str, Any]:
        try:
            raw = self.read()
        except CredentialFileCorruptError as exc:
            logger.warning("%s; removing it and starting with no accounts", exc)
            self.delete()
            return {}
        if not is_legacy_shape(raw):
            # Already migrated by an earlier unit.
            return raw
        migrated = migrate_legacy_shape(raw)
        self.write(migrated)
        logger.info(
            "Migrated single-account credential file to multi-account format under %r",
            DEFAULT_ALIAS,
        )
        return migrated
