"""Serialized write queue for the credential file.

Every mutation of on-disk account state is submitted as an async unit of
work.  Units run one at a time in submission order (``asyncio.Lock`` wakes
waiters FIFO).  Each unit is expected to re-read the file itself right before
merging, so a unit always sees everything earlier units persisted.

A unit that fails or times out reports the error to its own submitter only;
the next unit runs regardless.

Metrics emitted:
    calbridge.write_queue.depth         (gauge: units waiting or running)
    calbridge.write_queue.failures_total (counter, label reason=error|timeout)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from calbridge.config import DEFAULT_WRITE_UNIT_TIMEOUT_SECONDS
from calbridge.core.metrics import CalbridgeMetrics
from calbridge.errors import WriteQueueTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

WriteUnit = Callable[[], Awaitable[T]]


class SerializedWriteQueue:
    """Run submitted async units strictly one at a time.

    Parameters
    ----------
    unit_timeout:
        Upper bound in seconds for a single unit.  A stuck unit is cancelled
        and its submitter receives :class:`WriteQueueTimeoutError`, so later
        writers are never starved.
    metrics:
        Optional metrics wrapper; a default one is created when omitted.
    """

    def __init__(
        self,
        *,
        unit_timeout: float = DEFAULT_WRITE_UNIT_TIMEOUT_SECONDS,
        metrics: CalbridgeMetrics | None = None,
    ) -> None:
        self._lock = asyncio.Lock()
        self._unit_timeout = unit_timeout
        self._metrics = metrics or CalbridgeMetrics()
        self._pending = 0

    @property
    def pending(self) -> int:
        """Units submitted and not yet finished (including the running one)."""
        return self._pending

    async def submit(self, unit: WriteUnit[T], *, name: str = "write") -> T:
        """Run *unit* after every previously submitted unit has finished.

        Returns the unit's result or re-raises its exception.
        """
        self._pending += 1
        self._metrics.write_queue_depth_inc()
        try:
            async with self._lock:
                try:
                    return await asyncio.wait_for(unit(), timeout=self._unit_timeout)
                except TimeoutError as exc:
                    self._metrics.write_queue_failure("timeout")
                    logger.error(
                        "Credential write unit %r exceeded %.1fs and was cancelled",
                        name,
                        self._unit_timeout,
                    )
                    raise WriteQueueTimeoutError(
                        f"Credential write {name!r} timed out after {self._unit_timeout:.1f}s"
                    ) from exc
                except Exception as exc:
                    self._metrics.write_queue_failure("error")
                    logger.error("Credential write unit %r failed: %s", name, exc)
                    raise
        finally:
            self._pending -= 1
            self._metrics.write_queue_depth_dec()

    async def drain(self) -> None:
        """Wait until every unit submitted so far has finished."""
        async with self._lock:
            return None
