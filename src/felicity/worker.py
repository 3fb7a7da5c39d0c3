"""Periodic polling of all battery packs into an in-memory cache."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time

from felicity._constants import DEFAULT_POLL_INTERVAL
from felicity.client import Client
from felicity.exceptions import FelicityError, NotAuthenticated, SnapshotError
from felicity.snapshot import CacheEntry, derive_entry

logger = logging.getLogger(__name__)

# Consecutive aborted cycles before failures are logged as errors.
FAILURE_ALERT_THRESHOLD = 5


class Poller:
    """Polls every device on a fixed interval and keeps the latest summary.

    The cache is written only by :meth:`run_cycle` and read through
    :meth:`get_cache`.  Devices are fetched one after another; a device
    that fails keeps its previous entry, and entries are never removed.

    Example::

        poller = Poller(client, interval=30)
        poller.start()
        ...
        entries = poller.get_cache()
        await poller.stop()
    """

    def __init__(self, client: Client, interval: float = DEFAULT_POLL_INTERVAL) -> None:
        if interval <= 0:
            raise ValueError(f"Poll interval must be positive, got {interval}.")
        self._client = client
        self._interval = interval
        self._cache: dict[str, CacheEntry] = {}
        self._cycle_running = False
        self._ready = False
        self._consecutive_failures = 0
        self._task: asyncio.Task[None] | None = None

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def ready(self) -> bool:
        """True once a cycle has completed (even with no devices)."""
        return self._ready

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def get_cache(self) -> list[CacheEntry]:
        """Point-in-time copy of every cached entry, in first-seen order."""
        return list(self._cache.values())

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> bool:
        """Run one session → directory → snapshots cycle.

        Returns ``True`` if the cycle completed, ``False`` if it was
        aborted or another cycle was already in progress.
        """
        if self._cycle_running:
            logger.debug("Poll cycle already in progress; skipping")
            return False
        self._cycle_running = True
        try:
            return await self._cycle()
        finally:
            self._cycle_running = False

    async def _cycle(self) -> bool:
        try:
            await self._client.sessions.ensure_valid()
            device_sns = await self._client.list_devices()
        except FelicityError as e:
            self._record_failure(e)
            return False

        updated = 0
        for sn in device_sns:
            try:
                snapshot = await self._client.fetch_snapshot(sn)
            except SnapshotError as e:
                logger.warning("Keeping previous data for %s: %s", sn, e)
                continue
            except NotAuthenticated as e:
                # Session expired mid-cycle; the rest waits for the next login.
                self._record_failure(e)
                return False
            self._cache[sn] = derive_entry(sn, snapshot)
            updated += 1

        self._consecutive_failures = 0
        self._ready = True
        logger.debug("Poll cycle done: %d/%d device(s) updated", updated, len(device_sns))
        return True

    def _record_failure(self, error: Exception) -> None:
        self._consecutive_failures += 1
        level = (
            logging.ERROR
            if self._consecutive_failures >= FAILURE_ALERT_THRESHOLD
            else logging.WARNING
        )
        logger.log(
            level,
            "Poll cycle aborted (%d consecutive failure(s)): %s",
            self._consecutive_failures,
            error,
        )

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def start(self) -> asyncio.Task[None]:
        """Start polling: one cycle now, then one every :attr:`interval`.

        Calling it while already running returns the existing task.
        """
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run_loop())
        return self._task

    async def stop(self) -> None:
        """Cancel the polling loop and wait for it to finish."""
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def _run_loop(self) -> None:
        """Tick on a fixed schedule; ticks missed by a slow cycle are skipped."""
        next_tick = time.monotonic()
        while True:
            try:
                await self.run_cycle()
            except Exception:
                logger.exception("Unexpected error in poll cycle")
            next_tick += self._interval
            now = time.monotonic()
            if next_tick <= now:
                skipped = int((now - next_tick) // self._interval) + 1
                logger.debug("Poll cycle overran the interval; skipping %d tick(s)", skipped)
                next_tick += skipped * self._interval
            await asyncio.sleep(next_tick - now)
