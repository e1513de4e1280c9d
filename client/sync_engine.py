"""Device-side sync engine: when to sync, the push/pull cycle, lifecycle events."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol

from client.records import now_ms

if TYPE_CHECKING:
    from collections.abc import Awaitable, Sequence

    from client.api_client import SyncApiClient
    from client.local_store import LocalStore
    from client.records import CardRecord

logger = logging.getLogger(__name__)

BACKGROUND_SYNC_TAG = "sync-cards"

# Caps the backoff exponent so interval * 2**exponent stays a finite float
MAX_BACKOFF_EXPONENT = 32


class SyncState(StrEnum):
    IDLE = "idle"
    SYNCING = "syncing"


class SyncEventType(StrEnum):
    STARTED = "sync_started"
    COMPLETED = "sync_completed"
    FAILED = "sync_failed"


@dataclass(frozen=True)
class SyncEvent:
    """A lifecycle notification delivered to every listener."""

    type: SyncEventType
    uploaded: int = 0
    downloaded: int = 0
    error: Exception | None = None


@dataclass(frozen=True)
class SyncResult:
    """Outcome of one sync cycle. Push and pull fail independently.

    ``downloaded`` counts the records received from the server, including
    ones last-write-wins kept the local version of.
    """

    uploaded: int
    downloaded: int
    cursor: int
    push_error: Exception | None = None
    pull_error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.push_error is None and self.pull_error is None


@dataclass(frozen=True)
class SyncStatus:
    """Sync health as shown to the user, read without a network call."""

    unsynced_count: int
    last_sync: datetime | None
    cursor: int
    state: SyncState
    consecutive_failures: int


SyncListener = Callable[[SyncEvent], None]


class BackgroundScheduler(Protocol):
    """Host hook that wakes the app to sync while it is not in the foreground."""

    def register(self, tag: str, callback: Callable[[], Awaitable[object]]) -> None: ...


class SyncEngine:
    """Drives synchronization between a ``LocalStore`` and the sync API.

    At most one sync runs at a time: a trigger that arrives while a cycle is
    in flight is dropped, not queued. Triggers are the auto-sync timer,
    connectivity coming back, a local save and the host background hook.

    After consecutive failed cycles the timer delay doubles each time, up
    to ``backoff_max_seconds``; a successful cycle or regained
    connectivity resets it.
    """

    def __init__(
        self,
        store: LocalStore,
        api: SyncApiClient,
        *,
        backoff_max_seconds: float = 600.0,
    ) -> None:
        self.store = store
        self.api = api
        self.backoff_max_seconds = backoff_max_seconds
        self._state = SyncState.IDLE
        self._online = True
        self._failures = 0
        self._listeners: list[SyncListener] = []
        self._interval: float | None = None
        self._auto_task: asyncio.Task[None] | None = None
        self._wakeup = asyncio.Event()
        self._tasks: set[asyncio.Task[SyncResult | None]] = set()

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def online(self) -> bool:
        return self._online

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    # ── Listeners ────────────────────────────────────

    def add_sync_listener(self, callback: SyncListener) -> None:
        """Register an observer called with every ``SyncEvent``, in registration order."""
        self._listeners.append(callback)

    def remove_sync_listener(self, callback: SyncListener) -> None:
        with contextlib.suppress(ValueError):
            self._listeners.remove(callback)

    def _emit(self, event: SyncEvent) -> None:
        for callback in list(self._listeners):
            try:
                callback(event)
            except Exception:
                logger.exception("Sync listener %r failed on %s", callback, event.type)

    # ── Sync cycle ───────────────────────────────────

    async def sync_cards(self) -> SyncResult | None:
        """Run one push/pull cycle.

        Returns None without doing anything if a cycle is already running.
        Never raises: failures are logged and reported as ``sync_failed``.
        """
        if self._state is SyncState.SYNCING:
            logger.debug("Sync already in progress, trigger dropped")
            return None

        self._state = SyncState.SYNCING
        try:
            return await self._run_cycle()
        finally:
            self._state = SyncState.IDLE

    async def _run_cycle(self) -> SyncResult:
        self._emit(SyncEvent(SyncEventType.STARTED))

        uploaded = 0
        push_error: Exception | None = None
        try:
            uploaded = await self._push()
        except Exception as exc:
            logger.warning("Push failed: %s", exc)
            push_error = exc

        downloaded = 0
        pull_error: Exception | None = None
        try:
            downloaded = await self._pull()
        except Exception as exc:
            logger.warning("Pull failed: %s", exc)
            pull_error = exc

        cursor = 0
        try:
            cursor = await self.store.get_cursor()
            if push_error is None and pull_error is None:
                await self.store.record_sync_success(now_ms())
        except Exception as exc:
            logger.warning("Failed to update sync bookkeeping: %s", exc)
            pull_error = pull_error or exc

        result = SyncResult(
            uploaded=uploaded,
            downloaded=downloaded,
            cursor=cursor,
            push_error=push_error,
            pull_error=pull_error,
        )
        if result.ok:
            self._failures = 0
            logger.info("Sync completed: %d uploaded, %d downloaded", uploaded, downloaded)
            self._emit(
                SyncEvent(SyncEventType.COMPLETED, uploaded=uploaded, downloaded=downloaded)
            )
        else:
            self._failures += 1
            logger.error("Sync failed (%d in a row)", self._failures)
            self._emit(
                SyncEvent(
                    SyncEventType.FAILED,
                    uploaded=uploaded,
                    downloaded=downloaded,
                    error=push_error or pull_error,
                )
            )
        return result

    async def _push(self) -> int:
        pending = await self.store.get_unsynced_cards()
        if not pending:
            return 0
        _, receipt = await self.api.push(self.store.device_id, pending)
        await self.store.mark_synced(pending, receipt)
        return len(pending)

    async def _pull(self) -> int:
        since = await self.store.get_cursor()
        records = await self.api.pull(self.store.device_id, since)
        if not records:
            return 0
        applied = await self.store.merge_remote_cards(records)
        if applied < len(records):
            logger.info("Kept newer local versions of %d pulled card(s)", len(records) - applied)
        # Server timestamps only; an empty pull leaves the cursor alone so
        # records committed during the request are picked up next time.
        newest = max(r.updated_at for r in records if r.updated_at is not None)
        await self.store.set_cursor(newest)
        return len(records)

    # ── Triggers ─────────────────────────────────────

    def trigger_sync(self, reason: str = "manual") -> asyncio.Task[SyncResult | None] | None:
        """Schedule a sync cycle unless offline or one is already running."""
        if not self._online:
            logger.debug("Offline, %s trigger ignored", reason)
            return None
        if self._state is SyncState.SYNCING or any(not t.done() for t in self._tasks):
            logger.debug("Sync in flight, %s trigger dropped", reason)
            return None

        logger.debug("Sync triggered by %s", reason)
        task = asyncio.create_task(self.sync_cards())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def save_cards(self, records: Sequence[CardRecord]) -> list[CardRecord]:
        """Store cards locally, then trigger a sync. Saving never waits on the network."""
        stamped = await self.store.put_cards(records)
        self.trigger_sync("save")
        return stamped

    def set_online(self, online: bool) -> None:
        """Feed host connectivity changes; regaining connectivity syncs immediately."""
        was_online = self._online
        self._online = online
        if online and not was_online:
            logger.info("Connectivity restored")
            self._failures = 0
            self._wakeup.set()
            self.trigger_sync("connectivity")
        elif not online and was_online:
            logger.info("Connectivity lost, working offline")

    # ── Auto sync ────────────────────────────────────

    def next_delay(self) -> float:
        """Seconds until the next timer-driven sync, including backoff."""
        interval = self._interval or 0.0
        if self._failures == 0:
            return interval
        ceiling = max(self.backoff_max_seconds, interval)
        exponent = min(self._failures, MAX_BACKOFF_EXPONENT)
        return min(interval * 2**exponent, ceiling)

    def start_auto_sync(self, interval_seconds: float) -> asyncio.Task[None]:
        """Sync now and then every ``interval_seconds`` until stopped."""
        if interval_seconds <= 0:
            raise ValueError("Auto-sync interval must be positive")
        self._interval = interval_seconds
        if self._auto_task is not None and not self._auto_task.done():
            return self._auto_task
        self._auto_task = asyncio.create_task(self._auto_sync_loop())
        return self._auto_task

    async def _auto_sync_loop(self) -> None:
        while True:
            if self._online:
                await self.sync_cards()
            delay = self.next_delay()
            if self._failures:
                logger.info("Next sync attempt in %.0f s", delay)
            self._wakeup.clear()
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._wakeup.wait(), timeout=delay)

    async def stop_auto_sync(self) -> None:
        task, self._auto_task = self._auto_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def aclose(self) -> None:
        """Stop the timer and wait for triggered cycles to finish."""
        await self.stop_auto_sync()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def register_background_sync(self, scheduler: BackgroundScheduler | None) -> bool:
        """Ask the host for background sync opportunities. Failure is not fatal."""
        if scheduler is None:
            logger.info("Background sync not available on this host")
            return False
        try:
            scheduler.register(BACKGROUND_SYNC_TAG, self.sync_cards)
        except Exception as exc:
            logger.warning("Background sync registration failed: %s", exc)
            return False
        logger.info("Background sync registered")
        return True

    # ── Status ───────────────────────────────────────

    async def get_sync_status(self) -> SyncStatus:
        unsynced = await self.store.count_unsynced()
        last_success = await self.store.get_last_success()
        cursor = await self.store.get_cursor()
        return SyncStatus(
            unsynced_count=unsynced,
            last_sync=(
                datetime.fromtimestamp(last_success / 1000, tz=UTC)
                if last_success is not None
                else None
            ),
            cursor=cursor,
            state=self._state,
            consecutive_failures=self._failures,
        )
