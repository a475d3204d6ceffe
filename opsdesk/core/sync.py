import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Set

from opsdesk.db.base import DataService, Subscription

logger = logging.getLogger(__name__)


class SyncState(str, Enum):
    IDLE = "IDLE"
    SUBSCRIBED = "SUBSCRIBED"
    DEGRADED = "DEGRADED"


class RealtimeSync:
    """
    Keeps the snapshot fresh while a user is present.

    start(): one immediate refresh, one push-change subscription over every
    table, and a repeating poll that runs whatever happened to the
    subscription. Push events restart a debounce timer so a burst ends in a
    single refresh. stop() cancels both timers and closes the subscription.
    """

    def __init__(
        self,
        service: DataService,
        refresh: Callable[[], Awaitable[None]],
        tables: Iterable[str],
        debounce_seconds: float = 0.8,
        poll_seconds: float = 60,
    ):
        self.service = service
        self.refresh = refresh
        self.tables = list(tables)
        self.debounce_seconds = debounce_seconds
        self.poll_seconds = poll_seconds

        self.state = SyncState.IDLE
        self._active = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._subscription: Optional[Subscription] = None
        self._debounce: Optional[asyncio.TimerHandle] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._pending: Set[asyncio.Task] = set()
        # bumped by every start() and stop(); a start() that sees a newer value has been superseded
        self._generation = 0

    @property
    def active(self) -> bool:
        return self._active

    @property
    def has_timers(self) -> bool:
        return self._debounce is not None or self._poll_task is not None

    @property
    def pending(self) -> int:
        return len(self._pending)

    @property
    def subscription(self) -> Optional[Subscription]:
        return self._subscription

    async def start(self) -> None:
        if self._active:
            return
        self._active = True
        self._loop = asyncio.get_running_loop()
        self._generation += 1
        generation = self._generation

        await self.refresh()
        if generation != self._generation:
            return

        try:
            subscription = await self.service.subscribe(self.tables, self.notify, self._on_channel_error)
        except Exception as e:
            logger.warning(f"Realtime subscription failed, polling only: {e}")
            subscription = None

        if generation != self._generation:
            # stopped (and maybe restarted) while the channel was opening
            if subscription is not None:
                await self._close_subscription(subscription)
            return

        self._subscription = subscription
        if subscription is not None and self.state != SyncState.DEGRADED:
            self.state = SyncState.SUBSCRIBED
        elif subscription is None:
            self.state = SyncState.DEGRADED
        self._poll_task = self._loop.create_task(self._poll())
        logger.info(f"Sync started ({self.state.value})")

    async def stop(self) -> None:
        """Cancel both timers and close the channel. Refreshes already running are left to finish."""
        self._active = False
        self._generation += 1
        if self._debounce is not None:
            self._debounce.cancel()
            self._debounce = None
        if self._poll_task is not None:
            task, self._poll_task = self._poll_task, None
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._subscription is not None:
            subscription, self._subscription = self._subscription, None
            await self._close_subscription(subscription)
        if self.state != SyncState.IDLE:
            logger.info("Sync stopped")
        self.state = SyncState.IDLE

    async def cancel_pending(self) -> None:
        """Cancel refreshes started by the debounce or the poll and wait for them to unwind."""
        tasks = list(self._pending)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.debug(f"Cancelled {len(tasks)} in-flight refresh(es)")
        self._pending.clear()

    def notify(self, payload: Optional[Dict[str, Any]] = None) -> None:
        """Push-change callback: (re)arm the debounce timer."""
        if not self._active or self._loop is None:
            return
        if self._debounce is not None:
            self._debounce.cancel()
        self._debounce = self._loop.call_later(self.debounce_seconds, self._fire)

    def _fire(self) -> None:
        self._debounce = None
        if not self._active:
            return
        self._spawn_refresh()

    def _spawn_refresh(self) -> None:
        task = self._loop.create_task(self.refresh())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _poll(self) -> None:
        # ticks on a fixed cadence; a slow refresh does not push the next tick back
        while True:
            await asyncio.sleep(self.poll_seconds)
            self._spawn_refresh()

    def _on_channel_error(self, error: Optional[Exception] = None) -> None:
        if not self._active:
            return
        self.state = SyncState.DEGRADED
        logger.warning(f"Realtime channel error, polling only: {error}")

    async def _close_subscription(self, subscription: Subscription) -> None:
        try:
            await subscription.close()
        except Exception as e:
            logger.error(f"Closing realtime subscription failed: {e}")
