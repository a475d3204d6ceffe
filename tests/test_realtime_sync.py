import asyncio

from opsdesk.core.config import Settings
from opsdesk.core.store import SyncedStore
from opsdesk.core.sync import RealtimeSync, SyncState
from opsdesk.db.base import BackendError
from opsdesk.db.memory import InMemoryDataService
from opsdesk.db.storage import InMemoryStorage

DEBOUNCE = 0.05
TABLES = ["sales", "expenses"]


class RefreshCounter:
    def __init__(self):
        self.times = []

    async def __call__(self):
        self.times.append(asyncio.get_running_loop().time())


def test_burst_of_events_collapses_into_one_refresh():
    async def scenario():
        service = InMemoryDataService()
        refresh = RefreshCounter()
        sync = RealtimeSync(service, refresh, TABLES, debounce_seconds=DEBOUNCE, poll_seconds=60)
        await sync.start()
        assert len(refresh.times) == 1

        loop = asyncio.get_running_loop()
        for _ in range(5):
            service.emit("sales", "INSERT")
            last_event = loop.time()
            await asyncio.sleep(0.01)
        await asyncio.sleep(DEBOUNCE * 3)
        await sync.stop()
        return refresh.times, last_event

    times, last_event = asyncio.run(scenario())
    assert len(times) == 2
    assert times[1] - last_event >= DEBOUNCE * 0.9


def test_separate_bursts_each_refresh_once():
    async def scenario():
        service = InMemoryDataService()
        refresh = RefreshCounter()
        sync = RealtimeSync(service, refresh, TABLES, debounce_seconds=DEBOUNCE, poll_seconds=60)
        await sync.start()
        for _ in range(2):
            service.emit("expenses")
            service.emit("expenses")
            await asyncio.sleep(DEBOUNCE * 3)
        await sync.stop()
        return len(refresh.times)

    assert asyncio.run(scenario()) == 3


def test_events_for_other_tables_are_ignored():
    async def scenario():
        service = InMemoryDataService()
        refresh = RefreshCounter()
        sync = RealtimeSync(service, refresh, TABLES, debounce_seconds=DEBOUNCE, poll_seconds=60)
        await sync.start()
        service.emit("unrelated")
        await asyncio.sleep(DEBOUNCE * 3)
        await sync.stop()
        return len(refresh.times)

    assert asyncio.run(scenario()) == 1


def test_subscription_failure_degrades_to_polling():
    async def scenario():
        service = InMemoryDataService()
        service.subscribe_error = BackendError("socket refused")
        refresh = RefreshCounter()
        sync = RealtimeSync(service, refresh, TABLES, debounce_seconds=DEBOUNCE, poll_seconds=0.03)
        await sync.start()
        state = sync.state
        await asyncio.sleep(0.1)
        await sync.stop()
        return state, len(refresh.times)

    state, refreshes = asyncio.run(scenario())
    assert state == SyncState.DEGRADED
    assert refreshes >= 3


def test_channel_error_keeps_polling():
    async def scenario():
        service = InMemoryDataService()
        refresh = RefreshCounter()
        sync = RealtimeSync(service, refresh, TABLES, debounce_seconds=DEBOUNCE, poll_seconds=60)
        await sync.start()
        assert sync.state == SyncState.SUBSCRIBED
        service.report_channel_error(BackendError("channel closed"))
        state = sync.state
        timers = sync.has_timers
        await sync.stop()
        return state, timers

    state, timers = asyncio.run(scenario())
    assert state == SyncState.DEGRADED
    assert timers is True


def test_stop_cancels_pending_debounce():
    async def scenario():
        service = InMemoryDataService()
        refresh = RefreshCounter()
        sync = RealtimeSync(service, refresh, TABLES, debounce_seconds=DEBOUNCE, poll_seconds=60)
        await sync.start()
        service.emit("sales")
        await sync.stop()
        await asyncio.sleep(DEBOUNCE * 3)
        return len(refresh.times), sync

    refreshes, sync = asyncio.run(scenario())
    assert refreshes == 1
    assert not sync.has_timers
    assert sync.state == SyncState.IDLE


def test_start_is_not_repeated_while_active():
    async def scenario():
        service = InMemoryDataService()
        refresh = RefreshCounter()
        sync = RealtimeSync(service, refresh, TABLES, debounce_seconds=DEBOUNCE, poll_seconds=60)
        await sync.start()
        await sync.start()
        subscriptions = len(service.subscriptions)
        await sync.stop()
        return subscriptions, len(refresh.times)

    assert asyncio.run(scenario()) == (1, 1)


def test_store_refreshes_after_remote_change_burst():
    service = InMemoryDataService({"users": [{"id": 5, "username": "alice", "password": "pw1"}]})
    config = Settings(STORAGE_PATH="", REFRESH_DEBOUNCE_SECONDS=DEBOUNCE, POLL_INTERVAL_SECONDS=60)
    store = SyncedStore(service, InMemoryStorage(), config=config)

    async def scenario():
        await store.login("alice", "pw1")
        before = service.calls_to("select", "sales")
        # a teammate writes three sales directly on the backing service
        for n in range(3):
            service.tables.setdefault("sales", []).append({"id": n + 1, "total": 100})
            service.emit("sales", "INSERT")
        await asyncio.sleep(DEBOUNCE * 3)
        after = service.calls_to("select", "sales")
        sales = store.collection("sales")
        await store.logout()
        return after - before, sales

    refreshes, sales = asyncio.run(scenario())
    assert refreshes == 1
    assert [s["id"] for s in sales] == [3, 2, 1]


def test_logout_tears_down_subscription_and_timers():
    service = InMemoryDataService({"users": [{"id": 5, "username": "alice", "password": "pw1"}]})
    config = Settings(STORAGE_PATH="", REFRESH_DEBOUNCE_SECONDS=DEBOUNCE)
    store = SyncedStore(service, InMemoryStorage(), config=config)

    async def scenario():
        for _ in range(3):
            await store.login("alice", "pw1")
            service.emit("sales")
            await store.logout()
        await asyncio.sleep(DEBOUNCE * 3)

    asyncio.run(scenario())
    assert service.subscriptions == []
    assert not store.sync.has_timers
    assert service.calls_to("subscribe") == 3


class GatedRefresh:
    """Refresh that blocks until the gate opens."""

    def __init__(self):
        self.gate = asyncio.Event()
        self.started = 0

    async def __call__(self):
        self.started += 1
        await self.gate.wait()


def test_stop_then_start_during_initial_refresh_leaves_one_session():
    async def scenario():
        service = InMemoryDataService()
        refresh = GatedRefresh()
        sync = RealtimeSync(service, refresh, TABLES, debounce_seconds=DEBOUNCE, poll_seconds=60)

        first = asyncio.ensure_future(sync.start())
        await asyncio.sleep(0)
        await sync.stop()
        second = asyncio.ensure_future(sync.start())
        await asyncio.sleep(0)
        refresh.gate.set()
        await asyncio.gather(first, second)
        live = len(service.subscriptions)

        await sync.stop()
        await asyncio.sleep(0)
        others = [t for t in asyncio.all_tasks() if t is not asyncio.current_task()]
        return live, service.subscriptions, sync.has_timers, others

    live, subscriptions, timers, others = asyncio.run(scenario())
    assert live == 1
    assert subscriptions == []
    assert not timers
    assert others == []


def test_slow_refresh_does_not_delay_poll_ticks():
    async def scenario():
        service = InMemoryDataService()
        starts = []

        async def slow_refresh():
            starts.append(asyncio.get_running_loop().time())
            await asyncio.sleep(0.1)

        sync = RealtimeSync(service, slow_refresh, TABLES, debounce_seconds=DEBOUNCE, poll_seconds=0.03)
        await sync.start()
        await asyncio.sleep(0.15)
        await sync.stop()
        await sync.cancel_pending()
        return starts

    starts = asyncio.run(scenario())
    # the initial refresh plus a tick roughly every 30 ms while earlier refreshes are still running
    assert len(starts) >= 4


def test_stop_leaves_running_refresh_and_cancel_pending_reaps_it():
    async def scenario():
        service = InMemoryDataService()
        refresh = GatedRefresh()
        refresh.gate.set()
        sync = RealtimeSync(service, refresh, TABLES, debounce_seconds=DEBOUNCE, poll_seconds=60)
        await sync.start()

        refresh.gate.clear()
        service.emit("sales")
        await asyncio.sleep(DEBOUNCE * 2)
        in_flight = sync.pending

        await sync.stop()
        after_stop = sync.pending
        await sync.cancel_pending()
        return in_flight, after_stop, sync.pending

    assert asyncio.run(scenario()) == (1, 1, 0)


def test_store_close_reaps_in_flight_refresh():
    service = InMemoryDataService({"users": [{"id": 5, "username": "alice", "password": "pw1"}]})
    config = Settings(STORAGE_PATH="", REFRESH_DEBOUNCE_SECONDS=DEBOUNCE, POLL_INTERVAL_SECONDS=60)
    store = SyncedStore(service, InMemoryStorage(), config=config)

    async def scenario():
        await store.login("alice", "pw1")
        gate = asyncio.Event()
        real_refresh = store.sync.refresh

        async def stalled_refresh():
            await gate.wait()
            await real_refresh()

        store.sync.refresh = stalled_refresh
        service.emit("sales")
        await asyncio.sleep(DEBOUNCE * 2)
        in_flight = store.sync.pending
        await store.close()
        others = [t for t in asyncio.all_tasks() if t is not asyncio.current_task()]
        return in_flight, store.sync.pending, others

    in_flight, pending, others = asyncio.run(scenario())
    assert in_flight == 1
    assert pending == 0
    assert others == []
