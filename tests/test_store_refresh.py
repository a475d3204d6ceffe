import asyncio

from opsdesk.core.config import Settings
from opsdesk.core.store import SyncedStore
from opsdesk.db.memory import InMemoryDataService
from opsdesk.db.storage import InMemoryStorage


def make_store(service=None):
    service = service or InMemoryDataService()
    config = Settings(STORAGE_PATH="", REFRESH_DEBOUNCE_SECONDS=0.05)
    return SyncedStore(service, InMemoryStorage(), config=config), service


class SlowDataService(InMemoryDataService):
    async def select(self, *args, **kwargs):
        await asyncio.sleep(0.01)
        return await super().select(*args, **kwargs)


def test_collections_start_empty_with_default_config():
    store, _ = make_store()
    assert store.collection("sales") == []
    assert store.collection("stockMovements") == []
    assert store.data.config.next_invoice_id == 1001
    assert store.next_invoice_number() == "INV-1001"


def test_ordered_collections_come_back_newest_first():
    store, service = make_store()
    service.seed("sales", [{"id": 1}, {"id": 3}, {"id": 2}])
    service.seed("stock_movements", [{"id": 4, "sku": "A"}, {"id": 7, "sku": "B"}])
    service.seed("clients", [{"id": 2, "name": "B"}, {"id": 1, "name": "A"}])

    asyncio.run(store.refresh_all())

    assert [r["id"] for r in store.collection("sales")] == [3, 2, 1]
    assert [r["sku"] for r in store.collection("stockMovements")] == ["B", "A"]
    assert sorted(r["name"] for r in store.collection("clients")) == ["A", "B"]


def test_activities_capped_to_most_recent():
    store, service = make_store()
    service.seed("activities", [{"id": i, "msg": f"event {i}"} for i in range(1, 61)])

    asyncio.run(store.refresh_all())

    activities = store.collection("activities")
    assert len(activities) == 50
    assert activities[0]["id"] == 60
    assert activities[-1]["id"] == 11


def test_failed_query_yields_empty_collection_without_raising():
    store, service = make_store()
    service.seed("sales", [{"id": 1}])
    service.seed("expenses", [{"id": 1, "amount": 5}])
    asyncio.run(store.refresh_all())

    service.fail("select", "sales")
    asyncio.run(store.refresh_all())

    assert store.collection("sales") == []
    assert store.collection("expenses") == [{"id": 1, "amount": 5}]


def test_config_and_users_keep_previous_value_on_failure():
    store, service = make_store()
    service.seed("config", [{"id": 1, "next_invoice_id": 1042, "tax_rate": 8, "currency": "USD"}])
    service.seed("users", [{"id": 5, "username": "alice", "password": "pw1"}])
    asyncio.run(store.refresh_all())

    service.fail("select", "config")
    service.fail("select", "users")
    asyncio.run(store.refresh_all())

    assert store.data.config.next_invoice_id == 1042
    assert store.data.config.currency == "USD"
    assert store.collection("users")[0]["username"] == "alice"


def test_missing_config_row_keeps_previous_config():
    store, service = make_store()
    asyncio.run(store.refresh_all())
    assert store.data.config.tax_rate == 16
    assert store.data.config.currency == "KSh"


def test_refresh_replaces_snapshot_wholesale():
    store, service = make_store()
    service.seed("clients", [{"id": 1, "name": "A"}])
    asyncio.run(store.refresh_all())
    first = store.data

    service.tables["clients"] = [{"id": 2, "name": "B"}]
    asyncio.run(store.refresh_all())

    assert store.data is not first
    assert first.clients == [{"id": 1, "name": "A"}]
    assert store.collection("clients") == [{"id": 2, "name": "B"}]


def test_loading_flag_spans_the_refresh():
    store, _ = make_store(SlowDataService())

    async def scenario():
        task = asyncio.create_task(store.refresh_all())
        await asyncio.sleep(0)
        during = store.is_loading
        await task
        return during

    assert asyncio.run(scenario()) is True
    assert store.is_loading is False


def test_overlapping_refreshes_settle_on_backend_state():
    store, service = make_store(SlowDataService())
    service.seed("projects", [{"id": 1, "name": "Shopfront"}])

    async def scenario():
        await asyncio.gather(store.refresh_all(), store.refresh_all(), store.refresh_all())

    asyncio.run(scenario())
    assert store.collection("projects") == [{"id": 1, "name": "Shopfront"}]
    assert store.is_loading is False
