# Connection to the hosted relational data service (Supabase).
# No ORM: every query goes through the PostgREST builder.

import logging
from typing import Any, Dict, Iterable, List, Optional

from postgrest.types import CountMethod
from realtime.types import RealtimeSubscribeStates
from supabase import AsyncClient, acreate_client

from opsdesk.core.config import Settings
from opsdesk.db.base import (
    BackendError,
    ChangeCallback,
    DataService,
    ErrorCallback,
    Row,
    Subscription,
)
from opsdesk.db.memory import InMemoryDataService

logger = logging.getLogger(__name__)

CHANNEL_TOPIC = "opsdesk-sync"
_FAILED_STATES = (RealtimeSubscribeStates.CHANNEL_ERROR, RealtimeSubscribeStates.TIMED_OUT)


class SupabaseSubscription(Subscription):
    def __init__(self, client: AsyncClient, channel):
        self.client = client
        self.channel = channel

    async def close(self) -> None:
        if self.channel is None:
            return
        channel, self.channel = self.channel, None
        await self.client.remove_channel(channel)


class SupabaseDataService(DataService):
    def __init__(self, url: str, key: str):
        self.url = url
        self.key = key
        self.client: Optional[AsyncClient] = None
        logger.info(f"Data service configured for: {url}")

    async def connect(self) -> None:
        if self.client is None:
            self.client = await acreate_client(self.url, self.key)

    async def close(self) -> None:
        if self.client is None:
            return
        try:
            await self.client.remove_all_channels()
        finally:
            self.client = None

    def _table(self, table: str):
        if self.client is None:
            raise BackendError("Data service is not connected")
        return self.client.table(table)

    async def select(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = True,
        limit: Optional[int] = None,
    ) -> List[Row]:
        query = self._table(table).select("*")
        for column, value in (filters or {}).items():
            query = query.eq(column, value)
        if order_by:
            query = query.order(order_by, desc=descending)
        if limit is not None:
            query = query.limit(limit)
        response = await query.execute()
        return response.data or []

    async def insert(self, table: str, row: Row) -> List[Row]:
        response = await self._table(table).insert(row).execute()
        return response.data or []

    async def update(self, table: str, patch: Row, row_id: Any) -> List[Row]:
        response = await self._table(table).update(patch).eq("id", row_id).execute()
        return response.data or []

    async def upsert(self, table: str, rows: List[Row]) -> List[Row]:
        response = await self._table(table).upsert(rows).execute()
        return response.data or []

    async def delete(self, table: str, column: str, value: Any, negate: bool = False) -> List[Row]:
        query = self._table(table).delete()
        query = query.neq(column, value) if negate else query.eq(column, value)
        response = await query.execute()
        return response.data or []

    async def count(self, table: str) -> int:
        response = await self._table(table).select("*", count=CountMethod.exact, head=True).execute()
        return response.count or 0

    async def subscribe(
        self,
        tables: Iterable[str],
        on_change: ChangeCallback,
        on_error: ErrorCallback,
    ) -> Subscription:
        if self.client is None:
            raise BackendError("Data service is not connected")
        channel = self.client.channel(CHANNEL_TOPIC)
        for table in tables:
            channel.on_postgres_changes("*", schema="public", table=table, callback=on_change)

        def on_status(state, error=None):
            if state in _FAILED_STATES:
                on_error(error)

        await channel.subscribe(on_status)
        return SupabaseSubscription(self.client, channel)


async def create_data_service(config: Settings) -> DataService:
    if not config.SUPABASE_URL:
        logger.warning("SUPABASE_URL is not set. Falling back to the in-memory data service.")
        return InMemoryDataService()
    service = SupabaseDataService(config.SUPABASE_URL, config.SUPABASE_KEY)
    await service.connect()
    return service
