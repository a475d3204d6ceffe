import copy
import logging
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from opsdesk.db.base import (
    BackendError,
    ChangeCallback,
    DataService,
    ErrorCallback,
    Row,
    Subscription,
)

logger = logging.getLogger(__name__)


class InMemorySubscription(Subscription):
    def __init__(self, service: "InMemoryDataService", tables: Set[str],
                 on_change: ChangeCallback, on_error: ErrorCallback):
        self.service = service
        self.tables = tables
        self.on_change = on_change
        self.on_error = on_error
        self.closed = False

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self in self.service.subscriptions:
            self.service.subscriptions.remove(self)


class InMemoryDataService(DataService):
    """
    Process-local backing service. Every write is echoed to open
    subscriptions the way the hosted service pushes row changes.
    """

    def __init__(self, tables: Optional[Dict[str, List[Row]]] = None):
        self.tables: Dict[str, List[Row]] = {}
        self.subscriptions: List[InMemorySubscription] = []
        # (operation, table) for every call, in order
        self.calls: List[Tuple[str, str]] = []
        # (operation, table, payload) for every write as it was received
        self.payloads: List[Tuple[str, str, Any]] = []
        self.failures: Set[Tuple[str, Optional[str]]] = set()
        self.subscribe_error: Optional[Exception] = None
        for name, rows in (tables or {}).items():
            self.seed(name, rows)

    # ---------------- test hooks ---------------- #

    def seed(self, table: str, rows: Iterable[Row]) -> None:
        storage = self.tables.setdefault(table, [])
        for row in rows:
            record = copy.deepcopy(dict(row))
            if record.get("id") is None:
                record["id"] = self._next_id(table)
            storage.append(record)

    def fail(self, operation: str, table: Optional[str] = None) -> None:
        """Make `operation` raise, on one table or (table=None) on all of them."""
        self.failures.add((operation, table))

    def calls_to(self, operation: str, table: Optional[str] = None) -> int:
        return sum(1 for op, t in self.calls if op == operation and (table is None or t == table))

    def emit(self, table: str, event: str = "UPDATE", record: Optional[Row] = None) -> None:
        payload = {"table": table, "eventType": event, "new": record or {}, "old": {}}
        for sub in list(self.subscriptions):
            if table in sub.tables:
                sub.on_change(payload)

    def report_channel_error(self, error: Optional[Exception] = None) -> None:
        for sub in list(self.subscriptions):
            sub.on_error(error)

    # ---------------- internals ---------------- #

    def _enter(self, operation: str, table: str) -> List[Row]:
        self.calls.append((operation, table))
        if (operation, table) in self.failures or (operation, None) in self.failures:
            raise BackendError(f"{operation} on '{table}' rejected")
        return self.tables.setdefault(table, [])

    def _next_id(self, table: str) -> int:
        ids = [r["id"] for r in self.tables.get(table, []) if isinstance(r.get("id"), int)]
        return max(ids, default=0) + 1

    # ---------------- DataService ---------------- #

    async def select(self, table, filters=None, order_by=None, descending=True, limit=None):
        rows = self._enter("select", table)
        out = [r for r in rows if all(r.get(k) == v for k, v in (filters or {}).items())]
        if order_by:
            out.sort(key=lambda r: r.get(order_by) or 0, reverse=descending)
        if limit is not None:
            out = out[:limit]
        return copy.deepcopy(out)

    async def insert(self, table, row):
        rows = self._enter("insert", table)
        self.payloads.append(("insert", table, copy.deepcopy(row)))
        record = copy.deepcopy(dict(row))
        if record.get("id") is None:
            record["id"] = self._next_id(table)
        elif any(r.get("id") == record["id"] for r in rows):
            raise BackendError(f"duplicate key value violates unique constraint on '{table}'")
        rows.append(record)
        self.emit(table, "INSERT", record)
        return [copy.deepcopy(record)]

    async def update(self, table, patch, row_id):
        rows = self._enter("update", table)
        self.payloads.append(("update", table, copy.deepcopy(patch)))
        updated = []
        for r in rows:
            if r.get("id") == row_id:
                r.update(copy.deepcopy(patch))
                updated.append(copy.deepcopy(r))
        for r in updated:
            self.emit(table, "UPDATE", r)
        return updated

    async def upsert(self, table, rows):
        storage = self._enter("upsert", table)
        self.payloads.append(("upsert", table, copy.deepcopy(rows)))
        out = []
        for row in rows:
            record = copy.deepcopy(dict(row))
            existing = next((r for r in storage if record.get("id") is not None and r.get("id") == record["id"]), None)
            if existing is None:
                if record.get("id") is None:
                    record["id"] = self._next_id(table)
                storage.append(record)
                event = "INSERT"
            else:
                existing.update(record)
                record = existing
                event = "UPDATE"
            out.append(copy.deepcopy(record))
            self.emit(table, event, record)
        return out

    async def delete(self, table, column, value, negate=False):
        rows = self._enter("delete", table)
        self.payloads.append(("delete", table, {"column": column, "value": value, "negate": negate}))
        matches = [(r.get(column) == value) != negate for r in rows]
        removed = [r for r, hit in zip(rows, matches) if hit]
        self.tables[table] = [r for r, hit in zip(rows, matches) if not hit]
        for r in removed:
            self.emit(table, "DELETE", r)
        return removed

    async def count(self, table):
        return len(self._enter("count", table))

    async def subscribe(self, tables, on_change, on_error):
        self.calls.append(("subscribe", "*"))
        if self.subscribe_error is not None:
            raise self.subscribe_error
        sub = InMemorySubscription(self, set(tables), on_change, on_error)
        self.subscriptions.append(sub)
        logger.debug(f"In-memory subscription opened for {sorted(sub.tables)}")
        return sub
