from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, List, Optional

Row = Dict[str, Any]
ChangeCallback = Callable[[Dict[str, Any]], None]
ErrorCallback = Callable[[Optional[Exception]], None]


class BackendError(Exception):
    """Raised by a backing service when a query or write is rejected."""


class Subscription(ABC):
    @abstractmethod
    async def close(self) -> None:
        pass


class DataService(ABC):
    """
    Row-oriented collections keyed by an integer `id`.
    Implementations raise on failure; callers decide how to degrade.
    """

    @abstractmethod
    async def select(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = True,
        limit: Optional[int] = None,
    ) -> List[Row]:
        pass

    @abstractmethod
    async def insert(self, table: str, row: Row) -> List[Row]:
        pass

    @abstractmethod
    async def update(self, table: str, patch: Row, row_id: Any) -> List[Row]:
        pass

    @abstractmethod
    async def upsert(self, table: str, rows: List[Row]) -> List[Row]:
        pass

    @abstractmethod
    async def delete(self, table: str, column: str, value: Any, negate: bool = False) -> List[Row]:
        pass

    @abstractmethod
    async def count(self, table: str) -> int:
        pass

    @abstractmethod
    async def subscribe(
        self,
        tables: Iterable[str],
        on_change: ChangeCallback,
        on_error: ErrorCallback,
    ) -> Subscription:
        """Open one push-change feed for every event type on every row of `tables`."""

    async def close(self) -> None:
        pass
