from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import Any, Dict, List

from opsdesk.core.mapping import to_column_name

Record = Dict[str, Any]

# Collection names as the console addresses them.
COLLECTIONS = (
    "sales",
    "expenses",
    "projects",
    "clients",
    "suppliers",
    "inventory",
    "stockMovements",
    "interactions",
    "activities",
    "users",
)

# Returned newest-first by id.
ORDERED_COLLECTIONS = frozenset({
    "sales", "expenses", "projects", "stockMovements", "interactions", "activities",
})


class AppConfig(BaseModel):
    """Singleton config row. Stored as next_invoice_id / tax_rate / currency."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    next_invoice_id: int = 1001
    tax_rate: float = 16
    currency: str = "KSh"


class Snapshot(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    config: AppConfig = Field(default_factory=AppConfig)
    sales: List[Record] = Field(default_factory=list)
    expenses: List[Record] = Field(default_factory=list)
    projects: List[Record] = Field(default_factory=list)
    clients: List[Record] = Field(default_factory=list)
    suppliers: List[Record] = Field(default_factory=list)
    inventory: List[Record] = Field(default_factory=list)
    stock_movements: List[Record] = Field(default_factory=list)
    interactions: List[Record] = Field(default_factory=list)
    activities: List[Record] = Field(default_factory=list)
    users: List[Record] = Field(default_factory=list)

    def collection(self, name: str) -> List[Record]:
        if name not in COLLECTIONS:
            raise KeyError(name)
        return getattr(self, to_column_name(name))
