import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

# Column names on the backing service are the underscore form of the
# camel-case field names used by the console.

BULK_SUFFIX = "_bulk"

_UPPER = re.compile(r"[A-Z]")


def to_column_name(name: str) -> str:
    """stockMovements -> stock_movements. Underscores, digits and lower-case pass through."""
    return _UPPER.sub(lambda m: "_" + m.group(0).lower(), name)


def collection_name(key: str) -> str:
    """sales_bulk -> sales"""
    if key.endswith(BULK_SUFFIX):
        return key[: -len(BULK_SUFFIX)]
    return key


def table_name(collection: str) -> str:
    return to_column_name(collection_name(collection))


def map_record(
    record: Mapping[str, Any],
    sample: Optional[Mapping[str, Any]] = None,
    strip_id: bool = False,
) -> Dict[str, Any]:
    """
    Translate a record's keys into column names.

    When a sample row is given, only columns present on it (plus `id`) are
    kept. This is advisory filtering against schema drift, not validation:
    an empty collection has no sample and every key goes through.
    """
    row: Dict[str, Any] = {}
    for key, value in record.items():
        column = to_column_name(key)
        if sample is not None and column != "id" and column not in sample:
            continue
        row[column] = value
    if strip_id:
        row.pop("id", None)
    return row


def map_records(
    records: Union[Mapping[str, Any], Iterable[Mapping[str, Any]]],
    sample: Optional[Mapping[str, Any]] = None,
) -> List[Dict[str, Any]]:
    if isinstance(records, Mapping):
        records = [records]
    return [map_record(r, sample=sample) for r in records]
