from fastapi import APIRouter, Body, Depends, HTTPException
from typing import Any, Dict, List, Union
import logging

from opsdesk.api.deps import get_store, known_collection, require_admin, require_user
from opsdesk.core.store import SyncedStore
from opsdesk.schemas.requests import CollectionCount, MutationResult
from opsdesk.schemas.session import public_user

router = APIRouter()
logger = logging.getLogger(__name__)


def _result(ok: bool, collection: str) -> MutationResult:
    if not ok:
        raise HTTPException(status_code=502, detail=f"Backend write failed for '{collection}'")
    return MutationResult(success=True, collection=collection)


@router.get("/data")
async def read_snapshot(store: SyncedStore = Depends(get_store)):
    snapshot = store.data.model_dump(by_alias=True, mode="json")
    snapshot["users"] = [public_user(u) for u in snapshot["users"]]
    return snapshot


@router.get("/config/next-invoice-number")
async def next_invoice_number(store: SyncedStore = Depends(get_store)):
    return {
        "invoice_number": store.next_invoice_number(),
        "next_invoice_id": store.data.config.next_invoice_id,
    }


# Fixed paths first so they are not taken for collection names.
@router.post("/data/refresh")
async def refresh(store: SyncedStore = Depends(get_store)):
    await store.refresh_all()
    return {"status": "refreshed", "is_loading": store.is_loading}


@router.post("/data/sync-report", response_model=List[CollectionCount])
async def sync_report(store: SyncedStore = Depends(get_store), user=Depends(require_user)):
    return [CollectionCount(**row) for row in await store.sync_report()]


@router.get("/data/{collection}")
async def read_collection(collection: str = Depends(known_collection), store: SyncedStore = Depends(get_store)):
    rows = store.collection(collection)
    if collection == "users":
        rows = [public_user(u) for u in rows]
    return rows


@router.post("/data/{collection}", response_model=MutationResult)
async def insert_record(
    record: Dict[str, Any] = Body(...),
    collection: str = Depends(known_collection),
    store: SyncedStore = Depends(get_store),
    user=Depends(require_user),
):
    return _result(await store.insert_one(collection, record), collection)


@router.put("/data/{collection}", response_model=MutationResult)
async def upsert_records(
    records: Union[List[Dict[str, Any]], Dict[str, Any]] = Body(...),
    collection: str = Depends(known_collection),
    store: SyncedStore = Depends(get_store),
    user=Depends(require_user),
):
    return _result(await store.upsert_many(collection, records), collection)


@router.patch("/data/{collection}/{row_id}", response_model=MutationResult)
async def update_record(
    row_id: int,
    patch: Dict[str, Any] = Body(...),
    collection: str = Depends(known_collection),
    store: SyncedStore = Depends(get_store),
    user=Depends(require_user),
):
    return _result(await store.update_one(collection, row_id, patch), collection)


@router.delete("/data/{collection}/{row_id}", response_model=MutationResult)
async def delete_record(
    row_id: int,
    collection: str = Depends(known_collection),
    store: SyncedStore = Depends(get_store),
    user=Depends(require_user),
):
    return _result(await store.delete_one(collection, row_id), collection)


@router.delete("/data/{collection}", response_model=MutationResult)
async def clear_collection(
    collection: str = Depends(known_collection),
    store: SyncedStore = Depends(get_store),
    user=Depends(require_admin),
):
    logger.warning(f"Clearing every row of '{collection}' at the request of {user.get('username')}")
    return _result(await store.clear_all(collection), collection)
