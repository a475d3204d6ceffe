from fastapi import APIRouter, Depends

from opsdesk.api.deps import get_store
from opsdesk.core.store import SyncedStore

router = APIRouter()

@router.get("/health")
async def health(store: SyncedStore = Depends(get_store)):
    return {
        "status": "ok",
        "sync_state": store.sync_state.value,
        "is_loading": store.is_loading,
        "authenticated": store.user is not None,
    }
