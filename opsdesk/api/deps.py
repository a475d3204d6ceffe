from fastapi import Depends, HTTPException, Request
from typing import Any, Dict

from opsdesk.core.mapping import collection_name
from opsdesk.core.store import SyncedStore
from opsdesk.schemas.snapshot import COLLECTIONS


def get_store(request: Request) -> SyncedStore:
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise HTTPException(status_code=503, detail="Store not initialised")
    return store


def require_user(store: SyncedStore = Depends(get_store)) -> Dict[str, Any]:
    user = store.user
    if user is None:
        raise HTTPException(status_code=401, detail="Not signed in")
    return user


def require_admin(user: Dict[str, Any] = Depends(require_user)) -> Dict[str, Any]:
    # role comes from the client-held session; it is not verified server-side
    if user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Administrator role required")
    return user


def known_collection(collection: str) -> str:
    if collection_name(collection) not in COLLECTIONS:
        raise HTTPException(status_code=404, detail=f"Unknown collection '{collection}'")
    return collection
