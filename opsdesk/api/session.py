from fastapi import APIRouter, Depends, HTTPException

from opsdesk.api.deps import get_store, require_user
from opsdesk.core.store import SyncedStore
from opsdesk.schemas.requests import (
    LoginRequest,
    PasswordChangeRequest,
    PreferencePayload,
    SessionResponse,
)

router = APIRouter()


def _session(store: SyncedStore) -> SessionResponse:
    user = store.user
    return SessionResponse(user=user, authenticated=user is not None)


@router.post("/session/login", response_model=SessionResponse)
async def login(request: LoginRequest, store: SyncedStore = Depends(get_store)):
    if not await store.login(request.username, request.password):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return _session(store)


@router.post("/session/logout", response_model=SessionResponse)
async def logout(store: SyncedStore = Depends(get_store)):
    await store.logout()
    return _session(store)


@router.get("/session", response_model=SessionResponse)
async def current_session(store: SyncedStore = Depends(get_store)):
    return _session(store)


@router.post("/session/password")
async def change_password(
    request: PasswordChangeRequest,
    store: SyncedStore = Depends(get_store),
    user=Depends(require_user),
):
    if not await store.change_password(request.current_password, request.new_password):
        raise HTTPException(status_code=400, detail="Password change rejected")
    return {"status": "success"}


@router.get("/preferences/dark-mode", response_model=PreferencePayload)
async def read_dark_mode(store: SyncedStore = Depends(get_store)):
    return PreferencePayload(enabled=store.dark_mode)


@router.put("/preferences/dark-mode", response_model=PreferencePayload)
async def write_dark_mode(payload: PreferencePayload, store: SyncedStore = Depends(get_store)):
    store.set_dark_mode(payload.enabled)
    return PreferencePayload(enabled=store.dark_mode)
