import logging

from fastapi import FastAPI
from opsdesk.core.config import settings
from opsdesk.core.middleware import ActivityMiddleware
from opsdesk.core.store import SyncedStore
from opsdesk.db.session import create_data_service
from opsdesk.db.storage import create_client_storage

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.PROJECT_NAME)
app.add_middleware(ActivityMiddleware)

# Include routers
from opsdesk.api import health, data, session
app.include_router(health.router)
app.include_router(data.router)
app.include_router(session.router)

@app.on_event("startup")
async def startup_event():
    service = await create_data_service(settings)
    store = SyncedStore(service, create_client_storage(settings), config=settings)
    if await store.restore_session():
        logger.info(f"Session restored for {store.user.get('username')}")
    await store.import_legacy_snapshot()
    app.state.store = store

@app.on_event("shutdown")
async def shutdown_event():
    store = getattr(app.state, "store", None)
    if store is not None:
        await store.close()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
