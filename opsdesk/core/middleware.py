from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from typing import Callable
import logging

from opsdesk.schemas.activity import ActivityType

logger = logging.getLogger(__name__)

ACTIVITY_TYPES = {
    "POST": ActivityType.SUCCESS,
    "PUT": ActivityType.UPDATE,
    "PATCH": ActivityType.UPDATE,
    "DELETE": ActivityType.ARCHIVE,
}
VERBS = {
    "POST": "created in",
    "PUT": "saved to",
    "PATCH": "updated in",
    "DELETE": "removed from",
}
# POST routes under /data that do not write records
NON_RECORD_PATHS = {"refresh", "sync-report"}


class ActivityMiddleware(BaseHTTPMiddleware):
    """Writes one activity log entry per successful record mutation under /data."""

    async def dispatch(self, request: Request, call_next: Callable):
        endpoint = request.url.path
        method = request.method

        response = await call_next(request)

        if method not in ACTIVITY_TYPES or not endpoint.startswith("/data/"):
            return response
        if not 200 <= response.status_code < 300:
            return response

        parts = endpoint.strip("/").split("/")
        collection = parts[1]
        if collection in NON_RECORD_PATHS or collection == "activities":
            return response

        store = getattr(request.app.state, "store", None)
        if store is None:
            return response

        if len(parts) > 2:
            msg = f"Record {parts[2]} {VERBS[method]} {collection}"
        elif method == "DELETE":
            msg = f"All records removed from {collection}"
        else:
            msg = f"Records {VERBS[method]} {collection}"

        logger.debug(f"Recording activity for {method} {endpoint}")
        await store.log_activity(msg, ACTIVITY_TYPES[method].value)
        return response
