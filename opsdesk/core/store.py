import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Union

from pydantic import ValidationError

from opsdesk.core.config import Settings, settings
from opsdesk.core.mapping import collection_name, map_record, map_records, table_name, to_column_name
from opsdesk.core.sync import RealtimeSync, SyncState
from opsdesk.db.base import DataService, Row
from opsdesk.db.storage import DARK_MODE_KEY, LEGACY_DATA_KEY, SESSION_KEY, ClientStorage
from opsdesk.schemas.activity import ActivityLogEntry, ActivityType
from opsdesk.schemas.session import SessionEnvelope, public_user
from opsdesk.schemas.snapshot import COLLECTIONS, ORDERED_COLLECTIONS, AppConfig, Snapshot

logger = logging.getLogger(__name__)

# EMERGENCY ACCESS: admin/admin signs in as this synthetic identity when no
# user row matches. Kept for recovery; disable with EMERGENCY_ADMIN_ENABLED.
EMERGENCY_USERNAME = "admin"
EMERGENCY_PASSWORD = "admin"
EMERGENCY_ADMIN = {"id": 0, "username": "admin", "name": "System Administrator", "role": "admin"}

CONFIG_TABLE = "config"
USERS_TABLE = "users"
ORDER_KEY = "id"

SYNC_REPORT_COLLECTIONS = ("sales", "expenses", "projects", "clients", "suppliers", "inventory", "users")
LEGACY_COLLECTIONS = ("sales", "expenses", "projects", "clients", "inventory", "activities", "users")


def _now_ms() -> int:
    return int(time.time() * 1000)


class SyncedStore:
    """
    Owns the in-memory snapshot of every collection and the signed-in user.

    Every write goes to the backing service and is followed by a full
    re-read; nothing is patched locally. Overlapping refreshes are allowed
    and the last one to resolve is what consumers see.
    """

    def __init__(
        self,
        service: DataService,
        storage: ClientStorage,
        config: Settings = settings,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.service = service
        self.storage = storage
        self.config = config
        self._clock = clock or _now_ms

        self._snapshot = Snapshot(config=AppConfig(
            next_invoice_id=config.DEFAULT_NEXT_INVOICE_ID,
            tax_rate=config.DEFAULT_TAX_RATE,
            currency=config.DEFAULT_CURRENCY,
        ))
        self._user: Optional[Dict[str, Any]] = None
        self._dark_mode = False
        self.is_loading = False

        self._sync = RealtimeSync(
            service,
            self.refresh_all,
            [table_name(c) for c in COLLECTIONS],
            debounce_seconds=config.REFRESH_DEBOUNCE_SECONDS,
            poll_seconds=config.POLL_INTERVAL_SECONDS,
        )

    # ---------------- read access ---------------- #

    @property
    def data(self) -> Snapshot:
        return self._snapshot

    def collection(self, name: str) -> List[Row]:
        return self._snapshot.collection(name)

    @property
    def user(self) -> Optional[Dict[str, Any]]:
        return dict(self._user) if self._user is not None else None

    @property
    def sync(self) -> RealtimeSync:
        return self._sync

    @property
    def sync_state(self) -> SyncState:
        return self._sync.state

    @property
    def dark_mode(self) -> bool:
        return self._dark_mode

    def next_invoice_number(self) -> str:
        return f"INV-{self._snapshot.config.next_invoice_id}"

    # ---------------- fetch / refresh ---------------- #

    async def refresh_all(self) -> None:
        """Re-read every collection and publish them together. Never raises."""
        self.is_loading = True
        try:
            previous = self._snapshot
            config_row, *results = await asyncio.gather(
                self._fetch_config(),
                *(self._fetch(name) for name in COLLECTIONS),
            )

            collections: Dict[str, List[Row]] = {}
            for name, rows in zip(COLLECTIONS, results):
                if rows is None:
                    rows = list(previous.users) if name == "users" else []
                collections[to_column_name(name)] = rows

            config = previous.config
            if config_row:
                try:
                    config = AppConfig.model_validate(config_row)
                except ValidationError as e:
                    logger.error(f"Config row rejected, keeping previous: {e}")

            self._snapshot = Snapshot(config=config, **collections)
        finally:
            self.is_loading = False

    async def _fetch(self, name: str) -> Optional[List[Row]]:
        order_by = ORDER_KEY if name in ORDERED_COLLECTIONS else None
        limit = self.config.ACTIVITY_LIMIT if name == "activities" else None
        try:
            return await self.service.select(table_name(name), order_by=order_by, limit=limit)
        except Exception as e:
            logger.error(f"Fetch error ({name}): {e}")
            return None

    async def _fetch_config(self) -> Optional[Row]:
        try:
            rows = await self.service.select(CONFIG_TABLE, limit=1)
        except Exception as e:
            logger.error(f"Fetch error (config): {e}")
            return None
        return rows[0] if rows else None

    # ---------------- mutations ---------------- #

    async def _mutate(self, label: str, write: Callable[[], Awaitable[Any]]) -> bool:
        self.is_loading = True
        try:
            try:
                await write()
                ok = True
            except Exception as e:
                logger.error(f"{label} failed: {e}")
                ok = False
            await self.refresh_all()
            return ok
        finally:
            self.is_loading = False

    def _sample(self, collection: str) -> Optional[Row]:
        try:
            rows = self._snapshot.collection(collection)
        except KeyError:
            return None
        return rows[0] if rows else None

    async def insert_one(self, collection: str, record: Mapping[str, Any]) -> bool:
        """Insert one record; the backing service assigns its id. Sales advance the invoice counter first."""
        async def write():
            row = map_record(record, sample=self._sample(collection), strip_id=True)
            if collection == "sales":
                next_id = self._snapshot.config.next_invoice_id + 1
                await self.service.update(CONFIG_TABLE, {"next_invoice_id": next_id}, self.config.CONFIG_ROW_ID)
            await self.service.insert(table_name(collection), row)

        return await self._mutate(f"Insert ({collection})", write)

    async def upsert_many(
        self,
        collection_key: str,
        records: Union[Mapping[str, Any], Iterable[Mapping[str, Any]]],
    ) -> bool:
        """Full-record replace keyed by id. `collection_key` may carry the `_bulk` suffix."""
        async def write():
            rows = map_records(records, sample=self._sample(collection_name(collection_key)))
            if rows:
                await self.service.upsert(table_name(collection_key), rows)

        return await self._mutate(f"Upsert ({collection_key})", write)

    async def update_one(self, collection: str, row_id: Any, patch: Mapping[str, Any]) -> bool:
        async def write():
            await self.service.update(table_name(collection), map_record(patch), row_id)

        return await self._mutate(f"Update ({collection})", write)

    async def delete_one(self, collection: str, row_id: Any) -> bool:
        async def write():
            await self.service.delete(table_name(collection), "id", row_id)

        return await self._mutate(f"Delete ({collection})", write)

    async def clear_all(self, collection: str) -> bool:
        # PostgREST refuses an unfiltered delete
        async def write():
            await self.service.delete(table_name(collection), "id", self.config.IMPOSSIBLE_ID, negate=True)

        return await self._mutate(f"Clear ({collection})", write)

    async def log_activity(
        self,
        message: Union[str, Mapping[str, Any]],
        activity_type: str = ActivityType.ACTION.value,
    ) -> bool:
        """Append to the activity log without refreshing."""
        actor = (self._user or {}).get("username") or "system"
        if isinstance(message, Mapping):
            module = message.get("module")
            details = message.get("details") or message.get("msg") or ""
            msg = f"{module}: {details}" if module else str(details)
            activity_type = message.get("action") or activity_type
            actor = message.get("performed_by") or actor
        else:
            msg = message

        try:
            entry = ActivityLogEntry(user=str(actor), type=str(activity_type), msg=msg)
            await self.service.insert(table_name("activities"), entry.model_dump(mode="json"))
        except Exception as e:
            logger.error(f"Activity log failed: {e}")
            return False
        return True

    async def migrate_legacy_data(self, payload: Mapping[str, Any]) -> bool:
        """Push a legacy local snapshot into the backing service."""
        async def write():
            for name in LEGACY_COLLECTIONS:
                rows = payload.get(name) or []
                if rows:
                    await self.service.upsert(table_name(name), map_records(rows))
            legacy_config = payload.get("config")
            if legacy_config:
                row = AppConfig.model_validate(legacy_config).model_dump()
                row["id"] = self.config.CONFIG_ROW_ID
                await self.service.upsert(CONFIG_TABLE, [row])

        return await self._mutate("Legacy migration", write)

    async def import_legacy_snapshot(self) -> bool:
        raw = self.storage.get(LEGACY_DATA_KEY)
        if raw is None:
            return False
        try:
            existing = await self.service.count(table_name("sales"))
        except Exception as e:
            logger.error(f"Legacy import skipped, sales count failed: {e}")
            return False
        if existing:
            return False

        try:
            payload = json.loads(raw)
            if not isinstance(payload, dict):
                raise ValueError("legacy snapshot is not an object")
        except ValueError as e:
            logger.warning(f"Discarding unreadable legacy snapshot: {e}")
            self.storage.remove(LEGACY_DATA_KEY)
            return False

        ok = await self.migrate_legacy_data(payload)
        if ok:
            self.storage.remove(LEGACY_DATA_KEY)
            logger.info("Legacy snapshot migrated")
        return ok

    async def sync_report(self) -> List[Dict[str, Any]]:
        report = []
        for name in SYNC_REPORT_COLLECTIONS:
            try:
                count = await self.service.count(table_name(name))
            except Exception as e:
                logger.error(f"Count failed ({name}): {e}")
                count = None
            report.append({"collection": name, "count": count})
        await self.refresh_all()
        await self.log_activity("Database sync completed", ActivityType.SYNC.value)
        return report

    # ---------------- session ---------------- #

    async def login(self, username: str, password: str) -> bool:
        try:
            rows = await self.service.select(
                USERS_TABLE, filters={"username": username, "password": password}, limit=1
            )
            if rows:
                found = rows[0]
            elif self._is_emergency_login(username, password):
                logger.warning("Emergency administrator login used")
                found = dict(EMERGENCY_ADMIN)
            else:
                logger.info(f"Login rejected for '{username}'")
                return False
            await self._sign_in(found)
        except Exception as e:
            logger.error(f"Login failed for '{username}': {e}")
            return False
        return True

    def _is_emergency_login(self, username: str, password: str) -> bool:
        return (
            self.config.EMERGENCY_ADMIN_ENABLED
            and username == EMERGENCY_USERNAME
            and password == EMERGENCY_PASSWORD
        )

    async def _sign_in(self, user: Mapping[str, Any]) -> None:
        was_present = self._user is not None
        self._user = public_user(dict(user))
        self._persist_session()
        if not was_present:
            await self._sync.start()

    def _persist_session(self) -> None:
        envelope = SessionEnvelope(user=self._user, timestamp=self._clock())
        self.storage.set(SESSION_KEY, envelope.model_dump_json())

    async def logout(self) -> None:
        self._user = None
        try:
            self.storage.remove(SESSION_KEY)
        except Exception as e:
            logger.error(f"Could not clear stored session: {e}")
        await self._sync.stop()

    async def restore_session(self) -> bool:
        """Startup: load preferences and reinstate a stored, unexpired session."""
        self._load_preferences()
        raw = self.storage.get(SESSION_KEY)
        if raw is None:
            return False
        try:
            envelope = SessionEnvelope.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Discarding unreadable session: {e}")
            self.storage.remove(SESSION_KEY)
            return False

        ttl_ms = self.config.SESSION_TTL_HOURS * 60 * 60 * 1000
        if self._clock() - envelope.timestamp > ttl_ms:
            logger.info("Stored session expired")
            await self.logout()
            return False
        if not envelope.has_identity():
            logger.warning("Discarding session without a user identity")
            self.storage.remove(SESSION_KEY)
            return False

        was_present = self._user is not None
        self._user = public_user(envelope.user)
        if not was_present:
            await self._sync.start()
        return True

    async def change_password(self, current_password: str, new_password: str) -> bool:
        if self._user is None or self._user.get("id") is None:
            return False
        user_id = self._user["id"]
        try:
            rows = await self.service.select(
                USERS_TABLE, filters={"id": user_id, "password": current_password}, limit=1
            )
            if not rows:
                logger.info(f"Password change rejected for user {user_id}")
                return False
            await self.service.update(USERS_TABLE, {"password": new_password}, user_id)
            self._user = public_user(self._user)
            self._persist_session()
        except Exception as e:
            logger.error(f"Password change failed for user {user_id}: {e}")
            return False
        return True

    # ---------------- preferences / lifecycle ---------------- #

    def _load_preferences(self) -> None:
        raw = self.storage.get(DARK_MODE_KEY)
        if raw is None:
            return
        try:
            value = json.loads(raw)
            if not isinstance(value, bool):
                raise ValueError(f"expected a boolean, got {value!r}")
        except ValueError as e:
            logger.warning(f"Discarding unreadable preference: {e}")
            self.storage.remove(DARK_MODE_KEY)
            return
        self._dark_mode = value

    def set_dark_mode(self, enabled: bool) -> None:
        self._dark_mode = bool(enabled)
        self.storage.set(DARK_MODE_KEY, json.dumps(self._dark_mode))

    async def close(self) -> None:
        """Shutdown: stop syncing but keep the stored session for the next start."""
        await self._sync.stop()
        await self._sync.cancel_pending()
        try:
            await self.service.close()
        except Exception as e:
            logger.error(f"Closing data service failed: {e}")
