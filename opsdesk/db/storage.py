from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional, Union
import json
import logging
import threading

from opsdesk.core.config import Settings

logger = logging.getLogger(__name__)

# Durable client-side slots. Values are JSON strings.
SESSION_KEY = "opsdesk_session"
DARK_MODE_KEY = "opsdesk_dark_mode"
LEGACY_DATA_KEY = "expense_system_data"


class ClientStorage(ABC):
    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    def remove(self, key: str) -> None:
        pass


class InMemoryStorage(ClientStorage):
    def __init__(self, slots: Optional[Dict[str, str]] = None):
        self._slots: Dict[str, str] = dict(slots or {})

    def get(self, key):
        return self._slots.get(key)

    def set(self, key, value):
        self._slots[key] = value

    def remove(self, key):
        self._slots.pop(key, None)


class JsonFileStorage(ClientStorage):
    """All slots in one JSON object on disk. A corrupt file reads as empty."""

    def __init__(self, filepath: Union[str, Path]):
        self.filepath = Path(filepath)
        self._lock = threading.Lock()
        self.filepath.parent.mkdir(parents=True, exist_ok=True)

    def _read(self) -> Dict[str, str]:
        try:
            with self.filepath.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError:
            logger.warning(f"Client storage at {self.filepath} is corrupt; starting empty")
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, str]) -> None:
        tmp = self.filepath.with_suffix(".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
        tmp.replace(self.filepath)

    def get(self, key):
        with self._lock:
            value = self._read().get(key)
        return value if isinstance(value, str) else None

    def set(self, key, value):
        with self._lock:
            data = self._read()
            data[key] = value
            self._write(data)

    def remove(self, key):
        with self._lock:
            data = self._read()
            if key in data:
                del data[key]
                self._write(data)


def create_client_storage(config: Settings) -> ClientStorage:
    if not config.STORAGE_PATH:
        return InMemoryStorage()
    return JsonFileStorage(config.STORAGE_PATH)
