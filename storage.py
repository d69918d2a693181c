# storage.py
import json
import os
import threading
from pathlib import Path
from typing import Dict, List

from config import settings


def _json_bytes(records: list) -> bytes:
    return json.dumps(records, sort_keys=True, separators=(",", ":")).encode()


class JsonFileStore:
    """Key-value persistence for client-local collections.

    Each collection is one JSON file holding a list of records; `save`
    overwrites the whole collection atomically.
    """

    def __init__(self, base_path=None):
        self.base = Path(base_path or settings["client_storage_path"])
        self.base.mkdir(parents=True, exist_ok=True)

    def _path(self, collection: str) -> Path:
        return self.base / f"{collection}.json"

    def save(self, collection: str, records: List[dict]) -> None:
        dst = self._path(collection)
        tmp = self.base / f".{collection}.json.tmp"
        with open(tmp, "wb") as f:
            f.write(_json_bytes(records))
        # Atomic replace to avoid partial files
        os.replace(tmp, dst)

    def load(self, collection: str) -> List[dict]:
        path = self._path(collection)
        if not path.exists():
            return []
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)


class MemoryStore:
    """In-process store with the same save/load contract, used in tests."""

    def __init__(self):
        self._data: Dict[str, list] = {}
        self._lock = threading.RLock()

    def save(self, collection: str, records: List[dict]) -> None:
        with self._lock:
            self._data[collection] = json.loads(_json_bytes(records))

    def load(self, collection: str) -> List[dict]:
        with self._lock:
            return json.loads(_json_bytes(self._data.get(collection, [])))
