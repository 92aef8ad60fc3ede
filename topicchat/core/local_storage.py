"""Small key-value stores for client-side state that must survive restarts."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
import threading
from typing import Dict, Optional, Protocol

from topicchat.core.config import settings

logger = logging.getLogger(__name__)


def last_read_key(conversation_id: str) -> str:
    return f"last_read:{conversation_id}"


class KeyValueStorage(Protocol):
    def get_item(self, key: str) -> Optional[str]:
        ...

    def set_item(self, key: str, value: str) -> None:
        ...

    def remove_item(self, key: str) -> None:
        ...


class MemoryStorage:
    """Process-local storage; contents vanish with the process."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._data: Dict[str, str] = dict(initial or {})

    def get_item(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove_item(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStorage:
    """
    JSON document on disk holding string values.

    Writes go to a sibling temp file first and are swapped in with
    ``os.replace`` so a crash never leaves a half-written document.
    """

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()
        self._data: Dict[str, str] = {}
        if self._path.exists():
            try:
                loaded = json.loads(self._path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as exc:
                logger.warning("[LOCAL-STORAGE] Ignoring unreadable state file %s: %s", self._path, exc)
            else:
                if isinstance(loaded, dict):
                    self._data = {str(k): str(v) for k, v in loaded.items()}

    @property
    def path(self) -> Path:
        return self._path

    def get_item(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value
            self._flush()

    def remove_item(self, key: str) -> None:
        with self._lock:
            if self._data.pop(key, None) is not None:
                self._flush()

    def _flush(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(self._data, sort_keys=True), encoding="utf-8")
        os.replace(tmp_path, self._path)


def open_local_storage(path: Optional[str] = None) -> KeyValueStorage:
    """``JsonFileStorage`` at ``path`` (default ``settings.local_storage_path``); memory when the path is empty."""
    location = settings.local_storage_path if path is None else path
    if not location:
        return MemoryStorage()
    return JsonFileStorage(location)
