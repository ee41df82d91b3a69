# storage/kv_backend.py
# ============================================================================
# UNPAID COLLECTION v1.0 — KEY-VALUE PERSISTENCE
# ============================================================================
# Synchronous, scope-keyed JSON persistence behind an interface so the
# pending store can move to encrypted or server-synced storage without
# touching the orchestrator.
# ============================================================================

import json
import os
import re
import tempfile
from abc import ABC, abstractmethod
from copy import deepcopy
from pathlib import Path
from typing import Any, List, Optional

from unpaid_collection.logging_config import get_logger

logger = get_logger("kv_backend")


class IKeyValueBackend(ABC):
    """Durable key-value primitive. Values are JSON-compatible."""

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        pass

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        pass

    @abstractmethod
    def keys(self, prefix: str = "") -> List[str]:
        pass


class InMemoryKeyValueBackend(IKeyValueBackend):
    """Process-local backend for tests and throwaway sessions"""

    def __init__(self):
        self._data: dict[str, Any] = {}

    def get(self, key: str) -> Optional[Any]:
        value = self._data.get(key)
        return deepcopy(value) if value is not None else None

    def set(self, key: str, value: Any) -> None:
        # Round-trip through JSON so the in-memory backend rejects what a
        # durable backend would reject.
        self._data[key] = json.loads(json.dumps(value, default=str))

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self, prefix: str = "") -> List[str]:
        return sorted(k for k in self._data if k.startswith(prefix))


_UNSAFE = re.compile(r"[^A-Za-z0-9_.\-]")


class JsonFileKeyValueBackend(IKeyValueBackend):
    """
    One JSON document per key inside a directory.

    Writes go to a temp file in the same directory, are fsynced, then
    renamed over the target, so readers see either the old or the new
    document and never a torn write.
    """

    SUFFIX = ".json"

    def __init__(self, directory: str):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.directory / f"{_UNSAFE.sub('_', key)}{self.SUFFIX}"

    def get(self, key: str) -> Optional[Any]:
        path = self._path(key)
        if not path.exists():
            return None
        with path.open("r", encoding="utf-8") as fh:
            document = json.load(fh)
        if not isinstance(document, dict):
            raise ValueError(f"unexpected document in {path.name}")
        return document.get("value")

    def set(self, key: str, value: Any) -> None:
        path = self._path(key)
        payload = json.dumps({"key": key, "value": value}, ensure_ascii=False, default=str)

        fd, tmp_path = tempfile.mkstemp(dir=self.directory, prefix=".tmp-", suffix=self.SUFFIX)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

        logger.debug("kv_written", key=key, path=str(path))

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass

    def keys(self, prefix: str = "") -> List[str]:
        found = []
        for path in self.directory.glob(f"*{self.SUFFIX}"):
            if path.name.startswith(".tmp-"):
                continue
            try:
                with path.open("r", encoding="utf-8") as fh:
                    key = json.load(fh).get("key")
            except (OSError, ValueError) as e:
                logger.warning("kv_unreadable", path=str(path), error=str(e))
                continue
            if key and key.startswith(prefix):
                found.append(key)
        return sorted(found)
