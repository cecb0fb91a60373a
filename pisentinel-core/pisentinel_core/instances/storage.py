"""
Key-Value Storage
=================
Async key-value backends.

- ``MemoryStore``: volatile, process-lifetime (session-scoped secrets,
  master keys, session tokens).
- ``JsonFileStore``: durable, one JSON document on disk, written atomically.
"""

import asyncio
import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, Union, runtime_checkable

import structlog

logger = structlog.get_logger(__name__)


@runtime_checkable
class KeyValueStore(Protocol):
    async def get(self, key: str, default: Any = None) -> Any: ...

    async def set(self, key: str, value: Any) -> None: ...

    async def remove(self, key: str) -> None: ...

    async def contains(self, key: str) -> bool: ...


class MemoryStore:
    """Volatile store; contents vanish with the process."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = dict(initial or {})

    async def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)

    async def contains(self, key: str) -> bool:
        return key in self._data

    def clear(self) -> None:
        self._data.clear()


class JsonFileStore:
    """
    Durable store backed by a single JSON document.

    Writes go to a temp file in the same directory followed by
    ``os.replace``, so a crash never leaves a half-written document.
    Blocking I/O runs in the default executor.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path).expanduser()
        self._lock = threading.RLock()
        self._cache: Optional[Dict[str, Any]] = None

    def _read(self) -> Dict[str, Any]:
        with self._lock:
            if self._cache is not None:
                return self._cache
            try:
                with self.path.open("r", encoding="utf-8") as handle:
                    data = json.load(handle)
            except FileNotFoundError:
                data = {}
            except json.JSONDecodeError:
                logger.error("store_corrupt_ignored", path=str(self.path))
                data = {}
            self._cache = data if isinstance(data, dict) else {}
            return self._cache

    def _write(self, data: Dict[str, Any]) -> None:
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), prefix=f".{self.path.name}.")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    json.dump(data, handle, indent=2)
                    handle.write("\n")
                os.replace(tmp_path, self.path)
            except BaseException:
                os.unlink(tmp_path)
                raise
            self._cache = data

    def _set_sync(self, key: str, value: Any) -> None:
        with self._lock:
            data = dict(self._read())
            data[key] = value
            self._write(data)

    def _remove_sync(self, key: str) -> None:
        with self._lock:
            data = dict(self._read())
            if key in data:
                del data[key]
                self._write(data)

    async def _run(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    async def get(self, key: str, default: Any = None) -> Any:
        data = await self._run(self._read)
        return data.get(key, default)

    async def set(self, key: str, value: Any) -> None:
        await self._run(self._set_sync, key, value)

    async def remove(self, key: str) -> None:
        await self._run(self._remove_sync, key)

    async def contains(self, key: str) -> bool:
        data = await self._run(self._read)
        return key in data
