"""Document store -- collections of JSON documents keyed by id.

Two backends:
  file://<dir>  one JSON file per collection under <dir>/<database_name>
  memory://     process-local dict, for tests and throwaway runs
"""

from __future__ import annotations

import asyncio
import copy
import json
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from wabot.errors import StoreError
from wabot.log import logger


class DocumentStore(ABC):
    """Async key/document store. Every failure surfaces as StoreError."""

    @abstractmethod
    async def get(self, collection: str, key: str) -> dict[str, Any] | None: ...

    @abstractmethod
    async def put(self, collection: str, key: str, doc: dict[str, Any]) -> None: ...

    @abstractmethod
    async def delete(self, collection: str, key: str) -> bool: ...

    @abstractmethod
    async def all(self, collection: str) -> dict[str, dict[str, Any]]: ...

    @abstractmethod
    async def ping(self) -> bool: ...

    async def close(self) -> None:
        return None


class MemoryStore(DocumentStore):
    def __init__(self) -> None:
        self._data: dict[str, dict[str, dict[str, Any]]] = {}
        self.fail_writes = False  # tests flip this to simulate an outage

    async def get(self, collection: str, key: str) -> dict[str, Any] | None:
        doc = self._data.get(collection, {}).get(key)
        return copy.deepcopy(doc) if doc is not None else None

    async def put(self, collection: str, key: str, doc: dict[str, Any]) -> None:
        if self.fail_writes:
            raise StoreError(f"write to {collection}/{key} failed")
        self._data.setdefault(collection, {})[key] = copy.deepcopy(doc)

    async def delete(self, collection: str, key: str) -> bool:
        if self.fail_writes:
            raise StoreError(f"delete of {collection}/{key} failed")
        return self._data.get(collection, {}).pop(key, None) is not None

    async def all(self, collection: str) -> dict[str, dict[str, Any]]:
        return copy.deepcopy(self._data.get(collection, {}))

    async def ping(self) -> bool:
        return not self.fail_writes


class JsonFileStore(DocumentStore):
    """Collections persisted as JSON files, rewritten atomically (.tmp + os.replace)."""

    def __init__(self, directory: Path) -> None:
        self._dir = directory
        self._cache: dict[str, dict[str, dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    def _path(self, collection: str) -> Path:
        return self._dir / f"{collection}.json"

    def _read(self, collection: str) -> dict[str, dict[str, Any]]:
        path = self._path(collection)
        if not path.exists():
            return {}
        data = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError(f"{path} does not hold a JSON object")
        return data

    def _write(self, collection: str, data: dict[str, dict[str, Any]]) -> None:
        self._dir.mkdir(parents=True, exist_ok=True)
        path = self._path(collection)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
        os.replace(str(tmp), str(path))

    async def _load(self, collection: str) -> dict[str, dict[str, Any]]:
        if collection not in self._cache:
            try:
                self._cache[collection] = await asyncio.to_thread(self._read, collection)
            except (OSError, ValueError) as e:
                raise StoreError(f"cannot read collection '{collection}': {e}") from e
        return self._cache[collection]

    async def get(self, collection: str, key: str) -> dict[str, Any] | None:
        async with self._lock:
            doc = (await self._load(collection)).get(key)
            return copy.deepcopy(doc) if doc is not None else None

    async def put(self, collection: str, key: str, doc: dict[str, Any]) -> None:
        async with self._lock:
            current = dict(await self._load(collection))
            current[key] = copy.deepcopy(doc)
            await self._flush(collection, current)

    async def delete(self, collection: str, key: str) -> bool:
        async with self._lock:
            current = dict(await self._load(collection))
            if current.pop(key, None) is None:
                return False
            await self._flush(collection, current)
            return True

    async def all(self, collection: str) -> dict[str, dict[str, Any]]:
        async with self._lock:
            return copy.deepcopy(await self._load(collection))

    async def _flush(self, collection: str, data: dict[str, dict[str, Any]]) -> None:
        try:
            await asyncio.to_thread(self._write, collection, data)
        except (OSError, TypeError, ValueError) as e:
            raise StoreError(f"cannot write collection '{collection}': {e}") from e
        # Cache only advances once the file is on disk
        self._cache[collection] = data

    async def ping(self) -> bool:
        def _reachable() -> bool:
            self._dir.mkdir(parents=True, exist_ok=True)
            return os.access(self._dir, os.W_OK)

        try:
            return await asyncio.to_thread(_reachable)
        except OSError as e:
            logger.warning(f"Store ping failed: {e}")
            return False


def open_store(uri: str, database_name: str, root: Path | None = None) -> DocumentStore:
    """Build a store from a `file://` or `memory://` URI."""
    if uri.startswith("memory://"):
        return MemoryStore()
    if uri.startswith("file://"):
        path = Path(uri[len("file://"):] or ".").expanduser()
        if not path.is_absolute() and root is not None:
            path = root / path
        return JsonFileStore(path / database_name)
    raise StoreError(f"unsupported store uri: {uri}")
