"""
CipherChat - Storage port with namespaced collections.

Components never touch a global store: they receive a StoragePort and
address records by (namespace, key). Two backends are provided:

- MemoryStorage: process-local dictionaries (tests, ephemeral sessions)
- JsonFileStorage: one JSON file per key, written atomically via a
  temporary file and os.replace, so a write to one key never exposes a
  partially written record to readers of any key
"""

import copy
import json
import logging
import os
import shutil
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import quote, unquote

import aiofiles

from .errors import ErrorCode, StorageError

logger = logging.getLogger(__name__)

_SUFFIX = ".json"


class StoragePort(ABC):
    """Async key-value store partitioned into namespaces."""

    @abstractmethod
    async def get(self, namespace: str, key: str) -> Optional[Any]:
        """Return the stored value or None."""

    @abstractmethod
    async def put(self, namespace: str, key: str, value: Any) -> None:
        """Store a JSON-serializable value, replacing any previous one."""

    @abstractmethod
    async def delete(self, namespace: str, key: str) -> bool:
        """Remove a key. Returns True if it existed."""

    @abstractmethod
    async def keys(self, namespace: str) -> List[str]:
        """List keys in a namespace."""

    async def clear(self, namespace: str) -> int:
        """Remove every key in a namespace. Returns the number removed."""
        removed = 0
        for key in await self.keys(namespace):
            if await self.delete(namespace, key):
                removed += 1
        return removed


class MemoryStorage(StoragePort):
    """In-process storage. Values are deep-copied on the way in and out."""

    def __init__(self):
        self._data: Dict[str, Dict[str, Any]] = {}

    async def get(self, namespace: str, key: str) -> Optional[Any]:
        value = self._data.get(namespace, {}).get(key)
        return copy.deepcopy(value)

    async def put(self, namespace: str, key: str, value: Any) -> None:
        self._data.setdefault(namespace, {})[key] = copy.deepcopy(value)

    async def delete(self, namespace: str, key: str) -> bool:
        return self._data.get(namespace, {}).pop(key, None) is not None

    async def keys(self, namespace: str) -> List[str]:
        return list(self._data.get(namespace, {}))


class JsonFileStorage(StoragePort):
    """File-backed storage rooted at a directory.

    Layout: <root>/<namespace>/<url-quoted key>.json
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, namespace: str, key: str) -> Path:
        return self.root / quote(namespace, safe="") / (quote(key, safe="") + _SUFFIX)

    async def get(self, namespace: str, key: str) -> Optional[Any]:
        path = self._path(namespace, key)
        if not path.exists():
            return None
        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as f:
                return json.loads(await f.read())
        except OSError as e:
            logger.error(f"Failed to read {namespace}/{key}: {e}")
            raise StorageError(
                ErrorCode.E601_STORAGE_READ_FAILED,
                f"Cannot read {namespace}/{key}: {e}",
                {"path": str(path)},
            ) from e
        except json.JSONDecodeError as e:
            logger.error(f"Corrupted record {namespace}/{key}: {e}")
            raise StorageError(
                ErrorCode.E601_STORAGE_READ_FAILED,
                f"Corrupted record {namespace}/{key}",
                {"path": str(path), "error": str(e)},
            ) from e

    async def put(self, namespace: str, key: str, value: Any) -> None:
        path = self._path(namespace, key)
        temp_file = path.with_name(f"{path.name}.{uuid.uuid4().hex}.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            json_data = json.dumps(value, indent=2, ensure_ascii=False)

            # Write to temporary file first
            async with aiofiles.open(temp_file, "w", encoding="utf-8") as f:
                await f.write(json_data)

            # Atomic rename
            os.replace(temp_file, path)
            logger.debug(f"Saved {namespace}/{key}")
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to save {namespace}/{key}: {e}")
            if temp_file.exists():
                temp_file.unlink()
            raise StorageError(
                ErrorCode.E602_STORAGE_WRITE_FAILED,
                f"Cannot save {namespace}/{key}: {e}",
                {"path": str(path)},
            ) from e

    async def delete(self, namespace: str, key: str) -> bool:
        path = self._path(namespace, key)
        try:
            os.remove(path)
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.error(f"Failed to delete {namespace}/{key}: {e}")
            raise StorageError(
                ErrorCode.E602_STORAGE_WRITE_FAILED,
                f"Cannot delete {namespace}/{key}: {e}",
                {"path": str(path)},
            ) from e

    async def keys(self, namespace: str) -> List[str]:
        directory = self.root / quote(namespace, safe="")
        if not directory.is_dir():
            return []
        return sorted(
            unquote(entry.name[: -len(_SUFFIX)])
            for entry in directory.iterdir()
            if entry.is_file() and entry.name.endswith(_SUFFIX)
        )

    async def clear(self, namespace: str) -> int:
        removed = len(await self.keys(namespace))
        directory = self.root / quote(namespace, safe="")
        if directory.is_dir():
            try:
                shutil.rmtree(directory)
            except OSError as e:
                raise StorageError(
                    ErrorCode.E602_STORAGE_WRITE_FAILED,
                    f"Cannot clear namespace {namespace}: {e}",
                    {"path": str(directory)},
                ) from e
        logger.info(f"Cleared {removed} records from namespace {namespace}")
        return removed
