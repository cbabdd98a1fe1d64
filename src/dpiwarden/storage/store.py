"""
PersistentStore: one JSON file per namespace, loaded lazily, dropped when idle.

File format: a JSON array of ``[key, value]`` pairs, rewritten wholesale on
every mutation.

Usage::

    settings = PersistentStore(paths.store_file("settings"))
    await settings.set("antidpi.debug", True)
    debug = await settings.get("antidpi.debug")

Writers are not serialized against each other: a caller doing a multi-step
read-modify-write must treat the whole sequence as its own critical section.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from dpiwarden.core.errors import StoreError

logger = logging.getLogger(__name__)

DEFAULT_UNLOAD_AFTER_SECONDS = 5.0


class PersistentStore:
    """Durable key-value map for one namespace."""

    def __init__(self, path: Path, unload_after: float = DEFAULT_UNLOAD_AFTER_SECONDS) -> None:
        self._path = Path(path)
        self._unload_after = unload_after
        self._data: Dict[str, Any] = {}
        self._loaded = False
        self._unload_handle: Optional[asyncio.TimerHandle] = None

    @property
    def namespace(self) -> str:
        return self._path.name

    @property
    def path(self) -> Path:
        return self._path

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    def exists(self) -> bool:
        """Return whether the backing file has been written at least once."""
        return self._path.exists()

    # Lifecycle

    async def load(self, force: bool = False) -> None:
        """Populate the in-memory map from disk unless it is already loaded."""
        self._cancel_unload()

        if self._loaded and not force:
            return

        self._loaded = False
        pairs = await asyncio.to_thread(self._read_pairs)
        self._data = dict(pairs)
        self._loaded = True

    def unload(self) -> None:
        """Drop the in-memory map; the next access reloads from disk."""
        self._loaded = False
        self._data = {}
        self._unload_handle = None
        logger.debug("Unloaded idle store %s", self.namespace)

    def close(self) -> None:
        """Cancel a pending idle unload (used at shutdown)."""
        self._cancel_unload()

    # Public API

    async def get(self, key: str, default: Any = None) -> Any:
        await self.load()
        self._snooze_unload()
        if key not in self._data:
            return default
        return copy.deepcopy(self._data[key])

    async def get_all(self) -> Dict[str, Any]:
        await self.load()
        self._snooze_unload()
        return copy.deepcopy(self._data)

    async def set(self, key: str, value: Any) -> None:
        await self.load()
        self._data[key] = copy.deepcopy(value)
        await self._backup()
        self._snooze_unload()

    async def delete(self, key: str) -> bool:
        """Remove *key*; returns False when it was not present."""
        await self.load()
        existed = self._data.pop(key, _MISSING) is not _MISSING
        await self._backup()
        self._snooze_unload()
        return existed

    async def replace_all(self, items: Iterable[Tuple[str, Any]]) -> None:
        """Replace the whole namespace in one write, keeping the given order."""
        await self.load()
        self._data = {key: copy.deepcopy(value) for key, value in items}
        await self._backup()
        self._snooze_unload()

    # Internal helpers

    def _snooze_unload(self) -> None:
        self._cancel_unload()
        loop = asyncio.get_running_loop()
        self._unload_handle = loop.call_later(self._unload_after, self.unload)

    def _cancel_unload(self) -> None:
        if self._unload_handle is not None:
            self._unload_handle.cancel()
            self._unload_handle = None

    async def _backup(self) -> None:
        if not self._loaded:
            raise StoreError(f"Store {self.namespace} is unloaded")
        payload = json.dumps([[key, value] for key, value in self._data.items()])
        await asyncio.to_thread(self._write_text, payload)

    def _write_text(self, payload: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_name(f"{self._path.name}.tmp")
        tmp_path.write_text(payload, encoding="utf-8")
        os.replace(tmp_path, self._path)

    def _read_pairs(self) -> List[Tuple[str, Any]]:
        if not self._path.exists():
            return []

        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise StoreError(f"Cannot read store {self._path}: {exc}") from exc

        if not isinstance(payload, list):
            raise StoreError(f"Store {self._path} must contain a list of [key, value] pairs")

        pairs: List[Tuple[str, Any]] = []
        for item in payload:
            if not isinstance(item, list) or len(item) != 2 or not isinstance(item[0], str):
                raise StoreError(f"Store {self._path} has a malformed entry: {item!r}")
            pairs.append((item[0], item[1]))
        return pairs


_MISSING = object()
