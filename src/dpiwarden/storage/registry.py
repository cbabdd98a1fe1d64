"""
ResourceRegistry: the semantic layer over the persistent store namespaces.

Namespaces
----------
profiles  ordered engine configuration fragments (ProfileBook)
lists     host lists materialized under files/lists/<name>
lua       scripts materialized under files/lua/<name>
blobs     binary attachments materialized under files/blobs/<name>
settings  flat scalar/JSON settings (SettingsStore)

Refreshing a namespace from remote sources never aborts on a single entry:
the failure is logged as a ResourceSyncError and siblings continue.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from pathlib import Path
from typing import (
    Any,
    Collection,
    Dict,
    Generic,
    Iterable,
    List,
    Mapping,
    Optional,
    Type,
    TypeVar,
    Union,
)

from dpiwarden.core.errors import FetchError, ResourceSyncError
from dpiwarden.core.models import (
    BlobEntry,
    ListEntry,
    LuaEntry,
    ProfileEntry,
    ResourceEntry,
    StartupScripts,
)
from dpiwarden.core.paths import AppPaths
from dpiwarden.net.fetch import Fetcher
from dpiwarden.storage.store import DEFAULT_UNLOAD_AFTER_SECONDS, PersistentStore

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=ResourceEntry)

Whitelist = Optional[Collection[str]]


class SettingKey:
    """Keys of the settings namespace."""

    VERSION = "version"
    HOSTNAME = "hostname"
    PORT = "port"
    ENGINE_FAMILY = "antidpi"
    ENGINE_VERSION = "antidpi.version"
    ENGINE_ACTIVE = "antidpi.active"
    ENGINE_DEBUG = "antidpi.debug"
    STARTUP_ARGS = "startup.args"
    STARTUP_SCRIPTS = "startup.scripts"
    UPDATE_SELF = "updater.self"
    UPDATE_ENGINE = "updater.engine"
    UPDATE_PROFILES = "updater.profiles"
    UPDATE_LISTS = "updater.lists"
    UPDATE_LUA = "updater.lua"
    UPDATE_BLOBS = "updater.blobs"
    UPDATE_INTERVAL = "updater.interval"


DEFAULT_UPDATE_INTERVAL_MS = 1000 * 60 * 60 * 24


def content_digest(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def _validate_name(name: str) -> None:
    if not name or name in {".", ".."} or "/" in name or "\\" in name or "\0" in name:
        raise ValueError(f"Invalid resource name: {name!r}")


def substitute_tokens(text: str, list_paths: Mapping[str, Union[str, Path]]) -> str:
    """Replace every `{name}` with the path of the list called *name*."""
    for name, path in list_paths.items():
        text = text.replace(f"{{{name}}}", str(path))
    return text


def _to_bytes(content: Union[str, bytes]) -> bytes:
    return content.encode("utf-8") if isinstance(content, str) else content


class SettingsStore:
    """Typed access to the settings namespace."""

    def __init__(self, store: PersistentStore) -> None:
        self.store = store

    def exists(self) -> bool:
        return self.store.exists()

    async def get(self, key: str, default: Any = None) -> Any:
        value = await self.store.get(key)
        return default if value is None else value

    async def set(self, key: str, value: Any) -> None:
        await self.store.set(key, value)

    async def delete(self, key: str) -> bool:
        return await self.store.delete(key)

    async def all(self) -> Dict[str, Any]:
        return await self.store.get_all()

    async def update(self, values: Mapping[str, Any]) -> None:
        for key, value in values.items():
            await self.store.set(key, value)

    async def flag(self, key: str) -> bool:
        return bool(await self.get(key, False))

    async def startup_scripts(self) -> StartupScripts:
        return StartupScripts.model_validate(await self.get(SettingKey.STARTUP_SCRIPTS, {}))

    async def update_interval_seconds(self) -> float:
        interval_ms = await self.get(SettingKey.UPDATE_INTERVAL, DEFAULT_UPDATE_INTERVAL_MS)
        return max(float(interval_ms) / 1000.0, 1.0)


class ResourceCollection(Generic[E]):
    """One file-backed namespace: metadata in the store, content under files/<namespace>/."""

    def __init__(
        self,
        namespace: str,
        store: PersistentStore,
        entry_type: Type[E],
        paths: AppPaths,
        fetcher: Fetcher,
    ) -> None:
        self.namespace = namespace
        self.store = store
        self.entry_type = entry_type
        self.paths = paths
        self.fetcher = fetcher

    def file_path(self, name: str) -> Path:
        _validate_name(name)
        return self.paths.resource_file(self.namespace, name)

    async def get(self, name: str) -> Optional[E]:
        value = await self.store.get(name)
        return None if value is None else self.entry_type.model_validate(value)

    async def all(self) -> Dict[str, E]:
        entries = await self.store.get_all()
        return {name: self.entry_type.model_validate(value or {}) for name, value in entries.items()}

    async def names(self) -> List[str]:
        return list((await self.store.get_all()).keys())

    async def set(self, name: str, entry: E, content: Optional[Union[str, bytes]] = None) -> None:
        """
        Write *entry* metadata and, when known, its materialized content.

        With a sync URL and no explicit content, the content is fetched once;
        a failed fetch is logged and the metadata is still written.
        """
        _validate_name(name)
        await self.store.set(name, entry.to_store())

        if content is None and entry.sync_url:
            try:
                content = await self.fetcher.content(entry.sync_url)
            except FetchError as exc:
                logger.warning("%s", ResourceSyncError(self.namespace, name, exc))

        if content is not None:
            await self.write_content(name, content)

    async def rename(self, old_name: str, new_name: str) -> None:
        """Move metadata and materialized file from *old_name* to *new_name*."""
        _validate_name(new_name)
        if old_name == new_name:
            return

        value = await self.store.get(old_name)
        if value is None:
            raise KeyError(f"'{old_name}' not found in {self.namespace}.")

        await self.store.set(new_name, value)
        await self.store.delete(old_name)

        old_file = self.file_path(old_name)
        new_file = self.file_path(new_name)
        if old_file.exists():
            if not new_file.exists():
                await asyncio.to_thread(old_file.replace, new_file)
            else:
                await asyncio.to_thread(old_file.unlink)

    async def delete(self, name: str) -> bool:
        """Remove metadata and the materialized file; returns whether metadata existed."""
        existed = await self.store.delete(name)
        file_path = self.file_path(name)
        if file_path.exists():
            await asyncio.to_thread(file_path.unlink)
        return existed

    async def read_content(self, name: str) -> Optional[bytes]:
        file_path = self.file_path(name)
        if not file_path.exists():
            return None
        return await asyncio.to_thread(file_path.read_bytes)

    async def write_content(self, name: str, content: Union[str, bytes]) -> bool:
        """Write the materialized file unless it already holds identical bytes."""
        data = _to_bytes(content)
        file_path = self.file_path(name)

        existing = await self.read_content(name)
        if existing is not None and content_digest(existing) == content_digest(data):
            return False

        def _write() -> None:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            file_path.write_bytes(data)

        await asyncio.to_thread(_write)
        return True

    async def sync(self, whitelist: Whitelist = None) -> bool:
        """Refresh every entry with a sync URL; returns whether any file changed."""
        changed = False

        for name, entry in (await self.all()).items():
            if not entry.sync_url:
                continue
            if whitelist is not None and name not in whitelist:
                continue

            try:
                content = await self.fetcher.content(entry.sync_url)
                if await self.write_content(name, content):
                    logger.info("Updated %s/%s from %s", self.namespace, name, entry.sync_url)
                    changed = True
            except (FetchError, OSError) as exc:
                logger.error("%s", ResourceSyncError(self.namespace, name, exc))

        return changed


class ProfileBook:
    """
    Ordered profiles persisted in their own namespace.

    The store keeps insertion order, so the namespace file lists profiles in
    precedence order; reordering rewrites the namespace in one go.
    """

    namespace = "profiles"

    def __init__(self, store: PersistentStore, fetcher: Fetcher) -> None:
        self.store = store
        self.fetcher = fetcher

    async def all(self) -> List[ProfileEntry]:
        entries = await self.store.get_all()
        return [ProfileEntry.model_validate({**(value or {}), "name": name}) for name, value in entries.items()]

    async def get(self, name: str) -> Optional[ProfileEntry]:
        value = await self.store.get(name)
        return None if value is None else ProfileEntry.model_validate({**value, "name": name})

    async def active(self) -> List[ProfileEntry]:
        return [profile for profile in await self.all() if profile.active]

    async def replace(self, profiles: Iterable[ProfileEntry]) -> None:
        """Persist *profiles* as the complete ordered set."""
        items = []
        seen = set()
        for profile in profiles:
            if profile.name in seen:
                raise ValueError(f"Duplicate profile name: '{profile.name}'")
            seen.add(profile.name)
            items.append((profile.name, self._record(profile)))
        await self.store.replace_all(items)

    async def upsert(self, profile: ProfileEntry) -> None:
        """Update a profile in place, or append it when the name is new."""
        await self.store.set(profile.name, self._record(profile))

    async def delete(self, name: str) -> bool:
        return await self.store.delete(name)

    async def move(self, name: str, index: int) -> None:
        """Move profile *name* to position *index* (clamped to the list bounds)."""
        profiles = await self.all()
        position = next((i for i, profile in enumerate(profiles) if profile.name == name), None)
        if position is None:
            raise KeyError(f"'{name}' not found in profiles.")

        profile = profiles.pop(position)
        index = max(0, min(index, len(profiles)))
        profiles.insert(index, profile)
        await self.replace(profiles)

    async def sync(self, whitelist: Whitelist = None) -> bool:
        """Overwrite each synced profile's content in place; returns whether any changed."""
        profiles = await self.all()
        changed = False

        for profile in profiles:
            if not profile.sync_url:
                continue
            if whitelist is not None and profile.name not in whitelist:
                continue

            try:
                content = await self.fetcher.text(profile.sync_url)
            except FetchError as exc:
                logger.error("%s", ResourceSyncError(self.namespace, profile.name, exc))
                continue

            if content == profile.content:
                continue

            profile.content = content
            changed = True
            logger.info("Updated profile %s from %s", profile.name, profile.sync_url)

        if changed:
            await self.replace(profiles)

        return changed

    @staticmethod
    def _record(profile: ProfileEntry) -> Dict[str, Any]:
        record = profile.to_store()
        record.pop("name", None)
        return record


class ResourceRegistry:
    """All namespaces of one appdata directory."""

    def __init__(
        self,
        paths: AppPaths,
        fetcher: Fetcher,
        unload_after: float = DEFAULT_UNLOAD_AFTER_SECONDS,
    ) -> None:
        self.paths = paths

        def _store(namespace: str) -> PersistentStore:
            return PersistentStore(paths.store_file(namespace), unload_after=unload_after)

        self.settings = SettingsStore(_store("settings"))
        self.profiles = ProfileBook(_store("profiles"), fetcher)
        self.lists: ResourceCollection[ListEntry] = ResourceCollection(
            "lists", _store("lists"), ListEntry, paths, fetcher
        )
        self.lua: ResourceCollection[LuaEntry] = ResourceCollection(
            "lua", _store("lua"), LuaEntry, paths, fetcher
        )
        self.blobs: ResourceCollection[BlobEntry] = ResourceCollection(
            "blobs", _store("blobs"), BlobEntry, paths, fetcher
        )

    def collection(self, namespace: str) -> ResourceCollection:
        collections = {"lists": self.lists, "lua": self.lua, "blobs": self.blobs}
        if namespace not in collections:
            raise KeyError(f"Unknown file namespace: '{namespace}'")
        return collections[namespace]

    async def list_paths(self) -> Dict[str, Path]:
        """Map every list name to the absolute path of its materialized file."""
        return {name: self.lists.file_path(name) for name in await self.lists.names()}

    async def substitute_tokens(self, text: str) -> str:
        """Replace every `{name}` token with the path of the list called *name*."""
        return substitute_tokens(text, await self.list_paths())

    def stores(self) -> List[PersistentStore]:
        return [
            self.settings.store,
            self.profiles.store,
            self.lists.store,
            self.lua.store,
            self.blobs.store,
        ]

    def unload(self) -> None:
        """Drop every cached namespace so the next access rereads the disk."""
        for store in self.stores():
            store.close()
            store.unload()

    def close(self) -> None:
        for store in self.stores():
            store.close()
