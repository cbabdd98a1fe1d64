"""
EngineInstaller: download, unpack and record an engine release.

Install steps
-------------
1. Resolve the target release (explicit version must exist, else latest).
2. Return False when that version is already recorded as installed.
3. Stop the running engine.
4. Download the release tarball.
5. Extract ``<release-dir>/binaries/<platform>-<arch>/*`` into a fresh bin/.
6. Post-process: PE subsystem patch on Windows, executable bit elsewhere.
7. Re-register the release's Lua scripts and record the installed version.
8. Start the engine again if it is supposed to be active.
"""

from __future__ import annotations

import asyncio
import io
import logging
import posixpath
import shutil
import tarfile
from typing import TYPE_CHECKING, Dict, List, Optional

from dpiwarden.core.errors import (
    FetchError,
    TarballNotFoundError,
    UnpackFailedError,
    VersionNotFoundError,
)
from dpiwarden.core.models import EngineRelease, EngineSettings, LuaEntry
from dpiwarden.core.paths import AppPaths
from dpiwarden.engine.platform import HostPlatform, make_executable, patch_pe_subsystem
from dpiwarden.engine.releases import ReleaseLocator
from dpiwarden.net.fetch import Fetcher
from dpiwarden.storage.registry import ResourceRegistry, SettingKey

if TYPE_CHECKING:
    from dpiwarden.engine.controller import EngineProcessController

logger = logging.getLogger(__name__)


def extract_binaries(archive: bytes, prefix: str) -> Dict[str, bytes]:
    """
    Return ``{basename: bytes}`` for every regular file under *prefix* in a .tar.gz.

    Raises tarfile.TarError or OSError on a corrupt archive.
    """
    files: Dict[str, bytes] = {}
    with tarfile.open(fileobj=io.BytesIO(archive), mode="r:gz") as tar:
        for member in tar.getmembers():
            if not member.isfile() or not member.name.startswith(prefix):
                continue
            filename = posixpath.basename(member.name)
            if not filename:
                continue
            handle = tar.extractfile(member)
            if handle is None:
                continue
            files[filename] = handle.read()
    return files


class EngineInstaller:
    """Installs engine releases into the appdata bin/ directory."""

    def __init__(
        self,
        registry: ResourceRegistry,
        paths: AppPaths,
        locator: ReleaseLocator,
        fetcher: Fetcher,
        controller: "EngineProcessController",
        settings: Optional[EngineSettings] = None,
        host: Optional[HostPlatform] = None,
    ) -> None:
        self.registry = registry
        self.paths = paths
        self.locator = locator
        self.fetcher = fetcher
        self.controller = controller
        self.settings = settings or EngineSettings()
        self.host = host or controller.host

    async def is_installed(self) -> bool:
        settings = self.registry.settings
        return (
            await settings.get(SettingKey.ENGINE_FAMILY) == self.settings.family
            and bool(await settings.get(SettingKey.ENGINE_VERSION))
            and self.controller.binary_path.exists()
        )

    async def installed_version(self) -> Optional[str]:
        return await self.registry.settings.get(SettingKey.ENGINE_VERSION)

    async def resolve(self, version: Optional[str] = None) -> EngineRelease:
        """Find the release to install; raises VersionNotFoundError."""
        releases = await self.locator.list_versions()

        if version:
            release = next((r for r in releases if r.tag == version), None)
            if release is None:
                raise VersionNotFoundError(version)
            return release

        if not releases:
            raise VersionNotFoundError("latest")
        return releases[0]

    async def install(self, version: Optional[str] = None) -> bool:
        """
        Install *version* (or the latest release).

        Returns:
            True when a different version was installed, False when the target
            was already installed (the caller must not restart in that case).
        """
        release = await self.resolve(version)

        if await self.installed_version() == release.tag:
            logger.debug("Engine %s already installed", release.tag)
            return False

        logger.info("Installing engine %s %s", self.settings.family, release.tag)
        await self.controller.stop()

        archive = await self._download(release)
        prefix = self._binaries_prefix(release)

        try:
            files = await asyncio.to_thread(extract_binaries, archive, prefix)
        except (tarfile.TarError, OSError, EOFError) as exc:
            raise UnpackFailedError(release.tag, str(exc)) from exc

        if not files:
            raise UnpackFailedError(release.tag, f"no files under {prefix}")

        await self.controller.cleanup_driver()
        await asyncio.to_thread(self._replace_bin_dir, files)

        await self._register_release_scripts(release)

        await self.registry.settings.set(SettingKey.ENGINE_FAMILY, self.settings.family)
        await self.registry.settings.set(SettingKey.ENGINE_VERSION, release.tag)
        logger.info("Engine %s installed (%d files)", release.tag, len(files))

        if await self.registry.settings.flag(SettingKey.ENGINE_ACTIVE):
            await self.controller.start()

        return True

    # Internal helpers

    def _binaries_prefix(self, release: EngineRelease) -> str:
        release_dir = self.settings.release_dir.format(tag=release.tag)
        return f"{release_dir}/binaries/{self.host.binaries_dir}/"

    async def _download(self, release: EngineRelease) -> bytes:
        url = self.settings.tarball_url.format(repository=self.settings.repository, tag=release.tag)
        try:
            return await self.fetcher.content(url)
        except FetchError as exc:
            raise TarballNotFoundError(release.tag, url) from exc

    def _replace_bin_dir(self, files: Dict[str, bytes]) -> None:
        bin_dir = self.paths.bin_dir
        shutil.rmtree(bin_dir, ignore_errors=True)
        bin_dir.mkdir(parents=True, exist_ok=True)

        for filename, data in files.items():
            (bin_dir / filename).write_bytes(data)

        binary = bin_dir / self.host.engine_binary_name
        if not binary.exists():
            logger.warning("Release has no %s for %s", self.host.engine_binary_name, self.host.binaries_dir)
            return

        if self.host.is_windows:
            patch_pe_subsystem(binary)
        else:
            make_executable(binary)

    async def _register_release_scripts(self, release: EngineRelease) -> None:
        names: List[str] = list(self.settings.release_scripts)
        if not names or not release.commit:
            return

        for name in names:
            url = self.settings.script_url.format(
                repository=self.settings.repository,
                commit=release.commit,
                name=name,
            )
            await self.registry.lua.store.set(name, LuaEntry(active=True, sync_url=url).to_store())

        await self.registry.lua.sync(whitelist=names)
