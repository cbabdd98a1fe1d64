"""
WardenApp: lifecycle of one host process.

start()   seed a fresh appdata, record the running version, start the engine
          when it is marked active, then start the synchronization loop
          (its first cycle is forced)
stop()    stop the loop and the engine
restart() stop + start
reset()   stop, wipe appdata (host config and server metadata survive), start
run()     start, wait for a shutdown request or a signal, stop
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import signal
import sys
from typing import Optional

import httpx

from dpiwarden.core.context import AppContext, build_context
from dpiwarden.core.defaults import refresh_all, seed_default_appdata
from dpiwarden.core.models import HostConfig
from dpiwarden.engine.platform import HostPlatform
from dpiwarden.storage.registry import SettingKey
from dpiwarden.sync.self_update import SelfUpdater

logger = logging.getLogger(__name__)


class WardenApp:
    """Owns the context and drives startup, shutdown and reset."""

    def __init__(
        self,
        config: Optional[HostConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        host: Optional[HostPlatform] = None,
        self_updater: Optional[SelfUpdater] = None,
    ) -> None:
        self._shutdown = asyncio.Event()
        self._started = False
        self.context: AppContext = build_context(
            config,
            transport=transport,
            host=host,
            self_updater=self_updater,
            shutdown=self.request_shutdown,
        )

    @property
    def is_started(self) -> bool:
        return self._started

    async def start(self) -> None:
        if self._started:
            return

        registry = self.context.registry
        if not registry.settings.exists():
            await seed_default_appdata(registry, self.context.host)
            await refresh_all(registry)

        await registry.settings.set(SettingKey.VERSION, self.context.version)
        self._started = True

        if await registry.settings.flag(SettingKey.ENGINE_ACTIVE):
            await self.context.controller.start()

        self.context.orchestrator.start()
        logger.info("dpiwarden %s started (appdata: %s)", self.context.version, self.context.paths.root)

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False

        await self.context.orchestrator.stop()
        await self.context.controller.stop()
        logger.info("dpiwarden stopped")

    async def restart(self) -> None:
        await self.stop()
        await self.start()

    async def reset(self) -> None:
        """Discard all appdata and start again from the defaults."""
        was_started = self._started
        await self.stop()

        self.context.registry.unload()
        await asyncio.to_thread(wipe_appdata, self.context)
        logger.warning("Appdata in %s was reset", self.context.paths.root)

        if was_started:
            await self.start()

    async def request_shutdown(self) -> None:
        """Ask run() to stop; safe to call from a task that run() awaits on."""
        self._shutdown.set()

    async def run(self) -> None:
        """Serve until a shutdown request or SIGINT/SIGTERM."""
        self._install_signal_handlers()
        try:
            await self.start()
            await self._shutdown.wait()
        finally:
            await self.stop()
            await self.context.aclose()

    def _install_signal_handlers(self) -> None:
        if sys.platform.startswith("win"):
            return
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, self._shutdown.set)


def wipe_appdata(context: AppContext) -> None:
    """Remove everything in the appdata directory except host config and server metadata."""
    paths = context.paths
    if not paths.root.exists():
        return

    keep = {paths.config_file, paths.server_metadata}
    for entry in paths.root.iterdir():
        if entry in keep:
            continue
        if entry.is_dir() and not entry.is_symlink():
            shutil.rmtree(entry)
        else:
            entry.unlink()
