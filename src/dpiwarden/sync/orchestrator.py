from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from dpiwarden.core.errors import DpiwardenError
from dpiwarden.engine.controller import EngineProcessController
from dpiwarden.engine.installer import EngineInstaller
from dpiwarden.storage.registry import DEFAULT_UPDATE_INTERVAL_MS, ResourceRegistry, SettingKey
from dpiwarden.sync.self_update import NoopSelfUpdater, SelfUpdater

logger = logging.getLogger(__name__)

FILE_NAMESPACE_FLAGS = (
    ("lists", SettingKey.UPDATE_LISTS),
    ("lua", SettingKey.UPDATE_LUA),
    ("blobs", SettingKey.UPDATE_BLOBS),
)


@dataclass
class SyncReport:
    """Outcome of one synchronization cycle."""

    forced: bool = False
    changed: List[str] = field(default_factory=list)
    engine_updated: bool = False
    self_update_staged: bool = False
    restarted: bool = False
    errors: List[str] = field(default_factory=list)

    @property
    def restart_pending(self) -> bool:
        return bool(self.changed) and not self.engine_updated


class SyncOrchestrator:
    """Refreshes registry content, updates the engine and restarts it when needed."""

    def __init__(
        self,
        registry: ResourceRegistry,
        installer: EngineInstaller,
        controller: EngineProcessController,
        current_version: str,
        self_updater: Optional[SelfUpdater] = None,
        on_cycle: Optional[Callable[[SyncReport], None]] = None,
    ) -> None:
        self.registry = registry
        self.installer = installer
        self.controller = controller
        self.current_version = current_version
        self.self_updater = self_updater or NoopSelfUpdater()
        self.on_cycle = on_cycle

        self._cycle_lock = asyncio.Lock()
        self._wakeup = asyncio.Event()
        self._stop_event = asyncio.Event()
        self._loop_task: Optional[asyncio.Task] = None
        self.last_report: Optional[SyncReport] = None

    # Steps

    async def _allowed(self, flag: str, force: bool) -> bool:
        return force or await self.registry.settings.flag(flag)

    async def sync_profiles(self, force: bool = False) -> bool:
        if not await self._allowed(SettingKey.UPDATE_PROFILES, force):
            return False
        return await self.registry.profiles.sync()

    async def sync_files(self, namespace: str, force: bool = False) -> bool:
        flag = dict(FILE_NAMESPACE_FLAGS)[namespace]
        if not await self._allowed(flag, force):
            return False
        return await self.registry.collection(namespace).sync()

    async def update_engine(self, force: bool = False) -> bool:
        if not await self._allowed(SettingKey.UPDATE_ENGINE, force):
            return False
        return await self.installer.install()

    async def update_self(self, force: bool = False) -> bool:
        if not await self._allowed(SettingKey.UPDATE_SELF, force):
            return False
        return await self.self_updater.check_and_stage(self.current_version)

    # Cycle

    async def sync_all(self, force: bool = False) -> SyncReport:
        """
        Run one full synchronization cycle.

        A restart happens only when some content changed, the engine update did
        not already restart with fresh config, and the engine is running.
        """
        async with self._cycle_lock:
            report = SyncReport(forced=force)

            if await self.sync_profiles(force):
                report.changed.append("profiles")

            for namespace, _ in FILE_NAMESPACE_FLAGS:
                if await self.sync_files(namespace, force):
                    report.changed.append(namespace)

            try:
                report.engine_updated = await self.update_engine(force)
            except DpiwardenError as exc:
                logger.error("Engine update failed: %s", exc)
                report.errors.append(str(exc))

            try:
                report.self_update_staged = await self.update_self(force)
            except DpiwardenError as exc:
                logger.error("Self-update failed: %s", exc)
                report.errors.append(str(exc))

            if report.self_update_staged:
                self._finish(report)
                return report

            if report.restart_pending and self.controller.is_started:
                logger.info("Restarting engine after changes in: %s", ", ".join(report.changed))
                await self.controller.restart()
                report.restarted = True

            self._finish(report)
            return report

    def _finish(self, report: SyncReport) -> None:
        self.last_report = report
        if self.on_cycle is not None:
            self.on_cycle(report)

    # Background loop

    def start(self) -> None:
        """Start the periodic loop; its first cycle is forced."""
        if self._loop_task is not None:
            return
        self._stop_event.clear()
        self._loop_task = asyncio.create_task(self._run_loop(), name="sync-orchestrator")

    async def stop(self) -> None:
        """Stop the periodic loop, cancelling a cycle in progress."""
        self._stop_event.set()
        self._wakeup.set()

        task = self._loop_task
        self._loop_task = None
        if task is None or task is asyncio.current_task():
            return

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def wake(self) -> None:
        """Cut the current wait short so the loop runs its next cycle now."""
        self._wakeup.set()

    async def trigger(self, force: bool = False) -> SyncReport:
        """Run a cycle right away (serialized with the background loop)."""
        return await self.sync_all(force)

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def _run_loop(self) -> None:
        force = True
        while not self._stop_event.is_set():
            try:
                await self.sync_all(force=force)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Synchronization cycle failed")
            force = False

            try:
                interval = await self.registry.settings.update_interval_seconds()
            except (DpiwardenError, TypeError, ValueError) as exc:
                logger.error("Invalid update interval, using the default: %s", exc)
                interval = DEFAULT_UPDATE_INTERVAL_MS / 1000.0

            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
