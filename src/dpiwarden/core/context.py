from typing import Any, Optional

import httpx
from pydantic import BaseModel, ConfigDict

from dpiwarden import __version__
from dpiwarden.core.models import HostConfig
from dpiwarden.core.paths import AppPaths
from dpiwarden.engine.controller import EngineProcessController
from dpiwarden.engine.installer import EngineInstaller
from dpiwarden.engine.platform import HostPlatform
from dpiwarden.engine.releases import ReleaseLocator, build_release_locator
from dpiwarden.net.fetch import Fetcher
from dpiwarden.storage.registry import ResourceRegistry
from dpiwarden.sync.orchestrator import SyncOrchestrator
from dpiwarden.sync.self_update import (
    NoopSelfUpdater,
    ReleaseSelfUpdater,
    SelfUpdater,
    ShutdownCallback,
)


class AppContext(BaseModel):
    """
    Every long-lived collaborator of one host process, built once at start.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    config: HostConfig
    version: str
    paths: AppPaths
    host: HostPlatform
    fetcher: Fetcher
    registry: ResourceRegistry
    locator: Any
    controller: EngineProcessController
    installer: EngineInstaller
    self_updater: Any
    orchestrator: SyncOrchestrator

    async def aclose(self) -> None:
        """Release the HTTP client and drop cached store contents."""
        self.registry.close()
        await self.fetcher.aclose()


def build_context(
    config: Optional[HostConfig] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    host: Optional[HostPlatform] = None,
    self_updater: Optional[SelfUpdater] = None,
    shutdown: Optional[ShutdownCallback] = None,
    version: str = __version__,
) -> AppContext:
    """
    Wire the registry, engine and synchronization components together.

    The controller installs an engine on first start and the installer stops
    and restarts the controller around an upgrade, so both hold a reference
    to each other.
    """
    config = config or HostConfig()
    host = host or HostPlatform.detect()
    paths = AppPaths.at(config.dpiwarden.appdata_dir)

    fetcher = Fetcher(config.http, transport=transport)
    registry = ResourceRegistry(paths, fetcher, unload_after=config.storage.unload_after_seconds)
    locator: ReleaseLocator = build_release_locator(fetcher, config.engine)

    controller = EngineProcessController(registry, paths, host=host)
    installer = EngineInstaller(
        registry,
        paths,
        locator,
        fetcher,
        controller,
        settings=config.engine,
        host=host,
    )
    controller.installer = installer

    if self_updater is None:
        if config.self_update.enabled:
            self_updater = ReleaseSelfUpdater(fetcher, config.self_update, shutdown=shutdown)
        else:
            self_updater = NoopSelfUpdater()

    orchestrator = SyncOrchestrator(
        registry,
        installer,
        controller,
        current_version=version,
        self_updater=self_updater,
    )

    return AppContext(
        config=config,
        version=version,
        paths=paths,
        host=host,
        fetcher=fetcher,
        registry=registry,
        locator=locator,
        controller=controller,
        installer=installer,
        self_updater=self_updater,
        orchestrator=orchestrator,
    )
