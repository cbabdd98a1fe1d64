import asyncio

import pytest

from dpiwarden.core.errors import TarballNotFoundError
from dpiwarden.core.models import ListEntry, ProfileEntry
from dpiwarden.storage.registry import SettingKey
from dpiwarden.sync.orchestrator import SyncOrchestrator, SyncReport

LIST_URL = "https://lists.example/discord.txt"
PROFILE_URL = "https://profiles.example/tls.sh"


class StubInstaller:
    def __init__(self, result=False, error=None):
        self.result = result
        self.error = error
        self.calls = 0

    async def install(self, version=None):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.result


class StubController:
    def __init__(self, started=True):
        self.is_started = started
        self.restarts = 0

    async def restart(self):
        self.restarts += 1


class StubSelfUpdater:
    def __init__(self, staged=False):
        self.staged = staged
        self.versions = []

    async def check_and_stage(self, current_version):
        self.versions.append(current_version)
        return self.staged


async def _seed(registry, remote, flags: bool = True) -> None:
    remote.add(LIST_URL, "discord.com\n")
    remote.add(PROFILE_URL, "--filter-tcp=443")
    await registry.lists.store.set("discord", ListEntry(sync_url=LIST_URL).to_store())
    await registry.profiles.replace([ProfileEntry(name="tls", sync_url=PROFILE_URL)])
    await registry.settings.update(
        {
            SettingKey.UPDATE_PROFILES: flags,
            SettingKey.UPDATE_LISTS: flags,
            SettingKey.UPDATE_LUA: flags,
            SettingKey.UPDATE_BLOBS: flags,
            SettingKey.UPDATE_ENGINE: flags,
            SettingKey.UPDATE_SELF: flags,
        }
    )


def _orchestrator(registry, installer=None, controller=None, self_updater=None, **kwargs):
    return SyncOrchestrator(
        registry,
        installer or StubInstaller(),
        controller or StubController(),
        current_version="0.1.0",
        self_updater=self_updater,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_changed_content_restarts_running_engine(registry, remote):
    await _seed(registry, remote)
    controller = StubController(started=True)
    orchestrator = _orchestrator(registry, controller=controller)

    report = await orchestrator.sync_all()

    assert report.changed == ["profiles", "lists"]
    assert report.restarted is True
    assert controller.restarts == 1


@pytest.mark.asyncio
async def test_unchanged_content_does_not_restart(registry, remote):
    await _seed(registry, remote)
    controller = StubController(started=True)
    orchestrator = _orchestrator(registry, controller=controller)

    await orchestrator.sync_all()
    report = await orchestrator.sync_all()

    assert report.changed == []
    assert report.restarted is False
    assert controller.restarts == 1


@pytest.mark.asyncio
async def test_stopped_engine_is_not_restarted(registry, remote):
    await _seed(registry, remote)
    controller = StubController(started=False)

    report = await _orchestrator(registry, controller=controller).sync_all()

    assert report.restart_pending is True
    assert report.restarted is False
    assert controller.restarts == 0


@pytest.mark.asyncio
async def test_engine_update_suppresses_restart(registry, remote):
    await _seed(registry, remote)
    controller = StubController(started=True)
    installer = StubInstaller(result=True)

    report = await _orchestrator(registry, installer=installer, controller=controller).sync_all()

    assert report.engine_updated is True
    assert report.changed == ["profiles", "lists"]
    assert report.restarted is False
    assert controller.restarts == 0


@pytest.mark.asyncio
async def test_disabled_flags_skip_everything(registry, remote):
    await _seed(registry, remote, flags=False)
    installer = StubInstaller(result=True)
    self_updater = StubSelfUpdater()

    report = await _orchestrator(registry, installer=installer, self_updater=self_updater).sync_all()

    assert report == SyncReport()
    assert installer.calls == 0
    assert self_updater.versions == []
    assert remote.requests == []


@pytest.mark.asyncio
async def test_force_ignores_flags(registry, remote):
    await _seed(registry, remote, flags=False)
    installer = StubInstaller()
    self_updater = StubSelfUpdater()

    report = await _orchestrator(registry, installer=installer, self_updater=self_updater).sync_all(force=True)

    assert report.forced is True
    assert report.changed == ["profiles", "lists"]
    assert installer.calls == 1
    assert self_updater.versions == ["0.1.0"]


@pytest.mark.asyncio
async def test_engine_update_failure_is_reported_and_cycle_continues(registry, remote):
    await _seed(registry, remote)
    installer = StubInstaller(error=TarballNotFoundError("v1", "https://example.com/v1.tar.gz"))
    self_updater = StubSelfUpdater()
    controller = StubController(started=True)

    report = await _orchestrator(
        registry, installer=installer, controller=controller, self_updater=self_updater
    ).sync_all()

    assert report.errors and "TAR_NOT_FOUND" in report.errors[0]
    assert self_updater.versions == ["0.1.0"]
    assert report.restarted is True


@pytest.mark.asyncio
async def test_staged_self_update_skips_restart(registry, remote):
    await _seed(registry, remote)
    controller = StubController(started=True)

    report = await _orchestrator(
        registry, controller=controller, self_updater=StubSelfUpdater(staged=True)
    ).sync_all()

    assert report.self_update_staged is True
    assert controller.restarts == 0


@pytest.mark.asyncio
async def test_background_loop_runs_forced_first_cycle(registry, remote):
    await _seed(registry, remote, flags=False)
    reports = []
    orchestrator = _orchestrator(registry, on_cycle=reports.append)

    orchestrator.start()
    for _ in range(100):
        if reports:
            break
        await asyncio.sleep(0.01)
    await orchestrator.stop()

    assert reports[0].forced is True
    assert reports[0].changed == ["profiles", "lists"]
    assert orchestrator.last_report is reports[0]
    assert orchestrator.is_running is False


@pytest.mark.asyncio
async def test_wake_runs_next_cycle_early(registry, remote):
    await _seed(registry, remote)
    reports = []
    orchestrator = _orchestrator(registry, on_cycle=reports.append)

    orchestrator.start()
    for _ in range(100):
        if reports:
            break
        await asyncio.sleep(0.01)

    for _ in range(100):
        if len(reports) >= 2:
            break
        orchestrator.wake()
        await asyncio.sleep(0.01)
    await orchestrator.stop()

    assert len(reports) >= 2
    assert reports[1].forced is False


@pytest.mark.asyncio
async def test_trigger_runs_a_cycle(registry, remote):
    await _seed(registry, remote)

    report = await _orchestrator(registry).trigger()

    assert report.changed == ["profiles", "lists"]
