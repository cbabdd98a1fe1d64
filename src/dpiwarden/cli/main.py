import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

import typer
from rich.logging import RichHandler

from dpiwarden import __version__
from dpiwarden.cli.formatter import OutputFormatter, error_console
from dpiwarden.config.loader import load_host_config
from dpiwarden.core.context import AppContext, build_context
from dpiwarden.core.errors import DpiwardenError
from dpiwarden.core.models import HostConfig, WardenSettings
from dpiwarden.core.paths import AppPaths
from dpiwarden.engine.platform import patch_pe_subsystem
from dpiwarden.runtime.app import WardenApp
from dpiwarden.runtime.daemon import (
    ServerMetadata,
    ServerMetadataRecorder,
    ServerState,
    clear_server_metadata,
    probe_server_state,
    utc_now_iso,
)
from dpiwarden.storage.registry import SettingKey

T = TypeVar("T")

app = typer.Typer(name="dpiwarden", help="DPI-circumvention engine supervisor", rich_markup_mode=None)
settings_app = typer.Typer(help="Inspect and edit the settings store")
app.add_typer(settings_app, name="settings")

ConfigOption = typer.Option(None, "--config", "-c", help="Path to dpiwarden.yaml")
AppdataOption = typer.Option(None, "--appdata", "-a", help="Appdata directory")


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=error_console, show_path=False)],
        force=True,
    )


def _load_config(config: Optional[Path], appdata: Optional[Path]) -> HostConfig:
    """Resolve host configuration; the config file defaults to <appdata>/dpiwarden.yaml."""
    appdata_dir = appdata or WardenSettings().appdata_dir
    config_path = config or AppPaths.at(appdata_dir).config_file

    try:
        host_config = load_host_config(config_path)
    except (OSError, ValueError) as exc:
        OutputFormatter.log(f"Failed to load config {config_path}: {exc}", severity="error")
        raise typer.Exit(code=1)

    if appdata is not None:
        host_config.dpiwarden.appdata_dir = appdata

    _configure_logging(host_config.dpiwarden.log_level)
    return host_config


def _ensure_not_serving(host_config: HostConfig) -> None:
    probe = probe_server_state(AppPaths.at(host_config.dpiwarden.appdata_dir))
    if probe.state == ServerState.RUNNING:
        OutputFormatter.log(
            f"A server is running (pid={probe.metadata.pid}); stop it before changing appdata.",
            severity="error",
        )
        raise typer.Exit(code=1)


def _run_with_context(host_config: HostConfig, action: Callable[[AppContext], Awaitable[T]]) -> T:
    """Run *action* against a fresh context; the engine never outlives the command."""

    async def _main() -> T:
        context = build_context(host_config)
        try:
            return await action(context)
        finally:
            await context.controller.stop()
            await context.aclose()

    try:
        return asyncio.run(_main())
    except DpiwardenError as exc:
        OutputFormatter.log(str(exc), severity="error")
        raise typer.Exit(code=1)


def _parse_value(raw: str) -> Any:
    """Interpret a CLI value as JSON when it parses, else keep it as a string."""
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


@app.command()
def serve(
    config: Optional[Path] = ConfigOption,
    appdata: Optional[Path] = AppdataOption,
):
    """Run the engine supervisor and the periodic synchronization loop."""
    host_config = _load_config(config, appdata)
    paths = AppPaths.at(host_config.dpiwarden.appdata_dir)

    probe = probe_server_state(paths)
    if probe.state == ServerState.RUNNING:
        OutputFormatter.log(f"Server already running (pid={probe.metadata.pid}).", severity="error")
        raise typer.Exit(code=1)
    if probe.state == ServerState.STALE:
        clear_server_metadata(paths)
        OutputFormatter.log(f"Removed stale server metadata: {probe.reason}", severity="warning")

    recorder = ServerMetadataRecorder(
        paths, ServerMetadata(pid=os.getpid(), started_at=utc_now_iso(), version=__version__)
    )
    recorder.write()
    OutputFormatter.log(f"Server started (pid={recorder.metadata.pid}, appdata={paths.root}).", severity="info")

    warden = WardenApp(host_config)
    warden.context.controller.listeners.append(recorder.engine_changed)
    try:
        asyncio.run(warden.run())
    except DpiwardenError as exc:
        OutputFormatter.log(f"Server failed: {exc}", severity="error")
        raise typer.Exit(code=1)
    finally:
        recorder.clear()


@app.command()
def status(
    config: Optional[Path] = ConfigOption,
    appdata: Optional[Path] = AppdataOption,
):
    """Show server liveness and the engine the server is running."""
    host_config = _load_config(config, appdata)
    probe = probe_server_state(AppPaths.at(host_config.dpiwarden.appdata_dir))

    async def _engine(context: AppContext) -> dict:
        settings = context.registry.settings
        if not settings.exists():
            return {"installed": None, "active": False}
        return {
            "installed": await settings.get(SettingKey.ENGINE_VERSION),
            "active": await settings.flag(SettingKey.ENGINE_ACTIVE),
        }

    engine = _run_with_context(host_config, _engine)
    record = probe.metadata.engine if probe.state == ServerState.RUNNING else None
    engine["pid"] = record.pid if record is not None else None
    engine["running"] = probe.engine_alive
    engine["running_version"] = record.version if record is not None else None
    OutputFormatter.print_data({"server": probe, "engine": engine})


@app.command()
def versions(
    config: Optional[Path] = ConfigOption,
    appdata: Optional[Path] = AppdataOption,
):
    """List the engine releases available for installation."""
    host_config = _load_config(config, appdata)

    async def _versions(context: AppContext):
        releases = await context.locator.list_versions()
        return releases, await context.installer.installed_version()

    releases, installed = _run_with_context(host_config, _versions)
    OutputFormatter.print_versions(releases, installed)


@app.command()
def install(
    version: Optional[str] = typer.Argument(None, help="Release tag; the latest when omitted"),
    config: Optional[Path] = ConfigOption,
    appdata: Optional[Path] = AppdataOption,
):
    """Install an engine release."""
    host_config = _load_config(config, appdata)
    _ensure_not_serving(host_config)

    async def _install(context: AppContext) -> Optional[str]:
        if await context.installer.install(version):
            return await context.installer.installed_version()
        return None

    installed = _run_with_context(host_config, _install)
    if installed is None:
        OutputFormatter.log("Requested engine version is already installed.", severity="info")
    else:
        OutputFormatter.log(f"Engine {installed} installed.", severity="success")


@app.command()
def sync(
    force: bool = typer.Option(False, "--force", "-f", help="Ignore the updater.* flags"),
    config: Optional[Path] = ConfigOption,
    appdata: Optional[Path] = AppdataOption,
):
    """Run one synchronization cycle now."""
    host_config = _load_config(config, appdata)
    _ensure_not_serving(host_config)

    async def _sync(context: AppContext):
        return await context.orchestrator.sync_all(force=force)

    report = _run_with_context(host_config, _sync)
    OutputFormatter.print_sync_report(report)


@app.command()
def argv(
    config: Optional[Path] = ConfigOption,
    appdata: Optional[Path] = AppdataOption,
):
    """Print the engine command line assembled from the current appdata."""
    host_config = _load_config(config, appdata)

    async def _argv(context: AppContext):
        return await context.controller.argv()

    OutputFormatter.print_data(_run_with_context(host_config, _argv))


@app.command()
def logs(
    config: Optional[Path] = ConfigOption,
    appdata: Optional[Path] = AppdataOption,
):
    """Print the engine log."""
    host_config = _load_config(config, appdata)
    paths = AppPaths.at(host_config.dpiwarden.appdata_dir)
    if not paths.log_file.exists():
        OutputFormatter.log("No engine log yet.", severity="warning")
        return
    typer.echo(paths.log_file.read_bytes().decode("utf-8", errors="replace"), nl=False)


@app.command("patch-pe")
def patch_pe(path: Path = typer.Argument(..., help="PE executable to patch in place")):
    """Mark a Windows executable as a GUI-subsystem binary (no console window)."""
    try:
        patch_pe_subsystem(path)
    except (OSError, ValueError) as exc:
        OutputFormatter.log(f"Patch failed: {exc}", severity="error")
        raise typer.Exit(code=1)
    OutputFormatter.log(f"Patched {path}.", severity="success")


@app.command()
def reset(
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
    config: Optional[Path] = ConfigOption,
    appdata: Optional[Path] = AppdataOption,
):
    """Delete all appdata; the next start seeds the defaults again."""
    host_config = _load_config(config, appdata)
    _ensure_not_serving(host_config)

    if not yes and not typer.confirm(f"Delete everything in {host_config.dpiwarden.appdata_dir}?"):
        raise typer.Exit(code=1)

    async def _reset() -> None:
        warden = WardenApp(host_config)
        try:
            await warden.reset()
        finally:
            await warden.context.aclose()

    asyncio.run(_reset())
    OutputFormatter.log("Appdata reset.", severity="success")


@settings_app.command("show")
def settings_show(
    as_json: bool = typer.Option(False, "--json", help="Print as JSON on stdout"),
    config: Optional[Path] = ConfigOption,
    appdata: Optional[Path] = AppdataOption,
):
    """Show every key of the settings store."""
    host_config = _load_config(config, appdata)

    async def _all(context: AppContext):
        return await context.registry.settings.all()

    values = _run_with_context(host_config, _all)
    if as_json:
        OutputFormatter.print_data(values)
    else:
        OutputFormatter.print_settings(values)


@settings_app.command("set")
def settings_set(
    key: str = typer.Argument(..., help="Settings key, e.g. updater.interval"),
    value: str = typer.Argument(..., help="JSON value; anything else is stored as a string"),
    config: Optional[Path] = ConfigOption,
    appdata: Optional[Path] = AppdataOption,
):
    """Write one key of the settings store."""
    host_config = _load_config(config, appdata)
    _ensure_not_serving(host_config)
    parsed = _parse_value(value)

    async def _set(context: AppContext) -> None:
        await context.registry.settings.set(key, parsed)

    _run_with_context(host_config, _set)
    OutputFormatter.log(f"{key} = {json.dumps(parsed)}", severity="success")


if __name__ == "__main__":
    app()
