"""
EngineProcessController: owner of the single engine process.

Start sequence
--------------
1. Install the latest engine first when nothing is installed.
2. Truncate the log file.
3. Run the "before" hook (token-substituted shell fragment, best effort).
4. Spawn the engine with the assembled argument vector; stdout and stderr
   go to the log file.
5. A watcher task awaits the exit, runs the "after" hook, performs platform
   cleanup, closes the log and clears the handle, then signals waiters.

``stop()`` sends a termination signal once and awaits that exit signal.
Callers must not run ``start()`` and ``stop()`` concurrently on one controller.
"""

from __future__ import annotations

import asyncio
import logging
import shlex
import subprocess
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO, Callable, List, Optional

from dpiwarden.core.errors import DpiwardenError, SpawnError
from dpiwarden.core.paths import AppPaths
from dpiwarden.engine.platform import HostPlatform
from dpiwarden.engine.states import EngineEvent, EngineState, transition_engine_state
from dpiwarden.storage.registry import ResourceRegistry, SettingKey, substitute_tokens

if TYPE_CHECKING:
    from dpiwarden.engine.installer import EngineInstaller

logger = logging.getLogger(__name__)

PROFILE_SEPARATOR = " --new "

# Called with (pid, installed version) after a spawn and with (None, version) after the exit.
EngineListener = Callable[[Optional[int], Optional[str]], None]


def split_args(text: str) -> List[str]:
    """
    Split a command-line fragment on whitespace, honoring quotes.

    Backslashes are literal so Windows paths survive, and `#` does not start a comment.
    """
    lexer = shlex.shlex(text, posix=True)
    lexer.whitespace_split = True
    lexer.escape = ""
    lexer.commenters = ""
    return list(lexer)


class EngineProcessController:
    """Starts, stops and restarts the engine process."""

    def __init__(
        self,
        registry: ResourceRegistry,
        paths: AppPaths,
        host: Optional[HostPlatform] = None,
        installer: Optional["EngineInstaller"] = None,
    ) -> None:
        self.registry = registry
        self.paths = paths
        self.host = host or HostPlatform.detect()
        self.installer = installer
        self.listeners: List[EngineListener] = []

        self.state: EngineState = EngineState.STOPPED
        self._process: Optional[asyncio.subprocess.Process] = None
        self._exited: Optional[asyncio.Event] = None
        self._watcher: Optional[asyncio.Task] = None
        self._version: Optional[str] = None
        self._terminate_sent = False

    @property
    def binary_path(self) -> Path:
        return self.paths.bin_dir / self.host.engine_binary_name

    @property
    def is_started(self) -> bool:
        return self._process is not None

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    # Lifecycle

    async def start(self) -> None:
        """Start the engine unless it is already running; installs it first if needed."""
        if self.installer is not None and not await self.installer.is_installed():
            await self.installer.install()

        if self.is_started:
            return

        scripts = await self.registry.settings.startup_scripts()
        argv = await self.argv()
        self._version = await self.registry.settings.get(SettingKey.ENGINE_VERSION)

        await asyncio.to_thread(self._truncate_log)
        await self._run_hook("before", scripts.before)

        self.state = transition_engine_state(self.state, EngineEvent.START_REQUESTED)
        log_handle = open(self.paths.log_file, "ab")
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=subprocess.DEVNULL,
                stdout=log_handle,
                stderr=subprocess.STDOUT,
                cwd=str(self.paths.root),
                creationflags=getattr(subprocess, "CREATE_NO_WINDOW", 0) if self.host.is_windows else 0,
            )
        except OSError as exc:
            log_handle.close()
            self.state = transition_engine_state(self.state, EngineEvent.SPAWN_FAILED)
            raise SpawnError(f"Failed to launch {argv[0]}: {exc}") from exc

        self._process = process
        self._terminate_sent = False
        self._exited = asyncio.Event()
        self.state = transition_engine_state(self.state, EngineEvent.SPAWNED)
        self._watcher = asyncio.create_task(
            self._watch_exit(process, scripts.after, log_handle, self._exited),
            name="engine-exit-watcher",
        )
        logger.info("Engine started (pid=%s): %s", process.pid, " ".join(argv))
        self._notify(process.pid)

    async def stop(self, timeout: Optional[float] = None) -> None:
        """
        Terminate the engine and wait until its exit has been fully handled.

        Without *timeout* this waits indefinitely; with one, asyncio.TimeoutError
        propagates and the process keeps its pending termination.
        """
        process = self._process
        exited = self._exited
        if process is None or exited is None:
            return

        if self.state == EngineState.RUNNING:
            self.state = transition_engine_state(self.state, EngineEvent.STOP_REQUESTED)

        if not self._terminate_sent:
            self._terminate_sent = True
            try:
                process.terminate()
            except ProcessLookupError:
                pass

        if timeout is None:
            await exited.wait()
        else:
            await asyncio.wait_for(exited.wait(), timeout)

    async def restart(self) -> None:
        await self.stop()
        await self.start()

    # Command line

    async def substitute_tokens(self, text: str) -> str:
        return await self.registry.substitute_tokens(text)

    async def argv(self) -> List[str]:
        """Assemble the engine argument vector from the current registry state."""
        settings = self.registry.settings
        list_paths = await self.registry.list_paths()

        argv: List[str] = [str(self.binary_path)]

        if await settings.flag(SettingKey.ENGINE_DEBUG):
            argv.append("--debug")

        for name, entry in (await self.registry.lua.all()).items():
            if entry.active:
                argv.append(f"--lua-init=@{self.registry.lua.file_path(name)}")

        for name, entry in (await self.registry.blobs.all()).items():
            if entry.active:
                argv.append(f"--blob={name}:@{self.registry.blobs.file_path(name)}")

        startup_args = await settings.get(SettingKey.STARTUP_ARGS, "")
        argv.extend(split_args(substitute_tokens(str(startup_args), list_paths)))

        profiles = PROFILE_SEPARATOR.join(
            profile.one_line() for profile in await self.registry.profiles.active()
        )
        argv.extend(split_args(substitute_tokens(profiles, list_paths)))

        return argv

    # Logs and platform cleanup

    def read_logs(self) -> str:
        if not self.paths.log_file.exists():
            return ""
        return self.paths.log_file.read_bytes().decode("utf-8", errors="replace")

    async def cleanup_driver(self) -> None:
        """Remove the packet-capture driver service the engine registers on Windows."""
        if not self.host.is_windows:
            return
        await self._run_shell("sc delete windivert & sc stop windivert")

    # Internal helpers

    def _truncate_log(self) -> None:
        self.paths.root.mkdir(parents=True, exist_ok=True)
        self.paths.log_file.write_bytes(b"")

    async def _watch_exit(
        self,
        process: asyncio.subprocess.Process,
        after_script: str,
        log_handle: BinaryIO,
        exited: asyncio.Event,
    ) -> None:
        try:
            returncode = await process.wait()
            logger.info("Engine exited (pid=%s, code=%s)", process.pid, returncode)
            await self._run_hook("after", after_script)
            await self.cleanup_driver()
        finally:
            log_handle.close()
            self._process = None
            self._watcher = None
            self.state = transition_engine_state(self.state, EngineEvent.EXITED)
            self._notify(None)
            exited.set()

    def _notify(self, pid: Optional[int]) -> None:
        for listener in self.listeners:
            try:
                listener(pid, self._version)
            except OSError as exc:
                logger.warning("Engine listener failed: %s", exc)

    async def _run_hook(self, label: str, script: str) -> None:
        if not script or not script.strip():
            return
        try:
            command = await self.substitute_tokens(script)
        except DpiwardenError as exc:
            logger.warning("Skipping %s hook: %s", label, exc)
            return
        returncode = await self._run_shell(command)
        if returncode:
            logger.warning("%s hook exited with code %s", label.capitalize(), returncode)

    async def _run_shell(self, command: str) -> Optional[int]:
        try:
            process = await asyncio.create_subprocess_shell(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                cwd=str(self.paths.root),
            )
            return await process.wait()
        except OSError as exc:
            logger.warning("Shell command failed to run: %s (%s)", command, exc)
            return None
