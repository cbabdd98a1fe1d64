"""
Self-update behind a narrow interface.

``ReleaseSelfUpdater`` compares the running version with the latest published
tag and, when they differ, stages the new binary beside the running
executable and hands off to a detached shell that swaps and relaunches it.
The handoff is fire-and-forget: the host shuts itself down right after.
"""

from __future__ import annotations

import asyncio
import logging
import re
import subprocess
import sys
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Protocol

from dpiwarden.core.errors import FetchError, SelfUpdateError
from dpiwarden.core.models import SelfUpdateSettings
from dpiwarden.net.fetch import Fetcher

logger = logging.getLogger(__name__)

ShutdownCallback = Callable[[], Awaitable[None]]


class SelfUpdater(Protocol):
    async def check_and_stage(self, current_version: str) -> bool:
        """Return True when an update was staged and the host is shutting down."""
        ...


class NoopSelfUpdater:
    """Used for source installs and tests."""

    async def check_and_stage(self, current_version: str) -> bool:
        return False


def build_relaunch_command(staged: Path, target: Path, delay_seconds: int, windows: bool) -> List[str]:
    """Shell sequence that waits, moves *staged* over *target* and relaunches it."""
    if windows:
        return [
            "cmd",
            "/c",
            f'timeout /t {delay_seconds} /nobreak & move /y "{staged}" "{target}" '
            f'& powershell Start-Process -FilePath "{target}"',
        ]
    return [
        "sh",
        "-c",
        f'sleep {delay_seconds}; mv -f "{staged}" "{target}"; chmod +x "{target}"; "{target}"',
    ]


class ReleaseSelfUpdater:
    """Replaces a frozen single-binary build with the latest published release."""

    def __init__(
        self,
        fetcher: Fetcher,
        settings: Optional[SelfUpdateSettings] = None,
        shutdown: Optional[ShutdownCallback] = None,
        executable: Optional[Path] = None,
    ) -> None:
        self.fetcher = fetcher
        self.settings = settings or SelfUpdateSettings()
        self.shutdown = shutdown
        self.executable = executable or Path(sys.executable)

    @property
    def is_frozen(self) -> bool:
        return bool(getattr(sys, "frozen", False))

    async def latest_tag(self) -> Optional[str]:
        url = self.settings.latest_url.format(repository=self.settings.repository)
        html = await self.fetcher.text(url)
        pattern = self.settings.tag_pattern.format(repository=re.escape(self.settings.repository))
        match = re.search(pattern, html, re.DOTALL | re.MULTILINE)
        return match.group("tag") if match else None

    async def check_and_stage(self, current_version: str) -> bool:
        if not self.is_frozen:
            logger.debug("Self-update skipped: not a frozen build")
            return False

        try:
            latest = await self.latest_tag()
        except FetchError as exc:
            raise SelfUpdateError(f"Cannot read latest release: {exc}") from exc

        if latest is None or latest.lstrip("v") == current_version.lstrip("v"):
            return False

        binary_name = self.executable.name
        staged = self.executable.with_name("update.bin")
        url = self.settings.download_url.format(repository=self.settings.repository, binary=binary_name)

        try:
            payload = await self.fetcher.content(url)
        except FetchError as exc:
            raise SelfUpdateError(f"Cannot download {url}: {exc}") from exc

        await asyncio.to_thread(staged.write_bytes, payload)
        self.stage_update(staged)
        logger.info("Self-update to %s staged; handing off to the relauncher", latest)

        if self.shutdown is not None:
            await self.shutdown()
        return True

    def stage_update(self, staged: Path) -> None:
        """Spawn the detached replace-and-relaunch sequence."""
        command = build_relaunch_command(
            staged,
            self.executable,
            self.settings.relaunch_delay_seconds,
            windows=sys.platform.startswith("win"),
        )
        options = {}
        if sys.platform.startswith("win"):
            options["creationflags"] = subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            options["start_new_session"] = True

        subprocess.Popen(
            command,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            close_fds=True,
            **options,
        )
