"""
Host platform detection and platform-specific binary post-processing.

Release archives name their binary directories ``<platform>-<arch>``, e.g.
``linux-x86_64`` or ``windows-x86_64``.
"""

from __future__ import annotations

import logging
import os
import platform as _platform
import stat
import struct
import sys
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

IMAGE_SUBSYSTEM_WINDOWS_GUI = 2
PE_HEADER_OFFSET_LOCATION = 0x3C
SUBSYSTEM_OFFSET = 0x5C

_ARCH_ALIASES = {
    "amd64": "x86_64",
    "x86_64": "x86_64",
    "x64": "x86_64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "i386": "x86",
    "i686": "x86",
    "x86": "x86",
}

_PLATFORM_ALIASES = {
    "win32": "windows",
    "cygwin": "windows",
    "linux": "linux",
    "darwin": "darwin",
    "freebsd": "freebsd",
}


@dataclass(frozen=True)
class HostPlatform:
    """Platform/architecture pair as used in release archive paths."""

    system: str
    arch: str

    @classmethod
    def detect(cls) -> "HostPlatform":
        machine = _platform.machine().lower()
        system = sys.platform
        for prefix, name in _PLATFORM_ALIASES.items():
            if system.startswith(prefix):
                system = name
                break
        return cls(system=system, arch=_ARCH_ALIASES.get(machine, machine))

    @property
    def is_windows(self) -> bool:
        return self.system == "windows"

    @property
    def binaries_dir(self) -> str:
        return f"{self.system}-{self.arch}"

    @property
    def engine_binary_name(self) -> str:
        return "winws2.exe" if self.is_windows else "nfqws2"


def patch_pe_subsystem(file_path: Path) -> None:
    """
    Mark a PE executable as a GUI-subsystem binary so it starts without a console window.

    Reads the PE header offset (u32 LE at 0x3C) and writes subsystem 2
    (u16 LE) at that offset + 0x5C, in place.
    """
    with open(file_path, "r+b") as handle:
        handle.seek(PE_HEADER_OFFSET_LOCATION)
        raw_offset = handle.read(4)
        if len(raw_offset) != 4:
            raise ValueError(f"{file_path} is too short to be a PE executable")

        (pe_header_offset,) = struct.unpack("<I", raw_offset)
        handle.seek(pe_header_offset + SUBSYSTEM_OFFSET)
        handle.write(struct.pack("<H", IMAGE_SUBSYSTEM_WINDOWS_GUI))


def make_executable(file_path: Path) -> None:
    mode = os.stat(file_path).st_mode
    os.chmod(file_path, mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
