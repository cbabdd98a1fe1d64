import os
import struct
import sys

import pytest

from dpiwarden.engine.platform import HostPlatform, make_executable, patch_pe_subsystem


def _fake_pe(pe_offset: int = 0x80, size: int = 0x200) -> bytearray:
    data = bytearray(size)
    data[0:2] = b"MZ"
    data[0x3C:0x40] = struct.pack("<I", pe_offset)
    data[pe_offset:pe_offset + 4] = b"PE\x00\x00"
    data[pe_offset + 0x5C:pe_offset + 0x5E] = struct.pack("<H", 3)
    return data


def test_patch_pe_subsystem_writes_gui_subsystem(tmp_path):
    exe = tmp_path / "winws2.exe"
    original = _fake_pe()
    exe.write_bytes(bytes(original))

    patch_pe_subsystem(exe)

    patched = exe.read_bytes()
    assert patched[0x80 + 0x5C:0x80 + 0x5E] == b"\x02\x00"
    assert len(patched) == len(original)
    assert patched[:0x80 + 0x5C] == bytes(original[:0x80 + 0x5C])
    assert patched[0x80 + 0x5E:] == bytes(original[0x80 + 0x5E:])


def test_patch_pe_subsystem_rejects_truncated_file(tmp_path):
    exe = tmp_path / "tiny.exe"
    exe.write_bytes(b"MZ")

    with pytest.raises(ValueError):
        patch_pe_subsystem(exe)


def test_host_platform_names():
    linux = HostPlatform(system="linux", arch="x86_64")
    windows = HostPlatform(system="windows", arch="x86_64")

    assert linux.binaries_dir == "linux-x86_64"
    assert linux.engine_binary_name == "nfqws2"
    assert linux.is_windows is False
    assert windows.binaries_dir == "windows-x86_64"
    assert windows.engine_binary_name == "winws2.exe"
    assert windows.is_windows is True


def test_detect_normalizes_arch(monkeypatch):
    monkeypatch.setattr("dpiwarden.engine.platform._platform.machine", lambda: "AMD64")
    monkeypatch.setattr("dpiwarden.engine.platform.sys.platform", "win32")

    host = HostPlatform.detect()

    assert host == HostPlatform(system="windows", arch="x86_64")


@pytest.mark.skipif(sys.platform.startswith("win"), reason="POSIX permission bits")
def test_make_executable_sets_exec_bits(tmp_path):
    binary = tmp_path / "nfqws2"
    binary.write_text("#!/bin/sh\n")
    os.chmod(binary, 0o644)

    make_executable(binary)

    assert os.access(binary, os.X_OK) is True
