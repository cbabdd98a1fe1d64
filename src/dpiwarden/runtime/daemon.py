"""
Server metadata: `<appdata>/server.json`.

`serve` writes it on startup, keeps its engine record current while the
engine comes and goes, and removes it on shutdown. Every other command reads
it to tell whether a server owns the appdata directory and whether that
server's engine is alive.
"""

from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, ValidationError

from dpiwarden.core.paths import AppPaths


class ServerState(str, Enum):
    ABSENT = "absent"
    RUNNING = "running"
    STALE = "stale"


class EngineRecord(BaseModel):
    """The engine process a server last reported; pid is None while it is down."""

    pid: Optional[int] = Field(default=None, gt=0)
    version: Optional[str] = None


class ServerMetadata(BaseModel):
    pid: int = Field(gt=0)
    started_at: str
    version: str = ""
    engine: EngineRecord = Field(default_factory=EngineRecord)


class ServerProbeResult(BaseModel):
    state: ServerState
    metadata: Optional[ServerMetadata] = None
    reason: str
    engine_alive: bool = False


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def is_process_alive(pid: Optional[int]) -> bool:
    """Signal 0 probes a pid without touching it; EPERM still means it exists."""
    if not pid or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def write_server_metadata(paths: AppPaths, metadata: ServerMetadata) -> None:
    paths.server_metadata.parent.mkdir(parents=True, exist_ok=True)
    paths.server_metadata.write_text(metadata.model_dump_json(indent=2), encoding="utf-8")


def clear_server_metadata(paths: AppPaths) -> bool:
    """Remove server metadata and return whether anything was removed."""
    if not paths.server_metadata.exists():
        return False
    paths.server_metadata.unlink()
    return True


def probe_server_state(paths: AppPaths) -> ServerProbeResult:
    """Classify the appdata directory's server as absent, running or stale."""
    if not paths.server_metadata.exists():
        return ServerProbeResult(state=ServerState.ABSENT, reason="No server metadata.")

    try:
        metadata = ServerMetadata.model_validate(json.loads(paths.server_metadata.read_text(encoding="utf-8")))
    except (OSError, json.JSONDecodeError, ValidationError) as exc:
        return ServerProbeResult(state=ServerState.STALE, reason=f"Invalid server metadata: {exc}")

    if not is_process_alive(metadata.pid):
        return ServerProbeResult(
            state=ServerState.STALE,
            metadata=metadata,
            reason=f"Server pid={metadata.pid} is not alive.",
        )

    return ServerProbeResult(
        state=ServerState.RUNNING,
        metadata=metadata,
        reason=f"Server pid={metadata.pid} is alive.",
        engine_alive=is_process_alive(metadata.engine.pid),
    )


class ServerMetadataRecorder:
    """Owns server.json for the lifetime of one `serve` process."""

    def __init__(self, paths: AppPaths, metadata: ServerMetadata) -> None:
        self.paths = paths
        self.metadata = metadata

    def write(self) -> None:
        write_server_metadata(self.paths, self.metadata)

    def engine_changed(self, pid: Optional[int], version: Optional[str]) -> None:
        self.metadata.engine = EngineRecord(pid=pid, version=version)
        self.write()

    def clear(self) -> None:
        clear_server_metadata(self.paths)
