"""Host process lifecycle and server liveness metadata."""

from dpiwarden.runtime.app import WardenApp, wipe_appdata
from dpiwarden.runtime.daemon import (
	EngineRecord,
	ServerMetadata,
	ServerMetadataRecorder,
	ServerProbeResult,
	ServerState,
	clear_server_metadata,
	is_process_alive,
	probe_server_state,
	write_server_metadata,
)

__all__ = [
	"WardenApp",
	"wipe_appdata",
	"EngineRecord",
	"ServerMetadata",
	"ServerMetadataRecorder",
	"ServerProbeResult",
	"ServerState",
	"clear_server_metadata",
	"is_process_alive",
	"probe_server_state",
	"write_server_metadata",
]
