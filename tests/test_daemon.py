import json
import os

from dpiwarden.runtime.daemon import (
    EngineRecord,
    ServerMetadata,
    ServerMetadataRecorder,
    ServerState,
    clear_server_metadata,
    is_process_alive,
    probe_server_state,
    write_server_metadata,
)


def _metadata(pid: int = 0, **kwargs) -> ServerMetadata:
    return ServerMetadata(pid=pid or os.getpid(), started_at="2026-02-25T00:00:00Z", **kwargs)


def test_probe_absent_when_metadata_missing(paths):
    probe = probe_server_state(paths)

    assert probe.state == ServerState.ABSENT
    assert probe.metadata is None
    assert probe.engine_alive is False


def test_probe_running_for_current_pid(paths):
    write_server_metadata(paths, _metadata(version="0.1.0"))

    probe = probe_server_state(paths)

    assert probe.state == ServerState.RUNNING
    assert probe.metadata.version == "0.1.0"
    assert probe.metadata.engine == EngineRecord()
    assert probe.engine_alive is False


def test_probe_reports_live_engine_from_record(paths, monkeypatch):
    write_server_metadata(paths, _metadata(engine=EngineRecord(pid=5150, version="v0.9.2")))
    monkeypatch.setattr("dpiwarden.runtime.daemon.is_process_alive", lambda pid: pid in (os.getpid(), 5150))

    probe = probe_server_state(paths)

    assert probe.state == ServerState.RUNNING
    assert probe.engine_alive is True
    assert probe.metadata.engine.version == "v0.9.2"


def test_probe_invalid_metadata_is_stale(paths):
    paths.server_metadata.parent.mkdir(parents=True, exist_ok=True)
    paths.server_metadata.write_text("{not-json}")

    probe = probe_server_state(paths)

    assert probe.state == ServerState.STALE
    assert probe.metadata is None
    assert "invalid" in probe.reason.lower()


def test_probe_dead_server_is_stale_even_with_live_engine(paths, monkeypatch):
    write_server_metadata(paths, _metadata(pid=424242, engine=EngineRecord(pid=5150)))
    monkeypatch.setattr("dpiwarden.runtime.daemon.is_process_alive", lambda pid: pid == 5150)

    probe = probe_server_state(paths)

    assert probe.state == ServerState.STALE
    assert probe.engine_alive is False


def test_recorder_tracks_engine_spawn_and_exit(paths):
    recorder = ServerMetadataRecorder(paths, _metadata(version="0.1.0"))
    recorder.write()

    recorder.engine_changed(5150, "v0.9.2")
    on_disk = json.loads(paths.server_metadata.read_text())
    assert on_disk["engine"] == {"pid": 5150, "version": "v0.9.2"}

    recorder.engine_changed(None, "v0.9.2")
    on_disk = json.loads(paths.server_metadata.read_text())
    assert on_disk["engine"] == {"pid": None, "version": "v0.9.2"}
    assert on_disk["pid"] == os.getpid()

    recorder.clear()
    assert paths.server_metadata.exists() is False


def test_clear_server_metadata(paths):
    assert clear_server_metadata(paths) is False
    write_server_metadata(paths, _metadata())

    assert clear_server_metadata(paths) is True
    assert paths.server_metadata.exists() is False


def test_is_process_alive():
    assert is_process_alive(None) is False
    assert is_process_alive(0) is False
    assert is_process_alive(os.getpid()) is True
