from __future__ import annotations

from enum import Enum


class EngineState(str, Enum):
    """Lifecycle states of the supervised engine process."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class EngineEvent(str, Enum):
    """Events that drive engine state transitions."""

    START_REQUESTED = "start_requested"
    SPAWNED = "spawned"
    SPAWN_FAILED = "spawn_failed"
    STOP_REQUESTED = "stop_requested"
    EXITED = "exited"


def transition_engine_state(current: EngineState, event: EngineEvent) -> EngineState:
    """Compute the next engine state for a given event.

    The process can exit on its own at any point after it was spawned, so
    EXITED is accepted from both RUNNING and STOPPING.
    Invalid transitions raise ValueError.
    """

    if current == EngineState.STOPPED:
        if event == EngineEvent.START_REQUESTED:
            return EngineState.STARTING
        raise ValueError(f"Invalid engine transition: {current} -> {event}")

    if current == EngineState.STARTING:
        if event == EngineEvent.SPAWNED:
            return EngineState.RUNNING
        if event == EngineEvent.SPAWN_FAILED:
            return EngineState.STOPPED
        raise ValueError(f"Invalid engine transition: {current} -> {event}")

    if current == EngineState.RUNNING:
        if event == EngineEvent.STOP_REQUESTED:
            return EngineState.STOPPING
        if event == EngineEvent.EXITED:
            return EngineState.STOPPED
        raise ValueError(f"Invalid engine transition: {current} -> {event}")

    if current == EngineState.STOPPING:
        if event == EngineEvent.EXITED:
            return EngineState.STOPPED
        if event == EngineEvent.STOP_REQUESTED:
            return EngineState.STOPPING
        raise ValueError(f"Invalid engine transition: {current} -> {event}")

    raise ValueError(f"Unknown engine state: {current}")
