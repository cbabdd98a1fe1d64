import pytest

from dpiwarden.engine.states import EngineEvent, EngineState, transition_engine_state


def test_engine_state_happy_path():
    state = EngineState.STOPPED
    state = transition_engine_state(state, EngineEvent.START_REQUESTED)
    assert state == EngineState.STARTING

    state = transition_engine_state(state, EngineEvent.SPAWNED)
    assert state == EngineState.RUNNING

    state = transition_engine_state(state, EngineEvent.STOP_REQUESTED)
    assert state == EngineState.STOPPING

    state = transition_engine_state(state, EngineEvent.EXITED)
    assert state == EngineState.STOPPED


def test_engine_spawn_failure_returns_to_stopped():
    state = transition_engine_state(EngineState.STARTING, EngineEvent.SPAWN_FAILED)
    assert state == EngineState.STOPPED


def test_engine_may_exit_on_its_own():
    assert transition_engine_state(EngineState.RUNNING, EngineEvent.EXITED) == EngineState.STOPPED


def test_repeated_stop_request_is_idempotent():
    assert transition_engine_state(EngineState.STOPPING, EngineEvent.STOP_REQUESTED) == EngineState.STOPPING


@pytest.mark.parametrize(
    "state,event",
    [
        (EngineState.STOPPED, EngineEvent.EXITED),
        (EngineState.STOPPED, EngineEvent.STOP_REQUESTED),
        (EngineState.STARTING, EngineEvent.START_REQUESTED),
        (EngineState.RUNNING, EngineEvent.START_REQUESTED),
        (EngineState.STOPPING, EngineEvent.SPAWNED),
    ],
)
def test_engine_invalid_transitions_raise(state, event):
    with pytest.raises(ValueError):
        transition_engine_state(state, event)
