import pytest

from varnishconf.domain.state import (
    ConnectionState,
    InvalidTransitionError,
    ReloadCycleState,
    validate_connection_transition,
    validate_cycle_transition,
)


class TestConnectionTransitions:
    def test_connect_authenticate_ready(self):
        validate_connection_transition(ConnectionState.DISCONNECTED, ConnectionState.CONNECTING)
        validate_connection_transition(ConnectionState.CONNECTING, ConnectionState.AUTHENTICATING)
        validate_connection_transition(ConnectionState.AUTHENTICATING, ConnectionState.READY)

    def test_any_live_state_can_drop(self):
        for state in (ConnectionState.CONNECTING, ConnectionState.AUTHENTICATING, ConnectionState.READY):
            validate_connection_transition(state, ConnectionState.DISCONNECTED)

    def test_invalid_disconnected_to_ready(self):
        with pytest.raises(InvalidTransitionError):
            validate_connection_transition(ConnectionState.DISCONNECTED, ConnectionState.READY)

    def test_invalid_connecting_to_ready(self):
        with pytest.raises(InvalidTransitionError):
            validate_connection_transition(ConnectionState.CONNECTING, ConnectionState.READY)


class TestCycleTransitions:
    def test_idle_to_running(self):
        validate_cycle_transition(ReloadCycleState.IDLE, ReloadCycleState.RUNNING)

    def test_running_to_idle(self):
        validate_cycle_transition(ReloadCycleState.RUNNING, ReloadCycleState.IDLE)

    def test_retry_loop(self):
        validate_cycle_transition(ReloadCycleState.RUNNING, ReloadCycleState.PENDING_RETRY)
        validate_cycle_transition(ReloadCycleState.PENDING_RETRY, ReloadCycleState.RUNNING)

    def test_retry_abandoned(self):
        validate_cycle_transition(ReloadCycleState.PENDING_RETRY, ReloadCycleState.IDLE)

    def test_invalid_idle_to_pending_retry(self):
        with pytest.raises(InvalidTransitionError):
            validate_cycle_transition(ReloadCycleState.IDLE, ReloadCycleState.PENDING_RETRY)

    def test_invalid_running_to_running(self):
        with pytest.raises(InvalidTransitionError):
            validate_cycle_transition(ReloadCycleState.RUNNING, ReloadCycleState.RUNNING)
