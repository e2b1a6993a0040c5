from enum import Enum, auto


class ConnectionState(Enum):
    DISCONNECTED = auto()
    CONNECTING = auto()
    AUTHENTICATING = auto()
    READY = auto()


class ReloadCycleState(Enum):
    IDLE = auto()
    RUNNING = auto()
    PENDING_RETRY = auto()


VALID_CONNECTION_TRANSITIONS: dict[ConnectionState, set[ConnectionState]] = {
    ConnectionState.DISCONNECTED: {ConnectionState.CONNECTING},
    ConnectionState.CONNECTING: {ConnectionState.AUTHENTICATING, ConnectionState.DISCONNECTED},
    ConnectionState.AUTHENTICATING: {ConnectionState.READY, ConnectionState.DISCONNECTED},
    ConnectionState.READY: {ConnectionState.DISCONNECTED},
}

VALID_CYCLE_TRANSITIONS: dict[ReloadCycleState, set[ReloadCycleState]] = {
    ReloadCycleState.IDLE: {ReloadCycleState.RUNNING},
    ReloadCycleState.RUNNING: {ReloadCycleState.IDLE, ReloadCycleState.PENDING_RETRY},
    ReloadCycleState.PENDING_RETRY: {ReloadCycleState.RUNNING, ReloadCycleState.IDLE},
}


class InvalidTransitionError(Exception):
    pass


def validate_connection_transition(current: ConnectionState, target: ConnectionState) -> None:
    if target not in VALID_CONNECTION_TRANSITIONS.get(current, set()):
        raise InvalidTransitionError(f"Cannot transition from {current.name} to {target.name}")


def validate_cycle_transition(current: ReloadCycleState, target: ReloadCycleState) -> None:
    if target not in VALID_CYCLE_TRANSITIONS.get(current, set()):
        raise InvalidTransitionError(f"Cannot transition from {current.name} to {target.name}")
