from enum import Enum


class DialogState(str, Enum):
    INITIAL = "initial"
    ACTIVE = "active"
    COMPLETED = "completed"


class SessionStatus(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    COMPLETED = "completed"


# Any state may be reset to INITIAL by clear.
DIALOG_TRANSITIONS = {
    DialogState.INITIAL: [DialogState.ACTIVE, DialogState.COMPLETED],
    DialogState.ACTIVE: [DialogState.COMPLETED, DialogState.INITIAL],
    DialogState.COMPLETED: [DialogState.ACTIVE, DialogState.INITIAL],
}

SESSION_TRANSITIONS = {
    SessionStatus.RUNNING: [SessionStatus.STOPPED, SessionStatus.COMPLETED],
    SessionStatus.STOPPED: [SessionStatus.RUNNING],
    SessionStatus.COMPLETED: [SessionStatus.RUNNING],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_state: Enum, to_state: Enum):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def _table_for(state: Enum) -> dict:
    if isinstance(state, DialogState):
        return DIALOG_TRANSITIONS
    return SESSION_TRANSITIONS


def can_transition(from_state: Enum, to_state: Enum) -> bool:
    """Check if transition is valid. Staying in the same state is always allowed."""
    if from_state == to_state:
        return True
    allowed = _table_for(from_state).get(from_state, [])
    return to_state in allowed


def transition(from_state: Enum, to_state: Enum) -> Enum:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def stop_session(current_status: SessionStatus) -> SessionStatus:
    return transition(current_status, SessionStatus.STOPPED)


def start_session(current_status: SessionStatus) -> SessionStatus:
    return transition(current_status, SessionStatus.RUNNING)
