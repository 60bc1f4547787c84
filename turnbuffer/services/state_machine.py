from enum import Enum


class SessionStatus(str, Enum):
    ACTIVE = "active"
    PROCESSING = "processing"
    COMPLETED = "completed"


class JobStatus(str, Enum):
    SCHEDULED = "scheduled"
    CLAIMED = "claimed"
    DONE = "done"
    FAILED = "failed"


SESSION_TRANSITIONS = {
    SessionStatus.ACTIVE: [SessionStatus.PROCESSING],
    SessionStatus.PROCESSING: [SessionStatus.COMPLETED],
    SessionStatus.COMPLETED: [],
}

# claimed -> scheduled is the retry / stale-claim requeue path.
JOB_TRANSITIONS = {
    JobStatus.SCHEDULED: [JobStatus.CLAIMED],
    JobStatus.CLAIMED: [JobStatus.DONE, JobStatus.FAILED, JobStatus.SCHEDULED],
    JobStatus.DONE: [],
    JobStatus.FAILED: [],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_state: Enum, to_state: Enum):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def can_transition(from_state: Enum, to_state: Enum) -> bool:
    """Check if transition is valid."""
    if isinstance(from_state, SessionStatus):
        allowed = SESSION_TRANSITIONS.get(from_state, [])
    else:
        allowed = JOB_TRANSITIONS.get(from_state, [])
    return to_state in allowed


def transition(from_state: Enum, to_state: Enum) -> Enum:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state
