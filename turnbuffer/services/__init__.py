from turnbuffer.services.errors import (
    BufferingError,
    EventValidationError,
    PermanentError,
    TransientDependencyError,
)
from turnbuffer.services.state_machine import (
    InvalidTransitionError,
    JobStatus,
    SessionStatus,
    can_transition,
    transition,
)
