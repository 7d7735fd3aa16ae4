"""Job lifecycle transition rules."""

from lectern.errors import ApiError
from lectern.schemas.job import JobState

OUTCOME_STATES: frozenset[JobState] = frozenset(
    {
        JobState.COMPLETED,
        JobState.FAILED,
        JobState.TIMED_OUT,
        JobState.CANCELLED,
    }
)
UNRESOLVED_STATES: frozenset[JobState] = frozenset(
    {
        JobState.CREATED,
        JobState.SUBMITTED,
        JobState.POLLING,
    }
)

_ALLOWED_TRANSITIONS: dict[JobState, set[JobState]] = {
    JobState.CREATED: {JobState.SUBMITTED, JobState.FAILED, JobState.TIMED_OUT, JobState.CANCELLED},
    JobState.SUBMITTED: {JobState.POLLING, JobState.FAILED, JobState.TIMED_OUT, JobState.CANCELLED},
    JobState.POLLING: {JobState.COMPLETED, JobState.FAILED, JobState.TIMED_OUT, JobState.CANCELLED},
    JobState.COMPLETED: {JobState.CLEANED_UP},
    JobState.FAILED: {JobState.CLEANED_UP},
    JobState.TIMED_OUT: {JobState.CLEANED_UP},
    JobState.CANCELLED: {JobState.CLEANED_UP},
    JobState.CLEANED_UP: set(),
}


def is_terminal(state: JobState) -> bool:
    """Outcome states and CLEANED_UP never return to an unresolved state."""
    return state in OUTCOME_STATES or state is JobState.CLEANED_UP


def allowed_next_states(state: JobState) -> list[JobState]:
    """Return deterministically ordered allowed successors for a state."""
    return sorted(_ALLOWED_TRANSITIONS.get(state, set()), key=lambda s: s.value)


def ensure_transition(old_state: JobState, new_state: JobState) -> None:
    """Validate transition according to lifecycle rules."""
    if is_terminal(old_state) and new_state not in _ALLOWED_TRANSITIONS[old_state]:
        raise ApiError(
            status_code=409,
            code="fsm_terminal_immutable",
            message="Terminal state cannot be mutated",
            details={
                "current_state": old_state,
                "attempted_state": new_state,
                "allowed_next_states": allowed_next_states(old_state),
            },
        )

    if new_state not in _ALLOWED_TRANSITIONS.get(old_state, set()):
        raise ApiError(
            status_code=409,
            code="fsm_transition_invalid",
            message="Invalid state transition",
            details={
                "current_state": old_state,
                "attempted_state": new_state,
                "allowed_next_states": allowed_next_states(old_state),
            },
        )
