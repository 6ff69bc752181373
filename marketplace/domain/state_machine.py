# marketplace/domain/state_machine.py

from enum import Enum
from typing import Dict, Set

from marketplace.domain.exceptions import InvalidStateTransitionError


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CHECKED_IN = "checked_in"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


class OrchestrationState(str, Enum):
    IDLE = "idle"
    IN_PROGRESS = "in_progress"
    COMMITTED = "committed"
    FANNING_OUT = "fanning_out"
    DONE = "done"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


class StateMachine:
    """
    Transition table shared by the lifecycle controllers below.
    Subclasses declare the state enum and the legal transitions.
    """

    _STATE_TYPE: type[Enum] = Enum
    _ALLOWED_TRANSITIONS: Dict[Enum, Set[Enum]] = {}

    @classmethod
    def can_transition(cls, from_status, to_status) -> bool:
        """
        Returns True if transition is allowed.
        """
        cls._ensure_valid_status(from_status)
        cls._ensure_valid_status(to_status)

        return to_status in cls._ALLOWED_TRANSITIONS.get(from_status, set())

    @classmethod
    def validate_transition(cls, from_status, to_status) -> None:
        """
        Raises InvalidStateTransitionError if transition is illegal.
        """
        if not cls.can_transition(from_status, to_status):
            raise InvalidStateTransitionError(
                from_state=from_status.value,
                to_state=to_status.value,
            )

    @classmethod
    def is_terminal(cls, status) -> bool:
        cls._ensure_valid_status(status)
        return len(cls._ALLOWED_TRANSITIONS.get(status, set())) == 0

    @classmethod
    def get_allowed_transitions(cls, status) -> Set:
        cls._ensure_valid_status(status)
        return cls._ALLOWED_TRANSITIONS.get(status, set())

    @classmethod
    def _ensure_valid_status(cls, status) -> None:
        if not isinstance(status, cls._STATE_TYPE):
            raise TypeError(
                f"Expected {cls._STATE_TYPE.__name__}, got {type(status)}"
            )


class BookingStateMachine(StateMachine):
    """
    Central lifecycle controller for dine-in booking transitions.
    """

    _STATE_TYPE = BookingStatus
    _ALLOWED_TRANSITIONS: Dict[BookingStatus, Set[BookingStatus]] = {
        BookingStatus.PENDING: {
            BookingStatus.CONFIRMED,
            BookingStatus.CHECKED_IN,
            BookingStatus.CANCELLED,
        },
        BookingStatus.CONFIRMED: {
            BookingStatus.CHECKED_IN,
            BookingStatus.CANCELLED,
            BookingStatus.NO_SHOW,
        },
        BookingStatus.CHECKED_IN: {
            BookingStatus.COMPLETED,
        },
        BookingStatus.COMPLETED: set(),
        BookingStatus.CANCELLED: set(),
        BookingStatus.NO_SHOW: set(),
    }


class OrchestrationStateMachine(StateMachine):
    """
    Lifecycle of a single orchestrated write.

    Once committed, a call can only finish (done) or fail on audit escalation;
    it never returns to rolled_back.
    """

    _STATE_TYPE = OrchestrationState
    _ALLOWED_TRANSITIONS: Dict[OrchestrationState, Set[OrchestrationState]] = {
        OrchestrationState.IDLE: {
            OrchestrationState.IN_PROGRESS,
            OrchestrationState.FAILED,
        },
        OrchestrationState.IN_PROGRESS: {
            OrchestrationState.COMMITTED,
            OrchestrationState.ROLLED_BACK,
        },
        OrchestrationState.COMMITTED: {
            OrchestrationState.FANNING_OUT,
        },
        OrchestrationState.FANNING_OUT: {
            OrchestrationState.DONE,
            OrchestrationState.FAILED,
        },
        OrchestrationState.ROLLED_BACK: {
            OrchestrationState.FAILED,
        },
        OrchestrationState.DONE: set(),
        OrchestrationState.FAILED: set(),
    }
