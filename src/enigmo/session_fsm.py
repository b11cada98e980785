"""
Enigmo - Session state machine.

Formal lifecycle of one client connection to the relay:

    UNAUTHENTICATED --AUTH_ACCEPTED--> AUTHENTICATED --ACTIVATED--> ACTIVE
    ACTIVE --REAUTHENTICATED--> ACTIVE
    any live state --LOGOUT / TRANSPORT_CLOSED--> CLOSED

CLOSED is terminal. Routing operations are only permitted in ACTIVE.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional

from .constants import SESSION_AUTH_TIMEOUT, STATE_MAX_HISTORY

logger = logging.getLogger(__name__)


class SessionState(Enum):
    """Session states for relay connections."""

    UNAUTHENTICATED = auto()  # Transport open, no identity bound yet
    AUTHENTICATED = auto()  # Identity accepted, directory not yet updated
    ACTIVE = auto()  # Registered online and allowed to route
    CLOSED = auto()  # Terminal


class SessionEvent(Enum):
    """Events that trigger state transitions."""

    AUTH_ACCEPTED = auto()
    ACTIVATED = auto()
    REAUTHENTICATED = auto()
    LOGOUT = auto()
    TRANSPORT_CLOSED = auto()


@dataclass
class StateTransition:
    """Represents a state transition."""

    from_state: SessionState
    event: SessionEvent
    to_state: SessionState
    timestamp: float = field(default_factory=time.time)


class SessionStateMachine:
    """
    Finite state machine for one relay session.

    Enforces valid transitions and keeps a bounded transition history.
    """

    TRANSITIONS: Dict[SessionState, Dict[SessionEvent, SessionState]] = {
        SessionState.UNAUTHENTICATED: {
            SessionEvent.AUTH_ACCEPTED: SessionState.AUTHENTICATED,
            SessionEvent.LOGOUT: SessionState.CLOSED,
            SessionEvent.TRANSPORT_CLOSED: SessionState.CLOSED,
        },
        SessionState.AUTHENTICATED: {
            SessionEvent.ACTIVATED: SessionState.ACTIVE,
            SessionEvent.LOGOUT: SessionState.CLOSED,
            SessionEvent.TRANSPORT_CLOSED: SessionState.CLOSED,
        },
        SessionState.ACTIVE: {
            SessionEvent.REAUTHENTICATED: SessionState.ACTIVE,
            SessionEvent.LOGOUT: SessionState.CLOSED,
            SessionEvent.TRANSPORT_CLOSED: SessionState.CLOSED,
        },
        SessionState.CLOSED: {},
    }

    # Seconds a session may stay in a state before the transport drops it
    STATE_TIMEOUTS: Dict[SessionState, Optional[float]] = {
        SessionState.UNAUTHENTICATED: SESSION_AUTH_TIMEOUT,
        SessionState.AUTHENTICATED: SESSION_AUTH_TIMEOUT,
        SessionState.ACTIVE: None,
        SessionState.CLOSED: None,
    }

    def __init__(
        self,
        initial_state: SessionState = SessionState.UNAUTHENTICATED,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.current_state = initial_state
        self.previous_state: Optional[SessionState] = None
        self._clock = clock
        self.state_entry_time = clock()
        self.transition_history: List[StateTransition] = []
        self.max_history = STATE_MAX_HISTORY

        self.on_state_change: Optional[Callable[[SessionState, SessionState], None]] = None
        self.on_closed: Optional[Callable[[], None]] = None

    def transition(self, event: SessionEvent) -> bool:
        """
        Attempt a state transition.

        Returns:
            True if the transition was applied, False if it is not allowed
            from the current state
        """
        if not self.is_valid_transition(self.current_state, event):
            logger.warning(f"Invalid session transition: {self.current_state.name} + {event.name}")
            return False

        new_state = self.TRANSITIONS[self.current_state][event]
        old_state = self.current_state
        self.previous_state = old_state
        self.current_state = new_state
        self.state_entry_time = self._clock()

        self.transition_history.append(StateTransition(old_state, event, new_state))
        if len(self.transition_history) > self.max_history:
            self.transition_history = self.transition_history[-self.max_history :]

        logger.debug(f"Session transition: {old_state.name} -> {new_state.name} (event: {event.name})")

        if self.on_state_change:
            try:
                self.on_state_change(old_state, new_state)
            except Exception as e:
                logger.error(f"State change callback error: {e}")

        if new_state == SessionState.CLOSED and old_state != SessionState.CLOSED and self.on_closed:
            try:
                self.on_closed()
            except Exception as e:
                logger.error(f"Closed callback error: {e}")

        return True

    def is_valid_transition(self, from_state: SessionState, event: SessionEvent) -> bool:
        return event in self.TRANSITIONS.get(from_state, {})

    def get_state(self) -> SessionState:
        return self.current_state

    def is_active(self) -> bool:
        return self.current_state == SessionState.ACTIVE

    def is_closed(self) -> bool:
        return self.current_state == SessionState.CLOSED

    def get_time_in_state(self) -> float:
        """Get time spent in current state (seconds)."""
        return self._clock() - self.state_entry_time

    def get_timeout_remaining(self) -> Optional[float]:
        """Seconds left before the current state times out, or None if it never does."""
        timeout = self.STATE_TIMEOUTS.get(self.current_state)
        if timeout is None:
            return None
        return max(0.0, timeout - self.get_time_in_state())

    def get_history(self, count: int = 10) -> List[StateTransition]:
        return self.transition_history[-count:]

    def get_statistics(self) -> Dict[str, Any]:
        event_counts: Dict[str, int] = {}
        for transition in self.transition_history:
            event_counts[transition.event.name] = event_counts.get(transition.event.name, 0) + 1

        return {
            "current_state": self.current_state.name,
            "previous_state": self.previous_state.name if self.previous_state else None,
            "time_in_state": self.get_time_in_state(),
            "timeout_remaining": self.get_timeout_remaining(),
            "total_transitions": len(self.transition_history),
            "event_counts": event_counts,
        }

    def __repr__(self) -> str:
        return (
            f"SessionStateMachine(state={self.current_state.name}, "
            f"time_in_state={self.get_time_in_state():.1f}s)"
        )
