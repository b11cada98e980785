"""
Unit tests for the session state machine.
"""

import pytest

from enigmo.constants import SESSION_AUTH_TIMEOUT
from enigmo.session_fsm import SessionEvent, SessionState, SessionStateMachine


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def _activate(fsm):
    assert fsm.transition(SessionEvent.AUTH_ACCEPTED)
    assert fsm.transition(SessionEvent.ACTIVATED)


def test_happy_path():
    fsm = SessionStateMachine()
    assert fsm.get_state() == SessionState.UNAUTHENTICATED

    _activate(fsm)
    assert fsm.is_active()

    assert fsm.transition(SessionEvent.REAUTHENTICATED)
    assert fsm.is_active()

    assert fsm.transition(SessionEvent.LOGOUT)
    assert fsm.is_closed()


@pytest.mark.parametrize(
    "state, event",
    [
        (SessionState.UNAUTHENTICATED, SessionEvent.ACTIVATED),
        (SessionState.UNAUTHENTICATED, SessionEvent.REAUTHENTICATED),
        (SessionState.AUTHENTICATED, SessionEvent.AUTH_ACCEPTED),
        (SessionState.ACTIVE, SessionEvent.AUTH_ACCEPTED),
        (SessionState.CLOSED, SessionEvent.AUTH_ACCEPTED),
        (SessionState.CLOSED, SessionEvent.TRANSPORT_CLOSED),
    ],
)
def test_invalid_transitions_leave_state(state, event):
    fsm = SessionStateMachine(initial_state=state)

    assert fsm.transition(event) is False
    assert fsm.get_state() == state


def test_closed_callback_runs_once():
    fsm = SessionStateMachine()
    closed = []
    fsm.on_closed = lambda: closed.append(True)
    _activate(fsm)

    fsm.transition(SessionEvent.TRANSPORT_CLOSED)
    fsm.transition(SessionEvent.LOGOUT)

    assert closed == [True]


def test_callback_errors_do_not_block_transition():
    fsm = SessionStateMachine()

    def broken(old, new):
        raise RuntimeError("boom")

    fsm.on_state_change = broken

    assert fsm.transition(SessionEvent.AUTH_ACCEPTED)
    assert fsm.get_state() == SessionState.AUTHENTICATED


def test_auth_timeout_only_before_active():
    clock = FakeClock()
    fsm = SessionStateMachine(clock=clock)

    clock.now = 10.0
    assert fsm.get_timeout_remaining() == SESSION_AUTH_TIMEOUT - 10.0

    clock.now = SESSION_AUTH_TIMEOUT + 5
    assert fsm.get_timeout_remaining() == 0.0

    _activate(fsm)
    assert fsm.get_timeout_remaining() is None


def test_history_and_statistics():
    fsm = SessionStateMachine()
    _activate(fsm)
    fsm.transition(SessionEvent.REAUTHENTICATED)

    history = fsm.get_history()
    assert [t.event for t in history] == [
        SessionEvent.AUTH_ACCEPTED,
        SessionEvent.ACTIVATED,
        SessionEvent.REAUTHENTICATED,
    ]

    stats = fsm.get_statistics()
    assert stats["current_state"] == "ACTIVE"
    assert stats["previous_state"] == "ACTIVE"
    assert stats["total_transitions"] == 3
    assert stats["event_counts"]["REAUTHENTICATED"] == 1


def test_history_is_bounded():
    fsm = SessionStateMachine()
    fsm.max_history = 5
    _activate(fsm)
    for _ in range(20):
        fsm.transition(SessionEvent.REAUTHENTICATED)

    assert len(fsm.transition_history) == 5
