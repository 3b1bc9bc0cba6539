from enum import Enum
from typing import List
from dataclasses import dataclass


class SessionState(str, Enum):
    ACTIVE = "active"
    STOPPED = "stopped"
    EXPIRED = "expired"


TERMINAL_STATES = (SessionState.STOPPED, SessionState.EXPIRED)


class TransitionError(Exception):
    def __init__(self, from_state: str, to_state: str, reason: str = None):
        self.from_state = from_state
        self.to_state = to_state
        self.reason = reason or f"Cannot transition from {from_state} to {to_state}"
        super().__init__(self.reason)


@dataclass
class Transition:
    from_state: SessionState
    to_state: SessionState
    action: str


class SessionStateMachine:
    # Lazy expiry goes through "stop" as well; nothing assigns EXPIRED today.
    TRANSITIONS = [
        Transition(SessionState.ACTIVE, SessionState.STOPPED, "stop"),
    ]

    ALLOWED_ACTIONS = {
        SessionState.ACTIVE: ["stop", "upload", "view"],
        SessionState.STOPPED: ["view", "upload"],
        SessionState.EXPIRED: ["view", "upload"],
    }

    def __init__(self, initial_state: SessionState = SessionState.ACTIVE):
        self._state = initial_state
        self._history: List[tuple] = []

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    @property
    def allowed_actions(self) -> List[str]:
        return self.ALLOWED_ACTIONS.get(self._state, [])

    def can_transition(self, action: str) -> bool:
        for t in self.TRANSITIONS:
            if t.from_state == self._state and t.action == action:
                return True
        return False

    def can_perform(self, action: str) -> bool:
        return action in self.allowed_actions

    def transition(self, action: str) -> SessionState:
        for t in self.TRANSITIONS:
            if t.from_state == self._state and t.action == action:
                old_state = self._state
                self._state = t.to_state
                self._history.append((old_state, action, self._state))
                return self._state

        raise TransitionError(
            self._state.value,
            "unknown",
            f"No valid transition for action '{action}' from state '{self._state.value}'"
        )

    def get_history(self) -> List[tuple]:
        return self._history.copy()

    @classmethod
    def from_state_string(cls, state_str: str) -> "SessionStateMachine":
        """Unknown values are treated as stopped so they can never be torn down twice."""
        try:
            state = SessionState(state_str)
        except ValueError:
            state = SessionState.STOPPED
        return cls(initial_state=state)
