"""
Edit Session State Machine
==========================
Lifecycle of one order editing session.

    LOADING -> EDITING <-> PERSISTING
               EDITING -> COMMITTING -> COMMITTED
                          COMMITTING -> EDITING      (save failed, draft kept)
    LOADING | EDITING | PERSISTING -> DISCARDED      (draft deleted)
    LOADING | EDITING | PERSISTING -> CLOSED         (editor left, draft kept)

Items may only change in EDITING or PERSISTING.
"""

import logging
from enum import Enum
from typing import Dict, List, Optional, Union
from datetime import datetime, timezone

logger = logging.getLogger(__name__)


class SessionState(Enum):
    LOADING = "loading"          # Looking up an existing draft
    EDITING = "editing"          # User is changing items
    PERSISTING = "persisting"    # Debounced checkpoint being written
    COMMITTING = "committing"    # Authoritative save in flight
    COMMITTED = "committed"
    DISCARDED = "discarded"
    CLOSED = "closed"


TERMINAL_STATES = frozenset({
    SessionState.COMMITTED,
    SessionState.DISCARDED,
    SessionState.CLOSED,
})

EDITABLE_STATES = frozenset({SessionState.EDITING, SessionState.PERSISTING})

_LEAVABLE = {SessionState.DISCARDED, SessionState.CLOSED}


class StateTransitionError(Exception):
    """Raised on a transition the lifecycle does not allow."""
    pass


class SessionStateMachine:
    """
    Validated state holder for one session.

    Every transition is checked against VALID_TRANSITIONS and recorded.
    """

    VALID_TRANSITIONS = {
        SessionState.LOADING: {SessionState.EDITING} | _LEAVABLE,
        SessionState.EDITING: {SessionState.PERSISTING, SessionState.COMMITTING} | _LEAVABLE,
        SessionState.PERSISTING: {SessionState.EDITING} | _LEAVABLE,
        SessionState.COMMITTING: {SessionState.COMMITTED, SessionState.EDITING},
        SessionState.COMMITTED: set(),
        SessionState.DISCARDED: set(),
        SessionState.CLOSED: set(),
    }

    def __init__(
        self,
        session_id: Union[str, int],
        initial_state: SessionState = SessionState.LOADING
    ):
        self.session_id = session_id
        self._state = initial_state
        self._history: List[Dict[str, Optional[str]]] = []
        self._record(initial_state, None)

    def _record(self, state: SessionState, reason: Optional[str]):
        self._history.append({
            "state": state.value,
            "reason": reason,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    @property
    def current_state(self) -> SessionState:
        return self._state

    def can_transition_to(self, target_state: SessionState) -> bool:
        return target_state in self.VALID_TRANSITIONS[self._state]

    def transition(self, target_state: SessionState, reason: Optional[str] = None) -> SessionState:
        """
        Move to target_state.

        Returns:
            The state that was left

        Raises:
            StateTransitionError: If the move is not allowed from the
                current state
        """
        previous = self._state

        if not self.can_transition_to(target_state):
            logger.error(
                f"Session {self.session_id}: refused {previous.value} -> {target_state.value}",
                extra={"session_id": self.session_id, "reason": reason}
            )
            raise StateTransitionError(
                f"Cannot go from {previous.value} to {target_state.value}"
            )

        self._state = target_state
        self._record(target_state, reason)

        logger.debug(
            f"Session {self.session_id}: {previous.value} -> {target_state.value}",
            extra={"session_id": self.session_id, "reason": reason}
        )
        return previous

    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    def is_editable(self) -> bool:
        return self._state in EDITABLE_STATES

    def get_history(self) -> List[Dict[str, Optional[str]]]:
        """Recorded states, oldest first."""
        return [dict(entry) for entry in self._history]

    def __repr__(self):
        return f"<SessionStateMachine {self.session_id!r} {self._state.value}>"
